"""Inbound request models for the push channel."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class RequestRejected(ValueError):
    """A request that is refused without contacting upstream."""
    code = "INVALID_REQUEST"


class MissingClientIdError(RequestRejected):
    code = "MISSING_CLIENT_ID"


class InvalidRequestError(RequestRejected):
    code = "INVALID_REQUEST"


class NodeInfo(BaseModel):
    """One (nodeId, fieldName, fieldValue) override, forwarded verbatim."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    node_id: Union[str, int] = Field(alias="nodeId")
    field_name: str = Field(alias="fieldName")
    field_value: Any = Field(alias="fieldValue")


class CreateWorkflowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(alias="apiKey", min_length=1)
    workflow_id: str = Field(alias="workflowId", min_length=1)
    node_info_list: Optional[List[NodeInfo]] = Field(default=None, alias="nodeInfoList")
    client_id: str = Field(alias="clientId", min_length=1)
    timestamp: Optional[str] = Field(default=None, alias="_timestamp")

    @field_validator("workflow_id", mode="before")
    @classmethod
    def _workflow_id_as_str(cls, value: Any) -> Any:
        # workflow ids are numeric strings; some clients send them as numbers
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    def node_info_dicts(self) -> List[Dict[str, Any]]:
        return [n.model_dump(by_alias=True) for n in (self.node_info_list or [])]


def parse_create_request(data: Any) -> CreateWorkflowRequest:
    """Validate a ``createWorkflow`` payload.

    Raises ``MissingClientIdError`` when no usable clientId is present and
    ``InvalidRequestError`` for any other malformed payload.
    """
    if not isinstance(data, dict):
        raise InvalidRequestError("request body must be an object")
    client_id = data.get("clientId")
    if not isinstance(client_id, str) or not client_id.strip():
        raise MissingClientIdError("clientId is required")
    try:
        return CreateWorkflowRequest.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise InvalidRequestError(f"invalid createWorkflow request: {fields}") from exc
