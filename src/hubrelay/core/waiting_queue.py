"""In-memory FIFO of submissions the upstream has not accepted yet."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any, Dict, List, Optional

from hubrelay.core.tasks import RETRY, WAITING, utc_now_iso

logger = logging.getLogger("hubrelay.waiting_queue")


class PendingReason(str, Enum):
    CAPACITY = "capacity"   # upstream said TASK_QUEUE_MAXED
    REJECTED = "rejected"   # any other non-success answer

    @property
    def display_status(self) -> str:
        return WAITING if self is PendingReason.CAPACITY else RETRY

    @classmethod
    def from_status(cls, status: str) -> "PendingReason":
        return cls.REJECTED if status == RETRY else cls.CAPACITY


@dataclass
class WaitingEntry:
    """Everything needed to resubmit a task without reading the store."""
    unique_id: str
    client_id: str
    api_key: str
    workflow_id: str
    node_info_list: List[Dict[str, Any]] = field(default_factory=list)
    connection_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    retry_count: int = 0
    reason: PendingReason = PendingReason.CAPACITY

    @property
    def display_status(self) -> str:
        return self.reason.display_status


def backoff_delay(retry_count: int, initial: float = 1.0, cap: float = 30.0) -> float:
    """Exponential backoff: ``initial * 2**retry_count`` bounded by ``cap``."""
    return min(initial * (2 ** max(0, retry_count)), cap)


class WaitingQueue:
    """Strict FIFO; only the head is ever attempted."""

    def __init__(self) -> None:
        self._entries: List[WaitingEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def enqueue(self, entry: WaitingEntry) -> bool:
        """Append *entry*. Returns False if its unique_id is already queued."""
        if self.contains(entry.unique_id):
            logger.debug("Entry %s already queued; not re-enrolling", entry.unique_id)
            return False
        self._entries.append(entry)
        logger.info(
            "Queued %s (%s), queue length %d",
            entry.unique_id, entry.display_status, len(self._entries),
        )
        return True

    def head(self) -> Optional[WaitingEntry]:
        return self._entries[0] if self._entries else None

    def pop_head(self) -> Optional[WaitingEntry]:
        if not self._entries:
            return None
        return self._entries.pop(0)

    def contains(self, unique_id: str) -> bool:
        return any(e.unique_id == unique_id for e in self._entries)

    def get(self, unique_id: str) -> Optional[WaitingEntry]:
        for entry in self._entries:
            if entry.unique_id == unique_id:
                return entry
        return None

    def remove(self, unique_id: str) -> Optional[WaitingEntry]:
        for idx, entry in enumerate(self._entries):
            if entry.unique_id == unique_id:
                del self._entries[idx]
                logger.info("Removed %s from waiting queue, %d left", unique_id, len(self._entries))
                return entry
        return None

    def remove_by_created_at(self, created_at: str, client_id: Optional[str] = None) -> Optional[WaitingEntry]:
        for idx, entry in enumerate(self._entries):
            if entry.created_at == created_at and (client_id is None or entry.client_id == client_id):
                del self._entries[idx]
                logger.info(
                    "Removed %s (createdAt=%s) from waiting queue, %d left",
                    entry.unique_id, created_at, len(self._entries),
                )
                return entry
        return None

    def entries(self) -> List[WaitingEntry]:
        return list(self._entries)

    def for_client(self, client_id: str) -> List[WaitingEntry]:
        return [e for e in self._entries if e.client_id == client_id]
