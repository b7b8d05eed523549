"""Shared fixtures: a real SQLite store wired to in-process fakes."""
from __future__ import annotations

from typing import Callable

import pytest

from hubrelay.core.coordinator import TaskCoordinator
from hubrelay.core.notifier import Notifier
from hubrelay.core.reconcile import Reconciler
from hubrelay.core.tasks import TaskStore

from fakes import FakeConnection, FakeUpstream, RecordingTimer


@pytest.fixture
def store(tmp_path) -> TaskStore:
    return TaskStore(str(tmp_path / "tasks.sqlite3"))


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def notifier() -> Notifier:
    return Notifier()


@pytest.fixture
def timer() -> RecordingTimer:
    return RecordingTimer()


@pytest.fixture
def coordinator(store, upstream, notifier, timer) -> TaskCoordinator:
    return TaskCoordinator(store, upstream, notifier, timer)


@pytest.fixture
def reconciler(coordinator) -> Reconciler:
    return Reconciler(coordinator)


@pytest.fixture
def connect(notifier) -> Callable[..., FakeConnection]:
    """Register a fake connection with the notifier and return it."""
    def _connect(connection_id: str = "conn-1", fail: bool = False) -> FakeConnection:
        conn = FakeConnection(connection_id, fail=fail)
        notifier.register(conn)
        return conn
    return _connect
