"""Shared test fixtures for WhatsRelay."""
import pytest
from typing import Any

from channels.whatsapp_adapter import WhatsAppAdapter
from config.settings import BackoffConfig, DispatchConfig, ReconcileConfig, Settings
from core.audit import AuditRecorder
from core.state import RelayState
from database.store_memory import InMemoryRemoteStore
from job_queue.local_queue import DurableLocalQueue


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def store() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture
def queue_path(tmp_path):
    return tmp_path / "local_queue.json"


@pytest.fixture
def local_queue(queue_path) -> DurableLocalQueue:
    q = DurableLocalQueue(queue_path)
    q.load()
    return q


@pytest.fixture
def state(local_queue) -> RelayState:
    return RelayState("instance-test01", local_queue)


@pytest.fixture
def audit(store, local_queue) -> AuditRecorder:
    return AuditRecorder(store, local_queue, actor="instance-test01")


@pytest.fixture
def channel() -> WhatsAppAdapter:
    """Adapter without a bridge URL: sends succeed with generated ids."""
    return WhatsAppAdapter()


@pytest.fixture
def settings(queue_path) -> Settings:
    return Settings(
        instance_id="instance-test01",
        local_queue_path=str(queue_path),
        dispatch=DispatchConfig(),
        reconcile=ReconcileConfig(),
        backoff=BackoffConfig(),
    )


@pytest.fixture
def approved_row():
    """Factory for an approved messages row ready for dispatch."""
    def make(**overrides: Any) -> dict[str, Any]:
        row = {
            "numero": "+39 333 123 4567",
            "message": "Ciao!",
            "status": "approved",
            "sender": "admin",
        }
        row.update(overrides)
        return row
    return make
