"""
End-to-end tests for a relay instance against the in-memory store.

Covers:
  - lifecycle: start/stop runs the workers and flushes the audit writer
  - outage then recovery: side effects parked locally reach the store
  - restart: a new instance picks up the queue file left by the previous one
"""
import pytest

from core.relay import build_relay
from database.store_memory import InMemoryRemoteStore
from job_queue.local_queue import DurableLocalQueue
from models.schemas import ChannelEvent, ChannelEventType, InboundMessage


class TestRelayLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, settings, store):
        relay = build_relay(settings, store=store)

        await relay.start()
        assert relay.channel.initialized
        await relay.stop()

        assert "server_started" in store.actions()
        started = store.audit_log[store.actions().index("server_started")]
        assert started["meta"] == {"port": 3000, "instance": "instance-test01"}

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, settings, store):
        relay = build_relay(settings, store=store)
        await relay.stop()
        assert store.audit_log == []


class TestOutageRecovery:
    @pytest.mark.asyncio
    async def test_parked_effects_replay_after_outage(self, settings, store, sleeper):
        relay = build_relay(settings, store=store, sleep=sleeper)
        store.fail_operations.add("*")

        await relay.events.handle(ChannelEvent(type=ChannelEventType.READY))
        await relay.inbound.handle_message(InboundMessage(id="M1", sender="393331234567@c.us", body="hi"))
        stats = await relay.run_dispatch_cycle()
        await relay.audit.drain()

        assert stats["store_unavailable"] is True
        assert relay.local_queue.count_by_type() == {
            "status": 1, "incoming_msg": 1, "dispatch_error": 1, "audit": 1,
        }
        assert store.audit_log == []

        store.fail_operations.clear()
        result = await relay.run_reconciliation_cycle()

        assert result["replayed"] == 4
        assert relay.local_queue.is_empty()
        assert store.status_calls[-1]["status"] == "connected"
        [row] = store.messages.values()
        assert row["whatsapp_message_id"] == "M1"
        assert row["status"] == "received"
        assert set(store.actions()) == {"client_ready", "dispatch_error"}

    @pytest.mark.asyncio
    async def test_send_after_recovery(self, settings, store, sleeper, approved_row):
        relay = build_relay(settings, store=store, sleep=sleeper)
        await relay.state.set_ready(True)
        row = await store.insert_message(approved_row())

        store.fail_operations.add("fetch_dispatchable")
        await relay.run_dispatch_cycle()
        assert store.messages[row["id"]]["status"] == "approved"

        store.fail_operations.clear()
        stats = await relay.run_dispatch_cycle()
        assert stats["sent"] == 1
        assert store.messages[row["id"]]["status"] == "sent"


class TestRestart:
    @pytest.mark.asyncio
    async def test_queue_survives_restart(self, settings, queue_path, sleeper):
        down = InMemoryRemoteStore()
        down.fail_operations.add("*")
        first = build_relay(settings, store=down, local_queue=DurableLocalQueue(queue_path), sleep=sleeper)
        await first.events.on_auth_failure("bad session")
        await first.audit.drain()
        assert len(first.local_queue) == 2

        up = InMemoryRemoteStore()
        second = build_relay(settings, store=up, local_queue=DurableLocalQueue(queue_path), sleep=sleeper)
        assert len(second.local_queue) == 2

        await second.run_reconciliation_cycle()

        assert second.local_queue.is_empty()
        assert up.status_calls[0]["status"] == "auth_needed"
        assert up.actions() == ["auth_failure"]
