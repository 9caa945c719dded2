"""
Tests for the Dispatch Worker.

Covers:
  - text and media sends, destination resolution
  - failure path: attempt counting, retry ceiling, terminal failed
  - fetch failure: dispatch_error parked locally, no row touched
  - lost claims are skipped silently
  - backoff around the "mark sent" update
  - loop cadence (idle vs store-unavailable sleeps)
  - shutdown mid-send releases the claim; parked row updates
"""
import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from channels.base import ChannelAdapter
from config.settings import DispatchConfig
from core.dispatcher import DispatchWorker
from core.reconciler import ReconciliationWorker
from database.store_base import StoreUnavailableError
from models.schemas import LocalEntryType, SendResult


@pytest.fixture
def worker(store, channel, state, audit, sleeper):
    return DispatchWorker(store, channel, state, audit, sleep=sleeper)


@pytest.fixture
def mock_channel():
    ch = AsyncMock(spec=ChannelAdapter)
    ch.send_text.return_value = SendResult(message_id="wamid.TEXT")
    ch.send_media.return_value = SendResult(message_id="wamid.MEDIA")
    return ch


def media_client(status_code=200, content=b"\x89PNG", content_type="image/png; charset=binary"):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(status_code, content=content, headers={"content-type": content_type})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client, seen


class TestSend:
    @pytest.mark.asyncio
    async def test_sends_text_and_marks_sent(self, worker, store, state, audit, approved_row):
        await state.set_ready(True)
        row = await store.insert_message(approved_row())

        stats = await worker.run_dispatch_cycle()

        assert stats["fetched"] == 1
        assert stats["claimed"] == 1
        assert stats["sent"] == 1
        stored = store.messages[row["id"]]
        assert stored["status"] == "sent"
        assert stored["in_progress"] is False
        assert stored["whatsapp_message_id"].startswith("wamid.")
        await audit.drain()
        assert store.actions() == ["message_sent"]
        assert store.audit_log[0]["meta"]["id"] == row["id"]

    @pytest.mark.asyncio
    async def test_empty_fetch(self, worker, state):
        await state.set_ready(True)
        stats = await worker.run_dispatch_cycle()
        assert stats["fetched"] == 0
        assert stats["store_unavailable"] is False

    @pytest.mark.asyncio
    async def test_number_is_normalized_to_jid(self, store, mock_channel, state, audit, sleeper, approved_row):
        worker = DispatchWorker(store, mock_channel, state, audit, sleep=sleeper)
        await state.set_ready(True)
        await store.insert_message(approved_row(numero="+39 333-123 4567"))

        await worker.run_dispatch_cycle()

        mock_channel.send_text.assert_awaited_once_with("393331234567@c.us", "Ciao!")

    @pytest.mark.asyncio
    async def test_falls_back_to_chat_id(self, store, mock_channel, state, audit, sleeper, approved_row):
        worker = DispatchWorker(store, mock_channel, state, audit, sleep=sleeper)
        await state.set_ready(True)
        await store.insert_message(approved_row(numero=None, chat_id="12036304@g.us"))

        await worker.run_dispatch_cycle()

        mock_channel.send_text.assert_awaited_once_with("12036304@g.us", "Ciao!")

    @pytest.mark.asyncio
    async def test_batch_is_oldest_first_and_bounded(self, store, mock_channel, state, audit, sleeper,
                                                     approved_row):
        worker = DispatchWorker(store, mock_channel, state, audit,
                                config=DispatchConfig(batch_size=2), sleep=sleeper)
        await state.set_ready(True)
        for i in range(3):
            await store.insert_message(approved_row(message=f"msg {i}"))

        stats = await worker.run_dispatch_cycle()

        assert stats["sent"] == 2
        texts = [call.args[1] for call in mock_channel.send_text.await_args_list]
        assert texts == ["msg 0", "msg 1"]


class TestMedia:
    @pytest.mark.asyncio
    async def test_downloads_and_sends_media(self, store, mock_channel, state, audit, sleeper, approved_row):
        client, seen = media_client()
        worker = DispatchWorker(store, mock_channel, state, audit, http_client=client, sleep=sleeper)
        await state.set_ready(True)
        row = await store.insert_message(approved_row(media_url="https://cdn.example.com/a.png",
                                                      message="look"))

        stats = await worker.run_dispatch_cycle()

        assert stats["sent"] == 1
        assert seen == ["https://cdn.example.com/a.png"]
        mock_channel.send_media.assert_awaited_once_with(
            "393331234567@c.us", b"\x89PNG", "image/png", caption="look",
        )
        assert store.messages[row["id"]]["whatsapp_message_id"] == "wamid.MEDIA"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_missing_content_type_defaults(self, store, mock_channel, state, audit, sleeper,
                                                 approved_row):
        client, _ = media_client(content_type="")
        worker = DispatchWorker(store, mock_channel, state, audit, http_client=client, sleep=sleeper)
        await state.set_ready(True)
        await store.insert_message(approved_row(media_url="https://cdn.example.com/blob"))

        await worker.run_dispatch_cycle()

        assert mock_channel.send_media.await_args.args[2] == "application/octet-stream"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_media_download_failure_counts_attempt(self, store, mock_channel, state, audit, sleeper,
                                                         approved_row):
        client, _ = media_client(status_code=404)
        worker = DispatchWorker(store, mock_channel, state, audit, http_client=client, sleep=sleeper)
        await state.set_ready(True)
        row = await store.insert_message(approved_row(media_url="https://cdn.example.com/gone.png"))

        stats = await worker.run_dispatch_cycle()

        assert stats["failed"] == 1
        mock_channel.send_media.assert_not_awaited()
        stored = store.messages[row["id"]]
        assert stored["attempt_count"] == 1
        assert stored["status"] == "approved"
        assert stored["in_progress"] is False
        await audit.drain()
        assert store.audit_log[-1]["action"] == "send_failed"
        assert "404" in store.audit_log[-1]["meta"]["error"]
        await client.aclose()


class TestFailurePath:
    @pytest.mark.asyncio
    async def test_not_ready_counts_attempt(self, worker, store, audit, approved_row):
        row = await store.insert_message(approved_row())

        stats = await worker.run_dispatch_cycle()

        assert stats["failed"] == 1
        stored = store.messages[row["id"]]
        assert stored["attempt_count"] == 1
        assert stored["status"] == "approved"
        assert stored["in_progress"] is False
        await audit.drain()
        assert store.audit_log[-1]["meta"] == {"id": row["id"], "error": "WhatsApp client not ready"}

    @pytest.mark.asyncio
    async def test_fifth_attempt_is_terminal(self, worker, store, approved_row):
        row = await store.insert_message(approved_row(attempt_count=4))

        await worker.run_dispatch_cycle()

        stored = store.messages[row["id"]]
        assert stored["attempt_count"] == 5
        assert stored["status"] == "failed"
        assert stored["in_progress"] is False

        stats = await worker.run_dispatch_cycle()
        assert stats["fetched"] == 0

    @pytest.mark.asyncio
    async def test_rows_at_ceiling_are_not_fetched(self, worker, store, state, approved_row):
        await state.set_ready(True)
        await store.insert_message(approved_row(attempt_count=5))
        stats = await worker.run_dispatch_cycle()
        assert stats["fetched"] == 0

    @pytest.mark.asyncio
    async def test_no_destination(self, worker, store, state, audit, approved_row):
        await state.set_ready(True)
        row = await store.insert_message(approved_row(numero=None, chat_id=None))

        await worker.run_dispatch_cycle()

        assert store.messages[row["id"]]["attempt_count"] == 1
        await audit.drain()
        assert store.audit_log[-1]["meta"]["error"] == "No destination jid"

    @pytest.mark.asyncio
    async def test_channel_error_counts_attempt(self, store, mock_channel, state, audit, sleeper, approved_row):
        mock_channel.send_text.side_effect = RuntimeError("bridge exploded")
        worker = DispatchWorker(store, mock_channel, state, audit, sleep=sleeper)
        await state.set_ready(True)
        row = await store.insert_message(approved_row(attempt_count=2))

        await worker.run_dispatch_cycle()

        assert store.messages[row["id"]]["attempt_count"] == 3
        assert store.messages[row["id"]]["status"] == "approved"

    @pytest.mark.asyncio
    async def test_unrecordable_failure_is_parked_and_replayed(self, worker, store, state, local_queue,
                                                               sleeper, approved_row):
        await state.set_ready(True)
        row = await store.insert_message(approved_row())
        store.fail_operations.add("update_message")

        stats = await worker.run_dispatch_cycle()

        assert stats["failed"] == 1
        # Both the success update and the failure update exhausted their retries
        assert len(sleeper.calls) == 8
        assert store.messages[row["id"]]["in_progress"] is True
        [entry] = local_queue.snapshot()
        assert entry.type == LocalEntryType.MESSAGE_UPDATE
        assert entry.payload == {
            "id": row["id"],
            "fields": {"attempt_count": 1, "in_progress": False, "status": "approved"},
        }

        store.fail_operations.clear()
        await ReconciliationWorker(store, local_queue, sleep=sleeper).run_reconciliation_cycle()

        stored = store.messages[row["id"]]
        assert stored["in_progress"] is False
        assert stored["attempt_count"] == 1
        assert local_queue.is_empty()
        assert (await worker.run_dispatch_cycle())["sent"] == 1


class TestBackoff:
    @pytest.mark.asyncio
    async def test_mark_sent_retries_transient_errors(self, worker, store, state, sleeper, monkeypatch,
                                                      approved_row):
        await state.set_ready(True)
        row = await store.insert_message(approved_row())
        original = store.update_message
        calls = {"n": 0}

        async def flaky_update(message_id, **fields):
            calls["n"] += 1
            if calls["n"] <= 2:
                raise StoreUnavailableError("blip", "update_message")
            return await original(message_id, **fields)

        monkeypatch.setattr(store, "update_message", flaky_update)

        stats = await worker.run_dispatch_cycle()

        assert stats["sent"] == 1
        assert sleeper.calls == [0.5, 1.0]
        assert store.messages[row["id"]]["status"] == "sent"


class TestStoreUnavailable:
    @pytest.mark.asyncio
    async def test_fetch_failure_parks_dispatch_error(self, worker, store, state, local_queue, approved_row):
        await state.set_ready(True)
        row = await store.insert_message(approved_row())
        before = dict(store.messages[row["id"]])
        store.fail_operations.add("fetch_dispatchable")

        stats = await worker.run_dispatch_cycle()

        assert stats["store_unavailable"] is True
        assert stats["fetched"] == 0
        entries = local_queue.snapshot()
        assert len(entries) == 1
        assert entries[0].type == LocalEntryType.DISPATCH_ERROR
        assert "fetch_dispatchable" in entries[0].payload["message"]
        assert store.messages[row["id"]] == before

    @pytest.mark.asyncio
    async def test_claim_error_skips_item(self, worker, store, state, approved_row):
        await state.set_ready(True)
        row = await store.insert_message(approved_row())
        store.fail_operations.add("claim_message")

        stats = await worker.run_dispatch_cycle()

        assert stats["skipped"] == 1
        assert store.messages[row["id"]]["attempt_count"] == 0
        assert store.messages[row["id"]]["in_progress"] is False


class TestContention:
    @pytest.mark.asyncio
    async def test_lost_claim_is_skipped(self, store, mock_channel, state, audit, sleeper, monkeypatch,
                                         approved_row):
        worker = DispatchWorker(store, mock_channel, state, audit, sleep=sleeper)
        await state.set_ready(True)
        row = await store.insert_message(approved_row())
        monkeypatch.setattr(store, "claim_message", AsyncMock(return_value=None))

        stats = await worker.run_dispatch_cycle()

        assert stats == {"fetched": 1, "claimed": 0, "sent": 0, "failed": 0, "skipped": 1,
                         "store_unavailable": False}
        mock_channel.send_text.assert_not_awaited()
        assert store.messages[row["id"]]["attempt_count"] == 0


class TestLoop:
    @pytest.mark.asyncio
    async def test_idle_sleep(self, store, channel, state, audit):
        delays = []

        async def stop_after_first(delay):
            delays.append(delay)
            worker._running = False

        worker = DispatchWorker(store, channel, state, audit, sleep=stop_after_first)
        worker._running = True
        await worker._loop()
        assert delays == [1.5]

    @pytest.mark.asyncio
    async def test_error_sleep(self, store, channel, state, audit):
        delays = []

        async def stop_after_first(delay):
            delays.append(delay)
            worker._running = False

        store.fail_operations.add("fetch_dispatchable")
        worker = DispatchWorker(store, channel, state, audit, sleep=stop_after_first)
        worker._running = True
        await worker._loop()
        assert delays == [3.0]


class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_mid_send_releases_claim(self, store, mock_channel, state, audit, approved_row):
        sending = asyncio.Event()

        async def slow_send(address, text):
            sending.set()
            await asyncio.sleep(10)

        mock_channel.send_text.side_effect = slow_send
        worker = DispatchWorker(store, mock_channel, state, audit)
        await state.set_ready(True)
        row = await store.insert_message(approved_row())

        await worker.start()
        await asyncio.wait_for(sending.wait(), timeout=1)
        await worker.stop()

        stored = store.messages[row["id"]]
        assert stored["in_progress"] is False
        assert stored["status"] == "approved"
        assert stored["attempt_count"] == 0
        assert (await store.fetch_dispatchable())[0].id == row["id"]

    @pytest.mark.asyncio
    async def test_release_parked_when_store_down(self, store, mock_channel, state, audit, local_queue,
                                                  approved_row):
        sending = asyncio.Event()

        async def slow_send(address, text):
            sending.set()
            await asyncio.sleep(10)

        mock_channel.send_text.side_effect = slow_send
        worker = DispatchWorker(store, mock_channel, state, audit)
        await state.set_ready(True)
        row = await store.insert_message(approved_row())

        await worker.start()
        await asyncio.wait_for(sending.wait(), timeout=1)
        store.fail_operations.add("update_message")
        await worker.stop()

        [entry] = local_queue.snapshot()
        assert entry.type == LocalEntryType.MESSAGE_UPDATE
        assert entry.payload == {"id": row["id"], "fields": {"in_progress": False}}

    @pytest.mark.asyncio
    async def test_stop_after_send_keeps_sent(self, store, mock_channel, state, audit, approved_row):
        backing_off = asyncio.Event()

        async def slow_sleep(delay):
            backing_off.set()
            await asyncio.sleep(10)

        worker = DispatchWorker(store, mock_channel, state, audit, sleep=slow_sleep)
        await state.set_ready(True)
        row = await store.insert_message(approved_row())
        store.fail_operations.add("update_message")

        await worker.start()
        await asyncio.wait_for(backing_off.wait(), timeout=1)
        store.fail_operations.clear()
        await worker.stop()

        stored = store.messages[row["id"]]
        assert stored["status"] == "sent"
        assert stored["whatsapp_message_id"] == "wamid.TEXT"
        assert stored["in_progress"] is False
        assert stored["attempt_count"] == 0
        mock_channel.send_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_leaves_injected_client_open(self, store, channel, state, audit):
        client, _ = media_client()
        worker = DispatchWorker(store, channel, state, audit, http_client=client)
        await worker.start()
        await worker.stop()
        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_stop_closes_own_client(self, store, channel, state, audit):
        worker = DispatchWorker(store, channel, state, audit)
        own = worker._get_http()
        await worker.stop()
        assert own.is_closed
