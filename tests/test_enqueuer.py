"""
Tests for the Enqueuer.

Covers:
  - validation (nothing written on a bad payload)
  - defaults, delays and priorities
  - coalescing of repeated submissions
  - dead-letter replay
"""
from datetime import timedelta

import pytest

from job_queue.enqueuer import Enqueuer
from job_queue.errors import NotFoundError, ValidationError
from models.schemas import MessageType, QueueStatus


@pytest.fixture
def enqueuer(memory_store, dispatcher_config, clock):
    return Enqueuer(memory_store, dispatcher_config, clock=clock)


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_inserts_pending_row(self, enqueuer, memory_store, clock, text_payload):
        message_id = await enqueuer.enqueue(MessageType.TEXT, text_payload)
        row = await memory_store.get_message(message_id)
        assert row.status == QueueStatus.PENDING
        assert row.retry_count == 0
        assert row.max_retries == 3
        assert row.priority == 5
        assert row.scheduled_at == clock.now
        assert row.payload == {"phone": "5511987654321", "message": "Seu pedido saiu para entrega"}
        assert row.correlation_id

    @pytest.mark.asyncio
    async def test_accepts_string_type(self, enqueuer, memory_store, text_payload):
        message_id = await enqueuer.enqueue("text", text_payload)
        assert (await memory_store.get_message(message_id)).message_type == MessageType.TEXT

    @pytest.mark.asyncio
    async def test_invalid_payload_writes_nothing(self, enqueuer, memory_store, clock):
        with pytest.raises(ValidationError):
            await enqueuer.enqueue(MessageType.TEXT, {"phone": "5511987654321"})
        with pytest.raises(ValidationError):
            await enqueuer.enqueue("carrier-pigeon", {"phone": "5511987654321"})
        assert await memory_store.count_eligible(clock.now) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"priority": -1},
        {"max_retries": -2},
        {"delay_seconds": -5},
    ])
    async def test_bad_options_rejected(self, enqueuer, text_payload, kwargs):
        with pytest.raises(ValidationError):
            await enqueuer.enqueue(MessageType.TEXT, text_payload, **kwargs)

    @pytest.mark.asyncio
    async def test_options_honoured(self, enqueuer, memory_store, clock, text_payload):
        message_id = await enqueuer.enqueue(
            MessageType.TEXT, text_payload, priority=1, correlation_id="order-77",
            max_retries=0, delay_seconds=60, metadata={"source": "billing"})
        row = await memory_store.get_message(message_id)
        assert row.priority == 1
        assert row.correlation_id == "order-77"
        assert row.max_retries == 0
        assert row.scheduled_at == clock.now + timedelta(seconds=60)
        assert row.metadata == {"source": "billing"}
        assert await memory_store.count_eligible(clock.now) == 0
        assert await memory_store.count_eligible(clock.now + timedelta(seconds=60)) == 1

    @pytest.mark.asyncio
    async def test_enqueue_many_keeps_order(self, enqueuer, memory_store):
        ids = await enqueuer.enqueue_many([
            {"message_type": MessageType.TEXT, "payload": {"phone": "5511900000001", "message": "a"}},
            {"message_type": MessageType.IMAGE, "payload": {"phone": "5511900000002", "image": "https://i/x.png"}},
        ])
        assert len(ids) == 2
        assert (await memory_store.get_message(ids[1])).message_type == MessageType.IMAGE


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_same_logical_message_coalesced(self, enqueuer, memory_store, clock, text_payload):
        first = await enqueuer.enqueue(MessageType.TEXT, text_payload, correlation_id="c-1")
        # same message, different phone formatting
        again = dict(text_payload, phone="5511987654321")
        second = await enqueuer.enqueue(MessageType.TEXT, again, correlation_id="c-1")
        assert first == second
        assert await memory_store.count_eligible(clock.now) == 1

    @pytest.mark.asyncio
    async def test_different_payload_not_coalesced(self, enqueuer, text_payload):
        first = await enqueuer.enqueue(MessageType.TEXT, text_payload, correlation_id="c-1")
        second = await enqueuer.enqueue(
            MessageType.TEXT, dict(text_payload, message="outra coisa"), correlation_id="c-1")
        assert first != second

    @pytest.mark.asyncio
    async def test_without_correlation_never_coalesced(self, enqueuer, text_payload):
        first = await enqueuer.enqueue(MessageType.TEXT, text_payload)
        second = await enqueuer.enqueue(MessageType.TEXT, text_payload)
        assert first != second

    @pytest.mark.asyncio
    async def test_terminal_rows_not_coalesced(self, enqueuer, memory_store, clock, text_payload):
        first = await enqueuer.enqueue(MessageType.TEXT, text_payload, correlation_id="c-1")
        claimed = await memory_store.claim(first, "w", clock.now)
        await memory_store.complete(first, claimed.claim_token, clock.now)
        second = await enqueuer.enqueue(MessageType.TEXT, text_payload, correlation_id="c-1")
        assert first != second


class TestReplay:
    async def _bury(self, store, clock, message_id):
        claimed = await store.claim(message_id, "w", clock.now)
        return await store.bury(message_id, claimed.claim_token, "HTTP 400: bad", clock.now)

    @pytest.mark.asyncio
    async def test_replay_creates_fresh_row(self, enqueuer, memory_store, clock, text_payload):
        original = await enqueuer.enqueue(MessageType.TEXT, text_payload, correlation_id="c-9")
        failed = await self._bury(memory_store, clock, original)

        replayed = await enqueuer.replay_failed(failed.id, priority=0)
        row = await memory_store.get_message(replayed)
        assert replayed != original
        assert row.status == QueueStatus.PENDING
        assert row.retry_count == 0
        assert row.priority == 0
        assert row.correlation_id == "c-9"
        assert row.original_message_id == original
        assert row.metadata["replayed_from"] == failed.id

    @pytest.mark.asyncio
    async def test_second_death_bumps_same_record(self, enqueuer, memory_store, clock, text_payload):
        original = await enqueuer.enqueue(MessageType.TEXT, text_payload)
        failed = await self._bury(memory_store, clock, original)
        replayed = await enqueuer.replay_failed(failed.id)
        again = await self._bury(memory_store, clock, replayed)

        assert again.id == failed.id
        assert again.failure_count == 2
        assert await memory_store.count_failed() == 1

    @pytest.mark.asyncio
    async def test_unknown_failed_id(self, enqueuer):
        with pytest.raises(NotFoundError):
            await enqueuer.replay_failed("missing")
