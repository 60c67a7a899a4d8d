"""
Tests for the webhook receiver.

Covers:
  - contact / conversation / inbound message persistence
  - engine job hand-off through the queue
  - redelivery dedupe and requeue of a lost job
  - ignored events, malformed bodies, store outages
  - direct mode with queue fallback
"""
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from channels.webhook import RecentlyDelivered, WebhookReceiver, extract_content
from config.settings import WebhookConfig
from job_queue.enqueuer import Enqueuer
from job_queue.errors import StoreError, TransientProviderError
from models.schemas import (
    InboundMessage, InboundPayload, MessageType, QueueStatus, WebhookData,
)


def received(message_id="3EB0AAA", phone="5511987654321", text="Olá, quero ajuda", **data):
    body = {
        "messageId": message_id,
        "from": phone,
        "fromMe": False,
        "senderName": "Maria",
        "timestamp": 1700000000000,
    }
    if text is not None:
        body["text"] = {"message": text}
    body.update(data)
    return {"event": "message-received", "instanceId": "INST1", "data": body}


@pytest.fixture
def enqueuer(memory_store, dispatcher_config, clock):
    return Enqueuer(memory_store, dispatcher_config, clock=clock)


@pytest.fixture
def receiver(memory_store, enqueuer, webhook_config):
    return WebhookReceiver(memory_store, enqueuer, config=webhook_config)


async def queued_jobs(store, message_id):
    return await store.find_active(message_id, MessageType.INBOUND)


# ──────────────────────────────────────────────────────────────
#  Happy path
# ──────────────────────────────────────────────────────────────

class TestReceive:
    @pytest.mark.asyncio
    async def test_first_message_opens_conversation(self, receiver, memory_store):
        ack = await receiver.receive(received())

        assert ack.success and ack.processed and not ack.duplicate
        assert ack.status_code == 200
        assert ack.body() == {"success": True}

        contact = await memory_store.get_contact_by_phone("5511987654321")
        assert contact.name == "Maria"

        stored = await memory_store.get_inbound_message("3EB0AAA")
        assert stored.conversation_id == ack.conversation_id
        assert stored.content == "Olá, quero ajuda"
        assert stored.content_type == "text"
        assert stored.sender_name == "Maria"
        assert stored.sent_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert stored.metadata["messageId"] == "3EB0AAA"
        assert stored.metadata["instanceId"] == "INST1"
        assert stored.metadata["new_conversation"] is True

        jobs = await queued_jobs(memory_store, "3EB0AAA")
        assert len(jobs) == 1
        assert jobs[0].id == ack.queue_message_id
        assert jobs[0].priority == 1
        assert jobs[0].status == QueueStatus.PENDING
        job = InboundPayload.model_validate(jobs[0].payload)
        assert job.start_flow is True
        assert job.conversation_id == ack.conversation_id

    @pytest.mark.asyncio
    async def test_follow_up_forwards_text(self, receiver, memory_store):
        first = await receiver.receive(received("m1"))
        ack = await receiver.receive(received("m2", text="meu pedido 123"))

        assert ack.conversation_id == first.conversation_id
        job = InboundPayload.model_validate((await queued_jobs(memory_store, "m2"))[0].payload)
        assert job.start_flow is False
        assert job.message == "meu pedido 123"
        assert job.engine_body() == {"conversaId": first.conversation_id, "mensagemCliente": "meu pedido 123"}

    @pytest.mark.asyncio
    async def test_phone_normalized(self, receiver, memory_store):
        await receiver.receive(received(phone="+55 (11) 98765-4321"))
        assert await memory_store.get_contact_by_phone("5511987654321") is not None

    @pytest.mark.asyncio
    async def test_name_fallbacks(self, receiver, memory_store):
        await receiver.receive(received("m1", phone="5511900000001", senderName="", pushName="Zé"))
        await receiver.receive(received("m2", phone="5511900000002", senderName=""))
        assert (await memory_store.get_contact_by_phone("5511900000001")).name == "Zé"
        assert (await memory_store.get_contact_by_phone("5511900000002")).name == "Customer"

    @pytest.mark.asyncio
    async def test_image_message(self, receiver, memory_store):
        await receiver.receive(received("m0"))
        ack = await receiver.receive(received(
            "m1", text=None,
            image={"imageUrl": "https://cdn/foto.jpg", "caption": "comprovante", "mimeType": "image/jpeg"}))

        stored = await memory_store.get_inbound_message("m1")
        assert stored.content_type == "image"
        assert stored.content == "comprovante"
        assert stored.media_url == "https://cdn/foto.jpg"
        assert stored.metadata["mime_type"] == "image/jpeg"
        assert ack.processed

    @pytest.mark.asyncio
    async def test_audio_without_text_forwards_link(self, receiver, memory_store):
        await receiver.receive(received("m0"))
        await receiver.receive(received("m1", text=None, audio={"audioUrl": "https://cdn/a.ogg"}))
        job = InboundPayload.model_validate((await queued_jobs(memory_store, "m1"))[0].payload)
        assert job.message == "https://cdn/a.ogg"


# ──────────────────────────────────────────────────────────────
#  Redelivery
# ──────────────────────────────────────────────────────────────

class TestDedupe:
    @pytest.mark.asyncio
    async def test_same_message_id_twice(self, receiver, memory_store):
        first = await receiver.receive(received("dup-1"))
        second = await receiver.receive(received("dup-1"))

        assert first.processed
        assert second.success and second.duplicate and not second.processed
        assert second.conversation_id == first.conversation_id
        assert len(await memory_store.list_inbound_messages(first.conversation_id)) == 1
        assert len(await queued_jobs(memory_store, "dup-1")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_redelivery(self, receiver, memory_store):
        acks = await asyncio.gather(*(receiver.receive(received("dup-2")) for _ in range(5)))

        assert all(a.success for a in acks)
        conversation_id = acks[0].conversation_id
        assert len(await memory_store.list_inbound_messages(conversation_id)) == 1
        assert len(await queued_jobs(memory_store, "dup-2")) == 1

    @pytest.mark.asyncio
    async def test_duplicate_after_job_done_is_ignored(self, receiver, memory_store, clock):
        ack = await receiver.receive(received("dup-3"))
        claimed = await memory_store.claim(ack.queue_message_id, "w", clock.now)
        await memory_store.complete(claimed.id, claimed.claim_token, clock.now)

        again = await receiver.receive(received("dup-3"))
        assert again.duplicate and not again.processed
        assert await queued_jobs(memory_store, "dup-3") == []

    @pytest.mark.asyncio
    async def test_lost_job_requeued(self, receiver, memory_store):
        # stored by an earlier delivery that crashed before queueing the job
        contact = await memory_store.upsert_contact("5511987654321", "Maria")
        conv, _ = await memory_store.open_conversation(contact.id)
        await memory_store.add_inbound_message(InboundMessage(
            conversation_id=conv.id, provider_message_id="lost-1", content="oi",
            metadata={"new_conversation": True}))

        ack = await receiver.receive(received("lost-1"))

        assert ack.processed and ack.duplicate
        jobs = await queued_jobs(memory_store, "lost-1")
        assert len(jobs) == 1
        assert InboundPayload.model_validate(jobs[0].payload).start_flow is True


# ──────────────────────────────────────────────────────────────
#  Ignored and rejected bodies
# ──────────────────────────────────────────────────────────────

class TestFiltering:
    @pytest.mark.asyncio
    async def test_own_messages_ignored(self, receiver, memory_store):
        ack = await receiver.receive(received(fromMe=True))
        assert ack.success and not ack.processed
        assert await memory_store.get_contact_by_phone("5511987654321") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event", ["message-status-update", "connected", None])
    async def test_other_events_ignored(self, receiver, memory_store, event):
        body = received()
        body["event"] = event
        ack = await receiver.receive(body)
        assert ack.success and ack.status_code == 200 and not ack.processed
        assert await memory_store.get_inbound_message("3EB0AAA") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        [],
        "not json object",
        {"event": "message-received"},
        {"event": "message-received", "data": {"from": "5511987654321"}},
        {"event": "message-received", "data": {"messageId": "x"}},
    ])
    async def test_malformed_rejected(self, receiver, body):
        ack = await receiver.receive(body)
        assert not ack.success
        assert ack.status_code == 400
        assert ack.body()["success"] is False

    @pytest.mark.asyncio
    async def test_sender_without_digits(self, receiver):
        ack = await receiver.receive(received(phone="status@broadcast"))
        assert ack.status_code == 400

    @pytest.mark.asyncio
    async def test_store_outage_is_503(self, receiver, memory_store, monkeypatch):
        monkeypatch.setattr(memory_store, "upsert_contact", AsyncMock(side_effect=StoreError("down")))
        ack = await receiver.receive(received())
        assert ack.status_code == 503
        assert ack.error == "store unavailable"


# ──────────────────────────────────────────────────────────────
#  Direct mode
# ──────────────────────────────────────────────────────────────

class TestDirectMode:
    @pytest.fixture
    def engine(self):
        engine = AsyncMock()
        engine.notify_now = AsyncMock(return_value={})
        return engine

    @pytest.fixture
    def direct(self, memory_store, enqueuer, engine):
        config = WebhookConfig(inbound_mode="direct", inbound_priority=1)
        return WebhookReceiver(memory_store, enqueuer, engine=engine, config=config)

    @pytest.mark.asyncio
    async def test_engine_called_inline(self, direct, engine, memory_store):
        ack = await direct.receive(received("d1"))

        assert ack.processed
        assert ack.queue_message_id is None
        engine.notify_now.assert_awaited_once()
        job = engine.notify_now.await_args.args[0]
        assert job.start_flow is True
        assert await queued_jobs(memory_store, "d1") == []

    @pytest.mark.asyncio
    async def test_redelivery_after_inline_success_ignored(self, direct, engine, memory_store):
        await direct.receive(received("d2"))
        ack = await direct.receive(received("d2"))

        assert ack.duplicate and not ack.processed
        assert engine.notify_now.await_count == 1
        assert await queued_jobs(memory_store, "d2") == []

    @pytest.mark.asyncio
    async def test_engine_failure_falls_back_to_queue(self, direct, engine, memory_store):
        engine.notify_now.side_effect = TransientProviderError("engine HTTP 503")

        ack = await direct.receive(received("d3"))

        assert ack.processed
        jobs = await queued_jobs(memory_store, "d3")
        assert [j.id for j in jobs] == [ack.queue_message_id]


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

def test_extract_content_document_uses_title():
    data = WebhookData.model_validate({
        "messageId": "m", "from": "5511987654321",
        "document": {"documentUrl": "https://cdn/b.pdf", "fileName": "boleto.pdf"},
    })
    assert extract_content(data) == ("document", "boleto.pdf", "https://cdn/b.pdf")


def test_extract_content_unknown():
    data = WebhookData.model_validate({"messageId": "m", "from": "5511987654321"})
    assert extract_content(data) == ("unknown", "", "")


def test_recently_delivered_expires(monkeypatch):
    seen = RecentlyDelivered(ttl_seconds=10, max_size=2)
    clock = [100.0]
    monkeypatch.setattr("channels.webhook.time.monotonic", lambda: clock[0])

    seen.add("a")
    assert "a" in seen
    seen.add("b")
    seen.add("c")
    assert "a" not in seen
    clock[0] += 11
    assert "c" not in seen
