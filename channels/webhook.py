"""
Webhook Receiver — inbound WhatsApp events from the gateway.

Handles:
- Filtering: only ``message-received`` events not sent by us are processed;
  delivery-status callbacks and echoes are acknowledged and ignored
- Contact upsert by digits-only phone, open-conversation reuse
- Inbound persistence: text body, or media link + caption
- Deduplication by the gateway messageId (unique in the store)
- Hand-off to the conversation engine, through the queue (default) or
  inline with a queue fallback ("direct" mode)

The gateway redelivers on any non-2xx answer, so the receiver acknowledges
with 200 whatever happens downstream and only answers 503 when it could not
persist the event at all. Redelivery is safe: a duplicate messageId stores
nothing and only re-enqueues the engine job if none was ever queued.
"""
from __future__ import annotations

import time
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError

from config.settings import WebhookConfig, get_settings
from database.store_base import BaseQueueStore
from job_queue.enqueuer import Enqueuer
from job_queue.errors import PermanentProviderError, StoreError, TransientProviderError
from models.schemas import (
    InboundMessage, InboundPayload, MessageType, WebhookData, WebhookEvent,
    normalize_phone,
)

logger = structlog.get_logger()

MESSAGE_RECEIVED = "message-received"


class WebhookAck(BaseModel):
    success: bool = True
    status_code: int = 200
    processed: bool = False
    duplicate: bool = False
    reason: str = ""
    error: Optional[str] = None
    conversation_id: Optional[str] = None
    queue_message_id: Optional[str] = None

    def body(self) -> dict[str, Any]:
        if self.success:
            return {"success": True}
        return {"success": False, "error": self.error}


class RecentlyDelivered:
    """TTL seen-set of provider ids already handed to the engine inline."""

    def __init__(self, ttl_seconds: float = 3600.0, max_size: int = 10000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def add(self, key: str) -> None:
        self._prune()
        if len(self._seen) >= self.max_size:
            oldest = min(self._seen, key=self._seen.get)
            del self._seen[oldest]
        self._seen[key] = time.monotonic()

    def __contains__(self, key: str) -> bool:
        self._prune()
        return key in self._seen

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        for k in [k for k, t in self._seen.items() if t < cutoff]:
            del self._seen[k]


def extract_content(data: WebhookData) -> tuple[str, str, str]:
    """(content_type, content, media_url) for the first part present."""
    if data.text is not None and data.text.message:
        return "text", data.text.message, ""
    if data.image is not None:
        return "image", data.image.caption, data.image.link
    if data.document is not None:
        return "document", data.document.title or data.document.file_name, data.document.link
    if data.audio is not None:
        return "audio", "", data.audio.link
    if data.video is not None:
        return "video", data.video.caption, data.video.link
    return "unknown", "", ""


def _sent_at(timestamp: Optional[int]) -> Optional[datetime]:
    if not timestamp:
        return None
    # the gateway sends milliseconds; accept seconds too
    seconds = timestamp / 1000 if timestamp > 10**11 else timestamp
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


class WebhookReceiver:
    def __init__(self, store: BaseQueueStore, enqueuer: Enqueuer, engine=None,
                 config: WebhookConfig = None):
        self.store = store
        self.enqueuer = enqueuer
        self.engine = engine
        self.config = config or get_settings().webhook
        self._delivered_inline = RecentlyDelivered()

    async def receive(self, raw: Any) -> WebhookAck:
        if not isinstance(raw, dict):
            return WebhookAck(success=False, status_code=400, error="body must be a JSON object")

        event = raw.get("event")
        if event != MESSAGE_RECEIVED:
            logger.debug("webhook_event_ignored", event=event)
            return WebhookAck(reason=f"ignored event {event!r}")
        data = raw.get("data")
        if isinstance(data, dict) and data.get("fromMe"):
            return WebhookAck(reason="ignored own message")

        try:
            parsed = WebhookEvent.model_validate(raw)
        except PydanticValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
            logger.warning("webhook_malformed", error=errors)
            return WebhookAck(success=False, status_code=400, error=f"malformed event: {errors}")

        phone = normalize_phone(parsed.data.sender)
        if not phone:
            return WebhookAck(success=False, status_code=400, error="sender has no digits")

        with structlog.contextvars.bound_contextvars(correlation_id=parsed.data.message_id):
            try:
                return await self._handle(parsed, phone)
            except StoreError as e:
                logger.error("webhook_store_unavailable", error=str(e))
                return WebhookAck(success=False, status_code=503, error="store unavailable")

    async def _handle(self, event: WebhookEvent, phone: str) -> WebhookAck:
        data = event.data
        name = data.sender_name or data.push_name or self.config.default_contact_name
        content_type, content, media_url = extract_content(data)

        contact = await self.store.upsert_contact(phone, name)
        conversation, new_conversation = await self.store.open_conversation(contact.id)

        stored, created = await self.store.add_inbound_message(InboundMessage(
            conversation_id=conversation.id,
            provider_message_id=data.message_id,
            content=content,
            content_type=content_type,
            media_url=media_url,
            sender_name=name,
            sent_at=_sent_at(data.timestamp),
            metadata={
                "messageId": data.message_id,
                "instanceId": event.instance_id,
                "timestamp": data.timestamp,
                "new_conversation": new_conversation,
                "mime_type": self._mime_type(data),
            },
        ))

        if not created:
            if await self.store.has_correlation(data.message_id) or data.message_id in self._delivered_inline:
                logger.info("webhook_duplicate_ignored", conversation_id=stored.conversation_id)
                return WebhookAck(duplicate=True, conversation_id=stored.conversation_id,
                                  reason="duplicate delivery")
            logger.info("webhook_duplicate_requeued", conversation_id=stored.conversation_id)
            new_conversation = bool(stored.metadata.get("new_conversation"))

        job = InboundPayload(
            conversation_id=stored.conversation_id,
            message=None if new_conversation else (stored.content or stored.media_url or f"[{stored.content_type}]"),
            start_flow=new_conversation,
        )
        queue_id = await self._hand_off(job, data.message_id)
        logger.info("webhook_message_processed", contact_id=contact.id,
                    conversation_id=stored.conversation_id, content_type=content_type,
                    new_conversation=new_conversation, queued=queue_id is not None)
        return WebhookAck(processed=True, duplicate=not created,
                          conversation_id=stored.conversation_id, queue_message_id=queue_id)

    async def _hand_off(self, job: InboundPayload, provider_message_id: str) -> Optional[str]:
        if self.config.inbound_mode == "direct" and self.engine is not None:
            try:
                await self.engine.notify_now(job)
            except (TransientProviderError, PermanentProviderError) as e:
                logger.warning("engine_direct_failed_queueing", error=str(e))
            else:
                self._delivered_inline.add(provider_message_id)
                return None

        return await self.enqueuer.enqueue(
            MessageType.INBOUND,
            job.model_dump(),
            priority=self.config.inbound_priority,
            correlation_id=provider_message_id,
        )

    @staticmethod
    def _mime_type(data: WebhookData) -> str:
        for part in (data.image, data.document, data.audio, data.video):
            if part is not None and part.mime_type:
                return part.mime_type
        return ""
