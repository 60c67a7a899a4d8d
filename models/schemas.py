"""
Core data models for the delivery queue.
These are the universal types shared across all modules.

Outbound payloads are a tagged union: the queue row carries a
``message_type`` tag and the payload is validated against the model
registered for that tag in ``PAYLOAD_MODELS``.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
from pydantic import field_validator, model_validator

from job_queue.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def normalize_phone(phone: str) -> str:
    """Digits only: strips +, spaces, dashes and brackets."""
    return re.sub(r"[^\d]", "", phone or "")


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"
    BUTTON = "button"
    LIST = "list"
    INBOUND = "inbound"


OUTBOUND_TYPES = frozenset(t for t in MessageType if t is not MessageType.INBOUND)


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"         # reserved by the table schema, never written by the dispatcher
    DEAD = "dead"


TERMINAL_STATUSES = frozenset({QueueStatus.DONE, QueueStatus.FAILED, QueueStatus.DEAD})


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    IN_SERVICE = "in_service"
    CLOSED = "closed"


OPEN_CONVERSATION_STATUSES = frozenset({ConversationStatus.ACTIVE, ConversationStatus.IN_SERVICE})


# ──────────────────────────────────────────────────────────────
#  Payload variants — one model per message type
# ──────────────────────────────────────────────────────────────

class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class _PhonePayload(_Payload):
    phone: str

    @field_validator("phone")
    @classmethod
    def _valid_phone(cls, value: str) -> str:
        digits = normalize_phone(value)
        # E.164 allows at most 15 digits including the country code
        if not 8 <= len(digits) <= 15:
            raise ValueError(f"invalid recipient phone: {value!r}")
        return digits

    @field_validator("message", "image", "document", "audio", "video", check_fields=False)
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value


class TextPayload(_PhonePayload):
    message: str


class ImagePayload(_PhonePayload):
    image: str
    caption: str = ""


class DocumentPayload(_PhonePayload):
    document: str
    filename: str = Field("document", alias="fileName")


class AudioPayload(_PhonePayload):
    audio: str


class VideoPayload(_PhonePayload):
    video: str
    caption: str = ""


class ButtonPayload(_PhonePayload):
    message: str
    buttons: list[dict[str, Any]] = Field(min_length=1)


class ListPayload(_PhonePayload):
    message: str
    sections: list[dict[str, Any]] = Field(min_length=1)
    button_text: str = Field("Menu", alias="buttonText")


class InboundPayload(_Payload):
    """Work item for the conversation engine: one customer turn."""
    conversation_id: str = Field(alias="conversaId", min_length=1)
    message: Optional[str] = Field(None, alias="mensagemCliente")
    start_flow: bool = Field(False, alias="iniciarFluxo")

    @model_validator(mode="after")
    def _message_or_flow(self) -> InboundPayload:
        if not self.start_flow and not (self.message and self.message.strip()):
            raise ValueError("inbound payload needs a message or start_flow")
        return self

    def engine_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"conversaId": self.conversation_id}
        if self.start_flow:
            body["iniciarFluxo"] = True
        else:
            body["mensagemCliente"] = self.message
        return body


PAYLOAD_MODELS: dict[MessageType, type[_Payload]] = {
    MessageType.TEXT: TextPayload,
    MessageType.IMAGE: ImagePayload,
    MessageType.DOCUMENT: DocumentPayload,
    MessageType.AUDIO: AudioPayload,
    MessageType.VIDEO: VideoPayload,
    MessageType.BUTTON: ButtonPayload,
    MessageType.LIST: ListPayload,
    MessageType.INBOUND: InboundPayload,
}

_missing = set(MessageType) - set(PAYLOAD_MODELS)
if _missing:
    raise RuntimeError(f"no payload model for message types: {sorted(m.value for m in _missing)}")


def parse_payload(message_type: MessageType | str, data: Any) -> _Payload:
    """Validate ``data`` against the model for ``message_type``.

    Raises ``ValidationError`` for unknown types, non-dict payloads and
    missing or malformed fields.
    """
    try:
        mtype = MessageType(message_type)
    except ValueError:
        raise ValidationError(f"unsupported message type: {message_type!r}") from None
    if not isinstance(data, dict):
        raise ValidationError(f"{mtype.value} payload must be an object")
    try:
        return PAYLOAD_MODELS[mtype].model_validate(data)
    except PydanticValidationError as e:
        fields = ", ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"invalid {mtype.value} payload ({fields})") from None


def normalize_payload(message_type: MessageType | str, data: Any) -> dict[str, Any]:
    """Validated payload as a plain dict, phones reduced to digits."""
    return parse_payload(message_type, data).model_dump(mode="json")


# ──────────────────────────────────────────────────────────────
#  Queue rows
# ──────────────────────────────────────────────────────────────

class QueueMessage(BaseModel):
    """A unit of outbound or inbound work."""
    id: str = Field(default_factory=new_id)
    correlation_id: str = Field(default_factory=new_id)
    message_type: MessageType
    payload: dict[str, Any] = {}
    priority: int = 5                          # lower value dispatched first
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    max_retries: int = 5
    scheduled_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    # claim bookkeeping
    claimed_at: Optional[datetime] = None      # refreshed by heartbeat
    claimed_by: Optional[str] = None
    claim_token: Optional[str] = None

    provider_message_id: Optional[str] = None
    metadata: dict[str, Any] = {}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_outbound(self) -> bool:
        return self.message_type in OUTBOUND_TYPES

    @property
    def original_message_id(self) -> str:
        """Id of the logical message; replays point back at the first row."""
        return self.metadata.get("original_message_id") or self.id

    def typed_payload(self) -> _Payload:
        return parse_payload(self.message_type, self.payload)


class FailedMessage(BaseModel):
    """Dead-letter record, one per logical message."""
    id: str = Field(default_factory=new_id)
    original_message_id: str
    correlation_id: str
    message_type: MessageType
    payload: dict[str, Any] = {}
    error_message: str = ""
    failure_count: int = 1
    first_failed_at: datetime = Field(default_factory=utcnow)
    last_failed_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Inbound side — contacts, conversations, stored messages
# ──────────────────────────────────────────────────────────────

class Contact(BaseModel):
    id: str = Field(default_factory=new_id)
    phone: str                                  # digits only
    name: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    contact_id: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    channel: str = "whatsapp"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_CONVERSATION_STATUSES


class InboundMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    conversation_id: str
    provider_message_id: str
    content: str = ""
    content_type: str = "text"                  # text | image | document | audio | video | unknown
    media_url: str = ""
    sender_name: str = ""
    sent_at: Optional[datetime] = None
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Results and views
# ──────────────────────────────────────────────────────────────

class SendResult(BaseModel):
    """Outcome of one handler call. Exactly one of ok / error is meaningful."""
    ok: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    status_code: Optional[int] = None

    @classmethod
    def success(cls, provider_message_id: Optional[str] = None, status_code: Optional[int] = None) -> SendResult:
        return cls(ok=True, provider_message_id=provider_message_id, status_code=status_code)

    @classmethod
    def failure(cls, error: str, retryable: bool, status_code: Optional[int] = None) -> SendResult:
        return cls(ok=False, error=error, retryable=retryable, status_code=status_code)


class QueueStatusRow(BaseModel):
    status: QueueStatus
    count: int
    avg_age_seconds: float = 0.0
    avg_retries: float = 0.0
    oldest_created_at: Optional[datetime] = None
    newest_created_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Gateway webhook body
# ──────────────────────────────────────────────────────────────

class _WebhookPart(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class WebhookText(_WebhookPart):
    message: str = ""


class WebhookMedia(_WebhookPart):
    url: str = ""
    image_url: str = Field("", alias="imageUrl")
    document_url: str = Field("", alias="documentUrl")
    audio_url: str = Field("", alias="audioUrl")
    video_url: str = Field("", alias="videoUrl")
    caption: str = ""
    title: str = ""
    file_name: str = Field("", alias="fileName")
    mime_type: str = Field("", alias="mimeType")

    @property
    def link(self) -> str:
        return self.url or self.image_url or self.document_url or self.audio_url or self.video_url


class WebhookData(_WebhookPart):
    message_id: str = Field(alias="messageId", min_length=1)
    sender: str = Field(alias="from", min_length=1)
    to: str = ""
    text: Optional[WebhookText] = None
    image: Optional[WebhookMedia] = None
    document: Optional[WebhookMedia] = None
    audio: Optional[WebhookMedia] = None
    video: Optional[WebhookMedia] = None
    timestamp: Optional[int] = None
    from_me: bool = Field(False, alias="fromMe")
    sender_name: str = Field("", alias="senderName")
    push_name: str = Field("", alias="pushName")


class WebhookEvent(_WebhookPart):
    event: str
    instance_id: str = Field("", alias="instanceId")
    data: WebhookData
