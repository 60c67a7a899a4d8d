"""Tests for payload validation, the type registry and webhook parsing."""
import pytest

from job_queue.errors import ValidationError
from models.schemas import (
    MessageType, PAYLOAD_MODELS, QueueMessage, QueueStatus,
    InboundPayload, WebhookEvent, normalize_payload, normalize_phone, parse_payload,
)


class TestPayloadRegistry:
    def test_every_message_type_has_a_model(self):
        assert set(PAYLOAD_MODELS) == set(MessageType)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValidationError, match="unsupported message type"):
            parse_payload("sticker", {"phone": "5511987654321"})

    def test_non_dict_payload_rejected(self):
        with pytest.raises(ValidationError, match="must be an object"):
            parse_payload(MessageType.TEXT, "hello")


class TestOutboundPayloads:
    def test_phone_normalized_to_digits(self, text_payload):
        data = normalize_payload(MessageType.TEXT, text_payload)
        assert data["phone"] == "5511987654321"
        assert data["message"] == "Seu pedido saiu para entrega"

    @pytest.mark.parametrize("phone", ["123", "", "abc", "1234567890123456"])
    def test_bad_phone_rejected(self, phone):
        with pytest.raises(ValidationError, match="phone"):
            parse_payload(MessageType.TEXT, {"phone": phone, "message": "hi"})

    def test_blank_text_rejected(self):
        with pytest.raises(ValidationError, match="message"):
            parse_payload(MessageType.TEXT, {"phone": "5511987654321", "message": "   "})

    def test_image_requires_url(self):
        with pytest.raises(ValidationError, match="image"):
            parse_payload(MessageType.IMAGE, {"phone": "5511987654321", "caption": "x"})

    def test_document_filename_default(self):
        data = normalize_payload(MessageType.DOCUMENT,
                                 {"phone": "5511987654321", "document": "https://f/x.pdf"})
        assert data["filename"] == "document"

    def test_document_accepts_file_name_alias(self):
        data = normalize_payload(MessageType.DOCUMENT, {
            "phone": "5511987654321", "document": "https://f/x.pdf", "fileName": "boleto.pdf"})
        assert data["filename"] == "boleto.pdf"

    def test_button_requires_buttons(self):
        with pytest.raises(ValidationError, match="buttons"):
            parse_payload(MessageType.BUTTON, {"phone": "5511987654321", "message": "Escolha", "buttons": []})

    def test_list_button_text_default(self):
        payload = parse_payload(MessageType.LIST, {
            "phone": "5511987654321", "message": "Opções",
            "sections": [{"title": "A", "rows": [{"id": "1", "title": "Um"}]}],
        })
        assert payload.button_text == "Menu"

    def test_extra_fields_ignored(self):
        data = normalize_payload(MessageType.AUDIO, {
            "phone": "5511987654321", "audio": "https://a/x.ogg", "unexpected": True})
        assert "unexpected" not in data


class TestInboundPayload:
    def test_new_conversation_starts_flow(self):
        payload = InboundPayload(conversation_id="conv1", start_flow=True)
        assert payload.engine_body() == {"conversaId": "conv1", "iniciarFluxo": True}

    def test_existing_conversation_forwards_text(self):
        payload = parse_payload(MessageType.INBOUND, {"conversaId": "conv1", "mensagemCliente": "oi"})
        assert payload.engine_body() == {"conversaId": "conv1", "mensagemCliente": "oi"}

    def test_needs_message_or_flow(self):
        with pytest.raises(ValidationError):
            parse_payload(MessageType.INBOUND, {"conversation_id": "conv1"})

    def test_roundtrip_through_field_names(self):
        dumped = InboundPayload(conversation_id="c", message="oi").model_dump()
        assert parse_payload(MessageType.INBOUND, dumped).message == "oi"


class TestQueueMessage:
    def test_defaults(self):
        msg = QueueMessage(message_type=MessageType.TEXT, payload={})
        assert msg.status == QueueStatus.PENDING
        assert msg.retry_count == 0
        assert msg.priority == 5
        assert msg.original_message_id == msg.id
        assert not msg.is_terminal
        assert msg.is_outbound

    def test_replay_points_at_original(self):
        msg = QueueMessage(message_type=MessageType.TEXT, metadata={"original_message_id": "first"})
        assert msg.original_message_id == "first"

    def test_terminal_statuses(self):
        for status in (QueueStatus.DONE, QueueStatus.FAILED, QueueStatus.DEAD):
            assert QueueMessage(message_type=MessageType.TEXT, status=status).is_terminal


class TestWebhookEvent:
    def test_parse_text_event(self):
        event = WebhookEvent.model_validate({
            "event": "message-received",
            "instanceId": "INST1",
            "data": {
                "messageId": "3EB0ABC",
                "from": "5511987654321",
                "fromMe": False,
                "senderName": "Maria",
                "timestamp": 1700000000000,
                "text": {"message": "Olá"},
            },
        })
        assert event.data.message_id == "3EB0ABC"
        assert event.data.sender == "5511987654321"
        assert event.data.text.message == "Olá"
        assert event.data.from_me is False

    def test_media_link(self):
        event = WebhookEvent.model_validate({
            "event": "message-received",
            "data": {"messageId": "m1", "from": "5511987654321",
                     "image": {"imageUrl": "https://cdn/x.jpg", "caption": "foto", "mimeType": "image/jpeg"}},
        })
        assert event.data.image.link == "https://cdn/x.jpg"
        assert event.data.image.mime_type == "image/jpeg"

    def test_missing_message_id_invalid(self):
        from pydantic import ValidationError as PydanticValidationError
        with pytest.raises(PydanticValidationError):
            WebhookEvent.model_validate({"event": "message-received", "data": {"from": "551199"}})


def test_normalize_phone():
    assert normalize_phone("+55 11 9 8765-4321") == "5511987654321"
    assert normalize_phone(None) == ""
