"""
Z-API Sender — WhatsApp delivery through the Z-API HTTP gateway.

    POST {base_url}/instances/{instance_id}/token/{token}/send-<kind>
    Client-Token: <client token>        (when configured)

One endpoint per outbound message type. The instance token travels in the
URL path, so URLs are redacted before they reach a log line or an
error_message column.

Classification of a failed call:
  - network error, timeout, 5xx, 429  → retryable
  - any other 4xx                     → permanent
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from channels.sender import MessageSender
from config.settings import GatewayConfig, get_settings
from models.schemas import (
    AudioPayload, ButtonPayload, DocumentPayload, ImagePayload, ListPayload,
    MessageType, SendResult, TextPayload, VideoPayload,
)

logger = structlog.get_logger()

ENDPOINTS: dict[MessageType, str] = {
    MessageType.TEXT: "send-text",
    MessageType.IMAGE: "send-image",
    MessageType.DOCUMENT: "send-document",
    MessageType.AUDIO: "send-audio",
    MessageType.VIDEO: "send-video",
    MessageType.BUTTON: "send-button-list",
    MessageType.LIST: "send-list",
}


def build_body(message_type: MessageType, payload: Any) -> dict[str, Any]:
    """Gateway JSON body for a validated payload model."""
    if isinstance(payload, TextPayload):
        return {"phone": payload.phone, "message": payload.message}
    if isinstance(payload, ImagePayload):
        return {"phone": payload.phone, "image": payload.image, "caption": payload.caption}
    if isinstance(payload, DocumentPayload):
        return {"phone": payload.phone, "document": payload.document, "filename": payload.filename}
    if isinstance(payload, AudioPayload):
        return {"phone": payload.phone, "audio": payload.audio}
    if isinstance(payload, VideoPayload):
        return {"phone": payload.phone, "video": payload.video, "caption": payload.caption}
    if isinstance(payload, ButtonPayload):
        return {"phone": payload.phone, "message": payload.message,
                "buttonList": payload.buttons}
    if isinstance(payload, ListPayload):
        return {"phone": payload.phone, "message": payload.message,
                "buttonText": payload.button_text, "sections": payload.sections}
    raise ValueError(f"no gateway body for {message_type.value}")


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class ZApiSender(MessageSender):
    """Sender for the Z-API WhatsApp gateway."""

    name = "zapi"

    def __init__(self, config: GatewayConfig = None, client: Optional[httpx.AsyncClient] = None,
                 **resilience):
        self.config = config or get_settings().gateway
        resilience.setdefault("rate_per_second", self.config.rate_per_second)
        resilience.setdefault("burst", self.config.burst)
        super().__init__(**resilience)
        self.client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.config.client_token:
                headers["Client-Token"] = self.config.client_token
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url.rstrip("/"),
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
            self._owns_client = True
        return self.client

    def _path(self, endpoint: str) -> str:
        return f"/instances/{self.config.instance_id}/token/{self.config.token}/{endpoint}"

    def redact(self, text: str) -> str:
        """Strip instance token and client token from any string."""
        for secret in (self.config.token, self.config.client_token):
            if secret:
                text = text.replace(secret, "***")
        return text

    async def _do_send(self, message_type: MessageType, payload: Any) -> SendResult:
        endpoint = ENDPOINTS.get(message_type)
        if endpoint is None:
            return SendResult.failure(f"unsupported message type: {message_type.value}", retryable=False)

        body = build_body(message_type, payload)
        client = await self._get_client()
        headers = {}
        if self.config.client_token and "Client-Token" not in client.headers:
            headers["Client-Token"] = self.config.client_token

        try:
            response = await client.post(self._path(endpoint), json=body, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("zapi_timeout", endpoint=endpoint, error=self.redact(str(e)))
            return SendResult.failure(f"timeout: {self.redact(str(e))}", retryable=True)
        except httpx.HTTPError as e:
            logger.warning("zapi_network_error", endpoint=endpoint, error=self.redact(str(e)))
            return SendResult.failure(f"network error: {self.redact(str(e))}", retryable=True)

        if response.is_success:
            data = self._json(response)
            provider_id = data.get("messageId") or data.get("id") or data.get("zaapId")
            logger.info("zapi_message_sent", endpoint=endpoint, phone=payload.phone,
                        provider_message_id=provider_id)
            return SendResult.success(provider_message_id=provider_id, status_code=response.status_code)

        retryable = is_retryable_status(response.status_code)
        detail = self.redact(self._error_detail(response))
        logger.warning("zapi_send_failed", endpoint=endpoint,
                       status_code=response.status_code, retryable=retryable, error=detail)
        return SendResult.failure(
            f"HTTP {response.status_code}: {detail}",
            retryable=retryable,
            status_code=response.status_code,
        )

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _error_detail(self, response: httpx.Response) -> str:
        data = self._json(response)
        detail = data.get("error") or data.get("message") or response.text or response.reason_phrase
        return str(detail)[:500]

    async def close(self) -> None:
        if self.client and self._owns_client:
            await self.client.aclose()
