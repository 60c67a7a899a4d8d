"""
Conversation Engine client — hands inbound customer messages to the bot.

    POST {engine.url}
    Authorization: Bearer {engine.token}
    {"conversaId": "...", "mensagemCliente": "..."}   existing conversation
    {"conversaId": "...", "iniciarFluxo": true}        new conversation

Two entry points:
  - send()        one attempt, never raises; used by the dispatcher for
                  queued ``inbound`` rows, which get the queue's own retries
  - notify_now()  short tenacity retry for the webhook's direct mode;
                  raises after the last attempt so the caller can fall back
                  to the queue
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    retry, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from config.settings import EngineConfig, get_settings
from job_queue.errors import (
    PermanentProviderError, TransientProviderError, ValidationError,
)
from models.schemas import InboundPayload, MessageType, SendResult, parse_payload

logger = structlog.get_logger()


class ConversationEngineClient:
    """HTTP client for the conversation engine endpoint."""

    name = "conversation_engine"

    def __init__(self, config: EngineConfig = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_settings().engine
        self.client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            self.client = httpx.AsyncClient(headers=headers, timeout=self.config.timeout_seconds)
            self._owns_client = True
        return self.client

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        if not self.config.url:
            raise PermanentProviderError("conversation engine url not configured")

        client = await self._get_client()
        headers = {}
        if self.config.token and "Authorization" not in client.headers:
            headers["Authorization"] = f"Bearer {self.config.token}"

        try:
            response = await client.post(self.config.url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"engine timeout: {e}") from e
        except httpx.HTTPError as e:
            raise TransientProviderError(f"engine unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(
                f"engine HTTP {response.status_code}", status_code=response.status_code)
        if response.is_error:
            raise PermanentProviderError(
                f"engine HTTP {response.status_code}: {response.text[:300]}",
                status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def send(self, message_type: MessageType | str, payload: dict[str, Any]) -> SendResult:
        try:
            model = parse_payload(message_type, payload)
        except ValidationError as e:
            return SendResult.failure(str(e), retryable=False)
        if not isinstance(model, InboundPayload):
            return SendResult.failure(f"engine cannot handle {message_type}", retryable=False)

        try:
            await self._post(model.engine_body())
        except TransientProviderError as e:
            logger.warning("engine_call_failed", conversation_id=model.conversation_id,
                           retryable=True, error=str(e))
            return SendResult.failure(str(e), retryable=True, status_code=e.status_code)
        except PermanentProviderError as e:
            logger.warning("engine_call_failed", conversation_id=model.conversation_id,
                           retryable=False, error=str(e))
            return SendResult.failure(str(e), retryable=False, status_code=e.status_code)

        logger.info("engine_notified", conversation_id=model.conversation_id,
                    start_flow=model.start_flow)
        return SendResult.success()

    @retry(
        retry=retry_if_exception_type(TransientProviderError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        reraise=True,
    )
    async def notify_now(self, payload: InboundPayload) -> dict[str, Any]:
        return await self._post(payload.engine_body())

    async def health_check(self) -> dict[str, Any]:
        return {"engine": self.name, "configured": bool(self.config.url)}

    async def close(self) -> None:
        if self.client and self._owns_client:
            await self.client.aclose()
