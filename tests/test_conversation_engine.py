"""Tests for the conversation engine client."""
import json

import httpx
import pytest
from tenacity import wait_none

from channels.conversation_engine import ConversationEngineClient
from config.settings import EngineConfig
from job_queue.errors import PermanentProviderError, TransientProviderError
from models.schemas import InboundPayload, MessageType


def make_client(engine_config, responses):
    """Engine client whose transport plays back ``responses`` in order."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        item = responses[min(len(seen), len(responses)) - 1]
        if isinstance(item, Exception):
            raise item
        return item

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ConversationEngineClient(engine_config, client=client), seen


@pytest.fixture(autouse=True)
def no_tenacity_wait(monkeypatch):
    monkeypatch.setattr(ConversationEngineClient.notify_now.retry, "wait", wait_none())


class TestSend:
    @pytest.mark.asyncio
    async def test_existing_conversation_body(self, engine_config):
        engine, seen = make_client(engine_config, [httpx.Response(200, json={"ok": True})])

        result = await engine.send(MessageType.INBOUND, {"conversation_id": "conv1", "message": "oi"})

        assert result.ok
        assert str(seen[0].url) == "https://engine.test/chatbot-engine"
        assert seen[0].headers["Authorization"] == "Bearer engine-secret"
        assert json.loads(seen[0].content) == {"conversaId": "conv1", "mensagemCliente": "oi"}

    @pytest.mark.asyncio
    async def test_new_conversation_starts_flow(self, engine_config):
        engine, seen = make_client(engine_config, [httpx.Response(204)])
        result = await engine.send("inbound", {"conversation_id": "conv1", "start_flow": True})
        assert result.ok
        assert json.loads(seen[0].content) == {"conversaId": "conv1", "iniciarFluxo": True}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response,retryable", [
        (httpx.Response(500), True),
        (httpx.Response(429), True),
        (httpx.Response(400, text="conversa inexistente"), False),
        (httpx.Response(404), False),
        (httpx.ConnectError("refused"), True),
        (httpx.ReadTimeout("slow"), True),
    ])
    async def test_failure_classification(self, engine_config, response, retryable):
        engine, _ = make_client(engine_config, [response])
        result = await engine.send(MessageType.INBOUND, {"conversation_id": "c", "message": "oi"})
        assert not result.ok
        assert result.retryable is retryable

    @pytest.mark.asyncio
    async def test_invalid_payload(self, engine_config):
        engine, seen = make_client(engine_config, [httpx.Response(200)])
        result = await engine.send(MessageType.INBOUND, {"message": "oi"})
        assert not result.ok and not result.retryable
        assert seen == []

    @pytest.mark.asyncio
    async def test_outbound_type_rejected(self, engine_config):
        engine, seen = make_client(engine_config, [httpx.Response(200)])
        result = await engine.send(MessageType.TEXT, {"phone": "5511987654321", "message": "oi"})
        assert not result.ok and not result.retryable
        assert seen == []

    @pytest.mark.asyncio
    async def test_unconfigured_url_is_permanent(self):
        engine = ConversationEngineClient(EngineConfig(url=""))
        result = await engine.send(MessageType.INBOUND, {"conversation_id": "c", "message": "oi"})
        assert not result.ok and not result.retryable
        assert (await engine.health_check())["configured"] is False


class TestNotifyNow:
    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self, engine_config):
        engine, seen = make_client(engine_config, [
            httpx.Response(503), httpx.ConnectError("refused"), httpx.Response(200, json={"status": "ok"}),
        ])
        data = await engine.notify_now(InboundPayload(conversation_id="c", message="oi"))
        assert data == {"status": "ok"}
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_three_attempts(self, engine_config):
        engine, seen = make_client(engine_config, [httpx.Response(502)])
        with pytest.raises(TransientProviderError):
            await engine.notify_now(InboundPayload(conversation_id="c", message="oi"))
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_permanent_not_retried(self, engine_config):
        engine, seen = make_client(engine_config, [httpx.Response(400)])
        with pytest.raises(PermanentProviderError):
            await engine.notify_now(InboundPayload(conversation_id="c", start_flow=True))
        assert len(seen) == 1
