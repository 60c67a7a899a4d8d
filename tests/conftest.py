"""Shared test fixtures for the delivery queue."""
from typing import Any

import pytest
import pytest_asyncio

from config.settings import DispatcherConfig, GatewayConfig, EngineConfig, WebhookConfig
from tests.doubles import FakeClock


@pytest.fixture(autouse=True)
def _reset_singletons(monkeypatch):
    """Keep tests independent of a local config/settings.yaml and each other."""
    from config.settings import reset_settings
    from database.store_factory import reset_store

    monkeypatch.setenv("ZAPI_DISPATCH_CONFIG", "/nonexistent/settings.yaml")
    for var in ("STORE_BACKEND", "DATABASE_URL", "INBOUND_MODE", "MAX_RETRIES"):
        monkeypatch.delenv(var, raising=False)
    reset_settings()
    reset_store()
    yield
    reset_settings()
    reset_store()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher_config() -> DispatcherConfig:
    return DispatcherConfig(
        worker_pool_size=4,
        max_retries=3,
        backoff_base_seconds=5,
        backoff_max_seconds=300,
        backoff_jitter_ratio=0.2,
        claim_timeout_seconds=120,
        poll_interval_seconds=0.01,
        max_poll_interval_seconds=0.05,
        store_error_backoff_seconds=0.01,
        starvation_window_seconds=300,
    )


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(
        base_url="https://zapi.test",
        instance_id="INST1",
        token="secret-token",
        client_token="client-secret",
        timeout_seconds=5,
        rate_per_second=0,
    )


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(url="https://engine.test/chatbot-engine", token="engine-secret", timeout_seconds=5)


@pytest.fixture
def webhook_config() -> WebhookConfig:
    return WebhookConfig(inbound_mode="queue", inbound_priority=1, default_contact_name="Customer")


@pytest.fixture
def memory_store():
    from database.store_memory import InMemoryQueueStore
    return InMemoryQueueStore()


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    from database.session import close_db, init_db
    from database.store import SqlQueueStore

    await init_db(f"sqlite:///{tmp_path}/queue.db")
    yield SqlQueueStore()
    await close_db()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    """Every backend must satisfy the same contract."""
    if request.param == "memory":
        from database.store_memory import InMemoryQueueStore
        yield InMemoryQueueStore()
        return

    from database.session import close_db, init_db
    from database.store import SqlQueueStore

    await init_db(f"sqlite:///{tmp_path}/queue.db")
    yield SqlQueueStore()
    await close_db()


@pytest.fixture
def text_payload() -> dict[str, Any]:
    return {"phone": "+55 (11) 98765-4321", "message": "Seu pedido saiu para entrega"}
