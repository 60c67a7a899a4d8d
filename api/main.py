"""
FastAPI Application — Enqueue API, gateway webhook and queue monitoring.

Provides:
- Enqueue endpoint for producers (the bot, the attendance UI, scripts)
- Webhook endpoint for the WhatsApp gateway
- Queue status, summary, message lookup and cancellation
- Dead-letter listing and replay
- Health check covering dispatcher and sender

The dispatcher runs inside the API process by default (started by the
lifespan); set ``start_dispatcher=False`` and run scripts/run_dispatcher.py
to scale workers separately.
"""
from __future__ import annotations

import uuid
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from channels.conversation_engine import ConversationEngineClient
from channels.sender import MessageSender
from channels.webhook import WebhookReceiver
from channels.zapi_sender import ZApiSender
from config.logging_conf import configure_logging
from config.settings import Settings, get_settings
from database.session import close_db, init_db
from database.store_base import BaseQueueStore
from database.store_factory import create_store
from job_queue.dispatcher import Dispatcher
from job_queue.enqueuer import Enqueuer
from job_queue.errors import NotFoundError, StoreError, ValidationError
from job_queue.monitoring import QueueMonitor

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Services:
    store: BaseQueueStore
    sender: MessageSender
    engine: Optional[ConversationEngineClient]
    enqueuer: Enqueuer
    dispatcher: Dispatcher
    webhook: WebhookReceiver
    monitor: QueueMonitor


def build_services(settings: Settings = None, store: BaseQueueStore = None,
                   sender: MessageSender = None, engine: ConversationEngineClient = None) -> Services:
    """Wire every component from settings; explicit arguments win."""
    settings = settings or get_settings()
    store = store or create_store({"store_backend": settings.database.store_backend})
    sender = sender or ZApiSender(settings.gateway)
    engine = engine or ConversationEngineClient(settings.engine)
    enqueuer = Enqueuer(store, settings.dispatcher)
    dispatcher = Dispatcher(store, sender, engine, settings.dispatcher)
    return Services(
        store=store,
        sender=sender,
        engine=engine,
        enqueuer=enqueuer,
        dispatcher=dispatcher,
        webhook=WebhookReceiver(store, enqueuer, engine, settings.webhook),
        monitor=QueueMonitor(store, dispatcher),
    )


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class EnqueueRequest(BaseModel):
    message_type: str
    payload: dict[str, Any]
    priority: Optional[int] = None
    correlation_id: Optional[str] = None
    max_retries: Optional[int] = None
    delay_seconds: float = 0
    metadata: dict[str, Any] = {}


class ReplayRequest(BaseModel):
    priority: Optional[int] = None


router = APIRouter()


def _services(request: Request) -> Services:
    return request.app.state.services


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@router.get("/health")
async def health(request: Request):
    services = _services(request)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "dispatcher": await services.dispatcher.health_check(),
        "sender": await services.sender.health_check(),
    }


# ══════════════════════════════════════════════════════════════
#  ENQUEUE
# ══════════════════════════════════════════════════════════════

@router.post("/api/v1/enqueue", status_code=201)
@router.post("/enqueue", status_code=201, include_in_schema=False)
async def enqueue(req: EnqueueRequest, request: Request):
    services = _services(request)
    correlation_id = req.correlation_id or request.headers.get("X-Correlation-ID") or None
    message_id = await services.enqueuer.enqueue(
        req.message_type,
        req.payload,
        priority=req.priority,
        correlation_id=correlation_id,
        max_retries=req.max_retries,
        delay_seconds=req.delay_seconds,
        metadata=req.metadata,
    )
    message = await services.store.get_message(message_id)
    return {"id": message_id, "correlation_id": message.correlation_id if message else correlation_id}


# ══════════════════════════════════════════════════════════════
#  WEBHOOK — WhatsApp gateway
# ══════════════════════════════════════════════════════════════

@router.post("/webhook")
@router.post("/webhooks/whatsapp", include_in_schema=False)
async def whatsapp_webhook(request: Request):
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"success": False, "error": "invalid JSON"})

    ack = await _services(request).webhook.receive(body)
    return JSONResponse(status_code=ack.status_code, content=ack.body())


# ══════════════════════════════════════════════════════════════
#  QUEUE MONITORING
# ══════════════════════════════════════════════════════════════

@router.get("/queue-status")
@router.get("/api/v1/queue/status")
async def queue_status(request: Request):
    rows = await _services(request).monitor.queue_status()
    return [row.model_dump(mode="json") for row in rows]


@router.get("/api/v1/queue/summary")
async def queue_summary(request: Request):
    return await _services(request).monitor.summary()


@router.get("/api/v1/messages/{message_id}")
async def get_message(message_id: str, request: Request):
    message = await _services(request).store.get_message(message_id)
    if message is None:
        raise HTTPException(404, "Message not found")
    return message.model_dump(mode="json", exclude={"claim_token"})


@router.post("/api/v1/messages/{message_id}/cancel")
async def cancel_message(message_id: str, request: Request):
    services = _services(request)
    message = await services.store.get_message(message_id)
    if message is None:
        raise HTTPException(404, "Message not found")
    if not await services.dispatcher.cancel(message_id):
        raise HTTPException(409, f"Message is {message.status.value}, only pending messages can be cancelled")
    return {"id": message_id, "status": "dead", "error_message": "cancelled"}


# ══════════════════════════════════════════════════════════════
#  DEAD LETTERS
# ══════════════════════════════════════════════════════════════

@router.get("/api/v1/failed-messages")
async def list_failed(request: Request, limit: int = Query(50, ge=1, le=500)):
    failed = await _services(request).monitor.list_failed(limit)
    return [f.model_dump(mode="json") for f in failed]


@router.post("/api/v1/failed-messages/{failed_id}/replay", status_code=201)
async def replay_failed(failed_id: str, request: Request, req: Optional[ReplayRequest] = None):
    message_id = await _services(request).enqueuer.replay_failed(
        failed_id, priority=req.priority if req else None)
    return {"id": message_id, "failed_id": failed_id}


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(services: Services = None, settings: Settings = None,
               start_dispatcher: bool = True) -> FastAPI:
    """
    Build the application.

    With ``services`` given (tests), nothing is created at startup and the
    routes work without running the lifespan.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.logging.level, settings.logging.json)
        for problem in settings.validate():
            logger.warning("config_problem", problem=problem)

        if settings.database.store_backend == "sql":
            await init_db(settings.database.url)
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)

        dispatcher = app.state.services.dispatcher
        if start_dispatcher:
            await dispatcher.start()

        logger.info("zapi_dispatch_started",
                    store=type(app.state.services.store).__name__,
                    inbound_mode=settings.webhook.inbound_mode,
                    workers=settings.dispatcher.worker_pool_size)
        yield

        await dispatcher.stop()
        await app.state.services.sender.close()
        if app.state.services.engine is not None:
            await app.state.services.engine.close()
        if settings.database.store_backend == "sql":
            await close_db()
        logger.info("zapi_dispatch_stopped")

    app = FastAPI(
        title="zapi-dispatch",
        description="Asynchronous WhatsApp delivery queue",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.middleware("http")
    async def correlation_context(request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id, path=request.url.path)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"error": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError):
        logger.error("api_store_unavailable", error=str(exc))
        return JSONResponse(status_code=503, content={"error": "store unavailable"})

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"error": str(exc)})

    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
