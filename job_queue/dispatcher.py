"""
Dispatcher — Claims due rows and drives them to a terminal state.

Runs a fixed pool of asyncio worker tasks plus one reaper task inside the
application process. For horizontal scaling, run more processes against the
same SQL store; the conditional-update claim guarantees each row is owned by
exactly one worker at a time.

Topology:
  ┌──────────┐  insert   ┌────────────────┐  claim   ┌────────────┐
  │ Enqueuer │──────────▶│ pending rows    │─────────▶│  Worker(s) │
  └──────────┘           └───────▲────────┘          └─────┬──────┘
                                 │ retry (backoff)          │ send
                                 └──────────────────────────┤
                         ┌────────────────┐                 │
                         │ done            │◀── success ────┤
                         └────────────────┘                 │
                         ┌────────────────┐                 │
                         │ dead + DLQ      │◀── exhausted / ┘
                         └────────────────┘    permanent
                         ┌────────────────┐
                         │ Reaper          │── stale processing → retry path
                         └────────────────┘

Result interpretation:
  ok                                         → done
  retryable and retry_count + 1 <= max       → pending, retry_count + 1,
                                               scheduled_at = now + backoff
  retryable and retries exhausted            → dead + FailedMessage
  not retryable (4xx, validation)            → dead + FailedMessage, no retry used
"""
from __future__ import annotations

import asyncio
import os
import socket
import structlog
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from config.settings import DispatcherConfig, get_settings
from database.store_base import BaseQueueStore
from job_queue.backoff import BackoffPolicy
from job_queue.errors import ClaimConflictError, StoreError
from models.schemas import MessageType, QueueMessage, SendResult, utcnow

logger = structlog.get_logger()


@dataclass
class DispatcherStats:
    claimed: int = 0
    done: int = 0
    retried: int = 0
    dead: int = 0
    claim_conflicts: int = 0
    claims_lost: int = 0
    reaped: int = 0
    store_errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class Dispatcher:
    """
    Usage:
        dispatcher = Dispatcher(store, sender, engine)
        await dispatcher.start()       # spawns workers + reaper, returns at once
        ...
        await dispatcher.stop()        # graceful: in-flight sends finish first

        await dispatcher.run_once()    # drain everything due now (scripts, tests)
    """

    def __init__(
        self,
        store: BaseQueueStore,
        sender,
        engine=None,
        config: DispatcherConfig = None,
        backoff: Optional[BackoffPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        node_name: str = "",
    ):
        self.store = store
        self.sender = sender
        self.engine = engine
        self.config = config or get_settings().dispatcher
        self.backoff = backoff or BackoffPolicy.from_config(self.config)
        self.clock = clock
        self.node_name = node_name or f"{socket.gethostname()}-{os.getpid()}"
        self._stats = DispatcherStats()
        self._tasks: list[asyncio.Task] = []
        self._stop_event = asyncio.Event()
        self._running = False

    # ── Lifecycle ─────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, int]:
        return self._stats.to_dict()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        for i in range(self.config.worker_pool_size):
            worker_id = f"{self.node_name}-w{i}"
            self._tasks.append(asyncio.create_task(self._worker_loop(worker_id), name=worker_id))
        self._tasks.append(asyncio.create_task(self._reaper_loop(), name=f"{self.node_name}-reaper"))
        logger.info("dispatcher_started", workers=self.config.worker_pool_size,
                    node=self.node_name)

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop claiming, let in-flight messages finish, then cancel stragglers."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        done, pending = await asyncio.wait(self._tasks, timeout=timeout) if self._tasks else (set(), set())
        for task in pending:
            task.cancel()
        for task in pending:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("dispatcher_stopped", stats=self.stats, cancelled=len(pending))

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when stop() is called."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ── Worker loop ───────────────────────────────────────────

    async def _worker_loop(self, worker_id: str) -> None:
        interval = self.config.poll_interval_seconds
        while self._running:
            try:
                processed = await self._claim_and_process(worker_id)
            except StoreError as e:
                self._stats.store_errors += 1
                logger.warning("dispatcher_store_error", worker=worker_id, error=str(e))
                await self._sleep(self.config.store_error_backoff_seconds)
                continue
            except Exception:
                logger.exception("dispatcher_worker_error", worker=worker_id)
                await self._sleep(interval)
                continue

            if processed:
                interval = self.config.poll_interval_seconds
                continue
            await self._sleep(interval)
            interval = min(interval * 2, self.config.max_poll_interval_seconds)

    async def _claim_and_process(self, worker_id: str) -> bool:
        message = await self.claim_next(worker_id)
        if message is None:
            return False
        await self.process(message)
        return True

    async def claim_next(self, worker_id: str) -> Optional[QueueMessage]:
        """Claim the first due candidate nobody else got to. None if the queue is idle."""
        now = self.clock()
        candidates = await self.store.eligible(
            now,
            limit=max(10, self.config.worker_pool_size * 2),
            starvation_window=self.config.starvation_window_seconds,
            serialize_correlation=self.config.serialize_correlation,
        )
        for candidate in candidates:
            try:
                message = await self.store.claim(
                    candidate.id, worker_id, now,
                    serialize_correlation=self.config.serialize_correlation,
                )
            except ClaimConflictError:
                self._stats.claim_conflicts += 1
                continue
            self._stats.claimed += 1
            return message
        return None

    # ── Processing ────────────────────────────────────────────

    def handler_for(self, message_type: MessageType):
        if message_type == MessageType.INBOUND:
            return self.engine
        return self.sender

    async def process(self, message: QueueMessage) -> SendResult:
        """Dispatch one claimed message and record the outcome."""
        with structlog.contextvars.bound_contextvars(
            correlation_id=message.correlation_id,
            message_id=message.id,
            message_type=message.message_type.value,
        ):
            logger.info("message_processing", attempt=message.retry_count + 1,
                        max_retries=message.max_retries, worker=message.claimed_by)

            heartbeat = asyncio.create_task(self._heartbeat_loop(message))
            try:
                result = await self._dispatch(message)
            finally:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass

            await self._resolve(message, result)
            return result

    async def _dispatch(self, message: QueueMessage) -> SendResult:
        handler = self.handler_for(message.message_type)
        if handler is None:
            return SendResult.failure(
                f"no handler configured for {message.message_type.value}", retryable=False)
        try:
            return await handler.send(message.message_type, message.payload)
        except Exception as e:
            # handlers are not supposed to raise; treat anything that escapes as transient
            logger.exception("handler_raised", handler=getattr(handler, "name", type(handler).__name__))
            return SendResult.failure(f"{type(e).__name__}: {e}", retryable=True)

    async def _heartbeat_loop(self, message: QueueMessage) -> None:
        interval = max(self.config.claim_timeout_seconds / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                alive = await self.store.heartbeat(message.id, message.claim_token, self.clock())
            except StoreError as e:
                logger.warning("heartbeat_failed", error=str(e))
                continue
            if not alive:
                logger.warning("heartbeat_claim_lost")
                return

    async def _resolve(self, message: QueueMessage, result: SendResult) -> None:
        now = self.clock()
        token = message.claim_token or ""

        if result.ok:
            owned = await self.store.complete(message.id, token, now,
                                              provider_message_id=result.provider_message_id)
            if owned:
                self._stats.done += 1
                logger.info("message_done", provider_message_id=result.provider_message_id)
            else:
                self._claim_lost(message, "done")
            return

        error = result.error or "unknown error"
        next_attempt = message.retry_count + 1
        if result.retryable and next_attempt <= message.max_retries:
            run_at = self.backoff.next_run_at(next_attempt, now)
            owned = await self.store.schedule_retry(
                message.id, token,
                retry_count=next_attempt, scheduled_at=run_at, error=error, now=now,
            )
            if owned:
                self._stats.retried += 1
                logger.warning("message_retry_scheduled", retry_count=next_attempt,
                               scheduled_at=run_at.isoformat(), error=error)
            else:
                self._claim_lost(message, "retry")
            return

        if result.retryable:
            error = f"retries exhausted ({message.retry_count}/{message.max_retries}): {error}"
        failed = await self.store.bury(message.id, token, error, now)
        if failed is not None:
            self._stats.dead += 1
            logger.error("message_dead_lettered", failed_id=failed.id,
                         failure_count=failed.failure_count, retryable=result.retryable,
                         error=error)
        else:
            self._claim_lost(message, "dead")

    def _claim_lost(self, message: QueueMessage, outcome: str) -> None:
        self._stats.claims_lost += 1
        logger.warning("claim_lost", outcome=outcome, worker=message.claimed_by)

    # ── Crash recovery ────────────────────────────────────────

    async def reap_stale(self) -> int:
        """Send processing rows with an expired claim down the retry path."""
        cutoff = self.clock() - timedelta(seconds=self.config.claim_timeout_seconds)
        stale = await self.store.find_stale(cutoff)
        for message in stale:
            with structlog.contextvars.bound_contextvars(
                correlation_id=message.correlation_id, message_id=message.id,
            ):
                logger.warning("claim_expired", claimed_by=message.claimed_by,
                               claimed_at=message.claimed_at.isoformat() if message.claimed_at else None)
                await self._resolve(message, SendResult.failure(
                    f"claim by {message.claimed_by} timed out", retryable=True))
        self._stats.reaped += len(stale)
        return len(stale)

    async def _reaper_loop(self) -> None:
        interval = max(self.config.claim_timeout_seconds / 3, 0.05)
        while self._running:
            try:
                await self.reap_stale()
            except StoreError as e:
                self._stats.store_errors += 1
                logger.warning("reaper_store_error", error=str(e))
            except Exception:
                logger.exception("reaper_error")
            await self._sleep(interval)

    # ── Operations ────────────────────────────────────────────

    async def run_once(self, worker_id: str = "", max_messages: Optional[int] = None) -> int:
        """Claim and resolve until nothing is due. Returns the number processed."""
        worker_id = worker_id or f"{self.node_name}-once"
        processed = 0
        while max_messages is None or processed < max_messages:
            if not await self._claim_and_process(worker_id):
                break
            processed += 1
        return processed

    async def cancel(self, message_id: str) -> bool:
        """Cancel a pending message. Rows already processing are not cancellable."""
        cancelled = await self.store.cancel(message_id, self.clock())
        logger.info("message_cancel_requested", message_id=message_id, cancelled=cancelled)
        return cancelled

    async def health_check(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "workers": self.config.worker_pool_size,
            "stats": self.stats,
        }
