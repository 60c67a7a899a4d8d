"""
Enqueuer — the only producer of ``pending`` rows.

    enqueue(type, payload) → validate → coalesce? → insert pending row → id

Nothing is written for an invalid payload. A caller that re-submits the same
logical message (same correlation id, type and normalized payload) while the
first one is still pending or processing gets the existing id back instead
of a second row.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from config.settings import DispatcherConfig, get_settings
from database.store_base import BaseQueueStore
from job_queue.errors import NotFoundError, ValidationError
from models.schemas import (
    MessageType, QueueMessage, new_id, normalize_payload, utcnow,
)

logger = structlog.get_logger()


class Enqueuer:
    def __init__(self, store: BaseQueueStore, config: DispatcherConfig = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.config = config or get_settings().dispatcher
        self.clock = clock

    async def enqueue(
        self,
        message_type: MessageType | str,
        payload: dict[str, Any],
        priority: Optional[int] = None,
        correlation_id: Optional[str] = None,
        max_retries: Optional[int] = None,
        delay_seconds: float = 0,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Validate and persist one message. Returns the queue row id.

        Raises ValidationError (nothing written) or StoreError.
        """
        normalized = normalize_payload(message_type, payload)
        mtype = MessageType(message_type)

        priority = self.config.default_priority if priority is None else priority
        max_retries = self.config.max_retries if max_retries is None else max_retries
        if not isinstance(priority, int) or priority < 0:
            raise ValidationError(f"priority must be a non-negative integer, got {priority!r}")
        if not isinstance(max_retries, int) or max_retries < 0:
            raise ValidationError(f"max_retries must be a non-negative integer, got {max_retries!r}")
        if delay_seconds < 0:
            raise ValidationError("delay_seconds must not be negative")

        if correlation_id:
            for existing in await self.store.find_active(correlation_id, mtype):
                if existing.payload == normalized:
                    logger.info("enqueue_coalesced", message_id=existing.id,
                                correlation_id=correlation_id, message_type=mtype.value)
                    return existing.id

        now = self.clock()
        message = QueueMessage(
            correlation_id=correlation_id or new_id(),
            message_type=mtype,
            payload=normalized,
            priority=priority,
            max_retries=max_retries,
            scheduled_at=now + timedelta(seconds=delay_seconds),
            created_at=now,
            updated_at=now,
            metadata=dict(metadata or {}),
        )
        await self.store.insert_message(message)
        logger.info("message_enqueued", message_id=message.id,
                    correlation_id=message.correlation_id,
                    message_type=mtype.value, priority=priority,
                    delay_seconds=delay_seconds)
        return message.id

    async def enqueue_many(self, items: Iterable[dict[str, Any]]) -> list[str]:
        """Enqueue each item (keyword arguments of ``enqueue``) in order."""
        return [await self.enqueue(**item) for item in items]

    async def replay_failed(self, failed_id: str, priority: Optional[int] = None) -> str:
        """
        Re-submit a dead-lettered message as a fresh pending row.

        The new row keeps the correlation id and points back at the logical
        message, so dying again bumps the same dead-letter record.
        """
        failed = await self.store.get_failed(failed_id)
        if failed is None:
            raise NotFoundError(f"failed message {failed_id} not found")

        message_id = await self.enqueue(
            failed.message_type,
            failed.payload,
            priority=priority,
            correlation_id=failed.correlation_id,
            metadata={
                "original_message_id": failed.original_message_id,
                "replayed_from": failed.id,
                "replay_of_failure": failed.failure_count,
            },
        )
        logger.info("failed_message_replayed", failed_id=failed.id,
                    message_id=message_id, correlation_id=failed.correlation_id)
        return message_id
