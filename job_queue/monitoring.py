"""Monitoring view — read-only aggregates over the queue store."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseQueueStore
from models.schemas import FailedMessage, QueueStatus, QueueStatusRow, utcnow


class QueueMonitor:
    """
    Aggregate queue health per status.

    Reads are not transactional across calls; figures may be a moment stale
    while the dispatcher is running.
    """

    def __init__(self, store: BaseQueueStore, dispatcher=None):
        self.store = store
        self.dispatcher = dispatcher

    async def queue_status(self, now: Optional[datetime] = None) -> list[QueueStatusRow]:
        return await self.store.status_rows(now or utcnow())

    async def summary(self, now: Optional[datetime] = None) -> dict[str, Any]:
        now = now or utcnow()
        rows = await self.store.status_rows(now)
        counts = {status.value: 0 for status in QueueStatus}
        for row in rows:
            counts[row.status.value] = row.count

        oldest_pending = next(
            (r.oldest_created_at for r in rows if r.status == QueueStatus.PENDING), None)
        return {
            "total": sum(counts.values()),
            "by_status": counts,
            "eligible_now": await self.store.count_eligible(now),
            "dead_letters": await self.store.count_failed(),
            "oldest_pending_at": oldest_pending.isoformat() if oldest_pending else None,
            "dispatcher": self.dispatcher.stats if self.dispatcher is not None else None,
            "generated_at": now.isoformat(),
        }

    async def list_failed(self, limit: int = 50) -> list[FailedMessage]:
        return await self.store.list_failed(limit=max(1, min(limit, 500)))
