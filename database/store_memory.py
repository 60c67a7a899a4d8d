"""
InMemoryQueueStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlQueueStore
  - Mutations serialized by one asyncio.Lock, so every conditional
    transition is atomic with respect to all workers of the event loop
  - All data lost on process restart; single process only

Callers always receive copies; mutating a returned model never changes the
stored row.
"""
from __future__ import annotations

import asyncio
import heapq
import uuid
import structlog
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from database.store_base import BaseQueueStore
from job_queue.errors import ClaimConflictError
from models.schemas import (
    Contact, Conversation, ConversationStatus, FailedMessage, InboundMessage,
    MessageType, QueueMessage, QueueStatus, QueueStatusRow,
    OPEN_CONVERSATION_STATUSES, TERMINAL_STATUSES, utcnow,
)

logger = structlog.get_logger()


def _dispatch_key(message: QueueMessage, now: datetime, window: timedelta) -> tuple:
    if now - message.scheduled_at > window:
        return (0, 0, message.scheduled_at, message.created_at, message.id)
    return (1, message.priority, message.scheduled_at, message.created_at, message.id)


class InMemoryQueueStore(BaseQueueStore):
    """Full-featured in-memory store with the same interface as SqlQueueStore."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._messages: dict[str, QueueMessage] = {}           # id → row
        self._failed: dict[str, FailedMessage] = {}            # id → dead letter
        self._contacts: dict[str, Contact] = {}                # id → contact
        self._conversations: dict[str, Conversation] = {}      # id → conversation
        self._inbound: dict[str, InboundMessage] = {}          # id → inbound message

        # Indexes
        self._failed_by_original: dict[str, str] = {}          # original_message_id → failed id
        self._phone_index: dict[str, str] = {}                 # phone → contact id
        self._inbound_by_provider: dict[str, str] = {}         # provider message id → inbound id
        self._inbound_by_conversation: dict[str, list[str]] = defaultdict(list)
        logger.info("inmemory_store_initialized")

    # ── Queue: writes by the Enqueuer ────────────────────────

    async def insert_message(self, message: QueueMessage) -> QueueMessage:
        async with self._lock:
            if message.id in self._messages:
                raise ValueError(f"duplicate message id {message.id}")
            self._messages[message.id] = message.model_copy(deep=True)
        return message.model_copy(deep=True)

    async def get_message(self, message_id: str) -> Optional[QueueMessage]:
        row = self._messages.get(message_id)
        return row.model_copy(deep=True) if row else None

    async def find_active(self, correlation_id: str,
                          message_type: Optional[MessageType] = None) -> list[QueueMessage]:
        rows = [
            m for m in self._messages.values()
            if m.correlation_id == correlation_id
            and m.status not in TERMINAL_STATUSES
            and (message_type is None or m.message_type == message_type)
        ]
        rows.sort(key=lambda m: (m.created_at, m.id))
        return [m.model_copy(deep=True) for m in rows]

    async def has_correlation(self, correlation_id: str) -> bool:
        return any(m.correlation_id == correlation_id for m in self._messages.values())

    # ── Queue: claim and transitions by the Dispatcher ───────

    def _busy_correlations(self) -> set[str]:
        return {m.correlation_id for m in self._messages.values()
                if m.status == QueueStatus.PROCESSING}

    async def eligible(self, now: datetime, limit: int = 10,
                       starvation_window: float = 300.0,
                       serialize_correlation: bool = False) -> list[QueueMessage]:
        busy = self._busy_correlations() if serialize_correlation else set()
        rows = [
            m for m in self._messages.values()
            if m.status == QueueStatus.PENDING
            and m.scheduled_at <= now
            and m.correlation_id not in busy
        ]
        window = timedelta(seconds=starvation_window)
        first = heapq.nsmallest(limit, rows, key=lambda m: _dispatch_key(m, now, window))
        return [m.model_copy(deep=True) for m in first]

    async def claim(self, message_id: str, worker_id: str, now: datetime,
                    serialize_correlation: bool = False) -> QueueMessage:
        async with self._lock:
            row = self._messages.get(message_id)
            if row is None or row.status != QueueStatus.PENDING or row.scheduled_at > now:
                raise ClaimConflictError(message_id)
            if serialize_correlation and row.correlation_id in self._busy_correlations():
                raise ClaimConflictError(message_id)
            row.status = QueueStatus.PROCESSING
            row.claimed_at = now
            row.claimed_by = worker_id
            row.claim_token = uuid.uuid4().hex
            row.updated_at = now
            return row.model_copy(deep=True)

    def _owned(self, message_id: str, claim_token: str) -> Optional[QueueMessage]:
        row = self._messages.get(message_id)
        if row is None or row.status != QueueStatus.PROCESSING or row.claim_token != claim_token:
            return None
        return row

    @staticmethod
    def _release(row: QueueMessage) -> None:
        row.claimed_at = None
        row.claimed_by = None
        row.claim_token = None

    async def heartbeat(self, message_id: str, claim_token: str, now: datetime) -> bool:
        async with self._lock:
            row = self._owned(message_id, claim_token)
            if row is None:
                return False
            row.claimed_at = now
            return True

    async def complete(self, message_id: str, claim_token: str, now: datetime,
                       provider_message_id: Optional[str] = None) -> bool:
        async with self._lock:
            row = self._owned(message_id, claim_token)
            if row is None:
                return False
            row.status = QueueStatus.DONE
            row.processed_at = now
            row.updated_at = now
            row.provider_message_id = provider_message_id
            row.error_message = None
            self._release(row)
            return True

    async def schedule_retry(self, message_id: str, claim_token: str, *,
                             retry_count: int, scheduled_at: datetime,
                             error: str, now: datetime) -> bool:
        async with self._lock:
            row = self._owned(message_id, claim_token)
            if row is None:
                return False
            row.status = QueueStatus.PENDING
            row.retry_count = max(row.retry_count, retry_count)
            row.scheduled_at = scheduled_at
            row.error_message = error
            row.updated_at = now
            self._release(row)
            return True

    async def bury(self, message_id: str, claim_token: str, error: str,
                   now: datetime) -> Optional[FailedMessage]:
        async with self._lock:
            row = self._owned(message_id, claim_token)
            if row is None:
                return None
            row.status = QueueStatus.DEAD
            row.error_message = error
            row.processed_at = now
            row.updated_at = now
            self._release(row)
            return self._record_failure(row, error, now).model_copy(deep=True)

    def _record_failure(self, row: QueueMessage, error: str, now: datetime) -> FailedMessage:
        original_id = row.original_message_id
        failed_id = self._failed_by_original.get(original_id)
        if failed_id is not None:
            failed = self._failed[failed_id]
            failed.failure_count += 1
            failed.last_failed_at = now
            failed.error_message = error
            failed.payload = dict(row.payload)
            failed.metadata = {**failed.metadata, "last_message_id": row.id}
            return failed

        failed = FailedMessage(
            original_message_id=original_id,
            correlation_id=row.correlation_id,
            message_type=row.message_type,
            payload=dict(row.payload),
            error_message=error,
            first_failed_at=now,
            last_failed_at=now,
            created_at=now,
            metadata={**row.metadata, "last_message_id": row.id, "retry_count": row.retry_count},
        )
        self._failed[failed.id] = failed
        self._failed_by_original[original_id] = failed.id
        return failed

    async def cancel(self, message_id: str, now: datetime) -> bool:
        async with self._lock:
            row = self._messages.get(message_id)
            if row is None or row.status != QueueStatus.PENDING:
                return False
            row.status = QueueStatus.DEAD
            row.error_message = "cancelled"
            row.processed_at = now
            row.updated_at = now
            return True

    async def find_stale(self, cutoff: datetime, limit: int = 100) -> list[QueueMessage]:
        rows = [
            m for m in self._messages.values()
            if m.status == QueueStatus.PROCESSING
            and m.claimed_at is not None
            and m.claimed_at < cutoff
        ]
        rows.sort(key=lambda m: m.claimed_at)
        return [m.model_copy(deep=True) for m in rows[:limit]]

    # ── Queue: reads by Monitoring ───────────────────────────

    async def status_rows(self, now: datetime) -> list[QueueStatusRow]:
        groups: dict[QueueStatus, list[QueueMessage]] = defaultdict(list)
        for m in list(self._messages.values()):
            groups[m.status].append(m)

        rows = []
        for status in QueueStatus:
            members = groups.get(status)
            if not members:
                continue
            count = len(members)
            created = [m.created_at for m in members]
            rows.append(QueueStatusRow(
                status=status,
                count=count,
                avg_age_seconds=sum((now - c).total_seconds() for c in created) / count,
                avg_retries=sum(m.retry_count for m in members) / count,
                oldest_created_at=min(created),
                newest_created_at=max(created),
            ))
        return rows

    async def count_eligible(self, now: datetime) -> int:
        return sum(1 for m in self._messages.values()
                   if m.status == QueueStatus.PENDING and m.scheduled_at <= now)

    # ── Dead letters ─────────────────────────────────────────

    async def get_failed(self, failed_id: str) -> Optional[FailedMessage]:
        failed = self._failed.get(failed_id)
        return failed.model_copy(deep=True) if failed else None

    async def get_failed_by_original(self, original_message_id: str) -> Optional[FailedMessage]:
        failed_id = self._failed_by_original.get(original_message_id)
        return await self.get_failed(failed_id) if failed_id else None

    async def list_failed(self, limit: int = 50) -> list[FailedMessage]:
        rows = sorted(self._failed.values(), key=lambda f: f.last_failed_at, reverse=True)
        return [f.model_copy(deep=True) for f in rows[:limit]]

    async def count_failed(self) -> int:
        return len(self._failed)

    # ── Contacts / conversations / inbound messages ──────────

    async def upsert_contact(self, phone: str, name: str = "") -> Contact:
        async with self._lock:
            contact_id = self._phone_index.get(phone)
            if contact_id is not None:
                contact = self._contacts[contact_id]
                if name and not contact.name:
                    contact.name = name
                return contact.model_copy()
            contact = Contact(phone=phone, name=name)
            self._contacts[contact.id] = contact
            self._phone_index[phone] = contact.id
            return contact.model_copy()

    async def get_contact_by_phone(self, phone: str) -> Optional[Contact]:
        contact_id = self._phone_index.get(phone)
        return self._contacts[contact_id].model_copy() if contact_id else None

    async def open_conversation(self, contact_id: str) -> tuple[Conversation, bool]:
        async with self._lock:
            open_convs = [
                c for c in self._conversations.values()
                if c.contact_id == contact_id and c.status in OPEN_CONVERSATION_STATUSES
            ]
            if open_convs:
                newest = max(open_convs, key=lambda c: c.created_at)
                return newest.model_copy(), False
            conv = Conversation(contact_id=contact_id, status=ConversationStatus.ACTIVE)
            self._conversations[conv.id] = conv
            return conv.model_copy(), True

    async def set_conversation_status(self, conversation_id: str, status: str) -> bool:
        async with self._lock:
            conv = self._conversations.get(conversation_id)
            if conv is None:
                return False
            conv.status = ConversationStatus(status)
            conv.updated_at = utcnow()
            return True

    async def add_inbound_message(self, message: InboundMessage) -> tuple[InboundMessage, bool]:
        async with self._lock:
            existing_id = self._inbound_by_provider.get(message.provider_message_id)
            if existing_id is not None:
                return self._inbound[existing_id].model_copy(deep=True), False
            stored = message.model_copy(deep=True)
            self._inbound[stored.id] = stored
            self._inbound_by_provider[stored.provider_message_id] = stored.id
            self._inbound_by_conversation[stored.conversation_id].append(stored.id)
            return stored.model_copy(deep=True), True

    async def get_inbound_message(self, provider_message_id: str) -> Optional[InboundMessage]:
        inbound_id = self._inbound_by_provider.get(provider_message_id)
        return self._inbound[inbound_id].model_copy(deep=True) if inbound_id else None

    async def list_inbound_messages(self, conversation_id: str, limit: int = 50) -> list[InboundMessage]:
        ids = self._inbound_by_conversation.get(conversation_id, [])
        return [self._inbound[i].model_copy(deep=True) for i in ids[-limit:]]
