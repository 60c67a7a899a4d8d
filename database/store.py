"""
SqlQueueStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Claiming is a conditional UPDATE checked by rowcount, never a
SELECT ... FOR UPDATE, so the same code is correct on every backend and
across several dispatcher processes sharing one database:

    UPDATE message_queue SET status = 'processing', claim_token = :t, ...
     WHERE id = :id AND status = 'pending' AND scheduled_at <= :now

Dispatch order is a case() expression (aged rows first) instead of a
dialect-specific window function.

SQLite hands back naive datetimes; everything is written as UTC and
re-tagged as UTC on read.
"""
from __future__ import annotations

import json
import uuid
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Optional

from sqlalchemy import select, update, func, case, literal, desc
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from database.models import (
    QueueMessageRow, FailedMessageRow, ContactRow,
    ConversationRow, InboundMessageRow,
)
from database.session import get_session
from database.store_base import BaseQueueStore
from job_queue.errors import ClaimConflictError, StoreError
from models.schemas import (
    Contact, Conversation, ConversationStatus, FailedMessage, InboundMessage,
    MessageType, QueueMessage, QueueStatus, QueueStatusRow,
    OPEN_CONVERSATION_STATUSES, TERMINAL_STATUSES, utcnow,
)

logger = structlog.get_logger()

_TERMINAL = [s.value for s in TERMINAL_STATUSES]
_OPEN = [s.value for s in OPEN_CONVERSATION_STATUSES]
_PENDING = QueueStatus.PENDING.value
_PROCESSING = QueueStatus.PROCESSING.value


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _json(value: Any, default: Any) -> Any:
    # SQLite may hand JSON columns back as text
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return default
    return value if value is not None else default


def _epoch(column, dialect: str):
    """Seconds-since-epoch expression for averaging timestamps portably."""
    if dialect == "sqlite":
        return (func.julianday(column) - 2440587.5) * 86400.0
    if dialect == "mysql":
        return func.unix_timestamp(column)
    return func.extract("epoch", column)


class SqlQueueStore(BaseQueueStore):
    """
    Persistent queue store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_factory: Optional[Callable[[], Any]] = None):
        self._session_factory = session_factory or get_session

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session scope that surfaces driver failures as StoreError."""
        try:
            async with self._session_factory() as db:
                yield db
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            logger.error("store_operation_failed", error=str(e))
            raise StoreError(str(e)) from e
        except OSError as e:
            logger.error("store_unreachable", error=str(e))
            raise StoreError(str(e)) from e

    # ── Queue: writes by the Enqueuer ────────────────────────

    async def insert_message(self, message: QueueMessage) -> QueueMessage:
        async with self._session() as db:
            db.add(QueueMessageRow(
                id=message.id,
                correlation_id=message.correlation_id,
                message_type=message.message_type.value,
                payload=message.payload,
                priority=message.priority,
                status=message.status.value,
                retry_count=message.retry_count,
                max_retries=message.max_retries,
                scheduled_at=message.scheduled_at,
                provider_message_id=message.provider_message_id,
                error_message=message.error_message,
                metadata_=message.metadata,
                created_at=message.created_at,
                updated_at=message.updated_at,
            ))
        return message

    async def get_message(self, message_id: str) -> Optional[QueueMessage]:
        async with self._session() as db:
            row = await db.get(QueueMessageRow, message_id)
            return self._row_to_message(row) if row else None

    async def find_active(self, correlation_id: str,
                          message_type: Optional[MessageType] = None) -> list[QueueMessage]:
        async with self._session() as db:
            stmt = select(QueueMessageRow).where(
                QueueMessageRow.correlation_id == correlation_id,
                QueueMessageRow.status.notin_(_TERMINAL),
            )
            if message_type is not None:
                stmt = stmt.where(QueueMessageRow.message_type == MessageType(message_type).value)
            stmt = stmt.order_by(QueueMessageRow.created_at, QueueMessageRow.id)
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars()]

    async def has_correlation(self, correlation_id: str) -> bool:
        async with self._session() as db:
            stmt = (select(QueueMessageRow.id)
                    .where(QueueMessageRow.correlation_id == correlation_id)
                    .limit(1))
            result = await db.execute(stmt)
            return result.scalar_one_or_none() is not None

    # ── Queue: claim and transitions by the Dispatcher ───────

    @staticmethod
    def _busy_correlation_clause():
        busy = aliased(QueueMessageRow)
        return ~(select(busy.id)
                 .where(busy.correlation_id == QueueMessageRow.correlation_id,
                        busy.status == _PROCESSING)
                 .exists())

    async def eligible(self, now: datetime, limit: int = 10,
                       starvation_window: float = 300.0,
                       serialize_correlation: bool = False) -> list[QueueMessage]:
        aged_cutoff = now - timedelta(seconds=starvation_window)
        aged = QueueMessageRow.scheduled_at < aged_cutoff
        stmt = select(QueueMessageRow).where(
            QueueMessageRow.status == _PENDING,
            QueueMessageRow.scheduled_at <= now,
        )
        if serialize_correlation:
            stmt = stmt.where(self._busy_correlation_clause())
        stmt = stmt.order_by(
            case((aged, literal(0)), else_=literal(1)),
            case((aged, literal(0)), else_=QueueMessageRow.priority),
            QueueMessageRow.scheduled_at,
            QueueMessageRow.created_at,
            QueueMessageRow.id,
        ).limit(limit)

        async with self._session() as db:
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars()]

    async def claim(self, message_id: str, worker_id: str, now: datetime,
                    serialize_correlation: bool = False) -> QueueMessage:
        token = uuid.uuid4().hex
        stmt = (
            update(QueueMessageRow)
            .where(
                QueueMessageRow.id == message_id,
                QueueMessageRow.status == _PENDING,
                QueueMessageRow.scheduled_at <= now,
            )
            .values(
                status=_PROCESSING,
                claimed_at=now,
                claimed_by=worker_id,
                claim_token=token,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if serialize_correlation:
            stmt = stmt.where(self._busy_correlation_clause())

        async with self._session() as db:
            result = await db.execute(stmt)
            if result.rowcount != 1:
                raise ClaimConflictError(message_id)
            row = await db.get(QueueMessageRow, message_id)
            return self._row_to_message(row)

    async def _transition(self, message_id: str, claim_token: str, **values) -> bool:
        stmt = (
            update(QueueMessageRow)
            .where(
                QueueMessageRow.id == message_id,
                QueueMessageRow.status == _PROCESSING,
                QueueMessageRow.claim_token == claim_token,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def heartbeat(self, message_id: str, claim_token: str, now: datetime) -> bool:
        return await self._transition(message_id, claim_token, claimed_at=now)

    async def complete(self, message_id: str, claim_token: str, now: datetime,
                       provider_message_id: Optional[str] = None) -> bool:
        return await self._transition(
            message_id, claim_token,
            status=QueueStatus.DONE.value,
            processed_at=now,
            updated_at=now,
            provider_message_id=provider_message_id,
            error_message=None,
            claimed_at=None, claimed_by=None, claim_token=None,
        )

    async def schedule_retry(self, message_id: str, claim_token: str, *,
                             retry_count: int, scheduled_at: datetime,
                             error: str, now: datetime) -> bool:
        return await self._transition(
            message_id, claim_token,
            status=_PENDING,
            retry_count=retry_count,
            scheduled_at=scheduled_at,
            error_message=error,
            updated_at=now,
            claimed_at=None, claimed_by=None, claim_token=None,
        )

    async def bury(self, message_id: str, claim_token: str, error: str,
                   now: datetime) -> Optional[FailedMessage]:
        stmt = (
            update(QueueMessageRow)
            .where(
                QueueMessageRow.id == message_id,
                QueueMessageRow.status == _PROCESSING,
                QueueMessageRow.claim_token == claim_token,
            )
            .values(
                status=QueueStatus.DEAD.value,
                error_message=error,
                processed_at=now,
                updated_at=now,
                claimed_at=None, claimed_by=None, claim_token=None,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            if result.rowcount != 1:
                return None
            message = self._row_to_message(await db.get(QueueMessageRow, message_id))
            original_id = message.original_message_id

            existing = await db.execute(
                select(FailedMessageRow).where(FailedMessageRow.original_message_id == original_id)
            )
            failed = existing.scalar_one_or_none()
            if failed is not None:
                failed.failure_count = failed.failure_count + 1
                failed.last_failed_at = now
                failed.error_message = error
                failed.payload = message.payload
                failed.metadata_ = {**_json(failed.metadata_, {}), "last_message_id": message.id}
            else:
                failed = FailedMessageRow(
                    original_message_id=original_id,
                    correlation_id=message.correlation_id,
                    message_type=message.message_type.value,
                    payload=message.payload,
                    error_message=error,
                    failure_count=1,
                    first_failed_at=now,
                    last_failed_at=now,
                    created_at=now,
                    metadata_={**message.metadata, "last_message_id": message.id,
                               "retry_count": message.retry_count},
                )
                db.add(failed)
            await db.flush()
            return self._row_to_failed(failed)

    async def cancel(self, message_id: str, now: datetime) -> bool:
        stmt = (
            update(QueueMessageRow)
            .where(QueueMessageRow.id == message_id, QueueMessageRow.status == _PENDING)
            .values(
                status=QueueStatus.DEAD.value,
                error_message="cancelled",
                processed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def find_stale(self, cutoff: datetime, limit: int = 100) -> list[QueueMessage]:
        async with self._session() as db:
            stmt = (select(QueueMessageRow)
                    .where(QueueMessageRow.status == _PROCESSING,
                           QueueMessageRow.claimed_at < cutoff)
                    .order_by(QueueMessageRow.claimed_at)
                    .limit(limit))
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars()]

    # ── Queue: reads by Monitoring ───────────────────────────

    async def status_rows(self, now: datetime) -> list[QueueStatusRow]:
        async with self._session() as db:
            dialect = db.get_bind().dialect.name
            stmt = (
                select(
                    QueueMessageRow.status,
                    func.count(QueueMessageRow.id),
                    func.avg(_epoch(QueueMessageRow.created_at, dialect)),
                    func.avg(QueueMessageRow.retry_count),
                    func.min(QueueMessageRow.created_at),
                    func.max(QueueMessageRow.created_at),
                )
                .group_by(QueueMessageRow.status)
            )
            result = await db.execute(stmt)
            rows = []
            for status, count, avg_epoch, avg_retries, oldest, newest in result.all():
                avg_age = now.timestamp() - float(avg_epoch) if avg_epoch is not None else 0.0
                rows.append(QueueStatusRow(
                    status=QueueStatus(status),
                    count=count,
                    avg_age_seconds=max(0.0, avg_age),
                    avg_retries=float(avg_retries or 0),
                    oldest_created_at=_aware(self._as_datetime(oldest)),
                    newest_created_at=_aware(self._as_datetime(newest)),
                ))
        order = {s: i for i, s in enumerate(QueueStatus)}
        return sorted(rows, key=lambda r: order[r.status])

    @staticmethod
    def _as_datetime(value: Any) -> Optional[datetime]:
        # min()/max() over a SQLite DATETIME column can come back as text
        if isinstance(value, str):
            return datetime.fromisoformat(value)
        return value

    async def count_eligible(self, now: datetime) -> int:
        async with self._session() as db:
            stmt = select(func.count(QueueMessageRow.id)).where(
                QueueMessageRow.status == _PENDING,
                QueueMessageRow.scheduled_at <= now,
            )
            return (await db.execute(stmt)).scalar_one()

    # ── Dead letters ─────────────────────────────────────────

    async def get_failed(self, failed_id: str) -> Optional[FailedMessage]:
        async with self._session() as db:
            row = await db.get(FailedMessageRow, failed_id)
            return self._row_to_failed(row) if row else None

    async def get_failed_by_original(self, original_message_id: str) -> Optional[FailedMessage]:
        async with self._session() as db:
            stmt = select(FailedMessageRow).where(
                FailedMessageRow.original_message_id == original_message_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_failed(row) if row else None

    async def list_failed(self, limit: int = 50) -> list[FailedMessage]:
        async with self._session() as db:
            stmt = (select(FailedMessageRow)
                    .order_by(desc(FailedMessageRow.last_failed_at))
                    .limit(limit))
            result = await db.execute(stmt)
            return [self._row_to_failed(r) for r in result.scalars()]

    async def count_failed(self) -> int:
        async with self._session() as db:
            return (await db.execute(select(func.count(FailedMessageRow.id)))).scalar_one()

    # ── Contacts / conversations / inbound messages ──────────

    async def upsert_contact(self, phone: str, name: str = "") -> Contact:
        existing = await self.get_contact_by_phone(phone)
        if existing is not None:
            if name and not existing.name:
                async with self._session() as db:
                    await db.execute(update(ContactRow)
                                     .where(ContactRow.id == existing.id)
                                     .values(name=name)
                                     .execution_options(synchronize_session=False))
                existing.name = name
            return existing
        contact = Contact(phone=phone, name=name)
        try:
            async with self._session() as db:
                db.add(ContactRow(id=contact.id, phone=contact.phone,
                                  name=contact.name, created_at=contact.created_at))
        except IntegrityError:
            # lost the race to a concurrent insert of the same phone
            winner = await self.get_contact_by_phone(phone)
            if winner is None:
                raise StoreError(f"contact upsert failed for {phone}")
            return winner
        return contact

    async def get_contact_by_phone(self, phone: str) -> Optional[Contact]:
        async with self._session() as db:
            stmt = select(ContactRow).where(ContactRow.phone == phone)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_contact(row) if row else None

    async def open_conversation(self, contact_id: str) -> tuple[Conversation, bool]:
        async with self._session() as db:
            stmt = (select(ConversationRow)
                    .where(ConversationRow.contact_id == contact_id,
                           ConversationRow.status.in_(_OPEN))
                    .order_by(desc(ConversationRow.created_at))
                    .limit(1))
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is not None:
                return self._row_to_conversation(row), False

            conv = Conversation(contact_id=contact_id, status=ConversationStatus.ACTIVE)
            db.add(ConversationRow(
                id=conv.id, contact_id=conv.contact_id, status=conv.status.value,
                channel=conv.channel, created_at=conv.created_at, updated_at=conv.updated_at,
            ))
            return conv, True

    async def set_conversation_status(self, conversation_id: str, status: str) -> bool:
        async with self._session() as db:
            stmt = (update(ConversationRow)
                    .where(ConversationRow.id == conversation_id)
                    .values(status=ConversationStatus(status).value, updated_at=utcnow())
                    .execution_options(synchronize_session=False))
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def add_inbound_message(self, message: InboundMessage) -> tuple[InboundMessage, bool]:
        existing = await self.get_inbound_message(message.provider_message_id)
        if existing is not None:
            return existing, False
        try:
            async with self._session() as db:
                db.add(InboundMessageRow(
                    id=message.id,
                    conversation_id=message.conversation_id,
                    provider_message_id=message.provider_message_id,
                    content=message.content,
                    content_type=message.content_type,
                    media_url=message.media_url,
                    sender_name=message.sender_name,
                    sent_at=message.sent_at,
                    metadata_=message.metadata,
                    created_at=message.created_at,
                ))
        except IntegrityError:
            winner = await self.get_inbound_message(message.provider_message_id)
            if winner is None:
                raise StoreError(f"inbound insert failed for {message.provider_message_id}")
            return winner, False
        return message, True

    async def get_inbound_message(self, provider_message_id: str) -> Optional[InboundMessage]:
        async with self._session() as db:
            stmt = select(InboundMessageRow).where(
                InboundMessageRow.provider_message_id == provider_message_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_inbound(row) if row else None

    async def list_inbound_messages(self, conversation_id: str, limit: int = 50) -> list[InboundMessage]:
        async with self._session() as db:
            stmt = (select(InboundMessageRow)
                    .where(InboundMessageRow.conversation_id == conversation_id)
                    .order_by(desc(InboundMessageRow.created_at))
                    .limit(limit))
            result = await db.execute(stmt)
            rows = [self._row_to_inbound(r) for r in result.scalars()]
            return list(reversed(rows))

    # ── Row → model conversion ───────────────────────────────

    @staticmethod
    def _row_to_message(row: QueueMessageRow) -> QueueMessage:
        return QueueMessage(
            id=row.id,
            correlation_id=row.correlation_id,
            message_type=MessageType(row.message_type),
            payload=_json(row.payload, {}),
            priority=row.priority,
            status=QueueStatus(row.status),
            retry_count=row.retry_count,
            max_retries=row.max_retries,
            scheduled_at=_aware(row.scheduled_at),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            processed_at=_aware(row.processed_at),
            error_message=row.error_message,
            claimed_at=_aware(row.claimed_at),
            claimed_by=row.claimed_by,
            claim_token=row.claim_token,
            provider_message_id=row.provider_message_id,
            metadata=_json(row.metadata_, {}),
        )

    @staticmethod
    def _row_to_failed(row: FailedMessageRow) -> FailedMessage:
        return FailedMessage(
            id=row.id,
            original_message_id=row.original_message_id,
            correlation_id=row.correlation_id,
            message_type=MessageType(row.message_type),
            payload=_json(row.payload, {}),
            error_message=row.error_message or "",
            failure_count=row.failure_count,
            first_failed_at=_aware(row.first_failed_at),
            last_failed_at=_aware(row.last_failed_at),
            created_at=_aware(row.created_at),
            metadata=_json(row.metadata_, {}),
        )

    @staticmethod
    def _row_to_contact(row: ContactRow) -> Contact:
        return Contact(id=row.id, phone=row.phone, name=row.name or "",
                       created_at=_aware(row.created_at))

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id,
            contact_id=row.contact_id,
            status=ConversationStatus(row.status),
            channel=row.channel,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_inbound(row: InboundMessageRow) -> InboundMessage:
        return InboundMessage(
            id=row.id,
            conversation_id=row.conversation_id,
            provider_message_id=row.provider_message_id,
            content=row.content or "",
            content_type=row.content_type,
            media_url=row.media_url or "",
            sender_name=row.sender_name or "",
            sent_at=_aware(row.sent_at),
            metadata=_json(row.metadata_, {}),
            created_at=_aware(row.created_at),
        )
