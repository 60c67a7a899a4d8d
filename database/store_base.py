"""
Abstract Queue Store — Interface for all storage backends.

Implementations:
  - SqlQueueStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryQueueStore (dict-based, single-process, no persistence)

The store row is the only shared mutable state of the system. Every state
transition is a single conditional write:

    claim            pending    → processing   WHERE status = pending
    complete         processing → done         WHERE claim_token = :token
    schedule_retry   processing → pending      WHERE claim_token = :token
    bury             processing → dead (+DLQ)  WHERE claim_token = :token
    cancel           pending    → dead         WHERE status = pending

A write whose condition no longer holds is a no-op and reports False, so a
worker whose claim was reaped can never overwrite the new owner.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from models.schemas import (
    Contact, Conversation, FailedMessage, InboundMessage,
    MessageType, QueueMessage, QueueStatusRow,
)


class BaseQueueStore(ABC):
    """Interface that all queue store backends must implement."""

    # ── Queue: writes by the Enqueuer ────────────────────────

    @abstractmethod
    async def insert_message(self, message: QueueMessage) -> QueueMessage:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[QueueMessage]:
        ...

    @abstractmethod
    async def find_active(self, correlation_id: str,
                          message_type: Optional[MessageType] = None) -> list[QueueMessage]:
        """Non-terminal rows for a correlation id, oldest first."""
        ...

    @abstractmethod
    async def has_correlation(self, correlation_id: str) -> bool:
        """True if any row, terminal or not, carries this correlation id."""
        ...

    # ── Queue: claim and transitions by the Dispatcher ───────

    @abstractmethod
    async def eligible(self, now: datetime, limit: int = 10,
                       starvation_window: float = 300.0,
                       serialize_correlation: bool = False) -> list[QueueMessage]:
        """
        Claim candidates in dispatch order.

        Rows eligible for longer than ``starvation_window`` seconds come first
        (oldest first); the rest by priority then scheduled_at.
        """
        ...

    @abstractmethod
    async def claim(self, message_id: str, worker_id: str, now: datetime,
                    serialize_correlation: bool = False) -> QueueMessage:
        """
        Atomically move one pending, due row to processing.

        Raises ClaimConflictError when another worker got there first (or,
        with ``serialize_correlation``, when its correlation id is busy).
        """
        ...

    @abstractmethod
    async def heartbeat(self, message_id: str, claim_token: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def complete(self, message_id: str, claim_token: str, now: datetime,
                       provider_message_id: Optional[str] = None) -> bool:
        ...

    @abstractmethod
    async def schedule_retry(self, message_id: str, claim_token: str, *,
                             retry_count: int, scheduled_at: datetime,
                             error: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def bury(self, message_id: str, claim_token: str, error: str,
                   now: datetime) -> Optional[FailedMessage]:
        """
        Mark the row dead and record it in the dead-letter table in one step.

        The dead-letter record is keyed by the logical message
        (``QueueMessage.original_message_id``); a repeated death bumps
        ``failure_count`` instead of creating a second record. Returns None
        when the claim token no longer matches.
        """
        ...

    @abstractmethod
    async def cancel(self, message_id: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def find_stale(self, cutoff: datetime, limit: int = 100) -> list[QueueMessage]:
        """Processing rows whose ``claimed_at`` is older than ``cutoff``."""
        ...

    # ── Queue: reads by Monitoring ───────────────────────────

    @abstractmethod
    async def status_rows(self, now: datetime) -> list[QueueStatusRow]:
        ...

    @abstractmethod
    async def count_eligible(self, now: datetime) -> int:
        ...

    # ── Dead letters ─────────────────────────────────────────

    @abstractmethod
    async def get_failed(self, failed_id: str) -> Optional[FailedMessage]:
        ...

    @abstractmethod
    async def get_failed_by_original(self, original_message_id: str) -> Optional[FailedMessage]:
        ...

    @abstractmethod
    async def list_failed(self, limit: int = 50) -> list[FailedMessage]:
        """Most recently failed first."""
        ...

    @abstractmethod
    async def count_failed(self) -> int:
        ...

    # ── Contacts / conversations / inbound messages ──────────

    @abstractmethod
    async def upsert_contact(self, phone: str, name: str = "") -> Contact:
        """Return the contact for ``phone``, creating it if needed. Never duplicates."""
        ...

    @abstractmethod
    async def get_contact_by_phone(self, phone: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def open_conversation(self, contact_id: str) -> tuple[Conversation, bool]:
        """Newest open conversation for the contact, or a new one. Returns (conversation, created)."""
        ...

    @abstractmethod
    async def set_conversation_status(self, conversation_id: str, status: str) -> bool:
        ...

    @abstractmethod
    async def add_inbound_message(self, message: InboundMessage) -> tuple[InboundMessage, bool]:
        """Insert unless provider_message_id exists. Returns (stored message, created)."""
        ...

    @abstractmethod
    async def get_inbound_message(self, provider_message_id: str) -> Optional[InboundMessage]:
        ...

    @abstractmethod
    async def list_inbound_messages(self, conversation_id: str, limit: int = 50) -> list[InboundMessage]:
        ...
