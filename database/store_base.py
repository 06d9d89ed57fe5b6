"""
Persistence Gateway — the storage operations the worker needs.

Implementations:
  - SqlStore       (PostgreSQL / SQLite via SQLAlchemy async)
  - InMemoryStore  (dict-based, single-process, no persistence)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from models.schemas import PaymentRecordCreate, ReminderSubject


class PersistenceError(Exception):
    """A store operation failed."""


class PersistenceGateway(ABC):
    """Interface that all store backends must implement."""

    # ── Payments ──────────────────────────────────────────────

    @abstractmethod
    async def persist_payment(self, item: PaymentRecordCreate) -> int:
        """Store one payment record and return its new id."""
        ...

    # ── Reminders ─────────────────────────────────────────────

    @abstractmethod
    async def load_reminder_candidates(self) -> list[ReminderSubject]:
        """
        Signers with a remindable status, a reminder_config, and fewer than
        three reminders sent, oldest first.
        """
        ...

    @abstractmethod
    async def record_reminder_sent(self, subject_id: int, sent_at: datetime) -> bool:
        """
        Atomically bump reminder_count and stamp last_reminder_sent_at.
        Returns False when nothing was updated (unknown id or count already 3).
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""
