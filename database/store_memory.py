"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Same interface as SqlStore
  - Safe within one event loop: no await between read and write
  - All data lost on process restart
"""
from __future__ import annotations

import itertools
import structlog
from datetime import datetime
from typing import Any, Optional

from database.store_base import PersistenceGateway
from models.schemas import (
    MAX_REMINDERS, REMINDABLE_STATUSES,
    PaymentRecordCreate, ReminderSubject, SubmitterStatus,
)

logger = structlog.get_logger()


class InMemoryStore(PersistenceGateway):

    def __init__(self):
        self._payment_ids = itertools.count(1)
        self.payments: dict[int, PaymentRecordCreate] = {}
        self._submitters: dict[int, ReminderSubject] = {}
        logger.info("inmemory_store_initialized")

    # ── Payments ──────────────────────────────────────────

    async def persist_payment(self, item: PaymentRecordCreate) -> int:
        payment_id = next(self._payment_ids)
        self.payments[payment_id] = item
        logger.info("payment_persisted", payment_id=payment_id, user_id=item.user_id)
        return payment_id

    # ── Submitters ────────────────────────────────────────

    def add_submitter(self, subject: ReminderSubject) -> ReminderSubject:
        self._submitters[subject.id] = subject
        return subject

    def get_submitter(self, subject_id: int) -> Optional[ReminderSubject]:
        return self._submitters.get(subject_id)

    def set_status(self, subject_id: int, status: SubmitterStatus) -> None:
        current = self._submitters[subject_id]
        self._submitters[subject_id] = current.model_copy(update={"status": status})

    async def load_reminder_candidates(self) -> list[ReminderSubject]:
        candidates = [
            s for s in self._submitters.values()
            if s.status in REMINDABLE_STATUSES
            and s.reminder_config is not None
            and s.reminder_count < MAX_REMINDERS
        ]
        return sorted(candidates, key=lambda s: s.created_at)

    async def record_reminder_sent(self, subject_id: int, sent_at: datetime) -> bool:
        current = self._submitters.get(subject_id)
        if current is None or current.reminder_count >= MAX_REMINDERS:
            return False
        self._submitters[subject_id] = current.model_copy(update={
            "reminder_count": current.reminder_count + 1,
            "last_reminder_sent_at": sent_at,
        })
        return True

    def snapshot(self) -> dict[str, Any]:
        return {"payments": len(self.payments), "submitters": len(self._submitters)}
