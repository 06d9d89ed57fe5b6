"""
SqlStore — persistence gateway over SQLAlchemy async (PostgreSQL, SQLite).

The reminder bump is a single guarded UPDATE, so two workers racing on the
same signer can never push reminder_count past three.
"""
from __future__ import annotations

import structlog
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import PaymentRecordRow, SubmitterRow
from database.session import session_scope
from database.store_base import PersistenceError, PersistenceGateway
from models.schemas import (
    MAX_REMINDERS, REMINDABLE_STATUSES,
    PaymentRecordCreate, ReminderSubject,
)

logger = structlog.get_logger()


class SqlStore(PersistenceGateway):
    """Persistent store backed by any SQLAlchemy-supported database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ── Payments ───────────────────────────────────────────

    async def persist_payment(self, item: PaymentRecordCreate) -> int:
        try:
            async with session_scope(self._session_factory) as db:
                row = PaymentRecordRow(
                    user_id=item.user_id,
                    stripe_session_id=item.stripe_session_id,
                    stripe_payment_intent_id=item.stripe_payment_intent_id,
                    amount_cents=item.amount_cents,
                    currency=item.currency,
                    status=item.status.value,
                    metadata_=item.metadata,
                )
                db.add(row)
                await db.flush()
                payment_id = row.id
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to persist payment for user {item.user_id}: {e}") from e

        logger.info("payment_persisted",
                    payment_id=payment_id,
                    user_id=item.user_id,
                    amount_cents=item.amount_cents)
        return payment_id

    # ── Reminders ──────────────────────────────────────────

    async def load_reminder_candidates(self) -> list[ReminderSubject]:
        statuses = [s.value for s in REMINDABLE_STATUSES]
        stmt = (
            select(SubmitterRow)
            .where(
                SubmitterRow.status.in_(statuses),
                SubmitterRow.reminder_config.is_not(None),
                SubmitterRow.reminder_count < MAX_REMINDERS,
            )
            .order_by(SubmitterRow.created_at)
        )
        try:
            async with session_scope(self._session_factory) as db:
                result = await db.execute(stmt)
                rows = result.unique().scalars().all()
                return [self._row_to_subject(row) for row in rows]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load reminder candidates: {e}") from e

    async def record_reminder_sent(self, subject_id: int, sent_at: datetime) -> bool:
        stmt = (
            update(SubmitterRow)
            .where(
                SubmitterRow.id == subject_id,
                SubmitterRow.reminder_count < MAX_REMINDERS,
            )
            .values(
                reminder_count=SubmitterRow.reminder_count + 1,
                last_reminder_sent_at=sent_at,
                updated_at=sent_at,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            async with session_scope(self._session_factory) as db:
                result = await db.execute(stmt)
                return result.rowcount == 1
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to record reminder for submitter {subject_id}: {e}") from e

    # ── Helpers ────────────────────────────────────────────

    @staticmethod
    def _row_to_subject(row: SubmitterRow) -> ReminderSubject:
        return ReminderSubject(
            id=row.id,
            template_id=row.template_id,
            template_name=row.template.name if row.template else None,
            name=row.name,
            email=row.email,
            token=row.token,
            status=row.status,
            created_at=row.created_at,
            reminder_count=row.reminder_count,
            last_reminder_sent_at=row.last_reminder_sent_at,
            reminder_config=row.reminder_config,
        )
