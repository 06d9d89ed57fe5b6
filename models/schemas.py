"""
Core data models for the SignDesk worker.
These are the types shared between the queue, the scheduler and the stores.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


MAX_REMINDERS = 3


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class SubmitterStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    COMPLETED = "completed"
    DECLINED = "declined"


# Signers still waiting on a signature; everything else is terminal for reminders
REMINDABLE_STATUSES = frozenset({
    SubmitterStatus.PENDING, SubmitterStatus.SENT, SubmitterStatus.VIEWED,
})


# ──────────────────────────────────────────────────────────────
#  Reminder durations offered to users (hours → label)
# ──────────────────────────────────────────────────────────────

REMINDER_DURATIONS: dict[int, str] = {
    4: "4 hours",
    8: "8 hours",
    12: "12 hours",
    24: "24 hours",
    48: "2 days",
    72: "3 days",
    96: "4 days",
    120: "5 days",
    144: "6 days",
    168: "7 days",
    192: "8 days",
    360: "15 days",
    504: "21 days",
    720: "30 days",
}


def is_valid_reminder_duration(hours: int) -> bool:
    return hours in REMINDER_DURATIONS


def duration_label(hours: int) -> Optional[str]:
    return REMINDER_DURATIONS.get(hours)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Payments (the unit of work drained by the batch processor)
# ──────────────────────────────────────────────────────────────

class PaymentRecordCreate(BaseModel):
    """A payment record waiting to be persisted. Has no id until stored."""
    user_id: int
    stripe_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    amount_cents: int = Field(ge=0)
    currency: str = "USD"
    status: PaymentStatus = PaymentStatus.COMPLETED
    metadata: dict[str, Any] = {}

    @classmethod
    def from_checkout_session(cls, session: dict[str, Any]) -> Optional[PaymentRecordCreate]:
        """
        Build a payment from a Stripe `checkout.session.completed` object.

        The paying user is carried in `client_reference_id` (or the same key
        under `metadata`). Returns None when it is not an integer user id.
        """
        client_ref = session.get("client_reference_id") or \
            (session.get("metadata") or {}).get("client_reference_id") or ""
        try:
            user_id = int(client_ref)
        except (TypeError, ValueError):
            return None

        email = (session.get("customer_details") or {}).get("email") or ""
        return cls(
            user_id=user_id,
            stripe_session_id=session.get("id"),
            stripe_payment_intent_id=session.get("payment_intent"),
            amount_cents=int(session.get("amount_total") or 0),
            currency=str(session.get("currency") or "usd").upper(),
            status=PaymentStatus.COMPLETED,
            metadata={
                "email": email,
                "client_reference_id": str(client_ref),
                "payment_link": session.get("payment_link") or "",
            },
        )


# ──────────────────────────────────────────────────────────────
#  Reminders
# ──────────────────────────────────────────────────────────────

class ReminderThresholds(BaseModel):
    """
    Per-signer reminder schedule. Each threshold is measured from the
    signer's creation time; reminder N becomes due once its threshold elapses.
    """
    first_reminder_hours: int = 24
    second_reminder_hours: int = 72
    third_reminder_hours: int = 168

    @field_validator("first_reminder_hours", "second_reminder_hours", "third_reminder_hours")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("reminder thresholds must be positive")
        return v

    @model_validator(mode="after")
    def _ordered(self) -> ReminderThresholds:
        if not (self.first_reminder_hours <= self.second_reminder_hours <= self.third_reminder_hours):
            raise ValueError("reminder thresholds must be non-decreasing")
        return self

    def for_stage(self, stage: int) -> timedelta:
        hours = {
            1: self.first_reminder_hours,
            2: self.second_reminder_hours,
            3: self.third_reminder_hours,
        }.get(stage)
        if hours is None:
            raise ValueError(f"No reminder stage {stage}")
        return timedelta(hours=hours)


class ReminderSubject(BaseModel):
    """A signer that may be owed a reminder email."""
    id: int
    template_id: int
    template_name: Optional[str] = None
    name: str
    email: str
    token: str
    status: SubmitterStatus = SubmitterStatus.PENDING
    created_at: datetime
    reminder_count: int = Field(default=0, ge=0, le=MAX_REMINDERS)
    last_reminder_sent_at: Optional[datetime] = None
    reminder_config: Optional[Any] = None   # raw JSON column, validated lazily

    @field_validator("created_at", "last_reminder_sent_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None

    @property
    def document_name(self) -> str:
        return self.template_name or f"Document #{self.template_id}"

    @property
    def is_remindable(self) -> bool:
        return self.status in REMINDABLE_STATUSES and self.reminder_count < MAX_REMINDERS

    def thresholds(self) -> ReminderThresholds:
        """Parse reminder_config. Raises ValidationError when malformed."""
        return ReminderThresholds.model_validate(self.reminder_config)
