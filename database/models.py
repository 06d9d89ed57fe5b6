"""
SQLAlchemy ORM models — PostgreSQL and SQLite compatible.

Only the tables the worker touches are mapped:
  - templates        (name shown in reminder emails)
  - submitters       (signers, with their reminder schedule and history)
  - payment_records  (written by the batch processor)

JSON columns map to jsonb on PostgreSQL and TEXT on SQLite.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, DateTime, ForeignKey, Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Templates
# ──────────────────────────────────────────────────────────────

class TemplateRow(Base):
    __tablename__ = "templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    submitters: Mapped[list["SubmitterRow"]] = relationship(back_populates="template")


# ──────────────────────────────────────────────────────────────
#  Submitters (signers)
# ──────────────────────────────────────────────────────────────

class SubmitterRow(Base):
    __tablename__ = "submitters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_id: Mapped[int] = mapped_column(Integer, ForeignKey("templates.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    token: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="pending")

    reminder_config: Mapped[Optional[Any]] = mapped_column(JSON(none_as_null=True), nullable=True)
    reminder_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    template: Mapped[TemplateRow] = relationship(back_populates="submitters", lazy="joined")

    __table_args__ = (
        Index("ix_submitters_status_count", "status", "reminder_count"),
    )


# ──────────────────────────────────────────────────────────────
#  Payments
# ──────────────────────────────────────────────────────────────

class PaymentRecordRow(Base):
    __tablename__ = "payment_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    stripe_session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="USD")
    status: Mapped[str] = mapped_column(String(32), default="completed")
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "user_id": self.user_id,
            "stripe_session_id": self.stripe_session_id,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "amount_cents": self.amount_cents, "currency": self.currency,
            "status": self.status, "metadata": self.metadata_,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
