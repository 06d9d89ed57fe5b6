"""
Reminder Scheduler — periodically emails signers who have not signed yet.

Each pass:
  1. Load candidates from the store (remindable status, config set, < 3 sent)
  2. For each, decide which reminder stage (if any) is due right now
  3. Send at most one reminder per signer, pausing send_delay between sends
  4. On a successful send, bump the signer's count and last-sent stamp

A signer whose send fails keeps its state and is simply retried on a later
pass. Stages only move forward: 0 → 1 → 2 → 3, never skipping.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError

from channels.email import EmailGateway, EmailSendError, ReminderEmailParams
from config.settings import ReminderSchedulerConfig
from database.store_base import PersistenceError, PersistenceGateway
from models.schemas import MAX_REMINDERS, ReminderSubject, ReminderThresholds, utcnow

logger = structlog.get_logger()


def due_stage(
    subject: ReminderSubject,
    thresholds: ReminderThresholds,
    now: datetime,
    cooldown: timedelta,
) -> Optional[int]:
    """
    The reminder stage owed to this signer at `now`, or None.

    Stage is always reminder_count + 1. It is due once its threshold has
    elapsed since creation and, if a reminder was sent before, at least
    `cooldown` has passed since that send.
    """
    if subject.reminder_count >= MAX_REMINDERS:
        return None
    stage = subject.reminder_count + 1
    if now - subject.created_at < thresholds.for_stage(stage):
        return None
    last = subject.last_reminder_sent_at
    if last is not None and now - last < cooldown:
        return None
    return stage


def next_due_at(
    subject: ReminderSubject,
    thresholds: ReminderThresholds,
    cooldown: timedelta,
) -> Optional[datetime]:
    """When the next stage becomes due, ignoring the current time."""
    if subject.reminder_count >= MAX_REMINDERS:
        return None
    due = subject.created_at + thresholds.for_stage(subject.reminder_count + 1)
    if subject.last_reminder_sent_at is not None:
        due = max(due, subject.last_reminder_sent_at + cooldown)
    return due


def signing_link(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/s/{token}"


@dataclass
class ReminderPassSummary:
    candidates: int = 0
    sent: int = 0
    not_due: int = 0
    skipped: int = 0
    invalid_config: int = 0
    failed: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class PendingReminder:
    subject: ReminderSubject
    next_stage: int
    hours_since_created: float
    hours_until_next: float         # 0.0 when the stage is already due

    @property
    def ready(self) -> bool:
        return self.hours_until_next <= 0


class ReminderScheduler:
    """
    Usage:
        scheduler = ReminderScheduler(store, email, base_url, settings.reminders)
        await scheduler.run_pass()           # one pass, for tests/tools
        await scheduler.start_background()   # first pass now, then every poll interval
        await scheduler.stop()
    """

    def __init__(
        self,
        store: PersistenceGateway,
        email: EmailGateway,
        base_url: str,
        config: Optional[ReminderSchedulerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        config = config or ReminderSchedulerConfig()
        self.store = store
        self.email = email
        self.base_url = base_url
        self.poll_interval_s = config.poll_interval_seconds
        self.cooldown = timedelta(minutes=config.cooldown_minutes)
        self.send_delay_s = config.send_delay_ms / 1000.0
        self._clock = clock
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.last_summary: Optional[ReminderPassSummary] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Lifecycle ─────────────────────────────────────────────

    async def start_background(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="reminder_scheduler")
        self._task.add_done_callback(self._on_task_done)
        logger.info("reminder_scheduler_started",
                    interval_s=self.poll_interval_s,
                    cooldown_minutes=self.cooldown.total_seconds() / 60)
        return self._task

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop after the in-flight pass; cancel if it outlasts timeout."""
        self._stop.set()
        if self._task is None:
            return
        done, _ = await asyncio.wait([self._task], timeout=timeout)
        if not done:
            logger.warning("reminder_scheduler_stop_timeout", timeout_s=timeout)
            self._task.cancel()
            await asyncio.wait([self._task])
        self._task = None
        logger.info("reminder_scheduler_stopped")

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("reminder_scheduler_crashed",
                         error=str(exc),
                         exc_info=(type(exc), exc, exc.__traceback__))

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_pass()
            except PersistenceError as e:
                logger.error("reminder_pass_failed", error=str(e))
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                pass

    # ── Pass ──────────────────────────────────────────────────

    async def run_pass(self) -> ReminderPassSummary:
        now = self._clock()
        subjects = await self.store.load_reminder_candidates()
        summary = ReminderPassSummary(candidates=len(subjects))

        for subject in subjects:
            if not subject.is_remindable:
                summary.skipped += 1
                continue

            thresholds = self._thresholds(subject)
            if thresholds is None:
                summary.invalid_config += 1
                continue

            stage = due_stage(subject, thresholds, now, self.cooldown)
            if stage is None:
                summary.not_due += 1
                continue

            if summary.sent or summary.failed:
                await asyncio.sleep(self.send_delay_s)

            if await self._send(subject, stage):
                summary.sent += 1
            else:
                summary.failed += 1

        self.last_summary = summary
        logger.info("reminder_pass_completed", **summary.to_dict())
        return summary

    def _thresholds(self, subject: ReminderSubject) -> Optional[ReminderThresholds]:
        if subject.reminder_config is None:
            logger.warning("reminder_config_missing", submitter_id=subject.id)
            return None
        try:
            return subject.thresholds()
        except ValidationError as e:
            logger.warning("reminder_config_invalid",
                           submitter_id=subject.id,
                           errors=e.error_count())
            return None

    async def _send(self, subject: ReminderSubject, stage: int) -> bool:
        params = ReminderEmailParams(
            recipient_name=subject.name,
            document_name=subject.document_name,
            signing_link=signing_link(self.base_url, subject.token),
        )
        try:
            await self.email.send_reminder(subject.email, stage, params)
        except EmailSendError as e:
            logger.error("reminder_send_failed",
                         submitter_id=subject.id,
                         stage=stage,
                         error=str(e),
                         retryable=e.retryable)
            return False
        except Exception as e:
            logger.error("reminder_send_failed",
                         submitter_id=subject.id,
                         stage=stage,
                         error=str(e),
                         error_type=type(e).__name__)
            return False

        try:
            recorded = await self.store.record_reminder_sent(subject.id, self._clock())
        except PersistenceError as e:
            # Email already went out; the signer may get this stage again next pass
            logger.error("reminder_record_failed",
                         submitter_id=subject.id, stage=stage, error=str(e))
            return True

        if not recorded:
            logger.warning("reminder_record_skipped", submitter_id=subject.id, stage=stage)
        logger.info("reminder_sent",
                    submitter_id=subject.id,
                    email=subject.email,
                    stage=stage,
                    document=subject.document_name)
        return True

    # ── Reporting ─────────────────────────────────────────────

    async def preview(self, now: Optional[datetime] = None) -> list[PendingReminder]:
        """Pending reminders with time since creation and time until the next stage."""
        now = now or self._clock()
        pending: list[PendingReminder] = []
        for subject in await self.store.load_reminder_candidates():
            if not subject.is_remindable:
                continue
            thresholds = self._thresholds(subject)
            if thresholds is None:
                continue
            due = next_due_at(subject, thresholds, self.cooldown)
            until = max(0.0, (due - now).total_seconds() / 3600)
            pending.append(PendingReminder(
                subject=subject,
                next_stage=subject.reminder_count + 1,
                hours_since_created=round((now - subject.created_at).total_seconds() / 3600, 2),
                hours_until_next=round(until, 2),
            ))
        return pending
