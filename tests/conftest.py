"""Shared test fixtures for the SignDesk worker."""
import pytest
import redis.exceptions
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from channels.email import EmailGateway, EmailSendError, ReminderEmailParams
from config.settings import QueueConfig, ReminderSchedulerConfig
from database.store_memory import InMemoryStore
from models.schemas import PaymentRecordCreate, ReminderSubject, SubmitterStatus


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock for scheduler tests."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingEmailGateway(EmailGateway):
    """Collects sends instead of delivering; optionally fails for some addresses."""

    def __init__(self, fail_for: Optional[set[str]] = None):
        self.sent: list[tuple[str, int, ReminderEmailParams]] = []
        self.fail_for = fail_for or set()

    async def send_reminder(self, to_email: str, stage: int, params: ReminderEmailParams) -> None:
        if to_email in self.fail_for:
            raise EmailSendError(f"mailbox unavailable: {to_email}")
        self.sent.append((to_email, stage, params))


class FakeRedis:
    """The subset of redis.asyncio.Redis the work queue uses."""

    def __init__(self):
        self.lists: dict[str, list[str]] = {}
        self.closed = False
        self.outages = 0   # next N commands fail as if the server were down

    def _check_up(self) -> None:
        if self.outages > 0:
            self.outages -= 1
            raise redis.exceptions.ConnectionError("Connection refused")

    async def rpush(self, key: str, *values: str) -> int:
        self._check_up()
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def lpop(self, key: str, count: Optional[int] = None) -> Any:
        self._check_up()
        items = self.lists.get(key, [])
        if not items:
            return None
        if count is None:
            return items.pop(0)
        popped, self.lists[key] = items[:count], items[count:]
        return popped

    async def llen(self, key: str) -> int:
        self._check_up()
        return len(self.lists.get(key, []))

    async def aclose(self) -> None:
        self.closed = True


def make_payment(user_id: int = 1, amount_cents: int = 1999, **kwargs) -> PaymentRecordCreate:
    return PaymentRecordCreate(
        user_id=user_id,
        stripe_session_id=kwargs.pop("stripe_session_id", f"cs_test_{user_id}"),
        amount_cents=amount_cents,
        **kwargs,
    )


def make_subject(
    id: int = 1,
    age: timedelta = timedelta(hours=25),
    reminder_count: int = 0,
    last_sent_ago: Optional[timedelta] = None,
    reminder_config: Any = "default",
    status: SubmitterStatus = SubmitterStatus.PENDING,
    now: datetime = NOW,
    **kwargs,
) -> ReminderSubject:
    if reminder_config == "default":
        reminder_config = {
            "first_reminder_hours": 24,
            "second_reminder_hours": 72,
            "third_reminder_hours": 168,
        }
    return ReminderSubject(
        id=id,
        template_id=kwargs.pop("template_id", 10),
        template_name=kwargs.pop("template_name", "Lease Agreement"),
        name=kwargs.pop("name", f"Signer {id}"),
        email=kwargs.pop("email", f"signer{id}@example.com"),
        token=kwargs.pop("token", f"tok{id}"),
        status=status,
        created_at=now - age,
        reminder_count=reminder_count,
        last_reminder_sent_at=(now - last_sent_ago) if last_sent_ago is not None else None,
        reminder_config=reminder_config,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def email_gateway() -> RecordingEmailGateway:
    return RecordingEmailGateway()


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(per_batch_concurrency=10, idle_interval_ms=5, drain_on_shutdown=True)


@pytest.fixture
def reminder_config() -> ReminderSchedulerConfig:
    return ReminderSchedulerConfig(poll_interval_seconds=3600, cooldown_minutes=60, send_delay_ms=0)
