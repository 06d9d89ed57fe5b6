"""
Tests for the reminder scheduler.

Covers:
  - due_stage decisions (thresholds, cooldown, max reminders)
  - one reminder per signer per pass, stages never skipped
  - invalid / missing reminder config
  - send failures (transport or otherwise) leave state untouched
  - preview report
  - background loop lifecycle
"""
import asyncio
import pytest
from datetime import timedelta

from channels.email import SmtpEmailGateway
from config.settings import EmailConfig
from database.store_base import PersistenceError, PersistenceGateway
from models.schemas import ReminderThresholds, SubmitterStatus
from reminders.scheduler import ReminderScheduler, due_stage, signing_link
from tests.conftest import NOW, RecordingEmailGateway, make_subject

COOLDOWN = timedelta(minutes=60)
DEFAULT = ReminderThresholds()


class StaticStore(PersistenceGateway):
    """Returns a fixed candidate list, whatever its contents."""

    def __init__(self, subjects, fail_load: bool = False):
        self.subjects = subjects
        self.fail_load = fail_load
        self.recorded: list[int] = []

    async def persist_payment(self, item):
        return 1

    async def load_reminder_candidates(self):
        if self.fail_load:
            raise PersistenceError("connection refused")
        return list(self.subjects)

    async def record_reminder_sent(self, subject_id, sent_at):
        self.recorded.append(subject_id)
        return True


class CrashingEmailGateway(RecordingEmailGateway):
    """Raises a non-transport error for some addresses."""

    def __init__(self, crash_for: set[str]):
        super().__init__()
        self.crash_for = crash_for

    async def send_reminder(self, to_email, stage, params):
        if to_email in self.crash_for:
            raise RuntimeError("template engine exploded")
        await super().send_reminder(to_email, stage, params)


class TestDueStage:
    def test_not_due_before_first_threshold(self):
        s = make_subject(age=timedelta(hours=23, minutes=59))
        assert due_stage(s, DEFAULT, NOW, COOLDOWN) is None

    def test_due_exactly_at_threshold(self):
        s = make_subject(age=timedelta(hours=24))
        assert due_stage(s, DEFAULT, NOW, COOLDOWN) == 1

    def test_stage_follows_count_even_when_overdue(self):
        s = make_subject(age=timedelta(hours=500), reminder_count=0)
        assert due_stage(s, DEFAULT, NOW, COOLDOWN) == 1

    def test_second_stage_waits_for_its_threshold(self):
        s = make_subject(age=timedelta(hours=50), reminder_count=1, last_sent_ago=timedelta(hours=26))
        assert due_stage(s, DEFAULT, NOW, COOLDOWN) is None
        s = make_subject(age=timedelta(hours=72), reminder_count=1, last_sent_ago=timedelta(hours=48))
        assert due_stage(s, DEFAULT, NOW, COOLDOWN) == 2

    def test_cooldown_blocks_back_to_back_reminders(self):
        s = make_subject(age=timedelta(hours=200), reminder_count=1, last_sent_ago=timedelta(minutes=59))
        assert due_stage(s, DEFAULT, NOW, COOLDOWN) is None
        s = make_subject(age=timedelta(hours=200), reminder_count=1, last_sent_ago=timedelta(minutes=60))
        assert due_stage(s, DEFAULT, NOW, COOLDOWN) == 2

    def test_nothing_after_three(self):
        s = make_subject(age=timedelta(days=60), reminder_count=3, last_sent_ago=timedelta(days=10))
        assert due_stage(s, DEFAULT, NOW, COOLDOWN) is None

    def test_custom_thresholds(self):
        thresholds = ReminderThresholds(first_reminder_hours=4, second_reminder_hours=8,
                                        third_reminder_hours=12)
        s = make_subject(age=timedelta(hours=5))
        assert due_stage(s, thresholds, NOW, COOLDOWN) == 1


class TestRunPass:
    @pytest.fixture
    def scheduler(self, memory_store, email_gateway, reminder_config, clock):
        return ReminderScheduler(memory_store, email_gateway, "https://sign.example.com/",
                                 reminder_config, clock=clock)

    @pytest.mark.asyncio
    async def test_sends_due_reminder_and_records_it(self, scheduler, memory_store, email_gateway):
        memory_store.add_submitter(make_subject(id=1, age=timedelta(hours=30), template_name=None,
                                                template_id=42, token="abc123"))
        summary = await scheduler.run_pass()

        assert summary.sent == 1
        to, stage, params = email_gateway.sent[0]
        assert to == "signer1@example.com"
        assert stage == 1
        assert params.signing_link == "https://sign.example.com/s/abc123"
        assert params.document_name == "Document #42"

        stored = memory_store.get_submitter(1)
        assert stored.reminder_count == 1
        assert stored.last_reminder_sent_at == NOW

    @pytest.mark.asyncio
    async def test_one_reminder_per_pass_and_no_skipping(self, scheduler, memory_store,
                                                         email_gateway, clock):
        # Old enough for all three stages at once
        memory_store.add_submitter(make_subject(id=1, age=timedelta(days=10)))

        for _ in range(5):
            summary = await scheduler.run_pass()
            assert summary.sent <= 1
            clock.advance(minutes=61)
        stages = [stage for _, stage, _ in email_gateway.sent]

        assert stages == [1, 2, 3]
        assert memory_store.get_submitter(1).reminder_count == 3

    @pytest.mark.asyncio
    async def test_cooldown_between_passes(self, scheduler, memory_store, email_gateway, clock):
        memory_store.add_submitter(make_subject(id=1, age=timedelta(days=10)))
        await scheduler.run_pass()
        clock.advance(minutes=30)
        summary = await scheduler.run_pass()

        assert summary.not_due == 1
        assert len(email_gateway.sent) == 1

    @pytest.mark.asyncio
    async def test_invalid_config_skips_only_that_signer(self, scheduler, memory_store, email_gateway):
        memory_store.add_submitter(make_subject(id=1, reminder_config={"first_reminder_hours": -5}))
        memory_store.add_submitter(make_subject(id=2, reminder_config={"first_reminder_hours": "soon"}))
        memory_store.add_submitter(make_subject(id=3, reminder_config=["not", "a", "mapping"]))
        memory_store.add_submitter(make_subject(id=4))

        summary = await scheduler.run_pass()

        assert summary.invalid_config == 3
        assert summary.sent == 1
        assert [to for to, _, _ in email_gateway.sent] == ["signer4@example.com"]
        assert memory_store.get_submitter(1).reminder_count == 0

    @pytest.mark.asyncio
    async def test_send_failure_leaves_state(self, memory_store, reminder_config, clock):
        gateway = RecordingEmailGateway(fail_for={"signer1@example.com"})
        scheduler = ReminderScheduler(memory_store, gateway, "https://x", reminder_config, clock=clock)
        memory_store.add_submitter(make_subject(id=1))
        memory_store.add_submitter(make_subject(id=2, age=timedelta(hours=26)))

        summary = await scheduler.run_pass()

        assert summary.failed == 1
        assert summary.sent == 1
        failed = memory_store.get_submitter(1)
        assert failed.reminder_count == 0
        assert failed.last_reminder_sent_at is None
        assert memory_store.get_submitter(2).reminder_count == 1

    @pytest.mark.asyncio
    async def test_unexpected_gateway_error_is_per_signer(self, memory_store, reminder_config, clock):
        gateway = CrashingEmailGateway(crash_for={"signer1@example.com"})
        scheduler = ReminderScheduler(memory_store, gateway, "https://x", reminder_config, clock=clock)
        memory_store.add_submitter(make_subject(id=1))
        memory_store.add_submitter(make_subject(id=2, age=timedelta(hours=26)))

        summary = await scheduler.run_pass()

        assert summary.failed == 1
        assert summary.sent == 1
        assert [to for to, _, _ in gateway.sent] == ["signer2@example.com"]
        assert memory_store.get_submitter(1).reminder_count == 0
        assert memory_store.get_submitter(2).reminder_count == 1

    @pytest.mark.asyncio
    async def test_header_injection_address_fails_only_that_signer(self, memory_store,
                                                                   reminder_config, clock):
        gateway = SmtpEmailGateway(EmailConfig(test_mode=True))
        scheduler = ReminderScheduler(memory_store, gateway, "https://x", reminder_config, clock=clock)
        memory_store.add_submitter(make_subject(id=1, email="a@example.com\nBcc: x@evil.com"))
        memory_store.add_submitter(make_subject(id=2, age=timedelta(hours=26)))

        summary = await scheduler.run_pass()

        assert summary.failed == 1
        assert summary.sent == 1
        assert memory_store.get_submitter(1).reminder_count == 0
    @pytest.mark.asyncio
    async def test_signed_signers_are_never_reminded(self, scheduler, memory_store, email_gateway):
        memory_store.add_submitter(make_subject(id=1))
        memory_store.set_status(1, SubmitterStatus.SIGNED)
        summary = await scheduler.run_pass()
        assert summary.candidates == 0
        assert email_gateway.sent == []

    @pytest.mark.asyncio
    async def test_defensive_skip_of_non_remindable_candidates(self, email_gateway,
                                                               reminder_config, clock):
        store = StaticStore([
            make_subject(id=1, status=SubmitterStatus.COMPLETED),
            make_subject(id=2, reminder_count=3, age=timedelta(days=30)),
            make_subject(id=3, reminder_config=None),
        ])
        scheduler = ReminderScheduler(store, email_gateway, "https://x", reminder_config, clock=clock)

        summary = await scheduler.run_pass()

        assert summary.skipped == 2
        assert summary.invalid_config == 1
        assert email_gateway.sent == []
        assert store.recorded == []

    @pytest.mark.asyncio
    async def test_send_delay_between_sends(self, memory_store, email_gateway, clock):
        from config.settings import ReminderSchedulerConfig
        scheduler = ReminderScheduler(memory_store, email_gateway, "https://x",
                                      ReminderSchedulerConfig(send_delay_ms=20), clock=clock)
        for i in range(1, 4):
            memory_store.add_submitter(make_subject(id=i))

        loop = asyncio.get_running_loop()
        started = loop.time()
        await scheduler.run_pass()
        elapsed = loop.time() - started

        assert len(email_gateway.sent) == 3
        assert elapsed >= 0.035


class TestPreview:
    @pytest.mark.asyncio
    async def test_hours_until_next(self, memory_store, email_gateway, reminder_config, clock):
        scheduler = ReminderScheduler(memory_store, email_gateway, "https://x", reminder_config, clock=clock)
        memory_store.add_submitter(make_subject(id=1, age=timedelta(hours=20)))
        memory_store.add_submitter(make_subject(id=2, age=timedelta(hours=30)))

        pending = {p.subject.id: p for p in await scheduler.preview()}

        assert pending[1].hours_until_next == 4.0
        assert not pending[1].ready
        assert pending[1].hours_since_created == 20.0
        assert pending[2].ready
        assert pending[2].next_stage == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_first_pass_runs_immediately(self, memory_store, email_gateway,
                                               reminder_config, clock):
        scheduler = ReminderScheduler(memory_store, email_gateway, "https://x", reminder_config, clock=clock)
        memory_store.add_submitter(make_subject(id=1))

        await scheduler.start_background()
        for _ in range(50):
            if email_gateway.sent:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert len(email_gateway.sent) == 1
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_failed_load_does_not_kill_loop(self, email_gateway, clock):
        from config.settings import ReminderSchedulerConfig
        store = StaticStore([], fail_load=True)
        scheduler = ReminderScheduler(store, email_gateway, "https://x",
                                      ReminderSchedulerConfig(poll_interval_seconds=1), clock=clock)
        await scheduler.start_background()
        await asyncio.sleep(0.05)

        assert scheduler.running
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_bad_signer_address_does_not_kill_loop(self, memory_store, clock):
        from config.settings import ReminderSchedulerConfig
        gateway = SmtpEmailGateway(EmailConfig(test_mode=True))
        scheduler = ReminderScheduler(memory_store, gateway, "https://x",
                                      ReminderSchedulerConfig(poll_interval_seconds=1, send_delay_ms=0),
                                      clock=clock)
        memory_store.add_submitter(make_subject(id=1, email="a@example.com\nBcc: x@evil.com"))
        memory_store.add_submitter(make_subject(id=2))

        await scheduler.start_background()
        for _ in range(50):
            if scheduler.last_summary is not None:
                break
            await asyncio.sleep(0.01)

        assert scheduler.running
        assert scheduler.last_summary.failed == 1
        assert scheduler.last_summary.sent == 1
        await scheduler.stop()


def test_signing_link_strips_trailing_slash():
    assert signing_link("https://a.b/", "t1") == "https://a.b/s/t1"
