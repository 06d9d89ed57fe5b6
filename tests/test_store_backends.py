"""
Tests for the persistence backends.

Covers:
  - InMemoryStore
  - SqlStore (via SQLite for test portability)
  - Store factory and URL mapping
"""
import pytest
import pytest_asyncio
from datetime import timedelta

from config.settings import DatabaseConfig
from database.models import SubmitterRow, TemplateRow
from database.session import (
    _to_async_url, create_engine_for, init_db, make_session_factory, session_scope,
)
from database.store import SqlStore
from database.store_factory import create_store
from database.store_memory import InMemoryStore
from models.schemas import MAX_REMINDERS, PaymentStatus, SubmitterStatus
from tests.conftest import NOW, make_payment, make_subject


# ──────────────────────────────────────────────────────────────
#  InMemoryStore
# ──────────────────────────────────────────────────────────────

class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_persist_payment_assigns_ids(self, memory_store):
        first = await memory_store.persist_payment(make_payment(user_id=1))
        second = await memory_store.persist_payment(make_payment(user_id=2))
        assert (first, second) == (1, 2)
        assert memory_store.payments[2].user_id == 2

    @pytest.mark.asyncio
    async def test_candidates_filtered_and_ordered(self, memory_store):
        memory_store.add_submitter(make_subject(id=1, age=timedelta(hours=10)))
        memory_store.add_submitter(make_subject(id=2, age=timedelta(hours=50)))
        memory_store.add_submitter(make_subject(id=3, reminder_config=None))
        memory_store.add_submitter(make_subject(id=4, reminder_count=3))
        memory_store.add_submitter(make_subject(id=5, status=SubmitterStatus.DECLINED))
        memory_store.add_submitter(make_subject(id=6, status=SubmitterStatus.VIEWED))

        ids = [s.id for s in await memory_store.load_reminder_candidates()]
        assert ids == [2, 6, 1]

    @pytest.mark.asyncio
    async def test_record_reminder_guarded(self, memory_store):
        memory_store.add_submitter(make_subject(id=1, reminder_count=2))
        assert await memory_store.record_reminder_sent(1, NOW)
        assert memory_store.get_submitter(1).reminder_count == MAX_REMINDERS
        assert not await memory_store.record_reminder_sent(1, NOW)
        assert not await memory_store.record_reminder_sent(99, NOW)


# ──────────────────────────────────────────────────────────────
#  SqlStore (SQLite)
# ──────────────────────────────────────────────────────────────

class TestSqlStore:
    @pytest_asyncio.fixture
    async def engine(self, tmp_path):
        engine = create_engine_for(f"sqlite:///{tmp_path}/signdesk_test.db")
        await init_db(engine)
        yield engine
        await engine.dispose()

    @pytest.fixture
    def factory(self, engine):
        return make_session_factory(engine)

    @pytest.fixture
    def store(self, factory):
        return SqlStore(factory)

    async def _seed(self, factory):
        async with session_scope(factory) as db:
            template = TemplateRow(id=1, name="Lease Agreement")
            db.add(template)
            db.add_all([
                SubmitterRow(id=1, template_id=1, name="A", email="a@x.io", token="t1",
                             status="pending", reminder_config={"first_reminder_hours": 4},
                             created_at=NOW - timedelta(hours=5)),
                SubmitterRow(id=2, template_id=1, name="B", email="b@x.io", token="t2",
                             status="sent", reminder_config={}, reminder_count=1,
                             created_at=NOW - timedelta(hours=80)),
                SubmitterRow(id=3, template_id=1, name="C", email="c@x.io", token="t3",
                             status="signed", reminder_config={},
                             created_at=NOW - timedelta(hours=90)),
                SubmitterRow(id=4, template_id=1, name="D", email="d@x.io", token="t4",
                             status="pending", reminder_config=None,
                             created_at=NOW - timedelta(hours=90)),
                SubmitterRow(id=5, template_id=1, name="E", email="e@x.io", token="t5",
                             status="viewed", reminder_config={}, reminder_count=3,
                             created_at=NOW - timedelta(hours=400)),
            ])

    @pytest.mark.asyncio
    async def test_persist_payment(self, store, factory):
        payment_id = await store.persist_payment(make_payment(user_id=7, amount_cents=4900,
                                                              metadata={"email": "p@x.io"}))
        assert payment_id >= 1
        from database.models import PaymentRecordRow
        async with session_scope(factory) as db:
            row = await db.get(PaymentRecordRow, payment_id)
            assert row.user_id == 7
            assert row.amount_cents == 4900
            assert row.status == PaymentStatus.COMPLETED.value
            assert row.metadata_ == {"email": "p@x.io"}

    @pytest.mark.asyncio
    async def test_load_candidates(self, store, factory):
        await self._seed(factory)
        subjects = await store.load_reminder_candidates()

        assert [s.id for s in subjects] == [2, 1]
        first = subjects[1]
        assert first.template_name == "Lease Agreement"
        assert first.created_at.tzinfo is not None
        assert first.thresholds().first_reminder_hours == 4

    @pytest.mark.asyncio
    async def test_record_reminder_sent_is_guarded(self, store, factory):
        await self._seed(factory)
        assert await store.record_reminder_sent(2, NOW)
        assert await store.record_reminder_sent(2, NOW)
        assert not await store.record_reminder_sent(2, NOW)   # already at 3
        assert not await store.record_reminder_sent(5, NOW)
        assert not await store.record_reminder_sent(404, NOW)

        async with session_scope(factory) as db:
            row = await db.get(SubmitterRow, 2)
            assert row.reminder_count == 3
            assert row.last_reminder_sent_at is not None


# ──────────────────────────────────────────────────────────────
#  Factory and session helpers
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def test_memory_default(self):
        assert isinstance(create_store(), InMemoryStore)

    @pytest.mark.asyncio
    async def test_sql_backend(self, tmp_path):
        engine = create_engine_for(f"sqlite:///{tmp_path}/factory.db")
        store = create_store(DatabaseConfig(store_backend="sql"), make_session_factory(engine))
        assert isinstance(store, SqlStore)
        await engine.dispose()

    def test_sql_backend_needs_session_factory(self):
        with pytest.raises(ValueError):
            create_store(DatabaseConfig(store_backend="sql"))

    def test_fresh_instances(self):
        assert create_store() is not create_store()


class TestAsyncUrl:
    def test_sqlite_url(self):
        assert _to_async_url("sqlite:///./test.db") == "sqlite+aiosqlite:///./test.db"

    def test_postgres_urls(self):
        assert _to_async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"
        assert _to_async_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_already_async(self):
        assert _to_async_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"
