import os

# Service modules build their globals at import time.
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from shared.audit import AuditLedger
from shared.config import LifecycleConfig
from shared.database import Database
from shared.models import AuditEvent, VerificationRecord
from services.auto_miss.sweep import AutoMissSweeper
from services.claims.review import ClaimsReview
from services.entries.reporter import OutcomeReporter
from services.entries.store import EntryStore

NOW = datetime(2026, 3, 1, 12, 0, 0)


class RecordingPublisher:
    """Stands in for RedisStreamClient; keeps every published message."""

    def __init__(self):
        self.published = []

    async def publish(self, stream: str, data: dict) -> str:
        self.published.append((stream, dict(data)))
        return f"{len(self.published)}-0"

    def streams(self) -> list[str]:
        return [stream for stream, _ in self.published]


class FailingLedger(AuditLedger):
    """Audit ledger whose writes fail, for all entities or only the listed ids."""

    def __init__(self, fail_for=None):
        self.fail_for = set(fail_for or [])

    async def record(self, session, *, entity_id, **kwargs):
        if not self.fail_for or entity_id in self.fail_for:
            raise RuntimeError(f"audit store unavailable for {entity_id}")
        return await super().record(session, entity_id=entity_id, **kwargs)


@pytest.fixture
def config():
    return LifecycleConfig(
        attempt_window=timedelta(hours=2),
        verification_deadline=timedelta(hours=12),
        sweep_batch_size=100,
        sweep_interval_seconds=900,
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'lifecycle.db'}")
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def store(db, config):
    return EntryStore(db, config)


@pytest.fixture
def reporter(db, config, publisher):
    return OutcomeReporter(db, config, publisher=publisher)


@pytest.fixture
def sweeper(db, config, publisher):
    return AutoMissSweeper(db, config, publisher=publisher)


@pytest.fixture
def review(db, config, publisher):
    return ClaimsReview(db, config, publisher=publisher)


@pytest.fixture
def make_entry(store):
    counter = {"n": 0}

    async def _make(participant_id="player-1", competition_id="comp-1", now=NOW):
        counter["n"] += 1
        entry, _ = await store.create_entry(
            participant_id=participant_id,
            competition_id=competition_id,
            amount_minor=500,
            payment_reference=f"pay-{counter['n']}",
            now=now,
        )
        return entry

    return _make


async def audit_events(db, entity_id=None, action=None) -> list[AuditEvent]:
    query = select(AuditEvent)
    if entity_id:
        query = query.where(AuditEvent.entity_id == entity_id)
    if action:
        query = query.where(AuditEvent.action == action)
    async with db.session() as session:
        result = await session.execute(query.order_by(AuditEvent.id))
        return list(result.scalars().all())


async def verification_count(db, entry_id) -> int:
    async with db.session() as session:
        return await session.scalar(
            select(func.count()).select_from(VerificationRecord).where(
                VerificationRecord.entry_id == entry_id
            )
        )
