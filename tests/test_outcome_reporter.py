import asyncio
from datetime import timedelta

import pytest

from shared.errors import AlreadyReported, EntryNotFound, InvalidRequest, NotEntryOwner, WindowClosed
from shared.models import AuditAction, EntryStatus, Outcome, ReviewStatus
from shared.redis_streams import STREAM_CLAIM_INITIATED
from services.entries.reporter import OutcomeReporter

from tests.conftest import NOW, FailingLedger, audit_events, verification_count


@pytest.mark.asyncio
async def test_miss_completes_entry(reporter, db, make_entry, publisher):
    entry = await make_entry()

    updated, record = await reporter.report_outcome(
        entry.id, Outcome.MISS, "player-1", now=NOW + timedelta(minutes=30)
    )

    assert record is None
    assert updated.status == EntryStatus.COMPLETED
    assert updated.outcome_self == Outcome.MISS
    assert updated.outcome_reported_at == NOW + timedelta(minutes=30)
    assert await verification_count(db, entry.id) == 0
    assert publisher.published == []

    events = await audit_events(db, entry.id, AuditAction.OUTCOME_REPORTED.value)
    assert len(events) == 1
    assert events[0].prior_value == {"status": "awaiting_attempt", "outcome_self": None}
    assert events[0].new_value == {"status": "completed", "outcome_self": "miss"}
    assert events[0].actor_id == "player-1"


@pytest.mark.asyncio
async def test_win_opens_verification_record(reporter, db, make_entry, publisher):
    entry = await make_entry()
    reported_at = NOW + timedelta(minutes=90)

    updated, record = await reporter.report_outcome(entry.id, Outcome.WIN, "player-1", now=reported_at)

    assert updated.status == EntryStatus.VERIFICATION_PENDING
    assert updated.outcome_self == Outcome.WIN
    assert record is not None
    assert record.entry_id == entry.id
    assert record.status == ReviewStatus.INITIATED
    assert record.auto_miss_at == reported_at + timedelta(hours=12)
    assert await verification_count(db, entry.id) == 1

    assert publisher.streams() == [STREAM_CLAIM_INITIATED]
    assert publisher.published[0][1]["verification_id"] == record.id


@pytest.mark.asyncio
async def test_second_report_is_refused(reporter, db, make_entry):
    entry = await make_entry()
    await reporter.report_outcome(entry.id, Outcome.MISS, "player-1", now=NOW + timedelta(minutes=5))

    with pytest.raises(AlreadyReported):
        await reporter.report_outcome(entry.id, Outcome.WIN, "player-1", now=NOW + timedelta(minutes=6))

    assert await verification_count(db, entry.id) == 0
    reported = await audit_events(db, entry.id, AuditAction.OUTCOME_REPORTED.value)
    assert len(reported) == 1
    assert reported[0].new_value["outcome_self"] == "miss"


@pytest.mark.asyncio
async def test_report_after_window_is_refused_before_sweep(reporter, store, db, make_entry):
    entry = await make_entry()

    with pytest.raises(WindowClosed):
        await reporter.report_outcome(entry.id, Outcome.WIN, "player-1", now=NOW + timedelta(hours=2, seconds=1))

    current = await store.get(entry.id)
    assert current.status == EntryStatus.AWAITING_ATTEMPT
    assert current.outcome_self is None
    assert await audit_events(db, entry.id, AuditAction.OUTCOME_REPORTED.value) == []


@pytest.mark.asyncio
async def test_report_at_window_end_is_refused(reporter, make_entry):
    entry = await make_entry()

    with pytest.raises(WindowClosed):
        await reporter.report_outcome(entry.id, Outcome.MISS, "player-1", now=entry.attempt_window_end)


@pytest.mark.asyncio
async def test_report_on_auto_missed_entry_says_window_closed(reporter, sweeper, make_entry):
    entry = await make_entry()
    await sweeper.run(now=NOW + timedelta(hours=3))

    with pytest.raises(WindowClosed):
        await reporter.report_outcome(entry.id, Outcome.WIN, "player-1", now=NOW + timedelta(minutes=1))


@pytest.mark.asyncio
async def test_only_owner_may_report(reporter, store, make_entry):
    entry = await make_entry(participant_id="player-1")

    with pytest.raises(NotEntryOwner):
        await reporter.report_outcome(entry.id, Outcome.WIN, "player-2", now=NOW + timedelta(minutes=1))

    assert (await store.get(entry.id)).outcome_self is None


@pytest.mark.asyncio
async def test_participant_cannot_report_auto_miss(reporter, make_entry):
    entry = await make_entry()

    with pytest.raises(InvalidRequest):
        await reporter.report_outcome(entry.id, Outcome.AUTO_MISS, "player-1", now=NOW)


@pytest.mark.asyncio
async def test_unknown_entry(reporter):
    with pytest.raises(EntryNotFound):
        await reporter.report_outcome("missing", Outcome.MISS, "player-1", now=NOW)


@pytest.mark.asyncio
async def test_audit_failure_rolls_back_report(db, config, store, make_entry):
    entry = await make_entry()
    failing = OutcomeReporter(db, config, audit=FailingLedger())

    with pytest.raises(RuntimeError):
        await failing.report_outcome(entry.id, Outcome.MISS, "player-1", now=NOW + timedelta(minutes=1))

    current = await store.get(entry.id)
    assert current.status == EntryStatus.AWAITING_ATTEMPT
    assert current.outcome_self is None


@pytest.mark.asyncio
async def test_lost_verification_write_is_healed_by_backlog(reporter, db, make_entry, monkeypatch):
    entry = await make_entry()

    async def broken_ensure(*args, **kwargs):
        raise RuntimeError("connection dropped")

    monkeypatch.setattr(reporter.verifications, "ensure", broken_ensure)
    updated, record = await reporter.report_outcome(
        entry.id, Outcome.WIN, "player-1", now=NOW + timedelta(minutes=10)
    )
    monkeypatch.undo()

    assert record is None
    assert updated.outcome_self == Outcome.WIN
    assert await verification_count(db, entry.id) == 0

    created, failed = await reporter.verifications.ensure_backlog(db, now=NOW + timedelta(minutes=20))
    assert [r.entry_id for r in created] == [entry.id]
    assert failed == []
    assert await verification_count(db, entry.id) == 1


@pytest.mark.asyncio
async def test_concurrent_reports_accept_exactly_one(reporter, db, make_entry):
    entry = await make_entry()

    results = await asyncio.gather(
        reporter.report_outcome(entry.id, Outcome.WIN, "player-1", now=NOW + timedelta(minutes=5)),
        reporter.report_outcome(entry.id, Outcome.MISS, "player-1", now=NOW + timedelta(minutes=5)),
        return_exceptions=True,
    )

    accepted = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, Exception)]
    assert len(accepted) == 1
    assert len(refused) == 1
    assert isinstance(refused[0], AlreadyReported)

    events = await audit_events(db, entry.id, AuditAction.OUTCOME_REPORTED.value)
    assert len(events) == 1
    winner, _ = accepted[0]
    expected_records = 1 if winner.outcome_self == Outcome.WIN else 0
    assert await verification_count(db, entry.id) == expected_records
