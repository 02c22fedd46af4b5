from datetime import timedelta

import pytest

from shared.errors import InvalidTransition
from shared.lifecycle import check_review_transition, transition_entry
from shared.models import EntryStatus, Outcome, ReviewStatus

from tests.conftest import NOW


@pytest.mark.parametrize("current,target", [
    (ReviewStatus.INITIATED, ReviewStatus.UNDER_REVIEW),
    (ReviewStatus.INITIATED, ReviewStatus.VERIFIED),
    (ReviewStatus.INITIATED, ReviewStatus.REJECTED),
    (ReviewStatus.UNDER_REVIEW, ReviewStatus.VERIFIED),
    (ReviewStatus.UNDER_REVIEW, ReviewStatus.REJECTED),
])
def test_allowed_review_transitions(current, target):
    check_review_transition(current, target)


@pytest.mark.parametrize("current,target", [
    (ReviewStatus.UNDER_REVIEW, ReviewStatus.UNDER_REVIEW),
    (ReviewStatus.VERIFIED, ReviewStatus.REJECTED),
    (ReviewStatus.REJECTED, ReviewStatus.VERIFIED),
    (ReviewStatus.VERIFIED, ReviewStatus.UNDER_REVIEW),
])
def test_refused_review_transitions(current, target):
    with pytest.raises(InvalidTransition):
        check_review_transition(current, target)


@pytest.mark.asyncio
async def test_self_report_guard_requires_open_window(db, store, make_entry):
    entry = await make_entry()

    async with db.session() as session:
        assert not await transition_entry(session, entry.id, Outcome.MISS, now=entry.attempt_window_end)
    async with db.session() as session:
        assert not await transition_entry(
            session, entry.id, Outcome.AUTO_MISS, now=entry.attempt_window_end - timedelta(seconds=1)
        )

    current = await store.get(entry.id)
    assert current.status == EntryStatus.AWAITING_ATTEMPT
    assert current.outcome_self is None


@pytest.mark.asyncio
@pytest.mark.parametrize("outcome,status", [
    (Outcome.WIN, EntryStatus.VERIFICATION_PENDING),
    (Outcome.MISS, EntryStatus.COMPLETED),
])
async def test_outcome_and_status_move_together(db, store, make_entry, outcome, status):
    entry = await make_entry()

    async with db.session() as session:
        assert await transition_entry(session, entry.id, outcome, now=NOW + timedelta(minutes=1))
    async with db.session() as session:
        assert not await transition_entry(session, entry.id, Outcome.MISS, now=NOW + timedelta(minutes=2))

    current = await store.get(entry.id)
    assert current.status == status
    assert current.outcome_self == outcome
    assert current.outcome_reported_at == NOW + timedelta(minutes=1)
