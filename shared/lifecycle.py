"""Entry and verification state machines.

Every transition is a single conditional UPDATE guarded on the expected
prior state. The affected-row count tells the caller whether it won:
1 means this caller moved the row and its audit event is written in the
same transaction, 0 means another actor got there first and nothing is
written. No locks are taken; concurrent participants, sweeps and
reviewers race on the guard and at most one of them matches.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared import metrics
from shared.audit import AuditLedger, ledger as default_ledger
from shared.errors import InvalidTransition
from shared.models import (
    AuditAction, AuditEntity, Entry, EntryStatus, Outcome, ReviewStatus,
    VerificationRecord, OPEN_REVIEW_STATUSES, TERMINAL_REVIEW_STATUSES,
)

logger = logging.getLogger(__name__)

# outcome -> status the entry moves to from awaiting_attempt
ENTRY_TRANSITIONS = {
    Outcome.WIN: EntryStatus.VERIFICATION_PENDING,
    Outcome.MISS: EntryStatus.COMPLETED,
    Outcome.AUTO_MISS: EntryStatus.EXPIRED,
}

# target review status -> statuses it may be reached from
REVIEW_TRANSITIONS = {
    ReviewStatus.UNDER_REVIEW: (ReviewStatus.INITIATED,),
    ReviewStatus.VERIFIED: OPEN_REVIEW_STATUSES,
    ReviewStatus.REJECTED: OPEN_REVIEW_STATUSES,
}

REVIEW_ACTIONS = {
    ReviewStatus.UNDER_REVIEW: AuditAction.REVIEW_STARTED,
    ReviewStatus.VERIFIED: AuditAction.CLAIM_VERIFIED,
    ReviewStatus.REJECTED: AuditAction.CLAIM_REJECTED,
}


def check_review_transition(current: ReviewStatus, target: ReviewStatus):
    """Raise InvalidTransition unless ``target`` is reachable from ``current``."""
    if current in TERMINAL_REVIEW_STATUSES:
        raise InvalidTransition(
            f"Claim is already {current.value}", status=current.value
        )
    if current not in REVIEW_TRANSITIONS[target]:
        raise InvalidTransition(
            f"Cannot move claim from {current.value} to {target.value}",
            status=current.value,
        )


async def transition_entry(
    session: AsyncSession,
    entry_id: str,
    outcome: Outcome,
    *,
    now: datetime,
    actor_id: Optional[str] = None,
    audit: AuditLedger = default_ledger,
) -> bool:
    """Set ``outcome_self`` and the matching status on an awaiting entry.

    Self-reports only match while the attempt window is open; auto-miss
    only matches once it has elapsed. Returns False when the guard
    matched no row.
    """
    target = ENTRY_TRANSITIONS[outcome]
    if outcome == Outcome.AUTO_MISS:
        window_guard = Entry.attempt_window_end <= now
    else:
        window_guard = Entry.attempt_window_end > now

    result = await session.execute(
        update(Entry)
        .where(
            and_(
                Entry.id == entry_id,
                Entry.status == EntryStatus.AWAITING_ATTEMPT,
                Entry.outcome_self.is_(None),
                window_guard,
            )
        )
        .values(
            status=target,
            outcome_self=outcome,
            outcome_reported_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        metrics.TRANSITION_CONFLICTS.labels(entity=AuditEntity.ENTRY.value).inc()
        logger.info(
            f"Entry transition to {target.value} matched no row",
            extra={"entry_id": entry_id, "outcome": outcome.value}
        )
        return False

    await audit.record(
        session,
        entity_type=AuditEntity.ENTRY,
        entity_id=entry_id,
        action=(
            AuditAction.AUTO_MISS_APPLIED if outcome == Outcome.AUTO_MISS
            else AuditAction.OUTCOME_REPORTED
        ),
        prior={"status": EntryStatus.AWAITING_ATTEMPT.value, "outcome_self": None},
        new={"status": target.value, "outcome_self": outcome.value},
        actor_id=actor_id,
        at=now,
    )
    return True


async def transition_verification(
    session: AsyncSession,
    record_id: str,
    expected: ReviewStatus,
    target: ReviewStatus,
    *,
    now: datetime,
    actor_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    values: Optional[dict[str, Any]] = None,
    audit: AuditLedger = default_ledger,
) -> bool:
    """Move a verification record from ``expected`` to ``target``.

    Any transition out of ``initiated`` cancels the review deadline.
    Raises InvalidTransition when the pair is not allowed at all;
    returns False when the record is no longer in ``expected``.
    """
    check_review_transition(expected, target)

    changes = {
        "status": target,
        "auto_miss_at": None,
        "auto_miss_applied": True,
        "updated_at": now,
        "version": VerificationRecord.version + 1,
    }
    if values:
        changes.update(values)

    result = await session.execute(
        update(VerificationRecord)
        .where(
            and_(
                VerificationRecord.id == record_id,
                VerificationRecord.status == expected,
            )
        )
        .values(**changes)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        metrics.TRANSITION_CONFLICTS.labels(entity=AuditEntity.VERIFICATION.value).inc()
        logger.info(
            f"Verification transition {expected.value} -> {target.value} matched no row",
            extra={"verification_id": record_id}
        )
        return False

    new_value = {"status": target.value}
    if actor_id:
        new_value["reviewed_by"] = actor_id
    if values and values.get("review_notes"):
        new_value["review_notes"] = values["review_notes"]

    await audit.record(
        session,
        entity_type=AuditEntity.VERIFICATION,
        entity_id=record_id,
        action=action or REVIEW_ACTIONS[target],
        prior={"status": expected.value},
        new=new_value,
        actor_id=actor_id,
        at=now,
    )
    return True
