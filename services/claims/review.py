"""Claims Review Workflow.

Staff move a verification record initiated -> under_review -> verified
or rejected. Each action is a conditional update on the status the
reviewer was looking at, and writes an audit event naming the reviewer.
Decided claims never change again: further actions are reported as
invalid, never as a silent success.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select

from shared import metrics
from shared.audit import AuditLedger, ledger as default_ledger
from shared.config import LifecycleConfig
from shared.database import Database
from shared.errors import EntryNotFound, InvalidTransition, TransitionConflict
from shared.lifecycle import REVIEW_TRANSITIONS, check_review_transition, transition_verification
from shared.models import (
    AuditEvent, Entry, ReviewStatus, VerificationRecord,
    OPEN_REVIEW_STATUSES, TERMINAL_REVIEW_STATUSES, utcnow,
)
from shared.redis_streams import STREAM_CLAIM_REJECTED, STREAM_CLAIM_VERIFIED, publish_transition
from shared.verification import VerificationManager

logger = logging.getLogger(__name__)

ACTION_TARGETS = {
    "move_to_under_review": ReviewStatus.UNDER_REVIEW,
    "approve": ReviewStatus.VERIFIED,
    "reject": ReviewStatus.REJECTED,
}

TERMINAL_STREAMS = {
    ReviewStatus.VERIFIED: STREAM_CLAIM_VERIFIED,
    ReviewStatus.REJECTED: STREAM_CLAIM_REJECTED,
}


def available_actions(record: VerificationRecord) -> list[str]:
    """Review actions the staff console should enable for this record."""
    return [
        action for action, target in ACTION_TARGETS.items()
        if record.status in REVIEW_TRANSITIONS[target]
    ]


class ClaimsReview:

    def __init__(
        self,
        db: Database,
        config: LifecycleConfig,
        publisher=None,
        audit: AuditLedger = default_ledger,
    ):
        self.db = db
        self.publisher = publisher
        self.audit = audit
        self.verifications = VerificationManager(config, audit)

    async def move_to_under_review(
        self, entry_id: str, reviewer_id: str, now: Optional[datetime] = None
    ) -> VerificationRecord:
        return await self._review(entry_id, ReviewStatus.UNDER_REVIEW, reviewer_id, None, now)

    async def approve(
        self,
        entry_id: str,
        reviewer_id: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationRecord:
        return await self._review(entry_id, ReviewStatus.VERIFIED, reviewer_id, notes, now)

    async def reject(
        self,
        entry_id: str,
        reviewer_id: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationRecord:
        return await self._review(entry_id, ReviewStatus.REJECTED, reviewer_id, notes, now)

    async def _review(
        self,
        entry_id: str,
        target: ReviewStatus,
        reviewer_id: str,
        notes: Optional[str],
        now: Optional[datetime],
    ) -> VerificationRecord:
        now = now or utcnow()
        async with self.db.session() as session:
            record = await self.verifications.get(session, entry_id)
            if record is None:
                if await session.get(Entry, entry_id) is None:
                    raise EntryNotFound(f"Entry {entry_id} not found", entry_id=entry_id)
                raise InvalidTransition(
                    "Entry has no verification record to review", entry_id=entry_id
                )

            check_review_transition(record.status, target)
            seen_status = record.status

            values: dict[str, Any] = {}
            if target in TERMINAL_REVIEW_STATUSES:
                values = {"reviewed_by": reviewer_id, "reviewed_at": now, "review_notes": notes}

            applied = await transition_verification(
                session,
                record.id,
                seen_status,
                target,
                now=now,
                actor_id=reviewer_id,
                values=values,
                audit=self.audit,
            )
            await session.refresh(record)
            if not applied:
                raise TransitionConflict(
                    f"Claim moved from {seen_status.value} to {record.status.value} "
                    f"before this action",
                    entry_id=entry_id,
                    status=record.status.value,
                )

        metrics.CLAIM_REVIEWS.labels(action=target.value).inc()
        logger.info(
            f"Claim moved to {target.value}",
            extra={
                "entry_id": entry_id,
                "verification_id": record.id,
                "reviewer_id": reviewer_id,
                "status": target.value,
            }
        )

        if target in TERMINAL_STREAMS:
            await publish_transition(self.publisher, TERMINAL_STREAMS[target], {
                "entry_id": entry_id,
                "verification_id": record.id,
                "reviewer_id": reviewer_id,
                "notes": notes,
            })
        return record

    async def ensure(self, entry_id: str, actor_id: Optional[str] = None) -> tuple[VerificationRecord, bool]:
        async with self.db.session() as session:
            return await self.verifications.ensure(session, entry_id, actor_id=actor_id)

    async def attach_evidence(
        self, entry_id: str, evidence: dict[str, Any], actor_id: Optional[str] = None
    ) -> VerificationRecord:
        async with self.db.session() as session:
            return await self.verifications.attach_evidence(
                session, entry_id, evidence, actor_id=actor_id
            )

    async def get_claim(self, entry_id: str) -> tuple[VerificationRecord, Entry]:
        async with self.db.session() as session:
            record = await self.verifications.require(session, entry_id)
            entry = await session.get(Entry, entry_id)
        return record, entry

    async def list_claims(
        self, status: Optional[ReviewStatus] = None, limit: int = 50, offset: int = 0
    ) -> list[VerificationRecord]:
        query = select(VerificationRecord)
        if status:
            query = query.where(VerificationRecord.status == status)
        query = query.order_by(VerificationRecord.created_at.desc()).limit(limit).offset(offset)

        async with self.db.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def status_counts(self) -> dict[str, int]:
        """Totals for the console header; pending covers every undecided claim."""
        async with self.db.session() as session:
            result = await session.execute(
                select(VerificationRecord.status, func.count()).group_by(VerificationRecord.status)
            )
            by_status = {status: count for status, count in result.all()}

        return {
            "total": sum(by_status.values()),
            "pending": sum(by_status.get(s, 0) for s in OPEN_REVIEW_STATUSES),
            "verified": by_status.get(ReviewStatus.VERIFIED, 0),
            "rejected": by_status.get(ReviewStatus.REJECTED, 0),
        }

    async def audit_trail(self, entry_id: str) -> list[AuditEvent]:
        async with self.db.session() as session:
            if await session.get(Entry, entry_id) is None:
                raise EntryNotFound(f"Entry {entry_id} not found", entry_id=entry_id)
            record = await self.verifications.get(session, entry_id)
            return await self.audit.trail_for_entry(
                session, entry_id, record.id if record else None
            )

    async def reconcile_backlog(self) -> tuple[list[VerificationRecord], list[str]]:
        return await self.verifications.ensure_backlog(self.db)
