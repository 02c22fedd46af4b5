"""Auto-Miss Scheduler sweep.

One run expires entries whose attempt window elapsed without a report,
enforces the verification review deadline, and heals missing
verification records. Every row is handled in its own transaction using
the same conditional update as the participant path, so a run that
races a self-report, another sweep instance, or a reviewer simply skips
the rows it lost. The sweep keeps no state between runs: what is due is
read fresh from the persisted deadlines each time.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, select

from shared import metrics
from shared.audit import AuditLedger, ledger as default_ledger
from shared.config import DeadlinePolicy, LifecycleConfig
from shared.database import Database
from shared.lifecycle import transition_entry, transition_verification
from shared.models import (
    AuditAction, Entry, EntryStatus, Outcome, ReviewStatus, VerificationRecord, utcnow
)
from shared.redis_streams import STREAM_AUTO_MISS_APPLIED, publish_transition
from shared.telemetry import get_tracer
from shared.verification import VerificationManager

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

SYSTEM_AUTO_MISS_NOTE = "auto_miss"


@dataclass
class SweepSummary:
    processed: int = 0
    errored: int = 0
    skipped: int = 0
    expired_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    verifications_processed: int = 0
    verifications_errored: int = 0
    backlog_created: int = 0


class AutoMissSweeper:

    def __init__(
        self,
        db: Database,
        config: LifecycleConfig,
        publisher=None,
        audit: AuditLedger = default_ledger,
    ):
        self.db = db
        self.config = config
        self.publisher = publisher
        self.audit = audit
        self.verifications = VerificationManager(config, audit)

    async def run(self, now: Optional[datetime] = None) -> SweepSummary:
        """Execute one full sweep. Never raises for a single row's failure."""
        now = now or utcnow()
        start_time = time.time()
        summary = SweepSummary()

        with tracer.start_as_current_span("auto_miss.sweep") as span:
            await self.expire_entries(summary, now)
            await self.enforce_verification_deadlines(summary, now)

            created, failed = await self.verifications.ensure_backlog(
                self.db, limit=self.config.sweep_batch_size, now=now
            )
            summary.backlog_created = len(created)
            summary.errored += len(failed)
            summary.failed_ids.extend(failed)

            span.set_attribute("sweep.processed", summary.processed)
            span.set_attribute("sweep.errored", summary.errored)

        duration = time.time() - start_time
        metrics.SWEEP_RUNS.inc()
        metrics.SWEEP_DURATION.observe(duration)

        logger.info(
            "Auto-miss sweep completed",
            extra={
                "processed": summary.processed,
                "errored": summary.errored,
                "skipped": summary.skipped,
                "duration_seconds": round(duration, 3),
            }
        )
        return summary

    async def due_entry_ids(self, now: datetime) -> list[str]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Entry.id)
                .where(
                    and_(
                        Entry.status == EntryStatus.AWAITING_ATTEMPT,
                        Entry.attempt_window_end <= now,
                    )
                )
                .order_by(Entry.attempt_window_end)
                .limit(self.config.sweep_batch_size)
            )
            return list(result.scalars().all())

    async def expire_entries(self, summary: SweepSummary, now: datetime):
        due = await self.due_entry_ids(now)
        failed_before = len(summary.failed_ids)
        for entry_id in due:
            try:
                async with self.db.session() as session:
                    expired = await transition_entry(
                        session, entry_id, Outcome.AUTO_MISS, now=now, audit=self.audit
                    )
            except Exception:
                summary.errored += 1
                summary.failed_ids.append(entry_id)
                metrics.SWEEP_ERRORS.labels(phase="entries").inc()
                logger.exception("Failed to expire entry", extra={"entry_id": entry_id})
                continue

            if not expired:
                # a self-report or another sweep landed first
                summary.skipped += 1
                continue

            summary.processed += 1
            summary.expired_ids.append(entry_id)
            metrics.ENTRIES_AUTO_MISSED.inc()
            await publish_transition(self.publisher, STREAM_AUTO_MISS_APPLIED, {
                "entry_id": entry_id,
                "reason": "attempt_window_elapsed",
            })

        if len(due) == self.config.sweep_batch_size and len(summary.failed_ids) - failed_before == len(due):
            # the same failing rows head every batch until they are fixed
            logger.warning(
                f"Every entry in a full batch of {len(due)} failed; later overdue entries are not reached",
                extra={"errored": len(due)}
            )

    async def due_verifications(self, now: datetime) -> list[VerificationRecord]:
        async with self.db.session() as session:
            result = await session.execute(
                select(VerificationRecord)
                .where(
                    and_(
                        VerificationRecord.status == ReviewStatus.INITIATED,
                        VerificationRecord.auto_miss_applied.is_(False),
                        VerificationRecord.auto_miss_at.is_not(None),
                        VerificationRecord.auto_miss_at <= now,
                    )
                )
                .order_by(VerificationRecord.auto_miss_at)
                .limit(self.config.sweep_batch_size)
            )
            return list(result.scalars().all())

    async def enforce_verification_deadlines(self, summary: SweepSummary, now: datetime):
        """Apply the configured policy to win claims still initiated past their deadline.

        escalate: initiated -> under_review for manual attention.
        auto_miss: initiated -> rejected by the system. The entry keeps
        its reported win; the claim's disposition carries the auto-miss.
        """
        policy = self.config.deadline_policy
        if policy == DeadlinePolicy.AUTO_MISS:
            target = ReviewStatus.REJECTED
            action = AuditAction.DEADLINE_AUTO_MISSED
            values = {"reviewed_at": now, "review_notes": SYSTEM_AUTO_MISS_NOTE}
        else:
            target = ReviewStatus.UNDER_REVIEW
            action = AuditAction.DEADLINE_ESCALATED
            values = None

        for record in await self.due_verifications(now):
            try:
                async with self.db.session() as session:
                    applied = await transition_verification(
                        session,
                        record.id,
                        ReviewStatus.INITIATED,
                        target,
                        now=now,
                        action=action,
                        values=values,
                        audit=self.audit,
                    )
            except Exception:
                summary.errored += 1
                summary.verifications_errored += 1
                summary.failed_ids.append(record.entry_id)
                metrics.SWEEP_ERRORS.labels(phase="verifications").inc()
                logger.exception(
                    "Failed to enforce verification deadline",
                    extra={"entry_id": record.entry_id, "verification_id": record.id}
                )
                continue

            if not applied:
                # a reviewer acted first
                summary.skipped += 1
                continue

            summary.processed += 1
            summary.verifications_processed += 1
            metrics.DEADLINES_ENFORCED.labels(policy=policy.value).inc()
            logger.info(
                f"Verification deadline enforced: {target.value}",
                extra={
                    "entry_id": record.entry_id,
                    "verification_id": record.id,
                    "policy": policy.value,
                }
            )
            if policy == DeadlinePolicy.AUTO_MISS:
                await publish_transition(self.publisher, STREAM_AUTO_MISS_APPLIED, {
                    "entry_id": record.entry_id,
                    "verification_id": record.id,
                    "reason": "verification_deadline_elapsed",
                })

    async def status(self, now: Optional[datetime] = None) -> dict:
        """Counts of work currently due or pending, read from persisted deadlines."""
        now = now or utcnow()
        async with self.db.session() as session:
            overdue_entries = await session.scalar(
                select(func.count()).select_from(Entry).where(
                    and_(
                        Entry.status == EntryStatus.AWAITING_ATTEMPT,
                        Entry.attempt_window_end <= now,
                    )
                )
            )
            awaiting_entries = await session.scalar(
                select(func.count()).select_from(Entry).where(
                    Entry.status == EntryStatus.AWAITING_ATTEMPT
                )
            )
            pending_deadline = and_(
                VerificationRecord.status == ReviewStatus.INITIATED,
                VerificationRecord.auto_miss_applied.is_(False),
                VerificationRecord.auto_miss_at.is_not(None),
            )
            pending_verifications = await session.scalar(
                select(func.count()).select_from(VerificationRecord).where(pending_deadline)
            )
            next_deadline = await session.scalar(
                select(func.min(VerificationRecord.auto_miss_at)).where(pending_deadline)
            )
            next_window_end = await session.scalar(
                select(func.min(Entry.attempt_window_end)).where(
                    Entry.status == EntryStatus.AWAITING_ATTEMPT
                )
            )

        return {
            "awaiting_entries": awaiting_entries or 0,
            "overdue_entries": overdue_entries or 0,
            "pending_verification_deadlines": pending_verifications or 0,
            "next_verification_deadline": next_deadline,
            "next_attempt_window_end": next_window_end,
            "deadline_policy": self.config.deadline_policy,
        }
