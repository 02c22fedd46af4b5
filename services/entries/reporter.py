"""Outcome Reporter: a participant's one-time self-report for an entry.

The report and its audit event commit together through one conditional
update that also requires the attempt window to still be open. A win
then creates the verification record in a second transaction; if that
second write is lost, the backlog reconciliation recreates it.
"""

import logging
from datetime import datetime
from typing import Optional

from shared import metrics
from shared.audit import AuditLedger, ledger as default_ledger
from shared.config import LifecycleConfig
from shared.database import Database
from shared.errors import AlreadyReported, EntryNotFound, InvalidRequest, NotEntryOwner, WindowClosed
from shared.lifecycle import transition_entry
from shared.models import Entry, EntryStatus, Outcome, VerificationRecord, utcnow
from shared.redis_streams import STREAM_CLAIM_INITIATED, publish_transition
from shared.verification import VerificationManager

logger = logging.getLogger(__name__)

REPORTABLE_OUTCOMES = (Outcome.WIN, Outcome.MISS)


def _refusal(entry: Entry, now: datetime):
    """The error a participant sees for an entry that no longer accepts a report."""
    if entry.outcome_self == Outcome.AUTO_MISS or entry.status == EntryStatus.EXPIRED:
        return WindowClosed(
            "The attempt window for this entry has closed", entry_id=entry.id
        )
    if entry.outcome_self is not None:
        return AlreadyReported(
            f"Outcome already reported as {entry.outcome_self.value}", entry_id=entry.id
        )
    if now >= entry.attempt_window_end:
        return WindowClosed(
            "The attempt window for this entry has closed", entry_id=entry.id
        )
    return None


class OutcomeReporter:

    def __init__(
        self,
        db: Database,
        config: LifecycleConfig,
        publisher=None,
        audit: AuditLedger = default_ledger,
    ):
        self.db = db
        self.publisher = publisher
        self.verifications = VerificationManager(config, audit)
        self.audit = audit

    async def report_outcome(
        self,
        entry_id: str,
        outcome: Outcome,
        reporter_id: str,
        now: Optional[datetime] = None,
    ) -> tuple[Entry, Optional[VerificationRecord]]:
        now = now or utcnow()
        outcome = Outcome(outcome)
        if outcome not in REPORTABLE_OUTCOMES:
            raise InvalidRequest(f"Participants cannot report {outcome.value}", entry_id=entry_id)

        async with self.db.session() as session:
            entry = await session.get(Entry, entry_id)
            if entry is None:
                raise EntryNotFound(f"Entry {entry_id} not found", entry_id=entry_id)
            if entry.participant_id != reporter_id:
                metrics.REPORTS_REJECTED.labels(reason="not_entry_owner").inc()
                raise NotEntryOwner("Only the entry's participant may report its outcome",
                                    entry_id=entry_id)

            refusal = _refusal(entry, now)
            if refusal is None:
                accepted = await transition_entry(
                    session, entry_id, outcome, now=now, actor_id=reporter_id, audit=self.audit
                )
                await session.refresh(entry)
                if not accepted:
                    refusal = _refusal(entry, now) or WindowClosed(
                        "The attempt window for this entry has closed", entry_id=entry_id
                    )

            if refusal is not None:
                metrics.REPORTS_REJECTED.labels(reason=refusal.code).inc()
                logger.warning(
                    f"Self-report refused: {refusal.message}",
                    extra={"entry_id": entry_id, "outcome": outcome.value, "error_code": refusal.code}
                )
                raise refusal

        metrics.OUTCOMES_REPORTED.labels(outcome=outcome.value).inc()
        logger.info(
            "Outcome reported",
            extra={"entry_id": entry_id, "participant_id": reporter_id, "outcome": outcome.value}
        )

        record = None
        if outcome == Outcome.WIN:
            record = await self._open_claim(entry, reporter_id, now)
        return entry, record

    async def _open_claim(
        self, entry: Entry, reporter_id: str, now: datetime
    ) -> Optional[VerificationRecord]:
        try:
            async with self.db.session() as session:
                record, _ = await self.verifications.ensure(
                    session, entry.id, actor_id=reporter_id, now=now
                )
        except Exception:
            # the win is committed; ensure_backlog creates the record on the next sweep
            logger.exception(
                "Verification record creation failed after win report",
                extra={"entry_id": entry.id}
            )
            return None

        await publish_transition(self.publisher, STREAM_CLAIM_INITIATED, {
            "entry_id": entry.id,
            "verification_id": record.id,
            "participant_id": entry.participant_id,
            "competition_id": entry.competition_id,
            "auto_miss_at": record.auto_miss_at.isoformat() if record.auto_miss_at else None,
        })
        return record
