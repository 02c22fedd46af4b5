"""Verification Record Manager.

Owns the evidence-and-review sub-record of a win claim. Creation is an
atomic insert-or-ignore keyed by entry id, so concurrent or repeated
``ensure`` calls converge on one record and one creation audit event.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared import metrics
from shared.audit import AuditLedger, ledger as default_ledger
from shared.config import LifecycleConfig
from shared.database import Database, insert_if_absent
from shared.errors import EntryNotFound, InvalidTransition, TransitionConflict, VerificationNotFound
from shared.models import (
    AuditAction, AuditEntity, Entry, Outcome, ReviewStatus, VerificationRecord,
    OPEN_REVIEW_STATUSES, utcnow,
)

logger = logging.getLogger(__name__)

EVIDENCE_FIELDS = ("witnesses", "documents", "social_consent")
EVIDENCE_WRITE_ATTEMPTS = 5


class VerificationManager:

    def __init__(self, config: LifecycleConfig, audit: AuditLedger = default_ledger):
        self.config = config
        self.audit = audit

    async def get(self, session: AsyncSession, entry_id: str) -> Optional[VerificationRecord]:
        result = await session.execute(
            select(VerificationRecord).where(VerificationRecord.entry_id == entry_id)
        )
        return result.scalar_one_or_none()

    async def require(self, session: AsyncSession, entry_id: str) -> VerificationRecord:
        record = await self.get(session, entry_id)
        if record is None:
            raise VerificationNotFound(
                f"No verification record for entry {entry_id}", entry_id=entry_id
            )
        return record

    async def ensure(
        self,
        session: AsyncSession,
        entry_id: str,
        *,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
        source: str = "report",
    ) -> tuple[VerificationRecord, bool]:
        """Return the entry's verification record, creating it if absent.

        The second element is True only for the call that inserted the row.
        """
        now = now or utcnow()
        entry = await session.get(Entry, entry_id)
        if entry is None:
            raise EntryNotFound(f"Entry {entry_id} not found", entry_id=entry_id)
        if entry.outcome_self != Outcome.WIN:
            raise InvalidTransition(
                "Verification records exist only for entries reported as a win",
                entry_id=entry_id,
            )

        record_id = await insert_if_absent(
            session,
            VerificationRecord,
            {
                "id": str(uuid.uuid4()),
                "entry_id": entry_id,
                "status": ReviewStatus.INITIATED,
                "witnesses": [],
                "documents": {},
                "social_consent": False,
                "evidence_captured_at": now,
                "auto_miss_at": now + self.config.verification_deadline,
                "auto_miss_applied": False,
                "version": 1,
                "created_at": now,
                "updated_at": now,
            },
            VerificationRecord.entry_id,
        )

        created = record_id is not None
        if created:
            await self.audit.record(
                session,
                entity_type=AuditEntity.VERIFICATION,
                entity_id=record_id,
                action=AuditAction.VERIFICATION_INITIATED,
                prior=None,
                new={"status": ReviewStatus.INITIATED.value, "entry_id": entry_id},
                actor_id=actor_id,
                at=now,
            )
            metrics.VERIFICATIONS_CREATED.labels(source=source).inc()
            logger.info(
                "Verification record created",
                extra={"entry_id": entry_id, "verification_id": record_id}
            )

        record = await self.require(session, entry_id)
        return record, created

    async def attach_evidence(
        self,
        session: AsyncSession,
        entry_id: str,
        evidence: dict[str, Any],
        *,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationRecord:
        """Partially update evidence while the claim is still open.

        ``documents`` is merged key by key, ``witnesses`` and
        ``social_consent`` replace the stored values. The write is guarded
        on the version that was merged against; when another write lands
        first the record is re-read and merged again.
        """
        now = now or utcnow()
        unknown = set(evidence) - set(EVIDENCE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown evidence fields: {sorted(unknown)}")

        record = await self.require(session, entry_id)
        for _ in range(EVIDENCE_WRITE_ATTEMPTS):
            if record.status not in OPEN_REVIEW_STATUSES:
                raise InvalidTransition(
                    f"Claim is already {record.status.value}; evidence is closed",
                    entry_id=entry_id,
                    status=record.status.value,
                )

            prior = {field: getattr(record, field) for field in EVIDENCE_FIELDS}
            changes: dict[str, Any] = {}
            if evidence.get("documents") is not None:
                changes["documents"] = {**(record.documents or {}), **evidence["documents"]}
            if evidence.get("witnesses") is not None:
                changes["witnesses"] = list(evidence["witnesses"])
            if evidence.get("social_consent") is not None:
                changes["social_consent"] = bool(evidence["social_consent"])

            result = await session.execute(
                update(VerificationRecord)
                .where(
                    and_(
                        VerificationRecord.id == record.id,
                        VerificationRecord.version == record.version,
                        VerificationRecord.status.in_(OPEN_REVIEW_STATUSES),
                    )
                )
                .values(
                    evidence_captured_at=now,
                    updated_at=now,
                    version=record.version + 1,
                    **changes,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                break

            metrics.TRANSITION_CONFLICTS.labels(entity=AuditEntity.VERIFICATION.value).inc()
            logger.info(
                "Evidence write lost to a concurrent update, merging again",
                extra={"entry_id": entry_id, "verification_id": record.id}
            )
            await session.refresh(record)
        else:
            raise TransitionConflict(
                "Claim kept changing while attaching evidence",
                entry_id=entry_id,
                status=record.status.value,
            )

        await self.audit.record(
            session,
            entity_type=AuditEntity.VERIFICATION,
            entity_id=record.id,
            action=AuditAction.EVIDENCE_ATTACHED,
            prior=prior,
            new={**prior, **changes},
            actor_id=actor_id,
            at=now,
        )
        metrics.EVIDENCE_ATTACHED.inc()

        await session.refresh(record)
        return record

    async def find_backlog(self, session: AsyncSession, limit: int) -> list[str]:
        """Ids of win entries that have no verification record."""
        result = await session.execute(
            select(Entry.id)
            .outerjoin(VerificationRecord, VerificationRecord.entry_id == Entry.id)
            .where(
                and_(
                    Entry.outcome_self == Outcome.WIN,
                    VerificationRecord.id.is_(None),
                )
            )
            .order_by(Entry.outcome_reported_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def ensure_backlog(
        self, db: Database, *, limit: Optional[int] = None, now: Optional[datetime] = None
    ) -> tuple[list[VerificationRecord], list[str]]:
        """Heal win entries whose verification record was never created.

        Each entry is repaired in its own transaction. Returns the created
        records and the ids that failed.
        """
        async with db.session() as session:
            entry_ids = await self.find_backlog(session, limit or self.config.sweep_batch_size)

        created_records = []
        failed_ids = []
        for entry_id in entry_ids:
            try:
                async with db.session() as session:
                    record, created = await self.ensure(
                        session, entry_id, now=now, source="backlog"
                    )
                if created:
                    created_records.append(record)
            except Exception:
                failed_ids.append(entry_id)
                metrics.SWEEP_ERRORS.labels(phase="backlog").inc()
                logger.exception(
                    "Failed to create backlog verification record",
                    extra={"entry_id": entry_id}
                )

        if entry_ids:
            logger.info(
                f"Backlog reconciliation created {len(created_records)} verification records",
                extra={"processed": len(created_records), "errored": len(failed_ids)}
            )
        return created_records, failed_ids
