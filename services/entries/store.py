import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, select

from shared import metrics
from shared.audit import AuditLedger, ledger as default_ledger
from shared.config import LifecycleConfig
from shared.database import Database, insert_if_absent
from shared.errors import EntryNotFound, InvalidRequest
from shared.models import (
    AuditAction, AuditEntity, Entry, EntryStatus, VerificationRecord, utcnow
)

logger = logging.getLogger(__name__)


class EntryStore:
    """Creation and read access for entries. Lifecycle changes go through the reporter and sweep."""

    def __init__(self, db: Database, config: LifecycleConfig, audit: AuditLedger = default_ledger):
        self.db = db
        self.config = config
        self.audit = audit

    async def create_entry(
        self,
        participant_id: str,
        competition_id: str,
        amount_minor: int,
        payment_reference: str,
        now: Optional[datetime] = None,
    ) -> tuple[Entry, bool]:
        """Record a confirmed payment as a new entry with its attempt window.

        Replaying a payment reference returns the entry it created.
        """
        now = now or utcnow()
        async with self.db.session() as session:
            entry_id = await insert_if_absent(
                session,
                Entry,
                {
                    "id": str(uuid.uuid4()),
                    "competition_id": competition_id,
                    "participant_id": participant_id,
                    "paid": True,
                    "paid_at": now,
                    "amount_minor": amount_minor,
                    "payment_reference": payment_reference,
                    "attempt_window_start": now,
                    "attempt_window_end": now + self.config.attempt_window,
                    "outcome_self": None,
                    "status": EntryStatus.AWAITING_ATTEMPT,
                    "created_at": now,
                    "updated_at": now,
                },
                Entry.payment_reference,
            )

            created = entry_id is not None
            if created:
                await self.audit.record(
                    session,
                    entity_type=AuditEntity.ENTRY,
                    entity_id=entry_id,
                    action=AuditAction.ENTRY_CREATED,
                    prior=None,
                    new={"status": EntryStatus.AWAITING_ATTEMPT.value, "outcome_self": None},
                    at=now,
                )

            result = await session.execute(
                select(Entry).where(Entry.payment_reference == payment_reference)
            )
            entry = result.scalar_one()

        if not created and (
            entry.participant_id != participant_id or entry.competition_id != competition_id
        ):
            raise InvalidRequest(
                "Payment reference already used for a different entry",
                entry_id=entry.id,
            )

        if created:
            metrics.ENTRIES_CREATED.inc()
            logger.info(
                "Entry created",
                extra={
                    "entry_id": entry.id,
                    "participant_id": participant_id,
                    "competition_id": competition_id,
                }
            )
        return entry, created

    async def get(self, entry_id: str) -> Entry:
        async with self.db.session() as session:
            entry = await session.get(Entry, entry_id)
        if entry is None:
            raise EntryNotFound(f"Entry {entry_id} not found", entry_id=entry_id)
        return entry

    async def status(self, entry_id: str, now: Optional[datetime] = None) -> dict[str, Any]:
        """Lifecycle status and outcome for UI polling."""
        now = now or utcnow()
        async with self.db.session() as session:
            entry = await session.get(Entry, entry_id)
            if entry is None:
                raise EntryNotFound(f"Entry {entry_id} not found", entry_id=entry_id)
            result = await session.execute(
                select(VerificationRecord.status).where(VerificationRecord.entry_id == entry_id)
            )
            verification_status = result.scalar_one_or_none()

        awaiting = entry.status == EntryStatus.AWAITING_ATTEMPT
        remaining = max((entry.attempt_window_end - now).total_seconds(), 0) if awaiting else 0
        return {
            "entry_id": entry.id,
            "status": entry.status,
            "outcome_self": entry.outcome_self,
            "attempt_window_end": entry.attempt_window_end,
            "seconds_remaining": int(remaining),
            "window_closed": entry.status == EntryStatus.EXPIRED or (awaiting and remaining <= 0),
            "verification_status": verification_status,
        }

    async def list_entries(
        self,
        participant_id: Optional[str] = None,
        competition_id: Optional[str] = None,
        status: Optional[EntryStatus] = None,
    ) -> list[Entry]:
        conditions = []
        if participant_id:
            conditions.append(Entry.participant_id == participant_id)
        if competition_id:
            conditions.append(Entry.competition_id == competition_id)
        if status:
            conditions.append(Entry.status == status)

        query = select(Entry)
        if conditions:
            query = query.where(and_(*conditions))

        async with self.db.session() as session:
            result = await session.execute(query.order_by(Entry.created_at.desc()))
            return list(result.scalars().all())
