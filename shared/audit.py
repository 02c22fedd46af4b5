"""Append-only audit ledger for every lifecycle transition.

Events are written through the caller's session, inside the same
transaction as the state change they describe: if the event cannot be
written the transition rolls back with it. Nothing here updates or
deletes an existing event.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared import metrics
from shared.models import AuditAction, AuditEntity, AuditEvent, utcnow

logger = logging.getLogger(__name__)


class AuditLedger:

    async def record(
        self,
        session: AsyncSession,
        *,
        entity_type: AuditEntity,
        entity_id: str,
        action: AuditAction,
        prior: Optional[dict[str, Any]],
        new: dict[str, Any],
        actor_id: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> AuditEvent:
        """Append one event and flush it so a failed write surfaces inside the transaction."""
        audit_event = AuditEvent(
            entity_type=entity_type.value,
            entity_id=entity_id,
            action=action.value,
            prior_value=prior,
            new_value=new,
            actor_id=actor_id,
            created_at=at or utcnow(),
        )
        session.add(audit_event)
        await session.flush()

        metrics.AUDIT_EVENTS_WRITTEN.labels(
            entity=entity_type.value, action=action.value
        ).inc()
        return audit_event

    async def events_for(
        self, session: AsyncSession, entity_type: AuditEntity, entity_id: str
    ) -> list[AuditEvent]:
        result = await session.execute(
            select(AuditEvent)
            .where(
                and_(
                    AuditEvent.entity_type == entity_type.value,
                    AuditEvent.entity_id == entity_id,
                )
            )
            .order_by(AuditEvent.id)
        )
        return list(result.scalars().all())

    async def trail_for_entry(
        self, session: AsyncSession, entry_id: str, verification_id: Optional[str] = None
    ) -> list[AuditEvent]:
        """Events for an entry and, when given, its verification record, oldest first."""
        condition = and_(
            AuditEvent.entity_type == AuditEntity.ENTRY.value,
            AuditEvent.entity_id == entry_id,
        )
        if verification_id:
            condition = or_(
                condition,
                and_(
                    AuditEvent.entity_type == AuditEntity.VERIFICATION.value,
                    AuditEvent.entity_id == verification_id,
                ),
            )
        result = await session.execute(
            select(AuditEvent).where(condition).order_by(AuditEvent.id)
        )
        return list(result.scalars().all())


ledger = AuditLedger()
