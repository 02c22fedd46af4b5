import pytest
from sqlalchemy import select

from shared.audit import ledger
from shared.models import AuditAction, AuditEntity, AuditEvent

from tests.conftest import NOW, audit_events


@pytest.mark.asyncio
async def test_record_appends_event(db):
    async with db.session() as session:
        event = await ledger.record(
            session,
            entity_type=AuditEntity.ENTRY,
            entity_id="entry-1",
            action=AuditAction.OUTCOME_REPORTED,
            prior={"status": "awaiting_attempt", "outcome_self": None},
            new={"status": "completed", "outcome_self": "miss"},
            actor_id="player-1",
            at=NOW,
        )
        assert event.id is not None

    events = await audit_events(db, "entry-1")
    assert len(events) == 1
    assert events[0].entity_type == "entry"
    assert events[0].created_at == NOW


@pytest.mark.asyncio
async def test_events_cannot_be_updated(db, make_entry):
    entry = await make_entry()

    with pytest.raises(RuntimeError, match="immutable"):
        async with db.session() as session:
            event = (await session.execute(
                select(AuditEvent).where(AuditEvent.entity_id == entry.id)
            )).scalar_one()
            event.action = AuditAction.CLAIM_VERIFIED.value
            await session.flush()

    events = await audit_events(db, entry.id)
    assert events[0].action == AuditAction.ENTRY_CREATED.value


@pytest.mark.asyncio
async def test_events_cannot_be_deleted(db, make_entry):
    entry = await make_entry()

    with pytest.raises(RuntimeError, match="cannot be deleted"):
        async with db.session() as session:
            event = (await session.execute(
                select(AuditEvent).where(AuditEvent.entity_id == entry.id)
            )).scalar_one()
            await session.delete(event)
            await session.flush()

    assert len(await audit_events(db, entry.id)) == 1


@pytest.mark.asyncio
async def test_events_for_filters_by_entity(db):
    async with db.session() as session:
        for entity_type, entity_id in (
            (AuditEntity.ENTRY, "shared-id"),
            (AuditEntity.VERIFICATION, "shared-id"),
            (AuditEntity.ENTRY, "other"),
        ):
            await ledger.record(
                session,
                entity_type=entity_type,
                entity_id=entity_id,
                action=AuditAction.ENTRY_CREATED,
                prior=None,
                new={"status": "awaiting_attempt"},
                at=NOW,
            )

    async with db.session() as session:
        events = await ledger.events_for(session, AuditEntity.ENTRY, "shared-id")

    assert len(events) == 1
    assert events[0].entity_type == AuditEntity.ENTRY.value
