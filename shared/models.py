from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON, Boolean, DateTime, Index, Integer, String, Text, event, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column

from shared.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class EntryStatus(str, Enum):
    AWAITING_ATTEMPT = "awaiting_attempt"
    VERIFICATION_PENDING = "verification_pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class Outcome(str, Enum):
    WIN = "win"
    MISS = "miss"
    AUTO_MISS = "auto_miss"


class ReviewStatus(str, Enum):
    INITIATED = "initiated"
    UNDER_REVIEW = "under_review"
    VERIFIED = "verified"
    REJECTED = "rejected"


OPEN_REVIEW_STATUSES = (ReviewStatus.INITIATED, ReviewStatus.UNDER_REVIEW)
TERMINAL_REVIEW_STATUSES = (ReviewStatus.VERIFIED, ReviewStatus.REJECTED)


class AuditEntity(str, Enum):
    ENTRY = "entry"
    VERIFICATION = "verification"


class AuditAction(str, Enum):
    ENTRY_CREATED = "entry_created"
    OUTCOME_REPORTED = "outcome_reported"
    AUTO_MISS_APPLIED = "auto_miss_applied"
    VERIFICATION_INITIATED = "verification_initiated"
    EVIDENCE_ATTACHED = "evidence_attached"
    REVIEW_STARTED = "review_started"
    CLAIM_VERIFIED = "claim_verified"
    CLAIM_REJECTED = "claim_rejected"
    DEADLINE_ESCALATED = "deadline_escalated"
    DEADLINE_AUTO_MISSED = "deadline_auto_missed"


class Entry(Base):
    """One paid competition attempt.

    ``outcome_self`` is null exactly while ``status`` is awaiting_attempt;
    both are only ever changed together by a conditional update.
    """
    __tablename__ = "entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    competition_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    participant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_reference: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    attempt_window_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    attempt_window_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    outcome_self: Mapped[Optional[Outcome]] = mapped_column(
        SQLEnum(Outcome, name="entry_outcome", values_callable=_enum_values), nullable=True
    )
    outcome_reported_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[EntryStatus] = mapped_column(
        SQLEnum(EntryStatus, name="entry_status", values_callable=_enum_values),
        default=EntryStatus.AWAITING_ATTEMPT,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_entries_status_window", "status", "attempt_window_end"),
        Index("idx_entries_outcome", "outcome_self"),
    )

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "outcome_self": self.outcome_self.value if self.outcome_self else None,
        }


class VerificationRecord(Base):
    """Evidence and review trail for a claimed win, 1:1 with its entry."""
    __tablename__ = "verifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    entry_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    status: Mapped[ReviewStatus] = mapped_column(
        SQLEnum(ReviewStatus, name="review_status", values_callable=_enum_values),
        default=ReviewStatus.INITIATED,
        nullable=False,
    )
    witnesses: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    documents: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    social_consent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    evidence_captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    auto_miss_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    auto_miss_applied: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_verifications_status_deadline", "status", "auto_miss_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REVIEW_STATUSES


class AuditEvent(Base):
    """Immutable record of one state change. Append-only."""
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    prior_value: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict] = mapped_column(JSON, nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )


@event.listens_for(AuditEvent, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise RuntimeError(f"audit event {target.id} is immutable")


@event.listens_for(AuditEvent, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise RuntimeError(f"audit event {target.id} cannot be deleted")
