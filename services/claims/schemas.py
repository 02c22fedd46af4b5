from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field

from shared.models import EntryStatus, Outcome, ReviewStatus


class Witness(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    email: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=32)
    statement: Optional[str] = None


class AttachEvidenceRequest(BaseModel):
    actor_id: Optional[str] = Field(None, max_length=64)
    witnesses: Optional[list[Witness]] = None
    documents: Optional[dict[str, str]] = None
    social_consent: Optional[bool] = None

    def evidence(self) -> dict[str, Any]:
        fields = {}
        if self.witnesses is not None:
            fields["witnesses"] = [w.model_dump(exclude_none=True) for w in self.witnesses]
        if self.documents is not None:
            fields["documents"] = self.documents
        if self.social_consent is not None:
            fields["social_consent"] = self.social_consent
        return fields


class ReviewActionRequest(BaseModel):
    reviewer_id: str = Field(..., min_length=1, max_length=64)
    notes: Optional[str] = Field(None, max_length=2000)


class EnsureRequest(BaseModel):
    actor_id: Optional[str] = Field(None, max_length=64)


class VerificationResponse(BaseModel):
    id: str
    entry_id: str
    status: ReviewStatus
    witnesses: list[dict[str, Any]]
    documents: dict[str, str]
    social_consent: bool
    evidence_captured_at: Optional[datetime] = None
    auto_miss_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    created_at: datetime
    available_actions: list[str] = []

    class Config:
        from_attributes = True


class EntrySummary(BaseModel):
    id: str
    competition_id: str
    participant_id: str
    status: EntryStatus
    outcome_self: Optional[Outcome] = None
    outcome_reported_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ClaimDetailResponse(BaseModel):
    verification: VerificationResponse
    entry: EntrySummary


class StatusCounts(BaseModel):
    total: int
    pending: int
    verified: int
    rejected: int


class ClaimsListResponse(BaseModel):
    rows: list[VerificationResponse]
    counts: StatusCounts


class AuditEventResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    action: str
    prior_value: Optional[dict[str, Any]] = None
    new_value: dict[str, Any]
    actor_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class BacklogResponse(BaseModel):
    created: int
    failed_entry_ids: list[str]
    verification_ids: list[str]
