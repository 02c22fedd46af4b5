from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field

from shared.models import EntryStatus, Outcome, ReviewStatus


class CreateEntryRequest(BaseModel):
    participant_id: str = Field(..., min_length=1, max_length=64)
    competition_id: str = Field(..., min_length=1, max_length=36)
    amount_minor: int = Field(..., ge=0)
    payment_reference: Optional[str] = Field(None, min_length=1, max_length=128)


class ReportOutcomeRequest(BaseModel):
    participant_id: str = Field(..., min_length=1, max_length=64)
    outcome: Literal["win", "miss"]


class EntryResponse(BaseModel):
    id: str
    competition_id: str
    participant_id: str
    paid: bool
    paid_at: Optional[datetime] = None
    amount_minor: int
    attempt_window_start: datetime
    attempt_window_end: datetime
    outcome_self: Optional[Outcome] = None
    outcome_reported_at: Optional[datetime] = None
    status: EntryStatus
    created_at: datetime

    class Config:
        from_attributes = True


class ReportOutcomeResponse(BaseModel):
    entry: EntryResponse
    verification_id: Optional[str] = None
    verification_status: Optional[ReviewStatus] = None


class EntryStatusResponse(BaseModel):
    entry_id: str
    status: EntryStatus
    outcome_self: Optional[Outcome] = None
    attempt_window_end: datetime
    seconds_remaining: int
    window_closed: bool
    verification_status: Optional[ReviewStatus] = None
