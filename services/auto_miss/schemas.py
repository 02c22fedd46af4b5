from datetime import datetime
from typing import Optional
from pydantic import BaseModel

from shared.config import DeadlinePolicy


class SweepSummaryResponse(BaseModel):
    processed: int
    errored: int
    skipped: int
    expired_ids: list[str]
    failed_ids: list[str]
    verifications_processed: int
    verifications_errored: int
    backlog_created: int

    class Config:
        from_attributes = True


class SweepStatusResponse(BaseModel):
    awaiting_entries: int
    overdue_entries: int
    pending_verification_deadlines: int
    next_verification_deadline: Optional[datetime] = None
    next_attempt_window_end: Optional[datetime] = None
    deadline_policy: DeadlinePolicy
