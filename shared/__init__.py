from .database import Database, Base, insert_if_absent
from .models import (
    Entry,
    EntryStatus,
    Outcome,
    VerificationRecord,
    ReviewStatus,
    AuditEvent,
    AuditEntity,
    AuditAction,
    utcnow,
)
from .config import LifecycleConfig, DeadlinePolicy
from .errors import (
    LifecycleError,
    EntryNotFound,
    VerificationNotFound,
    InvalidRequest,
    NotEntryOwner,
    AlreadyReported,
    WindowClosed,
    InvalidTransition,
    TransitionConflict,
    install_error_handlers,
)
from .audit import AuditLedger, ledger
from .lifecycle import transition_entry, transition_verification, check_review_transition
from .verification import VerificationManager
from .redis_streams import (
    RedisStreamClient,
    publish_transition,
    STREAM_CLAIM_INITIATED,
    STREAM_CLAIM_VERIFIED,
    STREAM_CLAIM_REJECTED,
    STREAM_AUTO_MISS_APPLIED,
)
from .health import create_health_router
from .logging_config import configure_logging
from .telemetry import setup_telemetry, instrument_fastapi, get_tracer
from . import metrics

__all__ = [
    "Database",
    "Base",
    "insert_if_absent",
    "Entry",
    "EntryStatus",
    "Outcome",
    "VerificationRecord",
    "ReviewStatus",
    "AuditEvent",
    "AuditEntity",
    "AuditAction",
    "utcnow",
    "LifecycleConfig",
    "DeadlinePolicy",
    "LifecycleError",
    "EntryNotFound",
    "VerificationNotFound",
    "InvalidRequest",
    "NotEntryOwner",
    "AlreadyReported",
    "WindowClosed",
    "InvalidTransition",
    "TransitionConflict",
    "install_error_handlers",
    "AuditLedger",
    "ledger",
    "transition_entry",
    "transition_verification",
    "check_review_transition",
    "VerificationManager",
    "RedisStreamClient",
    "publish_transition",
    "STREAM_CLAIM_INITIATED",
    "STREAM_CLAIM_VERIFIED",
    "STREAM_CLAIM_REJECTED",
    "STREAM_AUTO_MISS_APPLIED",
    "create_health_router",
    "configure_logging",
    "setup_telemetry",
    "instrument_fastapi",
    "get_tracer",
    "metrics",
]
