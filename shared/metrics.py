from prometheus_client import Counter, Histogram, Gauge

# Entry metrics
ENTRIES_CREATED = Counter("lifecycle_entries_created_total", "Entries created at payment confirmation")
OUTCOMES_REPORTED = Counter(
    "lifecycle_outcomes_reported_total",
    "Accepted participant self-reports",
    ["outcome"]  # win, miss
)
REPORTS_REJECTED = Counter(
    "lifecycle_reports_rejected_total",
    "Self-reports refused",
    ["reason"]  # already_reported, window_closed, not_entry_owner
)
AWAITING_ENTRIES = Gauge("lifecycle_awaiting_entries", "Entries still awaiting an attempt")

# Verification metrics
VERIFICATIONS_CREATED = Counter(
    "lifecycle_verifications_created_total",
    "Verification records created",
    ["source"]  # report, backlog
)
EVIDENCE_ATTACHED = Counter("lifecycle_evidence_attached_total", "Evidence updates accepted")
CLAIM_REVIEWS = Counter(
    "lifecycle_claim_reviews_total",
    "Staff review transitions",
    ["action"]  # under_review, verified, rejected
)
PENDING_CLAIMS = Gauge("lifecycle_pending_claims", "Verification records not yet decided")

# Sweep metrics
SWEEP_RUNS = Counter("lifecycle_sweep_runs_total", "Auto-miss sweep runs")
ENTRIES_AUTO_MISSED = Counter("lifecycle_entries_auto_missed_total", "Entries expired by the sweep")
DEADLINES_ENFORCED = Counter(
    "lifecycle_verification_deadlines_enforced_total",
    "Verification records acted on past their deadline",
    ["policy"]  # escalate, auto_miss
)
SWEEP_ERRORS = Counter(
    "lifecycle_sweep_errors_total",
    "Per-row sweep failures",
    ["phase"]  # entries, verifications, backlog
)
SWEEP_DURATION = Histogram(
    "lifecycle_sweep_duration_seconds",
    "Time to execute one sweep run",
    buckets=[0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0]
)

# Shared transition metrics
TRANSITION_CONFLICTS = Counter(
    "lifecycle_transition_conflicts_total",
    "Conditional updates that matched no row",
    ["entity"]  # entry, verification
)
AUDIT_EVENTS_WRITTEN = Counter(
    "lifecycle_audit_events_written_total",
    "Audit events appended",
    ["entity", "action"]
)

# Notification metrics
NOTIFICATIONS_SENT = Counter(
    "lifecycle_notifications_sent_total",
    "Outbound notification requests",
    ["type", "result"]  # claim_verified/claim_rejected/auto_miss, sent/logged/failed
)

# Redis stream metrics
STREAM_MESSAGES_PUBLISHED = Counter(
    "lifecycle_stream_messages_published_total",
    "Messages published to Redis streams",
    ["stream"]
)
STREAM_PUBLISH_FAILURES = Counter(
    "lifecycle_stream_publish_failures_total",
    "Post-commit publishes that failed",
    ["stream"]
)
STREAM_MESSAGES_CONSUMED = Counter(
    "lifecycle_stream_messages_consumed_total",
    "Messages consumed from Redis streams",
    ["stream", "consumer_group"]
)
