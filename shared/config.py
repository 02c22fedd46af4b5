import os
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum


class DeadlinePolicy(str, Enum):
    """What the sweep does with a win claim still `initiated` past its deadline."""
    ESCALATE = "escalate"
    AUTO_MISS = "auto_miss"


@dataclass(frozen=True)
class LifecycleConfig:
    attempt_window: timedelta = timedelta(minutes=120)
    verification_deadline: timedelta = timedelta(hours=12)
    sweep_batch_size: int = 100
    sweep_interval_seconds: int = 900
    deadline_policy: DeadlinePolicy = DeadlinePolicy.ESCALATE

    def __post_init__(self):
        if self.attempt_window <= timedelta(0):
            raise ValueError("attempt window must be positive")
        if self.verification_deadline <= timedelta(0):
            raise ValueError("verification deadline must be positive")
        if self.sweep_batch_size < 1:
            raise ValueError("sweep batch size must be at least 1")
        if self.sweep_interval_seconds < 1:
            raise ValueError("sweep interval must be at least 1 second")

    @classmethod
    def from_env(cls) -> "LifecycleConfig":
        """
        Build the configuration from environment variables.

        Environment variables:
            ATTEMPT_WINDOW_MINUTES: Self-report window after payment (default: 120)
            VERIFICATION_DEADLINE_HOURS: Review deadline for win claims (default: 12)
            SWEEP_BATCH_SIZE: Max rows per sub-sweep run (default: 100)
            SWEEP_INTERVAL_SECONDS: Auto-miss sweep period (default: 900)
            VERIFICATION_DEADLINE_POLICY: "escalate" or "auto_miss" (default: escalate)
        """
        policy = os.getenv("VERIFICATION_DEADLINE_POLICY", DeadlinePolicy.ESCALATE.value)
        try:
            deadline_policy = DeadlinePolicy(policy.lower())
        except ValueError:
            raise ValueError(f"Invalid VERIFICATION_DEADLINE_POLICY: {policy}")

        return cls(
            attempt_window=timedelta(minutes=float(os.getenv("ATTEMPT_WINDOW_MINUTES", "120"))),
            verification_deadline=timedelta(
                hours=float(os.getenv("VERIFICATION_DEADLINE_HOURS", "12"))
            ),
            sweep_batch_size=int(os.getenv("SWEEP_BATCH_SIZE", "100")),
            sweep_interval_seconds=int(os.getenv("SWEEP_INTERVAL_SECONDS", "900")),
            deadline_policy=deadline_policy,
        )
