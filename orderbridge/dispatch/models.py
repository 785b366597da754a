"""Notification job model.

Jobs are created and mutated only by DispatchQueue. Lifecycle:
    pending -> sending -> delivered
                       -> pending (transport failure, backoff)
                       -> failed  (after max attempts)
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from orderbridge.session.models import DeliveryReceipt


class JobState(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    DELIVERED = "delivered"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.DELIVERED, JobState.FAILED})


@dataclass
class NotificationJob:
    """One rendered message awaiting delivery to the destination."""
    job_id: str
    message: str
    state: JobState = JobState.PENDING
    attempt_count: int = 0
    enqueued_at: float = field(default_factory=time.time)
    next_attempt_at: float = 0.0  # Monotonic clock; 0 = eligible now
    last_error: str = ""
    failure_reason: str = ""
    delivered_at: float = 0.0
    finished_at: float = 0.0  # Monotonic clock; set on delivered or failed
    receipt: DeliveryReceipt | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_eligible(self, now: float) -> bool:
        return self.state == JobState.PENDING and now >= self.next_attempt_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "enqueued_at": self.enqueued_at,
            "last_error": self.last_error,
            "failure_reason": self.failure_reason,
            "delivered_at": self.delivered_at,
        }
