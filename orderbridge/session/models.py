"""Messaging session data models.

SessionState is owned by SessionManager; everything else reads it.
SendResult replaces a bare success flag so callers can tell a session
that is not ready from a transport that failed.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Messaging session lifecycle states."""
    UNAUTHENTICATED = "unauthenticated"
    PAIRING = "pairing"  # Waiting for the operator to scan the QR code
    READY = "ready"
    FAULTED = "faulted"  # Terminal until restart


class SessionEventType(str, Enum):
    """Lifecycle signals emitted by a messaging client."""
    PAIRING_REQUIRED = "pairing_required"
    READY = "ready"
    AUTH_FAILED = "auth_failed"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class SessionEvent:
    type: SessionEventType
    payload: str = ""  # Pairing artifact (QR data) for PAIRING_REQUIRED
    reason: str = ""

    @classmethod
    def pairing_required(cls, payload: str) -> SessionEvent:
        return cls(SessionEventType.PAIRING_REQUIRED, payload=payload)

    @classmethod
    def ready(cls) -> SessionEvent:
        return cls(SessionEventType.READY)

    @classmethod
    def auth_failed(cls, reason: str) -> SessionEvent:
        return cls(SessionEventType.AUTH_FAILED, reason=reason)

    @classmethod
    def disconnected(cls, reason: str) -> SessionEvent:
        return cls(SessionEventType.DISCONNECTED, reason=reason)


class SendErrorKind(str, Enum):
    NOT_READY = "not_ready"
    TRANSPORT_FAILURE = "transport_failure"


@dataclass(frozen=True)
class SendError:
    kind: SendErrorKind
    reason: str = ""


@dataclass(frozen=True)
class DeliveryReceipt:
    """Proof that the messaging client accepted a message."""
    message_id: str
    destination: str
    sent_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class SendResult:
    """Outcome of a send: exactly one of receipt or error is set."""
    receipt: DeliveryReceipt | None = None
    error: SendError | None = None

    @property
    def success(self) -> bool:
        return self.receipt is not None

    @classmethod
    def delivered(cls, receipt: DeliveryReceipt) -> SendResult:
        return cls(receipt=receipt)

    @classmethod
    def not_ready(cls, reason: str) -> SendResult:
        return cls(error=SendError(SendErrorKind.NOT_READY, reason))

    @classmethod
    def transport_failure(cls, reason: str) -> SendResult:
        return cls(error=SendError(SendErrorKind.TRANSPORT_FAILURE, reason))

    def to_dict(self) -> dict[str, Any]:
        if self.receipt is not None:
            return {"success": True, "message_id": self.receipt.message_id}
        return {
            "success": False,
            "error": self.error.kind.value if self.error else "",
            "reason": self.error.reason if self.error else "",
        }
