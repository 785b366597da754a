"""Error taxonomy for the notification pipeline.

- ValidationError: malformed inbound payload, rejected at the webhook, never retried
- TransportFailure: transient send error, retried with backoff
- AuthFailure: session faulted, needs operator restart (queued jobs are kept)
"""

from __future__ import annotations


class OrderBridgeError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__(reason)


class ValidationError(OrderBridgeError):
    """Raised when an inbound webhook body is not a JSON object."""


class TransportFailure(OrderBridgeError):
    """Raised by a messaging client on a transient transport error."""


class AuthFailure(OrderBridgeError):
    """Raised by a messaging client when the session cannot authenticate."""
