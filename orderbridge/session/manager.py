"""Session manager — owns the messaging session lifecycle.

State machine:
    unauthenticated --pairing_required--> pairing --ready--> ready
    ready --disconnected--> unauthenticated   (re-pairing required)
    pairing --disconnected--> unauthenticated
    any --auth_failed--> faulted              (terminal until restart)

Contract:
- Transitions are driven only by client events; events that would skip a
  state are ignored and logged
- SessionManager is the only writer of SessionState; readers use
  `state` or subscribe() for change events
- send() returns a SendResult, never raises for delivery problems
- teardown() is safe from any state and idempotent; sends it aborts are
  reported as not_ready so their jobs go back to pending
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from orderbridge.errors import AuthFailure, TransportFailure
from orderbridge.events import EventBroadcaster
from orderbridge.session.client import MessagingClient
from orderbridge.session.models import (
    DeliveryReceipt,
    SendResult,
    SessionEvent,
    SessionEventType,
    SessionState,
)

logger = logging.getLogger(__name__)

_DEFAULT_SEND_TIMEOUT = 30.0

_TRANSITIONS: dict[tuple[SessionState, SessionEventType], SessionState] = {
    (SessionState.UNAUTHENTICATED, SessionEventType.PAIRING_REQUIRED): SessionState.PAIRING,
    (SessionState.PAIRING, SessionEventType.PAIRING_REQUIRED): SessionState.PAIRING,  # QR refresh
    (SessionState.PAIRING, SessionEventType.READY): SessionState.READY,
    (SessionState.PAIRING, SessionEventType.DISCONNECTED): SessionState.UNAUTHENTICATED,
    (SessionState.READY, SessionEventType.DISCONNECTED): SessionState.UNAUTHENTICATED,
}


class SessionManager:
    """Owns one messaging session and exposes its readiness."""

    def __init__(
        self,
        client: MessagingClient,
        send_timeout: float = _DEFAULT_SEND_TIMEOUT,
        broadcaster: EventBroadcaster | None = None,
    ):
        self._client = client
        self._send_timeout = send_timeout
        self._events = broadcaster or EventBroadcaster()
        self._state = SessionState.UNAUTHENTICATED
        self._pairing_payload: str | None = None
        self._fault_reason = ""
        self._connect_task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self._aborted: set[asyncio.Task] = set()
        self._closed = False

    # ── State ─────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    def current_state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    @property
    def pairing_payload(self) -> str | None:
        """Latest pairing artifact, for the operator only."""
        return self._pairing_payload

    def subscribe(self) -> tuple[str, asyncio.Queue]:
        """Subscribe to state change events."""
        return self._events.subscribe()

    def unsubscribe(self, sub_id: str) -> None:
        self._events.unsubscribe(sub_id)

    def handle_event(self, event: SessionEvent) -> None:
        """Apply a lifecycle event from the messaging client."""
        previous = self._state

        if event.type == SessionEventType.AUTH_FAILED:
            if previous == SessionState.FAULTED:
                return
            self._fault_reason = event.reason
            logger.error("WhatsApp authentication failed: %s; session faulted, restart required", event.reason)
            self._transition(SessionState.FAULTED, event)
            return

        target = _TRANSITIONS.get((previous, event.type))
        if target is None:
            logger.warning(
                "Ignoring session event %s in state %s",
                event.type.value,
                previous.value,
            )
            return

        if event.type == SessionEventType.PAIRING_REQUIRED:
            self._pairing_payload = event.payload
            logger.warning("WhatsApp pairing required, scan this QR payload to connect: %s", event.payload)
        elif target == SessionState.READY:
            self._pairing_payload = None
            logger.info("WhatsApp client is ready")
        elif event.type == SessionEventType.DISCONNECTED:
            logger.warning("WhatsApp session disconnected (%s), re-pairing required", event.reason)

        if target != previous:
            self._transition(target, event)

    def _transition(self, target: SessionState, event: SessionEvent) -> None:
        previous = self._state
        self._state = target
        logger.info("Session state: %s -> %s", previous.value, target.value)
        self._events.broadcast(
            {
                "type": "session_state",
                "state": target.value,
                "previous": previous.value,
                "event": event.type.value,
                "reason": event.reason,
            }
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Begin session establishment in the background."""
        if self._state == SessionState.FAULTED:
            logger.error("Session is faulted (%s), not reconnecting", self._fault_reason)
            return
        if self._connect_task is not None and not self._connect_task.done():
            return
        self._closed = False
        self._connect_task = asyncio.create_task(self._run_client(), name="session-connect")

    async def _run_client(self) -> None:
        try:
            await self._client.start(self.handle_event)
        except AuthFailure as e:
            self.handle_event(SessionEvent.auth_failed(e.reason))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Messaging client stopped unexpectedly")
            self.handle_event(SessionEvent.disconnected(str(e) or type(e).__name__))

    async def send(self, destination: str, text: str) -> SendResult:
        """Send one message. Never waits longer than the send timeout."""
        if self._closed:
            return SendResult.not_ready("session is shutting down")
        if self._state != SessionState.READY:
            return SendResult.not_ready(f"session is {self._state.value}")

        attempt = asyncio.create_task(
            asyncio.wait_for(self._client.send_text(destination, text), self._send_timeout)
        )
        self._inflight.add(attempt)
        try:
            message_id = await attempt
        except asyncio.CancelledError:
            if attempt in self._aborted:
                return SendResult.not_ready("send aborted by session teardown")
            raise
        except asyncio.TimeoutError:
            logger.warning("Send timed out after %.1fs", self._send_timeout)
            return SendResult.transport_failure(f"send timed out after {self._send_timeout:g}s")
        except AuthFailure as e:
            self.handle_event(SessionEvent.auth_failed(e.reason))
            return SendResult.not_ready(e.reason)
        except TransportFailure as e:
            logger.warning("Send failed: %s", e.reason)
            return SendResult.transport_failure(e.reason)
        except Exception as e:
            logger.exception("Unexpected messaging client error during send")
            return SendResult.transport_failure(str(e) or type(e).__name__)
        finally:
            self._inflight.discard(attempt)
            self._aborted.discard(attempt)

        logger.info("WhatsApp message sent successfully (id=%s)", message_id or "?")
        return SendResult.delivered(DeliveryReceipt(message_id=message_id, destination=destination))

    async def teardown(self) -> None:
        """Release the session. Safe from any state, including mid-connect."""
        if self._closed:
            return
        self._closed = True
        logger.info("Tearing down WhatsApp session (state=%s)", self._state.value)

        # Leave Ready before the first await so no new send starts mid-teardown
        if self._state in (SessionState.READY, SessionState.PAIRING):
            self.handle_event(SessionEvent.disconnected("teardown"))

        pending = list(self._inflight)
        self._aborted.update(pending)
        if self._connect_task is not None:
            pending.append(self._connect_task)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._connect_task = None

        try:
            await self._client.close()
        except Exception:
            logger.exception("Error closing messaging client")

    def status(self) -> dict[str, Any]:
        """Session status for operator inspection."""
        return {
            "state": self._state.value,
            "pairing_required": self._pairing_payload is not None,
            "fault_reason": self._fault_reason,
            "inflight_sends": len(self._inflight),
        }
