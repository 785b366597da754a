"""Messaging client protocol and the WhatsApp gateway implementation.

A messaging client is the opaque transport behind SessionManager:
- start(emit) runs session establishment, reporting lifecycle through emit()
- send_text() delivers one message and returns the provider message id
- close() releases transport resources

GatewayClient talks to a WhatsApp Web gateway sidecar over HTTP:
    GET  /session/status  -> {"status": "qr"|"ready"|"disconnected"|"auth_failure", "qr": ..., "reason": ...}
    POST /messages        -> {"id": ...}
    POST /session/logout  -> drop the sidecar's session, forcing a new QR

Every Ready it reports is preceded by a pairing challenge in the same
connect. A session the sidecar restored or resumed on its own is logged out
so the operator pairs again.

Security: the gateway token comes from settings and is never logged.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable, Protocol, runtime_checkable

import httpx

from orderbridge.errors import AuthFailure, TransportFailure
from orderbridge.session.models import SessionEvent

logger = logging.getLogger(__name__)

EmitFn = Callable[[SessionEvent], None]

_CHAT_SUFFIX = "@c.us"
_AUTH_STATUS_CODES = {401, 403}


@runtime_checkable
class MessagingClient(Protocol):
    """Protocol for session-based messaging transports."""

    async def start(self, emit: EmitFn) -> None:
        """Establish the session, calling emit() for each lifecycle event."""
        ...

    async def send_text(self, destination: str, text: str) -> str:
        """Send a text message. Returns the provider message id."""
        ...

    async def close(self) -> None:
        """Release all transport resources."""
        ...


def to_chat_id(destination: str) -> str:
    """Normalize a phone number to a WhatsApp chat id (918606532458@c.us)."""
    if "@" in destination:
        return destination
    return re.sub(r"\D", "", destination) + _CHAT_SUFFIX


class GatewayClient:
    """MessagingClient backed by an HTTP WhatsApp gateway."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        poll_interval: float = 2.0,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client_kwargs = {
            "base_url": base_url,
            "headers": {"Authorization": f"Bearer {token}"} if token else {},
            "timeout": timeout,
            "transport": transport,
        }
        self._http = httpx.AsyncClient(**self._client_kwargs)
        self._poll_interval = poll_interval
        self._last_status: str | None = None
        self._last_qr: str | None = None

    async def start(self, emit: EmitFn) -> None:
        """Poll the gateway's session status until auth fails or cancelled."""
        if self._http.is_closed:
            # Reconnect after a previous close()
            self._http = httpx.AsyncClient(**self._client_kwargs)
        self._last_status = None
        self._last_qr = None
        logger.info("Connecting to WhatsApp gateway at %s", self._http.base_url)
        while True:
            try:
                resp = await self._http.get("/session/status")
                resp.raise_for_status()
                data = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("Gateway status poll failed: %s", e)
                data = {"status": "disconnected", "reason": "gateway unreachable"}
            if not isinstance(data, dict):
                data = {}

            if data.get("status") == "ready" and self._last_status not in ("qr", "ready"):
                await self._force_repair()
            elif self._apply_status(data, emit):
                return
            await asyncio.sleep(self._poll_interval)

    async def _force_repair(self) -> None:
        """Log out a session this client did not pair; the sidecar then issues a QR."""
        logger.warning("Gateway reports a session that was not paired on this connect, logging it out")
        try:
            resp = await self._http.post("/session/logout")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Gateway logout failed: %s", e)

    def _apply_status(self, data: dict, emit: EmitFn) -> bool:
        """Emit an event if the status changed. Returns True when polling should stop."""
        status = str(data.get("status", ""))
        reason = str(data.get("reason", ""))

        if status == "qr":
            qr = str(data.get("qr", ""))
            if self._last_status == "ready":
                emit(SessionEvent.disconnected(reason or "gateway requested re-pairing"))
            if status != self._last_status or qr != self._last_qr:
                self._last_qr = qr
                emit(SessionEvent.pairing_required(qr))
        elif status != self._last_status:
            if status == "ready":
                emit(SessionEvent.ready())
            elif status == "disconnected" and self._last_status is not None:
                emit(SessionEvent.disconnected(reason or "gateway disconnected"))
            elif status == "auth_failure":
                emit(SessionEvent.auth_failed(reason or "authentication failed"))
                self._last_status = status
                return True

        self._last_status = status
        return False

    async def send_text(self, destination: str, text: str) -> str:
        try:
            resp = await self._http.post(
                "/messages",
                json={"to": to_chat_id(destination), "text": text},
            )
        except httpx.HTTPError as e:
            raise TransportFailure(f"gateway request failed: {type(e).__name__}") from e

        if resp.status_code in _AUTH_STATUS_CODES:
            raise AuthFailure(f"gateway rejected credentials: {resp.status_code}")
        if resp.status_code >= 300:
            raise TransportFailure(f"gateway error: {resp.status_code}")
        try:
            data = resp.json()
        except ValueError:
            return ""
        return str(data.get("id", "")) if isinstance(data, dict) else ""

    async def close(self) -> None:
        await self._http.aclose()
        logger.info("WhatsApp gateway client closed")
