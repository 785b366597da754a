"""Shared fixtures for the orderbridge test suite."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from orderbridge.config import Settings
from orderbridge.errors import TransportFailure
from orderbridge.session.manager import SessionManager
from orderbridge.session.models import SessionEvent


class FakeClient:
    """In-memory messaging client. start() idles until cancelled."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.fail_with: Exception | None = None
        self.fail_times = 0  # Fail this many sends, then succeed
        self.block_sends = False
        self.started = False
        self.closed = False

    async def start(self, emit) -> None:
        self.started = True
        await asyncio.Event().wait()

    async def send_text(self, destination: str, text: str) -> str:
        if self.block_sends:
            await asyncio.Event().wait()
        if self.fail_times > 0:
            self.fail_times -= 1
            raise TransportFailure("simulated transport error")
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((destination, text))
        return f"msg-{len(self.sent)}"

    async def close(self) -> None:
        self.closed = True


def _drive_to_ready(session: SessionManager) -> None:
    session.handle_event(SessionEvent.pairing_required("qr-payload"))
    session.handle_event(SessionEvent.ready())


@pytest.fixture()
def make_ready():
    """Callable that drives a session through pairing to Ready."""
    return _drive_to_ready


@pytest.fixture()
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture()
def session(fake_client: FakeClient) -> SessionManager:
    return SessionManager(fake_client, send_timeout=1.0)


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        destination="918606532458",
        max_attempts=3,
        backoff_base=0.01,
        backoff_max=0.05,
        backoff_jitter=0.0,
        send_timeout=1.0,
    )


@pytest.fixture()
def sample_order() -> dict[str, Any]:
    return {
        "order_number": "1001",
        "customer": {"first_name": "A", "last_name": "B"},
        "total_price": "20.00",
        "currency": "USD",
        "created_at": "2024-01-01T00:00:00Z",
        "line_items": [{"title": "Shirt", "quantity": 2, "price": "10.00"}],
    }
