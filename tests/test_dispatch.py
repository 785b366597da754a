"""Tests for the dispatch queue and backoff.

Tests:
- Enqueue dedup by job id (idempotent webhook retries)
- FIFO drain when Ready, halt on not_ready
- Backoff scheduling, skipping, and failure after max attempts
- Background loop: drains on Ready without re-enqueue
- Cancellation never leaves a job in sending
"""

from __future__ import annotations

import asyncio

import pytest
from freezegun import freeze_time

from orderbridge.dispatch.backoff import compute_delay
from orderbridge.dispatch.models import JobState, NotificationJob
from orderbridge.dispatch.queue import DispatchQueue
from orderbridge.errors import TransportFailure
from orderbridge.session.manager import SessionManager
from orderbridge.session.models import SendErrorKind, SessionEvent


class SlowCloseClient:
    """Blocks the first send; close() takes a while to finish."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.send_calls = 0
        self.closed = False

    async def start(self, emit) -> None:
        await asyncio.Event().wait()

    async def send_text(self, destination: str, text: str) -> str:
        self.send_calls += 1
        if self.send_calls == 1:
            await asyncio.Event().wait()
        self.sent.append((destination, text))
        return f"msg-{len(self.sent)}"

    async def close(self) -> None:
        await asyncio.sleep(0.05)
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def queue(session, clock) -> DispatchQueue:
    return DispatchQueue(
        session,
        "918606532458",
        max_attempts=3,
        backoff_base=2.0,
        backoff_max=60.0,
        clock=clock,
    )


# ── Backoff ───────────────────────────────────────────────────────────────


class TestComputeDelay:
    def test_exponential(self):
        assert [compute_delay(n, base_delay=1.0, max_delay=100.0) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        assert compute_delay(20, base_delay=1.0, max_delay=60.0) == 60.0

    def test_huge_attempt_does_not_overflow(self):
        assert compute_delay(10_000, base_delay=1.0, max_delay=5.0) == 5.0

    def test_jitter_bounds(self):
        for _ in range(50):
            delay = compute_delay(3, base_delay=1.0, max_delay=100.0, jitter=0.5)
            assert 2.0 <= delay <= 6.0


# ── Enqueue ───────────────────────────────────────────────────────────────


class TestEnqueue:
    def test_creates_pending_job(self, queue):
        job, created = queue.enqueue("hello", "order-1")
        assert created is True
        assert job.state == JobState.PENDING
        assert job.attempt_count == 0
        assert queue.get("order-1") is job

    @freeze_time("2024-01-01 12:00:00")
    def test_records_enqueue_time(self, queue):
        job, _ = queue.enqueue("hello", "order-1")
        assert job.enqueued_at == 1704110400.0

    def test_duplicate_is_noop(self, queue):
        first, _ = queue.enqueue("hello", "order-1")
        second, created = queue.enqueue("hello again", "order-1")
        assert created is False
        assert second is first
        assert second.message == "hello"
        assert len(queue.jobs) == 1
        assert queue.status()["counts"]["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_duplicate_after_delivery_is_noop(self, queue, session, fake_client, make_ready):
        make_ready(session)
        queue.enqueue("hello", "order-1")
        await queue.drain()
        _, created = queue.enqueue("hello", "order-1")
        await queue.drain()
        assert created is False
        assert len(fake_client.sent) == 1

    @pytest.mark.asyncio
    async def test_failed_job_can_be_requeued(self, queue, session, fake_client, clock, make_ready):
        make_ready(session)
        fake_client.fail_with = TransportFailure("down")
        queue.enqueue("hello", "order-1")
        for _ in range(3):
            await queue.drain()
            clock.advance(120)
        assert queue.get("order-1").state == JobState.FAILED

        job, created = queue.enqueue("hello", "order-1")
        assert created is True
        assert job.state == JobState.PENDING
        assert job.attempt_count == 0

    @pytest.mark.asyncio
    async def test_finished_jobs_expire_after_ttl(self, session, fake_client, clock, make_ready):
        queue = DispatchQueue(session, "1", dedupe_ttl=3600.0, clock=clock)
        make_ready(session)
        queue.enqueue("hello", "order-1")
        await queue.drain()

        clock.advance(1800)
        _, created = queue.enqueue("hello", "order-1")
        assert created is False

        clock.advance(1800)
        queue.enqueue("other", "order-2")
        assert queue.get("order-1") is None
        assert [job.job_id for job in queue.jobs] == ["order-2"]

    @pytest.mark.asyncio
    async def test_expiry_keeps_unfinished_jobs(self, queue, session, fake_client, clock, make_ready):
        make_ready(session)
        fake_client.fail_with = TransportFailure("down")
        queue.enqueue("retrying", "order-1")
        await queue.drain()
        fake_client.fail_with = None
        queue.enqueue("not ready yet", "order-2")
        session.handle_event(SessionEvent.disconnected("phone offline"))

        clock.advance(10 * 86400)
        queue.enqueue("new", "order-3")
        assert [job.job_id for job in queue.jobs] == ["order-1", "order-2", "order-3"]

    def test_invalid_max_attempts(self, session):
        with pytest.raises(ValueError):
            DispatchQueue(session, "1", max_attempts=0)


# ── Drain ─────────────────────────────────────────────────────────────────


class TestDrain:
    @pytest.mark.asyncio
    async def test_no_drain_when_not_ready(self, queue, fake_client):
        queue.enqueue("hello", "order-1")
        assert await queue.drain() == 0
        assert queue.get("order-1").state == JobState.PENDING
        assert queue.get("order-1").attempt_count == 0
        assert fake_client.sent == []

    @pytest.mark.asyncio
    async def test_delivers_in_enqueue_order(self, queue, session, fake_client, make_ready):
        for n in (3, 1, 2):
            queue.enqueue(f"msg {n}", f"order-{n}")
        make_ready(session)

        assert await queue.drain() == 3
        assert [text for _, text in fake_client.sent] == ["msg 3", "msg 1", "msg 2"]
        assert all(job.state == JobState.DELIVERED for job in queue.jobs)
        assert all(dest == "918606532458" for dest, _ in fake_client.sent)
        job = queue.get("order-3")
        assert job.attempt_count == 1
        assert job.receipt.message_id == "msg-1"

    @pytest.mark.asyncio
    async def test_transport_failure_schedules_backoff(self, queue, session, fake_client, clock, make_ready):
        make_ready(session)
        fake_client.fail_times = 1
        queue.enqueue("hello", "order-1")

        await queue.drain()
        job = queue.get("order-1")
        assert job.state == JobState.PENDING
        assert job.attempt_count == 1
        assert job.last_error == "simulated transport error"
        assert job.next_attempt_at == clock.now + 2.0

        # Not eligible yet
        assert await queue.drain() == 0
        clock.advance(2.0)
        assert await queue.drain() == 1
        assert job.state == JobState.DELIVERED
        assert job.attempt_count == 2

    @pytest.mark.asyncio
    async def test_backoff_does_not_block_later_jobs(self, queue, session, fake_client, make_ready):
        make_ready(session)
        fake_client.fail_times = 1
        queue.enqueue("first", "order-1")
        queue.enqueue("second", "order-2")

        await queue.drain()
        assert queue.get("order-1").state == JobState.PENDING
        assert queue.get("order-2").state == JobState.DELIVERED

    @pytest.mark.asyncio
    async def test_fails_after_exactly_max_attempts(self, queue, session, fake_client, clock, make_ready):
        make_ready(session)
        fake_client.fail_with = TransportFailure("always down")
        _, events = queue.events.subscribe()
        queue.enqueue("hello", "order-1")

        attempts = 0
        for _ in range(10):
            attempts += await queue.drain()
            clock.advance(1000)

        job = queue.get("order-1")
        assert attempts == 3
        assert job.state == JobState.FAILED
        assert job.attempt_count == 3
        assert "always down" in job.failure_reason
        assert queue.failed_jobs == [job]
        assert queue.status()["failed"][0]["job_id"] == "order-1"
        assert events.get_nowait()["type"] == "job_failed"

    @pytest.mark.asyncio
    async def test_not_ready_halts_pass_without_counting(self, queue, session, fake_client, make_ready):
        make_ready(session)
        queue.enqueue("first", "order-1")
        queue.enqueue("second", "order-2")

        original_send = session.send

        async def send_then_drop(destination, text):
            result = await original_send(destination, text)
            session.handle_event(SessionEvent.disconnected("dropped"))
            return result

        session.send = send_then_drop
        assert await queue.drain() == 1
        assert queue.get("order-1").state == JobState.DELIVERED
        second = queue.get("order-2")
        assert second.state == JobState.PENDING
        assert second.attempt_count == 0

    @pytest.mark.asyncio
    async def test_attempt_single_job(self, queue, session, make_ready):
        queue.enqueue("hello", "test-1")
        result = await queue.attempt("test-1")
        assert result.error.kind == SendErrorKind.NOT_READY
        assert queue.get("test-1").state == JobState.PENDING

        make_ready(session)
        result = await queue.attempt("test-1")
        assert result.success is True
        assert await queue.attempt("test-1") is None
        assert await queue.attempt("missing") is None

    @pytest.mark.asyncio
    async def test_concurrent_drains_send_once(self, queue, session, fake_client, make_ready):
        make_ready(session)
        queue.enqueue("hello", "order-1")
        await asyncio.gather(queue.drain(), queue.drain(), queue.attempt("order-1"))
        assert len(fake_client.sent) == 1


# ── Background loop ───────────────────────────────────────────────────────


async def _wait_for_state(job: NotificationJob, state: JobState, timeout: float = 1.0) -> None:
    async def _poll():
        while job.state != state:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


class TestDrainLoop:
    @pytest.mark.asyncio
    async def test_pending_job_delivered_once_ready(self, queue, session, fake_client, make_ready):
        queue.start()
        job, _ = queue.enqueue("hello", "order-1")
        await asyncio.sleep(0.01)
        assert job.state == JobState.PENDING

        make_ready(session)
        await _wait_for_state(job, JobState.DELIVERED)
        assert len(fake_client.sent) == 1
        await queue.stop()

    @pytest.mark.asyncio
    async def test_enqueue_while_ready_wakes_loop(self, queue, session, fake_client, make_ready):
        make_ready(session)
        queue.start()
        await asyncio.sleep(0)
        job, _ = queue.enqueue("hello", "order-1")
        await _wait_for_state(job, JobState.DELIVERED)
        assert queue.status()["running"] is True
        await queue.stop()
        assert queue.status()["running"] is False

    @pytest.mark.asyncio
    async def test_retries_after_backoff(self, session, fake_client, make_ready):
        queue = DispatchQueue(session, "1", max_attempts=3, backoff_base=0.01, backoff_max=0.02)
        make_ready(session)
        fake_client.fail_times = 2
        queue.start()
        job, _ = queue.enqueue("hello", "order-1")
        await _wait_for_state(job, JobState.DELIVERED)
        assert job.attempt_count == 3
        await queue.stop()

    @pytest.mark.asyncio
    async def test_stop_mid_send_returns_job_to_pending(self, queue, session, fake_client, make_ready):
        make_ready(session)
        fake_client.block_sends = True
        queue.start()
        job, _ = queue.enqueue("hello", "order-1")
        await _wait_for_state(job, JobState.SENDING)

        await queue.stop()
        assert job.state == JobState.PENDING
        assert job.attempt_count == 0

    @pytest.mark.asyncio
    async def test_no_new_send_while_client_is_closing(self, make_ready):
        client = SlowCloseClient()
        session = SessionManager(client, send_timeout=1.0)
        queue = DispatchQueue(session, "1", max_attempts=3)
        make_ready(session)
        queue.start()
        job, _ = queue.enqueue("hello", "order-1")
        await _wait_for_state(job, JobState.SENDING)

        await session.teardown()
        assert client.send_calls == 1
        assert client.sent == []
        assert job.state == JobState.PENDING
        assert job.attempt_count == 0
        await queue.stop()

    @pytest.mark.asyncio
    async def test_teardown_mid_send_returns_job_to_pending(self, queue, session, fake_client, make_ready):
        make_ready(session)
        fake_client.block_sends = True
        queue.start()
        job, _ = queue.enqueue("hello", "order-1")
        await _wait_for_state(job, JobState.SENDING)

        await session.teardown()
        await _wait_for_state(job, JobState.PENDING)
        assert job.attempt_count == 0
        await queue.stop()
