"""Dispatch queue — decouples "notification requested" from "delivered".

Buffers jobs while the session is not ready and retries transient send
failures with exponential backoff.

Contract:
- enqueue() dedupes by job_id: a pending, sending or delivered job is never
  re-created, so webhook retries cannot double-send
- drain() walks pending jobs in enqueue order; jobs still in backoff are
  skipped without blocking the jobs behind them
- passes are serialized by a lock, so a job never has two sends in flight
- not_ready leaves the job pending (no attempt counted) and ends the pass
- after max_attempts transport failures the job is failed and reported
- delivered and failed jobs are evicted dedupe_ttl seconds after finishing,
  so the job table stays bounded in a long-running process
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from orderbridge.dispatch.backoff import compute_delay
from orderbridge.dispatch.models import JobState, NotificationJob
from orderbridge.events import EventBroadcaster
from orderbridge.session.manager import SessionManager
from orderbridge.session.models import SendErrorKind, SendResult

logger = logging.getLogger(__name__)


class DispatchQueue:
    """FIFO notification queue draining into a SessionManager."""

    def __init__(
        self,
        session: SessionManager,
        destination: str,
        max_attempts: int = 5,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0,
        backoff_jitter: float = 0.0,
        dedupe_ttl: float = 86400.0,
        clock: Callable[[], float] = time.monotonic,
        broadcaster: EventBroadcaster | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._session = session
        self._destination = destination
        self._max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._backoff_jitter = backoff_jitter
        self._dedupe_ttl = dedupe_ttl
        self._clock = clock
        self._events = broadcaster or EventBroadcaster()
        self._jobs: dict[str, NotificationJob] = {}
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._counts = {"enqueued": 0, "duplicates": 0, "delivered": 0, "failed": 0}

    @property
    def destination(self) -> str:
        return self._destination

    @property
    def events(self) -> EventBroadcaster:
        return self._events

    # ── Enqueue ───────────────────────────────────────────────────────────

    def enqueue(self, message: str, job_id: str) -> tuple[NotificationJob, bool]:
        """Queue a message for delivery. Returns (job, created)."""
        self._evict_expired()
        existing = self._jobs.get(job_id)
        if existing is not None and existing.state != JobState.FAILED:
            self._counts["duplicates"] += 1
            logger.info("Duplicate enqueue ignored: %s (state=%s)", job_id, existing.state.value)
            return existing, False

        if existing is not None:
            # A failed job may be re-requested; it goes to the back of the line
            logger.info("Re-queueing previously failed job %s", job_id)
            del self._jobs[job_id]

        job = NotificationJob(job_id=job_id, message=message, enqueued_at=time.time())
        self._jobs[job_id] = job
        self._counts["enqueued"] += 1
        self._wake.set()
        logger.info("Job queued: %s (pending=%d)", job_id, self.pending_count)
        return job, True

    def _evict_expired(self) -> None:
        """Drop delivered and failed jobs that finished more than dedupe_ttl ago."""
        cutoff = self._clock() - self._dedupe_ttl
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.is_terminal and job.finished_at <= cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug("Evicted %d expired jobs", len(expired))

    # ── Delivery ──────────────────────────────────────────────────────────

    async def drain(self) -> int:
        """Run one pass over pending jobs. Returns the number of sends attempted."""
        async with self._lock:
            attempted = 0
            for job in list(self._jobs.values()):
                if not self._session.is_ready:
                    break
                if not job.is_eligible(self._clock()):
                    continue
                result = await self._attempt(job)
                if result.error is not None and result.error.kind == SendErrorKind.NOT_READY:
                    logger.info("Session not ready, pausing drain with %d pending", self.pending_count)
                    break
                attempted += 1
            return attempted

    async def attempt(self, job_id: str) -> SendResult | None:
        """Attempt one pending job right away. Returns None if it is not pending."""
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.PENDING:
                return None
            return await self._attempt(job)

    async def _attempt(self, job: NotificationJob) -> SendResult:
        job.state = JobState.SENDING
        try:
            result = await self._session.send(self._destination, job.message)
        except asyncio.CancelledError:
            job.state = JobState.PENDING
            raise

        if result.receipt is not None:
            job.attempt_count += 1
            job.state = JobState.DELIVERED
            job.receipt = result.receipt
            job.delivered_at = time.time()
            job.finished_at = self._clock()
            job.last_error = ""
            self._counts["delivered"] += 1
            logger.info("Notification delivered: job=%s attempts=%d", job.job_id, job.attempt_count)
        elif result.error is not None and result.error.kind == SendErrorKind.NOT_READY:
            job.state = JobState.PENDING
        else:
            self._record_failure(job, result.error.reason if result.error else "unknown error")
        return result

    def _record_failure(self, job: NotificationJob, reason: str) -> None:
        job.attempt_count += 1
        job.last_error = reason

        if job.attempt_count >= self._max_attempts:
            job.state = JobState.FAILED
            job.finished_at = self._clock()
            job.failure_reason = f"{reason} (after {job.attempt_count} attempts)"
            self._counts["failed"] += 1
            logger.error(
                "Notification FAILED: job=%s attempts=%d reason=%s",
                job.job_id,
                job.attempt_count,
                reason,
            )
            self._events.broadcast(
                {"type": "job_failed", "job_id": job.job_id, "reason": job.failure_reason}
            )
            return

        delay = compute_delay(
            job.attempt_count,
            base_delay=self._backoff_base,
            max_delay=self._backoff_max,
            jitter=self._backoff_jitter,
        )
        job.state = JobState.PENDING
        job.next_attempt_at = self._clock() + delay
        logger.warning(
            "Retry %d/%d for job %s in %.1fs: %s",
            job.attempt_count,
            self._max_attempts - 1,
            job.job_id,
            delay,
            reason,
        )

    # ── Background loop ───────────────────────────────────────────────────

    async def run(self) -> None:
        """Drain whenever the session is ready, until cancelled."""
        sub_id, session_events = self._session.subscribe()
        logger.info(
            "Dispatch queue started (max_attempts=%d, pending=%d)",
            self._max_attempts,
            self.pending_count,
        )
        try:
            while True:
                if self._session.is_ready:
                    await self.drain()
                await self._wait_for_work(session_events)
        except asyncio.CancelledError:
            logger.info("Dispatch queue stopped (pending=%d)", self.pending_count)
            raise
        finally:
            self._session.unsubscribe(sub_id)

    async def _wait_for_work(self, session_events: asyncio.Queue) -> None:
        """Block until an enqueue, a session state change, or a backoff deadline."""
        waiters = {
            asyncio.create_task(self._wake.wait()),
            asyncio.create_task(session_events.get()),
        }
        try:
            await asyncio.wait(
                waiters,
                timeout=self._next_deadline(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                waiter.cancel()
        self._wake.clear()

    def _next_deadline(self) -> float | None:
        """Seconds until the earliest backoff expires, or None to wait indefinitely."""
        if not self._session.is_ready:
            return None
        deadlines = [
            job.next_attempt_at for job in self._jobs.values() if job.state == JobState.PENDING
        ]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - self._clock())

    def start(self) -> asyncio.Task:
        """Start the background drain loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="dispatch-drain")
        return self._task

    async def stop(self) -> None:
        """Cancel the drain loop. In-flight jobs go back to pending."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    # ── Inspection ────────────────────────────────────────────────────────

    def get(self, job_id: str) -> NotificationJob | None:
        return self._jobs.get(job_id)

    @property
    def jobs(self) -> list[NotificationJob]:
        """All jobs in enqueue order."""
        return list(self._jobs.values())

    @property
    def failed_jobs(self) -> list[NotificationJob]:
        return [job for job in self._jobs.values() if job.state == JobState.FAILED]

    @property
    def pending_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.state == JobState.PENDING)

    def status(self) -> dict[str, Any]:
        """Queue status for monitoring."""
        by_state: dict[str, int] = {state.value: 0 for state in JobState}
        for job in self._jobs.values():
            by_state[job.state.value] += 1
        return {
            "jobs": by_state,
            "counts": dict(self._counts),
            "running": self._task is not None and not self._task.done(),
            "failed": [job.to_dict() for job in self.failed_jobs],
        }
