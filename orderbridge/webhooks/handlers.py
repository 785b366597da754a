"""Webhook HTTP handlers — FastAPI route handlers for Shopify order webhooks.

The order handler:
1. Reads the raw body
2. Rejects anything that is not a JSON object (500, no job created)
3. Normalizes and formats the order
4. Enqueues under a job id derived from the order number
5. Returns 200 immediately: "queued", never "delivered"

The handler never waits on the messaging session or on a send.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from orderbridge.dispatch.queue import DispatchQueue
from orderbridge.errors import ValidationError
from orderbridge.orders.formatter import format_order_message
from orderbridge.orders.normalizer import normalize_order
from orderbridge.session.manager import SessionManager
from orderbridge.webhooks.payload import derive_job_id, parse_order_body

logger = logging.getLogger(__name__)

ORDERS_CREATE_TOPIC = "orders/create"


def _log_webhook(counts: dict[str, int], topic: str, job_id: str, status: str) -> None:
    """Audit log for webhook activity; counts are per app."""
    counts[topic] = counts.get(topic, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT topic=%s job=%s status=%s count=%d",
        topic,
        job_id,
        status,
        counts[topic],
    )


async def _handle_order_created(request: Request) -> JSONResponse:
    """Queue a notification for a newly created order."""
    start = time.time()
    queue: DispatchQueue = request.app.state.dispatch_queue
    counts: dict[str, int] = request.app.state.webhook_counts

    body = await request.body()
    try:
        payload = parse_order_body(body)
    except ValidationError as e:
        _log_webhook(counts, ORDERS_CREATE_TOPIC, "unknown", "invalid_payload")
        logger.warning("Rejected order webhook: %s", e.reason)
        return JSONResponse(
            {"success": False, "message": "Invalid order payload"},
            status_code=500,
        )

    try:
        notice = normalize_order(payload)
        job_id = derive_job_id(notice, payload)
        job, created = queue.enqueue(format_order_message(notice), job_id)
    except Exception:
        logger.exception("Failed to queue order notification")
        _log_webhook(counts, ORDERS_CREATE_TOPIC, "unknown", "enqueue_failed")
        return JSONResponse(
            {"success": False, "message": "Error processing order notification"},
            status_code=500,
        )

    _log_webhook(counts, ORDERS_CREATE_TOPIC, job.job_id, "queued" if created else "duplicate")
    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms: order #%s", elapsed_ms, notice.order_id)

    return JSONResponse(
        {
            "success": True,
            "message": "Notification queued for delivery",
            "job_id": job.job_id,
        },
        status_code=200,
    )


def register_webhook_routes(app: FastAPI) -> None:
    """Register webhook and operator status routes on the FastAPI app.

    Expects app.state.dispatch_queue and app.state.session to be set by
    the app lifespan before requests arrive.
    """
    app.state.webhook_counts = {}

    @app.post("/webhook/orders/create")
    async def orders_create_webhook(request: Request):
        """Receive Shopify orders/create webhooks."""
        return await _handle_order_created(request)

    @app.get("/status")
    async def status(request: Request):
        """Session and queue state for the operator (pairing payload is not exposed)."""
        session: SessionManager = request.app.state.session
        queue: DispatchQueue = request.app.state.dispatch_queue
        return {
            "session": session.status(),
            "queue": queue.status(),
            "webhooks": dict(request.app.state.webhook_counts),
        }

    logger.info("Webhook routes registered: /webhook/orders/create, /status")
