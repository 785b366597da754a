"""Shopify to WhatsApp notification server.

create_app() wires one SessionManager and one DispatchQueue per app; the
lifespan starts the drain loop, connects the session, and on shutdown
(SIGINT/SIGTERM via uvicorn) stops the loop and tears the session down
before the process exits.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from orderbridge.config import Settings
from orderbridge.config import settings as default_settings
from orderbridge.dispatch.queue import DispatchQueue
from orderbridge.orders.formatter import format_test_message
from orderbridge.session.client import GatewayClient, MessagingClient
from orderbridge.session.manager import SessionManager
from orderbridge.webhooks.handlers import register_webhook_routes

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging once at process start."""
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)


def _build_client(cfg: Settings) -> MessagingClient:
    return GatewayClient(
        base_url=cfg.gateway_url,
        token=cfg.gateway_token,
        poll_interval=cfg.gateway_poll_interval,
        timeout=cfg.send_timeout,
    )


def create_app(
    settings: Settings | None = None,
    client: MessagingClient | None = None,
) -> FastAPI:
    """Build the FastAPI app. `client` overrides the gateway client (tests)."""
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not cfg.destination:
            logger.warning("ORDERBRIDGE_DESTINATION is not set; notifications cannot be delivered")

        session = SessionManager(client or _build_client(cfg), send_timeout=cfg.send_timeout)
        queue = DispatchQueue(
            session,
            cfg.destination,
            max_attempts=cfg.max_attempts,
            backoff_base=cfg.backoff_base,
            backoff_max=cfg.backoff_max,
            backoff_jitter=cfg.backoff_jitter,
            dedupe_ttl=cfg.dedupe_ttl,
        )
        app.state.session = session
        app.state.dispatch_queue = queue

        queue.start()
        await session.connect()
        logger.info("Server ready, webhook URL path: /webhook/orders/create")
        try:
            yield
        finally:
            logger.info("Shutting down server...")
            await queue.stop()
            await session.teardown()

    app = FastAPI(title="orderbridge", lifespan=lifespan)
    app.state.settings = cfg

    @app.get("/")
    async def health():
        """Liveness probe, independent of session state."""
        return {
            "status": "Server is running",
            "message": f"{cfg.service_name} is active",
        }

    @app.get("/test")
    async def test_message(request: Request):
        """Queue a test message and try to send it right away."""
        queue: DispatchQueue = request.app.state.dispatch_queue
        job_id = f"test-{uuid.uuid4().hex[:12]}"
        queue.enqueue(format_test_message(), job_id)
        result = await queue.attempt(job_id)
        sent = result is not None and result.success
        return {
            "success": sent,
            "message": "Test message sent!" if sent else "Failed to send test message",
        }

    register_webhook_routes(app)
    return app


def main() -> None:
    """Console entry point: run the server with uvicorn."""
    import uvicorn

    setup_logging(default_settings.log_level)
    uvicorn.run(create_app(), host=default_settings.host, port=default_settings.port)


if __name__ == "__main__":
    main()
