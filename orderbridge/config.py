"""orderbridge configuration."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the notification bridge."""

    service_name: str = "Shopify to WhatsApp notification service"
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    # Single fixed recipient (phone number or chat id)
    destination: str = ""

    # WhatsApp gateway sidecar
    gateway_url: str = "http://localhost:3001"
    gateway_token: str = ""
    gateway_poll_interval: float = 2.0

    # Delivery
    send_timeout: float = 30.0
    max_attempts: int = 5
    backoff_base: float = 2.0
    backoff_max: float = 300.0
    backoff_jitter: float = 0.1

    # Delivered and failed jobs are kept this long for dedupe and inspection
    dedupe_ttl: float = 86400.0

    model_config = {"env_prefix": "ORDERBRIDGE_", "env_file": ".env", "extra": "ignore"}


settings = Settings()
