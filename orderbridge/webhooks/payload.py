"""Inbound order payload validation and job id derivation."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from orderbridge.errors import ValidationError
from orderbridge.orders.models import OrderNotice
from orderbridge.orders.normalizer import UNKNOWN_ORDER_ID


def parse_order_body(body: bytes) -> dict[str, Any]:
    """Decode a webhook body. Raises ValidationError unless it is a JSON object."""
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"malformed JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ValidationError(f"expected a JSON object, got {type(payload).__name__}")
    return payload


def derive_job_id(notice: OrderNotice, payload: dict[str, Any]) -> str:
    """Stable job id for an order so duplicate webhooks collapse onto one job.

    Orders without an identifier fall back to a digest of the payload,
    which still dedupes byte-identical redeliveries.
    """
    if notice.order_id != UNKNOWN_ORDER_ID:
        return f"order-{notice.order_id}"
    canonical = json.dumps(payload, sort_keys=True, default=str)
    digest = hashlib.sha256(canonical.encode()).hexdigest()
    return f"order-sha-{digest[:16]}"
