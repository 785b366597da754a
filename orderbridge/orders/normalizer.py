"""Order normalizer — raw Shopify order payload to OrderNotice.

Total function: every input produces a fully populated OrderNotice.
Missing or malformed fields degrade to defaults instead of raising.

Recognized fields:
    order_number | name, customer.{first_name,last_name}, total_price,
    currency, created_at, line_items[].{title,quantity,price}
"""

from __future__ import annotations

import html
import logging
import re
from datetime import datetime, timezone
from typing import Any

from orderbridge.orders.models import UNPARSABLE, DateMarker, LineItem, Money, OrderNotice

logger = logging.getLogger(__name__)

GUEST_CUSTOMER = "Guest Customer"
UNKNOWN_ORDER_ID = "unknown"
UNTITLED_ITEM = "Untitled item"
DEFAULT_AMOUNT = "0.00"
# ISO 4217 code for "no currency"
DEFAULT_CURRENCY = "XXX"

# Keep free-text fields to one message line
_MAX_FIELD_LENGTH = 200


def _sanitize_field(value: Any) -> str:
    """Sanitize a free-text payload field for inclusion in a message."""
    if value is None:
        return ""
    s = str(value)
    # Strip HTML tags
    s = re.sub(r"<[^>]+>", "", s)
    s = html.unescape(s)
    s = re.sub(r"\s+", " ", s).strip()
    if len(s) > _MAX_FIELD_LENGTH:
        s = s[:_MAX_FIELD_LENGTH] + "..."
    return s


def _passthrough(value: Any, default: str) -> str:
    """Verbatim string form of a scalar field, or the default when absent."""
    if value is None:
        return default
    s = str(value).strip()
    return s or default


def _order_id(order: dict[str, Any]) -> str:
    order_id = _passthrough(order.get("order_number"), "")
    if not order_id:
        # Shopify's `name` is the display form, e.g. "#1001"
        order_id = _passthrough(order.get("name"), "").lstrip("#").strip()
    return _sanitize_field(order_id) or UNKNOWN_ORDER_ID


def _customer_name(order: dict[str, Any]) -> str:
    customer = order.get("customer")
    if not isinstance(customer, dict):
        return GUEST_CUSTOMER
    first = _sanitize_field(customer.get("first_name"))
    last = _sanitize_field(customer.get("last_name"))
    if not first or not last:
        return GUEST_CUSTOMER
    return f"{first} {last}"


def _parse_timestamp(value: Any) -> datetime | DateMarker:
    if not isinstance(value, str) or not value.strip():
        return UNPARSABLE
    try:
        parsed = datetime.fromisoformat(value.strip())
        # Naive timestamps are taken as UTC
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        logger.debug("Unparsable order timestamp: %r", value)
        return UNPARSABLE


def _coerce_quantity(value: Any) -> int:
    try:
        quantity = int(value)
    except (TypeError, ValueError, OverflowError):
        try:
            quantity = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return 1
    return quantity if quantity >= 1 else 1


def _line_items(order: dict[str, Any]) -> tuple[LineItem, ...]:
    raw_items = order.get("line_items")
    if not isinstance(raw_items, list):
        return ()
    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        items.append(
            LineItem(
                title=_sanitize_field(raw.get("title")) or UNTITLED_ITEM,
                quantity=_coerce_quantity(raw.get("quantity")),
                unit_price=_passthrough(raw.get("price"), DEFAULT_AMOUNT),
            )
        )
    return tuple(items)


def normalize_order(order: Any) -> OrderNotice:
    """Build an OrderNotice from a raw order payload. Never raises."""
    if not isinstance(order, dict):
        order = {}

    return OrderNotice(
        order_id=_order_id(order),
        customer_name=_customer_name(order),
        total=Money(
            amount=_passthrough(order.get("total_price"), DEFAULT_AMOUNT),
            currency=_passthrough(order.get("currency"), DEFAULT_CURRENCY),
        ),
        created_at=_parse_timestamp(order.get("created_at")),
        items=_line_items(order),
    )
