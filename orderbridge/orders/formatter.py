"""Message formatter — OrderNotice to WhatsApp message text.

Output is deterministic: the same notice always renders to the same
bytes. Amounts and currencies are printed verbatim, never reformatted.
"""

from __future__ import annotations

from orderbridge.orders.models import LineItem, OrderNotice

HEADER = "🛍️ *NEW ORDER RECEIVED!*"
FOOTER = "Shopify Notification System"
SEPARATOR = "---"
UNKNOWN_DATE = "Unknown date"
TEST_MESSAGE = "🧪 Test message from Shopify notification system"


def _format_date(notice: OrderNotice) -> str:
    if not notice.has_valid_date:
        return UNKNOWN_DATE
    return notice.created_at.strftime("%Y-%m-%d %H:%M:%S UTC")


def _format_item(item: LineItem, currency: str) -> str:
    return f"• {item.title} (Qty: {item.quantity}) - {currency} {item.unit_price}"


def format_order_message(notice: OrderNotice) -> str:
    """Render the notification text for an order."""
    currency = notice.total.currency
    lines = [
        HEADER,
        "",
        f"📝 Order: #{notice.order_id}",
        f"👤 Customer: {notice.customer_name}",
        f"💰 Total: {currency} {notice.total.amount}",
        f"📅 Date: {_format_date(notice)}",
        "",
        "*Items:*",
    ]
    lines.extend(_format_item(item, currency) for item in notice.items)
    lines.extend(["", SEPARATOR, FOOTER])
    return "\n".join(lines)


def format_test_message() -> str:
    return TEST_MESSAGE
