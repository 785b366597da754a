"""Canonical order notice value objects."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class DateMarker(str, Enum):
    """Stand-in for an order timestamp that could not be parsed."""
    UNPARSABLE = "unparsable"


UNPARSABLE = DateMarker.UNPARSABLE


@dataclass(frozen=True)
class Money:
    """Amount and currency exactly as the upstream payload gave them."""
    amount: str
    currency: str


@dataclass(frozen=True)
class LineItem:
    title: str
    quantity: int
    unit_price: str


@dataclass(frozen=True)
class OrderNotice:
    """Fully populated order summary; missing upstream fields are defaulted."""
    order_id: str
    customer_name: str
    total: Money
    created_at: datetime | DateMarker
    items: tuple[LineItem, ...] = field(default_factory=tuple)

    @property
    def has_valid_date(self) -> bool:
        return isinstance(self.created_at, datetime)
