"""Translate print vendor job statuses into ``OrderStatus``."""

from __future__ import annotations

from typing import Dict, Optional

from .models import OrderStatus

DEFAULT_STATUS = OrderStatus.ORDERED

VENDOR_STATUS_MAP: Dict[str, OrderStatus] = {
    "CREATED": OrderStatus.ORDERED,
    "UNPAID": OrderStatus.ORDERED,
    "PAYMENT_IN_PROGRESS": OrderStatus.ORDERED,
    "ACCEPTED": OrderStatus.ORDERED,
    "PRODUCTION_READY": OrderStatus.PRINTING,
    "PRODUCTION_DELAYED": OrderStatus.PRINTING,
    "IN_PRODUCTION": OrderStatus.PRINTING,
    "PRINTING": OrderStatus.PRINTING,
    "SHIPPED": OrderStatus.SHIPPED,
    "DELIVERED": OrderStatus.DELIVERED,
    "CANCELED": OrderStatus.CANCELLED,
    "CANCELLED": OrderStatus.CANCELLED,
    "ERROR": OrderStatus.ERROR,
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.ERROR})

_PROGRESS = {
    OrderStatus.ORDERED: 0,
    OrderStatus.PRINTING: 1,
    OrderStatus.SHIPPED: 2,
    OrderStatus.DELIVERED: 3,
}


def map_vendor_status(vendor_status: Optional[str]) -> OrderStatus:
    """Unknown or missing statuses map to ``DEFAULT_STATUS`` instead of failing."""
    if not vendor_status:
        return DEFAULT_STATUS
    return VENDOR_STATUS_MAP.get(vendor_status.strip().upper(), DEFAULT_STATUS)


def advance_status(current: Optional[OrderStatus], new: OrderStatus) -> OrderStatus:
    """Return the status to keep when ``new`` arrives while at ``current``.

    Out-of-order callbacks never move an order backwards, and a terminal
    status is final.
    """
    if current is None:
        return new
    if current in TERMINAL_STATUSES:
        return current
    if new in (OrderStatus.CANCELLED, OrderStatus.ERROR):
        return new
    return new if _PROGRESS[new] >= _PROGRESS[current] else current
