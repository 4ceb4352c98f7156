# Overview: Draft food/beverage orders created from package menu lines.

"""
Package Orders

WHY: A package that bundles drinks or snacks must put those items on the
table's tab and take them out of stock at the moment the package is used.

- Order numbers are ORD-<UTC timestamp>-<random suffix>. Collisions are
  resolved by retrying inside a savepoint, never by a process-wide counter.
- Stock is decremented only for items with track_stock, through a conditional
  UPDATE that refuses to go below zero.
- Nothing here commits; it rides on the billing transaction.
"""

from __future__ import annotations

import secrets
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import BillingPackage, BillingSession, MenuItem, Order, OrderItem
from ..models.orders import ORDER_DRAFT
from ..validation import ConflictError
from .package_service import menu_lines
from cuehall.time_utils import utcnow


ORDER_NUMBER_ATTEMPTS = 5


def generate_order_number(now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"ORD-{now:%Y%m%d%H%M%S}-{secrets.token_hex(2).upper()}"


def _decrement_stock(menu_item: MenuItem, quantity: int) -> None:
    if not menu_item.track_stock:
        return

    updated = db.session.query(MenuItem).filter(
        MenuItem.id == menu_item.id,
        MenuItem.stock_quantity >= quantity,
    ).update(
        {"stock_quantity": MenuItem.stock_quantity - quantity},
        synchronize_session="fetch",
    )
    if updated != 1:
        raise ConflictError(f"Insufficient stock for {menu_item.name}")


def create_package_order(
    session: BillingSession,
    package: BillingPackage,
    actor_id: int,
) -> Order | None:
    """Draft order for the package's menu lines, or None if it has none."""
    lines = menu_lines(package)
    if not lines:
        return None

    for line in lines:
        _decrement_stock(line.menu_item, line.quantity)

    for attempt in range(ORDER_NUMBER_ATTEMPTS):
        order = Order(
            order_number=generate_order_number(),
            billing_session_id=session.id,
            status=ORDER_DRAFT,
            created_by_id=actor_id,
        )
        total = Decimal("0")
        for line in lines:
            subtotal = Decimal(line.unit_price) * line.quantity
            total += subtotal
            order.items.append(OrderItem(
                menu_item_id=line.menu_item_id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                subtotal=subtotal,
            ))
        order.total_amount = total

        try:
            with db.session.begin_nested():
                db.session.add(order)
            return order
        except IntegrityError:
            if attempt >= ORDER_NUMBER_ATTEMPTS - 1:
                raise ConflictError("Could not allocate an order number")
