# Overview: Service-layer operations for billing packages.

from __future__ import annotations

import re
from decimal import Decimal

from ..extensions import db
from ..models import BillingPackage, BillingPackageItem, MenuItem
from ..models.billing import PACKAGE_ITEM_BILLING, PACKAGE_ITEM_MENU
from ..validation import ConflictError, NotFoundError, ValidationError, parse_amount, parse_positive_int


def get_usable_package(package_id) -> BillingPackage:
    """Active package that carries a billing duration."""
    package = db.session.get(BillingPackage, package_id)
    if not package:
        raise NotFoundError("Package not found")
    if not package.is_active:
        raise ValidationError("Package is not active")
    if not package.duration_minutes:
        raise ValidationError("Package has no billing duration")
    return package


def menu_lines(package: BillingPackage) -> list[BillingPackageItem]:
    return [item for item in package.items if item.item_type == PACKAGE_ITEM_MENU]


def list_active_packages() -> list[BillingPackage]:
    return db.session.query(BillingPackage).filter_by(is_active=True).order_by(BillingPackage.name).all()


def _validate_items(items: list[dict], duration_minutes: int | None) -> None:
    if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
        raise ValidationError("items must be a list of objects")
    if not items:
        raise ValidationError("A package needs at least one item")

    billing_items = [i for i in items if i.get("type") == PACKAGE_ITEM_BILLING]
    if len(billing_items) > 1:
        raise ValidationError("At most one BILLING item per package")
    if billing_items:
        if duration_minutes is None:
            raise ValidationError("duration_minutes is required when the package bills table time")
        if parse_positive_int(billing_items[0].get("quantity", 1), "quantity") != 1:
            raise ValidationError("BILLING item quantity must be 1")

    for item in items:
        item_type = item.get("type")
        if item_type not in (PACKAGE_ITEM_BILLING, PACKAGE_ITEM_MENU):
            raise ValidationError(f"Unknown package item type: {item_type}")
        if item_type == PACKAGE_ITEM_BILLING and item.get("menu_item_id"):
            raise ValidationError("BILLING items cannot reference a menu item")
        if item_type == PACKAGE_ITEM_MENU:
            if not item.get("menu_item_id"):
                raise ValidationError("MENU_ITEM lines need menu_item_id")
            parse_positive_int(item.get("quantity"), "quantity")
            menu = db.session.get(MenuItem, item["menu_item_id"])
            if not menu:
                raise ValidationError(f"Menu item {item['menu_item_id']} not found")
            if not menu.is_active:
                raise ValidationError(f"Menu item {menu.name} is not active")


def create_package(name: str, price, items: list[dict], duration_minutes: int | None = None) -> BillingPackage:
    normalized = re.sub(r"\s+", " ", (name or "").strip())
    if not normalized:
        raise ValidationError("Package name is required")
    if db.session.query(BillingPackage).filter_by(name=normalized).first():
        raise ConflictError("Package name already exists")

    if duration_minutes is not None:
        duration_minutes = parse_positive_int(duration_minutes, "duration_minutes")
    _validate_items(items, duration_minutes)

    package = BillingPackage(
        name=normalized,
        duration_minutes=duration_minutes,
        price=parse_amount(price, "price"),
        is_active=True,
    )
    for item in items:
        package.items.append(BillingPackageItem(
            item_type=item["type"],
            menu_item_id=item.get("menu_item_id"),
            quantity=parse_positive_int(item.get("quantity", 1), "quantity"),
            unit_price=parse_amount(item.get("unit_price", Decimal("0")), "unit_price"),
        ))

    db.session.add(package)
    db.session.commit()
    return package
