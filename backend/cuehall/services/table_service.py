# Overview: Table administration; creation, wiring updates and soft delete.

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db, test_timers
from ..models import BillingSession, IotDevice, Table
from ..models.billing import SESSION_ACTIVE, SESSION_COMPLETED
from ..models.tables import TABLE_AVAILABLE, TABLE_MAINTENANCE, WIRING_FIELDS
from ..validation import (
    ConflictError,
    ModelValidationPolicy,
    NotFoundError,
    StateError,
    ValidationError,
    enforce_rules_table,
    validate_payload,
)


TABLE_POLICY = ModelValidationPolicy(
    writable_fields={"name", "description", "hourly_rate", "iot_device_id", "relay_channel", "gpio_pin"},
    required_on_create={"name", "hourly_rate"},
)


def get_table(table_id: int) -> Table:
    table = db.session.get(Table, table_id)
    if not table:
        raise NotFoundError("Table not found")
    return table


def list_tables(include_inactive: bool = False) -> list[Table]:
    query = db.session.query(Table)
    if not include_inactive:
        query = query.filter(Table.is_active.is_(True))
    return query.order_by(Table.name.asc()).all()


def active_session_for(table_id: int) -> BillingSession | None:
    return db.session.query(BillingSession).filter_by(
        table_id=table_id,
        status=SESSION_ACTIVE,
    ).first()


def has_unresolved_billing(table_id: int) -> bool:
    """ACTIVE session, or a COMPLETED one checkout has not settled yet."""
    if active_session_for(table_id) is not None:
        return True
    return db.session.query(BillingSession.id).filter(
        BillingSession.table_id == table_id,
        BillingSession.status == SESSION_COMPLETED,
        BillingSession.settled_at.is_(None),
    ).first() is not None


def _check_device(device_id) -> None:
    if device_id is None:
        return
    device = db.session.get(IotDevice, device_id)
    if not device or not device.is_active:
        raise ValidationError("iot_device_id does not reference an active device")


def _check_wiring_unique(table_id: int | None, device_id, relay_channel, gpio_pin) -> None:
    """Relay channel and GPIO pin are each unique per device (gateway included)."""
    base = db.session.query(Table).filter(
        Table.is_active.is_(True),
        Table.iot_device_id.is_(None) if device_id is None else Table.iot_device_id == device_id,
    )
    if table_id is not None:
        base = base.filter(Table.id != table_id)

    if relay_channel is not None and base.filter(Table.relay_channel == relay_channel).first():
        raise ConflictError(f"Relay channel {relay_channel} is already assigned")
    if gpio_pin is not None and base.filter(Table.gpio_pin == gpio_pin).first():
        raise ConflictError(f"GPIO pin {gpio_pin} is already assigned")


def _commit_table(message: str) -> None:
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(message)


def create_table(payload: dict) -> Table:
    patch = validate_payload(model=Table, payload=payload, policy=TABLE_POLICY, partial=False)
    enforce_rules_table(patch)
    _check_device(patch.get("iot_device_id"))

    if db.session.query(Table).filter_by(name=patch["name"]).first():
        raise ConflictError("Table name already exists")
    _check_wiring_unique(None, patch.get("iot_device_id"), patch.get("relay_channel"), patch.get("gpio_pin"))

    table = Table(status=TABLE_AVAILABLE, is_active=True, **patch)
    db.session.add(table)
    _commit_table("Table name or wiring already in use")

    current_app.logger.info("Created table %s (%s)", table.id, table.name)
    return table


def update_table(table_id: int, payload: dict) -> Table:
    """
    Patch a table.

    Wiring / identity fields may not change while the table has an ACTIVE
    session, a running light test, or unsettled billing history.
    """
    table = get_table(table_id)
    patch = validate_payload(model=Table, payload=payload, policy=TABLE_POLICY, partial=True)
    enforce_rules_table(patch)

    changed_wiring = [f for f in WIRING_FIELDS if f in patch and patch[f] != getattr(table, f)]
    if changed_wiring:
        if table.status == TABLE_MAINTENANCE:
            raise StateError("Cannot rewire a table while a light test is running")
        if has_unresolved_billing(table.id):
            raise StateError(
                f"Cannot change {', '.join(changed_wiring)} while the table has unresolved billing"
            )

    if "name" in patch and patch["name"] != table.name:
        if db.session.query(Table).filter(Table.name == patch["name"], Table.id != table.id).first():
            raise ConflictError("Table name already exists")

    if "iot_device_id" in patch:
        _check_device(patch["iot_device_id"])

    _check_wiring_unique(
        table.id,
        patch.get("iot_device_id", table.iot_device_id),
        patch.get("relay_channel", table.relay_channel),
        patch.get("gpio_pin", table.gpio_pin),
    )

    for k, v in patch.items():
        setattr(table, k, v)
    _commit_table("Table name or wiring already in use")

    return table


def deactivate_table(table_id: int) -> Table:
    """Soft delete. Cancels any pending light-test revert."""
    table = get_table(table_id)
    if active_session_for(table.id) is not None:
        raise StateError("Cannot delete a table with an active session")

    test_timers.cancel(table.id)
    table.is_active = False
    if table.status == TABLE_MAINTENANCE:
        table.status = TABLE_AVAILABLE
    db.session.commit()

    current_app.logger.info("Deactivated table %s", table.id)
    return table
