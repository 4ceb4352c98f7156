# Overview: Service-layer operations for device commands; queueing, delivery, acknowledgement and device registry.

"""
Command Dispatcher

WHY: Billing must never fail because a light controller is unplugged.
Commands are recorded as intent (PENDING) and handed out when the device
next polls.

DELIVERY POLICY:
- One command per poll, most recently created PENDING first. An older
  un-pulled command can be starved by newer ones; latest intent wins.
- PENDING -> SENT on pull; SENT -> ACK / FAILED on the device's own ack.
- Nothing is re-queued automatically. A lost SENT command is recovered by
  device-side retry or by a fresh command from a later action.

TARGET RESOLUTION (per table):
1. device bound to the table (iot_device_id)
2. configured shared gateway (IOT_GATEWAY_DEVICE_ID)
3. first registered active device
"""

from __future__ import annotations

import uuid
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import IotCommand, IotDevice, Table
from ..models.iot import (
    COMMAND_ACK,
    COMMAND_FAILED,
    COMMAND_PENDING,
    COMMAND_SENT,
    COMMAND_TYPES,
    DEFAULT_LIVENESS_SECONDS,
)
from ..validation import ConflictError, NotFoundError, StateError, ValidationError
from .device_auth_service import generate_device_token, hash_device_token
from cuehall.time_utils import to_utc_z, utcnow


def _liveness_seconds() -> int:
    return int(current_app.config.get("IOT_DEVICE_LIVENESS_SECONDS", DEFAULT_LIVENESS_SECONDS))


def _gateway_device() -> IotDevice | None:
    gateway_id = current_app.config.get("IOT_GATEWAY_DEVICE_ID")
    if not gateway_id:
        return None
    try:
        device = db.session.get(IotDevice, int(gateway_id))
    except (TypeError, ValueError):
        current_app.logger.warning("IOT_GATEWAY_DEVICE_ID %r is not a device id", gateway_id)
        return None
    if device and device.is_active:
        return device
    return None


def resolve_target_device(table: Table) -> IotDevice | None:
    """Dedicated device, then shared gateway, then first registered device."""
    if table.iot_device_id:
        device = db.session.get(IotDevice, table.iot_device_id)
        if device and device.is_active:
            return device

    gateway = _gateway_device()
    if gateway:
        return gateway

    return db.session.query(IotDevice).filter_by(is_active=True).order_by(IotDevice.id).first()


def send_command(table_id: int, command_type: str) -> IotCommand | None:
    """
    Queue a PENDING command for whichever device answers for the table.

    Returns None (and logs) when no device resolves.
    """
    if command_type not in COMMAND_TYPES:
        raise ValidationError(f"Unknown command type: {command_type}")

    table = db.session.get(Table, table_id)
    if not table:
        raise NotFoundError("Table not found")

    device = resolve_target_device(table)
    if device is None:
        current_app.logger.warning(
            "No IoT device resolves for table %s; %s not queued", table_id, command_type
        )
        return None

    command = IotCommand(
        device_id=device.id,
        command=command_type,
        nonce=str(uuid.uuid4()),
        status=COMMAND_PENDING,
        payload={
            "tableId": table.id,
            "tableName": table.name,
            "relayChannel": table.relay_channel,
            "gpioPin": table.gpio_pin,
        },
        created_at=utcnow(),
    )
    db.session.add(command)
    db.session.commit()

    if not device.online_at(liveness_seconds=_liveness_seconds()):
        current_app.logger.warning(
            "IoT device %s appears offline, command %s queued", device.id, command_type
        )

    return command


def _touch(device: IotDevice, now: datetime) -> None:
    device.last_seen = now
    device.is_online = True


def pull_command(device: IotDevice, *, now: datetime | None = None) -> IotCommand | None:
    """Hand out the newest PENDING command (if any) and mark it SENT."""
    now = now or utcnow()

    command = db.session.query(IotCommand).filter_by(
        device_id=device.id,
        status=COMMAND_PENDING,
    ).order_by(IotCommand.created_at.desc(), IotCommand.id.desc()).first()

    if command is not None:
        command.status = COMMAND_SENT
        command.sent_at = now

    _touch(device, now)
    db.session.commit()

    return command


def ack_command(
    device: IotDevice,
    command_id,
    success: bool,
    *,
    now: datetime | None = None,
) -> IotCommand:
    """Move a SENT command owned by this device to ACK or FAILED."""
    try:
        command_pk = int(command_id)
    except (TypeError, ValueError):
        raise ValidationError("commandId must be an integer")

    command = db.session.get(IotCommand, command_pk)
    if not command or command.device_id != device.id:
        raise NotFoundError("Command not found")

    if command.status != COMMAND_SENT:
        raise StateError(f"Command is {command.status}, expected {COMMAND_SENT}")

    now = now or utcnow()
    command.status = COMMAND_ACK if success else COMMAND_FAILED
    command.acked_at = now
    _touch(device, now)
    db.session.commit()

    return command


def heartbeat(device: IotDevice, signal_strength=None, *, now: datetime | None = None) -> IotDevice:
    if signal_strength is not None:
        if isinstance(signal_strength, bool) or not isinstance(signal_strength, (int, float)):
            raise ValidationError("signalStrength must be a number")
        signal_strength = int(signal_strength)

    _touch(device, now or utcnow())
    device.signal_strength = signal_strength
    db.session.commit()
    return device


def device_config(device: IotDevice) -> dict:
    """
    Relay map the device should drive.

    The configured gateway also answers for every active table that has no
    dedicated device.
    """
    query = db.session.query(Table).filter(Table.is_active.is_(True))
    gateway = _gateway_device()
    if gateway is not None and gateway.id == device.id:
        query = query.filter(db.or_(Table.iot_device_id.is_(None), Table.iot_device_id == device.id))
    else:
        query = query.filter(Table.iot_device_id == device.id)

    tables = query.order_by(Table.id).all()
    return {
        "deviceId": device.id,
        "tables": [
            {
                "tableId": t.id,
                "tableName": t.name,
                "relayChannel": t.relay_channel,
                "gpioPin": t.gpio_pin,
                "status": t.status,
            }
            for t in tables
        ],
    }


# =============================================================================
# DEVICE REGISTRY
# =============================================================================

def register_device(name: str) -> tuple[IotDevice, str]:
    """
    Register a controller. Returns (device, plaintext_token).

    The token is shown once; only its hash is stored.
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")

    if db.session.query(IotDevice).filter_by(name=name).first():
        raise ConflictError("Device name already in use")

    token = generate_device_token()
    device = IotDevice(name=name, device_token_hash=hash_device_token(token), is_online=False)
    db.session.add(device)
    db.session.commit()

    return device, token


def rotate_device_token(device_id: int) -> tuple[IotDevice, str]:
    device = db.session.get(IotDevice, device_id)
    if not device:
        raise NotFoundError("Device not found")

    token = generate_device_token()
    device.device_token_hash = hash_device_token(token)
    db.session.commit()

    return device, token


def list_devices() -> list[IotDevice]:
    return db.session.query(IotDevice).order_by(IotDevice.id).all()


def check_connection(device_id: int) -> dict:
    device = db.session.get(IotDevice, device_id)
    if not device:
        raise NotFoundError("Device not found")

    online = device.online_at(liveness_seconds=_liveness_seconds())
    return {
        "device_id": device.id,
        "online": online,
        "last_seen": to_utc_z(device.last_seen),
        "signal_strength": device.signal_strength,
        "message": "Device connected" if online else "Device offline or not sending heartbeats",
    }
