from __future__ import annotations

from datetime import datetime, timedelta

from ..extensions import db
from cuehall.time_utils import to_utc_z, utcnow


COMMAND_LIGHT_ON = "LIGHT_ON"
COMMAND_LIGHT_OFF = "LIGHT_OFF"
COMMAND_BLINK_3X = "BLINK_3X"
COMMAND_TYPES = (COMMAND_LIGHT_ON, COMMAND_LIGHT_OFF, COMMAND_BLINK_3X)

COMMAND_PENDING = "PENDING"
COMMAND_SENT = "SENT"
COMMAND_ACK = "ACK"
COMMAND_FAILED = "FAILED"

DEFAULT_LIVENESS_SECONDS = 300


class IotDevice(db.Model):
    """
    Relay controller that polls for commands.

    Either dedicated to one table or a shared gateway answering for many
    tables' relay channels. device_token_hash is SHA-256 of the private token
    issued at registration; the plaintext is never stored.
    """
    __tablename__ = "iot_devices"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False, unique=True)
    device_token_hash = db.Column(db.String(64), nullable=False)

    is_online = db.Column(db.Boolean, nullable=False, default=False)
    last_seen = db.Column(db.DateTime(timezone=True), nullable=True)
    signal_strength = db.Column(db.Integer, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def online_at(self, now: datetime | None = None, liveness_seconds: int = DEFAULT_LIVENESS_SECONDS) -> bool:
        """Online only if flagged AND seen within the liveness window."""
        if not self.is_online or self.last_seen is None:
            return False
        now = now or utcnow()
        return now - self.last_seen <= timedelta(seconds=liveness_seconds)

    def to_dict(self, liveness_seconds: int = DEFAULT_LIVENESS_SECONDS) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_online": self.is_online,
            "online": self.online_at(liveness_seconds=liveness_seconds),
            "last_seen": to_utc_z(self.last_seen),
            "signal_strength": self.signal_strength,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class IotCommand(db.Model):
    """
    One instruction queued for a device.

    LIFECYCLE (strictly forward, never re-queued):
    - PENDING: created by the dispatcher
    - SENT: handed to the device on a pull
    - ACK / FAILED: reported back by the same authenticated device
    """
    __tablename__ = "iot_commands"
    __table_args__ = (
        db.Index("ix_iot_commands_device_status_created", "device_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.Integer, db.ForeignKey("iot_devices.id"), nullable=False, index=True)
    command = db.Column(db.String(16), nullable=False)
    nonce = db.Column(db.String(36), nullable=False, unique=True)
    status = db.Column(db.String(16), nullable=False, default=COMMAND_PENDING, index=True)
    payload = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    acked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    device = db.relationship("IotDevice", backref=db.backref("commands", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "command": self.command,
            "nonce": self.nonce,
            "status": self.status,
            "payload": self.payload,
            "created_at": to_utc_z(self.created_at),
            "sent_at": to_utc_z(self.sent_at),
            "acked_at": to_utc_z(self.acked_at),
        }
