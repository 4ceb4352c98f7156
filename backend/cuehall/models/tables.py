from __future__ import annotations

from ..extensions import db
from cuehall.time_utils import to_utc_z


TABLE_AVAILABLE = "AVAILABLE"
TABLE_OCCUPIED = "OCCUPIED"
TABLE_MAINTENANCE = "MAINTENANCE"

# Fields that define which relay a table drives
WIRING_FIELDS = ("name", "iot_device_id", "relay_channel", "gpio_pin")


class Table(db.Model):
    """
    Physical billiard table.

    STATUS:
    - AVAILABLE: free to start a session or a light test
    - OCCUPIED: exactly one ACTIVE billing session exists
    - MAINTENANCE: a light test cycle is running

    Status flips go through conditional updates (see concurrency.transition_table_status)
    so two requests can never both claim the same table.
    """
    __tablename__ = "billiard_tables"
    __table_args__ = (
        db.UniqueConstraint("iot_device_id", "relay_channel", name="uq_tables_device_channel"),
        db.UniqueConstraint("iot_device_id", "gpio_pin", name="uq_tables_device_gpio"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False, unique=True)
    description = db.Column(db.String(255), nullable=True)

    hourly_rate = db.Column(db.Numeric(12, 2), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=TABLE_AVAILABLE, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # Device binding: dedicated device, or relay channel / GPIO pin on the gateway
    iot_device_id = db.Column(db.Integer, db.ForeignKey("iot_devices.id"), nullable=True, index=True)
    relay_channel = db.Column(db.Integer, nullable=True)
    gpio_pin = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    iot_device = db.relationship("IotDevice", backref=db.backref("tables", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "hourly_rate": str(self.hourly_rate),
            "status": self.status,
            "is_active": self.is_active,
            "iot_device_id": self.iot_device_id,
            "relay_channel": self.relay_channel,
            "gpio_pin": self.gpio_pin,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
