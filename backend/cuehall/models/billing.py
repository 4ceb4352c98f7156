from __future__ import annotations

from datetime import datetime

from ..extensions import db
from cuehall.time_utils import to_utc_z, utcnow


RATE_HOURLY = "HOURLY"
RATE_MANUAL = "MANUAL"
RATE_FLEXIBLE = "FLEXIBLE"
RATE_OWNER_LOCK = "OWNER_LOCK"
RATE_PACKAGE = "PACKAGE"
RATE_TYPES = (RATE_HOURLY, RATE_MANUAL, RATE_FLEXIBLE, RATE_OWNER_LOCK, RATE_PACKAGE)

# Open-ended sessions: no duration-based expiry, no extend
OPEN_ENDED_RATE_TYPES = (RATE_OWNER_LOCK, RATE_FLEXIBLE)

SESSION_ACTIVE = "ACTIVE"
SESSION_COMPLETED = "COMPLETED"

# End time sentinel for open-ended sessions
FAR_FUTURE = datetime(9999, 12, 31, 23, 59, 59)

EVENT_CREATE = "CREATE"
EVENT_EXTEND = "EXTEND"
EVENT_STOP = "STOP"
EVENT_AUTO_STOP = "AUTO_STOP"
EVENT_MOVE = "MOVE"

PACKAGE_ITEM_BILLING = "BILLING"
PACKAGE_ITEM_MENU = "MENU_ITEM"


class BillingSession(db.Model):
    """
    One metered occupancy of a table.

    LIFECYCLE:
    - ACTIVE: table is OCCUPIED, amount may only grow (extend)
    - COMPLETED: stopped manually or by the expiry sweep (terminal)

    INVARIANTS:
    - at most one ACTIVE session per table (partial unique index)
    - total_amount equals the sum of amount_delta over CREATE/EXTEND/STOP events
    - end_time >= start_time; OWNER_LOCK and FLEXIBLE use FAR_FUTURE

    version_id guards the ACTIVE -> COMPLETED flip against a concurrent
    manual stop and sweep.
    """
    __tablename__ = "billing_sessions"
    __table_args__ = (
        db.Index(
            "uq_billing_sessions_active_table",
            "table_id",
            unique=True,
            sqlite_where=db.text("status = 'ACTIVE'"),
            postgresql_where=db.text("status = 'ACTIVE'"),
        ),
        db.Index("ix_billing_sessions_status_end", "status", "end_time"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    table_id = db.Column(db.Integer, db.ForeignKey("billiard_tables.id"), nullable=False, index=True)

    start_time = db.Column(db.DateTime(timezone=True), nullable=False)
    end_time = db.Column(db.DateTime(timezone=True), nullable=False)
    actual_end_time = db.Column(db.DateTime(timezone=True), nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=False, default=0)

    rate_type = db.Column(db.String(16), nullable=False, default=RATE_HOURLY)
    rate_per_hour = db.Column(db.Numeric(12, 2), nullable=False)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=SESSION_ACTIVE, index=True)
    blink_command_sent = db.Column(db.Boolean, nullable=False, default=False)
    auto_completed = db.Column(db.Boolean, nullable=False, default=False)

    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    approved_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    package_id = db.Column(db.Integer, db.ForeignKey("billing_packages.id"), nullable=True)

    # Set by checkout once the session has been paid
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    table = db.relationship("Table", backref=db.backref("billing_sessions", lazy="dynamic"))
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    approved_by = db.relationship("User", foreign_keys=[approved_by_id])
    package = db.relationship("BillingPackage")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open_ended(self) -> bool:
        return self.rate_type in OPEN_ENDED_RATE_TYPES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "table_id": self.table_id,
            "start_time": to_utc_z(self.start_time),
            "end_time": to_utc_z(self.end_time),
            "actual_end_time": to_utc_z(self.actual_end_time),
            "duration_minutes": self.duration_minutes,
            "rate_type": self.rate_type,
            "rate_per_hour": str(self.rate_per_hour),
            "total_amount": str(self.total_amount),
            "status": self.status,
            "blink_command_sent": self.blink_command_sent,
            "auto_completed": self.auto_completed,
            "created_by_id": self.created_by_id,
            "approved_by_id": self.approved_by_id,
            "package_id": self.package_id,
            "settled_at": to_utc_z(self.settled_at),
            "version_id": self.version_id,
        }


class BillingSessionEvent(db.Model):
    """
    Append-only history of a session's money and time changes.

    WHY: total_amount must be reproducible by replaying CREATE + EXTEND
    (+ FLEXIBLE STOP) deltas; the extension breakdown is read from here.
    """
    __tablename__ = "billing_session_events"
    __table_args__ = (
        db.Index("ix_billing_events_session_occurred", "billing_session_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    billing_session_id = db.Column(db.Integer, db.ForeignKey("billing_sessions.id"), nullable=False, index=True)
    event_type = db.Column(db.String(16), nullable=False, index=True)

    amount_delta = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    minutes_delta = db.Column(db.Integer, nullable=False, default=0)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    package_id = db.Column(db.Integer, db.ForeignKey("billing_packages.id"), nullable=True)
    from_table_id = db.Column(db.Integer, nullable=True)
    to_table_id = db.Column(db.Integer, nullable=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    billing_session = db.relationship(
        "BillingSession",
        backref=db.backref("events", lazy=True, order_by="BillingSessionEvent.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "billing_session_id": self.billing_session_id,
            "event_type": self.event_type,
            "amount_delta": str(self.amount_delta),
            "minutes_delta": self.minutes_delta,
            "actor_user_id": self.actor_user_id,
            "package_id": self.package_id,
            "from_table_id": self.from_table_id,
            "to_table_id": self.to_table_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class BillingPackage(db.Model):
    """
    Bundled offer: fixed billing duration and/or menu items at one price.

    A package with a BILLING item must carry duration_minutes.
    """
    __tablename__ = "billing_packages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    duration_minutes = db.Column(db.Integer, nullable=True)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    items = db.relationship(
        "BillingPackageItem",
        backref="package",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="BillingPackageItem.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "duration_minutes": self.duration_minutes,
            "price": str(self.price),
            "is_active": self.is_active,
            "items": [item.to_dict() for item in self.items],
        }


class BillingPackageItem(db.Model):
    __tablename__ = "billing_package_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    package_id = db.Column(db.Integer, db.ForeignKey("billing_packages.id"), nullable=False, index=True)
    item_type = db.Column(db.String(16), nullable=False)  # BILLING, MENU_ITEM
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id"), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    menu_item = db.relationship("MenuItem")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "item_type": self.item_type,
            "menu_item_id": self.menu_item_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
        }


class PackageUsage(db.Model):
    """Record of a package applied to a session (at start or as an extension)."""
    __tablename__ = "package_usages"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    package_id = db.Column(db.Integer, db.ForeignKey("billing_packages.id"), nullable=False, index=True)
    billing_session_id = db.Column(db.Integer, db.ForeignKey("billing_sessions.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    usage_type = db.Column(db.String(16), nullable=False)  # START, EXTEND
    price = db.Column(db.Numeric(12, 2), nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=True)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    package = db.relationship("BillingPackage")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "package_id": self.package_id,
            "billing_session_id": self.billing_session_id,
            "order_id": self.order_id,
            "usage_type": self.usage_type,
            "price": str(self.price),
            "duration_minutes": self.duration_minutes,
            "created_at": to_utc_z(self.created_at),
        }
