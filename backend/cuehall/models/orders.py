from __future__ import annotations

from ..extensions import db
from cuehall.time_utils import to_utc_z, utcnow


ORDER_DRAFT = "DRAFT"


class MenuItem(db.Model):
    """
    Food/beverage item. Only the fields package orders need live here;
    menu CRUD is owned elsewhere.

    stock_quantity is only decremented when track_stock is set.
    """
    __tablename__ = "menu_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)
    track_stock = db.Column(db.Boolean, nullable=False, default=False)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": str(self.price),
            "track_stock": self.track_stock,
            "stock_quantity": self.stock_quantity,
            "is_active": self.is_active,
        }


class Order(db.Model):
    """Food/beverage order linked to a billing session (DRAFT until checkout)."""
    __tablename__ = "orders"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True)
    billing_session_id = db.Column(db.Integer, db.ForeignKey("billing_sessions.id"), nullable=True, index=True)
    status = db.Column(db.String(16), nullable=False, default=ORDER_DRAFT, index=True)
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    created_by_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    items = db.relationship("OrderItem", backref="order", lazy=True, cascade="all, delete-orphan")
    billing_session = db.relationship("BillingSession", backref=db.backref("orders", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "billing_session_id": self.billing_session_id,
            "status": self.status,
            "total_amount": str(self.total_amount),
            "items": [item.to_dict() for item in self.items],
            "created_at": to_utc_z(self.created_at),
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_items.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "menu_item_id": self.menu_item_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "subtotal": str(self.subtotal),
        }
