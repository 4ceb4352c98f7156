from __future__ import annotations

from ..extensions import db
from cuehall.time_utils import to_utc_z


ROLE_OWNER = "OWNER"
ROLE_MANAGER = "MANAGER"
ROLE_CASHIER = "CASHIER"
ROLE_DEVELOPER = "DEVELOPER"
ROLES = (ROLE_OWNER, ROLE_MANAGER, ROLE_CASHIER, ROLE_DEVELOPER)


class User(db.Model):
    """
    Staff accounts for authentication and attribution.

    WHY: Every billing action must be attributable. No shared logins.
    OWNER is the elevated role: it may start cost-free OWNER_LOCK sessions
    after a fresh PIN/password challenge.
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False, unique=True, index=True)
    name = db.Column(db.String(128), nullable=True)

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    # Optional 6-digit PIN used for the owner re-auth challenge (bcrypt hashed)
    pin_hash = db.Column(db.String(255), nullable=True)

    role = db.Column(db.String(16), nullable=False, default=ROLE_CASHIER, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_owner(self) -> bool:
        return self.role == ROLE_OWNER

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at) if self.last_login_at else None,
        }


class SessionToken(db.Model):
    """
    Bearer session for the staff-facing API.

    Plaintext token goes to the client once; only the SHA-256 hash is stored.
    """
    __tablename__ = "session_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)

    is_revoked = db.Column(db.Boolean, nullable=False, default=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    revoked_reason = db.Column(db.String(128), nullable=True)

    user_agent = db.Column(db.String(255), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
        }


class ReAuthGrant(db.Model):
    """
    Short-lived, single-use proof that an owner just passed a PIN/password
    challenge. Required to start an OWNER_LOCK session.
    """
    __tablename__ = "reauth_grants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    purpose = db.Column(db.String(32), nullable=False, default="billing_start")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    consumed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", backref=db.backref("reauth_grants", lazy=True))
