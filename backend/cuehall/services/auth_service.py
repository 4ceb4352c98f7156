# Overview: Service-layer operations for staff auth; password/PIN hashing and user creation.

"""
Authentication Service

WHY: Every billing action must be attributable. Uses bcrypt for secure
password and PIN hashing and validates password strength.

SECURITY NOTES:
- Passwords and PINs hashed with bcrypt (cost factor 12)
- Passwords: minimum 8 characters, upper, lower, digit, special char
- PINs: exactly 6 digits, not all-same, not sequential
- Session tokens managed separately (see session_service.py)
"""

import bcrypt
import re
from ..extensions import db
from ..models import User
from ..models.auth import ROLES
from cuehall.time_utils import utcnow


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


class PinValidationError(Exception):
    """Raised when a PIN doesn't meet format requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Raises PasswordValidationError if requirements not met.
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def validate_pin(pin: str) -> None:
    if not isinstance(pin, str) or not pin.isdigit() or len(pin) != 6:
        raise PinValidationError("PIN must be exactly 6 digits")
    if len(set(pin)) == 1:
        raise PinValidationError("PIN cannot be the same digit repeated")
    if pin in "0123456789" or pin in "9876543210":
        raise PinValidationError("PIN cannot be sequential")


def _bcrypt_hash(secret: str) -> str:
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(secret.encode('utf-8'), salt).decode('utf-8')


def _bcrypt_check(secret: str, hashed: str | None) -> bool:
    if not secret or not hashed:
        return False
    try:
        return bcrypt.checkpw(secret.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        return False


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt with cost factor 12.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    return _bcrypt_hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe bcrypt verification."""
    return _bcrypt_check(password, password_hash)


def set_user_pin(user_id: int, pin: str) -> User:
    validate_pin(pin)
    user = db.session.get(User, user_id)
    if not user:
        raise ValueError("User not found")
    user.pin_hash = _bcrypt_hash(pin)
    db.session.commit()
    return user


def verify_pin(pin: str, pin_hash: str | None) -> bool:
    return _bcrypt_check(pin, pin_hash)


def create_user(username: str, password: str, role: str, name: str | None = None) -> User:
    """
    Create new user with bcrypt password hashing.

    Raises:
        ValueError: If role is unknown or username exists
        PasswordValidationError: If password doesn't meet requirements
    """
    role = (role or "").upper()
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")

    existing = db.session.query(User).filter_by(username=username).first()
    if existing:
        raise ValueError("Username already exists")

    user = User(
        username=username,
        name=name,
        password_hash=hash_password(password),
        role=role,
    )

    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """
    Authenticate user with username and password.

    Returns User if credentials valid, None otherwise.
    Updates last_login_at timestamp on successful authentication.
    """
    user = db.session.query(User).filter(
        User.username == username,
        User.is_active.is_(True),
    ).first()

    if not user:
        return None

    if verify_password(password, user.password_hash):
        user.last_login_at = utcnow()
        db.session.commit()
        return user

    return None
