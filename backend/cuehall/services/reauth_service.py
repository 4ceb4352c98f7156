# Overview: Owner re-authentication grants; short-lived, single-use proof of a fresh PIN challenge.

"""
Re-auth Grant Service

WHY: Starting an OWNER_LOCK session gives a table away for free. The owner
must prove presence again (PIN or password) right before doing it, and the
resulting proof can be spent exactly once.

- Grant tokens are 32 random bytes, stored SHA-256 hashed (see session_service)
- Grants expire after REAUTH_TTL_SECONDS
- consume_grant marks consumed_at with a conditional update, so two requests
  presenting the same token cannot both succeed
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import ReAuthGrant, User
from ..validation import AuthenticationError, AuthorizationError
from . import auth_service
from .session_service import generate_token, hash_token
from cuehall.time_utils import utcnow


DEFAULT_TTL_SECONDS = 300


def issue_grant(
    user: User,
    *,
    pin: str | None = None,
    password: str | None = None,
    purpose: str = "billing_start",
    now: datetime | None = None,
) -> tuple[ReAuthGrant, str]:
    """
    Verify the owner's PIN (preferred) or password and issue a grant.

    Returns (grant_record, plaintext_token).
    """
    if not user.is_owner:
        raise AuthorizationError("Re-auth is only required for the OWNER role")

    if pin and user.pin_hash:
        valid = auth_service.verify_pin(pin, user.pin_hash)
    elif password:
        valid = auth_service.verify_password(password, user.password_hash)
    else:
        valid = False

    if not valid:
        current_app.logger.warning("Re-auth challenge failed for user %s (%s)", user.id, purpose)
        raise AuthenticationError("Invalid PIN/password")

    now = now or utcnow()
    ttl = current_app.config.get("REAUTH_TTL_SECONDS", DEFAULT_TTL_SECONDS)
    plaintext = generate_token()

    grant = ReAuthGrant(
        user_id=user.id,
        token_hash=hash_token(plaintext),
        purpose=purpose,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl),
    )
    db.session.add(grant)
    db.session.commit()

    return grant, plaintext


def consume_grant(
    user_id: int,
    token: str | None,
    *,
    purpose: str = "billing_start",
    now: datetime | None = None,
) -> ReAuthGrant:
    """
    Spend a grant. Does not commit; the caller's transaction does.

    Raises AuthorizationError if the token is missing, unknown, belongs to
    another user, has expired, or was already used.
    """
    if not token:
        raise AuthorizationError("OWNER must provide a re-auth token to start billing")

    now = now or utcnow()
    grant = db.session.query(ReAuthGrant).filter_by(token_hash=hash_token(token)).first()

    if not grant or grant.user_id != user_id or grant.purpose != purpose:
        raise AuthorizationError("Invalid re-auth token")
    if grant.expires_at < now:
        raise AuthorizationError("Re-auth token expired")

    claimed = db.session.query(ReAuthGrant).filter(
        ReAuthGrant.id == grant.id,
        ReAuthGrant.consumed_at.is_(None),
    ).update({"consumed_at": now}, synchronize_session="fetch")

    if claimed != 1:
        raise AuthorizationError("Re-auth token already used")

    return grant
