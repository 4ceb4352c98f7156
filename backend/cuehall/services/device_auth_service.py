# Overview: Device request authentication; token, freshness window, nonce replay and HMAC checks.

"""
Device Authenticator

Every device-facing request carries:
    X-Device-Id, X-Device-Token, X-Timestamp (unix seconds), X-Nonce, X-Signature

signature = hex(HMAC-SHA256(IOT_HMAC_SECRET, "<deviceId>:<timestamp>:<nonce>:<body>"))

Checks run in this order and stop at the first failure:
1. device exists and is active
2. presented token matches the stored SHA-256 hash
3. |now - timestamp| <= IOT_NONCE_WINDOW_SECONDS
4. nonce not seen before (ReplayError)
5. signature matches (constant-time)
6. nonce recorded

A nonce is kept until its own timestamp can no longer pass step 3, so an
accepted (nonce, signature) pair can never be replayed, even after a purge.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from flask import current_app

from ..extensions import db, nonce_store
from ..models import IotDevice
from ..validation import AuthenticationError, ReplayError, ValidationError
from .session_service import hash_token
from cuehall.time_utils import unix_now


DEFAULT_WINDOW_SECONDS = 300


def generate_device_token() -> str:
    """Plaintext device token, shown once at registration/rotation."""
    return f"iot-{secrets.token_hex(16)}"


def hash_device_token(token: str) -> str:
    return hash_token(token)


def _window_seconds() -> int:
    return int(current_app.config.get("IOT_NONCE_WINDOW_SECONDS", DEFAULT_WINDOW_SECONDS))


def _hmac_secret() -> str:
    secret = current_app.config.get("IOT_HMAC_SECRET")
    if not secret:
        raise RuntimeError("IOT_HMAC_SECRET not configured")
    return secret


def compute_signature(secret: str, device_id, timestamp, nonce: str, body: str | None = None) -> str:
    message = f"{device_id}:{timestamp}:{nonce}:{body or ''}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def _load_device(device_id) -> IotDevice:
    try:
        device_pk = int(device_id)
    except (TypeError, ValueError):
        raise AuthenticationError("Device not found")

    device = db.session.get(IotDevice, device_pk)
    if not device or not device.is_active:
        raise AuthenticationError("Device not found")
    return device


def verify_device_request(
    device_id,
    token: str | None,
    timestamp: str | None,
    nonce: str | None,
    signature: str | None,
    body: str | None = None,
    *,
    now: int | None = None,
) -> IotDevice:
    """
    Authenticate one device request and burn its nonce.

    Returns the IotDevice on success. Raises AuthenticationError,
    ReplayError or ValidationError.
    """
    if not all([device_id, token, timestamp, nonce, signature]):
        raise AuthenticationError("Missing device authentication headers")

    device = _load_device(device_id)

    presented_hash = hash_device_token(token)
    if not hmac.compare_digest(presented_hash, device.device_token_hash):
        raise AuthenticationError("Invalid device token")

    try:
        ts = int(str(timestamp).strip())
    except ValueError:
        raise ValidationError("Invalid timestamp")

    now = unix_now() if now is None else now
    window = _window_seconds()
    if abs(now - ts) > window:
        raise AuthenticationError("Request timestamp out of window")

    if nonce_store.get(nonce) is not None:
        raise ReplayError("Nonce already used (replay detected)")

    expected = compute_signature(_hmac_secret(), device_id, timestamp, nonce, body)
    if not hmac.compare_digest(expected, str(signature).lower()):
        raise AuthenticationError("Invalid HMAC signature")

    # Keep the nonce until the request's own timestamp falls out of the window
    if not nonce_store.add_if_absent(nonce, max(now, ts) + window):
        raise ReplayError("Nonce already used (replay detected)")

    return device


def purge_nonces(*, now: int | None = None) -> int:
    """Drop nonces whose timestamp can no longer pass the freshness check."""
    now = unix_now() if now is None else now
    purged = nonce_store.sweep(now)
    if purged:
        current_app.logger.debug("Purged %s expired device nonces", purged)
    return purged
