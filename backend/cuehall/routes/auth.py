# Overview: Flask API routes for staff auth; login, logout, PIN setup and owner re-auth.

"""
Authentication API routes

- Bearer session tokens (see session_service.py)
- Owner re-authentication issues a short-lived, single-use grant that
  POST /api/billing/sessions consumes
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import auth_service, reauth_service, session_service
from ..services.auth_service import PinValidationError
from ..decorators import require_auth
from ..validation import DomainError


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/login")
def login_route():
    """
    Authenticate user and create session token.

    Token must be included in Authorization header for protected routes.
    """
    try:
        data = request.get_json(silent=True) or {}
        username = data.get("username")
        password = data.get("password")

        if not all([username, password]):
            return jsonify({"error": "username and password required"}), 400

        user = auth_service.authenticate(username, password)
        if not user:
            return jsonify({"error": "Invalid credentials"}), 401

        _, token = session_service.create_session(
            user_id=user.id,
            user_agent=request.headers.get("User-Agent"),
            ip_address=request.remote_addr,
        )

        return jsonify({"user": user.to_dict(), "token": token}), 200

    except Exception:
        current_app.logger.exception("Failed to log in")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/logout")
@require_auth
def logout_route():
    token = request.headers.get("Authorization", "").split(" ", 1)[1]
    session_service.revoke_session(token, reason="User logout")
    return jsonify({"message": "Logged out"}), 200


@auth_bp.get("/me")
@require_auth
def me_route():
    return jsonify({"user": g.current_user.to_dict()}), 200


@auth_bp.post("/set-pin")
@require_auth
def set_pin_route():
    """Set or replace the caller's 6-digit PIN."""
    try:
        data = request.get_json(silent=True) or {}
        pin = data.get("pin")
        if not pin:
            return jsonify({"error": "pin required"}), 400

        auth_service.set_user_pin(g.current_user.id, str(pin))
        return jsonify({"message": "PIN updated"}), 200

    except PinValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to set PIN")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/re-auth")
@require_auth
def reauth_route():
    """
    Owner step-up challenge.

    Request body:
    {
        "pin": "482913"        (preferred)
        "password": "..."      (fallback)
    }

    Returns { re_auth_token, expires_in }. The token is single use.
    """
    try:
        data = request.get_json(silent=True) or {}
        pin = data.get("pin")

        grant, token = reauth_service.issue_grant(
            g.current_user,
            pin=str(pin) if pin is not None else None,
            password=data.get("password"),
            purpose=data.get("purpose") or "billing_start",
        )
        expires_in = int((grant.expires_at - grant.created_at).total_seconds())

        return jsonify({"re_auth_token": token, "expires_in": expires_in}), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to re-authenticate")
        return jsonify({"error": "Internal server error"}), 500
