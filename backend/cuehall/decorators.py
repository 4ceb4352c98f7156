# Overview: Request decorators for staff routes (bearer token, role) and device routes (signed headers).

from functools import wraps
from flask import request, jsonify, g

from .services import session_service
from .services.device_auth_service import verify_device_request
from .validation import DomainError


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user')


def require_auth(f):
    """
    Require a staff bearer token.

    Sets g.current_user to the authenticated User.

    SECURITY: Returns 401 if:
    - No Authorization header
    - Invalid, expired or revoked token
    - User account deactivated
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required"}), 401

        token = auth_header.split(" ", 1)[1]
        user = session_service.validate_session(token)

        if not user:
            return jsonify({"error": "Invalid or expired token"}), 401

        g.current_user = user
        return f(*args, **kwargs)

    return decorated_function


def require_role(*roles: str):
    """
    Require one of the given roles. Use after @require_auth.

    DEVELOPER passes every role check.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required"}), 401

            role = g.current_user.role
            if role != "DEVELOPER" and role not in roles:
                return jsonify({
                    "error": "Permission denied",
                    "required_roles": list(roles),
                }), 403

            return f(*args, **kwargs)

        return decorated_function

    return decorator


def require_device_auth(f=None, *, sign_body: bool = False):
    """
    Authenticate an IoT device request from its signed headers.

    Headers: X-Device-Id, X-Device-Token, X-Timestamp, X-Nonce, X-Signature.
    X-Device-Id may be replaced by a deviceId query parameter (pull).
    With sign_body=True the signature also covers the raw request body (ack);
    otherwise the body slot of the signed string is empty.

    Usable bare (@require_device_auth) or called (@require_device_auth(sign_body=True)).
    Sets g.device to the authenticated IotDevice.
    """
    def decorator(view):
        @wraps(view)
        def decorated_function(*args, **kwargs):
            device_id = request.headers.get("X-Device-Id") or request.args.get("deviceId")
            body = request.get_data(as_text=True) if sign_body else None

            try:
                device = verify_device_request(
                    device_id,
                    request.headers.get("X-Device-Token"),
                    request.headers.get("X-Timestamp"),
                    request.headers.get("X-Nonce"),
                    request.headers.get("X-Signature"),
                    body or None,
                )
            except DomainError as e:
                return jsonify({"error": str(e)}), e.status_code

            g.device = device
            return view(*args, **kwargs)

        return decorated_function

    if f is not None:
        return decorator(f)
    return decorator
