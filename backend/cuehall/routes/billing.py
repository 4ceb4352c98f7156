# Overview: Flask API routes for billing sessions; parses input and returns JSON responses.

"""
Billing Session API Routes

SECURITY:
- All routes require a staff bearer token
- OWNER starts must carry a re-auth token from POST /api/auth/re-auth
- Settling is reserved for checkout roles (OWNER, MANAGER, CASHIER)

Request bodies use snake_case keys; camelCase aliases (tableId,
durationMinutes, ...) are accepted too.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_role
from ..models.auth import ROLE_CASHIER, ROLE_MANAGER, ROLE_OWNER
from ..services import billing_service, package_service
from ..validation import DomainError, ValidationError
from cuehall.time_utils import parse_iso_datetime


billing_bp = Blueprint("billing", __name__, url_prefix="/api/billing")

STAFF_ROLES = (ROLE_OWNER, ROLE_MANAGER, ROLE_CASHIER)


def _field(data: dict, key: str, camel: str):
    value = data.get(key)
    if value is None:
        value = data.get(camel)
    return value


def _parse_date_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 datetime")


def _session_payload(session) -> dict:
    data = session.to_dict()
    data["table"] = session.table.to_dict() if session.table else None
    return data


@billing_bp.post("/sessions")
@require_auth
@require_role(*STAFF_ROLES)
def create_session_route():
    """
    Start a billing session.

    Request body:
    {
        "table_id": 1,
        "duration_minutes": 60,
        "rate_type": "HOURLY" | "MANUAL" | "FLEXIBLE" | "PACKAGE",
        "manual_rate_per_hour": "25000",   (MANUAL only)
        "package_id": 3,                    (optional)
        "re_auth_token": "..."              (OWNER only)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        table_id = _field(data, "table_id", "tableId")
        if table_id is None:
            return jsonify({"error": "table_id required"}), 400

        session = billing_service.create_session(
            table_id,
            _field(data, "duration_minutes", "durationMinutes"),
            g.current_user,
            rate_type=_field(data, "rate_type", "rateType"),
            manual_rate_per_hour=_field(data, "manual_rate_per_hour", "manualRatePerHour"),
            package_id=_field(data, "package_id", "packageId"),
            reauth_token=_field(data, "re_auth_token", "reAuthToken"),
        )

        return jsonify({"session": _session_payload(session)}), 201

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create billing session")
        return jsonify({"error": "Internal server error"}), 500


@billing_bp.get("/sessions")
@require_auth
def list_sessions_route():
    """Paginated session history. Filters: status, table_id, start_date, end_date."""
    try:
        result = billing_service.list_sessions(
            status=request.args.get("status"),
            table_id=request.args.get("table_id", type=int),
            start_date=_parse_date_arg("start_date"),
            end_date=_parse_date_arg("end_date"),
            page=request.args.get("page", 1, type=int),
            limit=request.args.get("limit", 20, type=int),
        )
        return jsonify(result), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list billing sessions")
        return jsonify({"error": "Internal server error"}), 500


@billing_bp.get("/sessions/active")
@require_auth
def active_sessions_route():
    sessions = billing_service.get_active_sessions()
    return jsonify({"sessions": [_session_payload(s) for s in sessions]}), 200


@billing_bp.get("/sessions/<int:session_id>")
@require_auth
def get_session_route(session_id: int):
    """Session detail with its billing breakdown (base + ordered extensions)."""
    try:
        session = billing_service.get_session(session_id)
        data = _session_payload(session)
        data["billing_breakdown"] = billing_service.billing_breakdown(session)
        data["events"] = [e.to_dict() for e in session.events]
        return jsonify({"session": data}), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code


@billing_bp.patch("/sessions/<int:session_id>/extend")
@require_auth
@require_role(*STAFF_ROLES)
def extend_session_route(session_id: int):
    """
    Request body:
    {
        "additional_minutes": 30,   or
        "package_id": 3
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        session, amount = billing_service.extend_session(
            session_id,
            g.current_user,
            additional_minutes=_field(data, "additional_minutes", "additionalMinutes"),
            package_id=_field(data, "package_id", "packageId"),
        )
        return jsonify({
            "session": _session_payload(session),
            "additional_amount": str(amount),
        }), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to extend billing session")
        return jsonify({"error": "Internal server error"}), 500


@billing_bp.patch("/sessions/<int:session_id>/stop")
@require_auth
@require_role(*STAFF_ROLES)
def stop_session_route(session_id: int):
    try:
        session = billing_service.stop_session(session_id, g.current_user)
        return jsonify({"session": _session_payload(session)}), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to stop billing session")
        return jsonify({"error": "Internal server error"}), 500


@billing_bp.patch("/sessions/<int:session_id>/move")
@require_auth
@require_role(*STAFF_ROLES)
def move_session_route(session_id: int):
    """Request body: { "target_table_id": 2 }"""
    try:
        data = request.get_json(silent=True) or {}
        target_table_id = _field(data, "target_table_id", "targetTableId")
        if target_table_id is None:
            return jsonify({"error": "target_table_id required"}), 400

        session = billing_service.move_session(session_id, target_table_id, g.current_user)
        return jsonify({"session": _session_payload(session)}), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to move billing session")
        return jsonify({"error": "Internal server error"}), 500


@billing_bp.post("/sessions/<int:session_id>/settle")
@require_auth
@require_role(*STAFF_ROLES)
def settle_session_route(session_id: int):
    try:
        session = billing_service.settle_session(session_id)
        return jsonify({"session": _session_payload(session)}), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to settle billing session")
        return jsonify({"error": "Internal server error"}), 500


@billing_bp.get("/packages")
@require_auth
def list_packages_route():
    packages = package_service.list_active_packages()
    return jsonify({"packages": [p.to_dict() for p in packages]}), 200


@billing_bp.post("/packages")
@require_auth
@require_role(ROLE_OWNER, ROLE_MANAGER)
def create_package_route():
    """
    Request body:
    {
        "name": "Happy Hour",
        "price": "50000",
        "duration_minutes": 120,
        "items": [
            {"type": "BILLING", "quantity": 1},
            {"type": "MENU_ITEM", "menu_item_id": 4, "quantity": 2, "unit_price": "5000"}
        ]
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        package = package_service.create_package(
            name=data.get("name"),
            price=data.get("price"),
            items=data.get("items") or [],
            duration_minutes=data.get("duration_minutes"),
        )
        return jsonify({"package": package.to_dict()}), 201

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create package")
        return jsonify({"error": "Internal server error"}), 500
