# Overview: Flask API routes for billiard tables; CRUD and light test mode.

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_auth, require_role
from ..models.auth import ROLE_DEVELOPER, ROLE_OWNER
from ..services import table_service
from ..services.table_testing_service import get_coordinator
from ..validation import DomainError


tables_bp = Blueprint("tables", __name__, url_prefix="/api/tables")


def _table_payload(table) -> dict:
    data = table.to_dict()
    active = table_service.active_session_for(table.id)
    data["active_session"] = active.to_dict() if active else None
    return data


@tables_bp.get("")
@tables_bp.get("/")
@require_auth
def list_tables_route():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    tables = table_service.list_tables(include_inactive=include_inactive)
    return jsonify({"tables": [_table_payload(t) for t in tables]}), 200


@tables_bp.get("/<int:table_id>")
@require_auth
def get_table_route(table_id: int):
    try:
        table = table_service.get_table(table_id)
        return jsonify({"table": _table_payload(table)}), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code


@tables_bp.post("")
@tables_bp.post("/")
@require_auth
@require_role(ROLE_DEVELOPER)
def create_table_route():
    """
    Request body:
    {
        "name": "Table 1",
        "hourly_rate": "30000",
        "description": "...",       (optional)
        "iot_device_id": 1,         (optional)
        "relay_channel": 0,         (optional, 0-15)
        "gpio_pin": 23              (optional)
    }
    """
    try:
        table = table_service.create_table(request.get_json(silent=True))
        return jsonify({"table": table.to_dict()}), 201

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create table")
        return jsonify({"error": "Internal server error"}), 500


@tables_bp.patch("/<int:table_id>")
@require_auth
@require_role(ROLE_OWNER, ROLE_DEVELOPER)
def update_table_route(table_id: int):
    try:
        table = table_service.update_table(table_id, request.get_json(silent=True))
        return jsonify({"table": table.to_dict()}), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update table")
        return jsonify({"error": "Internal server error"}), 500


@tables_bp.delete("/<int:table_id>")
@require_auth
@require_role(ROLE_DEVELOPER)
def delete_table_route(table_id: int):
    try:
        table = table_service.deactivate_table(table_id)
        return jsonify({"table": table.to_dict()}), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to delete table")
        return jsonify({"error": "Internal server error"}), 500


@tables_bp.post("/<int:table_id>/testing")
@require_auth
@require_role(ROLE_OWNER, ROLE_DEVELOPER)
def start_testing_route(table_id: int):
    """Request body: {"duration_seconds": 10} (optional)"""
    try:
        data = request.get_json(silent=True) or {}
        result = get_coordinator().start_testing(table_id, data.get("duration_seconds"))
        return jsonify(result), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to start table light test")
        return jsonify({"error": "Internal server error"}), 500


@tables_bp.post("/<int:table_id>/testing/stop")
@require_auth
@require_role(ROLE_OWNER, ROLE_DEVELOPER)
def stop_testing_route(table_id: int):
    try:
        return jsonify(get_coordinator().stop_testing(table_id)), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to stop table light test")
        return jsonify({"error": "Internal server error"}), 500
