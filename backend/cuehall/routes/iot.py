# Overview: Flask API routes for IoT devices; signed device endpoints and staff device admin.

"""
IoT API Routes

DEVICE-FACING (signed headers, see decorators.require_device_auth):
- POST /api/iot/devices/heartbeat     body: {"signalStrength": -61}
- GET  /api/iot/commands/pull?deviceId=<id>
- POST /api/iot/commands/ack          body: {"commandId": 12, "success": true} (signed with the body)
- GET  /api/iot/devices/config

STAFF-FACING (bearer token, OWNER / DEVELOPER):
- device registration, token rotation, listing, connection check
- manual light command for a table
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth, require_device_auth, require_role
from ..models.auth import ROLE_DEVELOPER, ROLE_OWNER
from ..services import command_service
from ..validation import DomainError, ValidationError


iot_bp = Blueprint("iot", __name__, url_prefix="/api/iot")


# =============================================================================
# DEVICE-FACING
# =============================================================================

@iot_bp.post("/devices/heartbeat")
@require_device_auth
def heartbeat_route():
    try:
        data = request.get_json(silent=True) or {}
        device = command_service.heartbeat(g.device, data.get("signalStrength"))
        return jsonify({"device": device.to_dict(current_app.config["IOT_DEVICE_LIVENESS_SECONDS"])}), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record heartbeat")
        return jsonify({"error": "Internal server error"}), 500


@iot_bp.get("/commands/pull")
@require_device_auth
def pull_command_route():
    """Returns {"command": null} or {"command": {id, type, payload}}."""
    try:
        command = command_service.pull_command(g.device)
        if command is None:
            return jsonify({"command": None}), 200

        return jsonify({
            "command": {
                "id": command.id,
                "type": command.command,
                "payload": command.payload,
            }
        }), 200

    except Exception:
        current_app.logger.exception("Failed to pull command")
        return jsonify({"error": "Internal server error"}), 500


@iot_bp.post("/commands/ack")
@require_device_auth(sign_body=True)
def ack_command_route():
    try:
        data = request.get_json(silent=True) or {}
        command_id = data.get("commandId")
        success = data.get("success")
        if command_id is None or not isinstance(success, bool):
            return jsonify({"error": "commandId and boolean success required"}), 400

        command = command_service.ack_command(g.device, command_id, success)
        return jsonify({"command": command.to_dict()}), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to acknowledge command")
        return jsonify({"error": "Internal server error"}), 500


@iot_bp.get("/devices/config")
@require_device_auth
def device_config_route():
    return jsonify(command_service.device_config(g.device)), 200


# =============================================================================
# STAFF-FACING DEVICE ADMIN
# =============================================================================

@iot_bp.get("/devices")
@require_auth
@require_role(ROLE_OWNER, ROLE_DEVELOPER)
def list_devices_route():
    liveness = current_app.config["IOT_DEVICE_LIVENESS_SECONDS"]
    devices = command_service.list_devices()
    return jsonify({"devices": [d.to_dict(liveness) for d in devices]}), 200


@iot_bp.post("/devices")
@require_auth
@require_role(ROLE_DEVELOPER)
def register_device_route():
    """
    Register a controller.

    Returns the plaintext device token once; it cannot be recovered later.
    """
    try:
        data = request.get_json(silent=True) or {}
        device, token = command_service.register_device(data.get("name"))
        return jsonify({
            "device": device.to_dict(current_app.config["IOT_DEVICE_LIVENESS_SECONDS"]),
            "device_token": token,
        }), 201

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to register device")
        return jsonify({"error": "Internal server error"}), 500


@iot_bp.post("/devices/<int:device_id>/rotate-token")
@require_auth
@require_role(ROLE_DEVELOPER)
def rotate_token_route(device_id: int):
    try:
        device, token = command_service.rotate_device_token(device_id)
        return jsonify({"device_id": device.id, "device_token": token}), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code


@iot_bp.get("/devices/<int:device_id>/connection")
@require_auth
@require_role(ROLE_OWNER, ROLE_DEVELOPER)
def check_connection_route(device_id: int):
    try:
        return jsonify(command_service.check_connection(device_id)), 200

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code


@iot_bp.post("/commands")
@require_auth
@require_role(ROLE_OWNER, ROLE_DEVELOPER)
def send_command_route():
    """
    Queue a light command by hand.

    Request body: {"table_id": 1, "command": "BLINK_3X"}
    """
    try:
        data = request.get_json(silent=True) or {}
        table_id = data.get("table_id")
        if table_id is None:
            raise ValidationError("table_id required")

        command = command_service.send_command(table_id, data.get("command"))
        if command is None:
            return jsonify({"command": None, "message": "No IoT device available"}), 202

        return jsonify({"command": command.to_dict()}), 201

    except DomainError as e:
        return jsonify({"error": str(e)}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to send command")
        return jsonify({"error": "Internal server error"}), 500
