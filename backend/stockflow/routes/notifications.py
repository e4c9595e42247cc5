# Overview: Flask API routes for operator notifications.

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_operator
from ..errors import StockError
from ..services import notification_service
from ..validation import ValidationError, coerce_bool, coerce_int

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@require_operator
def list_notifications_route():
    try:
        limit = coerce_int(request.args.get("limit"), "limit", minimum=1, required=False) or 100
        items = notification_service.list_notifications(
            operator_id=g.operator_id,
            unread_only=coerce_bool(request.args.get("unread", "")),
            limit=min(limit, 500),
        )
        return jsonify({
            "items": [n.to_dict() for n in items],
            "unread": notification_service.unread_count(operator_id=g.operator_id),
        }), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list notifications")
        return jsonify({"error": "Internal server error"}), 500


@notifications_bp.post("/<int:notification_id>/read")
@require_operator
def mark_read_route(notification_id: int):
    try:
        notification = notification_service.mark_read(
            operator_id=g.operator_id, notification_id=notification_id
        )
        return jsonify({"notification": notification.to_dict()}), 200
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status


@notifications_bp.post("/read")
@require_operator
def mark_all_read_route():
    count = notification_service.mark_all_read(operator_id=g.operator_id)
    return jsonify({"updated": count}), 200


@notifications_bp.delete("/<int:notification_id>")
@require_operator
def remove_notification_route(notification_id: int):
    try:
        notification_service.remove_notification(
            operator_id=g.operator_id, notification_id=notification_id
        )
        return jsonify({"deleted": notification_id}), 200
    except StockError as e:
        return jsonify(e.to_dict()), e.http_status


@notifications_bp.delete("")
@require_operator
def clear_notifications_route():
    count = notification_service.clear_notifications(operator_id=g.operator_id)
    return jsonify({"deleted": count}), 200
