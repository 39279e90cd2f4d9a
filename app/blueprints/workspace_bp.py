"""
Lead SLA Platform
Workspace blueprint: SLA sweep, flow routing, scenarios and notifications.

Endpoint groups:
  SLA sweep          POST /api/v1/workspaces/<ws>/sla/sweep
  Flow routing       PUT  /api/v1/workspaces/<ws>/flows/<flow>/routing
  Scenarios          POST /api/v1/workspaces/<ws>/autopilot/scenarios
  Notifications      GET  /api/v1/workspaces/<ws>/notifications?userId=
                     POST /api/v1/workspaces/<ws>/notifications/<id>/read
                     POST /api/v1/workspaces/<ws>/notifications/read-all?userId=
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import pagination_args, register_api_error_handlers
from app.core.exceptions import ValidationError
from app.services import escalation_service, routing_service, scenario_service, sla_service
from app.services.notification import NotificationService

logger = logging.getLogger(__name__)

workspace_bp = register_api_error_handlers(Blueprint("workspace", __name__, url_prefix="/api/v1"))


def _user_id_required() -> int:
    user_id = request.args.get("userId", type=int)
    if not user_id:
        raise ValidationError("userId is required", {"userId": "positive integer"})
    return user_id


# ═════════════════════════════════════════════════════════════════════════
# SLA
# ═════════════════════════════════════════════════════════════════════════


@workspace_bp.route("/workspaces/<int:workspace_id>/sla/sweep", methods=["POST"])
def sla_sweep(workspace_id):
    """Escalation sweep, then breach detection (both idempotent).

    Escalation only sees RUNNING stages, so it runs before overdue stages
    are moved to BREACHED.
    """
    counts = escalation_service.run_escalation_sweep(workspace_id)
    breached = sla_service.detect_breaches(workspace_id)
    return jsonify({"breached": breached, **counts}), 200


@workspace_bp.route("/workspaces/<int:workspace_id>/flows/<int:flow_id>/routing", methods=["PUT"])
def update_routing(workspace_id, flow_id):
    data = request.get_json(silent=True) or {}
    return jsonify(routing_service.update_flow_routing(workspace_id, flow_id, data)), 200


# ═════════════════════════════════════════════════════════════════════════
# Autopilot scenarios
# ═════════════════════════════════════════════════════════════════════════


@workspace_bp.route("/workspaces/<int:workspace_id>/autopilot/scenarios", methods=["POST"])
def create_scenario(workspace_id):
    data = request.get_json(silent=True) or {}
    template_id = data.get("templateId") or ""
    overrides = data.get("overrides") if isinstance(data.get("overrides"), dict) else {}
    scenario = scenario_service.create_scenario_from_template(workspace_id, template_id, overrides)
    return jsonify(scenario.to_dict()), 201


# ═════════════════════════════════════════════════════════════════════════
# Notifications
# ═════════════════════════════════════════════════════════════════════════


@workspace_bp.route("/workspaces/<int:workspace_id>/notifications", methods=["GET"])
def list_notifications(workspace_id):
    """List a user's notifications, newest first.

    Query params: userId (required), unreadOnly, limit, offset
    """
    user_id = _user_id_required()
    unread_only = request.args.get("unreadOnly", "false").lower() in ("1", "true", "yes")
    limit, offset = pagination_args()
    items, total = NotificationService.list_for_user(
        workspace_id, user_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread": NotificationService.unread_count(workspace_id, user_id),
    }), 200


@workspace_bp.route("/workspaces/<int:workspace_id>/notifications/<int:notification_id>/read", methods=["POST"])
def mark_notification_read(workspace_id, notification_id):
    notif = NotificationService.mark_read(workspace_id, notification_id)
    return jsonify(notif.to_dict()), 200


@workspace_bp.route("/workspaces/<int:workspace_id>/notifications/read-all", methods=["POST"])
def mark_all_notifications_read(workspace_id):
    user_id = _user_id_required()
    count = NotificationService.mark_all_read(workspace_id, user_id)
    return jsonify({"marked": count}), 200
