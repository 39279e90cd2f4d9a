"""
Lead SLA Platform
Lead blueprint: ingestion, autopilot replies, proof events and SLA state.

Endpoint groups:
  Ingestion          POST /api/v1/workspaces/<ws>/leads
  Autopilot reply    POST /api/v1/leads/<lead>/autopilot/reply
  Proof events       POST /api/v1/leads/<lead>/proof
  SLA state          GET  /api/v1/leads/<lead>/sla
  Stage advance      POST /api/v1/leads/<lead>/stage/advance

Service layer owns all business logic and commits.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import register_api_error_handlers
from app.core.exceptions import ValidationError
from app.services import autopilot_service, lead_service, sla_service

logger = logging.getLogger(__name__)

lead_bp = register_api_error_handlers(Blueprint("lead", __name__, url_prefix="/api/v1"))


@lead_bp.route("/workspaces/<int:workspace_id>/leads", methods=["POST"])
def ingest_lead(workspace_id):
    """Create a lead, assign an owner, start its first SLA stage and autopilot.

    Returns 201, or 200 with ``deduped: true`` for a repeated externalId.
    """
    data = request.get_json(silent=True) or {}
    result = lead_service.create_lead(workspace_id, data)
    return jsonify(result), 200 if result["deduped"] else 201


@lead_bp.route("/leads/<int:lead_id>/autopilot/reply", methods=["POST"])
def autopilot_reply(lead_id):
    data = request.get_json(silent=True) or {}
    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("text is required", {"text": "non-empty string"})

    result = autopilot_service.process_reply(lead_id, text.strip())
    if result is None:
        return jsonify({"error": "Autopilot run not found"}), 404
    return jsonify(result), 200


@lead_bp.route("/leads/<int:lead_id>/proof", methods=["POST"])
def add_proof(lead_id):
    """Record a proof event; stops the current stage when it qualifies."""
    data = request.get_json(silent=True) or {}
    event_type = data.get("type")
    if not isinstance(event_type, str) or not event_type.strip():
        raise ValidationError("type is required", {"type": "non-empty string"})
    payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}
    return jsonify(lead_service.add_proof_event(lead_id, event_type, payload)), 201


@lead_bp.route("/leads/<int:lead_id>/sla", methods=["GET"])
def get_sla_state(lead_id):
    return jsonify(sla_service.get_lead_sla_state(lead_id)), 200


@lead_bp.route("/leads/<int:lead_id>/stage/advance", methods=["POST"])
def advance_stage(lead_id):
    data = request.get_json(silent=True) or {}
    to_stage_key = (data.get("toStageKey") or "").strip()
    if not to_stage_key:
        raise ValidationError("toStageKey is required", {"toStageKey": "non-empty string"})

    lead_service.get_lead(lead_id)
    result = sla_service.advance_stage(lead_id, to_stage_key)
    if result is None:
        return jsonify({"advanced": False, "stopped": None, "started": None}), 200
    return jsonify({
        "advanced": True,
        "stopped": result["stopped"].to_dict(),
        "started": result["started"].to_dict(),
    }), 200
