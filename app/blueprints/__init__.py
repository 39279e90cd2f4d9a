"""
Lead SLA Platform
Blueprint registry and shared API helpers.
"""

import logging

from flask import jsonify, request

from app.core.exceptions import NotFoundError, StageDefinitionMissing, ValidationError

logger = logging.getLogger(__name__)


def pagination_args(default_limit=50, max_limit=200):
    """Read limit/offset query params.

    Query params:
        limit - max items (default 50, capped at max_limit)
        offset: starting position (default 0)

    Returns:
        (limit, offset)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset


def register_api_error_handlers(bp):
    """Map service exceptions to JSON error responses on ``bp``."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return jsonify({"error": f"{error.resource} not found"}), 404

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return jsonify({"error": str(error), "details": error.details}), 422

    @bp.errorhandler(StageDefinitionMissing)
    def _handle_stage_definition(error: StageDefinitionMissing):
        logger.error("Stage definition missing", extra={"flow_id": error.flow_id, "stage_key": error.stage_key})
        return jsonify({"error": str(error)}), 409

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return jsonify({"error": "Internal server error"}), 500

    return bp
