"""
Lead SLA Platform
Routing Engine.

Round-robin lead assignment from a flow's ``config["routing"]`` block:

    {"eligibleAgents": [3, 5, 8], "fallbackOwnerUserId": 3, "roundRobinCursor": 4}

The eligible list is a fixed ring indexed by ``cursor mod len``. Before every
decision it is sanitized against the workspace's assignable memberships, so
ids of removed, disabled or unavailable members are silently dropped. The
cursor is written back only when the routing block actually changed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.flow import Flow
from app.models.lead import EVENT_ASSIGNED, EventLog, Lead
from app.models.workspace import ASSIGNABLE_ROLES, Membership

logger = logging.getLogger(__name__)

METHOD_ROUND_ROBIN = "round_robin"
METHOD_FALLBACK = "fallback"
METHOD_UNCHANGED = "unchanged"


@dataclass
class FlowRoutingConfig:
    eligible_agents: list[int] = field(default_factory=list)
    fallback_owner_user_id: int | None = None
    round_robin_cursor: int = 0

    def to_dict(self) -> dict:
        return {
            "eligibleAgents": list(self.eligible_agents),
            "fallbackOwnerUserId": self.fallback_owner_user_id,
            "roundRobinCursor": self.round_robin_cursor,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Parsing
# ═════════════════════════════════════════════════════════════════════════════


def _normalize_user_id(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def _normalize_user_id_list(value) -> list[int]:
    if not isinstance(value, list):
        return []
    seen: set[int] = set()
    result: list[int] = []
    for item in value:
        user_id = _normalize_user_id(item)
        if user_id is None or user_id in seen:
            continue
        seen.add(user_id)
        result.append(user_id)
    return result


def _normalize_cursor(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if value != value or value in (float("inf"), float("-inf")):
        return 0
    return max(0, int(value))


def _parse_routing_record(value) -> FlowRoutingConfig:
    if not isinstance(value, dict):
        return FlowRoutingConfig()
    return FlowRoutingConfig(
        eligible_agents=_normalize_user_id_list(value.get("eligibleAgents")),
        fallback_owner_user_id=_normalize_user_id(value.get("fallbackOwnerUserId")),
        round_robin_cursor=_normalize_cursor(value.get("roundRobinCursor")),
    )


def parse_flow_routing_config(config) -> FlowRoutingConfig:
    """Read routing from ``config["routing"]``, or from the top level for legacy flows."""
    if not isinstance(config, dict):
        return FlowRoutingConfig()
    if isinstance(config.get("routing"), dict):
        return _parse_routing_record(config["routing"])
    return _parse_routing_record(config)


def merge_flow_routing_config(existing_config, routing: FlowRoutingConfig) -> dict:
    """Return a new flow config dict with the normalized routing block replaced."""
    base = dict(existing_config) if isinstance(existing_config, dict) else {}
    base["routing"] = _parse_routing_record(routing.to_dict()).to_dict()
    return base


# ═════════════════════════════════════════════════════════════════════════════
# Selection
# ═════════════════════════════════════════════════════════════════════════════


def list_assignable_user_ids(workspace_id: int) -> set[int]:
    stmt = select(Membership.user_id).where(
        Membership.workspace_id == workspace_id,
        Membership.role.in_(ASSIGNABLE_ROLES),
        Membership.status == "ACTIVE",
        Membership.is_available == True,  # noqa: E712
    )
    return set(db.session.execute(stmt).scalars().all())


def sanitize_routing(config: FlowRoutingConfig, valid_user_ids: set[int]) -> FlowRoutingConfig:
    fallback = config.fallback_owner_user_id
    return FlowRoutingConfig(
        eligible_agents=[uid for uid in config.eligible_agents if uid in valid_user_ids],
        fallback_owner_user_id=fallback if fallback in valid_user_ids else None,
        round_robin_cursor=_normalize_cursor(config.round_robin_cursor),
    )


def pick_round_robin_owner(
    eligible_agents: list[int],
    cursor: int,
    avoid_user_id: int | None = None,
) -> tuple[int | None, int]:
    """Return ``(owner_user_id, next_cursor)``.

    Scans forward from ``cursor`` skipping ``avoid_user_id``; with a single
    candidate the avoided id is still returned.
    """
    if not eligible_agents:
        return None, cursor

    start = _normalize_cursor(cursor)
    count = len(eligible_agents)
    for offset in range(count):
        candidate = eligible_agents[(start + offset) % count]
        if count > 1 and avoid_user_id is not None and candidate == avoid_user_id:
            continue
        return candidate, start + offset + 1

    return eligible_agents[start % count], start + 1


def _load_flow(workspace_id: int, flow_id: int) -> Flow:
    stmt = select(Flow).where(Flow.id == flow_id, Flow.workspace_id == workspace_id)
    flow = db.session.execute(stmt).scalar_one_or_none()
    if flow is None:
        raise NotFoundError("Flow", flow_id, workspace_id)
    return flow


def _persist_if_changed(flow: Flow, current: FlowRoutingConfig, nxt: FlowRoutingConfig) -> bool:
    if current.to_dict() == nxt.to_dict():
        return False
    flow.config = merge_flow_routing_config(flow.config, nxt)
    return True


# ═════════════════════════════════════════════════════════════════════════════
# Public API
# ═════════════════════════════════════════════════════════════════════════════


def assign_lead_from_flow_routing(workspace_id: int, flow_id: int, lead_id: int) -> dict:
    """First assignment of a lead's owner.

    Emits an ``assigned`` event when an owner was found. Flushes only; the
    caller commits.

    Returns:
        ``{"ownerUserId", "method", "roundRobinCursor", "routing"}`` where
        method is ``round_robin``, ``fallback`` or None.
    """
    flow = _load_flow(workspace_id, flow_id)
    parsed = parse_flow_routing_config(flow.config)
    routing = sanitize_routing(parsed, list_assignable_user_ids(workspace_id))

    picked, next_cursor = pick_round_robin_owner(routing.eligible_agents, routing.round_robin_cursor)
    owner_user_id = picked if picked is not None else routing.fallback_owner_user_id
    if picked is not None:
        method = METHOD_ROUND_ROBIN
    elif routing.fallback_owner_user_id is not None:
        method = METHOD_FALLBACK
    else:
        method = None

    next_routing = FlowRoutingConfig(
        eligible_agents=routing.eligible_agents,
        fallback_owner_user_id=routing.fallback_owner_user_id,
        round_robin_cursor=next_cursor if picked is not None else routing.round_robin_cursor,
    )
    _persist_if_changed(flow, parsed, next_routing)

    if owner_user_id is not None:
        lead = db.session.get(Lead, lead_id)
        if lead is None or lead.workspace_id != workspace_id:
            raise NotFoundError("Lead", lead_id, workspace_id)
        lead.owner_user_id = owner_user_id
        db.session.add(EventLog(
            workspace_id=workspace_id,
            lead_id=lead_id,
            event_type=EVENT_ASSIGNED,
            payload={"ownerUserId": owner_user_id, "method": method or "none", "flowId": flow_id},
        ))

    db.session.flush()
    logger.info(
        "Lead assigned",
        extra={"workspace_id": workspace_id, "lead_id": lead_id, "owner_user_id": owner_user_id, "method": method},
    )
    return {
        "ownerUserId": owner_user_id,
        "method": method,
        "roundRobinCursor": next_routing.round_robin_cursor,
        "routing": next_routing.to_dict(),
    }


def reassign_lead_from_flow_routing(workspace_id: int, flow_id: int, lead_id: int) -> dict:
    """Move the lead to the next round-robin agent, avoiding its current owner.

    Returns:
        ``{"previousOwnerUserId", "ownerUserId", "changed", "method",
        "roundRobinCursor"}``; callers skip "reassigned out" notifications
        when ``changed`` is False.
    """
    stmt = select(Lead).where(Lead.id == lead_id, Lead.workspace_id == workspace_id)
    lead = db.session.execute(stmt).scalar_one_or_none()
    if lead is None:
        raise NotFoundError("Lead", lead_id, workspace_id)
    flow = _load_flow(workspace_id, flow_id)

    previous = lead.owner_user_id
    parsed = parse_flow_routing_config(flow.config)
    routing = sanitize_routing(parsed, list_assignable_user_ids(workspace_id))

    picked, next_cursor = pick_round_robin_owner(
        routing.eligible_agents, routing.round_robin_cursor, avoid_user_id=previous,
    )
    if picked is not None:
        owner_user_id, method = picked, METHOD_ROUND_ROBIN
    elif routing.fallback_owner_user_id is not None:
        owner_user_id, method = routing.fallback_owner_user_id, METHOD_FALLBACK
    else:
        owner_user_id, method = previous, METHOD_UNCHANGED

    next_routing = FlowRoutingConfig(
        eligible_agents=routing.eligible_agents,
        fallback_owner_user_id=routing.fallback_owner_user_id,
        round_robin_cursor=next_cursor if picked is not None else routing.round_robin_cursor,
    )
    _persist_if_changed(flow, parsed, next_routing)

    changed = owner_user_id != previous
    if changed:
        lead.owner_user_id = owner_user_id
    else:
        method = METHOD_UNCHANGED
    db.session.flush()

    return {
        "previousOwnerUserId": previous,
        "ownerUserId": owner_user_id,
        "changed": changed,
        "method": method,
        "roundRobinCursor": next_routing.round_robin_cursor,
    }


def update_flow_routing(workspace_id: int, flow_id: int, payload: dict) -> dict:
    """Replace the eligible agents and fallback owner, keeping the cursor.

    Raises:
        ValidationError: unknown or non-assignable user ids.
    """
    flow = _load_flow(workspace_id, flow_id)
    payload = payload or {}

    raw_agents = payload.get("eligibleAgents")
    if not isinstance(raw_agents, list):
        raise ValidationError("eligibleAgents must be a list", {"eligibleAgents": "required list"})
    eligible = _normalize_user_id_list(raw_agents)
    fallback = _normalize_user_id(payload.get("fallbackOwnerUserId"))

    allowed = list_assignable_user_ids(workspace_id)
    invalid = [uid for uid in eligible if uid not in allowed]
    if fallback is not None and fallback not in allowed:
        invalid.append(fallback)
    if invalid:
        raise ValidationError(
            "Routing references users that cannot receive leads",
            {"invalidUserIds": invalid},
        )

    current = parse_flow_routing_config(flow.config)
    routing = FlowRoutingConfig(
        eligible_agents=eligible,
        fallback_owner_user_id=fallback,
        round_robin_cursor=current.round_robin_cursor,
    )
    flow.config = merge_flow_routing_config(flow.config, routing)
    db.session.commit()
    logger.info("Flow routing updated", extra={"workspace_id": workspace_id, "flow_id": flow_id})
    return {"flowId": flow.id, "routing": routing.to_dict()}
