"""
Tests: Round-robin routing.

Covers the pure ring pick (wrap, avoid, single candidate), config parsing,
first assignment (cursor persistence, fallback, sanitization of unavailable
members), reassignment and routing updates.
"""

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db as _db
from app.models.flow import Flow
from app.models.lead import EVENT_ASSIGNED, EventLog, Lead
from app.models.workspace import Membership
from app.services.routing_service import (
    FlowRoutingConfig,
    assign_lead_from_flow_routing,
    parse_flow_routing_config,
    pick_round_robin_owner,
    reassign_lead_from_flow_routing,
    update_flow_routing,
)
from conftest import make_flow, make_member, make_workspace


def _make_lead(workspace_id, owner_user_id=None):
    lead = Lead(workspace_id=workspace_id, source_type="MANUAL", owner_user_id=owner_user_id)
    _db.session.add(lead)
    _db.session.flush()
    return lead


def _cursor(flow_id):
    return _db.session.get(Flow, flow_id).config["routing"]["roundRobinCursor"]


# ── Pure selection ────────────────────────────────────────────────────────────


def test_pick_wraps_around_ring():
    assert pick_round_robin_owner([1, 2, 3], 0) == (1, 1)
    assert pick_round_robin_owner([1, 2, 3], 2) == (3, 3)
    assert pick_round_robin_owner([1, 2, 3], 3) == (1, 4)


def test_pick_skips_avoided_user():
    assert pick_round_robin_owner([1, 2, 3], 0, avoid_user_id=1) == (2, 2)


def test_pick_single_candidate_returns_avoided_user():
    assert pick_round_robin_owner([7], 5, avoid_user_id=7) == (7, 6)


def test_pick_empty_ring():
    assert pick_round_robin_owner([], 4) == (None, 4)


def test_parse_routing_normalizes_bad_values():
    parsed = parse_flow_routing_config({"routing": {
        "eligibleAgents": [3, "4", 3, -1, True, "x"],
        "fallbackOwnerUserId": "0",
        "roundRobinCursor": -3,
    }})
    assert parsed == FlowRoutingConfig(eligible_agents=[3, 4], fallback_owner_user_id=None, round_robin_cursor=0)


def test_parse_routing_reads_legacy_top_level_block():
    parsed = parse_flow_routing_config({"eligibleAgents": [5], "roundRobinCursor": 2.9})
    assert parsed.eligible_agents == [5]
    assert parsed.round_robin_cursor == 2


# ── First assignment ──────────────────────────────────────────────────────────


def test_round_robin_is_fair_across_leads(workspace, agents, flow):
    owners = []
    for _ in range(4):
        lead = _make_lead(workspace.id)
        owners.append(assign_lead_from_flow_routing(workspace.id, flow.id, lead.id)["ownerUserId"])
    assert owners == [agents[0].id, agents[1].id, agents[0].id, agents[1].id]
    assert _cursor(flow.id) == 4


def test_assignment_writes_owner_and_event(workspace, agents, flow):
    lead = _make_lead(workspace.id)
    result = assign_lead_from_flow_routing(workspace.id, flow.id, lead.id)
    assert result["method"] == "round_robin"
    assert lead.owner_user_id == agents[0].id
    event = _db.session.query(EventLog).filter_by(lead_id=lead.id, event_type=EVENT_ASSIGNED).one()
    assert event.payload["ownerUserId"] == agents[0].id


def test_unavailable_member_is_dropped(workspace, agents, flow):
    membership = _db.session.query(Membership).filter_by(user_id=agents[0].id).one()
    membership.is_available = False
    _db.session.flush()

    lead = _make_lead(workspace.id)
    result = assign_lead_from_flow_routing(workspace.id, flow.id, lead.id)
    assert result["ownerUserId"] == agents[1].id
    assert result["routing"]["eligibleAgents"] == [agents[1].id]


def test_fallback_owner_when_ring_is_empty(workspace, agents):
    f = make_flow(workspace.id, [])
    f.config = {"routing": {"eligibleAgents": [], "fallbackOwnerUserId": agents[2].id, "roundRobinCursor": 0}}
    _db.session.flush()

    lead = _make_lead(workspace.id)
    result = assign_lead_from_flow_routing(workspace.id, f.id, lead.id)
    assert result["ownerUserId"] == agents[2].id
    assert result["method"] == "fallback"
    assert result["roundRobinCursor"] == 0


def test_no_candidates_leaves_lead_unassigned(workspace):
    f = make_flow(workspace.id, [])
    lead = _make_lead(workspace.id)
    result = assign_lead_from_flow_routing(workspace.id, f.id, lead.id)
    assert result["ownerUserId"] is None
    assert result["method"] is None
    assert lead.owner_user_id is None
    assert _db.session.query(EventLog).filter_by(lead_id=lead.id).count() == 0


def test_foreign_flow_is_not_found(workspace, flow):
    other = make_workspace("Other")
    lead = _make_lead(other.id)
    with pytest.raises(NotFoundError):
        assign_lead_from_flow_routing(other.id, flow.id, lead.id)


# ── Reassignment ──────────────────────────────────────────────────────────────


def test_reassign_moves_to_other_agent(workspace, agents, flow):
    lead = _make_lead(workspace.id, owner_user_id=agents[0].id)
    result = reassign_lead_from_flow_routing(workspace.id, flow.id, lead.id)
    assert result["previousOwnerUserId"] == agents[0].id
    assert result["ownerUserId"] == agents[1].id
    assert result["changed"] is True
    assert lead.owner_user_id == agents[1].id


def test_reassign_single_candidate_reports_unchanged(workspace, agents):
    f = make_flow(workspace.id, [agents[0].id])
    lead = _make_lead(workspace.id, owner_user_id=agents[0].id)
    result = reassign_lead_from_flow_routing(workspace.id, f.id, lead.id)
    assert result["ownerUserId"] == agents[0].id
    assert result["changed"] is False
    assert result["method"] == "unchanged"
    assert result["roundRobinCursor"] == 1


def test_reassign_without_candidates_keeps_owner(workspace, agents):
    f = make_flow(workspace.id, [])
    lead = _make_lead(workspace.id, owner_user_id=agents[0].id)
    result = reassign_lead_from_flow_routing(workspace.id, f.id, lead.id)
    assert result["method"] == "unchanged"
    assert result["changed"] is False


# ── Routing update ────────────────────────────────────────────────────────────


def test_update_routing_keeps_cursor(workspace, agents, flow):
    assign_lead_from_flow_routing(workspace.id, flow.id, _make_lead(workspace.id).id)
    result = update_flow_routing(workspace.id, flow.id, {
        "eligibleAgents": [agents[1].id, agents[2].id],
        "fallbackOwnerUserId": agents[2].id,
    })
    assert result["routing"] == {
        "eligibleAgents": [agents[1].id, agents[2].id],
        "fallbackOwnerUserId": agents[2].id,
        "roundRobinCursor": 1,
    }


def test_update_routing_rejects_non_members(workspace, agents, flow):
    other = make_workspace("Other")
    outsider = make_member(other.id, "outsider@other.test")
    with pytest.raises(ValidationError) as exc:
        update_flow_routing(workspace.id, flow.id, {"eligibleAgents": [agents[0].id, outsider.id]})
    assert exc.value.details == {"invalidUserIds": [outsider.id]}


def test_update_routing_requires_list(workspace, flow):
    with pytest.raises(ValidationError):
        update_flow_routing(workspace.id, flow.id, {"eligibleAgents": "1,2"})
