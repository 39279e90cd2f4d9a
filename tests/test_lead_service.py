"""
Tests: Lead ingestion and proof events.

Covers normalization, dedupe on (source type, external id), identity and
event creation, routing + initial stage + autopilot in one call, explicit
flow selection, and proof events stopping the current stage.
"""

import pytest

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db as _db
from app.models.autopilot import AutopilotRun
from app.models.lead import EventLog, Lead, LeadIdentity
from app.services import lead_service, sla_service
from conftest import make_flow, make_workspace


def test_create_lead_full_intake(workspace, agents, flow):
    result = lead_service.create_lead(workspace.id, {
        "externalId": "fb-100",
        "sourceType": "facebook",
        "name": "Ioana Pop",
        "email": "Ioana@Example.COM ",
        "phone": "+40700111222",
        "company": "Pop SRL",
        "meta": {"campaign": "spring"},
    })

    assert result["deduped"] is False
    assert result["ownerUserId"] == agents[0].id
    assert result["stage"]["stageKey"] == "first_touch"
    assert result["autopilot"]["status"] == "ACTIVE"
    assert result["autopilot"]["state"] == {"node": "q1", "answers": {}, "questionIndex": 0}

    lead = _db.session.get(Lead, result["leadId"])
    assert lead.source_type == "FACEBOOK"
    assert lead.first_name == "Ioana"
    assert lead.email == "ioana@example.com"

    identity = _db.session.query(LeadIdentity).filter_by(lead_id=lead.id).one()
    assert identity.company == "Pop SRL"
    assert identity.meta == {"campaign": "spring"}

    types = [e.event_type for e in _db.session.query(EventLog).filter_by(lead_id=lead.id).order_by(EventLog.id)]
    assert types[:2] == ["lead_received", "assigned"]
    assert "autopilot_started" in types
    assert "message_queued" in types


def test_duplicate_external_id_is_deduped(workspace, agents, flow):
    first = lead_service.create_lead(workspace.id, {"externalId": "fb-1", "sourceType": "FACEBOOK"})
    second = lead_service.create_lead(workspace.id, {"externalId": "fb-1", "sourceType": "FACEBOOK"})
    assert second["deduped"] is True
    assert second["leadId"] == first["leadId"]
    assert _db.session.query(Lead).count() == 1


def test_same_external_id_other_source_is_new_lead(workspace):
    lead_service.create_lead(workspace.id, {"externalId": "x", "sourceType": "FACEBOOK"})
    other = lead_service.create_lead(workspace.id, {"externalId": "x", "sourceType": "EMBED_FORM"})
    assert other["deduped"] is False
    assert _db.session.query(Lead).count() == 2


def test_lead_without_flow_has_no_stage(workspace):
    result = lead_service.create_lead(workspace.id, {"firstName": "Dan"})
    assert result["ownerUserId"] is None
    assert result["stage"] is None
    assert result["autopilot"] is not None


def test_autopilot_can_be_skipped(workspace, flow):
    result = lead_service.create_lead(workspace.id, {"startAutopilot": False})
    assert result["autopilot"] is None
    assert _db.session.query(AutopilotRun).count() == 0


def test_explicit_flow_must_belong_to_workspace(workspace, flow):
    other = make_workspace("Other")
    with pytest.raises(NotFoundError):
        lead_service.create_lead(other.id, {"flowId": flow.id})
    assert _db.session.query(Lead).count() == 0


def test_explicit_flow_is_used(workspace, agents, flow):
    second = make_flow(workspace.id, [agents[1].id], stages=[("qualification", 60, [])], name="Second")
    _db.session.commit()
    result = lead_service.create_lead(workspace.id, {"flowId": second.id})
    assert result["ownerUserId"] == agents[1].id
    assert result["stage"]["stageKey"] == "qualification"


def test_invalid_source_type(workspace):
    with pytest.raises(ValidationError):
        lead_service.create_lead(workspace.id, {"sourceType": "CARRIER_PIGEON"})


# ── Proof events ──────────────────────────────────────────────────────────────


def test_proof_event_stops_stage(workspace, agents, flow):
    lead_id = lead_service.create_lead(workspace.id, {"phone": "+40700111222"})["leadId"]
    result = lead_service.add_proof_event(lead_id, "whatsapp_sent", {"by": agents[0].id})

    assert result["event"]["event_type"] == "message_sent"
    assert result["stoppedStage"]["stop_reason"] == "proof:message_sent"
    assert result["stoppedStage"]["proof_event_id"] == result["event"]["id"]
    assert sla_service.get_running_stage(lead_id) is None


def test_proof_event_not_accepted_by_stage(workspace, flow):
    lead_id = lead_service.create_lead(workspace.id, {})["leadId"]
    result = lead_service.add_proof_event(lead_id, "meeting_created")
    assert result["stoppedStage"] is None
    assert sla_service.get_running_stage(lead_id).stage_key == "first_touch"


def test_proof_event_unknown_type(workspace, flow):
    lead_id = lead_service.create_lead(workspace.id, {})["leadId"]
    with pytest.raises(ValidationError):
        lead_service.add_proof_event(lead_id, "lead_received")


def test_proof_event_unknown_lead():
    with pytest.raises(NotFoundError):
        lead_service.add_proof_event(424242, "call_logged")
