"""
Tests: SLA stage engine.

Covers start (deadline, missing definition), stop (explicit, no-op when
nothing runs), advance, breach detection idempotence and workspace scoping,
proof-driven stop with aliases, stage ordering and the lead SLA read model.
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import NotFoundError, StageDefinitionMissing
from app.models import db as _db
from app.models.lead import Lead
from app.models.sla import STAGE_BREACHED, STAGE_RUNNING, STAGE_STOPPED, StageInstance
from app.models.workspace import WorkspaceSettings
from app.services import sla_service
from app.services.business_hours import as_utc
from conftest import make_flow, make_workspace

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _make_lead(workspace_id, **kwargs):
    lead = Lead(workspace_id=workspace_id, source_type="MANUAL", **kwargs)
    _db.session.add(lead)
    _db.session.flush()
    return lead


# ── Start / stop ──────────────────────────────────────────────────────────────


def test_start_stage_computes_deadline(workspace, flow):
    lead = _make_lead(workspace.id)
    inst = sla_service.start_stage(lead.id, flow.id, "first_touch", started_at=T0)
    assert inst.status == STAGE_RUNNING
    assert inst.workspace_id == workspace.id
    assert sla_service.get_running_stage(lead.id).id == inst.id
    state = sla_service.get_lead_sla_state(lead.id, now=T0)
    assert state["current"]["due_at"].startswith("2026-03-02T08:15")


def test_start_stage_respects_business_hours(flow, workspace):
    settings = _db.session.query(WorkspaceSettings).filter_by(workspace_id=workspace.id).one()
    settings.business_hours_enabled = True
    settings.timezone = "Europe/Bucharest"
    _db.session.flush()
    lead = _make_lead(workspace.id)
    # Saturday → Monday 09:15 local (07:15 UTC)
    inst = sla_service.start_stage(
        lead.id, flow.id, "first_touch", started_at=datetime(2026, 3, 7, 12, 0, tzinfo=timezone.utc),
    )
    assert as_utc(inst.due_at) == datetime(2026, 3, 9, 7, 15, tzinfo=timezone.utc)


def test_stage_definition_flag_disables_business_hours(workspace):
    settings = _db.session.query(WorkspaceSettings).filter_by(workspace_id=workspace.id).one()
    settings.business_hours_enabled = True
    f = make_flow(workspace.id, [], stages=[("first_touch", 15, [])])
    f.stage_definitions[0].business_hours_enabled = False
    _db.session.flush()
    lead = _make_lead(workspace.id)
    start = datetime(2026, 3, 7, 12, 0, tzinfo=timezone.utc)
    inst = sla_service.start_stage(lead.id, f.id, "first_touch", started_at=start)
    assert as_utc(inst.due_at) == start + timedelta(minutes=15)


def test_start_stage_missing_definition_raises(workspace, flow):
    lead = _make_lead(workspace.id)
    with pytest.raises(StageDefinitionMissing):
        sla_service.start_stage(lead.id, flow.id, "does_not_exist")


def test_start_stage_unknown_lead_raises(flow):
    with pytest.raises(NotFoundError):
        sla_service.start_stage(99999, flow.id, "first_touch")


def test_stop_stage_records_reason_and_proof(workspace, flow):
    lead = _make_lead(workspace.id)
    sla_service.start_stage(lead.id, flow.id, "first_touch", started_at=T0)
    stopped = sla_service.stop_stage(lead.id, flow.id, "first_touch", None, "manual", stopped_at=T0 + timedelta(minutes=3))
    assert stopped.status == STAGE_STOPPED
    assert stopped.stop_reason == "manual"
    assert sla_service.get_running_stage(lead.id) is None


def test_stop_stage_without_running_instance_is_noop(workspace, flow):
    lead = _make_lead(workspace.id)
    assert sla_service.stop_stage(lead.id, flow.id, "first_touch", None, "manual") is None
    assert _db.session.query(StageInstance).count() == 0


def test_advance_stage(workspace, flow):
    lead = _make_lead(workspace.id)
    sla_service.start_stage(lead.id, flow.id, "first_touch", started_at=T0)
    result = sla_service.advance_stage(lead.id, "handover", now=T0 + timedelta(minutes=5))
    assert result["stopped"].status == STAGE_STOPPED
    assert result["stopped"].stop_reason == "advanced_to_handover"
    assert result["started"].stage_key == "handover"
    assert sla_service.get_running_stage(lead.id).stage_key == "handover"


def test_advance_stage_unknown_target_keeps_current_running(workspace, flow):
    lead = _make_lead(workspace.id)
    inst = sla_service.start_stage(lead.id, flow.id, "first_touch", started_at=T0)
    with pytest.raises(StageDefinitionMissing):
        sla_service.advance_stage(lead.id, "nope")
    assert inst.status == STAGE_RUNNING


def test_advance_stage_without_running_stage(workspace, flow):
    lead = _make_lead(workspace.id)
    assert sla_service.advance_stage(lead.id, "handover") is None


# ── Breaches ──────────────────────────────────────────────────────────────────


def test_detect_breaches_is_idempotent(workspace, flow):
    lead = _make_lead(workspace.id)
    inst = sla_service.start_stage(lead.id, flow.id, "first_touch", started_at=T0)
    later = T0 + timedelta(minutes=16)

    assert sla_service.detect_breaches(workspace.id, now=later) == 1
    assert sla_service.detect_breaches(workspace.id, now=later + timedelta(minutes=5)) == 0

    _db.session.refresh(inst)
    assert inst.status == STAGE_BREACHED
    assert inst.stop_reason == "deadline_exceeded"
    assert inst.breached_at is not None


def test_detect_breaches_ignores_not_yet_due(workspace, flow):
    lead = _make_lead(workspace.id)
    sla_service.start_stage(lead.id, flow.id, "first_touch", started_at=T0)
    assert sla_service.detect_breaches(workspace.id, now=T0 + timedelta(minutes=14)) == 0


def test_detect_breaches_is_workspace_scoped(workspace, flow):
    other = make_workspace("Other")
    other_flow = make_flow(other.id, [])
    sla_service.start_stage(_make_lead(workspace.id).id, flow.id, "first_touch", started_at=T0)
    sla_service.start_stage(_make_lead(other.id).id, other_flow.id, "first_touch", started_at=T0)

    assert sla_service.detect_breaches(other.id, now=T0 + timedelta(hours=1)) == 1
    assert sla_service.detect_breaches(None, now=T0 + timedelta(hours=1)) == 1


def test_stopped_stage_is_never_breached(workspace, flow):
    lead = _make_lead(workspace.id)
    sla_service.start_stage(lead.id, flow.id, "first_touch", started_at=T0)
    sla_service.stop_stage(lead.id, flow.id, "first_touch", None, "manual", stopped_at=T0)
    assert sla_service.detect_breaches(workspace.id, now=T0 + timedelta(days=1)) == 0


# ── Proof ─────────────────────────────────────────────────────────────────────


def test_proof_stops_stage_when_accepted(workspace, flow):
    lead = _make_lead(workspace.id)
    sla_service.start_stage(lead.id, flow.id, "first_touch", started_at=T0)
    stopped = sla_service.stop_current_stage_if_proof_qualifies(lead.id, "call_logged", None)
    assert stopped is not None
    assert stopped.stop_reason == "proof:call_logged"


def test_proof_alias_is_canonicalized(workspace, flow):
    lead = _make_lead(workspace.id)
    sla_service.start_stage(lead.id, flow.id, "first_touch", started_at=T0)
    stopped = sla_service.stop_current_stage_if_proof_qualifies(lead.id, "whatsapp_sent", None)
    assert stopped.stop_reason == "proof:message_sent"


def test_proof_not_accepted_keeps_stage_running(workspace, flow):
    lead = _make_lead(workspace.id)
    inst = sla_service.start_stage(lead.id, flow.id, "first_touch", started_at=T0)
    assert sla_service.stop_current_stage_if_proof_qualifies(lead.id, "meeting_created", None) is None
    assert inst.status == STAGE_RUNNING


def test_canonicalize_proof_type():
    assert sla_service.canonicalize_proof_type(" Email_Sent ") == "message_sent"
    assert sla_service.canonicalize_proof_type("meeting_booked") == "meeting_created"
    assert sla_service.canonicalize_proof_type("call_logged") == "call_logged"
    assert sla_service.canonicalize_proof_type(None) == ""


# ── Ordering & read model ─────────────────────────────────────────────────────


def test_stage_ordering_prefers_canonical_keys(workspace):
    f = make_flow(workspace.id, [], stages=[("zeta", 5, []), ("alpha", 5, []), ("qualification", 5, []), ("handover", 5, [])])
    keys = [d.key for d in sla_service.list_flow_stage_definitions(f.id)]
    assert keys == ["handover", "qualification", "alpha", "zeta"]
    assert sla_service.pick_initial_stage_key(sla_service.list_flow_stage_definitions(f.id)) == "handover"


def test_pick_initial_stage_key_empty():
    assert sla_service.pick_initial_stage_key([]) is None


def test_lead_sla_state(workspace, flow):
    lead = _make_lead(workspace.id)
    sla_service.start_stage(lead.id, flow.id, "first_touch", started_at=T0)
    sla_service.advance_stage(lead.id, "handover", now=T0 + timedelta(minutes=5))

    state = sla_service.get_lead_sla_state(lead.id, now=T0 + timedelta(minutes=50))
    assert state["leadId"] == lead.id
    assert [h["stage_key"] for h in state["history"]] == ["first_touch", "handover"]
    assert state["current"]["stage_key"] == "handover"
    assert state["current"]["overdue"] is True
    assert state["current"]["remaining_minutes"] == -15.0


def test_resolve_workspace_flow_id_prefers_settings_default(workspace, flow):
    second = make_flow(workspace.id, [], name="Second")
    settings = _db.session.query(WorkspaceSettings).filter_by(workspace_id=workspace.id).one()
    settings.default_flow_id = second.id
    _db.session.flush()
    assert sla_service.resolve_workspace_flow_id(workspace.id) == second.id

    settings.default_flow_id = None
    second.is_active = False
    _db.session.flush()
    assert sla_service.resolve_workspace_flow_id(workspace.id) == flow.id
