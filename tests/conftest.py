"""
Shared pytest fixtures for the Lead SLA Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - workspace: Workspace with 24/7 clock (business hours disabled, UTC)
    - agents: two AGENT users and one MANAGER with active memberships
    - flow: active flow routed to the agents, with first_touch/handover stages
"""

import pytest

from app import create_app
from app.models import db as _db
from app.models.flow import EscalationRule, Flow, StageDefinition
from app.models.workspace import Membership, User, Workspace, WorkspaceSettings


@pytest.fixture(autouse=True)
def _no_llm_provider(monkeypatch):
    """Tests never reach a real chat-completion provider."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("LLM_LOCAL_STUB", raising=False)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── ORM helpers ──────────────────────────────────────────────────────────


def make_workspace(name="Acme", *, timezone="UTC", business_hours_enabled=False, schedule=None):
    ws = Workspace(name=name)
    _db.session.add(ws)
    _db.session.flush()
    _db.session.add(WorkspaceSettings(
        workspace_id=ws.id,
        timezone=timezone,
        business_hours_enabled=business_hours_enabled,
        schedule=schedule,
    ))
    _db.session.flush()
    return ws


def make_member(workspace_id, email, role="AGENT", **kwargs):
    user = User(email=email, name=email.split("@")[0])
    _db.session.add(user)
    _db.session.flush()
    _db.session.add(Membership(workspace_id=workspace_id, user_id=user.id, role=role, **kwargs))
    _db.session.flush()
    return user


def make_flow(workspace_id, eligible_agents, *, stages=None, name="Inbound"):
    """Flow with routing plus stage definitions ``[(key, target_minutes, stop_on_proof_types)]``."""
    flow = Flow(
        workspace_id=workspace_id,
        name=name,
        is_active=True,
        config={"routing": {"eligibleAgents": list(eligible_agents), "roundRobinCursor": 0}},
    )
    _db.session.add(flow)
    _db.session.flush()
    if stages is None:
        stages = [
            ("first_touch", 15, ["message_sent", "call_logged"]),
            ("handover", 30, ["meeting_created"]),
        ]
    for key, minutes, proofs in stages:
        _db.session.add(StageDefinition(
            flow_id=flow.id,
            key=key,
            name=key.replace("_", " ").title(),
            target_minutes=minutes,
            business_hours_enabled=True,
            stop_on_proof_types=proofs,
        ))
    _db.session.flush()
    return flow


def make_escalation_rule(flow_id, stage_key="first_touch", remind=50, reassign=100, alert=150):
    rule = EscalationRule(
        flow_id=flow_id,
        stage_key=stage_key,
        enabled=True,
        remind_at_pct=remind,
        reassign_at_pct=reassign,
        manager_alert_at_pct=alert,
    )
    _db.session.add(rule)
    _db.session.flush()
    return rule


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def workspace():
    ws = make_workspace()
    _db.session.commit()
    return ws


@pytest.fixture()
def agents(workspace):
    """``[agent_a, agent_b, manager]`` users."""
    users = [
        make_member(workspace.id, "ana@acme.test"),
        make_member(workspace.id, "bogdan@acme.test"),
        make_member(workspace.id, "maria@acme.test", role="MANAGER"),
    ]
    _db.session.commit()
    return users


@pytest.fixture()
def flow(workspace, agents):
    f = make_flow(workspace.id, [agents[0].id, agents[1].id])
    _db.session.commit()
    return f
