"""
Lead SLA Platform
Autopilot domain models.

Models:
    - AutopilotScenario: tenant-configured conversation behavior (RULES / AI)
    - AutopilotRun: live conversation state for one lead
"""

from app.models import db
from app.models.base import WorkspaceModel, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

SCENARIO_MODES = {"RULES", "AI"}
SCENARIO_TYPES = {"QUALIFY_ONLY", "QUALIFY_AND_BOOK"}

RUN_ACTIVE = "ACTIVE"
RUN_HANDED_OVER = "HANDED_OVER"
RUN_PAUSED = "PAUSED"
RUN_STATUSES = {RUN_ACTIVE, RUN_HANDED_OVER, RUN_PAUSED}


class AutopilotScenario(WorkspaceModel):
    """
    Conversation script for a workspace.

    Exactly one scenario per workspace carries ``is_default``; this is
    maintained by ``scenario_service.ensure_default_scenario``.
    """

    __tablename__ = "autopilot_scenarios"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    scenario_type = db.Column(db.String(30), nullable=False, default="QUALIFY_ONLY")
    mode = db.Column(db.String(10), nullable=False, default="RULES")
    max_questions = db.Column(db.Integer, nullable=False, default=2)
    sla_minutes = db.Column(db.Integer, nullable=False, default=15)
    ai_prompt = db.Column(db.Text, nullable=False, default="")
    agent_name = db.Column(db.String(120), nullable=True)
    company_name = db.Column(db.String(200), nullable=True)
    company_description = db.Column(db.Text, nullable=True)
    offer_summary = db.Column(db.Text, nullable=True)
    calendar_link_raw = db.Column(db.String(500), nullable=True)
    language = db.Column(db.String(10), nullable=False, default="ro")
    handover_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    qualification_criteria = db.Column(db.JSON, nullable=True, comment='{"requiredSlots": [...]}')
    is_default = db.Column(db.Boolean, nullable=False, default=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def required_slots(self) -> list[str]:
        criteria = self.qualification_criteria or {}
        slots = criteria.get("requiredSlots") if isinstance(criteria, dict) else None
        if not isinstance(slots, list):
            return []
        return [s for s in slots if isinstance(s, str) and s.strip()]

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "name": self.name,
            "scenario_type": self.scenario_type,
            "mode": self.mode,
            "max_questions": self.max_questions,
            "sla_minutes": self.sla_minutes,
            "ai_prompt": self.ai_prompt,
            "agent_name": self.agent_name,
            "company_name": self.company_name,
            "company_description": self.company_description,
            "offer_summary": self.offer_summary,
            "calendar_link_raw": self.calendar_link_raw,
            "language": self.language,
            "handover_user_id": self.handover_user_id,
            "qualification_criteria": self.qualification_criteria or {},
            "is_default": self.is_default,
        }

    def __repr__(self):
        return f"<AutopilotScenario {self.id}: {self.name} ({self.mode})>"


class AutopilotRun(WorkspaceModel):
    """Live autopilot conversation for one lead.

    ``state_json`` stores ``{"node", "answers", "questionIndex"}``; read it
    through ``autopilot_rules.AutopilotState.parse``.
    """

    __tablename__ = "autopilot_runs"

    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(
        db.Integer, db.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    scenario_id = db.Column(
        db.Integer, db.ForeignKey("autopilot_scenarios.id", ondelete="SET NULL"), nullable=True,
    )
    status = db.Column(db.String(20), nullable=False, default=RUN_ACTIVE)
    current_step = db.Column(db.String(60), nullable=False, default="welcome")
    state_json = db.Column(db.JSON, nullable=True)
    last_inbound_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_outbound_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "scenario_id": self.scenario_id,
            "status": self.status,
            "current_step": self.current_step,
            "state": self.state_json or {},
            "last_inbound_at": self.last_inbound_at.isoformat() if self.last_inbound_at else None,
            "last_outbound_at": self.last_outbound_at.isoformat() if self.last_outbound_at else None,
        }
