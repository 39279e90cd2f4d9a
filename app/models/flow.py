"""
Lead SLA Platform
Flow configuration models.

Models:
    - Flow: named pipeline; ``config`` JSON embeds the routing block
    - StageDefinition: one SLA stage template (target minutes, proof types)
    - EscalationRule: reminder / reassign / manager-alert thresholds per stage
"""

from app.models import db
from app.models.base import WorkspaceModel, utcnow


class Flow(WorkspaceModel):
    """Lead-handling pipeline.

    ``config`` holds free-form flow settings. Routing lives under
    ``config["routing"]``::

        {"eligibleAgents": [3, 5], "fallbackOwnerUserId": 3, "roundRobinCursor": 4}
    """

    __tablename__ = "flows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    config = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    stage_definitions = db.relationship(
        "StageDefinition", back_populates="flow", cascade="all, delete-orphan", lazy="select",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "name": self.name,
            "is_active": self.is_active,
            "config": self.config or {},
        }

    def __repr__(self):
        return f"<Flow {self.id}: {self.name}>"


class StageDefinition(db.Model):
    """SLA stage template within a flow. Read-only to the stage engine."""

    __tablename__ = "sla_stage_definitions"
    __table_args__ = (
        db.UniqueConstraint("flow_id", "key", name="uq_stage_definition_flow_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    flow_id = db.Column(db.Integer, db.ForeignKey("flows.id", ondelete="CASCADE"), nullable=False, index=True)
    key = db.Column(db.String(60), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    target_minutes = db.Column(db.Integer, nullable=False, default=15)
    business_hours_enabled = db.Column(db.Boolean, nullable=False, default=True)
    stop_on_proof_types = db.Column(db.JSON, nullable=True, comment="list of proof event types")

    flow = db.relationship("Flow", back_populates="stage_definitions")

    def to_dict(self):
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "key": self.key,
            "name": self.name,
            "target_minutes": self.target_minutes,
            "business_hours_enabled": self.business_hours_enabled,
            "stop_on_proof_types": list(self.stop_on_proof_types or []),
        }


class EscalationRule(db.Model):
    """Elapsed-percentage thresholds for one (flow, stage) pair.

    A threshold of 0 disables that tier.
    """

    __tablename__ = "escalation_rules"
    __table_args__ = (
        db.UniqueConstraint("flow_id", "stage_key", name="uq_escalation_rule_flow_stage"),
    )

    id = db.Column(db.Integer, primary_key=True)
    flow_id = db.Column(db.Integer, db.ForeignKey("flows.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_key = db.Column(db.String(60), nullable=False)
    enabled = db.Column(db.Boolean, nullable=False, default=True)
    remind_at_pct = db.Column(db.Integer, nullable=False, default=50)
    reassign_at_pct = db.Column(db.Integer, nullable=False, default=100)
    manager_alert_at_pct = db.Column(db.Integer, nullable=False, default=150)

    def to_dict(self):
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "stage_key": self.stage_key,
            "enabled": self.enabled,
            "remind_at_pct": self.remind_at_pct,
            "reassign_at_pct": self.reassign_at_pct,
            "manager_alert_at_pct": self.manager_alert_at_pct,
        }
