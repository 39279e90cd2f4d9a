"""
Lead SLA Platform
SLA stage instance model.

One row per timer run of a stage for a lead. Status moves from RUNNING to
either STOPPED or BREACHED and never changes afterwards.
"""

from app.models import db
from app.models.base import WorkspaceModel, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

STAGE_RUNNING = "RUNNING"
STAGE_STOPPED = "STOPPED"
STAGE_BREACHED = "BREACHED"
STAGE_STATUSES = {STAGE_RUNNING, STAGE_STOPPED, STAGE_BREACHED}

STOP_REASON_DEADLINE = "deadline_exceeded"


class StageInstance(WorkspaceModel):
    """A running or finished SLA timer for one lead + stage."""

    __tablename__ = "sla_stage_instances"
    __table_args__ = (
        WorkspaceModel.workspace_composite_index("sla_stage_instances", "status", "due_at"),
        db.Index("ix_sla_stage_instances_lead_status", "lead_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    flow_id = db.Column(db.Integer, db.ForeignKey("flows.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_key = db.Column(db.String(60), nullable=False)
    started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    due_at = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=STAGE_RUNNING)
    stopped_at = db.Column(db.DateTime(timezone=True), nullable=True)
    breached_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stop_reason = db.Column(db.String(120), nullable=True)
    proof_event_id = db.Column(
        db.Integer, db.ForeignKey("event_log.id", ondelete="SET NULL"), nullable=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "flow_id": self.flow_id,
            "stage_key": self.stage_key,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
            "breached_at": self.breached_at.isoformat() if self.breached_at else None,
            "stop_reason": self.stop_reason,
            "proof_event_id": self.proof_event_id,
        }

    def __repr__(self):
        return f"<StageInstance {self.id}: lead={self.lead_id} {self.stage_key} {self.status}>"
