"""
Lead SLA Platform
Lead domain models.

Models:
    - Lead: inbound prospect with current owner
    - LeadIdentity: contact fields captured at ingestion
    - EventLog: append-only audit trail, proof store and idempotency marker
    - OutboundMessage: queued message awaiting delivery by a channel worker
"""

from app.models import db
from app.models.base import WorkspaceModel, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

LEAD_SOURCE_TYPES = {"WEBHOOK", "MANUAL", "FACEBOOK", "EMBED_FORM", "WHATSAPP"}
LEAD_STATUSES = {"NEW", "OPEN", "QUALIFIED", "NOT_QUALIFIED", "SPAM", "ARCHIVED"}

OUTBOUND_CHANNELS = {"WHATSAPP"}
OUTBOUND_STATUSES = {"QUEUED", "SENT", "FAILED"}

# Event types written to EventLog.
EVENT_LEAD_RECEIVED = "lead_received"
EVENT_ASSIGNED = "assigned"
EVENT_MESSAGE_SENT = "message_sent"
EVENT_REPLY_RECEIVED = "reply_received"
EVENT_MEETING_CREATED = "meeting_created"
EVENT_CALL_LOGGED = "call_logged"
EVENT_MANUAL_PROOF_NOTE = "manual_proof_note"
EVENT_REMINDER_SENT = "reminder_sent"
EVENT_REASSIGNED = "reassigned"
EVENT_MANAGER_ALERT = "manager_alert"
EVENT_AUTOPILOT_STARTED = "autopilot_started"
EVENT_AUTOPILOT_INBOUND = "autopilot_inbound"
EVENT_AUTOPILOT_AI_PLANNED = "autopilot_ai_planned"
EVENT_AUTOPILOT_HANDOVER = "autopilot_handover"
EVENT_MESSAGE_QUEUED = "message_queued"
EVENT_MESSAGE_BLOCKED = "message_blocked"
EVENT_HANDOVER_NOTIFIED = "handover_notified"

PROOF_EVENT_TYPES = (
    EVENT_MESSAGE_SENT,
    EVENT_REPLY_RECEIVED,
    EVENT_MEETING_CREATED,
    EVENT_CALL_LOGGED,
    EVENT_MANUAL_PROOF_NOTE,
)

# Channel-specific aliases recorded by integrations → canonical proof type.
PROOF_TYPE_ALIASES = {
    "whatsapp_sent": EVENT_MESSAGE_SENT,
    "email_sent": EVENT_MESSAGE_SENT,
    "meeting_booked": EVENT_MEETING_CREATED,
}


class Lead(WorkspaceModel):
    """Inbound prospect. ``owner_user_id`` is maintained by routing."""

    __tablename__ = "leads"
    __table_args__ = (
        db.UniqueConstraint(
            "workspace_id", "source_type", "external_id", name="uq_lead_workspace_source_external",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    source_type = db.Column(db.String(20), nullable=False, default="MANUAL")
    external_id = db.Column(db.String(120), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="NEW")
    first_name = db.Column(db.String(120), nullable=True)
    last_name = db.Column(db.String(120), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    source = db.Column(db.String(120), nullable=True)
    owner_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    identity = db.relationship(
        "LeadIdentity", back_populates="lead", uselist=False, cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "source_type": self.source_type,
            "external_id": self.external_id,
            "status": self.status,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "source": self.source,
            "owner_user_id": self.owner_user_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Lead {self.id} ws={self.workspace_id}>"


class LeadIdentity(db.Model):
    """Contact fields as received from the source (one row per lead)."""

    __tablename__ = "lead_identities"

    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(
        db.Integer, db.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    name = db.Column(db.String(200), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    company = db.Column(db.String(200), nullable=True)
    meta = db.Column(db.JSON, nullable=True)

    lead = db.relationship("Lead", back_populates="identity")

    def to_dict(self):
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "company": self.company,
            "meta": self.meta or {},
        }


class EventLog(WorkspaceModel):
    """
    Append-only lead event.

    Escalation tiers check "does an event of type X exist since the stage
    started" against this table, so rows are never updated or deleted.
    """

    __tablename__ = "event_log"
    __table_args__ = (
        db.Index("ix_event_log_lead_type_occurred", "lead_id", "event_type", "occurred_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = db.Column(db.String(60), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "event_type": self.event_type,
            "payload": self.payload or {},
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
        }

    def __repr__(self):
        return f"<EventLog {self.id}: {self.event_type} lead={self.lead_id}>"


class OutboundMessage(WorkspaceModel):
    """Message queued for a lead. A channel worker moves it to SENT/FAILED."""

    __tablename__ = "outbound_messages"

    id = db.Column(db.Integer, primary_key=True)
    lead_id = db.Column(db.Integer, db.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True)
    channel = db.Column(db.String(20), nullable=False, default="WHATSAPP")
    to_phone = db.Column(db.String(40), nullable=False)
    text = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="QUEUED", index=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "channel": self.channel,
            "to_phone": self.to_phone,
            "text": self.text,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
