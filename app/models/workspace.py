"""
Lead SLA Platform
Workspace domain models.

Models:
    - Workspace: tenant root
    - WorkspaceSettings: business-hours schedule, timezone and default flow
    - User: platform user (agent, manager, ...)
    - Membership: user ↔ workspace link with role, status and availability
"""

from app.models import db
from app.models.base import WorkspaceModel, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

MEMBERSHIP_ROLES = {"OWNER", "ADMIN", "MANAGER", "AGENT", "VIEWER"}
MEMBERSHIP_STATUSES = {"ACTIVE", "INVITED", "DISABLED"}
ASSIGNABLE_ROLES = ("AGENT", "MANAGER", "ADMIN", "OWNER")


class Workspace(db.Model):
    """Tenant root. Every lead, flow and scenario belongs to one workspace."""

    __tablename__ = "workspaces"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    settings = db.relationship(
        "WorkspaceSettings", back_populates="workspace", uselist=False, cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Workspace {self.id}: {self.name}>"


class WorkspaceSettings(db.Model):
    """Per-workspace SLA clock configuration.

    ``schedule`` is a JSON object keyed by ``mon``..``sun``, each value
    ``{"enabled": bool, "start": "HH:MM", "end": "HH:MM"}``. It is parsed
    defensively by ``business_hours.normalize_business_hours_config``.
    """

    __tablename__ = "workspace_settings"

    id = db.Column(db.Integer, primary_key=True)
    workspace_id = db.Column(
        db.Integer, db.ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    timezone = db.Column(db.String(64), nullable=True)
    business_hours_enabled = db.Column(db.Boolean, default=True, nullable=False)
    schedule = db.Column(db.JSON, nullable=True)
    default_flow_id = db.Column(
        db.Integer, db.ForeignKey("flows.id", ondelete="SET NULL"), nullable=True,
    )

    workspace = db.relationship("Workspace", back_populates="settings")

    def to_dict(self):
        return {
            "workspace_id": self.workspace_id,
            "timezone": self.timezone,
            "business_hours_enabled": self.business_hours_enabled,
            "schedule": self.schedule,
            "default_flow_id": self.default_flow_id,
        }


class User(db.Model):
    """Platform user. Workspace access goes through Membership."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=True)
    phone = db.Column(db.String(40), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {"id": self.id, "email": self.email, "name": self.name, "phone": self.phone}

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


class Membership(WorkspaceModel):
    """Role, status and availability of a user inside one workspace.

    Only ACTIVE, available memberships with an assignable role can receive
    leads from routing.
    """

    __tablename__ = "memberships"
    __table_args__ = (
        db.UniqueConstraint("workspace_id", "user_id", name="uq_membership_workspace_user"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False, default="AGENT")
    status = db.Column(db.String(20), nullable=False, default="ACTIVE")
    is_available = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    user = db.relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "user_id": self.user_id,
            "role": self.role,
            "status": self.status,
            "is_available": self.is_available,
        }
