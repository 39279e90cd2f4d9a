"""
WorkspaceModel: Abstract base class for workspace-scoped models.

Every table that belongs to a single tenant workspace inherits from
WorkspaceModel instead of db.Model directly. This adds:
  - workspace_id FK column with index
  - Composite index macro helper
"""

from datetime import datetime, timezone

from app.models import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkspaceModel(db.Model):
    """Abstract base for workspace-scoped tables."""
    __abstract__ = True

    workspace_id = db.Column(
        db.Integer,
        db.ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    @classmethod
    def workspace_composite_index(cls, table_name, *extra_cols):
        """Build a (workspace_id, ...) composite index for ``__table_args__``."""
        name = f"ix_{table_name}_workspace_{'_'.join(extra_cols)}"
        cols = ("workspace_id",) + extra_cols
        return db.Index(name, *cols)
