"""
Lead SLA Platform
Notification Service.

Central service for creating and querying in-app notifications. SLA
escalations and autopilot handovers create their records here inside the
caller's transaction (``commit=False``); the HTTP surface reads and marks them.
"""

from datetime import datetime, timezone

from sqlalchemy import func, select

from app.core.exceptions import NotFoundError
from app.models import db
from app.models.notification import Notification
from app.models.workspace import Membership


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, workspace_id, user_id, type, title, body="",
               entity_type="lead", entity_id=None, commit=True):
        """
        Create a single notification record.

        Args:
            commit: False when the caller owns the transaction (sweeps, replies).

        Returns:
            The created Notification instance (flushed, committed if requested).
        """
        notif = Notification(
            workspace_id=workspace_id,
            user_id=user_id,
            type=type,
            title=title,
            body=body,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return notif

    @staticmethod
    def broadcast_to_role(*, workspace_id, role, type, title, body="",
                          entity_type="lead", entity_id=None, commit=True):
        """
        Send a notification to every ACTIVE member with ``role``.

        Returns:
            List of created Notification instances.
        """
        stmt = select(Membership.user_id).where(
            Membership.workspace_id == workspace_id,
            Membership.role == role,
            Membership.status == "ACTIVE",
        ).order_by(Membership.id)
        user_ids = db.session.execute(stmt).scalars().all()

        notifications = []
        for user_id in user_ids:
            notif = Notification(
                workspace_id=workspace_id,
                user_id=user_id,
                type=type,
                title=title,
                body=body,
                entity_type=entity_type,
                entity_id=entity_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        if commit:
            db.session.commit()
        else:
            db.session.flush()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(workspace_id, user_id, unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a user, newest first.
        """
        base = select(Notification).where(
            Notification.workspace_id == workspace_id,
            Notification.user_id == user_id,
        )
        if unread_only:
            base = base.where(Notification.is_read == False)  # noqa: E712
        total = db.session.execute(
            select(func.count()).select_from(base.subquery())
        ).scalar()
        items = db.session.execute(
            base.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    @staticmethod
    def unread_count(workspace_id, user_id):
        """Return count of unread notifications."""
        stmt = select(func.count(Notification.id)).where(
            Notification.workspace_id == workspace_id,
            Notification.user_id == user_id,
            Notification.is_read == False,  # noqa: E712
        )
        return db.session.execute(stmt).scalar()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(workspace_id, notification_id):
        """Mark a single notification as read."""
        stmt = select(Notification).where(
            Notification.id == notification_id,
            Notification.workspace_id == workspace_id,
        )
        notif = db.session.execute(stmt).scalar_one_or_none()
        if notif is None:
            raise NotFoundError("Notification", notification_id, workspace_id)
        notif.mark_read()
        db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(workspace_id, user_id):
        """Mark all notifications for a user as read."""
        stmt = select(Notification).where(
            Notification.workspace_id == workspace_id,
            Notification.user_id == user_id,
            Notification.is_read == False,  # noqa: E712
        )
        items = db.session.execute(stmt).scalars().all()
        now = datetime.now(timezone.utc)
        for notif in items:
            notif.is_read = True
            notif.read_at = now
        db.session.commit()
        return len(items)
