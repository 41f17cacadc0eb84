"""
Admissions Workflow Engine
Notification Service.

Creates and queries in-app notifications. Stage-entry notifications are
driven by the ``notification_triggers`` of the stage an application enters
(see services/collaborators.NotificationSink).
"""

from admissions.models import db
from admissions.models.notification import (
    NOTIFICATION_CATEGORIES,
    NOTIFICATION_SEVERITIES,
    Notification,
)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def broadcast(*, title, message="", category="system", severity="info",
                  entity_type="", entity_id=None, template=None, channels=None,
                  recipients=None):
        """
        Send a notification to multiple recipients (or 'all' if none given).

        Returns:
            List of created Notification instances (already committed).

        Raises:
            ValueError: unknown category or severity.
        """
        if category not in NOTIFICATION_CATEGORIES:
            raise ValueError(f"Unknown notification category: {category!r}")
        if severity not in NOTIFICATION_SEVERITIES:
            raise ValueError(f"Unknown notification severity: {severity!r}")
        targets = recipients or ["all"]
        notifications = []
        for r in targets:
            notif = Notification(
                recipient=r,
                title=title,
                message=message,
                category=category,
                severity=severity,
                template=template,
                channels=list(channels or ["in_app"]),
                entity_type=entity_type,
                entity_id=entity_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_entity(entity_type, entity_id, unread_only=False, limit=50, offset=0):
        """Notifications attached to one entity, newest first."""
        q = Notification.query.filter_by(entity_type=entity_type, entity_id=entity_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif
