"""
Innovation Workflow Platform
Notification Service.

Central service for creating and querying in-app notifications.
Integrated with workflow events (approval pending, stage changed,
transition rejected, conversion recorded).

Writes are flushed, never committed: the caller owns the transaction.
"""

from datetime import datetime, timezone

from app.models import db
from app.models.notification import Notification
from app.models.workflow import RoleAssignment


def role_recipient(role: str) -> str:
    return f"role:{role}"


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", category="system", severity="info",
               recipient="all", entity_type="", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (flushed).
        """
        notif = Notification(
            recipient=recipient,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
        )
        db.session.add(notif)
        db.session.flush()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def _recipient_filter(recipient):
        roles = [
            role_recipient(ra.role)
            for ra in RoleAssignment.query.filter_by(user_id=recipient).all()
        ]
        targets = [recipient, "all"] + roles
        return Notification.recipient.in_(targets)

    @staticmethod
    def list_for_recipient(recipient="all", unread_only=False, limit=50, offset=0):
        """
        Retrieve notifications for a recipient, newest first.

        Includes broadcasts and notifications addressed to any role the
        recipient holds.
        """
        q = Notification.query.filter(NotificationService._recipient_filter(recipient))
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    @staticmethod
    def unread_count(recipient="all"):
        return (
            Notification.query
            .filter(NotificationService._recipient_filter(recipient))
            .filter_by(is_read=False)
            .count()
        )

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.flush()
        return notif

    @staticmethod
    def mark_all_read(recipient="all"):
        q = (
            Notification.query
            .filter(NotificationService._recipient_filter(recipient))
            .filter_by(is_read=False)
        )
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.flush()
        return count

    # ── Workflow Integration Helpers ──────────────────────────────────────

    @staticmethod
    def notify_approval_pending(*, request_id, entity_type, entity_id, gate_id, role):
        """Tell every holder of ``role`` that a decision is waiting on them."""
        return NotificationService.create(
            title=f"Approval needed: {entity_type} {gate_id}",
            message=f"Request #{request_id} is waiting for the {role} decision.",
            category="approval",
            severity="warning",
            recipient=role_recipient(role),
            entity_type=entity_type,
            entity_id=entity_id,
        )

    @staticmethod
    def notify_stage_changed(*, entity_type, entity_id, from_stage, to_stage, recipient="all"):
        return NotificationService.create(
            title=f"{entity_type} moved to {to_stage}",
            message=f"Stage changed from {from_stage} to {to_stage}.",
            category="stage",
            severity="info",
            recipient=recipient,
            entity_type=entity_type,
            entity_id=entity_id,
        )

    @staticmethod
    def notify_transition_rejected(*, entity_type, entity_id, from_stage, to_stage,
                                   request_id, recipient="all"):
        return NotificationService.create(
            title=f"{entity_type} transition to {to_stage} rejected",
            message=f"Approval request #{request_id} was rejected; stage stays at {from_stage}.",
            category="approval",
            severity="error",
            recipient=recipient,
            entity_type=entity_type,
            entity_id=entity_id,
        )

    @staticmethod
    def notify_conversion_recorded(*, source_type, source_id, target_type, target_id, recipient="all"):
        return NotificationService.create(
            title=f"{source_type} converted to {target_type}",
            message=f"{target_type} {target_id} was created from {source_type} {source_id}.",
            category="conversion",
            severity="success",
            recipient=recipient,
            entity_type=target_type,
            entity_id=target_id,
        )
