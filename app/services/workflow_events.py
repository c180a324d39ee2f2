"""
Workflow events and the in-process event bus.

Events are published synchronously, after the state change they describe has
been flushed. Subscribers run inside a savepoint: a failing subscriber is
logged and its writes are rolled back, the business operation is not.

Default subscribers:
    - audit writer  → AuditLog rows
    - notifier      → Notification rows

Usage:
    from app.services.workflow_events import StageChanged, event_bus

    event_bus.subscribe(StageChanged, my_handler)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import asdict, dataclass

from app.models import db
from app.models.audit import write_audit
from app.models.entity import Entity
from app.services.notification import NotificationService

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Events
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StageChanged:
    entity_type: str
    entity_id: str
    from_stage: str
    to_stage: str
    actor: str | None = None


@dataclass(frozen=True)
class ApprovalRequested:
    request_id: int
    entity_type: str
    entity_id: str
    gate_id: str
    pending_role: str
    actor: str | None = None


@dataclass(frozen=True)
class ApprovalAdvanced:
    request_id: int
    role: str
    outcome: str
    entity_type: str | None = None
    entity_id: str | None = None
    gate_id: str | None = None
    next_role: str | None = None
    actor: str | None = None


@dataclass(frozen=True)
class TransitionRejected:
    entity_type: str
    entity_id: str
    from_stage: str
    to_stage: str
    request_id: int
    requested_by: str | None = None
    actor: str | None = None


@dataclass(frozen=True)
class ConversionRecorded:
    source_type: str
    source_id: str
    target_type: str
    target_id: str
    rule_id: str | None = None
    actor: str | None = None


def event_name(event) -> str:
    return type(event).__name__


def event_to_dict(event) -> dict:
    return {"event": event_name(event), **asdict(event)}


# ═════════════════════════════════════════════════════════════════════════════
# Bus
# ═════════════════════════════════════════════════════════════════════════════


class EventBus:
    """Synchronous publish/subscribe keyed by event class."""

    def __init__(self):
        self._subscribers = defaultdict(list)

    def subscribe(self, event_type, handler) -> None:
        if handler not in self._subscribers[event_type]:
            self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type, handler) -> None:
        if handler in self._subscribers[event_type]:
            self._subscribers[event_type].remove(handler)

    def subscribers(self, event_type) -> list:
        return list(self._subscribers[event_type])

    def publish(self, event) -> None:
        for handler in self.subscribers(type(event)):
            try:
                with db.session.begin_nested():
                    handler(event)
            except Exception:
                logger.exception(
                    "Event subscriber %s failed for %s",
                    getattr(handler, "__name__", repr(handler)), event_name(event),
                    extra={"event_type": event_name(event)},
                )


event_bus = EventBus()


# ═════════════════════════════════════════════════════════════════════════════
# Default subscribers
# ═════════════════════════════════════════════════════════════════════════════


def audit_stage_changed(event: StageChanged) -> None:
    write_audit(
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        action="stage.changed",
        actor=event.actor,
        diff={"stage": {"old": event.from_stage, "new": event.to_stage}},
    )


def audit_approval_requested(event: ApprovalRequested) -> None:
    write_audit(
        entity_type="ApprovalRequest",
        entity_id=str(event.request_id),
        action="approval.opened",
        actor=event.actor,
        diff={
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "gate_id": event.gate_id,
            "pending_role": event.pending_role,
        },
    )


def audit_approval_advanced(event: ApprovalAdvanced) -> None:
    write_audit(
        entity_type="ApprovalRequest",
        entity_id=str(event.request_id),
        action=f"approval.{event.outcome}",
        actor=event.actor,
        diff={
            "role": event.role,
            "entity_type": event.entity_type,
            "entity_id": event.entity_id,
            "next_role": event.next_role,
        },
    )


def audit_transition_rejected(event: TransitionRejected) -> None:
    write_audit(
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        action="stage.transition_rejected",
        actor=event.actor,
        diff={
            "from_stage": event.from_stage,
            "to_stage": event.to_stage,
            "request_id": event.request_id,
        },
    )


def audit_conversion_recorded(event: ConversionRecorded) -> None:
    write_audit(
        entity_type=event.source_type,
        entity_id=event.source_id,
        action="conversion.recorded",
        actor=event.actor,
        diff={
            "target_type": event.target_type,
            "target_id": event.target_id,
            "rule_id": event.rule_id,
        },
    )


def notify_approval_requested(event: ApprovalRequested) -> None:
    NotificationService.notify_approval_pending(
        request_id=event.request_id,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        gate_id=event.gate_id,
        role=event.pending_role,
    )


def notify_approval_advanced(event: ApprovalAdvanced) -> None:
    # Only intermediate approvals hand the request to a new role.
    if event.outcome != "approved" or not event.next_role:
        return
    NotificationService.notify_approval_pending(
        request_id=event.request_id,
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        gate_id=event.gate_id,
        role=event.next_role,
    )


def notify_stage_changed(event: StageChanged) -> None:
    entity = db.session.get(Entity, event.entity_id)
    NotificationService.notify_stage_changed(
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        from_stage=event.from_stage,
        to_stage=event.to_stage,
        recipient=(entity.created_by if entity and entity.created_by else "all"),
    )


def notify_transition_rejected(event: TransitionRejected) -> None:
    NotificationService.notify_transition_rejected(
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        from_stage=event.from_stage,
        to_stage=event.to_stage,
        request_id=event.request_id,
        recipient=event.requested_by or "all",
    )


def notify_conversion_recorded(event: ConversionRecorded) -> None:
    NotificationService.notify_conversion_recorded(
        source_type=event.source_type,
        source_id=event.source_id,
        target_type=event.target_type,
        target_id=event.target_id,
        recipient=event.actor or "all",
    )


_DEFAULT_SUBSCRIBERS = [
    (StageChanged, audit_stage_changed),
    (StageChanged, notify_stage_changed),
    (ApprovalRequested, audit_approval_requested),
    (ApprovalRequested, notify_approval_requested),
    (ApprovalAdvanced, audit_approval_advanced),
    (ApprovalAdvanced, notify_approval_advanced),
    (TransitionRejected, audit_transition_rejected),
    (TransitionRejected, notify_transition_rejected),
    (ConversionRecorded, audit_conversion_recorded),
    (ConversionRecorded, notify_conversion_recorded),
]


def register_default_subscribers(bus: EventBus | None = None) -> EventBus:
    """Attach the audit writer and notifier. Safe to call more than once."""
    bus = bus or event_bus
    for event_type, handler in _DEFAULT_SUBSCRIBERS:
        bus.subscribe(event_type, handler)
    return bus
