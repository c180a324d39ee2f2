"""
Workflow event tests: the default audit writer and notifier subscribers,
and isolation of failing subscribers.
"""

import pytest

from app.models import db
from app.models.audit import AuditLog
from app.models.notification import Notification
from app.services.conversion_eligibility import ConversionEligibilityEvaluator
from app.services.notification import NotificationService
from app.services.stage_transition import StageTransitionEngine
from app.services.workflow_events import (
    EventBus,
    StageChanged,
    event_bus,
    event_to_dict,
    register_default_subscribers,
)


def _actions(entity_id=None):
    q = AuditLog.query
    if entity_id is not None:
        q = q.filter_by(entity_id=str(entity_id))
    return [log.action for log in q.order_by(AuditLog.id).all()]


class TestEventBus:
    def test_default_subscribers_registered_once(self):
        before = len(event_bus.subscribers(StageChanged))
        register_default_subscribers()
        assert len(event_bus.subscribers(StageChanged)) == before == 2

    def test_failing_subscriber_does_not_break_transition(self, make_entity):
        bus = register_default_subscribers(EventBus())
        calls = []

        def _broken(event):
            calls.append(event)
            raise RuntimeError("mail server down")

        bus.subscribe(StageChanged, _broken)
        pilot = make_entity("Pilot", "monitoring")
        StageTransitionEngine(bus=bus).request_transition("Pilot", pilot.id, "monitoring", "evaluation")
        db.session.commit()

        assert len(calls) == 1
        assert pilot.stage == "evaluation"
        assert "stage.changed" in _actions(pilot.id)

    def test_failing_subscriber_changes_are_rolled_back(self, make_entity):
        bus = EventBus()

        def _half_done(event):
            NotificationService.create(title="partial", recipient="nobody")
            raise RuntimeError("after writing")

        bus.subscribe(StageChanged, _half_done)
        pilot = make_entity("Pilot", "monitoring")
        StageTransitionEngine(bus=bus).request_transition("Pilot", pilot.id, "monitoring", "evaluation")
        db.session.commit()

        assert Notification.query.filter_by(title="partial").count() == 0
        assert pilot.stage == "evaluation"

    def test_unsubscribe(self):
        bus = EventBus()
        handler = lambda event: None  # noqa: E731
        bus.subscribe(StageChanged, handler)
        bus.unsubscribe(StageChanged, handler)
        assert bus.subscribers(StageChanged) == []

    def test_event_to_dict(self):
        event = StageChanged(entity_type="Pilot", entity_id="p1", from_stage="a", to_stage="b", actor="u")
        data = event_to_dict(event)
        assert data["event"] == "StageChanged"
        assert data["to_stage"] == "b"


class TestAuditTrail:
    def test_stage_change_audited(self, make_entity):
        pilot = make_entity("Pilot", "monitoring")
        StageTransitionEngine().request_transition("Pilot", pilot.id, "monitoring", "evaluation", actor="u1")
        db.session.commit()

        log = AuditLog.query.filter_by(entity_id=pilot.id, action="stage.changed").one()
        assert log.actor == "u1"
        assert log.diff == {"stage": {"old": "monitoring", "new": "evaluation"}}

    def test_approval_flow_audited(self, make_entity):
        pilot = make_entity("Pilot", "approval_pending")
        engine = StageTransitionEngine()
        pending = engine.request_transition("Pilot", pilot.id, "approval_pending", "approved")
        engine.submit_decision(pending.request_id, "technical_lead", "approved")
        engine.submit_decision(pending.request_id, "budget_officer", "rejected")
        db.session.commit()

        assert _actions(pending.request_id) == ["approval.opened", "approval.approved", "approval.rejected"]
        assert "stage.transition_rejected" in _actions(pilot.id)
        assert "stage.changed" not in _actions(pilot.id)

    def test_conversion_audited(self, make_entity):
        challenge = make_entity("Challenge", "approved")
        outcome = ConversionEligibilityEvaluator().convert(challenge, "Pilot", actor="u1")
        db.session.commit()

        log = AuditLog.query.filter_by(entity_id=challenge.id, action="conversion.recorded").one()
        assert log.diff["target_id"] == outcome.target.id
        assert log.diff["rule_id"] == "challenge_to_pilot"


class TestNotifications:
    def test_pending_role_notified_at_each_step(self, make_entity, pilot_approvers):
        pilot = make_entity("Pilot", "approval_pending")
        engine = StageTransitionEngine()
        pending = engine.request_transition("Pilot", pilot.id, "approval_pending", "approved")
        db.session.commit()

        tl_items, _ = NotificationService.list_for_recipient(pilot_approvers["technical_lead"])
        assert any(n.category == "approval" for n in tl_items)
        assert NotificationService.unread_count(pilot_approvers["budget_officer"]) == 0

        engine.submit_decision(pending.request_id, "technical_lead", "approved")
        db.session.commit()
        assert NotificationService.unread_count(pilot_approvers["budget_officer"]) == 1

    def test_requester_told_about_rejection(self, make_entity):
        pilot = make_entity("Pilot", "approval_pending")
        engine = StageTransitionEngine()
        pending = engine.request_transition("Pilot", pilot.id, "approval_pending", "approved", actor="owner")
        engine.submit_decision(pending.request_id, "technical_lead", "rejected")
        db.session.commit()

        items, _ = NotificationService.list_for_recipient("owner")
        assert [n.severity for n in items if n.category == "approval"] == ["error"]

    def test_creator_told_about_stage_change(self, make_entity):
        pilot = make_entity("Pilot", "monitoring", created_by="owner")
        StageTransitionEngine().request_transition("Pilot", pilot.id, "monitoring", "evaluation")
        db.session.commit()

        items, total = NotificationService.list_for_recipient("owner")
        assert total == 1
        assert items[0].category == "stage"
        assert items[0].entity_id == pilot.id

    def test_mark_all_read(self, make_entity):
        pilot = make_entity("Pilot", "monitoring", created_by="owner")
        engine = StageTransitionEngine()
        engine.request_transition("Pilot", pilot.id, "monitoring", "evaluation")
        engine.request_transition("Pilot", pilot.id, "evaluation", "completed")
        db.session.commit()

        assert NotificationService.unread_count("owner") == 2
        assert NotificationService.mark_all_read("owner") == 2
        db.session.commit()
        assert NotificationService.unread_count("owner") == 0
