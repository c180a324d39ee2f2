"""
End-to-end flows through the workflow engine facade.

    A. Pilot approval chain rejected at the last step
    B. Completed pilot converted to a scaling plan exactly once
    C. Approved challenge feeding several pilots
"""

from app.models import db
from app.services import workflow_engine as wf
from app.services.conversion_eligibility import ConversionEligibilityEvaluator


def test_list_stages_and_gate():
    assert wf.list_stages("Challenge")[0] == "draft"
    assert wf.get_gate("Pilot", "monitoring", "evaluation") is None
    assert wf.get_gate("Pilot", "completed", "scaled").approvers == ("municipality_director", "gdisb_admin")


def test_pilot_rejected_at_last_approver(make_entity):
    pilot = make_entity("Pilot", "design")

    applied = wf.request_transition("Pilot", pilot.id, "design", "approval_pending")
    assert isinstance(applied, wf.Applied)

    pending = wf.request_transition("Pilot", pilot.id, "approval_pending", "approved")
    assert isinstance(pending, wf.PendingApproval)

    for role in ("technical_lead", "budget_officer", "municipality_director"):
        wf.submit_decision(pending.request_id, role, "approved")
    result = wf.submit_decision(pending.request_id, "gdisb_admin", "rejected")
    db.session.commit()

    assert result.request.status == "rejected"
    assert pilot.stage == "approval_pending"


def test_completed_pilot_converts_once(make_entity):
    pilot = make_entity("Pilot", "completed", fields={"recommendation": "scale"})
    fields = pilot.predicate_view()

    first = wf.evaluate_conversion("Pilot", pilot.id, fields, "ScalingPlan", [])
    assert (first.eligible, first.count, first.status) == (True, 0, "new")

    plan = make_entity("ScalingPlan", "draft")
    record = wf.record_conversion("Pilot", pilot.id, "ScalingPlan", plan.id, actor="u1")
    db.session.commit()

    second = wf.evaluate_conversion("Pilot", pilot.id, fields, "ScalingPlan", [record])
    assert (second.eligible, second.count, second.status) == (False, 1, "already_converted")


def test_challenge_feeds_many_pilots(make_entity):
    challenge = make_entity("Challenge", "approved")
    wf.convert(challenge, "Pilot", actor="u1")
    wf.convert(challenge, "Pilot", actor="u1")
    db.session.commit()

    records = [r.to_dict() for r in ConversionEligibilityEvaluator.records_for("Challenge", challenge.id)]
    result = wf.evaluate_conversion("Challenge", challenge.id, challenge.predicate_view(), "Pilot", records)
    assert (result.eligible, result.count, result.status) == (True, 2, "can_add_more")
