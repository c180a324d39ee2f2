"""
Conversion eligibility tests.

Status labels:
    new               eligible, no prior conversion
    can_add_more      eligible, repeatable rule with prior conversions
    already_converted exclusive rule, one conversion exists
    not_eligible      no rule, or the predicate fails
"""

import pytest

from app.core.exceptions import (
    AtomicityViolation, ConversionNotAllowed, NotFoundError, UnknownEntityType, ValidationError,
)
from app.models import db
from app.models.conversion import ConversionRecord
from app.models.entity import Entity
from app.services.conversion_eligibility import ConversionEligibilityEvaluator
from app.services.conversion_rules import ConversionRule, FieldCondition, Predicate, get_rule_set


@pytest.fixture()
def evaluator():
    return ConversionEligibilityEvaluator()


def _records(source_type, source_id, target_type, n):
    return [
        {"source_type": source_type, "source_id": source_id, "target_type": target_type}
        for _ in range(n)
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Predicates
# ═════════════════════════════════════════════════════════════════════════════


class TestPredicates:
    @pytest.mark.parametrize("op, actual, expected, holds", [
        ("eq", "scale", "scale", True),
        ("eq", "iterate", "scale", False),
        ("ne", "iterate", "scale", True),
        ("in", "proven", ("pilot_ready", "proven"), True),
        ("in", "prototype", ("pilot_ready", "proven"), False),
        ("not_null", "sol-1", None, True),
        ("not_null", "", None, False),
        ("is_null", None, None, True),
        ("gte", 7, 6, True),
        ("gte", "5", 6, False),
        ("lte", 3, 3, True),
        ("gt", 3, 3, False),
        ("lt", 2, 3, True),
        ("gte", "abc", 6, False),
    ])
    def test_operators(self, op, actual, expected, holds):
        condition = FieldCondition(field="x", op=op, value=expected)
        assert condition.holds({"x": actual}) is holds

    def test_missing_field_fails_comparison(self):
        assert FieldCondition(field="trl", op="gte", value=6).holds({}) is False

    def test_stage_and_fields_combined(self):
        predicate = Predicate(
            stage_in=("completed",),
            conditions=(FieldCondition("recommendation", "eq", "scale"),),
        )
        assert predicate.holds({"stage": "completed", "recommendation": "scale"})
        assert not predicate.holds({"stage": "evaluation", "recommendation": "scale"})
        assert not predicate.holds({"stage": "completed", "recommendation": "iterate"})

    def test_soft_deleted_never_satisfies(self):
        predicate = Predicate(stage_in=("completed",))
        assert not predicate.holds({"stage": "completed", "is_deleted": True})

    def test_custom_stage_field(self):
        predicate = Predicate(stage_field="status", stage_in=("approved",))
        assert predicate.holds({"stage": "draft", "status": "approved"})

    def test_seed_target(self):
        rule = ConversionRule(
            id="r", source_type="RDProject", target_type="Solution", cardinality="exclusive",
            field_mapping=(("title", "title"), ("trl_current", "maturity_level"), ("absent", "absent")),
            source_link="rd_project_id",
        )
        seeded = rule.seed_target("rd-1", {"title": "Sensor", "trl_current": 7})
        assert seeded == {"title": "Sensor", "maturity_level": 7, "rd_project_id": "rd-1"}


# ═════════════════════════════════════════════════════════════════════════════
# Pure evaluation
# ═════════════════════════════════════════════════════════════════════════════


class TestEvaluate:
    def test_scenario_completed_pilot_to_scaling_plan(self, evaluator):
        fields = {"stage": "completed", "recommendation": "scale"}

        before = evaluator.evaluate("Pilot", "p1", fields, "ScalingPlan", [])
        assert (before.eligible, before.count, before.status) == (True, 0, "new")
        assert before.action == "convert"

        after = evaluator.evaluate("Pilot", "p1", fields, "ScalingPlan",
                                   _records("Pilot", "p1", "ScalingPlan", 1))
        assert (after.eligible, after.count, after.status) == (False, 1, "already_converted")
        assert after.action == "view_existing"

    def test_scenario_challenge_with_two_pilots(self, evaluator):
        result = evaluator.evaluate(
            "Challenge", "c1", {"stage": "approved"}, "Pilot",
            _records("Challenge", "c1", "Pilot", 2),
        )
        assert (result.eligible, result.count, result.status) == (True, 2, "can_add_more")
        assert result.action == "convert"

    def test_no_rule(self, evaluator):
        result = evaluator.evaluate("Pilot", "p1", {"stage": "completed"}, "Challenge", [])
        assert (result.eligible, result.status, result.reason) == (False, "not_eligible", "no_rule")
        assert result.rule_id is None

    def test_predicate_failed(self, evaluator):
        result = evaluator.evaluate(
            "Pilot", "p1", {"stage": "completed", "recommendation": "iterate"}, "ScalingPlan", [],
        )
        assert (result.eligible, result.status, result.reason) == (False, "not_eligible", "predicate_failed")
        assert result.rule_id == "pilot_to_scaling"

    def test_records_of_other_sources_ignored(self, evaluator):
        records = _records("Pilot", "p2", "ScalingPlan", 1) + _records("Pilot", "p1", "Contract", 1)
        result = evaluator.evaluate(
            "Pilot", "p1", {"stage": "completed", "recommendation": "scale"}, "ScalingPlan", records,
        )
        assert (result.count, result.status) == (0, "new")

    def test_solution_to_pilot_fields_only(self, evaluator):
        ok = {"stage": "published", "maturity_level": "proven", "is_verified": True}
        assert evaluator.evaluate("Solution", "s1", ok, "Pilot", []).eligible
        unverified = dict(ok, is_verified=False)
        assert not evaluator.evaluate("Solution", "s1", unverified, "Pilot", []).eligible


# ═════════════════════════════════════════════════════════════════════════════
# Persisted records
# ═════════════════════════════════════════════════════════════════════════════


class TestRecordConversion:
    def test_record_then_already_converted(self, evaluator, make_entity):
        pilot = make_entity("Pilot", "completed", fields={"recommendation": "scale"})
        plan = make_entity("ScalingPlan", "draft")

        assert evaluator.evaluate_entity(pilot, "ScalingPlan").status == "new"
        record = evaluator.record_conversion("Pilot", pilot.id, "ScalingPlan", plan.id, actor="u1")
        db.session.commit()

        assert record.rule_id == "pilot_to_scaling"
        result = evaluator.evaluate_entity(pilot, "ScalingPlan")
        assert (result.eligible, result.count, result.status) == (False, 1, "already_converted")
        assert [r.target_id for r in evaluator.derived(pilot)] == [plan.id]

    def test_second_exclusive_record_refused(self, evaluator, make_entity):
        pilot = make_entity("Pilot", "completed", fields={"recommendation": "scale"})
        first = make_entity("ScalingPlan", "draft")
        second = make_entity("ScalingPlan", "draft")
        evaluator.record_conversion("Pilot", pilot.id, "ScalingPlan", first.id)
        db.session.commit()

        with pytest.raises(ConversionNotAllowed) as exc_info:
            evaluator.record_conversion("Pilot", pilot.id, "ScalingPlan", second.id)
        assert exc_info.value.status_label == "already_converted"
        db.session.commit()
        assert [r.target_id for r in evaluator.derived(pilot)] == [first.id]

    def test_repeatable_record_accepts_many_targets(self, evaluator, make_entity):
        challenge = make_entity("Challenge", "approved")
        for _ in range(2):
            evaluator.record_conversion("Challenge", challenge.id, "Pilot", make_entity("Pilot", "design").id)
        assert evaluator.evaluate_entity(challenge, "Pilot").count == 2

    def test_missing_target_is_atomicity_violation(self, evaluator, make_entity):
        pilot = make_entity("Pilot", "completed", fields={"recommendation": "scale"})
        with pytest.raises(AtomicityViolation):
            evaluator.record_conversion("Pilot", pilot.id, "ScalingPlan", "no-such-id")
        assert ConversionRecord.query.count() == 0

    def test_wrong_target_type_is_atomicity_violation(self, evaluator, make_entity):
        pilot = make_entity("Pilot", "completed", fields={"recommendation": "scale"})
        contract = make_entity("Contract", "draft")
        with pytest.raises(AtomicityViolation):
            evaluator.record_conversion("Pilot", pilot.id, "ScalingPlan", contract.id)

    def test_target_recorded_twice_is_atomicity_violation(self, evaluator, make_entity):
        challenge = make_entity("Challenge", "approved")
        pilot = make_entity("Pilot", "design")
        evaluator.record_conversion("Challenge", challenge.id, "Pilot", pilot.id)
        with pytest.raises(AtomicityViolation):
            evaluator.record_conversion("Challenge", challenge.id, "Pilot", pilot.id)
        assert ConversionRecord.query.count() == 1

    def test_summary_covers_every_rule(self, evaluator, make_entity):
        challenge = make_entity("Challenge", "approved")
        summary = {item["target_type"]: item for item in evaluator.summary(challenge)}
        assert set(summary) == {r.target_type for r in get_rule_set().rules_for_source("Challenge")}
        assert summary["Pilot"]["status"] == "new"
        assert summary["PolicyRecommendation"]["status"] == "not_eligible"


# ═════════════════════════════════════════════════════════════════════════════
# Atomic convert
# ═════════════════════════════════════════════════════════════════════════════


class TestConvert:
    def test_convert_creates_target_and_record(self, evaluator, make_entity):
        pilot = make_entity("Pilot", "completed", title="Smart lighting",
                            fields={"recommendation": "scale", "sector": "energy"})
        outcome = evaluator.convert(pilot, "ScalingPlan", actor="u1")
        db.session.commit()

        target = outcome.target
        assert outcome.status_before == "new"
        assert target.entity_type == "ScalingPlan"
        assert target.stage == "draft"
        assert target.title == "Smart lighting"
        assert target.fields["pilot_id"] == pilot.id
        assert target.fields["sector"] == "energy"
        assert outcome.record.target_id == target.id
        assert evaluator.evaluate_entity(pilot, "ScalingPlan").status == "already_converted"

    def test_repeatable_convert(self, evaluator, make_entity):
        challenge = make_entity("Challenge", "approved")
        evaluator.convert(challenge, "Pilot")
        evaluator.convert(challenge, "Pilot", title="Second pilot")
        db.session.commit()

        result = evaluator.evaluate_entity(challenge, "Pilot")
        assert (result.eligible, result.count, result.status) == (True, 2, "can_add_more")

    def test_second_exclusive_convert_refused(self, evaluator, make_entity):
        pilot = make_entity("Pilot", "completed", fields={"recommendation": "scale"})
        evaluator.convert(pilot, "ScalingPlan")
        db.session.commit()

        with pytest.raises(ConversionNotAllowed) as exc_info:
            evaluator.convert(pilot, "ScalingPlan")
        assert exc_info.value.status_label == "already_converted"
        assert Entity.query.filter_by(entity_type="ScalingPlan").count() == 1
        assert ConversionRecord.query.count() == 1

    def test_ineligible_convert_leaves_nothing(self, evaluator, make_entity):
        pilot = make_entity("Pilot", "evaluation", fields={"recommendation": "scale"})
        with pytest.raises(ConversionNotAllowed):
            evaluator.convert(pilot, "ScalingPlan")
        db.session.commit()
        assert Entity.query.filter_by(entity_type="ScalingPlan").count() == 0
        assert ConversionRecord.query.count() == 0

    def test_failed_record_rolls_back_target(self, evaluator, make_entity, monkeypatch):
        pilot = make_entity("Pilot", "completed", fields={"recommendation": "scale"})

        def _boom(*args, **kwargs):
            raise AtomicityViolation("record write failed")

        monkeypatch.setattr(evaluator, "_insert_record", _boom)
        with pytest.raises(AtomicityViolation):
            evaluator.convert(pilot, "ScalingPlan")
        db.session.commit()
        assert Entity.query.filter_by(entity_type="ScalingPlan").count() == 0

    def test_deleted_source(self, evaluator, make_entity):
        pilot = make_entity("Pilot", "completed", fields={"recommendation": "scale"})
        pilot.is_deleted = True
        db.session.commit()
        with pytest.raises(NotFoundError):
            evaluator.convert(pilot, "ScalingPlan")

    def test_unknown_target_type(self, evaluator, make_entity):
        pilot = make_entity("Pilot", "completed")
        with pytest.raises(UnknownEntityType):
            evaluator.convert(pilot, "Rocket")

    def test_overrides_cannot_replace_back_link(self, evaluator, make_entity):
        pilot = make_entity("Pilot", "completed", fields={"recommendation": "scale"})
        outcome = evaluator.convert(pilot, "ScalingPlan", extra_fields={"pilot_id": "other", "budget": 10})
        assert outcome.target.fields["pilot_id"] == pilot.id
        assert outcome.target.fields["budget"] == 10

    def test_overrides_cannot_set_engine_fields(self, evaluator, make_entity):
        pilot = make_entity("Pilot", "completed", fields={"recommendation": "scale"})
        with pytest.raises(ValidationError):
            evaluator.convert(pilot, "ScalingPlan", extra_fields={"stage": "approved"})
        db.session.commit()
        assert Entity.query.filter_by(entity_type="ScalingPlan").count() == 0
