"""
Workflow engine facade.

The operations the host calls, as plain functions over the configured
registry and rule set:

    list_stages(entity_type)
    get_gate(entity_type, from_stage, to_stage)
    request_transition(entity_type, entity_id, from_stage, to_stage)
    submit_decision(request_id, role, outcome)
    evaluate_conversion(source_type, source_id, source_fields, target_type, existing_records)
    record_conversion(source_type, source_id, target_type, target_id)

All of them need an application context. None of them commits.
"""

from app.services.conversion_eligibility import (
    ConversionEligibilityEvaluator,
    ConversionOutcome,
    EligibilityResult,
)
from app.services.gate_registry import Gate, get_gate_registry
from app.services.stage_transition import (
    Applied,
    DecisionResult,
    PendingApproval,
    StageTransitionEngine,
)

__all__ = [
    "Applied",
    "PendingApproval",
    "DecisionResult",
    "EligibilityResult",
    "ConversionOutcome",
    "list_stages",
    "get_gate",
    "request_transition",
    "submit_decision",
    "evaluate_conversion",
    "record_conversion",
    "convert",
]


def list_stages(entity_type: str) -> list[str]:
    return get_gate_registry().list_stages(entity_type)


def get_gate(entity_type: str, from_stage: str, to_stage: str) -> Gate | None:
    return get_gate_registry().get_gate(entity_type, from_stage, to_stage)


def request_transition(entity_type: str, entity_id: str, from_stage: str, to_stage: str,
                       actor: str | None = None) -> Applied | PendingApproval:
    return StageTransitionEngine().request_transition(
        entity_type, entity_id, from_stage, to_stage, actor=actor,
    )


def submit_decision(request_id: int, role: str, outcome: str, actor: str | None = None,
                    comment: str | None = None) -> DecisionResult:
    return StageTransitionEngine().submit_decision(
        request_id, role, outcome, actor=actor, comment=comment,
    )


def evaluate_conversion(source_type: str, source_id: str, source_fields: dict,
                        target_type: str, existing_records) -> EligibilityResult:
    return ConversionEligibilityEvaluator().evaluate(
        source_type, source_id, source_fields, target_type, existing_records,
    )


def record_conversion(source_type: str, source_id: str, target_type: str, target_id: str,
                      actor: str | None = None):
    return ConversionEligibilityEvaluator().record_conversion(
        source_type, source_id, target_type, target_id, actor=actor,
    )


def convert(source, target_type: str, actor: str | None = None, title: str | None = None,
            extra_fields: dict | None = None) -> ConversionOutcome:
    return ConversionEligibilityEvaluator().convert(
        source, target_type, actor=actor, title=title, extra_fields=extra_fields,
    )
