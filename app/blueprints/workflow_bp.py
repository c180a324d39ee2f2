"""
Workflow configuration blueprint (read-only).

Endpoints:
    GET /api/v1/workflows                                   — all entity types
    GET /api/v1/workflows/<entity_type>/stages              — ordered stages
    GET /api/v1/workflows/<entity_type>/gates?from=&to=     — gates (or one gate)
    GET /api/v1/workflows/<entity_type>/stages/<stage>/next — available transitions
"""

from flask import Blueprint, jsonify, request

from app.core.exceptions import NotFoundError
from app.services.gate_registry import get_gate_registry
from app.utils.errors import register_error_handlers

workflow_bp = Blueprint("workflows", __name__, url_prefix="/api/v1")
register_error_handlers(workflow_bp)


@workflow_bp.route("/workflows", methods=["GET"])
def list_workflows():
    registry = get_gate_registry()
    return jsonify({
        "entity_types": registry.list_entity_types(),
        "workflows": registry.to_dict(),
    })


@workflow_bp.route("/workflows/<entity_type>/stages", methods=["GET"])
def list_stages(entity_type):
    definition = get_gate_registry().get_definition(entity_type)
    return jsonify({
        "entity_type": entity_type,
        "initial": definition.initial,
        "stages": list(definition.all_stages),
        "exception_stages": list(definition.exception_stages),
        "terminal": [s for s in definition.all_stages if s in definition.terminal],
    })


@workflow_bp.route("/workflows/<entity_type>/gates", methods=["GET"])
def list_gates(entity_type):
    """
    Without query params: every gate of the entity type.
    With ``from`` and ``to``: the gate on that edge, ``null`` when ungated.
    """
    registry = get_gate_registry()
    from_stage = request.args.get("from")
    to_stage = request.args.get("to")

    if from_stage and to_stage:
        gate = registry.get_gate(entity_type, from_stage, to_stage)
        return jsonify({
            "entity_type": entity_type,
            "from_stage": from_stage,
            "to_stage": to_stage,
            "transition_exists": registry.has_edge(entity_type, from_stage, to_stage),
            "gate": gate.to_dict() if gate else None,
        })

    return jsonify({
        "entity_type": entity_type,
        "gates": [g.to_dict() for g in registry.list_gates(entity_type)],
    })


@workflow_bp.route("/workflows/<entity_type>/stages/<stage>/next", methods=["GET"])
def next_stages(entity_type, stage):
    registry = get_gate_registry()
    if not registry.validate_stage(entity_type, stage):
        raise NotFoundError(resource=f"{entity_type} stage", resource_id=stage)
    return jsonify({
        "entity_type": entity_type,
        "stage": stage,
        "transitions": registry.next_stages(entity_type, stage),
    })
