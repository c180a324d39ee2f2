"""
Entity & stage transition blueprint.

Routes:
  POST   /entities                        – create at the initial stage
  GET    /entities                        – list (entity_type, stage filters)
  GET    /entities/<id>                   – detail + available transitions
  PUT    /entities/<id>                   – update title / fields (never stage)
  DELETE /entities/<id>                   – soft delete
  POST   /entities/<id>/transition        – request a stage change
  GET    /entities/<id>/transitions       – available transitions
  GET    /entities/<id>/approvals         – approval request history

Transition responses:
  200 applied · 202 pending approval · 409 stale stage · 422 invalid transition
"""

import logging

from flask import Blueprint, jsonify, request

from app.blueprints import paginate_query
from app.services import entity_service
from app.services.approval_chain import ApprovalChainTracker
from app.services.stage_transition import Applied, StageTransitionEngine
from app.utils.errors import E, api_error, register_error_handlers
from app.utils.helpers import current_user, db_commit_or_error, parse_bool

logger = logging.getLogger(__name__)

entity_bp = Blueprint("entities", __name__, url_prefix="/api/v1")
register_error_handlers(entity_bp)


# ═════════════════════════════════════════════════════════════════════════════
# ENTITY CRUD
# ═════════════════════════════════════════════════════════════════════════════

@entity_bp.route("/entities", methods=["POST"])
def create_entity():
    """Body: { entity_type, title, fields }"""
    data = request.get_json(silent=True) or {}
    entity_type = (data.get("entity_type") or "").strip()
    title = (data.get("title") or "").strip()

    if not entity_type:
        return api_error(E.VALIDATION_REQUIRED, "entity_type is required")
    if not title:
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    if "stage" in data:
        return api_error(E.VALIDATION_INVALID, "stage is set by the workflow, not on create")

    entity = entity_service.create_entity(
        entity_type, title, fields=data.get("fields"), created_by=current_user(),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(entity.to_dict()), 201


@entity_bp.route("/entities", methods=["GET"])
def list_entities():
    q = entity_service.list_entities(
        entity_type=request.args.get("entity_type"),
        stage=request.args.get("stage"),
        include_deleted=parse_bool(request.args.get("include_deleted")),
    )
    items, total = paginate_query(q)
    return jsonify({"items": [e.to_dict() for e in items], "total": total})


@entity_bp.route("/entities/<entity_id>", methods=["GET"])
def get_entity(entity_id):
    entity = entity_service.get_entity(entity_id)
    result = entity.to_dict()
    result["available_transitions"] = StageTransitionEngine().available_transitions(entity)
    return jsonify(result)


@entity_bp.route("/entities/<entity_id>", methods=["PUT"])
def update_entity(entity_id):
    """Body: { title?, fields? } — fields are merged, null removes a key."""
    data = request.get_json(silent=True) or {}
    if "stage" in data or "stage_version" in data:
        return api_error(
            E.VALIDATION_INVALID,
            "stage changes go through POST /entities/<id>/transition",
        )

    entity = entity_service.get_entity(entity_id)
    entity_service.update_entity(
        entity, title=data.get("title"), fields=data.get("fields"), actor=current_user(),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(entity.to_dict())


@entity_bp.route("/entities/<entity_id>", methods=["DELETE"])
def delete_entity(entity_id):
    entity = entity_service.get_entity(entity_id)
    entity_service.soft_delete_entity(entity, actor=current_user())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": True, "id": entity_id})


# ═════════════════════════════════════════════════════════════════════════════
# STAGE TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════

@entity_bp.route("/entities/<entity_id>/transition", methods=["POST"])
def request_transition(entity_id):
    """Body: { from_stage, to_stage }"""
    data = request.get_json(silent=True) or {}
    from_stage = data.get("from_stage")
    to_stage = data.get("to_stage")
    if not from_stage or not to_stage:
        return api_error(E.VALIDATION_REQUIRED, "from_stage and to_stage are required")

    entity = entity_service.get_entity(entity_id)
    result = StageTransitionEngine().request_transition(
        entity.entity_type, entity.id, from_stage, to_stage, actor=current_user(),
    )
    err = db_commit_or_error()
    if err:
        return err

    status = 200 if isinstance(result, Applied) else 202
    return jsonify({**result.to_dict(), "entity": entity.to_dict()}), status


@entity_bp.route("/entities/<entity_id>/transitions", methods=["GET"])
def available_transitions(entity_id):
    entity = entity_service.get_entity(entity_id)
    return jsonify({
        "entity_id": entity.id,
        "stage": entity.stage,
        "transitions": StageTransitionEngine().available_transitions(entity),
    })


@entity_bp.route("/entities/<entity_id>/approvals", methods=["GET"])
def approval_history(entity_id):
    entity = entity_service.get_entity(entity_id, include_deleted=True)
    requests = ApprovalChainTracker.history(entity.entity_type, entity.id)
    return jsonify([r.to_dict() for r in requests])
