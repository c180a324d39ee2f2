"""
Conversion blueprint.

Routes:
  GET  /conversions/rules?source_type=               – configured rules
  GET  /entities/<id>/conversions                    – evaluation against every rule
  GET  /entities/<id>/conversions/<target_type>      – single evaluation
  POST /entities/<id>/conversions/<target_type>      – create target + record (201)
  GET  /entities/<id>/derived                        – conversion records
"""

import logging

from flask import Blueprint, jsonify, request

from app.services import entity_service
from app.services.conversion_eligibility import ConversionEligibilityEvaluator
from app.services.conversion_rules import get_rule_set
from app.utils.errors import register_error_handlers
from app.utils.helpers import current_user, db_commit_or_error

logger = logging.getLogger(__name__)

conversion_bp = Blueprint("conversions", __name__, url_prefix="/api/v1")
register_error_handlers(conversion_bp)


@conversion_bp.route("/conversions/rules", methods=["GET"])
def list_rules():
    rule_set = get_rule_set()
    source_type = request.args.get("source_type")
    rules = rule_set.rules_for_source(source_type) if source_type else rule_set.all_rules()
    return jsonify([r.to_dict() for r in rules])


@conversion_bp.route("/entities/<entity_id>/conversions", methods=["GET"])
def conversion_summary(entity_id):
    entity = entity_service.get_entity(entity_id)
    return jsonify({
        "entity_id": entity.id,
        "entity_type": entity.entity_type,
        "conversions": ConversionEligibilityEvaluator().summary(entity),
    })


@conversion_bp.route("/entities/<entity_id>/conversions/<target_type>", methods=["GET"])
def evaluate_conversion(entity_id, target_type):
    entity = entity_service.get_entity(entity_id)
    result = ConversionEligibilityEvaluator().evaluate_entity(entity, target_type)
    return jsonify(result.to_dict())


@conversion_bp.route("/entities/<entity_id>/conversions/<target_type>", methods=["POST"])
def convert(entity_id, target_type):
    """Body (optional): { title, fields } — overrides for the seeded target."""
    data = request.get_json(silent=True) or {}
    entity = entity_service.get_entity(entity_id)

    outcome = ConversionEligibilityEvaluator().convert(
        entity, target_type,
        actor=current_user(),
        title=(data.get("title") or "").strip() or None,
        extra_fields=data.get("fields"),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(outcome.to_dict()), 201


@conversion_bp.route("/entities/<entity_id>/derived", methods=["GET"])
def derived(entity_id):
    entity = entity_service.get_entity(entity_id, include_deleted=True)
    records = ConversionEligibilityEvaluator().derived(entity)
    return jsonify([r.to_dict() for r in records])
