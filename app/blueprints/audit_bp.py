"""
Innovation Workflow Platform
Audit blueprint: read-only access to the trail written by the workflow
event subscribers and the entity service.

Endpoints:
    GET  /api/v1/audit                       — filter audit logs (newest first)
    GET  /api/v1/audit/<int:log_id>          — single audit entry
    GET  /api/v1/entities/<id>/audit         — chronological trail of one entity
"""

from flask import Blueprint, jsonify, request

from app.blueprints import paginate_query
from app.models.audit import AuditLog
from app.services import entity_service
from app.utils.errors import register_error_handlers
from app.utils.helpers import get_or_404

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")
register_error_handlers(audit_bp)

# query param -> (column, prefix match)
_FILTERS = {
    "entity_type": (AuditLog.entity_type, False),
    "entity_id": (AuditLog.entity_id, False),
    "actor": (AuditLog.actor, False),
    "action": (AuditLog.action, True),
}


def _apply_filters(q):
    for param, (column, prefix) in _FILTERS.items():
        value = request.args.get(param)
        if not value:
            continue
        q = q.filter(column.startswith(value) if prefix else column == value)
    return q


@audit_bp.route("/audit", methods=["GET"])
def list_audit_logs():
    """
    Query params:
        entity_type, entity_id, actor — exact match
        action       — prefix match (``stage.`` selects every stage change)
        limit/offset — see paginate_query
    """
    q = _apply_filters(AuditLog.query)
    q = q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
    logs, total = paginate_query(q, default_limit=50, max_limit=200)
    return jsonify({"audit_logs": [log.to_dict() for log in logs], "total": total})


@audit_bp.route("/audit/<int:log_id>", methods=["GET"])
def get_audit_log(log_id):
    log, err = get_or_404(AuditLog, log_id, label="Audit log")
    if err:
        return err
    return jsonify(log.to_dict())


@audit_bp.route("/entities/<entity_id>/audit", methods=["GET"])
def entity_trail(entity_id):
    # Deleted entities keep their history.
    entity = entity_service.get_entity(entity_id, include_deleted=True)
    logs = (
        AuditLog.query
        .filter_by(entity_type=entity.entity_type, entity_id=entity.id)
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
        .all()
    )
    return jsonify({
        "entity_id": entity.id,
        "entity_type": entity.entity_type,
        "audit_logs": [log.to_dict() for log in logs],
    })
