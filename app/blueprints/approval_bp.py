"""
Approval blueprint.

Routes:
  GET    /approvals/pending?role=&overdue=   – requests waiting on a role
  GET    /approvals/<rid>                    – request with its decisions
  POST   /approvals/<rid>/decide             – approve / reject the pending step
  GET    /role-assignments                   – list (user_id, role filters)
  POST   /role-assignments                   – grant an approver role
  DELETE /role-assignments/<id>              – revoke

The caller is identified by X-User. When ENFORCE_APPROVER_ROLES is on, a
decision is only accepted from a user holding the submitted role.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from app.models.workflow import DECISION_OUTCOMES, RoleAssignment
from app.services import permission
from app.services.approval_chain import ApprovalChainTracker
from app.services.stage_transition import StageTransitionEngine
from app.utils.errors import E, api_error, register_error_handlers
from app.utils.helpers import current_user, db_commit_or_error, parse_bool

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approvals", __name__, url_prefix="/api/v1")
register_error_handlers(approval_bp)


@approval_bp.errorhandler(permission.PermissionDenied)
def _handle_permission_denied(error):
    logger.warning("Decision refused: %s", error)
    return api_error(E.FORBIDDEN, str(error), details={"user": error.user_id, "role": error.role})


# ═════════════════════════════════════════════════════════════════════════════
# APPROVAL REQUESTS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approvals/pending", methods=["GET"])
def pending_approvals():
    """
    Query params:
        role     — approver role (default: every role held by X-User)
        overdue  — only requests past their SLA due date
    """
    overdue = parse_bool(request.args.get("overdue"))
    role = request.args.get("role")
    if role:
        roles = [role]
    else:
        user = current_user()
        if not user:
            return api_error(E.VALIDATION_REQUIRED, "role or X-User is required")
        roles = permission.get_user_roles(user)

    items = []
    for r in roles:
        items.extend(ApprovalChainTracker.pending_for_role(r, overdue_only=overdue))
    return jsonify({"items": [req.to_dict() for req in items], "total": len(items)})


@approval_bp.route("/approvals/<int:request_id>", methods=["GET"])
def get_approval(request_id):
    return jsonify(ApprovalChainTracker.get(request_id).to_dict())


@approval_bp.route("/approvals/<int:request_id>/decide", methods=["POST"])
def decide(request_id):
    """Body: { role, outcome: approved|rejected, comment? }"""
    data = request.get_json(silent=True) or {}
    role = (data.get("role") or "").strip()
    outcome = (data.get("outcome") or "").strip()

    if not role:
        return api_error(E.VALIDATION_REQUIRED, "role is required")
    if outcome not in DECISION_OUTCOMES:
        return api_error(
            E.VALIDATION_INVALID,
            f"outcome must be one of {sorted(DECISION_OUTCOMES)}",
        )

    user = current_user()
    if current_app.config.get("ENFORCE_APPROVER_ROLES", True):
        permission.check_role(user, role)

    result = StageTransitionEngine().submit_decision(
        request_id, role, outcome, actor=user, comment=data.get("comment"),
    )
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(result.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# ROLE ASSIGNMENTS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/role-assignments", methods=["GET"])
def list_role_assignments():
    q = RoleAssignment.query
    user_id = request.args.get("user_id")
    if user_id:
        q = q.filter_by(user_id=user_id)
    role = request.args.get("role")
    if role:
        q = q.filter_by(role=role)
    return jsonify([ra.to_dict() for ra in q.order_by(RoleAssignment.id).all()])


@approval_bp.route("/role-assignments", methods=["POST"])
def create_role_assignment():
    """Body: { user_id, role }"""
    data = request.get_json(silent=True) or {}
    user_id = (data.get("user_id") or "").strip()
    role = (data.get("role") or "").strip()
    if not user_id or not role:
        return api_error(E.VALIDATION_REQUIRED, "user_id and role are required")

    assignment = permission.assign_role(user_id, role, assigned_by=current_user())
    err = db_commit_or_error()
    if err:
        return err
    return jsonify(assignment.to_dict()), 201


@approval_bp.route("/role-assignments/<int:assignment_id>", methods=["DELETE"])
def delete_role_assignment(assignment_id):
    permission.revoke_role(assignment_id)
    err = db_commit_or_error()
    if err:
        return err
    return jsonify({"deleted": True, "id": assignment_id})
