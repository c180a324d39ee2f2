"""
Approver role capability checks.

The workflow engine only verifies that a decision comes from the role at the
pending step. Whether the caller actually holds that role is the host's
concern and is checked here, before ``submit_decision`` is invoked.

Usage:
    from app.services.permission import check_role, PermissionDenied

    # Raises PermissionDenied if the user does not hold the role
    check_role(user_id="u-7", role="budget_officer")

    # Boolean check
    if caller_has_role("u-7", "gdisb_admin"):
        ...
"""

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.workflow import RoleAssignment


class PermissionDenied(Exception):
    """Raised when a user lacks the approver role a decision requires."""

    def __init__(self, user_id: str | None, role: str):
        super().__init__(f"User {user_id or '<anonymous>'} does not hold role '{role}'")
        self.user_id = user_id
        self.role = role


def get_user_roles(user_id: str) -> list[str]:
    """Roles held by a user, alphabetically."""
    return [
        ra.role for ra in
        RoleAssignment.query.filter_by(user_id=user_id).order_by(RoleAssignment.role).all()
    ]


def caller_has_role(user_id: str | None, role: str) -> bool:
    if not user_id or not role:
        return False
    return RoleAssignment.query.filter_by(user_id=user_id, role=role).first() is not None


def check_role(user_id: str | None, role: str) -> None:
    """
    Assert the user holds ``role``.

    Raises:
        PermissionDenied: If the user lacks the role.
    """
    if not caller_has_role(user_id, role):
        raise PermissionDenied(user_id, role)


def assign_role(user_id: str, role: str, assigned_by: str | None = None) -> RoleAssignment:
    if not user_id or not role:
        raise ValidationError("user_id and role are required")
    if caller_has_role(user_id, role):
        raise ConflictError(resource="RoleAssignment", field="role", value=f"{user_id}:{role}")
    assignment = RoleAssignment(user_id=user_id, role=role, assigned_by=assigned_by)
    db.session.add(assignment)
    db.session.flush()
    return assignment


def revoke_role(assignment_id: int) -> None:
    assignment = db.session.get(RoleAssignment, assignment_id)
    if assignment is None:
        raise NotFoundError(resource="RoleAssignment", resource_id=assignment_id)
    db.session.delete(assignment)
    db.session.flush()
