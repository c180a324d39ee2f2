"""
Innovation Workflow Platform
Approval workflow domain model.

Models:
    - ApprovalRequest: one in-flight traversal of a gate for one entity
    - ApprovalDecision: append-only decision record within a request
    - RoleAssignment: which approver roles a user holds

An ApprovalRequest snapshots the gate's approver chain when it is opened, so
a redeploy that edits the gate never re-orders an in-flight chain.
"""

import json
from datetime import datetime, timezone

from app.models import db


# ── Constants ────────────────────────────────────────────────────────────────

REQUEST_PENDING = "pending"
REQUEST_APPROVED = "approved"
REQUEST_REJECTED = "rejected"

REQUEST_STATUSES = {REQUEST_PENDING, REQUEST_APPROVED, REQUEST_REJECTED}
TERMINAL_STATUSES = frozenset({REQUEST_APPROVED, REQUEST_REJECTED})

DECISION_OUTCOMES = {"approved", "rejected"}


class ApprovalRequest(db.Model):
    """
    One traversal of a gate.

    Business rules:
    - Created when an entity first reaches a gated edge.
    - Mutated only by decision submission (index, status, closed_at).
    - Immutable once ``status`` is approved or rejected.
    - At most one pending request per (entity, gate): partial unique index.
    """

    __tablename__ = "approval_requests"
    __table_args__ = (
        db.Index("ix_approval_entity", "entity_type", "entity_id"),
        db.Index("ix_approval_status", "status"),
        db.Index(
            "uq_approval_open_per_gate", "entity_id", "gate_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(50), nullable=False)
    entity_id = db.Column(
        db.String(36),
        db.ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    gate_id = db.Column(db.String(80), nullable=False, comment="Gate name, unique per entity type")
    from_stage = db.Column(db.String(50), nullable=False)
    to_stage = db.Column(db.String(50), nullable=False)

    approver_roles_json = db.Column(
        db.Text, nullable=False, default="[]",
        comment="JSON list: ordered approver roles snapshotted from the gate",
    )
    pending_index = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=REQUEST_PENDING)

    requested_by = db.Column(db.String(150), nullable=True)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    due_at = db.Column(db.DateTime(timezone=True), nullable=True, comment="opened_at + gate sla_days")

    decisions = db.relationship(
        "ApprovalDecision",
        backref="request",
        lazy="select",
        cascade="all, delete-orphan",
        order_by="ApprovalDecision.step_index",
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def approver_roles(self) -> list[str]:
        try:
            return list(json.loads(self.approver_roles_json or "[]"))
        except (json.JSONDecodeError, TypeError):
            return []

    @approver_roles.setter
    def approver_roles(self, roles) -> None:
        self.approver_roles_json = json.dumps(list(roles))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def pending_role(self) -> str | None:
        if self.is_terminal:
            return None
        roles = self.approver_roles
        if 0 <= self.pending_index < len(roles):
            return roles[self.pending_index]
        return None

    def is_overdue(self, now: datetime | None = None) -> bool:
        if self.is_terminal or self.due_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        due = self.due_at if self.due_at.tzinfo else self.due_at.replace(tzinfo=timezone.utc)
        return now > due

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "gate_id": self.gate_id,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "approver_roles": self.approver_roles,
            "pending_index": self.pending_index,
            "pending_role": self.pending_role,
            "status": self.status,
            "requested_by": self.requested_by,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "overdue": self.is_overdue(),
            "decisions": [d.to_dict() for d in self.decisions],
        }

    def __repr__(self):
        return f"<ApprovalRequest {self.id}: {self.entity_type}/{self.entity_id} {self.gate_id} {self.status}>"


class ApprovalDecision(db.Model):
    """Append-only decision within an approval request."""

    __tablename__ = "approval_decisions"

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer,
        db.ForeignKey("approval_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_index = db.Column(db.Integer, nullable=False)
    role = db.Column(db.String(80), nullable=False)
    outcome = db.Column(db.String(20), nullable=False, comment="approved | rejected")
    decided_by = db.Column(db.String(150), nullable=True)
    comment = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "step_index": self.step_index,
            "role": self.role,
            "outcome": self.outcome,
            "decided_by": self.decided_by,
            "comment": self.comment,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }

    def __repr__(self):
        return f"<ApprovalDecision {self.request_id}#{self.step_index} {self.role}={self.outcome}>"


class RoleAssignment(db.Model):
    """Approver role held by a user (technical_lead, budget_officer, …)."""

    __tablename__ = "role_assignments"
    __table_args__ = (
        db.UniqueConstraint("user_id", "role", name="uq_role_assignment_user_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(150), nullable=False, index=True)
    role = db.Column(db.String(80), nullable=False, index=True)
    assigned_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role": self.role,
            "assigned_by": self.assigned_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<RoleAssignment {self.user_id}:{self.role}>"
