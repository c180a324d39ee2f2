"""
Approval Chain Tracker

Drives one ApprovalRequest to a terminal outcome. Approvals are strictly
sequential: only the role at the pending index may decide, one decision per
step. A rejection at any step closes the request.

Request status machine:
    pending ──approved (last role)──▶ approved
       │ ▲
       │ └── approved (not last) : index + 1
       └──── rejected ───────────▶ rejected

Usage:
    from app.services.approval_chain import ApprovalChainTracker

    req = ApprovalChainTracker.open(entity_id, "Pilot", gate, "approval_pending", "approved")
    ApprovalChainTracker.submit_decision(req.id, "technical_lead", "approved")
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from app.core.exceptions import (
    DuplicateOpenRequest,
    NotFoundError,
    OutOfOrderApproval,
    RequestAlreadyTerminal,
    ValidationError,
)
from app.models import db
from app.models.workflow import (
    DECISION_OUTCOMES,
    REQUEST_APPROVED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    ApprovalDecision,
    ApprovalRequest,
)

logger = logging.getLogger(__name__)


class ApprovalChainTracker:
    """Stateless service: all state lives in approval_requests / approval_decisions."""

    # ── Queries ───────────────────────────────────────────────────────────

    @staticmethod
    def get(request_id: int) -> ApprovalRequest:
        req = db.session.get(ApprovalRequest, request_id)
        if req is None:
            raise NotFoundError(resource="ApprovalRequest", resource_id=request_id)
        return req

    @staticmethod
    def find_open(entity_id: str, gate_id: str) -> ApprovalRequest | None:
        return ApprovalRequest.query.filter_by(
            entity_id=entity_id, gate_id=gate_id, status=REQUEST_PENDING,
        ).first()

    @staticmethod
    def history(entity_type: str, entity_id: str) -> list[ApprovalRequest]:
        """Every request ever opened for the entity, oldest first."""
        return (
            ApprovalRequest.query
            .filter_by(entity_type=entity_type, entity_id=entity_id)
            .order_by(ApprovalRequest.opened_at, ApprovalRequest.id)
            .all()
        )

    @staticmethod
    def pending_for_role(role: str, overdue_only: bool = False) -> list[ApprovalRequest]:
        """Pending requests currently waiting on ``role``.

        The pending role is derived from the snapshotted chain, so the
        filtering happens after the status query.
        """
        q = ApprovalRequest.query.filter_by(status=REQUEST_PENDING)
        if overdue_only:
            q = q.filter(ApprovalRequest.due_at.isnot(None),
                         ApprovalRequest.due_at < datetime.now(timezone.utc))
        requests = q.order_by(ApprovalRequest.due_at, ApprovalRequest.id).all()
        return [r for r in requests if r.pending_role == role]

    # ── Commands ──────────────────────────────────────────────────────────

    @staticmethod
    def open(entity_id: str, entity_type: str, gate, from_stage: str, to_stage: str,
             requested_by: str | None = None) -> ApprovalRequest:
        """Open a request for ``gate``, snapshotting its approver chain.

        Raises:
            DuplicateOpenRequest: a pending request already exists for
                (entity_id, gate). Also raised when a concurrent opener wins
                the race on the partial unique index.
        """
        existing = ApprovalChainTracker.find_open(entity_id, gate.name)
        if existing is not None:
            raise DuplicateOpenRequest(entity_id, gate.name, existing.id)

        now = datetime.now(timezone.utc)
        req = ApprovalRequest(
            entity_type=entity_type,
            entity_id=entity_id,
            gate_id=gate.name,
            from_stage=from_stage,
            to_stage=to_stage,
            pending_index=0,
            status=REQUEST_PENDING,
            requested_by=requested_by,
            opened_at=now,
            due_at=now + timedelta(days=gate.sla_days),
        )
        req.approver_roles = gate.approvers

        try:
            with db.session.begin_nested():
                db.session.add(req)
                db.session.flush()
        except IntegrityError as exc:
            raise DuplicateOpenRequest(entity_id, gate.name) from exc

        logger.info(
            "Approval request %s opened for gate %s (%d roles)",
            req.id, gate.name, len(gate.approvers),
            extra={"entity_type": entity_type, "entity_id": entity_id},
        )
        return req

    @staticmethod
    def submit_decision(request_id: int, role: str, outcome: str,
                        decided_by: str | None = None, comment: str | None = None) -> ApprovalRequest:
        """Record one decision.

        Checks, in order: the request exists, it is not terminal, ``role`` is
        the pending role, ``outcome`` is known.

        Raises:
            NotFoundError, RequestAlreadyTerminal, OutOfOrderApproval,
            ValidationError
        """
        req = ApprovalChainTracker.get(request_id)
        if req.is_terminal:
            raise RequestAlreadyTerminal(req.id, req.status)

        expected = req.pending_role
        if role != expected:
            raise OutOfOrderApproval(req.id, role, expected)

        if outcome not in DECISION_OUTCOMES:
            raise ValidationError(
                f"Unknown decision outcome '{outcome}'",
                details={"allowed": sorted(DECISION_OUTCOMES)},
            )

        step = req.pending_index
        now = datetime.now(timezone.utc)
        if outcome == REQUEST_REJECTED:
            changes = {"status": REQUEST_REJECTED, "closed_at": now}
        elif step + 1 >= len(req.approver_roles):
            changes = {"status": REQUEST_APPROVED, "pending_index": step + 1, "closed_at": now}
        else:
            changes = {"pending_index": step + 1}

        # Compare-and-set on the index: a second decision for the same step
        # loses here even if it passed the role check above.
        updated = (
            ApprovalRequest.query
            .filter_by(id=req.id, pending_index=step, status=REQUEST_PENDING)
            .update(changes, synchronize_session="fetch")
        )
        if updated == 0:
            db.session.refresh(req)
            if req.is_terminal:
                raise RequestAlreadyTerminal(req.id, req.status)
            raise OutOfOrderApproval(req.id, role, req.pending_role)

        req.decisions.append(ApprovalDecision(
            step_index=step,
            role=role,
            outcome=outcome,
            decided_by=decided_by,
            comment=comment,
            decided_at=now,
        ))
        db.session.flush()

        logger.info(
            "Approval request %s step %d: %s %s -> status %s",
            req.id, step, role, outcome, req.status,
            extra={"entity_type": req.entity_type, "entity_id": req.entity_id},
        )
        return req
