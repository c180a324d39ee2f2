"""
Stage Transition Engine

The single authority for changing an entity's stage.

    request_transition(type, id, from, to)
        1. from must equal the entity's current stage     → StaleStageAssumption
        2. (from, to) must be a declared edge             → InvalidTransition
        3. ungated edge  → compare-and-set the stage      → Applied
           gated edge    → open / reuse approval request  → PendingApproval

    submit_decision(request_id, role, outcome)
        entity must still sit at the request's from_stage → StaleStageAssumption
        terminal approved → stage applied, StageChanged
        terminal rejected → TransitionRejected, stage unchanged
                            (or moved to the gate's on_reject_stage)

The compare-and-set on (stage, stage_version) is the only concurrency guard:
of two concurrent requests assuming the same from_stage, exactly one wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from app.core.exceptions import (
    InvalidTransition,
    NotFoundError,
    OutOfOrderApproval,
    RequestAlreadyTerminal,
    StaleStageAssumption,
)
from app.models import db
from app.models.entity import Entity
from app.models.workflow import REQUEST_APPROVED, REQUEST_REJECTED, ApprovalRequest
from app.services.approval_chain import ApprovalChainTracker
from app.services.gate_registry import GateRegistry, get_gate_registry
from app.services.workflow_events import (
    ApprovalAdvanced,
    ApprovalRequested,
    EventBus,
    StageChanged,
    TransitionRejected,
    event_bus,
)

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Results
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Applied:
    """The stage change took effect."""

    to_stage: str
    stage_version: int

    def to_dict(self) -> dict:
        return {"result": "applied", "to_stage": self.to_stage, "stage_version": self.stage_version}


@dataclass(frozen=True)
class PendingApproval:
    """The edge is gated; the stage changes once the request is approved."""

    request_id: int
    pending_role: str | None = None
    reused: bool = False

    def to_dict(self) -> dict:
        return {
            "result": "pending_approval",
            "request_id": self.request_id,
            "pending_role": self.pending_role,
            "reused": self.reused,
        }


@dataclass(frozen=True)
class DecisionResult:
    request: ApprovalRequest
    stage: str
    stage_changed: bool = False

    def to_dict(self) -> dict:
        return {
            "request": self.request.to_dict(),
            "stage": self.stage,
            "stage_changed": self.stage_changed,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Engine
# ═════════════════════════════════════════════════════════════════════════════


class StageTransitionEngine:
    """Applies stage changes and drives gates through the approval tracker."""

    def __init__(self, registry: GateRegistry | None = None, bus: EventBus | None = None):
        self.registry = registry or get_gate_registry()
        self.bus = bus or event_bus

    # ── Queries ───────────────────────────────────────────────────────────

    @staticmethod
    def load_entity(entity_type: str, entity_id: str) -> Entity:
        entity = db.session.get(Entity, entity_id)
        if entity is None or entity.entity_type != entity_type:
            raise NotFoundError(resource=entity_type, resource_id=entity_id)
        return entity

    def available_transitions(self, entity: Entity) -> list[dict]:
        """Outgoing edges from the current stage, with any open request id."""
        transitions = self.registry.next_stages(entity.entity_type, entity.stage)
        for item in transitions:
            item["pending_request_id"] = None
            if item["gated"]:
                open_req = ApprovalChainTracker.find_open(entity.id, item["gate"]["name"])
                if open_req is not None:
                    item["pending_request_id"] = open_req.id
        return transitions

    # ── Commands ──────────────────────────────────────────────────────────

    def request_transition(self, entity_type: str, entity_id: str, from_stage: str,
                           to_stage: str, actor: str | None = None) -> Applied | PendingApproval:
        definition = self.registry.get_definition(entity_type)
        entity = self.load_entity(entity_type, entity_id)

        if entity.stage != from_stage:
            raise StaleStageAssumption(entity.id, from_stage, entity.stage)
        if entity.is_deleted:
            raise InvalidTransition(entity_type, from_stage, to_stage, reason="entity is deleted")

        if not definition.has_edge(from_stage, to_stage):
            reason = None
            if to_stage not in definition.all_stages:
                reason = f"unknown stage '{to_stage}'"
            elif from_stage in definition.terminal:
                reason = f"'{from_stage}' is terminal"
            raise InvalidTransition(entity_type, from_stage, to_stage, reason=reason)

        gate = definition.gate_for(from_stage, to_stage)
        if gate is None:
            self._apply(entity, from_stage, to_stage, actor)
            return Applied(to_stage=entity.stage, stage_version=entity.stage_version)

        existing = ApprovalChainTracker.find_open(entity.id, gate.name)
        if existing is not None:
            return PendingApproval(request_id=existing.id, pending_role=existing.pending_role, reused=True)

        req = ApprovalChainTracker.open(
            entity.id, entity_type, gate, from_stage, to_stage, requested_by=actor,
        )
        self.bus.publish(ApprovalRequested(
            request_id=req.id,
            entity_type=entity_type,
            entity_id=entity.id,
            gate_id=gate.name,
            pending_role=req.pending_role,
            actor=actor,
        ))
        return PendingApproval(request_id=req.id, pending_role=req.pending_role)

    def submit_decision(self, request_id: int, role: str, outcome: str,
                        actor: str | None = None, comment: str | None = None) -> DecisionResult:
        req = ApprovalChainTracker.get(request_id)
        if req.is_terminal:
            raise RequestAlreadyTerminal(req.id, req.status)
        if role != req.pending_role:
            raise OutOfOrderApproval(req.id, role, req.pending_role)

        entity = self.load_entity(req.entity_type, req.entity_id)
        if entity.stage != req.from_stage:
            raise StaleStageAssumption(entity.id, req.from_stage, entity.stage)

        req = ApprovalChainTracker.submit_decision(
            request_id, role, outcome, decided_by=actor, comment=comment,
        )
        self.bus.publish(ApprovalAdvanced(
            request_id=req.id,
            role=role,
            outcome=outcome,
            entity_type=req.entity_type,
            entity_id=req.entity_id,
            gate_id=req.gate_id,
            next_role=req.pending_role,
            actor=actor,
        ))

        if req.status == REQUEST_APPROVED:
            self._apply(entity, req.from_stage, req.to_stage, actor)
            return DecisionResult(request=req, stage=entity.stage, stage_changed=True)

        if req.status == REQUEST_REJECTED:
            self.bus.publish(TransitionRejected(
                entity_type=req.entity_type,
                entity_id=req.entity_id,
                from_stage=req.from_stage,
                to_stage=req.to_stage,
                request_id=req.id,
                requested_by=req.requested_by,
                actor=actor,
            ))
            gate = self.registry.get_gate_by_id(req.entity_type, req.gate_id)
            if gate is not None and gate.on_reject_stage:
                self._apply(entity, req.from_stage, gate.on_reject_stage, actor)
                return DecisionResult(request=req, stage=entity.stage, stage_changed=True)

        return DecisionResult(request=req, stage=entity.stage)

    # ── Internal ──────────────────────────────────────────────────────────

    def _apply(self, entity: Entity, from_stage: str, to_stage: str, actor: str | None) -> None:
        version = entity.stage_version
        updated = (
            Entity.query
            .filter_by(id=entity.id, stage=from_stage, stage_version=version)
            .update(
                {
                    "stage": to_stage,
                    "stage_version": version + 1,
                    "stage_changed_at": datetime.now(timezone.utc),
                },
                synchronize_session="fetch",
            )
        )
        if updated == 0:
            db.session.refresh(entity)
            raise StaleStageAssumption(entity.id, from_stage, entity.stage)
        db.session.flush()

        logger.info(
            "%s %s: %s -> %s",
            entity.entity_type, entity.id, from_stage, to_stage,
            extra={"entity_type": entity.entity_type, "entity_id": entity.id, "event_type": "stage_changed"},
        )
        self.bus.publish(StageChanged(
            entity_type=entity.entity_type,
            entity_id=entity.id,
            from_stage=from_stage,
            to_stage=to_stage,
            actor=actor,
        ))
