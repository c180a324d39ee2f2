"""
Conversion Eligibility Evaluator

Decides whether a "convert" action may be offered for a (source, target type)
pair, labels it for the UI and records conversions.

Evaluation order:
    1. no rule                      → not eligible, "not_eligible"   (no_rule)
    2. predicate false              → not eligible, "not_eligible"   (predicate_failed)
    3. count ConversionRecords for (source_type, source_id, target_type)
    4. exclusive and count >= 1     → not eligible, "already_converted", view_existing
    5. otherwise                    → eligible, "new" (count 0) or "can_add_more", convert

Target creation and the ConversionRecord are written in one savepoint by
``convert``: either both exist afterwards or neither does.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from app.core.exceptions import AtomicityViolation, ConversionNotAllowed, NotFoundError
from app.models import db
from app.models.conversion import ConversionRecord
from app.models.entity import Entity
from app.services.conversion_rules import ConversionRuleSet, get_rule_set
from app.services.entity_service import clean_fields
from app.services.gate_registry import GateRegistry, get_gate_registry
from app.services.workflow_events import ConversionRecorded, EventBus, event_bus

logger = logging.getLogger(__name__)

STATUS_NEW = "new"
STATUS_CAN_ADD_MORE = "can_add_more"
STATUS_ALREADY_CONVERTED = "already_converted"
STATUS_NOT_ELIGIBLE = "not_eligible"

ACTION_CONVERT = "convert"
ACTION_VIEW_EXISTING = "view_existing"

REASON_NO_RULE = "no_rule"
REASON_PREDICATE_FAILED = "predicate_failed"


@dataclass(frozen=True)
class EligibilityResult:
    eligible: bool
    count: int
    status: str
    action: str | None = None
    rule_id: str | None = None
    reason: str | None = None
    source_type: str | None = None
    target_type: str | None = None

    def to_dict(self) -> dict:
        return {
            "eligible": self.eligible,
            "count": self.count,
            "status": self.status,
            "action": self.action,
            "rule_id": self.rule_id,
            "reason": self.reason,
            "source_type": self.source_type,
            "target_type": self.target_type,
        }


@dataclass(frozen=True)
class ConversionOutcome:
    target: Entity
    record: ConversionRecord
    status_before: str

    def to_dict(self) -> dict:
        return {
            "target": self.target.to_dict(),
            "record": self.record.to_dict(),
            "status_before": self.status_before,
        }


def _record_value(record, key):
    if isinstance(record, dict):
        return record.get(key)
    return getattr(record, key, None)


class ConversionEligibilityEvaluator:
    """Stateless evaluator over the rule set and persisted ConversionRecords."""

    def __init__(self, rule_set: ConversionRuleSet | None = None,
                 registry: GateRegistry | None = None, bus: EventBus | None = None):
        self.rule_set = rule_set or get_rule_set()
        self.registry = registry or get_gate_registry()
        self.bus = bus or event_bus

    # ── Evaluation ────────────────────────────────────────────────────────

    def evaluate(self, source_type: str, source_id: str, source_fields: dict,
                 target_type: str, existing_records) -> EligibilityResult:
        """Pure evaluation against the given records; no database access."""
        base = {"source_type": source_type, "target_type": target_type}
        rule = self.rule_set.get_rule(source_type, target_type)
        if rule is None:
            return EligibilityResult(False, 0, STATUS_NOT_ELIGIBLE, reason=REASON_NO_RULE, **base)

        count = sum(
            1 for r in existing_records or []
            if _record_value(r, "source_type") == source_type
            and str(_record_value(r, "source_id")) == str(source_id)
            and _record_value(r, "target_type") == target_type
        )

        if not rule.is_satisfied(source_fields):
            return EligibilityResult(
                False, count, STATUS_NOT_ELIGIBLE,
                rule_id=rule.id, reason=REASON_PREDICATE_FAILED, **base,
            )

        if rule.is_exclusive and count >= 1:
            return EligibilityResult(
                False, count, STATUS_ALREADY_CONVERTED,
                action=ACTION_VIEW_EXISTING, rule_id=rule.id, **base,
            )

        status = STATUS_NEW if count == 0 else STATUS_CAN_ADD_MORE
        return EligibilityResult(True, count, status, action=ACTION_CONVERT, rule_id=rule.id, **base)

    @staticmethod
    def records_for(source_type: str, source_id: str, target_type: str | None = None) -> list[ConversionRecord]:
        q = ConversionRecord.query.filter_by(source_type=source_type, source_id=source_id)
        if target_type is not None:
            q = q.filter_by(target_type=target_type)
        return q.order_by(ConversionRecord.created_at, ConversionRecord.id).all()

    def evaluate_entity(self, source: Entity, target_type: str) -> EligibilityResult:
        return self.evaluate(
            source.entity_type, source.id, source.predicate_view(), target_type,
            self.records_for(source.entity_type, source.id, target_type),
        )

    def summary(self, source: Entity) -> list[dict]:
        """Evaluation against every rule whose source is this entity's type."""
        records = self.records_for(source.entity_type, source.id)
        view = source.predicate_view()
        result = []
        for rule in self.rule_set.rules_for_source(source.entity_type):
            evaluation = self.evaluate(source.entity_type, source.id, view, rule.target_type, records)
            result.append({"rule": rule.to_dict(), **evaluation.to_dict()})
        return result

    def derived(self, source: Entity) -> list[ConversionRecord]:
        return self.records_for(source.entity_type, source.id)

    # ── Recording ─────────────────────────────────────────────────────────

    def _insert_record(self, source_type, source_id, target_type, target_id,
                       rule_id=None, actor=None) -> ConversionRecord:
        target = db.session.get(Entity, target_id)
        if target is None or target.entity_type != target_type:
            raise AtomicityViolation(
                f"No {target_type} {target_id} was created for this conversion",
                details={"source_type": source_type, "source_id": source_id,
                         "target_type": target_type, "target_id": target_id},
            )
        if ConversionRecord.query.filter_by(target_type=target_type, target_id=target_id).first():
            raise AtomicityViolation(
                f"{target_type} {target_id} is already the product of a conversion",
                details={"target_type": target_type, "target_id": target_id},
            )

        record = ConversionRecord(
            source_type=source_type,
            source_id=source_id,
            target_type=target_type,
            target_id=target_id,
            rule_id=rule_id,
            created_by=actor,
        )
        try:
            with db.session.begin_nested():
                db.session.add(record)
                db.session.flush()
        except IntegrityError as exc:
            raise AtomicityViolation(
                f"{target_type} {target_id} is already the product of a conversion",
                details={"target_type": target_type, "target_id": target_id},
            ) from exc
        return record

    def _publish(self, record: ConversionRecord, actor: str | None) -> None:
        logger.info(
            "Conversion recorded: %s %s -> %s %s",
            record.source_type, record.source_id, record.target_type, record.target_id,
            extra={"entity_type": record.source_type, "entity_id": record.source_id,
                   "event_type": "conversion_recorded"},
        )
        self.bus.publish(ConversionRecorded(
            source_type=record.source_type,
            source_id=record.source_id,
            target_type=record.target_type,
            target_id=record.target_id,
            rule_id=record.rule_id,
            actor=actor,
        ))

    def record_conversion(self, source_type: str, source_id: str, target_type: str,
                          target_id: str, rule_id: str | None = None,
                          actor: str | None = None) -> ConversionRecord:
        """Record a conversion whose target already exists in this transaction.

        Raises:
            AtomicityViolation: the target does not exist (no matching
                creation) or is already recorded as a conversion product.
            ConversionNotAllowed: the rule is exclusive and the source
                already has a derived target of this type.
        """
        rule = self.rule_set.get_rule(source_type, target_type)
        if rule_id is None:
            rule_id = rule.id if rule else None

        with db.session.begin_nested():
            db.session.query(Entity).filter_by(id=source_id).with_for_update().first()
            if rule is not None and rule.is_exclusive and self.records_for(source_type, source_id, target_type):
                raise ConversionNotAllowed(
                    source_type, source_id, target_type, STATUS_ALREADY_CONVERTED,
                )
            record = self._insert_record(source_type, source_id, target_type, target_id, rule_id, actor)

        self._publish(record, actor)
        return record

    def convert(self, source: Entity, target_type: str, actor: str | None = None,
                title: str | None = None, extra_fields: dict | None = None) -> ConversionOutcome:
        """Create the target and its ConversionRecord as one unit.

        Eligibility is re-evaluated against persisted records inside the
        savepoint. Nothing is left behind when any step fails.

        Raises:
            ConversionNotAllowed: the pair is not eligible.
            UnknownEntityType: the target type is not registered.
            ValidationError: ``extra_fields`` is not an object or sets
                engine-owned keys.
        """
        if source.is_deleted:
            raise NotFoundError(resource=source.entity_type, resource_id=source.id)
        target_definition = self.registry.get_definition(target_type)
        overrides = clean_fields(extra_fields)

        with db.session.begin_nested():
            # Serialises concurrent conversions of one source where the
            # backend supports row locks.
            db.session.query(Entity).filter_by(id=source.id).with_for_update().one()

            result = self.evaluate_entity(source, target_type)
            if not result.eligible:
                raise ConversionNotAllowed(
                    source.entity_type, source.id, target_type, result.status, result.reason,
                )

            rule = self.rule_set.get_rule(source.entity_type, target_type)
            fields = rule.seed_target(source.id, source.predicate_view())
            fields.update(overrides)
            if rule.source_link:
                fields[rule.source_link] = source.id

            target = Entity(
                entity_type=target_type,
                title=title or fields.get("title") or source.title,
                stage=target_definition.initial,
                created_by=actor,
            )
            target.fields = fields
            db.session.add(target)
            db.session.flush()

            record = self._insert_record(
                source.entity_type, source.id, target_type, target.id, rule.id, actor,
            )

        self._publish(record, actor)
        return ConversionOutcome(target=target, record=record, status_before=result.status)
