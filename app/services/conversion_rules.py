"""
Conversion Rule Set

One rule per (source type → target type) pair: a declarative eligibility
predicate, a cardinality and the field mapping used to seed the target.

Predicates are data, not code:

    when:
      stage_field: stage          # optional, default "stage"
      stage_in: [completed]
      fields:
        - {field: recommendation, op: eq, value: scale}

Soft-deleted sources never satisfy a predicate.

Usage:
    from app.services.conversion_rules import get_rule_set

    rule = get_rule_set().get_rule("Pilot", "ScalingPlan")
    rule.is_satisfied(pilot.predicate_view())
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

from flask import current_app

from app.core.exceptions import ConfigurationError
from app.services.gate_registry import GateRegistry, get_gate_registry, load_workflow_file

logger = logging.getLogger(__name__)

CARDINALITY_EXCLUSIVE = "exclusive"
CARDINALITY_REPEATABLE = "repeatable"
CARDINALITIES = {CARDINALITY_EXCLUSIVE, CARDINALITY_REPEATABLE}


# ── Operators ────────────────────────────────────────────────────────────────


def _compare(actual, expected, fn) -> bool:
    if actual is None or expected is None:
        return False
    try:
        return fn(float(actual), float(expected))
    except (TypeError, ValueError):
        return False


OPERATORS = {
    "eq": lambda actual, expected: actual == expected,
    "ne": lambda actual, expected: actual != expected,
    "in": lambda actual, expected: actual in (expected or ()),
    "not_null": lambda actual, _: actual is not None and actual != "",
    "is_null": lambda actual, _: actual is None or actual == "",
    "gte": lambda a, e: _compare(a, e, lambda x, y: x >= y),
    "lte": lambda a, e: _compare(a, e, lambda x, y: x <= y),
    "gt": lambda a, e: _compare(a, e, lambda x, y: x > y),
    "lt": lambda a, e: _compare(a, e, lambda x, y: x < y),
}


@dataclass(frozen=True)
class FieldCondition:
    field: str
    op: str
    value: Any = None

    def holds(self, fields: dict) -> bool:
        return OPERATORS[self.op](fields.get(self.field), self.value)

    def to_dict(self) -> dict:
        return {"field": self.field, "op": self.op, "value": self.value}


@dataclass(frozen=True)
class Predicate:
    stage_field: str = "stage"
    stage_in: tuple[str, ...] = ()
    conditions: tuple[FieldCondition, ...] = ()

    def holds(self, fields: dict) -> bool:
        if fields.get("is_deleted"):
            return False
        if self.stage_in and fields.get(self.stage_field) not in self.stage_in:
            return False
        return all(c.holds(fields) for c in self.conditions)

    def to_dict(self) -> dict:
        return {
            "stage_field": self.stage_field,
            "stage_in": list(self.stage_in),
            "fields": [c.to_dict() for c in self.conditions],
        }


@dataclass(frozen=True)
class ConversionRule:
    id: str
    source_type: str
    target_type: str
    cardinality: str
    predicate: Predicate = field(default_factory=Predicate)
    field_mapping: tuple[tuple[str, str], ...] = ()
    source_link: str | None = None

    @property
    def is_exclusive(self) -> bool:
        return self.cardinality == CARDINALITY_EXCLUSIVE

    def is_satisfied(self, source_fields: dict) -> bool:
        return self.predicate.holds(source_fields or {})

    def seed_target(self, source_id: str, source_fields: dict) -> dict:
        """Initial target fields: mapped copies plus the back-link to the source.

        Source fields that are absent are skipped rather than copied as None.
        """
        seeded = {}
        for src, dst in self.field_mapping:
            if src in source_fields and source_fields[src] is not None:
                seeded[dst] = source_fields[src]
        if self.source_link:
            seeded[self.source_link] = source_id
        return seeded

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_type": self.source_type,
            "target_type": self.target_type,
            "cardinality": self.cardinality,
            "when": self.predicate.to_dict(),
            "field_mapping": [{"from": s, "to": d} for s, d in self.field_mapping],
            "source_link": self.source_link,
        }


# ── Parsing ──────────────────────────────────────────────────────────────────


def _parse_mapping(rule_id: str, raw) -> tuple[tuple[str, str], ...]:
    pairs = []
    for item in raw or []:
        if isinstance(item, str):
            pairs.append((item, item))
        elif isinstance(item, dict) and len(item) == 1:
            (src, dst), = item.items()
            pairs.append((str(src), str(dst)))
        else:
            raise ConfigurationError(f"{rule_id}: field_mapping entries are names or single-key mappings")
    return tuple(pairs)


def _parse_predicate(rule_id: str, raw: dict | None) -> Predicate:
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{rule_id}: 'when' must be a mapping")
    conditions = []
    for cond in raw.get("fields") or []:
        op = cond.get("op") if isinstance(cond, dict) else None
        if op not in OPERATORS or not cond.get("field"):
            raise ConfigurationError(
                f"{rule_id}: invalid field condition",
                details={"condition": cond, "operators": sorted(OPERATORS)},
            )
        if op == "in" and not isinstance(cond.get("value"), list):
            raise ConfigurationError(f"{rule_id}: 'in' needs a list value")
        value = tuple(cond["value"]) if op == "in" else cond.get("value")
        conditions.append(FieldCondition(field=cond["field"], op=op, value=value))
    return Predicate(
        stage_field=raw.get("stage_field", "stage"),
        stage_in=tuple(raw.get("stage_in") or ()),
        conditions=tuple(conditions),
    )


class ConversionRuleSet:
    """Read-only lookup of conversion rules keyed by (source, target)."""

    def __init__(self, rules: list[ConversionRule]):
        self._rules: dict[tuple[str, str], ConversionRule] = {}
        for rule in rules:
            key = (rule.source_type, rule.target_type)
            if key in self._rules:
                raise ConfigurationError(
                    f"Duplicate conversion rule for {rule.source_type} -> {rule.target_type}",
                )
            self._rules[key] = rule

    @classmethod
    def from_dict(cls, data: dict, registry: GateRegistry | None = None) -> ConversionRuleSet:
        """Build the rule set; with a registry, types and stages are cross-checked."""
        rules = []
        seen_ids = set()
        for raw in data.get("conversions") or []:
            rule_id = raw.get("id") or f"{raw.get('source')}_to_{raw.get('target')}"
            if rule_id in seen_ids:
                raise ConfigurationError(f"Duplicate conversion rule id '{rule_id}'")
            seen_ids.add(rule_id)

            source, target = raw.get("source"), raw.get("target")
            if not source or not target:
                raise ConfigurationError(f"{rule_id}: source and target are required")
            cardinality = raw.get("cardinality", CARDINALITY_EXCLUSIVE)
            if cardinality not in CARDINALITIES:
                raise ConfigurationError(
                    f"{rule_id}: cardinality must be one of {sorted(CARDINALITIES)}",
                )

            predicate = _parse_predicate(rule_id, raw.get("when"))
            if registry is not None:
                known_types = registry.list_entity_types()
                missing = [t for t in (source, target) if t not in known_types]
                if missing:
                    raise ConfigurationError(
                        f"{rule_id}: entity types are not registered",
                        details={"unknown": missing},
                    )
                if predicate.stage_field == "stage":
                    unknown = [s for s in predicate.stage_in if not registry.validate_stage(source, s)]
                    if unknown:
                        raise ConfigurationError(
                            f"{rule_id}: stage_in names unknown {source} stages",
                            details={"unknown": unknown},
                        )

            rules.append(ConversionRule(
                id=rule_id,
                source_type=source,
                target_type=target,
                cardinality=cardinality,
                predicate=predicate,
                field_mapping=_parse_mapping(rule_id, raw.get("field_mapping")),
                source_link=raw.get("source_link"),
            ))
        return cls(rules)

    @classmethod
    def load(cls, path: str, registry: GateRegistry | None = None) -> ConversionRuleSet:
        return cls.from_dict(load_workflow_file(path), registry)

    def get_rule(self, source_type: str, target_type: str) -> ConversionRule | None:
        return self._rules.get((source_type, target_type))

    def rules_for_source(self, source_type: str) -> list[ConversionRule]:
        return [r for (src, _), r in self._rules.items() if src == source_type]

    def all_rules(self) -> list[ConversionRule]:
        return list(self._rules.values())


_RULE_SET_CACHE: dict[str, ConversionRuleSet] = {}


def get_rule_set(path: str | None = None) -> ConversionRuleSet:
    path = os.path.abspath(path or current_app.config["WORKFLOW_CONFIG_PATH"])
    rule_set = _RULE_SET_CACHE.get(path)
    if rule_set is None:
        rule_set = ConversionRuleSet.load(path, get_gate_registry(path))
        _RULE_SET_CACHE[path] = rule_set
        logger.info("Conversion rules loaded: %d rules from %s", len(rule_set.all_rules()), path)
    return rule_set
