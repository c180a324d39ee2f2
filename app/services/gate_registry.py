"""
Gate Registry

Per entity type: the ordered lifecycle stages, the edges between them and the
gates (ordered approver chains) sitting on some of those edges.

The registry is built once from the declarative workflow file and is
read-only afterwards. Exception stages (on_hold, pivot, terminated, …) are
expanded at load time into ordinary ungated edges, so the transition engine
never special-cases them.

Usage:
    from app.services.gate_registry import get_gate_registry

    registry = get_gate_registry()
    registry.list_stages("Pilot")
    gate = registry.get_gate("Pilot", "approval_pending", "approved")
    gate.approvers  # ('technical_lead', 'budget_officer', ...)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

import yaml
from flask import current_app

from app.core.exceptions import ConfigurationError, UnknownEntityType

logger = logging.getLogger(__name__)

GATE_TYPES = {"submission", "review", "approval", "compliance"}
DEFAULT_SLA_DAYS = 7


# ═════════════════════════════════════════════════════════════════════════════
# Data Classes
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Gate:
    """An edge that needs an ordered chain of approvals before it applies."""

    name: str
    entity_type: str
    from_stage: str
    to_stage: str
    approvers: tuple[str, ...]
    gate_type: str = "approval"
    sla_days: int = DEFAULT_SLA_DAYS
    on_reject_stage: str | None = None
    label: dict = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "entity_type": self.entity_type,
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "approvers": list(self.approvers),
            "gate_type": self.gate_type,
            "sla_days": self.sla_days,
            "on_reject_stage": self.on_reject_stage,
            "label": dict(self.label),
        }


@dataclass(frozen=True)
class StageDefinition:
    """Lifecycle of one entity type, with every edge already expanded."""

    entity_type: str
    initial: str
    stages: tuple[str, ...]
    exception_stages: tuple[str, ...]
    terminal: frozenset[str]
    edges: tuple[tuple[str, str], ...]
    gates: tuple[Gate, ...] = ()

    @property
    def all_stages(self) -> tuple[str, ...]:
        return self.stages + self.exception_stages

    def has_edge(self, from_stage: str, to_stage: str) -> bool:
        return (from_stage, to_stage) in self.edges

    def outgoing(self, stage: str) -> list[str]:
        targets = {to for frm, to in self.edges if frm == stage}
        return [s for s in self.all_stages if s in targets]

    def gate_for(self, from_stage: str, to_stage: str) -> Gate | None:
        for gate in self.gates:
            if gate.from_stage == from_stage and gate.to_stage == to_stage:
                return gate
        return None

    def to_dict(self) -> dict:
        return {
            "entity_type": self.entity_type,
            "initial": self.initial,
            "stages": list(self.stages),
            "exception_stages": list(self.exception_stages),
            "terminal": [s for s in self.all_stages if s in self.terminal],
            "transitions": [{"from": f, "to": t} for f, t in self.edges],
            "gates": [g.to_dict() for g in self.gates],
        }


# ═════════════════════════════════════════════════════════════════════════════
# Parsing & Validation
# ═════════════════════════════════════════════════════════════════════════════


def _require_list(value, what: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError(f"{what} must be a list", details={"value": value})
    return value


def _parse_gate(entity_type: str, raw: dict, known: set[str]) -> Gate:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{entity_type}: gate entries must be mappings")

    name = raw.get("name")
    from_stage = raw.get("from")
    to_stage = raw.get("to")
    if not name or not from_stage or not to_stage:
        raise ConfigurationError(
            f"{entity_type}: gate needs name, from and to",
            details={"gate": raw},
        )

    approvers = _require_list(raw.get("approvers"), f"{entity_type}.{name}.approvers")
    if not approvers or not all(isinstance(r, str) and r.strip() for r in approvers):
        raise ConfigurationError(
            f"{entity_type}: gate '{name}' needs a non-empty list of approver roles",
            details={"gate": name},
        )

    gate_type = raw.get("gate_type", "approval")
    if gate_type not in GATE_TYPES:
        raise ConfigurationError(
            f"{entity_type}: gate '{name}' has unknown gate_type '{gate_type}'",
            details={"allowed": sorted(GATE_TYPES)},
        )

    sla_days = raw.get("sla_days", DEFAULT_SLA_DAYS)
    if not isinstance(sla_days, int) or isinstance(sla_days, bool) or sla_days <= 0:
        raise ConfigurationError(f"{entity_type}: gate '{name}' sla_days must be a positive integer")

    on_reject = raw.get("on_reject_stage")
    if on_reject is not None and on_reject not in known:
        raise ConfigurationError(f"{entity_type}: gate '{name}' on_reject_stage '{on_reject}' is not a stage")

    return Gate(
        name=str(name),
        entity_type=entity_type,
        from_stage=from_stage,
        to_stage=to_stage,
        approvers=tuple(r.strip() for r in approvers),
        gate_type=gate_type,
        sla_days=sla_days,
        on_reject_stage=on_reject,
        label=dict(raw.get("label") or {}),
    )


def parse_stage_definition(entity_type: str, raw: dict) -> StageDefinition:
    """Validate one entity type block and expand it into a StageDefinition.

    Raises:
        ConfigurationError: on any inconsistency (duplicate stages, unknown
            initial stage, missing terminal stage, terminal stage with
            outgoing edges, edges or gates referencing unknown stages).
    """
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{entity_type}: definition must be a mapping")

    stages = _require_list(raw.get("stages"), f"{entity_type}.stages")
    exception_stages = _require_list(raw.get("exception_stages"), f"{entity_type}.exception_stages")
    if not stages:
        raise ConfigurationError(f"{entity_type}: at least one stage is required")

    all_stages = list(stages) + list(exception_stages)
    duplicates = sorted({s for s in all_stages if all_stages.count(s) > 1})
    if duplicates:
        raise ConfigurationError(
            f"{entity_type}: stage names must be unique",
            details={"duplicates": duplicates},
        )
    known = set(all_stages)

    initial = raw.get("initial", stages[0])
    if initial not in stages:
        raise ConfigurationError(f"{entity_type}: initial stage '{initial}' is not a sequence stage")

    terminal = frozenset(_require_list(raw.get("terminal"), f"{entity_type}.terminal"))
    if not terminal:
        raise ConfigurationError(f"{entity_type}: at least one terminal stage is required")
    unknown_terminal = terminal - known
    if unknown_terminal:
        raise ConfigurationError(
            f"{entity_type}: terminal stages are not declared",
            details={"unknown": sorted(unknown_terminal)},
        )

    edges: list[tuple[str, str]] = []

    def _add_edge(frm: str, to: str) -> None:
        if frm not in known or to not in known:
            raise ConfigurationError(
                f"{entity_type}: transition '{frm}' -> '{to}' references an unknown stage",
            )
        if frm == to:
            raise ConfigurationError(f"{entity_type}: self-transition on '{frm}'")
        if (frm, to) not in edges:
            edges.append((frm, to))

    for frm, to in zip(stages, stages[1:]):
        _add_edge(frm, to)

    for item in _require_list(raw.get("transitions"), f"{entity_type}.transitions"):
        if not isinstance(item, dict) or "from" not in item or "to" not in item:
            raise ConfigurationError(f"{entity_type}: transitions need 'from' and 'to'", details={"transition": item})
        _add_edge(item["from"], item["to"])

    if "exception_from" in raw:
        exception_from = _require_list(raw.get("exception_from"), f"{entity_type}.exception_from")
    else:
        exception_from = [s for s in stages if s not in terminal]
    for exc in exception_stages:
        for frm in exception_from:
            if frm != exc:
                _add_edge(frm, exc)

    with_outgoing = sorted({frm for frm, _ in edges if frm in terminal})
    if with_outgoing:
        raise ConfigurationError(
            f"{entity_type}: terminal stages must not have outgoing transitions",
            details={"stages": with_outgoing},
        )

    gates: list[Gate] = []
    for raw_gate in _require_list(raw.get("gates"), f"{entity_type}.gates"):
        gate = _parse_gate(entity_type, raw_gate, known)
        if (gate.from_stage, gate.to_stage) not in edges:
            raise ConfigurationError(
                f"{entity_type}: gate '{gate.name}' sits on a missing transition "
                f"'{gate.from_stage}' -> '{gate.to_stage}'",
            )
        if any(g.name == gate.name for g in gates):
            raise ConfigurationError(f"{entity_type}: duplicate gate name '{gate.name}'")
        if any((g.from_stage, g.to_stage) == (gate.from_stage, gate.to_stage) for g in gates):
            raise ConfigurationError(
                f"{entity_type}: more than one gate on '{gate.from_stage}' -> '{gate.to_stage}'",
            )
        if gate.on_reject_stage and (gate.from_stage, gate.on_reject_stage) not in edges:
            raise ConfigurationError(
                f"{entity_type}: gate '{gate.name}' rejects to '{gate.on_reject_stage}' "
                f"but no transition leads there from '{gate.from_stage}'",
            )
        gates.append(gate)

    return StageDefinition(
        entity_type=entity_type,
        initial=initial,
        stages=tuple(stages),
        exception_stages=tuple(exception_stages),
        terminal=terminal,
        edges=tuple(edges),
        gates=tuple(gates),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Registry
# ═════════════════════════════════════════════════════════════════════════════


class GateRegistry:
    """Read-only lookup of stage definitions and gates per entity type."""

    def __init__(self, definitions: dict[str, StageDefinition]):
        self._definitions = dict(definitions)

    @classmethod
    def from_dict(cls, data: dict) -> GateRegistry:
        if not isinstance(data, dict):
            raise ConfigurationError("Workflow configuration must be a mapping")
        entity_types = data.get("entity_types")
        if not isinstance(entity_types, dict) or not entity_types:
            raise ConfigurationError("Workflow configuration declares no entity_types")
        return cls({
            name: parse_stage_definition(name, raw)
            for name, raw in entity_types.items()
        })

    @classmethod
    def load(cls, path: str) -> GateRegistry:
        return cls.from_dict(load_workflow_file(path))

    # ── Lookups ──────────────────────────────────────────────────────────

    def list_entity_types(self) -> list[str]:
        return list(self._definitions)

    def get_definition(self, entity_type: str) -> StageDefinition:
        definition = self._definitions.get(entity_type)
        if definition is None:
            raise UnknownEntityType(entity_type)
        return definition

    def list_stages(self, entity_type: str) -> list[str]:
        """Ordered stages: the main sequence, then exception stages."""
        return list(self.get_definition(entity_type).all_stages)

    def validate_stage(self, entity_type: str, stage: str) -> bool:
        return stage in self.get_definition(entity_type).all_stages

    def has_edge(self, entity_type: str, from_stage: str, to_stage: str) -> bool:
        return self.get_definition(entity_type).has_edge(from_stage, to_stage)

    def get_gate(self, entity_type: str, from_stage: str, to_stage: str) -> Gate | None:
        """Gate on the edge, or None when the edge is ungated.

        None does not mean the edge exists; check ``has_edge`` for that.
        """
        return self.get_definition(entity_type).gate_for(from_stage, to_stage)

    def get_gate_by_id(self, entity_type: str, gate_id: str) -> Gate | None:
        for gate in self.get_definition(entity_type).gates:
            if gate.name == gate_id:
                return gate
        return None

    def list_gates(self, entity_type: str) -> list[Gate]:
        return list(self.get_definition(entity_type).gates)

    def next_stages(self, entity_type: str, stage: str) -> list[dict]:
        """Transitions available from ``stage``, each flagged gated or not."""
        definition = self.get_definition(entity_type)
        result = []
        for to_stage in definition.outgoing(stage):
            gate = definition.gate_for(stage, to_stage)
            result.append({
                "to_stage": to_stage,
                "gated": gate is not None,
                "gate": gate.to_dict() if gate else None,
            })
        return result

    def to_dict(self) -> dict:
        return {name: d.to_dict() for name, d in self._definitions.items()}


# ═════════════════════════════════════════════════════════════════════════════
# Loading
# ═════════════════════════════════════════════════════════════════════════════

_FILE_CACHE: dict[str, dict] = {}
_REGISTRY_CACHE: dict[str, GateRegistry] = {}


def load_workflow_file(path: str) -> dict:
    """Read and cache the raw workflow YAML document."""
    path = os.path.abspath(path)
    if path in _FILE_CACHE:
        return _FILE_CACHE[path]
    if not os.path.exists(path):
        raise ConfigurationError(f"Workflow configuration not found: {path}")
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Workflow configuration is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Workflow configuration is empty or malformed: {path}")
    _FILE_CACHE[path] = data
    return data


def get_gate_registry(path: str | None = None) -> GateRegistry:
    """Registry for ``path`` (default: the app's WORKFLOW_CONFIG_PATH)."""
    path = os.path.abspath(path or current_app.config["WORKFLOW_CONFIG_PATH"])
    registry = _REGISTRY_CACHE.get(path)
    if registry is None:
        registry = GateRegistry.load(path)
        _REGISTRY_CACHE[path] = registry
        logger.info(
            "Gate registry loaded: %d entity types from %s",
            len(registry.list_entity_types()), path,
        )
    return registry
