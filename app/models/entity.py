"""
Innovation Workflow Platform
Entity domain model.

Models:
    - Entity: host-side record of one business object (Challenge, Pilot,
      PolicyRecommendation, …) carrying its lifecycle stage and the handful of
      fields that conversion predicates and field mappings read.

Business data beyond those fields (budgets, KPIs, municipality registries)
lives in the portal's own tables and is not modelled here.
"""

import json
import uuid
from datetime import datetime, timezone

from app.models import db


def _uuid() -> str:
    return str(uuid.uuid4())


class Entity(db.Model):
    """
    One instance of a configured entity type.

    ``stage`` is only ever written by the stage transition engine, through a
    compare-and-set on ``stage_version``.
    """

    __tablename__ = "entities"
    __table_args__ = (
        db.Index("ix_entities_type_stage", "entity_type", "stage"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    entity_type = db.Column(
        db.String(50), nullable=False, index=True,
        comment="Challenge | Pilot | PolicyRecommendation | RDProject | …",
    )
    title = db.Column(db.String(300), nullable=False, default="")

    stage = db.Column(db.String(50), nullable=False)
    stage_version = db.Column(
        db.Integer, nullable=False, default=1,
        comment="Optimistic-concurrency counter, bumped on every applied stage change",
    )
    stage_changed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    fields_json = db.Column(
        db.Text, nullable=False, default="{}",
        comment="JSON: predicate / mapping fields (recommendation, solution_id, trl_current, …)",
    )

    is_deleted = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def fields(self) -> dict:
        try:
            return json.loads(self.fields_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    @fields.setter
    def fields(self, value: dict) -> None:
        self.fields_json = json.dumps(value or {}, default=str)

    def predicate_view(self) -> dict:
        """Flat field view used by conversion predicates and field mappings."""
        view = dict(self.fields)
        view.update({
            "id": self.id,
            "title": self.title,
            "stage": self.stage,
            "is_deleted": self.is_deleted,
        })
        return view

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "title": self.title,
            "stage": self.stage,
            "stage_version": self.stage_version,
            "stage_changed_at": self.stage_changed_at.isoformat() if self.stage_changed_at else None,
            "fields": self.fields,
            "is_deleted": self.is_deleted,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Entity {self.entity_type}/{self.id} stage={self.stage}>"
