"""
Entity Service

CRUD for the host-side entity records the workflow engine operates on.
Stages are never written here: new entities start at their type's initial
stage and only the transition engine moves them afterwards.
"""

import logging

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.entity import Entity
from app.services.gate_registry import get_gate_registry

logger = logging.getLogger(__name__)

_PROTECTED_FIELDS = {"id", "stage", "stage_version", "is_deleted", "entity_type"}


def get_entity(entity_id: str, include_deleted: bool = False) -> Entity:
    entity = db.session.get(Entity, entity_id)
    if entity is None or (entity.is_deleted and not include_deleted):
        raise NotFoundError(resource="Entity", resource_id=entity_id)
    return entity


def list_entities(entity_type: str | None = None, stage: str | None = None,
                  include_deleted: bool = False):
    q = Entity.query
    if entity_type:
        q = q.filter_by(entity_type=entity_type)
    if stage:
        q = q.filter_by(stage=stage)
    if not include_deleted:
        q = q.filter_by(is_deleted=False)
    return q.order_by(Entity.created_at.desc())


def clean_fields(fields) -> dict:
    if fields is None:
        return {}
    if not isinstance(fields, dict):
        raise ValidationError("fields must be an object")
    protected = sorted(_PROTECTED_FIELDS & set(fields))
    if protected:
        raise ValidationError(
            "fields may not set engine-owned attributes",
            details={"fields": protected},
        )
    return fields


def create_entity(entity_type: str, title: str, fields: dict | None = None,
                  created_by: str | None = None) -> Entity:
    """Create an entity at the initial stage of its lifecycle.

    Raises:
        UnknownEntityType: ``entity_type`` has no registered lifecycle.
        ValidationError: ``fields`` tries to set engine-owned attributes.
    """
    definition = get_gate_registry().get_definition(entity_type)
    entity = Entity(
        entity_type=entity_type,
        title=title,
        stage=definition.initial,
        created_by=created_by,
    )
    entity.fields = clean_fields(fields)
    db.session.add(entity)
    db.session.flush()

    write_audit(entity_type=entity_type, entity_id=entity.id, action="create",
                actor=created_by, diff={"stage": definition.initial})
    logger.info("%s %s created", entity_type, entity.id,
                extra={"entity_type": entity_type, "entity_id": entity.id})
    return entity


def update_entity(entity: Entity, title: str | None = None, fields: dict | None = None,
                  actor: str | None = None) -> Entity:
    """Merge ``fields`` into the entity; keys set to None are removed."""
    diff = {}
    if title is not None and title != entity.title:
        diff["title"] = {"old": entity.title, "new": title}
        entity.title = title

    if fields is not None:
        merged = dict(entity.fields)
        for key, value in clean_fields(fields).items():
            old = merged.get(key)
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
            if old != value:
                diff[key] = {"old": old, "new": value}
        entity.fields = merged

    db.session.flush()
    if diff:
        write_audit(entity_type=entity.entity_type, entity_id=entity.id,
                    action="update", actor=actor, diff=diff)
    return entity


def soft_delete_entity(entity: Entity, actor: str | None = None) -> Entity:
    """Soft-deleted entities stay in place but never satisfy a conversion predicate."""
    entity.is_deleted = True
    db.session.flush()
    write_audit(entity_type=entity.entity_type, entity_id=entity.id,
                action="delete", actor=actor)
    return entity
