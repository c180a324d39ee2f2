"""
Innovation Workflow Platform
Conversion domain model.

Models:
    - ConversionRecord: immutable fact that a source entity spawned a target.

Records are the only evidence used to compute conversion eligibility. They
are written in the same transaction as the target entity and never updated
or deleted afterwards.
"""

from datetime import datetime, timezone

from app.models import db


class ConversionRecord(db.Model):
    """
    (source_type, source_id) → (target_type, target_id).

    A target instance is the product of at most one conversion.
    """

    __tablename__ = "conversion_records"
    __table_args__ = (
        db.Index("ix_conversion_source", "source_type", "source_id", "target_type"),
        db.UniqueConstraint("target_type", "target_id", name="uq_conversion_target"),
    )

    id = db.Column(db.Integer, primary_key=True)
    source_type = db.Column(db.String(50), nullable=False)
    source_id = db.Column(db.String(36), nullable=False)
    target_type = db.Column(db.String(50), nullable=False)
    target_id = db.Column(db.String(36), nullable=False)
    rule_id = db.Column(db.String(80), nullable=True, comment="e.g. pilot_to_scaling")
    created_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_type": self.source_type,
            "source_id": self.source_id,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "rule_id": self.rule_id,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return (f"<ConversionRecord {self.source_type}/{self.source_id} → "
                f"{self.target_type}/{self.target_id}>")
