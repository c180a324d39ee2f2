"""initial_workflow_schema

Entities, approval requests/decisions, role assignments, conversion
records, audit logs and notifications.

Revision ID: a1f3c9e2b710
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1f3c9e2b710"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "entities" not in existing_tables:
        op.create_table(
            "entities",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("entity_type", sa.String(length=50), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("stage", sa.String(length=50), nullable=False),
            sa.Column("stage_version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("stage_changed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("fields_json", sa.Text(), nullable=False, server_default="{}"),
            sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_entities_entity_type", "entities", ["entity_type"])
        op.create_index("ix_entities_type_stage", "entities", ["entity_type", "stage"])

    if "approval_requests" not in existing_tables:
        op.create_table(
            "approval_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=50), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("gate_id", sa.String(length=80), nullable=False),
            sa.Column("from_stage", sa.String(length=50), nullable=False),
            sa.Column("to_stage", sa.String(length=50), nullable=False),
            sa.Column("approver_roles_json", sa.Text(), nullable=False, server_default="[]"),
            sa.Column("pending_index", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("requested_by", sa.String(length=150), nullable=True),
            sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["entity_id"], ["entities.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_entity", "approval_requests", ["entity_type", "entity_id"])
        op.create_index("ix_approval_status", "approval_requests", ["status"])
        op.create_index(
            "uq_approval_open_per_gate",
            "approval_requests",
            ["entity_id", "gate_id"],
            unique=True,
            postgresql_where=sa.text("status = 'pending'"),
            sqlite_where=sa.text("status = 'pending'"),
        )

    if "approval_decisions" not in existing_tables:
        op.create_table(
            "approval_decisions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("step_index", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=80), nullable=False),
            sa.Column("outcome", sa.String(length=20), nullable=False),
            sa.Column("decided_by", sa.String(length=150), nullable=True),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("decided_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["request_id"], ["approval_requests.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_approval_decisions_request_id", "approval_decisions", ["request_id"])

    if "role_assignments" not in existing_tables:
        op.create_table(
            "role_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.String(length=150), nullable=False),
            sa.Column("role", sa.String(length=80), nullable=False),
            sa.Column("assigned_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("user_id", "role", name="uq_role_assignment_user_role"),
        )
        op.create_index("ix_role_assignments_user_id", "role_assignments", ["user_id"])
        op.create_index("ix_role_assignments_role", "role_assignments", ["role"])

    if "conversion_records" not in existing_tables:
        op.create_table(
            "conversion_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("source_type", sa.String(length=50), nullable=False),
            sa.Column("source_id", sa.String(length=36), nullable=False),
            sa.Column("target_type", sa.String(length=50), nullable=False),
            sa.Column("target_id", sa.String(length=36), nullable=False),
            sa.Column("rule_id", sa.String(length=80), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("target_type", "target_id", name="uq_conversion_target"),
        )
        op.create_index(
            "ix_conversion_source", "conversion_records", ["source_type", "source_id", "target_type"],
        )

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=50), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient", sa.String(length=150), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("entity_type", sa.String(length=50), nullable=True),
            sa.Column("entity_id", sa.String(length=36), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in (
        "notifications",
        "audit_logs",
        "conversion_records",
        "role_assignments",
        "approval_decisions",
        "approval_requests",
        "entities",
    ):
        if table in existing_tables:
            op.drop_table(table)
