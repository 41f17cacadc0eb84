"""admissions_workflow_engine

Creates the workflow engine schema:
  - roles, role_permissions, actor_roles   — capability tags for actors
  - workflows                              — one stage graph per application type
  - workflow_stages, workflow_transitions  — graph rows (retired rows kept for history)
  - applications                           — applications bound to a workflow
  - application_statuses                   — append-only status history
  - audit_logs, notifications

Tables are created conditionally so the migration can run against a
database that already received them via db.create_all() in development.

Revision ID: 7c1e2a9b4d10
Revises:
Create Date: 2026-10-19 09:12:40.118204
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7c1e2a9b4d10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Roles ─────────────────────────────────────────────────────────────
    if "roles" not in existing:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    if "role_permissions" not in existing:
        op.create_table(
            "role_permissions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("codename", sa.String(length=100), nullable=False),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("role_id", "codename", name="uq_role_permission"),
        )

    if "actor_roles" not in existing:
        op.create_table(
            "actor_roles",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("actor_id", sa.String(length=150), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("assigned_by", sa.String(length=150), nullable=True),
            sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("actor_id", "role_id", name="uq_actor_role"),
        )
        op.create_index("ix_actor_roles_actor_id", "actor_roles", ["actor_id"])

    # ── Workflows ─────────────────────────────────────────────────────────
    if "workflows" not in existing:
        op.create_table(
            "workflows",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("application_type", sa.String(length=30), nullable=False,
                      comment="undergraduate | graduate | transfer"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )
        op.create_index("idx_workflow_type_active", "workflows", ["application_type", "is_active"])

    if "workflow_stages" not in existing:
        op.create_table(
            "workflow_stages",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("workflow_id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("required_document_types", sa.JSON(), nullable=True),
            sa.Column("required_actions", sa.JSON(), nullable=True),
            sa.Column("notification_triggers", sa.JSON(), nullable=True),
            sa.Column("assigned_role_id", sa.Integer(), nullable=True),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0",
                      comment="submission order"),
            sa.Column("is_retired", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["assigned_role_id"], ["roles.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_stage_workflow", "workflow_stages", ["workflow_id", "is_retired"])

    if "workflow_transitions" not in existing:
        op.create_table(
            "workflow_transitions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("workflow_id", sa.Integer(), nullable=False),
            sa.Column("source_stage_id", sa.String(length=36), nullable=False),
            sa.Column("target_stage_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("conditions", sa.JSON(), nullable=True),
            sa.Column("required_permissions", sa.JSON(), nullable=True),
            sa.Column("is_automatic", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("is_retired", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["source_stage_id"], ["workflow_stages.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["target_stage_id"], ["workflow_stages.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_transition_source", "workflow_transitions", ["workflow_id", "source_stage_id"])

    # ── Applications ──────────────────────────────────────────────────────
    if "applications" not in existing:
        op.create_table(
            "applications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("workflow_id", sa.Integer(), nullable=False),
            sa.Column("application_type", sa.String(length=30), nullable=False),
            sa.Column("applicant_ref", sa.String(length=150), nullable=True,
                      comment="External applicant identifier"),
            sa.Column("facts", sa.JSON(), nullable=True,
                      comment='Fact snapshot used by transition conditions: {"decision_recorded": true, ...}'),
            sa.Column("current_stage_id", sa.String(length=36), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["workflow_id"], ["workflows.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["current_stage_id"], ["workflow_stages.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_applications_workflow_id", "applications", ["workflow_id"])
        op.create_index("ix_applications_applicant_ref", "applications", ["applicant_ref"])
        op.create_index("idx_application_stage", "applications", ["workflow_id", "current_stage_id"])

    if "application_statuses" not in existing:
        op.create_table(
            "application_statuses",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("application_id", sa.Integer(), nullable=False),
            sa.Column("position", sa.Integer(), nullable=False,
                      comment="0-based order within the application"),
            sa.Column("stage_id", sa.String(length=36), nullable=False),
            sa.Column("transition_id", sa.String(length=36), nullable=True),
            sa.Column("entered_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("entered_by_kind", sa.String(length=10), nullable=False, comment="human | system"),
            sa.Column("entered_by_id", sa.String(length=150), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["application_id"], ["applications.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["stage_id"], ["workflow_stages.id"]),
            sa.ForeignKeyConstraint(["transition_id"], ["workflow_transitions.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("application_id", "position", name="uq_application_status_position"),
        )
        op.create_index("idx_status_stage", "application_statuses", ["stage_id"])
        op.create_index("idx_status_transition", "application_statuses", ["transition_id"])

    # ── Audit & notifications ─────────────────────────────────────────────
    if "audit_logs" not in existing:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False,
                      comment="workflow | application | role"),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])

    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient", sa.String(length=150), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("severity", sa.String(length=20), nullable=True),
            sa.Column("template", sa.String(length=100), nullable=True),
            sa.Column("channels", sa.JSON(), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True),
            sa.Column("entity_id", sa.Integer(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])


def downgrade():
    op.drop_table("notifications")
    op.drop_table("audit_logs")
    op.drop_table("application_statuses")
    op.drop_table("applications")
    op.drop_table("workflow_transitions")
    op.drop_table("workflow_stages")
    op.drop_table("workflows")
    op.drop_table("actor_roles")
    op.drop_table("role_permissions")
    op.drop_table("roles")
