"""document lifecycle baseline: users/rbac/audit plus families, revisions, snapshots, items, summaries

Revision ID: a0c1d2e3f4a5
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "a0c1d2e3f4a5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _user_fk(name: str) -> sa.Column:
    return sa.Column(name, sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True)


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("email", sa.String(length=320), nullable=False, unique=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(length=64), nullable=False, unique=True),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("key", sa.String(length=128), nullable=False, unique=True),
            sa.Column("name", sa.String(length=128), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        )
    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )
    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column(
                "permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True
            ),
        )
    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            _user_fk("actor_user_id"),
            sa.Column("actor_user_email", sa.String(length=320), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("client_ip", sa.String(length=64), nullable=True),
            sa.Column("reason", sa.String(length=512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
        )

    if "document_families" not in existing_tables:
        # current_revision_id FK is added after document_revisions exists.
        op.create_table(
            "document_families",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("organisation_id", sa.String(length=64), nullable=False),
            sa.Column("document_kind", sa.String(length=32), nullable=False),
            sa.Column("jurisdiction", sa.String(length=32), nullable=False, server_default="england_wales"),
            sa.Column("current_revision_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            _user_fk("created_by_user_id"),
            sa.CheckConstraint(
                "document_kind IN ('fire_risk_assessment','fire_strategy','explosive_atmosphere','engineering_risk')",
                name="ck_document_families_kind",
            ),
        )
        op.create_index("idx_document_families_org", "document_families", ["organisation_id"])

    if "document_revisions" not in existing_tables:
        op.create_table(
            "document_revisions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column(
                "family_id", sa.Integer(), sa.ForeignKey("document_families.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("revision_number", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="draft"),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("assessment_date", sa.Date(), nullable=True),
            sa.Column("context_json", sa.Text(), nullable=True),
            sa.Column("change_note", sa.String(length=512), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            _user_fk("created_by_user_id"),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("submitted_at", sa.DateTime(timezone=False), nullable=True),
            _user_fk("submitted_by_user_id"),
            sa.Column("approved_at", sa.DateTime(timezone=False), nullable=True),
            _user_fk("approved_by_user_id"),
            sa.Column("approval_note", sa.String(length=512), nullable=True),
            sa.Column("issued_at", sa.DateTime(timezone=False), nullable=True),
            _user_fk("issued_by_user_id"),
            sa.Column("content_checksum", sa.String(length=64), nullable=True),
            sa.Column("superseded_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column(
                "superseded_by_revision_id",
                sa.Integer(),
                sa.ForeignKey("document_revisions.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column(
                "carried_from_revision_id",
                sa.Integer(),
                sa.ForeignKey("document_revisions.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("locked_artifact_locator", sa.String(length=512), nullable=True, unique=True),
            sa.Column("locked_artifact_digest", sa.String(length=64), nullable=True),
            sa.Column("locked_artifact_size", sa.Integer(), nullable=True),
            sa.Column("locked_artifact_content_type", sa.String(length=128), nullable=True),
            sa.Column("locked_artifact_generated_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("artifact_error", sa.String(length=512), nullable=True),
            sa.UniqueConstraint("family_id", "revision_number", name="uq_document_revisions_family_number"),
            sa.CheckConstraint(
                "status IN ('draft','in_review','approved','issued','superseded')",
                name="ck_document_revisions_status",
            ),
            sa.CheckConstraint("revision_number >= 1", name="ck_document_revisions_number_positive"),
        )
        op.create_index("idx_document_revisions_family_status", "document_revisions", ["family_id", "status"])
        with op.batch_alter_table("document_families") as batch:
            batch.create_foreign_key(
                "fk_family_current_revision",
                "document_revisions",
                ["current_revision_id"],
                ["id"],
                ondelete="SET NULL",
            )

    if "revision_modules" not in existing_tables:
        op.create_table(
            "revision_modules",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column(
                "revision_id", sa.Integer(), sa.ForeignKey("document_revisions.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("module_key", sa.String(length=64), nullable=False),
            sa.Column("data_json", sa.Text(), nullable=True),
            sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
            _user_fk("updated_by_user_id"),
            sa.UniqueConstraint("revision_id", "module_key", name="uq_revision_modules_revision_key"),
        )

    if "document_snapshots" not in existing_tables:
        op.create_table(
            "document_snapshots",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column(
                "family_id", sa.Integer(), sa.ForeignKey("document_families.id", ondelete="RESTRICT"), nullable=False
            ),
            sa.Column(
                "revision_id", sa.Integer(), sa.ForeignKey("document_revisions.id", ondelete="RESTRICT"), nullable=False
            ),
            sa.Column("revision_number", sa.Integer(), nullable=False),
            sa.Column("captured_at", sa.DateTime(timezone=False), nullable=False),
            _user_fk("captured_by_user_id"),
            sa.Column("payload_json", sa.Text(), nullable=False),
            sa.Column("payload_sha256", sa.String(length=64), nullable=False),
            sa.UniqueConstraint("family_id", "revision_number", name="uq_document_snapshots_family_number"),
        )

    if "remediation_items" not in existing_tables:
        op.create_table(
            "remediation_items",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column(
                "family_id", sa.Integer(), sa.ForeignKey("document_families.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column(
                "revision_id", sa.Integer(), sa.ForeignKey("document_revisions.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column(
                "origin_item_id", sa.Integer(), sa.ForeignKey("remediation_items.id", ondelete="SET NULL"), nullable=True
            ),
            sa.Column("origin_revision_number", sa.Integer(), nullable=False),
            sa.Column(
                "carried_from_item_id",
                sa.Integer(),
                sa.ForeignKey("remediation_items.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("module_key", sa.String(length=64), nullable=True),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("tier", sa.String(length=8), nullable=True),
            sa.Column("priority_code", sa.String(length=8), nullable=True),
            sa.Column("explanation", sa.Text(), nullable=True),
            sa.Column("target_date", sa.Date(), nullable=True),
            _user_fk("owner_user_id"),
            sa.Column("source", sa.String(length=32), nullable=False, server_default="manual"),
            sa.Column("reference_number", sa.String(length=16), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
            sa.Column("closed_at", sa.DateTime(timezone=False), nullable=True),
            _user_fk("closed_by_user_id"),
            sa.Column("closure_note", sa.String(length=512), nullable=True),
            sa.Column("reopened_at", sa.DateTime(timezone=False), nullable=True),
            _user_fk("reopened_by_user_id"),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
            sa.CheckConstraint(
                "status IN ('open','in_progress','closed','not_applicable','deferred')",
                name="ck_remediation_items_status",
            ),
            sa.CheckConstraint("source IN ('manual','carried_forward')", name="ck_remediation_items_source"),
        )
        op.create_index("idx_remediation_items_revision", "remediation_items", ["revision_id"])
        op.create_index("idx_remediation_items_origin", "remediation_items", ["origin_item_id"])
        op.create_index("idx_remediation_items_family_status", "remediation_items", ["family_id", "status"])

    if "change_summaries" not in existing_tables:
        op.create_table(
            "change_summaries",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column(
                "family_id", sa.Integer(), sa.ForeignKey("document_families.id", ondelete="RESTRICT"), nullable=False
            ),
            sa.Column(
                "revision_id", sa.Integer(), sa.ForeignKey("document_revisions.id", ondelete="RESTRICT"), nullable=False
            ),
            sa.Column("revision_number", sa.Integer(), nullable=False),
            sa.Column("previous_revision_number", sa.Integer(), nullable=True),
            sa.Column("generated_at", sa.DateTime(timezone=False), nullable=False),
            _user_fk("generated_by_user_id"),
            sa.Column("new_items_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("closed_items_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("outstanding_items_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("has_material_changes", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("details_json", sa.Text(), nullable=False),
            sa.Column("summary_text", sa.Text(), nullable=False),
            sa.UniqueConstraint("family_id", "revision_number", name="uq_change_summaries_family_number"),
        )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("change_summaries")
    op.drop_index("idx_remediation_items_family_status", table_name="remediation_items")
    op.drop_index("idx_remediation_items_origin", table_name="remediation_items")
    op.drop_index("idx_remediation_items_revision", table_name="remediation_items")
    op.drop_table("remediation_items")
    op.drop_table("document_snapshots")
    op.drop_table("revision_modules")
    with op.batch_alter_table("document_families") as batch:
        batch.drop_constraint("fk_family_current_revision", type_="foreignkey")
    op.drop_index("idx_document_revisions_family_status", table_name="document_revisions")
    op.drop_table("document_revisions")
    op.drop_index("idx_document_families_org", table_name="document_families")
    op.drop_table("document_families")
    op.drop_table("audit_events")
    op.drop_table("role_permissions")
    op.drop_table("user_roles")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("users")
