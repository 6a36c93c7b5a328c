from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.riskdocs.models import Base


def _loads(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    value = json.loads(raw)
    return value if isinstance(value, dict) else {}


class DocumentFamily(Base):
    """Stable identity of one assessment across all of its revisions."""

    __tablename__ = "document_families"
    __table_args__ = (
        CheckConstraint(
            "document_kind IN ('fire_risk_assessment','fire_strategy','explosive_atmosphere','engineering_risk')",
            name="ck_document_families_kind",
        ),
        Index("idx_document_families_org", "organisation_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    organisation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    document_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    jurisdiction: Mapped[str] = mapped_column(String(32), nullable=False, default="england_wales")

    current_revision_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_revisions.id", ondelete="SET NULL", use_alter=True, name="fk_family_current_revision"),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    revisions: Mapped[list["DocumentRevision"]] = relationship(
        "DocumentRevision",
        back_populates="family",
        cascade="all, delete-orphan",
        order_by="DocumentRevision.revision_number",
        foreign_keys="DocumentRevision.family_id",
    )

    current_revision: Mapped["DocumentRevision | None"] = relationship(
        "DocumentRevision",
        foreign_keys=[current_revision_id],
        post_update=True,
    )


class DocumentRevision(Base):
    __tablename__ = "document_revisions"
    __table_args__ = (
        UniqueConstraint("family_id", "revision_number", name="uq_document_revisions_family_number"),
        CheckConstraint(
            "status IN ('draft','in_review','approved','issued','superseded')",
            name="ck_document_revisions_status",
        ),
        CheckConstraint("revision_number >= 1", name="ck_document_revisions_number_positive"),
        Index("idx_document_revisions_family_status", "family_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    family_id: Mapped[int] = mapped_column(ForeignKey("document_families.id", ondelete="CASCADE"), nullable=False)
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False)

    # draft -> in_review -> approved -> issued -> superseded
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    assessment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    context_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # scope flags for readiness rules
    change_note: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    submitted_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approval_note: Mapped[str | None] = mapped_column(String(512), nullable=True)

    issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    issued_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    content_checksum: Mapped[str | None] = mapped_column(String(64), nullable=True)

    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    superseded_by_revision_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_revisions.id", ondelete="SET NULL"),
        nullable=True,
    )
    carried_from_revision_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_revisions.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Locked artifact (write-once once issued)
    locked_artifact_locator: Mapped[str | None] = mapped_column(String(512), nullable=True, unique=True)
    locked_artifact_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)
    locked_artifact_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    locked_artifact_content_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    locked_artifact_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    artifact_error: Mapped[str | None] = mapped_column(String(512), nullable=True)

    family: Mapped[DocumentFamily] = relationship(
        "DocumentFamily",
        back_populates="revisions",
        foreign_keys=[family_id],
    )

    modules: Mapped[list["RevisionModule"]] = relationship(
        "RevisionModule",
        back_populates="revision",
        cascade="all, delete-orphan",
        order_by="RevisionModule.module_key",
    )

    items: Mapped[list["RemediationItem"]] = relationship(
        "RemediationItem",
        back_populates="revision",
        cascade="all, delete-orphan",
        order_by="RemediationItem.id",
        foreign_keys="RemediationItem.revision_id",
    )

    @property
    def context(self) -> dict[str, Any]:
        return _loads(self.context_json)

    @property
    def has_locked_artifact(self) -> bool:
        return bool(self.locked_artifact_locator and self.locked_artifact_digest)


class RevisionModule(Base):
    """Mutable "live" content of one section while its revision is editable."""

    __tablename__ = "revision_modules"
    __table_args__ = (
        UniqueConstraint("revision_id", "module_key", name="uq_revision_modules_revision_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    revision_id: Mapped[int] = mapped_column(ForeignKey("document_revisions.id", ondelete="CASCADE"), nullable=False)
    module_key: Mapped[str] = mapped_column(String(64), nullable=False)

    data_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    revision: Mapped[DocumentRevision] = relationship("DocumentRevision", back_populates="modules")

    @property
    def data(self) -> dict[str, Any]:
        return _loads(self.data_json)


class Snapshot(Base):
    """
    Frozen capture of a revision at issuance.
    Append-only: never updated or deleted once written.
    """

    __tablename__ = "document_snapshots"
    __table_args__ = (
        UniqueConstraint("family_id", "revision_number", name="uq_document_snapshots_family_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    family_id: Mapped[int] = mapped_column(ForeignKey("document_families.id", ondelete="RESTRICT"), nullable=False)
    revision_id: Mapped[int] = mapped_column(ForeignKey("document_revisions.id", ondelete="RESTRICT"), nullable=False)
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False)

    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    captured_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    payload_sha256: Mapped[str] = mapped_column(String(64), nullable=False)


class RemediationItem(Base):
    __tablename__ = "remediation_items"
    __table_args__ = (
        CheckConstraint(
            "status IN ('open','in_progress','closed','not_applicable','deferred')",
            name="ck_remediation_items_status",
        ),
        CheckConstraint("source IN ('manual','carried_forward')", name="ck_remediation_items_source"),
        Index("idx_remediation_items_revision", "revision_id"),
        Index("idx_remediation_items_origin", "origin_item_id"),
        Index("idx_remediation_items_family_status", "family_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    family_id: Mapped[int] = mapped_column(ForeignKey("document_families.id", ondelete="CASCADE"), nullable=False)
    revision_id: Mapped[int] = mapped_column(ForeignKey("document_revisions.id", ondelete="CASCADE"), nullable=False)

    # Lineage: root item of the chain (own id for a root) and where it was first raised.
    origin_item_id: Mapped[int | None] = mapped_column(ForeignKey("remediation_items.id", ondelete="SET NULL"), nullable=True)
    origin_revision_number: Mapped[int] = mapped_column(Integer, nullable=False)
    carried_from_item_id: Mapped[int | None] = mapped_column(
        ForeignKey("remediation_items.id", ondelete="SET NULL"),
        nullable=True,
    )

    module_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    tier: Mapped[str | None] = mapped_column(String(8), nullable=True)  # T1..T4
    priority_code: Mapped[str | None] = mapped_column(String(8), nullable=True)  # P1..P4
    explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    owner_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    source: Mapped[str] = mapped_column(String(32), nullable=False, default="manual")
    reference_number: Mapped[str | None] = mapped_column(String(16), nullable=True)  # R-01, R-02, ...

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="open")
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    closed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    closure_note: Mapped[str | None] = mapped_column(String(512), nullable=True)
    reopened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    reopened_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    revision: Mapped[DocumentRevision] = relationship(
        "DocumentRevision",
        back_populates="items",
        foreign_keys=[revision_id],
    )

    @property
    def lineage_id(self) -> int:
        return self.origin_item_id or self.id


class ChangeSummary(Base):
    """What changed between revision N-1 and N. Written once per issuance."""

    __tablename__ = "change_summaries"
    __table_args__ = (
        UniqueConstraint("family_id", "revision_number", name="uq_change_summaries_family_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    family_id: Mapped[int] = mapped_column(ForeignKey("document_families.id", ondelete="RESTRICT"), nullable=False)
    revision_id: Mapped[int] = mapped_column(ForeignKey("document_revisions.id", ondelete="RESTRICT"), nullable=False)
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_revision_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    generated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    new_items_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closed_items_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outstanding_items_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    has_material_changes: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    details_json: Mapped[str] = mapped_column(Text, nullable=False)
    summary_text: Mapped[str] = mapped_column(Text, nullable=False)

    @property
    def details(self) -> dict[str, Any]:
        return _loads(self.details_json)
