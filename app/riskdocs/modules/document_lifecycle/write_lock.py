"""
Write-lock guard.

Content that belongs to an issued or superseded revision is frozen, and so is
a revision that already has its issuance snapshot (an interrupted issue that
must resume from exactly that content). The check
runs twice: explicitly at the top of every mutating service call
(`assert_revision_editable`), and again inside the session's flush so code
that talks to the ORM directly cannot skip it (`install_write_lock`).
"""
from __future__ import annotations

import logging

from sqlalchemy import event, inspect, select
from sqlalchemy.orm import Session, object_session, sessionmaker

from app.riskdocs.constants import DRAFT, ITEM_CLOSED, LOCKED_STATUSES
from app.riskdocs.errors import ImmutableRecordError, InvalidTransition, RevisionLocked, WriteLockBypass

from .models import ChangeSummary, DocumentRevision, RemediationItem, RevisionModule, Snapshot

logger = logging.getLogger(__name__)

# Lineage closure propagation may close items of older, frozen revisions.
ITEM_CLOSURE_FIELDS = frozenset({"status", "closed_at", "closed_by_user_id", "closure_note", "updated_at"})

# Lifecycle stamps that may still move on a frozen revision (issued <-> superseded).
REVISION_LIFECYCLE_FIELDS = frozenset({"status", "superseded_at", "superseded_by_revision_id", "updated_at", "artifact_error"})

# Write-once: may be filled on a frozen revision only while still empty.
ARTIFACT_FIELDS = frozenset(
    {
        "locked_artifact_locator",
        "locked_artifact_digest",
        "locked_artifact_size",
        "locked_artifact_content_type",
        "locked_artifact_generated_at",
    }
)

# Status reported for an editable revision that is pinned by its snapshot.
FROZEN = "frozen"

_GUARDED_CONTENT = (RevisionModule, RemediationItem)
_APPEND_ONLY = (Snapshot, ChangeSummary)


def assert_revision_editable(revision: DocumentRevision) -> None:
    if revision.status in LOCKED_STATUSES:
        logger.warning(
            "Write-lock rejected mutation: revision_id=%s number=%s status=%s",
            revision.id,
            revision.revision_number,
            revision.status,
        )
        raise RevisionLocked(revision.revision_number, revision.status)
    s = object_session(revision)
    if s is not None and snapshot_exists(s, revision.family_id, revision.revision_number):
        logger.warning(
            "Write-lock rejected mutation: revision_id=%s number=%s has an issuance snapshot",
            revision.id,
            revision.revision_number,
        )
        raise RevisionLocked(revision.revision_number, FROZEN)


def snapshot_exists(s: Session, family_id: int | None, revision_number: int | None) -> bool:
    """Committed check, bypassing the identity map."""
    if family_id is None or revision_number is None:
        return False
    stmt = select(Snapshot.id).where(Snapshot.family_id == family_id, Snapshot.revision_number == revision_number)
    return s.connection().execute(stmt).first() is not None


def _changed_columns(obj: object) -> dict[str, tuple[object, object]]:
    state = inspect(obj)
    changed: dict[str, tuple[object, object]] = {}
    for attr in state.mapper.column_attrs:
        hist = state.attrs[attr.key].history
        if hist.added or hist.deleted:
            old = hist.deleted[0] if hist.deleted else None
            new = hist.added[0] if hist.added else None
            changed[attr.key] = (old, new)
    return changed


def _stored_revision(s: Session, revision_id: int | None):
    """Committed row for a revision, read straight from the database (not the identity map)."""
    if revision_id is None:
        return None
    stmt = select(
        DocumentRevision.status,
        DocumentRevision.family_id,
        DocumentRevision.revision_number,
        DocumentRevision.locked_artifact_locator,
    ).where(DocumentRevision.id == revision_id)
    return s.connection().execute(stmt).first()


def _owner_revision_id(obj: RevisionModule | RemediationItem) -> int | None:
    if obj.revision_id is not None:
        return obj.revision_id
    rev = obj.revision
    return rev.id if rev is not None else None


def _frozen_status(s: Session, row) -> str | None:
    """Status to report when the stored revision is frozen, else None."""
    if row is None:
        return None
    if row.status in LOCKED_STATUSES:
        return row.status
    if snapshot_exists(s, row.family_id, row.revision_number):
        return FROZEN
    return None


def _check_content(s: Session, obj: RevisionModule | RemediationItem, *, op: str) -> None:
    row = _stored_revision(s, _owner_revision_id(obj))
    frozen = _frozen_status(s, row)
    if frozen is None:
        return
    if op == "update" and isinstance(obj, RemediationItem) and frozen != FROZEN:
        changed = _changed_columns(obj)
        if set(changed) <= ITEM_CLOSURE_FIELDS and obj.status == ITEM_CLOSED:
            return
    logger.warning(
        "Write-lock blocked %s of %s (revision_number=%s status=%s)",
        op,
        type(obj).__name__,
        row.revision_number,
        frozen,
    )
    raise RevisionLocked(row.revision_number, frozen)


def _check_revision_update(s: Session, rev: DocumentRevision) -> None:
    row = _stored_revision(s, rev.id)
    frozen = _frozen_status(s, row)
    if frozen is None:
        return
    changed = _changed_columns(rev)
    allowed = set(REVISION_LIFECYCLE_FIELDS)
    if row.locked_artifact_locator is None or frozen == FROZEN:
        allowed |= ARTIFACT_FIELDS
    illegal = set(changed) - allowed
    if "status" in changed and frozen != FROZEN and rev.status not in LOCKED_STATUSES:
        illegal.add("status")
    if illegal:
        logger.warning(
            "Write-lock blocked revision update: revision_number=%s status=%s fields=%s",
            row.revision_number,
            frozen,
            sorted(illegal),
        )
        raise RevisionLocked(row.revision_number, frozen)


def _check_revision_delete(s: Session, rev: DocumentRevision) -> None:
    row = _stored_revision(s, rev.id)
    if row is None or row.status == DRAFT:
        return
    if row.status in LOCKED_STATUSES:
        raise RevisionLocked(row.revision_number, row.status)
    raise InvalidTransition(row.status, "delete", "only draft revisions can be deleted")


def _before_flush(s: Session, flush_context, instances) -> None:
    for obj in list(s.new):
        if isinstance(obj, _GUARDED_CONTENT):
            _check_content(s, obj, op="insert")

    for obj in list(s.dirty):
        if not s.is_modified(obj):
            continue
        if isinstance(obj, _APPEND_ONLY):
            raise ImmutableRecordError(f"{type(obj).__name__} {obj.id} is append-only and cannot be updated.")
        if isinstance(obj, _GUARDED_CONTENT):
            _check_content(s, obj, op="update")
        elif isinstance(obj, DocumentRevision):
            _check_revision_update(s, obj)

    for obj in list(s.deleted):
        if isinstance(obj, _APPEND_ONLY):
            raise ImmutableRecordError(f"{type(obj).__name__} {obj.id} is append-only and cannot be deleted.")
        if isinstance(obj, _GUARDED_CONTENT):
            _check_content(s, obj, op="delete")
        elif isinstance(obj, DocumentRevision):
            _check_revision_delete(s, obj)


def _guard_bulk_statements(orm_execute_state) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    if orm_execute_state.execution_options.get("lifecycle_system"):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is None:
        return
    cls = mapper.class_
    if cls in _APPEND_ONLY:
        raise ImmutableRecordError(f"{cls.__tablename__} is append-only.")
    if cls in _GUARDED_CONTENT or cls is DocumentRevision:
        raise WriteLockBypass(
            f"Bulk UPDATE/DELETE on {cls.__tablename__} bypasses the write-lock guard; "
            "load the rows and change them through the session instead."
        )


def install_write_lock(factory: sessionmaker) -> None:
    event.listen(factory, "before_flush", _before_flush)
    event.listen(factory, "do_orm_execute", _guard_bulk_statements)
