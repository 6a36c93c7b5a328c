"""
Snapshot store.

A snapshot is the frozen, canonical JSON capture of a revision at issuance:
metadata, module data and the full remediation register. One per
(family, revision_number), never updated or deleted.
"""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from app.riskdocs.errors import SnapshotWriteFailed
from app.riskdocs.models import User

from .models import DocumentRevision, RemediationItem, Snapshot

logger = logging.getLogger(__name__)

PAYLOAD_SCHEMA_VERSION = 1


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _item_payload(item: RemediationItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "lineage_id": item.lineage_id,
        "origin_revision_number": item.origin_revision_number,
        "reference_number": item.reference_number,
        "module_key": item.module_key,
        "description": item.description,
        "tier": item.tier,
        "priority_code": item.priority_code,
        "explanation": item.explanation,
        "target_date": _iso(item.target_date),
        "owner_user_id": item.owner_user_id,
        "source": item.source,
        "status": item.status,
        "closed_at": _iso(item.closed_at),
        "closure_note": item.closure_note,
    }


def build_payload(s, revision: DocumentRevision) -> dict[str, Any]:
    """
    Full state of `revision` as plain JSON types, deterministically ordered.
    Volatile bookkeeping (updated_at, audit ids) is left out so equal content gives an equal payload.
    """
    family = revision.family
    items = (
        s.execute(
            select(RemediationItem)
            .where(RemediationItem.revision_id == revision.id)
            .order_by(RemediationItem.id.asc())
        )
        .scalars()
        .all()
    )
    modules = {
        m.module_key: {"completed": bool(m.completed), "data": m.data}
        for m in sorted(revision.modules, key=lambda m: m.module_key)
    }
    return {
        "schema": PAYLOAD_SCHEMA_VERSION,
        "family": {
            "id": family.id,
            "organisation_id": family.organisation_id,
            "document_kind": family.document_kind,
            "jurisdiction": family.jurisdiction,
        },
        "revision": {
            "id": revision.id,
            "revision_number": revision.revision_number,
            "title": revision.title,
            "assessment_date": _iso(revision.assessment_date),
            "change_note": revision.change_note,
            "approved_at": _iso(revision.approved_at),
            "approved_by_user_id": revision.approved_by_user_id,
        },
        "context": revision.context,
        "modules": modules,
        "items": [_item_payload(i) for i in items],
    }


def canonical_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def payload_digest(payload: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def normalize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """The payload exactly as it will read back from a stored snapshot."""
    return json.loads(canonical_json(payload))


def load_payload(snapshot: Snapshot) -> dict[str, Any]:
    return json.loads(snapshot.payload_json)


def get_snapshot(s, family_id: int, revision_number: int, *, fresh: bool = False) -> Snapshot | None:
    stmt = select(Snapshot).where(Snapshot.family_id == family_id, Snapshot.revision_number == revision_number)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    return (
        s.execute(stmt)
        .scalars()
        .one_or_none()
    )


def _pin_status(s, revision: DocumentRevision, status: str) -> None:
    res = s.execute(
        update(DocumentRevision)
        .where(DocumentRevision.id == revision.id, DocumentRevision.status == status)
        .values(updated_at=datetime.utcnow())
        .execution_options(lifecycle_system=True, synchronize_session=False)
    )
    if res.rowcount != 1:
        s.rollback()
        logger.warning("Snapshot refused for revision_id=%s: no longer %s", revision.id, status)
        raise SnapshotWriteFailed(f"Revision {revision.revision_number} is no longer {status}; snapshot not written.")


def write_snapshot(
    s,
    revision: DocumentRevision,
    payload: dict[str, Any],
    *,
    actor: User | None,
    require_status: str | None = None,
) -> Snapshot:
    """
    Insert + commit + re-read.

    An existing snapshot for the same (family, revision_number) with the same
    payload hash is returned as-is (duplicate issue clicks). A differing one
    means the frozen record disagrees with what we are about to issue: fail.

    With `require_status`, the insert commits only while the revision still has
    that status; the row is pinned in the same transaction.
    """
    body = canonical_json(payload)
    digest = hashlib.sha256(body.encode("utf-8")).hexdigest()
    family_id, number = revision.family_id, revision.revision_number

    existing = get_snapshot(s, family_id, number)
    if existing is None:
        if require_status is not None:
            _pin_status(s, revision, require_status)
        snap = Snapshot(
            family_id=family_id,
            revision_id=revision.id,
            revision_number=number,
            captured_by_user_id=actor.id if actor else None,
            payload_json=body,
            payload_sha256=digest,
        )
        s.add(snap)
        try:
            s.commit()
        except IntegrityError:
            # Lost a race with a concurrent issuance; judge the winner's row below.
            s.rollback()
            logger.info("Snapshot insert raced for family=%s rev=%s; re-reading", family_id, number)
        existing = get_snapshot(s, family_id, number, fresh=True)

    if existing is None:
        raise SnapshotWriteFailed(f"Snapshot for revision {number} was not readable after write.")
    if existing.payload_sha256 != digest or hashlib.sha256(existing.payload_json.encode("utf-8")).hexdigest() != digest:
        logger.error(
            "Snapshot mismatch for family=%s rev=%s: stored=%s expected=%s",
            family_id,
            number,
            existing.payload_sha256,
            digest,
        )
        raise SnapshotWriteFailed(f"A different snapshot already exists for revision {number}.")
    return existing
