"""
Read-only consistency checks over a family's revisions, snapshots and artifacts.
Used by `scripts/check_integrity.py` and the tests; nothing here repairs data.
"""
from __future__ import annotations

import logging

from sqlalchemy import select

from app.riskdocs.constants import EDITABLE_STATUSES, ISSUED, LOCKED_STATUSES

from .models import DocumentFamily, DocumentRevision, Snapshot

logger = logging.getLogger(__name__)


def check_family_integrity(s, family_id: int) -> list[str]:
    problems: list[str] = []
    family = s.get(DocumentFamily, family_id, populate_existing=True)
    if family is None:
        return [f"family {family_id} does not exist"]

    revisions = (
        s.execute(
            select(DocumentRevision)
            .where(DocumentRevision.family_id == family_id)
            .order_by(DocumentRevision.revision_number.asc())
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )
    snapshots = {
        snap.revision_number: snap
        for snap in s.execute(select(Snapshot).where(Snapshot.family_id == family_id)).scalars()
    }

    editable = [r.revision_number for r in revisions if r.status in EDITABLE_STATUSES]
    if len(editable) > 1:
        problems.append(f"more than one editable revision: {editable}")
    issued = [r.revision_number for r in revisions if r.status == ISSUED]
    if len(issued) > 1:
        problems.append(f"more than one issued revision: {issued}")

    numbers = [r.revision_number for r in revisions]
    expected = list(range(1, len(numbers) + 1))
    if numbers != expected:
        problems.append(f"revision numbers are not contiguous from 1: {numbers}")

    by_number = {r.revision_number: r for r in revisions}
    for r in revisions:
        if r.status in LOCKED_STATUSES:
            if r.revision_number not in snapshots:
                problems.append(f"revision {r.revision_number} is {r.status} without a snapshot")
            if not r.has_locked_artifact:
                problems.append(f"revision {r.revision_number} is {r.status} without a locked artifact")
            elif snapshots.get(r.revision_number) is not None and r.content_checksum != snapshots[r.revision_number].payload_sha256:
                problems.append(f"revision {r.revision_number} checksum does not match its snapshot")

    for number in sorted(snapshots):
        r = by_number.get(number)
        if r is None:
            problems.append(f"snapshot for revision {number} has no revision row")
        elif r.status not in LOCKED_STATUSES:
            # Left by an interrupted issuance; the next issue attempt resumes from it.
            problems.append(f"snapshot for revision {number} exists but the revision is {r.status}")

    if revisions and family.current_revision_id != revisions[-1].id:
        problems.append("family current revision is not the latest revision")

    if problems:
        logger.warning("Integrity problems for family_id=%s: %s", family_id, "; ".join(problems))
    return problems


def find_issued_without_artifact(s) -> list[DocumentRevision]:
    """Issued or superseded revisions whose artifact pointer is empty (served by fallback render)."""
    return (
        s.execute(
            select(DocumentRevision)
            .where(
                DocumentRevision.status.in_(tuple(LOCKED_STATUSES)),
                DocumentRevision.locked_artifact_locator.is_(None),
            )
            .order_by(DocumentRevision.family_id.asc(), DocumentRevision.revision_number.asc())
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )


def check_all_families(s) -> dict[int, list[str]]:
    findings: dict[int, list[str]] = {}
    for family_id in s.execute(select(DocumentFamily.id).order_by(DocumentFamily.id.asc())).scalars():
        problems = check_family_integrity(s, family_id)
        if problems:
            findings[family_id] = problems
    return findings
