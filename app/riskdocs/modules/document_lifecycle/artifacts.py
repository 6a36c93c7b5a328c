"""
Artifact locker.

Binds rendered bytes to a revision exactly once: write-once upload under a
locator derived from the revision identity, SHA-256 digest recorded against
the revision, both re-read before success is reported.
"""
from __future__ import annotations

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select, update

from app.riskdocs.audit import record_event
from app.riskdocs.constants import LOCKED_STATUSES
from app.riskdocs.errors import ArtifactLockFailed, InvalidTransition, LifecycleError, NotFound
from app.riskdocs.models import User
from app.riskdocs.storage import ObjectExists, Storage

from .models import DocumentRevision
from .snapshots import build_payload, get_snapshot, load_payload, normalize_payload

logger = logging.getLogger(__name__)

SOURCE_LOCKED = "locked"
SOURCE_FALLBACK = "fallback_render"
SOURCE_PREVIEW = "draft_preview"


@dataclass(frozen=True)
class LockedArtifact:
    locator: str
    digest: str
    size: int
    content_type: str | None
    generated_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "locator": self.locator,
            "digest": self.digest,
            "size": self.size,
            "content_type": self.content_type,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
        }


@dataclass(frozen=True)
class ArtifactHandle:
    source: str
    digest: str
    content_type: str | None
    filename: str
    url: str | None = None
    data: bytes | None = None


@dataclass(frozen=True)
class IntegrityReport:
    revision_id: int
    ok: bool
    locator: str | None
    expected_digest: str | None
    actual_digest: str | None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "revision_id": self.revision_id,
            "ok": self.ok,
            "locator": self.locator,
            "expected_digest": self.expected_digest,
            "actual_digest": self.actual_digest,
            "reason": self.reason,
        }


def compute_digest(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def artifact_locator(revision: DocumentRevision, extension: str) -> str:
    # Identity only: the same revision always maps to the same key.
    ext = (extension or "bin").lstrip(".")
    return f"artifacts/{revision.family_id}/{revision.id}/rev-{revision.revision_number}.{ext}"


def artifact_filename(revision: DocumentRevision, extension: str) -> str:
    ext = (extension or "bin").lstrip(".")
    return f"{revision.family.document_kind}-{revision.family_id}-rev-{revision.revision_number}.{ext}"


def load_revision(s, revision_id: int, *, fresh: bool = True) -> DocumentRevision:
    stmt = select(DocumentRevision).where(DocumentRevision.id == revision_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    rev = s.execute(stmt).scalar_one_or_none()
    if rev is None:
        raise NotFound(f"Revision {revision_id} not found.")
    return rev


def _record(rev: DocumentRevision) -> LockedArtifact:
    return LockedArtifact(
        locator=rev.locked_artifact_locator or "",
        digest=rev.locked_artifact_digest or "",
        size=rev.locked_artifact_size or 0,
        content_type=rev.locked_artifact_content_type,
        generated_at=rev.locked_artifact_generated_at,
    )


def lock_artifact(
    s,
    revision_id: int,
    rendered: bytes,
    *,
    storage: Storage,
    content_type: str | None,
    extension: str,
) -> LockedArtifact:
    """
    Idempotent: a revision already locked with the same digest gets its existing
    record back and storage is not written. A different digest fails loudly.
    Commits its own transaction.
    """
    digest = compute_digest(rendered)
    rev = load_revision(s, revision_id)

    if rev.locked_artifact_locator:
        if rev.locked_artifact_digest == digest:
            logger.info("Artifact already locked for revision_id=%s; reusing %s", revision_id, rev.locked_artifact_locator)
            return _record(rev)
        logger.error(
            "Refusing to re-lock revision_id=%s: locked digest=%s new digest=%s",
            revision_id,
            rev.locked_artifact_digest,
            digest,
        )
        raise ArtifactLockFailed(
            f"Revision {rev.revision_number} already has a locked artifact with a different digest."
        )

    locator = artifact_locator(rev, extension)
    try:
        created = storage.put_once(locator, rendered, content_type=content_type)
    except ObjectExists as e:
        raise ArtifactLockFailed(f"Storage already holds different bytes at {locator}.") from e
    except Exception as e:
        logger.warning("Artifact upload failed for revision_id=%s: %s", revision_id, e)
        raise ArtifactLockFailed(f"Artifact upload failed: {e}") from e
    if not created:
        logger.info("Identical artifact bytes already stored at %s", locator)

    s.execute(
        update(DocumentRevision)
        .where(DocumentRevision.id == revision_id, DocumentRevision.locked_artifact_locator.is_(None))
        .values(
            locked_artifact_locator=locator,
            locked_artifact_digest=digest,
            locked_artifact_size=len(rendered),
            locked_artifact_content_type=content_type,
            locked_artifact_generated_at=datetime.utcnow(),
            artifact_error=None,
        )
        .execution_options(lifecycle_system=True, synchronize_session=False)
    )
    s.commit()

    # Do not trust the write call: re-read both the record and the stored bytes.
    rev = load_revision(s, revision_id)
    if rev.locked_artifact_locator != locator or rev.locked_artifact_digest != digest:
        raise ArtifactLockFailed(f"Artifact record for revision {rev.revision_number} did not read back as written.")
    try:
        stored = storage.read_bytes(locator)
    except Exception as e:
        raise ArtifactLockFailed(f"Locked artifact not readable at {locator}: {e}") from e
    if compute_digest(stored) != digest:
        raise ArtifactLockFailed(f"Stored artifact bytes at {locator} do not match the recorded digest.")

    logger.info("Locked artifact for revision_id=%s at %s (sha256=%s)", revision_id, locator, digest)
    return _record(rev)


def release_dangling_artifact(s, revision_id: int, *, storage: Storage) -> bool:
    """
    Drop the artifact of a failed issuance (revision still editable) so a
    fresh render can be locked. Returns False when there was nothing to release.
    """
    rev = load_revision(s, revision_id)
    if rev.status in LOCKED_STATUSES:
        raise InvalidTransition(rev.status, "release_artifact", "artifacts of issued revisions are permanent")
    if not rev.locked_artifact_locator:
        return False
    locator = rev.locked_artifact_locator
    storage.delete(locator)
    s.execute(
        update(DocumentRevision)
        .where(DocumentRevision.id == revision_id, DocumentRevision.status.not_in(tuple(LOCKED_STATUSES)))
        .values(
            locked_artifact_locator=None,
            locked_artifact_digest=None,
            locked_artifact_size=None,
            locked_artifact_content_type=None,
            locked_artifact_generated_at=None,
        )
        .execution_options(lifecycle_system=True, synchronize_session=False)
    )
    s.commit()
    logger.warning("Released dangling artifact %s for revision_id=%s", locator, revision_id)
    return True


def render_with_timeout(renderer, document_kind: str, payload: dict[str, Any], timeout: float) -> bytes:
    """Run the renderer on a worker thread; give up after `timeout` seconds."""
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="artifact-render")
    try:
        future = executor.submit(renderer.render, document_kind, payload)
        try:
            data = future.result(timeout=timeout)
        except FutureTimeout as e:
            future.cancel()
            raise ArtifactLockFailed(f"Rendering did not finish within {timeout:g}s.") from e
        except Exception as e:
            logger.exception("Renderer failed for kind=%s", document_kind)
            raise ArtifactLockFailed(f"Rendering failed: {e}") from e
    finally:
        executor.shutdown(wait=False)
    if not isinstance(data, (bytes, bytearray)) or not data:
        raise ArtifactLockFailed("Renderer returned no bytes.")
    return bytes(data)


def verify_artifact(s, revision_id: int, *, storage: Storage) -> IntegrityReport:
    rev = load_revision(s, revision_id)
    if not rev.locked_artifact_locator:
        return IntegrityReport(rev.id, False, None, None, None, reason="no locked artifact")
    try:
        stored = storage.read_bytes(rev.locked_artifact_locator)
    except Exception as e:
        logger.error("Integrity check could not read %s: %s", rev.locked_artifact_locator, e)
        return IntegrityReport(
            rev.id, False, rev.locked_artifact_locator, rev.locked_artifact_digest, None, reason=f"unreadable: {e}"
        )
    actual = compute_digest(stored)
    ok = actual == rev.locked_artifact_digest and len(stored) == (rev.locked_artifact_size or 0)
    if not ok:
        logger.error(
            "Artifact integrity FAILED for revision_id=%s: expected=%s actual=%s",
            rev.id,
            rev.locked_artifact_digest,
            actual,
        )
    return IntegrityReport(
        rev.id,
        ok,
        rev.locked_artifact_locator,
        rev.locked_artifact_digest,
        actual,
        reason=None if ok else "digest mismatch",
    )


def fetch_artifact(s, revision_id: int, *, collaborators, actor: User | None = None) -> ArtifactHandle:
    """
    Issued/superseded with a lock: signed URL (or the stored bytes) after an integrity check.
    Issued without a lock: re-render from the snapshot, never from live content, and try to lock it.
    Editable: a draft preview from live content, never locked.
    """
    storage = collaborators.storage
    renderer = collaborators.renderer
    rev = load_revision(s, revision_id)
    kind = rev.family.document_kind
    filename = artifact_filename(rev, renderer.extension)

    if rev.status not in LOCKED_STATUSES:
        payload = normalize_payload(build_payload(s, rev))
        data = render_with_timeout(renderer, kind, payload, collaborators.render_timeout_seconds)
        return ArtifactHandle(SOURCE_PREVIEW, compute_digest(data), renderer.content_type, f"DRAFT-{filename}", data=data)

    if rev.locked_artifact_locator:
        report = verify_artifact(s, rev.id, storage=storage)
        if report.ok:
            locked_name = artifact_filename(rev, rev.locked_artifact_locator.rsplit(".", 1)[-1])
            url = storage.signed_url(
                rev.locked_artifact_locator, expires_in=collaborators.url_ttl_seconds, filename=locked_name
            )
            if url:
                return ArtifactHandle(SOURCE_LOCKED, report.expected_digest or "", rev.locked_artifact_content_type, locked_name, url=url)
            data = storage.read_bytes(rev.locked_artifact_locator)
            return ArtifactHandle(SOURCE_LOCKED, report.expected_digest or "", rev.locked_artifact_content_type, locked_name, data=data)
        record_event(
            s,
            actor=actor,
            action="document_revision.artifact_integrity_failed",
            entity_type="DocumentRevision",
            entity_id=str(rev.id),
            metadata=report.to_dict(),
        )
        s.commit()

    snapshot = get_snapshot(s, rev.family_id, rev.revision_number)
    if snapshot is None:
        logger.error("Issued revision_id=%s has neither a usable artifact nor a snapshot", rev.id)
        raise ArtifactLockFailed(f"Revision {rev.revision_number} has no snapshot to render from.")

    data = render_with_timeout(renderer, kind, load_payload(snapshot), collaborators.render_timeout_seconds)
    digest = compute_digest(data)
    logger.warning("Serving fallback render from snapshot for revision_id=%s (sha256=%s)", rev.id, digest)

    locked = False
    if not rev.locked_artifact_locator:
        try:
            lock_artifact(s, rev.id, data, storage=storage, content_type=renderer.content_type, extension=renderer.extension)
            locked = True
        except LifecycleError as e:
            s.rollback()
            logger.warning("Opportunistic lock after fallback render failed for revision_id=%s: %s", rev.id, e)

    record_event(
        s,
        actor=actor,
        action="document_revision.artifact_fallback_render",
        entity_type="DocumentRevision",
        entity_id=str(rev.id),
        metadata={"revision_number": rev.revision_number, "sha256": digest, "locked": locked},
    )
    s.commit()
    return ArtifactHandle(SOURCE_FALLBACK, digest, renderer.content_type, filename, data=data)
