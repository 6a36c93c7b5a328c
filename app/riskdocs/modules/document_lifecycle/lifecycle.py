"""
Lifecycle state machine.

Legal moves are data (`TRANSITIONS`), keyed by (current status, action). Every
status write is a compare-and-set on the status the caller observed, so two
concurrent requests cannot both win.

Issuance order: validate, freeze the payload, render (no locks held), lock the
artifact, write the snapshot, verify both by re-reading, and only then flip
`approved -> issued`. Any failure before the flip leaves the revision
`approved` with `artifact_error` set.

Once the snapshot is written the revision is frozen: it cannot return to
draft, its content cannot change, and a later issue resumes from that snapshot.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from app.riskdocs.audit import record_event
from app.riskdocs.constants import (
    APPROVED,
    DOCUMENT_KINDS,
    DRAFT,
    EDITABLE_STATUSES,
    IN_REVIEW,
    ISSUED,
    LOCKED_STATUSES,
    PERM_APPROVE,
    SUPERSEDED,
)
from app.riskdocs.errors import (
    ArtifactLockFailed,
    ConfirmationRequired,
    InvalidRequest,
    InvalidTransition,
    LifecycleError,
    NotFound,
    PermissionDenied,
    RevisionLocked,
    SnapshotMismatch,
    SnapshotWriteFailed,
    ValidationBlocked,
)
from app.riskdocs.models import User
from app.riskdocs.rbac import user_has_permission

from .artifacts import compute_digest, load_revision, lock_artifact, release_dangling_artifact, render_with_timeout
from .carry_forward import carry_forward
from .change_summary import generate_change_summary
from .collaborators import Collaborators
from .models import DocumentFamily, DocumentRevision, RevisionModule, Snapshot
from .readiness import ReadinessResult, module_catalog
from .remediation import assign_reference_numbers
from .snapshots import build_payload, canonical_json, get_snapshot, load_payload, normalize_payload, payload_digest, write_snapshot
from .write_lock import snapshot_exists

logger = logging.getLogger(__name__)

SUBMIT_FOR_REVIEW = "submit_for_review"
RETURN_TO_DRAFT = "return_to_draft"
APPROVE = "approve"
ISSUE = "issue"
CREATE_REVISION = "create_revision"

ACTIONS = (SUBMIT_FOR_REVIEW, RETURN_TO_DRAFT, APPROVE, ISSUE, CREATE_REVISION)


@dataclass(frozen=True)
class RevisionState:
    revision_id: int
    family_id: int
    revision_number: int
    status: str
    title: str
    submitted_at: datetime | None
    approved_at: datetime | None
    approved_by_user_id: int | None
    issued_at: datetime | None
    issued_by_user_id: int | None
    superseded_at: datetime | None
    content_checksum: str | None
    locked_artifact_locator: str | None
    locked_artifact_digest: str | None
    artifact_error: str | None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for k, v in self.__dict__.items():
            out[k] = v.isoformat() if isinstance(v, (datetime, date)) else v
        return out


def revision_state(rev: DocumentRevision) -> RevisionState:
    return RevisionState(
        revision_id=rev.id,
        family_id=rev.family_id,
        revision_number=rev.revision_number,
        status=rev.status,
        title=rev.title,
        submitted_at=rev.submitted_at,
        approved_at=rev.approved_at,
        approved_by_user_id=rev.approved_by_user_id,
        issued_at=rev.issued_at,
        issued_by_user_id=rev.issued_by_user_id,
        superseded_at=rev.superseded_at,
        content_checksum=rev.content_checksum,
        locked_artifact_locator=rev.locked_artifact_locator,
        locked_artifact_digest=rev.locked_artifact_digest,
        artifact_error=rev.artifact_error,
    )


@dataclass
class _Call:
    actor: User | None
    confirm: bool
    note: str | None
    collaborators: Collaborators


@dataclass(frozen=True)
class Transition:
    target: str
    precondition: Callable[[Any, DocumentRevision, _Call], None] | None
    apply: Callable[[Any, DocumentRevision, _Call], RevisionState]


# ---- preconditions ----


def _require_approver(s, rev: DocumentRevision, call: _Call) -> None:
    if not user_has_permission(call.actor, PERM_APPROVE):
        logger.warning("Approve refused: actor=%s lacks %s", getattr(call.actor, "email", None), PERM_APPROVE)
        raise PermissionDenied(PERM_APPROVE)


def _require_confirmation(s, rev: DocumentRevision, call: _Call) -> None:
    if not call.confirm:
        raise ConfirmationRequired(ISSUE)


def _require_no_snapshot(s, rev: DocumentRevision, call: _Call) -> None:
    if snapshot_exists(s, rev.family_id, rev.revision_number):
        logger.warning("Return to draft refused for revision_id=%s: issuance snapshot exists", rev.id)
        raise InvalidTransition(rev.status, RETURN_TO_DRAFT, "an issuance snapshot already exists; complete the issue")


# ---- status writes ----


def _snapshot_for(rev: DocumentRevision):
    return select(Snapshot.id).where(Snapshot.family_id == rev.family_id, Snapshot.revision_number == rev.revision_number)


def _cas_status(s, rev: DocumentRevision, expected: str, action: str, values: dict[str, Any], *conditions) -> None:
    res = s.execute(
        update(DocumentRevision)
        .where(DocumentRevision.id == rev.id, DocumentRevision.status == expected, *conditions)
        .values(**values)
        .execution_options(lifecycle_system=True, synchronize_session=False)
    )
    if res.rowcount != 1:
        s.rollback()
        current = load_revision(s, rev.id).status
        raise InvalidTransition(current, action, "the revision changed concurrently")


def _audit_transition(s, rev: DocumentRevision, call: _Call, action: str, frm: str, to: str, **extra: Any) -> None:
    record_event(
        s,
        actor=call.actor,
        action=f"document_revision.{action}",
        entity_type="DocumentRevision",
        entity_id=str(rev.id),
        reason=call.note,
        metadata={"family_id": rev.family_id, "revision_number": rev.revision_number, "from": frm, "to": to, **extra},
    )


def _apply_submit(s, rev: DocumentRevision, call: _Call) -> RevisionState:
    now = datetime.utcnow()
    _cas_status(
        s,
        rev,
        DRAFT,
        SUBMIT_FOR_REVIEW,
        {"status": IN_REVIEW, "submitted_at": now, "submitted_by_user_id": call.actor.id if call.actor else None, "updated_at": now},
    )
    _audit_transition(s, rev, call, SUBMIT_FOR_REVIEW, DRAFT, IN_REVIEW)
    s.commit()
    return revision_state(load_revision(s, rev.id))


def _apply_return_to_draft(s, rev: DocumentRevision, call: _Call) -> RevisionState:
    frm = rev.status
    now = datetime.utcnow()
    values: dict[str, Any] = {"status": DRAFT, "updated_at": now}
    if frm == APPROVED:
        values.update({"approved_at": None, "approved_by_user_id": None, "approval_note": None})
    _cas_status(s, rev, frm, RETURN_TO_DRAFT, values, ~_snapshot_for(rev).exists())
    _audit_transition(s, rev, call, RETURN_TO_DRAFT, frm, DRAFT)
    s.commit()
    # Content will change again; an artifact left by a failed issue attempt no longer applies.
    release_dangling_artifact(s, rev.id, storage=call.collaborators.storage)
    return revision_state(load_revision(s, rev.id))


def _apply_approve(s, rev: DocumentRevision, call: _Call) -> RevisionState:
    now = datetime.utcnow()
    _cas_status(
        s,
        rev,
        IN_REVIEW,
        APPROVE,
        {
            "status": APPROVED,
            "approved_at": now,
            "approved_by_user_id": call.actor.id if call.actor else None,
            "approval_note": (call.note or "").strip() or None,
            "updated_at": now,
        },
    )
    _audit_transition(s, rev, call, APPROVE, IN_REVIEW, APPROVED)
    s.commit()
    return revision_state(load_revision(s, rev.id))


# ---- issuance ----


# Re-approval restamps these; they are not document content.
_APPROVAL_STAMPS = ("approved_at", "approved_by_user_id")


def content_digest(payload: dict[str, Any]) -> str:
    body = dict(payload)
    body["revision"] = {k: v for k, v in payload.get("revision", {}).items() if k not in _APPROVAL_STAMPS}
    return payload_digest(body)


def _frozen_payload(s, rev: DocumentRevision, call: _Call) -> dict[str, Any]:
    """
    Payload to issue. A snapshot left by an interrupted attempt freezes the
    revision, and issuance resumes from it. It is only trusted while the live
    content still matches it.
    """
    existing = get_snapshot(s, rev.family_id, rev.revision_number)
    if existing is not None:
        frozen = load_payload(existing)
        # Compare against committed rows, not whatever this session has cached.
        s.expire_all()
        if content_digest(normalize_payload(build_payload(s, rev))) != content_digest(frozen):
            logger.error(
                "Revision_id=%s diverged from its snapshot %s; refusing to resume issuance",
                rev.id,
                existing.payload_sha256,
            )
            raise SnapshotMismatch(f"Revision {rev.revision_number} no longer matches its issuance snapshot.")
        logger.warning("Resuming issuance of revision_id=%s from its existing snapshot", rev.id)
        return frozen

    live = build_payload(s, rev)
    result = call.collaborators.validator.validate(rev.family.document_kind, live)
    if not result.ready:
        raise ValidationBlocked([b.to_dict() for b in result.blockers])

    try:
        assign_reference_numbers(s, rev)
        s.commit()
    except RevisionLocked:
        # A concurrent issue froze the revision first; its snapshot now exists.
        s.rollback()
        logger.info("Revision_id=%s was frozen by a concurrent issue; resuming from its snapshot", rev.id)
        return _frozen_payload(s, rev, call)
    return normalize_payload(build_payload(s, rev))


def _render_and_lock(s, rev: DocumentRevision, payload: dict[str, Any], call: _Call):
    collab = call.collaborators
    renderer = collab.renderer
    kind = rev.family.document_kind
    attempts = 1 + max(0, int(collab.lock_retries))
    attempt = 0
    while True:
        attempt += 1
        try:
            data = render_with_timeout(renderer, kind, payload, collab.render_timeout_seconds)
            current = load_revision(s, rev.id)
            if current.locked_artifact_locator and current.locked_artifact_digest != compute_digest(data):
                # Left by an earlier attempt on content that has since changed.
                release_dangling_artifact(s, rev.id, storage=collab.storage)
            return lock_artifact(
                s,
                rev.id,
                data,
                storage=collab.storage,
                content_type=renderer.content_type,
                extension=renderer.extension,
            )
        except ArtifactLockFailed as e:
            s.rollback()
            logger.warning("Artifact lock attempt %s/%s failed for revision_id=%s: %s", attempt, attempts, rev.id, e)
            if attempt >= attempts:
                raise
            time.sleep(collab.retry_backoff_seconds * attempt)


def _abort_issue(s, rev: DocumentRevision, call: _Call, err: LifecycleError) -> DocumentRevision:
    """
    Record a failed issue attempt and return the revision as it now stands.

    When the revision left `approved` underneath us and no snapshot pins it,
    the artifact this attempt locked no longer belongs to anything and is released.
    """
    s.rollback()
    fresh = load_revision(s, rev.id)
    if fresh.status in LOCKED_STATUSES:
        return fresh
    s.execute(
        update(DocumentRevision)
        .where(DocumentRevision.id == rev.id, DocumentRevision.status.not_in(tuple(LOCKED_STATUSES)))
        .values(artifact_error=str(err)[:512])
        .execution_options(lifecycle_system=True, synchronize_session=False)
    )
    record_event(
        s,
        actor=call.actor,
        action="document_revision.issue_failed",
        entity_type="DocumentRevision",
        entity_id=str(rev.id),
        reason=str(err)[:500],
        metadata={
            "error": err.code,
            "retryable": err.retryable,
            "revision_number": rev.revision_number,
            "status": fresh.status,
        },
    )
    s.commit()
    if fresh.status != APPROVED and not snapshot_exists(s, rev.family_id, rev.revision_number):
        release_dangling_artifact(s, rev.id, storage=call.collaborators.storage)
    return load_revision(s, rev.id)


def _apply_issue(s, rev: DocumentRevision, call: _Call) -> RevisionState:
    try:
        payload = _frozen_payload(s, rev, call)
        locked = _render_and_lock(s, rev, payload, call)
        snapshot = write_snapshot(s, rev, payload, actor=call.actor, require_status=APPROVED)
    except (ArtifactLockFailed, SnapshotWriteFailed) as e:
        logger.error("Issue of revision_id=%s aborted before status flip: %s", rev.id, e)
        fresh = _abort_issue(s, rev, call, e)
        if fresh.status == ISSUED:
            logger.info("Concurrent issue of revision_id=%s already completed; returning it", rev.id)
            return revision_state(fresh)
        raise
    checksum = payload_digest(payload)

    # Both writes verified by re-read; now the compare-and-set flip.
    now = datetime.utcnow()
    res = s.execute(
        update(DocumentRevision)
        .where(
            DocumentRevision.id == rev.id,
            DocumentRevision.status == APPROVED,
            DocumentRevision.locked_artifact_digest == locked.digest,
        )
        .values(
            status=ISSUED,
            issued_at=now,
            issued_by_user_id=call.actor.id if call.actor else None,
            content_checksum=checksum,
            artifact_error=None,
            updated_at=now,
        )
        .execution_options(lifecycle_system=True, synchronize_session=False)
    )
    if res.rowcount != 1:
        s.rollback()
        fresh = load_revision(s, rev.id)
        if fresh.status == ISSUED:
            logger.info("Concurrent issue of revision_id=%s already completed; returning it", rev.id)
            return revision_state(fresh)
        err = InvalidTransition(fresh.status, ISSUE, "the revision changed during issuance")
        logger.error("Issue of revision_id=%s lost its status flip: %s", rev.id, err)
        _abort_issue(s, rev, call, err)
        raise err

    superseded = s.execute(
        update(DocumentRevision)
        .where(
            DocumentRevision.family_id == rev.family_id,
            DocumentRevision.id != rev.id,
            DocumentRevision.status == ISSUED,
        )
        .values(status=SUPERSEDED, superseded_at=now, superseded_by_revision_id=rev.id)
        .execution_options(lifecycle_system=True, synchronize_session=False)
    )
    s.execute(update(DocumentFamily).where(DocumentFamily.id == rev.family_id).values(current_revision_id=rev.id))
    _audit_transition(
        s,
        rev,
        call,
        ISSUE,
        APPROVED,
        ISSUED,
        artifact_locator=locked.locator,
        artifact_sha256=locked.digest,
        snapshot_id=snapshot.id,
        content_checksum=checksum,
        superseded_count=superseded.rowcount,
    )
    s.commit()

    fresh = load_revision(s, rev.id)
    snap = get_snapshot(s, fresh.family_id, fresh.revision_number, fresh=True)
    if not (fresh.status == ISSUED and fresh.has_locked_artifact and snap is not None and snap.payload_sha256 == checksum):
        logger.error("Post-issue verification failed for revision_id=%s", rev.id)

    try:
        generate_change_summary(s, fresh, actor=call.actor)
    except (LifecycleError, SQLAlchemyError):
        s.rollback()
        logger.exception("Change summary generation failed for revision_id=%s (issue stands)", rev.id)

    logger.info("Issued revision_id=%s (family=%s rev=%s)", rev.id, rev.family_id, rev.revision_number)
    return revision_state(fresh)


def _apply_create_revision(s, rev: DocumentRevision, call: _Call) -> RevisionState:
    new_rev = create_revision(s, rev.family_id, actor=call.actor, note=call.note)
    return revision_state(new_rev)


TRANSITIONS: dict[tuple[str, str], Transition] = {
    (DRAFT, SUBMIT_FOR_REVIEW): Transition(IN_REVIEW, None, _apply_submit),
    (IN_REVIEW, RETURN_TO_DRAFT): Transition(DRAFT, _require_no_snapshot, _apply_return_to_draft),
    (IN_REVIEW, APPROVE): Transition(APPROVED, _require_approver, _apply_approve),
    (APPROVED, RETURN_TO_DRAFT): Transition(DRAFT, _require_no_snapshot, _apply_return_to_draft),
    (APPROVED, ISSUE): Transition(ISSUED, _require_confirmation, _apply_issue),
    (ISSUED, CREATE_REVISION): Transition(DRAFT, None, _apply_create_revision),
}


def allowed_actions(status: str, *, frozen: bool = False) -> list[str]:
    """Actions legal from `status`. A frozen revision (snapshot written) can only move forward."""
    return [action for (frm, action) in TRANSITIONS if frm == status and not (frozen and action == RETURN_TO_DRAFT)]


def transition(
    s,
    revision_id: int,
    action: str,
    *,
    actor: User | None,
    collaborators: Collaborators,
    confirm: bool = False,
    note: str | None = None,
) -> RevisionState:
    """
    Run one lifecycle action. Commits on success. Re-issuing an already issued
    revision returns its state unchanged.
    """
    rev = load_revision(s, revision_id)
    if action == ISSUE and rev.status == ISSUED:
        return revision_state(rev)

    t = TRANSITIONS.get((rev.status, action))
    if t is None:
        raise InvalidTransition(rev.status, action)
    call = _Call(actor=actor, confirm=bool(confirm), note=note, collaborators=collaborators)
    if t.precondition is not None:
        t.precondition(s, rev, call)
    logger.info("Transition revision_id=%s %s: %s -> %s", rev.id, action, rev.status, t.target)
    return t.apply(s, rev, call)


# ---- families and revisions ----


def create_family(
    s,
    *,
    organisation_id: str,
    document_kind: str,
    title: str,
    actor: User | None,
    jurisdiction: str | None = None,
    assessment_date: date | None = None,
    context: dict[str, Any] | None = None,
) -> DocumentFamily:
    """New family with revision 1 in draft and one empty module row per catalog section."""
    if document_kind not in DOCUMENT_KINDS:
        raise InvalidRequest(f"document_kind must be one of: {', '.join(sorted(DOCUMENT_KINDS))}")
    org = (organisation_id or "").strip()
    if not org:
        raise InvalidRequest("organisation_id is required.")
    title = (title or "").strip()
    if not title:
        raise InvalidRequest("title is required.")

    now = datetime.utcnow()
    family = DocumentFamily(
        organisation_id=org,
        document_kind=document_kind,
        jurisdiction=(jurisdiction or "england_wales").strip(),
        created_at=now,
        created_by_user_id=actor.id if actor else None,
    )
    s.add(family)
    s.flush()

    rev = DocumentRevision(
        family_id=family.id,
        revision_number=1,
        status=DRAFT,
        title=title,
        assessment_date=assessment_date,
        context_json=canonical_json(context or {}),
        created_at=now,
        created_by_user_id=actor.id if actor else None,
        updated_at=now,
    )
    s.add(rev)
    s.flush()
    for rule in module_catalog(document_kind):
        s.add(RevisionModule(revision_id=rev.id, module_key=rule.key, data_json="{}", completed=False, updated_at=now))
    family.current_revision_id = rev.id
    s.flush()

    record_event(
        s,
        actor=actor,
        action="document_family.create",
        entity_type="DocumentFamily",
        entity_id=str(family.id),
        metadata={"document_kind": document_kind, "organisation_id": org, "revision_id": rev.id},
    )
    s.commit()
    logger.info("Created family_id=%s kind=%s with revision_id=%s", family.id, document_kind, rev.id)
    return family


def _family_revisions(s, family_id: int) -> list[DocumentRevision]:
    return (
        s.execute(
            select(DocumentRevision)
            .where(DocumentRevision.family_id == family_id)
            .order_by(DocumentRevision.revision_number.asc())
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )


def create_revision(s, family_id: int, *, actor: User | None, note: str | None = None) -> DocumentRevision:
    """
    Start revision N+1 as a draft copy of issued revision N, carry open items
    forward and supersede N, all in one transaction. The new revision is only
    returned (and visible) after commit.
    """
    family = s.get(DocumentFamily, family_id)
    if family is None:
        raise NotFound(f"Document family {family_id} not found.")
    revisions = _family_revisions(s, family_id)
    if not revisions:
        raise InvalidTransition("none", CREATE_REVISION, "family has no revisions")

    editable = [r for r in revisions if r.status in EDITABLE_STATUSES]
    if editable:
        r = editable[0]
        raise InvalidTransition(r.status, CREATE_REVISION, f"revision {r.revision_number} is still editable")
    issued = [r for r in revisions if r.status == ISSUED]
    if not issued:
        raise InvalidTransition(revisions[-1].status, CREATE_REVISION, "only an issued revision can be revised")
    source = issued[-1]

    now = datetime.utcnow()
    new_rev = DocumentRevision(
        family_id=family_id,
        revision_number=max(r.revision_number for r in revisions) + 1,
        status=DRAFT,
        title=source.title,
        assessment_date=source.assessment_date,
        context_json=source.context_json,
        change_note=(note or "").strip() or None,
        carried_from_revision_id=source.id,
        created_at=now,
        created_by_user_id=actor.id if actor else None,
        updated_at=now,
    )
    try:
        s.add(new_rev)
        s.flush()
        for m in source.modules:
            s.add(
                RevisionModule(
                    revision_id=new_rev.id,
                    module_key=m.module_key,
                    data_json=m.data_json,
                    completed=m.completed,
                    updated_at=now,
                    updated_by_user_id=actor.id if actor else None,
                )
            )
        carried = carry_forward(s, source.id, new_rev.id)

        res = s.execute(
            update(DocumentRevision)
            .where(DocumentRevision.id == source.id, DocumentRevision.status == ISSUED)
            .values(status=SUPERSEDED, superseded_at=now, superseded_by_revision_id=new_rev.id)
            .execution_options(lifecycle_system=True, synchronize_session=False)
        )
        if res.rowcount != 1:
            raise InvalidTransition(SUPERSEDED, CREATE_REVISION, "the issued revision was revised concurrently")
        family.current_revision_id = new_rev.id

        record_event(
            s,
            actor=actor,
            action="document_revision.create_revision",
            entity_type="DocumentRevision",
            entity_id=str(new_rev.id),
            reason=note,
            metadata={
                "family_id": family_id,
                "from_revision_number": source.revision_number,
                "revision_number": new_rev.revision_number,
                "carried_items": len(carried),
            },
        )
        s.commit()
    except IntegrityError as e:
        s.rollback()
        raise InvalidTransition(ISSUED, CREATE_REVISION, "another revision was created concurrently") from e
    except LifecycleError:
        s.rollback()
        raise

    logger.info(
        "Created revision %s (revision_id=%s) for family_id=%s; carried %s items",
        new_rev.revision_number,
        new_rev.id,
        family_id,
        len(carried),
    )
    return load_revision(s, new_rev.id)


def delete_revision(s, revision_id: int, *, actor: User | None, reason: str | None = None) -> int | None:
    """
    Drafts only. Deleting revision 1 removes the whole family; deleting a later
    draft puts the revision it was created from back to `issued`.
    Returns the family's current revision id afterwards (None when the family is gone).
    """
    rev = load_revision(s, revision_id)
    if rev.status in LOCKED_STATUSES:
        raise RevisionLocked(rev.revision_number, rev.status)
    if rev.status != DRAFT:
        raise InvalidTransition(rev.status, "delete", "only draft revisions can be deleted")
    if get_snapshot(s, rev.family_id, rev.revision_number) is not None:
        raise InvalidTransition(rev.status, "delete", "revision already has a frozen snapshot")

    family = rev.family
    meta = {"family_id": family.id, "revision_number": rev.revision_number, "title": rev.title}
    current_id: int | None

    if rev.revision_number == 1:
        family.current_revision_id = None
        s.flush()
        s.delete(family)
        current_id = None
        action = "document_family.delete"
        entity_type, entity_id = "DocumentFamily", str(family.id)
    else:
        prev_id = rev.carried_from_revision_id
        if prev_id is not None:
            s.execute(
                update(DocumentRevision)
                .where(
                    DocumentRevision.id == prev_id,
                    DocumentRevision.status == SUPERSEDED,
                    DocumentRevision.superseded_by_revision_id == rev.id,
                )
                .values(status=ISSUED, superseded_at=None, superseded_by_revision_id=None)
                .execution_options(lifecycle_system=True, synchronize_session=False)
            )
        family.current_revision_id = prev_id
        s.flush()
        s.delete(rev)
        current_id = prev_id
        action = "document_revision.delete"
        entity_type, entity_id = "DocumentRevision", str(rev.id)

    record_event(s, actor=actor, action=action, entity_type=entity_type, entity_id=entity_id, reason=reason, metadata=meta)
    s.commit()
    logger.info("Deleted draft revision_id=%s (%s)", revision_id, action)
    return current_id


def list_revisions(s, family_id: int) -> list[dict[str, Any]]:
    if s.get(DocumentFamily, family_id) is None:
        raise NotFound(f"Document family {family_id} not found.")
    return [
        {
            "revision_id": r.id,
            "revision_number": r.revision_number,
            "status": r.status,
            "title": r.title,
            "issued_at": r.issued_at.isoformat() if r.issued_at else None,
            "superseded_at": r.superseded_at.isoformat() if r.superseded_at else None,
            "has_locked_artifact": r.has_locked_artifact,
        }
        for r in _family_revisions(s, family_id)
    ]


def get_revision_state(s, revision_id: int) -> RevisionState:
    return revision_state(load_revision(s, revision_id))


def get_readiness(s, revision_id: int, validator) -> ReadinessResult:
    rev = load_revision(s, revision_id)
    return validator.validate(rev.family.document_kind, build_payload(s, rev))
