import json
import time

import pytest
from sqlalchemy import update

from app.riskdocs.constants import APPROVED, DRAFT, IN_REVIEW, ISSUED
from app.riskdocs.db import session_scope
from app.riskdocs.errors import (
    ArtifactLockFailed,
    InvalidTransition,
    RevisionLocked,
    SnapshotMismatch,
    SnapshotWriteFailed,
)
from app.riskdocs.models import AuditEvent
from app.riskdocs.modules.document_lifecycle import lifecycle
from app.riskdocs.modules.document_lifecycle.artifacts import (
    SOURCE_FALLBACK,
    SOURCE_LOCKED,
    SOURCE_PREVIEW,
    compute_digest,
    fetch_artifact,
    lock_artifact,
    render_with_timeout,
    verify_artifact,
)
from app.riskdocs.modules.document_lifecycle.collaborators import Collaborators, TextReportRenderer
from app.riskdocs.modules.document_lifecycle.content import update_module
from app.riskdocs.modules.document_lifecycle.lifecycle import get_revision_state, transition
from app.riskdocs.modules.document_lifecycle.models import DocumentRevision, RevisionModule
from app.riskdocs.modules.document_lifecycle.snapshots import (
    build_payload,
    get_snapshot,
    load_payload,
    normalize_payload,
    write_snapshot,
)


class SlowRenderer(TextReportRenderer):
    def render(self, document_kind, content):
        time.sleep(1.0)
        return super().render(document_kind, content)


class FlakyRenderer(TextReportRenderer):
    def __init__(self):
        self.calls = 0

    def render(self, document_kind, content):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("renderer backend unavailable")
        return super().render(document_kind, content)


class EmptyRenderer(TextReportRenderer):
    def render(self, document_kind, content):
        return b""


def _audit_actions(s):
    return [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id).all()]


def _approved_fra(driver, *descriptions):
    family = driver.new_fra()
    rev_id = family.current_revision_id
    driver.complete_fra(rev_id, no_findings=not descriptions)
    for d in descriptions:
        driver.add_item(rev_id, d)
    driver.approve(rev_id)
    return family, rev_id


def _issue_with(s, actor, rev_id, collaborators):
    return transition(s, rev_id, "issue", actor=actor, collaborators=collaborators, confirm=True)


def _drop_artifact_record(s, rev_id):
    s.execute(
        update(DocumentRevision)
        .where(DocumentRevision.id == rev_id)
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


def test_lock_artifact_is_idempotent_for_identical_bytes(s, driver, storage):
    _, rev_id = _approved_fra(driver)
    first = lock_artifact(s, rev_id, b"report body", storage=storage, content_type="text/plain", extension="txt")
    again = lock_artifact(s, rev_id, b"report body", storage=storage, content_type="text/plain", extension="txt")
    assert again == first
    assert first.digest == compute_digest(b"report body")
    assert storage.read_bytes(first.locator) == b"report body"


def test_lock_artifact_refuses_different_bytes(s, driver, storage):
    _, rev_id = _approved_fra(driver)
    lock_artifact(s, rev_id, b"first render", storage=storage, content_type="text/plain", extension="txt")
    with pytest.raises(ArtifactLockFailed):
        lock_artifact(s, rev_id, b"second render", storage=storage, content_type="text/plain", extension="txt")
    rev = s.get(DocumentRevision, rev_id)
    s.refresh(rev)
    assert rev.locked_artifact_digest == compute_digest(b"first render")


def test_render_with_timeout_rejects_empty_output():
    with pytest.raises(ArtifactLockFailed):
        render_with_timeout(EmptyRenderer(), "fire_risk_assessment", {}, 1)


def test_render_timeout_leaves_revision_approved(s, driver, admin, storage):
    family, rev_id = _approved_fra(driver, "Escape route obstructed by stock")
    slow = Collaborators(storage=storage, renderer=SlowRenderer(), render_timeout_seconds=0.2, lock_retries=0)

    with pytest.raises(ArtifactLockFailed):
        _issue_with(s, admin, rev_id, slow)

    state = get_revision_state(s, rev_id)
    assert state.status == APPROVED
    assert state.locked_artifact_locator is None
    assert "did not finish" in state.artifact_error
    assert get_snapshot(s, family.id, 1) is None
    assert "document_revision.issue_failed" in _audit_actions(s)

    # A later attempt with a healthy renderer succeeds and clears the error.
    state = driver.act(rev_id, "issue", confirm=True)
    assert state.status == ISSUED
    assert state.artifact_error is None


def test_failed_render_is_retried_once(s, driver, admin, storage):
    _, rev_id = _approved_fra(driver)
    flaky = FlakyRenderer()
    collab = Collaborators(storage=storage, renderer=flaky, lock_retries=1, retry_backoff_seconds=0)

    state = _issue_with(s, admin, rev_id, collab)
    assert state.status == ISSUED
    assert flaky.calls == 2


def test_issued_artifact_served_from_lock(s, driver, admin, collab):
    _, state, _ = driver.issued_fra("Fire door self-closer missing")
    handle = fetch_artifact(s, state.revision_id, collaborators=collab, actor=admin)
    assert handle.source == SOURCE_LOCKED
    assert handle.digest == state.locked_artifact_digest
    assert compute_digest(handle.data) == state.locked_artifact_digest
    assert handle.filename.endswith("-rev-1.md")
    assert verify_artifact(s, state.revision_id, storage=collab.storage).ok


def test_missing_artifact_falls_back_to_snapshot_and_relocks(s, driver, admin, collab, storage):
    _, state, _ = driver.issued_fra("Fire door self-closer missing")
    original = storage.read_bytes(state.locked_artifact_locator)
    storage.delete(state.locked_artifact_locator)
    _drop_artifact_record(s, state.revision_id)

    handle = fetch_artifact(s, state.revision_id, collaborators=collab, actor=admin)
    assert handle.source == SOURCE_FALLBACK
    assert handle.data == original

    relocked = get_revision_state(s, state.revision_id)
    assert relocked.status == ISSUED
    assert relocked.locked_artifact_digest == compute_digest(original)
    assert storage.read_bytes(relocked.locked_artifact_locator) == original
    assert "document_revision.artifact_fallback_render" in _audit_actions(s)


def test_tampered_artifact_is_not_served(s, driver, admin, collab, storage):
    _, state, _ = driver.issued_fra()
    original = storage.read_bytes(state.locked_artifact_locator)
    storage.put_bytes(state.locked_artifact_locator, b"tampered")

    report = verify_artifact(s, state.revision_id, storage=storage)
    assert not report.ok
    assert report.reason == "digest mismatch"

    handle = fetch_artifact(s, state.revision_id, collaborators=collab, actor=admin)
    assert handle.source == SOURCE_FALLBACK
    assert handle.data == original
    actions = _audit_actions(s)
    assert "document_revision.artifact_integrity_failed" in actions
    assert "document_revision.artifact_fallback_render" in actions
    # The recorded lock is never rewritten.
    assert get_revision_state(s, state.revision_id).locked_artifact_digest == state.locked_artifact_digest


def test_draft_preview_is_rendered_live_and_never_locked(s, driver, admin, collab):
    family = driver.new_fra(title="Preview me")
    rev_id = family.current_revision_id
    handle = fetch_artifact(s, rev_id, collaborators=collab, actor=admin)
    assert handle.source == SOURCE_PREVIEW
    assert handle.filename.startswith("DRAFT-")
    assert b"# Preview me" in handle.data
    state = get_revision_state(s, rev_id)
    assert state.status == DRAFT
    assert state.locked_artifact_locator is None


def test_stale_artifact_from_failed_attempt_is_replaced(s, driver, storage):
    _, rev_id = _approved_fra(driver)
    stale = lock_artifact(s, rev_id, b"stale render", storage=storage, content_type="text/plain", extension="md")

    state = driver.act(rev_id, "issue", confirm=True)
    assert state.status == ISSUED
    assert state.locked_artifact_digest != stale.digest
    assert compute_digest(storage.read_bytes(state.locked_artifact_locator)) == state.locked_artifact_digest


def test_return_to_draft_releases_dangling_artifact(s, driver, storage):
    _, rev_id = _approved_fra(driver)
    stale = lock_artifact(s, rev_id, b"stale render", storage=storage, content_type="text/plain", extension="md")

    state = driver.act(rev_id, "return_to_draft")
    assert state.locked_artifact_locator is None
    assert not storage.exists(stale.locator)


def _freeze(s, rev_id, admin):
    rev = s.get(DocumentRevision, rev_id)
    return write_snapshot(s, rev, normalize_payload(build_payload(s, rev)), actor=admin)


def test_snapshot_freezes_an_approved_revision(s, driver, admin, storage):
    family, rev_id = _approved_fra(driver)
    frozen = _freeze(s, rev_id, admin)

    with pytest.raises(RevisionLocked) as exc:
        update_module(s, rev_id, "survey_info", actor=admin, data={"site_name": "Somewhere else"}, completed=True)
    assert exc.value.status == "frozen"
    s.rollback()
    with pytest.raises(InvalidTransition):
        driver.act(rev_id, "return_to_draft")
    assert get_revision_state(s, rev_id).status == APPROVED

    state = driver.act(rev_id, "issue", confirm=True)
    assert state.status == ISSUED
    assert state.content_checksum == frozen.payload_sha256
    body = storage.read_bytes(state.locked_artifact_locator).decode("utf-8")
    assert "Unit 4, Riverside Estate" in body
    assert load_payload(get_snapshot(s, family.id, 1))["modules"]["survey_info"]["data"]["site_name"] == (
        "Unit 4, Riverside Estate"
    )


def test_issue_refuses_snapshot_that_no_longer_matches_live_content(app, s, driver, admin):
    _, rev_id = _approved_fra(driver)
    _freeze(s, rev_id, admin)

    with session_scope(app) as other:
        other.execute(
            update(RevisionModule)
            .where(RevisionModule.revision_id == rev_id, RevisionModule.module_key == "survey_info")
            .values(data_json=json.dumps({"site_name": "CORRECTED SITE"}))
            .execution_options(lifecycle_system=True, synchronize_session=False)
        )

    with pytest.raises(SnapshotMismatch):
        driver.act(rev_id, "issue", confirm=True)

    state = get_revision_state(s, rev_id)
    assert state.status == APPROVED
    assert state.locked_artifact_locator is None
    assert "no longer matches" in state.artifact_error
    assert "document_revision.issue_failed" in _audit_actions(s)


def test_revision_leaving_approved_mid_issue_releases_the_artifact(app, s, driver, admin, storage, monkeypatch):
    _, rev_id = _approved_fra(driver)
    seen = {}
    real_write_snapshot = lifecycle.write_snapshot

    def pulled_back(session, revision, payload, **kwargs):
        with session_scope(app) as other:
            seen["locator"] = other.get(DocumentRevision, rev_id).locked_artifact_locator
            other.execute(
                update(DocumentRevision)
                .where(DocumentRevision.id == rev_id)
                .values(status=DRAFT)
                .execution_options(lifecycle_system=True, synchronize_session=False)
            )
        return real_write_snapshot(session, revision, payload, **kwargs)

    monkeypatch.setattr(lifecycle, "write_snapshot", pulled_back)
    with pytest.raises(SnapshotWriteFailed):
        driver.act(rev_id, "issue", confirm=True)

    state = get_revision_state(s, rev_id)
    assert state.status == DRAFT
    assert state.locked_artifact_locator is None
    assert state.artifact_error
    assert seen["locator"] and not storage.exists(seen["locator"])
    assert get_snapshot(s, state.family_id, 1) is None
    ev = s.query(AuditEvent).filter(AuditEvent.action == "document_revision.issue_failed").one()
    assert json.loads(ev.metadata_json)["status"] == DRAFT


def test_lost_status_flip_is_recorded(app, s, driver, admin, monkeypatch):
    _, rev_id = _approved_fra(driver)
    real_write_snapshot = lifecycle.write_snapshot

    def then_pulled_back(session, revision, payload, **kwargs):
        snap = real_write_snapshot(session, revision, payload, **kwargs)
        with session_scope(app) as other:
            other.execute(
                update(DocumentRevision)
                .where(DocumentRevision.id == rev_id)
                .values(status=IN_REVIEW)
                .execution_options(lifecycle_system=True, synchronize_session=False)
            )
        return snap

    monkeypatch.setattr(lifecycle, "write_snapshot", then_pulled_back)
    with pytest.raises(InvalidTransition):
        driver.act(rev_id, "issue", confirm=True)

    state = get_revision_state(s, rev_id)
    assert state.status == IN_REVIEW
    assert state.artifact_error
    # The snapshot pins the revision, so its artifact stays for the resumed issue.
    assert state.locked_artifact_locator
    ev = s.query(AuditEvent).filter(AuditEvent.action == "document_revision.issue_failed").one()
    assert json.loads(ev.metadata_json)["error"] == "invalid_transition"

    monkeypatch.undo()
    driver.act(rev_id, "approve")
    assert driver.act(rev_id, "issue", confirm=True).status == ISSUED
