"""
Live content edits: module data and revision details. Every entry point is write-lock guarded.
"""
from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

from sqlalchemy import select

from app.riskdocs.audit import record_event
from app.riskdocs.errors import InvalidRequest, NotFound
from app.riskdocs.models import User

from .models import DocumentRevision, RevisionModule
from .write_lock import assert_revision_editable


def _dumps(d: dict[str, Any]) -> str:
    return json.dumps(d, sort_keys=True)


def get_revision(s, revision_id: int) -> DocumentRevision:
    rev = s.get(DocumentRevision, revision_id)
    if rev is None:
        raise NotFound(f"Revision {revision_id} not found.")
    return rev


def get_module(s, revision_id: int, module_key: str) -> RevisionModule | None:
    return (
        s.execute(
            select(RevisionModule).where(RevisionModule.revision_id == revision_id, RevisionModule.module_key == module_key)
        )
        .scalars()
        .one_or_none()
    )


def update_module(
    s,
    revision_id: int,
    module_key: str,
    *,
    actor: User,
    data: dict[str, Any] | None = None,
    completed: bool | None = None,
) -> RevisionModule:
    """Replace a module's data and/or completion flag. Creates the row if the kind did not seed it."""
    rev = get_revision(s, revision_id)
    assert_revision_editable(rev)
    key = (module_key or "").strip()
    if not key:
        raise InvalidRequest("module_key is required.")
    if data is not None and not isinstance(data, dict):
        raise InvalidRequest("Module data must be a JSON object.")

    mod = get_module(s, rev.id, key)
    if mod is None:
        mod = RevisionModule(revision_id=rev.id, module_key=key, data_json=_dumps({}), completed=False)
        s.add(mod)
    before = {"completed": bool(mod.completed), "fields": sorted(mod.data)}
    if data is not None:
        mod.data_json = _dumps(data)
    if completed is not None:
        mod.completed = bool(completed)
    mod.updated_at = datetime.utcnow()
    mod.updated_by_user_id = actor.id if actor else None
    rev.updated_at = mod.updated_at
    s.flush()

    record_event(
        s,
        actor=actor,
        action="revision_module.update",
        entity_type="RevisionModule",
        entity_id=str(mod.id),
        metadata={
            "revision_id": rev.id,
            "module_key": key,
            "before": before,
            "after": {"completed": bool(mod.completed), "fields": sorted(mod.data)},
        },
    )
    return mod


def update_revision_details(s, revision_id: int, changes: dict[str, Any], *, actor: User) -> DocumentRevision:
    """Title, assessment date, change note and scope context (readiness flags)."""
    rev = get_revision(s, revision_id)
    assert_revision_editable(rev)
    allowed = {"title", "assessment_date", "change_note", "context"}
    unknown = sorted(set(changes) - allowed)
    if unknown:
        raise InvalidRequest(f"Fields not editable here: {', '.join(unknown)}")

    if "title" in changes:
        title = (changes["title"] or "").strip()
        if not title:
            raise InvalidRequest("title cannot be empty.")
        rev.title = title
    if "assessment_date" in changes:
        raw = changes["assessment_date"]
        if raw in (None, ""):
            rev.assessment_date = None
        elif isinstance(raw, date):
            rev.assessment_date = raw
        else:
            try:
                rev.assessment_date = date.fromisoformat(str(raw))
            except ValueError as e:
                raise InvalidRequest("assessment_date must be YYYY-MM-DD.") from e
    if "change_note" in changes:
        rev.change_note = (changes["change_note"] or "").strip() or None
    if "context" in changes:
        ctx = changes["context"] or {}
        if not isinstance(ctx, dict):
            raise InvalidRequest("context must be a JSON object.")
        rev.context_json = _dumps(ctx)
    rev.updated_at = datetime.utcnow()
    s.flush()

    record_event(
        s,
        actor=actor,
        action="document_revision.update",
        entity_type="DocumentRevision",
        entity_id=str(rev.id),
        metadata={"fields_changed": sorted(changes)},
    )
    return rev
