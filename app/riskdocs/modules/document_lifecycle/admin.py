from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, current_app, g, jsonify, redirect, request, send_file

from app.riskdocs.constants import (
    PERM_CLOSE_ACTION,
    PERM_CREATE,
    PERM_DELETE,
    PERM_DOWNLOAD,
    PERM_EDIT,
    PERM_ISSUE,
    PERM_REVISE,
    PERM_SUBMIT,
    PERM_VIEW,
)
from app.riskdocs.db import db_session
from app.riskdocs.errors import InvalidRequest, LifecycleError, NotFound, PermissionDenied
from app.riskdocs.models import User
from app.riskdocs.rbac import require_permission, user_has_permission

from .artifacts import SOURCE_LOCKED, fetch_artifact, load_revision, verify_artifact
from .carry_forward import close_item, reopen_item
from .change_summary import change_summary_to_dict, get_change_summary
from .collaborators import Collaborators, collaborators_from_config
from .content import update_module, update_revision_details
from .lifecycle import (
    ACTIONS,
    allowed_actions,
    create_family,
    create_revision,
    delete_revision,
    get_readiness,
    get_revision_state,
    list_revisions,
    revision_state,
    transition,
)
from .remediation import create_item, delete_item, get_item, item_to_dict, set_item_status, update_item
from .write_lock import snapshot_exists

bp = Blueprint("document_lifecycle", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        # require_permission answers 401 first; this only guards misuse.
        raise RuntimeError("No current user")
    return u


def _collaborators() -> Collaborators:
    # Tests install their own renderer/storage here.
    override = current_app.extensions.get("riskdocs_collaborators")
    if override is not None:
        return override
    return collaborators_from_config(current_app.config)


def _body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object.")
    return body


@bp.errorhandler(LifecycleError)
def _lifecycle_error(e: LifecycleError):
    s = getattr(g, "db_session", None)
    if s is not None:
        s.rollback()
    payload = e.to_dict()
    payload["request_id"] = getattr(g, "request_id", None)
    log = current_app.logger.warning if e.status_code < 500 else current_app.logger.error
    log("%s on %s %s (request_id=%s): %s", e.code, request.method, request.path, payload["request_id"], e)
    return jsonify(payload), e.status_code


# ---- families ----


@bp.post("/families")
@require_permission(PERM_CREATE)
def families_create():
    s = db_session()
    u = _current_user()
    body = _body()
    raw_date = body.get("assessment_date")
    try:
        assessment_date = date.fromisoformat(raw_date) if raw_date else None
    except (TypeError, ValueError) as e:
        raise InvalidRequest("assessment_date must be YYYY-MM-DD.") from e
    context = body.get("context") or {}
    if not isinstance(context, dict):
        raise InvalidRequest("context must be a JSON object.")

    family = create_family(
        s,
        organisation_id=str(body.get("organisation_id") or ""),
        document_kind=str(body.get("document_kind") or ""),
        title=str(body.get("title") or ""),
        jurisdiction=body.get("jurisdiction"),
        assessment_date=assessment_date,
        context=context,
        actor=u,
    )
    return (
        jsonify(
            {
                "family_id": family.id,
                "document_kind": family.document_kind,
                "current_revision": get_revision_state(s, family.current_revision_id).to_dict(),
            }
        ),
        201,
    )


@bp.get("/families/<int:family_id>/revisions")
@require_permission(PERM_VIEW)
def families_revisions(family_id: int):
    s = db_session()
    return jsonify({"family_id": family_id, "revisions": list_revisions(s, family_id)})


@bp.post("/families/<int:family_id>/revisions")
@require_permission(PERM_REVISE)
def families_create_revision(family_id: int):
    s = db_session()
    u = _current_user()
    body = _body()
    rev = create_revision(s, family_id, actor=u, note=body.get("note"))
    return jsonify(revision_state(rev).to_dict()), 201


@bp.get("/families/<int:family_id>/change-summaries/<int:revision_number>")
@require_permission(PERM_VIEW)
def families_change_summary(family_id: int, revision_number: int):
    s = db_session()
    cs = get_change_summary(s, family_id, revision_number)
    if cs is None:
        raise NotFound(f"No change summary for revision {revision_number} of family {family_id}.")
    return jsonify(change_summary_to_dict(cs))


# ---- revisions ----


@bp.get("/revisions/<int:revision_id>")
@require_permission(PERM_VIEW)
def revisions_get(revision_id: int):
    s = db_session()
    state = get_revision_state(s, revision_id)
    out = state.to_dict()
    frozen = snapshot_exists(s, state.family_id, state.revision_number)
    out["allowed_actions"] = allowed_actions(state.status, frozen=frozen)
    return jsonify(out)


@bp.patch("/revisions/<int:revision_id>")
@require_permission(PERM_EDIT)
def revisions_update(revision_id: int):
    s = db_session()
    u = _current_user()
    rev = update_revision_details(s, revision_id, _body(), actor=u)
    s.commit()
    return jsonify(revision_state(rev).to_dict())


@bp.post("/revisions/<int:revision_id>/transition")
@require_permission(PERM_SUBMIT)
def revisions_transition(revision_id: int):
    """
    Per-action permissions on top of docs.submit: issue needs docs.issue;
    approve checks the elevated role inside the state machine.
    """
    s = db_session()
    u = _current_user()
    body = _body()
    action = str(body.get("action") or "").strip()
    if action not in ACTIONS:
        raise InvalidRequest(f"action must be one of: {', '.join(ACTIONS)}")
    extra_perm = {"issue": PERM_ISSUE, "create_revision": PERM_REVISE}.get(action)
    if extra_perm and not user_has_permission(u, extra_perm):
        g.missing_permission = extra_perm
        raise PermissionDenied(extra_perm)

    state = transition(
        s,
        revision_id,
        action,
        actor=u,
        collaborators=_collaborators(),
        confirm=body.get("confirm") is True,
        note=body.get("note"),
    )
    return jsonify(state.to_dict())


@bp.get("/revisions/<int:revision_id>/readiness")
@require_permission(PERM_VIEW)
def revisions_readiness(revision_id: int):
    s = db_session()
    result = get_readiness(s, revision_id, _collaborators().validator)
    return jsonify(result.to_dict())


@bp.get("/revisions/<int:revision_id>/artifact")
@require_permission(PERM_DOWNLOAD)
def revisions_artifact(revision_id: int):
    s = db_session()
    u = _current_user()
    handle = fetch_artifact(s, revision_id, collaborators=_collaborators(), actor=u)
    if handle.url:
        return redirect(handle.url)
    resp = send_file(
        io.BytesIO(handle.data or b""),
        mimetype=handle.content_type or "application/octet-stream",
        as_attachment=True,
        download_name=handle.filename,
    )
    resp.headers["X-Artifact-Source"] = handle.source
    resp.headers["X-Artifact-SHA256"] = handle.digest
    if handle.source != SOURCE_LOCKED:
        resp.headers["Cache-Control"] = "no-store"
    return resp


@bp.get("/revisions/<int:revision_id>/artifact/verify")
@require_permission(PERM_VIEW)
def revisions_artifact_verify(revision_id: int):
    s = db_session()
    report = verify_artifact(s, revision_id, storage=_collaborators().storage)
    return jsonify(report.to_dict())


@bp.put("/revisions/<int:revision_id>/modules/<module_key>")
@require_permission(PERM_EDIT)
def revisions_module_update(revision_id: int, module_key: str):
    s = db_session()
    u = _current_user()
    body = _body()
    completed = body.get("completed")
    if completed is not None and not isinstance(completed, bool):
        raise InvalidRequest("completed must be true or false.")
    mod = update_module(s, revision_id, module_key, actor=u, data=body.get("data"), completed=completed)
    s.commit()
    return jsonify({"revision_id": revision_id, "module_key": mod.module_key, "completed": mod.completed, "data": mod.data})


@bp.delete("/revisions/<int:revision_id>")
@require_permission(PERM_DELETE)
def revisions_delete(revision_id: int):
    s = db_session()
    u = _current_user()
    body = _body()
    current_id = delete_revision(s, revision_id, actor=u, reason=body.get("reason"))
    return jsonify({"deleted_revision_id": revision_id, "current_revision_id": current_id})


# ---- remediation items ----


@bp.get("/revisions/<int:revision_id>/items")
@require_permission(PERM_VIEW)
def items_list(revision_id: int):
    s = db_session()
    rev = load_revision(s, revision_id)
    items = sorted(rev.items, key=lambda i: (i.reference_number or "~", i.id))
    return jsonify({"revision_id": rev.id, "items": [item_to_dict(i) for i in items]})


@bp.post("/revisions/<int:revision_id>/items")
@require_permission(PERM_EDIT)
def items_create(revision_id: int):
    s = db_session()
    u = _current_user()
    item = create_item(s, revision_id, _body(), actor=u, classifier=_collaborators().classifier)
    s.commit()
    return jsonify(item_to_dict(item)), 201


@bp.patch("/items/<int:item_id>")
@require_permission(PERM_EDIT)
def items_update(item_id: int):
    s = db_session()
    u = _current_user()
    body = _body()
    status = body.pop("status", None)
    note = body.pop("note", None)
    item = get_item(s, item_id)
    if body:
        item = update_item(s, item_id, body, actor=u)
    if status is not None:
        item = set_item_status(s, item_id, str(status), actor=u, note=note)
    s.commit()
    return jsonify(item_to_dict(item))


@bp.delete("/items/<int:item_id>")
@require_permission(PERM_EDIT)
def items_delete(item_id: int):
    s = db_session()
    u = _current_user()
    body = _body()
    delete_item(s, item_id, actor=u, reason=body.get("reason"))
    s.commit()
    return jsonify({"deleted_item_id": item_id})


@bp.post("/items/<int:item_id>/close")
@require_permission(PERM_CLOSE_ACTION)
def items_close(item_id: int):
    s = db_session()
    u = _current_user()
    body = _body()
    item = close_item(s, item_id, actor=u, note=body.get("note"))
    s.commit()
    return jsonify(item_to_dict(item))


@bp.post("/items/<int:item_id>/reopen")
@require_permission(PERM_CLOSE_ACTION)
def items_reopen(item_id: int):
    s = db_session()
    u = _current_user()
    body = _body()
    item = reopen_item(s, item_id, actor=u, note=body.get("note"))
    s.commit()
    return jsonify(item_to_dict(item))
