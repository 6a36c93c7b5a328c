import hashlib

import pytest

from app.riskdocs.constants import FIRE_RISK_ASSESSMENT
from app.riskdocs.modules.document_lifecycle.readiness import module_catalog

API = "/api/documents"


def _login(app, email):
    c = app.test_client()
    r = c.post("/auth/login", data={"email": email, "password": "pw"}, follow_redirects=False)
    assert r.status_code == 302
    c.csrf = c.get("/").json["csrf_token"]
    return c


def _post(c, path, body=None):
    return c.post(API + path, json=body or {}, headers={"X-CSRF-Token": c.csrf})


def _put(c, path, body):
    return c.put(API + path, json=body, headers={"X-CSRF-Token": c.csrf})


def _patch(c, path, body):
    return c.patch(API + path, json=body, headers={"X-CSRF-Token": c.csrf})


def _delete(c, path, body=None):
    return c.delete(API + path, json=body or {}, headers={"X-CSRF-Token": c.csrf})


MODULE_DATA = {
    "survey_info": {
        "inspection_date": "2026-03-01",
        "surveyor_name": "A. Assessor",
        "company_name": "Acme Holdings Ltd",
        "site_name": "Unit 4, Riverside Estate",
        "scope_type": "full",
    },
    "risk_evaluation": {"overall_risk_rating": "moderate"},
}


@pytest.fixture()
def client(app, collab):
    app.extensions["riskdocs_collaborators"] = collab
    return _login(app, "admin@example.com")


@pytest.fixture()
def assessor_client(app, collab):
    app.extensions["riskdocs_collaborators"] = collab
    return _login(app, "assessor@example.com")


def _new_family(c, title="FRA - Unit 4"):
    r = _post(c, "/families", {"organisation_id": "org-1", "document_kind": FIRE_RISK_ASSESSMENT, "title": title})
    assert r.status_code == 201
    return r.json["family_id"], r.json["current_revision"]["revision_id"]


def _complete(c, rev_id):
    for rule in module_catalog(FIRE_RISK_ASSESSMENT):
        r = _put(c, f"/revisions/{rev_id}/modules/{rule.key}", {"data": MODULE_DATA.get(rule.key, {}), "completed": True})
        assert r.status_code == 200


def _transition(c, rev_id, action, **extra):
    return _post(c, f"/revisions/{rev_id}/transition", {"action": action, **extra})


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True


def test_unauthenticated_api_gets_json_401(app):
    r = app.test_client().get(f"{API}/revisions/1")
    assert r.status_code == 401
    assert r.json["error"] == "unauthenticated"


def test_mutations_require_csrf_header(client):
    r = client.post(f"{API}/families", json={"organisation_id": "org-1", "document_kind": FIRE_RISK_ASSESSMENT, "title": "x"})
    assert r.status_code == 400
    assert r.json["error"] == "csrf_failed"


def test_full_issue_flow_over_http(client):
    family_id, rev_id = _new_family(client)
    r = client.get(f"{API}/revisions/{rev_id}")
    assert r.json["status"] == "draft"
    assert r.json["allowed_actions"] == ["submit_for_review"]

    r = client.get(f"{API}/revisions/{rev_id}/readiness")
    assert r.json["ready"] is False
    assert len(r.json["blockers"]) > 1

    _complete(client, rev_id)
    r = _post(client, f"/revisions/{rev_id}/items", {"description": "Fire door wedged open", "final_exit_locked": True})
    assert r.status_code == 201
    item_id = r.json["id"]
    assert r.json["priority_code"] == "P1"
    assert client.get(f"{API}/revisions/{rev_id}/readiness").json == {"ready": True, "blockers": []}

    assert _transition(client, rev_id, "submit_for_review").json["status"] == "in_review"
    assert _transition(client, rev_id, "approve", note="Reviewed").json["status"] == "approved"

    r = _transition(client, rev_id, "issue")
    assert r.status_code == 400
    assert r.json["error"] == "confirmation_required"

    r = _transition(client, rev_id, "issue", confirm=True)
    assert r.status_code == 200
    assert r.json["status"] == "issued"
    digest = r.json["locked_artifact_digest"]

    r = _put(client, f"/revisions/{rev_id}/modules/survey_info", {"data": {"site_name": "Changed"}})
    assert r.status_code == 423
    assert r.json["error"] == "revision_locked"
    assert r.json["request_id"]
    assert _post(client, f"/items/{item_id}/close").status_code == 423

    r = client.get(f"{API}/revisions/{rev_id}/artifact")
    assert r.status_code == 200
    assert r.headers["X-Artifact-Source"] == "locked"
    assert r.headers["X-Artifact-SHA256"] == digest
    assert hashlib.sha256(r.data).hexdigest() == digest
    assert "attachment" in r.headers["Content-Disposition"]

    assert client.get(f"{API}/revisions/{rev_id}/artifact/verify").json["ok"] is True

    r = client.get(f"{API}/families/{family_id}/change-summaries/1")
    assert r.status_code == 200
    assert r.json["details"]["initial_issue"] is True
    assert client.get(f"{API}/families/{family_id}/change-summaries/2").status_code == 404

    r = _post(client, f"/families/{family_id}/revisions", {"note": "Annual review"})
    assert r.status_code == 201
    assert r.json["revision_number"] == 2
    new_rev_id = r.json["revision_id"]

    r = client.get(f"{API}/revisions/{new_rev_id}/items")
    (carried,) = r.json["items"]
    assert carried["origin_item_id"] == item_id
    assert carried["reference_number"] == "R-01"
    assert carried["source"] == "carried_forward"

    r = _post(client, f"/items/{carried['id']}/close", {"note": "Door closer fitted"})
    assert r.json["status"] == "closed"

    revisions = client.get(f"{API}/families/{family_id}/revisions").json["revisions"]
    assert [(r["revision_number"], r["status"]) for r in revisions] == [(1, "superseded"), (2, "draft")]


def test_validation_blockers_returned_together(client):
    _, rev_id = _new_family(client)
    _transition(client, rev_id, "submit_for_review")
    _transition(client, rev_id, "approve")
    r = _transition(client, rev_id, "issue", confirm=True)
    assert r.status_code == 422
    assert r.json["error"] == "validation_blocked"
    assert {b["type"] for b in r.json["blockers"]} >= {"module_incomplete", "missing_field", "no_recommendations"}


def test_illegal_transition_is_409(client):
    _, rev_id = _new_family(client)
    r = _transition(client, rev_id, "approve")
    assert r.status_code == 409
    assert r.json["current_status"] == "draft"

    r = _transition(client, rev_id, "publish")
    assert r.status_code == 400


def test_assessor_cannot_approve_or_issue(client, assessor_client):
    _, rev_id = _new_family(assessor_client)
    _complete(assessor_client, rev_id)
    assert _post(assessor_client, f"/revisions/{rev_id}/items", {"description": "Signage"}).status_code == 201
    assert _transition(assessor_client, rev_id, "submit_for_review").status_code == 200

    r = _transition(assessor_client, rev_id, "approve")
    assert r.status_code == 403
    assert r.json["error"] == "permission_denied"

    assert _transition(client, rev_id, "approve").status_code == 200
    r = _transition(assessor_client, rev_id, "issue", confirm=True)
    assert r.status_code == 403
    assert client.get(f"{API}/revisions/{rev_id}").json["status"] == "approved"


def test_item_edit_status_and_reopen(client, assessor_client):
    _, rev_id = _new_family(client)
    item = _post(client, f"/revisions/{rev_id}/items", {"description": "Extinguisher missing"}).json

    r = _patch(client, f"/items/{item['id']}", {"description": "Extinguisher missing in kitchen", "status": "in_progress"})
    assert r.status_code == 200
    assert r.json["description"] == "Extinguisher missing in kitchen"
    assert r.json["status"] == "in_progress"

    assert _post(client, f"/items/{item['id']}/close").json["status"] == "closed"
    r = _post(assessor_client, f"/items/{item['id']}/reopen")
    assert r.status_code == 403
    assert _post(client, f"/items/{item['id']}/reopen").json["status"] == "open"

    assert _delete(client, f"/items/{item['id']}").status_code == 200
    assert client.get(f"{API}/revisions/{rev_id}/items").json["items"] == []


def test_delete_draft_revision(client):
    family_id, rev_id = _new_family(client)
    r = _patch(client, f"/revisions/{rev_id}", {"title": "Renamed draft"})
    assert r.json["title"] == "Renamed draft"

    r = _delete(client, f"/revisions/{rev_id}", {"reason": "Created by mistake"})
    assert r.status_code == 200
    assert r.json["current_revision_id"] is None
    assert client.get(f"{API}/families/{family_id}/revisions").status_code == 404


def test_draft_artifact_is_a_preview(client):
    _, rev_id = _new_family(client, title="Preview")
    r = client.get(f"{API}/revisions/{rev_id}/artifact")
    assert r.status_code == 200
    assert r.headers["X-Artifact-Source"] == "draft_preview"
    assert r.headers["Cache-Control"] == "no-store"
    assert b"# Preview" in r.data
