import pytest
from werkzeug.security import generate_password_hash

from app.riskdocs import create_app
from app.riskdocs.constants import (
    ALL_PERMISSIONS,
    FIRE_RISK_ASSESSMENT,
    PERM_APPROVE,
    PERM_ISSUE,
    PERM_REOPEN_ACTION,
)
from app.riskdocs.db import session_scope
from app.riskdocs.models import Base, Permission, Role, User
from app.riskdocs.storage import LocalStorage
from app.riskdocs.modules.document_lifecycle.collaborators import Collaborators
from app.riskdocs.modules.document_lifecycle.content import update_module
from app.riskdocs.modules.document_lifecycle.lifecycle import create_family, transition
from app.riskdocs.modules.document_lifecycle.readiness import module_catalog
from app.riskdocs.modules.document_lifecycle.remediation import DefaultClassifier, create_item

FRA_SURVEY = {
    "inspection_date": "2026-03-01",
    "surveyor_name": "A. Assessor",
    "company_name": "Acme Holdings Ltd",
    "site_name": "Unit 4, Riverside Estate",
    "scope_type": "full",
}


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = {key: Permission(key=key, name=name) for key, name in ALL_PERMISSIONS.items()}
        admin_role = Role(key="admin", name="Administrator")
        admin_role.permissions.extend(perms.values())
        assessor_role = Role(key="assessor", name="Assessor")
        assessor_role.permissions.extend(
            p for key, p in perms.items() if key not in (PERM_APPROVE, PERM_ISSUE, PERM_REOPEN_ACTION)
        )
        admin = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        admin.roles.append(admin_role)
        assessor = User(email="assessor@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        assessor.roles.append(assessor_role)
        s.add_all(list(perms.values()) + [admin_role, assessor_role, admin, assessor])

    return app


@pytest.fixture()
def s(app):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    session = sm()
    yield session
    session.close()


@pytest.fixture()
def admin(s):
    return s.query(User).filter(User.email == "admin@example.com").one()


@pytest.fixture()
def assessor(s):
    return s.query(User).filter(User.email == "assessor@example.com").one()


@pytest.fixture()
def storage(tmp_path):
    return LocalStorage(root=tmp_path / "storage")


@pytest.fixture()
def collab(storage):
    return Collaborators(storage=storage, render_timeout_seconds=5, lock_retries=1, retry_backoff_seconds=0)


class LifecycleDriver:
    """Walks a family through the lifecycle with an admin actor."""

    def __init__(self, s, actor, collab):
        self.s = s
        self.actor = actor
        self.collab = collab

    def new_fra(self, title="Fire Risk Assessment - Unit 4", **context):
        return create_family(
            self.s,
            organisation_id="org-1",
            document_kind=FIRE_RISK_ASSESSMENT,
            title=title,
            context=context or None,
            actor=self.actor,
        )

    def complete_fra(self, revision_id, *, no_findings=False):
        for rule in module_catalog(FIRE_RISK_ASSESSMENT):
            data = {}
            if rule.key == "survey_info":
                data = dict(FRA_SURVEY)
            elif rule.key == "risk_evaluation":
                data = {"overall_risk_rating": "moderate"}
            elif rule.key == "recommendations" and no_findings:
                data = {"no_significant_findings": True}
            update_module(self.s, revision_id, rule.key, actor=self.actor, data=data, completed=True)
        self.s.commit()

    def add_item(self, revision_id, description, **facts):
        item = create_item(
            self.s,
            revision_id,
            {"description": description, **facts},
            actor=self.actor,
            classifier=DefaultClassifier(),
        )
        self.s.commit()
        return item

    def act(self, revision_id, action, **kwargs):
        return transition(self.s, revision_id, action, actor=self.actor, collaborators=self.collab, **kwargs)

    def approve(self, revision_id):
        self.act(revision_id, "submit_for_review")
        return self.act(revision_id, "approve")

    def issue(self, revision_id):
        self.approve(revision_id)
        return self.act(revision_id, "issue", confirm=True)

    def issued_fra(self, *descriptions):
        family = self.new_fra()
        rev_id = family.current_revision_id
        self.complete_fra(rev_id, no_findings=not descriptions)
        items = [self.add_item(rev_id, d) for d in descriptions]
        state = self.issue(rev_id)
        return family, state, items


@pytest.fixture()
def driver(s, admin, collab):
    return LifecycleDriver(s, admin, collab)
