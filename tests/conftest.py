"""
Shared pytest fixtures for the Admissions Workflow Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - service: the app's WorkflowService
    - linear_payload / conditional_payload: workflow submissions
    - linear_workflow: an active 3-stage workflow created via the API
    - committee_role: a role granting "committee" assigned to actor "dean"
"""

import pytest

from admissions import create_app
from admissions.models import db as _db
from admissions.services.permission_service import invalidate_all_cache


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Role ids are reused across tests; clear the permission cache
        invalidate_all_cache()
        yield
        invalidate_all_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def service(app):
    return app.extensions["workflow_service"]


# ── Payload builders ─────────────────────────────────────────────────────


def _linear(name="Linear Admissions", application_type="undergraduate", is_active=True):
    return {
        "name": name,
        "application_type": application_type,
        "is_active": is_active,
        "stages": [
            {"temp_id": "submitted", "name": "Submitted", "sequence": 1},
            {"temp_id": "review", "name": "Review", "sequence": 2},
            {"temp_id": "decided", "name": "Decided", "sequence": 3},
        ],
        "transitions": [
            {"source_stage_id": "submitted", "target_stage_id": "review", "name": "Start Review"},
            {"source_stage_id": "review", "target_stage_id": "decided", "name": "Decide"},
        ],
    }


@pytest.fixture()
def linear_payload():
    """Factory: submitted -> review -> decided, unconditional manual edges."""
    return _linear


@pytest.fixture()
def conditional_payload():
    """Factory: review -> decided needs the "decision_recorded" fact and "committee"."""

    def _build(name="Committee Admissions", application_type="graduate", permissions=("committee",)):
        payload = _linear(name=name, application_type=application_type)
        payload["transitions"][1]["conditions"] = ["decision_recorded"]
        payload["transitions"][1]["required_permissions"] = list(permissions)
        return payload

    return _build


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def linear_workflow(client, linear_payload):
    """Create and return an active linear workflow via the API."""
    res = client.post("/api/v1/workflows", json=linear_payload(), headers={"X-User": "admin"})
    assert res.status_code == 201, res.get_json()
    return res.get_json()


@pytest.fixture()
def committee_role(client):
    """Role "Committee" granting "committee", assigned to actor "dean"."""
    res = client.post("/api/v1/roles", json={"name": "Committee", "permissions": ["committee"]})
    assert res.status_code == 201
    role = res.get_json()
    res = client.post(f"/api/v1/roles/{role['id']}/assign", json={"actor_id": "dean"})
    assert res.status_code == 200
    return role


def stage_id(workflow, name):
    return next(s["id"] for s in workflow["stages"] if s["name"] == name)


def transition_id(workflow, name):
    return next(t["id"] for t in workflow["transitions"] if t["name"] == name)


@pytest.fixture()
def ids():
    """Lookup helpers: ids.stage(wf, name), ids.transition(wf, name)."""

    class _Ids:
        stage = staticmethod(stage_id)
        transition = staticmethod(transition_id)

    return _Ids
