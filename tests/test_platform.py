"""
Platform tests: health endpoints, request middleware, logging, config
and the default workflow templates.
"""

import json
import logging

import pytest

from admissions.config import ProductionConfig
from admissions.middleware.logging_config import JSONFormatter
from admissions.models.audit import AuditLog, write_audit
from admissions.models.notification import Notification
from admissions.services.notification import NotificationService
from admissions.services.templates import seed_default_templates


class TestHealth:
    def test_health_reports_database(self, client):
        res = client.get("/api/v1/health")

        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "ok"
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["app"]["testing"] is True

    def test_ready(self, client):
        assert client.get("/api/v1/health/ready").get_json() == {"status": "ok"}

    def test_request_id_is_echoed(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"
        assert "X-Request-Duration-Ms" in res.headers

    def test_unknown_route_uses_error_shape(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestLogging:
    def test_json_formatter_carries_workflow_context(self):
        record = logging.LogRecord(
            "admissions.services.workflow_service", logging.INFO, __file__, 10,
            "Application advanced", None, None,
        )
        record.application_id = 5
        record.transition_id = "t-1"
        record.actor = "officer"

        out = json.loads(JSONFormatter().format(record))

        assert out["message"] == "Application advanced"
        assert out["application_id"] == 5
        assert out["transition_id"] == "t-1"
        assert out["actor"] == "officer"
        assert "workflow_id" not in out


class TestConfig:
    def test_production_requires_database_url(self, monkeypatch):
        monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
        with pytest.raises(RuntimeError):
            ProductionConfig()

    def test_testing_disables_rate_limits(self, app):
        assert app.config["RATELIMIT_ENABLED"] is False
        assert app.config["WORKFLOW_AUTO_ADVANCE"] is True


class TestRecordVocabularies:
    def test_write_audit_accepts_known_actions(self):
        log = write_audit(entity_type="role", entity_id=1, action="role.create", actor="admin")
        assert log.id is not None

    @pytest.mark.parametrize("entity_type,action", [
        ("invoice", "role.create"),
        ("role", "role.deleted"),
    ])
    def test_write_audit_rejects_unknown_names(self, entity_type, action):
        with pytest.raises(ValueError):
            write_audit(entity_type=entity_type, entity_id=1, action=action)
        assert AuditLog.query.count() == 0

    @pytest.mark.parametrize("category,severity", [("marketing", "info"), ("system", "fatal")])
    def test_broadcast_rejects_unknown_category_or_severity(self, category, severity):
        with pytest.raises(ValueError):
            NotificationService.broadcast(title="Hello", category=category, severity=severity)
        assert Notification.query.count() == 0


class TestDefaultTemplates:
    def test_seed_creates_three_active_workflows_once(self, service):
        assert seed_default_templates(service) == 3
        assert seed_default_templates(service) == 0

        listing, _ = service.list_workflows(is_active=True)
        by_type = {w["application_type"]: w for w in listing["items"]}
        assert set(by_type) == {"undergraduate", "graduate", "transfer"}
        assert by_type["undergraduate"]["stage_count"] == 11

    def test_seed_does_not_replace_an_active_workflow(self, service, linear_payload):
        service.define_workflow(linear_payload())

        seed_default_templates(service)

        active, _ = service.list_workflows(application_type="undergraduate", is_active=True)
        assert [w["name"] for w in active["items"]] == ["Linear Admissions"]

    def test_assigned_roles_resolve_by_name(self, client, service):
        res = client.post("/api/v1/roles", json={"name": "verification_team", "permissions": ["verify_documents"]})
        role_id = res.get_json()["id"]

        seed_default_templates(service)

        listing, _ = service.list_workflows(application_type="graduate")
        wf, _ = service.get_workflow(listing["items"][0]["id"])
        docs = next(s for s in wf["stages"] if s["name"] == "Document Verification")
        assert docs["assigned_role_id"] == role_id

    def test_missing_roles_are_logged_and_left_unassigned(self, service, caplog):
        with caplog.at_level(logging.INFO, logger="admissions.services.templates"):
            seed_default_templates(service)

        assert "Template roles not found" in caplog.text
        assert "verification_team" in caplog.text
        listing, _ = service.list_workflows(application_type="graduate")
        wf, _ = service.get_workflow(listing["items"][0]["id"])
        docs = next(s for s in wf["stages"] if s["name"] == "Document Verification")
        assert docs["assigned_role_id"] is None

    def test_undergraduate_intake_chains_screening(self, client, service):
        seed_default_templates(service)
        start = client.post(
            "/api/v1/applications",
            json={
                "application_type": "undergraduate",
                "applicant_ref": "stu-42",
                "facts": {"is_submitted": True, "application_fee_paid": True},
            },
            headers={"X-User": "stu-42"},
        ).get_json()
        app_id = start["application"]["id"]
        assert start["application"]["current_stage_name"] == "Draft"

        steps = client.get(f"/api/v1/applications/{app_id}/next-steps", headers={"X-User": "stu-42"}).get_json()
        submit = steps["next_steps"][0]["transition"]
        assert submit["name"] == "Submit Application"

        res = client.post(
            f"/api/v1/applications/{app_id}/advance",
            json={"transition_id": submit["id"]},
            headers={"X-User": "stu-42"},
        )

        body = res.get_json()
        assert [e["stage_name"] for e in body["entries"]] == ["Submitted", "Document Verification"]
        assert body["application"]["current_stage_name"] == "Document Verification"

    def test_cli_command_seeds(self, app):
        result = app.test_cli_runner().invoke(args=["seed-workflow-templates"])

        assert result.exit_code == 0
        assert AuditLog.query.filter_by(action="workflow.create").count() == 3
