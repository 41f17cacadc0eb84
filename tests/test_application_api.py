"""
Application API tests.

End-to-end flows through the HTTP surface: starting applications, legal
next steps, manual advances and their rejections, fact updates driving
automatic transitions, status history and stage-entry notifications.
"""

from datetime import datetime

import pytest

OFFICER = {"X-User": "officer"}


def _start(client, application_type="undergraduate", **body):
    body["application_type"] = application_type
    res = client.post("/api/v1/applications", json=body, headers=OFFICER)
    assert res.status_code == 201, res.get_json()
    return res.get_json()["application"]


def _advance(client, app_id, tid, actor="officer"):
    headers = {"X-User": actor} if actor else {}
    return client.post(f"/api/v1/applications/{app_id}/advance", json={"transition_id": tid}, headers=headers)


def _history(client, app_id):
    return client.get(f"/api/v1/applications/{app_id}/history").get_json()["history"]


class TestStartApplication:
    def test_starts_at_initial_stage(self, client, linear_workflow, ids):
        res = client.post(
            "/api/v1/applications",
            json={"application_type": "undergraduate", "applicant_ref": "stu-1"},
            headers=OFFICER,
        )

        assert res.status_code == 201
        body = res.get_json()
        assert body["application"]["current_stage_id"] == ids.stage(linear_workflow, "Submitted")
        assert body["application"]["current_stage_name"] == "Submitted"
        assert body["entries"][0]["position"] == 0
        assert body["changes"][0]["previous_stage_id"] is None

    def test_no_active_workflow_is_404(self, client):
        res = client.post("/api/v1/applications", json={"application_type": "graduate"})
        assert res.status_code == 404

    def test_missing_type_is_400(self, client, linear_workflow):
        res = client.post("/api/v1/applications", json={})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    @pytest.mark.parametrize("field,value", [
        ("application_type", 5),
        ("application_type", {"type": "undergraduate"}),
        ("applicant_ref", 42),
    ])
    def test_non_string_fields_are_400(self, client, linear_workflow, field, value):
        body = {"application_type": "undergraduate", field: value}
        res = client.post("/api/v1/applications", json=body, headers=OFFICER)

        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"
        assert res.get_json()["details"]["field"] == field

    def test_get_unknown_application(self, client):
        assert client.get("/api/v1/applications/404").status_code == 404


class TestAdvance:
    def test_linear_happy_path(self, client, linear_workflow, ids):
        app = _start(client)

        for name in ("Start Review", "Decide"):
            res = _advance(client, app["id"], ids.transition(linear_workflow, name))
            assert res.status_code == 200, res.get_json()

        history = _history(client, app["id"])
        assert [h["stage_name"] for h in history] == ["Submitted", "Review", "Decided"]
        assert [h["transition_id"] for h in history] == [
            None,
            ids.transition(linear_workflow, "Start Review"),
            ids.transition(linear_workflow, "Decide"),
        ]
        assert all(h["entered_by"] == {"kind": "human", "actor_id": "officer"} for h in history)
        stamps = [datetime.fromisoformat(h["entered_at"]) for h in history]
        assert stamps[0] < stamps[1] < stamps[2]

        steps = client.get(f"/api/v1/applications/{app['id']}/next-steps", headers=OFFICER).get_json()
        assert steps["next_steps"] == []
        assert steps["is_terminal"] is True

    def test_same_request_twice_appends_once(self, client, linear_workflow, ids):
        app = _start(client)
        tid = ids.transition(linear_workflow, "Start Review")

        first = _advance(client, app["id"], tid)
        second = _advance(client, app["id"], tid)

        assert first.status_code == 200
        assert second.status_code == 409
        body = second.get_json()
        assert body["code"] == "ERR_ILLEGAL_TRANSITION"
        assert body["details"]["current_stage_id"] == ids.stage(linear_workflow, "Review")
        assert len(_history(client, app["id"])) == 2

    def test_advancing_a_terminal_application(self, client, linear_workflow, ids):
        app = _start(client)
        _advance(client, app["id"], ids.transition(linear_workflow, "Start Review"))
        _advance(client, app["id"], ids.transition(linear_workflow, "Decide"))

        res = _advance(client, app["id"], ids.transition(linear_workflow, "Start Review"))

        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_ALREADY_TERMINAL"

    def test_unknown_transition_is_404(self, client, linear_workflow):
        app = _start(client)
        res = _advance(client, app["id"], "no-such-transition")
        assert res.status_code == 404
        assert res.get_json()["details"]["reason"] == "not_found"

    @pytest.mark.parametrize("body", [{}, {"transition_id": ""}])
    def test_transition_id_required(self, client, linear_workflow, body):
        app = _start(client)
        res = client.post(f"/api/v1/applications/{app['id']}/advance", json=body, headers=OFFICER)
        assert res.status_code == 400

    @pytest.mark.parametrize("tid", [7, ["t1"], {"id": "t1"}])
    def test_non_string_transition_id_is_400(self, client, linear_workflow, tid):
        app = _start(client)
        res = _advance(client, app["id"], tid)

        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"
        assert res.get_json()["details"]["field"] == "transition_id"
        assert len(_history(client, app["id"])) == 1

    def test_missing_actor_header_is_400(self, client, linear_workflow, ids):
        app = _start(client)
        res = _advance(client, app["id"], ids.transition(linear_workflow, "Start Review"), actor=None)
        assert res.status_code == 400
        assert res.get_json()["details"]["field"] == "actor"


class TestConditionsAndPermissions:
    @pytest.fixture()
    def committee_workflow(self, client, conditional_payload, committee_role):
        res = client.post("/api/v1/workflows", json=conditional_payload(), headers={"X-User": "admin"})
        assert res.status_code == 201
        return res.get_json()

    def _at_review(self, client, wf, ids):
        app = _start(client, "graduate")
        assert _advance(client, app["id"], ids.transition(wf, "Start Review"), actor="dean").status_code == 200
        return app

    def test_blocked_by_condition_then_unblocked_by_fact(self, client, committee_workflow, ids):
        app = self._at_review(client, committee_workflow, ids)
        decide = ids.transition(committee_workflow, "Decide")

        blocked = _advance(client, app["id"], decide, actor="dean")
        assert blocked.status_code == 422
        assert blocked.get_json()["code"] == "ERR_CONDITION_NOT_MET"
        assert blocked.get_json()["details"]["failed_conditions"] == ["decision_recorded"]

        steps = client.get(f"/api/v1/applications/{app['id']}/next-steps", headers={"X-User": "dean"}).get_json()
        assert steps["next_steps"] == []
        assert steps["blocked"][0]["failed_conditions"] == ["decision_recorded"]

        res = client.put(
            f"/api/v1/applications/{app['id']}/facts",
            json={"facts": {"decision_recorded": True}},
            headers={"X-User": "dean"},
        )
        assert res.status_code == 200

        assert _advance(client, app["id"], decide, actor="dean").status_code == 200
        assert [h["stage_name"] for h in _history(client, app["id"])][-1] == "Decided"

    def test_permission_denied_leaves_history_unchanged(self, client, committee_workflow, ids):
        app = self._at_review(client, committee_workflow, ids)
        client.put(f"/api/v1/applications/{app['id']}/facts", json={"facts": {"decision_recorded": True}})
        before = _history(client, app["id"])

        res = _advance(client, app["id"], ids.transition(committee_workflow, "Decide"), actor="applicant")

        assert res.status_code == 403
        body = res.get_json()
        assert body["code"] == "ERR_PERMISSION_DENIED"
        assert body["details"]["missing_permissions"] == ["committee"]
        assert _history(client, app["id"]) == before

    def test_next_steps_mark_permission_for_actor(self, client, committee_workflow, ids):
        app = self._at_review(client, committee_workflow, ids)
        client.put(f"/api/v1/applications/{app['id']}/facts", json={"facts": {"decision_recorded": True}})

        url = f"/api/v1/applications/{app['id']}/next-steps"
        dean = client.get(url, headers={"X-User": "dean"}).get_json()
        applicant = client.get(url, headers={"X-User": "applicant"}).get_json()

        assert dean["next_steps"][0]["allowed"] is True
        assert applicant["next_steps"][0]["allowed"] is False
        assert dean["current_stage"]["name"] == "Review"

    def test_facts_body_is_required(self, client, linear_workflow):
        app = _start(client)
        res = client.put(f"/api/v1/applications/{app['id']}/facts", json={"decision_recorded": True})
        assert res.status_code == 400


class TestAutomaticAndNotifications:
    @pytest.fixture()
    def screening_workflow(self, client):
        payload = {
            "name": "Screening",
            "application_type": "transfer",
            "is_active": True,
            "stages": [
                {"temp_id": "s", "name": "Submitted", "sequence": 1,
                 "notification_triggers": [
                     {"event": "stage_entry", "template": "application_received", "channels": ["email", "in_app"]},
                 ]},
                {"temp_id": "v", "name": "Verification", "sequence": 2,
                 "notification_triggers": ["documents_required"]},
                {"temp_id": "d", "name": "Done", "sequence": 3},
            ],
            "transitions": [
                {"source_stage_id": "s", "target_stage_id": "v", "name": "Fee Paid", "is_automatic": True,
                 "conditions": ["fee_paid"]},
                {"source_stage_id": "v", "target_stage_id": "d", "name": "Finish"},
            ],
        }
        res = client.post("/api/v1/workflows", json=payload, headers={"X-User": "admin"})
        assert res.status_code == 201
        return res.get_json()

    def test_fact_update_moves_application_automatically(self, client, screening_workflow):
        app = _start(client, "transfer", applicant_ref="stu-7")

        res = client.put(f"/api/v1/applications/{app['id']}/facts", json={"facts": {"fee_paid": True}})

        body = res.get_json()
        assert body["application"]["current_stage_name"] == "Verification"
        assert body["entries"][0]["entered_by"] == {"kind": "system", "actor_id": None}
        assert body["changes"][0]["automatic"] is True

    def test_tick_applies_nothing_when_nothing_is_eligible(self, client, screening_workflow):
        app = _start(client, "transfer")
        res = client.post(f"/api/v1/applications/{app['id']}/tick")
        assert res.status_code == 200
        assert res.get_json()["entries"] == []

    def test_stage_entry_notifications(self, client, screening_workflow):
        app = _start(client, "transfer", applicant_ref="stu-7", facts={"fee_paid": True})

        body = client.get(f"/api/v1/applications/{app['id']}/notifications").get_json()

        assert body["total"] == 2
        templates = sorted(n["template"] for n in body["items"])
        assert templates == ["application_received", "documents_required"]
        assert {n["recipient"] for n in body["items"]} == {"stu-7"}

        received = next(n for n in body["items"] if n["template"] == "application_received")
        assert received["channels"] == ["email", "in_app"]
        res = client.post(f"/api/v1/notifications/{received['id']}/read")
        assert res.status_code == 200 and res.get_json()["is_read"] is True

        unread = client.get(f"/api/v1/applications/{app['id']}/notifications?unread_only=true").get_json()
        assert unread["total"] == 1

    def test_unknown_notification_is_404(self, client):
        assert client.post("/api/v1/notifications/999/read").status_code == 404


class TestStorageFailure:
    def test_storage_error_maps_to_500(self, client, linear_workflow, ids, monkeypatch):
        from sqlalchemy.exc import OperationalError

        from admissions.services.workflow_service import WorkflowService

        app = _start(client)

        def _boom(application_id):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(WorkflowService, "_status_rows", staticmethod(_boom))
        res = _advance(client, app["id"], ids.transition(linear_workflow, "Start Review"))

        assert res.status_code == 500
        assert res.get_json()["code"] == "ERR_DATABASE"
