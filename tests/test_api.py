from __future__ import annotations

import json
import unittest

import db as db_module
from actions.session_actions import ensure_user, open_session
from app import create_app
from db import Base, SessionLocal
from support import make_config


class ApiTests(unittest.TestCase):
    def setUp(self):
        self.cfg = make_config(RATE_LIMIT_DEFAULT="1000 per minute", RATE_LIMIT_GLOBAL="1000 per minute")
        self.app = create_app(self.cfg)
        self.client = self.app.test_client()
        self.admin_token = self._token("admin@example.com", "ADMIN")
        self.viewer_token = self._token("viewer@example.com", "VIEWER")

    def tearDown(self):
        Base.metadata.drop_all(bind=db_module.engine)
        db_module.engine.dispose()

    def _token(self, email: str, role: str) -> str:
        db = SessionLocal()
        try:
            user = ensure_user(db, email=email, full_name=email.split("@")[0], role=role)
            db.flush()
            ses = open_session(db, user, self.cfg)
            db.commit()
            return ses["sessionToken"]
        finally:
            db.close()

    def _call(self, action: str, data=None, token=None):
        body = {"action": action, "data": data or {}}
        if token is not None:
            body["token"] = token
        return self.client.post("/api", data=json.dumps(body), content_type="application/json")

    def test_health(self):
        res = self.client.get("/health")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json(), {"ok": True, "data": {"status": "ok", "workflowsEnabled": True}})

    def test_unknown_endpoint_uses_error_envelope(self):
        res = self.client.get("/nope")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.get_json()["error"]["code"], "NOT_FOUND")

    def test_missing_token(self):
        res = self._call("CANDIDATE_LIST")
        self.assertEqual(res.status_code, 401)
        self.assertEqual(res.get_json()["error"]["code"], "AUTH_INVALID")

    def test_invalid_json(self):
        res = self.client.post("/api", data="{not json", content_type="application/json")
        self.assertEqual(res.status_code, 400)

    def test_unknown_action(self):
        res = self._call("LAUNCH_ROCKET", token=self.admin_token)
        self.assertEqual(res.status_code, 400)
        self.assertFalse(res.get_json()["ok"])

    def test_viewer_cannot_create_workflows(self):
        res = self._call(
            "WORKFLOW_CREATE",
            {"name": "x", "trigger": {"type": "manual"}, "actions": [{"type": "add_tag", "tagName": "x"}]},
            token=self.viewer_token,
        )
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"]["code"], "FORBIDDEN")

    def test_invalid_workflow_reports_details(self):
        res = self._call("WORKFLOW_CREATE", {"name": "x", "trigger": {"type": "manual"}, "actions": [{"type": "webhook"}]}, token=self.admin_token)
        self.assertEqual(res.status_code, 400)
        error = res.get_json()["error"]
        self.assertEqual(error["code"], "BAD_REQUEST")
        self.assertEqual(error["details"][0]["field"], "actions.0")

    def test_workflow_from_template(self):
        res = self._call("WORKFLOW_CREATE", {"templateId": "welcome-email", "isActive": False}, token=self.admin_token)
        self.assertEqual(res.status_code, 200)
        wf_id = res.get_json()["data"]["workflowId"]

        got = self._call("WORKFLOW_GET", {"workflowId": wf_id}, token=self.admin_token).get_json()["data"]["workflow"]
        self.assertFalse(got["isActive"])
        self.assertEqual(got["trigger"]["type"], "status_changed")

    def test_status_change_runs_workflow_end_to_end(self):
        created = self._call(
            "WORKFLOW_CREATE",
            {
                "name": "Screening follow-up",
                "trigger": {"type": "status_change", "toStatus": "screening"},
                "actions": [
                    {"type": "add_tag", "tagName": "Screened"},
                    {"type": "create_task", "taskTitle": "Review {{fullName}}", "taskPriority": "high"},
                ],
            },
            token=self.admin_token,
        )
        self.assertEqual(created.status_code, 200)
        wf_id = created.get_json()["data"]["workflowId"]

        cand = self._call(
            "CANDIDATE_CREATE", {"firstName": "Ann", "lastName": "Lee", "email": "ann@example.com"}, token=self.admin_token
        ).get_json()["data"]
        moved = self._call("CANDIDATE_UPDATE", {"candidateId": cand["candidateId"], "status": "screening"}, token=self.admin_token)

        self.assertEqual(moved.status_code, 200)
        data = moved.get_json()["data"]
        self.assertEqual(data["workflowRuns"], 1)
        self.assertIn("Screened", data["candidate"]["tags"])

        tasks = self._call("TASK_LIST", {"candidateId": cand["candidateId"]}, token=self.admin_token).get_json()["data"]
        self.assertEqual([t["title"] for t in tasks["items"]], ["Review Ann Lee"])

        stats = self._call("WORKFLOW_STATS", {"workflowId": wf_id}, token=self.admin_token).get_json()["data"]
        self.assertEqual(stats["totalExecutions"], 1)
        self.assertEqual(stats["successfulExecutions"], 1)
        self.assertEqual({s["actionType"] for s in stats["actionStats"]}, {"add_tag", "create_task"})

        executions = self._call("WORKFLOW_EXECUTIONS", {"workflowId": wf_id}, token=self.admin_token).get_json()["data"]
        self.assertEqual(executions["items"][0]["status"], "completed")

    def test_failed_request_is_rolled_back(self):
        payload = {"firstName": "Ann", "lastName": "Lee", "email": "ann@example.com"}
        self.assertEqual(self._call("CANDIDATE_CREATE", payload, token=self.admin_token).status_code, 200)
        dup = self._call("CANDIDATE_CREATE", payload, token=self.admin_token)
        self.assertEqual(dup.status_code, 409)

        listed = self._call("CANDIDATE_LIST", token=self.viewer_token).get_json()["data"]
        self.assertEqual(listed["total"], 1)


if __name__ == "__main__":
    unittest.main()
