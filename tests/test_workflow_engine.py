from __future__ import annotations

import os
import tempfile
import unittest
from datetime import timedelta
from unittest import mock

import requests
from sqlalchemy import select, update

from actions.candidate_repo import get_json, set_json
from actions.candidates import candidate_delete, candidate_quick_score_add, candidate_tag_add, candidate_tag_remove, candidate_update
from actions.workflow_engine import (
    WorkflowEvent,
    dispatch_due_actions,
    fire_event,
    reserve_execution_slot,
    run_manual,
    scan_time_triggers,
    should_execute,
)
from actions.workflows import find_workflow, workflow_create
from db import Base, SessionLocal, init_engine
from models import CandidateNote, EmailLog, Notification, ScheduledWorkflowAction, Task, WorkflowCandidateCounter, WorkflowExecution
from support import ADMIN, DbTestCase, make_config
from utils import ApiError, to_iso_utc, utc_now


class StatusTriggerTests(DbTestCase):
    def test_matching_status_change_runs_workflow_and_counts_once(self) -> None:
        wf = self.add_workflow({"type": "status_changed", "toStatus": "screening"}, [{"type": "add_tag", "tagName": "Screened"}])
        cand = self.add_candidate()

        out = candidate_update({"candidateId": cand.candidateId, "status": "screening"}, ADMIN, self.db, self.cfg)

        self.assertEqual(out["workflowRuns"], 1)
        self.assertIn("Screened", get_json(cand, "tags"))
        self.assertEqual(wf.executionCount, 1)
        self.assertEqual(wf.successCount, 1)
        self.assertEqual(wf.failureCount, 0)
        self.assertTrue(wf.lastExecutedAt)

    def test_non_matching_status_change_does_not_run(self) -> None:
        wf = self.add_workflow({"type": "status_changed", "toStatus": "screening"}, [{"type": "add_tag", "tagName": "Screened"}])
        cand = self.add_candidate()

        out = candidate_update({"candidateId": cand.candidateId, "status": "contacted"}, ADMIN, self.db, self.cfg)

        self.assertEqual(out["workflowRuns"], 0)
        self.assertNotIn("Screened", get_json(cand, "tags"))
        self.assertEqual(wf.executionCount, 0)

    def test_from_status_is_checked_when_known(self) -> None:
        self.add_workflow(
            {"type": "status_change", "fromStatus": ["screening"], "toStatus": "rejected"},
            [{"type": "add_tag", "tagName": "Late reject"}],
        )
        cand = self.add_candidate(status="new")

        candidate_update({"candidateId": cand.candidateId, "status": "rejected"}, ADMIN, self.db, self.cfg)

        self.assertNotIn("Late reject", get_json(cand, "tags"))

    def test_workflow_status_change_does_not_cascade(self) -> None:
        self.add_workflow({"type": "status_changed", "toStatus": "screening"}, [{"type": "change_status", "newStatus": "contacted"}])
        second = self.add_workflow({"type": "status_changed", "toStatus": "contacted"}, [{"type": "add_tag", "tagName": "x"}])
        cand = self.add_candidate()

        candidate_update({"candidateId": cand.candidateId, "status": "screening"}, ADMIN, self.db, self.cfg)

        self.assertEqual(cand.status, "contacted")
        self.assertEqual(second.executionCount, 0)

    def test_inactive_workflow_is_ignored(self) -> None:
        wf = self.add_workflow({"type": "status_changed"}, [{"type": "add_tag", "tagName": "x"}], isActive=False)
        cand = self.add_candidate()

        candidate_update({"candidateId": cand.candidateId, "status": "screening"}, ADMIN, self.db, self.cfg)

        self.assertEqual(wf.executionCount, 0)


class TagTriggerTests(DbTestCase):
    def test_tag_trigger_is_case_sensitive(self) -> None:
        wf = self.add_workflow({"type": "tag_added", "tag": "VIP"}, [{"type": "add_note", "noteContent": "VIP candidate"}])
        cand = self.add_candidate()

        candidate_tag_add({"candidateId": cand.candidateId, "tag": "vip"}, ADMIN, self.db, self.cfg)
        self.assertEqual(wf.executionCount, 0)

        candidate_tag_add({"candidateId": cand.candidateId, "tag": "VIP"}, ADMIN, self.db, self.cfg)
        self.assertEqual(wf.executionCount, 1)

    def test_required_tags_condition_is_case_sensitive(self) -> None:
        wf = self.add_workflow({"type": "manual", "requiredTags": ["Senior"]}, [{"type": "add_tag", "tagName": "ok"}])
        lower = self.add_candidate(tags=["senior"])
        exact = self.add_candidate(tags=["Senior"])
        event = WorkflowEvent(type="manual", candidate_id="")

        self.assertFalse(should_execute(wf, lower, event))
        self.assertTrue(should_execute(wf, exact, event))

    def test_per_candidate_cap_blocks_second_run(self) -> None:
        wf = self.add_workflow(
            {"type": "tag_added", "tag": "hot"},
            [{"type": "add_note", "noteContent": "Hot lead"}],
            maxExecutionsPerCandidate=1,
        )
        cand = self.add_candidate()
        cid = cand.candidateId

        candidate_tag_add({"candidateId": cid, "tag": "hot"}, ADMIN, self.db, self.cfg)
        candidate_tag_remove({"candidateId": cid, "tag": "hot"}, ADMIN, self.db, self.cfg)
        candidate_tag_add({"candidateId": cid, "tag": "hot"}, ADMIN, self.db, self.cfg)
        self.db.flush()

        self.assertEqual(wf.executionCount, 1)
        statuses = self.db.execute(select(WorkflowExecution.status).where(WorkflowExecution.workflowId == wf.workflowId)).scalars().all()
        self.assertEqual(sorted(statuses), ["completed", "skipped"])
        notes = self.db.execute(select(CandidateNote).where(CandidateNote.candidateId == cid)).scalars().all()
        self.assertEqual(len(notes), 1)

    def test_cap_is_per_candidate(self) -> None:
        wf = self.add_workflow({"type": "tag_added", "tag": "hot"}, [{"type": "add_tag", "tagName": "seen"}], maxExecutionsPerCandidate=1)
        a = self.add_candidate()
        b = self.add_candidate()

        candidate_tag_add({"candidateId": a.candidateId, "tag": "hot"}, ADMIN, self.db, self.cfg)
        candidate_tag_add({"candidateId": b.candidateId, "tag": "hot"}, ADMIN, self.db, self.cfg)

        self.assertEqual(wf.executionCount, 2)

    def test_daily_cap(self) -> None:
        wf = self.add_workflow({"type": "tag_added", "tag": "hot"}, [{"type": "add_tag", "tagName": "seen"}], maxExecutionsPerDay=1)
        a = self.add_candidate()
        b = self.add_candidate()

        candidate_tag_add({"candidateId": a.candidateId, "tag": "hot"}, ADMIN, self.db, self.cfg)
        candidate_tag_add({"candidateId": b.candidateId, "tag": "hot"}, ADMIN, self.db, self.cfg)

        self.assertEqual(wf.executionCount, 1)
        self.assertNotIn("seen", get_json(b, "tags"))


class ExecutionTests(DbTestCase):
    def test_soft_deleted_candidate_is_never_evaluated(self) -> None:
        wf = self.add_workflow({"type": "manual"}, [{"type": "add_tag", "tagName": "x"}])
        cand = self.add_candidate()
        cid = cand.candidateId
        candidate_delete({"candidateId": cid}, ADMIN, self.db, self.cfg)

        runs = fire_event(self.db, WorkflowEvent(type="manual", candidate_id=cid), cfg=self.cfg)

        self.assertEqual(runs, [])
        self.assertEqual(wf.executionCount, 0)
        with self.assertRaises(ApiError) as ctx:
            run_manual(self.db, wf.workflowId, cid, cfg=self.cfg, auth=ADMIN)
        self.assertEqual(ctx.exception.code, "NOT_FOUND")

    def test_failed_action_is_recorded_and_next_action_runs(self) -> None:
        wf = self.add_workflow(
            {"type": "manual"},
            [
                {"type": "webhook", "webhookUrl": "https://hooks.example.com/x"},
                {"type": "add_tag", "tagName": "after-webhook"},
            ],
        )
        cand = self.add_candidate()

        with mock.patch("actions.workflow_engine.requests.request", side_effect=requests.ConnectionError("boom")):
            out = run_manual(self.db, wf.workflowId, cand.candidateId, cfg=self.cfg, auth=ADMIN)

        self.assertEqual(out["status"], "failed")
        self.assertEqual([r["status"] for r in out["results"]], ["failed", "success"])
        self.assertIn("boom", out["results"][0]["error"])
        self.assertIn("after-webhook", get_json(cand, "tags"))
        self.assertEqual(wf.executionCount, 1)
        self.assertEqual(wf.successCount, 0)
        self.assertEqual(wf.failureCount, 1)

    def test_webhook_posts_rendered_payload(self) -> None:
        wf = self.add_workflow(
            {"type": "manual"},
            [{"type": "webhook", "webhookUrl": "https://hooks.example.com/x", "webhookPayload": {"name": "{{fullName}}"}}],
        )
        cand = self.add_candidate(firstName="Ann", lastName="Lee")
        response = mock.Mock(status_code=204)
        response.raise_for_status.return_value = None

        with mock.patch("actions.workflow_engine.requests.request", return_value=response) as req:
            out = run_manual(self.db, wf.workflowId, cand.candidateId, cfg=self.cfg, auth=ADMIN)

        self.assertEqual(out["status"], "completed")
        args, kwargs = req.call_args
        self.assertEqual(args, ("POST", "https://hooks.example.com/x"))
        self.assertEqual(kwargs["json"], {"name": "Ann Lee"})
        self.assertEqual(kwargs["timeout"], self.cfg.WEBHOOK_TIMEOUT_SECONDS)

    def test_send_email_queues_rendered_message(self) -> None:
        wf = self.add_workflow(
            {"type": "manual"},
            [{"type": "send_email", "emailTo": "candidate", "emailSubject": "Welcome to {{companyName}}", "emailBody": "Hi {{firstName}}"}],
        )
        cand = self.add_candidate(firstName="Ann", email="ann@example.com")

        run_manual(self.db, wf.workflowId, cand.candidateId, cfg=self.cfg, auth=ADMIN)
        self.db.flush()

        log = self.db.execute(select(EmailLog).where(EmailLog.workflowId == wf.workflowId)).scalar_one()
        self.assertEqual(log.toEmail, "ann@example.com")
        self.assertEqual(log.subject, "Welcome to Acme")
        self.assertEqual(log.body, "Hi Ann")
        self.assertEqual(log.status, "QUEUED")

    def test_test_mode_has_no_side_effects(self) -> None:
        wf = self.add_workflow({"type": "manual"}, [{"type": "add_tag", "tagName": "x"}], testMode=True)
        cand = self.add_candidate()

        out = run_manual(self.db, wf.workflowId, cand.candidateId, cfg=self.cfg, auth=ADMIN)

        self.assertEqual(out["status"], "skipped")
        self.assertEqual(out["results"][0]["status"], "skipped")
        self.assertNotIn("x", get_json(cand, "tags"))
        self.assertEqual(wf.executionCount, 0)

    def test_manual_run_requires_active_workflow(self) -> None:
        wf = self.add_workflow({"type": "manual"}, [{"type": "add_tag", "tagName": "x"}], isActive=False)
        cand = self.add_candidate()

        with self.assertRaises(ApiError) as ctx:
            run_manual(self.db, wf.workflowId, cand.candidateId, cfg=self.cfg, auth=ADMIN)
        self.assertEqual(ctx.exception.code, "BAD_REQUEST")

    def test_create_task_and_notification(self) -> None:
        wf = self.add_workflow(
            {"type": "manual"},
            [
                {"type": "create_task", "taskTitle": "Call {{firstName}}", "taskPriority": "high", "taskDueInDays": 2},
                {"type": "send_notification", "notificationMessage": "Look at {{fullName}}", "notifyUsers": ["USR-0002"]},
            ],
        )
        cand = self.add_candidate(firstName="Ann", lastName="Lee", assignedTo="USR-0009")

        run_manual(self.db, wf.workflowId, cand.candidateId, cfg=self.cfg, auth=ADMIN)
        self.db.flush()

        task = self.db.execute(select(Task).where(Task.workflowId == wf.workflowId)).scalar_one()
        self.assertEqual(task.title, "Call Ann")
        self.assertEqual(task.priority, "high")
        self.assertEqual(task.assignedTo, "USR-0009")
        note = self.db.execute(select(Notification).where(Notification.userId == "USR-0002")).scalar_one()
        self.assertEqual(note.message, "Look at Ann Lee")

    def test_round_robin_assignment_rotates(self) -> None:
        wf = self.add_workflow(
            {"type": "manual"},
            [{"type": "assign_user", "assignmentRule": "round_robin", "assignToUsers": ["u1", "u2"]}],
        )
        a = self.add_candidate()
        b = self.add_candidate()
        c = self.add_candidate()

        for cand in (a, b, c):
            run_manual(self.db, wf.workflowId, cand.candidateId, cfg=self.cfg, auth=ADMIN)

        self.assertEqual([a.assignedTo, b.assignedTo, c.assignedTo], ["u1", "u2", "u1"])

    def test_score_threshold(self) -> None:
        wf = self.add_workflow({"type": "score_threshold", "minScore": 4.5}, [{"type": "add_tag", "tagName": "High Priority"}])
        low = self.add_candidate()
        high = self.add_candidate()

        candidate_quick_score_add({"candidateId": low.candidateId, "overall": 3, "technical": 5}, ADMIN, self.db, self.cfg)
        candidate_quick_score_add({"candidateId": high.candidateId, "overall": 4.8}, ADMIN, self.db, self.cfg)

        self.assertNotIn("High Priority", get_json(low, "tags"))
        self.assertIn("High Priority", get_json(high, "tags"))
        self.assertEqual(wf.executionCount, 1)

    def test_generic_source_filter(self) -> None:
        wf = self.add_workflow({"type": "manual", "source": ["referral"]}, [{"type": "add_tag", "tagName": "x"}])
        event = WorkflowEvent(type="manual", candidate_id="")

        self.assertFalse(should_execute(wf, self.add_candidate(source="linkedin"), event))
        self.assertTrue(should_execute(wf, self.add_candidate(source="referral"), event))


class ScheduledAndTimeBasedTests(DbTestCase):
    def test_delayed_action_is_dispatched_when_due(self) -> None:
        wf = self.add_workflow({"type": "manual"}, [{"type": "add_tag", "tagName": "later", "delayMinutes": 30}])
        cand = self.add_candidate()

        out = run_manual(self.db, wf.workflowId, cand.candidateId, cfg=self.cfg, auth=ADMIN)
        self.assertEqual(out["results"][0]["status"], "scheduled")
        self.assertNotIn("later", get_json(cand, "tags"))

        self.assertEqual(dispatch_due_actions(self.db, cfg=self.cfg)["due"], 0)
        report = dispatch_due_actions(self.db, cfg=self.cfg, now=utc_now() + timedelta(minutes=31))

        self.assertEqual(report["done"], 1)
        self.assertIn("later", get_json(cand, "tags"))
        row = self.db.execute(select(ScheduledWorkflowAction)).scalar_one()
        self.assertEqual(row.status, "DONE")

    def test_failed_delayed_action_moves_run_to_failure(self) -> None:
        wf = self.add_workflow(
            {"type": "manual"},
            [{"type": "webhook", "webhookUrl": "https://hooks.example.com/x", "delayMinutes": 10}],
        )
        cand = self.add_candidate()
        out = run_manual(self.db, wf.workflowId, cand.candidateId, cfg=self.cfg, auth=ADMIN)
        self.db.commit()
        self.assertEqual(out["status"], "completed")
        self.assertEqual((wf.successCount, wf.failureCount), (1, 0))

        with mock.patch("actions.workflow_engine.requests.request", side_effect=requests.ConnectionError("down")):
            report = dispatch_due_actions(self.db, cfg=self.cfg, now=utc_now() + timedelta(minutes=11))
        self.db.commit()

        self.assertEqual(report["failed"], 1)
        execution = self.db.execute(select(WorkflowExecution).where(WorkflowExecution.executionId == out["executionId"])).scalar_one()
        self.assertEqual(execution.status, "failed")
        self.assertIn("down", execution.error)
        self.assertEqual((wf.executionCount, wf.successCount, wf.failureCount), (1, 0, 1))

    def test_days_in_stage_fires_once_per_stage_entry(self) -> None:
        wf = self.add_workflow({"type": "days_in_stage", "daysInStage": 7}, [{"type": "add_tag", "tagName": "stale"}])
        cand = self.add_candidate()
        entered = to_iso_utc(utc_now() - timedelta(days=10))
        set_json(cand, "currentProcesses", [{"processId": "PRC-0001", "stageId": "STG-1", "stageName": "Screening", "enteredStageAt": entered}])
        fresh = self.add_candidate()
        set_json(fresh, "currentProcesses", [{"processId": "PRC-0001", "stageId": "STG-1", "stageName": "Screening", "enteredStageAt": to_iso_utc(utc_now())}])
        self.db.flush()

        first = scan_time_triggers(self.db, cfg=self.cfg)
        second = scan_time_triggers(self.db, cfg=self.cfg)

        self.assertEqual(first["executions"], 1)
        self.assertEqual(second["executions"], 0)
        self.assertIn("stale", get_json(cand, "tags"))
        self.assertNotIn("stale", get_json(fresh, "tags"))
        self.assertEqual(wf.executionCount, 1)

    def test_no_activity_fires_for_inactive_candidates(self) -> None:
        self.add_workflow({"type": "no_activity", "daysElapsed": 7}, [{"type": "add_tag", "tagName": "Follow-up Required"}])
        idle = self.add_candidate()
        idle.lastActivityAt = to_iso_utc(utc_now() - timedelta(days=8))
        busy = self.add_candidate()
        self.db.flush()

        report = scan_time_triggers(self.db, cfg=self.cfg)

        self.assertEqual(report["executions"], 1)
        self.assertIn("Follow-up Required", get_json(idle, "tags"))
        self.assertNotIn("Follow-up Required", get_json(busy, "tags"))


class ConcurrentCapTests(unittest.TestCase):
    """Two sessions on one file database racing for the same cap."""

    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.cfg = make_config(DATABASE_URL=f"sqlite:///{os.path.join(self.tmp.name, 'caps.db')}")
        self.engine = init_engine(self.cfg.DATABASE_URL)
        Base.metadata.create_all(bind=self.engine)

        db = SessionLocal()
        try:
            out = workflow_create(
                {
                    "name": "Once",
                    "trigger": {"type": "manual"},
                    "actions": [{"type": "add_tag", "tagName": "x"}],
                    "maxExecutionsPerCandidate": 1,
                },
                ADMIN,
                db,
                self.cfg,
            )
            db.commit()
            self.workflow_id = out["workflowId"]
        finally:
            db.close()

    def tearDown(self) -> None:
        self.engine.dispose()
        self.tmp.cleanup()

    def test_second_session_cannot_reserve_a_taken_slot(self) -> None:
        first = SessionLocal()
        second = SessionLocal()
        try:
            now = utc_now()
            wf_first = find_workflow(first, self.workflow_id)
            self.assertIsNone(reserve_execution_slot(first, wf_first, "CND-00001", now))
            first.commit()

            wf_second = find_workflow(second, self.workflow_id)
            reason = reserve_execution_slot(second, wf_second, "CND-00001", now)
            self.assertEqual(reason, "per-candidate execution limit reached")

            res = second.execute(
                update(WorkflowCandidateCounter)
                .where(
                    WorkflowCandidateCounter.workflowId == self.workflow_id,
                    WorkflowCandidateCounter.candidateId == "CND-00001",
                    WorkflowCandidateCounter.count < 1,
                )
                .values(count=WorkflowCandidateCounter.count + 1)
            )
            self.assertEqual(res.rowcount, 0)
            second.rollback()

            count = first.execute(
                select(WorkflowCandidateCounter.count).where(WorkflowCandidateCounter.workflowId == self.workflow_id)
            ).scalar_one()
            self.assertEqual(count, 1)
        finally:
            first.close()
            second.close()


if __name__ == "__main__":
    unittest.main()
