from __future__ import annotations

import unittest

from sqlalchemy import select

from actions.email_templates import email_template_create, email_template_render, email_template_send, render_template
from actions.notifications import notification_list, notification_mark_all_read, notification_mark_read
from actions.tasks import task_create, task_list, task_update
from models import CandidateActivity, EmailLog
from support import ADMIN, RECRUITER, DbTestCase
from utils import ApiError


class RenderTemplateTests(unittest.TestCase):
    def test_unknown_placeholders_are_left_alone(self):
        out = render_template("Hi {{ firstName }}, see {{nothing}}", {"firstName": "Ann"})
        self.assertEqual(out, "Hi Ann, see {{nothing}}")


class TaskTests(DbTestCase):
    def test_assigning_to_someone_else_notifies_them(self):
        cand = self.add_candidate()
        out = task_create(
            {"title": "Call back", "candidateId": cand.candidateId, "assignedTo": RECRUITER.userId, "priority": "urgent"},
            ADMIN,
            self.db,
            self.cfg,
        )
        self.db.flush()

        inbox = notification_list({}, RECRUITER, self.db, self.cfg)
        self.assertEqual(inbox["unreadCount"], 1)
        self.assertEqual(inbox["items"][0]["type"], "task_assigned")
        self.assertTrue(out["taskId"].startswith("TSK-"))

    def test_self_assigned_task_sends_nothing(self):
        task_create({"title": "Note to self"}, ADMIN, self.db, self.cfg)
        self.db.flush()
        self.assertEqual(notification_list({}, ADMIN, self.db, self.cfg)["unreadCount"], 0)

    def test_invalid_priority(self):
        with self.assertRaises(ApiError):
            task_create({"title": "x", "priority": "whenever"}, ADMIN, self.db, self.cfg)

    def test_completion_is_stamped_and_logged(self):
        cand = self.add_candidate()
        task_id = task_create({"title": "Review CV", "candidateId": cand.candidateId}, ADMIN, self.db, self.cfg)["taskId"]
        self.db.flush()

        done = task_update({"taskId": task_id, "status": "completed"}, ADMIN, self.db, self.cfg)["task"]
        self.assertTrue(done["completedAt"])
        reopened = task_update({"taskId": task_id, "status": "pending"}, ADMIN, self.db, self.cfg)["task"]
        self.assertEqual(reopened["completedAt"], "")

        self.db.flush()
        completed = self.db.execute(
            select(CandidateActivity).where(CandidateActivity.candidateId == cand.candidateId, CandidateActivity.type == "task_completed")
        ).scalars().all()
        self.assertEqual(len(completed), 1)

    def test_list_mine(self):
        task_create({"title": "mine"}, ADMIN, self.db, self.cfg)
        task_create({"title": "theirs", "assignedTo": RECRUITER.userId}, ADMIN, self.db, self.cfg)
        self.db.flush()

        mine = task_list({"mine": True}, ADMIN, self.db, self.cfg)
        self.assertEqual([t["title"] for t in mine["items"]], ["mine"])


class NotificationTests(DbTestCase):
    def test_mark_read_only_touches_own_notifications(self):
        task_create({"title": "a", "assignedTo": RECRUITER.userId}, ADMIN, self.db, self.cfg)
        task_create({"title": "b", "assignedTo": RECRUITER.userId}, ADMIN, self.db, self.cfg)
        self.db.flush()
        first = notification_list({}, RECRUITER, self.db, self.cfg)["items"][0]

        with self.assertRaises(ApiError) as ctx:
            notification_mark_read({"notificationId": first["notificationId"]}, ADMIN, self.db, self.cfg)
        self.assertEqual(ctx.exception.code, "NOT_FOUND")

        notification_mark_read({"notificationId": first["notificationId"]}, RECRUITER, self.db, self.cfg)
        self.db.flush()
        self.assertEqual(notification_list({}, RECRUITER, self.db, self.cfg)["unreadCount"], 1)

        self.assertEqual(notification_mark_all_read({}, RECRUITER, self.db, self.cfg)["updated"], 1)


class EmailTemplateTests(DbTestCase):
    def test_render_and_send(self):
        cand = self.add_candidate(firstName="Ann", email="ann@example.com", appliedPosition="Data Engineer")
        tpl_id = email_template_create(
            {"name": "Invite", "category": "interview", "subject": "{{position}} at {{companyName}}", "body": "Hi {{firstName}}"},
            ADMIN,
            self.db,
            self.cfg,
        )["templateId"]
        self.db.flush()

        rendered = email_template_render({"templateId": tpl_id, "candidateId": cand.candidateId}, ADMIN, self.db, self.cfg)
        self.assertEqual(rendered["subject"], "Data Engineer at Acme")
        self.assertEqual(rendered["body"], "Hi Ann")

        sent = email_template_send({"templateId": tpl_id, "candidateId": cand.candidateId}, ADMIN, self.db, self.cfg)
        self.db.flush()
        log = self.db.execute(select(EmailLog).where(EmailLog.logId == sent["emailLogId"])).scalar_one()
        self.assertEqual(log.toEmail, "ann@example.com")
        self.assertEqual(log.templateId, tpl_id)

    def test_unknown_category(self):
        with self.assertRaises(ApiError):
            email_template_create({"name": "x", "subject": "y", "body": "z", "category": "spam"}, ADMIN, self.db, self.cfg)


if __name__ == "__main__":
    unittest.main()
