from __future__ import annotations

import unittest
from dataclasses import replace

from sqlalchemy import select

from actions.comments import comment_create, comment_delete, comment_list, comment_update, extract_mentions
from actions.session_actions import ensure_user
from models import Notification
from support import ADMIN, RECRUITER, DbTestCase
from utils import ApiError


class ExtractMentionsTests(unittest.TestCase):
    def test_order_and_duplicates(self):
        text = "Ping @[rita@example.com] and @[Ada Admin], thanks @[rita@example.com]"
        self.assertEqual(extract_mentions(text), ["rita@example.com", "Ada Admin"])

    def test_plain_at_signs_are_ignored(self):
        self.assertEqual(extract_mentions("mail me at bob@example.com or @bob"), [])


class CommentTests(DbTestCase):
    def setUp(self):
        super().setUp()
        self.admin_user = ensure_user(self.db, email="admin@example.com", full_name="Ada Admin")
        self.recruiter_user = ensure_user(self.db, email="rita@example.com", full_name="Rita Recruiter", role="RECRUITER")
        self.db.flush()
        self.admin = replace(ADMIN, userId=self.admin_user.userId)
        self.recruiter = replace(RECRUITER, userId=self.recruiter_user.userId)
        self.cand = self.add_candidate()

    def _notifications(self, user_id):
        self.db.flush()
        return self.db.execute(select(Notification).where(Notification.userId == user_id)).scalars().all()

    def test_mentions_notify_others_but_not_the_author(self):
        out = comment_create(
            {"candidateId": self.cand.candidateId, "content": "@[Rita Recruiter] please call. cc @[admin@example.com]"},
            self.admin,
            self.db,
            self.cfg,
        )

        self.assertEqual(out["notified"], 1)
        self.assertEqual(len(self._notifications(self.recruiter_user.userId)), 1)
        self.assertEqual(self._notifications(self.admin_user.userId), [])

    def test_edit_only_notifies_new_mentions(self):
        out = comment_create(
            {"candidateId": self.cand.candidateId, "content": "@[Rita Recruiter] first pass"}, self.admin, self.db, self.cfg
        )
        edited = comment_update(
            {"commentId": out["comment"]["commentId"], "content": "@[Rita Recruiter] second pass"}, self.admin, self.db, self.cfg
        )

        self.assertEqual(edited["notified"], 0)
        self.assertTrue(edited["comment"]["isEdited"])
        self.assertEqual(len(self._notifications(self.recruiter_user.userId)), 1)

    def test_only_author_can_edit(self):
        out = comment_create({"candidateId": self.cand.candidateId, "content": "hello"}, self.admin, self.db, self.cfg)
        with self.assertRaises(ApiError) as ctx:
            comment_update({"commentId": out["comment"]["commentId"], "content": "hijack"}, self.recruiter, self.db, self.cfg)
        self.assertEqual(ctx.exception.code, "FORBIDDEN")

    def test_delete_hides_comment(self):
        out = comment_create({"candidateId": self.cand.candidateId, "content": "temp"}, self.recruiter, self.db, self.cfg)
        comment_delete({"commentId": out["comment"]["commentId"]}, self.admin, self.db, self.cfg)
        self.db.flush()

        listed = comment_list({"candidateId": self.cand.candidateId}, self.admin, self.db, self.cfg)
        self.assertEqual(listed["total"], 0)

    def test_reply_must_share_candidate(self):
        other = self.add_candidate()
        parent = comment_create({"candidateId": self.cand.candidateId, "content": "root"}, self.admin, self.db, self.cfg)
        with self.assertRaises(ApiError):
            comment_create(
                {"candidateId": other.candidateId, "content": "reply", "parentCommentId": parent["comment"]["commentId"]},
                self.admin,
                self.db,
                self.cfg,
            )


if __name__ == "__main__":
    unittest.main()
