from __future__ import annotations

import unittest
from datetime import timedelta

from sqlalchemy import func, select

from actions.candidates import candidate_note_add
from actions.gdpr_actions import gdpr_erase, gdpr_retention
from gdpr import anonymize_pii, enforce_retention, export_candidate_data, mask_email, mask_name, mask_phone, sanitize_object, sanitize_string
from models import AuditLog, Candidate, CandidateActivity, CandidateNote
from support import ADMIN, DbTestCase
from utils import ApiError, to_iso_utc, utc_now


class MaskingTests(unittest.TestCase):
    def test_mask_email(self):
        self.assertEqual(mask_email("john.doe@example.com"), "j***e@example.com")
        self.assertEqual(mask_email("not-an-email"), "***")
        self.assertEqual(mask_email(None), "***")

    def test_mask_phone(self):
        self.assertEqual(mask_phone("+1 (555) 123-5678"), "***-***-5678")
        self.assertEqual(mask_phone("12"), "***")

    def test_mask_name(self):
        self.assertEqual(mask_name("Jane  Doe"), "J*** D***")

    def test_anonymize_pii_leaves_other_fields(self):
        out = anonymize_pii({"email": "ann@example.com", "address": "1 Main St", "role": "dev"})
        self.assertEqual(out["email"], "a***n@example.com")
        self.assertEqual(out["address"], "*** (address hidden)")
        self.assertEqual(out["role"], "dev")

    def test_sanitize_string(self):
        self.assertEqual(sanitize_string("  <b>hi</b> "), "hi")
        self.assertEqual(sanitize_string('<a href="javascript:alert(1)">x</a>'), "x")
        self.assertEqual(sanitize_string("img onerror=boom"), "img boom")
        self.assertEqual(sanitize_string(42), "")
        self.assertEqual(len(sanitize_string("a" * 20000)), 10000)

    def test_sanitize_object_is_recursive(self):
        out = sanitize_object({"a": ["<i>x</i>", 3], "b": {"c": "data:text"}})
        self.assertEqual(out, {"a": ["x", 3], "b": {"c": "text"}})


class DataSubjectTests(DbTestCase):
    def test_export_collects_related_rows(self):
        cand = self.add_candidate(tags=["python"])
        candidate_note_add({"candidateId": cand.candidateId, "content": "Strong profile"}, ADMIN, self.db, self.cfg)
        self.db.flush()

        out = export_candidate_data(self.db, cand)

        self.assertEqual(out["candidate"]["candidateId"], cand.candidateId)
        self.assertEqual(out["candidate"]["tags"], ["python"])
        self.assertEqual([n["content"] for n in out["notes"]], ["Strong profile"])
        self.assertTrue(out["activities"])

    def test_erase_requires_confirmation(self):
        cand = self.add_candidate()
        with self.assertRaises(ApiError) as ctx:
            gdpr_erase({"candidateId": cand.candidateId, "confirm": "nope"}, ADMIN, self.db, self.cfg)
        self.assertEqual(ctx.exception.code, "BAD_REQUEST")

    def test_erase_removes_candidate_and_children(self):
        cand = self.add_candidate(email="erase.me@example.com")
        cid = cand.candidateId
        candidate_note_add({"candidateId": cid, "content": "note"}, ADMIN, self.db, self.cfg)
        self.db.flush()

        out = gdpr_erase({"candidateId": cid, "confirm": cid}, ADMIN, self.db, self.cfg)
        self.db.flush()

        self.assertTrue(out["success"])
        self.assertEqual(out["deleted"]["notes"], 1)
        for model in (Candidate, CandidateNote, CandidateActivity):
            count = self.db.execute(select(func.count()).select_from(model).where(model.candidateId == cid)).scalar_one()
            self.assertEqual(count, 0)
        erasure = self.db.execute(select(AuditLog).where(AuditLog.action == "GDPR_DATA_ERASURE")).scalar_one()
        self.assertNotIn("erase.me@example.com", erasure.metaJson)
        self.assertIn("e***e@example.com", erasure.metaJson)

    def test_retention_dry_run_then_apply(self):
        old = self.add_candidate(status="rejected")
        old.updatedAt = to_iso_utc(utc_now() - timedelta(days=800))
        recent = self.add_candidate(status="rejected")
        active = self.add_candidate(status="screening")
        active.updatedAt = to_iso_utc(utc_now() - timedelta(days=800))
        self.db.flush()
        old_id, recent_id = old.candidateId, recent.candidateId

        dry = enforce_retention(self.db, retention_days=730)
        self.assertTrue(dry["dryRun"])
        self.assertEqual(dry["candidatesForDeletion"], 1)
        self.assertEqual(dry["candidatesDeleted"], 0)

        applied = enforce_retention(self.db, retention_days=730, dry_run=False)
        self.db.flush()
        self.assertEqual(applied["candidatesDeleted"], 1)
        remaining = set(self.db.execute(select(Candidate.candidateId)).scalars().all())
        self.assertNotIn(old_id, remaining)
        self.assertIn(recent_id, remaining)

    def test_retention_rejects_short_periods(self):
        with self.assertRaises(ApiError):
            gdpr_retention({"retentionDays": 5}, ADMIN, self.db, self.cfg)

    def test_retention_action_defaults_to_dry_run(self):
        out = gdpr_retention({"retentionDays": 365}, ADMIN, self.db, self.cfg)
        self.assertTrue(out["dryRun"])


if __name__ == "__main__":
    unittest.main()
