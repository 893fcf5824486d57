from __future__ import annotations

import unittest
from typing import Any, Dict

import models  # noqa: F401  registers tables on Base
from actions.candidates import candidate_create
from actions.candidate_repo import find_candidate
from actions.workflows import find_workflow, workflow_create
from config import Config
from db import Base, SessionLocal, init_engine
from utils import AuthContext

ADMIN = AuthContext(valid=True, userId="USR-0001", email="admin@example.com", role="ADMIN", fullName="Ada Admin")
RECRUITER = AuthContext(valid=True, userId="USR-0002", email="rita@example.com", role="RECRUITER", fullName="Rita Recruiter")


def make_config(**overrides: Any) -> Config:
    cfg = Config()
    cfg.DATABASE_URL = "sqlite://"
    cfg.WORKFLOWS_ENABLED = True
    cfg.COMPANY_NAME = "Acme"
    cfg.APP_TIMEZONE = "UTC"
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


class DbTestCase(unittest.TestCase):
    """Fresh in-memory database and session per test."""

    def setUp(self) -> None:
        self.cfg = make_config()
        self.engine = init_engine(self.cfg.DATABASE_URL)
        Base.metadata.create_all(bind=self.engine)
        self.db = SessionLocal()

    def tearDown(self) -> None:
        self.db.close()
        Base.metadata.drop_all(bind=self.engine)
        self.engine.dispose()

    def add_candidate(self, **fields: Any):
        data: Dict[str, Any] = {
            "firstName": "Jane",
            "lastName": "Doe",
            "email": f"jane.{len(self._seen_emails())}@example.com",
            "source": "linkedin",
        }
        data.update(fields)
        out = candidate_create(data, ADMIN, self.db, self.cfg)
        self.db.flush()
        return find_candidate(self.db, out["candidateId"])

    def _seen_emails(self) -> list:
        from models import Candidate

        return self.db.query(Candidate.email).all()

    def add_workflow(self, trigger: Dict[str, Any], actions: list, **fields: Any):
        data = {"name": fields.pop("name", "Test workflow"), "trigger": trigger, "actions": actions}
        data.update(fields)
        out = workflow_create(data, ADMIN, self.db, self.cfg)
        self.db.flush()
        return find_workflow(self.db, out["workflowId"])
