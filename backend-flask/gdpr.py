"""PII masking and GDPR data-subject operations."""
from __future__ import annotations

import logging
import os
import re
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select

from models import (
    AuditLog,
    Candidate,
    CandidateActivity,
    CandidateNote,
    Comment,
    EmailLog,
    Interview,
    Notification,
    ScheduledWorkflowAction,
    Task,
    WorkflowCandidateCounter,
    WorkflowExecution,
)
from utils import iso_utc_now, parse_json_field, safe_json_string, to_iso_utc, utc_now

log = logging.getLogger("gdpr")

DATA_RETENTION_DAYS = 730
MIN_RETENTION_DAYS = 30
MAX_SANITIZED_LENGTH = 10000

_TAG_RE = re.compile(r"<[^>]*>")
_JS_PROTO_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=", re.IGNORECASE)
_DATA_PROTO_RE = re.compile(r"data:", re.IGNORECASE)


def mask_email(email: Any) -> str:
    s = str(email or "").strip()
    local, sep, domain = s.partition("@")
    if not sep or not domain or not local:
        return "***"
    return f"{local[0]}***{local[-1]}@{domain}"


def mask_phone(phone: Any) -> str:
    digits = re.sub(r"\D", "", str(phone or ""))
    if len(digits) < 4:
        return "***"
    return "***-***-" + digits[-4:]


def mask_name(name: Any) -> str:
    parts = [p for p in str(name or "").split(" ") if p]
    return " ".join(p[0] + "***" for p in parts)


def anonymize_pii(data: dict[str, Any]) -> dict[str, Any]:
    out = dict(data or {})
    if out.get("email"):
        out["email"] = mask_email(out["email"])
    if out.get("phone"):
        out["phone"] = mask_phone(out["phone"])
    if out.get("name"):
        out["name"] = mask_name(out["name"])
    if out.get("address"):
        out["address"] = "*** (address hidden)"
    return out


def sanitize_string(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    s = value.strip()
    s = _TAG_RE.sub("", s)
    s = _JS_PROTO_RE.sub("", s)
    s = _EVENT_HANDLER_RE.sub("", s)
    s = _DATA_PROTO_RE.sub("", s)
    return s[:MAX_SANITIZED_LENGTH]


def sanitize_object(obj: Any) -> Any:
    if isinstance(obj, str):
        return sanitize_string(obj)
    if isinstance(obj, dict):
        return {k: sanitize_object(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [sanitize_object(v) for v in obj]
    return obj


def _row_dict(row) -> dict[str, Any]:
    out = {}
    for col in row.__table__.columns:
        value = getattr(row, col.name)
        if col.name.endswith("Json"):
            value = parse_json_field(value, None) if value else None
            out[col.name[: -len("Json")]] = value
        else:
            out[col.name] = value
    return out


def _log_gdpr_event(db, action: str, entity_id: str, meta: dict[str, Any]) -> None:
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType="GDPR",
            entityId=entity_id,
            action=action,
            stageTag="GDPR",
            actorUserId="SYSTEM",
            actorRole="SYSTEM",
            at=iso_utc_now(),
            metaJson=safe_json_string(meta, "{}"),
        )
    )


def export_candidate_data(db, cand: Candidate, *, fmt: str = "json") -> dict[str, Any]:
    cid = cand.candidateId

    def _all(model, column):
        return [_row_dict(r) for r in db.execute(select(model).where(column == cid)).scalars().all()]

    result = {
        "candidate": _row_dict(cand),
        "activities": _all(CandidateActivity, CandidateActivity.candidateId),
        "notes": _all(CandidateNote, CandidateNote.candidateId),
        "interviews": _all(Interview, Interview.candidateId),
        "tasks": _all(Task, Task.candidateId),
        "comments": _all(Comment, Comment.candidateId),
        "emails": _all(EmailLog, EmailLog.candidateId),
        "exportedAt": iso_utc_now(),
        "format": fmt,
    }
    _log_gdpr_event(
        db,
        "GDPR_DATA_EXPORT",
        cid,
        {
            "format": fmt,
            "recordsExported": {k: len(v) for k, v in result.items() if isinstance(v, list)},
        },
    )
    return result


def erase_candidate_data(db, cand: Candidate) -> dict[str, Any]:
    """Hard-delete a candidate and every row that references it."""
    cid = cand.candidateId
    email = cand.email
    counts: dict[str, int] = {}
    for label, model in (
        ("interviews", Interview),
        ("tasks", Task),
        ("comments", Comment),
        ("activities", CandidateActivity),
        ("notes", CandidateNote),
        ("notifications", Notification),
        ("emails", EmailLog),
        ("workflowExecutions", WorkflowExecution),
        ("scheduledActions", ScheduledWorkflowAction),
        ("workflowCounters", WorkflowCandidateCounter),
    ):
        res = db.execute(delete(model).where(model.candidateId == cid))
        counts[label] = int(res.rowcount or 0)

    db.delete(cand)
    counts["candidates"] = 1
    _log_gdpr_event(db, "GDPR_DATA_ERASURE", cid, {"candidateEmail": mask_email(email), "deletedRecords": counts})
    log.info("gdpr_erasure candidate=%s email=%s", cid, mask_email(email))
    return {"success": True, "deleted": counts}


def enforce_retention(db, *, retention_days: int = DATA_RETENTION_DAYS, dry_run: bool = True, now=None) -> dict[str, Any]:
    """Erase rejected/archived candidates untouched since the retention cutoff."""
    days = max(int(retention_days), MIN_RETENTION_DAYS)
    cutoff = (now or utc_now()) - timedelta(days=days)
    cutoff_iso = to_iso_utc(cutoff)

    report: dict[str, Any] = {
        "totalCandidates": int(db.execute(select(func.count()).select_from(Candidate)).scalar_one() or 0),
        "retentionDays": days,
        "retentionCutoffDate": cutoff_iso,
        "candidatesForDeletion": 0,
        "candidatesDeleted": 0,
        "dryRun": bool(dry_run),
        "errors": [],
    }

    eligible = (
        db.execute(
            select(Candidate).where(
                or_(Candidate.status == "rejected", Candidate.isArchived.is_(True)),
                Candidate.updatedAt < cutoff_iso,
            )
        )
        .scalars()
        .all()
    )
    report["candidatesForDeletion"] = len(eligible)

    if not dry_run:
        for cand in eligible:
            sp = db.begin_nested()
            try:
                erase_candidate_data(db, cand)
                sp.commit()
                report["candidatesDeleted"] += 1
            except Exception as e:
                sp.rollback()
                report["errors"].append(f"Failed to delete candidate {cand.candidateId}: {e}")
                log.warning("gdpr_retention_failed candidate=%s error=%s", cand.candidateId, e)

    _log_gdpr_event(
        db,
        "GDPR_RETENTION_ENFORCED",
        "",
        {k: report[k] for k in ("dryRun", "retentionDays", "retentionCutoffDate", "candidatesForDeletion", "candidatesDeleted")},
    )
    return report


def update_consent(db, cand: Candidate, *, gdpr_consent: bool, marketing_consent: bool) -> dict[str, Any]:
    now = iso_utc_now()
    cand.gdprConsent = bool(gdpr_consent)
    cand.marketingConsent = bool(marketing_consent)
    cand.consentUpdatedAt = now
    cand.updatedAt = now
    _log_gdpr_event(
        db,
        "CONSENT_UPDATED",
        cand.candidateId,
        {"gdprConsent": bool(gdpr_consent), "marketingConsent": bool(marketing_consent)},
    )
    return {"candidateId": cand.candidateId, "gdprConsent": cand.gdprConsent, "marketingConsent": cand.marketingConsent}
