from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select

from actions.helpers import actor_id
from models import Candidate
from schemas import CANDIDATE_STATUSES
from utils import ApiError, AuthContext, iso_utc_now, parse_json_field, safe_json_string

_JSON_FIELDS = {
    "tags": ("tagsJson", []),
    "currentProcesses": ("currentProcessesJson", []),
    "processIds": ("processIdsJson", []),
    "quickScores": ("quickScoresJson", []),
    "customFields": ("customFieldsJson", {}),
}

_PLAIN_FIELDS = {
    "firstName",
    "lastName",
    "email",
    "phone",
    "source",
    "experienceLevel",
    "appliedPosition",
    "status",
    "assignedTo",
    "gdprConsent",
    "marketingConsent",
    "consentUpdatedAt",
    "isArchived",
    "lastActivityAt",
}


def normalize_status(value: Any) -> str:
    s = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    if s not in CANDIDATE_STATUSES:
        raise ApiError("BAD_REQUEST", f"Invalid status: {value}")
    return s


def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def full_name(cand: Candidate) -> str:
    return f"{cand.firstName or ''} {cand.lastName or ''}".strip()


def get_json(cand: Candidate, field: str):
    column, fallback = _JSON_FIELDS[field]
    value = parse_json_field(getattr(cand, column), fallback)
    # Fresh copies so callers can mutate without touching the fallback.
    return list(value) if isinstance(fallback, list) else dict(value)


def set_json(cand: Candidate, field: str, value) -> None:
    column, fallback = _JSON_FIELDS[field]
    setattr(cand, column, safe_json_string(value, "[]" if isinstance(fallback, list) else "{}"))


def find_candidate(db, candidate_id: str, *, include_deleted: bool = False) -> Candidate:
    cid = str(candidate_id or "").strip()
    if not cid:
        raise ApiError("BAD_REQUEST", "Missing candidateId")
    q = select(Candidate).where(Candidate.candidateId == cid)
    if not include_deleted:
        q = q.where(Candidate.isDeleted.is_(False))
    cand = db.execute(q).scalar_one_or_none()
    if not cand:
        raise ApiError("NOT_FOUND", "Candidate not found")
    return cand


def has_duplicate_email(db, email: str, *, exclude_id: str = "") -> bool:
    email_lc = normalize_email(email)
    if not email_lc:
        return False
    q = select(Candidate.candidateId).where(Candidate.email == email_lc, Candidate.isDeleted.is_(False))
    if exclude_id:
        q = q.where(Candidate.candidateId != exclude_id)
    return db.execute(q).first() is not None


def update_candidate(db, *, cand: Candidate, patch: dict[str, Any], auth: Optional[AuthContext]) -> Candidate:
    for key, value in (patch or {}).items():
        if key in _JSON_FIELDS:
            set_json(cand, key, value)
        elif key in _PLAIN_FIELDS:
            setattr(cand, key, value)
        else:
            raise ApiError("BAD_REQUEST", f"Unknown candidate field: {key}")
    now = iso_utc_now()
    cand.updatedAt = now
    cand.updatedBy = actor_id(auth)
    cand.lastActivityAt = now
    return cand


def add_tag(cand: Candidate, tag: str) -> bool:
    tags = get_json(cand, "tags")
    if tag in tags:
        return False
    tags.append(tag)
    set_json(cand, "tags", tags)
    return True


def remove_tag(cand: Candidate, tag: str) -> bool:
    tags = get_json(cand, "tags")
    if tag not in tags:
        return False
    set_json(cand, "tags", [t for t in tags if t != tag])
    return True


def serialize_candidate(cand: Candidate) -> dict[str, Any]:
    return {
        "candidateId": cand.candidateId,
        "firstName": cand.firstName or "",
        "lastName": cand.lastName or "",
        "fullName": full_name(cand),
        "email": cand.email or "",
        "phone": cand.phone or "",
        "source": cand.source or "",
        "experienceLevel": cand.experienceLevel or "",
        "appliedPosition": cand.appliedPosition or "",
        "status": cand.status or "",
        "tags": get_json(cand, "tags"),
        "currentProcesses": get_json(cand, "currentProcesses"),
        "processIds": get_json(cand, "processIds"),
        "quickScores": get_json(cand, "quickScores"),
        "customFields": get_json(cand, "customFields"),
        "assignedTo": cand.assignedTo or "",
        "gdprConsent": bool(cand.gdprConsent),
        "marketingConsent": bool(cand.marketingConsent),
        "isArchived": bool(cand.isArchived),
        "isDeleted": bool(cand.isDeleted),
        "lastActivityAt": cand.lastActivityAt or "",
        "createdAt": cand.createdAt or "",
        "createdBy": cand.createdBy or "",
        "updatedAt": cand.updatedAt or "",
        "updatedBy": cand.updatedBy or "",
    }
