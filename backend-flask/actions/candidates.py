from __future__ import annotations

import os

from sqlalchemy import func, or_, select

from actions.candidate_repo import (
    add_tag,
    find_candidate,
    full_name,
    get_json,
    has_duplicate_email,
    normalize_email,
    normalize_status,
    remove_tag,
    serialize_candidate,
    set_json,
    update_candidate,
)
from actions.email_templates import is_valid_email
from actions.helpers import actor_id, actor_name, append_activity, append_audit, next_prefixed_id
from actions.workflow_engine import WorkflowEvent, fire_event
from models import Candidate, CandidateActivity, CandidateNote, Interview
from utils import ApiError, AuthContext, as_float, as_int, as_str, iso_utc_now, parse_datetime_maybe, parse_json_field, to_iso_utc

SCORE_TYPES = ("overall", "technical", "cultural", "communication")
INTERVIEW_EVENTS = {"scheduled", "completed", "cancelled"}

_EDITABLE = (
    "firstName",
    "lastName",
    "email",
    "phone",
    "source",
    "experienceLevel",
    "appliedPosition",
    "assignedTo",
)


def _require_login(auth: AuthContext | None) -> None:
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")


def _executed_by(auth: AuthContext | None) -> str:
    return actor_id(auth) if auth else "system"


def _read_tags(value) -> list[str]:
    if value is None or value == "":
        return []
    if not isinstance(value, list):
        raise ApiError("BAD_REQUEST", "tags must be a list")
    out: list[str] = []
    for t in value:
        s = str(t or "").strip()
        if s and s not in out:
            out.append(s)
    return out


def _fire_status_change(db, cand: Candidate, old_status: str, new_status: str, auth, cfg, stage_name: str = ""):
    return fire_event(
        db,
        WorkflowEvent(
            type="status_changed",
            candidate_id=cand.candidateId,
            old_status=old_status,
            new_status=new_status,
            stage_name=stage_name,
        ),
        cfg=cfg,
        executed_by=_executed_by(auth),
    )


def change_status(db, cand: Candidate, new_status: str, auth, cfg, *, stage_name: str = "", reason: str = ""):
    """Set the candidate status, log it, and fire status_changed workflows."""
    old_status = cand.status or ""
    if old_status == new_status:
        return []
    update_candidate(db, cand=cand, patch={"status": new_status}, auth=auth)
    append_activity(
        db,
        candidate_id=cand.candidateId,
        type="status_change",
        description=reason or f"Status changed from {old_status} to {new_status}",
        actor=auth,
        payload={"oldStatus": old_status, "newStatus": new_status},
    )
    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.candidateId,
        action="STATUS_CHANGE",
        fromState=old_status,
        toState=new_status,
        stageTag=stage_name,
        actor=auth,
    )
    return _fire_status_change(db, cand, old_status, new_status, auth, cfg, stage_name=stage_name)


def _fire_tag_events(db, cand: Candidate, added: list[str], removed: list[str], auth, cfg) -> list:
    runs = []
    for tag in added:
        append_activity(db, candidate_id=cand.candidateId, type="tag_added", description=f"Tag added: {tag}", actor=auth, payload={"tag": tag})
        runs += fire_event(db, WorkflowEvent(type="tag_added", candidate_id=cand.candidateId, tag=tag), cfg=cfg, executed_by=_executed_by(auth))
    for tag in removed:
        append_activity(db, candidate_id=cand.candidateId, type="tag_removed", description=f"Tag removed: {tag}", actor=auth, payload={"tag": tag})
        runs += fire_event(db, WorkflowEvent(type="tag_removed", candidate_id=cand.candidateId, tag=tag), cfg=cfg, executed_by=_executed_by(auth))
    return runs


def candidate_create(data, auth: AuthContext | None, db, cfg):
    _require_login(auth)
    d = data or {}
    first_name = as_str(d, "firstName")
    last_name = as_str(d, "lastName")
    email = normalize_email(d.get("email"))

    if not first_name:
        raise ApiError("BAD_REQUEST", "Missing firstName")
    if not last_name:
        raise ApiError("BAD_REQUEST", "Missing lastName")
    if not email:
        raise ApiError("BAD_REQUEST", "Missing email")
    if not is_valid_email(email):
        raise ApiError("BAD_REQUEST", "Invalid email")
    if has_duplicate_email(db, email):
        raise ApiError("CONFLICT", "A candidate with this email already exists")

    status = normalize_status(d.get("status") or "new")
    tags = _read_tags(d.get("tags"))
    custom_fields = d.get("customFields") or {}
    if not isinstance(custom_fields, dict):
        raise ApiError("BAD_REQUEST", "customFields must be an object")

    existing_ids = [x for x in db.execute(select(Candidate.candidateId)).scalars().all()]
    candidate_id = next_prefixed_id(db, counter_key="CND", prefix="CND-", pad=5, existing_ids=existing_ids)

    now = iso_utc_now()
    cand = Candidate(
        candidateId=candidate_id,
        firstName=first_name,
        lastName=last_name,
        email=email,
        phone=as_str(d, "phone"),
        source=as_str(d, "source"),
        experienceLevel=as_str(d, "experienceLevel"),
        appliedPosition=as_str(d, "appliedPosition"),
        status=status,
        assignedTo=as_str(d, "assignedTo"),
        gdprConsent=bool(d.get("gdprConsent")),
        marketingConsent=bool(d.get("marketingConsent")),
        consentUpdatedAt=now if d.get("gdprConsent") is not None else "",
        isArchived=False,
        isDeleted=False,
        lastActivityAt=now,
        createdAt=now,
        createdBy=actor_id(auth),
        updatedAt=now,
        updatedBy=actor_id(auth),
    )
    set_json(cand, "tags", tags)
    set_json(cand, "customFields", custom_fields)
    db.add(cand)

    append_activity(db, candidate_id=candidate_id, type="created", description="Candidate created", actor=auth, at=now)
    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=candidate_id,
        action="CANDIDATE_CREATE",
        toState=status,
        actor=auth,
        at=now,
        meta={"source": cand.source},
    )
    return {"candidateId": candidate_id, "status": status}


def candidate_get(data, auth: AuthContext | None, db, cfg):
    cand = find_candidate(db, as_str(data, "candidateId"))
    cid = cand.candidateId

    activities = (
        db.execute(select(CandidateActivity).where(CandidateActivity.candidateId == cid).order_by(CandidateActivity.at.desc()).limit(100))
        .scalars()
        .all()
    )
    notes_q = select(CandidateNote).where(CandidateNote.candidateId == cid)
    # Private notes are only visible to their author.
    notes_q = notes_q.where(or_(CandidateNote.isPrivate.is_(False), CandidateNote.authorId == actor_id(auth)))
    notes = db.execute(notes_q.order_by(CandidateNote.createdAt.desc())).scalars().all()
    interviews = db.execute(select(Interview).where(Interview.candidateId == cid).order_by(Interview.scheduledAt)).scalars().all()

    return {
        "candidate": serialize_candidate(cand),
        "activities": [
            {
                "activityId": a.activityId,
                "type": a.type,
                "description": a.description,
                "payload": parse_json_field(a.payloadJson, {}),
                "at": a.at,
                "actorName": a.actorName,
            }
            for a in activities
        ],
        "notes": [
            {
                "noteId": n.noteId,
                "content": n.content,
                "isPrivate": bool(n.isPrivate),
                "authorName": n.authorName,
                "createdAt": n.createdAt,
            }
            for n in notes
        ],
        "interviews": [
            {
                "interviewId": i.interviewId,
                "type": i.type,
                "scheduledAt": i.scheduledAt,
                "status": i.status,
                "feedback": i.feedback,
            }
            for i in interviews
        ],
    }


def candidate_list(data, auth: AuthContext | None, db, cfg):
    d = data or {}
    page = max(1, as_int(d.get("page"), 1) or 1)
    page_size = max(1, min(as_int(d.get("pageSize"), 50) or 50, 200))

    q = select(Candidate).where(Candidate.isDeleted.is_(False))
    if not d.get("includeArchived"):
        q = q.where(Candidate.isArchived.is_(False))

    status = as_str(d, "status")
    if status:
        q = q.where(Candidate.status == normalize_status(status))
    assigned_to = as_str(d, "assignedTo")
    if assigned_to:
        q = q.where(Candidate.assignedTo == assigned_to)
    source = as_str(d, "source")
    if source:
        q = q.where(Candidate.source == source)
    search = as_str(d, "search").lower()
    if search:
        like = f"%{search}%"
        q = q.where(
            or_(
                func.lower(Candidate.firstName).like(like),
                func.lower(Candidate.lastName).like(like),
                func.lower(Candidate.email).like(like),
                func.lower(Candidate.appliedPosition).like(like),
            )
        )

    rows = db.execute(q.order_by(Candidate.createdAt.desc())).scalars().all()
    tag = as_str(d, "tag")
    if tag:
        rows = [c for c in rows if tag in get_json(c, "tags")]

    total = len(rows)
    start = (page - 1) * page_size
    items = [serialize_candidate(c) for c in rows[start : start + page_size]]
    return {"items": items, "total": total, "page": page, "pageSize": page_size}


def candidate_update(data, auth: AuthContext | None, db, cfg):
    _require_login(auth)
    d = data or {}
    cand = find_candidate(db, as_str(d, "candidateId"))

    patch = {}
    for key in _EDITABLE:
        if key in d:
            patch[key] = as_str(d, key)
    if "email" in patch:
        email = normalize_email(patch["email"])
        if not email or not is_valid_email(email):
            raise ApiError("BAD_REQUEST", "Invalid email")
        if has_duplicate_email(db, email, exclude_id=cand.candidateId):
            raise ApiError("CONFLICT", "A candidate with this email already exists")
        patch["email"] = email
    if "firstName" in patch and not patch["firstName"]:
        raise ApiError("BAD_REQUEST", "Missing firstName")
    if "lastName" in patch and not patch["lastName"]:
        raise ApiError("BAD_REQUEST", "Missing lastName")
    if "customFields" in d:
        if not isinstance(d.get("customFields"), dict):
            raise ApiError("BAD_REQUEST", "customFields must be an object")
        patch["customFields"] = d["customFields"]
    if "isArchived" in d:
        patch["isArchived"] = bool(d.get("isArchived"))

    added: list[str] = []
    removed: list[str] = []
    if "tags" in d:
        before = get_json(cand, "tags")
        after = _read_tags(d.get("tags"))
        added = [t for t in after if t not in before]
        removed = [t for t in before if t not in after]
        patch["tags"] = after

    new_status = normalize_status(d["status"]) if d.get("status") else ""

    if patch:
        update_candidate(db, cand=cand, patch=patch, auth=auth)
        append_audit(
            db,
            entityType="CANDIDATE",
            entityId=cand.candidateId,
            action="CANDIDATE_UPDATE",
            actor=auth,
            meta={"fields": sorted(patch.keys())},
        )

    runs = []
    if new_status:
        runs += change_status(db, cand, new_status, auth, cfg)
    runs += _fire_tag_events(db, cand, added, removed, auth, cfg)
    return {"candidate": serialize_candidate(cand), "workflowRuns": len(runs)}


def candidate_delete(data, auth: AuthContext | None, db, cfg):
    _require_login(auth)
    cand = find_candidate(db, as_str(data, "candidateId"))
    now = iso_utc_now()
    cand.isDeleted = True
    cand.deletedAt = now
    cand.updatedAt = now
    cand.updatedBy = actor_id(auth)
    append_audit(db, entityType="CANDIDATE", entityId=cand.candidateId, action="CANDIDATE_DELETE", actor=auth, at=now)
    return {"deleted": True}


def candidate_tag_add(data, auth: AuthContext | None, db, cfg):
    _require_login(auth)
    cand = find_candidate(db, as_str(data, "candidateId"))
    tag = as_str(data, "tag")
    if not tag:
        raise ApiError("BAD_REQUEST", "Missing tag")
    if not add_tag(cand, tag):
        return {"tags": get_json(cand, "tags"), "changed": False}
    update_candidate(db, cand=cand, patch={}, auth=auth)
    runs = _fire_tag_events(db, cand, [tag], [], auth, cfg)
    return {"tags": get_json(cand, "tags"), "changed": True, "workflowRuns": len(runs)}


def candidate_tag_remove(data, auth: AuthContext | None, db, cfg):
    _require_login(auth)
    cand = find_candidate(db, as_str(data, "candidateId"))
    tag = as_str(data, "tag")
    if not tag:
        raise ApiError("BAD_REQUEST", "Missing tag")
    if not remove_tag(cand, tag):
        return {"tags": get_json(cand, "tags"), "changed": False}
    update_candidate(db, cand=cand, patch={}, auth=auth)
    runs = _fire_tag_events(db, cand, [], [tag], auth, cfg)
    return {"tags": get_json(cand, "tags"), "changed": True, "workflowRuns": len(runs)}


def candidate_note_add(data, auth: AuthContext | None, db, cfg):
    _require_login(auth)
    cand = find_candidate(db, as_str(data, "candidateId"))
    content = str((data or {}).get("content") or "").strip()
    if not content:
        raise ApiError("BAD_REQUEST", "Missing content")

    note_id = f"NOTE-{os.urandom(10).hex()}"
    now = iso_utc_now()
    db.add(
        CandidateNote(
            noteId=note_id,
            candidateId=cand.candidateId,
            content=content,
            isPrivate=bool((data or {}).get("isPrivate")),
            authorId=actor_id(auth),
            authorName=actor_name(auth),
            createdAt=now,
        )
    )
    update_candidate(db, cand=cand, patch={}, auth=auth)
    append_activity(db, candidate_id=cand.candidateId, type="note_added", description="Note added", actor=auth, at=now, payload={"noteId": note_id})
    return {"noteId": note_id}


def candidate_quick_score_add(data, auth: AuthContext | None, db, cfg):
    _require_login(auth)
    d = data or {}
    cand = find_candidate(db, as_str(d, "candidateId"))

    entry = {}
    for key in SCORE_TYPES:
        if d.get(key) is None:
            continue
        value = as_float(d.get(key))
        if value is None or value < 0 or value > 5:
            raise ApiError("BAD_REQUEST", f"{key} must be a number between 0 and 5")
        entry[key] = value
    if "overall" not in entry:
        raise ApiError("BAD_REQUEST", "Missing overall")

    now = iso_utc_now()
    entry.update({"comment": as_str(d, "comment"), "scoredBy": actor_id(auth), "scoredByName": actor_name(auth), "scoredAt": now})
    scores = get_json(cand, "quickScores")
    scores.append(entry)
    update_candidate(db, cand=cand, patch={"quickScores": scores}, auth=auth)
    append_activity(
        db,
        candidate_id=cand.candidateId,
        type="score_added",
        description=f"Quick score added: {entry['overall']}",
        actor=auth,
        at=now,
        payload={k: entry[k] for k in SCORE_TYPES if k in entry},
    )

    runs = []
    for key in SCORE_TYPES:
        if key in entry:
            runs += fire_event(
                db,
                WorkflowEvent(type="score_threshold", candidate_id=cand.candidateId, score=entry[key], score_type=key),
                cfg=cfg,
                executed_by=_executed_by(auth),
            )
    return {"quickScores": scores, "workflowRuns": len(runs)}


def candidate_interview_event(data, auth: AuthContext | None, db, cfg):
    _require_login(auth)
    d = data or {}
    cand = find_candidate(db, as_str(d, "candidateId"))
    event = as_str(d, "event").lower()
    if event not in INTERVIEW_EVENTS:
        raise ApiError("BAD_REQUEST", "event must be scheduled, completed or cancelled")
    interview_type = as_str(d, "interviewType") or "screening"
    interview_id = as_str(d, "interviewId")
    now = iso_utc_now()

    interview = None
    if interview_id:
        interview = db.execute(
            select(Interview).where(Interview.interviewId == interview_id, Interview.candidateId == cand.candidateId)
        ).scalar_one_or_none()
        if not interview:
            raise ApiError("NOT_FOUND", "Interview not found")
        interview_type = as_str(d, "interviewType") or interview.type

    if event == "scheduled":
        scheduled_at = parse_datetime_maybe(d.get("scheduledAt"), getattr(cfg, "APP_TIMEZONE", "UTC"))
        if not scheduled_at:
            raise ApiError("BAD_REQUEST", "Missing or invalid scheduledAt")
        if interview is None:
            interview_id = f"INT-{os.urandom(10).hex()}"
            interview = Interview(interviewId=interview_id, candidateId=cand.candidateId, createdBy=actor_id(auth), createdAt=now)
            db.add(interview)
        interview.type = interview_type
        interview.scheduledAt = to_iso_utc(scheduled_at)
        interview.status = "scheduled"
    else:
        if interview is None:
            raise ApiError("BAD_REQUEST", "Missing interviewId")
        interview.status = event
        if "feedback" in d:
            interview.feedback = str(d.get("feedback") or "")
    interview.updatedAt = now

    update_candidate(db, cand=cand, patch={}, auth=auth)
    append_activity(
        db,
        candidate_id=cand.candidateId,
        type=f"interview_{event}",
        description=f"Interview {event} ({interview_type})",
        actor=auth,
        at=now,
        payload={"interviewId": interview.interviewId, "interviewType": interview_type},
    )

    runs = []
    if event in {"scheduled", "completed"}:
        runs = fire_event(
            db,
            WorkflowEvent(type=f"interview_{event}", candidate_id=cand.candidateId, interview_type=interview_type),
            cfg=cfg,
            executed_by=_executed_by(auth),
        )
    return {"interviewId": interview.interviewId, "status": interview.status, "workflowRuns": len(runs), "candidate": full_name(cand)}
