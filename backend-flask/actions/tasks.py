from __future__ import annotations

from typing import Any

from sqlalchemy import select

from actions.candidate_repo import find_candidate, full_name
from actions.helpers import actor_id, append_activity, append_audit, next_prefixed_id
from actions.notifications import create_notification
from models import Task
from schemas import TASK_PRIORITIES
from utils import ApiError, AuthContext, as_int, as_str, iso_utc_now, parse_datetime_maybe, to_iso_utc

TASK_STATUSES = ("pending", "in_progress", "completed", "cancelled")
TASK_TYPES = ("follow_up", "interview", "review", "call", "email", "custom")


def _serialize(t: Task) -> dict[str, Any]:
    return {
        "taskId": t.taskId,
        "candidateId": t.candidateId,
        "candidateName": t.candidateName,
        "workflowId": t.workflowId,
        "title": t.title,
        "description": t.description,
        "type": t.type,
        "assignedTo": t.assignedTo,
        "assignedToName": t.assignedToName,
        "status": t.status,
        "priority": t.priority,
        "dueDate": t.dueDate,
        "completedAt": t.completedAt,
        "notes": t.notes,
        "createdBy": t.createdBy,
        "createdAt": t.createdAt,
        "updatedAt": t.updatedAt,
    }


def _find_task(db, task_id: str) -> Task:
    if not task_id:
        raise ApiError("BAD_REQUEST", "Missing taskId")
    t = db.execute(select(Task).where(Task.taskId == task_id)).scalar_one_or_none()
    if not t:
        raise ApiError("NOT_FOUND", "Task not found")
    return t


def _read_choice(data, key: str, allowed, default: str) -> str:
    value = as_str(data, key, default).lower()
    if value not in allowed:
        raise ApiError("BAD_REQUEST", f"Invalid {key}")
    return value


def _read_due_date(data, cfg) -> str:
    raw = (data or {}).get("dueDate")
    if raw in (None, ""):
        return ""
    dt = parse_datetime_maybe(raw, getattr(cfg, "APP_TIMEZONE", "UTC"))
    if not dt:
        raise ApiError("BAD_REQUEST", "Invalid dueDate")
    return to_iso_utc(dt)


def task_create(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    title = as_str(data, "title")
    if not title:
        raise ApiError("BAD_REQUEST", "Missing title")

    candidate_id = as_str(data, "candidateId")
    cand = find_candidate(db, candidate_id) if candidate_id else None
    assigned_to = as_str(data, "assignedTo") or actor_id(auth)

    existing_ids = [x for x in db.execute(select(Task.taskId)).scalars().all()]
    task_id = next_prefixed_id(db, counter_key="TSK", prefix="TSK-", pad=5, existing_ids=existing_ids)
    now = iso_utc_now()
    db.add(
        Task(
            taskId=task_id,
            candidateId=cand.candidateId if cand else "",
            candidateName=full_name(cand) if cand else "",
            workflowId="",
            title=title,
            description=as_str(data, "description"),
            type=_read_choice(data, "type", TASK_TYPES, "custom"),
            assignedTo=assigned_to,
            assignedToName=as_str(data, "assignedToName"),
            status="pending",
            priority=_read_choice(data, "priority", TASK_PRIORITIES, "medium"),
            dueDate=_read_due_date(data, cfg),
            createdBy=actor_id(auth),
            createdAt=now,
            updatedAt=now,
        )
    )
    if assigned_to != actor_id(auth):
        create_notification(
            db,
            user_id=assigned_to,
            type="task_assigned",
            title="New task assigned",
            message=title,
            candidate_id=cand.candidateId if cand else "",
            candidate_name=full_name(cand) if cand else "",
            meta={"taskId": task_id},
        )
    if cand is not None:
        append_activity(db, candidate_id=cand.candidateId, type="task_created", description=f"Task created: {title}", actor=auth, at=now, payload={"taskId": task_id})
    append_audit(db, entityType="TASK", entityId=task_id, action="TASK_CREATE", actor=auth, at=now)
    return {"taskId": task_id}


def task_list(data, auth: AuthContext | None, db, cfg):
    d = data or {}
    q = select(Task)
    if as_str(d, "candidateId"):
        q = q.where(Task.candidateId == as_str(d, "candidateId"))
    if d.get("mine"):
        q = q.where(Task.assignedTo.in_([x for x in {actor_id(auth), str(auth.email or "") if auth else ""} if x]))
    elif as_str(d, "assignedTo"):
        q = q.where(Task.assignedTo == as_str(d, "assignedTo"))
    if as_str(d, "status"):
        q = q.where(Task.status == as_str(d, "status").lower())
    if as_str(d, "workflowId"):
        q = q.where(Task.workflowId == as_str(d, "workflowId"))
    limit = max(1, min(as_int(d.get("limit"), 100) or 100, 500))
    rows = db.execute(q.order_by(Task.dueDate, Task.createdAt.desc()).limit(limit)).scalars().all()
    return {"items": [_serialize(t) for t in rows], "total": len(rows)}


def task_update(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    d = data or {}
    t = _find_task(db, as_str(d, "taskId"))
    old_status = t.status

    if "title" in d:
        if not as_str(d, "title"):
            raise ApiError("BAD_REQUEST", "Missing title")
        t.title = as_str(d, "title")
    if "description" in d:
        t.description = as_str(d, "description")
    if "notes" in d:
        t.notes = as_str(d, "notes")
    if "assignedTo" in d:
        t.assignedTo = as_str(d, "assignedTo")
        t.assignedToName = as_str(d, "assignedToName")
    if "priority" in d:
        t.priority = _read_choice(d, "priority", TASK_PRIORITIES, "medium")
    if "dueDate" in d:
        t.dueDate = _read_due_date(d, cfg)
    if "status" in d:
        t.status = _read_choice(d, "status", TASK_STATUSES, t.status)
        if t.status == "completed" and old_status != "completed":
            t.completedAt = iso_utc_now()
        elif t.status != "completed":
            t.completedAt = ""
    t.updatedAt = iso_utc_now()

    if t.candidateId and t.status == "completed" and old_status != "completed":
        append_activity(db, candidate_id=t.candidateId, type="task_completed", description=f"Task completed: {t.title}", actor=auth, payload={"taskId": t.taskId})
    append_audit(db, entityType="TASK", entityId=t.taskId, action="TASK_UPDATE", fromState=old_status, toState=t.status, actor=auth)
    return {"task": _serialize(t)}


def task_delete(data, auth: AuthContext | None, db, cfg):
    t = _find_task(db, as_str(data, "taskId"))
    db.delete(t)
    append_audit(db, entityType="TASK", entityId=t.taskId, action="TASK_DELETE", actor=auth)
    return {"deleted": True}
