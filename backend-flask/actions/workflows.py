from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select

from actions.helpers import actor_id, actor_name, append_audit, next_prefixed_id
from actions.workflow_engine import dispatch_due_actions, run_manual, scan_time_triggers, workflow_actions, workflow_trigger
from actions.workflow_templates import get_template, list_templates
from models import ScheduledWorkflowAction, Workflow, WorkflowExecution
from schemas import WorkflowIn, WorkflowPatch, parse_model
from utils import ApiError, AuthContext, as_int, as_str, iso_utc_now, parse_json_field, safe_json_string

log = logging.getLogger("workflows")


def _dump_actions(actions) -> list[dict[str, Any]]:
    return [a.model_dump(exclude_none=True) for a in actions]


def serialize_workflow(wf: Workflow) -> dict[str, Any]:
    return {
        "workflowId": wf.workflowId,
        "name": wf.name,
        "description": wf.description,
        "trigger": workflow_trigger(wf),
        "actions": workflow_actions(wf),
        "isActive": bool(wf.isActive),
        "priority": int(wf.priority or 0),
        "executionCount": int(wf.executionCount or 0),
        "successCount": int(wf.successCount or 0),
        "failureCount": int(wf.failureCount or 0),
        "lastExecutedAt": wf.lastExecutedAt or None,
        "maxExecutionsPerDay": wf.maxExecutionsPerDay,
        "maxExecutionsPerCandidate": wf.maxExecutionsPerCandidate,
        "testMode": bool(wf.testMode),
        "createdBy": wf.createdBy,
        "createdByName": wf.createdByName,
        "createdAt": wf.createdAt,
        "updatedAt": wf.updatedAt,
    }


def _serialize_execution(ex: WorkflowExecution) -> dict[str, Any]:
    return {
        "executionId": ex.executionId,
        "workflowId": ex.workflowId,
        "workflowName": ex.workflowName,
        "candidateId": ex.candidateId,
        "candidateName": ex.candidateName,
        "triggerType": ex.triggerType,
        "event": parse_json_field(ex.eventJson, {}),
        "status": ex.status,
        "results": parse_json_field(ex.resultsJson, []),
        "error": ex.error or None,
        "executedBy": ex.executedBy,
        "startedAt": ex.startedAt,
        "completedAt": ex.completedAt,
        "durationMs": ex.durationMs,
    }


def find_workflow(db, workflow_id: str) -> Workflow:
    if not workflow_id:
        raise ApiError("BAD_REQUEST", "Missing workflowId")
    wf = db.execute(select(Workflow).where(Workflow.workflowId == workflow_id)).scalar_one_or_none()
    if not wf:
        raise ApiError("NOT_FOUND", "Workflow not found")
    return wf


def workflow_create(data, auth: AuthContext | None, db, cfg):
    payload = dict(data or {})
    template_id = as_str(payload, "templateId")
    if template_id:
        tpl = get_template(template_id)
        if not tpl:
            raise ApiError("NOT_FOUND", "Workflow template not found")
        # Explicit fields override the template.
        payload = {"name": tpl["name"], "description": tpl["description"], "trigger": tpl["trigger"], "actions": tpl["actions"], **payload}
    body = parse_model(WorkflowIn, payload)

    existing_ids = [x for x in db.execute(select(Workflow.workflowId)).scalars().all()]
    workflow_id = next_prefixed_id(db, counter_key="WFL", prefix="WFL-", pad=4, existing_ids=existing_ids)
    now = iso_utc_now()
    trigger = body.trigger.model_dump(exclude_none=True)
    db.add(
        Workflow(
            workflowId=workflow_id,
            name=body.name.strip(),
            description=body.description,
            triggerType=body.trigger.type,
            triggerJson=safe_json_string(trigger, "{}"),
            actionsJson=safe_json_string(_dump_actions(body.actions), "[]"),
            isActive=body.isActive,
            priority=body.priority,
            executionCount=0,
            successCount=0,
            failureCount=0,
            lastExecutedAt="",
            maxExecutionsPerDay=body.maxExecutionsPerDay,
            maxExecutionsPerCandidate=body.maxExecutionsPerCandidate,
            testMode=body.testMode,
            createdBy=actor_id(auth),
            createdByName=actor_name(auth),
            createdAt=now,
            updatedAt=now,
            updatedBy=actor_id(auth),
        )
    )
    append_audit(
        db,
        entityType="WORKFLOW",
        entityId=workflow_id,
        action="WORKFLOW_CREATE",
        toState="ACTIVE" if body.isActive else "INACTIVE",
        actor=auth,
        at=now,
        meta={"triggerType": body.trigger.type, "actions": len(body.actions), "templateId": template_id},
    )
    log.info("workflow_created workflow=%s trigger=%s actions=%s", workflow_id, body.trigger.type, len(body.actions))
    return {"workflowId": workflow_id}


def workflow_list(data, auth: AuthContext | None, db, cfg):
    d = data or {}
    q = select(Workflow)
    if d.get("activeOnly"):
        q = q.where(Workflow.isActive.is_(True))
    trigger_type = as_str(d, "triggerType")
    if trigger_type:
        q = q.where(Workflow.triggerType == trigger_type)
    rows = db.execute(q.order_by(Workflow.priority.desc(), Workflow.createdAt.desc())).scalars().all()
    return {"items": [serialize_workflow(wf) for wf in rows], "total": len(rows)}


def workflow_get(data, auth: AuthContext | None, db, cfg):
    return {"workflow": serialize_workflow(find_workflow(db, as_str(data, "workflowId")))}


def workflow_update(data, auth: AuthContext | None, db, cfg):
    wf = find_workflow(db, as_str(data, "workflowId"))
    patch = parse_model(WorkflowPatch, data)
    fields = patch.model_fields_set

    if "name" in fields and patch.name is not None:
        wf.name = patch.name.strip()
    if "description" in fields:
        wf.description = patch.description or ""
    if "trigger" in fields and patch.trigger is not None:
        wf.triggerType = patch.trigger.type
        wf.triggerJson = safe_json_string(patch.trigger.model_dump(exclude_none=True), "{}")
    if "actions" in fields and patch.actions is not None:
        wf.actionsJson = safe_json_string(_dump_actions(patch.actions), "[]")
    if "isActive" in fields and patch.isActive is not None:
        wf.isActive = patch.isActive
    if "priority" in fields and patch.priority is not None:
        wf.priority = patch.priority
    # Caps may be cleared with an explicit null.
    if "maxExecutionsPerDay" in fields:
        wf.maxExecutionsPerDay = patch.maxExecutionsPerDay
    if "maxExecutionsPerCandidate" in fields:
        wf.maxExecutionsPerCandidate = patch.maxExecutionsPerCandidate
    if "testMode" in fields and patch.testMode is not None:
        wf.testMode = patch.testMode

    wf.updatedAt = iso_utc_now()
    wf.updatedBy = actor_id(auth)
    append_audit(
        db,
        entityType="WORKFLOW",
        entityId=wf.workflowId,
        action="WORKFLOW_UPDATE",
        actor=auth,
        meta={"fields": sorted(f for f in fields if f != "workflowId")},
    )
    return {"workflow": serialize_workflow(wf)}


def workflow_delete(data, auth: AuthContext | None, db, cfg):
    wf = find_workflow(db, as_str(data, "workflowId"))
    # Pending delayed actions die with their workflow; history is kept.
    cancelled = (
        db.query(ScheduledWorkflowAction)
        .filter(ScheduledWorkflowAction.workflowId == wf.workflowId, ScheduledWorkflowAction.status == "PENDING")
        .update({"status": "CANCELLED", "completedAt": iso_utc_now()}, synchronize_session=False)
    )
    db.delete(wf)
    append_audit(db, entityType="WORKFLOW", entityId=wf.workflowId, action="WORKFLOW_DELETE", actor=auth, meta={"cancelledActions": cancelled})
    return {"deleted": True, "cancelledActions": int(cancelled or 0)}


def workflow_toggle(data, auth: AuthContext | None, db, cfg):
    wf = find_workflow(db, as_str(data, "workflowId"))
    d = data or {}
    before = bool(wf.isActive)
    wf.isActive = bool(d["isActive"]) if "isActive" in d else not before
    wf.updatedAt = iso_utc_now()
    wf.updatedBy = actor_id(auth)
    append_audit(
        db,
        entityType="WORKFLOW",
        entityId=wf.workflowId,
        action="WORKFLOW_TOGGLE",
        fromState="ACTIVE" if before else "INACTIVE",
        toState="ACTIVE" if wf.isActive else "INACTIVE",
        actor=auth,
    )
    return {"workflowId": wf.workflowId, "isActive": bool(wf.isActive)}


def workflow_run(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    workflow_id = as_str(data, "workflowId")
    candidate_id = as_str(data, "candidateId")
    if not candidate_id:
        raise ApiError("BAD_REQUEST", "Missing candidateId")
    out = run_manual(db, workflow_id, candidate_id, cfg=cfg, auth=auth)
    append_audit(
        db,
        entityType="WORKFLOW",
        entityId=workflow_id,
        action="WORKFLOW_RUN",
        toState=out["status"],
        actor=auth,
        meta={"candidateId": candidate_id, "executionId": out["executionId"]},
    )
    return out


def workflow_executions(data, auth: AuthContext | None, db, cfg):
    d = data or {}
    q = select(WorkflowExecution)
    if as_str(d, "workflowId"):
        q = q.where(WorkflowExecution.workflowId == as_str(d, "workflowId"))
    if as_str(d, "candidateId"):
        q = q.where(WorkflowExecution.candidateId == as_str(d, "candidateId"))
    if as_str(d, "status"):
        q = q.where(WorkflowExecution.status == as_str(d, "status").lower())
    limit = max(1, min(as_int(d.get("limit"), 50) or 50, 500))
    rows = db.execute(q.order_by(WorkflowExecution.startedAt.desc()).limit(limit)).scalars().all()
    return {"items": [_serialize_execution(ex) for ex in rows], "total": len(rows)}


def workflow_stats(data, auth: AuthContext | None, db, cfg):
    workflow_id = as_str(data, "workflowId")
    if workflow_id:
        wf = find_workflow(db, workflow_id)
        executions = db.execute(select(WorkflowExecution).where(WorkflowExecution.workflowId == workflow_id)).scalars().all()
        action_stats: dict[str, dict[str, int]] = {}
        by_day: dict[str, int] = {}
        durations = []
        for ex in executions:
            if ex.status == "skipped":
                continue
            durations.append(float(ex.durationMs or 0))
            day = (ex.startedAt or "")[:10]
            by_day[day] = by_day.get(day, 0) + 1
            for r in parse_json_field(ex.resultsJson, []):
                if not isinstance(r, dict):
                    continue
                s = action_stats.setdefault(str(r.get("actionType") or ""), {"executions": 0, "successes": 0, "failures": 0})
                s["executions"] += 1
                if r.get("status") == "success":
                    s["successes"] += 1
                elif r.get("status") == "failed":
                    s["failures"] += 1
        return {
            "workflowId": wf.workflowId,
            "workflowName": wf.name,
            "totalExecutions": int(wf.executionCount or 0),
            "successfulExecutions": int(wf.successCount or 0),
            "failedExecutions": int(wf.failureCount or 0),
            "averageDurationMs": round(sum(durations) / len(durations), 2) if durations else 0,
            "lastExecutedAt": wf.lastExecutedAt or None,
            "candidatesAffected": len({ex.candidateId for ex in executions if ex.status != "skipped"}),
            "actionStats": [{"actionType": k, **v} for k, v in sorted(action_stats.items())],
            "executionsByDay": [{"date": k, "count": v} for k, v in sorted(by_day.items())],
        }

    totals = db.execute(
        select(
            func.count(Workflow.workflowId),
            func.coalesce(func.sum(Workflow.executionCount), 0),
            func.coalesce(func.sum(Workflow.successCount), 0),
            func.coalesce(func.sum(Workflow.failureCount), 0),
        )
    ).one()
    active = db.execute(select(func.count()).select_from(Workflow).where(Workflow.isActive.is_(True))).scalar_one()
    pending = db.execute(
        select(func.count()).select_from(ScheduledWorkflowAction).where(ScheduledWorkflowAction.status == "PENDING")
    ).scalar_one()
    return {
        "totalWorkflows": int(totals[0] or 0),
        "activeWorkflows": int(active or 0),
        "totalExecutions": int(totals[1] or 0),
        "successfulExecutions": int(totals[2] or 0),
        "failedExecutions": int(totals[3] or 0),
        "pendingScheduledActions": int(pending or 0),
    }


def workflow_templates(data, auth: AuthContext | None, db, cfg):
    items = list_templates(as_str(data, "category"))
    return {"items": items, "total": len(items)}


def workflow_scan(data, auth: AuthContext | None, db, cfg):
    return scan_time_triggers(db, cfg=cfg)


def workflow_dispatch_due(data, auth: AuthContext | None, db, cfg):
    limit = max(1, min(as_int((data or {}).get("limit"), 100) or 100, 1000))
    return dispatch_due_actions(db, cfg=cfg, limit=limit)
