"""Workflow trigger matching, actions and execution accounting."""
from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import requests
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError

from actions.candidate_repo import (
    add_tag,
    find_candidate,
    full_name,
    get_json,
    normalize_status,
    remove_tag,
    update_candidate,
)
from actions.email_templates import candidate_variables, find_template, queue_email, render_template
from actions.helpers import append_activity, next_prefixed_id
from actions.notifications import create_notification
from models import (
    Candidate,
    CandidateNote,
    Interview,
    ScheduledWorkflowAction,
    Task,
    Workflow,
    WorkflowCandidateCounter,
    WorkflowDailyCounter,
    WorkflowExecution,
)
from schemas import normalize_trigger_type
from utils import (
    SYSTEM_ACTOR,
    ApiError,
    AuthContext,
    iso_utc_now,
    parse_datetime_maybe,
    parse_json_field,
    safe_json_string,
    to_iso_utc,
    utc_now,
)

log = logging.getLogger("workflows")

TIME_BASED_TRIGGERS = ("days_in_stage", "no_activity")


@dataclass
class WorkflowEvent:
    type: str
    candidate_id: str
    old_status: str = ""
    new_status: str = ""
    tag: str = ""
    days_in_stage: Optional[float] = None
    days_inactive: Optional[float] = None
    score: Optional[float] = None
    score_type: str = "overall"
    interview_type: str = ""
    stage_name: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.type = normalize_trigger_type(self.type)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v not in (None, "", {})}


@dataclass
class ExecutionContext:
    cfg: Any
    workflow: Workflow
    execution_id: str
    event: WorkflowEvent
    now: datetime


class ActionError(Exception):
    pass


def _as_list(value) -> list:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def workflow_trigger(wf: Workflow) -> dict[str, Any]:
    return parse_json_field(wf.triggerJson, {})


def workflow_actions(wf: Workflow) -> list[dict[str, Any]]:
    return [a for a in parse_json_field(wf.actionsJson, []) if isinstance(a, dict)]


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def _status_trigger_matches(trigger: dict[str, Any], event: WorkflowEvent) -> bool:
    if not event.new_status:
        return False
    to_status = _as_list(trigger.get("toStatus"))
    if to_status and event.new_status not in to_status:
        return False
    from_status = _as_list(trigger.get("fromStatus"))
    # fromStatus only constrains when the previous status is known.
    if from_status and event.old_status and event.old_status not in from_status:
        return False
    return True


def _tag_trigger_matches(trigger: dict[str, Any], event: WorkflowEvent) -> bool:
    if not event.tag:
        return False
    if trigger.get("tag") and trigger["tag"] != event.tag:
        return False
    tags = trigger.get("tags")
    if tags and event.tag not in tags:
        return False
    return True


def _score_trigger_matches(trigger: dict[str, Any], event: WorkflowEvent) -> bool:
    if event.score is None:
        return False
    if (trigger.get("scoreType") or "overall") != (event.score_type or "overall"):
        return False
    if trigger.get("minScore") is not None and event.score < float(trigger["minScore"]):
        return False
    if trigger.get("maxScore") is not None and event.score > float(trigger["maxScore"]):
        return False
    return True


def trigger_matches(trigger: dict[str, Any], event: WorkflowEvent) -> bool:
    t = normalize_trigger_type(trigger.get("type"))
    if t != event.type:
        return False
    if t == "status_changed":
        return _status_trigger_matches(trigger, event)
    if t in {"tag_added", "tag_removed"}:
        return _tag_trigger_matches(trigger, event)
    if t == "days_in_stage":
        if event.days_in_stage is None or trigger.get("daysInStage") is None:
            return False
        return event.days_in_stage >= float(trigger["daysInStage"])
    if t == "no_activity":
        if event.days_inactive is None or trigger.get("daysElapsed") is None:
            return False
        return event.days_inactive >= float(trigger["daysElapsed"])
    if t == "score_threshold":
        return _score_trigger_matches(trigger, event)
    if t in {"interview_scheduled", "interview_completed"}:
        wanted = trigger.get("interviewType")
        return not wanted or wanted == event.interview_type
    if t == "manual":
        return True
    return False


def _candidate_field(cand: Candidate, name: str):
    if name in {"tags", "currentProcesses", "processIds", "quickScores", "customFields"}:
        return get_json(cand, name)
    if name.startswith("customFields."):
        return get_json(cand, "customFields").get(name.split(".", 1)[1])
    if name == "fullName":
        return full_name(cand)
    return getattr(cand, name, None)


def _condition_holds(cand: Candidate, field_name: str, expected) -> bool:
    actual = _candidate_field(cand, field_name)
    if isinstance(actual, list):
        # Membership against list fields such as tags; case-sensitive.
        wanted = _as_list(expected)
        return all(w in actual for w in wanted)
    if isinstance(expected, list):
        return actual in expected
    return actual == expected


def conditions_match(trigger: dict[str, Any], cand: Candidate) -> bool:
    """All candidate filters on the trigger, ANDed together."""
    sources = trigger.get("source")
    if sources and (cand.source or "") not in sources:
        return False
    levels = trigger.get("experienceLevel")
    if levels and (cand.experienceLevel or "") not in levels:
        return False
    required_tags = trigger.get("requiredTags")
    if required_tags:
        tags = get_json(cand, "tags")
        if any(t not in tags for t in required_tags):
            return False
    custom = trigger.get("customFields") or {}
    if custom:
        values = get_json(cand, "customFields")
        for key, expected in custom.items():
            if values.get(key) != expected:
                return False
    for cond in trigger.get("conditions") or []:
        if not isinstance(cond, dict) or not cond.get("field"):
            continue
        if not _condition_holds(cand, str(cond["field"]), cond.get("value")):
            return False
    return True


def should_execute(wf: Workflow, cand: Candidate, event: WorkflowEvent) -> bool:
    if not wf.isActive or cand.isDeleted:
        return False
    trigger = workflow_trigger(wf)
    if not trigger_matches(trigger, event):
        return False
    return conditions_match(trigger, cand)


# ---------------------------------------------------------------------------
# Caps
# ---------------------------------------------------------------------------


def _ensure_counter(db, model, **keys) -> None:
    exists = db.execute(select(model.id).where(and_(*[getattr(model, k) == v for k, v in keys.items()]))).first()
    if exists:
        return
    sp = db.begin_nested()
    try:
        db.add(model(count=0, **keys))
        sp.commit()
    except IntegrityError:
        # Another transaction created it first.
        sp.rollback()


def _try_increment(db, model, cap: int, **keys) -> bool:
    _ensure_counter(db, model, **keys)
    res = db.execute(
        update(model)
        .where(and_(*[getattr(model, k) == v for k, v in keys.items()]), model.count < int(cap))
        .values(count=model.count + 1)
        .execution_options(synchronize_session=False)
    )
    return bool(res.rowcount)


def reserve_execution_slot(db, wf: Workflow, candidate_id: str, now: datetime) -> Optional[str]:
    """Reserve one run against the workflow's caps; returns a skip reason or None."""
    if not wf.maxExecutionsPerDay and not wf.maxExecutionsPerCandidate:
        return None
    sp = db.begin_nested()
    try:
        if wf.maxExecutionsPerDay:
            day = now.strftime("%Y-%m-%d")
            if not _try_increment(db, WorkflowDailyCounter, wf.maxExecutionsPerDay, workflowId=wf.workflowId, day=day):
                sp.rollback()
                return "daily execution limit reached"
        if wf.maxExecutionsPerCandidate:
            if not _try_increment(
                db,
                WorkflowCandidateCounter,
                wf.maxExecutionsPerCandidate,
                workflowId=wf.workflowId,
                candidateId=candidate_id,
            ):
                sp.rollback()
                return "per-candidate execution limit reached"
        sp.commit()
    except Exception:
        if sp.is_active:
            sp.rollback()
        raise
    return None


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def _variables(cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    processes = get_json(cand, "currentProcesses")
    stage = ctx.event.stage_name or (processes[-1].get("stageName", "") if processes and isinstance(processes[-1], dict) else "")
    extra = {
        "stage": stage,
        "workflowName": ctx.workflow.name,
        "oldStatus": ctx.event.old_status,
        "newStatus": ctx.event.new_status,
        "tag": ctx.event.tag,
    }
    if ctx.event.score is not None:
        extra["score"] = ctx.event.score
    if ctx.event.days_in_stage is not None:
        extra["daysInStage"] = int(ctx.event.days_in_stage)
    return candidate_variables(cand, ctx.cfg, extra)


def _action_send_email(db, action, cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    email_to = action.get("emailTo") or "candidate"
    if email_to == "candidate":
        to = cand.email
    elif email_to == "assigned_user":
        to = cand.assignedTo
    else:
        to = action.get("emailCustomRecipient")
    if not to:
        raise ActionError("No email recipient specified")

    subject_tpl = action.get("emailSubject") or ""
    body_tpl = action.get("emailBody") or ""
    template_id = str(action.get("emailTemplateId") or "")
    if template_id:
        try:
            tpl = find_template(db, template_id)
        except ApiError as e:
            raise ActionError(e.message)
        subject_tpl = subject_tpl or tpl.subject
        body_tpl = body_tpl or tpl.body

    variables = _variables(cand, ctx)
    subject = render_template(subject_tpl or "Notification", variables)
    body = render_template(body_tpl, variables)
    try:
        log_id = queue_email(
            db,
            to=to,
            subject=subject,
            body=body,
            template_id=template_id,
            candidate_id=cand.candidateId,
            workflow_id=ctx.workflow.workflowId,
            actor=SYSTEM_ACTOR,
        )
    except ApiError as e:
        raise ActionError(e.message)
    return {"message": "Email queued", "metadata": {"emailLogId": log_id, "subject": subject}}


def _action_tags(action) -> list[str]:
    names = []
    if action.get("tagName"):
        names.append(str(action["tagName"]))
    for t in action.get("tagNames") or []:
        if t and str(t) not in names:
            names.append(str(t))
    if not names:
        raise ActionError("No tag specified")
    return names


def _action_add_tag(db, action, cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    added = [t for t in _action_tags(action) if add_tag(cand, t)]
    if not added:
        return {"message": "Tags already present on candidate"}
    update_candidate(db, cand=cand, patch={}, auth=SYSTEM_ACTOR)
    return {"message": f"Tags added: {', '.join(added)}", "metadata": {"tags": added}}


def _action_remove_tag(db, action, cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    removed = [t for t in _action_tags(action) if remove_tag(cand, t)]
    if removed:
        update_candidate(db, cand=cand, patch={}, auth=SYSTEM_ACTOR)
    return {"message": f"Tags removed: {', '.join(removed) or 'none'}", "metadata": {"tags": removed}}


def _action_change_status(db, action, cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    try:
        new_status = normalize_status(action.get("newStatus"))
    except ApiError as e:
        raise ActionError(e.message)
    old_status = cand.status or ""
    update_candidate(db, cand=cand, patch={"status": new_status}, auth=SYSTEM_ACTOR)
    append_activity(
        db,
        candidate_id=cand.candidateId,
        type="status_change",
        description=f"Status changed to {new_status} by workflow",
        actor=SYSTEM_ACTOR,
        payload={"oldStatus": old_status, "newStatus": new_status, "workflowId": ctx.workflow.workflowId},
    )
    return {"message": f"Status changed to {new_status}", "metadata": {"oldStatus": old_status, "newStatus": new_status}}


def _round_robin_pick(db, key: str, pool: list[str]) -> str:
    # Reuses the id counter table as a cursor into the pool.
    turn = int(next_prefixed_id(db, counter_key=f"RR:{key}", prefix="", pad=1))
    return pool[(turn - 1) % len(pool)]


def _least_loaded_pick(db, pool: list[str]) -> str:
    loads = {u: 0 for u in pool}
    rows = db.execute(
        select(Candidate.assignedTo).where(Candidate.assignedTo.in_(pool), Candidate.isDeleted.is_(False))
    ).scalars()
    for user in rows:
        loads[user] = loads.get(user, 0) + 1
    return min(pool, key=lambda u: (loads.get(u, 0), pool.index(u)))


def _action_assign_user(db, action, cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    rule = action.get("assignmentRule") or "specific_user"
    pool = [str(u) for u in (action.get("assignToUsers") or []) if u]
    if rule == "specific_user":
        user = str(action.get("assignToUserId") or "")
    elif not pool:
        raise ActionError("No users to assign from")
    elif rule == "round_robin":
        user = _round_robin_pick(db, ctx.workflow.workflowId, pool)
    else:
        user = _least_loaded_pick(db, pool)
    if not user:
        raise ActionError("No user specified")

    previous = cand.assignedTo or ""
    update_candidate(db, cand=cand, patch={"assignedTo": user}, auth=SYSTEM_ACTOR)
    create_notification(
        db,
        user_id=user,
        type="assignment",
        title="New candidate assigned",
        message=f"{full_name(cand)} was assigned to you by workflow {ctx.workflow.name}",
        candidate_id=cand.candidateId,
        candidate_name=full_name(cand),
        link=f"/candidates/{cand.candidateId}",
    )
    return {"message": f"Candidate assigned to {user}", "metadata": {"assignedTo": user, "previous": previous}}


def _action_create_task(db, action, cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    title_tpl = str(action.get("taskTitle") or "").strip()
    if not title_tpl:
        raise ActionError("No task title specified")
    variables = _variables(cand, ctx)
    due_days = action.get("taskDueInDays")
    due_days = 7 if due_days is None else int(due_days)
    existing_ids = [x for x in db.execute(select(Task.taskId)).scalars().all()]
    task_id = next_prefixed_id(db, counter_key="TSK", prefix="TSK-", pad=5, existing_ids=existing_ids)
    now = iso_utc_now()
    title = render_template(title_tpl, variables)
    db.add(
        Task(
            taskId=task_id,
            candidateId=cand.candidateId,
            candidateName=full_name(cand),
            workflowId=ctx.workflow.workflowId,
            title=title,
            description=render_template(action.get("taskDescription") or "", variables),
            type="custom",
            assignedTo=str(action.get("taskAssignTo") or cand.assignedTo or "unassigned"),
            assignedToName="",
            status="pending",
            priority=str(action.get("taskPriority") or "medium"),
            dueDate=to_iso_utc(ctx.now + timedelta(days=due_days)),
            createdBy="system",
            createdAt=now,
            updatedAt=now,
        )
    )
    return {"message": f"Task created: {title}", "metadata": {"taskId": task_id}}


def _action_send_notification(db, action, cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    message_tpl = str(action.get("notificationMessage") or "").strip()
    if not message_tpl:
        raise ActionError("No notification message specified")
    recipients = [str(u) for u in (action.get("notifyUsers") or []) if u]
    if not recipients:
        recipients = [cand.assignedTo or ctx.workflow.createdBy]
    recipients = [r for r in recipients if r]
    if not recipients:
        raise ActionError("No notification recipient")
    message = render_template(message_tpl, _variables(cand, ctx))
    ids = [
        create_notification(
            db,
            user_id=r,
            type="workflow",
            title=ctx.workflow.name,
            message=message,
            candidate_id=cand.candidateId,
            candidate_name=full_name(cand),
            link=f"/candidates/{cand.candidateId}",
            meta={"workflowId": ctx.workflow.workflowId, "executionId": ctx.execution_id},
        )
        for r in recipients
    ]
    return {"message": f"Notification sent to {len(ids)} user(s)", "metadata": {"notificationIds": ids, "message": message}}


def _action_add_note(db, action, cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    content = str(action.get("noteContent") or "").strip()
    if not content:
        raise ActionError("No note content specified")
    note_id = f"NOTE-{os.urandom(10).hex()}"
    db.add(
        CandidateNote(
            noteId=note_id,
            candidateId=cand.candidateId,
            content=render_template(content, _variables(cand, ctx)),
            isPrivate=bool(action.get("noteIsPrivate")),
            authorId="system",
            authorName="Workflow Automation",
            createdAt=iso_utc_now(),
        )
    )
    return {"message": "Note added to candidate", "metadata": {"noteId": note_id}}


def _action_schedule_interview(db, action, cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    in_days = action.get("interviewInDays")
    in_days = 2 if in_days is None else int(in_days)
    interview_id = f"INT-{os.urandom(10).hex()}"
    now = iso_utc_now()
    scheduled_at = to_iso_utc(ctx.now + timedelta(days=in_days))
    db.add(
        Interview(
            interviewId=interview_id,
            candidateId=cand.candidateId,
            type=str(action.get("interviewType") or "screening"),
            scheduledAt=scheduled_at,
            status="scheduled",
            createdBy="system",
            createdAt=now,
            updatedAt=now,
        )
    )
    append_activity(
        db,
        candidate_id=cand.candidateId,
        type="interview_scheduled",
        description=f"Interview scheduled for {scheduled_at} by workflow",
        actor=SYSTEM_ACTOR,
        payload={"interviewId": interview_id},
    )
    return {"message": "Interview scheduled", "metadata": {"interviewId": interview_id, "scheduledAt": scheduled_at}}


def _render_payload(value, variables):
    if isinstance(value, str):
        return render_template(value, variables)
    if isinstance(value, dict):
        return {k: _render_payload(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [_render_payload(v, variables) for v in value]
    return value


def _action_webhook(db, action, cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    url = str(action.get("webhookUrl") or "").strip()
    if not url:
        raise ActionError("No webhook URL specified")
    method = str(action.get("webhookMethod") or "POST").upper()
    payload = action.get("webhookPayload") or {
        "event": ctx.event.type,
        "workflowId": ctx.workflow.workflowId,
        "candidateId": cand.candidateId,
        "status": cand.status,
    }
    payload = _render_payload(payload, _variables(cand, ctx))
    headers = {"Content-Type": "application/json", **(action.get("webhookHeaders") or {})}
    timeout = float(getattr(ctx.cfg, "WEBHOOK_TIMEOUT_SECONDS", 10))
    try:
        if method == "GET":
            resp = requests.get(url, params=payload, headers=headers, timeout=timeout)
        else:
            resp = requests.request(method, url, json=payload, headers=headers, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise ActionError(f"Webhook call failed: {e}")
    return {"message": f"Webhook called ({resp.status_code})", "metadata": {"statusCode": resp.status_code}}


ACTION_HANDLERS: dict[str, Callable[..., dict[str, Any]]] = {
    "send_email": _action_send_email,
    "add_tag": _action_add_tag,
    "remove_tag": _action_remove_tag,
    "change_status": _action_change_status,
    "assign_user": _action_assign_user,
    "create_task": _action_create_task,
    "send_notification": _action_send_notification,
    "add_note": _action_add_note,
    "schedule_interview": _action_schedule_interview,
    "webhook": _action_webhook,
}


def execute_action(db, action: dict[str, Any], cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    handler = ACTION_HANDLERS.get(str(action.get("type") or ""))
    if handler is None:
        raise ActionError(f"Unsupported action type: {action.get('type')}")
    return handler(db, action, cand, ctx)


def _run_action_isolated(db, action, cand: Candidate, ctx: ExecutionContext, index: int) -> dict[str, Any]:
    base = {"actionIndex": index, "actionType": str(action.get("type") or "")}
    sp = db.begin_nested()
    try:
        out = execute_action(db, action, cand, ctx)
        sp.commit()
    except Exception as e:
        sp.rollback()
        log.warning(
            "workflow_action_failed workflow=%s execution=%s action=%s index=%s error=%s",
            ctx.workflow.workflowId,
            ctx.execution_id,
            base["actionType"],
            index,
            e,
        )
        return {**base, "status": "failed", "error": str(e) or e.__class__.__name__}
    return {**base, "status": "success", "message": out.get("message", ""), "metadata": out.get("metadata") or {}}


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _schedule_delayed(db, action, index: int, cand: Candidate, ctx: ExecutionContext) -> dict[str, Any]:
    delay = int(action.get("delayMinutes") or 0)
    due_at = to_iso_utc(ctx.now + timedelta(minutes=delay))
    scheduled_id = f"SWA-{os.urandom(10).hex()}"
    db.add(
        ScheduledWorkflowAction(
            scheduledId=scheduled_id,
            workflowId=ctx.workflow.workflowId,
            executionId=ctx.execution_id,
            candidateId=cand.candidateId,
            actionIndex=index,
            actionJson=safe_json_string(action, "{}"),
            dueAt=due_at,
            status="PENDING",
            createdAt=iso_utc_now(),
        )
    )
    return {
        "actionIndex": index,
        "actionType": str(action.get("type") or ""),
        "status": "scheduled",
        "message": f"Action scheduled for {delay} minutes later",
        "metadata": {"scheduledId": scheduled_id, "dueAt": due_at},
    }


def _record_skip(db, wf: Workflow, cand: Candidate, event: WorkflowEvent, executed_by: str, reason: str, now) -> dict[str, Any]:
    execution_id = f"WFX-{os.urandom(12).hex()}"
    now_iso = to_iso_utc(now)
    db.add(
        WorkflowExecution(
            executionId=execution_id,
            workflowId=wf.workflowId,
            workflowName=wf.name,
            candidateId=cand.candidateId,
            candidateName=full_name(cand),
            triggerType=event.type,
            eventJson=safe_json_string(event.to_dict(), "{}"),
            status="skipped",
            resultsJson="[]",
            error=reason,
            executedBy=executed_by,
            startedAt=now_iso,
            completedAt=now_iso,
        )
    )
    log.info("workflow_skipped workflow=%s candidate=%s reason=%s", wf.workflowId, cand.candidateId, reason)
    return {"executionId": execution_id, "workflowId": wf.workflowId, "status": "skipped", "error": reason, "results": []}


def execute_workflow(
    db,
    wf: Workflow,
    cand: Candidate,
    event: WorkflowEvent,
    *,
    cfg,
    executed_by: str = "system",
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    now = now or utc_now()
    started = time.monotonic()

    if not wf.testMode:
        reason = reserve_execution_slot(db, wf, cand.candidateId, now)
        if reason:
            return _record_skip(db, wf, cand, event, executed_by, reason, now)

    execution_id = f"WFX-{os.urandom(12).hex()}"
    execution = WorkflowExecution(
        executionId=execution_id,
        workflowId=wf.workflowId,
        workflowName=wf.name,
        candidateId=cand.candidateId,
        candidateName=full_name(cand),
        triggerType=event.type,
        eventJson=safe_json_string(event.to_dict(), "{}"),
        status="running",
        resultsJson="[]",
        executedBy=executed_by,
        startedAt=to_iso_utc(now),
    )
    db.add(execution)
    db.flush()

    log.info("workflow_start workflow=%s name=%r candidate=%s execution=%s", wf.workflowId, wf.name, cand.candidateId, execution_id)

    ctx = ExecutionContext(cfg=cfg, workflow=wf, execution_id=execution_id, event=event, now=now)
    actions = workflow_actions(wf)
    max_actions = int(getattr(cfg, "WORKFLOW_MAX_ACTIONS", 20) or 20)
    results: list[dict[str, Any]] = []

    for i, action in enumerate(actions[:max_actions]):
        if wf.testMode:
            results.append(
                {"actionIndex": i, "actionType": str(action.get("type") or ""), "status": "skipped", "message": "Test mode"}
            )
            continue
        if int(action.get("delayMinutes") or 0) > 0:
            results.append(_schedule_delayed(db, action, i, cand, ctx))
            continue
        results.append(_run_action_isolated(db, action, cand, ctx, i))

    has_error = any(r["status"] == "failed" for r in results)
    if wf.testMode:
        status = "skipped"
    else:
        status = "failed" if has_error else "completed"

    completed_iso = iso_utc_now()
    execution.status = status
    execution.resultsJson = safe_json_string(results, "[]")
    execution.error = "; ".join(r.get("error", "") for r in results if r["status"] == "failed")
    execution.completedAt = completed_iso
    execution.durationMs = round((time.monotonic() - started) * 1000.0, 2)

    if not wf.testMode:
        db.execute(
            update(Workflow)
            .where(Workflow.workflowId == wf.workflowId)
            .values(
                executionCount=Workflow.executionCount + 1,
                successCount=Workflow.successCount + (0 if has_error else 1),
                failureCount=Workflow.failureCount + (1 if has_error else 0),
                lastExecutedAt=completed_iso,
            )
            .execution_options(synchronize_session=False)
        )
        db.expire(wf, ["executionCount", "successCount", "failureCount", "lastExecutedAt"])
        append_activity(
            db,
            candidate_id=cand.candidateId,
            type="workflow_executed",
            description=f"Workflow '{wf.name}' {status}",
            actor=SYSTEM_ACTOR,
            payload={"workflowId": wf.workflowId, "executionId": execution_id, "status": status},
        )

    log.info("workflow_done workflow=%s execution=%s status=%s duration_ms=%s", wf.workflowId, execution_id, status, execution.durationMs)
    return {"executionId": execution_id, "workflowId": wf.workflowId, "status": status, "results": results}


def matching_workflows(db, trigger_type: str) -> list[Workflow]:
    return (
        db.execute(
            select(Workflow)
            .where(Workflow.isActive.is_(True), Workflow.triggerType == normalize_trigger_type(trigger_type))
            .order_by(Workflow.priority.desc(), Workflow.createdAt.desc())
        )
        .scalars()
        .all()
    )


def fire_event(db, event: WorkflowEvent, *, cfg, executed_by: str = "system", now: Optional[datetime] = None) -> list[dict[str, Any]]:
    """Run every active workflow matching ``event``; never raises."""
    if cfg is not None and not getattr(cfg, "WORKFLOWS_ENABLED", True):
        return []
    summaries: list[dict[str, Any]] = []
    try:
        db.flush()
        cand = db.execute(
            select(Candidate).where(Candidate.candidateId == event.candidate_id, Candidate.isDeleted.is_(False))
        ).scalar_one_or_none()
        if cand is None:
            log.info("workflow_event_ignored type=%s candidate=%s reason=candidate_missing", event.type, event.candidate_id)
            return summaries
        workflows = matching_workflows(db, event.type)
    except Exception:
        log.exception("workflow_event_lookup_failed type=%s candidate=%s", event.type, event.candidate_id)
        return summaries

    log.info("workflow_event type=%s candidate=%s workflows=%s", event.type, event.candidate_id, len(workflows))
    for wf in workflows:
        sp = db.begin_nested()
        try:
            if should_execute(wf, cand, event):
                summaries.append(execute_workflow(db, wf, cand, event, cfg=cfg, executed_by=executed_by, now=now))
            sp.commit()
        except Exception:
            sp.rollback()
            log.exception("workflow_execution_error workflow=%s candidate=%s", wf.workflowId, event.candidate_id)
    return summaries


def run_manual(db, workflow_id: str, candidate_id: str, *, cfg, auth: Optional[AuthContext] = None) -> dict[str, Any]:
    wf = db.execute(select(Workflow).where(Workflow.workflowId == workflow_id)).scalar_one_or_none()
    if not wf:
        raise ApiError("NOT_FOUND", "Workflow not found")
    if not wf.isActive:
        raise ApiError("BAD_REQUEST", "Workflow is inactive")
    cand = find_candidate(db, candidate_id)
    event = WorkflowEvent(type="manual", candidate_id=cand.candidateId)
    trigger = workflow_trigger(wf)
    if trigger.get("type") == "manual" and not conditions_match(trigger, cand):
        raise ApiError("BAD_REQUEST", "Candidate does not match workflow conditions")
    executed_by = str(auth.userId or auth.email) if auth else "system"
    return execute_workflow(db, wf, cand, event, cfg=cfg, executed_by=executed_by)


# ---------------------------------------------------------------------------
# Time based triggers and delayed actions
# ---------------------------------------------------------------------------


def _days_between(later: datetime, earlier: Optional[datetime]) -> Optional[float]:
    if earlier is None:
        return None
    return (later - earlier).total_seconds() / 86400.0


def _stage_entered_at(cand: Candidate) -> tuple[Optional[datetime], str]:
    latest = None
    stage_name = ""
    for p in get_json(cand, "currentProcesses"):
        if not isinstance(p, dict):
            continue
        dt = parse_datetime_maybe(p.get("enteredStageAt"))
        if dt and (latest is None or dt > latest):
            latest = dt
            stage_name = str(p.get("stageName") or "")
    return latest, stage_name


def _already_ran_since(db, wf: Workflow, candidate_id: str, since: Optional[datetime]) -> bool:
    q = select(WorkflowExecution.executionId).where(
        WorkflowExecution.workflowId == wf.workflowId,
        WorkflowExecution.candidateId == candidate_id,
        WorkflowExecution.status.in_(["completed", "failed"]),
    )
    if since is not None:
        q = q.where(WorkflowExecution.startedAt >= to_iso_utc(since))
    return db.execute(q.limit(1)).first() is not None


def scan_time_triggers(db, *, cfg, now: Optional[datetime] = None) -> dict[str, Any]:
    """Evaluate days_in_stage / no_activity workflows for every live candidate.

    A workflow fires at most once per stage entry (days_in_stage) or per
    period of inactivity (no_activity).
    """
    db.flush()
    now = now or utc_now()
    workflows = [wf for t in TIME_BASED_TRIGGERS for wf in matching_workflows(db, t)]
    report = {"workflows": len(workflows), "candidatesScanned": 0, "executions": 0, "skipped": 0}
    if not workflows:
        return report

    candidates = (
        db.execute(select(Candidate).where(Candidate.isDeleted.is_(False), Candidate.isArchived.is_(False)))
        .scalars()
        .all()
    )
    report["candidatesScanned"] = len(candidates)

    for cand in candidates:
        entered_at, stage_name = _stage_entered_at(cand)
        last_activity = parse_datetime_maybe(cand.lastActivityAt) or parse_datetime_maybe(cand.createdAt)
        for wf in workflows:
            trigger_type = normalize_trigger_type(wf.triggerType)
            since = entered_at if trigger_type == "days_in_stage" else last_activity
            if since is None:
                continue
            event = WorkflowEvent(
                type=trigger_type,
                candidate_id=cand.candidateId,
                days_in_stage=_days_between(now, entered_at),
                days_inactive=_days_between(now, last_activity),
                stage_name=stage_name,
            )
            sp = db.begin_nested()
            try:
                if should_execute(wf, cand, event) and not _already_ran_since(db, wf, cand.candidateId, since):
                    summary = execute_workflow(db, wf, cand, event, cfg=cfg, now=now)
                    if summary["status"] == "skipped":
                        report["skipped"] += 1
                    else:
                        report["executions"] += 1
                sp.commit()
            except Exception:
                sp.rollback()
                log.exception("workflow_scan_error workflow=%s candidate=%s", wf.workflowId, cand.candidateId)
    log.info("workflow_scan_done %s", " ".join(f"{k}={v}" for k, v in report.items()))
    return report


def _update_execution_result(db, wf: Workflow, execution_id: str, index: int, result: dict[str, Any]) -> None:
    ex = db.execute(select(WorkflowExecution).where(WorkflowExecution.executionId == execution_id)).scalar_one_or_none()
    if not ex:
        return
    results = parse_json_field(ex.resultsJson, [])
    for i, r in enumerate(results):
        if isinstance(r, dict) and r.get("actionIndex") == index:
            results[i] = result
            break
    else:
        results.append(result)
    ex.resultsJson = safe_json_string(results, "[]")
    if result["status"] == "failed" and ex.status == "completed":
        ex.status = "failed"
        ex.error = result.get("error", "")
        # The run was counted as a success when it finished; move it over.
        db.execute(
            update(Workflow)
            .where(Workflow.workflowId == wf.workflowId)
            .values(successCount=Workflow.successCount - 1, failureCount=Workflow.failureCount + 1)
            .execution_options(synchronize_session=False)
        )
        db.expire(wf, ["successCount", "failureCount"])


def dispatch_due_actions(db, *, cfg, now: Optional[datetime] = None, limit: int = 100) -> dict[str, Any]:
    """Run delayed workflow actions whose due time has passed."""
    db.flush()
    now = now or utc_now()
    rows = (
        db.execute(
            select(ScheduledWorkflowAction)
            .where(ScheduledWorkflowAction.status == "PENDING", ScheduledWorkflowAction.dueAt <= to_iso_utc(now))
            .order_by(ScheduledWorkflowAction.dueAt)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    report = {"due": len(rows), "done": 0, "failed": 0, "cancelled": 0}
    for row in rows:
        wf = db.execute(select(Workflow).where(Workflow.workflowId == row.workflowId)).scalar_one_or_none()
        cand = db.execute(
            select(Candidate).where(Candidate.candidateId == row.candidateId, Candidate.isDeleted.is_(False))
        ).scalar_one_or_none()
        if wf is None or cand is None or not wf.isActive:
            row.status = "CANCELLED"
            row.completedAt = iso_utc_now()
            report["cancelled"] += 1
            continue

        event = WorkflowEvent(type=wf.triggerType, candidate_id=cand.candidateId, payload={"scheduledId": row.scheduledId})
        ctx = ExecutionContext(cfg=cfg, workflow=wf, execution_id=row.executionId, event=event, now=now)
        result = _run_action_isolated(db, parse_json_field(row.actionJson, {}), cand, ctx, int(row.actionIndex or 0))
        row.completedAt = iso_utc_now()
        if result["status"] == "failed":
            row.status = "FAILED"
            row.lastError = result.get("error", "")
            report["failed"] += 1
        else:
            row.status = "DONE"
            report["done"] += 1
        _update_execution_result(db, wf, row.executionId, int(row.actionIndex or 0), result)
    if rows:
        log.info("workflow_dispatch_done %s", " ".join(f"{k}={v}" for k, v in report.items()))
    return report
