from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select

from actions.candidate_repo import find_candidate, full_name, get_json, update_candidate
from actions.candidates import change_status
from actions.helpers import actor_id, append_activity, append_audit, next_prefixed_id
from models import Candidate, Process
from utils import ApiError, AuthContext, as_str, iso_utc_now, parse_json_field, safe_json_string


def infer_status_from_stage(stage_name: str) -> Optional[str]:
    """Map a stage name to a candidate status by keyword; None keeps the status."""
    s = str(stage_name or "").lower()
    if "new" in s or "sourced" in s:
        return "new"
    if "screening" in s or "review" in s:
        return "screening"
    if "interview" in s:
        if "scheduled" in s:
            return "interview_scheduled"
        if "completed" in s:
            return "interview_completed"
        return None
    if "offer" in s:
        if "sent" in s:
            return "offer_sent"
        if "accepted" in s:
            return "offer_accepted"
        if "rejected" in s:
            return "offer_rejected"
        return None
    if "hired" in s or "onboard" in s:
        return "hired"
    if "reject" in s:
        return "rejected"
    if "hold" in s:
        return "on_hold"
    return None


def _read_stages(value) -> list[dict[str, Any]]:
    if not isinstance(value, list) or not value:
        raise ApiError("BAD_REQUEST", "stages must be a non-empty list")
    stages = []
    for i, raw in enumerate(value):
        name = str((raw.get("name") if isinstance(raw, dict) else raw) or "").strip()
        if not name:
            raise ApiError("BAD_REQUEST", f"Stage {i + 1} has no name")
        stage_id = str(raw.get("id") or "").strip() if isinstance(raw, dict) else ""
        stages.append({"id": stage_id or f"STG-{i + 1}", "name": name, "order": i})
    ids = [s["id"] for s in stages]
    if len(set(ids)) != len(ids):
        raise ApiError("BAD_REQUEST", "Duplicate stage id")
    return stages


def _stages(p: Process) -> list[dict[str, Any]]:
    stages = [s for s in parse_json_field(p.stagesJson, []) if isinstance(s, dict)]
    return sorted(stages, key=lambda s: int(s.get("order") or 0))


def find_process(db, process_id: str) -> Process:
    pid = str(process_id or "").strip()
    if not pid:
        raise ApiError("BAD_REQUEST", "Missing processId")
    p = db.execute(select(Process).where(Process.processId == pid, Process.isDeleted.is_(False))).scalar_one_or_none()
    if not p:
        raise ApiError("NOT_FOUND", "Process not found")
    return p


def _process_members(db, process_id: str) -> list[Candidate]:
    rows = db.execute(select(Candidate).where(Candidate.isDeleted.is_(False))).scalars().all()
    return [c for c in rows if process_id in get_json(c, "processIds")]


def _serialize(p: Process) -> dict[str, Any]:
    return {
        "processId": p.processId,
        "name": p.name,
        "description": p.description,
        "stages": _stages(p),
        "createdAt": p.createdAt,
        "createdBy": p.createdBy,
        "updatedAt": p.updatedAt,
    }


def process_create(data, auth: AuthContext | None, db, cfg):
    name = as_str(data, "name")
    if not name:
        raise ApiError("BAD_REQUEST", "Missing name")
    stages = _read_stages((data or {}).get("stages"))

    existing_ids = [x for x in db.execute(select(Process.processId)).scalars().all()]
    process_id = next_prefixed_id(db, counter_key="PRC", prefix="PRC-", pad=4, existing_ids=existing_ids)
    now = iso_utc_now()
    db.add(
        Process(
            processId=process_id,
            name=name,
            description=as_str(data, "description"),
            stagesJson=safe_json_string(stages, "[]"),
            isDeleted=False,
            createdAt=now,
            createdBy=actor_id(auth),
            updatedAt=now,
            updatedBy=actor_id(auth),
        )
    )
    append_audit(db, entityType="PROCESS", entityId=process_id, action="PROCESS_CREATE", actor=auth, at=now, meta={"stages": len(stages)})
    return {"processId": process_id, "stages": stages}


def process_list(data, auth: AuthContext | None, db, cfg):
    rows = db.execute(select(Process).where(Process.isDeleted.is_(False)).order_by(Process.createdAt.desc())).scalars().all()
    return {"items": [_serialize(p) for p in rows], "total": len(rows)}


def process_get(data, auth: AuthContext | None, db, cfg):
    p = find_process(db, as_str(data, "processId"))
    board: dict[str, list] = {s["id"]: [] for s in _stages(p)}
    for cand in _process_members(db, p.processId):
        entry = next((x for x in get_json(cand, "currentProcesses") if isinstance(x, dict) and x.get("processId") == p.processId), None)
        if entry and entry.get("stageId") in board:
            board[entry["stageId"]].append(
                {
                    "candidateId": cand.candidateId,
                    "fullName": full_name(cand),
                    "status": cand.status,
                    "enteredStageAt": entry.get("enteredStageAt", ""),
                }
            )
    return {"process": _serialize(p), "candidatesByStage": board}


def process_delete(data, auth: AuthContext | None, db, cfg):
    p = find_process(db, as_str(data, "processId"))
    p.isDeleted = True
    p.updatedAt = iso_utc_now()
    p.updatedBy = actor_id(auth)
    append_audit(db, entityType="PROCESS", entityId=p.processId, action="PROCESS_DELETE", actor=auth)
    return {"deleted": True}


def _place(db, cand: Candidate, p: Process, stage: dict[str, Any], now: str, auth) -> Optional[dict[str, Any]]:
    """Put the candidate on ``stage``; returns the previous entry for this process, if any."""
    processes = [x for x in get_json(cand, "currentProcesses") if isinstance(x, dict)]
    previous = None
    entry = {
        "processId": p.processId,
        "processName": p.name,
        "stageId": stage["id"],
        "stageName": stage["name"],
        "enteredStageAt": now,
    }
    for i, x in enumerate(processes):
        if x.get("processId") == p.processId:
            previous = x
            processes[i] = entry
            break
    else:
        processes.append(entry)

    process_ids = get_json(cand, "processIds")
    if p.processId not in process_ids:
        process_ids.append(p.processId)
    update_candidate(db, cand=cand, patch={"currentProcesses": processes, "processIds": process_ids}, auth=auth)
    return previous


def process_add_candidates(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    p = find_process(db, as_str(data, "processId"))
    candidate_ids = (data or {}).get("candidateIds") or []
    if not isinstance(candidate_ids, list) or not candidate_ids:
        raise ApiError("BAD_REQUEST", "Missing candidateIds")
    first_stage = _stages(p)[0]

    added, skipped = [], []
    now = iso_utc_now()
    for cid in candidate_ids:
        cand = find_candidate(db, str(cid or ""))
        if p.processId in get_json(cand, "processIds"):
            skipped.append(cand.candidateId)
            continue
        _place(db, cand, p, first_stage, now, auth)
        append_activity(
            db,
            candidate_id=cand.candidateId,
            type="added_to_process",
            description=f"Added to process {p.name} at stage {first_stage['name']}",
            actor=auth,
            at=now,
            payload={"processId": p.processId, "stageId": first_stage["id"]},
        )
        added.append(cand.candidateId)
    return {"added": added, "skipped": skipped}


def candidate_stage_move(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    p = find_process(db, as_str(data, "processId"))
    stage_id = as_str(data, "stageId")
    if not stage_id:
        raise ApiError("BAD_REQUEST", "Missing stageId")
    stage = next((s for s in _stages(p) if s.get("id") == stage_id), None)
    if not stage:
        raise ApiError("BAD_REQUEST", "Stage not found in process")
    cand = find_candidate(db, as_str(data, "candidateId"))

    now = iso_utc_now()
    previous = _place(db, cand, p, stage, now, auth)
    append_activity(
        db,
        candidate_id=cand.candidateId,
        type="stage_moved",
        description=f"Moved to stage {stage['name']} in {p.name}",
        actor=auth,
        at=now,
        payload={
            "processId": p.processId,
            "fromStageId": previous.get("stageId") if previous else None,
            "fromStageName": previous.get("stageName") if previous else None,
            "toStageId": stage["id"],
            "toStageName": stage["name"],
        },
    )

    old_status = cand.status or ""
    new_status = infer_status_from_stage(stage["name"]) or old_status
    runs = change_status(db, cand, new_status, auth, cfg, stage_name=stage["name"]) if new_status != old_status else []
    return {
        "candidateId": cand.candidateId,
        "stageId": stage["id"],
        "stageName": stage["name"],
        "oldStatus": old_status,
        "status": cand.status,
        "workflowRuns": len(runs),
    }
