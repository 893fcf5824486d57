from __future__ import annotations

import os
import re
from typing import Any, Iterable, Optional

from sqlalchemy import select, update

from models import AuditLog, CandidateActivity, IdCounter
from utils import AuthContext, iso_utc_now, safe_json_string


def actor_id(auth: Optional[AuthContext]) -> str:
    if not auth:
        return "SYSTEM"
    return str(auth.userId or auth.email or "SYSTEM")


def actor_name(auth: Optional[AuthContext]) -> str:
    if not auth:
        return "System"
    return str(auth.fullName or auth.email or auth.userId or "System")


def _max_existing_suffix(prefix: str, existing_ids: Iterable[str]) -> int:
    best = 0
    pat = re.compile(r"^" + re.escape(prefix) + r"(\d+)$")
    for x in existing_ids or []:
        m = pat.match(str(x or ""))
        if m:
            best = max(best, int(m.group(1)))
    return best


def next_prefixed_id(db, *, counter_key: str, prefix: str, pad: int, existing_ids: Iterable[str] | None = None) -> str:
    """Allocate the next ``PREFIX-000N`` id from the id_counters table.

    The counter is bumped with a single UPDATE so two sessions cannot hand out
    the same value. ``existing_ids`` seeds the counter the first time a key is
    used on a database that already has rows.
    """
    row = db.execute(select(IdCounter).where(IdCounter.key == counter_key)).scalar_one_or_none()
    if row is None:
        start = _max_existing_suffix(prefix, existing_ids or []) + 1
        db.add(IdCounter(key=counter_key, nextValue=start + 1))
        db.flush()
        return f"{prefix}{str(start).zfill(pad)}"

    res = db.execute(
        update(IdCounter)
        .where(IdCounter.key == counter_key)
        .values(nextValue=IdCounter.nextValue + 1)
        .returning(IdCounter.nextValue)
    )
    value = int(res.scalar_one()) - 1
    db.expire(row)
    return f"{prefix}{str(value).zfill(pad)}"


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    fromState: str = "",
    toState: str = "",
    stageTag: str = "",
    remark: str = "",
    actor: Optional[AuthContext] = None,
    at: str = "",
    meta: Any = None,
):
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType=str(entityType or ""),
            entityId=str(entityId or ""),
            action=str(action or ""),
            fromState=str(fromState or ""),
            toState=str(toState or ""),
            stageTag=str(stageTag or ""),
            remark=str(remark or ""),
            actorUserId=actor_id(actor),
            actorRole=str(actor.role) if actor else "SYSTEM",
            at=at or iso_utc_now(),
            metaJson=safe_json_string(meta or {}, "{}"),
        )
    )


def append_activity(
    db,
    *,
    candidate_id: str,
    type: str,
    description: str,
    actor: Optional[AuthContext] = None,
    payload: Any = None,
    at: str = "",
) -> str:
    activity_id = f"ACT-{os.urandom(12).hex()}"
    db.add(
        CandidateActivity(
            activityId=activity_id,
            candidateId=str(candidate_id or ""),
            type=str(type or ""),
            description=str(description or ""),
            payloadJson=safe_json_string(payload or {}, "{}"),
            at=at or iso_utc_now(),
            actorUserId=actor_id(actor),
            actorName=actor_name(actor),
        )
    )
    return activity_id
