from __future__ import annotations

import os
from typing import Any

from sqlalchemy import func, select, update

from models import Notification
from utils import ApiError, AuthContext, as_int, as_str, iso_utc_now, parse_json_field, safe_json_string


def create_notification(
    db,
    *,
    user_id: str,
    type: str,
    title: str,
    message: str,
    candidate_id: str = "",
    candidate_name: str = "",
    comment_id: str = "",
    link: str = "",
    meta: Any = None,
) -> str:
    notification_id = f"NTF-{os.urandom(12).hex()}"
    db.add(
        Notification(
            notificationId=notification_id,
            userId=str(user_id or ""),
            type=str(type or ""),
            title=str(title or ""),
            message=str(message or ""),
            candidateId=str(candidate_id or ""),
            candidateName=str(candidate_name or ""),
            commentId=str(comment_id or ""),
            link=str(link or ""),
            metaJson=safe_json_string(meta or {}, "{}"),
            isRead=False,
            readAt="",
            isArchived=False,
            createdAt=iso_utc_now(),
        )
    )
    return notification_id


def _serialize(n: Notification) -> dict[str, Any]:
    return {
        "notificationId": n.notificationId,
        "userId": n.userId,
        "type": n.type,
        "title": n.title,
        "message": n.message,
        "candidateId": n.candidateId,
        "candidateName": n.candidateName,
        "commentId": n.commentId,
        "link": n.link,
        "metadata": parse_json_field(n.metaJson, {}),
        "isRead": bool(n.isRead),
        "readAt": n.readAt or "",
        "createdAt": n.createdAt,
    }


def _recipient_keys(auth: AuthContext) -> list[str]:
    # Notifications may be addressed by user id or by email.
    return [k for k in {str(auth.userId or ""), str(auth.email or "")} if k]


def _own_notification(db, notification_id: str, auth: AuthContext) -> Notification:
    if not notification_id:
        raise ApiError("BAD_REQUEST", "Missing notificationId")
    n = db.execute(select(Notification).where(Notification.notificationId == notification_id)).scalar_one_or_none()
    if not n or n.userId not in _recipient_keys(auth):
        raise ApiError("NOT_FOUND", "Notification not found")
    return n


def notification_list(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    unread_only = bool((data or {}).get("unreadOnly"))
    limit = as_int((data or {}).get("limit"), 50) or 50
    limit = max(1, min(limit, 200))

    keys = _recipient_keys(auth)
    q = select(Notification).where(Notification.userId.in_(keys), Notification.isArchived.is_(False))
    if unread_only:
        q = q.where(Notification.isRead.is_(False))
    rows = db.execute(q.order_by(Notification.createdAt.desc()).limit(limit)).scalars().all()

    unread = db.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.userId.in_(keys), Notification.isRead.is_(False), Notification.isArchived.is_(False))
    ).scalar_one()
    return {"items": [_serialize(n) for n in rows], "unreadCount": int(unread or 0)}


def notification_mark_read(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    n = _own_notification(db, as_str(data, "notificationId"), auth)
    if not n.isRead:
        n.isRead = True
        n.readAt = iso_utc_now()
    return {"notificationId": n.notificationId, "isRead": True}


def notification_mark_all_read(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    res = db.execute(
        update(Notification)
        .where(Notification.userId.in_(_recipient_keys(auth)), Notification.isRead.is_(False))
        .values(isRead=True, readAt=iso_utc_now())
    )
    return {"updated": int(res.rowcount or 0)}


def notification_delete(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    n = _own_notification(db, as_str(data, "notificationId"), auth)
    db.delete(n)
    return {"deleted": True}
