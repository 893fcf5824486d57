from __future__ import annotations

import os
import re
from typing import Any

from sqlalchemy import or_, select

from actions.candidate_repo import find_candidate, full_name, update_candidate
from actions.helpers import actor_id, actor_name, append_activity
from actions.notifications import create_notification
from models import Comment, User
from utils import ApiError, AuthContext, as_str, iso_utc_now, parse_json_field, safe_json_string

_MENTION_RE = re.compile(r"@\[([^\]]+)\]")
MAX_COMMENT_LENGTH = 5000


def extract_mentions(content: str) -> list[str]:
    """``@[email]`` / ``@[Full Name]`` references, in order, without duplicates."""
    out: list[str] = []
    for m in _MENTION_RE.finditer(str(content or "")):
        ref = m.group(1).strip()
        if ref and ref not in out:
            out.append(ref)
    return out


def _resolve_mentioned_users(db, mentions: list[str]) -> list[User]:
    if not mentions:
        return []
    lowered = [m.lower() for m in mentions]
    rows = db.execute(
        select(User).where(or_(User.email.in_(lowered), User.fullName.in_(mentions)), User.status == "ACTIVE")
    ).scalars().all()
    seen, users = set(), []
    for u in rows:
        if u.userId not in seen:
            seen.add(u.userId)
            users.append(u)
    return users


def _is_self(user: User, auth: AuthContext) -> bool:
    return user.userId == auth.userId or (bool(auth.email) and user.email == str(auth.email).lower())


def _preview(content: str) -> str:
    return content[:100] + ("..." if len(content) > 100 else "")


def _serialize(c: Comment) -> dict[str, Any]:
    return {
        "commentId": c.commentId,
        "candidateId": c.candidateId,
        "parentCommentId": c.parentCommentId or None,
        "content": c.content,
        "authorId": c.authorId,
        "authorName": c.authorName,
        "authorEmail": c.authorEmail,
        "mentions": parse_json_field(c.mentionsJson, []),
        "isEdited": bool(c.isEdited),
        "editedAt": c.editedAt or None,
        "createdAt": c.createdAt,
    }


def _find_comment(db, comment_id: str) -> Comment:
    if not comment_id:
        raise ApiError("BAD_REQUEST", "Missing commentId")
    c = db.execute(select(Comment).where(Comment.commentId == comment_id, Comment.isDeleted.is_(False))).scalar_one_or_none()
    if not c:
        raise ApiError("NOT_FOUND", "Comment not found")
    return c


def _is_author(c: Comment, auth: AuthContext) -> bool:
    return c.authorId == auth.userId or (bool(auth.email) and c.authorEmail == auth.email)


def _read_content(data) -> str:
    content = str((data or {}).get("content") or "").strip()
    if not content:
        raise ApiError("BAD_REQUEST", "Missing content")
    if len(content) > MAX_COMMENT_LENGTH:
        raise ApiError("BAD_REQUEST", "Comment is too long")
    return content


def _notify_mentions(db, c: Comment, cand, mentions: list[str], auth: AuthContext) -> int:
    sent = 0
    author = actor_name(auth)
    for user in _resolve_mentioned_users(db, mentions):
        if _is_self(user, auth):
            continue
        create_notification(
            db,
            user_id=user.userId,
            type="mention",
            title=f"{author} mentioned you",
            message=f"In a comment on {full_name(cand)}",
            candidate_id=cand.candidateId,
            candidate_name=full_name(cand),
            comment_id=c.commentId,
            link=f"/candidates/{cand.candidateId}",
            meta={"mentionedBy": actor_id(auth), "commentPreview": c.content[:100]},
        )
        sent += 1
    return sent


def comment_create(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    cand = find_candidate(db, as_str(data, "candidateId"))
    content = _read_content(data)

    parent_id = as_str(data, "parentCommentId")
    if parent_id:
        parent = _find_comment(db, parent_id)
        if parent.candidateId != cand.candidateId:
            raise ApiError("BAD_REQUEST", "Parent comment belongs to another candidate")

    mentions = (data or {}).get("mentions")
    if not isinstance(mentions, list) or not mentions:
        mentions = extract_mentions(content)
    mentions = [str(m).strip() for m in mentions if str(m or "").strip()]

    now = iso_utc_now()
    c = Comment(
        commentId=f"CMT-{os.urandom(10).hex()}",
        candidateId=cand.candidateId,
        parentCommentId=parent_id,
        content=content,
        authorId=actor_id(auth),
        authorName=actor_name(auth),
        authorEmail=str(auth.email or ""),
        mentionsJson=safe_json_string(mentions, "[]"),
        isEdited=False,
        isDeleted=False,
        createdAt=now,
        updatedAt=now,
    )
    db.add(c)
    db.flush()

    update_candidate(db, cand=cand, patch={}, auth=auth)
    append_activity(
        db,
        candidate_id=cand.candidateId,
        type="comment_added",
        description=f"Comment added by {actor_name(auth)}",
        actor=auth,
        at=now,
        payload={"commentId": c.commentId, "commentPreview": _preview(content)},
    )
    notified = _notify_mentions(db, c, cand, mentions, auth)
    return {"comment": _serialize(c), "notified": notified}


def comment_list(data, auth: AuthContext | None, db, cfg):
    candidate_id = as_str(data, "candidateId")
    if not candidate_id:
        raise ApiError("BAD_REQUEST", "Missing candidateId")
    rows = (
        db.execute(
            select(Comment)
            .where(Comment.candidateId == candidate_id, Comment.isDeleted.is_(False))
            .order_by(Comment.createdAt.desc())
        )
        .scalars()
        .all()
    )
    return {"items": [_serialize(c) for c in rows], "total": len(rows)}


def comment_update(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    c = _find_comment(db, as_str(data, "commentId"))
    if not _is_author(c, auth):
        raise ApiError("FORBIDDEN", "Only the author can edit this comment")

    content = _read_content(data)
    previous = set(parse_json_field(c.mentionsJson, []))
    mentions = extract_mentions(content)
    now = iso_utc_now()
    c.content = content
    c.mentionsJson = safe_json_string(mentions, "[]")
    c.isEdited = True
    c.editedAt = now
    c.updatedAt = now

    # Only people newly mentioned by the edit are notified.
    fresh = [m for m in mentions if m not in previous]
    notified = _notify_mentions(db, c, find_candidate(db, c.candidateId), fresh, auth) if fresh else 0
    return {"comment": _serialize(c), "notified": notified}


def comment_delete(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    c = _find_comment(db, as_str(data, "commentId"))
    if not _is_author(c, auth) and str(auth.role or "").upper() != "ADMIN":
        raise ApiError("FORBIDDEN", "Only the author or an admin can delete this comment")
    now = iso_utc_now()
    c.isDeleted = True
    c.updatedAt = now
    append_activity(
        db,
        candidate_id=c.candidateId,
        type="comment_deleted",
        description=f"Comment deleted by {actor_name(auth)}",
        actor=auth,
        at=now,
        payload={"commentId": c.commentId},
    )
    return {"deleted": True}
