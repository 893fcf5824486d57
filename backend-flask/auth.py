from __future__ import annotations

import hashlib
import os
import secrets
from datetime import timedelta

from sqlalchemy import select

from models import Session, User
from utils import ApiError, AuthContext, iso_utc_now, normalize_role, parse_datetime_maybe, to_iso_utc, utc_now

ADMIN_ONLY = ["ADMIN"]
STAFF = ["ADMIN", "RECRUITER"]
ANY_USER = ["ADMIN", "RECRUITER", "VIEWER"]

STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "SESSION_VALIDATE": ANY_USER,
    "GET_ME": ANY_USER,
    # Candidates
    "CANDIDATE_CREATE": STAFF,
    "CANDIDATE_GET": ANY_USER,
    "CANDIDATE_LIST": ANY_USER,
    "CANDIDATE_UPDATE": STAFF,
    "CANDIDATE_DELETE": ADMIN_ONLY,
    "CANDIDATE_TAG_ADD": STAFF,
    "CANDIDATE_TAG_REMOVE": STAFF,
    "CANDIDATE_NOTE_ADD": STAFF,
    "CANDIDATE_QUICK_SCORE_ADD": STAFF,
    "CANDIDATE_INTERVIEW_EVENT": STAFF,
    # Processes
    "PROCESS_CREATE": ADMIN_ONLY,
    "PROCESS_LIST": ANY_USER,
    "PROCESS_GET": ANY_USER,
    "PROCESS_DELETE": ADMIN_ONLY,
    "PROCESS_ADD_CANDIDATES": STAFF,
    "CANDIDATE_STAGE_MOVE": ADMIN_ONLY,
    # Workflows
    "WORKFLOW_CREATE": ADMIN_ONLY,
    "WORKFLOW_LIST": STAFF,
    "WORKFLOW_GET": STAFF,
    "WORKFLOW_UPDATE": ADMIN_ONLY,
    "WORKFLOW_DELETE": ADMIN_ONLY,
    "WORKFLOW_TOGGLE": ADMIN_ONLY,
    "WORKFLOW_RUN": STAFF,
    "WORKFLOW_EXECUTIONS": STAFF,
    "WORKFLOW_STATS": STAFF,
    "WORKFLOW_TEMPLATES": STAFF,
    "WORKFLOW_SCAN": ADMIN_ONLY,
    "WORKFLOW_DISPATCH_DUE": ADMIN_ONLY,
    # Tasks
    "TASK_CREATE": STAFF,
    "TASK_LIST": ANY_USER,
    "TASK_UPDATE": STAFF,
    "TASK_DELETE": STAFF,
    # Notifications
    "NOTIFICATION_LIST": ANY_USER,
    "NOTIFICATION_MARK_READ": ANY_USER,
    "NOTIFICATION_MARK_ALL_READ": ANY_USER,
    "NOTIFICATION_DELETE": ANY_USER,
    # Comments
    "COMMENT_CREATE": STAFF,
    "COMMENT_LIST": ANY_USER,
    "COMMENT_UPDATE": STAFF,
    "COMMENT_DELETE": STAFF,
    # Email templates
    "EMAIL_TEMPLATE_CREATE": ADMIN_ONLY,
    "EMAIL_TEMPLATE_LIST": STAFF,
    "EMAIL_TEMPLATE_GET": STAFF,
    "EMAIL_TEMPLATE_UPDATE": ADMIN_ONLY,
    "EMAIL_TEMPLATE_DELETE": ADMIN_ONLY,
    "EMAIL_TEMPLATE_RENDER": STAFF,
    "EMAIL_TEMPLATE_SEND": STAFF,
    # GDPR
    "GDPR_EXPORT": ADMIN_ONLY,
    "GDPR_ERASE": ADMIN_ONLY,
    "GDPR_RETENTION": ADMIN_ONLY,
    "GDPR_CONSENT_UPDATE": STAFF,
}

PUBLIC_ACTIONS: set[str] = set()


def _hash_token(token: str) -> str:
    return hashlib.sha256(str(token or "").encode("utf-8")).hexdigest()


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def role_or_public(auth: AuthContext | None) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"


def assert_permission(role: str, action: str) -> None:
    action_u = str(action or "").upper()
    allowed = STATIC_RBAC_PERMISSIONS.get(action_u)
    if allowed is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    if is_public_action(action_u):
        return
    if normalize_role(role) not in allowed:
        raise ApiError("FORBIDDEN", "Not allowed")


def issue_session_token(db, *, user_id: str, email: str, role: str, session_ttl_minutes: int) -> dict[str, str]:
    token = secrets.token_urlsafe(32)
    now = utc_now()
    expires = now + timedelta(minutes=int(session_ttl_minutes or 720))
    db.add(
        Session(
            sessionId=f"SES-{os.urandom(12).hex()}",
            tokenHash=_hash_token(token),
            tokenPrefix=token[:6],
            userId=str(user_id or ""),
            email=str(email or ""),
            role=normalize_role(role),
            issuedAt=to_iso_utc(now),
            expiresAt=to_iso_utc(expires),
            lastSeenAt=to_iso_utc(now),
            revokedAt="",
        )
    )
    return {"sessionToken": token, "expiresAt": to_iso_utc(expires)}


def validate_session_token(db, token) -> AuthContext:
    token_s = str(token or "").strip()
    if not token_s:
        return AuthContext(valid=False)

    ses = db.execute(select(Session).where(Session.tokenHash == _hash_token(token_s))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return AuthContext(valid=False)

    expires = parse_datetime_maybe(ses.expiresAt)
    if not expires or expires <= utc_now():
        return AuthContext(valid=False)

    user = db.execute(select(User).where(User.userId == ses.userId)).scalar_one_or_none()
    if user is not None and str(user.status or "").upper() != "ACTIVE":
        return AuthContext(valid=False)

    ses.lastSeenAt = iso_utc_now()
    return AuthContext(
        valid=True,
        userId=ses.userId,
        email=ses.email,
        role=normalize_role(ses.role),
        expiresAt=ses.expiresAt,
        fullName=(user.fullName if user else "") or ses.email,
    )
