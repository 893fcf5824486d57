from __future__ import annotations

from sqlalchemy import func, select

from actions.helpers import append_audit, next_prefixed_id
from auth import issue_session_token
from models import User
from utils import ApiError, AuthContext, iso_utc_now, normalize_role

ROLES = ("ADMIN", "RECRUITER", "VIEWER")


def _find_user_by_email(db, email: str):
    email_lc = str(email or "").lower().strip()
    if not email_lc:
        return None
    return db.execute(select(User).where(func.lower(User.email) == email_lc)).scalars().first()


def ensure_user(db, *, email: str, full_name: str = "", role: str = "ADMIN") -> User:
    """Return the user with ``email``, creating (or reactivating) it with ``role``."""
    email_lc = str(email or "").lower().strip()
    if not email_lc or "@" not in email_lc:
        raise ApiError("BAD_REQUEST", "Invalid email")
    role_u = normalize_role(role)
    if role_u not in ROLES:
        raise ApiError("BAD_REQUEST", f"Invalid role: {role}")

    now = iso_utc_now()
    user = _find_user_by_email(db, email_lc)
    if user is None:
        existing_ids = [x for x in db.execute(select(User.userId)).scalars().all()]
        user = User(
            userId=next_prefixed_id(db, counter_key="USR", prefix="USR-", pad=4, existing_ids=existing_ids),
            email=email_lc,
            fullName=full_name or email_lc,
            role=role_u,
            status="ACTIVE",
            createdAt=now,
            createdBy="SYSTEM",
            updatedAt=now,
            updatedBy="SYSTEM",
        )
        db.add(user)
    else:
        user.role = role_u
        user.status = "ACTIVE"
        if full_name:
            user.fullName = full_name
        user.updatedAt = now
        user.updatedBy = "SYSTEM"
    return user


def open_session(db, user: User, cfg) -> dict:
    ses = issue_session_token(
        db,
        user_id=user.userId,
        email=user.email,
        role=user.role,
        session_ttl_minutes=cfg.SESSION_TTL_MINUTES,
    )
    append_audit(
        db,
        entityType="AUTH",
        entityId=str(user.userId),
        action="SESSION_ISSUED",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=user.userId, email=user.email, role=normalize_role(user.role), expiresAt=ses["expiresAt"]),
    )
    return ses


def session_validate(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    return {
        "valid": True,
        "expiresAt": auth.expiresAt,
        "me": {"userId": auth.userId, "email": auth.email, "role": normalize_role(auth.role)},
    }


def get_me(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Invalid or expired session")
    user = db.execute(select(User).where(User.userId == auth.userId)).scalar_one_or_none()
    if not user:
        raise ApiError("NOT_FOUND", "User not found")
    return {
        "me": {
            "userId": user.userId,
            "email": user.email,
            "fullName": user.fullName or "",
            "role": normalize_role(user.role),
            "status": user.status,
        }
    }
