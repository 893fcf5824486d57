from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select

from actions.candidate_repo import find_candidate, full_name
from actions.helpers import actor_id, append_activity, append_audit, next_prefixed_id
from gdpr import mask_email
from models import Candidate, EmailLog, EmailTemplate
from utils import ApiError, AuthContext, as_str, iso_utc_now, parse_json_field, safe_json_string

log = logging.getLogger("email")

TEMPLATE_CATEGORIES = {"application", "interview", "offer", "rejection", "follow_up", "onboarding", "custom"}

_VAR_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(str(value or "").strip()))


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left untouched."""

    def _sub(m: re.Match) -> str:
        key = m.group(1)
        if key not in variables:
            return m.group(0)
        value = variables.get(key)
        return "" if value is None else str(value)

    return _VAR_RE.sub(_sub, str(template or ""))


def extract_variables(*texts: str) -> list[str]:
    seen: list[str] = []
    for t in texts:
        for m in _VAR_RE.finditer(str(t or "")):
            if m.group(1) not in seen:
                seen.append(m.group(1))
    return seen


def candidate_variables(cand: Optional[Candidate], cfg, extra: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    out: dict[str, Any] = {
        "companyName": getattr(cfg, "COMPANY_NAME", ""),
        "currentDate": datetime.now().strftime("%d/%m/%Y"),
    }
    if cand is not None:
        out.update(
            {
                "firstName": cand.firstName or "",
                "lastName": cand.lastName or "",
                "fullName": full_name(cand),
                "email": cand.email or "",
                "position": cand.appliedPosition or "",
                "status": cand.status or "",
            }
        )
    out.update(extra or {})
    return out


def queue_email(
    db,
    *,
    to: str,
    subject: str,
    body: str,
    template_id: str = "",
    candidate_id: str = "",
    workflow_id: str = "",
    actor: Optional[AuthContext] = None,
) -> str:
    """Record an outgoing email for the delivery service to pick up."""
    if not is_valid_email(to):
        raise ApiError("BAD_REQUEST", f"Invalid email address: {mask_email(to)}")
    log_id = f"EML-{os.urandom(12).hex()}"
    db.add(
        EmailLog(
            logId=log_id,
            templateId=template_id,
            candidateId=candidate_id,
            workflowId=workflow_id,
            toEmail=str(to).strip(),
            subject=subject,
            body=body,
            status="QUEUED",
            error="",
            createdBy=actor_id(actor),
            createdAt=iso_utc_now(),
        )
    )
    log.info("email_queued id=%s to=%s template=%s workflow=%s", log_id, mask_email(to), template_id or "-", workflow_id or "-")
    return log_id


def find_template(db, template_id: str) -> EmailTemplate:
    if not template_id:
        raise ApiError("BAD_REQUEST", "Missing templateId")
    tpl = db.execute(select(EmailTemplate).where(EmailTemplate.templateId == template_id)).scalar_one_or_none()
    if not tpl:
        raise ApiError("NOT_FOUND", "Email template not found")
    return tpl


def _serialize(t: EmailTemplate) -> dict[str, Any]:
    return {
        "templateId": t.templateId,
        "name": t.name,
        "category": t.category,
        "subject": t.subject,
        "body": t.body,
        "variables": parse_json_field(t.variablesJson, []),
        "isActive": bool(t.isActive),
        "createdBy": t.createdBy,
        "createdAt": t.createdAt,
        "updatedAt": t.updatedAt,
    }


def _read_category(data) -> str:
    category = as_str(data, "category", "custom").lower()
    if category not in TEMPLATE_CATEGORIES:
        raise ApiError("BAD_REQUEST", "Invalid category")
    return category


def email_template_create(data, auth: AuthContext | None, db, cfg):
    name = as_str(data, "name")
    subject = as_str(data, "subject")
    body = str((data or {}).get("body") or "")
    if not name:
        raise ApiError("BAD_REQUEST", "Missing name")
    if not subject:
        raise ApiError("BAD_REQUEST", "Missing subject")
    if not body.strip():
        raise ApiError("BAD_REQUEST", "Missing body")
    category = _read_category(data)

    existing_ids = [x for x in db.execute(select(EmailTemplate.templateId)).scalars().all()]
    template_id = next_prefixed_id(db, counter_key="ETPL", prefix="ETPL-", pad=4, existing_ids=existing_ids)
    now = iso_utc_now()
    db.add(
        EmailTemplate(
            templateId=template_id,
            name=name,
            category=category,
            subject=subject,
            body=body,
            variablesJson=safe_json_string(extract_variables(subject, body), "[]"),
            isActive=bool((data or {}).get("isActive", True)),
            createdBy=actor_id(auth),
            createdAt=now,
            updatedAt=now,
            updatedBy=actor_id(auth),
        )
    )
    append_audit(db, entityType="EMAIL_TEMPLATE", entityId=template_id, action="EMAIL_TEMPLATE_CREATE", actor=auth, at=now)
    return {"templateId": template_id}


def email_template_list(data, auth: AuthContext | None, db, cfg):
    q = select(EmailTemplate)
    category = as_str(data, "category").lower()
    if category:
        q = q.where(EmailTemplate.category == category)
    if (data or {}).get("activeOnly"):
        q = q.where(EmailTemplate.isActive.is_(True))
    rows = db.execute(q.order_by(EmailTemplate.name)).scalars().all()
    return {"items": [_serialize(t) for t in rows], "total": len(rows)}


def email_template_get(data, auth: AuthContext | None, db, cfg):
    return {"template": _serialize(find_template(db, as_str(data, "templateId")))}


def email_template_update(data, auth: AuthContext | None, db, cfg):
    tpl = find_template(db, as_str(data, "templateId"))
    d = data or {}
    if "name" in d:
        name = as_str(d, "name")
        if not name:
            raise ApiError("BAD_REQUEST", "Missing name")
        tpl.name = name
    if "subject" in d:
        subject = as_str(d, "subject")
        if not subject:
            raise ApiError("BAD_REQUEST", "Missing subject")
        tpl.subject = subject
    if "body" in d:
        body = str(d.get("body") or "")
        if not body.strip():
            raise ApiError("BAD_REQUEST", "Missing body")
        tpl.body = body
    if "category" in d:
        tpl.category = _read_category(d)
    if "isActive" in d:
        tpl.isActive = bool(d.get("isActive"))
    tpl.variablesJson = safe_json_string(extract_variables(tpl.subject, tpl.body), "[]")
    tpl.updatedAt = iso_utc_now()
    tpl.updatedBy = actor_id(auth)
    append_audit(db, entityType="EMAIL_TEMPLATE", entityId=tpl.templateId, action="EMAIL_TEMPLATE_UPDATE", actor=auth)
    return {"template": _serialize(tpl)}


def email_template_delete(data, auth: AuthContext | None, db, cfg):
    tpl = find_template(db, as_str(data, "templateId"))
    db.delete(tpl)
    append_audit(db, entityType="EMAIL_TEMPLATE", entityId=tpl.templateId, action="EMAIL_TEMPLATE_DELETE", actor=auth)
    return {"deleted": True}


def _render_for(db, data, cfg) -> tuple[EmailTemplate, Optional[Candidate], str, str]:
    tpl = find_template(db, as_str(data, "templateId"))
    candidate_id = as_str(data, "candidateId")
    cand = find_candidate(db, candidate_id) if candidate_id else None
    extra = (data or {}).get("variables") or {}
    if not isinstance(extra, dict):
        raise ApiError("BAD_REQUEST", "variables must be an object")
    variables = candidate_variables(cand, cfg, extra)
    return tpl, cand, render_template(tpl.subject, variables), render_template(tpl.body, variables)


def email_template_render(data, auth: AuthContext | None, db, cfg):
    tpl, _cand, subject, body = _render_for(db, data, cfg)
    return {"templateId": tpl.templateId, "subject": subject, "body": body}


def email_template_send(data, auth: AuthContext | None, db, cfg):
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    tpl, cand, subject, body = _render_for(db, data, cfg)
    if not tpl.isActive:
        raise ApiError("BAD_REQUEST", "Email template is inactive")
    to = as_str(data, "to") or (cand.email if cand else "")
    if not to:
        raise ApiError("BAD_REQUEST", "Missing recipient")

    log_id = queue_email(
        db,
        to=to,
        subject=subject,
        body=body,
        template_id=tpl.templateId,
        candidate_id=cand.candidateId if cand else "",
        actor=auth,
    )
    if cand is not None:
        append_activity(
            db,
            candidate_id=cand.candidateId,
            type="email_sent",
            description=f"Email sent: {subject}",
            actor=auth,
            payload={"templateId": tpl.templateId, "emailLogId": log_id},
        )
    return {"emailLogId": log_id, "status": "QUEUED"}
