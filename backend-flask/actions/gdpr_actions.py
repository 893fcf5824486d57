from __future__ import annotations

from actions.candidate_repo import find_candidate
from actions.helpers import append_audit
from gdpr import MIN_RETENTION_DAYS, enforce_retention, erase_candidate_data, export_candidate_data, update_consent
from utils import ApiError, AuthContext, as_int, as_str


def gdpr_export(data, auth: AuthContext | None, db, cfg):
    fmt = as_str(data, "format", "json").lower()
    if fmt not in {"json", "csv"}:
        raise ApiError("BAD_REQUEST", "format must be json or csv")
    cand = find_candidate(db, as_str(data, "candidateId"), include_deleted=True)
    return export_candidate_data(db, cand, fmt=fmt)


def gdpr_erase(data, auth: AuthContext | None, db, cfg):
    candidate_id = as_str(data, "candidateId")
    if str((data or {}).get("confirm") or "").strip() != candidate_id:
        raise ApiError("BAD_REQUEST", "confirm must repeat the candidateId")
    cand = find_candidate(db, candidate_id, include_deleted=True)
    out = erase_candidate_data(db, cand)
    append_audit(db, entityType="GDPR", entityId=candidate_id, action="GDPR_ERASE", actor=auth, meta=out["deleted"])
    return out


def gdpr_retention(data, auth: AuthContext | None, db, cfg):
    days = as_int((data or {}).get("retentionDays"), cfg.DATA_RETENTION_DAYS)
    if days is None or days < int(getattr(cfg, "MIN_RETENTION_DAYS", MIN_RETENTION_DAYS)):
        raise ApiError("BAD_REQUEST", f"retentionDays must be at least {getattr(cfg, 'MIN_RETENTION_DAYS', MIN_RETENTION_DAYS)}")
    dry_run = (data or {}).get("dryRun", True) is not False
    return enforce_retention(db, retention_days=days, dry_run=dry_run)


def gdpr_consent_update(data, auth: AuthContext | None, db, cfg):
    d = data or {}
    if "gdprConsent" not in d:
        raise ApiError("BAD_REQUEST", "Missing gdprConsent")
    cand = find_candidate(db, as_str(d, "candidateId"))
    return update_consent(
        db,
        cand,
        gdpr_consent=bool(d.get("gdprConsent")),
        marketing_consent=bool(d.get("marketingConsent", cand.marketingConsent)),
    )
