from __future__ import annotations

import json
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from flask import jsonify

_HTTP_STATUS_BY_CODE = {
    "BAD_REQUEST": 400,
    "VALIDATION": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "RATE_LIMIT": 429,
    "INTERNAL": 500,
}

_REDACT_KEYS = {"token", "sessiontoken", "password", "idtoken", "secret", "authorization", "webhookheaders"}


class ApiError(Exception):
    def __init__(self, code: str, message: str, *, details: Any = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL").upper()
        self.message = str(message or "")
        self.details = details

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS_BY_CODE.get(self.code, 500)


@dataclass
class AuthContext:
    valid: bool
    userId: str = ""
    email: str = ""
    role: str = ""
    expiresAt: str = ""
    fullName: str = ""


SYSTEM_ACTOR = AuthContext(valid=True, userId="system", email="", role="SYSTEM", fullName="Workflow Automation")


def ok(data: Any, http_status: int = 200):
    return jsonify({"ok": True, "data": data}), http_status


def err(code: str, message: str, http_status: int = 500, details: Any = None):
    body: dict[str, Any] = {"ok": False, "error": {"code": code, "message": message}}
    if details is not None:
        body["error"]["details"] = details
    return jsonify(body), http_status


def parse_json_body(raw: str) -> dict[str, Any]:
    if not raw:
        raise ApiError("BAD_REQUEST", "Empty body")
    try:
        body = json.loads(raw)
    except ValueError:
        raise ApiError("BAD_REQUEST", "Invalid JSON")
    if not isinstance(body, dict):
        raise ApiError("BAD_REQUEST", "JSON body must be an object")
    return body


def now_monotonic() -> float:
    return time.monotonic()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def iso_utc_now() -> str:
    return to_iso_utc(utc_now())


def parse_datetime_maybe(value: Any, app_timezone: str = "UTC") -> Optional[datetime]:
    """Parse ISO-ish strings and datetimes into aware UTC datetimes.

    Naive values are interpreted in ``app_timezone``. Returns None for anything
    that cannot be parsed.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        try:
            tz = ZoneInfo(app_timezone or "UTC")
        except Exception:
            tz = timezone.utc
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def normalize_role(role: Any) -> str:
    return str(role or "").upper().strip()


def safe_json_string(value: Any, fallback: str = "") -> str:
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return fallback


def parse_json_field(raw: Any, fallback: Any):
    if raw is None or raw == "":
        return fallback
    if isinstance(raw, (list, dict)):
        return raw
    try:
        out = json.loads(str(raw))
    except ValueError:
        return fallback
    if fallback is not None and type(out) is not type(fallback):
        return fallback
    return out


def as_str(data: Any, key: str, default: str = "") -> str:
    return str((data or {}).get(key) or default).strip()


def as_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def as_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def redact_for_audit(data: Any, _depth: int = 0) -> Any:
    if _depth > 5:
        return "..."
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if str(k).lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v, _depth + 1)
        return out
    if isinstance(data, list):
        return [redact_for_audit(x, _depth + 1) for x in data[:50]]
    if isinstance(data, str) and len(data) > 500:
        return data[:500] + "..."
    return data


_RATE_RE = re.compile(r"^\s*(\d+)\s*(?:per|/)\s*(second|minute|hour|day)\s*$", re.IGNORECASE)
_RATE_WINDOWS = {"second": 1, "minute": 60, "hour": 3600, "day": 86400}


def parse_rate(spec: str) -> tuple[int, int]:
    m = _RATE_RE.match(str(spec or ""))
    if not m:
        return 300, 60
    return int(m.group(1)), _RATE_WINDOWS[m.group(2).lower()]


class SimpleRateLimiter:
    """Sliding-window limiter kept in process memory, keyed by caller."""

    def __init__(self) -> None:
        self._hits: dict[str, deque] = {}
        self._lock = threading.Lock()

    def check(self, key: str, spec: str) -> None:
        limit, window = parse_rate(spec)
        now = now_monotonic()
        with self._lock:
            q = self._hits.setdefault(key, deque())
            while q and q[0] <= now - window:
                q.popleft()
            if len(q) >= limit:
                raise ApiError("RATE_LIMIT", "Too many requests")
            q.append(now)
