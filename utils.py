from __future__ import annotations

import hashlib
import hmac
import json
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional


DEFAULT_HTTP_STATUS = {
    "VALIDATION_ERROR": 400,
    "INVALID_STATE": 400,
    "UNAUTHENTICATED": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "EXPIRED": 410,
    "RATE_LIMITED": 429,
    "INTERNAL": 500,
    "UPSTREAM_FAILURE": 502,
}


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL").upper()
        self.message = str(message or "")
        self.http_status = int(http_status or DEFAULT_HTTP_STATUS.get(self.code, 400))
        self.details = details


@dataclass
class AuthContext:
    """Authenticated principal: a staff account or an outlet acting as its own store manager."""

    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str
    name: str = ""
    isOutlet: bool = False
    outletId: str = ""


SYSTEM_AUTH = AuthContext(valid=True, userId="SYSTEM", email="SYSTEM", role="system", expiresAt="")


def ok(data: Any = None, message: str = "", http_status: int = 200):
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body, http_status


def err(code: str, message: str, http_status: int = 400, details: Any = None):
    error: dict[str, Any] = {"code": str(code or "INTERNAL"), "message": str(message or "")}
    if details is not None:
        error["details"] = details
    return {"success": False, "message": str(message or ""), "data": None, "error": error}, http_status


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    s = str(value or "").strip()
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except Exception:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def date_part(value: Any) -> str:
    s = str(value or "").strip()
    return s.split("T", 1)[0] if s else ""


def now_monotonic() -> float:
    return time.monotonic()


def new_uuid() -> str:
    return str(uuid.uuid4())


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:20].upper()}"


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(str(a or ""), str(b or ""))


def parse_json_body(raw: str) -> dict[str, Any]:
    s = str(raw or "").strip()
    if not s:
        return {}
    try:
        body = json.loads(s)
    except Exception:
        raise ApiError("VALIDATION_ERROR", "Invalid JSON body")
    if not isinstance(body, dict):
        raise ApiError("VALIDATION_ERROR", "JSON body must be an object")
    return body


def json_loads_or(value: Any, default: Any) -> Any:
    s = str(value or "").strip()
    if not s:
        return default
    try:
        out = json.loads(s)
    except Exception:
        return default
    if default is not None and not isinstance(out, type(default)):
        return default
    return out


def json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


_SENSITIVE_KEYS = {
    "password",
    "currentpassword",
    "newpassword",
    "token",
    "_sessiontoken",
    "otp",
    "code",
    "aadhaarnumber",
    "pannumber",
    "filebytes",
    "filebase64",
}


def redact_for_audit(data: Any) -> Any:
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if str(k).lower() in _SENSITIVE_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(data, list):
        return [redact_for_audit(x) for x in data[:50]]
    return data


_FILENAME_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(name: str) -> str:
    base = str(name or "").strip().replace("\\", "/").split("/")[-1]
    base = _FILENAME_UNSAFE_RE.sub("_", base).strip("._")
    return (base or "file")[:120]


def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def as_int(value: Any, default: int) -> int:
    try:
        return int(str(value).strip())
    except Exception:
        return default
