from __future__ import annotations

import re
from typing import Any

from dateutil import parser as dt_parser


_DIGITS_RE = re.compile(r"\d+")
_PAN_RE = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")


def parse_date_yyyy_mm_dd(value: Any) -> str:
    s = str(value or "").strip()
    if not s:
        return ""
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", s):
        return s
    try:
        return dt_parser.parse(s, dayfirst=True).date().isoformat()
    except (ValueError, OverflowError):
        return ""


def normalize_aadhaar(value: Any) -> str:
    return "".join(_DIGITS_RE.findall(str(value or "")))


def is_valid_aadhaar(value: Any) -> bool:
    return len(normalize_aadhaar(value)) == 12


def normalize_pan(value: Any) -> str:
    return re.sub(r"\s+", "", str(value or "")).upper()


def is_valid_pan(value: Any) -> bool:
    return bool(_PAN_RE.fullmatch(normalize_pan(value)))
