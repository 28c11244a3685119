from __future__ import annotations

import glob
import os
import re
from typing import Any

from utils import ApiError, iso_utc_now, sanitize_filename


ALLOWED_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png", "application/pdf"}
_EXT_MIME = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".png": "image/png", ".pdf": "application/pdf"}
_REF_RE = re.compile(r"^[0-9a-f]{32}$")


def _sniff_mime(file_bytes: bytes) -> str:
    head = bytes(file_bytes[:8])
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if head.startswith(b"%PDF"):
        return "application/pdf"
    return ""


def save(cfg: Any, *, file_bytes: bytes, file_name: str, mime_type: str, prefix: str) -> dict[str, Any]:
    """
    Store an uploaded document and return its descriptor.

    Only JPEG/PNG/PDF up to MAX_UPLOAD_BYTES are accepted; the declared type must
    agree with the file's magic bytes. Files land in UPLOAD_DIR as `<ref>_<name>`.
    """
    size = len(file_bytes or b"")
    if size <= 0:
        raise ApiError("VALIDATION_ERROR", "Empty file")
    limit = int(getattr(cfg, "MAX_UPLOAD_BYTES", 5 * 1024 * 1024))
    if size > limit:
        raise ApiError("VALIDATION_ERROR", f"File too large (max {limit // (1024 * 1024)}MB)")

    safe_name = sanitize_filename(file_name or "document")
    declared = str(mime_type or "").strip().lower() or _EXT_MIME.get(os.path.splitext(safe_name)[1].lower(), "")
    sniffed = _sniff_mime(file_bytes)
    if declared == "image/jpg":
        declared = "image/jpeg"
    if declared not in ALLOWED_MIME_TYPES or not sniffed or sniffed != declared:
        raise ApiError("VALIDATION_ERROR", "Only JPEG, PNG and PDF files are allowed")

    upload_dir = str(getattr(cfg, "UPLOAD_DIR", "./uploads") or "./uploads")
    os.makedirs(upload_dir, exist_ok=True)

    ref = os.urandom(16).hex()
    stored_name = f"{sanitize_filename(prefix)}_{safe_name}"
    with open(os.path.join(upload_dir, f"{ref}_{stored_name}"), "wb") as f:
        f.write(file_bytes)

    return {
        "filename": safe_name,
        "storageRef": ref,
        "mimeType": sniffed,
        "size": size,
        "uploadedAt": iso_utc_now(),
    }


def resolve(cfg: Any, ref: str) -> tuple[str, str]:
    """Return (path, download_name) for a storage ref, or raise NOT_FOUND."""
    r = str(ref or "").strip().lower()
    if not _REF_RE.fullmatch(r):
        raise ApiError("VALIDATION_ERROR", "Invalid file reference")
    upload_dir = str(getattr(cfg, "UPLOAD_DIR", "./uploads") or "./uploads")
    matches = sorted(glob.glob(os.path.join(upload_dir, f"{r}_*")))
    if not matches:
        raise ApiError("NOT_FOUND", "File not found")
    name = os.path.basename(matches[0])
    return matches[0], name[len(r) + 1 :]
