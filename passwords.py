from __future__ import annotations

from werkzeug.security import check_password_hash, generate_password_hash

from utils import ApiError


MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 256


def validate_password_policy(password: str) -> str:
    pwd = str(password or "")
    if not pwd:
        raise ApiError("VALIDATION_ERROR", "Password is required")
    if len(pwd) < MIN_PASSWORD_LENGTH:
        raise ApiError("VALIDATION_ERROR", f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(pwd) > MAX_PASSWORD_LENGTH:
        raise ApiError("VALIDATION_ERROR", "Password is too long")
    return pwd


def hash_password(password: str) -> str:
    pwd = validate_password_policy(password)
    # Werkzeug 3 defaults to scrypt; pinned so stored hashes stay verifiable across upgrades.
    return generate_password_hash(pwd, method="scrypt", salt_length=16)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return check_password_hash(str(password_hash), str(password or ""))
    except Exception:
        return False
