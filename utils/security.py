"""Security helpers for headers, tokens, OTPs and password handling."""
import hashlib
import re
import secrets

from flask import request
from werkzeug.security import check_password_hash, generate_password_hash

PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")


def apply_security_headers(response, force_https: bool = False):
    """Apply API-oriented security headers."""
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # CHW devices capture the visit location
    response.headers.setdefault("Permissions-Policy", "geolocation=(self), microphone=(), camera=(self)")
    response.headers.setdefault("Cache-Control", "no-store")
    if force_https or request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    return response


def generate_token(num_bytes: int = 32) -> str:
    """Hex token with num_bytes of entropy (64 hex chars for the default)."""
    return secrets.token_hex(num_bytes)


def generate_otp(length: int = 6) -> str:
    digits = "0123456789"
    return "".join(secrets.choice(digits) for _ in range(length))


def hash_value(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def constant_time_equals(left: str, right: str) -> bool:
    return secrets.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def is_valid_phone(phone: str | None) -> bool:
    return bool(phone) and bool(PHONE_PATTERN.match(phone))


def hash_password(password: str) -> str:
    return generate_password_hash(password, method="pbkdf2:sha256")


def verify_password(password_hash: str | None, password: str) -> bool:
    if not password_hash or not password:
        return False
    return check_password_hash(password_hash, password)


def password_meets_policy(password: str) -> tuple[bool, str | None]:
    """Enforce a sane password baseline for CHW and admin accounts."""
    if len(password) < 12:
        return False, "Password must be at least 12 characters long."
    if password.lower() == password or password.upper() == password:
        return False, "Use a mix of upper and lower case characters."
    if not any(c.isdigit() for c in password):
        return False, "Include at least one digit."
    if not any(c in "!@#$%^&*()-_=+[]{}|;:,.<>?/" for c in password):
        return False, "Include at least one symbol."
    return True, None
