"""Error codes and exception types for the login shield.

Usage:
    from loginshield.core.errors import api_error, E

    raise api_error(429, E.LOCKED, "Too many failed attempts")
"""
from enum import Enum
from typing import Optional

from fastapi import HTTPException


class ErrorCode(str, Enum):
    """Login shield error codes. Hosts map these to their own translations."""

    # ── Decisions ─────────────────────────────────────────────
    LOCKED = "SHIELD_LOCKED"
    CAPTCHA_MISSING = "SHIELD_CAPTCHA_MISSING"
    CAPTCHA_WRONG = "SHIELD_CAPTCHA_WRONG"
    CAPTCHA_REQUIRED = "SHIELD_CAPTCHA_REQUIRED"
    STORE_UNAVAILABLE = "SHIELD_STORE_UNAVAILABLE"

    # ── Admin ─────────────────────────────────────────────────
    ADMIN_KEY_REQUIRED = "SHIELD_ADMIN_KEY_REQUIRED"
    ADMIN_DISABLED = "SHIELD_ADMIN_DISABLED"
    RECORD_NOT_FOUND = "SHIELD_RECORD_NOT_FOUND"

    # ── Generic ───────────────────────────────────────────────
    INTERNAL_ERROR = "SHIELD_INTERNAL_ERROR"


# Shorthand alias
E = ErrorCode

# Fixed user-facing messages (English fallback)
_DEFAULT_MESSAGES: dict[str, str] = {
    E.LOCKED: "Access blocked. Too many failed attempts. Please try again in {minutes} minute(s).",
    E.CAPTCHA_MISSING: "Security check failed. Please answer the math question.",
    E.CAPTCHA_WRONG: "Wrong answer. Please solve the math problem correctly.",
    E.CAPTCHA_REQUIRED: "Please solve the math problem to continue.",
    E.STORE_UNAVAILABLE: "Login is temporarily unavailable. Please try again later.",
    E.ADMIN_KEY_REQUIRED: "Admin key required",
    E.ADMIN_DISABLED: "Admin API is disabled",
    E.RECORD_NOT_FOUND: "Record not found",
    E.INTERNAL_ERROR: "Internal error",
}

SHIELD_CODES = frozenset(code.value for code in ErrorCode)


def default_message(code: ErrorCode, **params) -> str:
    template = _DEFAULT_MESSAGES.get(code, code.value)
    return template.format(**params) if params else template


def is_shield_code(code: Optional[str]) -> bool:
    """True if the code was produced by the login shield itself."""
    if code is None:
        return False
    return str(getattr(code, "value", code)) in SHIELD_CODES


class ShieldError(Exception):
    """Base class for login shield errors."""

    code: ErrorCode = E.INTERNAL_ERROR

    def __init__(self, message: Optional[str] = None):
        self.message = message or default_message(self.code)
        super().__init__(self.message)


class Blocked(ShieldError):
    """The identity is locked out; the credential check must not run."""

    code = E.LOCKED

    def __init__(self, retry_after_minutes: int, reason: str = "locked", message: Optional[str] = None):
        self.retry_after_minutes = retry_after_minutes
        self.reason = reason
        if reason == "unavailable":
            self.code = E.STORE_UNAVAILABLE
        elif message is None:
            message = default_message(E.LOCKED, minutes=retry_after_minutes)
        super().__init__(message)


class ChallengeRequired(ShieldError):
    """A captcha must be solved before the credential check runs."""

    code = E.CAPTCHA_REQUIRED


class ChallengeFailed(ShieldError):
    """The captcha answer was missing or wrong."""

    code = E.CAPTCHA_WRONG

    def __init__(self, reason: str = "wrong", message: Optional[str] = None):
        self.reason = reason
        if reason == "missing":
            self.code = E.CAPTCHA_MISSING
        super().__init__(message)


class ChallengeValidationError(ChallengeFailed):
    """Malformed captcha submission (not an integer literal)."""

    def __init__(self, message: Optional[str] = None):
        super().__init__("wrong", message)


class StoreUnavailable(ShieldError):
    """The record store cannot be reached."""

    code = E.STORE_UNAVAILABLE


class NotifyFailure(ShieldError):
    """Lockout notification could not be delivered. Never reaches the login flow."""


def api_error(
    status_code: int,
    code: ErrorCode,
    detail: str | None = None,
) -> HTTPException:
    """Create an HTTPException with a structured error code.

    Args:
        status_code: HTTP status code (400, 403, 429, etc.)
        code: ErrorCode enum value
        detail: Human-readable message. If None, uses default for the code.

    Returns:
        HTTPException with JSON body {"detail": "...", "code": "ERROR_CODE"}
    """
    message = detail or _DEFAULT_MESSAGES.get(code, code.value)
    return HTTPException(
        status_code=status_code,
        detail={"detail": message, "code": code.value},
    )
