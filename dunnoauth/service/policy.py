"""Input policies and the per-field change cooldown.

Cooldowns are computed from the timestamps stored on the user record and an
explicit ``now``, so they stay pure and testable without patching the clock.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from dunnoauth.service.errors import CooldownActive, PolicyViolation

MIN_PASSWORD_LENGTH = 8
MIN_PASSWORD_DIGITS = 2
MIN_PASSWORD_SPECIALS = 2

USERNAME_MIN_LENGTH = 3
USERNAME_MAX_LENGTH = 32

PASSWORD_POLICY_MESSAGE = (
    "password must be at least 8 characters long, with at least 2 numbers "
    "and at least 2 special characters"
)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def password_meets_policy(password: str) -> bool:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        return False
    digits = sum(1 for ch in password if ch.isdigit())
    specials = sum(1 for ch in password if not ch.isalnum())
    return digits >= MIN_PASSWORD_DIGITS and specials >= MIN_PASSWORD_SPECIALS


def validate_password(password: str) -> None:
    if not password_meets_policy(password):
        raise PolicyViolation(PASSWORD_POLICY_MESSAGE, detail={"field": "password"})


def validate_email(email: str) -> str:
    candidate = (email or "").strip()
    if not _EMAIL_RE.match(candidate):
        raise PolicyViolation("must be a valid email address", detail={"field": "email"})
    return candidate


def validate_username(username: str) -> str:
    candidate = (username or "").strip()
    if not candidate:
        raise PolicyViolation("must provide a username", detail={"field": "username"})
    if not USERNAME_MIN_LENGTH <= len(candidate) <= USERNAME_MAX_LENGTH:
        raise PolicyViolation(
            f"username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters",
            detail={"field": "username"},
        )
    if not _USERNAME_RE.match(candidate):
        raise PolicyViolation(
            "username may only contain letters, digits, '.', '_' and '-'",
            detail={"field": "username"},
        )
    return candidate


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def cooldown_remaining(
    last_change: Optional[datetime], now: datetime, period: timedelta
) -> timedelta:
    """Time left before the field may change again; zero when allowed."""
    if last_change is None:
        return timedelta(0)
    elapsed = _aware(now) - _aware(last_change)
    return max(timedelta(0), period - elapsed)


def ensure_cooldown_elapsed(
    field: str, last_change: Optional[datetime], now: datetime, period: timedelta
) -> None:
    remaining = cooldown_remaining(last_change, now, period)
    if remaining > timedelta(0):
        days = math.ceil(remaining.total_seconds() / timedelta(days=1).total_seconds())
        raise CooldownActive(field, days)
