"""Shared validation functions for all entry points.

Pure functions: no SQLite, FastAPI, or Click dependencies.
"""

from __future__ import annotations

import unicodedata
from typing import Any

from issuesync.errors import ValidationError

_MAX_IDENTIFIER_LENGTH = 128


def sanitize_identifier(value: Any, name: str = "identifier") -> tuple[str, str | None]:
    """Validate and clean a user, group, or project identifier.

    Returns (cleaned, None) on success or ("", error_message) on failure.
    Strips whitespace, then checks: non-empty, max length, no control/format chars.
    """
    if not isinstance(value, str):
        return ("", f"{name} must be a string")
    # Check before stripping so "\nbad" is rejected rather than silently cleaned.
    for ch in value:
        cat = unicodedata.category(ch)
        if cat.startswith("C"):  # Cc (control) and Cf (format)
            return ("", f"{name} must not contain control characters (found U+{ord(ch):04X})")
    cleaned = value.strip()
    if not cleaned:
        return ("", f"{name} must not be empty")
    if len(cleaned) > _MAX_IDENTIFIER_LENGTH:
        return ("", f"{name} must be at most {_MAX_IDENTIFIER_LENGTH} characters")
    return (cleaned, None)


def require_identifier(value: Any, name: str) -> str:
    """Like ``sanitize_identifier`` but raises ``ValidationError``."""
    cleaned, err = sanitize_identifier(value, name)
    if err is not None:
        raise ValidationError(err)
    return cleaned


def validate_grant_target(user: str | None, group: str | None) -> tuple[str | None, str | None]:
    """Check that exactly one of *user* / *group* is given and return them cleaned."""
    if user is not None and group is not None:
        msg = "A permission grant takes a user or a group, not both"
        raise ValidationError(msg)
    if user is None and group is None:
        msg = "A permission grant needs a user or a group"
        raise ValidationError(msg)
    if user is not None:
        return require_identifier(user, "user"), None
    return None, require_identifier(group, "group")
