"""
Input validation for integration endpoints.

Each validator returns a ValidationResult instead of raising, so routes can
turn failures into 400 responses with a sanitized message.

Usage:
    from integrations.validation import validate_provider

    result = validate_provider(provider)
    if not result.valid:
        raise HTTPException(status_code=400, detail=result.error)
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .core.types import IntegrationProvider

_CODE_PATTERN = re.compile(r"^[a-zA-Z0-9_\-./]+$")
_STATE_PATTERN = re.compile(r"^[a-f0-9]{64}$")
_TAG_PATTERN = re.compile(r"<[^>]*>")

MAX_INPUT_LENGTH = 1000
MAX_SUMMARY_LOOKBACK_DAYS = 365
SUMMARY_TYPES = ("daily", "weekly", "monthly")


@dataclass
class ValidationResult:
    valid: bool
    error: Optional[str] = None
    value: Any = None


def sanitize_string(value: Optional[str]) -> str:
    """Strip tags, trim, and cap length of user-supplied text echoed in errors."""
    if not isinstance(value, str):
        return ""
    return _TAG_PATTERN.sub("", value)[:MAX_INPUT_LENGTH].strip()


def validate_provider(provider: Optional[str]) -> ValidationResult:
    if not provider:
        return ValidationResult(False, "Missing provider parameter")
    try:
        return ValidationResult(True, value=IntegrationProvider(provider))
    except ValueError:
        return ValidationResult(False, f"Invalid provider: {sanitize_string(provider)}")


def validate_user_id(user_id: Optional[str]) -> ValidationResult:
    if not user_id:
        return ValidationResult(False, "Missing user ID")
    try:
        uuid.UUID(str(user_id))
    except ValueError:
        return ValidationResult(False, "Invalid user ID format")
    return ValidationResult(True, value=str(user_id))


def validate_oauth_callback(
    code: Optional[str],
    state: Optional[str],
    error: Optional[str] = None,
) -> ValidationResult:
    """Check callback query params before touching state or the provider."""
    if error:
        return ValidationResult(False, f"OAuth error: {sanitize_string(error)}")
    if not code:
        return ValidationResult(False, "Missing or invalid authorization code")
    if len(code) > MAX_INPUT_LENGTH or not _CODE_PATTERN.match(code):
        return ValidationResult(False, "Invalid authorization code format")
    if not state:
        return ValidationResult(False, "Missing or invalid state parameter")
    if not _STATE_PATTERN.match(state):
        return ValidationResult(False, "Invalid state parameter format")
    return ValidationResult(True, value=(code, state))


def _parse_date(value: str) -> Optional[datetime]:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def validate_date_range(
    start: Optional[str],
    end: Optional[str],
    now: Optional[datetime] = None,
) -> ValidationResult:
    """
    Validate an optional ISO date range for summaries.

    Start must not be after end, more than a year back, or in the future.
    Returns value=(start, end), either of which may be None.
    """
    now = now or datetime.now(timezone.utc)
    start_dt = end_dt = None

    if start:
        start_dt = _parse_date(start)
        if start_dt is None:
            return ValidationResult(False, "Invalid start date")
    if end:
        end_dt = _parse_date(end)
        if end_dt is None:
            return ValidationResult(False, "Invalid end date")

    if start_dt and end_dt and start_dt > end_dt:
        return ValidationResult(False, "Start date must be before end date")
    if start_dt and start_dt < now - timedelta(days=MAX_SUMMARY_LOOKBACK_DAYS):
        return ValidationResult(False, "Start date cannot be more than 1 year in the past")
    if start_dt and start_dt > now:
        return ValidationResult(False, "Start date cannot be in the future")
    if end_dt and end_dt > now:
        return ValidationResult(False, "End date cannot be in the future")

    return ValidationResult(True, value=(start_dt, end_dt))


def validate_summary_type(summary_type: Optional[str]) -> ValidationResult:
    if not summary_type:
        return ValidationResult(True, value="daily")
    if summary_type not in SUMMARY_TYPES:
        return ValidationResult(
            False,
            f"Invalid summary type: {sanitize_string(summary_type)}. Must be one of: {', '.join(SUMMARY_TYPES)}",
        )
    return ValidationResult(True, value=summary_type)
