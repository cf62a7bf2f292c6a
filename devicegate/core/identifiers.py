"""
Identifier validation.

Anything that arrives from outside (path params, bodies, cookies,
token claims) goes through one of these before it is used in a
lookup, so malformed input never reaches storage or the IdP.
"""

import re
import uuid

from devicegate.core.exceptions import InputValidationError

_UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)
# IdP subjects look like "auth0|65f…" or "google-oauth2|1044…"; session
# ids are opaque url-safe strings.
_EXTERNAL_ID_RE = re.compile(r"[A-Za-z0-9_.|:@-]{1,256}")

MAX_REASON_LENGTH = 255


def parse_uuid(value: str | uuid.UUID | None, field: str) -> uuid.UUID:
    """Parse a canonical (hyphenated) UUID or raise InputValidationError."""
    if isinstance(value, uuid.UUID):
        return value
    if not value:
        raise InputValidationError(f"{field} is required")
    if not _UUID_RE.fullmatch(value):
        raise InputValidationError(f"Invalid {field} format")
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise InputValidationError(f"Invalid {field} format") from exc


def validate_device_id(value: str | None, field: str = "device_id") -> str:
    """Device ids are UUID4 strings minted by the device cookie middleware."""
    return str(parse_uuid(value, field))


def validate_external_id(value: str | None, field: str) -> str:
    if not value:
        raise InputValidationError(f"{field} is required")
    if not _EXTERNAL_ID_RE.fullmatch(value):
        raise InputValidationError(f"Invalid {field} format")
    return value


def validate_reason(value: str | None) -> str:
    reason = (value or "").strip()
    if not reason:
        raise InputValidationError("reason is required")
    if len(reason) > MAX_REASON_LENGTH:
        raise InputValidationError(
            f"reason must be at most {MAX_REASON_LENGTH} characters"
        )
    return reason
