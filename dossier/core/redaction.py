from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

NONE_SENTINEL = "[none]"
INVALID_SENTINEL = "[invalid]"
REDACTED_SENTINEL = "[REDACTED]"

_PHONE_FULL_MASK = "***"
_PHONE_PREFIX_MASK = "***-***-"
_EMAIL_LOCAL_MASK = "***"
_ID_MASK = "****"
_ID_MIN_LEN = 8

_NON_DIGITS = re.compile(r"\D")

# Substring match, case-insensitive. Over-redaction is acceptable; leaks are not.
SENSITIVE_KEY_FRAGMENTS: Tuple[str, ...] = (
    "phone",
    "email",
    "password",
    "token",
    "secret",
    "api_key",
    "apikey",
    "authorization",
    "auth",
    "credential",
    "private_key",
    "privatekey",
)


def redact_phone(phone: Optional[str]) -> str:
    """Show only the last 3 digits.

    "+35699123456" -> "***-***-456"
    """

    if not phone:
        return NONE_SENTINEL
    digits = _NON_DIGITS.sub("", str(phone))
    if len(digits) < 3:
        return _PHONE_FULL_MASK
    return f"{_PHONE_PREFIX_MASK}{digits[-3:]}"


def redact_email(email: Optional[str]) -> str:
    """Show the first 2 characters of the local part and the full domain.

    "john.doe@example.com" -> "jo***@example.com"
    """

    if not email:
        return NONE_SENTINEL
    email = str(email)
    at = email.find("@")
    if at < 1:
        return INVALID_SENTINEL
    return f"{email[:2]}{_EMAIL_LOCAL_MASK}{email[at:]}"


def redact_id(value: Optional[str]) -> str:
    """Show the first 4 and last 4 characters of an identifier.

    Used for user ids, peer ids and session/channel ids.
    "1234567890abcdef" -> "1234****cdef"
    """

    if not value:
        return NONE_SENTINEL
    value = str(value)
    if len(value) < _ID_MIN_LEN:
        return _ID_MASK
    return f"{value[:4]}{_ID_MASK}{value[-4:]}"


redact_user_id = redact_id
redact_peer_id = redact_id


def is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in SENSITIVE_KEY_FRAGMENTS)


def _redact_list(items: List[Any]) -> List[Any]:
    out: List[Any] = []
    for item in items:
        if isinstance(item, Mapping):
            out.append(redact_payload(item))
        elif isinstance(item, (list, tuple)):
            out.append(_redact_list(list(item)))
        else:
            out.append(item)
    return out


def redact_payload(payload: Any) -> Dict[str, Any]:
    """Return a deep-redacted copy of an arbitrary event payload.

    Rules
    - Sensitive keys (see SENSITIVE_KEY_FRAGMENTS) are replaced wholesale with
      "[REDACTED]"; their values are never inspected.
    - Non-sensitive mappings recurse; non-sensitive lists are walked
      element-wise.
    - A non-mapping top-level input yields {}.

    The input is never mutated.
    """

    if not isinstance(payload, Mapping):
        return {}

    out: Dict[str, Any] = {}
    for key, value in payload.items():
        if is_sensitive_key(key):
            out[key] = REDACTED_SENTINEL
        elif isinstance(value, Mapping):
            out[key] = redact_payload(value)
        elif isinstance(value, (list, tuple)):
            out[key] = _redact_list(list(value))
        else:
            out[key] = value
    return out
