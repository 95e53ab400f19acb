from __future__ import annotations

import base64
import json
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

_SCALARS = (str, int, float, bool)


def to_jsonable(obj: Any) -> Any:
    """Make CLI reports printable as JSON.

    Reports mix plain dicts with Paths, enums and pack models; anything with a
    to_dict() is expanded. Pack hashing never goes through here: the
    canonical codec refuses values it cannot encode instead of stringifying
    them.

    Security considerations:
    - bytes become {"__bytes_b64__": ...}, never raw text.
    - nothing is imported or called dynamically beyond to_dict().

    """

    if obj is None or isinstance(obj, _SCALARS):
        return obj.value if isinstance(obj, Enum) else obj
    if isinstance(obj, Enum):
        return to_jsonable(obj.value)
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (bytes, bytearray)):
        return {"__bytes_b64__": base64.b64encode(bytes(obj)).decode("ascii")}
    if callable(getattr(obj, "to_dict", None)):
        return to_jsonable(obj.to_dict())
    if isinstance(obj, Mapping):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [to_jsonable(x) for x in obj]
    return str(obj)


def decode_json_column(value: Any) -> Any:
    """Decode a JSON column that the store may hand back as text.

    Non-text values are returned as-is. Text that is not valid JSON is
    returned unchanged; callers treat it as a non-object.
    """

    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value
