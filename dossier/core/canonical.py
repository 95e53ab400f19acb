from __future__ import annotations

import hashlib
import json
from typing import Any

from .errors import SerializationError


def _require_str_keys(value: Any) -> None:
    # json.dumps would silently stringify int/float/bool/None keys.
    stack = [value]
    seen = set()
    while stack:
        cur = stack.pop()
        if isinstance(cur, dict):
            if id(cur) in seen:
                continue
            seen.add(id(cur))
            for k, v in cur.items():
                if not isinstance(k, str):
                    raise SerializationError(f"non-string object key: {k!r}")
                stack.append(v)
        elif isinstance(cur, (list, tuple)):
            if id(cur) in seen:
                continue
            seen.add(id(cur))
            stack.extend(cur)


def canonicalize(value: Any) -> str:
    """Serialize a JSON-shaped value into its canonical string form.

    Rules
    - Object keys are sorted recursively.
    - Arrays keep their order.
    - Compact separators, non-ASCII emitted verbatim.

    Preconditions (violations raise SerializationError, nothing is coerced):
    - Keys are strings.
    - Floats are finite.
    - No cycles.
    - Values are dict/list/tuple/str/int/float/bool/None.
    """

    _require_str_keys(value)
    try:
        return json.dumps(
            value,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError, RecursionError) as e:
        raise SerializationError(f"value has no canonical form: {e}") from e


def digest(text: str) -> str:
    """SHA-256 of the UTF-8 bytes of `text`, as lowercase hex."""

    h = hashlib.sha256()
    h.update(text.encode("utf-8"))
    return h.hexdigest()


def hash_value(value: Any) -> str:
    """Content hash of a value: digest(canonicalize(value))."""

    return digest(canonicalize(value))


def chain_digest(hashes: Any) -> str:
    """Rolling digest over concatenated hex hashes, in the given order.

    Not a Merkle tree: any reordering changes the result.
    An empty sequence digests the empty string.
    """

    return digest("".join(str(h) for h in hashes))
