from __future__ import annotations

import hmac
import os
from typing import Dict, Optional

from dossier.core.access import EvidenceUser, RequesterRole

API_KEY_HEADER = "X-Dossier-API-Key"


def _parse_api_keys(raw: str) -> Dict[str, EvidenceUser]:
    """Parse DOSSIER_API_KEYS into an API key -> EvidenceUser mapping.

    Format (semicolon-separated entries):
      <APIKEY>:<USER_ID>:<ROLE>;

    Example:
      DOSSIER_API_KEYS="k1:7f1c...:admin;k2:0b9e...:poster"

    Security notes:
    - Env var is trusted server configuration.
    - Malformed entries are ignored (fail-closed by omission).
    - Unrecognized roles parse to RequesterRole.UNKNOWN.

    """

    out: Dict[str, EvidenceUser] = {}
    for entry in (raw or "").split(";"):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":", 2)
        if len(parts) != 3:
            continue
        key, user_id, role = parts[0].strip(), parts[1].strip(), parts[2].strip()
        if not key or not user_id:
            continue
        out[key] = EvidenceUser(user_id=user_id, role=RequesterRole.parse(role))
    return out


def load_auth_config() -> Dict[str, EvidenceUser]:
    return _parse_api_keys(os.environ.get("DOSSIER_API_KEYS", ""))


def authenticate(api_key: Optional[str], mapping: Dict[str, EvidenceUser]) -> Optional[EvidenceUser]:
    """Resolve an API key to its user.

    Security notes:
    - Constant-time comparison against every configured key.
    - Returns None on failure; the access gate turns that into a 401.

    """

    if not api_key:
        return None

    found: Optional[EvidenceUser] = None
    for k, user in mapping.items():
        if hmac.compare_digest(k.encode("utf-8"), api_key.encode("utf-8")):
            found = user
    return found
