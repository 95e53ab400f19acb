from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_TIMEZONE = "Europe/Malta"


def _env_str(name: str) -> Optional[str]:
    raw = os.environ.get(name, "").strip()
    return raw or None


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable.

    Security notes:
    - Env vars are treated as trusted server configuration.
    - Invalid values fall back to the default.

    """

    raw = os.environ.get(name, "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


@dataclass(frozen=True, slots=True)
class DossierConfig:
    """Configuration shared by the API service and the CLI.

    Security notes:
    - db_path is opened read-only for evidence queries.
    - audit_db_path receives audit writes; it defaults to db_path.
    - signing_key_path points at an unencrypted Ed25519 PEM; protect it with
      file permissions.

    """

    db_path: Optional[Path] = None
    audit_db_path: Optional[Path] = None
    timezone: str = DEFAULT_TIMEZONE
    fanout_workers: int = 8
    audit_timeout_sec: float = 5.0
    signing_key_path: Optional[str] = None
    signer_id: Optional[str] = None
    log_level: str = "INFO"

    @property
    def effective_audit_db_path(self) -> Optional[Path]:
        return self.audit_db_path or self.db_path

    @classmethod
    def from_env(cls, *, db_path: Optional[str] = None) -> "DossierConfig":
        """Build config from DOSSIER_* environment variables.

        An explicit db_path argument wins over DOSSIER_DB_PATH.
        """

        raw_db = db_path or _env_str("DOSSIER_DB_PATH")
        raw_audit = _env_str("DOSSIER_AUDIT_DB_PATH")
        return cls(
            db_path=Path(raw_db) if raw_db else None,
            audit_db_path=Path(raw_audit) if raw_audit else None,
            timezone=_env_str("DOSSIER_TIMEZONE") or DEFAULT_TIMEZONE,
            fanout_workers=max(1, _env_int("DOSSIER_FANOUT_WORKERS", 8)),
            audit_timeout_sec=max(0.1, _env_float("DOSSIER_AUDIT_TIMEOUT_SEC", 5.0)),
            signing_key_path=_env_str("DOSSIER_SIGNING_KEY"),
            signer_id=_env_str("DOSSIER_SIGNER_ID"),
            log_level=(_env_str("DOSSIER_LOG_LEVEL") or "INFO").upper(),
        )
