from __future__ import annotations

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ApiError(BaseModel):
    """Standard API error payload."""

    error: str
    reason: Optional[str] = None


class HealthOut(BaseModel):
    ok: bool
    service: str
    version: str
    schema_version: str
    persistence: bool


class VerifyPackOut(BaseModel):
    """Verification report for a JSON evidence pack."""

    ok: bool
    pack_hash: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)
