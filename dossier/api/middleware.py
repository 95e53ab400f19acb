from __future__ import annotations

import logging
import time
from typing import Callable, Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from dossier.core.redaction import redact_id

log = logging.getLogger("dossier.api")

REQUEST_ID_HEADER = "X-Request-ID"


def _clean_request_id(raw: Optional[str], max_len: int) -> str:
    if raw and len(raw) <= max_len and raw.isprintable():
        return raw
    return uuid4().hex


class EvidenceRequestMiddleware(BaseHTTPMiddleware):
    """Request correlation and access log for the evidence API.

    Every response carries X-Request-ID (the client's, if acceptable, else a
    fresh one). One "api_request" line is logged per request, including the
    pack hash when a pack was served.

    Security notes:
    - No bodies, no query strings, no API keys.
    - The caller id is logged redacted; it is set by the endpoint after
      authentication, so unauthenticated requests log actor_id=None.
    - Client request ids that are long or non-printable are replaced.

    """

    def __init__(self, app, *, pack_hash_header: str, max_request_id_len: int = 128):
        super().__init__(app)
        self._pack_hash_header = pack_hash_header
        self._max_len = max_request_id_len

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.monotonic()
        rid = _clean_request_id(request.headers.get(REQUEST_ID_HEADER), self._max_len)
        request.state.request_id = rid

        response: Optional[Response] = None
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = rid
            return response
        finally:
            user_id = getattr(request.state, "user_id", None)
            log.info(
                "api_request",
                extra={
                    "request_id": rid,
                    "actor_id": redact_id(user_id) if user_id else None,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": getattr(response, "status_code", None),
                    "pack_hash": response.headers.get(self._pack_hash_header) if response is not None else None,
                    "duration_ms": int((time.monotonic() - start) * 1000),
                },
            )
