from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, Header, Query, Request, Response
from fastapi.responses import JSONResponse

from dossier.api.auth import authenticate, load_auth_config
from dossier.api.middleware import EvidenceRequestMiddleware
from dossier.api.models import ApiError, HealthOut, VerifyPackOut
from dossier.core.access import can_access_evidence
from dossier.core.config import DossierConfig
from dossier.core.errors import DossierError, NotFoundError
from dossier.core.redaction import redact_id
from dossier.core.storage.sqlite_store import SQLiteQueryStore
from dossier.evidence.assembler import Clock, EvidenceAssembler
from dossier.evidence.audit import AuditDispatcher, AuditSink, SQLiteAuditSink
from dossier.evidence.export import (
    JSON_CONTENT_TYPE,
    ZIP_CONTENT_TYPE,
    ZipSigning,
    pack_filename,
    render_json,
    render_zip,
)
from dossier.evidence.models import SCHEMA_VERSION, BuildOptions, EvidenceRequester, PackFormat
from dossier.evidence.resolver import EntityResolver
from dossier.evidence.verify import verify_evidence_pack_details

log = logging.getLogger("dossier.api")

API_VERSION = "0.1"
PACK_HASH_HEADER = "X-Dossier-Pack-Hash"

_INCLUDE_VALUES = {"basic", "full"}

_ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    code: {"model": ApiError} for code in (400, 401, 403, 404, 500, 501, 503)
}


def _error(status_code: int, error: str, reason: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": error}
    if reason is not None:
        body["reason"] = reason
    return JSONResponse(status_code=status_code, content=body)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def create_app(
    *,
    db_path: Optional[str] = None,
    config: Optional[DossierConfig] = None,
    audit_sink: Optional[AuditSink] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """Create the FastAPI app.

    audit_sink and clock are injection points for embedding hosts and tests;
    by default audit records go to audit_log in the audit DB.

    """

    cfg = config or DossierConfig.from_env(db_path=db_path)
    mapping = load_auth_config()

    # Logging: safe defaults (no request bodies), can be configured by host app.
    log.setLevel(cfg.log_level)

    assembler: Optional[EvidenceAssembler] = None
    dispatcher: Optional[AuditDispatcher] = None
    if cfg.db_path is not None:
        sink = audit_sink
        if sink is None and cfg.effective_audit_db_path is not None:
            sink = SQLiteAuditSink(cfg.effective_audit_db_path, timeout_sec=cfg.audit_timeout_sec)
        if sink is not None:
            dispatcher = AuditDispatcher(sink, timeout_sec=cfg.audit_timeout_sec)
        assembler = EvidenceAssembler(
            EntityResolver(SQLiteQueryStore(cfg.db_path)),
            audit=dispatcher,
            clock=clock,
            max_workers=cfg.fanout_workers,
            timezone=cfg.timezone,
        )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        if dispatcher is not None:
            dispatcher.close(timeout=cfg.audit_timeout_sec)

    app = FastAPI(title="Dossier API", version=API_VERSION, lifespan=lifespan)
    app.state.cfg = cfg
    app.state.assembler = assembler
    app.state.audit = dispatcher

    # Request correlation and access log.
    app.add_middleware(EvidenceRequestMiddleware, pack_hash_header=PACK_HASH_HEADER)

    zip_signing: Optional[ZipSigning] = None
    if cfg.signing_key_path:
        zip_signing = ZipSigning(private_key_path=cfg.signing_key_path, signer_id=cfg.signer_id)

    @app.get("/health", response_model=HealthOut)
    def health() -> HealthOut:
        return HealthOut(
            ok=True,
            service="dossier",
            version=API_VERSION,
            schema_version=SCHEMA_VERSION,
            persistence=assembler is not None,
        )

    @app.get("/evidence/listing/{listing_id}", responses=_ERROR_RESPONSES)
    def evidence_pack_endpoint(
        listing_id: str,
        request: Request,
        format: str = Query(default="json"),
        include: str = Query(default="full"),
        x_dossier_api_key: Optional[str] = Header(default=None),
    ) -> Response:
        """Build and return the evidence pack for one listing.

        Security notes:
        - The access gate runs before any pack data is read.
        - Denials carry the gate's reason; nothing about the listing leaks
          beyond whether it exists.

        """

        if not _is_uuid(listing_id):
            return _error(400, "Bad Request", "listing id must be a UUID")
        try:
            pack_format = PackFormat(format)
        except ValueError:
            return _error(400, "Bad Request", "format must be one of json, pdf, zip")
        if include not in _INCLUDE_VALUES:
            return _error(400, "Bad Request", "include must be one of basic, full")
        if assembler is None:
            return _error(503, "Service Unavailable", "persistence_disabled")

        user = authenticate(x_dossier_api_key, mapping)
        if user is not None:
            request.state.user_id = user.user_id

        decision = can_access_evidence(user, listing_id, resolver=assembler.resolver)
        if not decision.allowed:
            if decision.rule == "authentication":
                return _error(401, "Unauthorized", decision.reason)
            log.info(
                "evidence_access_denied",
                extra={
                    "listing_id": listing_id,
                    "actor_id": redact_id(user.user_id if user else None),
                    "rule": decision.rule,
                },
            )
            return _error(403, "Forbidden", decision.reason)

        if pack_format == PackFormat.PDF:
            return _error(501, "Not Implemented", "PDF rendering is not available")

        requester = EvidenceRequester(actor_type="user", actor_id=user.user_id, role=user.role.value)
        options = BuildOptions(include_viewings=(include == "full"), format=pack_format)
        try:
            pack = assembler.build(listing_id, requester, options)
        except NotFoundError as e:
            return _error(404, "Not Found", str(e))
        except DossierError as e:
            log.exception(
                "evidence_build_failed",
                extra={"listing_id": listing_id, "request_id": getattr(request.state, "request_id", None)},
            )
            return _error(500, "Internal Server Error", e.__class__.__name__)

        headers = {PACK_HASH_HEADER: pack.pack_hash}
        if pack_format == PackFormat.ZIP:
            headers["Content-Disposition"] = f'attachment; filename="{pack_filename(pack, "zip")}"'
            return Response(content=render_zip(pack, signing=zip_signing), media_type=ZIP_CONTENT_TYPE, headers=headers)
        return Response(content=render_json(pack), media_type=JSON_CONTENT_TYPE, headers=headers)

    @app.post("/evidence/verify", response_model=VerifyPackOut, responses={401: {"model": ApiError}})
    def verify_pack_endpoint(
        request: Request,
        pack: Dict[str, Any] = Body(...),
        x_dossier_api_key: Optional[str] = Header(default=None),
    ) -> Any:
        """Recompute the hashes of a JSON pack.

        Security notes:
        - Integrity only; a verified pack may still have been rebuilt by
          someone holding the data.

        """

        user = authenticate(x_dossier_api_key, mapping)
        if user is None:
            return _error(401, "Unauthorized", "Authentication required")
        request.state.user_id = user.user_id

        details = verify_evidence_pack_details(pack)
        return VerifyPackOut(
            ok=bool(details.get("ok")),
            pack_hash=details.get("expected_pack_hash"),
            errors=list(details.get("errors") or []),
            details=details,
        )

    return app


def app_from_env() -> FastAPI:
    """uvicorn factory: `uvicorn dossier.api.server:app_from_env --factory`."""

    return create_app(config=DossierConfig.from_env())
