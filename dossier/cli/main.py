from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import List

from dossier.core.access import EvidenceUser, GateReason, RequesterRole, can_access_evidence
from dossier.core.config import DossierConfig
from dossier.core.errors import DossierError, NotFoundError
from dossier.core.storage.sqlite_store import SQLiteQueryStore, init_schema
from dossier.evidence.assembler import EvidenceAssembler
from dossier.evidence.audit import AuditDispatcher, SQLiteAuditSink
from dossier.evidence.export import ZipSigning, render_json, render_zip
from dossier.evidence.models import BuildOptions, EvidenceRequester, PackFormat
from dossier.evidence.resolver import EntityResolver
from dossier.evidence.signing import generate_ed25519_keypair
from dossier.evidence.verify import verify_evidence_pack_details, verify_evidence_zip_details
from dossier.utils.json_safe import to_jsonable

EXIT_OK = 0
EXIT_VERIFY_FAILED = 1
EXIT_USAGE = 2
EXIT_DENIED = 3
EXIT_NOT_FOUND = 4


def _print_json(obj) -> None:
    print(json.dumps(to_jsonable(obj), indent=2, sort_keys=True))


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the Dossier API server.

    Security notes:
    - Requests must carry X-Dossier-API-Key matching DOSSIER_API_KEYS.
    - Bind to 127.0.0.1 by default (safer than 0.0.0.0).

    """

    import uvicorn

    from dossier.api.server import create_app

    app = create_app(db_path=args.db)
    uvicorn.run(app, host=args.host, port=int(args.port), log_level=args.log_level.lower())
    return EXIT_OK


def cmd_db_init(args: argparse.Namespace) -> int:
    """Create the evidence-source tables in a SQLite DB."""

    db = Path(args.db)
    init_schema(db)
    _print_json({"ok": True, "db": str(db)})
    return EXIT_OK


def cmd_build_pack(args: argparse.Namespace) -> int:
    """Build an evidence pack for one listing and write it to --out (or stdout).

    Security notes:
    - The same access gate as the API runs first; --user-id/--role describe
      the operator the pack is generated for.
    - The generation is recorded in audit_log like any API request.

    """

    cfg = DossierConfig.from_env(db_path=args.db)
    if cfg.db_path is None:
        print("error: --db or DOSSIER_DB_PATH is required", file=sys.stderr)
        return EXIT_USAGE
    if not cfg.db_path.exists():
        print(f"error: database not found: {cfg.db_path}", file=sys.stderr)
        return EXIT_USAGE

    fmt = PackFormat(args.format)
    if fmt == PackFormat.PDF:
        print("error: pdf output is not available; use json or zip", file=sys.stderr)
        return EXIT_USAGE
    if fmt == PackFormat.ZIP and not args.out:
        print("error: zip output needs --out", file=sys.stderr)
        return EXIT_USAGE

    resolver = EntityResolver(SQLiteQueryStore(cfg.db_path))
    user = EvidenceUser(user_id=args.user_id, role=RequesterRole.parse(args.role))
    decision = can_access_evidence(user, args.listing_id, resolver=resolver)
    if not decision.allowed:
        if decision.reason == GateReason.LISTING_NOT_FOUND:
            print(f"error: {decision.reason}", file=sys.stderr)
            return EXIT_NOT_FOUND
        print(f"error: access denied: {decision.reason}", file=sys.stderr)
        return EXIT_DENIED

    dispatcher = None
    if not args.no_audit:
        dispatcher = AuditDispatcher(
            SQLiteAuditSink(cfg.effective_audit_db_path, timeout_sec=cfg.audit_timeout_sec),
            timeout_sec=cfg.audit_timeout_sec,
        )
    assembler = EvidenceAssembler(
        resolver,
        audit=dispatcher,
        max_workers=cfg.fanout_workers,
        timezone=cfg.timezone,
    )
    requester = EvidenceRequester(actor_type="user", actor_id=user.user_id, role=user.role.value)
    try:
        pack = assembler.build(
            args.listing_id,
            requester,
            BuildOptions(include_viewings=not args.no_viewings, format=fmt),
        )
    except NotFoundError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_NOT_FOUND
    finally:
        if dispatcher is not None:
            dispatcher.close(timeout=cfg.audit_timeout_sec)

    if fmt == PackFormat.ZIP:
        signing = None
        key_path = args.key or cfg.signing_key_path
        if key_path:
            signing = ZipSigning(
                private_key_path=key_path,
                signer_id=args.signer_id or cfg.signer_id,
                embed_public_key=not args.no_embed_pubkey,
            )
        data = render_zip(pack, signing=signing)
    else:
        data = render_json(pack)

    if args.out:
        Path(args.out).write_bytes(data)
        _print_json({"ok": True, "out": os.path.abspath(args.out), "pack_hash": pack.pack_hash})
    else:
        sys.stdout.write(data.decode("utf-8"))
    return EXIT_OK


def cmd_verify_pack(args: argparse.Namespace) -> int:
    """Verify an exported evidence.json or ZIP pack."""

    path = Path(args.path)
    if not path.is_file():
        print(f"error: file not found: {path}", file=sys.stderr)
        return EXIT_USAGE

    data = path.read_bytes()
    if data[:2] == b"PK":
        pub = Path(args.pubkey).read_bytes() if args.pubkey else None
        details = verify_evidence_zip_details(data, public_key_pem=pub)
    else:
        try:
            pack = json.loads(data.decode("utf-8"))
        except ValueError as e:
            print(f"error: not a JSON pack: {e}", file=sys.stderr)
            return EXIT_USAGE
        details = verify_evidence_pack_details(pack)

    _print_json(details)
    return EXIT_OK if details.get("ok") else EXIT_VERIFY_FAILED


def cmd_keygen(args: argparse.Namespace) -> int:
    """Generate an Ed25519 keypair for signing ZIP packs.

    Security notes:
    - Store the private key securely. Anyone with it can forge signatures.

    """

    kp = generate_ed25519_keypair(os.path.abspath(args.out_dir), prefix=args.prefix)
    _print_json({"private_key": kp.private_key_path, "public_key": kp.public_key_path})
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI parser."""
    p = argparse.ArgumentParser(prog="dossier", description="Listing evidence pack CLI")
    p.add_argument("--log-level", default="WARNING", help="Python logging level (default: WARNING)")
    sub = p.add_subparsers(dest="cmd", required=True)

    dbi = sub.add_parser("db-init", help="Create the evidence-source tables in a SQLite DB")
    dbi.add_argument("--db", required=True, help="Path to SQLite DB file")
    dbi.set_defaults(func=cmd_db_init)

    bp = sub.add_parser("build-pack", help="Build an evidence pack for a listing")
    bp.add_argument("listing_id", help="Listing id")
    bp.add_argument("--db", default=None, help="SQLite DB path (default: DOSSIER_DB_PATH)")
    bp.add_argument("--user-id", required=True, help="Requesting user id")
    bp.add_argument("--role", default="admin", help="Requesting user role (default: admin)")
    bp.add_argument("--format", choices=[f.value for f in PackFormat], default="json")
    bp.add_argument("--no-viewings", action="store_true", help="Omit viewings from the pack")
    bp.add_argument("--out", default=None, help="Output file (required for zip)")
    bp.add_argument("--key", default=None, help="Ed25519 PRIVATE key PEM for signing zip output")
    bp.add_argument("--signer-id", default=None, help="Optional signer id")
    bp.add_argument(
        "--no-embed-pubkey",
        action="store_true",
        help="Do not embed the public key in signed zip output",
    )
    bp.add_argument("--no-audit", action="store_true", help="Do not record the generation in audit_log")
    bp.set_defaults(func=cmd_build_pack)

    vp = sub.add_parser("verify-pack", help="Verify an exported evidence.json or zip")
    vp.add_argument("path", help="Path to evidence.json or .zip")
    vp.add_argument("--pubkey", default=None, help="Trusted Ed25519 public key PEM (zip only)")
    vp.set_defaults(func=cmd_verify_pack)

    kg = sub.add_parser("keygen", help="Generate an Ed25519 keypair for signing")
    kg.add_argument("--out-dir", default="keys", help="Output directory")
    kg.add_argument("--prefix", default="dossier_ed25519", help="Filename prefix")
    kg.set_defaults(func=cmd_keygen)

    sv = sub.add_parser("serve", help="Run the Dossier FastAPI server")
    sv.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    sv.add_argument("--port", type=int, default=8080, help="Bind port (default: 8080)")
    sv.add_argument("--db", default=None, help="SQLite DB path (default: DOSSIER_DB_PATH)")
    sv.set_defaults(func=cmd_serve)

    return p


def main(argv: List[str] | None = None) -> int:
    """CLI entry."""
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=str(getattr(args, "log_level", "WARNING")).upper())
    try:
        return int(args.func(args))
    except DossierError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
