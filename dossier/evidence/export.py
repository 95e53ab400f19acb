from __future__ import annotations

import hashlib
import io
import json
import zipfile
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .models import EvidencePack
from .signing import (
    PUBLIC_KEY_PEM,
    SIGNATURE_JSON,
    SIGNATURE_SIG,
    load_private_key_pem,
    public_key_pem,
    sign_detached_ed25519,
    signature_payload,
    signing_metadata,
)

EVIDENCE_JSON = "evidence.json"
MANIFEST_TXT = "manifest.txt"

JSON_CONTENT_TYPE = "application/json"
ZIP_CONTENT_TYPE = "application/zip"

# Fixed member timestamp; ZIP bytes depend only on member contents.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class ZipSigning:
    private_key_path: str
    signer_id: Optional[str] = None
    embed_public_key: bool = True


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def render_json(pack: EvidencePack) -> bytes:
    """Serialize a pack as indented, key-sorted UTF-8 JSON.

    Formatting only: the hashes inside are carried over as built.
    """

    return (json.dumps(pack.to_dict(), indent=2, sort_keys=True, ensure_ascii=False) + "\n").encode("utf-8")


def render_manifest(pack: EvidencePack, members: List[Tuple[str, bytes]]) -> bytes:
    lines = [f"{_sha256_hex(data)}  {name}" for name, data in sorted(members, key=lambda m: m[0])]
    lines += [
        f"LISTING_ID  {pack.listing_id}",
        f"SCHEMA_VERSION  {pack.meta.schema_version}",
        f"GENERATED_AT  {pack.meta.generated_at}",
        f"TIMELINE_ENTRIES  {len(pack.timeline)}",
        f"TIMELINE_HASH_CHAIN  {pack.integrity.timeline_hash_chain}",
        f"PACK_HASH  {pack.pack_hash}",
    ]
    return ("\n".join(lines) + "\n").encode("utf-8")


def _zip_bytes(members: List[Tuple[str, bytes]]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in members:
            info = zipfile.ZipInfo(name, date_time=_ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, data)
    return buf.getvalue()


def render_zip(pack: EvidencePack, *, signing: Optional[ZipSigning] = None) -> bytes:
    """Package a pack as a ZIP archive.

    Members
    - evidence.json
    - manifest.txt (sha256 of every other member, plus the pack hashes)
    - (optional) signature.json, signature.sig, public_key.pem

    Security notes:
    - The signature covers listing_id, pack_hash, timeline_hash_chain and the
      sha256 of evidence.json, not the manifest.
    - An embedded public key lets anyone check the signature but proves
      nothing about who signed; verify against a trusted key for that.
    """

    evidence = render_json(pack)
    members: List[Tuple[str, bytes]] = [(EVIDENCE_JSON, evidence)]

    if signing is not None:
        key = load_private_key_pem(signing.private_key_path)
        payload = signature_payload(
            listing_id=pack.listing_id,
            pack_hash=pack.pack_hash,
            timeline_hash_chain=pack.integrity.timeline_hash_chain,
            evidence_json_sha256=_sha256_hex(evidence),
        )
        sig_b64 = sign_detached_ed25519(key, payload)
        sig_meta: Dict[str, Any] = signing_metadata(signer_id=signing.signer_id, payload=payload)
        members.append((SIGNATURE_JSON, (json.dumps(sig_meta, indent=2, sort_keys=True) + "\n").encode("utf-8")))
        members.append((SIGNATURE_SIG, (sig_b64 + "\n").encode("ascii")))
        if signing.embed_public_key:
            members.append((PUBLIC_KEY_PEM, public_key_pem(key.public_key())))

    members.append((MANIFEST_TXT, render_manifest(pack, members)))
    return _zip_bytes(members)


def pack_filename(pack: EvidencePack, extension: str) -> str:
    return f"evidence-{pack.listing_id}.{extension}"

