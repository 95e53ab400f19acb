from __future__ import annotations

import hashlib
import io
import json
import re
import zipfile
from copy import deepcopy
from typing import Any, Dict, List, Mapping, Optional

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from dossier.core.canonical import chain_digest, hash_value
from dossier.core.errors import SerializationError

from .export import EVIDENCE_JSON, MANIFEST_TXT
from .signing import PUBLIC_KEY_PEM, SIGNATURE_JSON, SIGNATURE_SIG, load_public_key_pem, verify_detached_ed25519

_HEX64 = re.compile(r"^[0-9a-f]{64}$")


def _entry_hash_ok(entry: Mapping[str, Any]) -> bool:
    base = {k: v for k, v in entry.items() if k != "entry_hash"}
    return hash_value(base) == entry.get("entry_hash")


def verify_evidence_pack_details(pack: Any) -> Dict[str, Any]:
    """Recompute every hash in an exported pack and report what matches.

    Checks
    - each timeline entry_hash covers the rest of its entry
    - timeline_hash_chain covers the entry hashes in order
    - pack_hash covers the pack minus integrity.pack_hash
    - row_count.audit_log / row_count.reviews match the list lengths

    Security notes:
    - Integrity only. Whoever can edit a pack can also recompute its hashes;
      authenticity needs the ZIP signature.
    """

    if not isinstance(pack, Mapping):
        return {"ok": False, "errors": ["pack is not a JSON object"]}

    errors: List[str] = []
    integrity = pack.get("integrity") if isinstance(pack.get("integrity"), Mapping) else {}
    timeline = pack.get("timeline") if isinstance(pack.get("timeline"), list) else None
    subject = pack.get("subject") if isinstance(pack.get("subject"), Mapping) else {}
    if timeline is None:
        return {"ok": False, "errors": ["missing timeline"]}

    bad_entries: List[int] = []
    hashes: List[str] = []
    try:
        for i, entry in enumerate(timeline):
            if not isinstance(entry, Mapping) or not _entry_hash_ok(entry):
                bad_entries.append(i)
            hashes.append(str(entry.get("entry_hash", "")) if isinstance(entry, Mapping) else "")
        actual_chain = chain_digest(hashes)

        body = deepcopy(dict(pack))
        body_integrity = dict(integrity)
        body_integrity.pop("pack_hash", None)
        body["integrity"] = body_integrity
        actual_pack_hash = hash_value(body)
    except SerializationError as e:
        return {"ok": False, "errors": [f"pack has no canonical form: {e}"]}

    if bad_entries:
        errors.append(f"entry hash mismatch at {bad_entries}")

    expected_chain = integrity.get("timeline_hash_chain")
    chain_ok = actual_chain == expected_chain
    if not chain_ok:
        errors.append("timeline hash chain mismatch")

    expected_pack_hash = integrity.get("pack_hash")
    pack_hash_ok = actual_pack_hash == expected_pack_hash
    if not pack_hash_ok:
        errors.append("pack hash mismatch")

    row_count = integrity.get("row_count") if isinstance(integrity.get("row_count"), Mapping) else {}
    reviews = subject.get("reviews") if isinstance(subject.get("reviews"), list) else []
    if row_count.get("audit_log") != len(timeline):
        errors.append("row_count.audit_log does not match timeline length")
    if row_count.get("reviews") != len(reviews):
        errors.append("row_count.reviews does not match reviews length")

    return {
        "ok": not errors,
        "entries_ok": not bad_entries,
        "bad_entries": bad_entries,
        "chain_ok": chain_ok,
        "expected_timeline_hash_chain": expected_chain,
        "actual_timeline_hash_chain": actual_chain,
        "pack_hash_ok": pack_hash_ok,
        "expected_pack_hash": expected_pack_hash,
        "actual_pack_hash": actual_pack_hash,
        "errors": errors,
    }


def verify_evidence_pack(pack: Any) -> bool:
    return bool(verify_evidence_pack_details(pack).get("ok"))


def _parse_manifest(text: str) -> Dict[str, Any]:
    files: Dict[str, str] = {}
    values: Dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip():
            continue
        left, _, right = line.partition("  ")
        if _HEX64.match(left):
            files[right.strip()] = left
        else:
            values[left] = right.strip()
    return {"files": files, "values": values}


def verify_evidence_zip_details(
    data: bytes,
    *,
    public_key_pem: Optional[bytes] = None,
) -> Dict[str, Any]:
    """Verify an exported ZIP pack.

    Checks the manifest hashes of every member, the pack itself (see
    verify_evidence_pack_details) and, when present, the detached signature.

    Security notes:
    - Pass public_key_pem to verify against a trusted key. Without it the
      embedded public_key.pem is used and the result is marked untrusted.
    - Local only; nothing is fetched.
    """

    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile:
        return {"ok": False, "errors": ["not a zip archive"]}

    errors: List[str] = []
    with zf:
        names = set(zf.namelist())
        if MANIFEST_TXT not in names or EVIDENCE_JSON not in names:
            return {"ok": False, "errors": ["missing evidence.json or manifest.txt"]}
        members = {name: zf.read(name) for name in names}

    manifest = _parse_manifest(members[MANIFEST_TXT].decode("utf-8", errors="replace"))
    for name in sorted(names - {MANIFEST_TXT}):
        expected = manifest["files"].get(name)
        if expected is None:
            errors.append(f"unlisted member: {name}")
        elif hashlib.sha256(members[name]).hexdigest() != expected:
            errors.append(f"hash mismatch: {name}")
    for name in manifest["files"]:
        if name not in names:
            errors.append(f"missing member: {name}")

    try:
        pack = json.loads(members[EVIDENCE_JSON].decode("utf-8"))
    except ValueError:
        return {"ok": False, "errors": errors + ["evidence.json is not valid JSON"]}

    pack_details = verify_evidence_pack_details(pack)
    errors.extend(pack_details.get("errors", []))
    if manifest["values"].get("PACK_HASH") != pack_details.get("expected_pack_hash"):
        errors.append("manifest PACK_HASH does not match evidence.json")

    signature_present = SIGNATURE_JSON in names and SIGNATURE_SIG in names
    signature_ok: Optional[bool] = None
    signature_trusted = False
    signer_id = None
    if signature_present:
        pub: Optional[Ed25519PublicKey] = None
        try:
            sig_obj = json.loads(members[SIGNATURE_JSON].decode("utf-8"))
            signer_id = sig_obj.get("signer_id") if isinstance(sig_obj, dict) else None
            signed_payload = sig_obj.get("payload") if isinstance(sig_obj, dict) else None
            if public_key_pem:
                pub = load_public_key_pem(public_key_pem)
                signature_trusted = True
            elif PUBLIC_KEY_PEM in members:
                pub = load_public_key_pem(members[PUBLIC_KEY_PEM])
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            signed_payload = None
            signature_ok = False
            errors.append(f"signature verification error: {e}")

        if pub is not None:
            if not isinstance(signed_payload, dict):
                signature_ok = False
                errors.append("signature.json missing payload")
            else:
                evidence_sha = hashlib.sha256(members[EVIDENCE_JSON]).hexdigest()
                if signed_payload.get("evidence_json_sha256") != evidence_sha:
                    errors.append("signed payload does not match evidence.json")
                if signed_payload.get("pack_hash") != pack_details.get("expected_pack_hash"):
                    errors.append("signed payload does not match pack_hash")
                sig_b64 = members[SIGNATURE_SIG].decode("ascii", errors="replace").strip()
                signature_ok = verify_detached_ed25519(pub, signed_payload, sig_b64)
                if not signature_ok:
                    errors.append("signature verification failed")

    return {
        "ok": not errors,
        "integrity_ok": bool(pack_details.get("ok")),
        "pack_hash": pack_details.get("expected_pack_hash"),
        "signature_present": signature_present,
        "signature_ok": signature_ok,
        "signature_trusted": signature_trusted,
        "signer_id": signer_id,
        "errors": errors,
    }
