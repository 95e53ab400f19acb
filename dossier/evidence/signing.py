from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from dossier.core.canonical import canonicalize

# Filenames used inside exported ZIP packs.
SIGNATURE_JSON = "signature.json"
SIGNATURE_SIG = "signature.sig"
PUBLIC_KEY_PEM = "public_key.pem"

SIGNATURE_SCHEMA = {"name": "dossier.evidence_signature", "version": "1.0"}


@dataclass(frozen=True)
class KeyPairPaths:
    private_key_path: str
    public_key_path: str


def generate_ed25519_keypair(out_dir: str, *, prefix: str = "dossier_ed25519") -> KeyPairPaths:
    """Generate an Ed25519 keypair on disk (PEM).

    Security notes:
    - The private key is written unencrypted; protect it with file permissions.

    """

    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)

    priv = Ed25519PrivateKey.generate()
    priv_path = out / f"{prefix}_private.pem"
    pub_path = out / f"{prefix}_public.pem"

    priv_path.write_bytes(
        priv.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    pub_path.write_bytes(public_key_pem(priv.public_key()))
    return KeyPairPaths(private_key_path=str(priv_path), public_key_path=str(pub_path))


def public_key_pem(key: Ed25519PublicKey) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_private_key_pem(path: str) -> Ed25519PrivateKey:
    key = serialization.load_pem_private_key(Path(path).read_bytes(), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise TypeError("not an Ed25519 private key")
    return key


def load_public_key_pem(data: bytes) -> Ed25519PublicKey:
    key = serialization.load_pem_public_key(data)
    if not isinstance(key, Ed25519PublicKey):
        raise TypeError("not an Ed25519 public key")
    return key


def signature_payload(
    *,
    listing_id: str,
    pack_hash: str,
    timeline_hash_chain: str,
    evidence_json_sha256: str,
) -> Dict[str, Any]:
    """The exact mapping that gets signed.

    Binding the evidence.json file hash means the signature covers the
    exported bytes, not just the in-pack hashes.
    """

    return {
        "listing_id": listing_id,
        "pack_hash": pack_hash,
        "timeline_hash_chain": timeline_hash_chain,
        "evidence_json_sha256": evidence_json_sha256,
    }


def sign_detached_ed25519(private_key: Ed25519PrivateKey, payload: Mapping[str, Any]) -> str:
    """Sign the canonical form of payload. Returns the base64 signature."""

    sig = private_key.sign(canonicalize(dict(payload)).encode("utf-8"))
    return base64.b64encode(sig).decode("ascii")


def verify_detached_ed25519(public_key: Ed25519PublicKey, payload: Mapping[str, Any], signature_b64: str) -> bool:
    try:
        sig = base64.b64decode(signature_b64.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError):
        return False
    try:
        public_key.verify(sig, canonicalize(dict(payload)).encode("utf-8"))
    except InvalidSignature:
        return False
    return True


def signing_metadata(*, signer_id: Optional[str], payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "schema": dict(SIGNATURE_SCHEMA),
        "algorithm": "Ed25519",
        "signed_at": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "signer_id": signer_id,
        "payload": dict(payload),
    }
