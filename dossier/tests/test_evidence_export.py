import hashlib
import io
import json
import zipfile

import pytest

from dossier.core.storage.sqlite_store import SQLiteQueryStore
from dossier.evidence.assembler import build_evidence_pack
from dossier.evidence.export import ZipSigning, pack_filename, render_json, render_zip
from dossier.evidence.models import EvidenceRequester
from dossier.evidence.signing import generate_ed25519_keypair
from dossier.evidence.verify import verify_evidence_zip_details
from dossier.tests.seed import LISTING_ID

ADMIN = EvidenceRequester(actor_type="user", actor_id="admin-user-0001", role="admin")


@pytest.fixture
def pack(seeded_db, fixed_clock):
    return build_evidence_pack(SQLiteQueryStore(seeded_db), LISTING_ID, ADMIN, format="zip", clock=fixed_clock)


@pytest.fixture
def keypair(tmp_path):
    return generate_ed25519_keypair(str(tmp_path / "keys"))


def _members(data: bytes) -> dict:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return {name: zf.read(name) for name in zf.namelist()}


def _rezip(members: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return buf.getvalue()


def test_render_json_is_sorted_and_newline_terminated(pack) -> None:
    data = render_json(pack)
    assert data.endswith(b"\n")
    assert json.loads(data) == json.loads(json.dumps(pack.to_dict()))
    assert pack_filename(pack, "json") == f"evidence-{LISTING_ID}.json"


def test_unsigned_zip_members_and_manifest(pack) -> None:
    members = _members(render_zip(pack))
    assert set(members) == {"evidence.json", "manifest.txt"}

    manifest = members["manifest.txt"].decode("utf-8").splitlines()
    assert manifest[0] == f"{hashlib.sha256(members['evidence.json']).hexdigest()}  evidence.json"
    assert f"LISTING_ID  {LISTING_ID}" in manifest
    assert f"PACK_HASH  {pack.pack_hash}" in manifest
    assert f"TIMELINE_ENTRIES  {len(pack.timeline)}" in manifest


def test_unsigned_zip_is_deterministic(pack) -> None:
    assert render_zip(pack) == render_zip(pack)


def test_unsigned_zip_verifies(pack) -> None:
    details = verify_evidence_zip_details(render_zip(pack))
    assert details["ok"] is True
    assert details["integrity_ok"] is True
    assert details["pack_hash"] == pack.pack_hash
    assert details["signature_present"] is False
    assert details["signature_ok"] is None


def test_signed_zip_verifies_against_trusted_key(pack, keypair) -> None:
    data = render_zip(pack, signing=ZipSigning(keypair.private_key_path, signer_id="ops-1"))
    members = _members(data)
    assert {"signature.json", "signature.sig", "public_key.pem"} <= set(members)
    assert json.loads(members["signature.json"])["payload"]["pack_hash"] == pack.pack_hash

    with open(keypair.public_key_path, "rb") as f:
        trusted = f.read()
    details = verify_evidence_zip_details(data, public_key_pem=trusted)
    assert details["ok"] is True
    assert details["signature_ok"] is True
    assert details["signature_trusted"] is True
    assert details["signer_id"] == "ops-1"


def test_signed_zip_with_embedded_key_is_untrusted(pack, keypair) -> None:
    details = verify_evidence_zip_details(render_zip(pack, signing=ZipSigning(keypair.private_key_path)))
    assert details["signature_ok"] is True
    assert details["signature_trusted"] is False


def test_signed_zip_without_embedded_key_needs_trusted_key(pack, keypair) -> None:
    data = render_zip(pack, signing=ZipSigning(keypair.private_key_path, embed_public_key=False))
    assert "public_key.pem" not in _members(data)
    details = verify_evidence_zip_details(data)
    assert details["signature_present"] is True
    assert details["signature_ok"] is None


def test_wrong_trusted_key_fails(pack, keypair, tmp_path) -> None:
    other = generate_ed25519_keypair(str(tmp_path / "other"))
    data = render_zip(pack, signing=ZipSigning(keypair.private_key_path))
    with open(other.public_key_path, "rb") as f:
        details = verify_evidence_zip_details(data, public_key_pem=f.read())
    assert details["ok"] is False
    assert details["signature_ok"] is False


def test_tampered_evidence_json_fails(pack, keypair) -> None:
    members = _members(render_zip(pack, signing=ZipSigning(keypair.private_key_path)))
    doc = json.loads(members["evidence.json"])
    doc["subject"]["listing"]["title"] = "Edited"
    members["evidence.json"] = json.dumps(doc).encode("utf-8")

    details = verify_evidence_zip_details(_rezip(members))
    assert details["ok"] is False
    assert "hash mismatch: evidence.json" in details["errors"]
    assert "pack hash mismatch" in details["errors"]
    assert "signed payload does not match evidence.json" in details["errors"]


def test_extra_member_is_flagged(pack) -> None:
    members = _members(render_zip(pack))
    members["notes.txt"] = b"added later"
    details = verify_evidence_zip_details(_rezip(members))
    assert "unlisted member: notes.txt" in details["errors"]


def test_non_zip_input() -> None:
    assert verify_evidence_zip_details(b"{}")["errors"] == ["not a zip archive"]
