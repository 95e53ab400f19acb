import logging
import sqlite3
from contextlib import closing
from datetime import timedelta

import pytest

from dossier.core.canonical import chain_digest, hash_value
from dossier.core.errors import AuditWriteError, NotFoundError, SourceFetchError
from dossier.core.storage.sqlite_store import SQLiteQueryStore
from dossier.evidence.assembler import EvidenceAssembler, build_evidence_pack
from dossier.evidence.audit import AuditDispatcher
from dossier.evidence.models import BuildOptions, EvidenceRequester, PackFormat, TimelineEntry
from dossier.evidence.resolver import EntityResolver
from dossier.tests.seed import LEGACY_LISTING_ID, LISTING_ID, MISSING_LISTING_ID, POSTER_ID

ADMIN = EvidenceRequester(actor_type="user", actor_id="admin-user-0001", role="admin")


class FailingStore:
    """Delegates to a real store but fails any query touching one table."""

    def __init__(self, inner, fragment):
        self._inner = inner
        self._fragment = fragment

    def fetch_all(self, sql, params=()):
        if self._fragment in sql:
            raise sqlite3.OperationalError("disk I/O error")
        return self._inner.fetch_all(sql, params)


class FailingAuditSink:
    def record(self, actor_type, actor_id, action, entity, entity_id, payload):
        raise AuditWriteError("audit store unavailable")


def test_end_to_end_pack(seeded_db, audit_sink, fixed_clock) -> None:
    pack = build_evidence_pack(
        SQLiteQueryStore(seeded_db), LISTING_ID, ADMIN, audit_sink=audit_sink, clock=fixed_clock
    )
    d = pack.to_dict()

    assert d["meta"] == {
        "generated_at": "2024-06-01T12:00:00.000Z",
        "generated_by": {"actor_type": "user", "actor_id_redacted": "admi****0001", "role": "admin"},
        "format": "json",
        "schema_version": "1.0",
        "timezone": "Europe/Malta",
    }

    # 3 audit_events rows + 2 audit_log rows, merged by timestamp
    assert [e["action"] for e in d["timeline"]] == [
        "create_listing",
        "listing.edit",
        "listing.published",
        "message.sent",
        "listing.updated",
    ]
    assert d["integrity"]["row_count"] == {"audit_log": 5, "reviews": 2, "viewings": 1}
    assert d["integrity"]["timeline_hash_chain"] == chain_digest(e["entry_hash"] for e in d["timeline"])
    assert d["integrity"]["pack_hash"] == hash_value(pack.body())

    subject = d["subject"]
    assert subject["listing"]["poster_id_redacted"] == "a1b2****4c5d"
    assert POSTER_ID not in str(d)
    assert subject["poster"]["name"] == "Maria Borg"
    assert subject["matches"] == []
    assert len(subject["viewings"]) == 1
    assert [m["url"] for m in subject["media_manifest"]] == [
        "https://cdn.example.com/a.jpg",
        "https://cdn.example.com/b.jpg",
    ]


def test_generation_is_audited(seeded_db, audit_sink, fixed_clock) -> None:
    pack = build_evidence_pack(
        SQLiteQueryStore(seeded_db), LISTING_ID, ADMIN, format="zip", audit_sink=audit_sink, clock=fixed_clock
    )
    assert audit_sink.records == [
        {
            "actor_type": "user",
            "actor_id": "admin-user-0001",
            "action": "evidence.generate",
            "entity": "listing",
            "entity_id": LISTING_ID,
            "payload": {
                "format": "zip",
                "pack_hash": pack.pack_hash,
                "row_counts": {"audit_log": 5, "reviews": 2, "viewings": 1},
            },
        }
    ]
    assert pack.meta.format is PackFormat.ZIP


def test_frozen_inputs_reproduce_pack_hash(seeded_db, fixed_clock) -> None:
    store = SQLiteQueryStore(seeded_db)
    a = build_evidence_pack(store, LISTING_ID, ADMIN, clock=fixed_clock)
    b = build_evidence_pack(store, LISTING_ID, ADMIN, clock=fixed_clock)
    assert a.pack_hash == b.pack_hash
    assert a.to_dict() == b.to_dict()


def test_requester_and_clock_are_part_of_pack_hash(seeded_db, fixed_clock) -> None:
    store = SQLiteQueryStore(seeded_db)
    base = build_evidence_pack(store, LISTING_ID, ADMIN, clock=fixed_clock)
    later = build_evidence_pack(store, LISTING_ID, ADMIN, clock=lambda: fixed_clock() + timedelta(seconds=1))
    other = EvidenceRequester(actor_type="user", actor_id="moderator-0002", role="moderator")
    by_other = build_evidence_pack(store, LISTING_ID, other, clock=fixed_clock)
    assert len({base.pack_hash, later.pack_hash, by_other.pack_hash}) == 3
    assert base.integrity.timeline_hash_chain == later.integrity.timeline_hash_chain


def test_source_mutation_changes_pack_hash(seeded_db, fixed_clock) -> None:
    store = SQLiteQueryStore(seeded_db)
    before = build_evidence_pack(store, LISTING_ID, ADMIN, clock=fixed_clock)

    with closing(sqlite3.connect(str(seeded_db))) as con:
        con.execute("UPDATE reviews SET rating = 1 WHERE id = 'r1'")
        con.commit()
    after_review = build_evidence_pack(store, LISTING_ID, ADMIN, clock=fixed_clock)
    assert after_review.pack_hash != before.pack_hash
    assert after_review.integrity.timeline_hash_chain == before.integrity.timeline_hash_chain

    with closing(sqlite3.connect(str(seeded_db))) as con:
        con.execute("UPDATE audit_log SET action = 'listing.deleted' WHERE id = 'al1'")
        con.commit()
    after_event = build_evidence_pack(store, LISTING_ID, ADMIN, clock=fixed_clock)
    assert after_event.integrity.timeline_hash_chain != before.integrity.timeline_hash_chain


def test_chain_is_order_sensitive() -> None:
    common = dict(actor_type="system", actor_id_redacted="[none]", entity="listing", entity_id=LISTING_ID)
    e1 = TimelineEntry.create(ts="2024-01-01T00:00:00.000Z", action="a", payload_redacted={}, source_refs={}, **common)
    e2 = TimelineEntry.create(ts="2024-01-02T00:00:00.000Z", action="b", payload_redacted={}, source_refs={}, **common)
    assert chain_digest([e1.entry_hash, e2.entry_hash]) != chain_digest([e2.entry_hash, e1.entry_hash])

    e1_changed = TimelineEntry.create(
        ts="2024-01-01T00:00:00.000Z", action="a", payload_redacted={"k": 1}, source_refs={}, **common
    )
    assert e1_changed.entry_hash != e1.entry_hash


def test_viewings_key_only_when_requested(seeded_db, fixed_clock) -> None:
    store = SQLiteQueryStore(seeded_db)
    basic = build_evidence_pack(store, LISTING_ID, ADMIN, include_viewings=False, clock=fixed_clock)
    subject = basic.to_dict()["subject"]
    assert "viewings" not in subject
    # the standalone count is still reported
    assert basic.integrity.row_count.viewings == 1


def test_legacy_listing_pack(seeded_db, fixed_clock) -> None:
    pack = build_evidence_pack(SQLiteQueryStore(seeded_db), LEGACY_LISTING_ID, ADMIN, clock=fixed_clock)
    d = pack.to_dict()
    assert d["subject"]["poster"]["name"] == "Joe Camilleri"
    assert d["subject"]["media_manifest"][0]["meta"]["uploader_email"] == "[REDACTED]"
    assert len(d["subject"]["viewings"]) == 2
    assert d["integrity"]["row_count"] == {"audit_log": 2, "reviews": 0, "viewings": 2}


def test_missing_listing_raises_and_is_not_audited(seeded_db, audit_sink) -> None:
    with pytest.raises(NotFoundError) as ei:
        build_evidence_pack(SQLiteQueryStore(seeded_db), MISSING_LISTING_ID, ADMIN, audit_sink=audit_sink)
    assert str(ei.value) == f"Listing not found: {MISSING_LISTING_ID}"
    assert audit_sink.records == []


def test_audit_failure_does_not_affect_pack(seeded_db, fixed_clock, caplog) -> None:
    store = SQLiteQueryStore(seeded_db)
    expected = build_evidence_pack(store, LISTING_ID, ADMIN, clock=fixed_clock)

    with caplog.at_level(logging.ERROR, logger="dossier.audit"):
        pack = build_evidence_pack(store, LISTING_ID, ADMIN, audit_sink=FailingAuditSink(), clock=fixed_clock)

    assert pack.pack_hash == expected.pack_hash
    assert any(r.getMessage() == "audit_write_failed" for r in caplog.records)


def test_closed_dispatcher_does_not_discard_pack(seeded_db, audit_sink, fixed_clock, caplog) -> None:
    store = SQLiteQueryStore(seeded_db)
    expected = build_evidence_pack(store, LISTING_ID, ADMIN, clock=fixed_clock)

    dispatcher = AuditDispatcher(audit_sink)
    dispatcher.close()
    assembler = EvidenceAssembler(EntityResolver(store), audit=dispatcher, clock=fixed_clock)
    with caplog.at_level(logging.ERROR, logger="dossier.audit"):
        pack = assembler.build(LISTING_ID, ADMIN)

    assert pack.pack_hash == expected.pack_hash
    assert audit_sink.records == []
    assert any(r.getMessage() == "audit_write_failed" for r in caplog.records)


def test_sub_fetch_failure_fails_whole_build(seeded_db, audit_sink) -> None:
    store = FailingStore(SQLiteQueryStore(seeded_db), "FROM reviews")
    with pytest.raises(SourceFetchError) as ei:
        build_evidence_pack(store, LISTING_ID, ADMIN, audit_sink=audit_sink)
    assert ei.value.fetch_name == "reviews"
    assert isinstance(ei.value.__cause__, sqlite3.OperationalError)
    assert audit_sink.records == []


def test_audit_sources_are_fetched_as_separate_jobs(seeded_db) -> None:
    with pytest.raises(SourceFetchError) as ei:
        build_evidence_pack(FailingStore(SQLiteQueryStore(seeded_db), "FROM audit_log"), LISTING_ID, ADMIN)
    assert ei.value.fetch_name == "audit_log"

    with pytest.raises(SourceFetchError) as ei:
        build_evidence_pack(FailingStore(SQLiteQueryStore(seeded_db), "FROM audit_events"), LISTING_ID, ADMIN)
    assert ei.value.fetch_name == "audit_events"


def test_assembler_options_and_timezone(seeded_db, audit_sink, fixed_clock) -> None:
    dispatcher = AuditDispatcher(audit_sink)
    assembler = EvidenceAssembler(
        EntityResolver(SQLiteQueryStore(seeded_db)),
        audit=dispatcher,
        clock=fixed_clock,
        max_workers=2,
        timezone="UTC",
    )
    pack = assembler.build(LISTING_ID, ADMIN, BuildOptions(include_viewings=True, format="pdf"))
    assert dispatcher.flush(timeout=5)
    dispatcher.close()

    assert pack.meta.timezone == "UTC"
    assert pack.meta.format is PackFormat.PDF
    assert len(audit_sink.records) == 1


def test_build_options_reject_unknown_format() -> None:
    with pytest.raises(ValueError):
        BuildOptions(format="docx")
