from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from dossier.core.redaction import NONE_SENTINEL, redact_email, redact_id, redact_payload, redact_phone
from dossier.core.storage.contracts import QueryStore
from dossier.utils.json_safe import decode_json_column

from .models import (
    ListingRecord,
    MediaItem,
    RedactedUser,
    ReviewSnapshot,
    TimelineEntry,
    ViewingSnapshot,
    normalize_ts,
)

log = logging.getLogger("dossier.evidence")

LISTING_ENTITY = "listing"
_LISTING_ENTITIES = ("listing", "listings")

_LISTING_COLUMNS = (
    "id, title, description, type, price_amount, price_currency, status, "
    "bedrooms, bathrooms, size_sqm, address_text, lat, lng, created_at, updated_at, poster_id"
)


@dataclass(frozen=True)
class SourceProvider:
    """One place a logical entity can be read from.

    fetch returns an empty/absent value when the source holds nothing.
    """

    name: str
    fetch: Callable[[str], Any]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def first_non_empty(entity: str, key: str, providers: Sequence[SourceProvider]) -> Tuple[Any, Optional[str]]:
    """
    Try providers in order; return (result, provider name) for the first
    non-empty answer, or (last result, None) when every provider is empty.
    """

    result: Any = None
    for provider in providers:
        result = provider.fetch(key)
        if not _is_empty(result):
            log.debug("source_resolved", extra={"entity": entity, "source": provider.name})
            return result, provider.name
    log.debug("source_empty", extra={"entity": entity, "sources": [p.name for p in providers]})
    return result, None


def _as_mapping(value: Any) -> Dict[str, Any]:
    decoded = decode_json_column(value)
    return dict(decoded) if isinstance(decoded, Mapping) else {}


def _source_refs(payload: Mapping[str, Any]) -> Dict[str, Any]:
    inbound = payload.get("inbound_event_id")
    return {"inbound_event_id": inbound} if inbound else {}


class EntityResolver:
    """
    Reads every logical entity an evidence pack needs.

    Each entity is backed by an ordered tuple of SourceProviders (current
    table first, legacy table second). The timeline is the exception: both
    audit sources are always read and concatenated.

    Security notes:
    - Every query is parameterized on the listing id.
    - Values leave this class redacted, except ListingRecord.poster_id which
      the access gate and the poster lookup need.
    """

    def __init__(self, store: QueryStore) -> None:
        self._store = store

        self.listing_sources: Tuple[SourceProvider, ...] = (
            SourceProvider("property_listings", lambda k: self._listing_from("property_listings", k)),
            SourceProvider("listings", lambda k: self._listing_from("listings", k)),
        )
        self.poster_sources: Tuple[SourceProvider, ...] = (
            SourceProvider("auth_users", self._poster_from_auth_users),
            SourceProvider("users", self._poster_from_users),
        )
        self.media_sources: Tuple[SourceProvider, ...] = (
            SourceProvider("property_media", self._media_from_property_media),
            SourceProvider("listing_media", self._media_from_listing_media),
        )
        self.viewing_sources: Tuple[SourceProvider, ...] = (
            SourceProvider("property_viewings", self._viewings_from_property_viewings),
            SourceProvider("viewings", self._viewings_from_legacy),
        )
        self.viewing_count_sources: Tuple[SourceProvider, ...] = (
            SourceProvider("property_viewings", lambda k: self._count("property_viewings", "property_id", k)),
            SourceProvider("viewings", lambda k: self._count("viewings", "listing_id", k)),
        )

    # ---- listing ----

    def _listing_from(self, table: str, listing_id: str) -> Optional[ListingRecord]:
        rows = self._store.fetch_all(f"SELECT {_LISTING_COLUMNS} FROM {table} WHERE id = ?", (listing_id,))
        if not rows:
            return None
        row = rows[0]
        return ListingRecord(id=str(row["id"]), poster_id=row.get("poster_id"), columns=row, source=table)

    def fetch_listing(self, listing_id: str) -> Optional[ListingRecord]:
        listing, _ = first_non_empty("listing", listing_id, self.listing_sources)
        return listing

    # ---- poster ----

    def _poster_from_auth_users(self, user_id: str) -> Optional[RedactedUser]:
        rows = self._store.fetch_all("SELECT id, raw_user_meta_data FROM auth_users WHERE id = ?", (user_id,))
        if not rows:
            return None
        meta = _as_mapping(rows[0].get("raw_user_meta_data"))
        return RedactedUser(
            id=redact_id(rows[0]["id"]),
            name=meta.get("name") or meta.get("full_name") or None,
            phone=redact_phone(meta.get("phone")),
            email=redact_email(meta.get("email")),
        )

    def _poster_from_users(self, user_id: str) -> Optional[RedactedUser]:
        rows = self._store.fetch_all("SELECT id, name, phone, email FROM users WHERE id = ?", (user_id,))
        if not rows:
            return None
        row = rows[0]
        return RedactedUser(
            id=redact_id(row["id"]),
            name=row.get("name"),
            phone=redact_phone(row.get("phone")),
            email=redact_email(row.get("email")),
        )

    def fetch_redacted_poster(self, poster_id: Optional[str]) -> RedactedUser:
        if not poster_id:
            return RedactedUser(id=NONE_SENTINEL, name=None, phone=NONE_SENTINEL, email=NONE_SENTINEL)
        poster, _ = first_non_empty("poster", poster_id, self.poster_sources)
        if poster is None:
            return RedactedUser(id=redact_id(poster_id), name=None, phone=NONE_SENTINEL, email=NONE_SENTINEL)
        return poster

    # ---- media ----

    def _media_from_property_media(self, listing_id: str) -> List[MediaItem]:
        rows = self._store.fetch_all(
            "SELECT type, url, alt_text FROM property_media WHERE property_id = ? ORDER BY position, id",
            (listing_id,),
        )
        return [
            MediaItem(
                kind=r.get("type") or "photo",
                url=r["url"],
                meta={"alt_text": r["alt_text"]} if r.get("alt_text") else None,
            )
            for r in rows
        ]

    def _media_from_listing_media(self, listing_id: str) -> List[MediaItem]:
        rows = self._store.fetch_all(
            "SELECT kind, url, meta FROM listing_media WHERE listing_id = ? ORDER BY created_at, id",
            (listing_id,),
        )
        out: List[MediaItem] = []
        for r in rows:
            raw = decode_json_column(r.get("meta"))
            out.append(
                MediaItem(
                    kind=r.get("kind") or "photo",
                    url=r["url"],
                    meta=redact_payload(raw) if raw is not None else None,
                )
            )
        return out

    def fetch_media_manifest(self, listing_id: str) -> List[MediaItem]:
        media, _ = first_non_empty("media", listing_id, self.media_sources)
        return list(media or [])

    # ---- reviews ----

    def fetch_reviews(self, listing_id: str) -> List[ReviewSnapshot]:
        rows = self._store.fetch_all(
            """
            SELECT id, rating, comment, COALESCE(reviewer_id, seeker_id) AS reviewer_id, created_at
            FROM reviews
            WHERE listing_id = :listing_id OR property_id = :listing_id
            ORDER BY created_at, id
            """,
            {"listing_id": listing_id},
        )
        return [
            ReviewSnapshot(
                id=str(r["id"]),
                rating=r.get("rating"),
                comment=r.get("comment"),
                reviewer_id_redacted=redact_id(r.get("reviewer_id")),
                created_at=normalize_ts(r.get("created_at")),
            )
            for r in rows
        ]

    # ---- viewings ----

    def _viewings_from_property_viewings(self, listing_id: str) -> List[ViewingSnapshot]:
        rows = self._store.fetch_all(
            """
            SELECT id, seeker_id, status, proposed_dates, confirmed_date, created_at
            FROM property_viewings
            WHERE property_id = ?
            ORDER BY created_at, id
            """,
            (listing_id,),
        )
        out: List[ViewingSnapshot] = []
        for r in rows:
            proposed = decode_json_column(r.get("proposed_dates"))
            out.append(
                ViewingSnapshot(
                    id=str(r["id"]),
                    seeker_id_redacted=redact_id(r.get("seeker_id")),
                    status=r.get("status"),
                    proposed_dates=tuple(proposed) if isinstance(proposed, list) else (),
                    confirmed_date=normalize_ts(r.get("confirmed_date")),
                    created_at=normalize_ts(r.get("created_at")),
                )
            )
        return out

    def _viewings_from_legacy(self, listing_id: str) -> List[ViewingSnapshot]:
        rows = self._store.fetch_all(
            """
            SELECT id, seeker_id, scheduled_at, status, created_at
            FROM viewings
            WHERE listing_id = ?
            ORDER BY created_at, id
            """,
            (listing_id,),
        )
        out: List[ViewingSnapshot] = []
        for r in rows:
            scheduled = normalize_ts(r.get("scheduled_at"))
            status = r.get("status")
            out.append(
                ViewingSnapshot(
                    id=str(r["id"]),
                    seeker_id_redacted=redact_id(r.get("seeker_id")),
                    status=status,
                    proposed_dates=(scheduled,) if scheduled else (),
                    confirmed_date=scheduled if status == "confirmed" else None,
                    created_at=normalize_ts(r.get("created_at")),
                )
            )
        return out

    def fetch_viewings(self, listing_id: str) -> List[ViewingSnapshot]:
        viewings, _ = first_non_empty("viewings", listing_id, self.viewing_sources)
        return list(viewings or [])

    def _count(self, table: str, column: str, listing_id: str) -> int:
        rows = self._store.fetch_all(f"SELECT COUNT(*) AS n FROM {table} WHERE {column} = ?", (listing_id,))
        return int(rows[0]["n"]) if rows else 0

    def count_viewings(self, listing_id: str) -> int:
        # 0 counts as empty so the legacy table is consulted.
        for provider in self.viewing_count_sources:
            n = provider.fetch(listing_id)
            if n:
                log.debug("source_resolved", extra={"entity": "viewing_count", "source": provider.name})
                return n
        return 0

    # ---- timeline ----

    def fetch_audit_events_timeline(self, listing_id: str) -> List[TimelineEntry]:
        rows = self._store.fetch_all(
            """
            SELECT id, event_type, agent_type, tool_name, user_id, context, created_at
            FROM audit_events
            WHERE property_id = :listing_id
               OR json_extract(CASE WHEN json_valid(context) THEN context END, '$.listing_id') = :listing_id
               OR json_extract(CASE WHEN json_valid(context) THEN context END, '$.property_id') = :listing_id
            ORDER BY created_at, event_type, id
            """,
            {"listing_id": listing_id},
        )
        out: List[TimelineEntry] = []
        for r in rows:
            context = _as_mapping(r.get("context"))
            out.append(
                TimelineEntry.create(
                    ts=normalize_ts(r.get("created_at")) or "",
                    actor_type=r.get("agent_type") or "system",
                    actor_id_redacted=redact_id(r.get("user_id")),
                    action=r.get("tool_name") or r.get("event_type"),
                    entity=LISTING_ENTITY,
                    entity_id=listing_id,
                    payload_redacted=redact_payload(context),
                    source_refs=_source_refs(context),
                )
            )
        return out

    def fetch_audit_log_timeline(self, listing_id: str) -> List[TimelineEntry]:
        rows = self._store.fetch_all(
            """
            SELECT id, actor_type, actor_id, action, entity, entity_id, payload, created_at
            FROM audit_log
            WHERE (entity IN (:entity_a, :entity_b) AND entity_id = :listing_id)
               OR json_extract(CASE WHEN json_valid(payload) THEN payload END, '$.listing_id') = :listing_id
               OR json_extract(CASE WHEN json_valid(payload) THEN payload END, '$.property_id') = :listing_id
            ORDER BY created_at, action, entity_id
            """,
            {"listing_id": listing_id, "entity_a": _LISTING_ENTITIES[0], "entity_b": _LISTING_ENTITIES[1]},
        )
        out: List[TimelineEntry] = []
        for r in rows:
            payload = _as_mapping(r.get("payload"))
            out.append(
                TimelineEntry.create(
                    ts=normalize_ts(r.get("created_at")) or "",
                    actor_type=r.get("actor_type") or "system",
                    actor_id_redacted=redact_id(r.get("actor_id")),
                    action=r.get("action"),
                    entity=r.get("entity") or LISTING_ENTITY,
                    entity_id=r.get("entity_id") or listing_id,
                    payload_redacted=redact_payload(payload),
                    source_refs=_source_refs(payload),
                )
            )
        return out

    def fetch_timeline(self, listing_id: str) -> List[TimelineEntry]:
        """Entries from both audit sources, audit_events first, unsorted."""

        events = self.fetch_audit_events_timeline(listing_id)
        legacy = self.fetch_audit_log_timeline(listing_id)
        log.debug(
            "timeline_fetched",
            extra={"listing_id": listing_id, "audit_events": len(events), "audit_log": len(legacy)},
        )
        return events + legacy
