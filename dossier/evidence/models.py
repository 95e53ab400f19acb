from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from dossier.core.canonical import hash_value

SCHEMA_VERSION = "1.0"


class PackFormat(str, Enum):
    """Requested output format, recorded in meta.format."""

    JSON = "json"
    PDF = "pdf"
    ZIP = "zip"


def normalize_ts(value: Any) -> Optional[str]:
    """Normalize a timestamp to UTC ISO-8601 with milliseconds and a Z suffix.

    The fixed shape makes string order equal chronological order, which is
    what timeline sorting relies on.

    - datetime/date values and ISO-8601 strings are converted.
    - Naive values are taken as UTC.
    - Unparseable strings are returned unchanged.
    """

    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return text
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class EvidenceRequester:
    """Who asked for the pack. Recorded (redacted) in meta and in the audit trail."""

    actor_type: str
    actor_id: str
    role: str


@dataclass(frozen=True)
class BuildOptions:
    include_viewings: bool = True
    format: PackFormat = PackFormat.JSON

    def __post_init__(self) -> None:
        # Accept plain strings from HTTP/CLI callers; invalid values raise ValueError.
        object.__setattr__(self, "format", PackFormat(self.format))


@dataclass(frozen=True)
class ListingSnapshot:
    """Listing as it stands at generation time. The poster id is redacted."""

    id: str
    title: Optional[str]
    description: Optional[str]
    type: Optional[str]
    price_amount: Optional[float]
    price_currency: Optional[str]
    status: Optional[str]
    bedrooms: Optional[int]
    bathrooms: Optional[int]
    size_sqm: Optional[float]
    address_text: Optional[str]
    lat: Optional[float]
    lng: Optional[float]
    created_at: Optional[str]
    updated_at: Optional[str]
    poster_id_redacted: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "price_amount": self.price_amount,
            "price_currency": self.price_currency,
            "status": self.status,
            "bedrooms": self.bedrooms,
            "bathrooms": self.bathrooms,
            "size_sqm": self.size_sqm,
            "address_text": self.address_text,
            "lat": self.lat,
            "lng": self.lng,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "poster_id_redacted": self.poster_id_redacted,
        }


@dataclass(frozen=True)
class ListingRecord:
    """Resolved listing row. Internal only: carries the raw poster id."""

    id: str
    poster_id: Optional[str]
    columns: Dict[str, Any] = field(default_factory=dict)
    source: str = ""

    def to_snapshot(self, *, poster_id_redacted: str) -> ListingSnapshot:
        c = self.columns
        return ListingSnapshot(
            id=self.id,
            title=c.get("title"),
            description=c.get("description"),
            type=c.get("type"),
            price_amount=c.get("price_amount"),
            price_currency=c.get("price_currency"),
            status=c.get("status"),
            bedrooms=c.get("bedrooms"),
            bathrooms=c.get("bathrooms"),
            size_sqm=c.get("size_sqm"),
            address_text=c.get("address_text"),
            lat=c.get("lat"),
            lng=c.get("lng"),
            created_at=normalize_ts(c.get("created_at")),
            updated_at=normalize_ts(c.get("updated_at")),
            poster_id_redacted=poster_id_redacted,
        )


@dataclass(frozen=True)
class RedactedUser:
    id: str
    name: Optional[str]
    phone: str
    email: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "phone": self.phone, "email": self.email}


@dataclass(frozen=True)
class MediaItem:
    """Media manifest entry: URL only, content is never embedded."""

    kind: str
    url: str
    meta: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "url": self.url, "meta": deepcopy(self.meta)}


@dataclass(frozen=True)
class ReviewSnapshot:
    id: str
    rating: Optional[int]
    comment: Optional[str]
    reviewer_id_redacted: str
    created_at: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rating": self.rating,
            "comment": self.comment,
            "reviewer_id_redacted": self.reviewer_id_redacted,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ViewingSnapshot:
    id: str
    seeker_id_redacted: str
    status: Optional[str]
    proposed_dates: Tuple[Any, ...]
    confirmed_date: Optional[str]
    created_at: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "seeker_id_redacted": self.seeker_id_redacted,
            "status": self.status,
            "proposed_dates": deepcopy(list(self.proposed_dates)),
            "confirmed_date": self.confirmed_date,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class TimelineEntry:
    """One reconciled audit event.

    entry_hash covers every other field; use TimelineEntry.create to seal one.
    """

    ts: str
    actor_type: str
    actor_id_redacted: str
    action: str
    entity: str
    entity_id: str
    payload_redacted: Dict[str, Any]
    source_refs: Dict[str, Any]
    entry_hash: str

    @classmethod
    def create(
        cls,
        *,
        ts: str,
        actor_type: str,
        actor_id_redacted: str,
        action: str,
        entity: str,
        entity_id: str,
        payload_redacted: Dict[str, Any],
        source_refs: Dict[str, Any],
    ) -> "TimelineEntry":
        base = {
            "ts": ts,
            "actor_type": actor_type,
            "actor_id_redacted": actor_id_redacted,
            "action": action,
            "entity": entity,
            "entity_id": entity_id,
            "payload_redacted": deepcopy(payload_redacted),
            "source_refs": deepcopy(source_refs),
        }
        return cls(**base, entry_hash=hash_value(base))

    def base_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.ts,
            "actor_type": self.actor_type,
            "actor_id_redacted": self.actor_id_redacted,
            "action": self.action,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "payload_redacted": deepcopy(self.payload_redacted),
            "source_refs": deepcopy(self.source_refs),
        }

    def to_dict(self) -> Dict[str, Any]:
        out = self.base_dict()
        out["entry_hash"] = self.entry_hash
        return out


@dataclass(frozen=True)
class GeneratedBy:
    actor_type: str
    actor_id_redacted: str
    role: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actor_type": self.actor_type,
            "actor_id_redacted": self.actor_id_redacted,
            "role": self.role,
        }


@dataclass(frozen=True)
class PackMeta:
    generated_at: str
    generated_by: GeneratedBy
    format: PackFormat
    timezone: str
    schema_version: str = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "generated_by": self.generated_by.to_dict(),
            "format": self.format.value,
            "schema_version": self.schema_version,
            "timezone": self.timezone,
        }


@dataclass(frozen=True)
class PackSubject:
    listing: ListingSnapshot
    poster: RedactedUser
    media_manifest: Tuple[MediaItem, ...]
    reviews: Tuple[ReviewSnapshot, ...]
    # Reserved; match export is not part of schema 1.0.
    matches: Tuple[Dict[str, Any], ...] = ()
    # None means viewings were not requested: the key is omitted entirely.
    viewings: Optional[Tuple[ViewingSnapshot, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "listing": self.listing.to_dict(),
            "poster": self.poster.to_dict(),
            "media_manifest": [m.to_dict() for m in self.media_manifest],
            "reviews": [r.to_dict() for r in self.reviews],
            "matches": [deepcopy(m) for m in self.matches],
        }
        if self.viewings is not None:
            out["viewings"] = [v.to_dict() for v in self.viewings]
        return out


@dataclass(frozen=True)
class RowCount:
    audit_log: int
    reviews: int
    viewings: int

    def to_dict(self) -> Dict[str, int]:
        return {"audit_log": self.audit_log, "reviews": self.reviews, "viewings": self.viewings}


@dataclass(frozen=True)
class PackIntegrity:
    timeline_hash_chain: str
    row_count: RowCount
    pack_hash: str = ""

    def to_dict(self, *, include_pack_hash: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "timeline_hash_chain": self.timeline_hash_chain,
            "row_count": self.row_count.to_dict(),
        }
        if include_pack_hash:
            out["pack_hash"] = self.pack_hash
        return out


@dataclass(frozen=True)
class EvidencePack:
    """The finished, immutable evidence pack for one listing."""

    meta: PackMeta
    subject: PackSubject
    timeline: Tuple[TimelineEntry, ...]
    integrity: PackIntegrity

    @property
    def listing_id(self) -> str:
        return self.subject.listing.id

    @property
    def pack_hash(self) -> str:
        return self.integrity.pack_hash

    def body(self) -> Dict[str, Any]:
        """Everything pack_hash covers: the full pack minus integrity.pack_hash."""

        return {
            "meta": self.meta.to_dict(),
            "subject": self.subject.to_dict(),
            "timeline": [e.to_dict() for e in self.timeline],
            "integrity": self.integrity.to_dict(include_pack_hash=False),
        }

    def to_dict(self) -> Dict[str, Any]:
        out = self.body()
        out["integrity"] = self.integrity.to_dict()
        return out
