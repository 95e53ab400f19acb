from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List

from dossier.core.storage.sqlite_store import init_schema

LISTING_ID = "3f2b8c1e-7a4d-4e6b-9c1a-2d5e8f7a9b10"
POSTER_ID = "a1b2c3d4-e5f6-4a7b-8c9d-0e1f2a3b4c5d"
OTHER_USER_ID = "ffffeeee-dddd-4ccc-bbbb-aaaa99998888"
LEGACY_LISTING_ID = "9c8b7a6d-5e4f-4a3b-2c1d-0e9f8a7b6c5d"
LEGACY_POSTER_ID = "0a1b2c3d-4e5f-4061-8293-a4b5c6d7e8f9"
MISSING_LISTING_ID = "00000000-0000-4000-8000-000000000000"

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


def _listing_row(listing_id: str, poster_id: str, title: str) -> tuple:
    return (
        listing_id,
        poster_id,
        title,
        "Bright two-bedroom flat",
        "apartment",
        1200.0,
        "EUR",
        "active",
        2,
        1,
        85.5,
        "Tower Road, Sliema",
        35.912,
        14.504,
        "2024-01-01T09:00:00Z",
        "2024-01-02T09:00:00Z",
    )


_LISTING_INSERT = """
INSERT INTO {table}(id, poster_id, title, description, type, price_amount, price_currency, status,
                    bedrooms, bathrooms, size_sqm, address_text, lat, lng, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def seed_database(db_path: Path) -> None:
    """Current-schema listing with a full history, plus a legacy-only listing."""

    init_schema(db_path)
    with closing(sqlite3.connect(str(db_path))) as con:
        con.execute(_LISTING_INSERT.format(table="property_listings"), _listing_row(LISTING_ID, POSTER_ID, "Sea view apartment"))
        con.execute(
            "INSERT INTO auth_users(id, raw_user_meta_data) VALUES (?, ?)",
            (
                POSTER_ID,
                json.dumps({"full_name": "Maria Borg", "phone": "+35699123456", "email": "maria.borg@example.com"}),
            ),
        )
        con.executemany(
            "INSERT INTO property_media(id, property_id, url, type, position, alt_text) VALUES (?, ?, ?, ?, ?, ?)",
            [
                ("m1", LISTING_ID, "https://cdn.example.com/b.jpg", "photo", 1, "Kitchen"),
                ("m0", LISTING_ID, "https://cdn.example.com/a.jpg", "photo", 0, None),
            ],
        )
        con.executemany(
            "INSERT INTO reviews(id, listing_id, property_id, reviewer_id, seeker_id, rating, comment, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                ("r1", LISTING_ID, None, "reviewer-000111", None, 4, "Nice place", "2024-01-05T10:00:00Z"),
                ("r2", None, LISTING_ID, None, "seeker-0000222", 5, "Great host", "2024-01-06T10:00:00Z"),
            ],
        )
        con.execute(
            "INSERT INTO property_viewings(id, property_id, seeker_id, status, proposed_dates, confirmed_date, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                "v1",
                LISTING_ID,
                "seeker-0000333",
                "confirmed",
                json.dumps(["2024-02-01T10:00:00Z"]),
                "2024-02-01T10:00:00Z",
                "2024-01-07T10:00:00Z",
            ),
        )
        con.executemany(
            "INSERT INTO audit_events(id, event_type, agent_type, tool_name, user_id, property_id, context, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    "ae1",
                    "listing.created",
                    "listing_agent",
                    "create_listing",
                    POSTER_ID,
                    LISTING_ID,
                    json.dumps({"inbound_event_id": "evt-1", "phone": "+35699123456"}),
                    "2024-01-01T10:00:00Z",
                ),
                (
                    "ae2",
                    "listing.published",
                    None,
                    None,
                    None,
                    None,
                    json.dumps({"listing_id": LISTING_ID, "note": "ok"}),
                    "2024-01-01T12:00:00Z",
                ),
                (
                    "ae3",
                    "listing.updated",
                    "listing_agent",
                    None,
                    POSTER_ID,
                    None,
                    json.dumps({"property_id": LISTING_ID, "changes": [{"field": "price", "token": "x"}]}),
                    "2024-01-03T09:00:00+02:00",
                ),
                (
                    "ae4",
                    "listing.created",
                    "listing_agent",
                    "create_listing",
                    OTHER_USER_ID,
                    LEGACY_LISTING_ID,
                    "{}",
                    "2024-01-01T08:00:00Z",
                ),
            ],
        )
        con.executemany(
            "INSERT INTO audit_log(id, actor_type, actor_id, action, entity, entity_id, payload, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    "al1",
                    "user",
                    POSTER_ID,
                    "listing.edit",
                    "listing",
                    LISTING_ID,
                    json.dumps({"email": "maria.borg@example.com", "title": "Sea view apartment"}),
                    "2024-01-01 11:00:00",
                ),
                (
                    "al2",
                    "system",
                    "scheduler",
                    "message.sent",
                    "message",
                    "msg-1",
                    json.dumps({"listing_id": LISTING_ID}),
                    "2024-01-02T08:00:00.000Z",
                ),
                (
                    "al3",
                    "user",
                    OTHER_USER_ID,
                    "listing.edit",
                    "listing",
                    LEGACY_LISTING_ID,
                    "not json",
                    "2024-01-04T08:00:00Z",
                ),
            ],
        )

        con.execute(_LISTING_INSERT.format(table="listings"), _listing_row(LEGACY_LISTING_ID, LEGACY_POSTER_ID, "Old farmhouse"))
        con.execute(
            "INSERT INTO users(id, role, name, phone, email) VALUES (?, ?, ?, ?, ?)",
            (LEGACY_POSTER_ID, "poster", "Joe Camilleri", "79001122", "joe@example.org"),
        )
        con.execute(
            "INSERT INTO listing_media(id, listing_id, url, kind, meta) VALUES (?, ?, ?, ?, ?)",
            (
                "lm1",
                LEGACY_LISTING_ID,
                "https://cdn.example.com/farm.jpg",
                None,
                json.dumps({"caption": "Front", "uploader_email": "x@y.z"}),
            ),
        )
        con.executemany(
            "INSERT INTO viewings(id, listing_id, seeker_id, scheduled_at, status, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            [
                ("lv1", LEGACY_LISTING_ID, "seeker-0000444", "2024-03-01T15:00:00Z", "confirmed", "2024-02-20T10:00:00Z"),
                ("lv2", LEGACY_LISTING_ID, "seeker-0000555", "2024-03-02 16:00:00", "proposed", "2024-02-21T10:00:00Z"),
            ],
        )
        con.commit()


class RecordingAuditSink:
    """In-memory AuditSink."""

    def __init__(self) -> None:
        self.records: List[Dict[str, Any]] = []

    def record(self, actor_type, actor_id, action, entity, entity_id, payload) -> None:
        self.records.append(
            {
                "actor_type": actor_type,
                "actor_id": actor_id,
                "action": action,
                "entity": entity,
                "entity_id": entity_id,
                "payload": payload,
            }
        )


