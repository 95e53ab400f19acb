from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from .contracts import QueryParams

log = logging.getLogger("dossier.storage")


# Both table generations live side by side: the current schema and the legacy
# one that historical rows may still sit in.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS property_listings (
    id TEXT PRIMARY KEY,
    poster_id TEXT,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL,
    price_amount REAL NOT NULL,
    price_currency TEXT NOT NULL DEFAULT 'EUR',
    status TEXT NOT NULL DEFAULT 'draft',
    bedrooms INTEGER,
    bathrooms INTEGER,
    size_sqm REAL,
    address_text TEXT,
    lat REAL,
    lng REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS listings (
    id TEXT PRIMARY KEY,
    poster_id TEXT,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL,
    price_amount REAL NOT NULL,
    price_currency TEXT NOT NULL DEFAULT 'EUR',
    status TEXT NOT NULL DEFAULT 'draft',
    bedrooms INTEGER,
    bathrooms INTEGER,
    size_sqm REAL,
    address_text TEXT,
    lat REAL,
    lng REAL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS auth_users (
    id TEXT PRIMARY KEY,
    raw_user_meta_data TEXT NOT NULL DEFAULT '{}',
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    role TEXT NOT NULL DEFAULT 'seeker',
    name TEXT,
    phone TEXT,
    email TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS property_media (
    id TEXT PRIMARY KEY,
    property_id TEXT NOT NULL,
    url TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'photo',
    position INTEGER DEFAULT 0,
    alt_text TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS listing_media (
    id TEXT PRIMARY KEY,
    listing_id TEXT NOT NULL,
    url TEXT NOT NULL,
    kind TEXT,
    meta TEXT DEFAULT '{}',
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS reviews (
    id TEXT PRIMARY KEY,
    listing_id TEXT,
    property_id TEXT,
    reviewer_id TEXT,
    seeker_id TEXT,
    rating INTEGER,
    comment TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS property_viewings (
    id TEXT PRIMARY KEY,
    property_id TEXT NOT NULL,
    seeker_id TEXT,
    status TEXT DEFAULT 'requested',
    proposed_dates TEXT DEFAULT '[]',
    confirmed_date TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS viewings (
    id TEXT PRIMARY KEY,
    listing_id TEXT NOT NULL,
    seeker_id TEXT,
    scheduled_at TEXT,
    status TEXT DEFAULT 'proposed',
    notes TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_events (
    id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    agent_type TEXT,
    tool_name TEXT,
    user_id TEXT,
    property_id TEXT,
    context TEXT DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id TEXT PRIMARY KEY,
    actor_type TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    action TEXT NOT NULL,
    entity TEXT NOT NULL,
    entity_id TEXT,
    payload TEXT DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_property_media_property_id ON property_media(property_id, position);
CREATE INDEX IF NOT EXISTS idx_listing_media_listing_id ON listing_media(listing_id);
CREATE INDEX IF NOT EXISTS idx_property_viewings_property_id ON property_viewings(property_id);
CREATE INDEX IF NOT EXISTS idx_viewings_listing_id ON viewings(listing_id);
CREATE INDEX IF NOT EXISTS idx_audit_events_property_id ON audit_events(property_id);
CREATE INDEX IF NOT EXISTS idx_audit_log_entity ON audit_log(entity, entity_id);
"""


def init_schema(db_path: Path) -> None:
    """Create every evidence-source table if missing.

    Development and test bootstrap; production data arrives through the
    surrounding system's migrations.

    """

    with closing(sqlite3.connect(str(db_path))) as con:
        con.executescript(SCHEMA_SQL)
        con.commit()


@dataclass(slots=True)
class SQLiteQueryStore:
    """Read-only SQLite implementation of QueryStore.

    Security notes:
    - Connections are opened with mode=ro; the evidence core cannot write
      through this store.
    - Every query is parameterized.
    - One connection per query, so concurrent callers share no state.

    """

    db_path: Path
    timeout_sec: float = 5.0

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)

    def connect(self) -> sqlite3.Connection:
        """Open a read-only connection."""

        uri = self.db_path.resolve().as_uri() + "?mode=ro"
        con = sqlite3.connect(uri, uri=True, timeout=self.timeout_sec)
        con.row_factory = sqlite3.Row
        return con

    def fetch_all(self, sql: str, params: QueryParams = ()) -> List[Dict[str, Any]]:
        start = time.monotonic()
        with closing(self.connect()) as con:
            rows = con.execute(sql, params).fetchall()
        dur_ms = int((time.monotonic() - start) * 1000)
        log.debug(
            "query_executed",
            extra={"query": " ".join(sql.split())[:100], "rows": len(rows), "duration_ms": dur_ms},
        )
        return [dict(r) for r in rows]
