from __future__ import annotations

from pathlib import Path

import pytest

from dossier.tests.seed import FIXED_NOW, RecordingAuditSink, seed_database


@pytest.fixture
def seeded_db(tmp_path) -> Path:
    db = tmp_path / "dossier.db"
    seed_database(db)
    return db


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW
