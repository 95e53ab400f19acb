"""Listing evidence packs.

Builds, exports and verifies tamper-evident audit dossiers for a single
property listing.

Security notes
- Packs carry redacted identifiers only; raw poster ids stay on ListingRecord.
- pack_hash and timeline_hash_chain prove integrity, not authorship. Sign the
  ZIP export when authorship matters.
"""

from .assembler import EvidenceAssembler, build_evidence_pack  # noqa: F401
from .audit import AuditActions, AuditDispatcher, AuditSink, SQLiteAuditSink  # noqa: F401
from .export import ZipSigning, render_json, render_zip  # noqa: F401
from .models import (  # noqa: F401
    SCHEMA_VERSION,
    BuildOptions,
    EvidencePack,
    EvidenceRequester,
    PackFormat,
    TimelineEntry,
)
from .resolver import EntityResolver, SourceProvider, first_non_empty  # noqa: F401
from .verify import (  # noqa: F401
    verify_evidence_pack,
    verify_evidence_pack_details,
    verify_evidence_zip_details,
)
