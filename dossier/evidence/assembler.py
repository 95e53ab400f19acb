from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any, Callable, Dict, Optional

from dossier.core.canonical import chain_digest, hash_value
from dossier.core.config import DEFAULT_TIMEZONE
from dossier.core.errors import NotFoundError, SourceFetchError
from dossier.core.redaction import redact_id
from dossier.core.storage.contracts import QueryStore

from .audit import AuditActions, AuditDispatcher, AuditSink
from .models import (
    BuildOptions,
    EvidencePack,
    EvidenceRequester,
    GeneratedBy,
    PackFormat,
    PackIntegrity,
    PackMeta,
    PackSubject,
    RowCount,
    normalize_ts,
)
from .resolver import LISTING_ENTITY, EntityResolver

log = logging.getLogger("dossier.evidence")

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class EvidenceAssembler:
    """
    Builds EvidencePacks.

    Pipeline
    1. resolve the listing (absent -> NotFoundError, nothing audited)
    2. fan out the remaining reads on a thread pool and join them
    3. seal, sort and chain the timeline
    4. hash the body, attach pack_hash
    5. hand an evidence.generate record to the audit dispatcher

    The returned pack is a pure function of the source rows, the requester,
    the options and the clock reading.
    """

    def __init__(
        self,
        resolver: EntityResolver,
        *,
        audit: Optional[AuditDispatcher] = None,
        clock: Optional[Clock] = None,
        max_workers: int = 8,
        timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        self._resolver = resolver
        self._audit = audit
        self._clock = clock or _utc_now
        self._max_workers = max(1, int(max_workers))
        self._timezone = timezone

    @property
    def resolver(self) -> EntityResolver:
        return self._resolver

    def _fan_out(self, listing_id: str, poster_id: Optional[str], include_viewings: bool) -> Dict[str, Any]:
        r = self._resolver
        jobs: Dict[str, Callable[[], Any]] = {
            "poster": lambda: r.fetch_redacted_poster(poster_id),
            "media": lambda: r.fetch_media_manifest(listing_id),
            "reviews": lambda: r.fetch_reviews(listing_id),
            "audit_events": lambda: r.fetch_audit_events_timeline(listing_id),
            "audit_log": lambda: r.fetch_audit_log_timeline(listing_id),
            "viewing_count": lambda: r.count_viewings(listing_id),
        }
        if include_viewings:
            jobs["viewings"] = lambda: r.fetch_viewings(listing_id)

        results: Dict[str, Any] = {}
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(jobs))) as pool:
            futures: Dict[str, Future] = {name: pool.submit(fn) for name, fn in jobs.items()}
            for name, fut in futures.items():
                try:
                    results[name] = fut.result()
                except Exception as e:
                    # Remaining futures are still joined by the executor on exit.
                    raise SourceFetchError(name, e) from e
        return results

    def build(
        self,
        listing_id: str,
        requester: EvidenceRequester,
        options: Optional[BuildOptions] = None,
    ) -> EvidencePack:
        options = options or BuildOptions()
        start = time.monotonic()
        log.info(
            "evidence_build_started",
            extra={
                "listing_id": listing_id,
                "actor_id": redact_id(requester.actor_id),
                "format": options.format.value,
            },
        )

        try:
            listing = self._resolver.fetch_listing(listing_id)
        except Exception as e:
            raise SourceFetchError("listing", e) from e
        if listing is None:
            raise NotFoundError(listing_id)

        parts = self._fan_out(listing_id, listing.poster_id, options.include_viewings)

        # Stable sort: equal keys keep source order (audit_events before audit_log).
        merged = list(parts["audit_events"]) + list(parts["audit_log"])
        timeline = tuple(sorted(merged, key=lambda e: (e.ts, e.entity_id)))
        chain = chain_digest(e.entry_hash for e in timeline)
        reviews = tuple(parts["reviews"])
        viewings = tuple(parts["viewings"]) if options.include_viewings else None

        meta = PackMeta(
            generated_at=normalize_ts(self._clock()) or "",
            generated_by=GeneratedBy(
                actor_type=requester.actor_type,
                actor_id_redacted=redact_id(requester.actor_id),
                role=getattr(requester.role, "value", requester.role),
            ),
            format=options.format,
            timezone=self._timezone,
        )
        subject = PackSubject(
            listing=listing.to_snapshot(poster_id_redacted=redact_id(listing.poster_id)),
            poster=parts["poster"],
            media_manifest=tuple(parts["media"]),
            reviews=reviews,
            viewings=viewings,
        )
        row_count = RowCount(audit_log=len(timeline), reviews=len(reviews), viewings=int(parts["viewing_count"]))
        unsealed = EvidencePack(
            meta=meta,
            subject=subject,
            timeline=timeline,
            integrity=PackIntegrity(timeline_hash_chain=chain, row_count=row_count),
        )
        pack_hash = hash_value(unsealed.body())
        pack = EvidencePack(
            meta=meta,
            subject=subject,
            timeline=timeline,
            integrity=PackIntegrity(timeline_hash_chain=chain, row_count=row_count, pack_hash=pack_hash),
        )

        if self._audit is not None:
            self._audit.submit(
                actor_type=requester.actor_type,
                actor_id=requester.actor_id,
                action=AuditActions.EVIDENCE_GENERATE,
                entity=LISTING_ENTITY,
                entity_id=listing_id,
                payload={
                    "format": options.format.value,
                    "pack_hash": pack_hash,
                    "row_counts": row_count.to_dict(),
                },
            )

        log.info(
            "evidence_build_finished",
            extra={
                "listing_id": listing_id,
                "pack_hash": pack_hash,
                "format": options.format.value,
                "duration_ms": int((time.monotonic() - start) * 1000),
            },
        )
        return pack


def build_evidence_pack(
    store: QueryStore,
    listing_id: str,
    requester: EvidenceRequester,
    *,
    include_viewings: bool = True,
    format: str | PackFormat = "json",
    audit_sink: Optional[AuditSink] = None,
    clock: Optional[Clock] = None,
) -> EvidencePack:
    """
    One-shot build over a store.

    When an audit_sink is given its write is flushed before returning, so the
    record is durable (or its failure logged) once this call completes.
    """

    dispatcher = AuditDispatcher(audit_sink) if audit_sink is not None else None
    assembler = EvidenceAssembler(EntityResolver(store), audit=dispatcher, clock=clock)
    try:
        return assembler.build(
            listing_id,
            requester,
            BuildOptions(include_viewings=include_viewings, format=PackFormat(format)),
        )
    finally:
        if dispatcher is not None:
            dispatcher.close()
