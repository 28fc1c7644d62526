"""Ingestion orchestration across source connectors.

One ``run_ingestion`` call drives every connector through fetch, extract,
normalize, deduplicate and persist, with a fixed-size worker pool draining a
shared queue. Connector failures are captured in the run report and never
abort the batch; only an unavailable store while loading checkpoints or
persisting the report propagates to the caller. When new evidence was
created, proposal generation, trend detection and the alert sweep run
afterwards, each isolated from the others.
"""

import asyncio
import secrets
import time
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from config.settings import GlobalConfig, get_config
from evidence_pipeline.change_detector import ChangeDetector
from evidence_pipeline.connector import SourceConnector
from evidence_pipeline.exceptions import DuplicateEvidenceError
from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import (
    AuditEntry,
    ConnectorHealthRecord,
    ErrorType,
    EvidenceRecord,
    ExtractedEvidenceCandidate,
    IngestionRunReport,
    NormalizedEvidence,
    RawFetchResult,
    RunError,
    ScrapePreview,
    SourceRunResult,
    new_run_id,
    utc_now,
)
from evidence_pipeline.proposals import BenchmarkProposalGenerator
from evidence_pipeline.store import EvidenceStore
from evidence_pipeline.trends import TrendDetector
from evidence_pipeline.validator import validate_candidates

log = get_logger(__name__)

AlertSweep = Callable[[IngestionRunReport], Awaitable[Any]]

PLACEHOLDER_CONFIDENCE = 0.20
SNIPPET_MAX_CHARS = 500

# First match wins.
ERROR_PATTERNS: tuple[tuple[ErrorType, tuple[str, ...]], ...] = (
    (
        "dns_failure",
        ("getaddrinfo", "enotfound", "name or service not known", "name resolution", "dns"),
    ),
    ("timeout", ("timeout", "timed out", "etimedout")),
    (
        "http_error",
        ("http 4", "http 5", "robots.txt", "anti-bot", "status code"),
    ),
    ("llm_error", ("llm", "oracle", "openai", "rate limit")),
    ("parse_error", ("parse", "json", "validation", "schema")),
)


def classify_error(message: str | None) -> ErrorType:
    """Map an error message to a coarse error type by substring match."""
    if not message:
        return "unknown"
    lowered = message.lower()
    for error_type, patterns in ERROR_PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return error_type
    return "unknown"


def generate_record_id() -> str:
    """Human-readable evidence id, e.g. ``EVR-20250301-9F2A1C``."""
    return f"EVR-{utc_now():%Y%m%d}-{secrets.token_hex(3).upper()}"


def placeholder_evidence(candidate: ExtractedEvidenceCandidate) -> NormalizedEvidence:
    """Low-confidence stand-in for a candidate that failed normalization."""
    return NormalizedEvidence(
        metric=candidate.title,
        value=None,
        unit=None,
        confidence=PLACEHOLDER_CONFIDENCE,
        grade="C",
        summary=candidate.raw_text[:SNIPPET_MAX_CHARS],
        tags=[],
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class IngestionOrchestrator:
    """Runs connectors and records everything that happened.

    Attributes:
        max_workers: Upper bound on connectors processed concurrently.

    Example:
        orchestrator = IngestionOrchestrator(store)
        report = await orchestrator.run_ingestion(connectors, trigger="scheduled")
        print(report.evidence_created)
    """

    def __init__(
        self,
        store: EvidenceStore,
        config: GlobalConfig | None = None,
        change_detector: ChangeDetector | None = None,
        proposal_generator: BenchmarkProposalGenerator | None = None,
        trend_detector: TrendDetector | None = None,
        alert_sweep: AlertSweep | None = None,
    ) -> None:
        self.config = config or get_config()
        self._store = store
        self._change_detector = change_detector or ChangeDetector(store)
        self._proposal_generator = proposal_generator or BenchmarkProposalGenerator(
            store, self.config
        )
        self._trend_detector = trend_detector or TrendDetector(store, None, self.config)
        self._alert_sweep = alert_sweep
        self.max_workers = self.config.max_concurrent_connectors

    async def run_ingestion(
        self,
        connectors: list[SourceConnector],
        trigger: str = "manual",
        actor_id: str | None = None,
    ) -> IngestionRunReport:
        """Ingest from every connector and persist the run report.

        Args:
            connectors: Connectors to run; order of processing is not guaranteed.
            trigger: What started the run (manual, scheduled, ...).
            actor_id: User or service recorded on the report and audit entry.

        Returns:
            Complete report, including per-connector failures.

        Raises:
            StoreUnavailableError: If checkpoints cannot be loaded or the
                report cannot be persisted.
        """
        started_at = utc_now()
        run_id = new_run_id("ING")
        log.info(
            "Ingestion run started",
            run_id=run_id,
            trigger=trigger,
            connectors=len(connectors),
        )

        await self._load_checkpoints(connectors)
        results = await self._run_pool(connectors, run_id)

        errors = [
            RunError(source_id=r.source_id, message=message, error_type=classify_error(message))
            for r in results
            for message in r.errors
        ]
        report = IngestionRunReport(
            run_id=run_id,
            trigger=trigger,
            actor_id=actor_id,
            started_at=started_at,
            completed_at=utc_now(),
            sources_attempted=len(connectors),
            sources_succeeded=sum(1 for r in results if r.ran),
            sources_failed=sum(1 for r in results if not r.ran),
            evidence_extracted=sum(r.records_extracted for r in results),
            evidence_created=sum(r.evidence_created for r in results),
            evidence_skipped=sum(r.evidence_skipped for r in results),
            evidence_failed=sum(r.records_failed for r in results),
            per_source=results,
            errors=errors,
        )

        await self._store.insert_run_report(report)
        await self._store.insert_audit_entry(
            AuditEntry(
                run_type="price_extraction",
                run_id=run_id,
                actor_id=actor_id,
                input_summary={
                    "trigger": trigger,
                    "sources": [c.source_id for c in connectors],
                },
                output_summary={
                    "sources_succeeded": report.sources_succeeded,
                    "sources_failed": report.sources_failed,
                    "evidence_created": report.evidence_created,
                    "evidence_skipped": report.evidence_skipped,
                },
                error_count=len(errors),
                started_at=started_at,
                completed_at=report.completed_at,
            )
        )

        log.info(
            "Ingestion run complete",
            run_id=run_id,
            sources_succeeded=report.sources_succeeded,
            sources_failed=report.sources_failed,
            evidence_created=report.evidence_created,
            evidence_skipped=report.evidence_skipped,
            evidence_failed=report.evidence_failed,
            duration_ms=report.duration_ms,
        )

        if report.evidence_created > 0:
            await self._run_downstream(report, actor_id)
        return report

    async def run_single_connector(
        self,
        connector: SourceConnector,
        trigger: str = "manual",
        actor_id: str | None = None,
    ) -> IngestionRunReport:
        return await self.run_ingestion([connector], trigger=trigger, actor_id=actor_id)

    async def test_scrape(self, connector: SourceConnector) -> ScrapePreview:
        """Dry run of one connector; nothing is persisted.

        Returns:
            Counts plus the first few normalized records.
        """
        started = time.monotonic()
        raw = await connector.fetch()
        preview = ScrapePreview(
            source_id=connector.source_id,
            source_name=connector.source_name,
            success=False,
            status_code=raw.status_code,
            fetch_error=raw.error,
        )
        if raw.is_hard_failure:
            preview.duration_ms = _elapsed_ms(started)
            return preview

        try:
            extracted = await connector.extract(raw)
        except Exception as exc:
            preview.errors.append(f"Extraction failed: {exc}")
            preview.duration_ms = _elapsed_ms(started)
            return preview

        candidates = validate_candidates(extracted)
        preview.candidates_found = len(extracted)
        preview.valid_candidates = len(candidates)
        for candidate in candidates[: self.config.test_scrape_preview_limit]:
            preview.preview.append(self._normalize(connector, candidate))
        preview.success = True
        preview.duration_ms = _elapsed_ms(started)
        return preview

    async def _load_checkpoints(self, connectors: list[SourceConnector]) -> None:
        for connector in connectors:
            descriptor = await self._store.get_source(connector.source_id)
            if descriptor is not None and descriptor.last_successful_fetch is not None:
                connector.last_successful_fetch = descriptor.last_successful_fetch

    async def _run_pool(
        self, connectors: list[SourceConnector], run_id: str
    ) -> list[SourceRunResult]:
        queue: asyncio.Queue[SourceConnector] = asyncio.Queue()
        for connector in connectors:
            queue.put_nowait(connector)

        results: list[SourceRunResult] = []

        async def worker() -> None:
            while True:
                try:
                    connector = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    result = await self._process_connector(connector, run_id)
                    await self._record_outcome(connector, result, run_id)
                    results.append(result)
                finally:
                    queue.task_done()

        worker_count = min(self.max_workers, len(connectors))
        await asyncio.gather(*(worker() for _ in range(worker_count)))
        return results

    async def _process_connector(
        self, connector: SourceConnector, run_id: str
    ) -> SourceRunResult:
        """Fetch, extract and persist for one connector; never raises."""
        started = time.monotonic()
        result = SourceRunResult(source_id=connector.source_id, source_name=connector.source_name)
        try:
            raw = await connector.fetch()
            result.fetched_at = raw.fetched_at
            result.http_status = raw.status_code
            if raw.is_hard_failure:
                result.errors.append(raw.error or f"HTTP {raw.status_code}")
                log.warning(
                    "Connector fetch failed",
                    source_id=connector.source_id,
                    status_code=raw.status_code,
                    error=raw.error,
                )
                return result

            try:
                extracted = await connector.extract(raw)
            except Exception as exc:
                result.errors.append(f"Extraction failed: {exc}")
                log.error(
                    "Connector extraction failed",
                    source_id=connector.source_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return result

            candidates = validate_candidates(extracted)
            result.records_extracted = len(candidates)
            result.status = "partial"
            for candidate in candidates:
                await self._persist_candidate(connector, candidate, raw, run_id, result)
            if result.evidence_created > 0:
                result.status = "success"
        except Exception as exc:
            result.status = "failed"
            result.errors.append(f"Unexpected connector failure: {exc}")
            log.exception("Unexpected connector failure", source_id=connector.source_id)
        finally:
            result.duration_ms = _elapsed_ms(started)
        return result

    def _normalize(
        self, connector: SourceConnector, candidate: ExtractedEvidenceCandidate
    ) -> NormalizedEvidence:
        try:
            normalized = connector.normalize(candidate)
            payload = normalized.model_dump() if isinstance(normalized, BaseModel) else normalized
            return NormalizedEvidence.model_validate(payload)
        except Exception as exc:
            log.warning(
                "Normalization failed, using placeholder",
                source_id=connector.source_id,
                title=candidate.title,
                error=str(exc),
            )
            return placeholder_evidence(candidate)

    async def _persist_candidate(
        self,
        connector: SourceConnector,
        candidate: ExtractedEvidenceCandidate,
        raw: RawFetchResult,
        run_id: str,
        result: SourceRunResult,
    ) -> None:
        normalized = self._normalize(connector, candidate)
        capture_date = candidate.published_date or raw.fetched_at

        try:
            duplicate = await self._store.find_duplicate(
                candidate.source_url, normalized.metric, capture_date
            )
            if duplicate is not None:
                result.evidence_skipped += 1
                log.debug(
                    "Duplicate evidence skipped",
                    source_id=connector.source_id,
                    item_name=normalized.metric,
                    existing_record=duplicate.record_id,
                )
                return

            record = EvidenceRecord(
                record_id=generate_record_id(),
                source_registry_id=connector.source_id,
                source_url=candidate.source_url,
                category=candidate.category,
                geography=candidate.geography,
                item_name=normalized.metric,
                price_typical=normalized.value,
                unit=normalized.unit,
                currency=connector.currency,
                capture_date=capture_date,
                reliability_grade=normalized.grade,
                confidence_score=round(normalized.confidence * 100),
                extracted_snippet=normalized.summary,
                publisher=connector.source_name,
                title=candidate.title,
                tags=tuple(normalized.tags),
                run_id=run_id,
            )
            await self._store.insert_evidence(record)
        except DuplicateEvidenceError:
            result.evidence_skipped += 1
            log.debug(
                "Duplicate evidence rejected by store",
                source_id=connector.source_id,
                item_name=normalized.metric,
            )
            return
        except Exception as exc:
            result.records_failed += 1
            result.errors.append(f"Persistence failed for '{normalized.metric}': {exc}")
            log.error(
                "Evidence persistence failed",
                source_id=connector.source_id,
                item_name=normalized.metric,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return

        result.evidence_created += 1
        if record.category not in result.categories:
            result.categories.append(record.category)

        try:
            await self._change_detector.detect(record)
        except Exception as exc:
            log.warning(
                "Change detection failed",
                record_id=record.record_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _record_outcome(
        self, connector: SourceConnector, result: SourceRunResult, run_id: str
    ) -> None:
        """Persist the health record and scheduling metadata for one connector."""
        first_error = result.errors[0] if result.errors else None
        try:
            await self._store.insert_health_record(
                ConnectorHealthRecord(
                    run_id=run_id,
                    source_id=connector.source_id,
                    status=result.status,
                    records_extracted=result.records_extracted,
                    records_inserted=result.evidence_created,
                    duplicates_skipped=result.evidence_skipped,
                    records_failed=result.records_failed,
                    error_message=first_error,
                    error_type=classify_error(first_error) if first_error else None,
                    http_status=result.http_status,
                    response_time_ms=result.duration_ms,
                )
            )

            current = await self._store.get_source(connector.source_id)
            changes: dict[str, Any] = {
                "last_scraped_at": utc_now(),
                "last_scraped_status": result.status,
                "last_record_count": result.evidence_created,
            }
            if result.ran:
                checkpoint = result.fetched_at or utc_now()
                changes["consecutive_failures"] = 0
                changes["last_successful_fetch"] = checkpoint
                connector.last_successful_fetch = checkpoint
            else:
                previous = current.consecutive_failures if current is not None else 0
                changes["consecutive_failures"] = previous + 1
            if current is not None:
                await self._store.update_source(connector.source_id, **changes)
        except Exception as exc:
            log.error(
                "Failed to record connector outcome",
                source_id=connector.source_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

        log.info(
            "Connector processed",
            source_id=connector.source_id,
            status=result.status,
            extracted=result.records_extracted,
            created=result.evidence_created,
            skipped=result.evidence_skipped,
            failed=result.records_failed,
            duration_ms=result.duration_ms,
        )

    async def _run_downstream(self, report: IngestionRunReport, actor_id: str | None) -> None:
        try:
            await self._proposal_generator.generate(actor_id=actor_id)
        except Exception as exc:
            log.error("Proposal generation failed", run_id=report.run_id, error=str(exc))

        try:
            await self._trend_detector.detect_for_categories(report.categories, actor_id=actor_id)
        except Exception as exc:
            log.error("Trend detection failed", run_id=report.run_id, error=str(exc))

        if self._alert_sweep is None:
            return
        try:
            await self._alert_sweep(report)
        except Exception as exc:
            log.error("Alert sweep failed", run_id=report.run_id, error=str(exc))
