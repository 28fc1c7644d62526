"""Tests for ingestion orchestration.

Covers the per-connector lifecycle (fetch, extract, normalize, dedupe,
persist), failure isolation, scheduling metadata, the worker pool bound,
downstream passes and the dry-run scrape.
"""

import asyncio
import re
from collections.abc import Callable
from datetime import datetime, timedelta

import pytest
from pytest_mock import MockerFixture

from config.settings import GlobalConfig
from evidence_pipeline.exceptions import PersistenceError, StoreUnavailableError
from evidence_pipeline.models import (
    EvidenceRecord,
    ExtractedEvidenceCandidate,
    NormalizedEvidence,
    RawFetchResult,
    SourceDescriptor,
)
from evidence_pipeline.orchestrator import (
    IngestionOrchestrator,
    classify_error,
    generate_record_id,
)
from evidence_pipeline.store import InMemoryEvidenceStore
from tests.conftest import REFERENCE_NOW, FakeConnector, candidate

ROBOTS_ERROR = "Blocked by robots.txt policy: https://supplier.example.com/prices"


def _tiles() -> list[ExtractedEvidenceCandidate]:
    return [
        candidate("Porcelain tile", value_hint=85.0, unit_hint="sqm"),
        candidate("Marble slab", value_hint=1250.0, unit_hint="sqm"),
    ]


def _broken_normalize(item: ExtractedEvidenceCandidate) -> NormalizedEvidence:
    raise RuntimeError(f"cannot normalize {item.title}")


class SlowLookupStore(InMemoryEvidenceStore):
    """Holds every duplicate lookup until two are in flight.

    Forces two concurrent runs to both see "no duplicate" before either
    inserts.
    """

    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)
        self.lookups = 0
        self.both_looked_up = asyncio.Event()

    async def find_duplicate(self, source_url: str, item_name: str, capture_date: datetime):
        found = await super().find_duplicate(source_url, item_name, capture_date)
        self.lookups += 1
        if self.lookups >= 2:
            self.both_looked_up.set()
        await asyncio.wait_for(self.both_looked_up.wait(), timeout=5)
        return found


class TrackingConnector(FakeConnector):
    """Records how many connectors are fetching at the same time."""

    active = 0
    peak = 0

    async def fetch(self) -> RawFetchResult:
        cls = type(self)
        cls.active += 1
        cls.peak = max(cls.peak, cls.active)
        try:
            await asyncio.sleep(0.01)
            return await super().fetch()
        finally:
            cls.active -= 1


class TestErrorClassification:
    @pytest.mark.parametrize(
        "message,error_type",
        [
            ("getaddrinfo ENOTFOUND api.example.com", "dns_failure"),
            ("DNS lookup timed out", "dns_failure"),
            ("Request timed out after 30000ms", "timeout"),
            ("Failed after 3 attempts: ReadTimeout", "timeout"),
            ("HTTP 503 Service Unavailable", "http_error"),
            (ROBOTS_ERROR, "http_error"),
            ("Anti-bot challenge detected (captcha)", "http_error"),
            ("LLM oracle call failed: rate limit exceeded", "llm_error"),
            ("Unexpected token in JSON at position 0", "parse_error"),
            ("Something odd happened", "unknown"),
            ("", "unknown"),
            (None, "unknown"),
        ],
    )
    def test_first_matching_pattern_wins(self, message: str | None, error_type: str) -> None:
        assert classify_error(message) == error_type

    def test_record_id_format(self) -> None:
        assert re.fullmatch(r"EVR-\d{8}-[0-9A-F]{6}", generate_record_id())


class TestRunIngestion:
    """Test suite for IngestionOrchestrator.run_ingestion."""

    @pytest.mark.asyncio
    async def test_successful_connector(
        self,
        mock_config: GlobalConfig,
        descriptor_factory: Callable[..., SourceDescriptor],
    ) -> None:
        store = InMemoryEvidenceStore([descriptor_factory(consecutive_failures=2)])
        connector = FakeConnector(candidates=[*_tiles(), {"title": ""}])

        report = await IngestionOrchestrator(store, mock_config).run_ingestion(
            [connector], trigger="scheduled", actor_id="ops"
        )

        assert report.trigger == "scheduled"
        assert (report.sources_attempted, report.sources_succeeded, report.sources_failed) == (1, 1, 0)
        assert (report.evidence_extracted, report.evidence_created, report.evidence_skipped) == (2, 2, 0)
        assert report.errors == []
        assert report.categories == ["floors"]

        first = store.evidence[0]
        assert first.item_name == "Porcelain tile"
        assert first.price_typical == 85.0
        assert first.source_registry_id == "test-source"
        assert first.publisher == "test-source publisher"
        assert first.confidence_score == 80
        assert first.capture_date == REFERENCE_NOW
        assert first.run_id == report.run_id

        (health,) = store.health_records
        assert health.status == "success"
        assert health.records_inserted == 2
        assert health.error_type is None

        source = await store.get_source("test-source")
        assert source.consecutive_failures == 0
        assert source.last_successful_fetch == REFERENCE_NOW
        assert source.last_scraped_status == "success"
        assert source.last_record_count == 2
        assert connector.last_successful_fetch == REFERENCE_NOW

        assert store.run_reports == [report]
        assert [a.run_type for a in store.audit_entries] == [
            "price_extraction",
            "benchmark_proposal",
            "trend_detection",
        ]

    @pytest.mark.asyncio
    async def test_robots_block_fails_without_extraction(
        self,
        mock_config: GlobalConfig,
        descriptor_factory: Callable[..., SourceDescriptor],
    ) -> None:
        store = InMemoryEvidenceStore([descriptor_factory(consecutive_failures=2)])
        connector = FakeConnector(candidates=_tiles(), status_code=403, error=ROBOTS_ERROR)

        report = await IngestionOrchestrator(store, mock_config).run_ingestion([connector])

        assert connector.extract_calls == 0
        assert (report.sources_succeeded, report.sources_failed) == (0, 1)
        assert report.errors[0].message == ROBOTS_ERROR
        assert report.errors[0].error_type == "http_error"

        health = store.health_records[0]
        assert health.status == "failed"
        assert health.http_status == 403
        assert health.error_type == "http_error"

        source = await store.get_source("test-source")
        assert source.consecutive_failures == 3
        assert source.last_scraped_status == "failed"
        assert source.last_successful_fetch is None
        assert [a.run_type for a in store.audit_entries] == ["price_extraction"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code,error,message,error_type",
        [
            (0, "Failed after 3 attempts: ReadTimeout", "Failed after 3 attempts: ReadTimeout", "timeout"),
            (500, None, "HTTP 500", "http_error"),
        ],
    )
    async def test_fetch_failures_recorded(
        self,
        mock_config: GlobalConfig,
        store: InMemoryEvidenceStore,
        status_code: int,
        error: str | None,
        message: str,
        error_type: str,
    ) -> None:
        connector = FakeConnector(status_code=status_code, error=error)

        report = await IngestionOrchestrator(store, mock_config).run_ingestion([connector])

        assert report.per_source[0].status == "failed"
        assert report.errors[0].message == message
        assert report.errors[0].error_type == error_type

    @pytest.mark.asyncio
    async def test_extraction_exception_fails_connector(
        self, mock_config: GlobalConfig, store: InMemoryEvidenceStore
    ) -> None:
        connector = FakeConnector(extract_error=ValueError("unexpected token in JSON"))

        report = await IngestionOrchestrator(store, mock_config).run_ingestion([connector])

        result = report.per_source[0]
        assert result.status == "failed"
        assert result.errors == ["Extraction failed: unexpected token in JSON"]
        assert report.errors[0].error_type == "parse_error"
        assert store.evidence == []

    @pytest.mark.asyncio
    async def test_failed_normalization_uses_placeholder(
        self, mock_config: GlobalConfig, store: InMemoryEvidenceStore
    ) -> None:
        connector = FakeConnector(candidates=_tiles()[:1], normalize=_broken_normalize)

        report = await IngestionOrchestrator(store, mock_config).run_ingestion([connector])

        assert report.evidence_created == 1
        record = store.evidence[0]
        assert record.item_name == "Porcelain tile"
        assert record.price_typical is None
        assert record.reliability_grade == "C"
        assert record.confidence_score == 20

    @pytest.mark.asyncio
    async def test_repeat_run_skips_duplicates(
        self, mock_config: GlobalConfig, store: InMemoryEvidenceStore
    ) -> None:
        orchestrator = IngestionOrchestrator(store, mock_config)
        await orchestrator.run_ingestion([FakeConnector(candidates=_tiles())])
        audits_after_first = len(store.audit_entries)

        report = await orchestrator.run_ingestion([FakeConnector(candidates=_tiles())])

        assert (report.evidence_created, report.evidence_skipped) == (0, 2)
        assert report.per_source[0].status == "partial"
        assert report.sources_succeeded == 1
        assert len(store.evidence) == 2
        assert report.evidence_created + report.evidence_skipped <= report.evidence_extracted
        assert len(store.audit_entries) == audits_after_first + 1

    @pytest.mark.asyncio
    async def test_concurrent_runs_may_both_insert(self, mock_config: GlobalConfig) -> None:
        store = SlowLookupStore()
        orchestrator = IngestionOrchestrator(store, mock_config)

        reports = await asyncio.gather(
            orchestrator.run_ingestion([FakeConnector(candidates=_tiles()[:1])]),
            orchestrator.run_ingestion([FakeConnector(candidates=_tiles()[:1])]),
        )

        assert sum(r.evidence_created for r in reports) == 2
        assert len(store.evidence) == 2

    @pytest.mark.asyncio
    async def test_unique_key_store_turns_race_into_skip(self, mock_config: GlobalConfig) -> None:
        store = SlowLookupStore(enforce_unique_key=True)
        orchestrator = IngestionOrchestrator(store, mock_config)

        reports = await asyncio.gather(
            orchestrator.run_ingestion([FakeConnector(candidates=_tiles()[:1])]),
            orchestrator.run_ingestion([FakeConnector(candidates=_tiles()[:1])]),
        )

        assert sum(r.evidence_created for r in reports) == 1
        assert sum(r.evidence_skipped for r in reports) == 1
        assert len(store.evidence) == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_counted(
        self,
        mock_config: GlobalConfig,
        store: InMemoryEvidenceStore,
        mocker: MockerFixture,
    ) -> None:
        mocker.patch.object(
            store, "insert_evidence", side_effect=PersistenceError("evidence", "disk full")
        )

        report = await IngestionOrchestrator(store, mock_config).run_ingestion(
            [FakeConnector(candidates=_tiles())]
        )

        result = report.per_source[0]
        assert result.records_failed == 2
        assert result.status == "partial"
        assert report.evidence_failed == 2
        assert "Persistence failed for 'Porcelain tile'" in result.errors[0]

    @pytest.mark.asyncio
    async def test_unexpected_insert_error_skips_only_that_record(
        self,
        mock_config: GlobalConfig,
        store: InMemoryEvidenceStore,
        mocker: MockerFixture,
    ) -> None:
        """A driver error on one insert fails that record; the rest of the batch persists."""
        insert = store.insert_evidence
        calls = {"n": 0}

        async def flaky_insert(record: EvidenceRecord) -> None:
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("connection reset by peer")
            await insert(record)

        mocker.patch.object(store, "insert_evidence", side_effect=flaky_insert)

        report = await IngestionOrchestrator(store, mock_config).run_ingestion(
            [FakeConnector(candidates=_tiles())]
        )

        result = report.per_source[0]
        assert result.status == "success"
        assert result.evidence_created == 1
        assert result.records_failed == 1
        assert [r.item_name for r in store.evidence] == ["Marble slab"]
        assert "connection reset by peer" in result.errors[0]

    @pytest.mark.asyncio
    async def test_checkpoint_loaded_before_extraction(
        self,
        mock_config: GlobalConfig,
        descriptor_factory: Callable[..., SourceDescriptor],
    ) -> None:
        checkpoint = REFERENCE_NOW - timedelta(days=7)
        store = InMemoryEvidenceStore([descriptor_factory(last_successful_fetch=checkpoint)])
        connector = FakeConnector(candidates=_tiles())

        await IngestionOrchestrator(store, mock_config).run_ingestion([connector])

        assert connector.seen_checkpoint == checkpoint
        assert connector.last_successful_fetch == REFERENCE_NOW

    @pytest.mark.asyncio
    async def test_unavailable_store_propagates(
        self,
        mock_config: GlobalConfig,
        store: InMemoryEvidenceStore,
        mocker: MockerFixture,
    ) -> None:
        mocker.patch.object(store, "get_source", side_effect=StoreUnavailableError("connection refused"))
        connector = FakeConnector(candidates=_tiles())

        with pytest.raises(StoreUnavailableError):
            await IngestionOrchestrator(store, mock_config).run_ingestion([connector])
        assert connector.fetch_calls == 0

    @pytest.mark.asyncio
    async def test_failures_isolated_between_connectors(
        self, mock_config: GlobalConfig, store: InMemoryEvidenceStore
    ) -> None:
        connectors = [
            FakeConnector("good", candidates=_tiles()),
            FakeConnector("blocked", status_code=403, error=ROBOTS_ERROR),
            FakeConnector("broken", extract_error=RuntimeError("boom")),
        ]

        report = await IngestionOrchestrator(store, mock_config).run_ingestion(connectors)

        statuses = {r.source_id: r.status for r in report.per_source}
        assert statuses == {"good": "success", "blocked": "failed", "broken": "failed"}
        assert (report.sources_succeeded, report.sources_failed) == (1, 2)
        assert len(store.health_records) == 3

    @pytest.mark.asyncio
    async def test_worker_pool_is_bounded(
        self, mock_config: GlobalConfig, store: InMemoryEvidenceStore
    ) -> None:
        TrackingConnector.active = 0
        TrackingConnector.peak = 0
        connectors = [TrackingConnector(f"source-{i}") for i in range(7)]

        report = await IngestionOrchestrator(store, mock_config).run_ingestion(connectors)

        assert TrackingConnector.peak == mock_config.max_concurrent_connectors
        assert len(report.per_source) == 7
        assert {c.fetch_calls for c in connectors} == {1}

    @pytest.mark.asyncio
    async def test_run_single_connector(
        self, mock_config: GlobalConfig, store: InMemoryEvidenceStore
    ) -> None:
        report = await IngestionOrchestrator(store, mock_config).run_single_connector(
            FakeConnector(candidates=_tiles()), actor_id="analyst-2"
        )

        assert report.sources_attempted == 1
        assert report.actor_id == "analyst-2"
        assert report.evidence_created == 2


class TestDownstreamPasses:
    """Proposal, trend and alert passes after ingestion."""

    @pytest.fixture
    def passes(self, mocker: MockerFixture) -> dict:
        generator = mocker.MagicMock()
        generator.generate = mocker.AsyncMock(side_effect=RuntimeError("proposal store down"))
        detector = mocker.MagicMock()
        detector.detect_for_categories = mocker.AsyncMock(return_value=[])
        return {
            "proposal_generator": generator,
            "trend_detector": detector,
            "alert_sweep": mocker.AsyncMock(side_effect=RuntimeError("smtp down")),
        }

    @pytest.mark.asyncio
    async def test_failures_do_not_escape(
        self, mock_config: GlobalConfig, store: InMemoryEvidenceStore, passes: dict
    ) -> None:
        orchestrator = IngestionOrchestrator(store, mock_config, **passes)

        report = await orchestrator.run_ingestion(
            [FakeConnector(candidates=_tiles())], actor_id="ops"
        )

        passes["proposal_generator"].generate.assert_awaited_once_with(actor_id="ops")
        passes["trend_detector"].detect_for_categories.assert_awaited_once_with(
            ["floors"], actor_id="ops"
        )
        passes["alert_sweep"].assert_awaited_once_with(report)

    @pytest.mark.asyncio
    async def test_skipped_when_nothing_created(
        self, mock_config: GlobalConfig, store: InMemoryEvidenceStore, passes: dict
    ) -> None:
        orchestrator = IngestionOrchestrator(store, mock_config, **passes)

        await orchestrator.run_ingestion([FakeConnector(candidates=[])])

        passes["proposal_generator"].generate.assert_not_awaited()
        passes["trend_detector"].detect_for_categories.assert_not_awaited()
        passes["alert_sweep"].assert_not_awaited()


class TestScrapePreview:
    """Test suite for the dry-run scrape."""

    @pytest.mark.asyncio
    async def test_preview_is_capped_and_not_persisted(
        self, mock_config: GlobalConfig, store: InMemoryEvidenceStore
    ) -> None:
        items = [candidate(f"Tile {i}", value_hint=float(10 + i)) for i in range(7)]
        connector = FakeConnector(candidates=[*items, {"title": ""}])

        preview = await IngestionOrchestrator(store, mock_config).test_scrape(connector)

        assert preview.success is True
        assert preview.candidates_found == 8
        assert preview.valid_candidates == 7
        assert len(preview.preview) == mock_config.test_scrape_preview_limit
        assert preview.preview[0].metric == "Tile 0"
        assert store.evidence == []
        assert store.health_records == []
        assert store.audit_entries == []

    @pytest.mark.asyncio
    async def test_fetch_failure(
        self, mock_config: GlobalConfig, store: InMemoryEvidenceStore
    ) -> None:
        connector = FakeConnector(status_code=403, error=ROBOTS_ERROR)

        preview = await IngestionOrchestrator(store, mock_config).test_scrape(connector)

        assert preview.success is False
        assert preview.status_code == 403
        assert preview.fetch_error == ROBOTS_ERROR
        assert connector.extract_calls == 0

    @pytest.mark.asyncio
    async def test_extraction_failure(
        self, mock_config: GlobalConfig, store: InMemoryEvidenceStore
    ) -> None:
        connector = FakeConnector(extract_error=RuntimeError("layout changed"))

        preview = await IngestionOrchestrator(store, mock_config).test_scrape(connector)

        assert preview.success is False
        assert preview.errors == ["Extraction failed: layout changed"]
