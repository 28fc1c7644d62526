"""Pytest configuration and shared fixtures for the evidence pipeline suite.

The suite is hermetic:
- No external network requests (httpx.MockTransport serves every URL)
- No real sleeping (fetchers receive a recording sleep)
- No real oracle calls (FakeOracle returns scripted replies)
- Isolated state (fresh in-memory store and configuration per test)
"""

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest

from config.settings import GlobalConfig
from evidence_pipeline.connector import SourceConnector
from evidence_pipeline.exceptions import OracleError
from evidence_pipeline.models import (
    EvidenceRecord,
    ExtractedEvidenceCandidate,
    NormalizedEvidence,
    RawFetchResult,
    SourceDescriptor,
)
from evidence_pipeline.store import InMemoryEvidenceStore

REFERENCE_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def mock_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[GlobalConfig]:
    """Provide isolated GlobalConfig with safe test defaults.

    Clears the lru_cache singleton before and after the test and points
    every file path at ``tmp_path``.
    """
    from config.settings import get_config

    get_config.cache_clear()

    log_dir = tmp_path / "logs"
    output_dir = tmp_path / "output"
    log_dir.mkdir()
    output_dir.mkdir()

    test_env = {
        "APP_NAME": "EvidencePipeline-Test",
        "ENVIRONMENT": "test",
        "DEBUG": "false",
        "LOG_LEVEL": "DEBUG",
        "LOG_DIR": str(log_dir),
        "LOG_ROTATION": "1 day",
        "LOG_RETENTION": "1 day",
        "REQUEST_TIMEOUT_MS": "5000",
        "RETRY_MAX_ATTEMPTS": "3",
        "RETRY_BASE_DELAY_SEC": "1.0",
        "RETRY_MAX_DELAY_SEC": "8.0",
        "DEFAULT_REQUEST_DELAY_MS": "0",
        "MAX_CONCURRENT_CONNECTORS": "3",
        "LLM_API_KEY": "",
        "TREND_GENERATE_NARRATIVE": "false",
        "SOURCES_FILE": str(tmp_path / "sources.yaml"),
        "OUTPUT_DIR": str(output_dir),
    }
    for key, value in test_env.items():
        monkeypatch.setenv(key, value)

    config = get_config()

    yield config

    get_config.cache_clear()


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


class FakeOracle:
    """Scripted extraction oracle.

    Each call pops the next reply; an exception instance in the script is
    raised instead of returned.
    """

    def __init__(self, *replies: str | Exception) -> None:
        self.replies = list(replies)
        self.calls: list[tuple[str, str]] = []

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        if not self.replies:
            raise OracleError("no scripted reply left", model="fake")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def fake_oracle_factory() -> Callable[..., FakeOracle]:
    return FakeOracle


@pytest.fixture
def descriptor_factory() -> Callable[..., SourceDescriptor]:
    """Factory for source descriptors with overridable fields.

    Example:
        descriptor = descriptor_factory(id="rak-ceramics-uae", default_unit="sqm")
    """

    def _make(**overrides: Any) -> SourceDescriptor:
        data: dict[str, Any] = {
            "id": "test-source",
            "name": "Test Source",
            "url": "https://supplier.example.com/prices",
            "category": "floors",
            "geography": "UAE",
            "request_delay_ms": 0,
        }
        data.update(overrides)
        return SourceDescriptor(**data)

    return _make


@pytest.fixture
def evidence_factory() -> Callable[..., EvidenceRecord]:
    """Factory for persisted evidence records.

    ``days_ago`` positions the capture date relative to ``REFERENCE_NOW``.
    """
    counter = {"n": 0}

    def _make(days_ago: float = 0, **overrides: Any) -> EvidenceRecord:
        counter["n"] += 1
        data: dict[str, Any] = {
            "record_id": f"EVR-20250301-{counter['n']:06X}",
            "source_registry_id": "test-source",
            "source_url": "https://supplier.example.com/prices",
            "category": "floors",
            "geography": "UAE",
            "item_name": "Porcelain tile 60x60",
            "price_typical": 100.0,
            "unit": "sqm",
            "capture_date": REFERENCE_NOW - timedelta(days=days_ago),
            "reliability_grade": "B",
            "confidence_score": 80,
            "extracted_snippet": "Porcelain tile 60x60 AED 100 per sqm",
            "publisher": "Test Source",
            "title": "Test Source - Porcelain tile 60x60",
            "run_id": "ING-TEST0001",
        }
        data.update(overrides)
        return EvidenceRecord(**data)

    return _make


@pytest.fixture
def store() -> InMemoryEvidenceStore:
    return InMemoryEvidenceStore()


Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture
def http_client_factory() -> Callable[[Handler], httpx.AsyncClient]:
    """Factory for httpx clients served by a MockTransport handler.

    The handler also receives robots.txt requests, so tests control both.
    """

    def _make(handler: Handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _make


def candidate(
    title: str,
    raw_text: str | None = None,
    source_url: str = "https://supplier.example.com/prices",
    category: str = "floors",
    **overrides: Any,
) -> ExtractedEvidenceCandidate:
    return ExtractedEvidenceCandidate(
        title=title,
        raw_text=raw_text or f"{title} AED 100 per sqm",
        category=category,
        geography=overrides.pop("geography", "UAE"),
        source_url=source_url,
        **overrides,
    )


class FakeConnector(SourceConnector):
    """Connector with a scripted fetch result and candidates.

    Attributes:
        fetch_calls: Number of fetches performed.
        extract_calls: Number of extractions performed.
        seen_checkpoint: Checkpoint visible at extraction time.
    """

    def __init__(
        self,
        source_id: str = "test-source",
        candidates: list[Any] | None = None,
        status_code: int = 200,
        error: str | None = None,
        extract_error: Exception | None = None,
        normalize: Callable[[ExtractedEvidenceCandidate], NormalizedEvidence] | None = None,
        fetched_at: datetime | None = None,
    ) -> None:
        self.source_id = source_id
        self.source_name = f"{source_id} publisher"
        self.source_url = "https://supplier.example.com/prices"
        self.currency = "AED"
        self.last_successful_fetch = None
        self._candidates = candidates or []
        self._status_code = status_code
        self._error = error
        self._extract_error = extract_error
        self._normalize = normalize
        self._fetched_at = fetched_at or REFERENCE_NOW
        self.fetch_calls = 0
        self.extract_calls = 0
        self.seen_checkpoint: datetime | None = None

    async def fetch(self) -> RawFetchResult:
        self.fetch_calls += 1
        return RawFetchResult(
            url=self.source_url,
            fetched_at=self._fetched_at,
            status_code=self._status_code,
            body_text="<html></html>" if self._status_code < 400 else None,
            error=self._error,
            attempts=0 if self._status_code == 403 else 1,
        )

    async def extract(self, raw: RawFetchResult) -> list[ExtractedEvidenceCandidate]:
        self.extract_calls += 1
        self.seen_checkpoint = self.last_successful_fetch
        if self._extract_error is not None:
            raise self._extract_error
        return list(self._candidates)

    def normalize(self, candidate: ExtractedEvidenceCandidate) -> NormalizedEvidence:
        if self._normalize is not None:
            return self._normalize(candidate)
        return NormalizedEvidence(
            metric=candidate.metric_hint or candidate.title,
            value=candidate.value_hint,
            unit=candidate.unit_hint,
            confidence=0.8,
            grade="B",
            summary=candidate.raw_text,
        )


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests requiring full stack",
    )
