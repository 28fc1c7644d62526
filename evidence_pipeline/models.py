"""Domain models for the evidence pipeline.

Ephemeral models (fetch results, candidates, normalized evidence) live only
within one connector cycle. Persisted models (evidence records, price change
events, insights, trend snapshots, proposals, run reports, health records and
audit entries) are append-only; ``EvidenceRecord`` is frozen.
"""

import re
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

Grade = Literal["A", "B", "C"]
ScrapeStatus = Literal["success", "partial", "failed", "never"]
HealthStatus = Literal["success", "partial", "failed"]
ErrorType = Literal["dns_failure", "timeout", "http_error", "parse_error", "llm_error", "unknown"]
ChangeSeverity = Literal["minor", "notable", "significant"]
TrendDirection = Literal["rising", "falling", "stable", "insufficient_data"]
TrendConfidence = Literal["high", "medium", "low", "insufficient"]
Recommendation = Literal["publish", "reject"]
AuditRunType = Literal["price_extraction", "benchmark_proposal", "trend_detection"]


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_run_id(prefix: str) -> str:
    """Short human-readable run identifier, e.g. ``ING-3F9A01BC``."""
    return f"{prefix}-{uuid4().hex[:8].upper()}"


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _require_http_url(value: str) -> str:
    cleaned = value.strip()
    if not cleaned.lower().startswith(("http://", "https://")):
        raise ValueError(f"URL must be absolute http(s), got '{value}'")
    return cleaned


class ScrapeMethod(StrEnum):
    """Extraction strategy selected for a source."""

    HTML_LLM = "html_llm"
    HTML_RULES = "html_rules"
    JSON_API = "json_api"


DEFAULT_CRAWL_EXCLUDES = (
    r"\.(pdf|jpe?g|png|gif|svg|webp)$",
    r"/(cart|checkout|login|register|account)\b",
    r"/(privacy|terms|cookie)",
    r"/sitemap\.xml$",
)


class CrawlSettings(BaseModel):
    """Limits for following same-site links from a source's URL.

    Attributes:
        max_depth: Link hops followed from the seed page (0 = seed only).
        page_budget: Maximum fetches per crawl, failed fetches included.
        include_patterns: If set, a discovered URL must match one of these.
        exclude_patterns: Discovered URLs matching any of these are dropped.
    """

    max_depth: int = Field(default=1, ge=0, le=5)
    page_budget: int = Field(default=3, ge=1, le=50)
    include_patterns: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_CRAWL_EXCLUDES))

    @field_validator("include_patterns", "exclude_patterns")
    @classmethod
    def validate_patterns(cls, value: list[str]) -> list[str]:
        for pattern in value:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"invalid URL pattern '{pattern}': {exc}") from exc
        return value


class SourceDescriptor(BaseModel):
    """Registry entry describing one external source.

    Attributes:
        id: Stable source identity; also drives the reliability grade.
        name: Publisher name recorded on evidence.
        url: Page or endpoint fetched by the connector.
        category: Evidence category when the source type does not map to one.
        geography: Market the source reports on.
        source_type: Publisher kind (supplier catalog, industry report, ...).
        scrape_method: Extraction strategy.
        extraction_hints: Free-text guidance forwarded to the oracle.
        request_delay_ms: Politeness delay; None falls back to configuration.
        last_successful_fetch: Checkpoint used for incremental extraction.
        consecutive_failures: Failed runs since the last successful one.
        crawl: Multi-page crawl limits; None fetches the URL alone.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    url: str
    category: str = Field(default="material_cost", min_length=1)
    geography: str = Field(default="UAE", min_length=1)
    source_type: str | None = None
    scrape_method: ScrapeMethod = ScrapeMethod.HTML_LLM
    extraction_hints: str | None = None
    request_delay_ms: int | None = Field(default=None, ge=0)
    currency: str = "AED"
    default_unit: str | None = None
    tags: list[str] = Field(default_factory=list)
    is_active: bool = True
    crawl: CrawlSettings | None = None

    last_successful_fetch: datetime | None = None
    consecutive_failures: int = Field(default=0, ge=0)
    last_scraped_at: datetime | None = None
    last_scraped_status: ScrapeStatus = "never"
    last_record_count: int = Field(default=0, ge=0)

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        return _require_http_url(value)

    @field_validator("last_successful_fetch", "last_scraped_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class RawFetchResult(BaseModel):
    """Outcome of one fetch cycle; failures are encoded, never raised."""

    url: str
    fetched_at: datetime
    status_code: int
    body_text: str | None = None
    body_json: Any = None
    error: str | None = None
    attempts: int = 0
    user_agent: str | None = None

    @property
    def is_hard_failure(self) -> bool:
        """Network failure (status 0) or an HTTP error status."""
        return self.status_code == 0 or self.status_code >= 400


class ExtractedEvidenceCandidate(BaseModel):
    """Unnormalized observation produced by a connector's extract step."""

    title: str = Field(..., min_length=1, max_length=500)
    raw_text: str = Field(..., min_length=1)
    published_date: datetime | None = None
    category: str = Field(..., min_length=1)
    geography: str = Field(..., min_length=1)
    source_url: str
    metric_hint: str | None = None
    value_hint: float | None = None
    unit_hint: str | None = None

    @field_validator("title", "raw_text", mode="before")
    @classmethod
    def collapse_whitespace(cls, value: Any) -> Any:
        if isinstance(value, str):
            return " ".join(value.split())
        return value

    @field_validator("source_url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        return _require_http_url(value)

    @field_validator("published_date")
    @classmethod
    def normalize_date(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class NormalizedEvidence(BaseModel):
    """Deterministic normalization of a candidate."""

    metric: str = Field(..., min_length=1)
    value: float | None = Field(default=None, ge=0.0)
    unit: str | None = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    grade: Grade
    summary: str
    tags: list[str] = Field(default_factory=list)


class EvidenceRecord(BaseModel):
    """Persisted observation; immutable once created."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    source_registry_id: str | None
    source_url: str
    category: str
    geography: str
    item_name: str
    price_typical: float | None
    unit: str | None
    currency: str = "AED"
    capture_date: datetime
    reliability_grade: Grade
    confidence_score: int = Field(..., ge=0, le=100)
    extracted_snippet: str
    publisher: str
    title: str
    tags: tuple[str, ...] = ()
    run_id: str
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("capture_date", "created_at")
    @classmethod
    def normalize_timestamps(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def capture_day(self) -> date:
        return self.capture_date.date()

    @property
    def dedup_key(self) -> tuple[str, str, date]:
        return (self.source_url, self.item_name, self.capture_day)


class PriceChangeEvent(BaseModel):
    item_name: str
    category: str
    source_id: str | None
    previous_price: float
    new_price: float
    change_pct: float = Field(..., description="Signed fraction, 0.15 = +15%")
    change_direction: Literal["increased", "decreased"]
    severity: ChangeSeverity
    record_id: str
    previous_record_id: str
    detected_at: datetime = Field(default_factory=utc_now)


class MarketInsight(BaseModel):
    insight_type: Literal["cost_pressure", "market_opportunity"]
    severity: Literal["critical", "warning"]
    title: str
    body: str
    recommendation: str
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    trigger_condition: str
    data_points: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class TrendDataPoint(BaseModel):
    date: datetime
    value: float
    grade: Grade
    source_id: str
    record_id: str | None = None

    @field_validator("date")
    @classmethod
    def normalize_date(cls, value: datetime) -> datetime:
        return as_utc(value)


class MovingAveragePoint(BaseModel):
    date: datetime
    value: float
    moving_average: float


class AnomalyFlag(BaseModel):
    date: datetime
    value: float
    expected_ma: float
    deviation_multiple: float
    record_id: str | None = None
    source_id: str


class DirectionChange(BaseModel):
    direction: TrendDirection
    current_ma: float | None = None
    previous_ma: float | None = None
    percent_change: float | None = None


class TrendSnapshot(BaseModel):
    """Trend analysis of one (metric, category, geography) series."""

    metric: str
    category: str
    geography: str
    data_point_count: int
    grade_a_count: int
    grade_b_count: int
    grade_c_count: int
    unique_sources: int
    date_range_start: datetime
    date_range_end: datetime
    current_ma: float | None
    previous_ma: float | None
    percent_change: float | None
    direction: TrendDirection
    anomalies: list[AnomalyFlag] = Field(default_factory=list)
    confidence: TrendConfidence
    narrative: str | None = None
    moving_averages: list[MovingAveragePoint] = Field(default_factory=list)
    run_id: str | None = None
    generated_at: datetime = Field(default_factory=utc_now)


class BenchmarkProposal(BaseModel):
    """Candidate update to a published reference price range."""

    benchmark_key: str
    category: str
    unit: str
    proposed_p25: float
    proposed_p50: float
    proposed_p75: float
    weighted_mean: float
    evidence_count: int
    source_diversity: int
    reliability_dist: dict[str, int]
    recency_dist: dict[str, int]
    confidence_score: int = Field(..., ge=0, le=100)
    recommendation: Recommendation
    rejection_reason: str | None = None
    run_id: str
    created_at: datetime = Field(default_factory=utc_now)


class ProposalGenerationResult(BaseModel):
    run_id: str
    groups_analyzed: int
    proposals_created: int
    total_evidence: int
    proposals: list[BenchmarkProposal] = Field(default_factory=list)


class RunError(BaseModel):
    source_id: str
    message: str
    error_type: ErrorType


class SourceRunResult(BaseModel):
    """Per-connector outcome inside one ingestion run."""

    source_id: str
    source_name: str
    status: HealthStatus = "failed"
    http_status: int | None = None
    records_extracted: int = 0
    evidence_created: int = 0
    evidence_skipped: int = 0
    records_failed: int = 0
    errors: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    fetched_at: datetime | None = None
    duration_ms: int = 0

    @property
    def ran(self) -> bool:
        return self.status != "failed"


class ConnectorHealthRecord(BaseModel):
    run_id: str
    source_id: str
    status: HealthStatus
    records_extracted: int
    records_inserted: int
    duplicates_skipped: int
    records_failed: int = 0
    error_message: str | None = None
    error_type: ErrorType | None = None
    http_status: int | None = None
    response_time_ms: int | None = None
    created_at: datetime = Field(default_factory=utc_now)


class IngestionRunReport(BaseModel):
    """Aggregate outcome of one orchestrator invocation."""

    run_id: str
    trigger: str
    actor_id: str | None = None
    started_at: datetime
    completed_at: datetime
    sources_attempted: int
    sources_succeeded: int
    sources_failed: int
    evidence_extracted: int
    evidence_created: int
    evidence_skipped: int
    evidence_failed: int
    per_source: list[SourceRunResult] = Field(default_factory=list)
    errors: list[RunError] = Field(default_factory=list)

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    @property
    def categories(self) -> list[str]:
        """Categories that received new evidence in this run."""
        seen: dict[str, None] = {}
        for result in self.per_source:
            for category in result.categories:
                seen.setdefault(category, None)
        return list(seen)


class AuditEntry(BaseModel):
    run_type: AuditRunType
    run_id: str
    actor_id: str | None = None
    input_summary: dict[str, Any] = Field(default_factory=dict)
    output_summary: dict[str, Any] = Field(default_factory=dict)
    error_count: int = 0
    started_at: datetime
    completed_at: datetime = Field(default_factory=utc_now)


class ScrapePreview(BaseModel):
    """Dry-run result: nothing is persisted."""

    source_id: str
    source_name: str
    success: bool
    status_code: int
    fetch_error: str | None = None
    candidates_found: int = 0
    valid_candidates: int = 0
    preview: list[NormalizedEvidence] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_ms: int = 0


class FreshnessInfo(BaseModel):
    status: Literal["fresh", "aging", "stale"]
    weight: float
    age_days: int
    badge_color: Literal["green", "amber", "red"]
