"""Source connector contract, reliability grading and confidence scoring.

A connector bundles three capabilities for one source: ``fetch`` the raw
content, ``extract`` candidate observations from it, and ``normalize`` each
candidate into evidence. Grading and confidence are deterministic and shared
by every connector.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from evidence_pipeline.freshness import age_in_days
from evidence_pipeline.models import (
    ExtractedEvidenceCandidate,
    Grade,
    NormalizedEvidence,
    RawFetchResult,
)

GRADE_A_SOURCES = frozenset(
    {
        "emaar-properties",
        "damac-properties",
        "nakheel-properties",
        "rics-market-reports",
        "jll-mena-research",
        "dubai-statistics-center",
    }
)

GRADE_B_SOURCES = frozenset(
    {
        "rak-ceramics-uae",
        "porcelanosa-uae",
        "hafele-uae",
        "gems-building-materials",
        "dragon-mart-dubai",
    }
)

GRADE_C_SOURCES = frozenset({"dera-interiors"})

BASE_CONFIDENCE: dict[str, float] = {"A": 0.85, "B": 0.70, "C": 0.55}

RECENT_DAYS = 90
STALE_DAYS = 365
RECENCY_BONUS = 0.10
STALENESS_PENALTY = 0.15
MIN_CONFIDENCE = 0.20
MAX_CONFIDENCE = 1.0


def assign_grade(source_id: str) -> Grade:
    """Reliability grade by source identity; unknown sources are C."""
    if source_id in GRADE_A_SOURCES:
        return "A"
    if source_id in GRADE_B_SOURCES:
        return "B"
    return "C"


def compute_confidence(
    grade: Grade,
    published_date: datetime | None,
    reference: datetime | None = None,
) -> float:
    """Confidence in [0.20, 1.00] from grade and observation age.

    Undated observations and those older than a year are penalised; those
    dated within 90 days receive a bonus.
    """
    confidence = BASE_CONFIDENCE[grade]
    if published_date is None:
        confidence -= STALENESS_PENALTY
    else:
        days = age_in_days(published_date, reference)
        if days <= RECENT_DAYS:
            confidence += RECENCY_BONUS
        elif days > STALE_DAYS:
            confidence -= STALENESS_PENALTY
    return round(max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence)), 2)


class SourceConnector(ABC):
    """Abstract per-source fetch/extract/normalize capability set.

    Attributes:
        source_id: Registry identity; drives the reliability grade.
        source_name: Publisher name written onto evidence.
        source_url: Fetched URL.
        currency: Currency of prices reported by the source.
        last_successful_fetch: Checkpoint set by the orchestrator before a run.
    """

    source_id: str
    source_name: str
    source_url: str
    currency: str = "AED"
    last_successful_fetch: datetime | None = None

    @abstractmethod
    async def fetch(self) -> RawFetchResult:
        """Fetch raw content; must encode failures instead of raising."""
        ...

    @abstractmethod
    async def extract(self, raw: RawFetchResult) -> list[ExtractedEvidenceCandidate]:
        """Extract candidate observations from a successful fetch."""
        ...

    @abstractmethod
    def normalize(self, candidate: ExtractedEvidenceCandidate) -> NormalizedEvidence:
        """Deterministically normalize one candidate."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(source_id={self.source_id!r})"


SOURCE_TYPE_CATEGORIES: dict[str, str] = {
    "supplier_catalog": "material_cost",
    "manufacturer_catalog": "material_cost",
    "retailer_listing": "material_cost",
    "developer_brochure": "competitor_project",
    "industry_report": "market_trend",
    "trade_publication": "market_trend",
    "government_tender": "project_award",
}


def resolve_category(source_type: str | None, default: str) -> str:
    """Evidence category implied by a publisher type, else ``default``."""
    if source_type is None:
        return default
    return SOURCE_TYPE_CATEGORIES.get(source_type, default)
