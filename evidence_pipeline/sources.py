"""Configured connectors built from source descriptors.

``DynamicConnector`` is the connector used for every registry entry: fetching
goes through the shared ``PoliteFetcher`` and extraction through a strategy
chosen by the descriptor's scrape method. Entries with a ``crawl`` block get a
``CrawlingConnector``, which also follows same-site links. The registry itself
is a YAML file loaded by ``load_source_descriptors``.
"""

from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import TypeAdapter, ValidationError

from config.settings import GlobalConfig, get_config
from evidence_pipeline.connector import SourceConnector, assign_grade, compute_confidence
from evidence_pipeline.crawler import crawl_pages
from evidence_pipeline.exceptions import ConfigValidationError, NormalizationError
from evidence_pipeline.extraction import (
    ExtractionStrategy,
    HeuristicExtractor,
    OracleExtractor,
    find_prices,
)
from evidence_pipeline.fetcher import PoliteFetcher
from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import (
    CrawlSettings,
    ExtractedEvidenceCandidate,
    NormalizedEvidence,
    RawFetchResult,
    ScrapeMethod,
    SourceDescriptor,
)
from evidence_pipeline.oracle import ExtractionOracle

log = get_logger(__name__)

SUMMARY_MAX_CHARS = 500

_DESCRIPTORS = TypeAdapter(list[SourceDescriptor])


class DynamicConnector(SourceConnector):
    """Connector driven entirely by a ``SourceDescriptor``.

    Example:
        connector = DynamicConnector(descriptor, fetcher, HeuristicExtractor())
        raw = await connector.fetch()
        candidates = await connector.extract(raw)
    """

    def __init__(
        self,
        descriptor: SourceDescriptor,
        fetcher: PoliteFetcher,
        strategy: ExtractionStrategy,
    ) -> None:
        self.descriptor = descriptor
        self.fetcher = fetcher
        self.strategy = strategy
        self.source_id = descriptor.id
        self.source_name = descriptor.name
        self.source_url = descriptor.url
        self.currency = descriptor.currency
        self.last_successful_fetch = descriptor.last_successful_fetch
        self.last_fetched_at: datetime | None = None

    async def fetch(self) -> RawFetchResult:
        return await self.fetcher.fetch(self.descriptor)

    async def extract(self, raw: RawFetchResult) -> list[ExtractedEvidenceCandidate]:
        self.last_fetched_at = raw.fetched_at
        return await self.strategy.extract(raw, self.descriptor, self.last_successful_fetch)

    def normalize(self, candidate: ExtractedEvidenceCandidate) -> NormalizedEvidence:
        """Normalize a candidate using hints first, then the raw text.

        Observation age is measured from the fetch that produced the
        candidate, or from now when nothing has been extracted yet.

        Raises:
            NormalizationError: If no metric can be derived.
        """
        grade = assign_grade(self.source_id)
        confidence = compute_confidence(grade, candidate.published_date, self.last_fetched_at)

        metric = (candidate.metric_hint or candidate.title).strip()
        if not metric:
            raise NormalizationError(self.source_id, candidate.title, "empty metric")

        value = candidate.value_hint
        unit = candidate.unit_hint
        if value is None or unit is None:
            found = find_prices(candidate.raw_text, max_items=1)
            if found:
                value = found[0].value if value is None else value
                unit = unit or found[0].unit

        return NormalizedEvidence(
            metric=metric[:255],
            value=value,
            unit=unit or self.descriptor.default_unit,
            confidence=confidence,
            grade=grade,
            summary=" ".join(candidate.raw_text.split())[:SUMMARY_MAX_CHARS],
            tags=list(self.descriptor.tags),
        )


class CrawlingConnector(DynamicConnector):
    """Connector that also follows same-site links from the source URL.

    ``fetch`` crawls and returns the first page that succeeded (or the seed
    failure when none did); ``extract`` then runs the strategy over every
    page of that crawl, not only the one returned.
    """

    def __init__(
        self,
        descriptor: SourceDescriptor,
        fetcher: PoliteFetcher,
        strategy: ExtractionStrategy,
        settings: CrawlSettings,
    ) -> None:
        super().__init__(descriptor, fetcher, strategy)
        self.settings = settings
        self.pages: list[RawFetchResult] = []

    async def fetch(self) -> RawFetchResult:
        crawl = await crawl_pages(self.fetcher, self.descriptor, self.settings)
        self.pages = crawl.pages
        for message in crawl.errors:
            log.warning("Crawled page skipped", source_id=self.source_id, error=message)
        return crawl.pages[0] if crawl.pages else crawl.failed[0]

    async def extract(self, raw: RawFetchResult) -> list[ExtractedEvidenceCandidate]:
        candidates: list[ExtractedEvidenceCandidate] = []
        for page in self.pages or [raw]:
            self.last_fetched_at = page.fetched_at
            page_descriptor = self.descriptor.model_copy(update={"url": page.url})
            candidates.extend(
                await self.strategy.extract(page, page_descriptor, self.last_successful_fetch)
            )
        return candidates


def build_strategy(
    descriptor: SourceDescriptor,
    oracle: ExtractionOracle | None,
    config: GlobalConfig | None = None,
) -> ExtractionStrategy:
    """Extraction strategy for a descriptor's scrape method."""
    config = config or get_config()
    heuristic = HeuristicExtractor(max_items=config.oracle_max_items)
    if descriptor.scrape_method is ScrapeMethod.HTML_RULES:
        return heuristic
    return OracleExtractor(
        oracle,
        fallback=heuristic,
        max_chars=config.oracle_max_input_chars,
        max_items=config.oracle_max_items,
    )


def build_connector(
    descriptor: SourceDescriptor,
    fetcher: PoliteFetcher,
    oracle: ExtractionOracle | None = None,
    config: GlobalConfig | None = None,
) -> DynamicConnector:
    strategy = build_strategy(descriptor, oracle, config)
    if descriptor.crawl is not None:
        return CrawlingConnector(descriptor, fetcher, strategy, descriptor.crawl)
    return DynamicConnector(descriptor, fetcher, strategy)


def build_connectors(
    descriptors: list[SourceDescriptor],
    fetcher: PoliteFetcher,
    oracle: ExtractionOracle | None = None,
    config: GlobalConfig | None = None,
) -> list[DynamicConnector]:
    """Connectors for every active descriptor."""
    connectors = [
        build_connector(descriptor, fetcher, oracle, config)
        for descriptor in descriptors
        if descriptor.is_active
    ]
    log.info(
        "Connectors built",
        active=len(connectors),
        inactive=len(descriptors) - len(connectors),
        oracle_enabled=oracle is not None,
    )
    return connectors


def load_source_descriptors(path: Path | str) -> list[SourceDescriptor]:
    """Load the source registry from YAML.

    The file holds either a list of sources or a mapping with a ``sources``
    key.

    Raises:
        ConfigValidationError: If the file is missing, unreadable or invalid.
    """
    path = Path(path)
    try:
        with path.open(encoding="utf-8") as handle:
            document: Any = yaml.safe_load(handle)
    except OSError as exc:
        raise ConfigValidationError("sources_file", str(path), f"cannot read file: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigValidationError("sources_file", str(path), f"invalid YAML: {exc}") from exc

    if isinstance(document, dict):
        document = document.get("sources")
    if document is None:
        document = []
    if not isinstance(document, list):
        raise ConfigValidationError("sources_file", str(path), "expected a list of sources")

    try:
        descriptors = _DESCRIPTORS.validate_python(document)
    except ValidationError as exc:
        raise ConfigValidationError("sources_file", str(path), str(exc)) from exc

    seen: set[str] = set()
    for descriptor in descriptors:
        if descriptor.id in seen:
            raise ConfigValidationError("sources_file", descriptor.id, "duplicate source id")
        seen.add(descriptor.id)

    log.info("Source registry loaded", path=str(path), sources=len(descriptors))
    return descriptors
