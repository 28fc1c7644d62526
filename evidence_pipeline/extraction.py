"""Extraction strategies turning fetched content into evidence candidates.

``OracleExtractor`` strips markup, truncates the text and asks the extraction
oracle for a JSON array of items; an unconfigured oracle, a failed call or an
empty reply falls through to ``HeuristicExtractor``, which scans the text for
AED price patterns and infers units from the surrounding words.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime

from bs4 import BeautifulSoup
from pydantic import ValidationError

from evidence_pipeline.connector import resolve_category
from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import ExtractedEvidenceCandidate, RawFetchResult, SourceDescriptor
from evidence_pipeline.oracle import ExtractionOracle
from evidence_pipeline.validator import OracleItem, parse_oracle_items

log = get_logger(__name__)

MIN_CONTENT_CHARS = 50
DEFAULT_MAX_ITEMS = 15
DEFAULT_MAX_CHARS = 8000
UNIT_CONTEXT_CHARS = 30
LABEL_CONTEXT_CHARS = 80
MAX_PRICE = 100_000_000

AED_PRICE = re.compile(r"\b(?:AED|Dhs?\.?)\s*([\d,]+(?:\.\d{1,2})?)", re.IGNORECASE)
NUMERIC_PRICE = re.compile(
    r"([\d,]+(?:\.\d{1,2})?)\s*(?:AED|Dhs?\.?|per\s+(?:sqm|sqft|m²|unit|piece|set|roll))",
    re.IGNORECASE,
)
SQM_PATTERN = re.compile(r"sq\.?\s?m\b|sqm|m²|square\s+met(?:er|re)s?", re.IGNORECASE)
SQFT_PATTERN = re.compile(r"sq\.?\s?ft|sqft|square\s+f(?:ee|oo)t", re.IGNORECASE)
COUNT_UNIT_PATTERN = re.compile(r"\b(?:per\s+)?(piece|pcs?|unit|set|roll)\b", re.IGNORECASE)
_LABEL_BREAK = re.compile(r"[\n.;:|•]")
_LABEL_TRAILER = re.compile(
    r"(?:\s*[-–,(]|\s+(?:from|at|for|only|starting|now|price[sd]?|cost[s]?|is|was))+\s*$",
    re.IGNORECASE,
)

SYSTEM_PROMPT = (
    "You are a data extraction engine for a real estate and construction market intelligence "
    "platform. You extract structured evidence from the text or JSON content of UAE "
    "construction and real estate websites.\n"
    "Return ONLY valid JSON. Do not include markdown code fences or any other text."
)


@dataclass(frozen=True)
class PriceMatch:
    value: float
    unit: str | None
    label: str | None
    snippet: str
    position: int


def strip_markup(html: str) -> str:
    """Visible text of an HTML document, one whitespace-collapsed line per block."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "template", "svg"]):
        tag.decompose()
    lines = (" ".join(line.split()) for line in soup.get_text("\n").splitlines())
    return "\n".join(line for line in lines if line)


def content_text(raw: RawFetchResult) -> str:
    """Text to extract from: serialized JSON when present, else stripped markup."""
    if raw.body_json is not None:
        return json.dumps(raw.body_json, ensure_ascii=False)
    return strip_markup(raw.body_text or "")


def detect_unit(context: str) -> str | None:
    if SQFT_PATTERN.search(context):
        return "sqft"
    if SQM_PATTERN.search(context):
        return "sqm"
    match = COUNT_UNIT_PATTERN.search(context)
    if match:
        unit = match.group(1).lower()
        return "piece" if unit.startswith("pc") else unit
    return None


def _label_before(text: str, start: int) -> str | None:
    window = text[max(0, start - LABEL_CONTEXT_CHARS) : start]
    fragment = _LABEL_BREAK.split(window)[-1]
    fragment = _LABEL_TRAILER.sub("", " ".join(fragment.split())).strip(" -–,")
    if len(fragment) < 3 or not re.search(r"[A-Za-z]", fragment):
        return None
    return fragment


def find_prices(text: str, max_items: int | None = None) -> list[PriceMatch]:
    """Scan text for AED price mentions.

    Values outside (0, 100M) are ignored and each value is reported once,
    at its first position.
    """
    hits: dict[float, tuple[int, int]] = {}
    for pattern in (AED_PRICE, NUMERIC_PRICE):
        for match in pattern.finditer(text):
            digits = match.group(1).replace(",", "")
            try:
                value = float(digits)
            except ValueError:
                continue
            if not 0 < value < MAX_PRICE:
                continue
            previous = hits.get(value)
            if previous is None or match.start() < previous[0]:
                hits[value] = (match.start(), match.end())

    matches: list[PriceMatch] = []
    for value, (start, end) in sorted(hits.items(), key=lambda item: item[1][0]):
        context = text[max(0, start - UNIT_CONTEXT_CHARS) : end + UNIT_CONTEXT_CHARS]
        snippet = text[max(0, start - LABEL_CONTEXT_CHARS) : end + LABEL_CONTEXT_CHARS]
        matches.append(
            PriceMatch(
                value=value,
                unit=detect_unit(context),
                label=_label_before(text, start),
                snippet=" ".join(snippet.split()),
                position=start,
            )
        )
        if max_items is not None and len(matches) >= max_items:
            break
    return matches


def build_extraction_prompt(
    descriptor: SourceDescriptor,
    category: str,
    text: str,
    checkpoint: datetime | None,
    max_items: int,
) -> str:
    """User prompt asking the oracle for a strict JSON array of items."""
    focus = (
        f"\nFocus on content published or updated after {checkpoint.date().isoformat()}."
        if checkpoint
        else ""
    )
    hints = f"\nEXTRACTION HINTS: {descriptor.extraction_hints}" if descriptor.extraction_hints else ""
    return (
        f"Extract evidence items from this {descriptor.name} source content.\n"
        f"Category: {category}\n"
        f"Geography: {descriptor.geography}\n"
        f"Page URL: {descriptor.url}{focus}{hints}\n\n"
        "Return a JSON array of objects with these exact fields:\n"
        "- title: string (item/product/project name)\n"
        "- rawText: string (relevant text snippet, max 500 chars)\n"
        "- publishedDate: string|null (ISO date if found, null otherwise)\n"
        '- metric: string (what is being measured, e.g. "Marble Tile 60x60 price")\n'
        f"- value: number|null (numeric value in {descriptor.currency} if found, null otherwise)\n"
        '- unit: string|null (e.g. "sqm", "sqft", "piece", "unit", null if not applicable)\n\n'
        "Rules:\n"
        f"- Extract up to {max_items} items maximum\n"
        "- Only extract items with real data (titles, prices, descriptions)\n"
        "- Do NOT invent data; if no items are found, return an empty array []\n"
        "- Do NOT output confidence, grade, or scoring fields\n\n"
        f"Content (truncated to {len(text)} chars):\n{text}"
    )


class ExtractionStrategy(ABC):
    """Turns one fetch result into candidates for a given source."""

    @abstractmethod
    async def extract(
        self,
        raw: RawFetchResult,
        descriptor: SourceDescriptor,
        checkpoint: datetime | None = None,
    ) -> list[ExtractedEvidenceCandidate]:
        ...


class HeuristicExtractor(ExtractionStrategy):
    """Rule-based extraction of AED prices near unit keywords."""

    def __init__(self, max_items: int = DEFAULT_MAX_ITEMS) -> None:
        self.max_items = max_items

    async def extract(
        self,
        raw: RawFetchResult,
        descriptor: SourceDescriptor,
        checkpoint: datetime | None = None,
    ) -> list[ExtractedEvidenceCandidate]:
        text = content_text(raw)
        if len(text) < MIN_CONTENT_CHARS:
            return []

        category = resolve_category(descriptor.source_type, descriptor.category)
        candidates: list[ExtractedEvidenceCandidate] = []
        for match in find_prices(text, self.max_items):
            unit = match.unit or descriptor.default_unit
            label = match.label or (f"{category} price per {unit}" if unit else f"{category} price")
            try:
                candidates.append(
                    ExtractedEvidenceCandidate(
                        title=f"{descriptor.name} - {label}"[:500],
                        raw_text=match.snippet,
                        category=category,
                        geography=descriptor.geography,
                        source_url=raw.url,
                        metric_hint=label,
                        value_hint=match.value,
                        unit_hint=unit,
                    )
                )
            except ValidationError:
                continue

        log.debug(
            "Heuristic extraction complete",
            source_id=descriptor.id,
            candidates=len(candidates),
            text_chars=len(text),
        )
        return candidates


class OracleExtractor(ExtractionStrategy):
    """Oracle-backed extraction with heuristic fallback.

    Attributes:
        oracle: Extraction oracle, or None to always use the fallback.
        fallback: Strategy used when the oracle yields nothing.
        max_chars: Text budget sent to the oracle.
        max_items: Cap on accepted oracle items.
    """

    def __init__(
        self,
        oracle: ExtractionOracle | None,
        fallback: ExtractionStrategy | None = None,
        max_chars: int = DEFAULT_MAX_CHARS,
        max_items: int = DEFAULT_MAX_ITEMS,
    ) -> None:
        self.oracle = oracle
        self.fallback = fallback or HeuristicExtractor(max_items)
        self.max_chars = max_chars
        self.max_items = max_items

    async def extract(
        self,
        raw: RawFetchResult,
        descriptor: SourceDescriptor,
        checkpoint: datetime | None = None,
    ) -> list[ExtractedEvidenceCandidate]:
        if self.oracle is None:
            return await self.fallback.extract(raw, descriptor, checkpoint)

        text = content_text(raw)
        if len(text) < MIN_CONTENT_CHARS:
            return []

        category = resolve_category(descriptor.source_type, descriptor.category)
        prompt = build_extraction_prompt(
            descriptor, category, text[: self.max_chars], checkpoint, self.max_items
        )

        items: list[OracleItem] = []
        try:
            reply = await self.oracle.complete(SYSTEM_PROMPT, prompt)
        except Exception as exc:
            log.warning(
                "Oracle extraction failed",
                source_id=descriptor.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        else:
            items = parse_oracle_items(reply, self.max_items)

        candidates = self._to_candidates(items, raw, descriptor, category)
        if not candidates:
            log.info("Oracle returned no items, using rule-based extraction", source_id=descriptor.id)
            return await self.fallback.extract(raw, descriptor, checkpoint)

        log.debug("Oracle extraction complete", source_id=descriptor.id, candidates=len(candidates))
        return candidates

    def _to_candidates(
        self,
        items: list[OracleItem],
        raw: RawFetchResult,
        descriptor: SourceDescriptor,
        category: str,
    ) -> list[ExtractedEvidenceCandidate]:
        candidates: list[ExtractedEvidenceCandidate] = []
        for item in items:
            try:
                candidates.append(
                    ExtractedEvidenceCandidate(
                        title=f"{descriptor.name} - {item.title[:255]}",
                        raw_text=(item.raw_text or item.title)[:500],
                        published_date=item.published_date,
                        category=category,
                        geography=descriptor.geography,
                        source_url=raw.url,
                        metric_hint=(item.metric or item.title)[:255],
                        value_hint=item.value,
                        unit_hint=item.unit,
                    )
                )
            except ValidationError:
                continue
        return candidates
