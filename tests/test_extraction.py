"""Tests for extraction strategies.

Validates the rule-based price scanner, markup stripping and the
oracle-backed extractor including its fallback path.
"""

import json
from collections.abc import Callable

import pytest

from config.settings import GlobalConfig
from evidence_pipeline.exceptions import OracleError
from evidence_pipeline.extraction import (
    HeuristicExtractor,
    OracleExtractor,
    build_extraction_prompt,
    content_text,
    find_prices,
    strip_markup,
)
from evidence_pipeline.models import RawFetchResult, SourceDescriptor
from tests.conftest import REFERENCE_NOW, FakeOracle

TILE_PAGE = """
<html>
<head><style>.price { color: red; }</style><script>var price = "AED 9999";</script></head>
<body>
  <h1>Floor tiles</h1>
  <div class="product">Porcelain Tile Grey AED 85 per sqm.</div>
  <div class="product">Marble slab from AED 1,250 per sqm.</div>
  <div class="product">Tile adhesive bag, grey, 20 kg, quick dry 45 AED per piece</div>
</body>
</html>
"""


def _raw(body: str | None = TILE_PAGE, body_json: object = None) -> RawFetchResult:
    return RawFetchResult(
        url="https://supplier.example.com/prices",
        fetched_at=REFERENCE_NOW,
        status_code=200,
        body_text=body,
        body_json=body_json,
    )


class TestMarkupStripping:
    def test_scripts_and_styles_removed(self) -> None:
        text = strip_markup(TILE_PAGE)

        assert "9999" not in text
        assert "color: red" not in text
        assert "Porcelain Tile Grey AED 85 per sqm." in text.splitlines()

    def test_json_body_preferred(self) -> None:
        assert content_text(_raw(body="ignored", body_json={"price": 12})) == '{"price": 12}'


class TestPriceScanner:
    """Test suite for find_prices."""

    def test_prices_labels_and_units(self) -> None:
        matches = find_prices(strip_markup(TILE_PAGE))

        assert [m.value for m in matches] == [85.0, 1250.0, 45.0]
        assert [m.unit for m in matches] == ["sqm", "sqm", "piece"]
        assert matches[0].label == "Porcelain Tile Grey"
        assert matches[1].label == "Marble slab"

    def test_duplicate_values_reported_once(self) -> None:
        matches = find_prices("Tile A AED 85 per sqm, Tile B AED 85 per sqm")
        assert [m.value for m in matches] == [85.0]

    @pytest.mark.parametrize("text", ["AED 0 per sqm", "AED 250,000,000 total"])
    def test_out_of_range_values_ignored(self, text: str) -> None:
        assert find_prices(text) == []

    def test_max_items_respected(self) -> None:
        text = " ".join(f"Item {i} AED {100 + i}" for i in range(10))
        assert len(find_prices(text, max_items=4)) == 4

    @pytest.mark.parametrize(
        "text,unit",
        [
            ("Parquet AED 120 per sq ft", "sqft"),
            ("Vinyl AED 60 per m²", "sqm"),
            ("Hinge AED 15 per pcs", "piece"),
            ("Wallpaper AED 220 per roll", "roll"),
            ("Consultancy AED 5000", None),
        ],
    )
    def test_unit_detection(self, text: str, unit: str | None) -> None:
        assert find_prices(text)[0].unit == unit


class TestHeuristicExtractor:
    @pytest.mark.asyncio
    async def test_candidates_from_page(
        self, descriptor_factory: Callable[..., SourceDescriptor]
    ) -> None:
        descriptor = descriptor_factory(name="RAK Ceramics", source_type="supplier_catalog")

        candidates = await HeuristicExtractor().extract(_raw(), descriptor)

        assert len(candidates) == 3
        first = candidates[0]
        assert first.title == "RAK Ceramics - Porcelain Tile Grey"
        assert first.metric_hint == "Porcelain Tile Grey"
        assert first.value_hint == 85.0
        assert first.unit_hint == "sqm"
        assert first.category == "material_cost"
        assert first.source_url == "https://supplier.example.com/prices"

    @pytest.mark.asyncio
    async def test_short_content_yields_nothing(
        self, descriptor_factory: Callable[..., SourceDescriptor]
    ) -> None:
        assert await HeuristicExtractor().extract(_raw("<p>AED 10</p>"), descriptor_factory()) == []

    @pytest.mark.asyncio
    async def test_label_falls_back_to_category_and_unit(
        self, descriptor_factory: Callable[..., SourceDescriptor]
    ) -> None:
        body = "<p>" + ("-" * 60) + "</p><p>AED 300 per sqm</p>"
        candidates = await HeuristicExtractor().extract(_raw(body), descriptor_factory(name="Shop"))

        assert candidates[0].title == "Shop - floors price per sqm"


class TestOracleExtractor:
    """Test suite for oracle-backed extraction and fallback."""

    @pytest.mark.asyncio
    async def test_oracle_items_become_candidates(
        self, descriptor_factory: Callable[..., SourceDescriptor]
    ) -> None:
        oracle = FakeOracle(
            json.dumps(
                [
                    {
                        "title": "Calacatta marble",
                        "rawText": "Calacatta marble AED 480 per sqm",
                        "publishedDate": "2025-02-10",
                        "metric": "Calacatta marble price",
                        "value": 480,
                        "unit": "sqm",
                    },
                    {"title": ""},
                ]
            )
        )
        extractor = OracleExtractor(oracle, max_items=15)

        candidates = await extractor.extract(_raw(), descriptor_factory(name="Porcelanosa"))

        assert len(candidates) == 1
        assert candidates[0].title == "Porcelanosa - Calacatta marble"
        assert candidates[0].metric_hint == "Calacatta marble price"
        assert candidates[0].value_hint == 480.0
        assert candidates[0].published_date.year == 2025

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        ["[]", "not json", OracleError("rate limit exceeded", model="fake")],
    )
    async def test_fallback_to_rules(
        self, descriptor_factory: Callable[..., SourceDescriptor], reply: str | Exception
    ) -> None:
        extractor = OracleExtractor(FakeOracle(reply))

        candidates = await extractor.extract(_raw(), descriptor_factory())

        assert [c.value_hint for c in candidates] == [85.0, 1250.0, 45.0]

    @pytest.mark.asyncio
    async def test_no_oracle_uses_rules(
        self, descriptor_factory: Callable[..., SourceDescriptor]
    ) -> None:
        candidates = await OracleExtractor(None).extract(_raw(), descriptor_factory())
        assert len(candidates) == 3

    @pytest.mark.asyncio
    async def test_input_truncated_to_budget(
        self, descriptor_factory: Callable[..., SourceDescriptor]
    ) -> None:
        oracle = FakeOracle('[{"title": "Anything"}]')
        body = "<p>" + "x" * 5000 + "</p>"

        await OracleExtractor(oracle, max_chars=600).extract(_raw(body), descriptor_factory())

        _, prompt = oracle.calls[0]
        assert "Content (truncated to 600 chars)" in prompt
        assert "x" * 601 not in prompt

    def test_prompt_mentions_checkpoint_and_hints(
        self, mock_config: GlobalConfig, descriptor_factory: Callable[..., SourceDescriptor]
    ) -> None:
        descriptor = descriptor_factory(extraction_hints="Prices per sqm only")

        prompt = build_extraction_prompt(descriptor, "floors", "text", REFERENCE_NOW, 15)

        assert "published or updated after 2025-03-01" in prompt
        assert "EXTRACTION HINTS: Prices per sqm only" in prompt
        assert "up to 15 items" in prompt
