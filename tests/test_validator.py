"""Tests for validation of untrusted extraction output.

Covers price parsing, oracle reply parsing and candidate re-validation using:
- Property-based testing (hypothesis) for fuzzing edge cases
- Parametrized tests for boundary conditions

The oracle is an untrusted producer: whatever it returns, the parser must
never raise and never return more than the configured number of items.
"""

import json
from datetime import UTC, datetime

import pytest
from hypothesis import given, settings, strategies as st

from evidence_pipeline.validator import (
    OracleItem,
    parse_oracle_items,
    parse_price,
    parse_published_date,
    validate_candidates,
)
from tests.conftest import candidate


class TestPriceParsing:
    """Test suite for price parsing with fuzzing."""

    @pytest.mark.parametrize(
        "price_string,expected",
        [
            ("AED 1,250", 1250.0),
            ("1,250.50 Dhs", 1250.50),
            ("Dhs. 85", 85.0),
            ("£51.77", 51.77),
            ("€123,45", 123.45),
            ("1.234,56", 1234.56),
            ("1,234.56", 1234.56),
            (" AED 10.00 ", 10.0),
            (42, 42.0),
        ],
    )
    def test_valid_price_formats(self, price_string: str | int, expected: float) -> None:
        assert parse_price(price_string) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "invalid_price",
        ["Free", "TBD", "Contact us", "AED -5", "1.00.00", "", True, None, "nan"],
    )
    def test_invalid_price_formats_raise_error(self, invalid_price: object) -> None:
        with pytest.raises(ValueError):
            parse_price(invalid_price)

    @given(price_text=st.text(alphabet=st.characters(blacklist_categories=("Cs",)), max_size=40))
    def test_price_parser_never_crashes(self, price_text: str) -> None:
        """Arbitrary text either parses to a non-negative float or raises ValueError."""
        try:
            result = parse_price(price_text)
        except ValueError:
            return
        assert result >= 0


class TestPublishedDateParsing:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2025-02-14", datetime(2025, 2, 14, tzinfo=UTC)),
            ("2025-02-14T08:30:00Z", datetime(2025, 2, 14, 8, 30, tzinfo=UTC)),
            ("not a date", None),
            ("", None),
            (20250214, None),
            (None, None),
        ],
    )
    def test_lenient_parsing(self, value: object, expected: datetime | None) -> None:
        assert parse_published_date(value) == expected


class TestOracleReplyParsing:
    """Test suite for parse_oracle_items."""

    def test_bare_array(self) -> None:
        reply = json.dumps(
            [
                {
                    "title": "Marble Tile 60x60",
                    "rawText": "Marble Tile 60x60 AED 185 per sqm",
                    "publishedDate": "2025-02-01",
                    "metric": "Marble Tile 60x60 price",
                    "value": 185,
                    "unit": "sqm",
                }
            ]
        )
        items = parse_oracle_items(reply)

        assert len(items) == 1
        assert items[0].title == "Marble Tile 60x60"
        assert items[0].raw_text.startswith("Marble Tile")
        assert items[0].value == 185.0
        assert items[0].published_date == datetime(2025, 2, 1, tzinfo=UTC)

    @pytest.mark.parametrize("key", ["items", "data"])
    def test_wrapped_array(self, key: str) -> None:
        reply = json.dumps({key: [{"title": "Quartz worktop"}]})
        assert [i.title for i in parse_oracle_items(reply)] == ["Quartz worktop"]

    def test_code_fences_are_stripped(self) -> None:
        reply = '```json\n[{"title": "Vinyl plank"}]\n```'
        assert [i.title for i in parse_oracle_items(reply)] == ["Vinyl plank"]

    @pytest.mark.parametrize(
        "reply",
        [None, "", "   ", "Sorry, I cannot help", '{"answer": 42}', "[1, 2", '"just a string"'],
    )
    def test_malformed_replies_yield_empty_list(self, reply: str | None) -> None:
        assert parse_oracle_items(reply) == []

    def test_invalid_items_are_discarded(self) -> None:
        reply = json.dumps(
            [
                {"title": ""},
                {"rawText": "no title at all"},
                "not an object",
                {"title": 12},
                {"title": "Valid item", "value": "call for price", "publishedDate": "soon"},
            ]
        )
        items = parse_oracle_items(reply)

        assert len(items) == 1
        assert items[0].value is None
        assert items[0].published_date is None

    def test_item_count_is_capped(self) -> None:
        reply = json.dumps([{"title": f"Item {i}"} for i in range(40)])
        assert len(parse_oracle_items(reply, max_items=15)) == 15

    @settings(max_examples=75)
    @given(
        payload=st.recursive(
            st.none() | st.booleans() | st.integers() | st.floats(allow_nan=False) | st.text(max_size=20),
            lambda children: st.lists(children, max_size=5)
            | st.dictionaries(st.sampled_from(["title", "value", "items", "unit"]), children, max_size=4),
            max_leaves=20,
        ),
        cap=st.integers(min_value=1, max_value=10),
    )
    def test_arbitrary_json_never_raises(self, payload: object, cap: int) -> None:
        """Any JSON document parses to at most ``cap`` validated items."""
        items = parse_oracle_items(json.dumps(payload), max_items=cap)

        assert len(items) <= cap
        assert all(isinstance(item, OracleItem) and item.title for item in items)


class TestCandidateValidation:
    def test_invalid_candidates_dropped_silently(self) -> None:
        good = candidate("Porcelain tile")
        bad_url = good.model_dump() | {"source_url": "ftp://example.com/file"}
        empty_title = good.model_dump() | {"title": ""}

        valid = validate_candidates([good, bad_url, empty_title, "garbage"])

        assert valid == [good]

    def test_dicts_are_accepted(self) -> None:
        data = candidate("Gypsum board").model_dump()
        assert len(validate_candidates([data])) == 1
