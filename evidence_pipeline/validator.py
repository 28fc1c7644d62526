"""Validation of untrusted extraction output.

Oracle replies are parsed into untyped JSON first, then each item is checked
against ``OracleItem``. Invalid items are discarded, never raised, and the
result size is capped. Connector candidates pass through
``validate_candidates`` before the orchestrator touches them.
"""

import json
import re
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import ExtractedEvidenceCandidate, as_utc

log = get_logger(__name__)

_CODE_FENCE = re.compile(r"^\s*```(?:json|JSON)?\s*|\s*```\s*$")
_CURRENCY_TOKENS = re.compile(r"(?i)(?:aed|dhs?|usd|eur|gbp)\.?|[£$€¥₹]")


def parse_price(value: Any) -> float:
    """Convert a price representation to float.

    Handles "AED 1,250", "1,250.50 Dhs", "€123,45" (European decimal comma)
    and "1.234,56".

    Raises:
        ValueError: If the value cannot be parsed or is negative.
    """
    if isinstance(value, bool):
        raise ValueError("Price cannot be a boolean")

    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError as exc:
            raise ValueError(f"Price out of range: {value}") from exc
    elif isinstance(value, str):
        cleaned = _CURRENCY_TOKENS.sub("", value)
        cleaned = re.sub(r"\s", "", cleaned)

        if "," in cleaned and "." not in cleaned:
            # 1,250 is a thousands separator, 123,45 a decimal comma
            head, _, tail = cleaned.rpartition(",")
            cleaned = cleaned.replace(",", "") if len(tail) == 3 else f"{head.replace(',', '')}.{tail}"
        elif "," in cleaned and "." in cleaned:
            if cleaned.rfind(",") > cleaned.rfind("."):
                cleaned = cleaned.replace(".", "").replace(",", ".")
            else:
                cleaned = cleaned.replace(",", "")

        try:
            number = float(cleaned)
        except ValueError as exc:
            raise ValueError(f"Cannot parse price from '{value}'") from exc
    else:
        raise ValueError(f"Price must be string or number, got {type(value).__name__}")

    if number != number or number in (float("inf"), float("-inf")):
        raise ValueError(f"Price must be finite, got '{value}'")
    if number < 0:
        raise ValueError(f"Price cannot be negative, got '{value}'")
    return number


def parse_published_date(value: Any) -> datetime | None:
    """Best-effort ISO date parsing; anything unusable becomes None."""
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


class OracleItem(BaseModel):
    """One item of an oracle extraction reply.

    ``title`` is mandatory. Hints that fail to parse degrade to None rather
    than invalidating the whole item.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: str = Field(..., min_length=1, max_length=500)
    raw_text: str | None = Field(default=None, alias="rawText")
    published_date: datetime | None = Field(default=None, alias="publishedDate")
    metric: str | None = None
    value: float | None = None
    unit: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def clean_title(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError(f"Title must be a string, got {type(value).__name__}")
        cleaned = " ".join(value.split())
        if not cleaned:
            raise ValueError("Title cannot be empty")
        return cleaned

    @field_validator("raw_text", "metric", "unit", mode="before")
    @classmethod
    def optional_text(cls, value: Any) -> str | None:
        if isinstance(value, str):
            cleaned = " ".join(value.split())
            return cleaned or None
        return None

    @field_validator("published_date", mode="before")
    @classmethod
    def lenient_date(cls, value: Any) -> datetime | None:
        return parse_published_date(value)

    @field_validator("value", mode="before")
    @classmethod
    def lenient_value(cls, value: Any) -> float | None:
        if value is None or value == "":
            return None
        try:
            return parse_price(value)
        except ValueError:
            return None


def _strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub("", text.strip())


def parse_oracle_items(reply: str | None, max_items: int = 15) -> list[OracleItem]:
    """Parse an oracle reply into validated items.

    Accepts a bare JSON array or an object wrapping it under ``items`` or
    ``data``. Malformed replies yield an empty list.

    Args:
        reply: Raw text returned by the oracle.
        max_items: Cardinality cap applied after validation.

    Returns:
        Up to ``max_items`` validated items.
    """
    if not reply or not reply.strip():
        return []

    try:
        payload: Any = json.loads(_strip_code_fences(reply))
    except json.JSONDecodeError as exc:
        log.warning("Oracle reply is not valid JSON", error=str(exc), preview=reply[:120])
        return []

    if isinstance(payload, dict):
        payload = payload.get("items", payload.get("data"))
    if not isinstance(payload, list):
        log.warning("Oracle reply has no item array", payload_type=type(payload).__name__)
        return []

    items: list[OracleItem] = []
    discarded = 0
    for entry in payload:
        if len(items) >= max_items:
            break
        if not isinstance(entry, dict):
            discarded += 1
            continue
        try:
            items.append(OracleItem.model_validate(entry))
        except ValidationError:
            discarded += 1

    if discarded:
        log.debug("Discarded invalid oracle items", discarded=discarded, kept=len(items))
    return items


def validate_candidates(candidates: Iterable[Any]) -> list[ExtractedEvidenceCandidate]:
    """Re-validate connector output, silently dropping invalid candidates."""
    valid: list[ExtractedEvidenceCandidate] = []
    for candidate in candidates:
        data = candidate.model_dump() if isinstance(candidate, BaseModel) else candidate
        try:
            valid.append(ExtractedEvidenceCandidate.model_validate(data))
        except ValidationError:
            continue
    return valid
