"""Price change detection between consecutive observations.

A fresh evidence record is compared with the most recent strictly-earlier
record for the same (item, source). Changes are classified on their absolute
relative size: significant from 10%, notable from 5%, minor above zero.
Notable and significant changes also produce a market insight.
"""

from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import (
    ChangeSeverity,
    EvidenceRecord,
    MarketInsight,
    PriceChangeEvent,
)
from evidence_pipeline.store import EvidenceStore

log = get_logger(__name__)

SIGNIFICANT_CHANGE = 0.10
NOTABLE_CHANGE = 0.05
INSIGHT_CONFIDENCE = 0.85


def classify_severity(change_pct: float) -> ChangeSeverity | None:
    """Severity of a signed fractional change; None when there is no change."""
    magnitude = abs(change_pct)
    if magnitude >= SIGNIFICANT_CHANGE:
        return "significant"
    if magnitude >= NOTABLE_CHANGE:
        return "notable"
    if magnitude > 0:
        return "minor"
    return None


def build_insight(event: PriceChangeEvent, record: EvidenceRecord) -> MarketInsight:
    increased = event.change_direction == "increased"
    price_unit = f"{record.currency}/{record.unit}" if record.unit else record.currency
    return MarketInsight(
        insight_type="cost_pressure" if increased else "market_opportunity",
        severity="critical" if event.severity == "significant" else "warning",
        title=f"Price {'Spike' if increased else 'Drop'} Detected: {event.item_name}",
        body=(
            f"{event.item_name} moved from {event.previous_price:,.2f} to "
            f"{event.new_price:,.2f} {price_unit} ({event.change_pct:+.1%}) "
            f"according to {record.publisher}."
        ),
        recommendation=(
            f"Review cost assumptions for projects specifying {event.item_name} "
            "and consider locking in current supplier quotes."
            if increased
            else f"Evaluate procurement timing to capture the lower {event.item_name} price."
        ),
        confidence_score=INSIGHT_CONFIDENCE,
        trigger_condition=f"{event.severity} price change ({event.change_pct:+.1%})",
        data_points={
            "item_name": event.item_name,
            "category": event.category,
            "source_id": event.source_id,
            "previous_price": event.previous_price,
            "new_price": event.new_price,
            "change_pct": round(event.change_pct, 4),
            "record_id": event.record_id,
            "previous_record_id": event.previous_record_id,
        },
    )


class ChangeDetector:
    """Emits price change events and insights for freshly persisted evidence.

    Example:
        detector = ChangeDetector(store)
        event = await detector.detect(record)
    """

    def __init__(self, store: EvidenceStore) -> None:
        self._store = store

    async def detect(self, record: EvidenceRecord) -> PriceChangeEvent | None:
        """Compare ``record`` with its predecessor and persist any change.

        Returns:
            The persisted event, or None when there is no prior record, a price
            is missing, or the price did not move.
        """
        if record.price_typical is None:
            return None

        previous = await self._store.previous_evidence(
            record.item_name, record.source_registry_id, record.capture_date
        )
        if previous is None or previous.price_typical is None:
            return None

        old_price = previous.price_typical
        new_price = record.price_typical
        if old_price == new_price or old_price == 0:
            return None

        change_pct = (new_price - old_price) / abs(old_price)
        severity = classify_severity(change_pct)
        if severity is None:
            return None

        event = PriceChangeEvent(
            item_name=record.item_name,
            category=record.category,
            source_id=record.source_registry_id,
            previous_price=old_price,
            new_price=new_price,
            change_pct=change_pct,
            change_direction="increased" if change_pct > 0 else "decreased",
            severity=severity,
            record_id=record.record_id,
            previous_record_id=previous.record_id,
        )
        await self._store.insert_price_change(event)
        log.info(
            "Price change detected",
            item_name=record.item_name,
            source_id=record.source_registry_id,
            change_pct=f"{change_pct:+.1%}",
            severity=severity,
        )

        if severity in ("notable", "significant"):
            await self._store.insert_insight(build_insight(event, record))

        return event
