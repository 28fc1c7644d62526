"""Moving-average trend, direction and anomaly detection.

Series are grouped per (metric, category, geography). For each point the
moving average covers every point within the trailing window (inclusive).
Direction compares the mean of the latest window with the window before it.
Anomalies are points whose residual against their own moving average exceeds
a multiple of the population standard deviation of all residuals.
"""

import json
import math
import re
import statistics
from collections import defaultdict
from datetime import timedelta

from config.settings import GlobalConfig, get_config
from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import (
    AnomalyFlag,
    AuditEntry,
    DirectionChange,
    EvidenceRecord,
    MovingAveragePoint,
    TrendConfidence,
    TrendDataPoint,
    TrendSnapshot,
    new_run_id,
    utc_now,
)
from evidence_pipeline.oracle import ExtractionOracle
from evidence_pipeline.store import EvidenceStore

log = get_logger(__name__)

DIRECTION_THRESHOLD = 0.05
MIN_ANOMALY_POINTS = 3
NARRATIVE_MIN_POINTS = 5

NARRATIVE_SYSTEM_PROMPT = (
    "You are a market analyst for the UAE construction and real estate sector. "
    "Write exactly 3 factual sentences summarising the trend data provided. "
    "Use only the numbers given; do not speculate, forecast or give advice."
)

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def _sorted(points: list[TrendDataPoint]) -> list[TrendDataPoint]:
    return sorted(points, key=lambda p: p.date)


def _window_means(points: list[TrendDataPoint], window_days: int) -> list[float]:
    window = timedelta(days=window_days)
    means = []
    for point in points:
        in_window = [p.value for p in points if point.date - window <= p.date <= point.date]
        means.append(math.fsum(in_window) / len(in_window))
    return means


def compute_moving_averages(
    points: list[TrendDataPoint], window_days: int = 30
) -> list[MovingAveragePoint]:
    """Trailing moving average for every point, rounded to 2 decimals."""
    ordered = _sorted(points)
    return [
        MovingAveragePoint(date=p.date, value=p.value, moving_average=round(ma, 2))
        for p, ma in zip(ordered, _window_means(ordered, window_days))
    ]


def detect_direction_change(
    points: list[TrendDataPoint], window_days: int = 30
) -> DirectionChange:
    """Compare the latest window's mean with the preceding window's mean.

    Returns ``insufficient_data`` below two points and ``stable`` with no
    percent change when the preceding window is empty or averages zero.
    """
    if len(points) < 2:
        return DirectionChange(direction="insufficient_data")

    window = timedelta(days=window_days)
    latest = max(p.date for p in points)
    current = [p.value for p in points if latest - window <= p.date <= latest]
    previous = [p.value for p in points if latest - 2 * window <= p.date < latest - window]

    if not current:
        return DirectionChange(direction="insufficient_data")

    current_ma = math.fsum(current) / len(current)
    if not previous:
        return DirectionChange(direction="stable", current_ma=round(current_ma, 2))

    previous_ma = math.fsum(previous) / len(previous)
    if previous_ma == 0:
        return DirectionChange(
            direction="stable", current_ma=round(current_ma, 2), previous_ma=0.0
        )

    percent_change = (current_ma - previous_ma) / abs(previous_ma)
    if percent_change > DIRECTION_THRESHOLD:
        direction = "rising"
    elif percent_change < -DIRECTION_THRESHOLD:
        direction = "falling"
    else:
        direction = "stable"

    return DirectionChange(
        direction=direction,
        current_ma=round(current_ma, 2),
        previous_ma=round(previous_ma, 2),
        percent_change=percent_change,
    )


def flag_anomalies(
    points: list[TrendDataPoint],
    window_days: int = 30,
    threshold: float = 2.0,
) -> list[AnomalyFlag]:
    """Points whose |value - moving average| exceeds ``threshold`` standard deviations."""
    if len(points) < MIN_ANOMALY_POINTS:
        return []
    ordered = _sorted(points)
    if len({p.value for p in ordered}) == 1:
        return []

    means = _window_means(ordered, window_days)
    residuals = [p.value - ma for p, ma in zip(ordered, means)]
    std_dev = statistics.pstdev(residuals)
    if std_dev == 0:
        return []

    flags = []
    for point, ma, residual in zip(ordered, means, residuals):
        multiple = abs(residual) / std_dev
        if multiple > threshold:
            flags.append(
                AnomalyFlag(
                    date=point.date,
                    value=point.value,
                    expected_ma=round(ma, 2),
                    deviation_multiple=round(multiple, 2),
                    record_id=point.record_id,
                    source_id=point.source_id,
                )
            )
    return flags


def assess_confidence(points: list[TrendDataPoint]) -> TrendConfidence:
    grade_a = sum(1 for p in points if p.grade == "A")
    if len(points) >= 15 and grade_a >= 2:
        return "high"
    if len(points) >= 8:
        return "medium"
    if len(points) >= 5:
        return "low"
    return "insufficient"


def limit_sentences(text: str, count: int = 3) -> str:
    sentences = [s for s in _SENTENCE_END.split(" ".join(text.split())) if s]
    return " ".join(sentences[:count])


class TrendDetector:
    """Builds and persists trend snapshots, optionally with an oracle narrative.

    Attributes:
        window_days: Moving-average window.
        anomaly_threshold: Residual standard-deviation multiple.
    """

    def __init__(
        self,
        store: EvidenceStore,
        oracle: ExtractionOracle | None = None,
        config: GlobalConfig | None = None,
    ) -> None:
        self.config = config or get_config()
        self._store = store
        self._oracle = oracle
        self.window_days = self.config.trend_window_days
        self.anomaly_threshold = self.config.anomaly_std_dev_threshold

    async def analyze(
        self,
        metric: str,
        category: str,
        geography: str,
        points: list[TrendDataPoint],
        with_narrative: bool | None = None,
        run_id: str | None = None,
    ) -> TrendSnapshot | None:
        """Snapshot for one series; None below two points."""
        if len(points) < 2:
            return None

        ordered = _sorted(points)
        direction = detect_direction_change(ordered, self.window_days)
        snapshot = TrendSnapshot(
            metric=metric,
            category=category,
            geography=geography,
            data_point_count=len(ordered),
            grade_a_count=sum(1 for p in ordered if p.grade == "A"),
            grade_b_count=sum(1 for p in ordered if p.grade == "B"),
            grade_c_count=sum(1 for p in ordered if p.grade == "C"),
            unique_sources=len({p.source_id for p in ordered}),
            date_range_start=ordered[0].date,
            date_range_end=ordered[-1].date,
            current_ma=direction.current_ma,
            previous_ma=direction.previous_ma,
            percent_change=direction.percent_change,
            direction=direction.direction,
            anomalies=flag_anomalies(ordered, self.window_days, self.anomaly_threshold),
            confidence=assess_confidence(ordered),
            moving_averages=compute_moving_averages(ordered, self.window_days),
            run_id=run_id,
        )

        if with_narrative is None:
            with_narrative = self.config.trend_generate_narrative
        if with_narrative and snapshot.data_point_count >= NARRATIVE_MIN_POINTS:
            snapshot.narrative = await self.generate_narrative(snapshot)
        return snapshot

    async def generate_narrative(self, snapshot: TrendSnapshot) -> str | None:
        """Three-sentence oracle summary; None when unavailable or failing."""
        if self._oracle is None:
            return None

        summary = {
            "metric": snapshot.metric,
            "category": snapshot.category,
            "geography": snapshot.geography,
            "data_points": snapshot.data_point_count,
            "grade_counts": {
                "A": snapshot.grade_a_count,
                "B": snapshot.grade_b_count,
                "C": snapshot.grade_c_count,
            },
            "unique_sources": snapshot.unique_sources,
            "date_range": [
                snapshot.date_range_start.date().isoformat(),
                snapshot.date_range_end.date().isoformat(),
            ],
            "current_moving_average": snapshot.current_ma,
            "previous_moving_average": snapshot.previous_ma,
            "percent_change": (
                round(snapshot.percent_change * 100, 1) if snapshot.percent_change is not None else None
            ),
            "direction": snapshot.direction,
            "anomalies": len(snapshot.anomalies),
            "confidence": snapshot.confidence,
        }
        try:
            reply = await self._oracle.complete(
                NARRATIVE_SYSTEM_PROMPT,
                f"Trend summary:\n{json.dumps(summary, indent=2)}",
            )
        except Exception as exc:
            log.warning(
                "Trend narrative generation failed",
                metric=snapshot.metric,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return limit_sentences(reply) or None

    async def detect_for_categories(
        self,
        categories: list[str],
        run_id: str | None = None,
        actor_id: str | None = None,
    ) -> list[TrendSnapshot]:
        """Analyze and persist every priced series in the given categories."""
        started_at = utc_now()
        run_id = run_id or new_run_id("TRD")
        records: list[EvidenceRecord] = []
        for category in categories:
            records.extend(await self._store.list_evidence(category))

        series: dict[tuple[str, str, str], list[TrendDataPoint]] = defaultdict(list)
        for record in records:
            if record.price_typical is None:
                continue
            series[(record.item_name, record.category, record.geography)].append(
                TrendDataPoint(
                    date=record.capture_date,
                    value=record.price_typical,
                    grade=record.reliability_grade,
                    source_id=record.source_registry_id or record.source_url,
                    record_id=record.record_id,
                )
            )

        snapshots: list[TrendSnapshot] = []
        for (metric, category, geography), points in series.items():
            snapshot = await self.analyze(metric, category, geography, points, run_id=run_id)
            if snapshot is None:
                continue
            await self._store.insert_trend_snapshot(snapshot)
            snapshots.append(snapshot)

        await self._store.insert_audit_entry(
            AuditEntry(
                run_type="trend_detection",
                run_id=run_id,
                actor_id=actor_id,
                input_summary={"categories": categories, "records": len(records)},
                output_summary={
                    "series": len(series),
                    "snapshots": len(snapshots),
                    "anomalies": sum(len(s.anomalies) for s in snapshots),
                },
                started_at=started_at,
            )
        )

        log.info(
            "Trend detection complete",
            categories=categories,
            series=len(series),
            snapshots=len(snapshots),
        )
        return snapshots
