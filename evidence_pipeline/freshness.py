"""Observation age to freshness weight.

Buckets: fresh (up to 90 days) weighs 1.0, aging (up to 365 days) weighs
0.75, anything older weighs 0.5.
"""

from datetime import datetime

from evidence_pipeline.models import FreshnessInfo, as_utc, utc_now

FRESH_MAX_DAYS = 90
AGING_MAX_DAYS = 365

FRESH_WEIGHT = 1.0
AGING_WEIGHT = 0.75
STALE_WEIGHT = 0.5


def age_in_days(observed_at: datetime, reference: datetime | None = None) -> int:
    """Whole days between observation and reference, never negative."""
    reference = as_utc(reference) if reference is not None else utc_now()
    return max(0, (reference - as_utc(observed_at)).days)


def compute_freshness(observed_at: datetime, reference: datetime | None = None) -> FreshnessInfo:
    """Classify an observation into its freshness bucket.

    Args:
        observed_at: Capture or publication time of the observation.
        reference: Point in time to measure against (defaults to now).

    Returns:
        FreshnessInfo with status, weight, age and display badge colour.
    """
    days = age_in_days(observed_at, reference)
    if days <= FRESH_MAX_DAYS:
        return FreshnessInfo(status="fresh", weight=FRESH_WEIGHT, age_days=days, badge_color="green")
    if days <= AGING_MAX_DAYS:
        return FreshnessInfo(status="aging", weight=AGING_WEIGHT, age_days=days, badge_color="amber")
    return FreshnessInfo(status="stale", weight=STALE_WEIGHT, age_days=days, badge_color="red")


def get_freshness_weight(observed_at: datetime, reference: datetime | None = None) -> float:
    return compute_freshness(observed_at, reference).weight
