"""Benchmark proposal generation from aggregated evidence.

Evidence with a positive price is grouped by ``category:unit``. Each group
with enough records yields one appended proposal row per run: nearest-rank
percentiles, a reliability and freshness weighted mean, grade and recency
distributions, a 0-100 confidence score and a publish/reject recommendation.
Earlier proposals are never modified.
"""

import math
from collections import defaultdict
from datetime import datetime

from config.settings import GlobalConfig, get_config
from evidence_pipeline.freshness import age_in_days, get_freshness_weight
from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import (
    AuditEntry,
    BenchmarkProposal,
    EvidenceRecord,
    ProposalGenerationResult,
    Recommendation,
    new_run_id,
    utc_now,
)
from evidence_pipeline.store import EvidenceStore

log = get_logger(__name__)

RELIABILITY_WEIGHTS: dict[str, int] = {"A": 3, "B": 2, "C": 1}
PUBLISH_MIN_RECORDS = 5
PUBLISH_MIN_SOURCES = 2
PUBLISH_MIN_CONFIDENCE = 40
RECENT_MONTHS = 3
MID_MONTHS = 12
DEFAULT_UNIT = "unit"


def nearest_rank(sorted_values: list[float], quantile: float) -> float:
    """Value at index floor(n * q) of an ascending list; not interpolated."""
    index = min(int(math.floor(len(sorted_values) * quantile)), len(sorted_values) - 1)
    return sorted_values[index]


def recency_bucket(capture_date: datetime, reference: datetime | None = None) -> str:
    months = age_in_days(capture_date, reference) / 30
    if months <= RECENT_MONTHS:
        return "recent"
    if months <= MID_MONTHS:
        return "mid"
    return "old"


def compute_confidence_score(
    evidence_count: int,
    source_diversity: int,
    grade_a_count: int,
    recent_count: int,
) -> int:
    """Confidence from sample size, diversity, grade mix and recency, capped at 100."""
    score = 50
    if evidence_count >= 10:
        score += 15
    elif evidence_count >= 5:
        score += 10

    if source_diversity >= 3:
        score += 15
    elif source_diversity >= 2:
        score += 10

    if evidence_count and grade_a_count / evidence_count >= 0.5:
        score += 10
    if evidence_count and recent_count / evidence_count >= 0.5:
        score += 10
    return min(100, score)


def recommend(
    evidence_count: int, source_diversity: int, confidence_score: int
) -> tuple[Recommendation, str | None]:
    if evidence_count < PUBLISH_MIN_RECORDS:
        return "reject", f"Insufficient sample size: {evidence_count} < {PUBLISH_MIN_RECORDS}"
    if source_diversity < PUBLISH_MIN_SOURCES:
        return "reject", f"Insufficient source diversity: {source_diversity} < {PUBLISH_MIN_SOURCES}"
    if confidence_score < PUBLISH_MIN_CONFIDENCE:
        return "reject", f"Low confidence score: {confidence_score}"
    return "publish", None


def benchmark_key(record: EvidenceRecord) -> str:
    return f"{record.category}:{record.unit or DEFAULT_UNIT}"


def build_proposal(
    key: str,
    records: list[EvidenceRecord],
    run_id: str,
    reference: datetime | None = None,
) -> BenchmarkProposal | None:
    """Proposal for one group, or None when it has no usable price."""
    usable = [r for r in records if r.price_typical is not None and r.price_typical > 0]
    if not usable:
        return None

    prices = sorted(r.price_typical for r in usable)
    weighted_sum = 0.0
    total_weight = 0.0
    reliability = {"A": 0, "B": 0, "C": 0}
    recency = {"recent": 0, "mid": 0, "old": 0}
    for record in usable:
        weight = RELIABILITY_WEIGHTS[record.reliability_grade] * get_freshness_weight(
            record.capture_date, reference
        )
        weighted_sum += record.price_typical * weight
        total_weight += weight
        reliability[record.reliability_grade] += 1
        recency[recency_bucket(record.capture_date, reference)] += 1

    p50 = nearest_rank(prices, 0.50)
    weighted_mean = weighted_sum / total_weight if total_weight > 0 else p50
    # rounding must not push the mean outside the observed prices
    weighted_mean = min(max(round(weighted_mean, 2), prices[0]), prices[-1])
    diversity = len({r.source_registry_id or r.source_url for r in usable})
    confidence = compute_confidence_score(
        len(usable), diversity, reliability["A"], recency["recent"]
    )
    recommendation, reason = recommend(len(usable), diversity, confidence)

    category, _, unit = key.partition(":")
    return BenchmarkProposal(
        benchmark_key=key,
        category=category,
        unit=unit,
        proposed_p25=nearest_rank(prices, 0.25),
        proposed_p50=p50,
        proposed_p75=nearest_rank(prices, 0.75),
        weighted_mean=weighted_mean,
        evidence_count=len(usable),
        source_diversity=diversity,
        reliability_dist=reliability,
        recency_dist=recency,
        confidence_score=confidence,
        recommendation=recommendation,
        rejection_reason=reason,
        run_id=run_id,
    )


class BenchmarkProposalGenerator:
    """Recomputes every benchmark group and appends a proposal per group.

    Example:
        generator = BenchmarkProposalGenerator(store)
        result = await generator.generate(category="floors")
    """

    def __init__(self, store: EvidenceStore, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()
        self._store = store
        self.min_evidence = self.config.proposal_min_evidence

    async def generate(
        self,
        category: str | None = None,
        actor_id: str | None = None,
    ) -> ProposalGenerationResult:
        """Generate proposals from the current evidence.

        Args:
            category: Restrict to one evidence category.
            actor_id: User or trigger recorded on the audit entry.

        Returns:
            Summary of the run with every proposal persisted.
        """
        started_at = utc_now()
        run_id = new_run_id("PROP")
        evidence = await self._store.list_evidence(category)

        groups: dict[str, list[EvidenceRecord]] = defaultdict(list)
        for record in evidence:
            if record.price_typical is not None and record.price_typical > 0:
                groups[benchmark_key(record)].append(record)

        proposals: list[BenchmarkProposal] = []
        failures = 0
        for key, records in groups.items():
            if len(records) < self.min_evidence:
                log.debug("Benchmark group below minimum", benchmark_key=key, records=len(records))
                continue
            proposal = build_proposal(key, records, run_id)
            if proposal is None:
                continue
            try:
                await self._store.insert_benchmark_proposal(proposal)
            except Exception as exc:
                failures += 1
                log.error("Failed to persist proposal", benchmark_key=key, error=str(exc))
                continue
            proposals.append(proposal)

        await self._store.insert_audit_entry(
            AuditEntry(
                run_type="benchmark_proposal",
                run_id=run_id,
                actor_id=actor_id,
                input_summary={"category": category, "total_evidence": len(evidence)},
                output_summary={
                    "groups_analyzed": len(groups),
                    "proposals_created": len(proposals),
                    "publish": sum(1 for p in proposals if p.recommendation == "publish"),
                    "reject": sum(1 for p in proposals if p.recommendation == "reject"),
                },
                error_count=failures,
                started_at=started_at,
            )
        )

        log.info(
            "Benchmark proposals generated",
            run_id=run_id,
            groups=len(groups),
            proposals=len(proposals),
        )
        return ProposalGenerationResult(
            run_id=run_id,
            groups_analyzed=len(groups),
            proposals_created=len(proposals),
            total_evidence=len(evidence),
            proposals=proposals,
        )
