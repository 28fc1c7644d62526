"""Record store contract and an in-memory implementation.

The pipeline only inserts and runs filtered queries; nothing is updated in
place except source scheduling metadata. The duplicate check and the evidence
insert are separate calls, so concurrent runs can race between them.
``InMemoryEvidenceStore`` keeps that behaviour unless constructed with
``enforce_unique_key=True``, in which case a second insert of the same
(source url, item, capture day) key raises ``DuplicateEvidenceError``.
"""

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from evidence_pipeline.exceptions import DuplicateEvidenceError
from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import (
    AuditEntry,
    BenchmarkProposal,
    ConnectorHealthRecord,
    EvidenceRecord,
    IngestionRunReport,
    MarketInsight,
    PriceChangeEvent,
    SourceDescriptor,
    TrendSnapshot,
    as_utc,
)

log = get_logger(__name__)


@runtime_checkable
class EvidenceStore(Protocol):
    async def get_source(self, source_id: str) -> SourceDescriptor | None: ...

    async def update_source(self, source_id: str, **changes: Any) -> SourceDescriptor | None: ...

    async def find_duplicate(
        self, source_url: str, item_name: str, capture_date: datetime
    ) -> EvidenceRecord | None: ...

    async def insert_evidence(self, record: EvidenceRecord) -> None: ...

    async def previous_evidence(
        self, item_name: str, source_id: str | None, before: datetime
    ) -> EvidenceRecord | None: ...

    async def list_evidence(self, category: str | None = None) -> list[EvidenceRecord]: ...

    async def insert_price_change(self, event: PriceChangeEvent) -> None: ...

    async def insert_insight(self, insight: MarketInsight) -> None: ...

    async def insert_trend_snapshot(self, snapshot: TrendSnapshot) -> None: ...

    async def insert_benchmark_proposal(self, proposal: BenchmarkProposal) -> None: ...

    async def insert_health_record(self, record: ConnectorHealthRecord) -> None: ...

    async def insert_run_report(self, report: IngestionRunReport) -> None: ...

    async def insert_audit_entry(self, entry: AuditEntry) -> None: ...


class InMemoryEvidenceStore:
    """Process-local store used by the CLI and the test suite.

    Attributes:
        enforce_unique_key: Reject inserts that repeat a dedup key.
        sources: Source registry keyed by id.
        evidence: Evidence records in insertion order.
    """

    def __init__(
        self,
        sources: list[SourceDescriptor] | None = None,
        enforce_unique_key: bool = False,
    ) -> None:
        self.enforce_unique_key = enforce_unique_key
        self.sources: dict[str, SourceDescriptor] = {s.id: s for s in sources or []}
        self.evidence: list[EvidenceRecord] = []
        self.price_changes: list[PriceChangeEvent] = []
        self.insights: list[MarketInsight] = []
        self.trend_snapshots: list[TrendSnapshot] = []
        self.proposals: list[BenchmarkProposal] = []
        self.health_records: list[ConnectorHealthRecord] = []
        self.run_reports: list[IngestionRunReport] = []
        self.audit_entries: list[AuditEntry] = []

    async def get_source(self, source_id: str) -> SourceDescriptor | None:
        return self.sources.get(source_id)

    async def upsert_source(self, descriptor: SourceDescriptor) -> None:
        self.sources[descriptor.id] = descriptor

    async def update_source(self, source_id: str, **changes: Any) -> SourceDescriptor | None:
        current = self.sources.get(source_id)
        if current is None:
            return None
        updated = current.model_copy(update=changes)
        self.sources[source_id] = SourceDescriptor.model_validate(updated.model_dump())
        return self.sources[source_id]

    async def find_duplicate(
        self, source_url: str, item_name: str, capture_date: datetime
    ) -> EvidenceRecord | None:
        key = (source_url, item_name, as_utc(capture_date).date())
        for record in self.evidence:
            if record.dedup_key == key:
                return record
        return None

    async def insert_evidence(self, record: EvidenceRecord) -> None:
        if self.enforce_unique_key and any(r.dedup_key == record.dedup_key for r in self.evidence):
            key = "|".join(str(part) for part in record.dedup_key)
            log.debug("Rejecting duplicate evidence", record_id=record.record_id, dedup_key=key)
            raise DuplicateEvidenceError(key)
        self.evidence.append(record)

    async def previous_evidence(
        self, item_name: str, source_id: str | None, before: datetime
    ) -> EvidenceRecord | None:
        """Most recent record for (item, source) captured strictly before ``before``."""
        cutoff = as_utc(before)
        earlier = [
            r
            for r in self.evidence
            if r.item_name == item_name
            and r.source_registry_id == source_id
            and r.capture_date < cutoff
        ]
        if not earlier:
            return None
        return max(earlier, key=lambda r: (r.capture_date, r.created_at))

    async def list_evidence(self, category: str | None = None) -> list[EvidenceRecord]:
        if category is None:
            return list(self.evidence)
        return [r for r in self.evidence if r.category == category]

    async def insert_price_change(self, event: PriceChangeEvent) -> None:
        self.price_changes.append(event)

    async def insert_insight(self, insight: MarketInsight) -> None:
        self.insights.append(insight)

    async def insert_trend_snapshot(self, snapshot: TrendSnapshot) -> None:
        self.trend_snapshots.append(snapshot)

    async def insert_benchmark_proposal(self, proposal: BenchmarkProposal) -> None:
        self.proposals.append(proposal)

    async def insert_health_record(self, record: ConnectorHealthRecord) -> None:
        self.health_records.append(record)

    async def insert_run_report(self, report: IngestionRunReport) -> None:
        self.run_reports.append(report)

    async def insert_audit_entry(self, entry: AuditEntry) -> None:
        self.audit_entries.append(entry)
