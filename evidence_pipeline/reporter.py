"""Report generation: Excel workbook and interactive trend dashboard.

The workbook captures one ingestion run together with the evidence and
benchmark proposals it fed. The dashboard is a standalone Plotly HTML page
with one panel per trend snapshot, showing observed values, the moving
average and flagged anomalies, so it can be opened without Python installed.
"""

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pandas as pd
import plotly.graph_objects as go
from plotly.subplots import make_subplots

from config.settings import GlobalConfig, get_config
from evidence_pipeline.exceptions import ReportGenerationError
from evidence_pipeline.logger import get_logger
from evidence_pipeline.models import (
    BenchmarkProposal,
    EvidenceRecord,
    IngestionRunReport,
    TrendSnapshot,
)

log = get_logger(__name__)

PANEL_HEIGHT = 320


def _naive(value: datetime | None) -> datetime | None:
    """Excel cannot store timezone-aware datetimes."""
    if value is None:
        return None
    return value.astimezone(UTC).replace(tzinfo=None)


class ReportGenerator:
    """Writes run reports into the configured output directory.

    Attributes:
        config: GlobalConfig instance for output paths.
        _timestamp: Report generation timestamp for file naming.

    Example:
        reporter = ReportGenerator()
        paths = reporter.generate_all(report, evidence, proposals, snapshots)
    """

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()
        self._timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")

    def _ensure_output_dir(self) -> Path:
        try:
            self.config.output_dir.mkdir(parents=True, exist_ok=True)
            return self.config.output_dir
        except OSError as exc:
            raise ReportGenerationError(
                report_type="output_directory",
                reason=f"Cannot create output directory: {exc}",
                output_path=str(self.config.output_dir),
            ) from exc

    def _summary_frame(self, report: IngestionRunReport) -> pd.DataFrame:
        summary: dict[str, Any] = {
            "Run ID": report.run_id,
            "Trigger": report.trigger,
            "Started": _naive(report.started_at),
            "Completed": _naive(report.completed_at),
            "Duration (ms)": report.duration_ms,
            "Sources Attempted": report.sources_attempted,
            "Sources Succeeded": report.sources_succeeded,
            "Sources Failed": report.sources_failed,
            "Evidence Extracted": report.evidence_extracted,
            "Evidence Created": report.evidence_created,
            "Duplicates Skipped": report.evidence_skipped,
            "Persistence Failures": report.evidence_failed,
            "Categories": ", ".join(report.categories),
        }
        return pd.DataFrame([summary])

    def _per_source_frame(self, report: IngestionRunReport) -> pd.DataFrame:
        columns = [
            "source_id",
            "source_name",
            "status",
            "http_status",
            "records_extracted",
            "evidence_created",
            "evidence_skipped",
            "records_failed",
            "duration_ms",
            "errors",
        ]
        rows = [
            {
                "source_id": r.source_id,
                "source_name": r.source_name,
                "status": r.status,
                "http_status": r.http_status,
                "records_extracted": r.records_extracted,
                "evidence_created": r.evidence_created,
                "evidence_skipped": r.evidence_skipped,
                "records_failed": r.records_failed,
                "duration_ms": r.duration_ms,
                "errors": "; ".join(r.errors),
            }
            for r in report.per_source
        ]
        return pd.DataFrame(rows, columns=columns)

    def _evidence_frame(self, evidence: list[EvidenceRecord]) -> pd.DataFrame:
        columns = [
            "record_id",
            "source_id",
            "publisher",
            "category",
            "item_name",
            "price",
            "unit",
            "currency",
            "grade",
            "confidence",
            "capture_date",
            "source_url",
        ]
        rows = [
            {
                "record_id": r.record_id,
                "source_id": r.source_registry_id,
                "publisher": r.publisher,
                "category": r.category,
                "item_name": r.item_name,
                "price": r.price_typical,
                "unit": r.unit,
                "currency": r.currency,
                "grade": r.reliability_grade,
                "confidence": r.confidence_score,
                "capture_date": _naive(r.capture_date),
                "source_url": r.source_url,
            }
            for r in evidence
        ]
        return pd.DataFrame(rows, columns=columns)

    def _proposal_frame(self, proposals: list[BenchmarkProposal]) -> pd.DataFrame:
        columns = [
            "benchmark_key",
            "p25",
            "p50",
            "p75",
            "weighted_mean",
            "evidence_count",
            "source_diversity",
            "confidence_score",
            "recommendation",
            "rejection_reason",
            "run_id",
        ]
        rows = [
            {
                "benchmark_key": p.benchmark_key,
                "p25": p.proposed_p25,
                "p50": p.proposed_p50,
                "p75": p.proposed_p75,
                "weighted_mean": p.weighted_mean,
                "evidence_count": p.evidence_count,
                "source_diversity": p.source_diversity,
                "confidence_score": p.confidence_score,
                "recommendation": p.recommendation,
                "rejection_reason": p.rejection_reason,
                "run_id": p.run_id,
            }
            for p in proposals
        ]
        return pd.DataFrame(rows, columns=columns)

    def generate_excel(
        self,
        report: IngestionRunReport,
        evidence: list[EvidenceRecord],
        proposals: list[BenchmarkProposal],
        filename: str | None = None,
    ) -> Path:
        """Write the run workbook.

        Sheets: Run Summary, Per Source, Evidence, Proposals.

        Raises:
            ReportGenerationError: If the workbook cannot be written.
        """
        output_dir = self._ensure_output_dir()
        filename = filename or f"evidence_run_{self._timestamp}"
        output_path = output_dir / f"{filename}.xlsx"

        log.info("Generating Excel report", output_path=str(output_path))

        try:
            with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
                self._summary_frame(report).to_excel(writer, sheet_name="Run Summary", index=False)
                self._per_source_frame(report).to_excel(writer, sheet_name="Per Source", index=False)
                self._evidence_frame(evidence).to_excel(writer, sheet_name="Evidence", index=False)
                self._proposal_frame(proposals).to_excel(writer, sheet_name="Proposals", index=False)
        except Exception as exc:
            raise ReportGenerationError(
                report_type="Excel",
                reason=str(exc),
                output_path=str(output_path),
            ) from exc

        log.info(
            "Excel report generated successfully",
            output_path=str(output_path),
            evidence=len(evidence),
            proposals=len(proposals),
        )
        return output_path

    def generate_trend_dashboard(
        self,
        snapshots: list[TrendSnapshot],
        filename: str | None = None,
    ) -> Path:
        """Write a standalone HTML page with one panel per snapshot.

        Raises:
            ReportGenerationError: If there are no snapshots or writing fails.
        """
        output_dir = self._ensure_output_dir()
        filename = filename or f"trend_dashboard_{self._timestamp}"
        output_path = output_dir / f"{filename}.html"

        if not snapshots:
            raise ReportGenerationError(
                report_type="Dashboard",
                reason="No trend snapshots available for visualization",
                output_path=str(output_path),
            )

        log.info("Generating trend dashboard", output_path=str(output_path))

        try:
            fig = make_subplots(
                rows=len(snapshots),
                cols=1,
                subplot_titles=[
                    f"{s.metric} ({s.category}, {s.geography}) - {s.direction}, {s.confidence} confidence"
                    for s in snapshots
                ],
                vertical_spacing=min(0.08, 0.5 / len(snapshots)),
            )

            for row, snapshot in enumerate(snapshots, start=1):
                dates = [p.date for p in snapshot.moving_averages]
                fig.add_trace(
                    go.Scatter(
                        x=dates,
                        y=[p.value for p in snapshot.moving_averages],
                        mode="markers",
                        name="Observed",
                        marker={"color": "#3498db", "size": 7},
                        hovertemplate="%{x|%Y-%m-%d}<br>Value: %{y:,.2f}<extra></extra>",
                    ),
                    row=row,
                    col=1,
                )
                fig.add_trace(
                    go.Scatter(
                        x=dates,
                        y=[p.moving_average for p in snapshot.moving_averages],
                        mode="lines",
                        name="Moving average",
                        line={"color": "#27ae60", "width": 2},
                        hovertemplate="%{x|%Y-%m-%d}<br>MA: %{y:,.2f}<extra></extra>",
                    ),
                    row=row,
                    col=1,
                )
                if snapshot.anomalies:
                    fig.add_trace(
                        go.Scatter(
                            x=[a.date for a in snapshot.anomalies],
                            y=[a.value for a in snapshot.anomalies],
                            mode="markers",
                            name="Anomaly",
                            marker={"color": "#e74c3c", "size": 12, "symbol": "x"},
                            text=[f"{a.deviation_multiple:.2f} sigma" for a in snapshot.anomalies],
                            hovertemplate="%{x|%Y-%m-%d}<br>Value: %{y:,.2f}<br>%{text}<extra></extra>",
                        ),
                        row=row,
                        col=1,
                    )

            fig.update_layout(
                title={
                    "text": (
                        f"<b>{self.config.app_name} Trend Dashboard</b><br>"
                        f"<sup>Series: {len(snapshots)} | "
                        f"Anomalies: {sum(len(s.anomalies) for s in snapshots)} | "
                        f"Generated: {datetime.now(UTC).strftime('%Y-%m-%d %H:%M UTC')}</sup>"
                    ),
                    "x": 0.5,
                    "xanchor": "center",
                },
                showlegend=False,
                height=max(500, PANEL_HEIGHT * len(snapshots)),
                template="plotly_white",
                font={"family": "Arial, sans-serif"},
            )

            fig.write_html(str(output_path), include_plotlyjs=True, full_html=True)
        except Exception as exc:
            raise ReportGenerationError(
                report_type="Dashboard",
                reason=str(exc),
                output_path=str(output_path),
            ) from exc

        log.info(
            "Trend dashboard generated successfully",
            output_path=str(output_path),
            snapshots=len(snapshots),
        )
        return output_path

    def generate_all(
        self,
        report: IngestionRunReport,
        evidence: list[EvidenceRecord],
        proposals: list[BenchmarkProposal],
        snapshots: list[TrendSnapshot],
    ) -> dict[str, Path]:
        """Generate the workbook and, when snapshots exist, the dashboard."""
        paths = {"excel": self.generate_excel(report, evidence, proposals)}
        if snapshots:
            paths["dashboard"] = self.generate_trend_dashboard(snapshots)
        else:
            log.info("No trend snapshots, dashboard skipped")
        return paths
