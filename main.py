"""Evidence Pipeline Entry Point.

This module is the bootstrap layer. It contains no business logic; all
functional code lives in the ``evidence_pipeline`` package.

Responsibilities:
    1. Load and validate configuration
    2. Initialize logging infrastructure (fail-fast on error)
    3. Run one ingestion pass, or keep running them on a schedule
    4. Write reports and handle top-level exceptions

Usage:
    python main.py
    python main.py --schedule
    # or, once installed
    evidence-pipeline
    evidence-pipeline-scheduler
"""

import asyncio
import sys
from typing import NoReturn

from loguru import logger

from config.settings import GlobalConfig, get_config
from evidence_pipeline.change_detector import ChangeDetector
from evidence_pipeline.exceptions import (
    EvidencePipelineError,
    LoggingInitializationError,
    StoreUnavailableError,
)
from evidence_pipeline.logger import configure_logging
from evidence_pipeline.models import IngestionRunReport


def _validate_startup_requirements(config: GlobalConfig) -> None:
    """Fail fast on configuration that would break the run.

    Raises:
        SystemExit: If the output directory or source registry is unusable.
    """
    try:
        config.output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.critical(
            "Failed to create output directory",
            output_dir=str(config.output_dir),
            error=str(exc),
        )
        sys.exit(1)

    if not config.sources_file.is_file():
        logger.critical("Source registry not found", sources_file=str(config.sources_file))
        sys.exit(1)

    logger.debug(
        "Startup validation complete",
        output_dir=str(config.output_dir),
        sources_file=str(config.sources_file),
        oracle_enabled=config.oracle_enabled,
    )


async def _ingest(config: GlobalConfig, trigger: str) -> IngestionRunReport | None:
    """Ingest from every active source, then write reports.

    Returns:
        The run report, or None when no source is active.
    """
    from evidence_pipeline.fetcher import PoliteFetcher
    from evidence_pipeline.oracle import OpenAIOracle
    from evidence_pipeline.orchestrator import IngestionOrchestrator
    from evidence_pipeline.proposals import BenchmarkProposalGenerator
    from evidence_pipeline.reporter import ReportGenerator
    from evidence_pipeline.sources import build_connectors, load_source_descriptors
    from evidence_pipeline.store import InMemoryEvidenceStore
    from evidence_pipeline.trends import TrendDetector

    logger.info(
        "Pipeline execution started",
        trigger=trigger,
        app_name=config.app_name,
        environment=config.environment,
        sources_file=str(config.sources_file),
    )

    descriptors = load_source_descriptors(config.sources_file)
    store = InMemoryEvidenceStore(descriptors)
    oracle = OpenAIOracle.from_config(config)
    if oracle is None:
        logger.warning("No LLM API key configured, using rule-based extraction only")

    async with PoliteFetcher.create(config) as fetcher:
        connectors = build_connectors(descriptors, fetcher, oracle, config)
        if not connectors:
            logger.warning("No active sources configured - nothing to ingest")
            return None

        orchestrator = IngestionOrchestrator(
            store,
            config,
            change_detector=ChangeDetector(store),
            proposal_generator=BenchmarkProposalGenerator(store, config),
            trend_detector=TrendDetector(store, oracle, config),
        )
        report = await orchestrator.run_ingestion(connectors, trigger=trigger)

    if store.evidence:
        reporter = ReportGenerator(config)
        reports = reporter.generate_all(
            report, store.evidence, store.proposals, store.trend_snapshots
        )
        logger.info(
            "Reports generated successfully",
            **{name: str(path) for name, path in reports.items()},
        )
        logger.info(
            "Analysis summary",
            price_changes=len(store.price_changes),
            insights=len(store.insights),
            proposals=len(store.proposals),
            trend_snapshots=len(store.trend_snapshots),
        )
    else:
        logger.warning(
            "No evidence ingested - skipping report generation",
            sources_failed=report.sources_failed,
        )
    return report


async def _run_pipeline(config: GlobalConfig, trigger: str = "cli") -> int:
    """Run one ingestion pass.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    report = await _ingest(config, trigger)
    if report is None:
        return 0

    if report.sources_attempted and report.sources_failed == report.sources_attempted:
        logger.error("All sources failed", run_id=report.run_id)
        return 1

    logger.info("Pipeline execution completed successfully", run_id=report.run_id)
    return 0


def _handle_fatal_error(exc: Exception) -> NoReturn:
    """Log a fatal error with structured context and exit."""
    if isinstance(exc, StoreUnavailableError):
        logger.critical(
            "CRITICAL: Record store unavailable - run aborted",
            message=exc.message,
            context=exc.context,
        )
        sys.exit(1)

    if isinstance(exc, EvidencePipelineError):
        logger.critical(
            "Fatal application error",
            error_type=type(exc).__name__,
            message=exc.message,
            context=exc.context,
        )
        sys.exit(1)

    logger.exception("Unexpected fatal error", error=str(exc))
    sys.exit(1)


def _bootstrap() -> GlobalConfig | None:
    """Load configuration, install logging and validate startup requirements.

    Returns:
        The configuration, or None when the process should exit with 1.
    """
    try:
        config = get_config()
    except Exception as exc:
        # Cannot log yet
        print(f"FATAL: Configuration loading failed: {exc}", file=sys.stderr)
        return None

    try:
        configure_logging(config)
    except LoggingInitializationError as exc:
        print(f"FATAL: {exc}", file=sys.stderr)
        return None

    try:
        _validate_startup_requirements(config)
    except SystemExit:
        raise
    except Exception as exc:
        logger.exception("Startup validation failed", error=str(exc))
        return None
    return config


async def _run_scheduler(config: GlobalConfig) -> int:
    """Run scheduled ingestion passes until cancelled."""
    from evidence_pipeline.scheduler import IngestionScheduler

    scheduler = IngestionScheduler.from_config(lambda: _ingest(config, "scheduled"), config)
    await scheduler.run()
    return 0


def main() -> int:
    """Application entry point.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    config = _bootstrap()
    if config is None:
        return 1

    try:
        return asyncio.run(_run_pipeline(config))
    except KeyboardInterrupt:
        logger.warning("Pipeline interrupted by user (Ctrl+C)")
        return 130
    except Exception as exc:
        _handle_fatal_error(exc)


def schedule_main() -> int:
    """Scheduler entry point: keeps running ingestion passes on the configured schedule."""
    config = _bootstrap()
    if config is None:
        return 1

    try:
        return asyncio.run(_run_scheduler(config))
    except KeyboardInterrupt:
        logger.warning("Scheduler interrupted by user (Ctrl+C)")
        return 130
    except Exception as exc:
        _handle_fatal_error(exc)


if __name__ == "__main__":
    sys.exit(schedule_main() if "--schedule" in sys.argv[1:] else main())
