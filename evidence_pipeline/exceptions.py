"""Custom exception hierarchy for the evidence pipeline.

Each exception carries a human-readable message, a context dictionary and the
UTC time it was raised. Fetch and extraction internals raise these; the
boundaries that must never raise (``PoliteFetcher.fetch``, connector
extraction, the orchestrator's per-connector loop) convert them into result
fields and health records instead.
"""

from datetime import UTC, datetime
from typing import Any


class EvidencePipelineError(Exception):
    """Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description.
        context: Optional dictionary with additional debugging information.
        timestamp: UTC timestamp when the exception was raised.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        self.timestamp = datetime.now(UTC)
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format exception message with context for logging."""
        base = f"[{self.timestamp.isoformat()}] {self.message}"
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base} | Context: {context_str}"
        return base


class ConfigValidationError(EvidencePipelineError):
    """Raised when configuration or source registry validation fails."""

    def __init__(self, field: str, value: Any, reason: str) -> None:
        super().__init__(
            message=f"Configuration validation failed for '{field}': {reason}",
            context={"field": field, "value": value, "reason": reason},
        )


class RobotsDisallowedError(EvidencePipelineError):
    """Raised when robots.txt forbids fetching a URL for the chosen user-agent.

    Terminal: the fetch layer never retries a compliance block.
    """

    def __init__(self, url: str, user_agent: str) -> None:
        super().__init__(
            message=f"Blocked by robots.txt policy: {url}",
            context={"url": url, "user_agent": user_agent},
        )
        self.url = url


class TransientFetchError(EvidencePipelineError):
    """Raised for timeouts and connection failures eligible for retry."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(
            message=f"Transient fetch failure for '{url}': {reason}",
            context={"url": url, "reason": reason},
        )
        self.reason = reason


class AntiBotDetectedError(EvidencePipelineError):
    """Raised when a response body carries CAPTCHA, paywall or challenge markers.

    Consumes a retry slot; the defence may not trigger on the next attempt.
    """

    def __init__(self, url: str, marker: str) -> None:
        super().__init__(
            message=f"Anti-bot challenge detected ({marker})",
            context={"url": url, "marker": marker},
        )
        self.marker = marker


class OracleError(EvidencePipelineError):
    """Raised when the extraction oracle call fails."""

    def __init__(self, reason: str, model: str | None = None) -> None:
        super().__init__(
            message=f"LLM oracle call failed: {reason}",
            context={"reason": reason, "model": model},
        )


class OracleResponseError(OracleError):
    """Raised when the oracle reply cannot be used (empty or not JSON)."""


class NormalizationError(EvidencePipelineError):
    """Raised when a candidate cannot be normalized into evidence."""

    def __init__(self, source_id: str, title: str, reason: str) -> None:
        super().__init__(
            message=f"Normalization failed for '{title}': {reason}",
            context={"source_id": source_id, "title": title, "reason": reason},
        )


class PersistenceError(EvidencePipelineError):
    """Raised when the record store rejects a write."""

    def __init__(self, entity: str, reason: str, key: str | None = None) -> None:
        super().__init__(
            message=f"Failed to persist {entity}: {reason}",
            context={"entity": entity, "reason": reason, "key": key},
        )
        self.entity = entity


class DuplicateEvidenceError(PersistenceError):
    """Raised by stores enforcing the (source url, metric, capture day) key."""

    def __init__(self, key: str) -> None:
        super().__init__(entity="evidence", reason="duplicate dedup key", key=key)
        self.key = key


class StoreUnavailableError(EvidencePipelineError):
    """Raised when the record store cannot be reached at all.

    Infrastructure fault: propagates out of ``run_ingestion``.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(
            message=f"Evidence store unavailable: {reason}",
            context={"reason": reason},
        )


class ReportGenerationError(EvidencePipelineError):
    """Raised when report generation fails."""

    def __init__(self, report_type: str, reason: str, output_path: str | None = None) -> None:
        super().__init__(
            message=f"Failed to generate {report_type} report: {reason}",
            context={"report_type": report_type, "reason": reason, "output_path": output_path},
        )


class LoggingInitializationError(EvidencePipelineError):
    """Raised when the logging system fails to initialize.

    Startup-blocking: the application does not run without logging.
    """

    def __init__(self, log_dir: str, reason: str) -> None:
        super().__init__(
            message=f"Failed to initialize logging at '{log_dir}': {reason}",
            context={"log_dir": log_dir, "reason": reason},
        )
