"""Global configuration management using pydantic-settings.

All pipeline tunables (fetch politeness, retry discipline, oracle limits,
analysis thresholds) are loaded from environment variables with strict type
validation. A cached accessor keeps one configuration instance per process.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GlobalConfig(BaseSettings):
    """Centralized configuration with environment variable binding.

    Attributes:
        app_name: Application identifier for logging.
        environment: Deployment environment.
        debug: Enable verbose debugging output.
        log_level: Minimum log level for output filtering.
        log_dir: Directory path for structured JSON log files.
        log_rotation: Log file rotation interval.
        log_retention: Log file retention period.
        request_timeout_ms: Overall deadline for one fetch attempt, in milliseconds.
        retry_max_attempts: Total fetch attempts (first try included).
        retry_base_delay_sec: First backoff delay; doubles per attempt.
        retry_max_delay_sec: Upper bound for a single backoff delay.
        default_request_delay_ms: Politeness delay for sources that set none.
        user_agents: Rotating user-agent pool, one picked per fetch.
        robots_cache_ttl_sec: Lifetime of a cached robots.txt policy.
        robots_cache_max_entries: Maximum number of origins kept in the cache.
        max_concurrent_connectors: Worker pool size for connector execution.
        test_scrape_preview_limit: Records shown by a dry-run scrape.
        ingestion_cron: Cron expression for scheduled runs, evaluated in UTC.
        ingestion_interval_sec: Fixed interval between scheduled runs, if set.
        llm_api_key: API key for the extraction oracle (empty disables it).
        llm_base_url: Base URL of an OpenAI-compatible endpoint.
        llm_model: Model name passed to the oracle.
        oracle_max_input_chars: Markup-stripped text sent to the oracle.
        oracle_max_items: Maximum candidates accepted from one oracle reply.
        proposal_min_evidence: Minimum group size considered for a proposal.
        trend_window_days: Moving-average window.
        anomaly_std_dev_threshold: Residual multiple that flags an anomaly.
        trend_generate_narrative: Ask the oracle for a trend narrative.
        sources_file: YAML file holding the source registry.
        output_dir: Directory for generated reports.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Metadata
    app_name: str = Field(default="EvidencePipeline", description="Application identifier")
    environment: Literal["development", "test", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Logging Configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    log_dir: Path = Field(default=Path("logs"), description="Log output directory")
    log_rotation: str = Field(default="1 week", description="Log rotation interval")
    log_retention: str = Field(default="1 month", description="Log retention period")

    # Fetch Resilience
    request_timeout_ms: int = Field(
        default=15000, ge=1000, le=120000, description="Request timeout in milliseconds"
    )
    retry_max_attempts: int = Field(
        default=3, ge=1, le=10, description="Maximum fetch attempts"
    )
    retry_base_delay_sec: float = Field(
        default=1.0, ge=0.0, le=10.0, description="Base delay for exponential backoff"
    )
    retry_max_delay_sec: float = Field(
        default=8.0, ge=0.0, le=300.0, description="Maximum backoff delay"
    )
    default_request_delay_ms: int = Field(
        default=2000, ge=0, le=60000, description="Default per-source politeness delay"
    )

    # Compliance
    robots_cache_ttl_sec: int = Field(
        default=3600, ge=0, description="robots.txt cache lifetime (0 = no caching)"
    )
    robots_cache_max_entries: int = Field(
        default=256, ge=1, description="Maximum cached robots.txt origins"
    )

    # Orchestration
    max_concurrent_connectors: int = Field(
        default=3, ge=1, le=20, description="Connector worker pool size"
    )
    test_scrape_preview_limit: int = Field(
        default=5, ge=1, le=50, description="Records previewed by a dry-run scrape"
    )

    # Scheduling
    ingestion_cron: str = Field(
        default="0 6 * * 1", description="Scheduled run cron expression (UTC, five fields)"
    )
    ingestion_interval_sec: int | None = Field(
        default=None, ge=60, description="Fixed run interval; overrides the cron expression"
    )

    # Extraction Oracle
    llm_api_key: str = Field(default="", description="Oracle API key (empty = disabled)")
    llm_base_url: str | None = Field(default=None, description="OpenAI-compatible base URL")
    llm_model: str = Field(default="gpt-4o-mini", description="Oracle model name")
    oracle_max_input_chars: int = Field(
        default=8000, ge=500, le=100000, description="Max stripped text sent to the oracle"
    )
    oracle_max_items: int = Field(
        default=15, ge=1, le=100, description="Max candidates accepted per oracle reply"
    )

    # Analysis
    proposal_min_evidence: int = Field(
        default=3, ge=1, description="Minimum records per benchmark group"
    )
    trend_window_days: int = Field(
        default=30, ge=1, le=365, description="Moving-average window in days"
    )
    anomaly_std_dev_threshold: float = Field(
        default=2.0, gt=0.0, le=10.0, description="Std-dev multiple flagging an anomaly"
    )
    trend_generate_narrative: bool = Field(
        default=True, description="Request an oracle narrative for trend snapshots"
    )

    # Input / Output
    sources_file: Path = Field(
        default=Path("config/sources.yaml"), description="Source registry file"
    )
    output_dir: Path = Field(default=Path("output"), description="Report output directory")

    # User Agent Rotation Pool
    user_agents: list[str] = Field(
        default=[
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) Gecko/20100101 Firefox/125.0",
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
            "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
        ],
        min_length=1,
        description="User-agent rotation pool",
    )

    @field_validator("log_dir", "output_dir", "sources_file", mode="before")
    @classmethod
    def ensure_path(cls, value: str | Path) -> Path:
        """Convert string paths to Path objects."""
        return Path(value) if isinstance(value, str) else value

    @field_validator("llm_base_url")
    @classmethod
    def blank_url_is_none(cls, value: str | None) -> str | None:
        """Treat an empty base URL as unset."""
        return value or None

    @property
    def oracle_enabled(self) -> bool:
        """True when an API key is configured for the extraction oracle."""
        return bool(self.llm_api_key.strip())


@lru_cache(maxsize=1)
def get_config() -> GlobalConfig:
    """Retrieve the singleton GlobalConfig instance.

    Returns:
        GlobalConfig: The validated configuration instance.
    """
    return GlobalConfig()
