"""Loguru sinks for ingestion and analysis runs.

The console sink is for operators watching a run; the file sink writes one
JSON object per line for later querying. Every line carries the run and
source it belongs to as top-level ``run_id`` and ``source_id`` fields (null
when the call site bound neither), so a single connector's history inside one
run can be filtered without unpacking the free-form ``context`` object.
"""

import json
import sys
from pathlib import Path
from typing import Any

from loguru import logger

from config.settings import GlobalConfig, get_config
from evidence_pipeline.exceptions import LoggingInitializationError

CORRELATION_FIELDS = ("run_id", "source_id")


def _json_serializer(record: dict[str, Any]) -> str:
    """Render a loguru record as one JSON line with correlation ids promoted."""
    extra = {k: v for k, v in record["extra"].items() if k != "serialized"}
    entry: dict[str, Any] = {
        "timestamp": record["time"].isoformat(),
        "level": record["level"].name,
        "message": record["message"],
        "module": extra.pop("module", record["name"]),
        "function": record["function"],
        "line": record["line"],
    }
    for field in CORRELATION_FIELDS:
        entry[field] = extra.pop(field, None)

    exception = record["exception"]
    if exception is not None:
        entry["exception"] = {
            "type": exception.type.__name__ if exception.type else None,
            "value": str(exception.value) if exception.value else None,
            "traceback": exception.traceback is not None,
        }

    if extra:
        entry["context"] = extra

    return json.dumps(entry, default=str) + "\n"


def _attach_serialized(record: dict[str, Any]) -> bool:
    record["extra"]["serialized"] = _json_serializer(record)
    return True


def _console_format(record: dict[str, Any]) -> str:
    """Console line template; tags the line with the run and source when bound."""
    tags = "".join(
        f" [{field}={{extra[{field}]}}]" for field in CORRELATION_FIELDS if field in record["extra"]
    )
    if tags:
        tags = f"<magenta>{tags}</magenta>"
    return (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{extra[module]}</cyan>:<cyan>{line}</cyan>"
        f"{tags} | "
        "<level>{message}</level>\n{exception}"
    )


def _validate_log_directory(log_dir: Path) -> None:
    """Create the log directory and check a file can be written there.

    Raises:
        LoggingInitializationError: If the directory cannot be created or written.
    """
    marker = log_dir / ".write_test"
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        marker.write_text("ok")
        marker.unlink()
    except OSError as exc:
        reason = "Permission denied" if isinstance(exc, PermissionError) else "Cannot write"
        raise LoggingInitializationError(log_dir=str(log_dir), reason=f"{reason}: {exc}") from exc


def configure_logging(config: GlobalConfig | None = None) -> None:
    """Install the console and JSON-lines sinks.

    Call once from the CLI before any run starts. Existing sinks, including
    loguru's default stderr sink, are removed first.

    Raises:
        LoggingInitializationError: If the log directory is unusable.
    """
    config = config or get_config()

    logger.remove()
    logger.configure(extra={"module": "evidence_pipeline"})
    _validate_log_directory(config.log_dir)

    logger.add(
        sys.stderr,
        format=_console_format,
        level=config.log_level,
        colorize=True,
        backtrace=config.debug,
        diagnose=config.debug,
    )

    logger.add(
        str(config.log_dir / "evidence_pipeline_{time:YYYY-MM-DD}.json"),
        format="{extra[serialized]}",
        level=config.log_level,
        rotation=config.log_rotation,
        retention=config.log_retention,
        compression="gz",
        serialize=False,
        filter=_attach_serialized,
    )

    logger.info(
        "Logging configured",
        environment=config.environment,
        log_level=config.log_level,
        log_dir=str(config.log_dir),
    )


def get_logger(name: str, **context: Any) -> "logger":
    """Logger bound to a module name and optional correlation ids.

    Example:
        >>> log = get_logger(__name__, run_id="ING-20250301-ABC123")
        >>> log.info("Connector finished", source_id="emaar-properties")
    """
    return logger.bind(module=name, **context)
