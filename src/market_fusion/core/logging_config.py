"""
Structured logging configuration for market-fusion.

Provides JSON-formatted logs with pipeline context (symbol, provider, stage)
so that any failed fetch, dropped reading or skipped cycle can be diagnosed
from the logs alone.

Usage:
    from market_fusion.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("record_persisted", symbol="bitcoin", price=64000.0)
"""

import sys
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger


# Events routed to the pipeline log file
PIPELINE_EVENTS = (
    "source_failed",
    "reading_rejected",
    "record_persisted",
    "record_duplicate",
    "enrichment_failed",
    "cycle_completed",
    "cycle_skipped",
    "backfill_completed",
)


def configure_logging(
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    enable_console: bool = True,
    enable_file: bool = True,
    rotation: str = "1 day",
    retention: str = "30 days",
    compression: str = "zip",
    serialize: bool = True
) -> None:
    """
    Configure structured logging for the entire application.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for log files (default: logs/)
        enable_console: Enable console output
        enable_file: Enable file output
        rotation: When to rotate logs (e.g., "1 day", "500 MB")
        retention: How long to keep logs
        compression: Compression format for old logs
        serialize: Use JSON format (recommended for production)
    """
    logger.remove()

    if enable_console:
        if serialize:
            logger.add(
                sys.stderr,
                level=level,
                serialize=True,
                backtrace=True,
                diagnose=False
            )
        else:
            logger.add(
                sys.stderr,
                level=level,
                format=(
                    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                    "<level>{level: <8}</level> | "
                    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                    "<level>{message}</level>"
                ),
                colorize=True
            )

    if enable_file:
        log_dir = log_dir or Path("logs")

        try:
            log_dir.mkdir(exist_ok=True, parents=True)
        except PermissionError as e:
            logger.error(f"Cannot create log directory {log_dir}: insufficient permissions")
            raise PermissionError(f"Failed to create log directory {log_dir}: {e}") from e
        except OSError as e:
            logger.error(f"Cannot create log directory {log_dir}: {e}")
            raise OSError(f"Failed to create log directory {log_dir}: {e}") from e

        logger.add(
            log_dir / "market_fusion_{time}.log",
            level=level,
            rotation=rotation,
            retention=retention,
            compression=compression,
            serialize=serialize,
            backtrace=True,
            diagnose=False
        )

        # Pipeline activity log (INFO+ only)
        logger.add(
            log_dir / "pipeline_{time}.log",
            level="INFO",
            rotation=rotation,
            retention=retention,
            compression=compression,
            serialize=serialize,
            filter=is_pipeline_event
        )

        logger.add(
            log_dir / "errors_{time}.log",
            level="WARNING",
            rotation=rotation,
            retention=retention,
            compression=compression,
            serialize=serialize
        )


def is_pipeline_event(record: Dict[str, Any]) -> bool:
    """Loguru filter: True for records whose message is a pipeline event."""
    return any(event in record["message"] for event in PIPELINE_EVENTS)


def get_logger(name: str) -> Any:
    """
    Get a logger instance for the given module.

    Args:
        name: Module name (use __name__)

    Returns:
        Logger instance with structured logging support
    """
    return logger.bind(module=name)


class PipelineLogger:
    """
    Logger for fusion pipeline events with standardized fields.

    Every event carries the symbol and, where relevant, the provider and
    pipeline stage, so failures can be traced without a debugger.
    """

    def __init__(self, component: Optional[str] = None):
        """
        Args:
            component: Optional component name added to every event
        """
        self.logger = logger
        self.component = component

    def _base_context(self) -> Dict[str, Any]:
        context = {}
        if self.component:
            context["component"] = self.component
        return context

    def source_failed(self, symbol: str, source: str, kind: str, error: str, **kwargs):
        """Log a provider fetch failure (excluded from this cycle only)."""
        context = self._base_context()
        context.update({
            "event": "source_failed",
            "stage": "fetch",
            "symbol": symbol,
            "source": source,
            "kind": kind,
            "error": error,
            **kwargs
        })
        self.logger.warning("source_failed", **context)

    def reading_rejected(self, symbol: str, source: str, errors: list, **kwargs):
        """Log a reading dropped by validation."""
        context = self._base_context()
        context.update({
            "event": "reading_rejected",
            "stage": "validate",
            "symbol": symbol,
            "source": source,
            "errors": errors,
            **kwargs
        })
        self.logger.warning("reading_rejected", **context)

    def record_persisted(
        self,
        symbol: str,
        price: float,
        quality_score: float,
        confidence: float,
        sources: int,
        **kwargs
    ):
        """Log a fused record written to the store."""
        context = self._base_context()
        context.update({
            "event": "record_persisted",
            "stage": "persist",
            "symbol": symbol,
            "price": price,
            "quality_score": round(quality_score, 4),
            "confidence": round(confidence, 4),
            "sources": sources,
            **kwargs
        })
        self.logger.info("record_persisted", **context)

    def record_duplicate(self, symbol: str, timestamp: str, **kwargs):
        """Log an insert that was ignored because the key already exists."""
        context = self._base_context()
        context.update({
            "event": "record_duplicate",
            "stage": "persist",
            "symbol": symbol,
            "timestamp": timestamp,
            **kwargs
        })
        self.logger.info("record_duplicate", **context)

    def enrichment_failed(self, symbol: str, stage: str, error: str, **kwargs):
        """Log an indicator/sentiment failure (record is still persisted)."""
        context = self._base_context()
        context.update({
            "event": "enrichment_failed",
            "stage": stage,
            "symbol": symbol,
            "error": error,
            **kwargs
        })
        self.logger.warning("enrichment_failed", **context)

    def cycle_completed(
        self,
        timestamp: str,
        persisted: int,
        no_data: int,
        failed: int,
        duration_ms: float,
        **kwargs
    ):
        """Log the end of a live aggregation cycle."""
        context = self._base_context()
        context.update({
            "event": "cycle_completed",
            "timestamp": timestamp,
            "persisted": persisted,
            "no_data": no_data,
            "failed": failed,
            "duration_ms": round(duration_ms, 1),
            **kwargs
        })
        self.logger.info("cycle_completed", **context)

    def cycle_skipped(self, job: str, reason: str, **kwargs):
        """Log a trigger ignored because the previous run is still going."""
        context = self._base_context()
        context.update({
            "event": "cycle_skipped",
            "job": job,
            "reason": reason,
            **kwargs
        })
        self.logger.warning("cycle_skipped", **context)

    def backfill_completed(self, symbol: str, inserted: int, already_present: int, **kwargs):
        """Log backfill results for one symbol."""
        context = self._base_context()
        context.update({
            "event": "backfill_completed",
            "stage": "backfill",
            "symbol": symbol,
            "inserted": inserted,
            "already_present": already_present,
            **kwargs
        })
        self.logger.info("backfill_completed", **context)


# NOTE: Logging is NOT initialized automatically on import.
# Applications must explicitly call configure_logging() at startup
# (the CLI does this from MARKET_FUSION_LOG_LEVEL / MARKET_FUSION_LOG_JSON).
