from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

ENV_LOG_DIR = "DO_EXPORT_LOG_DIR"

# Note: TRACE already exists in loguru at level 5 (below DEBUG which is 10)


def default_log_dir() -> Path | None:
    value = os.environ.get(ENV_LOG_DIR)
    return Path(value) if value else None


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup logging sinks for an export run.

    Logging Tiers:
    - ERROR: fatal pipeline failures
    - WARNING: advisory conditions (no freeze, low space, check mismatches)
    - SUCCESS/INFO: stage transitions and artifacts produced
    - DEBUG: command lines and tool output
    - TRACE: raw progress lines from dd, qemu-img and rsync

    The console sink always writes to stderr so that a supervising service
    manager captures the diagnostic. File sinks are only added when a log
    directory is configured:

    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when debug or trace is enabled (3 day retention)
    - structured.jsonl: serialized records for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Directory for file sinks (defaults to $DO_EXPORT_LOG_DIR)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "export"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=False,
        backtrace=False,
        diagnose=False,
        colorize=None,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or default_log_dir()
    if log_dir is None:
        return logger

    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Run identifier for tracking a single export
        tags: Tags for filtering (e.g., ["freeze", "storage"])
        source: Source component (e.g., "devices", "convert")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_job_id(prefix: str = "export") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, *, job_id: str | None = None, **details):
    """
    Context manager for tracking a pipeline stage with automatic timing.

    Logs stage start, completion and failure with duration tracking. The
    exception is always re-raised.

    Example:
        with operation_context("capture", source="/dev/sda2") as log:
            log.debug("Starting e2image")
    """
    job_id = job_id or new_job_id(operation)

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        log.info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).success(
                f"{operation.capitalize()} completed in {duration:.1f}s"
            )
        except BaseException as e:
            duration = time.time() - start_time
            # Error text may contain braces and must not reach str.format
            log.bind(
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            ).error(f"{operation.capitalize()} failed: {e}")
            raise


class LoggerFactory:
    """
    Factory for creating component loggers with automatic context.

    Each factory method returns a logger pre-configured with the source
    and tags of one pipeline component.
    """

    @staticmethod
    def for_export(job_id: str | None = None) -> Logger:
        """Logger for the pipeline orchestrator."""
        if job_id is None:
            job_id = new_job_id()
        return logger.bind(job_id=job_id, source="export", tags=["export"])

    @staticmethod
    def for_devices() -> Logger:
        """Logger for device and partition resolution."""
        return logger.bind(source="devices", tags=["devices", "storage"])

    @staticmethod
    def for_freeze() -> Logger:
        """Logger for filesystem freeze/thaw."""
        return logger.bind(source="freeze", tags=["freeze", "storage"])

    @staticmethod
    def for_imaging() -> Logger:
        """Logger for capture, compression and checksums."""
        return logger.bind(source="imaging", tags=["imaging", "storage"])

    @staticmethod
    def for_convert() -> Logger:
        """Logger for container format conversion."""
        return logger.bind(source="convert", tags=["convert"])

    @staticmethod
    def for_transfer() -> Logger:
        """Logger for remote transfer and verification."""
        return logger.bind(source="transfer", tags=["transfer", "network"])

    @staticmethod
    def for_progress(source: str) -> Logger:
        """Logger for raw tool progress output."""
        return logger.bind(source=source, tags=["progress"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for dd, qemu-img and rsync progress which can emit several lines
    per second for hours.
    """

    def __init__(self, log: Logger, interval_seconds: float = 10.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now
