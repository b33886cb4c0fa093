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

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "NANOPI_IMAGER_LOG_DIR",
        Path.home() / ".local" / "state" / "nanopi-imager" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Keep raw tool output (rsync, tar, debootstrap chatter) out of INFO."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "output" in tags:
        return record["level"].no <= logger.level("DEBUG").no

    return True


def _should_log_progress(record) -> bool:
    """Download progress ticks are TRACE-only on the console."""
    tags = record["extra"].get("tags", [])

    if "progress" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all log suppression rules."""
    return _should_log_command_output(record) and _should_log_progress(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup console and file logging for a provisioning run.

    Logging Tiers:
    - CRITICAL/ERROR: Fatal pipeline failures
    - SUCCESS/INFO: Stage headers and results
    - DEBUG: External commands and their output
    - TRACE: Download progress

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/nanopi-imager/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <8}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <8} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <8} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Trace Log (TRACE only, when trace=True)
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <8} | "
                "{extra[job_id]: <15} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
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
        job_id: Job identifier for tracking a run
        tags: Tags for filtering (e.g., ["media", "storage"])
        source: Source component (e.g., "media", "rootfs")

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


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for a pipeline stage with automatic timing.

    Logs the stage header on entry, and completion or failure with its
    duration on exit.

    Example:
        with operation_context("partitioning media", media="mmc_2g.img") as log:
            partition_media(path)
    """
    job_id = f"{operation.split()[0]}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source="stage", job_id=job_id, tags=["stage"])

        log.info(f"==> {operation}...", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.debug(f"{operation} completed", duration_seconds=round(duration, 2))
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.
    """

    @staticmethod
    def for_assets() -> Logger:
        """Logger for download cache and digest verification."""
        return logger.bind(source="assets", tags=["assets", "network"])

    @staticmethod
    def for_media() -> Logger:
        """Logger for image creation, partitioning and formatting."""
        return logger.bind(source="media", tags=["media", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for the mount session and cleanup guard."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_rootfs() -> Logger:
        """Logger for debootstrap and target configuration."""
        return logger.bind(source="rootfs", tags=["rootfs"])

    @staticmethod
    def for_commands() -> Logger:
        """Logger for external tool invocations."""
        return logger.bind(source="cmd", tags=["command"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, configuration and exit handling."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for download progress, which would otherwise log every chunk.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def trace(self, key: str, message: str, **kwargs) -> None:
        self._throttled_log("TRACE", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now
