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
        "BOARD_IMAGER_LOG_DIR",
        Path.home() / ".local" / "state" / "board-imager" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Hide raw stdout/stderr echoes of external tools unless debugging."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    # Tool chatter stays in the files; the console only gets it on failure.
    return "command-output" not in tags


def _console_filter(record) -> bool:
    return _should_log_command_output(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Stage failures, teardown failures
    - SUCCESS/INFO: Stage transitions, acquired and released resources
    - DEBUG: Every external command and its output
    - TRACE: Device polling iterations

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - trace.log: TRACE+ events when --trace is enabled (1 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/board-imager/logs)
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
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_console_filter if not (debug or trace) else None,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[job_id]: <15}</blue> | "
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

    # SINK 3: Debug Log
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="DEBUG",
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

    # SINK 4: Trace Log
    if trace:
        logger.add(
            log_dir / "trace.log",
            level="TRACE",
            rotation="50 MB",
            retention="1 day",
            compression="zip",
            enqueue=True,
            backtrace=False,
            diagnose=False,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{message}"
            ),
        )

    # SINK 5: Structured JSON Log
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
        job_id: Job identifier for tracking a build
        tags: Tags for filtering (e.g., ["loop", "storage"])
        source: Source component (e.g., "loop", "mount", "pipeline")

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


def new_job_id(prefix: str = "build") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, job_id: str | None = None, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Automatically logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "build", "cleanup")
        job_id: Reuse an existing job id instead of generating one
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("build", model="orangepi-rv2") as log:
            log.debug("Allocating loop device")
    """
    job_id = job_id or new_job_id(operation)

    with logger.contextualize(
        job_id=job_id,
        operation=operation,
        **details,
    ):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        # fields go through bind(): loguru would str.format() a message given kwargs
        log.bind(**details).info(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.bind(duration_seconds=round(duration, 2)).success(
                f"{operation.capitalize()} completed"
            )
        except Exception as e:
            duration = time.time() - start_time
            log.bind(
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            ).error(f"{operation.capitalize()} failed")
            raise


class LoggerFactory:
    """
    Factory for creating component loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the component.
    """

    @staticmethod
    def for_loop() -> Logger:
        """Logger for loop device allocation and release."""
        return logger.bind(source="loop", tags=["loop", "storage"])

    @staticmethod
    def for_partition() -> Logger:
        """Logger for partition table planning and writing."""
        return logger.bind(source="partition", tags=["partition", "storage"])

    @staticmethod
    def for_mapper() -> Logger:
        """Logger for partition device-mapper nodes."""
        return logger.bind(source="mapper", tags=["mapper", "storage"])

    @staticmethod
    def for_format() -> Logger:
        """Logger for mkfs and UUID discovery."""
        return logger.bind(source="format", tags=["format", "storage"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for mount and unmount operations."""
        return logger.bind(source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_boot() -> Logger:
        """Logger for boot configuration patching."""
        return logger.bind(source="boot", tags=["boot"])

    @staticmethod
    def for_rootfs() -> Logger:
        """Logger for root filesystem population and customization."""
        return logger.bind(source="rootfs", tags=["rootfs"])

    @staticmethod
    def for_pipeline(job_id: str | None = None) -> Logger:
        """Logger for the build state machine and rollback."""
        if job_id is None:
            job_id = new_job_id()
        return logger.bind(job_id=job_id, source="pipeline", tags=["pipeline"])

    @staticmethod
    def for_command() -> Logger:
        """Logger for raw external command output."""
        return logger.bind(source="command", tags=["command-output"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, preflight, config)."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging pipeline events with consistent
    structure and fields, so structured.jsonl can be replayed.
    """

    @staticmethod
    def log_stage_transition(log: Logger, previous: str, current: str, **extra) -> None:
        """Log a pipeline state transition."""
        log.bind(
            event_type="stage_transition",
            previous_state=previous,
            state=current,
            **extra,
        ).info(f"Stage {previous} -> {current}")

    @staticmethod
    def log_resource_acquired(log: Logger, kind: str, identifier: str, **extra) -> None:
        """Log a resource added to the ledger."""
        log.bind(
            event_type="resource_acquired",
            resource_kind=kind,
            resource_id=identifier,
            **extra,
        ).info(f"Acquired {kind} {identifier}")

    @staticmethod
    def log_resource_released(log: Logger, kind: str, identifier: str, **extra) -> None:
        """Log a resource removed from the ledger."""
        log.bind(
            event_type="resource_released",
            resource_kind=kind,
            resource_id=identifier,
            **extra,
        ).info(f"Released {kind} {identifier}")

    @staticmethod
    def log_teardown_failure(
        log: Logger, kind: str, identifier: str, error: Exception, **extra
    ) -> None:
        """Log a teardown step that failed during rollback."""
        log.bind(
            event_type="teardown_failure",
            resource_kind=kind,
            resource_id=identifier,
            error_type=type(error).__name__,
            **extra,
        ).error(f"Teardown of {kind} {identifier} failed: {error}")
