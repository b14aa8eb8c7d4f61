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
        "DISK_PROVISIONER_LOG_DIR",
        Path.home() / ".local" / "state" / "disk-provisioner" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Filter raw command stdout/stderr echoes - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    if "output" in tags:
        return record["level"].no <= logger.level("TRACE").no or (
            record["level"].no >= logger.level("WARNING").no
        )

    return True


def _combined_filter(record) -> bool:
    """Combined filter for all console suppression rules."""
    return _should_log_command_output(record)


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Log Files:
    - operations.log: INFO+ events (30 day retention, provisioning runs are rare
      and worth keeping)
    - debug.log: DEBUG+ events when --debug is enabled (7 day retention)
    - structured.jsonl: Structured JSON logs for analysis (30 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (echoes every command's output)
        log_dir: Custom log directory (defaults to ~/.local/state/disk-provisioner/logs)
    """
    logger.remove()
    logger.configure(extra={"run_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr) - operator-facing
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "<blue>{extra[run_id]: <14}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log - every step outcome (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="30 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[run_id]: <14} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - every command line and its output
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="7 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[run_id]: <14} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="30 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    run_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        run_id: Run identifier shared by every record of one provisioning run
        tags: Tags for filtering (e.g., ["plan"])
        source: Source component (e.g., "executor", "command")
    """
    extras: dict[str, object] = {}
    if run_id is not None:
        extras["run_id"] = run_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_run_id() -> str:
    return f"run-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, run_id: str | None = None, **details):
    """
    Context manager for tracking a provisioning run with automatic timing.

    Logs start, completion and failure (with duration) and binds ``run_id``
    for every record emitted inside the block, including those from worker
    threads started within it.

    Example:
        with operation_context("apply", layout="workstation.json") as log:
            log.debug("Planning")
    """
    run_id = run_id or new_run_id()

    with logger.contextualize(run_id=run_id, operation=operation, **details):
        start_time = time.monotonic()
        log = logger.bind(source=operation, run_id=run_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.monotonic() - start_time
            log.success(
                f"{operation.capitalize()} finished",
                duration_seconds=round(duration, 2),
            )
        except Exception as e:
            duration = time.monotonic() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the component.
    """

    @staticmethod
    def for_layout() -> Logger:
        """Logger for layout loading and validation."""
        return logger.bind(source="layout", tags=["layout"])

    @staticmethod
    def for_planner() -> Logger:
        """Logger for step planning."""
        return logger.bind(source="planner", tags=["plan"])

    @staticmethod
    def for_executor(run_id: str | None = None) -> Logger:
        """Logger for step execution."""
        extras: dict[str, object] = {"source": "executor", "tags": ["execute", "storage"]}
        if run_id is not None:
            extras["run_id"] = run_id
        return logger.bind(**extras)

    @staticmethod
    def for_command() -> Logger:
        """Logger for external command invocations."""
        return logger.bind(source="command", tags=["command"])

    @staticmethod
    def for_command_output() -> Logger:
        """Logger for raw command output (filtered from the console)."""
        return logger.bind(source="command", tags=["command", "output"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Provides methods for logging step lifecycle events with consistent
    structure and fields.
    """

    @staticmethod
    def log_step_started(log: Logger, step_id: str, kind: str, disks, **extra) -> None:
        log.info(
            "Step {} started",
            step_id,
            event_type="step_started",
            step_id=step_id,
            step_kind=kind,
            disks=list(disks),
            **extra,
        )

    @staticmethod
    def log_step_retry(
        log: Logger, step_id: str, attempt: int, delay: float, error: str, **extra
    ) -> None:
        log.warning(
            "Step {} failed, retry {} in {:.1f}s: {}",
            step_id,
            attempt,
            delay,
            error,
            event_type="step_retry",
            step_id=step_id,
            attempt=attempt,
            **extra,
        )

    @staticmethod
    def log_step_finished(
        log: Logger,
        step_id: str,
        outcome: str,
        duration: float,
        error_kind: str | None = None,
        detail: str | None = None,
        **extra,
    ) -> None:
        method = log.success if outcome == "succeeded" else log.error if outcome == "failed" else log.warning
        message = "Step {} {}" if not detail else "Step {} {}: {}"
        args = (step_id, outcome) if not detail else (step_id, outcome, detail)
        method(
            message,
            *args,
            event_type="step_finished",
            step_id=step_id,
            outcome=outcome,
            error_kind=error_kind,
            duration_seconds=round(duration, 2),
            **extra,
        )
