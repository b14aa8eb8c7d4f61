"""Plan execution with fail-fast, bounded retries and per-disk exclusivity.

Policy:
    - Destructive steps (wipe, partition, format) are never retried. Retrying
      a half-finished destructive command can leave a disk in a worse state.
    - Non-destructive steps (label, assign_uuid, mount) retry on a non-zero
      exit or a timeout, up to ``max_retries`` times with a linear backoff.
    - Any other exception from a step is recorded as an internal failure;
      ``execute()`` itself never raises for a step error.
    - ``stop_on_any_failure`` (default): after the first failure nothing new
      starts and every unstarted step is reported as skipped. Without it only
      the failed step's dependents are skipped; other disks carry on.
    - Nothing is rolled back. What was already wiped stays wiped, and the
      operator is told exactly which destructive steps completed.

Concurrency:
    Independent disk chains run on a thread pool. A step starts only when
    all of its predecessors succeeded and no running step shares one of its
    disks. Every result goes through ``RunReport.record`` which holds the
    report lock.

Cancellation:
    ``cancel()`` stops scheduling at once. Running destructive commands are
    allowed to finish, running non-destructive commands are killed.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Protocol

from disk_provisioner.config.settings import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    MAX_WORKERS,
)
from disk_provisioner.domain.report import ExecutionResult, RunReport, StepOutcome
from disk_provisioner.domain.steps import Step
from disk_provisioner.logging import EventLogger, LoggerFactory

from .command_runner import CommandResult
from .exceptions import (
    CommandNonZeroExit,
    CommandTimeout,
    ErrorKind,
    ProvisionError,
)
from .planner import Plan


RETRYABLE_ERRORS = (CommandNonZeroExit, CommandTimeout)


class Actions(Protocol):
    def perform(
        self, step: Step, interrupt: threading.Event | None = None
    ) -> list[CommandResult]:
        ...


def default_workers(plan: Plan, cap: int = MAX_WORKERS) -> int:
    """One worker per distinct disk, capped."""
    return max(1, min(len(plan.disks) or 1, cap))


class StepExecutor:
    def __init__(
        self,
        actions: Actions,
        *,
        workers: int | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF_SECONDS,
        stop_on_any_failure: bool = True,
        run_id: str | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        if workers is not None and workers < 1:
            raise ValueError("workers must be at least 1")
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.actions = actions
        self.workers = workers
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.stop_on_any_failure = stop_on_any_failure
        self.log = LoggerFactory.for_executor(run_id)
        self._cancel = threading.Event()
        self._sleep = sleep or self._cancel.wait

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        if not self._cancel.is_set():
            self.log.warning(
                "Cancellation requested: no new steps will start, running destructive steps will finish"
            )
        self._cancel.set()

    def execute(self, plan: Plan, report: RunReport) -> bool:
        """Run ``plan`` and record every step in ``report``.

        Returns:
            True if every step succeeded
        """
        workers = self.workers or default_workers(plan)
        self.log.info("Executing {} steps with {} workers", len(plan), workers)

        pending: list[Step] = list(plan.steps)
        status: dict[str, StepOutcome] = {}
        busy_disks: set[str] = set()
        in_flight: dict[Future, Step] = {}
        halt_reason: str | None = None

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="step") as pool:
            while pending or in_flight:
                if halt_reason is None and self.cancelled:
                    halt_reason = "cancelled by operator"

                if halt_reason is not None:
                    for step in pending:
                        self._record_skip(report, step, f"not started: {halt_reason}")
                        status[step.step_id] = StepOutcome.SKIPPED
                    pending.clear()
                else:
                    for step in list(pending):
                        blocker = next(
                            (
                                dep
                                for dep in step.depends_on
                                if status.get(dep) in (StepOutcome.FAILED, StepOutcome.SKIPPED)
                            ),
                            None,
                        )
                        if blocker is not None:
                            pending.remove(step)
                            self._record_skip(report, step, f"blocked by {blocker}")
                            status[step.step_id] = StepOutcome.SKIPPED
                            continue
                        if len(in_flight) >= workers:
                            continue
                        if not all(
                            status.get(dep) is StepOutcome.SUCCEEDED for dep in step.depends_on
                        ):
                            continue
                        if busy_disks.intersection(step.disks):
                            continue
                        pending.remove(step)
                        busy_disks.update(step.disks)
                        in_flight[pool.submit(self._run_step, step, report)] = step

                if not in_flight:
                    if pending:
                        # Unreachable for plans from StepPlanner.
                        for step in pending:
                            self._record_skip(report, step, "unsatisfiable dependencies")
                            status[step.step_id] = StepOutcome.SKIPPED
                        pending.clear()
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    step = in_flight.pop(future)
                    busy_disks.difference_update(step.disks)
                    result = future.result()
                    status[step.step_id] = result.outcome
                    if result.failed and self.stop_on_any_failure and halt_reason is None:
                        halt_reason = f"{step.step_id} failed"

        failed = [r for r in report.results if r.failed]
        if failed:
            self._log_halt(plan, report, failed)
        return not failed and all(s is StepOutcome.SUCCEEDED for s in status.values())

    def _run_step(self, step: Step, report: RunReport) -> ExecutionResult:
        # Destructive commands must never be killed mid-flight.
        interrupt = None if step.destructive else self._cancel
        started = time.monotonic()
        attempt = 0
        EventLogger.log_step_started(self.log, step.step_id, step.kind.value, step.disks)

        while True:
            try:
                commands = self.actions.perform(step, interrupt=interrupt)
            except ProvisionError as error:
                retryable = (
                    isinstance(error, RETRYABLE_ERRORS)
                    and not step.destructive
                    and attempt < self.max_retries
                    and not self.cancelled
                )
                error_kind, detail = error.error_kind, str(error)
                if retryable:
                    delay = self.retry_backoff * (attempt + 1)
                    EventLogger.log_step_retry(self.log, step.step_id, attempt + 1, delay, detail)
                    self._sleep(delay)
                    # The default sleep wakes early on cancel.
                    if not self.cancelled:
                        attempt += 1
                        continue
                    error_kind = ErrorKind.INTERRUPTED
                    detail = f"cancelled by operator before retry: {detail}"
                result = self._failure(step, error_kind, detail, attempt, started)
                break
            except Exception as error:
                self.log.exception("Unexpected error in step {}", step.step_id)
                result = self._failure(
                    step,
                    ErrorKind.INTERNAL,
                    f"{type(error).__name__}: {error}",
                    attempt,
                    started,
                )
                break
            else:
                result = ExecutionResult(
                    step_id=step.step_id,
                    kind=step.kind,
                    outcome=StepOutcome.SUCCEEDED,
                    disks=step.disks,
                    retries=attempt,
                    duration_seconds=time.monotonic() - started,
                    commands=tuple(command.command_line for command in commands),
                )
                break

        report.record(result)
        EventLogger.log_step_finished(
            self.log,
            step.step_id,
            result.outcome.value,
            result.duration_seconds,
            error_kind=result.error_kind.value if result.error_kind else None,
            detail=result.detail,
            retries=result.retries,
        )
        return result

    @staticmethod
    def _failure(
        step: Step, error_kind: ErrorKind, detail: str, retries: int, started: float
    ) -> ExecutionResult:
        return ExecutionResult(
            step_id=step.step_id,
            kind=step.kind,
            outcome=StepOutcome.FAILED,
            disks=step.disks,
            error_kind=error_kind,
            detail=detail,
            retries=retries,
            duration_seconds=time.monotonic() - started,
        )

    def _record_skip(self, report: RunReport, step: Step, reason: str) -> None:
        report.record(
            ExecutionResult(
                step_id=step.step_id,
                kind=step.kind,
                outcome=StepOutcome.SKIPPED,
                disks=step.disks,
                detail=reason,
            )
        )
        EventLogger.log_step_finished(self.log, step.step_id, "skipped", 0.0, detail=reason)

    def _log_halt(self, plan: Plan, report: RunReport, failed: list[ExecutionResult]) -> None:
        for result in failed:
            self.log.error(
                "FAILED {} ({}): {}",
                result.step_id,
                (result.error_kind or ErrorKind.INTERNAL).value,
                result.detail,
            )
        applied = [
            r.step_id
            for r in report.results
            if r.succeeded and plan.step(r.step_id).destructive
        ]
        if applied:
            self.log.critical(
                "Destructive changes were NOT rolled back; completed: {}",
                ", ".join(applied),
            )
