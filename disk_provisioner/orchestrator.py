"""Top-level driver: validate, plan, execute, report.

Run state machine::

    Idle -> Validating -> Planning -> Executing -> Completed
                 |            |            |
                 +------------+------------+--> Halted

Validation, preflight and planning failures halt the run before any command
is executed. Each ``run()`` starts again from Idle; nothing is resumed.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

from disk_provisioner.config import settings
from disk_provisioner.domain.models import LayoutSpec
from disk_provisioner.domain.report import RunReport, RunState
from disk_provisioner.logging import LoggerFactory, new_run_id, operation_context
from disk_provisioner.storage.actions import StepActions
from disk_provisioner.storage.command_runner import CommandRunner
from disk_provisioner.storage.exceptions import ProvisionError
from disk_provisioner.storage.executor import StepExecutor, default_workers
from disk_provisioner.storage.planner import Plan, StepPlanner
from disk_provisioner.storage.validation import validate_layout_devices


log = LoggerFactory.for_system()

_TRANSITIONS = {
    RunState.IDLE: {RunState.VALIDATING},
    RunState.VALIDATING: {RunState.PLANNING, RunState.HALTED},
    RunState.PLANNING: {RunState.EXECUTING, RunState.HALTED},
    RunState.EXECUTING: {RunState.COMPLETED, RunState.HALTED},
    RunState.COMPLETED: set(),
    RunState.HALTED: set(),
}


class Orchestrator:
    """Drives one provisioning run per ``run()`` call.

    Options left as None fall back to the loaded settings.
    """

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        workers: int | None = None,
        max_retries: int | None = None,
        retry_backoff: float | None = None,
        stop_on_any_failure: bool | None = None,
        preflight: bool | None = None,
        destructive_timeout: float | None = None,
        non_destructive_timeout: float | None = None,
        planner: StepPlanner | None = None,
        preflight_check: Callable[[LayoutSpec], None] = validate_layout_devices,
        sleep: Callable[[float], None] | None = None,
    ):
        self.runner = runner or CommandRunner()
        self.planner = planner or StepPlanner()
        self.workers = workers
        self.max_workers = settings.get_int("max_workers", settings.MAX_WORKERS)
        self.max_retries = (
            settings.get_int("max_retries", settings.DEFAULT_MAX_RETRIES)
            if max_retries is None
            else max_retries
        )
        self.retry_backoff = (
            settings.get_float("retry_backoff_seconds", settings.DEFAULT_RETRY_BACKOFF_SECONDS)
            if retry_backoff is None
            else retry_backoff
        )
        self.stop_on_any_failure = (
            settings.get_bool("stop_on_any_failure", True)
            if stop_on_any_failure is None
            else stop_on_any_failure
        )
        self.preflight = settings.get_bool("preflight", True) if preflight is None else preflight
        self.destructive_timeout = (
            settings.get_float(
                "destructive_timeout_seconds", settings.DEFAULT_DESTRUCTIVE_TIMEOUT_SECONDS
            )
            if destructive_timeout is None
            else destructive_timeout
        )
        self.non_destructive_timeout = (
            settings.get_float(
                "non_destructive_timeout_seconds",
                settings.DEFAULT_NON_DESTRUCTIVE_TIMEOUT_SECONDS,
            )
            if non_destructive_timeout is None
            else non_destructive_timeout
        )
        self.preflight_check = preflight_check
        self.sleep = sleep
        self.state = RunState.IDLE
        self._lock = threading.Lock()
        self._executor: StepExecutor | None = None
        self._cancel_requested = False

    def plan(self, spec: LayoutSpec) -> Plan:
        """Validate and plan without executing anything (dry run)."""
        spec.validate()
        return self.planner.plan(spec)

    def cancel(self) -> None:
        """Stop scheduling new steps; safe to call from another thread."""
        with self._lock:
            self._cancel_requested = True
            executor = self._executor
        if executor is not None:
            executor.cancel()

    def run(self, spec: LayoutSpec) -> RunReport:
        self.state = RunState.IDLE
        with self._lock:
            self._cancel_requested = False
        run_id = new_run_id()
        report = RunReport(run_id=run_id, layout_name=spec.name)
        started = time.monotonic()

        with operation_context("apply", run_id=run_id, layout=spec.name) as run_log:
            try:
                self._transition(report, RunState.VALIDATING)
                spec.validate()
                if self.preflight:
                    self.preflight_check(spec)
                self._transition(report, RunState.PLANNING)
                plan = self.planner.plan(spec)
            except ProvisionError as error:
                report.error = str(error)
                report.error_kind = error.error_kind
                run_log.error("Run halted before execution: {}", error)
                self._finish(report, RunState.HALTED, started)
                return report

            self._transition(report, RunState.EXECUTING)
            executor = StepExecutor(
                StepActions(
                    spec,
                    self.runner,
                    destructive_timeout=self.destructive_timeout,
                    non_destructive_timeout=self.non_destructive_timeout,
                ),
                workers=self._workers_for(plan),
                max_retries=self.max_retries,
                retry_backoff=self.retry_backoff,
                stop_on_any_failure=self.stop_on_any_failure,
                run_id=run_id,
                sleep=self.sleep,
            )
            with self._lock:
                self._executor = executor
                if self._cancel_requested:
                    executor.cancel()
            try:
                succeeded = executor.execute(plan, report)
            finally:
                with self._lock:
                    self._executor = None

            report.cancelled = executor.cancelled
            final = RunState.COMPLETED if succeeded else RunState.HALTED
            self._finish(report, final, started)
            if final is RunState.HALTED:
                failures = report.first_failures()
                run_log.error(
                    "Run halted; first failure per disk: {}",
                    ", ".join(f"{disk}={r.step_id}" for disk, r in failures.items())
                    or "none (cancelled)",
                )
            return report

    def _workers_for(self, plan: Plan) -> int:
        if self.workers is not None:
            return self.workers
        return default_workers(plan, self.max_workers)

    def _transition(self, report: RunReport, new_state: RunState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal run state transition {self.state.value} -> {new_state.value}")
        log.debug("Run {}: {} -> {}", report.run_id, self.state.value, new_state.value)
        self.state = new_state
        report.state = new_state

    def _finish(self, report: RunReport, state: RunState, started: float) -> None:
        self._transition(report, state)
        report.elapsed_seconds = time.monotonic() - started
