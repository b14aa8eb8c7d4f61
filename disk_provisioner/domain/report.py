"""Per-step outcomes and the run report that aggregates them."""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

from disk_provisioner.storage.exceptions import ErrorKind

from .steps import StepKind


class StepOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    HALTED = "halted"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.HALTED)


@dataclass(frozen=True)
class ExecutionResult:
    step_id: str
    kind: StepKind
    outcome: StepOutcome
    disks: tuple[str, ...] = ()
    error_kind: ErrorKind | None = None
    detail: str = ""
    retries: int = 0
    duration_seconds: float = 0.0
    commands: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.outcome is StepOutcome.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.outcome is StepOutcome.FAILED

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["outcome"] = self.outcome.value
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        data["disks"] = list(self.disks)
        data["commands"] = list(self.commands)
        data["duration_seconds"] = round(self.duration_seconds, 3)
        return data


@dataclass
class RunReport:
    """Accumulates step results for one run.

    Worker threads call ``record()``; every other accessor takes the same
    lock, so the report can be read while a run is in progress.
    """

    run_id: str
    layout_name: str = "layout"
    state: RunState = RunState.IDLE
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    elapsed_seconds: float = 0.0
    error: str | None = None
    error_kind: ErrorKind | None = None
    cancelled: bool = False
    _results: list[ExecutionResult] = field(default_factory=list, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, result: ExecutionResult) -> None:
        with self._lock:
            if any(r.step_id == result.step_id for r in self._results):
                raise ValueError(f"step {result.step_id} already recorded")
            self._results.append(result)

    @property
    def results(self) -> list[ExecutionResult]:
        with self._lock:
            return list(self._results)

    def result_for(self, step_id: str) -> ExecutionResult | None:
        with self._lock:
            for result in self._results:
                if result.step_id == step_id:
                    return result
        return None

    @property
    def success(self) -> bool:
        return self.state is RunState.COMPLETED

    def counts(self) -> dict[str, int]:
        counts = {outcome.value: 0 for outcome in StepOutcome}
        for result in self.results:
            counts[result.outcome.value] += 1
        return counts

    def first_failures(self) -> dict[str, ExecutionResult]:
        """First failing step for each affected disk chain."""
        failures: dict[str, ExecutionResult] = {}
        for result in self.results:
            if not result.failed:
                continue
            for disk in result.disks:
                failures.setdefault(disk, result)
        return failures

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "layout": self.layout_name,
            "state": self.state.value,
            "success": self.success,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat(),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "counts": self.counts(),
            "first_failures": {
                disk: result.step_id for disk, result in self.first_failures().items()
            },
            "results": [result.to_dict() for result in self.results],
        }

    def format_table(self) -> str:
        rows = [("STEP", "OUTCOME", "RETRIES", "TIME", "DETAIL")]
        for result in self.results:
            rows.append(
                (
                    result.step_id,
                    result.outcome.value.upper(),
                    str(result.retries),
                    f"{result.duration_seconds:.1f}s",
                    _first_line(result.detail),
                )
            )
        widths = [max(len(row[i]) for row in rows) for i in range(4)]
        lines = [
            "  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row[:4])) + "  " + row[4]
            for row in rows
        ]
        lines = [line.rstrip() for line in lines]

        lines.append("")
        lines.append(
            f"Run {self.run_id}: {self.state.value.upper()} in {self.elapsed_seconds:.1f}s"
        )
        if self.error:
            lines.append(f"Error: {self.error}")
        for disk, result in self.first_failures().items():
            lines.append(f"First failure on {disk}: {result.step_id}")
        return "\n".join(lines)


def _first_line(text: str) -> str:
    text = (text or "").strip()
    return text.splitlines()[0] if text else ""
