"""Domain model for disk provisioning.

The layout (what the disks should look like), the steps derived from it, and
the report of what a run actually did.
"""

from __future__ import annotations

from .models import (
    Disk,
    DiskRole,
    FilesystemKind,
    FilesystemSpec,
    LayoutSpec,
    MountSpec,
    Partition,
)
from .report import ExecutionResult, RunReport, RunState, StepOutcome
from .steps import Step, StepKind


__all__ = [
    "Disk",
    "DiskRole",
    "ExecutionResult",
    "FilesystemKind",
    "FilesystemSpec",
    "LayoutSpec",
    "MountSpec",
    "Partition",
    "RunReport",
    "RunState",
    "Step",
    "StepKind",
    "StepOutcome",
]
