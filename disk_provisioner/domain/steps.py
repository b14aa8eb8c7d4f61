"""Units of work derived from a layout."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class StepKind(str, Enum):
    WIPE = "wipe"
    PARTITION = "partition"
    FORMAT = "format"
    LABEL = "label"
    ASSIGN_UUID = "assign_uuid"
    MOUNT = "mount"

    @property
    def priority(self) -> int:
        """Tie-break order when several steps are ready at once."""
        return _PRIORITY[self]

    @property
    def destructive(self) -> bool:
        """Destructive steps are never retried and never interrupted."""
        return self in (StepKind.WIPE, StepKind.PARTITION, StepKind.FORMAT)


_PRIORITY = {kind: position for position, kind in enumerate(StepKind)}


@dataclass(frozen=True)
class Step:
    """One node of the plan's dependency graph.

    ``target`` names the layout entity the step acts on: a disk id for
    wipe/partition, a filesystem name for format/label/assign_uuid and
    mount. ``disks`` lists every disk the step touches; the executor never
    runs two steps sharing a disk at the same time.
    """

    step_id: str
    kind: StepKind
    target: str
    disks: tuple[str, ...]
    depends_on: tuple[str, ...] = ()
    description: str = ""

    @property
    def destructive(self) -> bool:
        return self.kind.destructive

    @staticmethod
    def make_id(kind: StepKind, target: str) -> str:
        return f"{kind.value}:{target}"
