"""Expand a layout into a dependency-ordered list of steps.

Per entity the chain is always::

    wipe(disk) -> partition(disk) -> format(fs) -> label(fs) -> assign_uuid(fs) -> mount(fs)

A filesystem spanning several disks (btrfs RAID) formats only after the
partition step of *every* member disk. A mount nested under another declared
mount point waits for the parent mount.

Ordering uses Kahn's algorithm with a stable tie-break: first disk
declaration position, then step-kind priority, then declaration sequence.
The same layout therefore always yields the same plan.
"""

from __future__ import annotations

import heapq
import posixpath
from dataclasses import dataclass, field

from disk_provisioner.domain.models import FilesystemKind, LayoutSpec
from disk_provisioner.domain.steps import Step, StepKind
from disk_provisioner.logging import LoggerFactory

from .exceptions import InvalidLayout, PlanningError


log = LoggerFactory.for_planner()


@dataclass(frozen=True)
class Plan:
    """Topologically ordered steps plus the dependency edges between them."""

    steps: tuple[Step, ...]
    _by_id: dict = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_id", {step.step_id: step for step in self.steps})

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    def step(self, step_id: str) -> Step:
        return self._by_id[step_id]

    @property
    def step_ids(self) -> list[str]:
        return [step.step_id for step in self.steps]

    def predecessors(self, step_id: str) -> tuple[str, ...]:
        return self._by_id[step_id].depends_on

    def dependents(self, step_id: str) -> set[str]:
        """Every step that transitively depends on ``step_id``."""
        found: set[str] = set()
        frontier = [step_id]
        while frontier:
            current = frontier.pop()
            for step in self.steps:
                if current in step.depends_on and step.step_id not in found:
                    found.add(step.step_id)
                    frontier.append(step.step_id)
        return found

    @property
    def disks(self) -> list[str]:
        seen: list[str] = []
        for step in self.steps:
            for disk in step.disks:
                if disk not in seen:
                    seen.append(disk)
        return seen

    def describe(self) -> list[str]:
        lines = []
        for position, step in enumerate(self.steps, start=1):
            after = ", ".join(step.depends_on) if step.depends_on else "-"
            lines.append(
                f"{position:3d}. {step.step_id:<28} {step.description}  [after: {after}]"
            )
        return lines


class StepPlanner:
    """Builds a ``Plan`` from a validated ``LayoutSpec``."""

    def plan(self, layout: LayoutSpec) -> Plan:
        steps = self.build_steps(layout)
        keys = self._sort_keys(layout, steps)
        plan = Plan(tuple(order_steps(steps, keys)))
        log.info("Planned {} steps across {} disks", len(plan), len(layout.disks))
        for line in plan.describe():
            log.debug(line)
        return plan

    def build_steps(self, layout: LayoutSpec) -> list[Step]:
        steps: list[Step] = []
        partition_step: dict[str, str] = {}

        try:
            for disk in layout.disks:
                wipe_id = None
                if disk.wipe:
                    wipe_id = Step.make_id(StepKind.WIPE, disk.id)
                    steps.append(
                        Step(
                            step_id=wipe_id,
                            kind=StepKind.WIPE,
                            target=disk.id,
                            disks=(disk.id,),
                            description=f"wipe signatures, header and footer of {disk.device}",
                        )
                    )
                if layout.partitions_on(disk.id):
                    step_id = Step.make_id(StepKind.PARTITION, disk.id)
                    partition_step[disk.id] = step_id
                    names = ", ".join(p.name for p in layout.partitions_on(disk.id))
                    steps.append(
                        Step(
                            step_id=step_id,
                            kind=StepKind.PARTITION,
                            target=disk.id,
                            disks=(disk.id,),
                            depends_on=(wipe_id,) if wipe_id else (),
                            description=f"{disk.table} table on {disk.device}: {names}",
                        )
                    )

            fs_final_step: dict[str, str] = {}
            for fs in layout.filesystems:
                disks = tuple(layout.filesystem_disks(fs))
                missing = [d for d in disks if d not in partition_step]
                if missing:
                    raise PlanningError(
                        PlanningError.MISSING_DEPENDENCY,
                        f"filesystem {fs.name} needs partition steps for {', '.join(missing)}",
                    )
                format_id = Step.make_id(StepKind.FORMAT, fs.name)
                devices = " ".join(layout.filesystem_devices(fs))
                steps.append(
                    Step(
                        step_id=format_id,
                        kind=StepKind.FORMAT,
                        target=fs.name,
                        disks=disks,
                        depends_on=tuple(partition_step[d] for d in disks),
                        description=f"mkfs {fs.kind.value} on {devices}",
                    )
                )
                last = format_id
                if fs.label:
                    label_id = Step.make_id(StepKind.LABEL, fs.name)
                    steps.append(
                        Step(
                            step_id=label_id,
                            kind=StepKind.LABEL,
                            target=fs.name,
                            disks=disks,
                            depends_on=(last,),
                            description=f"label {fs.name} {fs.label!r}",
                        )
                    )
                    last = label_id
                if fs.uuid:
                    uuid_id = Step.make_id(StepKind.ASSIGN_UUID, fs.name)
                    steps.append(
                        Step(
                            step_id=uuid_id,
                            kind=StepKind.ASSIGN_UUID,
                            target=fs.name,
                            disks=disks,
                            depends_on=(last,),
                            description=f"set UUID of {fs.name} to {fs.uuid}",
                        )
                    )
                    last = uuid_id
                fs_final_step[fs.name] = last

            mount_points = {
                posixpath.normpath(m.mount_point): Step.make_id(StepKind.MOUNT, m.filesystem)
                for m in layout.mounts
                if m.mount_point
            }
            for mount in layout.mounts:
                fs = layout.filesystem(mount.filesystem)
                if fs.name not in fs_final_step:
                    raise PlanningError(
                        PlanningError.MISSING_DEPENDENCY,
                        f"mount of undeclared filesystem {fs.name}",
                    )
                depends = [fs_final_step[fs.name]]
                parent = _parent_mount(mount.mount_point, mount_points)
                if parent is not None:
                    depends.append(parent)
                target = mount.mount_point if fs.kind is not FilesystemKind.SWAP else "swap"
                steps.append(
                    Step(
                        step_id=Step.make_id(StepKind.MOUNT, fs.name),
                        kind=StepKind.MOUNT,
                        target=fs.name,
                        disks=tuple(layout.filesystem_disks(fs)),
                        depends_on=tuple(depends),
                        description=f"mount {fs.name} on {target}",
                    )
                )
        except InvalidLayout as error:
            raise PlanningError(PlanningError.MISSING_DEPENDENCY, error.reason) from error

        return steps

    @staticmethod
    def _sort_keys(layout: LayoutSpec, steps: list[Step]) -> dict[str, tuple]:
        keys = {}
        for sequence, step in enumerate(steps):
            if not step.disks:
                raise PlanningError(
                    PlanningError.MISSING_DEPENDENCY, f"step {step.step_id} touches no disk"
                )
            try:
                first_disk = min(layout.disk_position(d) for d in step.disks)
            except InvalidLayout as error:
                raise PlanningError(PlanningError.MISSING_DEPENDENCY, error.reason) from error
            keys[step.step_id] = (first_disk, step.kind.priority, sequence)
        return keys


def _parent_mount(mount_point: str | None, mount_points: dict[str, str]) -> str | None:
    """Step id of the closest declared mount point above ``mount_point``."""
    if not mount_point:
        return None
    current = posixpath.normpath(mount_point)
    while current != "/":
        current = posixpath.dirname(current)
        if current in mount_points:
            return mount_points[current]
    return None


def order_steps(steps: list[Step], keys: dict[str, tuple] | None = None) -> list[Step]:
    """Topologically sort ``steps``; ties are broken by ``keys`` (smallest first).

    Raises:
        PlanningError: ``missing-dependency`` when a step depends on an unknown
            step id, ``cycle`` when the graph is not a DAG
    """
    by_id: dict[str, Step] = {}
    for step in steps:
        if step.step_id in by_id:
            raise PlanningError(PlanningError.CYCLE, f"duplicate step {step.step_id}")
        by_id[step.step_id] = step
    if keys is None:
        keys = {step.step_id: (position,) for position, step in enumerate(steps)}

    indegree = {step_id: 0 for step_id in by_id}
    dependents: dict[str, list[str]] = {step_id: [] for step_id in by_id}
    for step in steps:
        for dependency in step.depends_on:
            if dependency not in by_id:
                raise PlanningError(
                    PlanningError.MISSING_DEPENDENCY,
                    f"{step.step_id} depends on unknown step {dependency}",
                )
            indegree[step.step_id] += 1
            dependents[dependency].append(step.step_id)

    ready = [(keys[step_id], step_id) for step_id, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    ordered: list[Step] = []
    while ready:
        _, step_id = heapq.heappop(ready)
        ordered.append(by_id[step_id])
        for dependent in dependents[step_id]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, (keys[dependent], dependent))

    if len(ordered) != len(steps):
        stuck = sorted(step_id for step_id, degree in indegree.items() if degree > 0)
        raise PlanningError(PlanningError.CYCLE, f"steps in a cycle: {', '.join(stuck)}")
    return ordered
