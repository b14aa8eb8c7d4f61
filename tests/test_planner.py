"""Tests for step planning and topological ordering."""

import pytest

from disk_provisioner.config.layout import layout_from_dict
from disk_provisioner.domain.models import LayoutSpec, MountSpec
from disk_provisioner.domain.steps import Step, StepKind
from disk_provisioner.storage.exceptions import PlanningError
from disk_provisioner.storage.planner import StepPlanner, order_steps


def _step(step_id, *depends_on, disk="sda"):
    kind = StepKind(step_id.split(":", 1)[0])
    return Step(
        step_id=step_id,
        kind=kind,
        target=step_id.split(":", 1)[1],
        disks=(disk,),
        depends_on=tuple(depends_on),
    )


class TestStepPlanner:
    """Tests for StepPlanner.plan()."""

    def test_single_disk_chain(self, chain_layout):
        plan = StepPlanner().plan(chain_layout)

        assert plan.step_ids == [
            "wipe:sdb",
            "partition:sdb",
            "format:data",
            "label:data",
            "assign_uuid:data",
            "mount:data",
        ]

    def test_every_step_follows_its_dependencies(self, workstation_layout):
        plan = StepPlanner().plan(workstation_layout)
        position = {step_id: i for i, step_id in enumerate(plan.step_ids)}

        for step in plan:
            for dependency in step.depends_on:
                assert position[dependency] < position[step.step_id]

    def test_boot_layout_order(self, boot_layout):
        plan = StepPlanner().plan(boot_layout)

        assert plan.step_ids == [
            "wipe:nvme0",
            "partition:nvme0",
            "format:efi",
            "format:root",
            "label:efi",
            "label:root",
            "assign_uuid:root",
            "mount:root",
            "mount:efi",
        ]

    def test_nested_mount_waits_for_parent(self, boot_layout):
        plan = StepPlanner().plan(boot_layout)

        assert plan.predecessors("mount:efi") == ("label:efi", "mount:root")

    def test_raid_format_waits_for_every_member(self, raid_layout):
        plan = StepPlanner().plan(raid_layout)
        format_step = plan.step("format:pool")

        assert format_step.depends_on == ("partition:sda", "partition:sdb", "partition:sdc")
        assert format_step.disks == ("sda", "sdb", "sdc")
        position = plan.step_ids.index("format:pool")
        for disk in ("sda", "sdb", "sdc"):
            assert plan.step_ids.index(f"partition:{disk}") < position

    def test_raid_members_independent_of_declaration_order(self, raid_layout_data):
        raid_layout_data["disks"] = [
            {
                "id": name,
                "device": f"/dev/{name}",
                "role": "raid-member",
                "partitions": [{"name": f"{name}1", "start": "1MiB", "end": "100%"}],
            }
            for name in ("sdd", "sdb", "sda", "sdc")
        ]
        raid_layout_data["filesystems"][0]["partitions"] = ["sdc1", "sda1", "sdd1", "sdb1"]

        plan = StepPlanner().plan(layout_from_dict(raid_layout_data))

        partitions = {f"partition:{disk}" for disk in ("sda", "sdb", "sdc", "sdd")}
        assert set(plan.predecessors("format:pool")) == partitions
        position = plan.step_ids.index("format:pool")
        for step_id in partitions:
            assert plan.step_ids.index(step_id) < position

    def test_plan_is_deterministic(self, workstation_layout_data):
        first = StepPlanner().plan(layout_from_dict(workstation_layout_data))
        second = StepPlanner().plan(layout_from_dict(workstation_layout_data))

        assert first.step_ids == second.step_ids
        assert first.describe() == second.describe()

    def test_ties_follow_disk_declaration_order(self, two_disk_layout):
        plan = StepPlanner().plan(two_disk_layout)

        assert plan.step_ids[:2] == ["wipe:sda", "partition:sda"]
        assert plan.step_ids.index("wipe:sdb") > plan.step_ids.index("mount:alpha")

    def test_no_wipe_step_when_disabled(self, chain_layout_data):
        chain_layout_data["disks"][0]["wipe"] = False
        plan = StepPlanner().plan(layout_from_dict(chain_layout_data))

        assert "wipe:sdb" not in plan.step_ids
        assert plan.step("partition:sdb").depends_on == ()

    def test_optional_steps_omitted(self, chain_layout_data):
        fs = chain_layout_data["filesystems"][0]
        del fs["label"]
        del fs["uuid"]
        plan = StepPlanner().plan(layout_from_dict(chain_layout_data))

        assert plan.step_ids == ["wipe:sdb", "partition:sdb", "format:data", "mount:data"]
        assert plan.step("mount:data").depends_on == ("format:data",)

    def test_swap_mount_description(self, workstation_layout):
        plan = StepPlanner().plan(workstation_layout)

        assert plan.step("mount:swap").description == "mount swap on swap"

    def test_mount_of_unknown_filesystem_is_planning_error(self, chain_layout):
        layout = LayoutSpec(
            disks=chain_layout.disks,
            partitions=chain_layout.partitions,
            filesystems=chain_layout.filesystems,
            mounts=chain_layout.mounts + (MountSpec(filesystem="ghost", mount_point="/x"),),
        )

        with pytest.raises(PlanningError) as exc_info:
            StepPlanner().plan(layout)

        assert exc_info.value.reason == PlanningError.MISSING_DEPENDENCY

    def test_plan_helpers(self, chain_layout):
        plan = StepPlanner().plan(chain_layout)

        assert len(plan) == 6
        assert plan.disks == ["sdb"]
        assert plan.dependents("format:data") == {"label:data", "assign_uuid:data", "mount:data"}
        assert plan.describe()[0].startswith("  1. wipe:sdb")


class TestOrderSteps:
    """Tests for the Kahn ordering helper."""

    def test_orders_by_dependencies(self):
        steps = [
            _step("mount:b", "format:b"),
            _step("format:b", "partition:a"),
            _step("partition:a"),
        ]

        assert [s.step_id for s in order_steps(steps)] == [
            "partition:a",
            "format:b",
            "mount:b",
        ]

    def test_tie_break_keys(self):
        steps = [_step("wipe:x", disk="x"), _step("wipe:y", disk="y")]
        keys = {"wipe:x": (1,), "wipe:y": (0,)}

        assert [s.step_id for s in order_steps(steps, keys)] == ["wipe:y", "wipe:x"]

    def test_cycle_detected(self):
        steps = [
            _step("format:a", "label:a"),
            _step("label:a", "format:a"),
            _step("wipe:sda"),
        ]

        with pytest.raises(PlanningError) as exc_info:
            order_steps(steps)

        assert exc_info.value.reason == PlanningError.CYCLE
        assert "format:a" in str(exc_info.value)

    def test_missing_dependency(self):
        with pytest.raises(PlanningError) as exc_info:
            order_steps([_step("format:a", "partition:sda")])

        assert exc_info.value.reason == PlanningError.MISSING_DEPENDENCY

    def test_duplicate_step_id(self):
        with pytest.raises(PlanningError, match="duplicate step"):
            order_steps([_step("wipe:sda"), _step("wipe:sda")])
