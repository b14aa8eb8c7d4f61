"""Step implementations: the fixed command sequence behind each step kind.

Operations:
    - wipe: clear RAID/LVM/ZFS/btrfs signatures, wipefs, zero header and footer
    - partition: new partition table, one mkpart per partition, re-read table
    - format: mkfs.fat / mkfs.btrfs / mkswap / mkfs.ext4
    - label: fatlabel / btrfs filesystem label / swaplabel / e2label
    - assign_uuid: btrfstune / swaplabel / tune2fs (fat32 is unsupported)
    - mount: mkdir -p + mount, or swapon for swap

Every command goes through ``CommandRunner``; this module decides *which*
commands to run, never how a tool does its job.
"""

from __future__ import annotations

import threading
from typing import Callable

from disk_provisioner.domain.models import (
    Disk,
    FilesystemKind,
    FilesystemSpec,
    LayoutSpec,
    MountSpec,
)
from disk_provisioner.domain.steps import Step, StepKind
from disk_provisioner.logging import LoggerFactory

from .command_runner import CommandResult, CommandRunner
from .exceptions import InvalidLayout, UnsupportedOperation


log = LoggerFactory.for_executor()

MIB = 1024 * 1024

# blkid TYPE values and the tool that clears each kind of superblock.
SIGNATURE_CLEARERS: dict[str, Callable[[str], list[str]]] = {
    "linux_raid_member": lambda device: ["mdadm", "--zero-superblock", device],
    "LVM2_member": lambda device: ["pvremove", "-ff", "-y", device],
    "zfs_member": lambda device: ["zpool", "labelclear", "-f", device],
    "btrfs": lambda device: ["wipefs", "-a", "-t", "btrfs", device],
}

# blkid exits 2 when it finds no signature at all.
BLKID_NOTHING_FOUND = 2


def mkfs_command(fs: FilesystemSpec, devices: list[str]) -> list[str]:
    if fs.kind is FilesystemKind.FAT32:
        return ["mkfs.fat", "-F", "32", devices[0]]
    if fs.kind is FilesystemKind.EXT4:
        return ["mkfs.ext4", "-F", devices[0]]
    if fs.kind is FilesystemKind.SWAP:
        return ["mkswap", devices[0]]
    command = ["mkfs.btrfs", "-f"]
    metadata_profile = fs.metadata_profile or fs.data_profile
    if fs.data_profile:
        command.extend(["-d", fs.data_profile])
    if metadata_profile:
        command.extend(["-m", metadata_profile])
    command.extend(devices)
    return command


def label_command(fs: FilesystemSpec, device: str) -> list[str]:
    label = fs.label or ""
    if fs.kind is FilesystemKind.FAT32:
        return ["fatlabel", device, label]
    if fs.kind is FilesystemKind.BTRFS:
        return ["btrfs", "filesystem", "label", device, label]
    if fs.kind is FilesystemKind.SWAP:
        return ["swaplabel", "-L", label, device]
    return ["e2label", device, label]


def uuid_command(fs: FilesystemSpec, device: str) -> list[str]:
    """Command that sets ``fs.uuid``; each kind has its own tool.

    Raises:
        UnsupportedOperation: for kinds without a UUID to assign (fat32)
    """
    if not fs.kind.supports_uuid_assignment:
        raise UnsupportedOperation("UUID assignment", fs.kind.value, fs.name)
    uuid = fs.uuid or ""
    if fs.kind is FilesystemKind.BTRFS:
        return ["btrfstune", "-f", "-U", uuid, device]
    if fs.kind is FilesystemKind.SWAP:
        return ["swaplabel", "-U", uuid, device]
    return ["tune2fs", "-U", uuid, device]


def mount_options(fs: FilesystemSpec, mount: MountSpec) -> list[str]:
    options = list(mount.options)
    if fs.compression and not any(
        option.startswith(("compress=", "compress-force=")) for option in options
    ):
        options.append(f"compress={fs.compression}")
    return options


def mount_command(fs: FilesystemSpec, mount: MountSpec, device: str) -> list[str]:
    if fs.kind is FilesystemKind.SWAP:
        return ["swapon", device]
    command = ["mount"]
    if fs.kind.mount_type:
        command.extend(["-t", fs.kind.mount_type])
    options = mount_options(fs, mount)
    if options:
        command.extend(["-o", ",".join(options)])
    command.extend([device, mount.mount_point or ""])
    return command


class StepActions:
    """Runs the commands for one step of a given layout."""

    def __init__(
        self,
        layout: LayoutSpec,
        runner: CommandRunner,
        *,
        destructive_timeout: float = 300.0,
        non_destructive_timeout: float = 60.0,
    ):
        self.layout = layout
        self.runner = runner
        self.destructive_timeout = destructive_timeout
        self.non_destructive_timeout = non_destructive_timeout
        self._handlers = {
            StepKind.WIPE: self.wipe,
            StepKind.PARTITION: self.partition,
            StepKind.FORMAT: self.format,
            StepKind.LABEL: self.label,
            StepKind.ASSIGN_UUID: self.assign_uuid,
            StepKind.MOUNT: self.mount,
        }

    def perform(
        self, step: Step, interrupt: threading.Event | None = None
    ) -> list[CommandResult]:
        """Run every command of ``step`` in order, stopping at the first failure."""
        timeout = (
            self.destructive_timeout if step.destructive else self.non_destructive_timeout
        )
        results: list[CommandResult] = []

        def run(argv, allowed_returncodes=(0,)) -> CommandResult:
            result = self.runner.run(
                argv,
                timeout=timeout,
                allowed_returncodes=allowed_returncodes,
                interrupt=interrupt,
            )
            results.append(result)
            return result

        self._handlers[step.kind](step, run)
        return results

    # -- destructive -----------------------------------------------------------

    def wipe(self, step: Step, run) -> None:
        disk = self.layout.disk(step.target)
        device = disk.device

        probe = run(
            ["blkid", "-p", "-o", "value", "-s", "TYPE", device],
            allowed_returncodes=(0, BLKID_NOTHING_FOUND),
        )
        found = [line.strip() for line in probe.stdout.splitlines() if line.strip()]
        for signature in found:
            clearer = SIGNATURE_CLEARERS.get(signature)
            if clearer is not None:
                log.info("Clearing {} signature on {}", signature, device)
                run(clearer(device))
        run(["wipefs", "-a", device])

        size = self._device_size(disk, run)
        run(["dd", "if=/dev/zero", f"of={device}", "bs=1M", "count=1", "conv=fsync", "status=none"])
        size_mib = size // MIB
        if size_mib > 1:
            run(
                [
                    "dd",
                    "if=/dev/zero",
                    f"of={device}",
                    "bs=1M",
                    f"seek={size_mib - 1}",
                    "count=1",
                    "conv=fsync",
                    "status=none",
                ]
            )

    @staticmethod
    def _device_size(disk: Disk, run) -> int:
        result = run(["blockdev", "--getsize64", disk.device])
        try:
            return int(result.stdout.strip())
        except ValueError:
            raise InvalidLayout(
                f"cannot read size of {disk.device}: {result.stdout.strip()!r}"
            ) from None

    def partition(self, step: Step, run) -> None:
        disk = self.layout.disk(step.target)
        run(["parted", "-s", disk.device, "mklabel", disk.table])
        for partition in self.layout.partitions_on(disk.id):
            command = ["parted", "-s", "-a", "optimal", disk.device, "mkpart"]
            command.append(partition.name if disk.table == "gpt" else "primary")
            if partition.fs_hint:
                command.append(partition.fs_hint)
            command.extend([partition.start, partition.end])
            run(command)
        run(["partprobe", disk.device])
        run(["udevadm", "settle", "--timeout=10"])

    def format(self, step: Step, run) -> None:
        fs = self.layout.filesystem(step.target)
        run(mkfs_command(fs, self.layout.filesystem_devices(fs)))

    # -- non-destructive -------------------------------------------------------

    def label(self, step: Step, run) -> None:
        fs = self.layout.filesystem(step.target)
        run(label_command(fs, self.layout.filesystem_devices(fs)[0]))

    def assign_uuid(self, step: Step, run) -> None:
        fs = self.layout.filesystem(step.target)
        run(uuid_command(fs, self.layout.filesystem_devices(fs)[0]))

    def mount(self, step: Step, run) -> None:
        fs = self.layout.filesystem(step.target)
        mount = self._mount_for(fs)
        device = self.layout.filesystem_devices(fs)[0]
        if fs.kind is not FilesystemKind.SWAP:
            run(["mkdir", "-p", mount.mount_point])
        run(mount_command(fs, mount, device))

    def _mount_for(self, fs: FilesystemSpec) -> MountSpec:
        for mount in self.layout.mounts:
            if mount.filesystem == fs.name:
                return mount
        raise InvalidLayout(f"filesystem {fs.name} has no mount")
