"""Declarative layout model: disks, partitions, filesystems and mounts.

A ``LayoutSpec`` is built once per run (usually by
``disk_provisioner.config.layout.load_layout``) and never mutated. Entities
reference each other by name rather than by object so the layout can be
validated for dangling references before anything touches a disk.
"""

from __future__ import annotations

import math
import posixpath
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum

from disk_provisioner.storage.exceptions import InvalidLayout, UnsupportedOperation


# ==============================================================================
# Offsets
# ==============================================================================

# parted unit suffixes, in bytes. Sectors assume 512-byte logical sectors.
UNIT_BYTES: dict[str, int] = {
    "s": 512,
    "B": 1,
    "kB": 1000,
    "KB": 1000,
    "MB": 1000**2,
    "GB": 1000**3,
    "TB": 1000**4,
    "KiB": 1024,
    "MiB": 1024**2,
    "GiB": 1024**3,
    "TiB": 1024**4,
}

_OFFSET_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z%]*)\s*$")


@dataclass(frozen=True)
class Offset:
    """A parted position: an absolute size or a percentage of the disk."""

    text: str
    value: float
    unit: str

    @property
    def is_percent(self) -> bool:
        return self.unit == "%"

    def to_bytes(self, disk_size: int | None) -> float | None:
        """Resolve to bytes, or None when it depends on an unknown disk size.

        ``0%`` and ``100%`` always resolve (to the start and the end of the
        disk respectively, the end being represented as infinity).
        """
        if not self.is_percent:
            return self.value * UNIT_BYTES[self.unit]
        if disk_size is not None:
            return disk_size * self.value / 100
        if self.value == 0:
            return 0.0
        if self.value == 100:
            return math.inf
        return None


def parse_offset(text: str | int) -> Offset:
    """Parse ``"512MiB"``, ``"100GB"``, ``"100%"`` or a bare byte count."""
    raw = str(text)
    match = _OFFSET_RE.match(raw)
    if not match:
        raise InvalidLayout(f"cannot parse offset {raw!r}")
    value = float(match.group(1))
    unit = match.group(2) or "B"
    if unit != "%" and unit not in UNIT_BYTES:
        raise InvalidLayout(f"unknown unit {unit!r} in offset {raw!r}")
    if unit == "%" and value > 100:
        raise InvalidLayout(f"percentage offset {raw!r} exceeds 100%")
    return Offset(text=raw.strip(), value=value, unit=unit)


def end_from_size(start: str, size: str, disk_size: int | None = None) -> str:
    """Convert a ``start`` + ``size`` pair into a parted end offset in bytes."""
    start_offset = parse_offset(start)
    size_offset = parse_offset(size)
    if size_offset.is_percent:
        raise InvalidLayout(f"partition size {size!r} must be absolute")
    start_bytes = start_offset.to_bytes(disk_size)
    if start_bytes is None or math.isinf(start_bytes):
        raise InvalidLayout(
            f"cannot add size {size!r} to start {start!r} without the disk size"
        )
    return f"{int(start_bytes + size_offset.to_bytes(disk_size))}B"


def partition_device_path(disk_device: str, index: int) -> str:
    """Kernel partition node name: nvme/mmcblk/loop devices use a ``p`` separator."""
    if disk_device[-1].isdigit():
        return f"{disk_device}p{index}"
    return f"{disk_device}{index}"


# ==============================================================================
# Disks and partitions
# ==============================================================================


class DiskRole(str, Enum):
    BOOT = "boot"
    SYSTEM = "system"
    DATA = "data"
    RAID_MEMBER = "raid-member"


PARTITION_TABLES = ("gpt", "msdos")


@dataclass(frozen=True)
class Disk:
    """A physical disk the layout takes ownership of."""

    id: str  # stable alias, e.g. "nvme0"
    device: str  # e.g. "/dev/nvme0n1"
    role: DiskRole = DiskRole.DATA
    size_bytes: int | None = None
    wipe: bool = True
    table: str = "gpt"


@dataclass(frozen=True)
class Partition:
    name: str
    disk: str  # Disk.id
    index: int  # 1-based ordinal on the disk
    start: str
    end: str
    fs_hint: str | None = None  # parted fs-type, e.g. "fat32", "linux-swap"


# ==============================================================================
# Filesystems and mounts
# ==============================================================================


class FilesystemKind(str, Enum):
    FAT32 = "fat32"
    BTRFS = "btrfs"
    SWAP = "swap"
    EXT4 = "ext4"

    @property
    def supports_uuid_assignment(self) -> bool:
        # FAT has a 32-bit volume ID, not a UUID.
        return self is not FilesystemKind.FAT32

    @property
    def supports_multiple_devices(self) -> bool:
        return self is FilesystemKind.BTRFS

    @property
    def max_label_length(self) -> int:
        return {
            FilesystemKind.FAT32: 11,
            FilesystemKind.BTRFS: 255,
            FilesystemKind.SWAP: 16,
            FilesystemKind.EXT4: 16,
        }[self]

    @property
    def mount_type(self) -> str | None:
        return {
            FilesystemKind.FAT32: "vfat",
            FilesystemKind.BTRFS: "btrfs",
            FilesystemKind.SWAP: None,
            FilesystemKind.EXT4: "ext4",
        }[self]


# Minimum number of devices for each btrfs profile.
BTRFS_PROFILES: dict[str, int] = {
    "single": 1,
    "dup": 1,
    "raid0": 2,
    "raid1": 2,
    "raid1c3": 3,
    "raid1c4": 4,
    "raid10": 2,
    "raid5": 2,
    "raid6": 3,
}

BTRFS_COMPRESSION = ("zstd", "lzo", "zlib")


@dataclass(frozen=True)
class FilesystemSpec:
    name: str
    kind: FilesystemKind
    partitions: tuple[str, ...]  # Partition.name, one per member device
    label: str | None = None
    uuid: str | None = None
    data_profile: str | None = None
    metadata_profile: str | None = None
    compression: str | None = None

    @property
    def is_raid(self) -> bool:
        return len(self.partitions) > 1 or (
            self.data_profile is not None and self.data_profile.startswith("raid")
        )


@dataclass(frozen=True)
class MountSpec:
    filesystem: str  # FilesystemSpec.name
    mount_point: str | None = None  # None for swap
    options: tuple[str, ...] = ()


# ==============================================================================
# Layout
# ==============================================================================


@dataclass(frozen=True)
class LayoutSpec:
    """The desired end-state of every disk in one provisioning run."""

    disks: tuple[Disk, ...]
    partitions: tuple[Partition, ...] = ()
    filesystems: tuple[FilesystemSpec, ...] = ()
    mounts: tuple[MountSpec, ...] = ()
    name: str = "layout"
    _index: dict = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        # Lookup tables; duplicates are reported by validate().
        index = {
            "disks": {d.id: d for d in reversed(self.disks)},
            "partitions": {p.name: p for p in reversed(self.partitions)},
            "filesystems": {f.name: f for f in reversed(self.filesystems)},
        }
        object.__setattr__(self, "_index", index)

    # -- lookups ---------------------------------------------------------------

    def disk(self, disk_id: str) -> Disk:
        try:
            return self._index["disks"][disk_id]
        except KeyError:
            raise InvalidLayout(f"unknown disk {disk_id!r}") from None

    def partition(self, name: str) -> Partition:
        try:
            return self._index["partitions"][name]
        except KeyError:
            raise InvalidLayout(f"unknown partition {name!r}") from None

    def filesystem(self, name: str) -> FilesystemSpec:
        try:
            return self._index["filesystems"][name]
        except KeyError:
            raise InvalidLayout(f"unknown filesystem {name!r}") from None

    def has_disk(self, disk_id: str) -> bool:
        return disk_id in self._index["disks"]

    def disk_position(self, disk_id: str) -> int:
        for position, disk in enumerate(self.disks):
            if disk.id == disk_id:
                return position
        raise InvalidLayout(f"unknown disk {disk_id!r}")

    def partitions_on(self, disk_id: str) -> list[Partition]:
        return sorted(
            (p for p in self.partitions if p.disk == disk_id), key=lambda p: p.index
        )

    def partition_device(self, partition: Partition | str) -> str:
        if isinstance(partition, str):
            partition = self.partition(partition)
        return partition_device_path(self.disk(partition.disk).device, partition.index)

    def filesystem_devices(self, fs: FilesystemSpec | str) -> list[str]:
        if isinstance(fs, str):
            fs = self.filesystem(fs)
        return [self.partition_device(name) for name in fs.partitions]

    def filesystem_disks(self, fs: FilesystemSpec | str) -> list[str]:
        """Disk ids a filesystem lives on, in disk declaration order."""
        if isinstance(fs, str):
            fs = self.filesystem(fs)
        ids = {self.partition(name).disk for name in fs.partitions}
        return [d.id for d in self.disks if d.id in ids]

    # -- validation ------------------------------------------------------------

    def validate(self) -> None:
        """Check every structural invariant of the layout.

        Raises:
            InvalidLayout: on the first violation found
            UnsupportedOperation: if a UUID is requested for a filesystem
                kind that has no UUID assignment tool
        """
        if not self.disks:
            raise InvalidLayout("layout declares no disks")
        self._validate_disks()
        self._validate_partitions()
        self._validate_filesystems()
        self._validate_mounts()

    def _validate_disks(self) -> None:
        _require_unique("disk id", [d.id for d in self.disks])
        _require_unique("disk device", [d.device for d in self.disks])
        for disk in self.disks:
            if not disk.id:
                raise InvalidLayout("disk with empty id")
            if not disk.device.startswith("/dev/"):
                raise InvalidLayout(
                    f"disk {disk.id}: device {disk.device!r} must be a /dev/ path"
                )
            if disk.table not in PARTITION_TABLES:
                raise InvalidLayout(
                    f"disk {disk.id}: unsupported partition table {disk.table!r}"
                )
            if disk.size_bytes is not None and disk.size_bytes <= 0:
                raise InvalidLayout(f"disk {disk.id}: size must be positive")

    def _validate_partitions(self) -> None:
        _require_unique("partition name", [p.name for p in self.partitions])
        for partition in self.partitions:
            if not self.has_disk(partition.disk):
                raise InvalidLayout(
                    f"partition {partition.name} references undeclared disk {partition.disk!r}"
                )
            if partition.index < 1:
                raise InvalidLayout(f"partition {partition.name}: index must be >= 1")

        for disk in self.disks:
            on_disk = self.partitions_on(disk.id)
            _require_unique(
                f"partition index on disk {disk.id}", [p.index for p in on_disk]
            )
            # parted numbers partitions in creation order on a fresh table.
            if [p.index for p in on_disk] != list(range(1, len(on_disk) + 1)):
                raise InvalidLayout(
                    f"partition indexes on disk {disk.id} must run 1..{len(on_disk)} without gaps"
                )
            if disk.table == "msdos" and len(on_disk) > 4:
                raise InvalidLayout(
                    f"disk {disk.id}: msdos tables hold at most 4 primary partitions"
                )
            previous: tuple[Partition, float] | None = None
            for partition in on_disk:
                start = self._resolve(partition, partition.start, disk)
                end = self._resolve(partition, partition.end, disk)
                if start >= end:
                    raise InvalidLayout(
                        f"partition {partition.name}: start {partition.start} is not before end {partition.end}"
                    )
                if disk.size_bytes is not None and end > disk.size_bytes:
                    raise InvalidLayout(
                        f"partition {partition.name}: end {partition.end} is beyond the end of disk {disk.id}"
                    )
                if previous is not None and start < previous[1]:
                    raise InvalidLayout(
                        f"partitions {previous[0].name} and {partition.name} overlap on disk {disk.id}"
                    )
                previous = (partition, end)

    @staticmethod
    def _resolve(partition: Partition, text: str, disk: Disk) -> float:
        value = parse_offset(text).to_bytes(disk.size_bytes)
        if value is None:
            raise InvalidLayout(
                f"partition {partition.name}: offset {text!r} needs the size of disk {disk.id}"
            )
        return value

    def _validate_filesystems(self) -> None:
        _require_unique("filesystem name", [f.name for f in self.filesystems])
        claimed: dict[str, str] = {}
        for fs in self.filesystems:
            if not fs.partitions:
                raise InvalidLayout(f"filesystem {fs.name} references no partitions")
            for name in fs.partitions:
                if name not in self._index["partitions"]:
                    raise InvalidLayout(
                        f"filesystem {fs.name} references undeclared partition {name!r}"
                    )
                if name in claimed:
                    raise InvalidLayout(
                        f"partition {name} is used by both {claimed[name]} and {fs.name}"
                    )
                claimed[name] = fs.name

            if fs.is_raid:
                self._validate_raid(fs)
            elif len(fs.partitions) != 1:
                raise InvalidLayout(f"filesystem {fs.name} must use exactly one partition")

            if fs.kind is not FilesystemKind.BTRFS and (
                fs.data_profile or fs.metadata_profile or fs.compression
            ):
                raise InvalidLayout(
                    f"filesystem {fs.name}: RAID profiles and compression are btrfs-only"
                )
            for profile in (fs.data_profile, fs.metadata_profile):
                if profile is not None and profile not in BTRFS_PROFILES:
                    raise InvalidLayout(f"filesystem {fs.name}: unknown btrfs profile {profile!r}")
            if fs.compression is not None and fs.compression.split(":", 1)[0] not in BTRFS_COMPRESSION:
                raise InvalidLayout(
                    f"filesystem {fs.name}: unknown compression {fs.compression!r}"
                )

            if fs.label is not None:
                if not fs.label or len(fs.label) > fs.kind.max_label_length:
                    raise InvalidLayout(
                        f"filesystem {fs.name}: label {fs.label!r} must be 1-{fs.kind.max_label_length} characters for {fs.kind.value}"
                    )
            if fs.uuid is not None:
                if not _is_canonical_uuid(fs.uuid):
                    raise InvalidLayout(f"filesystem {fs.name}: {fs.uuid!r} is not a valid UUID")
                if not fs.kind.supports_uuid_assignment:
                    raise UnsupportedOperation("UUID assignment", fs.kind.value, fs.name)

    def _validate_raid(self, fs: FilesystemSpec) -> None:
        if not fs.kind.supports_multiple_devices:
            raise InvalidLayout(
                f"filesystem {fs.name}: {fs.kind.value} cannot span multiple partitions"
            )
        if len(fs.partitions) < 2:
            raise InvalidLayout(f"RAID filesystem {fs.name} needs at least 2 partitions")
        disks = [self.partition(name).disk for name in fs.partitions]
        if len(set(disks)) != len(disks):
            raise InvalidLayout(
                f"RAID filesystem {fs.name} must use partitions on distinct disks"
            )
        for profile in (fs.data_profile, fs.metadata_profile):
            minimum = BTRFS_PROFILES.get(profile or "single", 1)
            if len(fs.partitions) < minimum:
                raise InvalidLayout(
                    f"filesystem {fs.name}: profile {profile} needs at least {minimum} devices"
                )

    def _validate_mounts(self) -> None:
        points = []
        for mount in self.mounts:
            if mount.filesystem not in self._index["filesystems"]:
                raise InvalidLayout(
                    f"mount references undeclared filesystem {mount.filesystem!r}"
                )
            fs = self.filesystem(mount.filesystem)
            if fs.kind is FilesystemKind.SWAP:
                if mount.mount_point is not None:
                    raise InvalidLayout(f"swap filesystem {fs.name} cannot have a mount point")
            else:
                if not mount.mount_point or not posixpath.isabs(mount.mount_point):
                    raise InvalidLayout(
                        f"mount of {fs.name}: mount point must be an absolute path"
                    )
                points.append(posixpath.normpath(mount.mount_point))
            for option in mount.options:
                if not option or "," in option or any(c.isspace() for c in option):
                    raise InvalidLayout(f"mount of {fs.name}: invalid option {option!r}")
        _require_unique("filesystem mount", [m.filesystem for m in self.mounts])
        _require_unique("mount point", points)


def _require_unique(what: str, values) -> None:
    seen = set()
    for value in values:
        if value in seen:
            raise InvalidLayout(f"duplicate {what} {value!r}")
        seen.add(value)


def _is_canonical_uuid(value: str) -> bool:
    try:
        return str(uuid.UUID(value)) == value.lower()
    except ValueError:
        return False
