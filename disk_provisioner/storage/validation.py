"""Safety checks run against the live system before any disk is touched.

These checks are separate from ``LayoutSpec.validate()``, which looks only
at the layout itself. Here every declared disk must exist as a device node,
and neither the disk nor any partition on it may be mounted or in use as
swap. All validation functions raise rather than return booleans.

Example:
    from disk_provisioner.storage.validation import validate_layout_devices

    try:
        validate_layout_devices(layout)
    except DeviceBusyError as error:
        # refuse to provision
        ...
"""

from __future__ import annotations

import os
from pathlib import Path

from disk_provisioner.domain.models import Disk, LayoutSpec
from disk_provisioner.logging import LoggerFactory

from .exceptions import DeviceBusyError, DeviceNotFoundError


log = LoggerFactory.for_system()

PROC_MOUNTS = Path("/proc/mounts")
PROC_SWAPS = Path("/proc/swaps")


def _read_lines(path: Path) -> list[str]:
    try:
        return path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return []


def active_mounts(mounts_file: Path = PROC_MOUNTS) -> list[tuple[str, str]]:
    """(device, mountpoint) pairs currently mounted."""
    pairs = []
    for line in _read_lines(mounts_file):
        parts = line.split()
        if len(parts) > 1:
            pairs.append((parts[0], parts[1]))
    return pairs


def active_swaps(swaps_file: Path = PROC_SWAPS) -> list[str]:
    devices = []
    for line in _read_lines(swaps_file)[1:]:
        parts = line.split()
        if parts:
            devices.append(parts[0])
    return devices


def _belongs_to(device: str, disk: Disk) -> bool:
    """True for the disk node itself or one of its partition nodes."""
    if device == disk.device:
        return True
    if not device.startswith(disk.device):
        return False
    suffix = device[len(disk.device):]
    if disk.device[-1].isdigit():
        return suffix.startswith("p") and suffix[1:].isdigit()
    return suffix.isdigit()


def validate_device_exists(disk: Disk) -> None:
    if not os.path.exists(disk.device):
        raise DeviceNotFoundError(disk.device)


def validate_device_unused(
    disk: Disk,
    mounts_file: Path = PROC_MOUNTS,
    swaps_file: Path = PROC_SWAPS,
) -> None:
    """Raise DeviceBusyError if the disk or any of its partitions is in use."""
    busy = [point for device, point in active_mounts(mounts_file) if _belongs_to(device, disk)]
    busy.extend(
        f"swap ({device})" for device in active_swaps(swaps_file) if _belongs_to(device, disk)
    )
    if busy:
        raise DeviceBusyError(disk.device, busy)


def validate_layout_devices(
    layout: LayoutSpec,
    mounts_file: Path = PROC_MOUNTS,
    swaps_file: Path = PROC_SWAPS,
) -> None:
    """Check every disk of ``layout`` is present and not in use.

    Raises:
        DeviceNotFoundError: A disk node does not exist
        DeviceBusyError: A disk or one of its partitions is mounted or active swap
    """
    for disk in layout.disks:
        validate_device_exists(disk)
        validate_device_unused(disk, mounts_file, swaps_file)
        log.debug("Preflight passed for {} ({})", disk.id, disk.device)
