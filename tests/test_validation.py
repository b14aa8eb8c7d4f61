"""Tests for live-system preflight checks."""

from unittest.mock import patch

import pytest

from disk_provisioner.domain.models import Disk
from disk_provisioner.storage.exceptions import DeviceBusyError, DeviceNotFoundError, ErrorKind
from disk_provisioner.storage.validation import (
    _belongs_to,
    active_mounts,
    active_swaps,
    validate_device_exists,
    validate_device_unused,
    validate_layout_devices,
)


MOUNTS = """\
/dev/nvme0n1p2 / btrfs rw,relatime 0 0
/dev/sdc1 /srv/backup ext4 rw 0 0
proc /proc proc rw 0 0
"""


class TestProcParsing:
    """Tests for /proc/mounts and /proc/swaps parsing."""

    def test_active_mounts(self, proc_files):
        mounts_file, _ = proc_files(mounts=MOUNTS)

        assert active_mounts(mounts_file) == [
            ("/dev/nvme0n1p2", "/"),
            ("/dev/sdc1", "/srv/backup"),
            ("proc", "/proc"),
        ]

    def test_active_swaps_skips_header(self, proc_files):
        _, swaps_file = proc_files(swaps="/dev/sdb2 partition 8388604 0 -2\n")

        assert active_swaps(swaps_file) == ["/dev/sdb2"]

    def test_missing_proc_file(self, tmp_path):
        assert active_mounts(tmp_path / "absent") == []


class TestBelongsTo:
    """Tests for matching partition nodes to their disk."""

    def test_sd_partitions(self):
        disk = Disk(id="sda", device="/dev/sda")

        assert _belongs_to("/dev/sda", disk)
        assert _belongs_to("/dev/sda1", disk)
        assert not _belongs_to("/dev/sdaa1", disk)
        assert not _belongs_to("/dev/sdb1", disk)

    def test_nvme_partitions(self):
        disk = Disk(id="nvme0", device="/dev/nvme0n1")

        assert _belongs_to("/dev/nvme0n1p2", disk)
        assert not _belongs_to("/dev/nvme0n12", disk)


class TestPreflight:
    """Tests for the preflight validators."""

    def test_device_not_found(self):
        with patch("disk_provisioner.storage.validation.os.path.exists", return_value=False):
            with pytest.raises(DeviceNotFoundError) as exc_info:
                validate_device_exists(Disk(id="sdz", device="/dev/sdz"))

        assert exc_info.value.error_kind is ErrorKind.DEVICE_NOT_FOUND

    def test_mounted_partition_is_busy(self, proc_files):
        mounts_file, swaps_file = proc_files(mounts=MOUNTS)

        with pytest.raises(DeviceBusyError, match="/srv/backup"):
            validate_device_unused(Disk(id="sdc", device="/dev/sdc"), mounts_file, swaps_file)

    def test_active_swap_is_busy(self, proc_files):
        mounts_file, swaps_file = proc_files(swaps="/dev/sdb2 partition 8388604 0 -2\n")

        with pytest.raises(DeviceBusyError, match="swap"):
            validate_device_unused(Disk(id="sdb", device="/dev/sdb"), mounts_file, swaps_file)

    def test_unused_disk_passes(self, proc_files):
        mounts_file, swaps_file = proc_files(mounts=MOUNTS)

        validate_device_unused(Disk(id="sdd", device="/dev/sdd"), mounts_file, swaps_file)

    def test_layout_preflight(self, two_disk_layout, proc_files, mocker):
        mounts_file, swaps_file = proc_files(mounts="/dev/sdb1 /srv/beta ext4 rw 0 0\n")
        mocker.patch("disk_provisioner.storage.validation.os.path.exists", return_value=True)

        with pytest.raises(DeviceBusyError) as exc_info:
            validate_layout_devices(two_disk_layout, mounts_file, swaps_file)

        assert exc_info.value.device == "/dev/sdb"
        assert exc_info.value.mountpoints == ["/srv/beta"]
