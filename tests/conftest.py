"""
Pytest configuration and shared fixtures for disk-provisioner tests.

This module provides layouts, fake command runners and fake step actions so
that no test ever touches a real block device.
"""

import json
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
from loguru import logger

from disk_provisioner.config import settings
from disk_provisioner.config.layout import layout_from_dict
from disk_provisioner.domain.models import LayoutSpec
from disk_provisioner.storage.command_runner import CommandResult
from disk_provisioner.storage.exceptions import CommandNotFound


REPO_ROOT = Path(__file__).resolve().parent.parent
WORKSTATION_LAYOUT = REPO_ROOT / "layouts" / "workstation.json"

DATA_UUID = "0b7c5f1e-3d2a-4c8e-9f10-2a3b4c5d6e7f"
ROOT_UUID = "66696c65-7379-7374-656d-000000000001"


# ==============================================================================
# Global isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def default_settings(tmp_path):
    """Run every test against built-in defaults, never the user's settings file."""
    settings.load_settings(tmp_path / "no-settings.json")
    yield
    settings.load_settings(tmp_path / "no-settings.json")


@pytest.fixture(autouse=True)
def reset_logger():
    """Drop sinks added by setup_logging so file handles and queues are closed."""
    yield
    logger.remove()


# ==============================================================================
# Layout Fixtures
# ==============================================================================


@pytest.fixture
def chain_layout_data() -> Dict[str, Any]:
    """
    One disk, one filesystem with every optional step.

    Plan: wipe -> partition -> format -> label -> assign_uuid -> mount
    """
    return {
        "name": "chain",
        "disks": [
            {
                "id": "sdb",
                "device": "/dev/sdb",
                "partitions": [{"name": "data", "start": "1MiB", "end": "100%"}],
            }
        ],
        "filesystems": [
            {
                "name": "data",
                "kind": "btrfs",
                "partitions": ["data"],
                "label": "DATA",
                "uuid": DATA_UUID,
            }
        ],
        "mounts": [{"filesystem": "data", "mount_point": "/srv/data"}],
    }


@pytest.fixture
def chain_layout(chain_layout_data) -> LayoutSpec:
    return layout_from_dict(chain_layout_data)


@pytest.fixture
def boot_layout_data() -> Dict[str, Any]:
    """
    Single NVMe boot disk: EFI + btrfs root, EFI mounted below root.
    """
    return {
        "name": "boot",
        "disks": [
            {
                "id": "nvme0",
                "device": "/dev/nvme0n1",
                "role": "boot",
                "partitions": [
                    {"name": "efi", "start": "1MiB", "end": "512MiB", "fs_hint": "fat32"},
                    {"name": "root", "start": "512MiB", "end": "100%", "fs_hint": "btrfs"},
                ],
            }
        ],
        "filesystems": [
            {"name": "efi", "kind": "fat32", "partitions": ["efi"], "label": "EFI"},
            {
                "name": "root",
                "kind": "btrfs",
                "partitions": ["root"],
                "label": "ROOT",
                "uuid": ROOT_UUID,
                "compression": "zstd",
            },
        ],
        "mounts": [
            {"filesystem": "root", "mount_point": "/mnt"},
            {"filesystem": "efi", "mount_point": "/mnt/boot/efi"},
        ],
    }


@pytest.fixture
def boot_layout(boot_layout_data) -> LayoutSpec:
    return layout_from_dict(boot_layout_data)


@pytest.fixture
def two_disk_layout() -> LayoutSpec:
    """Two independent disks, one ext4 filesystem each."""
    return layout_from_dict(
        {
            "name": "two-disks",
            "disks": [
                {
                    "id": "sda",
                    "device": "/dev/sda",
                    "partitions": [{"name": "a1", "start": "1MiB", "end": "100%"}],
                },
                {
                    "id": "sdb",
                    "device": "/dev/sdb",
                    "partitions": [{"name": "b1", "start": "1MiB", "end": "100%"}],
                },
            ],
            "filesystems": [
                {"name": "alpha", "kind": "ext4", "partitions": ["a1"], "label": "ALPHA"},
                {"name": "beta", "kind": "ext4", "partitions": ["b1"], "label": "BETA"},
            ],
            "mounts": [
                {"filesystem": "alpha", "mount_point": "/srv/alpha"},
                {"filesystem": "beta", "mount_point": "/srv/beta"},
            ],
        }
    )


@pytest.fixture
def raid_layout_data() -> Dict[str, Any]:
    """Three disks joined into one btrfs raid1 filesystem."""
    disks = [
        {
            "id": name,
            "device": f"/dev/{name}",
            "role": "raid-member",
            "partitions": [{"name": f"{name}1", "start": "1MiB", "end": "100%"}],
        }
        for name in ("sda", "sdb", "sdc")
    ]
    return {
        "name": "raid",
        "disks": disks,
        "filesystems": [
            {
                "name": "pool",
                "kind": "btrfs",
                "partitions": ["sda1", "sdb1", "sdc1"],
                "label": "POOL",
                "data_profile": "raid1",
                "metadata_profile": "raid1",
            }
        ],
        "mounts": [{"filesystem": "pool", "mount_point": "/srv/pool"}],
    }


@pytest.fixture
def raid_layout(raid_layout_data) -> LayoutSpec:
    return layout_from_dict(raid_layout_data)


@pytest.fixture
def workstation_layout_data() -> Dict[str, Any]:
    """The bundled example layout (layouts/workstation.json)."""
    return json.loads(WORKSTATION_LAYOUT.read_text(encoding="utf-8"))


@pytest.fixture
def workstation_layout(workstation_layout_data) -> LayoutSpec:
    return layout_from_dict(workstation_layout_data)


@pytest.fixture
def layout_file(tmp_path, boot_layout_data) -> Path:
    """
    Fixture writing the boot layout to a temporary JSON file.

    Returns:
        Path to the layout file.
    """
    path = tmp_path / "boot.json"
    path.write_text(json.dumps(boot_layout_data), encoding="utf-8")
    return path


# ==============================================================================
# File System Fixtures
# ==============================================================================


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """
    Fixture providing a temporary settings file path.

    Args:
        tmp_path: pytest's built-in temporary directory fixture.

    Returns:
        Path to a temporary settings file.
    """
    settings_dir = tmp_path / ".config" / "disk-provisioner"
    settings_dir.mkdir(parents=True, exist_ok=True)
    return settings_dir / "settings.json"


@pytest.fixture
def proc_files(tmp_path):
    """
    Fixture writing fake /proc/mounts and /proc/swaps files.

    Returns:
        Callable taking mounts and swaps text, returning both paths.
    """

    def write(mounts: str = "", swaps: str = "") -> tuple:
        mounts_file = tmp_path / "mounts"
        swaps_file = tmp_path / "swaps"
        mounts_file.write_text(mounts)
        swaps_file.write_text(
            "Filename\t\t\t\tType\t\tSize\t\tUsed\t\tPriority\n" + swaps
        )
        return mounts_file, swaps_file

    return write


# ==============================================================================
# Command Runner Fakes
# ==============================================================================


class FakeRunner:
    """
    Stand-in for ``CommandRunner`` that records every argv.

    ``stdout`` maps a program name to the stdout it prints. ``errors`` maps a
    program name to a list of exceptions raised on successive calls (an
    exhausted list means success). ``on_run`` is called with each argv.
    """

    def __init__(self) -> None:
        self.stdout: Dict[str, str] = {"blockdev": "10737418240\n"}
        self.errors: Dict[str, List[Exception]] = {}
        self.missing: set = set()
        self.calls: List[Dict[str, Any]] = []
        self.on_run: Optional[Callable[[List[str]], None]] = None
        self._lock = threading.Lock()

    @property
    def commands(self) -> List[List[str]]:
        with self._lock:
            return [call["argv"] for call in self.calls]

    def programs(self) -> List[str]:
        return [argv[0] for argv in self.commands]

    def run(self, argv, *, timeout=None, allowed_returncodes=(0,), interrupt=None):
        argv = [str(arg) for arg in argv]
        with self._lock:
            self.calls.append(
                {
                    "argv": argv,
                    "timeout": timeout,
                    "allowed_returncodes": tuple(allowed_returncodes),
                    "interrupt": interrupt,
                }
            )
            pending = self.errors.get(argv[0])
            error = pending.pop(0) if pending else None
        if self.on_run is not None:
            self.on_run(argv)
        if argv[0] in self.missing:
            raise CommandNotFound(argv)
        if error is not None:
            raise error
        return CommandResult(
            argv=tuple(argv),
            returncode=0,
            stdout=self.stdout.get(argv[0], ""),
            stderr="",
            duration_seconds=0.0,
        )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


# ==============================================================================
# Step Action Fakes
# ==============================================================================


class FakeActions:
    """
    Stand-in for ``StepActions`` used to drive the executor.

    Tracks call order, which interrupt event each step received, and whether
    two steps sharing a disk ever ran at the same time.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[str] = []
        self.interrupts: Dict[str, Any] = {}
        self.overlaps: List[str] = []
        self.max_parallel = 0
        self.on_perform: Optional[Callable[[Any], None]] = None
        self._active_disks: List[str] = []
        self._active = 0
        self._lock = threading.Lock()

    def fail(self, step_id: str, *errors: Exception) -> None:
        self.failures[step_id] = list(errors)

    def attempts(self, step_id: str) -> int:
        return self.calls.count(step_id)

    def perform(self, step, interrupt=None):
        with self._lock:
            self.calls.append(step.step_id)
            self.interrupts[step.step_id] = interrupt
            if any(disk in self._active_disks for disk in step.disks):
                self.overlaps.append(step.step_id)
            self._active_disks.extend(step.disks)
            self._active += 1
            self.max_parallel = max(self.max_parallel, self._active)
            pending = self.failures.get(step.step_id)
            error = pending.pop(0) if pending else None
        try:
            if self.on_perform is not None:
                self.on_perform(step)
            if self.delay:
                time.sleep(self.delay)
            if error is not None:
                raise error
            return []
        finally:
            with self._lock:
                for disk in step.disks:
                    self._active_disks.remove(disk)
                self._active -= 1


@pytest.fixture
def fake_actions() -> FakeActions:
    return FakeActions()
