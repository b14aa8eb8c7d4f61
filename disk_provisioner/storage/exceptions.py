"""Custom exceptions for provisioning operations.

Every error a run can surface is a ``ProvisionError`` carrying an
``error_kind`` so the executor can record it in the run report without
inspecting message text.

Exception Hierarchy:
    ProvisionError (base)
        ├── InvalidLayout
        ├── PlanningError
        ├── UnsupportedOperation
        ├── CommandError
        │   ├── CommandTimeout
        │   ├── CommandNonZeroExit
        │   ├── CommandNotFound
        │   ├── CommandNotExecutable
        │   └── CommandInterrupted
        └── DeviceError
            ├── DeviceNotFoundError
            └── DeviceBusyError

Usage:
    from disk_provisioner.storage.exceptions import InvalidLayout

    if start >= end:
        raise InvalidLayout(f"partition {name} ends before it starts")
"""

from __future__ import annotations

import shlex
from enum import Enum
from typing import Sequence


class ErrorKind(str, Enum):
    INVALID_LAYOUT = "invalid_layout"
    PLANNING_ERROR = "planning_error"
    UNSUPPORTED_OPERATION = "unsupported_operation"
    COMMAND_TIMEOUT = "command_timeout"
    COMMAND_NON_ZERO_EXIT = "command_non_zero_exit"
    COMMAND_NOT_FOUND = "command_not_found"
    COMMAND_NOT_EXECUTABLE = "command_not_executable"
    INTERRUPTED = "interrupted"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    INTERNAL = "internal"


def format_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(arg)) for arg in argv)


class ProvisionError(Exception):
    """Base exception for all provisioning operations."""

    error_kind = ErrorKind.INTERNAL


class InvalidLayout(ProvisionError):
    """The layout violates a structural invariant."""

    error_kind = ErrorKind.INVALID_LAYOUT

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid layout: {reason}")


class PlanningError(ProvisionError):
    """The step graph is not a DAG or references an undeclared entity."""

    error_kind = ErrorKind.PLANNING_ERROR

    CYCLE = "cycle"
    MISSING_DEPENDENCY = "missing-dependency"

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        msg = f"Planning failed ({reason})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class UnsupportedOperation(ProvisionError):
    """An operation was requested for a filesystem kind that cannot do it."""

    error_kind = ErrorKind.UNSUPPORTED_OPERATION

    def __init__(self, operation: str, fs_kind: str, target: str = ""):
        self.operation = operation
        self.fs_kind = fs_kind
        self.target = target
        msg = f"{operation} is not supported for {fs_kind} filesystems"
        if target:
            msg += f" (requested for {target})"
        super().__init__(msg)


class CommandError(ProvisionError):
    """Base exception for external command failures."""

    def __init__(self, message: str, argv: Sequence[str] = ()):
        self.argv = list(argv)
        super().__init__(message)

    @property
    def command_line(self) -> str:
        return format_argv(self.argv)


class CommandTimeout(CommandError):
    """Command did not exit before its timeout and was killed."""

    error_kind = ErrorKind.COMMAND_TIMEOUT

    def __init__(self, argv: Sequence[str], timeout: float, stderr: str = ""):
        self.timeout = timeout
        self.stderr = stderr
        super().__init__(
            f"Command timed out after {timeout:g}s: {format_argv(argv)}", argv
        )


class CommandNonZeroExit(CommandError):
    """Command exited with a status outside its accepted set."""

    error_kind = ErrorKind.COMMAND_NON_ZERO_EXIT

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "", stdout: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        message = (stderr or "").strip() or (stdout or "").strip() or "no output"
        super().__init__(
            f"Command failed ({returncode}): {format_argv(argv)}: {message}", argv
        )


class CommandNotFound(CommandError):
    """The executable does not exist on this system."""

    error_kind = ErrorKind.COMMAND_NOT_FOUND

    def __init__(self, argv: Sequence[str]):
        self.program = argv[0] if argv else ""
        super().__init__(f"Command not found: {self.program}", argv)


class CommandNotExecutable(CommandError):
    """The executable exists but the OS refused to start it."""

    error_kind = ErrorKind.COMMAND_NOT_EXECUTABLE

    def __init__(self, argv: Sequence[str], reason: str = ""):
        self.program = argv[0] if argv else ""
        self.reason = reason
        msg = f"Command could not be started: {self.program}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, argv)


class CommandInterrupted(CommandError):
    """Command was killed because the run was cancelled."""

    error_kind = ErrorKind.INTERRUPTED

    def __init__(self, argv: Sequence[str]):
        super().__init__(f"Command interrupted: {format_argv(argv)}", argv)


class DeviceError(ProvisionError):
    """Base exception for device preflight errors."""


class DeviceNotFoundError(DeviceError):
    """Device node does not exist."""

    error_kind = ErrorKind.DEVICE_NOT_FOUND

    def __init__(self, device: str):
        self.device = device
        super().__init__(f"Device not found: {device}")


class DeviceBusyError(DeviceError):
    """Device or one of its partitions is currently mounted."""

    error_kind = ErrorKind.DEVICE_BUSY

    def __init__(self, device: str, mountpoints: Sequence[str] = ()):
        self.device = device
        self.mountpoints = list(mountpoints)
        msg = f"Device {device} is busy"
        if self.mountpoints:
            msg += f": mounted at {', '.join(self.mountpoints)}"
        super().__init__(msg)
