"""External command execution with timeouts.

Commands are always argument lists handed straight to ``subprocess.Popen``;
nothing is ever interpolated into a shell string. The runner only looks at
the exit status. What a tool prints is kept as opaque diagnostic text for
the caller and the debug log.
"""

from __future__ import annotations

import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Iterable, Sequence

from disk_provisioner.logging import LoggerFactory

from .exceptions import (
    CommandInterrupted,
    CommandNonZeroExit,
    CommandNotExecutable,
    CommandNotFound,
    CommandTimeout,
    format_argv,
)


log = LoggerFactory.for_command()
output_log = LoggerFactory.for_command_output()

DEFAULT_TIMEOUT_SECONDS = 300.0
# How often a running command checks for cancellation.
POLL_INTERVAL_SECONDS = 0.5


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    duration_seconds: float

    @property
    def command_line(self) -> str:
        return format_argv(self.argv)


class CommandRunner:
    """Runs one external command to completion, timeout or interruption."""

    def __init__(
        self,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ):
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval

    def run(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        allowed_returncodes: Iterable[int] = (0,),
        interrupt: threading.Event | None = None,
    ) -> CommandResult:
        """Run ``argv`` and return its result.

        Args:
            argv: Program and arguments
            timeout: Seconds before the process is killed (default_timeout if None)
            allowed_returncodes: Exit statuses that count as success
            interrupt: When set while the command runs, the process is killed

        Raises:
            CommandNotFound: The program does not exist
            CommandNotExecutable: The program exists but could not be started
            CommandTimeout: The timeout expired
            CommandInterrupted: ``interrupt`` was set
            CommandNonZeroExit: Exit status not in ``allowed_returncodes``
        """
        argv = tuple(str(arg) for arg in argv)
        if not argv:
            raise ValueError("empty command")
        timeout = self.default_timeout if timeout is None else timeout
        allowed = tuple(allowed_returncodes)

        log.debug("Running command: {}", format_argv(argv))
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                list(argv),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            log.error("Command not found: {}", argv[0])
            raise CommandNotFound(argv) from error
        except OSError as error:
            log.error("Command could not be started: {}: {}", argv[0], error.strerror or error)
            raise CommandNotExecutable(argv, error.strerror or str(error)) from error

        deadline = started + timeout
        while True:
            remaining = max(0.0, deadline - time.monotonic())
            wait = remaining if interrupt is None else min(remaining, self.poll_interval)
            try:
                stdout, stderr = process.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                if time.monotonic() >= deadline:
                    stdout, stderr = self._kill(process)
                    log.error("Command timed out after {}s: {}", timeout, format_argv(argv))
                    raise CommandTimeout(argv, timeout, stderr) from None
                if interrupt is not None and interrupt.is_set():
                    self._kill(process)
                    log.warning("Command interrupted: {}", format_argv(argv))
                    raise CommandInterrupted(argv) from None

        duration = time.monotonic() - started
        stdout = stdout or ""
        stderr = stderr or ""
        if stdout.strip():
            output_log.trace("stdout: {}", stdout.strip())
        if stderr.strip():
            output_log.trace("stderr: {}", stderr.strip())

        if process.returncode not in allowed:
            log.error(
                "Command failed with code {}: {}: {}",
                process.returncode,
                format_argv(argv),
                stderr.strip() or stdout.strip() or "no output",
            )
            raise CommandNonZeroExit(argv, process.returncode, stderr, stdout)

        log.debug(
            "Command completed with return code {} in {:.2f}s",
            process.returncode,
            duration,
        )
        return CommandResult(
            argv=argv,
            returncode=process.returncode,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
        )

    @staticmethod
    def _kill(process: subprocess.Popen) -> tuple[str, str]:
        process.kill()
        stdout, stderr = process.communicate()
        return stdout or "", stderr or ""
