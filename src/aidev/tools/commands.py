"""External command execution with explicit deadlines and cancellation.

Commands are argument vectors, never shell strings. Every blocking call takes a
:class:`CancellationToken`; when the token is cancelled or its deadline passes
the whole process group is killed before the call returns, so no tool
invocation outlives the operation that started it.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

LOGGER = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class CommandError(RuntimeError):
    """Base error raised when a command cannot run to completion."""

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class CommandUnavailable(CommandError):
    """Raised when the executable is not installed."""


class CommandTimeout(CommandError):
    """Raised when the token deadline expires before the command exits."""


class CommandCancelled(CommandError):
    """Raised when the token is cancelled while the command is running."""


class CancellationToken:
    """Cancellation flag with an optional monotonic deadline.

    Child tokens observe their parent's cancellation and deadline but may
    impose a tighter deadline of their own.
    """

    def __init__(
        self,
        *,
        timeout: float | None = None,
        parent: "CancellationToken | None" = None,
    ) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    def child(self, timeout: float | None = None) -> "CancellationToken":
        return CancellationToken(timeout=timeout, parent=self)

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def remaining(self) -> float | None:
        """Seconds until the nearest deadline in the chain, or ``None`` when unbounded."""
        own = self._deadline - time.monotonic() if self._deadline is not None else None
        inherited = self._parent.remaining() if self._parent is not None else None
        if own is None:
            return inherited
        if inherited is None:
            return own
        return min(own, inherited)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CommandCancelled("Operation cancelled.")
        if self.expired:
            raise CommandTimeout("Operation deadline exceeded.")


@dataclass(slots=True)
class CommandResult:
    """Outcome of a command that ran to completion."""

    command: tuple[str, ...]
    cwd: Path
    exit_code: int
    stdout: str
    stderr: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def combined(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class CommandRunner(Protocol):
    """Capability that executes external commands.

    ``run`` returns a :class:`CommandResult` for any process that exits on its
    own, whatever its exit code. It raises :class:`CommandUnavailable` when the
    executable is missing and :class:`CommandTimeout` or
    :class:`CommandCancelled` after terminating a process the token stopped.
    """

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        token: CancellationToken | None = None,
    ) -> CommandResult: ...

    def which(self, executable: str) -> bool: ...


class SubprocessRunner:
    """Production :class:`CommandRunner` built on :mod:`subprocess`."""

    def __init__(self, *, env: dict[str, str] | None = None) -> None:
        self._env = env

    def which(self, executable: str) -> bool:
        return shutil.which(executable) is not None

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        token: CancellationToken | None = None,
    ) -> CommandResult:
        argv = tuple(str(part) for part in command)
        if not argv:
            raise CommandError("Command cannot be empty.")
        token = token or CancellationToken()
        token.raise_if_cancelled()

        LOGGER.debug("Running %s in %s", shlex.join(argv), cwd)
        started = time.monotonic()
        try:
            process = subprocess.Popen(  # noqa: S603 - argv comes from project configuration
                list(argv),
                cwd=cwd,
                env=self._env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as error:
            raise CommandUnavailable(f"Executable not available: {argv[0]}") from error

        while True:
            remaining = token.remaining()
            wait = _POLL_INTERVAL if remaining is None else max(min(_POLL_INTERVAL, remaining), 0.0)
            try:
                stdout, stderr = process.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                if token.cancelled or token.expired:
                    stdout, stderr = _terminate(process)
                    reason = "cancelled" if token.cancelled else "timed out"
                    LOGGER.warning("Command %s %s; process group terminated", argv[0], reason)
                    error_type = CommandCancelled if token.cancelled else CommandTimeout
                    raise error_type(
                        f"Command {reason}: {shlex.join(argv)}",
                        stdout=stdout,
                        stderr=stderr,
                    ) from None

        duration = time.monotonic() - started
        LOGGER.debug("%s exited with %d after %.2fs", argv[0], process.returncode, duration)
        return CommandResult(
            command=argv,
            cwd=Path(cwd),
            exit_code=process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration=duration,
        )


def _terminate(process: subprocess.Popen[str]) -> tuple[str, str]:
    """Kill the process group of ``process`` and collect whatever it printed."""
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL)
        else:  # pragma: no cover - no process groups on Windows
            process.kill()
    except ProcessLookupError:
        pass
    stdout, stderr = process.communicate()
    return stdout or "", stderr or ""


def split_command(value: str | Sequence[str]) -> tuple[str, ...]:
    """Normalise a configured command into an argument vector."""
    if isinstance(value, str):
        return tuple(shlex.split(value))
    return tuple(str(part) for part in value)


__all__ = [
    "CancellationToken",
    "CommandCancelled",
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "CommandTimeout",
    "CommandUnavailable",
    "SubprocessRunner",
    "split_command",
]
