"""Blocking execution of external commands.

Commands are argument lists executed with ``shell=False``; no repository
controlled string is ever interpolated into a shell command line. The exit
status is the only signal used for control decisions. Captured stdout is
returned for the few commands whose output is data, such as resolving the
newest tag name.

A progress callback may be supplied to observe commands as they start and
finish. It receives events only and cannot affect the outcome.
"""

from __future__ import annotations

import dataclasses
import enum
import subprocess
import typing as typ

from dployer.errors import ExternalToolError
from dployer.logging import get_logger, log_debug

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    from pathlib import Path

logger = get_logger(__name__)

# Exit status reported when the executable itself cannot be started.
EXIT_NOT_EXECUTABLE = 127


@dataclasses.dataclass(frozen=True, slots=True)
class Command:
    """An external command and where to run it.

    Attributes
    ----------
    argv
        Executable followed by its arguments.
    cwd
        Working directory, or ``None`` for the current one.
    capture
        Capture stdout and stderr instead of discarding them.
    stream
        Inherit the terminal so output reaches the operator directly.

    """

    argv: tuple[str, ...]
    cwd: Path | None = None
    capture: bool = False
    stream: bool = False

    @property
    def display(self) -> str:
        """Return the command line for log messages."""
        return " ".join(self.argv)


@dataclasses.dataclass(frozen=True, slots=True)
class CommandOutcome:
    """Result of running a :class:`Command`."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        """Return True when the command exited with status 0."""
        return self.exit_code == 0


class ProgressPhase(enum.StrEnum):
    """Points in a command's life reported to progress callbacks."""

    STARTED = "started"
    FINISHED = "finished"


@dataclasses.dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Notification sent to a progress callback."""

    phase: ProgressPhase
    command: Command
    outcome: CommandOutcome | None = None


ProgressCallback: typ.TypeAlias = "cabc.Callable[[ProgressEvent], None]"


class CommandExecutor(typ.Protocol):
    """Runs external commands to completion."""

    def run(self, command: Command) -> CommandOutcome:
        """Run ``command`` and return its outcome without raising on failure."""
        ...


class SubprocessExecutor:
    """Execute commands with :func:`subprocess.run`.

    Parameters
    ----------
    progress:
        Optional callback notified before and after every command.

    """

    def __init__(self, progress: ProgressCallback | None = None) -> None:
        """Configure the executor with an optional progress callback."""
        self._progress = progress

    def _notify(self, event: ProgressEvent) -> None:
        if self._progress is not None:
            self._progress(event)

    def run(self, command: Command) -> CommandOutcome:
        """Run ``command`` and block until it exits."""
        log_debug(logger, "Executing command: %s", command.display)
        self._notify(ProgressEvent(ProgressPhase.STARTED, command))

        output_target = None if command.stream else subprocess.DEVNULL
        try:
            if command.capture:
                result = subprocess.run(  # noqa: S603 - argv list, shell=False
                    list(command.argv),
                    cwd=command.cwd,
                    capture_output=True,
                    text=True,
                    check=False,
                )
            else:
                result = subprocess.run(  # noqa: S603 - argv list, shell=False
                    list(command.argv),
                    cwd=command.cwd,
                    stdout=output_target,
                    stderr=output_target,
                    check=False,
                )
        except OSError as exc:
            log_debug(logger, "Could not start %s: %s", command.argv[0], exc)
            outcome = CommandOutcome(exit_code=EXIT_NOT_EXECUTABLE, stderr=str(exc))
        else:
            outcome = CommandOutcome(
                exit_code=result.returncode,
                stdout=result.stdout or "",
                stderr=result.stderr or "",
            )

        self._notify(ProgressEvent(ProgressPhase.FINISHED, command, outcome))
        return outcome


def run_checked(
    executor: CommandExecutor,
    command: Command,
    *,
    repo_id: str | None = None,
    step: str | None = None,
) -> CommandOutcome:
    """Run ``command`` and raise :class:`ExternalToolError` on failure."""
    outcome = executor.run(command)
    if not outcome.succeeded:
        raise ExternalToolError(
            command.argv, outcome.exit_code, repo_id=repo_id, step=step
        )
    return outcome


__all__ = [
    "EXIT_NOT_EXECUTABLE",
    "Command",
    "CommandExecutor",
    "CommandOutcome",
    "ProgressCallback",
    "ProgressEvent",
    "ProgressPhase",
    "SubprocessExecutor",
    "run_checked",
]
