"""Run commands on behalf of the bench service account."""
from __future__ import annotations

import os
import pwd
import shlex
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

Executor = Callable[[list[str], Path | None], subprocess.CompletedProcess[str]]


class CommandError(RuntimeError):
    """Raised when a wrapped command exits with a non-zero status."""

    def __init__(self, message: str, result: CommandResult | None = None) -> None:
        """Store the failing :class:`CommandResult` alongside *message*."""
        super().__init__(message)
        self.result = result

    @property
    def output(self) -> str:
        """Return the captured output of the failing command (may be empty)."""
        return self.result.output if self.result is not None else ""


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Exit status and combined stdout/stderr of a finished command."""

    args: tuple[str, ...]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        """Return True when the command exited cleanly."""
        return self.returncode == 0


@dataclass(slots=True)
class ServiceAccountRunner:
    """Execute argument lists as *user*, switching account with ``su`` when needed.

    The shell string handed to ``su -c`` is produced here and nowhere else;
    callers always pass plain argument lists.
    """

    user: str
    group: str | None = None
    su_bin: str = "su"
    chown_bin: str = "chown"
    executor: Executor | None = None

    def is_current_user(self) -> bool:
        """Return True when the process already runs as the service account."""
        try:
            return pwd.getpwuid(os.geteuid()).pw_name == self.user
        except KeyError:  # pragma: no cover - uid without passwd entry
            return False

    def build_command(self, args: Sequence[str], *, cwd: Path | None = None) -> list[str]:
        """Return the command line that runs *args* as the service account."""
        if self.is_current_user():
            return list(args)
        script = shlex.join(list(args))
        if cwd is not None:
            script = f"cd {shlex.quote(str(cwd))} && {script}"
        return [self.su_bin, "-", self.user, "-c", script]

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run *args* as the service account and capture the combined output."""
        command = self.build_command(args, cwd=cwd)
        direct_cwd = cwd if self.is_current_user() else None
        return self._execute(list(args), command, cwd=direct_cwd, check=check)

    def run_privileged(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> CommandResult:
        """Run *args* as the invoking user without switching accounts."""
        return self._execute(list(args), list(args), cwd=None, check=check)

    def ensure_directory(self, path: Path) -> None:
        """Create *path* (and parents) owned by the service account."""
        self.run(["mkdir", "-p", str(path)])

    def chown(self, path: Path, *, recursive: bool = True) -> None:
        """Hand *path* over to the service account."""
        owner = f"{self.user}:{self.group}" if self.group else self.user
        args = [self.chown_bin]
        if recursive:
            args.append("-R")
        args.extend([owner, str(path)])
        self.run_privileged(args)

    # ------------------------------------------------------------------
    def _execute(
        self,
        display_args: list[str],
        command: list[str],
        *,
        cwd: Path | None,
        check: bool,
    ) -> CommandResult:
        executor = self.executor or _default_executor
        try:
            completed = executor(command, cwd)
        except FileNotFoundError as exc:
            raise CommandError(f"{command[0]} not found: {exc}") from exc
        output = completed.stdout or ""
        stderr = getattr(completed, "stderr", None)
        if stderr:
            output = f"{output}{stderr}"
        result = CommandResult(
            args=tuple(display_args),
            returncode=completed.returncode,
            output=output,
        )
        if check and not result.ok:
            raise CommandError(
                f"{shlex.join(display_args)} failed (exit {result.returncode})",
                result,
            )
        return result


def _default_executor(command: list[str], cwd: Path | None) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603 - controlled command execution
        command,
        cwd=str(cwd) if cwd is not None else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        check=False,
    )


__all__ = ["CommandError", "CommandResult", "Executor", "ServiceAccountRunner"]
