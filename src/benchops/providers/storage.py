"""Object storage access through the AWS command line interface."""
from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

AWS_CLI_BUNDLE_URL = "https://awscli.amazonaws.com/awscli-exe-linux-x86_64.zip"

Runner = Callable[[list[str]], subprocess.CompletedProcess[str]]


class AwsCliError(RuntimeError):
    """Raised when an ``aws ...`` CLI invocation fails."""


class AwsCliInstallError(RuntimeError):
    """Raised when the AWS CLI is missing and cannot be installed."""


@dataclass(slots=True)
class AwsCli:
    """Copy objects to and from S3 with ``aws s3 cp``."""

    aws_bin: str = "aws"
    env: Mapping[str, str] | None = None
    runner: Runner | None = None

    def version(self) -> str:
        """Return the ``aws --version`` banner."""
        result = self._run(["--version"])
        return (result.stdout or result.stderr or "").strip()

    def download(self, uri: str, destination: Path) -> None:
        """Copy object *uri* to *destination*."""
        self._run(["s3", "cp", uri, str(destination), "--only-show-errors"])

    def upload(self, source: Path, uri: str) -> None:
        """Copy local *source* to object *uri*."""
        self._run(["s3", "cp", str(source), uri, "--only-show-errors"])

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.aws_bin, *args]
        runner = self.runner or self._default_runner
        try:
            result = runner(command)
        except FileNotFoundError as exc:
            raise AwsCliError(f"{self.aws_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip()
            raise AwsCliError(message or f"AWS CLI failed: {' '.join(command)}")
        return result

    def _default_runner(self, command: list[str]) -> subprocess.CompletedProcess[str]:
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        return subprocess.run(  # noqa: S603 - controlled command execution
            command,
            capture_output=True,
            text=True,
            env=env,
            check=False,
        )


@dataclass(slots=True)
class AwsCliInstaller:
    """Install AWS CLI v2 from the official bundle when it is missing."""

    aws_bin: str = "aws"
    bundle_url: str = AWS_CLI_BUNDLE_URL
    runner: Runner | None = None
    which: Callable[[str], str | None] = shutil.which
    euid: Callable[[], int] = os.geteuid
    work_root: Path | None = None

    def is_installed(self) -> bool:
        """Return True when the AWS CLI is on ``PATH``."""
        return self.which(self.aws_bin) is not None

    def plan(self, work_dir: Path) -> list[list[str]]:
        """Return the commands that install the CLI using *work_dir* for downloads."""
        commands: list[list[str]] = []
        if self.which("curl") is None or self.which("unzip") is None:
            commands.append(["apt-get", "update", "-y"])
            commands.append(["apt-get", "install", "-y", "curl", "unzip"])
        bundle = work_dir / "awscliv2.zip"
        commands.append(["curl", "-fsSL", self.bundle_url, "-o", str(bundle)])
        commands.append(["unzip", "-q", str(bundle), "-d", str(work_dir)])
        commands.append([str(work_dir / "aws" / "install")])
        return commands

    def ensure(self) -> bool:
        """Install the CLI if needed; return True when an install happened."""
        if self.is_installed():
            return False
        if self.euid() != 0:
            raise AwsCliInstallError(
                "AWS CLI installation requires root privileges. Install it in the "
                "container image or run this command as root."
            )
        runner = self.runner or _default_runner
        work_dir = Path(
            tempfile.mkdtemp(
                prefix="benchops-awscli-",
                dir=str(self.work_root) if self.work_root else None,
            )
        )
        try:
            for command in self.plan(work_dir):
                try:
                    result = runner(command)
                except FileNotFoundError as exc:
                    raise AwsCliInstallError(f"{command[0]} not found: {exc}") from exc
                if result.returncode != 0:
                    detail = (result.stderr or result.stdout or "").strip() or "no output"
                    raise AwsCliInstallError(
                        f"{' '.join(command)} failed (exit {result.returncode}): {detail}"
                    )
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
        return True


def _default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env.setdefault("DEBIAN_FRONTEND", "noninteractive")
    return subprocess.run(  # noqa: S603 - controlled command execution
        command,
        capture_output=True,
        text=True,
        env=env,
        check=False,
    )


__all__ = [
    "AWS_CLI_BUNDLE_URL",
    "AwsCli",
    "AwsCliError",
    "AwsCliInstallError",
    "AwsCliInstaller",
]
