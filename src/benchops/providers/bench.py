"""Bench provider wrapping the ``bench`` command line tool."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..accounts import CommandError, CommandResult, ServiceAccountRunner


class BenchError(RuntimeError):
    """Raised when a ``bench`` invocation fails."""

    def __init__(self, message: str, output: str = "") -> None:
        """Keep the captured command output for the operator."""
        super().__init__(message)
        self.output = output


@dataclass(frozen=True, slots=True)
class NewSiteOptions:
    """Arguments for ``bench new-site``."""

    site: str
    db_root_password: str | None = None
    admin_password: str | None = None
    db_user_host_login_scope: str | None = None
    force: bool = True

    def to_args(self) -> list[str]:
        """Render the options as ``bench`` arguments."""
        args = ["new-site", self.site]
        if self.force:
            args.append("--force")
        if self.db_root_password:
            args.append(f"--mariadb-root-password={self.db_root_password}")
        if self.admin_password:
            args.append(f"--admin-password={self.admin_password}")
        if self.db_user_host_login_scope:
            args.append(f"--mariadb-user-host-login-scope={self.db_user_host_login_scope}")
        return args


@dataclass(frozen=True, slots=True)
class RestoreOptions:
    """Arguments for ``bench --site <site> restore``."""

    site: str
    sql_path: Path
    force: bool = False
    private_files: Path | None = None
    public_files: Path | None = None

    def to_args(self) -> list[str]:
        """Render the options as ``bench`` arguments."""
        args = ["--site", self.site, "restore", str(self.sql_path)]
        if self.force:
            args.append("--force")
        if self.private_files is not None:
            args.extend(["--with-private-files", str(self.private_files)])
        if self.public_files is not None:
            args.extend(["--with-public-files", str(self.public_files)])
        return args


@dataclass(slots=True)
class BenchProvider:
    """Invoke ``bench`` subcommands inside the bench directory as the service account."""

    runner: ServiceAccountRunner
    bench_dir: Path
    bench_bin: str = "bench"

    def init(self, *, skip_redis_config_generation: bool = True) -> CommandResult:
        """Create the bench directory (``bench init``)."""
        args = ["init"]
        if skip_redis_config_generation:
            args.append("--skip-redis-config-generation")
        args.append(str(self.bench_dir))
        return self._bench(args, in_bench=False)

    def set_mariadb_host(self, host: str) -> CommandResult:
        """Point the bench at the MariaDB host."""
        return self._bench(["set-mariadb-host", host])

    def set_config(
        self,
        key: str,
        value: str,
        *,
        site: str | None = None,
        global_: bool = False,
    ) -> CommandResult:
        """Write *key* into the common or site configuration."""
        args: list[str] = []
        if site is not None:
            args.extend(["--site", site])
        args.append("set-config")
        if global_:
            args.append("-g")
        args.extend([key, value])
        return self._bench(args)

    def get_app(self, app: str) -> CommandResult:
        """Fetch *app* into the bench."""
        return self._bench(["get-app", app])

    def new_site(self, options: NewSiteOptions) -> CommandResult:
        """Create a site."""
        return self._bench(options.to_args())

    def install_app(self, site: str, app: str) -> CommandResult:
        """Install *app* on *site*."""
        return self._bench(["--site", site, "install-app", app])

    def clear_cache(self, site: str) -> CommandResult:
        """Clear the cache of *site*."""
        return self._bench(["--site", site, "clear-cache"])

    def use(self, site: str) -> CommandResult:
        """Make *site* the bench default (``currentsite.txt``)."""
        return self._bench(["use", site])

    def setup_supervisor(self, *, skip_redis: bool = True) -> CommandResult:
        """Generate ``config/supervisor.conf``."""
        args = ["setup", "supervisor"]
        if skip_redis:
            args.append("--skip-redis")
        return self._bench(args)

    def backup(self, site: str, *, with_files: bool = True) -> CommandResult:
        """Create a backup set for *site* under ``sites/<site>/private/backups``."""
        args = ["--site", site, "backup"]
        if with_files:
            args.append("--with-files")
        return self._bench(args)

    def restore(self, options: RestoreOptions) -> CommandResult:
        """Restore a site from downloaded backup artifacts."""
        return self._bench(options.to_args())

    def installed_apps(self) -> list[str]:
        """Return the app directories already present in the bench."""
        apps_dir = self.bench_dir / "apps"
        if not apps_dir.is_dir():
            return []
        return sorted(entry.name for entry in apps_dir.iterdir() if entry.is_dir())

    # ------------------------------------------------------------------
    def _bench(self, args: Sequence[str], *, in_bench: bool = True) -> CommandResult:
        command = [self.bench_bin, *args]
        try:
            return self.runner.run(command, cwd=self.bench_dir if in_bench else None)
        except CommandError as exc:
            raise BenchError(str(exc), exc.output) from exc


__all__ = ["BenchError", "BenchProvider", "NewSiteOptions", "RestoreOptions"]
