"""First-run bench bootstrap, app installation and supervisor preparation."""
from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .accounts import ServiceAccountRunner
from .config import AppConfig
from .providers.bench import BenchProvider, NewSiteOptions
from .supervisor import RewriteReport, link_config, rewrite_file, web_program_rewrite

LOGGER = logging.getLogger(__name__)

Reporter = Callable[[str], None]

REDIS_CONFIG_KEYS = ("redis_cache", "redis_queue", "redis_socketio")


class ProvisioningError(RuntimeError):
    """Raised when bootstrap prerequisites are not met."""


@dataclass(slots=True)
class BootstrapResult:
    """What :func:`bootstrap_bench` did."""

    site: str
    initialised: bool
    apps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"site": self.site, "initialised": self.initialised, "apps": list(self.apps)}


@dataclass(slots=True)
class AppInstallResult:
    """Apps fetched and installed by :func:`install_apps`."""

    site: str
    fetched: list[str] = field(default_factory=list)
    already_present: list[str] = field(default_factory=list)
    installed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "site": self.site,
            "fetched": list(self.fetched),
            "already_present": list(self.already_present),
            "installed": list(self.installed),
        }


def read_app_list(path: Path) -> list[str]:
    """Return app names listed one per line in *path*.

    Whitespace is stripped, blank lines are ignored and duplicates keep their
    first position. A missing file yields an empty list.
    """
    if not path.exists():
        LOGGER.warning("Apps file %s not found; no additional apps will be installed.", path)
        return []
    apps: list[str] = []
    for raw in path.read_text(encoding="utf-8").splitlines():
        name = raw.strip()
        if not name or name in apps:
            continue
        apps.append(name)
    return apps


def is_bench_initialised(config: AppConfig) -> bool:
    """Return True once ``bench init`` has produced the frappe app."""
    return (config.bench.apps_dir / "frappe").is_dir()


def bootstrap_bench(
    config: AppConfig,
    bench: BenchProvider,
    runner: ServiceAccountRunner,
    apps: Sequence[str],
    *,
    report: Reporter | None = None,
) -> BootstrapResult:
    """Initialise the bench and create the site once; later runs are no-ops."""
    emit = report or LOGGER.info
    site = config.provision_site
    provision = config.provision

    emit(f"Ensuring {config.bench.home} is owned by {config.bench.user}.")
    runner.chown(config.bench.home)

    if is_bench_initialised(config):
        emit("Bench already initialised; skipping bench init and site creation.")
        return BootstrapResult(site=site, initialised=False)

    if not provision.db_root_password:
        raise ProvisioningError(
            "provision.db_root_password must be set (BENCHOPS_PROVISION__DB_ROOT_PASSWORD) "
            "to create the site."
        )

    emit("Installing and configuring bench.")
    bench.init(skip_redis_config_generation=True)

    emit("Pointing bench at the database and Redis services.")
    bench.set_mariadb_host(provision.mariadb_host)
    for key in REDIS_CONFIG_KEYS:
        bench.set_config(key, provision.redis_url, global_=True)

    emit("Fetching apps.")
    for app in apps:
        emit(f"  get-app {app}")
        bench.get_app(app)

    emit(f"Creating site {site} and installing apps.")
    bench.new_site(
        NewSiteOptions(
            site=site,
            db_root_password=provision.db_root_password,
            admin_password=provision.admin_password,
            db_user_host_login_scope=provision.db_user_host_login_scope,
            force=True,
        )
    )
    for app in apps:
        emit(f"  install-app {app}")
        bench.install_app(site, app)
    if provision.developer_mode:
        bench.set_config("developer_mode", "1", site=site)
    bench.clear_cache(site)
    bench.use(site)

    emit("Bench setup complete.")
    return BootstrapResult(site=site, initialised=True, apps=list(apps))


def install_apps(
    config: AppConfig,
    bench: BenchProvider,
    apps: Sequence[str],
    *,
    site: str | None = None,
    report: Reporter | None = None,
) -> AppInstallResult:
    """Fetch missing apps and install every listed app on *site*."""
    emit = report or LOGGER.info
    if not is_bench_initialised(config):
        raise ProvisioningError(
            f"Bench at {config.bench.dir} is not initialised; run 'benchops init' first."
        )
    target = site or config.provision_site
    result = AppInstallResult(site=target)
    present = set(bench.installed_apps())
    for app in apps:
        if app in present:
            result.already_present.append(app)
            continue
        emit(f"get-app {app}")
        bench.get_app(app)
        result.fetched.append(app)
    for app in apps:
        emit(f"install-app {app} on {target}")
        bench.install_app(target, app)
        result.installed.append(app)
    if result.installed:
        bench.clear_cache(target)
    return result


def supervisor_link_path(config: AppConfig) -> Path:
    """Return where supervisord picks the bench config up."""
    return config.supervisor.conf_dir / f"{config.bench.name}.conf"


def configure_supervisor(
    config: AppConfig,
    bench: BenchProvider,
    runner: ServiceAccountRunner,
    *,
    report: Reporter | None = None,
) -> RewriteReport:
    """Regenerate the supervisor config, swap in ``bench serve`` and link it."""
    emit = report or LOGGER.info
    conf = config.supervisor.config_file

    emit("Generating supervisor config.")
    conf.unlink(missing_ok=True)
    bench.setup_supervisor(skip_redis=True)

    emit(f"Rewriting [program:{config.supervisor.web_program}] to use 'bench serve'.")
    rule = web_program_rewrite(
        config.supervisor.web_program,
        bench_bin=config.bench.bin,
        bench_dir=config.bench.dir,
        port=config.supervisor.web_port,
    )
    result = rewrite_file(conf, rule)
    if result.written:
        runner.chown(conf, recursive=False)

    link_config(conf, supervisor_link_path(config))
    return result


def exec_supervisord(config: AppConfig) -> None:  # pragma: no cover - replaces the process
    """Replace the current process with supervisord in the foreground."""
    binary = config.supervisor.supervisord_bin
    os.execv(binary, [binary, "-n", "-c", str(config.supervisor.supervisord_conf)])


__all__ = [
    "AppInstallResult",
    "BootstrapResult",
    "ProvisioningError",
    "bootstrap_bench",
    "configure_supervisor",
    "exec_supervisord",
    "install_apps",
    "is_bench_initialised",
    "read_app_list",
    "supervisor_link_path",
]
