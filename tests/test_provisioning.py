"""Tests for bench bootstrap, app installation and supervisor preparation."""
from __future__ import annotations

import logging
from pathlib import Path

import pytest

from benchops.config import AppConfig, load_config
from benchops.provisioning import (
    ProvisioningError,
    bootstrap_bench,
    configure_supervisor,
    install_apps,
    read_app_list,
    supervisor_link_path,
)

WEB_CONF = """\
[program:frappe-bench-frappe-web]
command=/home/frappe/frappe-bench/env/bin/gunicorn -b 127.0.0.1:8000 frappe.app:application
directory=/home/frappe/frappe-bench/sites
"""


class FakeBench:
    """Record bench calls by method name."""

    def __init__(self, config: AppConfig) -> None:
        """Bind to *config* so ``setup_supervisor`` can write the generated file."""
        self.config = config
        self.calls: list[tuple[object, ...]] = []
        self.present: list[str] = []

    def __getattr__(self, name: str):
        def record(*args: object, **kwargs: object) -> None:
            self.calls.append((name, *args, *sorted(kwargs.items())))

        return record

    def setup_supervisor(self, *, skip_redis: bool = True) -> None:
        self.calls.append(("setup_supervisor", skip_redis))
        target = self.config.supervisor.config_file
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(WEB_CONF, encoding="utf-8")

    def installed_apps(self) -> list[str]:
        return list(self.present)


class FakeRunner:
    """Record ownership changes."""

    def __init__(self) -> None:
        """Initialise the recorder."""
        self.chowned: list[tuple[Path, bool]] = []

    def chown(self, path: Path, *, recursive: bool = True) -> None:
        self.chowned.append((path, recursive))


def _config(tmp_path: Path, **overrides: object) -> AppConfig:
    base: dict[str, object] = {
        "bench": {"dir": str(tmp_path / "frappe-bench"), "home": str(tmp_path)},
        "supervisor": {"conf_dir": str(tmp_path / "conf.d")},
        "provision": {"db_root_password": "123"},
    }
    base.update(overrides)
    return load_config(config_file=tmp_path / "none.yml", env={}, overrides=base)


def test_read_app_list_skips_blanks_and_duplicates(tmp_path: Path) -> None:
    """Names are stripped, blank lines ignored and duplicates dropped."""
    apps_file = tmp_path / "apps.txt"
    apps_file.write_text("erpnext\n\n   \n  hrms  \nerpnext\npayments")

    assert read_app_list(apps_file) == ["erpnext", "hrms", "payments"]


def test_shipped_app_list_matches_image() -> None:
    """The image ships apps.txt and copies it to the default apps_file."""
    root = Path(__file__).resolve().parents[1]

    assert read_app_list(root / "apps.txt") == ["erpnext", "builder", "hrms"]
    dockerfile = (root / "Dockerfile").read_text(encoding="utf-8")
    assert "apps.txt /home/frappe/apps.txt" in dockerfile
    assert load_config(config_file=root / "none.yml", env={}).apps_file == Path(
        "/home/frappe/apps.txt"
    )


def test_read_app_list_missing_file_warns(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    """A missing apps file yields no apps and a warning."""
    with caplog.at_level(logging.WARNING, logger="benchops.provisioning"):
        assert read_app_list(tmp_path / "missing.txt") == []
    assert "not found" in caplog.text


def test_bootstrap_runs_full_sequence(tmp_path: Path) -> None:
    """A fresh bench is initialised, configured and the site created."""
    config = _config(tmp_path)
    bench = FakeBench(config)
    runner = FakeRunner()
    messages: list[str] = []

    result = bootstrap_bench(
        config, bench, runner, ["erpnext", "hrms"], report=messages.append  # type: ignore[arg-type]
    )

    assert result.initialised is True
    assert result.site == "erpnext.local"
    assert runner.chowned == [(tmp_path, True)]
    names = [call[0] for call in bench.calls]
    assert names == [
        "init",
        "set_mariadb_host",
        "set_config",
        "set_config",
        "set_config",
        "get_app",
        "get_app",
        "new_site",
        "install_app",
        "install_app",
        "set_config",
        "clear_cache",
        "use",
    ]
    assert bench.calls[2] == ("set_config", "redis_cache", "redis://redis:6379", ("global_", True))
    new_site = bench.calls[7][1]
    assert new_site.to_args()[:3] == ["new-site", "erpnext.local", "--force"]  # type: ignore[attr-defined]
    assert "--mariadb-root-password=123" in new_site.to_args()  # type: ignore[attr-defined]
    assert bench.calls[10] == ("set_config", "developer_mode", "1", ("site", "erpnext.local"))
    assert messages[-1] == "Bench setup complete."


def test_bootstrap_is_idempotent(tmp_path: Path) -> None:
    """An initialised bench is left alone apart from ownership."""
    config = _config(tmp_path)
    (config.bench.apps_dir / "frappe").mkdir(parents=True)
    bench = FakeBench(config)
    runner = FakeRunner()

    result = bootstrap_bench(config, bench, runner, ["erpnext"])  # type: ignore[arg-type]

    assert result.initialised is False
    assert bench.calls == []
    assert runner.chowned == [(tmp_path, True)]


def test_bootstrap_requires_database_password(tmp_path: Path) -> None:
    """Site creation without a root password is refused before running bench."""
    config = _config(tmp_path, provision={"db_root_password": None})
    bench = FakeBench(config)

    with pytest.raises(ProvisioningError, match="db_root_password"):
        bootstrap_bench(config, bench, FakeRunner(), [])  # type: ignore[arg-type]
    assert bench.calls == []


def test_bootstrap_uses_site_name_and_skips_developer_mode(tmp_path: Path) -> None:
    """FRAPPE_SITE_NAME wins over the default site; developer mode is optional."""
    config = _config(
        tmp_path,
        site_name="erp.example.com",
        provision={"db_root_password": "123", "developer_mode": False},
    )
    bench = FakeBench(config)

    result = bootstrap_bench(config, bench, FakeRunner(), [])  # type: ignore[arg-type]

    assert result.site == "erp.example.com"
    assert ("use", "erp.example.com") in bench.calls
    assert not any(call[:2] == ("set_config", "developer_mode") for call in bench.calls)


def test_install_apps_fetches_only_missing(tmp_path: Path) -> None:
    """Apps already in the bench are installed without fetching again."""
    config = _config(tmp_path)
    (config.bench.apps_dir / "frappe").mkdir(parents=True)
    bench = FakeBench(config)
    bench.present = ["frappe", "erpnext"]

    result = install_apps(config, bench, ["erpnext", "hrms"], site="erp.local")  # type: ignore[arg-type]

    assert result.fetched == ["hrms"]
    assert result.already_present == ["erpnext"]
    assert result.installed == ["erpnext", "hrms"]
    assert bench.calls == [
        ("get_app", "hrms"),
        ("install_app", "erp.local", "erpnext"),
        ("install_app", "erp.local", "hrms"),
        ("clear_cache", "erp.local"),
    ]


def test_install_apps_requires_initialised_bench(tmp_path: Path) -> None:
    """Installing before bootstrap is an error."""
    config = _config(tmp_path)

    with pytest.raises(ProvisioningError, match="not initialised"):
        install_apps(config, FakeBench(config), ["erpnext"])  # type: ignore[arg-type]


def test_configure_supervisor_rewrites_and_links(tmp_path: Path) -> None:
    """The generated config is rewritten, handed to the account and linked."""
    config = _config(tmp_path)
    stale = config.supervisor.config_file
    stale.parent.mkdir(parents=True)
    stale.write_text("stale", encoding="utf-8")
    bench = FakeBench(config)
    runner = FakeRunner()

    report = configure_supervisor(config, bench, runner)  # type: ignore[arg-type]

    assert bench.calls == [("setup_supervisor", True)]
    assert report.written is True
    content = stale.read_text(encoding="utf-8")
    assert f"command={config.bench.bin} serve --port 8000" in content
    assert f"directory={config.bench.dir}" in content
    assert runner.chowned == [(stale, False)]
    link = supervisor_link_path(config)
    assert link == tmp_path / "conf.d" / "frappe-bench.conf"
    assert link.resolve() == stale.resolve()
