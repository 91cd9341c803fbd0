"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from benchops.config import (
    AppConfig,
    ConfigError,
    load_config,
    require_backup_settings,
)

BACKUP_ENV = {
    "AWS_ACCESS_KEY_ID": "AKIAEXAMPLE",
    "AWS_SECRET_ACCESS_KEY": "secret",
    "AWS_DEFAULT_REGION": "us-east-1",
    "S3_BACKUP_URL": "s3://bucket/backups/",
    "FRAPPE_SITE_NAME": "erp.example.com",
}


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.bench.dir == Path("/home/frappe/frappe-bench")
    assert config.bench.user == "frappe"
    assert config.bench.sites_dir == Path("/home/frappe/frappe-bench/sites")
    assert config.supervisor.config_file == Path(
        "/home/frappe/frappe-bench/config/supervisor.conf"
    )
    assert config.supervisor.web_program == "frappe-bench-frappe-web"
    assert config.supervisor.web_port == 8000
    assert config.backups.retention_days == 7
    assert config.site_name is None
    assert config.provision_site == "erpnext.local"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "benchops.yml"
    cfg.write_text(
        "bench:\n"
        "  dir: /srv/bench\n"
        "  user: erp\n"
        "supervisor:\n"
        "  web_port: 8080\n"
        "backups:\n"
        "  retention_days: 3\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.bench.dir == Path("/srv/bench")
    assert config.bench.user == "erp"
    assert config.bench.group == "frappe"
    assert config.supervisor.config_file == Path("/srv/bench/config/supervisor.conf")
    assert config.supervisor.web_program == "bench-frappe-web"
    assert config.supervisor.web_port == 8080
    assert config.backups.retention_days == 3


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "benchops.yml"
    cfg.write_text("supervisor:\n  web_port: 8080\n")
    env = {
        "BENCHOPS_SUPERVISOR__WEB_PORT": "8001",
        "BENCHOPS_LOGS_DIR": str(tmp_path / "logs"),
        "BENCHOPS_PROVISION__DEVELOPER_MODE": "false",
        "BENCHOPS_PROVISION__DB_ROOT_PASSWORD": "123",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.supervisor.web_port == 8001
    assert config.logs_dir == tmp_path / "logs"
    assert config.provision.developer_mode is False
    assert config.provision.db_root_password == "123"


def test_env_secrets_stay_strings(tmp_path: Path) -> None:
    """Passwords that look like numbers or booleans keep their exact text."""
    env = {
        "BENCHOPS_PROVISION__DB_ROOT_PASSWORD": "0123",
        "BENCHOPS_PROVISION__ADMIN_PASSWORD": "yes",
        "BENCHOPS_SITE_NAME": "null",
    }

    config = load_config(config_file=tmp_path / "none.yml", env=env)

    assert config.provision.db_root_password == "0123"
    assert config.provision.admin_password == "yes"
    assert config.site_name == "null"


def test_developer_mode_accepts_quoted_booleans(tmp_path: Path) -> None:
    """A quoted "false" in YAML disables developer mode."""
    cfg = tmp_path / "benchops.yml"
    cfg.write_text('provision:\n  developer_mode: "false"\n')

    assert load_config(config_file=cfg, env={}).provision.developer_mode is False

    cfg.write_text("provision:\n  developer_mode: 'On'\n")
    assert load_config(config_file=cfg, env={}).provision.developer_mode is True


def test_developer_mode_rejects_other_values(tmp_path: Path) -> None:
    """Values that are not booleans are a configuration error."""
    cfg = tmp_path / "benchops.yml"
    cfg.write_text("provision:\n  developer_mode: maybe\n")

    with pytest.raises(ConfigError, match="developer_mode"):
        load_config(config_file=cfg, env={})


def test_config_file_env_var_selects_file(tmp_path: Path) -> None:
    """BENCHOPS_CONFIG_FILE points the loader at another file."""
    cfg = tmp_path / "alt.yml"
    cfg.write_text("apps_file: /tmp/apps.txt\n")

    config = load_config(env={"BENCHOPS_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.apps_file == Path("/tmp/apps.txt")


def test_well_known_variables_are_taken_verbatim(tmp_path: Path) -> None:
    """Deployment variables map onto config keys without YAML coercion."""
    env = dict(BACKUP_ENV, AWS_ACCESS_KEY_ID="0123", FRAPPE_SITE_NAME="true")

    config = load_config(config_file=tmp_path / "none.yml", env=env)

    assert config.site_name == "true"
    assert config.storage.access_key_id == "0123"
    assert config.storage.backup_url == "s3://bucket/backups/"
    assert config.storage.region == "us-east-1"


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        config_file=tmp_path / "none.yml",
        env={"FRAPPE_SITE_NAME": "one.local"},
        overrides={"site_name": "two.local"},
    )

    assert config.site_name == "two.local"


def test_unknown_keys_raise(tmp_path: Path) -> None:
    """Unknown top-level and section keys are rejected."""
    cfg = tmp_path / "benchops.yml"
    cfg.write_text("unknown: 1\n")
    with pytest.raises(ConfigError, match="Unknown configuration keys: unknown"):
        load_config(config_file=cfg, env={})

    cfg.write_text("bench:\n  colour: blue\n")
    with pytest.raises(ConfigError, match="Unknown bench configuration keys: colour"):
        load_config(config_file=cfg, env={})


def test_invalid_port_raises(tmp_path: Path) -> None:
    """Web port outside the TCP range is rejected."""
    with pytest.raises(ConfigError, match="web_port"):
        load_config(
            config_file=tmp_path / "none.yml",
            env={"BENCHOPS_SUPERVISOR__WEB_PORT": "70000"},
        )


def test_negative_retention_raises(tmp_path: Path) -> None:
    """Retention must not be negative."""
    with pytest.raises(ConfigError, match="retention_days"):
        load_config(
            config_file=tmp_path / "none.yml",
            env={"BENCHOPS_BACKUPS__RETENTION_DAYS": "-1"},
        )


def test_top_level_mapping_required(tmp_path: Path) -> None:
    """A YAML list at the top level is rejected."""
    cfg = tmp_path / "benchops.yml"
    cfg.write_text("- a\n- b\n")

    with pytest.raises(ConfigError, match="mapping at the top level"):
        load_config(config_file=cfg, env={})


def test_to_dict_redacts_secrets(tmp_path: Path) -> None:
    """Secrets never appear in the rendered configuration."""
    env = dict(BACKUP_ENV, BENCHOPS_PROVISION__DB_ROOT_PASSWORD="hunter2")
    config = load_config(config_file=tmp_path / "none.yml", env=env)

    data = config.to_dict()

    assert "hunter2" not in str(data)
    assert data["provision"]["db_root_password"] == "***"  # type: ignore[index]
    assert data["storage"]["secret_access_key"] == "***"  # type: ignore[index]
    assert data["storage"]["access_key_id"] == "***"  # type: ignore[index]


def test_require_backup_settings_lists_every_missing_variable(tmp_path: Path) -> None:
    """All missing variables are reported in a single error."""
    env = {"AWS_DEFAULT_REGION": "us-east-1", "S3_BACKUP_URL": "  "}
    config = load_config(config_file=tmp_path / "none.yml", env=env)

    with pytest.raises(ConfigError) as excinfo:
        require_backup_settings(config)

    assert str(excinfo.value) == (
        "Required environment variables are not set: AWS_ACCESS_KEY_ID, "
        "AWS_SECRET_ACCESS_KEY, S3_BACKUP_URL, FRAPPE_SITE_NAME."
    )


def test_require_backup_settings_appends_trailing_slash(tmp_path: Path) -> None:
    """A bucket URL without a trailing slash is normalised."""
    env = dict(BACKUP_ENV, S3_BACKUP_URL="s3://bucket/backups")
    config = load_config(config_file=tmp_path / "none.yml", env=env)

    settings = require_backup_settings(config)

    assert settings.url_adjusted is True
    assert settings.backup_url == "s3://bucket/backups/"
    assert settings.site_prefix("20250101_120000-erp") == (
        "s3://bucket/backups/erp.example.com/20250101_120000-erp/"
    )
    assert settings.aws_env() == {
        "AWS_ACCESS_KEY_ID": "AKIAEXAMPLE",
        "AWS_SECRET_ACCESS_KEY": "secret",
        "AWS_DEFAULT_REGION": "us-east-1",
    }


def test_require_backup_settings_keeps_slash_terminated_url(tmp_path: Path) -> None:
    """URLs already ending with a slash are not flagged as adjusted."""
    config = load_config(config_file=tmp_path / "none.yml", env=BACKUP_ENV)

    settings = require_backup_settings(config)

    assert settings.url_adjusted is False
    assert settings.backup_url == "s3://bucket/backups/"
