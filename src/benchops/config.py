"""Configuration loader for benchops.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/benchops/config.yml`` (or an override path).
3. Environment variables prefixed with ``BENCHOPS_``.
4. The well-known deployment variables (``FRAPPE_SITE_NAME``,
   ``S3_BACKUP_URL`` and the ``AWS_*`` credentials).
5. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export BENCHOPS_SUPERVISOR__WEB_PORT=8001
    export BENCHOPS_BACKUPS__RETENTION_DAYS=14

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``; backup and restore additionally call
:func:`require_backup_settings` which validates the storage credentials in one
place.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load benchops configuration. Install with "
        "`pip install benchops` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "BENCHOPS_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

# Only these keys are YAML-coerced from BENCHOPS_ variables; everything else stays a string.
TYPED_ENV_KEYS: frozenset[tuple[str, ...]] = frozenset(
    {
        ("supervisor", "web_port"),
        ("backups", "retention_days"),
        ("provision", "developer_mode"),
    }
)

# Deployment variables consumed verbatim (no YAML coercion) and their config keys.
WELL_KNOWN_ENV: dict[str, tuple[str, ...]] = {
    "FRAPPE_SITE_NAME": ("site_name",),
    "S3_BACKUP_URL": ("storage", "backup_url"),
    "AWS_DEFAULT_REGION": ("storage", "region"),
    "AWS_ACCESS_KEY_ID": ("storage", "access_key_id"),
    "AWS_SECRET_ACCESS_KEY": ("storage", "secret_access_key"),
}

# Order matters: errors list missing variables in this order.
REQUIRED_BACKUP_ENV = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_DEFAULT_REGION",
    "S3_BACKUP_URL",
    "FRAPPE_SITE_NAME",
)

ALL_SITES = "all"
_REDACTED = "***"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BenchConfig:
    """Location of the bench and the account that owns it."""

    dir: Path = Path("/home/frappe/frappe-bench")
    bin: str = "/home/frappe/.local/bin/bench"
    user: str = "frappe"
    group: str = "frappe"
    home: Path = Path("/home/frappe")

    @property
    def name(self) -> str:
        """Return the bench directory name (used as the supervisor prefix)."""
        return self.dir.name

    @property
    def sites_dir(self) -> Path:
        """Return the ``sites`` directory of the bench."""
        return self.dir / "sites"

    @property
    def apps_dir(self) -> Path:
        """Return the ``apps`` directory of the bench."""
        return self.dir / "apps"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "dir": str(self.dir),
            "bin": self.bin,
            "user": self.user,
            "group": self.group,
            "home": str(self.home),
        }


@dataclass(frozen=True)
class ProvisionConfig:
    """First-run site creation parameters."""

    default_site: str = "erpnext.local"
    mariadb_host: str = "mariadb"
    redis_url: str = "redis://redis:6379"
    db_root_password: str | None = None
    admin_password: str = "admin"
    db_user_host_login_scope: str = "%"
    developer_mode: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (secrets redacted)."""
        return {
            "default_site": self.default_site,
            "mariadb_host": self.mariadb_host,
            "redis_url": self.redis_url,
            "db_root_password": _REDACTED if self.db_root_password else None,
            "admin_password": _REDACTED if self.admin_password else None,
            "db_user_host_login_scope": self.db_user_host_login_scope,
            "developer_mode": self.developer_mode,
        }


@dataclass(frozen=True)
class SupervisorConfig:
    """Generated supervisor configuration and the web program rewrite."""

    config_file: Path
    web_program: str
    web_port: int = 8000
    conf_dir: Path = Path("/etc/supervisor/conf.d")
    supervisord_bin: str = "/usr/bin/supervisord"
    supervisord_conf: Path = Path("/etc/supervisor/supervisord.conf")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config_file": str(self.config_file),
            "web_program": self.web_program,
            "web_port": self.web_port,
            "conf_dir": str(self.conf_dir),
            "supervisord_bin": self.supervisord_bin,
            "supervisord_conf": str(self.supervisord_conf),
        }


@dataclass(frozen=True)
class StorageConfig:
    """Object storage location and AWS CLI credentials."""

    backup_url: str | None = None
    region: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    aws_bin: str = "aws"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (secrets redacted)."""
        return {
            "backup_url": self.backup_url,
            "region": self.region,
            "access_key_id": _REDACTED if self.access_key_id else None,
            "secret_access_key": _REDACTED if self.secret_access_key else None,
            "aws_bin": self.aws_bin,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Local backup housekeeping."""

    retention_days: int = 7
    temp_dir: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "retention_days": self.retention_days,
            "temp_dir": str(self.temp_dir) if self.temp_dir is not None else None,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for benchops."""

    config_file: Path
    logs_dir: Path
    apps_file: Path
    site_name: str | None
    bench: BenchConfig
    provision: ProvisionConfig
    supervisor: SupervisorConfig
    storage: StorageConfig
    backups: BackupConfig

    @property
    def provision_site(self) -> str:
        """Return the site created during bootstrap."""
        return self.site_name or self.provision.default_site

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "apps_file": str(self.apps_file),
            "site_name": self.site_name,
            "bench": self.bench.to_dict(),
            "provision": self.provision.to_dict(),
            "supervisor": self.supervisor.to_dict(),
            "storage": self.storage.to_dict(),
            "backups": self.backups.to_dict(),
        }


@dataclass(frozen=True)
class BackupSettings:
    """Validated settings required by backup and restore."""

    site_name: str
    backup_url: str
    region: str
    access_key_id: str
    secret_access_key: str
    url_adjusted: bool = False

    def site_prefix(self, backup_id: str) -> str:
        """Return ``<url><site>/<backup-id>/`` for *backup_id*."""
        return f"{self.backup_url}{self.site_name}/{backup_id.strip('/')}/"

    def aws_env(self) -> dict[str, str]:
        """Return the environment the AWS CLI reads credentials from."""
        return {
            "AWS_ACCESS_KEY_ID": self.access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.secret_access_key,
            "AWS_DEFAULT_REGION": self.region,
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/benchops/config.yml",
    "logs_dir": "/var/log/benchops",
    "apps_file": "/home/frappe/apps.txt",
    "site_name": None,
    "bench": {
        "dir": "/home/frappe/frappe-bench",
        "bin": "/home/frappe/.local/bin/bench",
        "user": "frappe",
        "group": "frappe",
        "home": "/home/frappe",
    },
    "provision": {
        "default_site": "erpnext.local",
        "mariadb_host": "mariadb",
        "redis_url": "redis://redis:6379",
        "db_root_password": None,
        "admin_password": "admin",
        "db_user_host_login_scope": "%",
        "developer_mode": True,
    },
    "supervisor": {
        "config_file": None,  # derived from bench.dir when absent
        "web_program": None,  # derived from the bench directory name
        "web_port": 8000,
        "conf_dir": "/etc/supervisor/conf.d",
        "supervisord_bin": "/usr/bin/supervisord",
        "supervisord_conf": "/etc/supervisor/supervisord.conf",
    },
    "storage": {
        "backup_url": None,
        "region": None,
        "access_key_id": None,
        "secret_access_key": None,
        "aws_bin": "aws",
    },
    "backups": {
        "retention_days": 7,
        "temp_dir": None,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    name: set(cast(Mapping[str, object], value).keys())
    for name, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    well_known = _build_well_known_overrides(resolved_env)
    if well_known:
        _deep_merge(merged, well_known)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def require_backup_settings(config: AppConfig) -> BackupSettings:
    """Return :class:`BackupSettings` or raise listing every missing variable."""
    values = {
        "AWS_ACCESS_KEY_ID": config.storage.access_key_id,
        "AWS_SECRET_ACCESS_KEY": config.storage.secret_access_key,
        "AWS_DEFAULT_REGION": config.storage.region,
        "S3_BACKUP_URL": config.storage.backup_url,
        "FRAPPE_SITE_NAME": config.site_name,
    }
    missing = [name for name in REQUIRED_BACKUP_ENV if not (values[name] or "").strip()]
    if missing:
        joined = ", ".join(missing)
        raise ConfigError(f"Required environment variables are not set: {joined}.")

    backup_url = str(values["S3_BACKUP_URL"]).strip()
    adjusted = False
    if not backup_url.endswith("/"):
        backup_url = f"{backup_url}/"
        adjusted = True

    return BackupSettings(
        site_name=str(values["FRAPPE_SITE_NAME"]).strip(),
        backup_url=backup_url,
        region=str(values["AWS_DEFAULT_REGION"]).strip(),
        access_key_id=str(values["AWS_ACCESS_KEY_ID"]),
        secret_access_key=str(values["AWS_SECRET_ACCESS_KEY"]),
        url_adjusted=adjusted,
    )


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    bench_map = _as_dict(raw.get("bench"), "bench")
    user = bench_map.get("user")
    if user is None or not str(user).strip():
        raise ConfigError("bench.user must be a non-empty string.")

    supervisor_map = _as_dict(raw.get("supervisor"), "supervisor")
    port = _expect_int(supervisor_map.get("web_port"), "supervisor.web_port", default=8000)
    if port <= 0 or port > 65535:
        raise ConfigError(f"supervisor.web_port must be between 1 and 65535. Got {port}.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    retention = _expect_int(
        backups_map.get("retention_days"), "backups.retention_days", default=7
    )
    if retention < 0:
        raise ConfigError("backups.retention_days must be non-negative.")

    provision_map = _as_dict(raw.get("provision"), "provision")
    _expect_bool(provision_map.get("developer_mode"), "provision.developer_mode", default=True)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    bench_mapping = _as_dict(raw.get("bench"), "bench")
    bench = BenchConfig(
        dir=_to_path(bench_mapping.get("dir")),
        bin=str(bench_mapping.get("bin")),
        user=str(bench_mapping.get("user")).strip(),
        group=str(bench_mapping.get("group") or bench_mapping.get("user")).strip(),
        home=_to_path(bench_mapping.get("home")),
    )

    provision_mapping = _as_dict(raw.get("provision"), "provision")
    provision = ProvisionConfig(
        default_site=str(provision_mapping.get("default_site")),
        mariadb_host=str(provision_mapping.get("mariadb_host")),
        redis_url=str(provision_mapping.get("redis_url")),
        db_root_password=_optional_str(provision_mapping.get("db_root_password")),
        admin_password=str(provision_mapping.get("admin_password")),
        db_user_host_login_scope=str(provision_mapping.get("db_user_host_login_scope")),
        developer_mode=_expect_bool(
            provision_mapping.get("developer_mode"), "provision.developer_mode", default=True
        ),
    )

    supervisor_mapping = _as_dict(raw.get("supervisor"), "supervisor")
    supervisor_file_value = supervisor_mapping.get("config_file")
    supervisor_file = (
        _to_path(supervisor_file_value)
        if supervisor_file_value
        else bench.dir / "config" / "supervisor.conf"
    )
    web_program = _optional_str(supervisor_mapping.get("web_program")) or (
        f"{bench.name}-frappe-web"
    )
    supervisor = SupervisorConfig(
        config_file=supervisor_file,
        web_program=web_program,
        web_port=_expect_int(
            supervisor_mapping.get("web_port"), "supervisor.web_port", default=8000
        ),
        conf_dir=_to_path(supervisor_mapping.get("conf_dir")),
        supervisord_bin=str(supervisor_mapping.get("supervisord_bin")),
        supervisord_conf=_to_path(supervisor_mapping.get("supervisord_conf")),
    )

    storage_mapping = _as_dict(raw.get("storage"), "storage")
    storage = StorageConfig(
        backup_url=_optional_str(storage_mapping.get("backup_url")),
        region=_optional_str(storage_mapping.get("region")),
        access_key_id=_optional_str(storage_mapping.get("access_key_id")),
        secret_access_key=_optional_str(storage_mapping.get("secret_access_key")),
        aws_bin=str(storage_mapping.get("aws_bin") or "aws"),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    temp_dir_value = backups_mapping.get("temp_dir")
    backups = BackupConfig(
        retention_days=_expect_int(
            backups_mapping.get("retention_days"), "backups.retention_days", default=7
        ),
        temp_dir=_to_path(temp_dir_value) if temp_dir_value else None,
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        apps_file=_to_path(raw.get("apps_file")),
        site_name=_optional_str(raw.get("site_name")),
        bench=bench,
        provision=provision,
        supervisor=supervisor,
        storage=storage,
        backups=backups,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if tuple(path_segments) in TYPED_ENV_KEYS:
            _assign_nested(overrides, path_segments, _coerce_value(value))
        else:
            _assign_nested(overrides, path_segments, value)
    return overrides


def _build_well_known_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for name, path in WELL_KNOWN_ENV.items():
        value = env.get(name)
        if value is None or not value.strip():
            continue
        _assign_nested(overrides, list(path), value)
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


_TRUE_WORDS = {"true", "yes", "on", "1"}
_FALSE_WORDS = {"false", "no", "off", "0"}


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    raise ConfigError(f"Invalid boolean for {label}: {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "ALL_SITES",
    "AppConfig",
    "BackupConfig",
    "BackupSettings",
    "BenchConfig",
    "ConfigError",
    "ProvisionConfig",
    "REQUIRED_BACKUP_ENV",
    "StorageConfig",
    "SupervisorConfig",
    "load_config",
    "require_backup_settings",
]
