"""Backup artifact model and the download/upload pipeline for site backups.

A bench backup run produces up to four files that share a timestamp-derived
prefix (``20250101_120000-erpnext_local``)::

    <prefix>-database.sql.gz          mandatory
    <prefix>-private-files.tar.gz     optional
    <prefix>-public-files.tar.gz      optional
    <prefix>-site_config_backup.json  optional

In object storage they live under ``<bucket-url>/<site>/<prefix>/``.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Protocol

from .providers.bench import RestoreOptions
from .providers.storage import AwsCliError

LOGGER = logging.getLogger(__name__)


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class MissingArtifactError(BackupError):
    """Raised when the mandatory database dump is absent or empty."""


class ArtifactKind(Enum):
    """The well-known files of a backup set, keyed by name suffix."""

    DATABASE = "database.sql.gz"
    PRIVATE_FILES = "private-files.tar.gz"
    PUBLIC_FILES = "public-files.tar.gz"
    SITE_CONFIG = "site_config_backup.json"

    @property
    def suffix(self) -> str:
        """Return the file name suffix including the joining dash."""
        return f"-{self.value}"

    @property
    def mandatory(self) -> bool:
        """Return True for the artifact a restore cannot do without."""
        return self is ArtifactKind.DATABASE

    @property
    def label(self) -> str:
        """Return a human readable label."""
        return _LABELS[self]


_LABELS = {
    ArtifactKind.DATABASE: "SQL backup",
    ArtifactKind.PRIVATE_FILES: "private files",
    ArtifactKind.PUBLIC_FILES: "public files",
    ArtifactKind.SITE_CONFIG: "site config backup",
}


class ObjectStorage(Protocol):
    """Minimal storage surface used by the transfer pipeline."""

    def download(self, uri: str, destination: Path) -> None:
        """Copy object *uri* to *destination*."""

    def upload(self, source: Path, uri: str) -> None:
        """Copy *source* to object *uri*."""


@dataclass(frozen=True, slots=True)
class BackupSet:
    """Identifier shared by the artifacts of a single backup run."""

    backup_id: str

    def __post_init__(self) -> None:
        """Reject identifiers that cannot name an object prefix."""
        value = self.backup_id.strip()
        if not value:
            raise BackupError("Backup identifier must be a non-empty string.")
        if "/" in value:
            raise BackupError(f"Backup identifier must not contain '/': {value!r}.")
        object.__setattr__(self, "backup_id", value)

    def object_name(self, kind: ArtifactKind) -> str:
        """Return the file/object name of *kind* within this set."""
        return f"{self.backup_id}{kind.suffix}"

    @classmethod
    def from_database_dump(cls, path: Path) -> BackupSet:
        """Derive the set from a ``<prefix>-database.sql.gz`` file name."""
        name = path.name
        suffix = ArtifactKind.DATABASE.suffix
        if not name.endswith(suffix):
            raise BackupError(f"{name} is not a database dump.")
        return cls(name[: -len(suffix)])


@dataclass(slots=True)
class ArtifactOutcome:
    """Result of fetching one artifact."""

    kind: ArtifactKind
    remote: str
    path: Path | None = None
    reason: str | None = None

    @property
    def obtained(self) -> bool:
        """Return True when a non-empty local copy exists."""
        return self.path is not None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind.name.lower(),
            "remote": self.remote,
            "path": str(self.path) if self.path else None,
            "status": "downloaded" if self.obtained else "skipped",
            "reason": self.reason,
        }


@dataclass(slots=True)
class FetchedBackup:
    """Artifacts of a backup set that were actually downloaded."""

    backup_set: BackupSet
    directory: Path
    outcomes: dict[ArtifactKind, ArtifactOutcome] = field(default_factory=dict)

    def path_for(self, kind: ArtifactKind) -> Path | None:
        """Return the local path of *kind*, or None when it was skipped."""
        outcome = self.outcomes.get(kind)
        return outcome.path if outcome is not None else None

    @property
    def database(self) -> Path:
        """Return the local database dump."""
        path = self.path_for(ArtifactKind.DATABASE)
        if path is None:
            raise MissingArtifactError("Database dump was not downloaded.")
        return path

    def skipped(self) -> list[ArtifactOutcome]:
        """Return the optional artifacts that were not obtained."""
        return [outcome for outcome in self.outcomes.values() if not outcome.obtained]

    def restore_options(self, site: str, *, force: bool) -> RestoreOptions:
        """Compose ``bench restore`` options from the artifacts obtained.

        The site config backup is picked up by ``bench`` from the directory of
        the SQL file, so it never becomes an explicit option.
        """
        return RestoreOptions(
            site=site,
            sql_path=self.database,
            force=force,
            private_files=self.path_for(ArtifactKind.PRIVATE_FILES),
            public_files=self.path_for(ArtifactKind.PUBLIC_FILES),
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "backup_id": self.backup_set.backup_id,
            "directory": str(self.directory),
            "artifacts": [outcome.to_dict() for outcome in self.outcomes.values()],
        }


@dataclass(slots=True)
class LocalBackupSet:
    """Backup files found in a site's local backup directory."""

    backup_set: BackupSet
    directory: Path
    files: list[Path]

    @property
    def prefix(self) -> str:
        """Return the shared file name prefix."""
        return self.backup_set.backup_id


@dataclass(slots=True)
class UploadReport:
    """Outcome of uploading a local backup set."""

    remote_prefix: str
    uploaded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Return True when every file was uploaded."""
        return not self.failed

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "remote_prefix": self.remote_prefix,
            "uploaded": list(self.uploaded),
            "failed": dict(self.failed),
        }


def site_backup_dir(sites_dir: Path, site: str) -> Path:
    """Return the directory ``bench backup`` writes *site* backups to."""
    return sites_dir / site / "private" / "backups"


def download_backup_set(
    storage: ObjectStorage,
    remote_prefix: str,
    backup_set: BackupSet,
    destination: Path,
) -> FetchedBackup:
    """Download the artifacts of *backup_set* from *remote_prefix* into *destination*.

    The database dump must download and be non-empty, otherwise
    :class:`MissingArtifactError` is raised. Optional artifacts that fail to
    download or arrive empty are recorded as skipped and the pipeline moves on.
    """
    prefix = remote_prefix if remote_prefix.endswith("/") else f"{remote_prefix}/"
    fetched = FetchedBackup(backup_set=backup_set, directory=destination)

    for kind in ArtifactKind:
        name = backup_set.object_name(kind)
        remote = f"{prefix}{name}"
        local = destination / name
        outcome = ArtifactOutcome(kind=kind, remote=remote)
        fetched.outcomes[kind] = outcome

        try:
            storage.download(remote, local)
        except AwsCliError as exc:
            if kind.mandatory:
                raise MissingArtifactError(
                    f"Failed to download {kind.label} {name} from {prefix}. Check that "
                    f"the backup name '{backup_set.backup_id}' and path are correct: {exc}"
                ) from exc
            outcome.reason = f"not found in storage or failed to download: {exc}"
            LOGGER.info("%s %s skipped: %s", kind.label, name, outcome.reason)
            continue

        if not _non_empty(local):
            if kind.mandatory:
                raise MissingArtifactError(
                    f"Downloaded {kind.label} {local} is empty or does not exist."
                )
            outcome.reason = "downloaded but empty"
            LOGGER.info("%s %s skipped: %s", kind.label, name, outcome.reason)
            continue

        outcome.path = local
        LOGGER.info("Downloaded %s to %s", kind.label, local)

    return fetched


def find_latest_backup(directory: Path) -> LocalBackupSet:
    """Return the newest backup set in *directory*, keyed by its database dump."""
    dumps = [
        path
        for path in directory.glob(f"*{ArtifactKind.DATABASE.suffix}")
        if path.is_file()
    ]
    if not dumps:
        raise BackupError(f"No SQL backup file found in {directory}.")
    latest = max(dumps, key=lambda path: path.stat().st_mtime)
    backup_set = BackupSet.from_database_dump(latest)
    files = sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.name.startswith(f"{backup_set.backup_id}-")
    )
    return LocalBackupSet(backup_set=backup_set, directory=directory, files=files)


def upload_backup_set(
    storage: ObjectStorage,
    local: LocalBackupSet,
    remote_prefix: str,
) -> UploadReport:
    """Upload every file of *local* under *remote_prefix*; failures are collected."""
    prefix = remote_prefix if remote_prefix.endswith("/") else f"{remote_prefix}/"
    report = UploadReport(remote_prefix=prefix)
    for path in local.files:
        remote = f"{prefix}{path.name}"
        try:
            storage.upload(path, remote)
        except AwsCliError as exc:
            LOGGER.error("Error uploading %s: %s", path.name, exc)
            report.failed[path.name] = str(exc)
            continue
        report.uploaded.append(path.name)
    return report


def prune_local_backups(
    directory: Path,
    retention_days: int,
    *,
    now: float | None = None,
) -> list[Path]:
    """Delete backup artifacts in *directory* older than *retention_days*."""
    if not directory.is_dir():
        return []
    cutoff = (time.time() if now is None else now) - retention_days * 86400
    removed: list[Path] = []
    for kind in ArtifactKind:
        for path in sorted(directory.glob(f"*{kind.suffix}")):
            if not path.is_file():
                continue
            if path.stat().st_mtime >= cutoff:
                continue
            path.unlink()
            removed.append(path)
    return removed


class RestoreWorkspace:
    """Temporary download directory that can be retained after a failure."""

    def __init__(self, backup_id: str, *, root: Path | None = None) -> None:
        """Prepare (but do not yet create) a workspace for *backup_id*."""
        self.backup_id = backup_id
        self.root = root
        self.path: Path | None = None
        self.retained = False

    def __enter__(self) -> RestoreWorkspace:
        """Create the temporary directory."""
        self.path = Path(
            tempfile.mkdtemp(
                prefix=f"frappe_restore_{self.backup_id}_",
                dir=str(self.root) if self.root else None,
            )
        )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Remove the directory unless it was retained."""
        if self.path is not None and not self.retained:
            shutil.rmtree(self.path, ignore_errors=True)

    @property
    def directory(self) -> Path:
        """Return the workspace directory."""
        if self.path is None:
            raise BackupError("Restore workspace has not been created.")
        return self.path

    def retain(self) -> None:
        """Keep the directory on exit for manual inspection."""
        self.retained = True

    def grant_read(self, paths: Iterable[Path] | None = None) -> None:
        """Make the workspace readable by other accounts (``chmod -R 755``)."""
        directory = self.directory
        os.chmod(directory, 0o755)
        targets = list(paths) if paths is not None else list(directory.iterdir())
        for path in targets:
            os.chmod(path, 0o755)


def _non_empty(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


__all__ = [
    "ArtifactKind",
    "ArtifactOutcome",
    "BackupError",
    "BackupSet",
    "FetchedBackup",
    "LocalBackupSet",
    "MissingArtifactError",
    "ObjectStorage",
    "RestoreWorkspace",
    "UploadReport",
    "download_backup_set",
    "find_latest_backup",
    "prune_local_backups",
    "site_backup_dir",
    "upload_backup_set",
]
