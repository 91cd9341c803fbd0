"""Provider interfaces for benchops."""
from __future__ import annotations

from .bench import BenchError, BenchProvider, NewSiteOptions, RestoreOptions
from .storage import AwsCli, AwsCliError, AwsCliInstaller, AwsCliInstallError

__all__ = [
    "AwsCli",
    "AwsCliError",
    "AwsCliInstallError",
    "AwsCliInstaller",
    "BenchError",
    "BenchProvider",
    "NewSiteOptions",
    "RestoreOptions",
]
