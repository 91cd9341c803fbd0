"""Typer-powered command line interface for ``benchops``.

``benchops`` sequences the ``bench``, ``aws`` and ``supervisord`` command line
tools to run a Frappe/ERPNext bench inside a container: first-run bootstrap,
app installation, the supervisor web process rewrite, and site backups to and
restores from S3.
"""
from __future__ import annotations

import json
import shlex
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import get_version
from .accounts import CommandError, ServiceAccountRunner
from .backups import (
    ArtifactKind,
    BackupError,
    BackupSet,
    MissingArtifactError,
    RestoreWorkspace,
    download_backup_set,
    find_latest_backup,
    prune_local_backups,
    site_backup_dir,
    upload_backup_set,
)
from .config import ALL_SITES, AppConfig, BackupSettings, ConfigError, load_config
from .config import require_backup_settings as _load_backup_settings
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .providers import (
    AwsCli,
    AwsCliError,
    AwsCliInstaller,
    AwsCliInstallError,
    BenchError,
    BenchProvider,
)
from .provisioning import (
    ProvisioningError,
    bootstrap_bench,
    configure_supervisor,
    exec_supervisord,
    install_apps,
    read_app_list,
)
from .supervisor import SupervisorConfigError, rewrite_file, web_program_rewrite

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to benchops' YAML config file.",
)

APPS_FILE_OPTION = typer.Option(
    None,
    "--apps-file",
    dir_okay=False,
    help="File listing the apps to install, one per line.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Frappe/ERPNext bench operations inside a container.

        Bootstraps the bench and site on first start, rewrites the generated
        supervisor config to serve with 'bench serve', and moves site backups
        to and from S3 through the AWS CLI.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    runner: ServiceAccountRunner
    bench: BenchProvider


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logger = StructuredLogger(config.logs_dir)
    runner = ServiceAccountRunner(user=config.bench.user, group=config.bench.group)
    bench = BenchProvider(runner=runner, bench_dir=config.bench.dir, bench_bin=config.bench.bin)
    runtime = RuntimeContext(config=config, logger=logger, runner=runner, bench=bench)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the benchops version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"benchops {get_version()}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


# Shared helpers -----------------------------------------------------


def _report(message: str) -> None:
    console.print(escape(message))


def _print_output(output: str) -> None:
    text = output.rstrip()
    if text:
        console.print(text, markup=False, highlight=False)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc), context=context)
    raise typer.Exit(code=int(rc))


def _provider_error(
    op: OperationScope,
    message: str,
    output: str = "",
    *,
    context: Mapping[str, object] | None = None,
) -> NoReturn:
    if output.strip():
        console.print("[red]Command output:[/red]")
        _print_output(output)
    _command_error(op, message, rc=ExitCode.PROVIDER, context=context)


def _require_backup_settings(runtime: RuntimeContext, op: OperationScope) -> BackupSettings:
    try:
        settings = _load_backup_settings(runtime.config)
    except ConfigError as exc:
        _command_error(op, str(exc), rc=ExitCode.VALIDATION)
    if settings.url_adjusted:
        console.print(
            "[yellow]S3_BACKUP_URL did not end with a slash. Using "
            f"{escape(settings.backup_url)}[/yellow]"
        )
        op.add_step("storage.url", status="warning", detail="appended trailing slash")
    return settings


def _prepare_storage(
    runtime: RuntimeContext,
    settings: BackupSettings,
    op: OperationScope,
) -> AwsCli:
    """Install the AWS CLI when missing and return a client bound to *settings*."""
    aws_bin = runtime.config.storage.aws_bin
    installer = AwsCliInstaller(aws_bin=aws_bin)
    try:
        if installer.ensure():
            console.print("AWS CLI v2 installed successfully.")
            op.add_step("aws.install", status="success")
    except AwsCliInstallError as exc:
        _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

    storage = AwsCli(aws_bin=aws_bin, env=settings.aws_env())
    try:
        _report(f"AWS CLI found: {storage.version()}")
    except AwsCliError as exc:
        _command_error(op, f"AWS CLI is not usable: {exc}", rc=ExitCode.ENVIRONMENT)
    return storage


# Commands -----------------------------------------------------------


@app.command()
def init(
    ctx: typer.Context,
    no_exec: bool = typer.Option(
        False,
        "--no-exec",
        help="Prepare the bench and supervisor config but do not start supervisord.",
    ),
    skip_bootstrap: bool = typer.Option(
        False,
        "--skip-bootstrap",
        help="Skip bench init and site creation; only regenerate the supervisor config.",
    ),
    apps_file: Path | None = APPS_FILE_OPTION,
) -> None:
    """Container entrypoint: bootstrap once, rewrite supervisor config, run supervisord."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    apps_path = apps_file or config.apps_file

    with runtime.logger.operation(
        "init",
        args={"no_exec": no_exec, "skip_bootstrap": skip_bootstrap, "apps_file": apps_path},
        target={"kind": "bench", "path": config.bench.dir},
    ) as op:
        console.print("Initializing ERPNext bench...")
        context: dict[str, object] = {}
        try:
            if not skip_bootstrap:
                apps = read_app_list(apps_path)
                result = bootstrap_bench(
                    config, runtime.bench, runtime.runner, apps, report=_report
                )
                context["bootstrap"] = result.to_dict()
                op.add_step(
                    "bootstrap",
                    status="success" if result.initialised else "info",
                    detail=result.to_dict(),
                )
            report = configure_supervisor(config, runtime.bench, runtime.runner, report=_report)
        except ProvisioningError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except BenchError as exc:
            _provider_error(op, f"bench command failed: {exc}", exc.output)
        except CommandError as exc:
            _provider_error(op, str(exc), exc.output)
        except SupervisorConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        context["supervisor"] = report.to_dict()
        console.print(
            f"[green]Supervisor config ready[/green] ({escape(str(report.path))}, "
            f"{report.counts['replaced']} replaced, {report.counts['commented']} commented)."
        )
        op.success("Bench initialised.", changed=1 if report.changed else 0, context=context)

    if no_exec:
        return
    console.print("Starting supervisord in the foreground...")
    try:
        exec_supervisord(config)
    except OSError as exc:
        console.print(f"[red]Failed to start supervisord: {escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc


# apps ---------------------------------------------------------------

apps_app = typer.Typer(help="Inspect and install apps from the apps list.")
supervisor_app = typer.Typer(help="Generate and rewrite the supervisor configuration.")
backups_app = typer.Typer(help="Back up sites to S3 and restore them.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(apps_app, name="apps")
app.add_typer(supervisor_app, name="supervisor")
app.add_typer(backups_app, name="backup")
app.add_typer(config_app, name="config")


@apps_app.command("list")
def apps_list(
    ctx: typer.Context,
    apps_file: Path | None = APPS_FILE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the apps listed in the apps file."""
    runtime = _get_runtime(ctx)
    apps_path = apps_file or runtime.config.apps_file
    with runtime.logger.operation(
        "apps list",
        args={"apps_file": apps_path, "json": json_output},
        target={"kind": "apps"},
    ) as op:
        apps = read_app_list(apps_path)
        if json_output:
            console.print_json(data={"apps_file": str(apps_path), "apps": apps})
        elif not apps:
            console.print(f"No apps listed in {escape(str(apps_path))}.")
        else:
            for name in apps:
                console.print(f"- {escape(name)}")
        op.success("Listed apps.", changed=0, context={"apps": apps})


@apps_app.command("install")
def apps_install(
    ctx: typer.Context,
    apps_file: Path | None = APPS_FILE_OPTION,
    site: str | None = typer.Option(
        None,
        "--site",
        help="Site to install on (defaults to FRAPPE_SITE_NAME or the provisioned site).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Fetch missing apps and install every listed app on the site."""
    runtime = _get_runtime(ctx)
    apps_path = apps_file or runtime.config.apps_file
    with runtime.logger.operation(
        "apps install",
        args={"apps_file": apps_path, "site": site, "json": json_output},
        target={"kind": "site", "site": site or runtime.config.provision_site},
    ) as op:
        apps = read_app_list(apps_path)
        if not apps:
            console.print(f"[yellow]No apps listed in {escape(str(apps_path))}.[/yellow]")
            op.warning("No apps to install.", warnings=[f"empty apps file: {apps_path}"])
            return
        try:
            result = install_apps(runtime.config, runtime.bench, apps, site=site, report=_report)
        except ProvisioningError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        except BenchError as exc:
            _provider_error(op, f"bench command failed: {exc}", exc.output)

        if json_output:
            console.print_json(data=result.to_dict())
        else:
            console.print(
                f"[green]Installed {len(result.installed)} app(s) on "
                f"{escape(result.site)}.[/green]"
            )
        op.success("Apps installed.", changed=len(result.installed), context=result.to_dict())


# supervisor ---------------------------------------------------------


@supervisor_app.command("generate")
def supervisor_generate(ctx: typer.Context) -> None:
    """Regenerate the bench supervisor config, rewrite the web program and link it."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "supervisor generate",
        target={"kind": "supervisor", "path": runtime.config.supervisor.config_file},
    ) as op:
        try:
            report = configure_supervisor(
                runtime.config, runtime.bench, runtime.runner, report=_report
            )
        except BenchError as exc:
            _provider_error(op, f"bench command failed: {exc}", exc.output)
        except CommandError as exc:
            _provider_error(op, str(exc), exc.output)
        except SupervisorConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)
        console.print(f"[green]Supervisor config ready:[/green] {escape(str(report.path))}")
        op.success("Supervisor config generated.", changed=1, context=report.to_dict())


@supervisor_app.command("rewrite")
def supervisor_rewrite(
    ctx: typer.Context,
    file: Path | None = typer.Option(
        None,
        "--file",
        dir_okay=False,
        help="Supervisor config to rewrite (defaults to the bench's config/supervisor.conf).",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show the edits without writing the file.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Swap the web program's gunicorn command for 'bench serve'."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    path = file or config.supervisor.config_file
    with runtime.logger.operation(
        "supervisor rewrite",
        args={"file": path, "dry_run": dry_run, "json": json_output},
        target={"kind": "supervisor", "program": config.supervisor.web_program},
    ) as op:
        rule = web_program_rewrite(
            config.supervisor.web_program,
            bench_bin=config.bench.bin,
            bench_dir=config.bench.dir,
            port=config.supervisor.web_port,
        )
        try:
            report = rewrite_file(path, rule, dry_run=dry_run)
        except SupervisorConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            for edit in payload["edits"]:  # type: ignore[union-attr]
                console.print(
                    f"{edit['line']:>4} {edit['action']:<9} {edit['after']}",
                    markup=False,
                    highlight=False,
                )
            if dry_run:
                console.print("[yellow]Dry run[/yellow]: no changes written.")
            elif report.written:
                console.print(f"[green]Rewrote {escape(str(path))}.[/green]")
            else:
                console.print(f"{escape(str(path))} already up to date.")
        op.success(
            "Supervisor config rewritten." if report.written else "No changes written.",
            changed=1 if report.written else 0,
            context={"counts": report.counts, "dry_run": dry_run},
        )


# backups ------------------------------------------------------------


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    no_prune: bool = typer.Option(
        False,
        "--no-prune",
        help="Keep local backup files older than the retention window.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Back up FRAPPE_SITE_NAME with files and upload the set to S3_BACKUP_URL."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "backup create",
        args={"no_prune": no_prune, "json": json_output},
        target={"kind": "site", "site": config.site_name},
    ) as op:
        console.print("Starting S3 backup process...")
        settings = _require_backup_settings(runtime, op)
        site = settings.site_name
        if site == ALL_SITES:
            _command_error(
                op,
                "Backing up all sites is not supported; set FRAPPE_SITE_NAME to a single site.",
                rc=ExitCode.VALIDATION,
            )
        _report(f"Target site for backup: {site}")
        _report(f"Backup destination: {settings.backup_url}")

        storage = _prepare_storage(runtime, settings, op)

        site_dir = config.bench.sites_dir / site
        if not site_dir.is_dir():
            _command_error(op, f"Site directory {site_dir} does not exist.")
        backup_dir = site_backup_dir(config.bench.sites_dir, site)

        _report(f"Creating backup for site {site} with files in {backup_dir}")
        try:
            runtime.runner.ensure_directory(backup_dir)
            result = runtime.bench.backup(site, with_files=True)
        except BenchError as exc:
            _provider_error(op, f"Error during bench backup: {exc}", exc.output)
        except CommandError as exc:
            _provider_error(op, str(exc), exc.output)
        _print_output(result.output)
        op.add_step("bench.backup", status="success")

        try:
            local = find_latest_backup(backup_dir)
        except BackupError as exc:
            _provider_error(op, str(exc), result.output)
        _report(f"Identified backup prefix: {local.prefix}")

        remote_prefix = settings.site_prefix(local.prefix)
        _report(f"Uploading {len(local.files)} file(s) to {remote_prefix}")
        upload = upload_backup_set(storage, local, remote_prefix)
        for name in upload.uploaded:
            _report(f"Uploaded {name}.")
        if not upload.ok:
            for name, reason in upload.failed.items():
                console.print(f"[red]Error uploading {escape(name)}: {escape(reason)}[/red]")
            _command_error(
                op,
                f"One or more files failed to upload for prefix {local.prefix}.",
                rc=ExitCode.PROVIDER,
                errors=[f"{name}: {reason}" for name, reason in upload.failed.items()],
                context={"upload": upload.to_dict()},
            )

        pruned: list[Path] = []
        if not no_prune:
            retention = config.backups.retention_days
            _report(f"Removing local backup files older than {retention} days in {backup_dir}")
            pruned = prune_local_backups(backup_dir, retention)
            for path in pruned:
                _report(f"Removed {path}")

        payload: dict[str, object] = {
            "site": site,
            "backup_id": local.prefix,
            "upload": upload.to_dict(),
            "pruned": [str(path) for path in pruned],
        }
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(
                f"[green]Backup '{escape(local.prefix)}' uploaded to "
                f"{escape(remote_prefix)}.[/green]"
            )
        op.success(
            "Backup created and uploaded.",
            changed=len(upload.uploaded),
            backups=[local.prefix],
            context=payload,
        )


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    name: str = typer.Option(
        ...,
        "--name",
        "-n",
        help="Backup set identifier in S3 (e.g. 20250101_120000-erpnext_local).",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Confirm automatically (non-interactive); also passes --force to bench restore.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Download a backup set from S3 and restore FRAPPE_SITE_NAME from it."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "backup restore",
        args={"name": name, "yes": yes, "json": json_output},
        target={"kind": "backup", "id": name, "site": config.site_name},
    ) as op:
        console.print("Starting S3 restore process...")
        settings = _require_backup_settings(runtime, op)
        site = settings.site_name
        if site == ALL_SITES:
            _command_error(
                op,
                "FRAPPE_SITE_NAME cannot be 'all' for a restore; set it to a specific site.",
                rc=ExitCode.VALIDATION,
            )
        try:
            backup_set = BackupSet(name)
        except BackupError as exc:
            _command_error(op, str(exc), rc=ExitCode.VALIDATION)

        remote_prefix = settings.site_prefix(backup_set.backup_id)
        _report(f"Target site for restore: {site}")
        _report(f"Source path for backup files: {remote_prefix}")

        storage = _prepare_storage(runtime, settings, op)

        with RestoreWorkspace(backup_set.backup_id, root=config.backups.temp_dir) as workspace:
            _report(f"Downloading backup files to {workspace.directory}")
            try:
                fetched = download_backup_set(
                    storage, remote_prefix, backup_set, workspace.directory
                )
            except MissingArtifactError as exc:
                _command_error(op, str(exc), rc=ExitCode.VALIDATION)

            for kind, outcome in fetched.outcomes.items():
                if outcome.obtained:
                    _report(f"Downloaded {kind.label}: {outcome.path}")
                else:
                    _report(f"{kind.label.capitalize()} skipped ({outcome.reason}).")
            if fetched.path_for(ArtifactKind.SITE_CONFIG) is None:
                op.add_step("artifact.site_config", status="info", detail="not available")

            options = fetched.restore_options(site, force=yes)
            command = shlex.join([config.bench.bin, *options.to_args()])
            _report(f"Restore command: {command}")
            op.add_step("restore.plan", status="info", detail=fetched.to_dict())

            if not yes:
                console.print(
                    f"\nYou are about to restore site '{escape(site)}' from backup "
                    f"'{escape(backup_set.backup_id)}'.\n"
                    f"This will overwrite existing data for site '{escape(site)}'."
                )
                answer = typer.prompt(
                    "Are you sure you want to continue? (yes/No)",
                    default="No",
                    show_default=False,
                )
                if answer.strip() != "yes":
                    console.print("Restore cancelled.")
                    op.success("Restore cancelled by user.", changed=0)
                    return

            workspace.grant_read()
            try:
                result = runtime.bench.restore(options)
            except BenchError as exc:
                workspace.retain()
                console.print(
                    "[yellow]Downloaded backup files are kept in "
                    f"{escape(str(workspace.directory))} for inspection.[/yellow]"
                )
                _provider_error(
                    op,
                    f"Error during bench restore: {exc}",
                    exc.output,
                    context={"workspace": str(workspace.directory)},
                )
            _print_output(result.output)

        payload: dict[str, object] = {
            "site": site,
            "backup_id": backup_set.backup_id,
            "artifacts": fetched.to_dict()["artifacts"],
            "command": command,
        }
        if json_output:
            console.print_json(data=payload)
        else:
            console.print(
                f"[green]Restored site '{escape(site)}' from backup "
                f"'{escape(backup_set.backup_id)}'.[/green]"
            )
        op.success("Site restored.", changed=1, backups=[backup_set.backup_id], context=payload)


# config -------------------------------------------------------------


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges (secrets redacted)."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, escape(rendered))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
