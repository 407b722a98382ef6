"""
CLI entrypoint for yamisskey-doctor.

Provides commands for check, restore, verify, repair and version.

Exit codes:
    check:        0 healthy / 1 degraded / 2 unhealthy or usage error
    other verbs:  0 success / 1 failure / 2 usage error
"""
import asyncio
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import typer

from yamisskey_doctor import __version__
from yamisskey_doctor.backup.lifecycle import (
    LOCAL_VERIFY_TOOLS,
    PIPELINE_TOOLS,
    RestoreOutcome,
    build_lifecycle,
    select_backup,
)
from yamisskey_doctor.cli_output import (
    echo_json,
    print_critical_error,
    render_backup_list,
    render_check_text,
    render_repair_text,
    render_restore_plan,
    render_verify_text,
)
from yamisskey_doctor.config.config import DoctorConfig, apply_cli_overrides, load_config
from yamisskey_doctor.config.dotenv_loader import load_dotenv_files
from yamisskey_doctor.exceptions import ConfigError, DoctorError, OperationalError, SelectionError, StageFailedError
from yamisskey_doctor.health.classifier import run_check
from yamisskey_doctor.monitoring.logger import get_logger, setup_logging
from yamisskey_doctor.repair.engine import RepairEngine, RepairFilter
from yamisskey_doctor.storage.db import Database
from yamisskey_doctor.utils.external import RCLONE, require_tools
from yamisskey_doctor.utils.prompts import AlwaysYes, Confirmer, PromptStdin, choose_backup

app = typer.Typer(
    name="yamisskey-doctor",
    help="Misskey instance diagnostics and repair tool",
    add_completion=False,
    no_args_is_help=True,
)

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


class OutputFormat(str, Enum):
    text = "text"
    json = "json"


class StorageChoice(str, Enum):
    r2 = "r2"
    linode = "linode"


def _bootstrap(**overrides) -> DoctorConfig:
    """Load configuration once, apply flags, configure logging."""
    try:
        config = apply_cli_overrides(load_config(), **overrides)
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_USAGE)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


def _fail(message: str, code: int = EXIT_FAILURE) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code)


def _confirmer(config: DoctorConfig) -> Confirmer:
    return AlwaysYes() if config.force else PromptStdin()


def _interactive_choice(names: List[str]) -> Optional[str]:
    typer.echo("\nAvailable backups:")
    for i, name in enumerate(names, start=1):
        typer.echo(f"  [{i}] {name}")
    return choose_backup(names)


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------

@app.command()
def check(
    target: str = typer.Argument(..., help="Instance URL or host (https:// is assumed)"),
    output: OutputFormat = typer.Option(OutputFormat.text, "--format", "-f", help="Output format"),
    timeout: Optional[int] = typer.Option(None, "--timeout", "-t", help="Overall deadline in seconds (default 5)"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="No output; exit code only"),
):
    """
    Check Misskey API / streaming health.

    Set MISSKEY_TOKEN to include the admin queue and server probes.

    Example:
        yamisskey-doctor check example.com --format json
    """
    config = _bootstrap(timeout_seconds=timeout)

    verdict = asyncio.run(run_check(target, config.check))

    if not quiet:
        if output == OutputFormat.json:
            echo_json(verdict.to_dict(), indent=None)
        else:
            render_check_text(verdict, config.check.queue_delayed_threshold)

    raise typer.Exit(verdict.status.exit_code)


# ---------------------------------------------------------------------------
# restore
# ---------------------------------------------------------------------------

@app.command()
def restore(
    list_only: bool = typer.Option(False, "--list", "-l", help="List available backups"),
    latest: bool = typer.Option(False, "--latest", help="Restore the latest backup"),
    storage: Optional[StorageChoice] = typer.Option(None, "--storage", "-s", help="Storage type"),
    file: Optional[str] = typer.Option(None, "--file", "-f", help="Specific backup file to restore"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="Target database name"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be done without executing"),
    force: bool = typer.Option(False, "--force", help="Skip confirmation prompt"),
):
    """
    Restore the database from a backup.

    Examples:
        yamisskey-doctor restore --list
        yamisskey-doctor restore --storage linode --latest
        yamisskey-doctor restore --file mk1_2025-01-01_03-00.sql.7z --dry-run
    """
    config = _bootstrap(
        storage_type=storage.value if storage else None,
        database=database,
        dry_run=dry_run,
        force=force,
    )
    needs_catalog = list_only or not file

    try:
        if config.dry_run or list_only:
            require_tools((RCLONE,) if needs_catalog else ())
        else:
            require_tools(PIPELINE_TOOLS)

        lifecycle = build_lifecycle(config, progress=typer.echo)
        name = _resolve_backup(lifecycle, config, list_only=list_only, latest=latest, file=file)
        if name is None:
            raise typer.Exit(EXIT_OK)

        outcome = lifecycle.restore(name, _confirmer(config))
    except StageFailedError as e:
        _fail(f"{e} (stage: {e.stage.value})")
    except (SelectionError, OperationalError) as e:
        _fail(str(e))

    if outcome == RestoreOutcome.DRY_RUN:
        render_restore_plan(lifecycle.plan_restore(name))
    elif outcome == RestoreOutcome.CANCELLED:
        typer.echo("Cancelled.")
    else:
        typer.echo("\nRestore completed successfully!")
    raise typer.Exit(EXIT_OK)


def _resolve_backup(
    lifecycle,
    config: DoctorConfig,
    *,
    list_only: bool,
    latest: bool,
    file: Optional[str],
    echo: Callable[[str], None] = typer.echo,
) -> Optional[str]:
    """Pick the backup to work on; None means there is nothing more to do."""
    if file and not list_only:
        return file

    echo(f"Fetching backup list from {config.storage.storage_type}...")
    backups = lifecycle.list_backups()
    if not backups:
        echo("No backups found.")
        return None
    if list_only:
        render_backup_list(backups)
        return None

    name = select_backup(backups, latest=latest, choose=_interactive_choice)
    if name is None:
        echo("Cancelled.")
    elif latest:
        echo(f"Selected latest backup: {name}")
    return name


# ---------------------------------------------------------------------------
# verify
# ---------------------------------------------------------------------------

@app.command()
def verify(
    list_only: bool = typer.Option(False, "--list", "-l", help="List available backups"),
    latest: bool = typer.Option(False, "--latest", help="Verify the latest backup"),
    storage: Optional[StorageChoice] = typer.Option(None, "--storage", "-s", help="Storage type"),
    file: Optional[str] = typer.Option(None, "--file", "-f", help="Specific backup file to verify"),
    local: Optional[Path] = typer.Option(None, "--local", help="Verify a local SQL file (skip download/extract)"),
    output: OutputFormat = typer.Option(OutputFormat.text, "--format", help="Output format"),
):
    """
    Verify that a backup can be restored, using a throwaway database.

    Examples:
        yamisskey-doctor verify --latest
        yamisskey-doctor verify --local /path/to/backup.sql --format json
    """
    config = _bootstrap(storage_type=storage.value if storage else None)
    as_json = output == OutputFormat.json

    def progress(message: str) -> None:
        typer.echo(message, err=as_json)

    try:
        lifecycle = build_lifecycle(config, progress=progress)
        if local is not None:
            require_tools(LOCAL_VERIFY_TOOLS)
            progress(f"Verifying local SQL file: {local}")
            result = lifecycle.verify_local(local)
        else:
            require_tools((RCLONE,) if list_only else PIPELINE_TOOLS)
            name = _resolve_backup(lifecycle, config, list_only=list_only, latest=latest, file=file, echo=progress)
            if name is None:
                raise typer.Exit(EXIT_OK)
            progress(f"\nVerifying backup: {name}")
            result = lifecycle.verify(name)
    except (SelectionError, OperationalError) as e:
        _fail(str(e))

    if as_json:
        echo_json(result.to_dict())
    else:
        render_verify_text(result)
    raise typer.Exit(EXIT_OK if result.ok else EXIT_FAILURE)


# ---------------------------------------------------------------------------
# repair
# ---------------------------------------------------------------------------

@app.command()
def repair(
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview changes without modifying data"),
    force: bool = typer.Option(False, "--force", help="Skip confirmation prompt"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="Target database name"),
    output: OutputFormat = typer.Option(OutputFormat.text, "--format", help="Output format"),
    orphans: bool = typer.Option(False, "--orphans", help="Only fix orphan records"),
    reindex: bool = typer.Option(False, "--reindex", help="Only rebuild indexes"),
    vacuum: bool = typer.Option(False, "--vacuum", help="Only run VACUUM ANALYZE"),
):
    """
    Repair database inconsistencies.

    Deletes orphan notes, reactions, notifications and drive files, then
    rebuilds indexes (REINDEX) and refreshes statistics (VACUUM ANALYZE).

    Examples:
        yamisskey-doctor repair --dry-run
        yamisskey-doctor repair --orphans --force
    """
    selection = _repair_selection(orphans=orphans, reindex=reindex, vacuum=vacuum)
    config = _bootstrap(database=database, dry_run=dry_run, force=force)
    db = Database(config.postgres.url())
    try:
        result = RepairEngine(db, dry_run=config.dry_run).run(selection, _confirmer(config))
    finally:
        db.dispose()

    if result is None:
        typer.echo("Cancelled.")
        raise typer.Exit(EXIT_OK)
    if output == OutputFormat.json:
        echo_json(result.to_dict())
    else:
        render_repair_text(result)
    raise typer.Exit(EXIT_OK if result.ok else EXIT_FAILURE)


def _repair_selection(*, orphans: bool, reindex: bool, vacuum: bool) -> RepairFilter:
    chosen = [f for f, on in ((RepairFilter.ORPHANS, orphans), (RepairFilter.REINDEX, reindex), (RepairFilter.VACUUM, vacuum)) if on]
    if len(chosen) > 1:
        raise typer.BadParameter("--orphans, --reindex and --vacuum are mutually exclusive")
    return chosen[0] if chosen else RepairFilter.ALL


# ---------------------------------------------------------------------------
# version
# ---------------------------------------------------------------------------

@app.command(name="version")
def version_cmd():
    """Show version."""
    typer.echo(__version__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    ),
):
    """
    yamisskey-doctor - Misskey instance diagnostics and repair tool.
    """


def run() -> None:
    """Console-script entry: load dotenv files, then dispatch."""
    load_dotenv_files()
    try:
        app()
    except DoctorError as e:
        logger.error("UNHANDLED_DOCTOR_ERROR", error=str(e), error_type=type(e).__name__)
        print_critical_error("yamisskey-doctor failed", e)
        raise SystemExit(EXIT_FAILURE)


if __name__ == "__main__":
    run()
