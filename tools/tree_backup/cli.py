"""CLI for Tree Backup."""

import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from shared.cli import confirm, create_table, error, handle_errors, info, print_table, success, warning
from shared.logger import close_handlers, log_file_for_run, setup_logger

from .archive import CompressionType, Compressor
from .automator import BackupAutomator, BackupResult
from .config import BackupConfig, LogVerbosity, load_config_file
from .errors import ConfigurationError
from .reporter import format_duration, format_size
from .retention import GenerationKind, RetentionManager

console = Console()

# options whose click default must not override a value from --config
_FILE_OVERRIDABLE = {
    "exclude_patterns": (),
    "use_default_excludes": True,
    "compress": False,
    "compression": None,
    "compressor": None,
    "external_tool_path": None,
    "stage": False,
    "staging_dir": None,
    "clear_staging_after": True,
    "retain_versions": None,
    "prefix": None,
    "workers": None,
    "notify": False,
    "notify_to": (),
    "notify_from": None,
    "smtp_host": None,
    "smtp_port": None,
    "smtp_starttls": False,
    "smtp_username": None,
    "smtp_password": None,
    "log_directory": None,
    "log_verbosity": None,
}


@click.group(context_settings={"auto_envvar_prefix": "TREE_BACKUP"})
def main() -> None:
    """Tree Backup - Directory-tree backups with compression and retention."""
    pass


def merge_options(file_values: Dict[str, Any], cli_values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge config file values with command line values.

    A command line value wins unless it is still the option's default.
    """
    merged = dict(file_values)
    for key, value in cli_values.items():
        default = _FILE_OVERRIDABLE.get(key, object())
        if key in merged and value == default:
            continue
        if value is None:
            continue
        merged[key] = list(value) if isinstance(value, tuple) else value
    return merged


@main.command()
@click.argument("sources", nargs=-1, type=click.Path(path_type=Path))
@click.option("--destination", "-d", type=click.Path(path_type=Path), help="Backup root directory")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON file with configuration values",
)
@click.option("--exclude", "-e", "exclude_patterns", multiple=True, help="Pattern to exclude (repeatable)")
@click.option(
    "--no-default-excludes",
    "use_default_excludes",
    is_flag=True,
    default=True,
    flag_value=False,
    help="Do not exclude caches and VCS metadata by default",
)
@click.option("--compress", is_flag=True, help="Store each generation as a single archive")
@click.option(
    "--compression",
    type=click.Choice([c.value for c in CompressionType]),
    help="Compression of the native tar archive [default: gzip]",
)
@click.option(
    "--compressor",
    type=click.Choice([c.value for c in Compressor]),
    help="Archive with Python (native) or an external 7-Zip binary [default: native]",
)
@click.option("--external-tool", "external_tool_path", type=click.Path(path_type=Path), help="Path of the 7-Zip binary")
@click.option("--stage", is_flag=True, help="Copy to a local staging area first")
@click.option("--staging-dir", type=click.Path(path_type=Path), help="Staging area location [default: temp dir]")
@click.option(
    "--keep-staging",
    "clear_staging_after",
    is_flag=True,
    default=True,
    flag_value=False,
    help="Leave the staging area in place after the run",
)
@click.option("--retain", "-r", "retain_versions", type=int, help="Generations to keep per kind [default: 3]")
@click.option("--prefix", help="Generation name prefix [default: backup]")
@click.option("--workers", type=int, help="Parallel copy workers [default: 4]")
@click.option("--notify", is_flag=True, help="Email the run summary")
@click.option("--notify-to", multiple=True, help="Recipient address (repeatable)")
@click.option("--notify-from", help="Sender address")
@click.option("--smtp-host", help="SMTP server")
@click.option("--smtp-port", type=int, help="SMTP port [default: 25]")
@click.option("--smtp-starttls", is_flag=True, help="Use STARTTLS")
@click.option("--smtp-user", "smtp_username", help="SMTP login name")
@click.option("--smtp-password", help="SMTP password (prefer TREE_BACKUP_RUN_SMTP_PASSWORD)")
@click.option("--log-dir", "log_directory", type=click.Path(path_type=Path), help="Directory for run log files")
@click.option(
    "--log-level",
    "log_verbosity",
    type=click.Choice([v.value for v in LogVerbosity]),
    help="Log verbosity [default: info]",
)
@click.option("--no-progress", is_flag=True, help="Do not show a progress bar")
@handle_errors
def run(sources: tuple, destination: Optional[Path], config_file: Optional[Path], no_progress: bool, **options) -> None:
    """Back up SOURCES into a new generation under DESTINATION.

    Examples:

        \b
        # Copy two trees, keep the last 5 generations
        tree-backup run /data/a /data/b -d /backup --retain 5

        \b
        # Compressed generation, staged locally first
        tree-backup run ~/projects -d /mnt/nas/backup --compress --stage

        \b
        # Exclusions (directories exclude their whole subtree)
        tree-backup run ~/code -d /backup -e "*/node_modules" -e "*/build"
    """
    try:
        file_values = load_config_file(config_file) if config_file else {}
        cli_values = dict(options)
        if sources:
            cli_values["sources"] = list(sources)
        if destination is not None:
            cli_values["destination"] = destination
        values = merge_options(file_values, cli_values)

        if not values.get("sources"):
            raise ConfigurationError("At least one source directory is required")
        if not values.get("destination"):
            raise ConfigurationError("A destination directory is required (--destination)")

        config = BackupConfig(**values)
    except (ConfigurationError, TypeError) as e:
        error(str(e))
        sys.exit(1)

    log_file = None
    if config.log_directory is not None:
        log_file = log_file_for_run(config.log_directory, datetime.now().strftime("%Y%m%d_%H%M%S"))
    setup_logger(__name__, level=config.log_verbosity.value, log_file=log_file)

    automator = BackupAutomator(config, log_file=log_file)
    kind = "archive" if config.compress else "directory"
    console.print(f"\n[cyan]Creating {kind} backup of {len(config.sources)} source(s)...[/cyan]")

    try:
        if no_progress:
            result = automator.create_backup()
        else:
            result = _run_with_progress(automator)
    finally:
        close_handlers()

    display_result(result)
    if not result.success:
        sys.exit(1)


def _run_with_progress(automator: BackupAutomator) -> BackupResult:
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        DownloadColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Copying", total=None)

        def on_progress(state) -> None:
            progress.update(
                task,
                total=max(state.total_bytes, state.bytes_copied),
                completed=state.bytes_copied,
                description=f"Copying {state.files_copied}/{state.total_files}",
            )

        return automator.create_backup(progress_callback=on_progress)


def display_result(result: BackupResult) -> None:
    """Render the run summary as a panel."""
    summary = result.summary

    info_table = Table(show_header=False, box=None)
    info_table.add_column("Key", style="cyan")
    info_table.add_column("Value", style="white")

    info_table.add_row("Files found", f"{summary.files_found} ({format_size(summary.bytes_found)})")
    info_table.add_row("Files copied", f"{summary.files_copied} ({format_size(summary.bytes_copied)})")
    info_table.add_row("Errors", str(summary.error_count))
    info_table.add_row("Duration", format_duration(summary.duration_seconds))
    if summary.generation is not None:
        info_table.add_row("Generation", str(summary.generation))
    if summary.pruned:
        info_table.add_row("Pruned", ", ".join(summary.pruned))
    if summary.log_file is not None:
        info_table.add_row("Log file", str(summary.log_file))
    if summary.fatal_error:
        info_table.add_row("Error", f"[red]{summary.fatal_error}[/red]")

    if not result.success:
        title, style = "[red]✗ Backup Failed[/red]", "red"
    elif summary.error_count:
        title, style = "[yellow]⚠ Backup Completed With Errors[/yellow]", "yellow"
    else:
        title, style = "[green]✓ Backup Created Successfully[/green]", "green"

    console.print(Panel(info_table, title=title, border_style=style))

    for item in summary.errors[:10]:
        warning(str(item))
    if summary.error_count > 10:
        warning(f"... and {summary.error_count - 10} more (see log)")


@main.command(name="list")
@click.argument("destination", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--prefix", default="backup", show_default=True, help="Generation name prefix")
@handle_errors
def list_generations(destination: Path, prefix: str) -> None:
    """List backup generations in DESTINATION.

    Examples:

        \b
        tree-backup list /backup
    """
    manager = RetentionManager(destination, prefix=prefix)
    generations = [g for kind in GenerationKind for g in manager.list_generations(kind)]

    if not generations:
        console.print(
            Panel(
                f"[yellow]No backups found in {destination}[/yellow]",
                title="[yellow]No Backups[/yellow]",
                border_style="yellow",
            )
        )
        return

    generations.sort(key=lambda g: g.timestamp, reverse=True)

    table = create_table(title=f"Backups in {destination}")
    table.add_column("Created", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Name", style="white", no_wrap=True, overflow="fold")
    table.add_column("Size", style="green", justify="right")

    for generation in generations:
        table.add_row(
            generation.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            generation.kind.value,
            generation.name,
            format_size(_generation_size(generation.path)),
        )

    print_table(table)
    info(f"Total backups: {len(generations)}")


def _generation_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    total = 0
    for item in path.rglob("*"):
        try:
            if item.is_file() and not item.is_symlink():
                total += item.stat().st_size
        except OSError:
            continue
    return total


@main.command()
@click.argument("destination", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--retain", "-r", "keep", type=click.IntRange(min=1), required=True, help="Generations to keep")
@click.option(
    "--kind",
    type=click.Choice(["directory", "archive", "all"]),
    default="all",
    show_default=True,
    help="Generation kind to prune",
)
@click.option("--prefix", default="backup", show_default=True, help="Generation name prefix")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted without deleting")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompts")
@handle_errors
def prune(destination: Path, keep: int, kind: str, prefix: str, dry_run: bool, force: bool) -> None:
    """Delete the oldest generations in DESTINATION beyond --retain.

    Examples:

        \b
        tree-backup prune /backup --retain 3 --dry-run

        \b
        tree-backup prune /backup --retain 3 --force
    """
    manager = RetentionManager(destination, prefix=prefix)
    kinds = list(GenerationKind) if kind == "all" else [GenerationKind(kind)]

    if not dry_run and not force:
        planned = sum(len(manager.plan_prune(k, keep)) for k in kinds)
        if planned:
            warning(f"About to delete {planned} generation(s) from {destination}")
            if not confirm("Do you want to proceed?", default=False):
                info("Operation cancelled")
                sys.exit(0)

    setup_logger(__name__, level="INFO")
    total = 0
    try:
        for generation_kind in kinds:
            if dry_run:
                for generation in manager.plan_prune(generation_kind, keep):
                    info(f"Would delete {generation.name}")
                    total += 1
            else:
                for name in manager.prune(generation_kind, keep):
                    success(f"Deleted {name}")
                    total += 1
    finally:
        close_handlers()

    if total == 0:
        info("Nothing to prune")
    elif dry_run:
        info(f"Dry run complete. {total} generation(s) would be deleted")
    else:
        success(f"Pruned {total} generation(s)")


if __name__ == "__main__":
    main()
