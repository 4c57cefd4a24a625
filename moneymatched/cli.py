"""Command Line Interface for the MoneyMatched property import pipeline.

This module provides a CLI using Typer for running imports, inspecting and
cancelling import runs, and dry-running sources without a database.

Exit codes of `import`:
    0  completed (with or without rejected rows)
    1  run failed, or configuration error
    2  data loaded but an index build failed
    3  cancelled
    130 interrupted
"""

import logging
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from moneymatched.adapters.sources import get_source
from moneymatched.domain.models import ImportStatus, RunSummary
from moneymatched.domain.ports import ImportPipelineError, InvalidStatusTransitionError, PropertyStorePort
from moneymatched.domain.run_tracker import request_cancellation
from moneymatched.infrastructure.config_manager import ConnectionProfile
from moneymatched.infrastructure.logging_config import setup_logging
from moneymatched.infrastructure.settings import APP_NAME, APP_VERSION, get_settings
from moneymatched.main import analyze_sources, create_storage_adapter, process_import

app = typer.Typer(
    name="moneymatched",
    help="MoneyMatched: unclaimed-property bulk import pipeline",
    add_completion=False
)
console = Console()

EXIT_CODES = {
    ImportStatus.COMPLETED: 0,
    ImportStatus.COMPLETED_WITH_ERRORS: 0,
    ImportStatus.FAILED: 1,
    ImportStatus.CANCELLED: 3,
}
EXIT_INDEX_FAILED = 2
EXIT_INTERRUPTED = 130

STATUS_STYLES = {
    ImportStatus.COMPLETED: "green",
    ImportStatus.COMPLETED_WITH_ERRORS: "yellow",
    ImportStatus.FAILED: "red",
    ImportStatus.CANCELLED: "magenta",
    ImportStatus.IN_PROGRESS: "cyan",
    ImportStatus.PENDING: "dim",
}


def _profile(local: bool) -> ConnectionProfile:
    return ConnectionProfile.LOCAL if local else ConnectionProfile.PRODUCTION


def create_storage_adapter_cli(local: bool) -> PropertyStorePort:
    """Create storage adapter for the selected profile (CLI wrapper)."""
    try:
        return create_storage_adapter(_profile(local))
    except ValidationError as e:
        console.print(f"[red]✗[/red] Invalid database configuration: {e.errors()[0].get('msg', str(e))}")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to create storage adapter: {str(e)}")
        raise typer.Exit(code=1)


def _configure_logging(verbose: bool, json_logs: bool) -> None:
    settings = get_settings()
    setup_logging(use_json=json_logs or settings.log_json, log_level="DEBUG" if verbose else settings.log_level)


def exit_code_for(summary: RunSummary) -> int:
    if summary.status in (ImportStatus.COMPLETED, ImportStatus.COMPLETED_WITH_ERRORS) and summary.index_error:
        return EXIT_INDEX_FAILED
    return EXIT_CODES.get(summary.status, 1)


def print_summary(summary: RunSummary) -> None:
    console.print("\n[bold]Import Summary:[/bold]")
    style = STATUS_STYLES.get(summary.status, "white")

    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Run ID:", str(summary.run_id) if summary.run_id is not None else "-")
    summary_table.add_row("Status:", f"[{style}]{summary.status.value}[/{style}]")
    summary_table.add_row("Staged records:", f"[bold]{summary.staged_count:,}[/bold]")
    summary_table.add_row("Final records:", f"[green]{summary.final_count:,}[/green]")
    summary_table.add_row("Files processed:", f"{summary.files_processed:,}")
    summary_table.add_row(
        "Files failed:",
        f"[red]{summary.files_failed:,}[/red]" if summary.files_failed > 0 else f"{summary.files_failed:,}",
    )
    summary_table.add_row(
        "Failed records:",
        f"[red]{summary.failed_record_count:,}[/red]" if summary.failed_record_count > 0
        else f"{summary.failed_record_count:,}",
    )
    if summary.success_rate is not None:
        summary_table.add_row("Success rate:", f"{summary.success_rate:.2f}%")
    if summary.indexes_built:
        summary_table.add_row("Indexes:", ", ".join(summary.indexes_built))
    if summary.report_path:
        summary_table.add_row("Failure report:", str(summary.report_path))
    console.print(summary_table)

    if summary.index_error:
        console.print(f"\n[yellow]⚠[/yellow] Data loaded, but index build failed: {summary.index_error}")
    if summary.error_message and summary.status in (ImportStatus.FAILED, ImportStatus.CANCELLED):
        console.print(f"\n[red]✗[/red] {summary.error_message}")


@app.command("import")
def import_command(
    local: bool = typer.Option(False, "--local", help="Use the local development database profile"),
    local_files: Optional[Path] = typer.Option(
        None, "--local-files", help="Import CSV files from this directory instead of downloading"
    ),
    urls: Optional[List[str]] = typer.Option(None, "--url", help="Archive URL to download (repeatable)"),
    report_dir: Optional[Path] = typer.Option(None, "--report-dir", help="Directory for the failed-records report"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON"),
) -> None:
    """Download (or read) unclaimed-property CSV files and rebuild the searchable table.

    Examples:
        moneymatched import
        moneymatched import --local --local-files ./data
        moneymatched import --url https://dpupd.sco.ca.gov/04_From_500_To_Beyond.zip
    """
    _configure_logging(verbose, json_logs)
    settings = get_settings()
    profile = _profile(local)

    source = get_source(urls=urls, local_dir=local_files)

    console.print(f"\n[bold blue]{APP_NAME}[/bold blue]")
    console.print(f"[dim]Database profile:[/dim] {profile.value}")
    console.print(f"[dim]Source:[/dim] {source.describe()}")
    console.print()

    storage = create_storage_adapter_cli(local)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True,
        ) as progress:
            progress.add_task("Importing records...", total=None)
            summary = process_import(
                source=source,
                store=storage,
                report_dir=report_dir or settings.failure_report_dir,
                settings=settings,
            )
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠[/yellow] Import interrupted by user")
        raise typer.Exit(code=EXIT_INTERRUPTED)
    finally:
        storage.close()

    print_summary(summary)
    code = exit_code_for(summary)
    if code == 0:
        console.print("\n[green]✓[/green] Import completed")
    raise typer.Exit(code=code)


@app.command()
def cancel(
    run_id: int = typer.Argument(..., help="ID of the import run to cancel"),
    local: bool = typer.Option(False, "--local", help="Use the local development database profile"),
) -> None:
    """Request cancellation of a running import.

    The running import stops at its next file boundary; an in-flight COPY is not interrupted.
    """
    storage = create_storage_adapter_cli(local)
    try:
        record = request_cancellation(storage, run_id)
    except LookupError as e:
        console.print(f"[red]✗[/red] {str(e)}")
        raise typer.Exit(code=1)
    except InvalidStatusTransitionError as e:
        console.print(f"[yellow]⚠[/yellow] {str(e)}")
        raise typer.Exit(code=1)
    except ImportPipelineError as e:
        console.print(f"[red]✗[/red] Cancellation failed: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        storage.close()
    console.print(f"[green]✓[/green] Import run {record.id} marked {record.import_status.value}")


@app.command()
def runs(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to show"),
    local: bool = typer.Option(False, "--local", help="Use the local development database profile"),
) -> None:
    """List recent import runs, newest first."""
    storage = create_storage_adapter_cli(local)
    try:
        records = storage.list_import_runs(limit)
    except ImportPipelineError as e:
        console.print(f"[red]✗[/red] Could not list import runs: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        storage.close()

    if not records:
        console.print("No import runs recorded")
        return

    runs_table = Table(show_header=True, header_style="bold")
    runs_table.add_column("ID", justify="right")
    runs_table.add_column("Status")
    runs_table.add_column("Staged", justify="right")
    runs_table.add_column("Final", justify="right")
    runs_table.add_column("Failed", justify="right")
    runs_table.add_column("Started")
    runs_table.add_column("Source", style="cyan")
    for record in records:
        style = STATUS_STYLES.get(record.import_status, "white")
        runs_table.add_row(
            str(record.id),
            f"[{style}]{record.import_status.value}[/{style}]",
            f"{record.total_records:,}" if record.total_records is not None else "-",
            f"{record.successful_records:,}",
            f"{record.failed_records:,}",
            record.created_at.strftime("%Y-%m-%d %H:%M:%S") if record.created_at else "-",
            record.source_url,
        )
    console.print(runs_table)


@app.command()
def analyze(
    local_files: Optional[Path] = typer.Option(None, "--local-files", help="Analyze CSV files in this directory"),
    urls: Optional[List[str]] = typer.Option(None, "--url", help="Archive URL to analyze (repeatable)"),
    top: int = typer.Option(5, "--top", help="Number of most duplicated keys to show"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Dry run: parse the source and predict the import outcome without a database."""
    _configure_logging(verbose, False)
    source = get_source(urls=urls, local_dir=local_files)
    try:
        analysis = analyze_sources(source, top_n=top)
    except ImportPipelineError as e:
        console.print(f"[red]✗[/red] Analysis failed: {str(e)}")
        raise typer.Exit(code=1)

    files_table = Table(show_header=True, header_style="bold")
    files_table.add_column("File", style="cyan")
    files_table.add_column("Parsed", justify="right")
    files_table.add_column("Failed", justify="right")
    for file_stats in analysis.files:
        files_table.add_row(file_stats.name, f"{file_stats.records_parsed:,}", f"{file_stats.records_failed:,}")
    console.print(files_table)

    keys = analysis.keys
    console.print("\n[bold]Projected Import:[/bold]")
    keys_table = Table(show_header=False, box=None, padding=(0, 2))
    keys_table.add_row("Total rows:", f"{keys.total_rows:,}")
    keys_table.add_row("Blank owner name (excluded):", f"{keys.blank_owner_rows:,}")
    keys_table.add_row("Duplicate rows (collapsed):", f"{keys.duplicate_rows:,}")
    keys_table.add_row("Projected final records:", f"[bold]{keys.projected_final_count:,}[/bold]")
    keys_table.add_row("Failed records:", f"{analysis.records_failed:,}")
    console.print(keys_table)

    if keys.top_duplicates:
        console.print("\n[bold]Most duplicated keys:[/bold]")
        for (property_id, owner_name), count in keys.top_duplicates:
            console.print(f"  {property_id or '<blank id>'} / {owner_name}: {count}")


@app.command()
def info(
    local: bool = typer.Option(False, "--local", help="Show the local development database profile"),
) -> None:
    """Display configuration (never the database password)."""
    settings = get_settings()
    console.print("[bold blue]System Information[/bold blue]\n")

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", f"{APP_NAME} v{APP_VERSION}")
    try:
        db = settings.db_config(_profile(local)).describe()
        info_table.add_row("Database Profile:", db["profile"])
        info_table.add_row("Database Host:", str(db["host"]))
        info_table.add_row("Database Port:", str(db["port"]))
        info_table.add_row("Database Name:", str(db["database"]))
        info_table.add_row("Database User:", str(db["username"]))
        info_table.add_row("SSL Mode:", str(db["ssl_mode"]))
    except ValidationError:
        info_table.add_row("Database:", "[red]not configured[/red]")
    info_table.add_row("Archive URLs:", "\n".join(settings.data_urls))
    info_table.add_row("Report Directory:", str(settings.failure_report_dir))
    info_table.add_row("CSV Encoding:", settings.csv_encoding)
    info_table.add_row("Download Chunk Size:", f"{settings.download_chunk_size:,} bytes")
    info_table.add_row("COPY Buffer Size:", f"{settings.copy_buffer_size:,} bytes")

    console.print(info_table)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"{APP_NAME} v{APP_VERSION}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version information"
    )
) -> None:
    """MoneyMatched: unclaimed-property bulk import pipeline."""


if __name__ == "__main__":
    app()
