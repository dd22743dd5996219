"""Command Line Interface for Clinical Import.

This module provides a Typer CLI for detecting file formats, importing
clinical files into the store, and reporting store statistics.

Security Impact:
    - Inputs are validated before processing; --dry-run never touches the store
    - Import issues are printed by code and position, not by record content
"""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from clinical_import import __version__
from clinical_import.domain.enums import DuplicateStrategy
from clinical_import.domain.ports import StorageError, StorePort
from clinical_import.domain.results import ImportResult
from clinical_import.domain.services.format_detector import detect_format
from clinical_import.domain.services.reconciliation import ReconciliationEngine
from clinical_import.infrastructure.config_manager import DatabaseConfig
from clinical_import.infrastructure.logging_config import setup_logging
from clinical_import.infrastructure.settings import settings
from clinical_import.main import create_store, process_import

# Initialize Typer app and Rich console
app = typer.Typer(
    name="clinical-import",
    help="Clinical Import: multi-format import and reconciliation of clinical records",
    add_completion=False
)
console = Console()

MAX_LISTED_ISSUES = 20


def create_store_cli(db_path: Optional[str]) -> StorePort:
    """Create the store, exiting with code 1 on failure."""
    try:
        db_config = DatabaseConfig(db_path=db_path) if db_path else settings.db_config
        return create_store(db_config)
    except (StorageError, ValueError) as e:
        console.print(f"[red]✗[/red] Failed to open store: {str(e)}")
        raise typer.Exit(code=1)


def _print_issues(title: str, issues: list, style: str) -> None:
    if not issues:
        return
    console.print(f"\n[bold]{title}:[/bold]")
    for issue in issues[:MAX_LISTED_ISSUES]:
        console.print(f"  [{style}]•[/{style}] {issue}")
    if len(issues) > MAX_LISTED_ISSUES:
        console.print(f"  [dim]... and {len(issues) - MAX_LISTED_ISSUES} more[/dim]")


def _print_counts(result: ImportResult) -> None:
    table = Table(title="Import Summary")
    table.add_column("Entity")
    table.add_column("Total", justify="right")
    table.add_column("Imported", justify="right", style="green")
    table.add_column("Duplicates", justify="right", style="yellow")
    table.add_column("Failed", justify="right", style="red")
    for entity, counts in result.counts.items():
        table.add_row(entity, str(counts.total), str(counts.imported), str(counts.duplicates), str(counts.failed))
    console.print(table)
    default_visits = result.statistics.get("default_visits")
    if default_visits:
        console.print(f"[dim]Default visits created:[/dim] {default_visits}")


@app.command()
def detect(
    input_file: Path = typer.Argument(..., help="File to inspect", exists=True, dir_okay=False),
) -> None:
    """Detect the format of a file."""
    content = input_file.read_text(encoding="utf-8", errors="replace")
    fmt = detect_format(content, input_file.name)
    console.print(f"{input_file.name}: [bold]{fmt.value}[/bold]")


@app.command("import")
def import_command(
    input_file: Path = typer.Argument(..., help="File to import (CSV, JSON, HL7, HTML)", exists=True, dir_okay=False),
    duplicate_strategy: Optional[DuplicateStrategy] = typer.Option(
        None, "--duplicate-strategy", "-d", help="Policy for existing patients", case_sensitive=False
    ),
    patient: Optional[str] = typer.Option(None, "--patient", "-p", help="Force all records onto this patient code"),
    visit: Optional[str] = typer.Option(None, "--visit", help="Force all records onto this visit id"),
    db_path: Optional[str] = typer.Option(None, "--db", help="DuckDB database path (overrides configuration)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Parse and validate without writing to the store"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Import a clinical data file into the store.

    Examples:
        clinical-import import data/export.csv
        clinical-import import survey.html --patient P-001
        clinical-import import export.json --duplicate-strategy update --db data/clinical.duckdb
    """
    if verbose:
        setup_logging(use_json=settings.logging_config.json_format, log_level="DEBUG")
        console.print("[dim]Verbose logging enabled[/dim]")
    if visit and not patient:
        console.print("[red]✗[/red] --visit requires --patient")
        raise typer.Exit(code=2)

    console.print(f"\n[bold blue]Clinical Import[/bold blue]")
    console.print(f"[dim]Input file:[/dim] {input_file}")
    console.print(f"[dim]Database path:[/dim] {db_path or settings.get_db_path()}")

    store = create_store_cli(db_path)
    try:
        with console.status("[bold green]Importing..."):
            run = process_import(
                input_file,
                store,
                duplicate_strategy=duplicate_strategy,
                patient_ref=patient,
                visit_ref=visit,
                dry_run=dry_run,
            )
    except StorageError as e:
        console.print(f"\n[red]✗[/red] Import failed: {str(e)}")
        if verbose:
            console.print_exception()
        raise typer.Exit(code=1)
    finally:
        store.close()

    parsed = run.parse_result
    console.print(f"[dim]Format:[/dim] {parsed.metadata.get('format', 'unknown')}")
    if parsed.data is not None:
        console.print(
            f"[dim]Parsed:[/dim] {parsed.metadata.get('patient_count', 0)} patients, "
            f"{parsed.metadata.get('visit_count', 0)} visits, "
            f"{parsed.metadata.get('observation_count', 0)} observations"
        )
    _print_issues("Parse errors", parsed.errors, "red")
    _print_issues("Parse warnings", parsed.warnings, "yellow")

    if run.db_result is not None:
        console.print()
        _print_counts(run.db_result)
        _print_issues("Import errors", run.db_result.errors, "red")
        _print_issues("Import warnings", run.db_result.warnings, "yellow")

    if not run.success:
        console.print(f"\n[red]✗[/red] Import of {input_file.name} failed")
        raise typer.Exit(code=1)
    if dry_run:
        console.print(f"\n[green]✓[/green] Dry run completed; store left untouched")
    else:
        console.print(f"\n[green]✓[/green] Import completed successfully")


@app.command()
def stats(
    source_system: Optional[str] = typer.Option(None, "--source-system", "-s", help="Restrict to one source system"),
    db_path: Optional[str] = typer.Option(None, "--db", help="DuckDB database path (overrides configuration)"),
) -> None:
    """Display store row counts."""
    store = create_store_cli(db_path)
    try:
        statistics = ReconciliationEngine(store).get_import_statistics(source_system)
    except StorageError as e:
        console.print(f"[red]✗[/red] Failed to read statistics: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        store.close()

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_row("Source system:", source_system or "all")
    table.add_row("Patients:", f"{statistics['patients']:,}")
    table.add_row("Visits:", f"{statistics['visits']:,}")
    table.add_row("Observations:", f"{statistics['observations']:,}")
    console.print(table)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information")
) -> None:
    """Clinical Import: multi-format import and reconciliation of clinical records."""
    if version:
        console.print(f"Clinical Import v{__version__}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()
    logging_config = settings.logging_config
    setup_logging(use_json=logging_config.json_format, log_level=logging_config.level)


if __name__ == "__main__":
    app()
