"""Command-line interface for fhir-cda-schematron."""

from __future__ import annotations

import logging
import sys
import tarfile
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from cda_schematron.config import DEFAULT_TERMINOLOGY_SERVER, DEFAULT_VALUE_SET_LIMIT, GeneratorConfig
from cda_schematron.context import RunContext
from cda_schematron.errors import NoProfilesError
from cda_schematron.generator import GenerationResult, SchematronGenerator
from cda_schematron.report import write_artifacts

console = Console()
error_console = Console(stderr=True)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=error_console, show_path=False)],
        force=True,
    )


@click.command()
@click.argument("package", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--dependency",
    "-d",
    "dependencies",
    multiple=True,
    type=click.Path(exists=True, path_type=Path),
    help="Dependency package (directory or .tgz); repeat for several.",
)
@click.option(
    "--terminology-server",
    "-t",
    default=DEFAULT_TERMINOLOGY_SERVER,
    show_default=True,
    help="FHIR terminology server for value set expansion ('x' to disable).",
)
@click.option(
    "--value-set-limit",
    type=int,
    default=DEFAULT_VALUE_SET_LIMIT,
    show_default=True,
    help="Maximum number of codes in a value set used for bindings.",
)
@click.option(
    "--profile",
    "-p",
    default=None,
    help="Only process the profile with this name, id or url.",
)
@click.option(
    "--output",
    "-o",
    "output_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("output"),
    show_default=True,
    help="Directory for the schematron and reports.",
)
@click.option(
    "--name",
    "output_name",
    default="schematron",
    show_default=True,
    help="Base name of the generated .sch file.",
)
@click.option(
    "--timezone-profile",
    "timezone_profiles",
    multiple=True,
    help="Timestamp profile url that requires a timezone offset; repeat for several.",
)
@click.option(
    "--clear-cache",
    is_flag=True,
    help="Discard cached value set expansions before running.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Log debug output.",
)
def main(
    package: Path,
    dependencies: tuple[Path, ...],
    terminology_server: str,
    value_set_limit: int,
    profile: str | None,
    output_dir: Path,
    output_name: str,
    timezone_profiles: tuple[str, ...],
    clear_cache: bool,
    verbose: bool,
) -> None:
    """Generate CDA schematron from the profiles of a FHIR package.

    PACKAGE is a package directory or .tgz archive holding the CDA logical
    models and templates.
    """
    _configure_logging(verbose)

    config = GeneratorConfig(
        value_set_member_limit=value_set_limit,
        terminology_server=terminology_server,
        output_dir=output_dir,
        output_name=output_name,
        profile=profile,
        timezone_profiles=timezone_profiles,
    )

    try:
        context = RunContext.from_packages(package, *dependencies, config=config)
    except (FileNotFoundError, tarfile.TarError) as exc:
        error_console.print(f"[red]Error:[/red] {escape(str(exc))}")
        sys.exit(1)

    if clear_cache and context.terminology.clear_cache():
        console.print("Cleared value set expansion cache")

    try:
        result = SchematronGenerator(context).generate()
    except NoProfilesError as exc:
        error_console.print(f"[red]Error:[/red] {escape(str(exc))}")
        sys.exit(1)

    try:
        artifacts = write_artifacts(result, context)
    except OSError as exc:
        error_console.print(f"[red]Error:[/red] Cannot write output: {escape(str(exc))}")
        sys.exit(1)

    _output_summary(result)
    console.print(f"[green]✓[/green] Schematron written to {artifacts.schematron}")


def _output_summary(result: GenerationResult) -> None:
    """Print processed profiles, errors and unhandled invariants."""
    console.print(
        f"[bold]Summary:[/bold] {len(result.processed)} profiles processed, "
        f"{len(result.skipped)} sub-templates skipped"
    )
    if result.errors:
        console.print(f"[red]{len(result.errors)} errors[/red]")

    counts = result.unhandled_counts()
    if not counts:
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Unhandled invariant reason")
    table.add_column("Count", justify="right", width=8)
    for reason, count in counts.items():
        table.add_row(escape(reason), str(count))
    console.print(table)


if __name__ == "__main__":
    main()
