"""Command Line Interface for EHRFin."""

import asyncio
import sys
import warnings
from typing import Any, List, Optional

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .. import __version__
from ..core.config import Config, load_config
from ..core.errors import CycleDetected, EHRFinError
from ..core.models import EntityKind
from ..core.pipeline import EHRFinPipeline
from ..ingestion.frame_loader import iter_chunks, read_csv_frame, records_from_frame
from ..normalization.normalizer import NormalizationReport

# Setup structured logging
structlog.configure(
    processors=[
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.make_filtering_bound_logger(20),  # INFO level
    logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()
console = Console()


@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx, config: Optional[str], verbose: bool):
    """EHRFin - incremental aggregation engine for clinical and financial records."""

    # Setup logging level
    if verbose:
        structlog.configure(
            processors=[
                structlog.dev.ConsoleRenderer()
            ],
            wrapper_class=structlog.make_filtering_bound_logger(10),  # DEBUG level
            logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
            cache_logger_on_first_use=True,
        )

    # Load configuration
    ctx.ensure_object(dict)
    ctx.obj['config'] = load_config(config)

    # Display banner
    if ctx.invoked_subcommand != 'version':
        console.print(Panel.fit(
            "[bold blue]EHRFin[/bold blue]\n"
            "Incremental rollups over clinical and financial records\n"
            f"Version {__version__}",
            style="cyan"
        ))


@cli.command()
def version():
    """Show version information."""
    console.print(f"EHRFin version {__version__}")


@cli.command()
@click.option('--output', '-o', default='ehrfin.yaml', help='Output configuration file path')
def init_config(output: str):
    """Initialize a new configuration file."""
    config = Config()
    config.to_yaml(output)
    console.print(f"[bold green]Configuration file created:[/bold green] {output}")
    console.print("Point database.url at a SQLAlchemy URL to keep rows between runs")


@cli.command()
@click.option('--patients', type=click.Path(exists=True, dir_okay=False), help='Patient extract (CSV)')
@click.option('--transactions', type=click.Path(exists=True, dir_okay=False), help='Transaction extract (CSV)')
@click.option('--procedures', type=click.Path(exists=True, dir_okay=False), help='Procedure extract (CSV)')
@click.option('--output', '-o', default=None, help='Refresh all views and export them here')
@click.pass_context
def ingest(ctx, patients: Optional[str], transactions: Optional[str], procedures: Optional[str], output: Optional[str]):
    """Ingest CSV extracts into the configured record store."""
    config = ctx.obj['config']
    sources = [
        (EntityKind.PATIENTS, patients),
        (EntityKind.TRANSACTIONS, transactions),
        (EntityKind.PROCEDURES, procedures),
    ]
    if not any(path for _, path in sources):
        raise click.UsageError("Give at least one of --patients, --transactions, --procedures")

    async def run_ingest():
        pipeline = EHRFinPipeline(config)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console
        ) as progress:
            task = progress.add_task("Ingesting...", total=None)
            try:
                await pipeline.rebuild()
                report = NormalizationReport()
                # One kind at a time so patients exist before their rows arrive.
                for kind, path in sources:
                    if path:
                        frame = read_csv_frame(path)
                        records = records_from_frame(frame, kind, pipeline.reserve_sequence(len(frame)))
                        batches = list(iter_chunks(records, config.pipeline.chunk_size))
                        report = report.merge(await pipeline.ingest_many(batches))
                progress.update(task, description="Ingestion completed!")
                _display_report(report.to_dict())

                if output:
                    await pipeline.refresh_all()
                    result = pipeline.export_views(output)
                    console.print(f"[bold green]Exported {result['views_exported']} views to {output}[/bold green]")
            except EHRFinError as e:
                progress.update(task, description=f"Ingestion failed: {e}")
                console.print(f"[bold red]Error:[/bold red] {e}")
                sys.exit(1)
            finally:
                pipeline.close()

    asyncio.run(run_ingest())


@cli.command()
@click.option('--rollup', '-r', multiple=True, help='Rollup to show (default: all)')
@click.option('--window', '-w', type=int, default=None, help='Moving average window')
@click.pass_context
def report(ctx, rollup: List[str], window: Optional[int]):
    """Rebuild engine state from the store and print rollups."""
    config = ctx.obj['config']

    async def run_report():
        pipeline = EHRFinPipeline(config)
        try:
            await pipeline.rebuild()
            for name in rollup or pipeline.aggregation.rollup_names():
                _display_rollup(name, pipeline.query(name))
            _display_outliers(pipeline.high_cost_patients())
            _display_moving_average(list(pipeline.moving_average(window=window)))
        except EHRFinError as e:
            console.print(f"[bold red]Error building report:[/bold red] {e}")
            sys.exit(1)
        finally:
            pipeline.close()

    asyncio.run(run_report())


@cli.command()
@click.argument('patient_id')
@click.pass_context
def history(ctx, patient_id: str):
    """Show the treatment history of one patient."""
    config = ctx.obj['config']

    async def run_history():
        pipeline = EHRFinPipeline(config)
        try:
            await pipeline.rebuild()
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", CycleDetected)
                result = await pipeline.history(_parse_id(patient_id))
            _display_history(result)
        except (EHRFinError, asyncio.TimeoutError) as e:
            console.print(f"[bold red]Error building history:[/bold red] {e}")
            sys.exit(1)
        finally:
            pipeline.close()

    asyncio.run(run_history())


@cli.command()
@click.option('--output', '-o', default='output', help='Output directory')
@click.pass_context
def export(ctx, output: str):
    """Refresh every view and export the snapshots."""
    config = ctx.obj['config']

    console.print(f"[bold blue]Exporting views to:[/bold blue] {output}")

    async def run_export():
        pipeline = EHRFinPipeline(config)
        try:
            await pipeline.rebuild()
            await pipeline.refresh_all()
            result = pipeline.export_views(output)
            console.print("[bold green]View export completed![/bold green]")
            console.print(f"Views exported: {result.get('views_exported', 0)}")
            console.print(f"Total rows: {result.get('total_rows', 0)}")
        except EHRFinError as e:
            console.print(f"[bold red]Error exporting views:[/bold red] {e}")
            sys.exit(1)
        finally:
            pipeline.close()

    asyncio.run(run_export())


@cli.command()
@click.pass_context
def status(ctx):
    """Show pipeline status and statistics."""
    config = ctx.obj['config']

    async def get_status():
        pipeline = EHRFinPipeline(config)
        try:
            await pipeline.rebuild()
            _display_status(await pipeline.get_pipeline_status())
        except EHRFinError as e:
            console.print(f"[bold red]Error getting status:[/bold red] {e}")
            sys.exit(1)
        finally:
            pipeline.close()

    asyncio.run(get_status())


def _parse_id(value: str) -> Any:
    return int(value) if value.lstrip("-").isdigit() else value


def _display_report(result: dict):
    """Display ingestion results."""
    console.print("\n[bold green]Ingestion Results:[/bold green]")
    console.print(f"Accepted: {result.get('accepted', 0)}")
    console.print(f"Rejected: {result.get('rejected', 0)}")
    console.print(f"Deduplicated: {result.get('deduplicated', 0)}")

    if result.get('rejections'):
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Kind")
        table.add_column("Key")
        table.add_column("Seq")
        table.add_column("Reason")
        table.add_column("Detail")
        for rejection in result['rejections']:
            table.add_row(
                rejection['kind'], str(rejection['key']), str(rejection['seq']),
                rejection['reason'], rejection['detail'],
            )
        console.print(table)


def _display_rollup(name: str, rows: list):
    """Display one rollup."""
    table = Table(title=name, show_header=True, header_style="bold magenta")
    table.add_column("Key")
    functions = list(rows[0][1]) if rows else []
    for function in functions:
        table.add_column(function, justify="right")
    for key, values in rows:
        cells = [_format(values[fn]) for fn in functions]
        table.add_row(", ".join(str(k) for k in key), *cells)
    console.print(table)


def _display_outliers(rows: list):
    console.print(f"\n[bold green]High cost patients:[/bold green] {len(rows)}")
    for patient_id, total in rows:
        console.print(f"  {patient_id}: {total:.2f}")


def _display_moving_average(rows: list):
    console.print(f"\n[bold green]Transaction moving average:[/bold green] {len(rows)} points")
    for ordering_key, avg in rows[-10:]:
        console.print(f"  {ordering_key}: {avg:.2f}")


def _display_history(result):
    table = Table(title=f"Treatment history of {result.root_id}", show_header=True, header_style="bold magenta")
    for column in ("Date", "Patient", "Procedure", "Code", "Cost", "Doctor", "Depth"):
        table.add_column(column)
    for node in result:
        table.add_row(
            str(node.procedure_date), str(node.patient_id), str(node.procedure_id),
            str(node.procedure_code or ""), _format(node.cost), str(node.doctor_id or ""), str(node.depth),
        )
    console.print(table)
    for cycle in result.cycles:
        console.print(f"[yellow]Cycle detected:[/yellow] {cycle}")


def _display_status(status_info: dict):
    """Display pipeline status information."""
    console.print("\n[bold blue]Pipeline Status:[/bold blue]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Component")
    table.add_column("Details")

    table.add_row("Store", status_info.get("store", ""))
    for table_name, count in status_info.get("tables", {}).items():
        table.add_row(f"Table: {table_name}", f"{count} records")
    for rollup_name, keys in status_info.get("rollups", {}).items():
        table.add_row(f"Rollup: {rollup_name}", f"{keys} keys")
    for view_name, stats in status_info.get("views", {}).items():
        table.add_row(f"View: {view_name}", f"v{stats['version']}, {stats['rows']} rows")

    console.print(table)


def _format(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return f"{value:.2f}"
    return str(value)


def main():
    """Main entry point for the CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
