"""Main CLI entry point for the Perforce to Mercurial migration."""

import sys
import asyncio
from typing import Optional
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .. import __version__
from ..config.config import Config
from ..utils.logging import setup_logging
from ..migration.engine import MigrationEngine
from ..migration.orchestrator import CycleSummary, MappingStatus

console = Console()

DEFAULT_CONFIG_PATHS = ['config.yaml', 'config.yml', '.p4hg-migrate.yaml']


@click.group()
@click.version_option(version=__version__, prog_name='p4hg-migrate')
@click.option(
    '--config',
    '-c',
    type=click.Path(exists=True),
    help='Path to configuration file',
)
@click.option(
    '--verbose',
    '-v',
    is_flag=True,
    help='Enable verbose logging',
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """Perforce to Mercurial migration - mirror depot changes into Mercurial bookmarks."""
    ctx.ensure_object(dict)

    if config:
        ctx.obj['config_path'] = config
    ctx.obj['verbose'] = verbose

    # Setup basic logging first (will be enhanced later with config)
    log_level = 'DEBUG' if verbose else 'INFO'
    setup_logging(log_level)


@cli.command()
@click.option(
    '--output',
    '-o',
    default='config.yaml',
    help='Output configuration file path',
)
def init(output: str) -> None:
    """Initialize a new configuration file."""
    console.print(
        Panel.fit(
            '[bold green]Perforce to Mercurial Migration[/bold green]\n'
            'Initializing configuration...',
            border_style='green',
        )
    )

    try:
        Config.create_template(output)

        console.print(f'[green]✓[/green] Configuration template created at: {output}')
        console.print(
            f'[yellow]Please edit {output} with your Perforce and Mercurial details[/yellow]'
        )

    except OSError as e:
        console.print(f'[red]✗[/red] Failed to create configuration: {e}')
        sys.exit(1)


@cli.command()
@click.option(
    '--once',
    is_flag=True,
    help='Run a single cycle instead of looping forever',
)
@click.pass_context
def run(ctx: click.Context, once: bool) -> None:
    """Start mirroring Perforce changes."""
    console.print(
        Panel.fit(
            '[bold blue]Perforce to Mercurial Migration[/bold blue]\n'
            'Starting migration loop...',
            border_style='blue',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        engine = MigrationEngine(config)
        summary = asyncio.run(engine.run(once=once))

        if summary is not None:
            _display_cycle_summary(summary)
            if summary.failed:
                sys.exit(1)

    except Exception as e:
        console.print(f'[red]✗[/red] Migration failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate the configuration and the required tools."""
    console.print(
        Panel.fit(
            '[bold cyan]Perforce to Mercurial Migration[/bold cyan]\n'
            'Validating configuration...',
            border_style='cyan',
        )
    )

    try:
        config = _load_config(ctx)
        console.print('[green]✓[/green] Configuration validation completed')

        engine = MigrationEngine(config)
        checks = engine.validate_environment()

        for name, passed in checks.items():
            mark = '[green]✓[/green]' if passed else '[red]✗[/red]'
            console.print(f'{mark} {name.replace("_", " ")}')

        if not all(checks.values()):
            sys.exit(1)

    except Exception as e:
        console.print(f'[red]✗[/red] Validation failed: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show configuration and the last migrated change of each mapping."""
    console.print(
        Panel.fit(
            '[bold magenta]Perforce to Mercurial Migration[/bold magenta]\n'
            'Migration Status',
            border_style='magenta',
        )
    )

    try:
        config = _load_config(ctx)
        _setup_logging_with_config(ctx, config)

        table = Table(title='Migration Configuration')
        table.add_column('Setting', style='cyan')
        table.add_column('Value', style='green')

        table.add_row('Perforce Port', config.perforce.port)
        table.add_row('Perforce User', config.perforce.user)
        table.add_row('Perforce Client', config.perforce.client)
        table.add_row('Update Interval', f'{config.update_interval}s')
        table.add_row('Batch Size', str(config.batch_size))
        table.add_row('Max Workers', str(config.max_workers))

        console.print(table)

        engine = MigrationEngine(config)
        states = asyncio.run(engine.status())

        mappings_table = Table(title='Mappings')
        mappings_table.add_column('Depot Directory', style='cyan')
        mappings_table.add_column('Bookmark', style='blue')
        mappings_table.add_column('Local Directory')
        mappings_table.add_column('Last Change', style='green')

        for state in states:
            if state.error_message:
                last_change = f'[red]{state.error_message}[/red]'
            elif state.last_change is None:
                last_change = '[yellow]none[/yellow]'
            else:
                last_change = str(state.last_change)

            mappings_table.add_row(
                state.depot_directory,
                state.bookmark,
                state.local_directory,
                last_change,
            )

        console.print(mappings_table)

    except Exception as e:
        console.print(f'[red]✗[/red] Failed to load status: {e}')
        if ctx.obj.get('verbose'):
            console.print_exception()
        sys.exit(1)


def _load_config(ctx: click.Context) -> Config:
    """Load configuration from file or environment."""
    config_path = ctx.obj.get('config_path')

    if config_path:
        return Config.from_file(config_path)

    for path in DEFAULT_CONFIG_PATHS:
        if Path(path).exists():
            return Config.from_file(path)

    try:
        return Config.from_env()
    except ValueError:
        raise FileNotFoundError(
            'No configuration found. Use --config to specify a file or run "p4hg-migrate init" to create one.'
        )


def _setup_logging_with_config(ctx: click.Context, config: Config) -> None:
    """Setup logging with configuration from config file."""
    verbose = ctx.obj.get('verbose', False)

    # Use config logging settings, but allow verbose flag to override level
    log_level = 'DEBUG' if verbose else config.logging.level

    setup_logging(
        level=log_level,
        log_file=config.logging.file,
        log_format=config.logging.format,
    )


def _display_cycle_summary(summary: CycleSummary) -> None:
    """Display the results of a cycle."""
    table = Table(title='Cycle Summary')
    table.add_column('Depot Directory', style='cyan')
    table.add_column('Bookmark', style='blue')
    table.add_column('Status')
    table.add_column('Pending', style='yellow')
    table.add_column('Committed', style='green')
    table.add_column('Pushed')

    status_styles = {
        MappingStatus.UP_TO_DATE: '[blue]up to date[/blue]',
        MappingStatus.MIGRATED: '[green]migrated[/green]',
        MappingStatus.STALLED: '[yellow]stalled[/yellow]',
        MappingStatus.FAILED: '[red]failed[/red]',
    }

    for result in summary.results:
        table.add_row(
            result.depot_directory,
            result.bookmark,
            status_styles[result.status],
            str(result.pending),
            str(len(result.committed)),
            '✓' if result.published else '✗',
        )

    console.print(table)
    console.print(f'\n[blue]Cycle Duration:[/blue] {summary.elapsed:.1f}s')

    errors = [
        f'{result.depot_directory}: {result.error_message}'
        for result in summary.results
        if result.error_message
    ]
    if errors:
        console.print(f'\n[red]Errors ({len(errors)}):[/red]')
        for error in errors:
            console.print(f'  • {error}')


def main() -> None:
    """Main entry point for the CLI application."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print('\n[red]Migration interrupted by user[/red]')
        sys.exit(1)


if __name__ == '__main__':
    main()
