import os
import platform

import click

from minruin.core.configure_logging import LOG_LEVELS, configure_logging
from minruin.version import __version__

from .cmd_results import cmd_results
from .cmd_run import cmd_hazard, cmd_run

early_level = os.getenv("MINRUIN_LOG_LEVEL", "INFO")
if early_level:
    early_level = early_level.upper()
if early_level in LOG_LEVELS:
    configure_logging(early_level)


@click.group(invoke_without_command=True)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Set logging verbosity.",
)
@click.version_option(version=__version__, prog_name="minruin")
@click.pass_context
def cli(ctx, log_level: str | None):
    """Minimum probability of ruin: backward induction solver."""
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level

    configure_logging(log_level)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


cli.add_command(cmd_run)
cli.add_command(cmd_hazard)
cli.add_command(cmd_results)


@cli.command()
def info():
    """Show version information."""
    import numpy
    import scipy

    click.echo(f"minruin version: {__version__}")
    click.echo(f"Python version:  {platform.python_version()}")
    click.echo(f"NumPy version:   {numpy.__version__}")
    click.echo(f"SciPy version:   {scipy.__version__}")
