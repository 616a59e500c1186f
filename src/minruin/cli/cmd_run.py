# src/minruin/cli/cmd_run.py

from pathlib import Path

import click
from loguru import logger
from omegaconf import DictConfig

from minruin.cli.utils import fail, format_override_help
from minruin.core.config import (
    SolverConfig,
    load_config,
    load_control_file,
    save_run_config,
    solver_config_from_cfg,
)
from minruin.core.configure_logging import configure_logging
from minruin.core.exceptions import RuinSolverError
from minruin.core.mortality import hazard_rates_for, write_hazard_rates
from minruin.core.scheduler import run_backward_induction
from minruin.core.store import PeriodStore

# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def compose_cfg(ctx: click.Context, overrides, conf_dir: Path | None) -> DictConfig:
    """
    Compose the Hydra config; its logging level applies unless --log-level was given.
    """
    cfg = load_config(list(overrides), conf_dir)

    if not (ctx.obj or {}).get("log_level"):
        configure_logging(cfg)

    return cfg


def resolve_solver_config(
    cfg: DictConfig,
    control: Path | None,
    output_dir: Path | None,
    workers: int | None,
) -> SolverConfig:
    """
    Model and cohort come from the control file when one is given, otherwise
    from the composed config. Command line options win over both.
    """
    if output_dir is not None:
        cfg.run.output_dir = str(output_dir)
    if workers is not None:
        cfg.run.workers = workers

    config = solver_config_from_cfg(cfg)
    if control is not None:
        logger.info("Reading control file {}", control)
        config = load_control_file(control, run=config.run)

    return config


# ---------------------------------------------------------------------
# CLI commands
# ---------------------------------------------------------------------


@click.command(name="run", epilog=format_override_help())
@click.argument("overrides", nargs=-1)
@click.option(
    "--conf-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Hydra config directory (default: packaged config).",
)
@click.option(
    "--control",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Legacy whitespace-delimited control file.",
)
@click.option(
    "--hazard-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Reuse a persisted hazard rate sequence.",
)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory for staged and final results.",
)
@click.option("--workers", type=click.IntRange(min=2), default=None, help="Worker processes per period.")
@click.pass_context
def cmd_run(
    ctx: click.Context,
    overrides: tuple[str, ...],
    conf_dir: Path | None,
    control: Path | None,
    hazard_file: Path | None,
    output_dir: Path | None,
    workers: int | None,
):
    """
    Minimize the probability of ruin by backward induction.

    OVERRIDES are Hydra-style key=value pairs, e.g. model.risky_mean=0.07
    """
    try:
        cfg = compose_cfg(ctx, overrides, conf_dir)
        config = resolve_solver_config(cfg, control, output_dir, workers)
        hazard = hazard_rates_for(config, hazard_file)

        store = PeriodStore(config.run.output_dir, config.precision.bucket_precision)
        store.ensure_root()
        write_hazard_rates(store.hazard_path, hazard)
        if control is None:
            save_run_config(cfg, store.root)

        summary = run_backward_induction(config, hazard, store)
    except RuinSolverError as e:
        raise fail(e) from None

    click.echo(f"Solved {summary.n_periods} period(s) x {summary.n_buckets} bucket(s)")
    for name, path in summary.outputs.items():
        click.echo(f"  {name:<14} {path}")


@click.command(name="hazard", epilog=format_override_help())
@click.argument("overrides", nargs=-1)
@click.option(
    "--conf-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Hydra config directory (default: packaged config).",
)
@click.option(
    "--control",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Legacy whitespace-delimited control file.",
)
@click.pass_context
def cmd_hazard(ctx: click.Context, overrides: tuple[str, ...], conf_dir: Path | None, control: Path | None):
    """
    Print the hazard rate sequence of the configured cohort.
    """
    try:
        cfg = compose_cfg(ctx, overrides, conf_dir)
        config = resolve_solver_config(cfg, control, None, None)
        hazard = hazard_rates_for(config)
    except RuinSolverError as e:
        raise fail(e) from None

    click.echo(f"Horizon: {hazard.horizon} ({hazard.n_periods} decision period(s))")
    for t, rate in enumerate(hazard.rates):
        click.echo(f"{t:>4} {rate:.17g}")
