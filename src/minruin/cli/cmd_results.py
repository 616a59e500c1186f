"""
minruin results command

Inspect the master results file of a finished run.

Supports:
  - summary of the master file (periods, buckets, ruin factor range)
  - per-period optimal probability and allocation for one ruin factor
"""

from __future__ import annotations

from collections import defaultdict
from pathlib import Path

import click

from minruin.cli.utils import fail
from minruin.core.exceptions import RuinSolverError
from minruin.core.store import MASTER_FILE, PeriodRecord, PeriodStore

# ---------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------

RESULTS_DIR = Path("results")

RF_DECIMALS = 10


# ---------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------


def load_master(output_dir: Path) -> dict[int, list[PeriodRecord]]:
    """Master file records grouped by period, each sorted by ruin factor."""
    # Reading records back does not depend on the bucket grid
    store = PeriodStore(output_dir, bucket_precision=1)
    by_period: dict[int, list[PeriodRecord]] = defaultdict(list)
    for record in store.read_records(store.master_path):
        by_period[record.period].append(record)

    for records in by_period.values():
        records.sort(key=lambda r: r.ruin_factor)
    return dict(sorted(by_period.items()))


def nearest_record(records: list[PeriodRecord], rf: float) -> PeriodRecord:
    """Record whose ruin factor is closest to ``rf`` (lower one on ties)."""
    return min(records, key=lambda r: (abs(r.ruin_factor - rf), r.ruin_factor))


# ---------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------


def render_summary(output_dir: Path, by_period: dict[int, list[PeriodRecord]]):
    n_records = sum(len(r) for r in by_period.values())
    rfs = [r.ruin_factor for records in by_period.values() for r in records]

    click.echo(f"Results in {output_dir / MASTER_FILE}\n")
    click.echo(f"  periods    {len(by_period)} (t={min(by_period)}..{max(by_period)})")
    click.echo(f"  records    {n_records}")
    click.echo(f"  RF range   {min(rfs):.{RF_DECIMALS}f} .. {max(rfs):.{RF_DECIMALS}f}")


def render_ruin_factor(rf: float, by_period: dict[int, list[PeriodRecord]]):
    header = f"{'t':>4} {'RF':>14} {'P(ruin)':>24} {'safe share':>12}"
    click.echo(header)
    click.echo("-" * len(header))

    for period, records in by_period.items():
        r = nearest_record(records, rf)
        click.echo(f"{period:>4} {r.ruin_factor:>14.{RF_DECIMALS}f} {r.probability:>24.17g} {r.allocation:>12.4f}")


# ---------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------


@click.command(name="results")
@click.argument("rf", type=click.FloatRange(min=0, min_open=True), required=False)
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=RESULTS_DIR,
    show_default=True,
    help="Directory of a finished run.",
)
def cmd_results(rf: float | None, output_dir: Path):
    """
    Inspect results of a finished run.

    Without RF a summary of the master file is printed; with RF the optimal
    ruin probability and safe asset share per period for the nearest bucket.
    """
    if not (output_dir / MASTER_FILE).exists():
        click.echo(f"No {MASTER_FILE} found in {output_dir}.")
        return

    try:
        by_period = load_master(output_dir)
    except RuinSolverError as e:
        raise fail(e) from None

    if not by_period:
        click.echo(f"{MASTER_FILE} in {output_dir} holds no records.")
        return

    if rf is None:
        render_summary(output_dir, by_period)
    else:
        render_ruin_factor(rf, by_period)
