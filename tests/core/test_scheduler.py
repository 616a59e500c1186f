from concurrent.futures import ProcessPoolExecutor
from pathlib import Path

import numpy as np
import pytest

from minruin.core.config import ModelParams, Precision, RunSettings, SolverConfig
from minruin.core.configure_logging import configure_logging, current_log_level
from minruin.core.exceptions import ConfigurationError, PeriodFailedError
from minruin.core.mortality import HazardRates
from minruin.core.optimizer import solve_range
from minruin.core.prior_period import PriorPeriod, pruning_set
from minruin.core.scheduler import (
    RangeTask,
    _make_executor,
    partition_buckets,
    run_backward_induction,
    run_period_tasks,
)
from minruin.core.store import PeriodStore

PARAMS = ModelParams(
    safe_mean=0.01,
    safe_var=0.0001,
    risky_mean=0.06,
    risky_var=0.04,
    covariance=0.0,
    expense_ratio=0.001,
    rf_max=1.0,
    prune_decimals=4,
)
PRECISION = Precision(bucket_precision=20, allocation_steps=10)
HAZARD = HazardRates(np.array([0.01, 0.02, 0.03, 0.05]))


def make_config(output_dir: Path, workers: int) -> SolverConfig:
    return SolverConfig(
        params=PARAMS,
        precision=PRECISION,
        run=RunSettings(output_dir=output_dir, workers=workers, progress=False),
        periods=HAZARD.n_periods,
    )


def solve(output_dir: Path, workers: int, hazard: HazardRates = HAZARD):
    config = make_config(output_dir, workers)
    store = PeriodStore(output_dir, PRECISION.bucket_precision)
    return run_backward_induction(config, hazard, store)


# ============================================================
# Partitioning
# ============================================================


@pytest.mark.parametrize(
    "saturation, workers, n_buckets, expected",
    [
        (10, 4, 10, [(1, 3), (4, 6), (7, 9), (10, 10)]),
        (50, 3, 100, [(1, 25), (26, 50), (51, 100)]),
        (1, 4, 10, [(1, 1), (2, 2), (3, 3), (4, 10)]),
        (10, 4, 5, [(1, 3), (4, 5)]),
        (20, 2, 20, [(1, 20)]),
    ],
)
def test_partition_buckets(saturation, workers, n_buckets, expected):
    assert partition_buckets(saturation, workers, n_buckets) == expected


@pytest.mark.parametrize("workers", [2, 3, 5, 16])
@pytest.mark.parametrize("saturation", [1, 7, 40])
def test_partition_covers_every_bucket_once(saturation, workers):
    ranges = partition_buckets(saturation, workers, 40)

    covered = [b for start, end in ranges for b in range(start, end + 1)]
    assert covered == list(range(1, 41))
    assert len(ranges) <= workers


# ============================================================
# Worker failures
# ============================================================


def test_failing_task_fails_the_period(tmp_path):
    zeros = PriorPeriod(1, np.zeros(3), np.array([1, 3]))
    tasks = [
        RangeTask(tmp_path, 0, start, end, PARAMS, PRECISION, HAZARD, prior)
        for (start, end), prior in [((1, 10), zeros), ((11, 20), None)]
    ]

    with ProcessPoolExecutor(max_workers=2) as executor:
        with pytest.raises(PeriodFailedError) as info:
            run_period_tasks(executor, tasks)

    assert info.value.period == 0
    assert (info.value.start, info.value.end) == (11, 20)


# ============================================================
# Backward induction
# ============================================================


def test_run_produces_final_outputs(tmp_path):
    summary = solve(tmp_path, workers=2)

    assert summary.n_periods == 3
    assert summary.n_buckets == 20
    for path in summary.outputs.values():
        assert path.exists()
    assert not list(tmp_path.glob("period_*"))

    store = PeriodStore(tmp_path, PRECISION.bucket_precision)
    periods = [r.period for r in store.read_records(summary.outputs["master"])]
    assert periods == sorted(periods)
    assert len(periods) == 3 * 20


def test_partition_does_not_change_results(tmp_path):
    two = solve(tmp_path / "two", workers=2)
    four = solve(tmp_path / "four", workers=4)

    assert two.outputs["master"].read_text() == four.outputs["master"].read_text()


def test_matches_sequential_solution(tmp_path):
    summary = solve(tmp_path, workers=3)
    store = PeriodStore(tmp_path, PRECISION.bucket_precision)
    records = list(store.read_records(summary.outputs["master"]))

    prior = None
    expected = {}
    for period in reversed(range(HAZARD.n_periods)):
        result = solve_range(period, PARAMS, PRECISION, HAZARD, 1, 20, prior)
        expected[period] = result.probabilities
        ceiling = 1.0 - HAZARD[period]
        prior = PriorPeriod(period, result.probabilities, pruning_set(result.probabilities, ceiling))

    for period, probs in expected.items():
        got = [r.probability for r in records if r.period == period]
        np.testing.assert_array_equal(got, probs)


def test_single_period_horizon(tmp_path):
    summary = solve(tmp_path, workers=2, hazard=HazardRates.fixed(1))

    lines = summary.outputs["master"].read_text().splitlines()
    assert len(lines) == 20
    assert all(line.startswith("0 ") for line in lines)


def test_no_decision_period_raises(tmp_path):
    with pytest.raises(ConfigurationError):
        solve(tmp_path, workers=2, hazard=HazardRates(np.array([1.0])))


def test_spawned_workers_use_parent_log_level(tmp_path):
    config = SolverConfig(
        params=PARAMS,
        precision=PRECISION,
        run=RunSettings(output_dir=tmp_path, workers=2, start_method="spawn", progress=False),
        periods=HAZARD.n_periods,
    )
    configure_logging("WARNING")
    try:
        with _make_executor(config) as executor:
            assert executor.submit(current_log_level).result() == "WARNING"
    finally:
        configure_logging("INFO")
