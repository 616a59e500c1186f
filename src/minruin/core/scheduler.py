# src/minruin/core/scheduler.py

from __future__ import annotations

import multiprocessing
from concurrent.futures import Executor, ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path

from loguru import logger
from tqdm import tqdm

from minruin.core.combiner import combine_all, combine_period
from minruin.core.config import ModelParams, Precision, SolverConfig
from minruin.core.configure_logging import configure_logging, current_log_level
from minruin.core.exceptions import ConfigurationError, PeriodFailedError
from minruin.core.mortality import HazardRates
from minruin.core.optimizer import optimize_period
from minruin.core.prior_period import PriorPeriod, load_prior_period
from minruin.core.store import PeriodStore

# ---------------------------------------------------------------------
# Worker tasks
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class RangeTask:
    """Everything a worker process needs to optimize one bucket range."""

    output_dir: Path
    period: int
    start: int
    end: int
    params: ModelParams
    precision: Precision
    hazard: HazardRates
    prior: PriorPeriod


def run_range_task(task: RangeTask) -> tuple[int, int]:
    logger.debug("Period {}: worker started buckets {}..{}", task.period, task.start, task.end)
    store = PeriodStore(task.output_dir, task.precision.bucket_precision)
    optimize_period(
        store,
        task.period,
        task.params,
        task.precision,
        task.hazard,
        buckets=(task.start, task.end),
        prior=task.prior,
    )
    return task.start, task.end


def partition_buckets(saturation: int, workers: int, n_buckets: int) -> list[tuple[int, int]]:
    """
    Split buckets 1..n_buckets into contiguous ranges for ``workers`` tasks.

    The first workers - 1 ranges share the buckets below the saturation
    point; the last range takes everything after them, which is cheap
    because saturation pruning skips the allocation search there.
    """
    per_worker = max(1, saturation // (workers - 1))

    ranges = []
    for i in range(workers):
        start = per_worker * i + 1
        end = per_worker * (i + 1) if i < workers - 1 else n_buckets
        if start > n_buckets:
            break
        ranges.append((start, min(end, n_buckets)))
    return ranges


def run_period_tasks(executor: Executor, tasks: list[RangeTask]) -> None:
    """
    Run all range tasks of one period and wait for them.

    The first failure cancels the tasks that have not started yet and is
    raised as PeriodFailedError, so an incomplete period is never combined.
    """
    futures = {executor.submit(run_range_task, task): task for task in tasks}

    for future in as_completed(futures):
        task = futures[future]
        try:
            future.result()
        except Exception as e:
            logger.error(
                "Period {}: buckets {} through {} failed: {}",
                task.period,
                task.start,
                task.end,
                e,
            )
            for pending in futures:
                pending.cancel()
            raise PeriodFailedError(task.period, task.start, task.end, e) from e

        logger.debug("Period {}: buckets {}..{} done", task.period, task.start, task.end)


# ---------------------------------------------------------------------
# Backward induction
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class SolveSummary:
    n_periods: int
    n_buckets: int
    outputs: dict[str, Path]


def _make_executor(config: SolverConfig) -> ProcessPoolExecutor:
    mp_context = None
    if config.run.start_method:
        mp_context = multiprocessing.get_context(config.run.start_method)
    return ProcessPoolExecutor(
        max_workers=config.run.workers,
        mp_context=mp_context,
        initializer=configure_logging,
        initargs=(current_log_level(),),
    )


def run_backward_induction(config: SolverConfig, hazard: HazardRates, store: PeriodStore) -> SolveSummary:
    """
    Solve every period from the last decision period back to period 0.

    Period t needs the combined results of period t + 1, so periods run one
    after another; only the bucket ranges within a period run in parallel.
    """
    n_periods = hazard.n_periods
    n_buckets = config.n_buckets
    workers = config.run.workers

    if n_periods < 1:
        raise ConfigurationError("Nothing to solve: the horizon has no decision periods")

    store.ensure_root()
    logger.info(
        "Solving {} period(s) x {} bucket(s) with {} worker(s) into {}",
        n_periods,
        n_buckets,
        workers,
        store.root,
    )

    with _make_executor(config) as executor:
        for period in tqdm(
            reversed(range(n_periods)),
            total=n_periods,
            desc="Backward induction",
            unit="period",
            dynamic_ncols=True,
            disable=not config.run.progress,
        ):
            logger.info("Processing for period {} has begun", period)

            if period == n_periods - 1:
                ranges = [(1, n_buckets)]
                logger.info("--> Processing buckets 1 through {}", n_buckets)
                optimize_period(store, period, config.params, config.precision, hazard, buckets=ranges[0])
            else:
                prior = load_prior_period(store, period, n_buckets, hazard[period + 1])
                saturation = optimize_period(
                    store, period, config.params, config.precision, hazard, prior=prior
                )
                ranges = partition_buckets(saturation, workers, n_buckets)
                logger.info(
                    "--> Buckets per worker (excluding last): {}",
                    ranges[0][1] - ranges[0][0] + 1,
                )

                tasks = []
                for start, end in ranges:
                    logger.info("--> Begin concurrent processing of buckets {} through {}", start, end)
                    tasks.append(
                        RangeTask(
                            output_dir=store.root,
                            period=period,
                            start=start,
                            end=end,
                            params=config.params,
                            precision=config.precision,
                            hazard=hazard,
                            prior=prior,
                        )
                    )
                run_period_tasks(executor, tasks)

            combine_period(store, period, ranges)
            logger.info("Processing for period {} has finished", period)

    outputs = combine_all(store, n_periods, n_buckets)
    return SolveSummary(n_periods=n_periods, n_buckets=n_buckets, outputs=outputs)
