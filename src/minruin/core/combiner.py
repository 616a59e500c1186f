# src/minruin/core/combiner.py

from __future__ import annotations

from pathlib import Path

import numpy as np
from loguru import logger

from minruin.core.exceptions import StorageError
from minruin.core.store import PeriodStore


def combine_period(store: PeriodStore, period: int, ranges: list[tuple[int, int]]) -> Path:
    """
    Concatenate the range files of one period, in range order, into its period file.
    """
    inputs = [store.range_path(period, start, end) for start, end in ranges]
    output = store.concatenate(inputs, store.period_path(period))
    store.remove(inputs)

    logger.success("Combined {} range file(s) into {}", len(inputs), output.name)
    return output


def transpose_results(store: PeriodStore, n_periods: int, n_buckets: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Read the master file into (bucket, period) arrays of probabilities and allocations.
    """
    probs = np.full((n_buckets, n_periods), np.nan)
    allocs = np.full((n_buckets, n_periods), np.nan)

    for record in store.read_records(store.master_path):
        bucket = store.bucket_of(record.ruin_factor)
        if 1 <= bucket <= n_buckets and 0 <= record.period < n_periods:
            probs[bucket - 1, record.period] = record.probability
            allocs[bucket - 1, record.period] = record.allocation

    missing = int(np.isnan(probs).sum())
    if missing:
        logger.warning("{} (period, bucket) results missing from {}", missing, store.master_path.name)

    return probs, allocs


def write_wide_table(path: Path, ruin_factors: np.ndarray, values: np.ndarray, fmt: str) -> Path:
    """Rows are ruin factors, columns are periods."""
    header = ",".join(["RF"] + [f"Time (t={t})" for t in range(values.shape[1])])
    table = np.column_stack([ruin_factors, values])
    try:
        np.savetxt(
            path,
            table,
            delimiter=",",
            header=header,
            comments="",
            fmt=["%.10f"] + [fmt] * values.shape[1],
        )
    except OSError as e:
        raise StorageError(f"Cannot write {path}: {e}") from e
    return path


def combine_all(store: PeriodStore, n_periods: int, n_buckets: int) -> dict[str, Path]:
    """
    Merge all period files chronologically and write the wide summary tables.
    """
    inputs = [store.period_path(t) for t in range(n_periods)]
    master = store.concatenate(inputs, store.master_path)
    store.remove(inputs)
    logger.success("Combined {} period file(s) into {}", n_periods, master.name)

    probs, allocs = transpose_results(store, n_periods, n_buckets)
    ruin_factors = np.arange(1, n_buckets + 1) / store.bucket_precision

    prob_table = write_wide_table(store.prob_table_path, ruin_factors, probs, "%.17g")
    alloc_table = write_wide_table(store.alloc_table_path, ruin_factors, allocs, "%.10f")
    logger.success("Wrote {} and {}", prob_table.name, alloc_table.name)

    return {"master": master, "probabilities": prob_table, "allocations": alloc_table}
