# src/minruin/core/prior_period.py

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from loguru import logger

from minruin.core.exceptions import CorruptPriorPeriodError, StorageError
from minruin.core.store import PeriodStore

# Slack allowed above the period's maximum probability
CEILING_TOLERANCE = 2e-16
# Slack allowed for a decrease between neighbouring buckets
MONOTONE_TOLERANCE = 1e-15


@dataclass(frozen=True)
class PriorPeriod:
    """
    Optimal probabilities of period t + 1, as seen while solving period t.

    ``probabilities[b - 1]`` belongs to bucket b. ``pruning_set`` holds the
    1-based buckets that end a run of equal probabilities; each member's
    value stands for every bucket after the previous member up to itself.
    """

    period: int
    probabilities: np.ndarray
    pruning_set: np.ndarray


def pruning_set(probabilities: np.ndarray, ceiling: float) -> np.ndarray:
    """
    Buckets whose probability differs from their successor, plus the first and last.

    Scanning stops once the successor reaches ``ceiling``: all later buckets
    share the maximum probability and are represented by the last bucket.
    """
    n_buckets = len(probabilities)
    members = [1]
    at_ceiling = False

    for b in range(2, n_buckets):
        if at_ceiling:
            break
        if probabilities[b - 1] != probabilities[b]:
            if probabilities[b] >= ceiling:
                at_ceiling = True
            members.append(b)

    if n_buckets > 1:
        members.append(n_buckets)

    return np.array(members, dtype=np.int64)


def validate_probabilities(probabilities: np.ndarray, ceiling: float, source) -> None:
    previous = 0.0
    for b, value in enumerate(probabilities, start=1):
        if (
            value < 0
            or value > ceiling + CEILING_TOLERANCE
            or value < previous - MONOTONE_TOLERANCE
        ):
            raise CorruptPriorPeriodError(source, b, previous, float(value), ceiling)
        previous = value


def load_prior_period(
    store: PeriodStore,
    period: int,
    n_buckets: int,
    prior_hazard: float,
) -> PriorPeriod:
    """
    Load the combined results of period ``period + 1``.

    ``prior_hazard`` is the hazard rate of that later period; its maximum
    possible ruin probability is ``1 - prior_hazard``. Every bucket
    1..n_buckets must appear exactly once; a gap is a StorageError.
    """
    prior = period + 1
    path = store.period_path(prior)

    probabilities = np.zeros(n_buckets)
    seen = np.zeros(n_buckets, dtype=bool)
    for record in store.read_records(path):
        bucket = store.bucket_of(record.ruin_factor)
        if record.period != prior:
            raise StorageError(f"Record of period {record.period} in {path} (bucket {bucket})")
        if not 1 <= bucket <= n_buckets:
            raise StorageError(f"Bucket {bucket} in {path} is outside 1..{n_buckets}")
        if seen[bucket - 1]:
            raise StorageError(f"Bucket {bucket} appears twice in {path}")
        seen[bucket - 1] = True
        probabilities[bucket - 1] = record.probability

    if not seen.all():
        missing = int(np.argmin(seen)) + 1
        raise StorageError(
            f"{path} is incomplete: bucket {missing} missing "
            f"({n_buckets - int(seen.sum())} of {n_buckets} absent)"
        )

    ceiling = 1.0 - prior_hazard
    validate_probabilities(probabilities, ceiling, path)
    members = pruning_set(probabilities, ceiling)

    logger.info("--> {} unique bucket probabilities in period {}", len(members), prior)
    return PriorPeriod(prior, probabilities, members)
