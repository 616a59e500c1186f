# src/minruin/core/optimizer.py

"""
One backward induction step: optimal safe-asset allocation per ruin-factor bucket.

Per-period gross return for allocation alpha (share held in the safe asset)
is normal with

    mean = (1 - er) * (1 + alpha * safe_mean + (1 - alpha) * risky_mean)
    std  = (1 - er) * sqrt(alpha^2 safe_var + (1 - alpha)^2 risky_var
                           + 2 alpha (1 - alpha) cov)

Ruin happens this period when the return does not exceed the ruin factor
rf, with probability Phi(rf). Otherwise the next ruin factor is
rf / (R - rf), so a return R lands in bucket k of the next period when

    rf * (1 + p / (k + 0.5)) < R <= rf * (1 + p / (k - 0.5))

with p the bucket precision. The continuation probability integrates the
next period's optimal probabilities over these return intervals, one
interval per run of equal probabilities (the pruning set).
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
from loguru import logger
from scipy.special import ndtr

from minruin.core.config import ModelParams, Precision
from minruin.core.exceptions import ProbeContractError
from minruin.core.mortality import HazardRates
from minruin.core.prior_period import PriorPeriod
from minruin.core.store import PeriodStore, RangeResult

# Saturation is declared this close below the pruning probability
PRUNE_SLACK = 1e-16 + 1e-17


@dataclass(frozen=True)
class ReturnModel:
    """Return law of every allocation on the grid a / allocation_steps."""

    alphas: np.ndarray
    means: np.ndarray
    stds: np.ndarray

    @classmethod
    def build(cls, params: ModelParams, allocation_steps: int) -> "ReturnModel":
        alphas = np.arange(allocation_steps + 1) / allocation_steps
        scale = 1.0 - params.expense_ratio
        means = scale * (1.0 + alphas * params.safe_mean + (1.0 - alphas) * params.risky_mean)
        variance = (
            alphas**2 * params.safe_var
            + (1.0 - alphas) ** 2 * params.risky_var
            + 2.0 * alphas * (1.0 - alphas) * params.covariance
        )
        # Rounding can push a zero variance slightly negative
        stds = scale * np.sqrt(np.maximum(variance, 0.0))
        return cls(alphas, means, stds)


def normal_cdf(x, mean, std) -> np.ndarray:
    """
    P(R <= x) for R ~ N(mean, std^2), broadcasting over all arguments.

    A zero std is a point mass at the mean.
    """
    x = np.asarray(x, dtype=float)
    mean = np.asarray(mean, dtype=float)
    std = np.asarray(std, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        cdf = ndtr((x - mean) / std)
    return np.where(std == 0.0, (x >= mean).astype(float), cdf)


def prune_probability(max_probability: float, decimals: float) -> float:
    """Maximum probability truncated to ``decimals`` decimal places."""
    scale = 10.0**decimals
    return math.floor(scale * max_probability) / scale


# ---------------------------------------------------------------------
# Terminal period
# ---------------------------------------------------------------------


def solve_terminal(
    period: int,
    precision: Precision,
    hazard: HazardRates,
    model: ReturnModel,
    start: int,
    end: int,
) -> RangeResult:
    """Last decision period: ruin probability is the immediate ruin probability only."""
    rf = np.arange(start, end + 1) / precision.bucket_precision
    cdf = normal_cdf(rf[:, None], model.means[None, :], model.stds[None, :])

    # argmin keeps the first minimizer, i.e. strict improvement only
    best = np.argmin(cdf, axis=1)
    minimal = cdf[np.arange(len(rf)), best]

    return RangeResult(
        period=period,
        start=start,
        end=end,
        probabilities=(1.0 - hazard[period]) * minimal,
        allocations=model.alphas[best],
    )


# ---------------------------------------------------------------------
# Non-terminal periods
# ---------------------------------------------------------------------


class BucketSearch:
    """
    Allocation search for non-terminal buckets of one period.

    Holds everything that does not depend on the bucket: the return law per
    allocation, the prior period's pruning set and its probabilities.
    """

    def __init__(
        self,
        period: int,
        precision: Precision,
        hazard: HazardRates,
        model: ReturnModel,
        prior: PriorPeriod,
    ):
        self.precision = precision
        self.model = model
        self.hazard_now = hazard[period]
        self.hazard_next = hazard[period + 1]
        self.max_probability = 1.0 - self.hazard_now
        self.tie_threshold = 0.5 * self.max_probability

        members = prior.pruning_set
        # Return multiplier at the upper edge of each member bucket
        self.cut_factors = 1.0 + precision.bucket_precision / (members + 0.5)
        # Beyond the last bucket the next period is at its maximum probability
        self.weights = np.append(prior.probabilities[members - 1], 1.0 - self.hazard_next)

    def continuation(self, rf: float, means: np.ndarray, stds: np.ndarray, cdf: np.ndarray) -> np.ndarray:
        """Next-period ruin probability conditional on surviving this period."""
        cuts = normal_cdf(rf * self.cut_factors[None, :], means[:, None], stds[:, None])
        n = len(means)
        upper = np.hstack([np.ones((n, 1)), cuts])
        lower = np.hstack([cuts, cdf[:, None]])
        with np.errstate(divide="ignore", invalid="ignore"):
            eprob = ((upper - lower) * self.weights[None, :]).sum(axis=1) / (1.0 - cdf)
        return np.where(cdf == 1.0, 1.0 - self.hazard_next, eprob)

    def search(self, bucket: int, alpha_indices: np.ndarray) -> tuple[float, float]:
        """
        Best (probability, allocation) for one bucket over the given allocations.

        Allocations are visited in increasing order. Below the tie threshold
        a candidate must strictly improve; once a candidate exceeds it, the
        near-one formula is used and ties go to the larger allocation.
        """
        rf = bucket / self.precision.bucket_precision
        means = self.model.means[alpha_indices]
        stds = self.model.stds[alpha_indices]

        cdf = normal_cdf(rf, means, stds)
        eprob = self.continuation(rf, means, stds, cdf)

        h = self.hazard_now
        ties = False
        best_p = best_alpha = None

        for j, (c, e) in enumerate(zip(cdf.tolist(), eprob.tolist())):
            if j > 0 and best_p <= 0.0:
                break

            if not ties:
                p = (1.0 - h) * (c + e - c * e)
                if p > self.tie_threshold:
                    ties = True
            if ties:
                p = 1.0 - (h + (1.0 - c) * (1.0 - e) - h * (1.0 - c) * (1.0 - e))

            if best_p is None or (not ties and p < best_p) or (ties and p <= best_p):
                best_p = p
                best_alpha = float(self.model.alphas[alpha_indices[j]])

        return best_p, best_alpha


def probe_saturation(
    period: int,
    params: ModelParams,
    precision: Precision,
    hazard: HazardRates,
    prior: PriorPeriod,
) -> int:
    """
    Approximate bucket where saturation pruning starts, using only alpha = 1.

    Returns the number of buckets when saturation is never reached.
    """
    if period == hazard.n_periods - 1:
        raise ProbeContractError(f"Attempt to probe the terminal period {period}")
    if prior is None:
        raise ValueError(f"Period {period} needs the results of period {period + 1}")

    n_buckets = precision.n_buckets(params.rf_max)
    model = ReturnModel.build(params, precision.allocation_steps)
    search = BucketSearch(period, precision, hazard, model, prior)
    prune_prob = prune_probability(search.max_probability, params.prune_decimals)
    logger.info("--> Pruning probability for period {}: {!r}", period, prune_prob)

    full_allocation = np.array([precision.allocation_steps])
    for b in range(1, n_buckets + 1):
        probability, _ = search.search(b, full_allocation)
        if probability >= prune_prob - PRUNE_SLACK:
            logger.info("--> Probe: saturation begins near bucket {}", b)
            return b

    logger.info("--> Probe: no saturation below bucket {}", n_buckets)
    return n_buckets


def solve_range(
    period: int,
    params: ModelParams,
    precision: Precision,
    hazard: HazardRates,
    start: int,
    end: int,
    prior: PriorPeriod | None = None,
) -> RangeResult:
    """Optimal probability and allocation for buckets start..end of ``period``."""
    model = ReturnModel.build(params, precision.allocation_steps)

    if period == hazard.n_periods - 1:
        return solve_terminal(period, precision, hazard, model, start, end)

    if prior is None:
        raise ValueError(f"Period {period} needs the results of period {period + 1}")

    search = BucketSearch(period, precision, hazard, model, prior)
    prune_prob = prune_probability(search.max_probability, params.prune_decimals)

    all_allocations = np.arange(precision.allocation_steps + 1)
    full_allocation = all_allocations[-1:]

    n = end - start + 1
    probabilities = np.empty(n)
    allocations = np.empty(n)
    saturated = False

    for offset, b in enumerate(range(start, end + 1)):
        # Near-certain ruin: keep alpha = 1 without searching
        candidates = full_allocation if saturated else all_allocations
        probabilities[offset], allocations[offset] = search.search(b, candidates)

        if not saturated and probabilities[offset] >= prune_prob - PRUNE_SLACK:
            saturated = True
            logger.debug("Period {}: saturation pruning from bucket {}", period, b)

    return RangeResult(period, start, end, probabilities, allocations)


def optimize_period(
    store: PeriodStore,
    period: int,
    params: ModelParams,
    precision: Precision,
    hazard: HazardRates,
    buckets: tuple[int, int] = (0, 0),
    prior: PriorPeriod | None = None,
) -> int:
    """
    Optimize one bucket range of a period and write it to the store.

    With ``buckets == (0, 0)`` no output is written; the probe pass runs and
    its approximate saturation bucket is returned. Otherwise returns 0.
    """
    start, end = buckets
    if start == 0 and end == 0:
        return probe_saturation(period, params, precision, hazard, prior)

    result = solve_range(period, params, precision, hazard, start, end, prior)
    store.write_range(result)
    return 0
