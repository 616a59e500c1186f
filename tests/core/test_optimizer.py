from dataclasses import replace

import numpy as np
import pytest
from scipy.stats import norm

from minruin.core.config import ModelParams, Precision
from minruin.core.exceptions import ProbeContractError
from minruin.core.mortality import HazardRates
from minruin.core.optimizer import (
    PRUNE_SLACK,
    BucketSearch,
    ReturnModel,
    normal_cdf,
    optimize_period,
    probe_saturation,
    prune_probability,
    solve_range,
)
from minruin.core.prior_period import PriorPeriod, pruning_set
from minruin.core.store import PeriodStore

DEFAULT_PARAMS = ModelParams(
    safe_mean=0.01,
    safe_var=0.0001,
    risky_mean=0.06,
    risky_var=0.04,
    covariance=0.0,
    expense_ratio=0.001,
    rf_max=1.0,
    prune_decimals=4,
)

# Both assets return exactly 5% every period
RISKLESS_PARAMS = ModelParams(
    safe_mean=0.05,
    safe_var=0.0,
    risky_mean=0.05,
    risky_var=0.0,
    covariance=0.0,
    expense_ratio=0.0,
    rf_max=2.0,
    prune_decimals=4,
)


def prior_from(result, hazard):
    ceiling = 1.0 - hazard[result.period]
    return PriorPeriod(result.period, result.probabilities, pruning_set(result.probabilities, ceiling))


@pytest.fixture
def riskless():
    precision = Precision(bucket_precision=100, allocation_steps=10)
    hazard = HazardRates(np.zeros(3))
    n_buckets = precision.n_buckets(RISKLESS_PARAMS.rf_max)
    terminal = solve_range(1, RISKLESS_PARAMS, precision, hazard, 1, n_buckets)
    return precision, hazard, n_buckets, terminal


# ============================================================
# Return model
# ============================================================


def test_return_model_endpoints():
    model = ReturnModel.build(DEFAULT_PARAMS, 4)

    np.testing.assert_allclose(model.alphas, [0.0, 0.25, 0.5, 0.75, 1.0])
    assert model.means[0] == pytest.approx(0.999 * 1.06)
    assert model.means[-1] == pytest.approx(0.999 * 1.01)
    assert model.stds[0] == pytest.approx(0.999 * 0.2)
    assert model.stds[-1] == pytest.approx(0.999 * 0.01)


def test_zero_std_is_point_mass():
    assert normal_cdf(1.0, 1.05, 0.0) == 0.0
    assert normal_cdf(1.05, 1.05, 0.0) == 1.0
    assert normal_cdf(2.0, 1.05, 0.0) == 1.0


def test_prune_probability_truncates():
    assert prune_probability(0.987654321, 4) == 0.9876
    assert prune_probability(1.0, 4) == 1.0


# ============================================================
# Terminal period
# ============================================================


def test_terminal_matches_brute_force():
    precision = Precision(bucket_precision=50, allocation_steps=20)
    hazard = HazardRates(np.array([0.1, 0.2]))
    result = solve_range(0, DEFAULT_PARAMS, precision, hazard, 1, 50)

    p = DEFAULT_PARAMS
    alphas = np.arange(21) / 20
    means = 0.999 * (1 + alphas * p.safe_mean + (1 - alphas) * p.risky_mean)
    stds = 0.999 * np.sqrt(alphas**2 * p.safe_var + (1 - alphas) ** 2 * p.risky_var)

    for offset, b in enumerate(range(1, 51)):
        cdf = norm.cdf(b / 50, loc=means, scale=stds)
        assert result.probabilities[offset] == pytest.approx(0.9 * cdf.min(), rel=1e-13, abs=1e-16)
        chosen = int(round(result.allocations[offset] * 20))
        assert cdf[chosen] == pytest.approx(cdf.min(), rel=1e-13, abs=1e-16)


def test_terminal_is_monotone_in_ruin_factor():
    precision = Precision(bucket_precision=50, allocation_steps=20)
    hazard = HazardRates(np.array([0.0, 0.0]))
    result = solve_range(0, DEFAULT_PARAMS, precision, hazard, 1, 50)

    assert np.all(np.diff(result.probabilities) >= 0.0)


def test_terminal_riskless_step(riskless):
    _, _, _, terminal = riskless

    # Buckets 1..100 survive for sure, 110..200 are ruined for sure
    assert np.all(terminal.probabilities[:100] == 0.0)
    assert np.all(terminal.probabilities[109:] == 1.0)
    # Ties are never broken towards a later allocation
    assert np.all(terminal.allocations[:100] == 0.0)
    assert np.all(terminal.allocations[109:] == 0.0)


# ============================================================
# Non-terminal periods
# ============================================================


def test_riskless_two_period_solution(riskless):
    precision, hazard, n_buckets, terminal = riskless

    result = solve_range(0, RISKLESS_PARAMS, precision, hazard, 1, n_buckets, prior_from(terminal, hazard))

    # rf -> rf / (1.05 - rf) must stay below 1.05, i.e. rf below about 0.538
    assert np.all(result.probabilities[:50] == 0.0)
    assert np.all(result.probabilities[59:] == 1.0)
    # The search stops at the first allocation reaching zero
    assert np.all(result.allocations[:50] == 0.0)
    # Past the tie threshold every allocation ties and the largest wins
    assert np.all(result.allocations[59:] == 1.0)


def test_saturated_buckets_keep_full_safe_allocation():
    params = replace(DEFAULT_PARAMS, rf_max=3.0, prune_decimals=1)
    precision = Precision(bucket_precision=10, allocation_steps=10)
    hazard = HazardRates(np.array([0.05, 0.05, 0.05]))
    n_buckets = precision.n_buckets(params.rf_max)
    terminal = solve_range(1, params, precision, hazard, 1, n_buckets)

    result = solve_range(0, params, precision, hazard, 1, n_buckets, prior_from(terminal, hazard))

    prune_prob = prune_probability(1.0 - hazard[0], params.prune_decimals)
    saturated = np.flatnonzero(result.probabilities >= prune_prob - PRUNE_SLACK)
    assert saturated.size > 0
    first = saturated[0]
    assert first < n_buckets - 1
    np.testing.assert_array_equal(result.allocations[first + 1 :], 1.0)


def test_riskless_allocation_does_not_matter(riskless):
    precision, hazard, _, terminal = riskless
    model = ReturnModel.build(RISKLESS_PARAMS, precision.allocation_steps)
    search = BucketSearch(0, precision, hazard, model, prior_from(terminal, hazard))

    for b in (30, 80, 150):
        p_risky, _ = search.search(b, np.array([0]))
        p_safe, _ = search.search(b, np.array([precision.allocation_steps]))
        assert p_risky == p_safe


def test_non_terminal_bounds():
    precision = Precision(bucket_precision=20, allocation_steps=10)
    hazard = HazardRates(np.array([0.01, 0.02, 0.05]))
    terminal = solve_range(1, DEFAULT_PARAMS, precision, hazard, 1, 20)

    result = solve_range(0, DEFAULT_PARAMS, precision, hazard, 1, 20, prior_from(terminal, hazard))

    assert np.all(result.probabilities >= 0.0)
    assert np.all(result.probabilities <= 1.0 - hazard[0] + 1e-15)
    assert np.all((result.allocations >= 0.0) & (result.allocations <= 1.0))
    steps = result.allocations * precision.allocation_steps
    np.testing.assert_allclose(steps, np.round(steps), atol=1e-9)
    assert np.all(np.diff(result.probabilities) >= -1e-12)


def test_non_terminal_without_prior_raises():
    precision = Precision(bucket_precision=10, allocation_steps=10)
    hazard = HazardRates(np.zeros(3))

    with pytest.raises(ValueError):
        solve_range(0, DEFAULT_PARAMS, precision, hazard, 1, 10)


# ============================================================
# Probe pass
# ============================================================


def test_probe_terminal_period_raises():
    precision = Precision(bucket_precision=10, allocation_steps=10)
    hazard = HazardRates(np.zeros(3))

    with pytest.raises(ProbeContractError):
        probe_saturation(1, DEFAULT_PARAMS, precision, hazard, prior=None)


def test_probe_finds_first_saturated_bucket(riskless, tmp_path):
    precision, hazard, n_buckets, terminal = riskless
    prior = prior_from(terminal, hazard)
    store = PeriodStore(tmp_path, precision.bucket_precision)

    saturation = optimize_period(store, 0, RISKLESS_PARAMS, precision, hazard, prior=prior)

    full = solve_range(0, RISKLESS_PARAMS, precision, hazard, 1, n_buckets, prior)
    expected = 1 + int(np.argmax(full.probabilities >= 1.0 - PRUNE_SLACK))
    assert saturation == expected
    # The probe pass writes nothing
    assert list(tmp_path.iterdir()) == []


def test_optimize_period_writes_range_file(tmp_path):
    precision = Precision(bucket_precision=10, allocation_steps=10)
    hazard = HazardRates(np.zeros(2))
    store = PeriodStore(tmp_path, precision.bucket_precision)

    assert optimize_period(store, 0, DEFAULT_PARAMS, precision, hazard, buckets=(3, 7)) == 0

    records = list(store.read_records(store.range_path(0, 3, 7)))
    assert [store.bucket_of(r.ruin_factor) for r in records] == [3, 4, 5, 6, 7]
