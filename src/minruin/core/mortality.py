"""
mortality.py

Hazard rates for a retiring cohort from an age/death probability table.

The table gives, per sex, the probability of dying at each age for an
individual alive at the table's first age. For every person in the cohort
the sex's distribution is shifted to their starting age and renormalized
on survival to that age. Persons are treated as independent, and the
per-person distributions are joined into one termination distribution:

- "first": the cohort ends at the first death
      F(t) = 1 - prod_i (1 - F_i(t))
- "last": the cohort ends at the last death (joint last survivor)
      F(t) = prod_i F_i(t)

The joint CDF is finally converted to conditional hazard rates

      h[0] = F(0)
      h[t] = min((F(t) - F(t-1)) / (1 - F(t-1)), 1)

which is the probability that the cohort terminates in period t given
that it was still active at the start of t.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np
from loguru import logger

from minruin.core.config import Person, Sex, SolverConfig
from minruin.core.exceptions import ConfigurationError, StorageError

# Allowed deviation of a probability mass sum from one
SUM_TOLERANCE = 1e-15


# ============================================================
# Data types
# ============================================================


@dataclass(frozen=True)
class MortalityTable:
    """Death probabilities by age for both sexes, starting at ``start_age``."""

    start_age: int
    male: np.ndarray
    female: np.ndarray

    def probs(self, sex: Sex) -> np.ndarray:
        return self.male if sex is Sex.MALE else self.female

    def max_age(self, sex: Sex) -> int:
        """Last age with a non-zero death probability."""
        nonzero = np.flatnonzero(self.probs(sex) > 0)
        if nonzero.size == 0:
            return self.start_age - 1
        return self.start_age + int(nonzero[-1])


@dataclass(frozen=True)
class HazardRates:
    """
    Conditional termination probabilities, one per period.

    ``horizon`` counts every period including the last survival state;
    allocation decisions are made in periods 0 .. n_periods - 1.
    """

    rates: np.ndarray

    @property
    def horizon(self) -> int:
        return len(self.rates)

    @property
    def n_periods(self) -> int:
        return len(self.rates) - 1

    def __getitem__(self, t: int) -> float:
        return float(self.rates[t])

    @classmethod
    def fixed(cls, periods: int) -> "HazardRates":
        """Fixed horizon: the cohort never terminates before the last period."""
        return cls(np.zeros(periods + 1))


# ============================================================
# Table reading
# ============================================================


def read_mortality_table(path: str | Path) -> MortalityTable:
    """
    Read rows of ``age male_prob female_prob``.

    The first row fixes the start age; rows after a gap in ages are ignored.
    """
    path = Path(path)
    try:
        lines = path.read_text().splitlines()
    except OSError as e:
        raise ConfigurationError(f"Cannot read mortality table {path}: {e}") from e

    start_age = None
    prev_age = None
    male: list[float] = []
    female: list[float] = []

    for lineno, line in enumerate(lines, start=1):
        fields = line.split()
        if len(fields) != 3:
            continue
        try:
            age = int(fields[0])
            m_prob = float(fields[1])
            f_prob = float(fields[2])
        except ValueError:
            raise ConfigurationError(
                f"Malformed row in mortality table {path} line {lineno}: {line.strip()!r}"
            ) from None

        if start_age is None:
            start_age = age
            prev_age = age - 1

        if age != prev_age + 1:
            continue

        if m_prob < 0 or f_prob < 0:
            raise ConfigurationError(f"Negative probability in {path} at age {age}")

        male.append(m_prob)
        female.append(f_prob)
        prev_age = age

    if start_age is None:
        raise ConfigurationError(f"Mortality table {path} has no rows")

    table = MortalityTable(start_age, np.array(male), np.array(female))

    # Sum in reverse so small tail probabilities are added first
    m_sum = float(sum(table.male[::-1]))
    f_sum = float(sum(table.female[::-1]))
    if min(m_sum, f_sum) < 1.0 - SUM_TOLERANCE or max(m_sum, f_sum) > 1.0 + SUM_TOLERANCE:
        raise ConfigurationError(
            f"Probabilities in {path} do not sum to 1 for one or both sexes "
            f"(male sum = {m_sum!r}, female sum = {f_sum!r})"
        )

    logger.debug(
        "Mortality table {}: ages {}..{}, max age M={} F={}",
        path,
        start_age,
        start_age + len(male) - 1,
        table.max_age(Sex.MALE),
        table.max_age(Sex.FEMALE),
    )
    return table


# ============================================================
# Per-person distributions
# ============================================================


def validate_cohort(table: MortalityTable, cohort: tuple[Person, ...]) -> None:
    for i, person in enumerate(cohort):
        max_age = table.max_age(person.sex)
        if person.age < table.start_age or person.age > max_age:
            raise ConfigurationError(
                f"Invalid age for person #{i} (sex={person.sex.value}): {person.age}; "
                f"allowed range is {table.start_age}..{max_age}"
            )


def cohort_horizon(table: MortalityTable, cohort: tuple[Person, ...]) -> int:
    """Number of periods until the longest-lived person's maximum age, inclusive."""
    return max(table.max_age(p.sex) - p.age + 1 for p in cohort)


def person_cdf(table: MortalityTable, person: Person, horizon: int) -> np.ndarray:
    """
    Cumulative death probability for one person, period 0 = starting age.
    """
    probs = table.probs(person.sex)
    offset = person.age - table.start_age

    # Conditional on survival to the starting age
    survival = float(sum(probs[offset:][::-1]))

    n_alive = table.max_age(person.sex) - person.age + 1
    pmf = np.zeros(horizon)
    pmf[:n_alive] = probs[offset : offset + n_alive] / survival

    total = float(pmf.sum())
    if abs(total - 1.0) > SUM_TOLERANCE:
        logger.warning("Sum of probabilities for {} aged {} is {!r}", person.sex.name, person.age, total)

    return np.cumsum(pmf)


def joint_cdf(cdfs: list[np.ndarray], termination: str = "first") -> np.ndarray:
    if termination == "first":
        survival = np.ones_like(cdfs[0])
        for cdf in cdfs:
            survival = survival * (1.0 - cdf)
        return 1.0 - survival
    if termination == "last":
        joint = np.ones_like(cdfs[0])
        for cdf in cdfs:
            joint = joint * cdf
        return joint
    raise ValueError(f"termination must be 'first' or 'last' (got '{termination}')")


def hazard_from_cdf(cdf: np.ndarray) -> np.ndarray:
    rates = np.empty_like(cdf)
    rates[0] = cdf[0]
    for t in range(1, len(cdf)):
        alive = 1.0 - cdf[t - 1]
        if alive <= 0.0:
            rates[t] = 1.0
        else:
            rates[t] = min((cdf[t] - cdf[t - 1]) / alive, 1.0)
    return rates


# ============================================================
# Public API
# ============================================================


def derive_hazard_rates(
    table: MortalityTable,
    cohort: tuple[Person, ...],
    termination: str = "first",
) -> HazardRates:
    """
    Hazard rate sequence for a cohort; ``horizon`` is the longest remaining lifetime.
    """
    if not cohort:
        raise ConfigurationError("Cohort must contain at least one person")

    validate_cohort(table, cohort)
    horizon = cohort_horizon(table, cohort)

    cdfs = [person_cdf(table, person, horizon) for person in cohort]
    rates = hazard_from_cdf(joint_cdf(cdfs, termination))

    logger.info(
        "Derived {} hazard rates for {} person(s) ({} death rule)",
        horizon,
        len(cohort),
        termination,
    )
    return HazardRates(rates)


def write_hazard_rates(path: str | Path, hazard: HazardRates) -> Path:
    path = Path(path)
    lines = [f"{rate:.17g} (t={t})\n" for t, rate in enumerate(hazard.rates)]
    try:
        path.write_text("".join(lines))
    except OSError as e:
        raise StorageError(f"Cannot write hazard rates to {path}: {e}") from e
    return path


def read_hazard_rates(path: str | Path) -> HazardRates:
    path = Path(path)
    try:
        lines = path.read_text().splitlines()
    except OSError as e:
        raise ConfigurationError(f"Cannot read hazard rates {path}: {e}") from e

    rates = []
    for line in lines:
        fields = line.split()
        if len(fields) != 2:
            continue
        try:
            rates.append(float(fields[0]))
        except ValueError:
            raise ConfigurationError(f"Malformed hazard rate in {path}: {line.strip()!r}") from None

    if len(rates) < 2:
        raise ConfigurationError(f"Hazard file {path} needs at least two periods")
    return HazardRates(np.array(rates))


def hazard_rates_for(config: SolverConfig, hazard_file: str | Path | None = None) -> HazardRates:
    """
    Hazard rates for a run: read from ``hazard_file`` when given, otherwise
    derived from the cohort, or all zeros for a fixed horizon.
    """
    if hazard_file is not None:
        hazard = read_hazard_rates(hazard_file)
        logger.info("Read {} hazard rates from {}", hazard.horizon, hazard_file)
        return hazard

    if not config.cohort:
        logger.info("Fixed horizon of {} period(s)", config.periods)
        return HazardRates.fixed(config.periods)

    table = read_mortality_table(config.mortality_file)
    return derive_hazard_rates(table, config.cohort, config.run.termination)
