# src/minruin/core/config.py

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from hydra import compose, initialize_config_dir
from loguru import logger
from omegaconf import DictConfig, OmegaConf

from minruin.core.exceptions import ConfigurationError, StorageError
from minruin.core.store import RUN_CONFIG_FILE

PACKAGE_CONF_DIR = Path(__file__).parents[1] / "conf"

CONTROL_MORTALITY_FILE = "ageprobs.txt"

TERMINATION_RULES = ("first", "last")


# ---------------------------------------------------------------------
# Typed configuration
# ---------------------------------------------------------------------


class Sex(Enum):
    MALE = "M"
    FEMALE = "F"

    @classmethod
    def parse(cls, token: str) -> "Sex":
        value = str(token).strip().upper()
        if value in ("M", "MALE"):
            return cls.MALE
        if value in ("F", "FEMALE"):
            return cls.FEMALE
        raise ConfigurationError(f"Invalid sex '{token}' (expected M or F)")


@dataclass(frozen=True)
class Person:
    sex: Sex
    age: int


@dataclass(frozen=True)
class ModelParams:
    safe_mean: float
    safe_var: float
    risky_mean: float
    risky_var: float
    covariance: float
    expense_ratio: float
    rf_max: float
    prune_decimals: float


@dataclass(frozen=True)
class Precision:
    bucket_precision: int
    allocation_steps: int

    def n_buckets(self, rf_max: float) -> int:
        return int(rf_max * self.bucket_precision + 0.5)


@dataclass(frozen=True)
class RunSettings:
    output_dir: Path = Path("results")
    workers: int = 2
    start_method: str | None = None
    progress: bool = True
    termination: str = "first"


@dataclass(frozen=True)
class SolverConfig:
    params: ModelParams
    precision: Precision
    run: RunSettings = field(default_factory=RunSettings)
    cohort: tuple[Person, ...] = ()
    periods: int | None = None
    mortality_file: Path | None = None

    @property
    def n_buckets(self) -> int:
        return self.precision.n_buckets(self.params.rf_max)


def resolve_workers(workers: int | None) -> int:
    """Worker count: CPU count when unset, never fewer than two."""
    if not workers:
        workers = os.cpu_count() or 2
    return max(2, int(workers))


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------


def validate(config: SolverConfig) -> SolverConfig:
    p = config.params

    for key in ("safe_var", "risky_var"):
        if getattr(p, key) < 0:
            raise ConfigurationError(f"model.{key} must be >= 0 (got {getattr(p, key)})")
    if not 0 <= p.expense_ratio < 1:
        raise ConfigurationError(f"model.expense_ratio must be in [0, 1) (got {p.expense_ratio})")
    if p.rf_max <= 0:
        raise ConfigurationError(f"model.rf_max must be > 0 (got {p.rf_max})")
    if p.prune_decimals < 0:
        raise ConfigurationError(f"model.prune_decimals must be >= 0 (got {p.prune_decimals})")

    if config.precision.bucket_precision < 1:
        raise ConfigurationError("precision.bucket_precision must be >= 1")
    if config.precision.allocation_steps < 1:
        raise ConfigurationError("precision.allocation_steps must be >= 1")
    if config.n_buckets < 1:
        raise ConfigurationError(
            f"rf_max * bucket_precision yields no buckets ({p.rf_max} * {config.precision.bucket_precision})"
        )

    if config.run.termination not in TERMINATION_RULES:
        raise ConfigurationError(
            f"cohort.termination must be one of {TERMINATION_RULES} (got '{config.run.termination}')"
        )

    if config.cohort and config.periods is not None:
        raise ConfigurationError("Give either cohort.persons or cohort.periods, not both")
    if not config.cohort:
        if config.periods is None or config.periods < 1:
            raise ConfigurationError("cohort.periods must be >= 1 when no persons are given")
    else:
        if config.mortality_file is None:
            raise ConfigurationError("mortality_file must be set when cohort.persons is given")
        for i, person in enumerate(config.cohort):
            if person.age <= 0:
                raise ConfigurationError(f"Invalid age for person #{i}: {person.age}")

    return config


# ---------------------------------------------------------------------
# Hydra composition
# ---------------------------------------------------------------------


def load_config(overrides: list[str] | None = None, config_dir: str | Path | None = None) -> DictConfig:
    """
    Compose the configuration tree with Hydra, applying ``key=value`` overrides.
    """
    conf_dir = Path(config_dir or PACKAGE_CONF_DIR).resolve()
    if not (conf_dir / "config.yaml").exists():
        raise ConfigurationError(f"Config directory has no config.yaml: {conf_dir}")

    try:
        with initialize_config_dir(config_dir=str(conf_dir), version_base=None):
            cfg = compose(config_name="config", overrides=list(overrides or []))
    except ConfigurationError:
        raise
    except Exception as e:
        raise ConfigurationError(f"Cannot compose configuration from {conf_dir}: {e}") from e

    logger.debug("Composed configuration from {}:\n{}", conf_dir, OmegaConf.to_yaml(cfg))
    return cfg


def _number(section: dict, key: str, prefix: str, kind=float):
    try:
        return kind(section[key])
    except KeyError:
        raise ConfigurationError(f"Missing configuration value {prefix}.{key}") from None
    except (TypeError, ValueError):
        raise ConfigurationError(f"{prefix}.{key} must be numeric (got {section[key]!r})") from None


def solver_config_from_cfg(cfg: DictConfig) -> SolverConfig:
    """Convert a composed configuration into a validated SolverConfig."""
    data = OmegaConf.to_container(cfg, resolve=True)

    model = data.get("model") or {}
    params = ModelParams(
        **{
            key: _number(model, key, "model")
            for key in (
                "safe_mean",
                "safe_var",
                "risky_mean",
                "risky_var",
                "covariance",
                "expense_ratio",
                "rf_max",
                "prune_decimals",
            )
        }
    )

    prec = data.get("precision") or {}
    precision = Precision(
        bucket_precision=_number(prec, "bucket_precision", "precision", int),
        allocation_steps=_number(prec, "allocation_steps", "precision", int),
    )

    cohort_cfg = data.get("cohort") or {}
    persons = tuple(
        Person(sex=Sex.parse(p.get("sex")), age=_number(p, "age", f"cohort.persons.{i}", int))
        for i, p in enumerate(cohort_cfg.get("persons") or [])
    )
    periods = cohort_cfg.get("periods")
    if periods is not None:
        periods = _number(cohort_cfg, "periods", "cohort", int)

    run_cfg = data.get("run") or {}
    run = RunSettings(
        output_dir=Path(run_cfg.get("output_dir") or "results"),
        workers=resolve_workers(run_cfg.get("workers")),
        start_method=run_cfg.get("start_method"),
        progress=bool(run_cfg.get("progress", True)),
        termination=str(cohort_cfg.get("termination", "first")).lower(),
    )

    mortality_file = data.get("mortality_file")

    return validate(
        SolverConfig(
            params=params,
            precision=precision,
            run=run,
            cohort=persons,
            periods=periods,
            mortality_file=Path(mortality_file) if mortality_file else None,
        )
    )


def save_run_config(cfg: DictConfig, output_dir: Path) -> Path:
    """
    Save the resolved configuration next to the results for reproducibility.
    """
    path = Path(output_dir) / RUN_CONFIG_FILE
    try:
        OmegaConf.save(cfg, path, resolve=True)
    except OSError as e:
        raise StorageError(f"Cannot write {path}: {e}") from e
    return path


# ---------------------------------------------------------------------
# Legacy control file
# ---------------------------------------------------------------------


def load_control_file(path: str | Path, run: RunSettings | None = None) -> SolverConfig:
    """
    Read a whitespace-delimited control file:

        safe_mean safe_var risky_mean risky_var covariance rf_max expense_ratio prune_decimals
        bucket_precision allocation_steps
        k  [sex age] * k        (k > 0: random horizon for k persons)
        0  periods              (k = 0: fixed horizon)

    The mortality table is expected next to the control file as ``ageprobs.txt``.
    """
    path = Path(path)
    try:
        tokens = path.read_text().split()
    except OSError as e:
        raise ConfigurationError(f"Cannot read control file {path}: {e}") from e

    if len(tokens) < 12:
        raise ConfigurationError(f"Control file {path} is incomplete ({len(tokens)} values)")

    try:
        values = [float(t) for t in tokens[:8]]
        bucket_precision, allocation_steps = int(tokens[8]), int(tokens[9])
        n_persons = int(tokens[10])
    except ValueError as e:
        raise ConfigurationError(f"Control file {path} has a non-numeric value: {e}") from e

    smn, svr, bmn, bvr, cv, rfmax, er, prnpwr = values
    params = ModelParams(
        safe_mean=smn,
        safe_var=svr,
        risky_mean=bmn,
        risky_var=bvr,
        covariance=cv,
        expense_ratio=er,
        rf_max=rfmax,
        prune_decimals=prnpwr,
    )

    persons: list[Person] = []
    periods = None
    if n_persons > 0:
        pairs = tokens[11:]
        if len(pairs) < 2 * n_persons:
            raise ConfigurationError(
                f"Control file {path} lists {n_persons} persons but only {len(pairs) // 2} sex/age pairs"
            )
        for i in range(n_persons):
            sex_token, age_token = pairs[2 * i], pairs[2 * i + 1]
            try:
                age = int(age_token)
            except ValueError:
                raise ConfigurationError(f"Invalid age in {path} for person #{i}: {age_token}") from None
            persons.append(Person(sex=Sex.parse(sex_token), age=age))
    else:
        try:
            periods = int(tokens[11])
        except ValueError:
            raise ConfigurationError(f"Invalid number of periods in {path}: {tokens[11]}") from None

    return validate(
        SolverConfig(
            params=params,
            precision=Precision(bucket_precision, allocation_steps),
            run=run or RunSettings(workers=resolve_workers(None)),
            cohort=tuple(persons),
            periods=periods,
            mortality_file=path.parent / CONTROL_MORTALITY_FILE if persons else None,
        )
    )
