"""
Exception hierarchy for minruin.

RuinSolverError (base)
├── ConfigurationError      - bad parameters, control file, mortality table
├── CorruptPriorPeriodError - prior period probabilities fail validation
├── StorageError            - staged result files cannot be read or written
├── ProbeContractError      - probe pass requested for the terminal period
└── PeriodFailedError       - a worker task for a period did not complete

Every error is fatal for the run: the CLI reports it and exits non-zero.
"""


class RuinSolverError(Exception):
    """Base exception for all minruin errors."""


class ConfigurationError(RuinSolverError):
    """Invalid configuration, control file, or mortality input."""


class CorruptPriorPeriodError(RuinSolverError):
    """
    Prior period probabilities are not monotone or out of bounds.

    Carries the offending bucket and the values on both sides of it.
    """

    def __init__(self, path, bucket: int, previous: float, value: float, ceiling: float):
        self.path = path
        self.bucket = bucket
        self.previous = previous
        self.value = value
        self.ceiling = ceiling
        super().__init__(
            f"Corrupt prior period data in {path}: "
            f"bucket {bucket - 1} = {previous!r}, bucket {bucket} = {value!r} "
            f"(allowed range [0, {ceiling!r}], non-decreasing)"
        )


class StorageError(RuinSolverError):
    """Staged result file could not be read or written."""


class ProbeContractError(RuinSolverError):
    """The probe pass was requested for the terminal period."""


class PeriodFailedError(RuinSolverError):
    """A bucket range task failed, so the period cannot be combined."""

    def __init__(self, period: int, start: int, end: int, cause: BaseException):
        self.period = period
        self.start = start
        self.end = end
        super().__init__(
            f"Period {period}: buckets {start} through {end} failed: {cause}"
        )
