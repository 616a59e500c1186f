# src/minruin/core/store.py

"""
Staged file store for backward induction results.

Layout of one run's output directory:

    <output_dir>/
        ├── hazard_rates.txt
        ├── run_config.yaml
        ├── period_<t>_buckets_<s>_<e>.txt   (per worker, transient)
        ├── period_<t>_all.txt               (per period, transient)
        ├── results_long.txt                 (all periods, chronological)
        ├── prob_results_wide.csv
        └── alloc_results_wide.csv

Every record line is ``period ruin_factor probability allocation``.
Only the immediately prior period has to be read back, so a run never
holds more than two periods of results in memory.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, NamedTuple

import numpy as np
from loguru import logger

from minruin.core.exceptions import StorageError

HAZARD_FILE = "hazard_rates.txt"
RUN_CONFIG_FILE = "run_config.yaml"
MASTER_FILE = "results_long.txt"
PROB_TABLE_FILE = "prob_results_wide.csv"
ALLOC_TABLE_FILE = "alloc_results_wide.csv"


class PeriodRecord(NamedTuple):
    period: int
    ruin_factor: float
    probability: float
    allocation: float


@dataclass(frozen=True)
class RangeResult:
    """Optimal probabilities and allocations for buckets start..end of one period."""

    period: int
    start: int
    end: int
    probabilities: np.ndarray
    allocations: np.ndarray

    def records(self, bucket_precision: int) -> Iterator[PeriodRecord]:
        for offset, bucket in enumerate(range(self.start, self.end + 1)):
            yield PeriodRecord(
                self.period,
                bucket / bucket_precision,
                float(self.probabilities[offset]),
                float(self.allocations[offset]),
            )


def format_record(record: PeriodRecord) -> str:
    return (
        f"{record.period} {record.ruin_factor:.10f} "
        f"{record.probability:.17g} {record.allocation:.10f}\n"
    )


def parse_record(line: str) -> PeriodRecord | None:
    """Parse one record line; lines without exactly four fields are skipped."""
    fields = line.split()
    if len(fields) != 4:
        return None
    return PeriodRecord(int(fields[0]), float(fields[1]), float(fields[2]), float(fields[3]))


class PeriodStore:
    """
    Period-keyed, bucket-ranged file store rooted at one output directory.
    """

    def __init__(self, root: str | Path, bucket_precision: int):
        self.root = Path(root)
        self.bucket_precision = bucket_precision

    # -----------------------------------------------------------------
    # Path helpers
    # -----------------------------------------------------------------
    def ensure_root(self) -> Path:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot create output directory {self.root}: {e}") from e
        return self.root

    def range_path(self, period: int, start: int, end: int) -> Path:
        return self.root / f"period_{period}_buckets_{start}_{end}.txt"

    def period_path(self, period: int) -> Path:
        return self.root / f"period_{period}_all.txt"

    @property
    def master_path(self) -> Path:
        return self.root / MASTER_FILE

    @property
    def prob_table_path(self) -> Path:
        return self.root / PROB_TABLE_FILE

    @property
    def alloc_table_path(self) -> Path:
        return self.root / ALLOC_TABLE_FILE

    @property
    def hazard_path(self) -> Path:
        return self.root / HAZARD_FILE

    def bucket_of(self, ruin_factor: float) -> int:
        return int(ruin_factor * self.bucket_precision + 0.5)

    # -----------------------------------------------------------------
    # Writing
    # -----------------------------------------------------------------
    def write_text(self, path: Path, text: str) -> Path:
        """Atomic write: temp file then rename."""
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            tmp_path.write_text(text)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Cannot write {path}: {e}") from e
        return path

    def write_records(self, path: Path, records: Iterable[PeriodRecord]) -> Path:
        return self.write_text(path, "".join(format_record(r) for r in records))

    def write_range(self, result: RangeResult) -> Path:
        path = self.range_path(result.period, result.start, result.end)
        self.write_records(path, result.records(self.bucket_precision))
        logger.trace("Wrote {} ({} records)", path.name, result.end - result.start + 1)
        return path

    def concatenate(self, inputs: Iterable[Path], output: Path) -> Path:
        """Concatenate ``inputs`` in order into ``output`` (atomic)."""
        tmp_path = output.with_name(output.name + ".tmp")
        try:
            with open(tmp_path, "wb") as out:
                for path in inputs:
                    with open(path, "rb") as src:
                        shutil.copyfileobj(src, out)
            os.replace(tmp_path, output)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Cannot combine files into {output}: {e}") from e
        return output

    def remove(self, paths: Iterable[Path]) -> None:
        for path in paths:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StorageError(f"Cannot delete {path}: {e}") from e

    # -----------------------------------------------------------------
    # Reading
    # -----------------------------------------------------------------
    def read_records(self, path: Path) -> Iterator[PeriodRecord]:
        try:
            with open(path) as f:
                lines = f.readlines()
        except OSError as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

        for lineno, line in enumerate(lines, start=1):
            try:
                record = parse_record(line)
            except ValueError as e:
                raise StorageError(f"Malformed record in {path} line {lineno}: {line.strip()!r}") from e
            if record is not None:
                yield record
