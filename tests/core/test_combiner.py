import numpy as np
import pytest

from minruin.core.combiner import combine_all, combine_period, transpose_results
from minruin.core.exceptions import StorageError
from minruin.core.store import PeriodStore, RangeResult


def write_range(store, period, start, end, base=0.0):
    n = end - start + 1
    probs = base + np.arange(start, end + 1) / 1000.0
    store.write_range(RangeResult(period, start, end, probs, np.full(n, 0.5)))


def test_combine_period_concatenates_in_range_order(tmp_path):
    store = PeriodStore(tmp_path, 10)
    ranges = [(1, 10), (11, 20), (21, 30)]
    # Written out of order on purpose
    for start, end in reversed(ranges):
        write_range(store, 3, start, end)

    path = combine_period(store, 3, ranges)

    records = list(store.read_records(path))
    assert len(records) == 30
    assert [store.bucket_of(r.ruin_factor) for r in records] == list(range(1, 31))
    assert not list(tmp_path.glob("period_3_buckets_*"))


def test_combine_period_missing_range_raises(tmp_path):
    store = PeriodStore(tmp_path, 10)
    write_range(store, 0, 1, 5)

    with pytest.raises(StorageError):
        combine_period(store, 0, [(1, 5), (6, 10)])

    assert not store.period_path(0).exists()


def test_combine_all_is_chronological(tmp_path):
    store = PeriodStore(tmp_path, 10)
    for period in (1, 0):
        write_range(store, period, 1, 5, base=period / 10.0)
        combine_period(store, period, [(1, 5)])

    outputs = combine_all(store, n_periods=2, n_buckets=5)

    periods = [r.period for r in store.read_records(outputs["master"])]
    assert periods == [0] * 5 + [1] * 5
    assert not store.period_path(0).exists()
    assert not store.period_path(1).exists()


def test_wide_tables(tmp_path):
    store = PeriodStore(tmp_path, 10)
    for period in (1, 0):
        write_range(store, period, 1, 5, base=period / 10.0)
        combine_period(store, period, [(1, 5)])

    outputs = combine_all(store, n_periods=2, n_buckets=5)

    lines = outputs["probabilities"].read_text().splitlines()
    assert lines[0] == "RF,Time (t=0),Time (t=1)"
    assert len(lines) == 6
    first = lines[1].split(",")
    assert float(first[0]) == 0.1
    assert float(first[1]) == 0.001
    assert float(first[2]) == pytest.approx(0.101)

    allocs = np.loadtxt(outputs["allocations"], delimiter=",", skiprows=1)
    assert allocs.shape == (5, 3)
    np.testing.assert_array_equal(allocs[:, 1:], 0.5)


def test_transpose_marks_missing_results(tmp_path):
    store = PeriodStore(tmp_path, 10)
    write_range(store, 0, 1, 3)
    store.concatenate([store.range_path(0, 1, 3)], store.master_path)

    probs, _ = transpose_results(store, n_periods=1, n_buckets=4)

    assert np.isnan(probs[3, 0])
    assert probs[2, 0] == 0.003
