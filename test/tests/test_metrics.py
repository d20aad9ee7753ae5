import numpy as np
import pytest

from metcv.train.metrics import compute_metrics, partition_metrics, summarize
from metcv.train.results import CVResult, FittedPartitionResult
from metcv.wrangle.splits import Partition


def _entry(fold, observed, predicted, environments):
    n = len(observed)
    partition = Partition(np.arange(100, 110), np.arange(n) + 10 * fold, "cv1", 0, fold, f"fold_{fold}")
    return FittedPartitionResult.from_predictions(
        partition,
        genotypes=[f"G{i}" for i in range(n)],
        environments=environments,
        observed=np.asarray(observed, dtype=float),
        predicted=np.asarray(predicted, dtype=float),
    )


def test_compute_metrics_hand_values():
    m = compute_metrics([1.0, 2.0, 3.0, 4.0], [1.0, 2.0, 3.0, 5.0])
    assert m["rmse"] == pytest.approx(0.5)
    assert m["mae"] == pytest.approx(0.25)
    assert m["r2"] == pytest.approx(0.8)
    expected_pcc = np.corrcoef([1, 2, 3, 4], [1, 2, 3, 5])[0, 1]
    assert m["pcc"] == pytest.approx(expected_pcc)


def test_constant_predictions_have_no_correlation():
    m = compute_metrics([1.0, 2.0, 3.0], [2.0, 2.0, 2.0])
    assert m["pcc"] is None
    assert m["rmse"] == pytest.approx(np.sqrt(2 / 3))


def test_empty_and_single_record():
    assert compute_metrics([], []) == {"pcc": None, "rmse": None, "mae": None, "r2": None}
    single = compute_metrics([2.0], [3.0])
    assert single["rmse"] == pytest.approx(1.0)
    assert single["r2"] is None
    assert single["pcc"] is None


@pytest.fixture
def two_fold_result():
    entries = [
        _entry(0, [1.0, 2.0, 3.0, 4.0], [1.0, 2.0, 3.0, 5.0], ["E1", "E1", "E2", "E2"]),
        _entry(1, [2.0, 4.0, 6.0], [2.5, 4.5, 6.5], ["E1", "E2", "E2"]),
    ]
    return CVResult(entries, seed=1, scheme="cv1")


def test_partition_metrics(two_fold_result):
    df = partition_metrics(two_fold_result)
    assert df.height == 2
    assert df.get_column("fold").to_list() == [0, 1]
    assert df.get_column("n").to_list() == [4, 3]
    assert df.get_column("IDenv").null_count() == 2
    assert df.get_column("rmse").to_list()[1] == pytest.approx(0.5)


def test_partition_metrics_by_environment(two_fold_result):
    df = partition_metrics(two_fold_result, by_environment=True)
    assert df.select(["fold", "IDenv"]).rows() == [
        (0, "E1"),
        (0, "E2"),
        (1, "E1"),
        (1, "E2"),
    ]
    assert df.get_column("n").to_list() == [2, 2, 1, 2]
    # a single-record environment has no correlation
    assert df.get_column("pcc").to_list()[2] is None


def test_errors_are_excluded():
    partition = Partition([0], [1], "cv0", 0, 0, "E1")
    result = CVResult([FittedPartitionResult.from_error(partition, RuntimeError("x"))])
    assert partition_metrics(result).height == 0


def test_summarize(two_fold_result):
    summary = summarize(partition_metrics(two_fold_result))
    assert summary["mae"]["mean"] == pytest.approx((0.25 + 0.5) / 2)
    assert summary["mae"]["std"] == pytest.approx(np.std([0.25, 0.5], ddof=1))
    assert summary["pcc"]["mean"] is not None


def test_summarize_empty():
    result = CVResult([])
    summary = summarize(partition_metrics(result))
    assert summary["rmse"] == {"mean": None, "std": None}
