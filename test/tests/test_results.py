import json
import logging
import threading

import numpy as np
import polars as pl
import pytest

from metcv.core.exceptions import BackendError, PartitionTimeoutError
from metcv.train.results import (
    CVResult,
    FittedPartitionResult,
    ResultAggregator,
    _serialize_value,
)
from metcv.wrangle.splits import Partition, SkipNotice


def _partition(fold, repeat=0, scheme="cv2", n=3):
    test = np.arange(fold * n, fold * n + n)
    train = np.arange(100, 104)
    return Partition(train, test, scheme, repeat, fold, f"fold_{fold}", seed=11)


def _ok(partition):
    n = partition.n_test
    return FittedPartitionResult.from_predictions(
        partition,
        genotypes=[f"G{i}" for i in range(n)],
        environments=["E1"] * n,
        observed=np.arange(n, dtype=float),
        predicted=np.arange(n, dtype=float) + 0.5,
    )


@pytest.fixture
def mixed_result():
    agg = ResultAggregator()
    agg.add(_ok(_partition(2)))
    agg.add(FittedPartitionResult.from_error(_partition(1), BackendError("short")))
    agg.add(
        FittedPartitionResult.from_error(
            _partition(3), PartitionTimeoutError("too slow"), elapsed=5.0
        )
    )
    agg.add(_ok(_partition(0)))
    agg.add_skipped(SkipNotice("cv2", 0, 4, "fold_4", "empty"))
    return agg.finalize(seed=7, scheme="cv2", model="ridge", trait="yield")


def test_serialize_value():
    assert _serialize_value(np.float32(1.5)) == 1.5
    assert _serialize_value(np.int64(3)) == 3
    assert _serialize_value(np.array([1, 2])) == [1, 2]
    assert _serialize_value((np.int32(1), "a")) == [1, "a"]
    assert _serialize_value(None) is None


class TestResultAggregator:
    def test_finalize_sorts_by_key(self, mixed_result):
        assert [e.fold for e in mixed_result] == [0, 1, 2, 3, 4]

    def test_duplicate_partition_rejected(self, caplog):
        agg = ResultAggregator()
        p = _partition(0)
        assert agg.add(_ok(p)) is True
        with caplog.at_level(logging.WARNING, logger="metcv.train.results"):
            assert agg.add(FittedPartitionResult.from_error(p, RuntimeError("late"))) is False
        assert len(agg) == 1
        assert ("cv2", 0, 0) in agg
        assert "already recorded" in caplog.text

    def test_concurrent_appends(self):
        agg = ResultAggregator()
        partitions = [_partition(f, repeat=r) for r in range(5) for f in range(20)]

        def worker(chunk):
            for p in chunk:
                agg.add(_ok(p))

        threads = [
            threading.Thread(target=worker, args=(partitions[i::4],)) for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        result = agg.finalize()
        assert len(result) == 100
        assert [e.key for e in result] == sorted(p.key for p in partitions)


class TestCVResult:
    def test_status_views(self, mixed_result):
        assert [e.fold for e in mixed_result.successful] == [0, 2]
        assert [e.fold for e in mixed_result.errors] == [1, 3]
        assert [e.fold for e in mixed_result.timeouts] == [3]
        assert [e.fold for e in mixed_result.skipped] == [4]

    def test_summary(self, mixed_result):
        s = mixed_result.summary()
        assert s["n_partitions"] == 5
        assert s["n_ok"] == 2
        assert s["n_error"] == 2
        assert s["n_timeout"] == 1
        assert s["n_skipped"] == 1
        assert s["seed"] == 7

    def test_to_dataframe(self, mixed_result):
        df = mixed_result.to_dataframe()
        assert df.height == 6
        assert df.columns == [
            "scheme",
            "repeat",
            "fold",
            "label",
            "seed",
            "record",
            "geno_ID",
            "IDenv",
            "observed",
            "predicted",
        ]
        assert df.get_column("fold").unique().sort().to_list() == [0, 2]
        np.testing.assert_allclose(
            (df.get_column("predicted") - df.get_column("observed")).to_numpy(), 0.5
        )

    def test_empty_dataframe_keeps_schema(self):
        df = CVResult([]).to_dataframe()
        assert df.height == 0
        assert df.schema["predicted"] == pl.Float64

    def test_partitions_frame(self, mixed_result):
        df = mixed_result.partitions_frame()
        assert df.get_column("status").to_list() == ["ok", "error", "ok", "error", "skipped"]
        assert df.get_column("error_type").to_list()[1] == "BackendError"
        assert df.get_column("error_message").to_list()[4] == "empty"

    def test_sorted_copy(self, mixed_result):
        shuffled = CVResult(list(reversed(mixed_result.entries)), seed=7)
        assert [e.fold for e in shuffled.sorted()] == [0, 1, 2, 3, 4]

    def test_to_json(self, tmp_path, mixed_result):
        path = tmp_path / "result.json"
        text = mixed_result.to_json(path)
        data = json.loads(path.read_text())
        assert data == json.loads(text)
        assert data["seed"] == 7
        assert len(data["partitions"]) == 5

    def test_export(self, tmp_path, mixed_result):
        out = mixed_result.export(tmp_path / "run")

        for name in ("results.ndjson", "predictions.csv", "partitions.csv", "manifest.json"):
            assert (out / name).exists()

        lines = (out / "results.ndjson").read_text().strip().splitlines()
        assert len(lines) == 5
        assert json.loads(lines[1])["error_type"] == "BackendError"

        predictions = pl.read_csv(out / "predictions.csv")
        assert predictions.height == 6

        manifest = json.loads((out / "manifest.json").read_text())
        assert manifest["run"]["model"] == "ridge"
        assert manifest["summary"]["n_ok"] == 2
        assert manifest["components"]["models"]["n_models"] == 0

    def test_export_lists_saved_models(self, tmp_path, mixed_result):
        p = _partition(0)
        CVResult.save_model({"coef": [1.0]}, tmp_path / "models" / CVResult.model_file_name(p, "ridge"))
        manifest = json.loads((mixed_result.export(tmp_path) / "manifest.json").read_text())
        assert manifest["components"]["models"]["files"] == ["models/ridge_cv2_r0_f0_fold_0.pkl"]


class TestModelPersistence:
    def test_round_trip(self, tmp_path):
        CVResult.save_model({"a": 1}, tmp_path / "m.pkl")
        assert CVResult.load_model(tmp_path / "m.pkl") == {"a": 1}

    def test_compressed(self, tmp_path):
        CVResult.save_model([1, 2, 3], tmp_path / "m.pkl.gz", compress=True)
        assert CVResult.load_model(tmp_path / "m.pkl.gz") == [1, 2, 3]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            CVResult.load_model(tmp_path / "nope.pkl")

    def test_model_file_name_is_sanitized(self):
        p = Partition([0], [1], "cv0", 0, 2, "Ames 2019/plot")
        assert CVResult.model_file_name(p, "rf reg") == "rf_reg_cv0_r0_f2_Ames_2019_plot.pkl"
