"""Tests for FeatureSet and FeatureMatrixBuilder."""

import numpy as np
import polars as pl
import pytest

from metcv.core.config import FeatureConfig
from metcv.core.exceptions import ValidationError
from metcv.wrangle.dataset import TrialDataset
from metcv.wrangle.features import FeatureMatrixBuilder, FeatureSet


class TestFeatureSet:
    def test_from_df_detects_key_column(self, markers_df, covariates_df):
        markers = FeatureSet.from_df(markers_df, name="markers")
        assert markers.key_column == "geno_ID"
        assert markers.feature_names == ["m1", "m2", "m3", "m4"]
        assert len(markers) == 6

        covs = FeatureSet.from_df(covariates_df, name="weather")
        assert covs.key_column == "IDenv"
        assert covs.keys[0] == "Ames_2019"

    def test_from_numpy(self):
        X = np.array([[0.0, 1.0], [2.0, np.nan]])
        fs = FeatureSet(["G1", "G2"], ["a", "b"], X, name="tiny")
        np.testing.assert_array_equal(fs.to_numpy(fillna=-1.0), [[0.0, 1.0], [2.0, -1.0]])

    def test_array_shape_checks(self):
        with pytest.raises(ValueError, match="rows"):
            FeatureSet(["G1"], ["a"], np.zeros((2, 1)), name="bad")
        with pytest.raises(ValueError, match="cols"):
            FeatureSet(["G1"], ["a"], np.zeros((1, 2)), name="bad")

    def test_name_required(self):
        with pytest.raises(ValueError):
            FeatureSet(["G1"], ["a"], np.zeros((1, 1)), name=None)

    def test_select_features(self, markers_df):
        fs = FeatureSet.from_df(markers_df, name="markers").select_features(["m3", "m1"])
        assert fs.feature_names == ["m3", "m1"]
        np.testing.assert_array_equal(
            fs.to_numpy(), markers_df.select(["m3", "m1"]).to_numpy()
        )
        with pytest.raises(ValueError, match="Unknown feature"):
            fs.select_features(["m4"])

    def test_duplicated_keys(self):
        df = pl.DataFrame({"geno_ID": ["A", "B", "A"], "m": [0.0, 1.0, 2.0]})
        assert FeatureSet.from_df(df, name="dups").duplicated_keys() == ["A"]

    def test_load_and_scan(self, tmp_path, markers_df):
        path = tmp_path / "markers.tsv"
        markers_df.write_csv(path, separator="\t")

        loaded = FeatureSet.load(path, name="markers", separator="\t")
        assert loaded.name == "markers"
        assert loaded.keys == markers_df.get_column("geno_ID").to_list()

        scanned = FeatureSet.scan(path, name="markers", key_column="geno_ID", separator="\t")
        assert isinstance(scanned.features, pl.LazyFrame)
        np.testing.assert_array_equal(scanned.to_numpy(), loaded.to_numpy())

    def test_missing_key_column(self, tmp_path):
        with pytest.raises(ValidationError, match="No key column"):
            FeatureSet.from_df(pl.DataFrame({"x": [1.0]}), name="nokey")

        path = tmp_path / "covariates.csv"
        pl.DataFrame({"env": ["E1"], "tmax": [30.0]}).write_csv(path)
        with pytest.raises(ValidationError, match="IDenv"):
            FeatureSet.load(path, key_column="IDenv")


class TestFeatureMatrixBuilder:
    def test_default_column_order(self, met_dataset):
        builder = FeatureMatrixBuilder(met_dataset)
        assert builder.feature_names == [
            "m1",
            "m2",
            "m3",
            "m4",
            "tmax",
            "prec",
            "srad",
            "location_Ames",
            "location_Lincoln",
        ]

    def test_all_groups_enabled(self, met_dataset):
        cfg = FeatureConfig(include_year=True, include_lat_lon=True, include_elevation=True)
        builder = FeatureMatrixBuilder(met_dataset, cfg)
        assert builder.feature_names[-4:] == ["year", "longitude", "latitude", "elevation"]
        X, _ = builder.build(met_dataset.records_by_environment("Lincoln_2020"))
        assert X.shape == (6, builder.n_features)
        assert (X[:, builder.feature_names.index("year")] == 2020).all()
        assert (X[:, builder.feature_names.index("location_Lincoln")] == 1.0).all()
        assert (X[:, builder.feature_names.index("location_Ames")] == 0.0).all()

    def test_rows_follow_records(self, met_dataset, markers_df):
        builder = FeatureMatrixBuilder(met_dataset)
        idx = met_dataset.records_by_genotype("G4")
        X, names = builder.build(idx)
        expected = markers_df.filter(pl.col("geno_ID") == "G4").select(["m1", "m2", "m3", "m4"]).row(0)
        for row in X:
            np.testing.assert_array_equal(row[:4], expected)

    def test_covariates_disabled_drops_covariate_columns(self, met_dataset):
        with_covs = FeatureMatrixBuilder(met_dataset, FeatureConfig())
        without = FeatureMatrixBuilder(
            met_dataset, FeatureConfig(include_env_covariates=False)
        )
        markers_and_flags = met_dataset.markers.feature_names + [
            "location_Ames",
            "location_Lincoln",
        ]
        X, names = without.build(np.arange(len(met_dataset)))
        assert names == markers_and_flags
        assert X.shape[1] == len(markers_and_flags)
        assert X.shape[1] == with_covs.n_features - 3
        assert not {"tmax", "prec", "srad"} & set(names)

    def test_subsets(self, met_dataset):
        cfg = FeatureConfig(
            marker_subset=["m2"],
            env_covariate_subset=["srad"],
            include_location=False,
        )
        builder = FeatureMatrixBuilder(met_dataset, cfg)
        assert builder.feature_names == ["m2", "srad"]

    def test_no_feature_groups(self, met_dataset):
        cfg = FeatureConfig(
            include_markers=False,
            include_env_covariates=False,
            include_location=False,
        )
        X, names = FeatureMatrixBuilder(met_dataset, cfg).build([0, 1, 2])
        assert X.shape == (3, 0)
        assert names == []

    def test_unsatisfiable_config_rejected(self, large_dataset):
        with pytest.raises(ValidationError):
            FeatureMatrixBuilder(large_dataset, FeatureConfig())

    def test_missing_covariate_table_raises_without_precheck(self, monkeypatch, large_dataset):
        monkeypatch.setattr(large_dataset, "check_feature_config", lambda config: None)
        with pytest.raises(ValidationError, match="no covariate table"):
            FeatureMatrixBuilder(large_dataset, FeatureConfig())

    def test_missing_marker_values_filled(self, records_df, environments_df, markers_df):
        markers = markers_df.with_columns(
            pl.when(pl.col("geno_ID") == "G1").then(None).otherwise(pl.col("m1")).alias("m1")
        )
        ds = TrialDataset(records_df, environments_df, "yield", markers=markers)
        cfg = FeatureConfig(include_env_covariates=False, include_location=False, fillna=-9.0)
        X, _ = FeatureMatrixBuilder(ds, cfg).build(ds.records_by_genotype("G1"))
        assert (X[:, 0] == -9.0).all()
