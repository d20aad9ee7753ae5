"""Feature tables and design-matrix assembly for MET models."""

from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl

from metcv.core.config import FeatureConfig
from metcv.core.exceptions import ValidationError

if TYPE_CHECKING:
    from metcv.wrangle.dataset import TrialDataset

# standardised error messages
ERR_FEATURESET_NAME_UNDEFINED = "FeatureSet name must be defined"

KEY_COLUMNS = ("geno_ID", "IDenv")


class FeatureSet:
    """Wide feature table keyed by one identifier column.

    Marker matrices are keyed by `geno_ID` (one row per genotype) and
    environment covariate tables by `IDenv` (one row per environment). The
    data is held as a LazyFrame; `collect()` materializes it.
    """

    def __init__(
        self,
        keys: List[str],
        feature_names: List[str],
        features: Any,
        name: str,
        key_column: str = "geno_ID",
    ):
        """Initialize FeatureSet.

        Args:
            keys: Ordered row identifiers
            feature_names: Ordered feature names
            features: LazyFrame, DataFrame, or numpy array
            name: Name for the FeatureSet
            key_column: Name of the identifier column

        Raises:
            ValueError: If name is missing or dimensions don't match
        """
        if name is None:
            raise ValueError(ERR_FEATURESET_NAME_UNDEFINED)

        self.keys = [str(k) for k in keys]
        self.feature_names = list(feature_names)
        self.name = name
        self.key_column = key_column

        self._feature_idx = {
            fname: i for i, fname in enumerate(self.feature_names)
        }

        if isinstance(features, pl.LazyFrame):
            self._features = features
        elif isinstance(features, pl.DataFrame):
            self._features = features.lazy()
        elif isinstance(features, np.ndarray):
            if features.ndim != 2:
                raise ValueError("Features array must be two-dimensional")
            if features.shape[0] != len(self.keys):
                raise ValueError(
                    f"Features array rows ({features.shape[0]}) must match keys length ({len(self.keys)})"
                )
            if features.shape[1] != len(self.feature_names):
                raise ValueError(
                    f"Features array cols ({features.shape[1]}) must match feature_names length ({len(self.feature_names)})"
                )

            df = pl.DataFrame(features, schema=self.feature_names, orient="row")
            df = df.with_columns(pl.Series(key_column, self.keys)).select(
                [key_column] + self.feature_names
            )
            self._features = df.lazy()
        else:
            raise TypeError(f"Unsupported type for features: {type(features)}")

    @property
    def features(self) -> pl.LazyFrame:
        """Feature LazyFrame."""
        return self._features

    def __len__(self) -> int:
        return len(self.keys)

    def __repr__(self) -> str:
        return (
            f"FeatureSet(name={self.name!r}, key_column={self.key_column!r}, "
            f"n_rows={len(self.keys)}, n_features={len(self.feature_names)})"
        )

    def get_feature_names(self) -> List[str]:
        return self.feature_names.copy()

    def duplicated_keys(self) -> List[str]:
        """Keys occurring more than once, in first-seen order."""
        seen: Dict[str, int] = {}
        for key in self.keys:
            seen[key] = seen.get(key, 0) + 1
        return [key for key, count in seen.items() if count > 1]

    def select_features(self, names: Sequence[str]) -> "FeatureSet":
        """Return a new FeatureSet restricted to `names` (in that order).

        Raises:
            ValueError: if a name is not a feature of this set
        """
        missing = [n for n in names if n not in self._feature_idx]
        if missing:
            raise ValueError(
                f"Unknown feature(s) in '{self.name}': {', '.join(missing)}"
            )
        return FeatureSet(
            keys=self.keys,
            feature_names=list(names),
            features=self._features.select([self.key_column] + list(names)),
            name=self.name,
            key_column=self.key_column,
        )

    def collect(self) -> pl.DataFrame:
        """Collect the internal LazyFrame to a DataFrame with a string key."""
        return self._features.with_columns(
            pl.col(self.key_column).cast(pl.Utf8)
        ).collect()

    def to_numpy(self, fillna: float = 0.0) -> np.ndarray:
        """Feature values as a float matrix in key order, nulls filled."""
        if not self.feature_names:
            return np.zeros((len(self.keys), 0), dtype=float)
        df = self.collect().select(
            [
                pl.col(c).cast(pl.Float64).fill_null(fillna).fill_nan(fillna)
                for c in self.feature_names
            ]
        )
        return np.asarray(df.to_numpy(), dtype=float)

    @staticmethod
    def _detect_key_column(columns: Sequence[str], key_column: Optional[str]) -> str:
        if key_column is None:
            for candidate in KEY_COLUMNS:
                if candidate in columns:
                    return candidate
            raise ValidationError(
                "No key column found. Expected 'geno_ID' or 'IDenv' column, or specify key_column"
            )
        if key_column not in columns:
            raise ValidationError(
                f"Specified key_column '{key_column}' not found in columns"
            )
        return key_column

    @classmethod
    def from_df(
        cls,
        df: pl.DataFrame,
        name: str,
        key_column: Optional[str] = None,
    ) -> "FeatureSet":
        """Create FeatureSet from a wide-form DataFrame.

        Args:
            df: Wide-form DataFrame with features as columns
            name: Name for the FeatureSet
            key_column: Identifier column (auto-detected when omitted)
        """
        key_column = cls._detect_key_column(df.columns, key_column)
        keys = df.get_column(key_column).cast(pl.Utf8).to_list()
        feature_names = [col for col in df.columns if col != key_column]
        return cls(
            keys=keys,
            feature_names=feature_names,
            features=df,
            name=name,
            key_column=key_column,
        )

    @classmethod
    def scan(
        cls,
        path: Union[str, Path],
        name: str,
        key_column: Optional[str] = None,
        separator: str = ",",
    ) -> "FeatureSet":
        """Lazily load a feature table from a CSV file.

        Only the key column is read eagerly; feature values stay lazy until
        `collect()`. Marker matrices are usually loaded this way.
        """
        lf = pl.scan_csv(path, separator=separator, infer_schema_length=10000)
        schema = lf.collect_schema()
        key_column = cls._detect_key_column(schema.names(), key_column)

        keys = (
            lf.select(pl.col(key_column).cast(pl.Utf8))
            .collect()
            .to_series()
            .to_list()
        )
        feature_names = [col for col in schema.names() if col != key_column]

        return cls(
            keys=keys,
            feature_names=feature_names,
            features=lf,
            name=name,
            key_column=key_column,
        )

    @classmethod
    def load(
        cls,
        path: Union[str, Path],
        name: Optional[str] = None,
        key_column: Optional[str] = None,
        separator: str = ",",
    ) -> "FeatureSet":
        """Eagerly read a CSV file (name defaults to the file stem)."""
        df = pl.read_csv(path, separator=separator, infer_schema_length=10000)
        return cls.from_df(df, name=name or Path(path).stem, key_column=key_column)


class FeatureMatrixBuilder:
    """Assemble row-aligned design matrices for subsets of trial records.

    Marker columns are looked up per genotype and every other group
    (covariates, location indicators, year, coordinates, elevation) per
    environment, so the builder keeps one small matrix per key instead of a
    full records-by-features table. `build()` gathers rows by record index;
    train and test matrices from the same builder share column order.
    """

    def __init__(self, dataset: "TrialDataset", config: Optional[FeatureConfig] = None):
        self.dataset = dataset
        self.config = config if config is not None else FeatureConfig()
        dataset.check_feature_config(self.config)

        self._marker_matrix, marker_names, self._genotype_pos = self._marker_block()
        self._env_matrix, env_names, self._environment_pos = self._environment_block()
        self._feature_names = marker_names + env_names

    @property
    def feature_names(self) -> List[str]:
        return list(self._feature_names)

    @property
    def n_features(self) -> int:
        return len(self._feature_names)

    def build(self, indices: Sequence[int]) -> Tuple[np.ndarray, List[str]]:
        """Return the design matrix for the given record indices.

        Args:
            indices: record row indices, in the desired row order

        Returns:
            (matrix of shape (len(indices), n_features), feature names)
        """
        idx = np.asarray(indices, dtype=np.int64)
        blocks = []
        if self._marker_matrix.shape[1]:
            blocks.append(self._marker_matrix[self._genotype_pos[idx]])
        if self._env_matrix.shape[1]:
            blocks.append(self._env_matrix[self._environment_pos[idx]])
        if not blocks:
            return np.zeros((idx.size, 0), dtype=float), self.feature_names
        return np.hstack(blocks), self.feature_names

    def _marker_block(self) -> Tuple[np.ndarray, List[str], np.ndarray]:
        cfg = self.config
        genotypes = self.dataset.genotype_array
        if not cfg.include_markers:
            return (
                np.zeros((1, 0), dtype=float),
                [],
                np.zeros(genotypes.size, dtype=np.int64),
            )

        markers = self.dataset.markers
        if markers is None:
            raise ValidationError("Marker features requested but no marker table was given")
        if cfg.marker_subset is not None:
            markers = markers.select_features(cfg.marker_subset)

        matrix = markers.to_numpy(fillna=cfg.fillna)
        key_pos = {key: i for i, key in enumerate(markers.keys)}
        positions = np.fromiter(
            (key_pos[g] for g in genotypes), dtype=np.int64, count=genotypes.size
        )
        return matrix, markers.get_feature_names(), positions

    def _environment_block(self) -> Tuple[np.ndarray, List[str], np.ndarray]:
        cfg = self.config
        registry = self.dataset.environments
        env_ids = registry.get_column("IDenv").to_list()
        n_env = len(env_ids)

        blocks: List[np.ndarray] = []
        names: List[str] = []

        if cfg.include_env_covariates:
            covariates = self.dataset.env_covariates
            if covariates is None:
                raise ValidationError(
                    "Environmental covariates requested but no covariate table was given"
                )
            if cfg.env_covariate_subset is not None:
                covariates = covariates.select_features(cfg.env_covariate_subset)
            cov_matrix = covariates.to_numpy(fillna=cfg.fillna)
            cov_pos = {key: i for i, key in enumerate(covariates.keys)}
            blocks.append(cov_matrix[[cov_pos[e] for e in env_ids]])
            names.extend(covariates.get_feature_names())

        if cfg.include_location:
            locations = registry.get_column("location").to_list()
            for loc in self.dataset.locations:
                blocks.append(
                    np.array(
                        [[1.0 if value == loc else 0.0] for value in locations]
                    ).reshape(n_env, 1)
                )
                names.append(f"location_{loc}")

        numeric_cols: List[str] = []
        if cfg.include_year:
            numeric_cols.append("year")
        if cfg.include_lat_lon:
            numeric_cols.extend(["longitude", "latitude"])
        if cfg.include_elevation:
            numeric_cols.append("elevation")
        if numeric_cols:
            numeric = registry.select(
                [
                    pl.col(c).cast(pl.Float64).fill_null(cfg.fillna).fill_nan(cfg.fillna)
                    for c in numeric_cols
                ]
            )
            blocks.append(np.asarray(numeric.to_numpy(), dtype=float))
            names.extend(numeric_cols)

        env_pos_map = {env: i for i, env in enumerate(env_ids)}
        environments = self.dataset.environment_array
        positions = np.fromiter(
            (env_pos_map[e] for e in environments),
            dtype=np.int64,
            count=environments.size,
        )

        if not blocks:
            return np.zeros((max(n_env, 1), 0), dtype=float), [], positions
        return np.hstack(blocks), names, positions
