"""Validated in-memory representation of multi-environment trial data."""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Union

import numpy as np
import polars as pl

from metcv.core.config import FeatureConfig
from metcv.core.exceptions import ValidationError
from metcv.wrangle.features import FeatureSet

logger = logging.getLogger(__name__)

RECORD_COLUMNS = ("geno_ID", "IDenv")
ENVIRONMENT_COLUMNS = ("IDenv", "location", "year")
OPTIONAL_ENVIRONMENT_COLUMNS = ("longitude", "latitude", "elevation")


@dataclass(frozen=True)
class Environment:
    """One location x year trial environment."""

    env_id: str
    location: str
    year: int
    longitude: Optional[float] = None
    latitude: Optional[float] = None
    elevation: Optional[float] = None
    covariates: Optional[Dict[str, float]] = None


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


def _group_indices(values: np.ndarray) -> Dict[str, np.ndarray]:
    """Map each distinct value to the sorted row indices holding it."""
    order = np.argsort(values, kind="stable")
    sorted_values = values[order]
    uniques, starts = np.unique(sorted_values, return_index=True)
    bounds = list(starts[1:]) + [values.size]
    return {
        str(u): _readonly(np.sort(order[s:e]))
        for u, s, e in zip(uniques, starts, bounds)
    }


class TrialDataset:
    """Immutable MET records plus the registry of their environments.

    One row per genotype x environment (x replicate when a replicate column is
    declared). Records whose trait value is null are prediction targets: they
    stay addressable but never enter a cross-validation partition.

    Args:
        records: DataFrame with `geno_ID`, `IDenv` and the trait column.
        environments: DataFrame with `IDenv`, `location`, `year` and optional
            `longitude`, `latitude`, `elevation`.
        trait: Name of the trait column in `records`.
        markers: Marker table keyed by `geno_ID` (FeatureSet or DataFrame).
        env_covariates: Covariate table keyed by `IDenv`.
        replicate_column: Column in `records` tagging replicate rows.
        feature_config: Optional FeatureConfig validated against the data.

    Raises:
        ValidationError: if the inputs are malformed or inconsistent
    """

    def __init__(
        self,
        records: pl.DataFrame,
        environments: pl.DataFrame,
        trait: str,
        markers: Optional[Union[FeatureSet, pl.DataFrame]] = None,
        env_covariates: Optional[Union[FeatureSet, pl.DataFrame]] = None,
        replicate_column: Optional[str] = None,
        feature_config: Optional[FeatureConfig] = None,
    ) -> None:
        self._trait = trait
        self._replicate_column = replicate_column

        self._environments = self._validate_environments(environments)
        self._records = self._validate_records(records)
        self._markers = self._validate_feature_table(
            markers, "markers", "geno_ID", self.genotypes_in_records()
        )
        self._env_covariates = self._validate_feature_table(
            env_covariates,
            "env_covariates",
            "IDenv",
            self._environments.get_column("IDenv").to_list(),
        )

        self._genotype_array = _readonly(
            np.asarray(self._records.get_column("geno_ID").to_list(), dtype=object)
        )
        self._environment_array = _readonly(
            np.asarray(self._records.get_column("IDenv").to_list(), dtype=object)
        )
        self._trait_values = _readonly(
            self._records.get_column(trait)
            .cast(pl.Float64)
            .fill_nan(None)
            .to_numpy()
            .astype(float)
        )
        self._observed_mask = _readonly(~np.isnan(self._trait_values))
        self._by_environment = _group_indices(
            self._environment_array.astype(str)
        )
        self._by_genotype = _group_indices(self._genotype_array.astype(str))
        self._env_lookup = {env.env_id: env for env in self._build_registry()}

        if feature_config is not None:
            self.check_feature_config(feature_config)

        logger.debug(
            "TrialDataset: %d records (%d observed), %d genotypes, %d environments",
            self.n_records,
            int(self._observed_mask.sum()),
            len(self._by_genotype),
            len(self._env_lookup),
        )

    # ----- validation -----

    def _validate_environments(self, environments: pl.DataFrame) -> pl.DataFrame:
        if not isinstance(environments, pl.DataFrame):
            raise ValidationError("environments must be a polars DataFrame")
        missing = [c for c in ENVIRONMENT_COLUMNS if c not in environments.columns]
        if missing:
            raise ValidationError(
                f"environments missing required column(s): {', '.join(missing)}"
            )
        if environments.height == 0:
            raise ValidationError("environments registry is empty")

        for col in ("location", "year"):
            n_null = environments.get_column(col).null_count()
            if n_null:
                raise ValidationError(
                    f"{n_null} environment(s) missing required attribute '{col}'"
                )

        try:
            env = environments.with_columns(
                pl.col("IDenv").cast(pl.Utf8),
                pl.col("location").cast(pl.Utf8),
                pl.col("year").cast(pl.Int64),
            )
        except pl.exceptions.PolarsError as e:
            raise ValidationError(f"Invalid environment attribute types: {e}") from e

        n_null_id = env.get_column("IDenv").null_count()
        if n_null_id:
            raise ValidationError(f"{n_null_id} environment(s) without IDenv")

        dup = env.filter(pl.col("IDenv").is_duplicated())
        if dup.height:
            ids = sorted(set(dup.get_column("IDenv").to_list()))
            raise ValidationError(f"Duplicate environment id(s): {', '.join(ids)}")

        keep = list(ENVIRONMENT_COLUMNS) + [
            c for c in OPTIONAL_ENVIRONMENT_COLUMNS if c in env.columns
        ]
        for col in OPTIONAL_ENVIRONMENT_COLUMNS:
            if col in env.columns and not env.schema[col].is_numeric():
                raise ValidationError(f"Environment column '{col}' must be numeric")
        return env.select(keep).sort("IDenv")

    def _validate_records(self, records: pl.DataFrame) -> pl.DataFrame:
        if not isinstance(records, pl.DataFrame):
            raise ValidationError("records must be a polars DataFrame")
        required = list(RECORD_COLUMNS) + [self._trait]
        if self._replicate_column is not None:
            required.append(self._replicate_column)
        missing = [c for c in required if c not in records.columns]
        if missing:
            raise ValidationError(
                f"records missing required column(s): {', '.join(missing)}"
            )
        if records.height == 0:
            raise ValidationError("records table is empty")
        if not records.schema[self._trait].is_numeric():
            raise ValidationError(f"Trait column '{self._trait}' must be numeric")

        rec = records.select(required).with_columns(
            pl.col("geno_ID").cast(pl.Utf8), pl.col("IDenv").cast(pl.Utf8)
        )
        for col in RECORD_COLUMNS:
            n_null = rec.get_column(col).null_count()
            if n_null:
                raise ValidationError(f"{n_null} record(s) with null '{col}'")

        known = set(self._environments.get_column("IDenv").to_list())
        unknown = sorted(set(rec.get_column("IDenv").to_list()) - known)
        if unknown:
            raise ValidationError(
                f"Record(s) reference unknown environment(s): {', '.join(unknown)}"
            )

        key = ["geno_ID", "IDenv"]
        if self._replicate_column is not None:
            key.append(self._replicate_column)
        dup = rec.filter(pl.struct(key).is_duplicated())
        if dup.height:
            first = dup.row(0, named=True)
            what = " x ".join(str(first[k]) for k in key)
            hint = (
                ""
                if self._replicate_column is not None
                else " (declare replicate_column for replicated designs)"
            )
            raise ValidationError(
                f"{dup.height} duplicated record(s), e.g. {what}{hint}"
            )

        return (
            rec.with_row_index("_row")
            .join(
                self._environments.select(["IDenv", "location", "year"]),
                on="IDenv",
                how="left",
            )
            .sort("_row")
        )

    def _validate_feature_table(
        self,
        table: Optional[Union[FeatureSet, pl.DataFrame]],
        what: str,
        key_column: str,
        required_keys: Sequence[str],
    ) -> Optional[FeatureSet]:
        if table is None:
            return None
        if isinstance(table, pl.DataFrame):
            if key_column not in table.columns:
                raise ValidationError(f"{what} table has no '{key_column}' column")
            table = FeatureSet.from_df(table, name=what, key_column=key_column)
        elif not isinstance(table, FeatureSet):
            raise ValidationError(f"{what} must be a FeatureSet or DataFrame")
        if table.key_column != key_column:
            raise ValidationError(
                f"{what} must be keyed by '{key_column}', not '{table.key_column}'"
            )

        dups = table.duplicated_keys()
        if dups:
            raise ValidationError(
                f"Duplicate key(s) in {what}: {', '.join(dups[:10])}"
            )
        missing = sorted(set(required_keys) - set(table.keys))
        if missing:
            raise ValidationError(
                f"{what} missing {len(missing)} key(s): {', '.join(missing[:10])}"
            )
        schema = table.features.collect_schema()
        non_numeric = [n for n in table.feature_names if not schema[n].is_numeric()]
        if non_numeric:
            raise ValidationError(
                f"Non-numeric column(s) in {what}: {', '.join(non_numeric[:10])}"
            )
        return table

    def check_feature_config(self, config: FeatureConfig) -> None:
        """Check that `config` only requests features this dataset provides.

        Raises:
            ValidationError: on the first unsatisfiable request
        """
        if config.include_markers:
            if self._markers is None:
                raise ValidationError("Markers requested but no marker table given")
            if config.marker_subset is not None:
                missing = [m for m in config.marker_subset if m not in self._markers.feature_names]
                if missing:
                    raise ValidationError(f"Unknown marker(s): {', '.join(missing[:10])}")
        if config.include_env_covariates:
            if self._env_covariates is None:
                raise ValidationError(
                    "Environmental covariates requested but no covariate table given"
                )
            if config.env_covariate_subset is not None:
                missing = [
                    c
                    for c in config.env_covariate_subset
                    if c not in self._env_covariates.feature_names
                ]
                if missing:
                    raise ValidationError(
                        f"Unknown environmental covariate(s): {', '.join(missing)}"
                    )
        needed = []
        if config.include_lat_lon:
            needed.extend(["longitude", "latitude"])
        if config.include_elevation:
            needed.append("elevation")
        absent = [c for c in needed if c not in self._environments.columns]
        if absent:
            raise ValidationError(
                f"Environment registry lacks column(s): {', '.join(absent)}"
            )

    # ----- registry -----

    def _build_registry(self) -> List[Environment]:
        covariates: Dict[str, Dict[str, float]] = {}
        if self._env_covariates is not None:
            for row in self._env_covariates.collect().iter_rows(named=True):
                env_id = row.pop(self._env_covariates.key_column)
                covariates[env_id] = row
        envs = []
        for row in self._environments.iter_rows(named=True):
            envs.append(
                Environment(
                    env_id=row["IDenv"],
                    location=row["location"],
                    year=int(row["year"]),
                    longitude=row.get("longitude"),
                    latitude=row.get("latitude"),
                    elevation=row.get("elevation"),
                    covariates=covariates.get(row["IDenv"]),
                )
            )
        return envs

    # ----- read-only lookups -----

    @property
    def trait(self) -> str:
        return self._trait

    @property
    def replicate_column(self) -> Optional[str]:
        return self._replicate_column

    @property
    def records(self) -> pl.DataFrame:
        """Records in row order with `_row`, location and year attached."""
        return self._records

    @property
    def environments(self) -> pl.DataFrame:
        """Environment registry sorted by IDenv."""
        return self._environments

    @property
    def markers(self) -> Optional[FeatureSet]:
        return self._markers

    @property
    def env_covariates(self) -> Optional[FeatureSet]:
        return self._env_covariates

    @property
    def n_records(self) -> int:
        return self._records.height

    def __len__(self) -> int:
        return self.n_records

    @property
    def genotype_array(self) -> np.ndarray:
        return self._genotype_array

    @property
    def environment_array(self) -> np.ndarray:
        return self._environment_array

    @property
    def trait_values(self) -> np.ndarray:
        """Trait values per record (NaN for prediction targets)."""
        return self._trait_values

    @property
    def observed_mask(self) -> np.ndarray:
        return self._observed_mask

    def observed_indices(self) -> np.ndarray:
        return np.flatnonzero(self._observed_mask)

    def genotypes_in_records(self) -> List[str]:
        return sorted(set(self._records.get_column("geno_ID").to_list()))

    @property
    def genotypes(self) -> List[str]:
        """Sorted genotype identifiers present in the records."""
        return sorted(self._by_genotype)

    @property
    def environment_ids(self) -> List[str]:
        return sorted(self._env_lookup)

    @property
    def locations(self) -> List[str]:
        return sorted({env.location for env in self._env_lookup.values()})

    @property
    def years(self) -> List[int]:
        return sorted({env.year for env in self._env_lookup.values()})

    def get_environment(self, env_id: str) -> Environment:
        try:
            return self._env_lookup[env_id]
        except KeyError:
            raise KeyError(f"Unknown environment: {env_id}")

    def iter_environments(self) -> Iterator[Environment]:
        """Environments in ascending IDenv order."""
        for env_id in self.environment_ids:
            yield self._env_lookup[env_id]

    def records_by_environment(self, env_id: str) -> np.ndarray:
        if env_id not in self._env_lookup:
            raise KeyError(f"Unknown environment: {env_id}")
        return self._by_environment.get(env_id, np.array([], dtype=np.int64))

    def records_by_genotype(self, genotype: str) -> np.ndarray:
        try:
            return self._by_genotype[genotype]
        except KeyError:
            raise KeyError(f"Unknown genotype: {genotype}")

    def __repr__(self) -> str:
        return (
            f"TrialDataset(trait={self._trait!r}, n_records={self.n_records}, "
            f"n_genotypes={len(self._by_genotype)}, "
            f"n_environments={len(self._env_lookup)})"
        )
