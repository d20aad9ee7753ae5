"""Configuration classes for MET cross-validation runs.

Every optional feature toggle and scheme parameter is enumerated here with its
default, and validated when the dataclass is built, so a bad configuration
fails before any partitioning work begins.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml  # type: ignore

from metcv.core.exceptions import InvalidParameterError


class CVScheme(Enum):
    """Enumeration of cross-validation philosophies."""

    CV0 = "cv0"  # new environment
    CV00 = "cv00"  # new genotype in new environment
    CV1 = "cv1"  # new genotype
    CV2 = "cv2"  # incomplete trials

    @property
    def randomized(self) -> bool:
        return self in (CVScheme.CV1, CVScheme.CV2)


class CV0Type(Enum):
    """Enumeration of environment-isolation sub-types (cv0 and cv00)."""

    LEAVE_ONE_ENVIRONMENT_OUT = "leave-one-environment-out"
    LEAVE_ONE_SITE_OUT = "leave-one-site-out"
    LEAVE_ONE_YEAR_OUT = "leave-one-year-out"
    FORWARD_PREDICTION = "forward-prediction"


class CV00Isolation(Enum):
    """How cv00 keeps test genotypes out of the training set."""

    UNIQUE_TEST_GENOTYPES = "unique-test-genotypes"
    DROP_TRAIN_GENOTYPES = "drop-train-genotypes"


def _coerce_enum(value: Any, enum_cls: Any, what: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            pass
    allowed = ", ".join(member.value for member in enum_cls)
    raise InvalidParameterError(
        f"Invalid {what}: {value!r} (expected one of: {allowed})"
    )


def _coerce_names(value: Any, what: str) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    try:
        names = [str(v) for v in value]
    except TypeError:
        raise InvalidParameterError(f"{what} must be a list of column names")
    if not names:
        raise InvalidParameterError(f"{what} must not be empty when given")
    return names


@dataclass
class FeatureConfig:
    """Feature groups assembled into the design matrix.

    Attributes:
        include_markers: Add marker genotype columns.
        marker_subset: Restrict markers to these column names.
        include_env_covariates: Add per-environment covariate columns.
        env_covariate_subset: Restrict covariates to these column names.
        include_location: Add one-hot location indicators.
        include_year: Add the year as a numeric column.
        include_lat_lon: Add longitude and latitude.
        include_elevation: Add elevation.
        fillna: Value imputed for missing numeric features.
    """

    include_markers: bool = True
    marker_subset: Optional[List[str]] = None
    include_env_covariates: bool = True
    env_covariate_subset: Optional[List[str]] = None
    include_location: bool = True
    include_year: bool = False
    include_lat_lon: bool = False
    include_elevation: bool = False
    fillna: float = 0.0

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self.marker_subset = _coerce_names(self.marker_subset, "marker_subset")
        self.env_covariate_subset = _coerce_names(
            self.env_covariate_subset, "env_covariate_subset"
        )
        for name in (
            "include_markers",
            "include_env_covariates",
            "include_location",
            "include_year",
            "include_lat_lon",
            "include_elevation",
        ):
            if not isinstance(getattr(self, name), bool):
                raise InvalidParameterError(f"{name} must be a boolean")
        try:
            self.fillna = float(self.fillna)
        except (TypeError, ValueError):
            raise InvalidParameterError("fillna must be numeric")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "FeatureConfig":
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidParameterError(
                f"Unknown feature option(s): {', '.join(unknown)}"
            )
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


EligibilityPredicate = Callable[..., bool]


@dataclass
class CVConfig:
    """Full configuration surface of one cross-validation run.

    Fold and repeat counts are read only for the scheme that uses them;
    cv0 and cv00 are deterministic and always produce a single repeat.
    """

    cv_type: CVScheme = CVScheme.CV0
    model: str = "rf_reg_1"
    cv0_type: CV0Type = CV0Type.LEAVE_ONE_ENVIRONMENT_OUT
    cv00_isolation: CV00Isolation = CV00Isolation.UNIQUE_TEST_GENOTYPES
    forward_eligibility: Union[str, EligibilityPredicate] = "same-location"
    nb_folds_cv1: int = 5
    repeats_cv1: int = 1
    nb_folds_cv2: int = 5
    repeats_cv2: int = 1
    seed: Optional[int] = None
    features: FeatureConfig = field(default_factory=FeatureConfig)
    n_jobs: int = 1
    prefer: str = "threads"
    timeout: Optional[float] = None
    save_models: bool = False
    output_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self.cv_type = _coerce_enum(self.cv_type, CVScheme, "cv_type")
        self.cv0_type = _coerce_enum(self.cv0_type, CV0Type, "cv0_type")
        self.cv00_isolation = _coerce_enum(
            self.cv00_isolation, CV00Isolation, "cv00_isolation"
        )

        if isinstance(self.features, dict):
            self.features = FeatureConfig.from_dict(self.features)
        elif not isinstance(self.features, FeatureConfig):
            raise InvalidParameterError(
                "features must be a FeatureConfig or a mapping"
            )

        if not isinstance(self.model, str) or not self.model:
            raise InvalidParameterError("model must be a non-empty string")

        for name in ("nb_folds_cv1", "nb_folds_cv2"):
            value = getattr(self, name)
            if not _is_int(value) or value < 2:
                raise InvalidParameterError(
                    f"{name} must be an integer >= 2 (got {value!r})"
                )
        for name in ("repeats_cv1", "repeats_cv2"):
            value = getattr(self, name)
            if not _is_int(value) or value < 1:
                raise InvalidParameterError(
                    f"{name} must be a positive integer (got {value!r})"
                )

        if self.seed is not None and (not _is_int(self.seed) or self.seed < 0):
            raise InvalidParameterError(
                f"seed must be a non-negative integer (got {self.seed!r})"
            )

        if not _is_int(self.n_jobs) or self.n_jobs == 0:
            raise InvalidParameterError(
                "n_jobs must be a non-zero integer (-1 uses all cores)"
            )
        if self.prefer not in ("threads", "processes"):
            raise InvalidParameterError(
                "prefer must be 'threads' or 'processes'"
            )
        if self.timeout is not None:
            try:
                self.timeout = float(self.timeout)
            except (TypeError, ValueError):
                raise InvalidParameterError("timeout must be a number")
            if self.timeout <= 0:
                raise InvalidParameterError("timeout must be positive")

        if isinstance(self.forward_eligibility, str):
            # resolved lazily by the split engine; only the name is checked here
            if self.forward_eligibility not in FORWARD_ELIGIBILITY_NAMES:
                raise InvalidParameterError(
                    f"Unknown forward_eligibility: {self.forward_eligibility!r}"
                )
        elif not callable(self.forward_eligibility):
            raise InvalidParameterError(
                "forward_eligibility must be a name or a callable"
            )

        if self.output_dir is not None:
            self.output_dir = Path(self.output_dir)
        if self.save_models and self.output_dir is None:
            raise InvalidParameterError("save_models requires output_dir")

    @property
    def n_folds(self) -> Optional[int]:
        """Fold count for randomized schemes, None for cv0/cv00."""
        if self.cv_type is CVScheme.CV1:
            return self.nb_folds_cv1
        if self.cv_type is CVScheme.CV2:
            return self.nb_folds_cv2
        return None

    @property
    def n_repeats(self) -> int:
        if self.cv_type is CVScheme.CV1:
            return self.repeats_cv1
        if self.cv_type is CVScheme.CV2:
            return self.repeats_cv2
        return 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CVConfig":
        """Build a config from a plain mapping (e.g. parsed YAML)."""
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidParameterError(
                f"Unknown configuration key(s): {', '.join(unknown)}"
            )
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        """Plain, YAML/JSON friendly representation."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, FeatureConfig):
                value = value.to_dict()
            elif isinstance(value, Path):
                value = str(value)
            elif callable(value):
                value = getattr(value, "__name__", repr(value))
            out[f.name] = value
        return out


FORWARD_ELIGIBILITY_NAMES = ("same-location", "any-location")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def load_config(config_path: Union[str, Path]) -> CVConfig:
    """Load a `CVConfig` from a YAML file.

    Args:
        config_path: Path to YAML configuration file

    Raises:
        FileNotFoundError: if the file does not exist
        InvalidParameterError: if the file content is not a valid config
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidParameterError(
            f"Configuration file must contain a mapping: {config_path}"
        )
    return CVConfig.from_dict(data)
