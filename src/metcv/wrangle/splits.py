"""Train/test partitioning of MET records for the four CV schemes.

Each strategy is a pure function ``(dataset, config, seed, repeat) ->
SplitPlan`` producing the folds of one repeat. Environment-isolation
strategies (cv0, cv00) ignore the seed and walk the environment registry in
ascending IDenv order; cv1 and cv2 shuffle genotypes or records with a
scikit-learn `KFold` seeded by the repeat sub-seed. Only observed records
(non-null trait) enter partitions.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import polars as pl
from sklearn.model_selection import KFold

from metcv.core.config import CV0Type, CV00Isolation, CVConfig, CVScheme
from metcv.core.exceptions import InvalidParameterError, ValidationError
from metcv.utils.seeds import fresh_seed
from metcv.wrangle.dataset import Environment, TrialDataset

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Partition:
    """One train/test split of trial records.

    Attributes:
        train: Sorted record indices used for fitting
        test: Sorted record indices to predict
        scheme: CV scheme value ("cv0", "cv00", "cv1", "cv2")
        repeat: Repeat index (always 0 for cv0/cv00)
        fold: Fold index within the repeat
        label: Held-out environment, site or year, or "fold_<k>"
        seed: Sub-seed that produced the partition (None when not randomized)
    """

    train: np.ndarray
    test: np.ndarray
    scheme: str
    repeat: int = 0
    fold: int = 0
    label: str = ""
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        train = np.unique(np.asarray(self.train, dtype=np.int64))
        test = np.unique(np.asarray(self.test, dtype=np.int64))
        if np.intersect1d(train, test).size:
            raise ValueError(
                f"Partition {self.scheme}/{self.repeat}/{self.fold}: train and test overlap"
            )
        train.setflags(write=False)
        test.setflags(write=False)
        object.__setattr__(self, "train", train)
        object.__setattr__(self, "test", test)

    @property
    def key(self) -> Tuple[str, int, int]:
        return (self.scheme, self.repeat, self.fold)

    @property
    def n_train(self) -> int:
        return int(self.train.size)

    @property
    def n_test(self) -> int:
        return int(self.test.size)

    def same_split(self, other: "Partition") -> bool:
        """True when both partitions hold identical train and test indices."""
        return np.array_equal(self.train, other.train) and np.array_equal(
            self.test, other.test
        )


@dataclass(frozen=True)
class SkipNotice:
    """A candidate partition that was not produced, and why."""

    scheme: str
    repeat: int
    fold: int
    label: str
    reason: str

    @property
    def key(self) -> Tuple[str, int, int]:
        return (self.scheme, self.repeat, self.fold)


@dataclass
class SplitPlan:
    """Ordered partitions plus the notices for skipped candidates."""

    partitions: List[Partition] = field(default_factory=list)
    skipped: List[SkipNotice] = field(default_factory=list)
    seed: Optional[int] = None

    def __len__(self) -> int:
        return len(self.partitions)

    def __iter__(self) -> Iterator[Partition]:
        return iter(self.partitions)

    def extend(self, other: "SplitPlan") -> None:
        self.partitions.extend(other.partitions)
        self.skipped.extend(other.skipped)

    def skip(
        self, scheme: str, repeat: int, fold: int, label: str, reason: str
    ) -> None:
        logger.warning(
            "Skipping %s partition %s (repeat %d, fold %d): %s",
            scheme,
            label,
            repeat,
            fold,
            reason,
        )
        self.skipped.append(SkipNotice(scheme, repeat, fold, label, reason))

    def to_frame(self) -> pl.DataFrame:
        """Long table with one row per (partition, record, role)."""
        frames = []
        for p in self.partitions:
            for role, idx in (("train", p.train), ("test", p.test)):
                frames.append(
                    pl.DataFrame(
                        {
                            "scheme": [p.scheme] * idx.size,
                            "repeat": [p.repeat] * idx.size,
                            "fold": [p.fold] * idx.size,
                            "label": [p.label] * idx.size,
                            "record": idx.tolist(),
                            "role": [role] * idx.size,
                        },
                        schema={
                            "scheme": pl.Utf8,
                            "repeat": pl.Int64,
                            "fold": pl.Int64,
                            "label": pl.Utf8,
                            "record": pl.Int64,
                            "role": pl.Utf8,
                        },
                    )
                )
        if not frames:
            return pl.DataFrame(
                schema={
                    "scheme": pl.Utf8,
                    "repeat": pl.Int64,
                    "fold": pl.Int64,
                    "label": pl.Utf8,
                    "record": pl.Int64,
                    "role": pl.Utf8,
                }
            )
        return pl.concat(frames)


# ----- forward-prediction eligibility -----

Eligibility = Callable[[Environment, Sequence[Environment]], bool]


def same_location_earlier_year(
    candidate: Environment, earlier: Sequence[Environment]
) -> bool:
    """Eligible when the training set holds an earlier year at the same location."""
    return any(
        env.location == candidate.location and env.year < candidate.year
        for env in earlier
    )


def any_earlier_year(
    candidate: Environment, earlier: Sequence[Environment]
) -> bool:
    """Eligible when the training set holds any earlier-year environment."""
    return any(env.year < candidate.year for env in earlier)


ELIGIBILITY_PREDICATES: Dict[str, Eligibility] = {
    "same-location": same_location_earlier_year,
    "any-location": any_earlier_year,
}


def resolve_eligibility(value: object) -> Eligibility:
    if callable(value):
        return value  # type: ignore[return-value]
    try:
        return ELIGIBILITY_PREDICATES[str(value)]
    except KeyError:
        raise InvalidParameterError(f"Unknown forward_eligibility: {value!r}")


# ----- environment holdout groups (cv0 / cv00) -----


@dataclass(frozen=True)
class _HoldoutGroup:
    fold: int
    label: str
    test_envs: Tuple[str, ...]
    train_envs: Tuple[str, ...]


def _holdout_groups(
    dataset: TrialDataset, config: CVConfig, scheme: str, plan: SplitPlan
) -> List[_HoldoutGroup]:
    """Enumerate held-out environment groups for the configured cv0 sub-type.

    Fold numbers count every candidate, skipped or not, so a fold index
    always names the same environment group.
    """
    envs = list(dataset.iter_environments())
    all_ids = [env.env_id for env in envs]
    cv0_type = config.cv0_type

    if cv0_type is CV0Type.LEAVE_ONE_ENVIRONMENT_OUT:
        return [
            _HoldoutGroup(
                fold,
                env_id,
                (env_id,),
                tuple(e for e in all_ids if e != env_id),
            )
            for fold, env_id in enumerate(all_ids)
        ]

    if cv0_type is CV0Type.LEAVE_ONE_SITE_OUT:
        if len(dataset.locations) < 2:
            raise ValidationError(
                "leave-one-site-out needs at least two distinct locations"
            )
        groups = []
        for fold, loc in enumerate(dataset.locations):
            test = tuple(e.env_id for e in envs if e.location == loc)
            train = tuple(e.env_id for e in envs if e.location != loc)
            groups.append(_HoldoutGroup(fold, loc, test, train))
        return groups

    if cv0_type is CV0Type.LEAVE_ONE_YEAR_OUT:
        if len(dataset.years) < 2:
            raise ValidationError(
                "leave-one-year-out needs at least two distinct years"
            )
        groups = []
        for fold, year in enumerate(dataset.years):
            test = tuple(e.env_id for e in envs if e.year == year)
            train = tuple(e.env_id for e in envs if e.year != year)
            groups.append(_HoldoutGroup(fold, str(year), test, train))
        return groups

    if cv0_type is CV0Type.FORWARD_PREDICTION:
        if len(dataset.years) < 2:
            raise ValidationError(
                "forward-prediction needs at least two distinct years"
            )
        eligible = resolve_eligibility(config.forward_eligibility)
        groups = []
        for fold, env in enumerate(envs):
            earlier = [e for e in envs if e.year < env.year]
            if not earlier:
                plan.skip(scheme, 0, fold, env.env_id, "no earlier-year environment")
                continue
            if not eligible(env, earlier):
                plan.skip(
                    scheme,
                    0,
                    fold,
                    env.env_id,
                    "no eligible earlier environment for forward prediction",
                )
                continue
            groups.append(
                _HoldoutGroup(
                    fold,
                    env.env_id,
                    (env.env_id,),
                    tuple(e.env_id for e in earlier),
                )
            )
        return groups

    raise InvalidParameterError(f"Unsupported cv0_type: {cv0_type}")


def _observed_in(dataset: TrialDataset, env_ids: Sequence[str]) -> np.ndarray:
    if not env_ids:
        return np.array([], dtype=np.int64)
    idx = np.concatenate(
        [dataset.records_by_environment(e) for e in env_ids]
    ).astype(np.int64)
    return np.sort(idx[dataset.observed_mask[idx]])


def cv0_partitions(
    dataset: TrialDataset,
    config: CVConfig,
    seed: Optional[int] = None,
    repeat: int = 0,
) -> SplitPlan:
    """New-environment partitions: every record of the held-out group is tested."""
    scheme = CVScheme.CV0.value
    plan = SplitPlan()
    for group in _holdout_groups(dataset, config, scheme, plan):
        test = _observed_in(dataset, group.test_envs)
        train = _observed_in(dataset, group.train_envs)
        if test.size == 0:
            plan.skip(scheme, repeat, group.fold, group.label, "no observed test records")
            continue
        if train.size == 0:
            plan.skip(scheme, repeat, group.fold, group.label, "no observed training records")
            continue
        plan.partitions.append(
            Partition(train, test, scheme, repeat, group.fold, group.label, None)
        )
    return plan


def cv00_partitions(
    dataset: TrialDataset,
    config: CVConfig,
    seed: Optional[int] = None,
    repeat: int = 0,
) -> SplitPlan:
    """New-genotype-in-new-environment partitions.

    With `unique-test-genotypes`, test records are limited to genotypes that
    occur in no environment outside the held-out group. With
    `drop-train-genotypes`, every held-out record is tested and all records
    of the tested genotypes are removed from train.
    """
    scheme = CVScheme.CV00.value
    plan = SplitPlan()
    genotypes = dataset.genotype_array
    all_env_ids = dataset.environment_ids

    for group in _holdout_groups(dataset, config, scheme, plan):
        test = _observed_in(dataset, group.test_envs)
        train = _observed_in(dataset, group.train_envs)

        if config.cv00_isolation is CV00Isolation.UNIQUE_TEST_GENOTYPES:
            held_out = set(group.test_envs)
            outside = [e for e in all_env_ids if e not in held_out]
            outside_idx = (
                np.concatenate([dataset.records_by_environment(e) for e in outside])
                if outside
                else np.array([], dtype=np.int64)
            )
            seen_elsewhere = set(genotypes[outside_idx.astype(np.int64)].tolist())
            keep = np.array(
                [g not in seen_elsewhere for g in genotypes[test]], dtype=bool
            )
            test = test[keep] if test.size else test
            if test.size == 0:
                plan.skip(
                    scheme,
                    repeat,
                    group.fold,
                    group.label,
                    "no genotype unique to the held-out environments",
                )
                continue
        else:
            tested = set(genotypes[test].tolist())
            keep = np.array([g not in tested for g in genotypes[train]], dtype=bool)
            train = train[keep] if train.size else train
            if test.size == 0:
                plan.skip(scheme, repeat, group.fold, group.label, "no observed test records")
                continue

        if train.size == 0:
            plan.skip(scheme, repeat, group.fold, group.label, "no observed training records")
            continue
        plan.partitions.append(
            Partition(train, test, scheme, repeat, group.fold, group.label, None)
        )
    return plan


def _kfold_buckets(
    n_units: int, n_folds: int, seed: Optional[int], what: str
) -> Tuple[List[np.ndarray], int]:
    if seed is None:
        seed = fresh_seed()
    if n_folds > n_units:
        raise InvalidParameterError(
            f"Cannot split {n_units} {what} into {n_folds} folds"
        )
    kf = KFold(n_splits=n_folds, shuffle=True, random_state=seed)
    return [test for _, test in kf.split(np.arange(n_units))], seed


def cv1_partitions(
    dataset: TrialDataset,
    config: CVConfig,
    seed: Optional[int] = None,
    repeat: int = 0,
) -> SplitPlan:
    """New-genotype partitions: genotypes, not records, are assigned to folds."""
    scheme = CVScheme.CV1.value
    plan = SplitPlan()
    observed = dataset.observed_indices()
    obs_genotypes = dataset.genotype_array[observed]
    units = np.array(sorted(set(obs_genotypes.tolist())), dtype=object)

    buckets, seed = _kfold_buckets(
        units.size, config.nb_folds_cv1, seed, "genotypes"
    )
    for fold, bucket in enumerate(buckets):
        held_out = set(units[bucket].tolist())
        in_test = np.array([g in held_out for g in obs_genotypes], dtype=bool)
        plan.partitions.append(
            Partition(
                observed[~in_test],
                observed[in_test],
                scheme,
                repeat,
                fold,
                f"fold_{fold}",
                seed,
            )
        )
    return plan


def cv2_partitions(
    dataset: TrialDataset,
    config: CVConfig,
    seed: Optional[int] = None,
    repeat: int = 0,
) -> SplitPlan:
    """Incomplete-trial partitions: observed records are assigned to folds."""
    scheme = CVScheme.CV2.value
    plan = SplitPlan()
    observed = dataset.observed_indices()

    buckets, seed = _kfold_buckets(
        observed.size, config.nb_folds_cv2, seed, "records"
    )
    for fold, bucket in enumerate(buckets):
        in_test = np.zeros(observed.size, dtype=bool)
        in_test[bucket] = True
        plan.partitions.append(
            Partition(
                observed[~in_test],
                observed[in_test],
                scheme,
                repeat,
                fold,
                f"fold_{fold}",
                seed,
            )
        )
    return plan


Strategy = Callable[[TrialDataset, CVConfig, Optional[int], int], SplitPlan]

STRATEGIES: Dict[CVScheme, Strategy] = {
    CVScheme.CV0: cv0_partitions,
    CVScheme.CV00: cv00_partitions,
    CVScheme.CV1: cv1_partitions,
    CVScheme.CV2: cv2_partitions,
}


def get_strategy(scheme: CVScheme) -> Strategy:
    try:
        return STRATEGIES[scheme]
    except KeyError:
        raise InvalidParameterError(f"Unknown CV scheme: {scheme}")
