"""Seed handling of FoldGenerator."""

import numpy as np
import pytest

from metcv.core.config import CVConfig
from metcv.train.folds import FoldGenerator
from metcv.utils.seeds import MAX_SEED, derive_seed, fresh_seed


def test_derive_seed_is_pure():
    assert derive_seed(42, 0) == derive_seed(42, 0)
    assert derive_seed(42, 0) != derive_seed(42, 1)
    assert derive_seed(42, 0) != derive_seed(43, 0)
    assert 0 <= derive_seed(42, 3) <= MAX_SEED


def test_derive_seed_rejects_negative():
    with pytest.raises(ValueError):
        derive_seed(-1, 0)


def test_fresh_seed_in_range():
    assert 0 <= fresh_seed() <= MAX_SEED


def test_same_seed_reproduces_partitions(large_dataset):
    config = CVConfig(cv_type="cv1", nb_folds_cv1=5, repeats_cv1=3)
    a = FoldGenerator(config).generate(large_dataset, seed=2024)
    b = FoldGenerator(config).generate(large_dataset, seed=2024)

    assert len(a) == len(b) == 15
    assert a.seed == b.seed == 2024
    for x, y in zip(a, b):
        assert x.key == y.key
        assert x.same_split(y)


def test_different_seeds_differ(large_dataset):
    config = CVConfig(cv_type="cv2", nb_folds_cv2=5)
    a = FoldGenerator(config).generate(large_dataset, seed=1)
    b = FoldGenerator(config).generate(large_dataset, seed=2)
    assert not all(x.same_split(y) for x, y in zip(a, b))


def test_fewer_repeats_is_a_prefix(large_dataset):
    long = FoldGenerator(CVConfig(cv_type="cv1", repeats_cv1=4)).generate(
        large_dataset, seed=77
    )
    short = FoldGenerator(CVConfig(cv_type="cv1", repeats_cv1=2)).generate(
        large_dataset, seed=77
    )
    assert len(short) == 10
    for x, y in zip(short, long.partitions[: len(short)]):
        assert x.key == y.key
        assert x.same_split(y)


def test_repeat_reproducible_on_its_own(large_dataset):
    generator = FoldGenerator(CVConfig(cv_type="cv2", repeats_cv2=3))
    full = generator.generate(large_dataset, seed=5)
    third = generator.generate_repeat(large_dataset, seed=5, repeat=2)
    for x, y in zip(third, [p for p in full if p.repeat == 2]):
        assert x.same_split(y)
        assert x.seed == derive_seed(5, 2)


def test_repeats_cover_observed_records_each(large_dataset):
    plan = FoldGenerator(CVConfig(cv_type="cv2", nb_folds_cv2=4, repeats_cv2=2)).generate(
        large_dataset, seed=8
    )
    for repeat in range(2):
        tests = np.concatenate([p.test for p in plan if p.repeat == repeat])
        assert np.array_equal(np.sort(tests), large_dataset.observed_indices())


def test_missing_seed_is_generated_and_reported(large_dataset):
    plan = FoldGenerator(CVConfig(cv_type="cv1")).generate(large_dataset)
    assert plan.seed is not None
    again = FoldGenerator(CVConfig(cv_type="cv1")).generate(large_dataset, seed=plan.seed)
    assert all(x.same_split(y) for x, y in zip(plan, again))


def test_environment_schemes_run_one_repeat(met_dataset):
    config = CVConfig(cv_type="cv0", repeats_cv1=5, repeats_cv2=5)
    generator = FoldGenerator(config)
    plan = generator.generate(met_dataset, seed=3)
    assert {p.repeat for p in plan} == {0}
    assert generator.sub_seed(3, 0) is None
