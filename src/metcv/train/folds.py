"""Repeat x fold generation with reproducible seed management."""

import logging
from typing import Optional

from metcv.core.config import CVConfig, CVScheme
from metcv.utils.seeds import derive_seed, fresh_seed
from metcv.wrangle.dataset import TrialDataset
from metcv.wrangle.splits import SplitPlan, Strategy, get_strategy

logger = logging.getLogger(__name__)


class FoldGenerator:
    """Wrap a partition strategy and produce `repeats x folds` partitions.

    The generator only manages seeds: repeat `r` is split with
    `derive_seed(seed, r)`, so re-running with the same top-level seed
    reproduces identical folds and asking for fewer repeats reproduces a
    strict prefix. cv0 and cv00 are deterministic and run a single repeat.

    Args:
        config: validated run configuration
        strategy: override for the scheme's partition strategy
    """

    def __init__(self, config: CVConfig, strategy: Optional[Strategy] = None) -> None:
        self.config = config
        self.scheme: CVScheme = config.cv_type
        self.strategy = strategy if strategy is not None else get_strategy(self.scheme)

    def sub_seed(self, seed: int, repeat: int) -> Optional[int]:
        """Seed used for one repeat (None for deterministic schemes)."""
        if not self.scheme.randomized:
            return None
        return derive_seed(seed, repeat)

    def generate_repeat(self, dataset: TrialDataset, seed: int, repeat: int) -> SplitPlan:
        """Partitions of a single repeat, reproducible on its own."""
        return self.strategy(dataset, self.config, self.sub_seed(seed, repeat), repeat)

    def generate(self, dataset: TrialDataset, seed: Optional[int] = None) -> SplitPlan:
        """All partitions of the run, ordered by (repeat, fold).

        Args:
            dataset: trial data shared read-only by every partition
            seed: top-level seed; a fresh one is drawn when None

        Returns:
            SplitPlan whose `seed` attribute holds the top-level seed used
        """
        if seed is None:
            seed = fresh_seed()
            logger.info("No seed supplied; generated seed %d", seed)

        plan = SplitPlan()
        for repeat in range(self.config.n_repeats):
            plan.extend(self.generate_repeat(dataset, seed, repeat))
        plan.seed = seed

        logger.info(
            "%s: %d partition(s) over %d repeat(s), %d skipped (seed %d)",
            self.scheme.value,
            len(plan),
            self.config.n_repeats,
            len(plan.skipped),
            seed,
        )
        return plan
