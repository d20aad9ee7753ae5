"""Trial data, feature tables and partitioning for MET cross-validation."""

from .dataset import Environment, TrialDataset
from .features import FeatureMatrixBuilder, FeatureSet
from .splits import Partition, SkipNotice, SplitPlan

__all__ = [
    "Environment",
    "TrialDataset",
    "FeatureSet",
    "FeatureMatrixBuilder",
    "Partition",
    "SkipNotice",
    "SplitPlan",
]
