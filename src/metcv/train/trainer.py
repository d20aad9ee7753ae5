import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Union

import numpy as np
import polars as pl

from metcv.core.config import FeatureConfig
from metcv.core.exceptions import BackendError, ValidationError
from metcv.train.backends import as_backend
from metcv.train.results import CVResult
from metcv.wrangle.dataset import TrialDataset
from metcv.wrangle.features import FeatureMatrixBuilder

logger = logging.getLogger(__name__)


@dataclass
class PredictionOutcome:
    """Predictions for unobserved records plus the model that made them."""

    predictions: pl.DataFrame
    model: Any
    feature_names: List[str]
    n_train: int
    model_path: Optional[Path] = None


class ModelTrainer:
    """Fit one backend on every observed record and predict the rest.

    Records whose trait value is null are the prediction targets (for
    example, untested genotypes in a planned environment). The trainer
    assembles features with the same `FeatureMatrixBuilder` used during
    cross-validation, so a configuration that validated well can be reused
    as-is for the final model.

    input:
        - dataset: TrialDataset holding observed and unobserved records
        - backend: backend or scikit-learn estimator to fit
        - features: FeatureConfig (defaults to FeatureConfig())
        - output_model_path: optional directory or `.pkl` file for the fitted model
        - model_name: name used for the pickle when a directory is given
    """

    def __init__(
        self,
        dataset: TrialDataset,
        backend: Any,
        features: Optional[FeatureConfig] = None,
        output_model_path: Optional[Union[str, Path]] = None,
        model_name: Optional[str] = None,
    ) -> None:
        self.dataset = dataset
        self.backend = as_backend(backend, name=model_name)
        self.features = features if features is not None else FeatureConfig()
        self.model_name = model_name or getattr(self.backend, "name", "model")

        self.output_model_path: Optional[Path] = None
        if output_model_path is not None:
            provided_path = Path(output_model_path)
            if provided_path.suffix:
                self.output_model_path = provided_path
            else:
                file_name = Path(str(self.model_name)).name
                if not file_name.lower().endswith(".pkl"):
                    file_name = f"{file_name}.pkl"
                self.output_model_path = provided_path / file_name

    def train_and_predict(self) -> PredictionOutcome:
        """Fit on observed records, predict records with a null trait.

        Raises:
            ValidationError: if no record has an observed trait value
            BackendError: if the backend returns the wrong number of predictions
        """
        builder = FeatureMatrixBuilder(self.dataset, self.features)
        train_idx = self.dataset.observed_indices()
        target_idx = np.flatnonzero(~self.dataset.observed_mask)
        if train_idx.size == 0:
            raise ValidationError(
                f"No observed values for trait '{self.dataset.trait}'"
            )

        X_train, feature_names = builder.build(train_idx)
        y_train = self.dataset.trait_values[train_idx]
        model = self.backend.fit(X_train, y_train)
        logger.info(
            "Fitted %s on %d record(s) with %d feature(s)",
            self.model_name,
            train_idx.size,
            len(feature_names),
        )

        if target_idx.size:
            X_target, _ = builder.build(target_idx)
            predicted = np.asarray(model.predict(X_target), dtype=float).ravel()
            if predicted.size != target_idx.size:
                raise BackendError(
                    f"backend returned {predicted.size} prediction(s) "
                    f"for {target_idx.size} record(s)"
                )
        else:
            logger.warning(
                "Every record of trait '%s' is observed; nothing to predict",
                self.dataset.trait,
            )
            predicted = np.array([], dtype=float)

        predictions = pl.DataFrame(
            {
                "geno_ID": self.dataset.genotype_array[target_idx].tolist(),
                "IDenv": self.dataset.environment_array[target_idx].tolist(),
                "predicted": predicted.tolist(),
            },
            schema={"geno_ID": pl.Utf8, "IDenv": pl.Utf8, "predicted": pl.Float64},
        )

        if self.output_model_path is not None:
            CVResult.save_model(model, self.output_model_path)
            logger.info("Saved model to %s", self.output_model_path)

        return PredictionOutcome(
            predictions=predictions,
            model=model,
            feature_names=feature_names,
            n_train=int(train_idx.size),
            model_path=self.output_model_path,
        )
