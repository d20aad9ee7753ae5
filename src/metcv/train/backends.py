"""Fit/predict backends and the default model registry.

A backend is any object with ``fit(X_train, y_train)`` returning a fitted
object that has ``predict(X_test)``. scikit-learn estimators are wrapped in
`SklearnBackend`, which clones the template for every fit so partitions never
share fitted state. Registries are plain mappings handed to the
`CrossValidator`; `default_backends()` builds a fresh one per call.
"""

from typing import Any, Dict, Mapping, Optional, Protocol

import numpy as np
from sklearn.base import clone
from sklearn.ensemble import (
    GradientBoostingRegressor,
    HistGradientBoostingRegressor,
    RandomForestRegressor,
    StackingRegressor,
)
from sklearn.linear_model import Ridge, RidgeCV
from sklearn.neural_network import MLPRegressor
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler

from metcv.core.exceptions import InvalidParameterError


class Predictor(Protocol):
    def predict(self, X: np.ndarray) -> Any: ...


class Backend(Protocol):
    def fit(self, X: np.ndarray, y: np.ndarray) -> Predictor: ...


class SklearnBackend:
    """Backend around a scikit-learn estimator template."""

    def __init__(self, estimator: Any, name: Optional[str] = None) -> None:
        if not hasattr(estimator, "fit") or not hasattr(estimator, "predict"):
            raise TypeError("estimator must implement fit() and predict()")
        self.estimator = estimator
        self.name = name or estimator.__class__.__name__

    def fit(self, X: np.ndarray, y: np.ndarray) -> Any:
        model = clone(self.estimator)
        model.fit(X, y)
        return model

    def __repr__(self) -> str:
        return f"SklearnBackend({self.name})"


def as_backend(obj: Any, name: Optional[str] = None) -> Any:
    """Wrap bare estimators; pass through objects already acting as backends."""
    if isinstance(obj, SklearnBackend):
        return obj
    if hasattr(obj, "get_params") and hasattr(obj, "predict"):
        return SklearnBackend(obj, name=name)
    if hasattr(obj, "fit"):
        return obj
    raise TypeError(f"Object of type {type(obj).__name__} is not a backend")


def resolve_backend(backends: Mapping[str, Any], model: str) -> Any:
    """Look up `model` in `backends`.

    Raises:
        InvalidParameterError: if the identifier is not registered
    """
    if model not in backends:
        known = ", ".join(sorted(backends)) or "<none>"
        raise InvalidParameterError(
            f"Unknown model identifier '{model}' (available: {known})"
        )
    return as_backend(backends[model], name=model)


def default_backends(random_state: Optional[int] = 42) -> Dict[str, SklearnBackend]:
    """Build a fresh registry of the standard MET backends.

    Gradient-boosted trees, multilayer perceptrons, random forests, a stacked
    ensemble, and ridge regression on markers (equivalent to rrBLUP/GBLUP).
    """
    registry: Dict[str, Any] = {
        "gbm_reg_1": HistGradientBoostingRegressor(
            learning_rate=0.05, max_iter=300, random_state=random_state
        ),
        "gbm_reg_2": GradientBoostingRegressor(
            n_estimators=300,
            learning_rate=0.05,
            max_depth=3,
            subsample=0.8,
            random_state=random_state,
        ),
        "dl_reg_1": make_pipeline(
            StandardScaler(),
            MLPRegressor(
                hidden_layer_sizes=(64, 32),
                alpha=1e-3,
                early_stopping=True,
                max_iter=500,
                random_state=random_state,
            ),
        ),
        "dl_reg_2": make_pipeline(
            StandardScaler(),
            MLPRegressor(
                hidden_layer_sizes=(128, 64, 32),
                alpha=1e-2,
                early_stopping=True,
                max_iter=500,
                random_state=random_state,
            ),
        ),
        "rf_reg_1": RandomForestRegressor(
            n_estimators=100, random_state=random_state
        ),
        "rf_reg_2": RandomForestRegressor(
            n_estimators=500,
            max_features="sqrt",
            min_samples_leaf=2,
            random_state=random_state,
        ),
        "stacking_reg_1": StackingRegressor(
            estimators=[
                ("ridge", make_pipeline(StandardScaler(), Ridge(alpha=1.0))),
                (
                    "rf",
                    RandomForestRegressor(
                        n_estimators=100, random_state=random_state
                    ),
                ),
                (
                    "gbm",
                    HistGradientBoostingRegressor(random_state=random_state),
                ),
            ],
            final_estimator=RidgeCV(),
        ),
        "ridge": make_pipeline(StandardScaler(), Ridge(alpha=1.0)),
    }
    return {name: SklearnBackend(est, name=name) for name, est in registry.items()}
