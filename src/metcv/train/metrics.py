"""Prediction accuracy of finished cross-validation runs.

These helpers sit downstream of `CrossValidator`: they read the observed and
predicted columns of a `CVResult` and never influence how partitions are
built or fitted.
"""

import logging
from typing import Dict, List, Optional, Sequence

import numpy as np
import polars as pl
from scipy.stats import pearsonr
from sklearn.metrics import mean_absolute_error, mean_squared_error, r2_score

from metcv.train.results import CVResult

logger = logging.getLogger(__name__)

METRIC_NAMES = ("pcc", "rmse", "mae", "r2")


def compute_metrics(
    y_true: Sequence[float],
    y_pred: Sequence[float],
) -> Dict[str, Optional[float]]:
    """Pearson correlation, RMSE, MAE and R² between observed and predicted.

    Pearson correlation needs at least two records and non-constant inputs,
    and R² at least two records; otherwise those values are None.
    """
    y_true_arr = np.asarray(y_true, dtype=float)
    y_pred_arr = np.asarray(y_pred, dtype=float)
    if y_true_arr.size == 0 or y_pred_arr.size == 0:
        return {name: None for name in METRIC_NAMES}

    metrics: Dict[str, Optional[float]] = {}
    metrics["rmse"] = float(np.sqrt(mean_squared_error(y_true_arr, y_pred_arr)))
    metrics["mae"] = float(mean_absolute_error(y_true_arr, y_pred_arr))
    metrics["r2"] = (
        float(r2_score(y_true_arr, y_pred_arr)) if y_true_arr.size >= 2 else None
    )

    if (
        y_true_arr.size >= 2
        and np.ptp(y_true_arr) > 0
        and np.ptp(y_pred_arr) > 0
    ):
        metrics["pcc"] = float(pearsonr(y_true_arr, y_pred_arr)[0])
    else:
        metrics["pcc"] = None
    return metrics


METRICS_SCHEMA = {
    "scheme": pl.Utf8,
    "repeat": pl.Int64,
    "fold": pl.Int64,
    "label": pl.Utf8,
    "IDenv": pl.Utf8,
    "n": pl.Int64,
    "pcc": pl.Float64,
    "rmse": pl.Float64,
    "mae": pl.Float64,
    "r2": pl.Float64,
}


def partition_metrics(result: CVResult, by_environment: bool = False) -> pl.DataFrame:
    """One row of metrics per successful partition.

    Args:
        result: finished cross-validation run
        by_environment: compute metrics per tested environment within each
            partition (as MET programs report cv1/cv2 accuracy)

    Returns:
        DataFrame ordered by (scheme, repeat, fold[, IDenv]); `IDenv` is null
        when `by_environment` is False.
    """
    rows: List[Dict[str, object]] = []
    for entry in result.successful:
        base = {
            "scheme": entry.scheme,
            "repeat": entry.repeat,
            "fold": entry.fold,
            "label": entry.label,
        }
        if not by_environment:
            rows.append(
                {
                    **base,
                    "IDenv": None,
                    "n": int(entry.predicted.size),
                    **compute_metrics(entry.observed, entry.predicted),
                }
            )
            continue

        envs = np.asarray(entry.environments, dtype=object)
        for env_id in sorted(set(entry.environments)):
            mask = envs == env_id
            rows.append(
                {
                    **base,
                    "IDenv": env_id,
                    "n": int(mask.sum()),
                    **compute_metrics(entry.observed[mask], entry.predicted[mask]),
                }
            )

    logger.debug("Computed metrics for %d row(s)", len(rows))
    if not rows:
        return pl.DataFrame(schema=METRICS_SCHEMA)
    return pl.DataFrame(rows, schema=METRICS_SCHEMA)


def summarize(metrics: pl.DataFrame) -> Dict[str, Dict[str, Optional[float]]]:
    """Mean and standard deviation of each metric across rows of `metrics`.

    Missing values (e.g. undefined correlations) are ignored.
    """
    out: Dict[str, Dict[str, Optional[float]]] = {}
    for name in METRIC_NAMES:
        values = metrics.get_column(name).drop_nulls().drop_nans() if metrics.height else None
        if values is None or values.len() == 0:
            out[name] = {"mean": None, "std": None}
            continue
        arr = values.to_numpy()
        out[name] = {
            "mean": float(np.mean(arr)),
            "std": float(np.std(arr, ddof=1)) if arr.size > 1 else None,
        }
    return out
