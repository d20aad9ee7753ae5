"""Command-line interface for MET cross-validation."""

from __future__ import annotations

import argparse
import dataclasses
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import polars as pl

from metcv.core.config import CVConfig, load_config
from metcv.core.exceptions import MetCVError
from metcv.train.backends import default_backends, resolve_backend
from metcv.train.cv import CrossValidator
from metcv.train.metrics import partition_metrics, summarize
from metcv.train.trainer import ModelTrainer
from metcv.wrangle.dataset import TrialDataset
from metcv.wrangle.features import FeatureSet

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 2


def _read_table(path: str, sep: str) -> pl.DataFrame:
    return pl.read_csv(path, separator=sep, infer_schema_length=10000)


def _build_config(args: argparse.Namespace) -> CVConfig:
    config = load_config(args.config) if args.config else CVConfig()
    overrides: Dict[str, Any] = {}
    for name in ("cv_type", "cv0_type", "model", "seed", "n_jobs", "timeout"):
        value = getattr(args, name, None)
        if value is not None:
            overrides[name] = value
    if getattr(args, "folds", None) is not None:
        overrides["nb_folds_cv1"] = args.folds
        overrides["nb_folds_cv2"] = args.folds
    if getattr(args, "repeats", None) is not None:
        overrides["repeats_cv1"] = args.repeats
        overrides["repeats_cv2"] = args.repeats
    if getattr(args, "output", None) is not None:
        overrides["output_dir"] = Path(args.output)
    if getattr(args, "save_models", False):
        overrides["save_models"] = True

    features = config.features
    if args.markers is None and features.include_markers:
        logger.info("No marker table given; marker features disabled")
        features = dataclasses.replace(features, include_markers=False)
    if args.covariates is None and features.include_env_covariates:
        logger.info("No covariate table given; environmental covariates disabled")
        features = dataclasses.replace(features, include_env_covariates=False)
    overrides["features"] = features
    return dataclasses.replace(config, **overrides)


def _load_dataset(args: argparse.Namespace, config: CVConfig) -> TrialDataset:
    return TrialDataset(
        records=_read_table(args.records, args.sep),
        environments=_read_table(args.environments, args.sep),
        trait=args.trait,
        markers=(
            FeatureSet.scan(args.markers, name="markers", key_column="geno_ID", separator=args.sep)
            if args.markers
            else None
        ),
        env_covariates=(
            FeatureSet.load(args.covariates, name="covariates", key_column="IDenv", separator=args.sep)
            if args.covariates
            else None
        ),
        replicate_column=args.replicate_column,
        feature_config=config.features,
    )


def command_cv(args: argparse.Namespace) -> int:
    config = _build_config(args)
    dataset = _load_dataset(args, config)
    result = CrossValidator(dataset, config, default_backends()).run()

    out_dir = result.export(config.output_dir or Path("metcv_results"))
    metrics = partition_metrics(result, by_environment=args.by_environment)
    metrics.write_csv(out_dir / "metrics.csv")

    s = result.summary()
    logger.info(
        "%s/%s: %d ok, %d error(s), %d skipped; results in %s",
        s["scheme"],
        s["model"],
        s["n_ok"],
        s["n_error"],
        s["n_skipped"],
        out_dir,
    )
    for name, stats in summarize(metrics).items():
        if stats["mean"] is not None:
            logger.info("  %s: mean %.4f", name, stats["mean"])
    for entry in result.errors:
        logger.warning(
            "  %s repeat %d fold %d (%s): %s: %s",
            entry.scheme,
            entry.repeat,
            entry.fold,
            entry.label,
            entry.error_type,
            entry.error_message,
        )
    return EXIT_OK


def command_predict(args: argparse.Namespace) -> int:
    config = _build_config(args)
    dataset = _load_dataset(args, config)
    backend = resolve_backend(default_backends(), config.model)
    outcome = ModelTrainer(
        dataset,
        backend,
        features=config.features,
        output_model_path=args.model_out,
        model_name=config.model,
    ).train_and_predict()

    output = Path(args.predictions)
    output.parent.mkdir(parents=True, exist_ok=True)
    outcome.predictions.write_csv(output)
    logger.info(
        "Predicted %d record(s) from %d training record(s); written to %s",
        outcome.predictions.height,
        outcome.n_train,
        output,
    )
    return EXIT_OK


def _add_data_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--records", required=True, help="CSV with geno_ID, IDenv and the trait")
    parser.add_argument("--environments", required=True, help="CSV with IDenv, location, year")
    parser.add_argument("--trait", required=True)
    parser.add_argument("--markers", help="CSV marker matrix keyed by geno_ID")
    parser.add_argument("--covariates", help="CSV environmental covariates keyed by IDenv")
    parser.add_argument("--replicate-column", dest="replicate_column", default=None)
    parser.add_argument("--sep", default=",")
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--model", default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="metcv", description="Cross-validation for multi-environment trials"
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    cv_parser = subparsers.add_parser("cv", help="Run a cross-validation scheme")
    _add_data_arguments(cv_parser)
    cv_parser.add_argument("--cv-type", dest="cv_type", choices=["cv0", "cv00", "cv1", "cv2"])
    cv_parser.add_argument(
        "--cv0-type",
        dest="cv0_type",
        choices=[
            "leave-one-environment-out",
            "leave-one-site-out",
            "leave-one-year-out",
            "forward-prediction",
        ],
    )
    cv_parser.add_argument("--folds", type=int, default=None)
    cv_parser.add_argument("--repeats", type=int, default=None)
    cv_parser.add_argument("--seed", type=int, default=None)
    cv_parser.add_argument("--n-jobs", dest="n_jobs", type=int, default=None)
    cv_parser.add_argument("--timeout", type=float, default=None)
    cv_parser.add_argument("--output", default=None, help="Output directory")
    cv_parser.add_argument("--save-models", dest="save_models", action="store_true")
    cv_parser.add_argument(
        "--by-environment",
        dest="by_environment",
        action="store_true",
        help="Report metrics per environment within each partition",
    )
    cv_parser.set_defaults(func=command_cv)

    predict_parser = subparsers.add_parser(
        "predict", help="Fit on observed records and predict the missing ones"
    )
    _add_data_arguments(predict_parser)
    predict_parser.add_argument("--predictions", required=True, help="Output CSV")
    predict_parser.add_argument("--model-out", dest="model_out", default=None)
    predict_parser.set_defaults(func=command_predict)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except (MetCVError, FileNotFoundError, pl.exceptions.PolarsError) as e:
        logger.error("%s: %s", type(e).__name__, e)
        return EXIT_FATAL


if __name__ == "__main__":
    raise SystemExit(main())
