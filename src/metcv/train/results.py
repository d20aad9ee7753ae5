"""Per-partition results, their aggregation, and export helpers.

Typical workflow:

    result = CrossValidator(dataset, config, backends).run()
    result.summary()
    # flush out manifest, ndjson and csv tables
    result.export("out/cv_results")

`export(...)` writes these artifacts side-by-side:
- `results.ndjson`: one JSON record per partition (metadata, no predictions)
- `predictions.csv`: one row per predicted test record
- `partitions.csv`: one row per partition (status, sizes, error)
- `manifest.json`: run metadata and file inventory

Use `CVResult.save_model(estimator, path)` for pickling fitted models and
`load_model` to restore them.
"""

import gzip
import json
import logging
import pickle
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
import polars as pl

from metcv.wrangle.splits import Partition, SkipNotice

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_ERROR = "error"
STATUS_SKIPPED = "skipped"

PREDICTION_SCHEMA = {
    "scheme": pl.Utf8,
    "repeat": pl.Int64,
    "fold": pl.Int64,
    "label": pl.Utf8,
    "seed": pl.Int64,
    "record": pl.Int64,
    "geno_ID": pl.Utf8,
    "IDenv": pl.Utf8,
    "observed": pl.Float64,
    "predicted": pl.Float64,
}


def _serialize_value(v: Any) -> Any:
    """Make values JSON/Polars-friendly.

    numpy scalars/arrays are converted, containers are serialized
    recursively, Paths become strings, and unknown objects fall back to `str()`.
    """
    if isinstance(v, Path):
        return str(v)
    if v is None:
        return None
    if isinstance(v, (str, bool, int, float)):
        return v
    if isinstance(v, np.floating):
        return float(v)
    if isinstance(v, np.integer):
        return int(v)
    if isinstance(v, np.ndarray):
        return [_serialize_value(x) for x in v.tolist()]
    if isinstance(v, (list, tuple)):
        return [_serialize_value(x) for x in v]
    if isinstance(v, dict):
        return {str(k): _serialize_value(x) for k, x in v.items()}
    return str(v)


@dataclass
class FittedPartitionResult:
    """Outcome of one partition: predictions, an error, or a skip.

    Prediction arrays are aligned with `records` (test record indices in
    ascending order).
    """

    scheme: str
    repeat: int
    fold: int
    label: str
    seed: Optional[int]
    status: str = STATUS_OK
    records: np.ndarray = field(default_factory=lambda: np.array([], dtype=np.int64))
    genotypes: List[str] = field(default_factory=list)
    environments: List[str] = field(default_factory=list)
    observed: np.ndarray = field(default_factory=lambda: np.array([], dtype=float))
    predicted: np.ndarray = field(default_factory=lambda: np.array([], dtype=float))
    n_train: int = 0
    n_test: int = 0
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    elapsed: float = 0.0

    @property
    def key(self) -> Tuple[str, int, int]:
        return (self.scheme, self.repeat, self.fold)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @classmethod
    def from_predictions(
        cls,
        partition: Partition,
        genotypes: Sequence[str],
        environments: Sequence[str],
        observed: np.ndarray,
        predicted: np.ndarray,
        elapsed: float = 0.0,
    ) -> "FittedPartitionResult":
        return cls(
            scheme=partition.scheme,
            repeat=partition.repeat,
            fold=partition.fold,
            label=partition.label,
            seed=partition.seed,
            status=STATUS_OK,
            records=np.asarray(partition.test, dtype=np.int64),
            genotypes=[str(g) for g in genotypes],
            environments=[str(e) for e in environments],
            observed=np.asarray(observed, dtype=float),
            predicted=np.asarray(predicted, dtype=float),
            n_train=partition.n_train,
            n_test=partition.n_test,
            elapsed=elapsed,
        )

    @classmethod
    def from_error(
        cls, partition: Partition, error: BaseException, elapsed: float = 0.0
    ) -> "FittedPartitionResult":
        return cls(
            scheme=partition.scheme,
            repeat=partition.repeat,
            fold=partition.fold,
            label=partition.label,
            seed=partition.seed,
            status=STATUS_ERROR,
            n_train=partition.n_train,
            n_test=partition.n_test,
            error_type=type(error).__name__,
            error_message=str(error),
            elapsed=elapsed,
        )

    @classmethod
    def from_skip(
        cls, notice: SkipNotice, seed: Optional[int] = None
    ) -> "FittedPartitionResult":
        return cls(
            scheme=notice.scheme,
            repeat=notice.repeat,
            fold=notice.fold,
            label=notice.label,
            seed=seed,
            status=STATUS_SKIPPED,
            error_message=notice.reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable metadata (predictions excluded)."""
        return {
            "scheme": self.scheme,
            "repeat": _serialize_value(self.repeat),
            "fold": _serialize_value(self.fold),
            "label": self.label,
            "seed": _serialize_value(self.seed),
            "status": self.status,
            "n_train": _serialize_value(self.n_train),
            "n_test": _serialize_value(self.n_test),
            "error_type": self.error_type,
            "error_message": self.error_message,
            "elapsed": _serialize_value(self.elapsed),
        }

    def to_frame(self) -> pl.DataFrame:
        """Observed vs predicted table for this partition's test records."""
        n = int(self.predicted.size) if self.ok else 0
        return pl.DataFrame(
            {
                "scheme": [self.scheme] * n,
                "repeat": [self.repeat] * n,
                "fold": [self.fold] * n,
                "label": [self.label] * n,
                "seed": [self.seed] * n,
                "record": self.records[:n].tolist(),
                "geno_ID": self.genotypes[:n],
                "IDenv": self.environments[:n],
                "observed": self.observed[:n].tolist(),
                "predicted": self.predicted[:n].tolist(),
            },
            schema=PREDICTION_SCHEMA,
        )


class ResultAggregator:
    """Append-only, thread-safe collector of partition outcomes.

    Entries may arrive in any completion order; `finalize()` sorts them by
    (scheme, repeat, fold), which is the order partitions were produced.
    """

    def __init__(self) -> None:
        self._entries: List[FittedPartitionResult] = []
        self._keys: set = set()
        self._lock = threading.Lock()

    def add(self, entry: FittedPartitionResult) -> bool:
        """Record an entry. Returns False if its partition was already recorded."""
        with self._lock:
            if entry.key in self._keys:
                logger.warning(
                    "Ignoring %s entry for %s partition %s (repeat %d, fold %d): "
                    "already recorded",
                    entry.status,
                    entry.scheme,
                    entry.label,
                    entry.repeat,
                    entry.fold,
                )
                return False
            self._keys.add(entry.key)
            self._entries.append(entry)
            return True

    def add_skipped(self, notice: SkipNotice, seed: Optional[int] = None) -> bool:
        return self.add(FittedPartitionResult.from_skip(notice, seed))

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def finalize(self, **metadata: Any) -> "CVResult":
        with self._lock:
            entries = sorted(self._entries, key=lambda e: e.key)
        return CVResult(entries, **metadata)


class CVResult:
    """Ordered partition results plus the seed that generated them."""

    def __init__(
        self,
        entries: Sequence[FittedPartitionResult],
        seed: Optional[int] = None,
        scheme: Optional[str] = None,
        cv0_type: Optional[str] = None,
        model: Optional[str] = None,
        trait: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.entries: List[FittedPartitionResult] = list(entries)
        self.seed = seed
        self.scheme = scheme
        self.cv0_type = cv0_type
        self.model = model
        self.trait = trait
        self.config = dict(config) if config is not None else {}

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[FittedPartitionResult]:
        return iter(self.entries)

    def __getitem__(self, i: int) -> FittedPartitionResult:
        return self.entries[i]

    def __repr__(self) -> str:
        s = self.summary()
        return (
            f"CVResult(scheme={self.scheme!r}, model={self.model!r}, seed={self.seed}, "
            f"ok={s['n_ok']}, error={s['n_error']}, skipped={s['n_skipped']})"
        )

    @property
    def successful(self) -> List[FittedPartitionResult]:
        return [e for e in self.entries if e.status == STATUS_OK]

    @property
    def errors(self) -> List[FittedPartitionResult]:
        return [e for e in self.entries if e.status == STATUS_ERROR]

    @property
    def skipped(self) -> List[FittedPartitionResult]:
        return [e for e in self.entries if e.status == STATUS_SKIPPED]

    @property
    def timeouts(self) -> List[FittedPartitionResult]:
        return [e for e in self.errors if e.error_type == "PartitionTimeoutError"]

    def sorted(self) -> "CVResult":
        """Copy with entries ordered by (scheme, repeat, fold)."""
        return CVResult(
            sorted(self.entries, key=lambda e: e.key),
            seed=self.seed,
            scheme=self.scheme,
            cv0_type=self.cv0_type,
            model=self.model,
            trait=self.trait,
            config=self.config,
        )

    def summary(self) -> Dict[str, Any]:
        """Counts of successful, failed, timed-out and skipped partitions."""
        return {
            "scheme": self.scheme,
            "model": self.model,
            "seed": self.seed,
            "n_partitions": len(self.entries),
            "n_ok": len(self.successful),
            "n_error": len(self.errors),
            "n_timeout": len(self.timeouts),
            "n_skipped": len(self.skipped),
        }

    def to_dataframe(self) -> pl.DataFrame:
        """Long observed/predicted table over all successful partitions."""
        frames = [e.to_frame() for e in self.successful]
        if not frames:
            return pl.DataFrame(schema=PREDICTION_SCHEMA)
        return pl.concat(frames)

    def partitions_frame(self) -> pl.DataFrame:
        """One row per entry with status, sizes and error details."""
        rows = [e.to_dict() for e in self.entries]
        schema = {
            "scheme": pl.Utf8,
            "repeat": pl.Int64,
            "fold": pl.Int64,
            "label": pl.Utf8,
            "seed": pl.Int64,
            "status": pl.Utf8,
            "n_train": pl.Int64,
            "n_test": pl.Int64,
            "error_type": pl.Utf8,
            "error_message": pl.Utf8,
            "elapsed": pl.Float64,
        }
        if not rows:
            return pl.DataFrame(schema=schema)
        return pl.DataFrame(rows, schema=schema)

    def _to_dict(self) -> Dict[str, Any]:
        return {
            "seed": _serialize_value(self.seed),
            "scheme": self.scheme,
            "cv0_type": self.cv0_type,
            "model": self.model,
            "trait": self.trait,
            "config": _serialize_value(self.config),
            "summary": self.summary(),
            "partitions": [e.to_dict() for e in self.entries],
        }

    def to_json(
        self, path: Optional[Union[str, Path]] = None, indent: int = 2
    ) -> str:
        """Return a JSON string of run metadata and optionally write it to disk."""
        j = json.dumps(self._to_dict(), indent=indent, default=str)
        if path:
            Path(path).write_text(j)
        return j

    # ----- Export helpers -----

    def export(self, path: Union[str, Path], indent: int = 2) -> Path:
        """Export result tables and manifest under `path`.

        Returns:
            The output directory.
        """
        out_dir = Path(path)
        if out_dir.exists() and out_dir.is_file():
            out_dir = out_dir.parent
        out_dir.mkdir(parents=True, exist_ok=True)

        with (out_dir / "results.ndjson").open("w", encoding="utf-8") as f:
            for entry in self.entries:
                f.write(json.dumps(entry.to_dict(), default=str) + "\n")
        self.to_dataframe().write_csv(out_dir / "predictions.csv")
        self.partitions_frame().write_csv(out_dir / "partitions.csv")

        model_files = (
            sorted(
                str(p.relative_to(out_dir))
                for p in (out_dir / "models").rglob("*.pkl")
            )
            if (out_dir / "models").exists()
            else []
        )
        manifest = {
            "version": "1.0",
            "created": datetime.now().isoformat(),
            "run": {
                "seed": _serialize_value(self.seed),
                "scheme": self.scheme,
                "cv0_type": self.cv0_type,
                "model": self.model,
                "trait": self.trait,
            },
            "summary": self.summary(),
            "components": {
                "results": {
                    "files": [
                        "results.ndjson",
                        "predictions.csv",
                        "partitions.csv",
                    ],
                    "n_results": len(self.entries),
                },
                "models": {
                    "path": "models",
                    "n_models": len(model_files),
                    "files": model_files,
                },
            },
        }
        (out_dir / "manifest.json").write_text(json.dumps(manifest, indent=indent, default=str))
        return out_dir

    @staticmethod
    def _sanitize_segment(value: Optional[str], fallback: str) -> str:
        text = str(value) if value else fallback
        sanitized = re.sub(r"[^A-Za-z0-9_\-\.]+", "_", text)
        return sanitized.strip("_") or fallback

    @staticmethod
    def model_file_name(
        partition: Union[Partition, FittedPartitionResult], model: Optional[str] = None
    ) -> str:
        """File name for a partition's pickled model."""
        model_part = CVResult._sanitize_segment(model, "model")
        label = CVResult._sanitize_segment(partition.label, "partition")
        return (
            f"{model_part}_{partition.scheme}_r{partition.repeat}"
            f"_f{partition.fold}_{label}.pkl"
        )

    @staticmethod
    def save_model(
        model: Any, path: Union[str, Path], compress: bool = False
    ) -> None:
        outp = Path(path)
        outp.parent.mkdir(parents=True, exist_ok=True)
        if compress:
            with gzip.open(str(outp), "wb") as f:
                pickle.dump(model, f, protocol=pickle.HIGHEST_PROTOCOL)
        else:
            with outp.open("wb") as f:
                pickle.dump(model, f, protocol=pickle.HIGHEST_PROTOCOL)

    @staticmethod
    def load_model(path: Union[str, Path]) -> Any:
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(p)
        if str(p).endswith(".gz"):
            with gzip.open(str(p), "rb") as f:
                return pickle.load(f)
        with p.open("rb") as f:
            return pickle.load(f)
