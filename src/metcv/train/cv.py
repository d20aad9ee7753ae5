"""Cross-validation dispatcher: fit one backend per partition and collect
predictions.

The `CrossValidator` validates everything up front (feature toggles against
the dataset, the model identifier against the backend mapping, scheme
parameters while generating folds) so a bad run fails before any model is
fitted. Partitions are then dispatched sequentially, through joblib, or on
daemon threads with a per-partition time budget.
"""

import logging
import queue
import threading
import time
from collections import deque
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
from joblib import Parallel, delayed, effective_n_jobs

from metcv.core.config import CVConfig
from metcv.core.exceptions import (
    FATAL_ERRORS,
    BackendError,
    PartitionTimeoutError,
)
from metcv.train.backends import default_backends, resolve_backend
from metcv.train.folds import FoldGenerator
from metcv.train.results import CVResult, FittedPartitionResult, ResultAggregator
from metcv.wrangle.dataset import TrialDataset
from metcv.wrangle.features import FeatureMatrixBuilder
from metcv.wrangle.splits import Partition, SplitPlan

logger = logging.getLogger(__name__)


class CrossValidator:
    """Run one cross-validation scheme for one model over a trial dataset.

    Args:
        dataset: validated trial data, shared read-only by all partitions
        config: run configuration (scheme, model id, features, parallelism)
        backends: mapping from model identifier to backend or estimator
    """

    def __init__(
        self,
        dataset: TrialDataset,
        config: CVConfig,
        backends: Mapping[str, Any],
    ) -> None:
        if not isinstance(dataset, TrialDataset):
            raise TypeError("dataset must be a TrialDataset")
        if not isinstance(config, CVConfig):
            raise TypeError("config must be a CVConfig")
        self.dataset = dataset
        self.config = config
        self.backends = dict(backends)

        self._backend: Any = None
        self._builder: Optional[FeatureMatrixBuilder] = None

    def plan(self) -> SplitPlan:
        """Validate the run and generate its partitions without fitting."""
        self.dataset.check_feature_config(self.config.features)
        self._backend = resolve_backend(self.backends, self.config.model)
        plan = FoldGenerator(self.config).generate(self.dataset, self.config.seed)
        self._builder = FeatureMatrixBuilder(self.dataset, self.config.features)
        return plan

    def run(self) -> CVResult:
        """Execute every partition and return the ordered results.

        Raises:
            ValidationError: dataset or feature configuration is unusable
            InvalidParameterError: scheme parameters or model id are invalid
        """
        plan = self.plan()
        logger.info(
            "Starting %s with model %s on %d partition(s) (%d features)",
            self.config.cv_type.value,
            self.config.model,
            len(plan),
            self._builder.n_features if self._builder is not None else 0,
        )

        aggregator = ResultAggregator()
        for notice in plan.skipped:
            aggregator.add_skipped(notice)

        started = time.perf_counter()
        if plan.partitions:
            if self.config.timeout is not None:
                self._dispatch_with_timeout(plan.partitions, aggregator)
            elif self.config.n_jobs == 1 or len(plan.partitions) == 1:
                for partition in plan.partitions:
                    self._accept(aggregator, *self._run_partition(partition))
            else:
                self._dispatch_parallel(plan.partitions, aggregator)

        result = aggregator.finalize(
            seed=plan.seed,
            scheme=self.config.cv_type.value,
            cv0_type=(
                None if self.config.cv_type.randomized else self.config.cv0_type.value
            ),
            model=self.config.model,
            trait=self.dataset.trait,
            config=self.config.to_dict(),
        )
        self._log_summary(result, time.perf_counter() - started)
        return result

    # ----- dispatch -----

    def _n_workers(self, n_partitions: int) -> int:
        return max(1, min(effective_n_jobs(self.config.n_jobs), n_partitions))

    def _accept(
        self,
        aggregator: ResultAggregator,
        entry: FittedPartitionResult,
        model: Any = None,
    ) -> None:
        """Record an entry and, once it is recorded, pickle its fitted model."""
        if not aggregator.add(entry) or model is None:
            return
        if self.config.save_models and self.config.output_dir is not None:
            path = (
                self.config.output_dir
                / "models"
                / CVResult.model_file_name(entry, self.config.model)
            )
            CVResult.save_model(model, path)

    def _dispatch_parallel(
        self, partitions: List[Partition], aggregator: ResultAggregator
    ) -> None:
        n_jobs = self._n_workers(len(partitions))
        logger.debug("Dispatching %d partition(s) on %d worker(s)", len(partitions), n_jobs)
        parallel = Parallel(
            n_jobs=n_jobs,
            prefer=self.config.prefer,
            return_as="generator_unordered",
        )
        for entry, model in parallel(delayed(self._run_partition)(p) for p in partitions):
            self._accept(aggregator, entry, model)

    def _dispatch_with_timeout(
        self, partitions: List[Partition], aggregator: ResultAggregator
    ) -> None:
        """Daemon-thread dispatch where each partition gets `config.timeout` seconds.

        At most `n_workers` partitions run at once. The budget starts when a
        partition's thread starts. An overdue partition is recorded as a
        timeout and its slot goes to the next waiting partition; the abandoned
        thread keeps running in the background and its late result is
        discarded.
        """
        timeout = float(self.config.timeout)  # type: ignore[arg-type]
        poll = min(0.1, timeout / 4)
        n_workers = self._n_workers(len(partitions))
        waiting = deque(partitions)
        running: Dict[Tuple[str, int, int], Tuple[Partition, float]] = {}
        finished: "queue.Queue[Tuple[Tuple[str, int, int], Any]]" = queue.Queue()

        def work(partition: Partition) -> None:
            try:
                outcome: Any = self._run_partition(partition)
            except Exception as e:
                outcome = e
            finished.put((partition.key, outcome))

        while waiting or running:
            while waiting and len(running) < n_workers:
                partition = waiting.popleft()
                running[partition.key] = (partition, time.monotonic())
                threading.Thread(
                    target=work,
                    args=(partition,),
                    name=f"metcv-{partition.scheme}-r{partition.repeat}-f{partition.fold}",
                    daemon=True,
                ).start()

            arrived = []
            try:
                arrived.append(finished.get(timeout=poll))
                while True:
                    arrived.append(finished.get_nowait())
            except queue.Empty:
                pass

            for key, outcome in arrived:
                if running.pop(key, None) is None:
                    logger.debug("Discarding late result of abandoned partition %s", key)
                    continue
                if isinstance(outcome, Exception):
                    raise outcome
                self._accept(aggregator, *outcome)

            now = time.monotonic()
            for key, (partition, t0) in list(running.items()):
                if now - t0 <= timeout:
                    continue
                del running[key]
                error = PartitionTimeoutError(
                    f"partition {partition.label} exceeded {timeout:g}s"
                )
                logger.warning(
                    "%s partition %s (repeat %d, fold %d) timed out after %.2fs",
                    partition.scheme,
                    partition.label,
                    partition.repeat,
                    partition.fold,
                    now - t0,
                )
                aggregator.add(FittedPartitionResult.from_error(partition, error, now - t0))

    # ----- per-partition work -----

    def _run_partition(
        self, partition: Partition
    ) -> Tuple[FittedPartitionResult, Any]:
        """Fit on the train indices and predict the test indices.

        Returns the entry and the fitted model (None for error entries).
        Fatal configuration errors propagate; anything else raised by the
        backend becomes an error entry for this partition.
        """
        started = time.perf_counter()
        try:
            predicted, model = self._fit_predict(partition)
        except FATAL_ERRORS:
            raise
        except Exception as e:
            elapsed = time.perf_counter() - started
            logger.warning(
                "%s partition %s (repeat %d, fold %d) failed: %s: %s",
                partition.scheme,
                partition.label,
                partition.repeat,
                partition.fold,
                type(e).__name__,
                e,
            )
            return FittedPartitionResult.from_error(partition, e, elapsed), None

        elapsed = time.perf_counter() - started
        logger.debug(
            "%s partition %s (repeat %d, fold %d): %d train, %d test, %.3fs",
            partition.scheme,
            partition.label,
            partition.repeat,
            partition.fold,
            partition.n_train,
            partition.n_test,
            elapsed,
        )
        test = partition.test
        entry = FittedPartitionResult.from_predictions(
            partition,
            genotypes=self.dataset.genotype_array[test].tolist(),
            environments=self.dataset.environment_array[test].tolist(),
            observed=self.dataset.trait_values[test],
            predicted=predicted,
            elapsed=elapsed,
        )
        return entry, model

    def _fit_predict(self, partition: Partition) -> Tuple[np.ndarray, Any]:
        if self._builder is None or self._backend is None:
            raise RuntimeError("plan() must be called before fitting partitions")
        X_train, _ = self._builder.build(partition.train)
        X_test, _ = self._builder.build(partition.test)
        y_train = self.dataset.trait_values[partition.train]

        model = self._backend.fit(X_train, y_train)
        predicted = np.asarray(model.predict(X_test), dtype=float).ravel()
        if predicted.size != partition.n_test:
            raise BackendError(
                f"backend returned {predicted.size} prediction(s) "
                f"for {partition.n_test} test record(s)"
            )
        return predicted, model

    # ----- reporting -----

    @staticmethod
    def _log_summary(result: CVResult, elapsed: float) -> None:
        s = result.summary()
        logger.info(
            "Finished %s in %.2fs: %d ok, %d error(s), %d skipped (seed %s)",
            s["scheme"],
            elapsed,
            s["n_ok"],
            s["n_error"],
            s["n_skipped"],
            s["seed"],
        )
        if s["n_error"] or s["n_skipped"]:
            logger.warning(
                "%d partition(s) failed (%d timeout(s)) and %d were skipped",
                s["n_error"],
                s["n_timeout"],
                s["n_skipped"],
            )


def run_cv(
    dataset: TrialDataset,
    config: CVConfig,
    backends: Optional[Mapping[str, Any]] = None,
) -> CVResult:
    """Convenience wrapper using `default_backends()` when none are given."""
    if backends is None:
        backends = default_backends()
    return CrossValidator(dataset, config, backends).run()

