# cross_validation.py

"""
Repeated stratified cross-validation of a set of classifiers on one dataset.

The engine computes the distance matrix and the neighbor sets of the whole
dataset once, derives fold-local views for every (run, fold), trains and tests
every classifier on worker threads, and merges their results in classifier
order on the calling thread.
"""

#
# Imports
#

import enum
import os
import re
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, List, Optional

import numpy as np
import pandas as pd
from loguru import logger
from sklearn.preprocessing import KBinsDiscretizer
from tqdm import tqdm

from .classifiers import Capability, EvaluationContext, detect_capabilities, evaluate_classifier
from .config import CrossValidationConfig
from .distance_matrix import DistanceMatrix
from .errors import ClassifierFailure, ConfigurationError, HubCVError
from .estimator import MAIN_METRICS, ClassificationEstimator
from .folds import FoldAssignment, FoldGenerator, load_folds, save_folds
from .hubness_utils import timing
from .neighbors import NeighborSetFinder, take
from .secondary import nearest_columns, secondary_distances

DISTANCE_USERS = Capability.DISTANCE_MATRIX | Capability.DISTANCE_QUERIES
NEIGHBOR_USERS = Capability.NEIGHBOR_SETS | Capability.NEIGHBOR_QUERIES


def _name_of(classifier):
    return getattr(classifier, "name", None) or repr(classifier)


class EngineState(enum.Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    AGGREGATED = "aggregated"


#
# Results
#
@dataclass
class ClassifierResult:
    """
    Aggregated cross-validation results of one classifier.

    Attributes
    ----------
    name: Classifier name.
    capabilities: Capabilities detected at registration.
    estimators: One estimator per (run, fold) in run-major order, `None` where the classifier failed.
    failures: The recorded failures.
    average_estimator: Estimator of the cell-wise mean confusion matrix over the completed folds.
    fuzzy_predictions: (n, num_classes) mean class probabilities per original point;
        NaN for points that were never tested.
    per_point_accuracy: Share of correct test-time predictions per original point; NaN if never tested.
    execution_time: Total seconds spent training and testing.
    """

    name: str
    capabilities: Capability
    estimators: List[Optional[ClassificationEstimator]]
    failures: List[ClassifierFailure]
    average_estimator: Optional[ClassificationEstimator]
    fuzzy_predictions: np.ndarray
    per_point_accuracy: np.ndarray
    execution_time: float

    @property
    def missing(self):
        """ (run, fold) pairs without results """
        return [(failure.run, failure.fold) for failure in self.failures]

    @property
    def num_full_folds(self):
        return sum(estimator is not None for estimator in self.estimators)

    @property
    def spread(self):
        return ClassificationEstimator.spread(self.estimators)


@dataclass
class CrossValidationResult:
    """
    Results of a cross-validation run over all classifiers.
    """

    dataset_name: str
    classifiers: List[ClassifierResult]
    folds: FoldAssignment
    nsf_k: Optional[int] = None
    timings: dict = field(default_factory=dict)
    keep_all_evaluations: bool = False

    def __getitem__(self, name):
        for result in self.classifiers:
            if result.name == name:
                return result
        raise KeyError(name)

    def summary(self):
        """
        Main measures of the average estimator of every classifier, their standard
        deviations across folds, the number of missing folds and the total time.

        Returns
        -------
        pandas.DataFrame indexed by classifier name.
        """
        rows = []
        for result in self.classifiers:
            row = {"classifier": result.name}
            if result.average_estimator is not None:
                row.update(result.average_estimator.to_series().to_dict())
            else:
                row.update({name: np.nan for name in MAIN_METRICS})
            row.update({f"{name}_std": value for name, value in result.spread.items()})
            row["missing_folds"] = len(result.failures)
            row["execution_time"] = result.execution_time
            rows.append(row)
        return pd.DataFrame(rows).set_index("classifier")

    def missing_report(self):
        """
        Every classifier / fold combination without results, with the error that caused it.
        """
        rows = [
            {"classifier": result.name, "run": failure.run, "fold": failure.fold, "error": repr(failure.cause)}
            for result in self.classifiers
            for failure in result.failures
        ]
        return pd.DataFrame(rows, columns=["classifier", "run", "fold", "error"])

    def save(self, directory):
        """
        Write the summary, the missing report, the per-point accuracies and the
        averaged estimators (and per-fold estimators if kept) under `directory`.
        """
        os.makedirs(directory, exist_ok=True)
        self.summary().to_csv(os.path.join(directory, "summary.csv"))
        self.missing_report().to_csv(os.path.join(directory, "missing.csv"), index=False)
        pd.DataFrame(
            {result.name: result.per_point_accuracy for result in self.classifiers}
        ).to_csv(os.path.join(directory, "per_point_accuracy.csv"), index_label="point")
        for result in self.classifiers:
            stem = re.sub(r"[^A-Za-z0-9_.=-]+", "_", result.name).strip("_")
            if result.average_estimator is not None:
                result.average_estimator.save(os.path.join(directory, f"{stem}_average.csv"))
            if self.keep_all_evaluations:
                for position, estimator in enumerate(result.estimators):
                    if estimator is not None:
                        run, fold = divmod(position, self.folds.num_folds)
                        estimator.save(os.path.join(directory, f"{stem}_run{run}_fold{fold}.csv"))


@dataclass
class FoldData:
    """ Everything the classifiers of one fold share; read-only once built """

    run: int
    fold: int
    train_indexes: np.ndarray
    test_indexes: np.ndarray
    train_points: Any
    train_labels: np.ndarray
    test_points: Any
    test_labels: np.ndarray
    train_discrete: Optional[np.ndarray] = None
    test_discrete: Optional[np.ndarray] = None
    train_distance_matrix: Optional[DistanceMatrix] = None
    train_nsf: Optional[NeighborSetFinder] = None
    test_distances: Optional[np.ndarray] = None
    test_neighbors: Optional[np.ndarray] = None
    selection: Any = None


#
# Engine
#
class MultiCrossValidation:
    """
    Repeated stratified cross-validation of several classifiers on one dataset.

    Parameters
    ----------
    points: (array-like) The point set, (n, d) for numeric metrics.
    labels: (array-like of int) Class label per point; negative labels mark unlabeled
        points, which take part in the neighbor sets but not in the folds.
    classifiers: (list) Classifier prototypes; each is copied for every fold.
    num_classes: (int or `None`) Number of classes, inferred from the labels if `None`.
    config: (CrossValidationConfig or `None`) Run parameters, defaults if `None`.
    distance_matrix: (DistanceMatrix or `None`) Precomputed distances of the whole point set.
    metric: (str, DistanceMetric, callable or `None`) Metric used to compute missing distances.
    dataset_name: (str) Name used for logging and for the fold file.
    discretized_points: (array-like or `None`) Integer coded points for discrete classifiers;
        computed per fold with `KBinsDiscretizer` if `None`.
    reducer: (InstanceSelector or `None`) Instance selector applied to every training set.
    keep_ratio: (float) Share of the training set the reducer keeps; 0 lets the reducer decide.
    fold_assignment: (FoldAssignment or `None`) Folds to use instead of generating them.
    fold_file: (str or `None`) JSON fold file to reuse folds from, and to store generated folds in.
    test_labels: (array-like of int or `None`) Labels to score test predictions against, instead
        of `labels`; folds are still stratified by `labels`.
    my_logger: (logger.Logger or `None`) Custom logger; if None, a default logger is created.
    verbose: (bool) Flag to enable logger output and progress bars, default `True`.
    """

    def __init__(
        self,
        points,
        labels,
        classifiers,
        num_classes=None,
        config=None,
        distance_matrix=None,
        metric=None,
        dataset_name="dataset",
        discretized_points=None,
        reducer=None,
        keep_ratio=0.0,
        fold_assignment=None,
        fold_file=None,
        test_labels=None,
        my_logger=None,
        verbose=True,
    ):
        #
        self.points = points
        """ Point set """
        self.labels = np.asarray(labels, dtype=np.int64)
        """ Class labels, negative for unlabeled points """
        self.classifiers = list(classifiers)
        """ Classifier prototypes """
        self.config = config if config is not None else CrossValidationConfig()
        """ Run parameters """
        self.distance_matrix = distance_matrix
        self.metric = metric
        self.dataset_name = dataset_name
        self.discretized_points = discretized_points
        self.reducer = reducer
        self.keep_ratio = keep_ratio
        self.fold_assignment = fold_assignment
        self.fold_file = fold_file
        self.test_labels = None if test_labels is None else np.asarray(test_labels, dtype=np.int64)
        self.verbose = verbose
        self.nsf = None
        """ Neighbor sets of the whole point set """
        self.timings = {}
        self.state = EngineState.INITIALIZED
        #
        if my_logger is None:
            logger.remove()
            sink = sys.stdout if verbose else open(os.devnull, "w", encoding="utf-8")
            logger.add(sink, level="INFO")
            self.logger = logger
            """ System logger """
        else:
            self.logger = my_logger
        #
        self.n = len(points)
        self.num_classes = num_classes
        try:
            self._validate()
        except ConfigurationError as err:
            self.logger.error(f"Invalid cross-validation setup: {err}")
            raise
        self.capabilities = [detect_capabilities(classifier) for classifier in self.classifiers]
        """ Capabilities of every classifier, detected once """
        self._combined = Capability.NONE
        for capabilities in self.capabilities:
            self._combined |= capabilities

    #
    # Validation
    #

    def _validate(self):
        self.config.validate()
        n = self.n
        if n < 2:
            raise ConfigurationError("Cross-validation needs at least two points")
        if self.labels.shape != (n,):
            raise ConfigurationError(f"Expected {n} labels, got an array of shape {self.labels.shape}")
        if not self.classifiers:
            raise ConfigurationError("No classifiers to evaluate")
        for classifier in self.classifiers:
            if not callable(getattr(classifier, "copy_configuration", None)):
                raise ConfigurationError(f"{classifier!r} cannot copy its configuration")
        labeled = self.labels[self.labels >= 0]
        if labeled.size == 0:
            raise ConfigurationError("No labeled points")
        if self.num_classes is None:
            self.num_classes = int(labeled.max()) + 1
        if labeled.max() >= self.num_classes:
            raise ConfigurationError(f"Labels exceed the {self.num_classes} classes")
        if self.test_labels is not None:
            if self.test_labels.shape != (n,):
                raise ConfigurationError("test_labels must have one entry per point")
            if np.any(self.test_labels[self.labels >= 0] < 0) or self.test_labels.max() >= self.num_classes:
                raise ConfigurationError("test_labels must hold a valid class for every labeled point")
        if self.distance_matrix is not None and self.distance_matrix.n != n:
            raise ConfigurationError(
                f"Distance matrix over {self.distance_matrix.n} points does not match {n} points"
            )
        if self.discretized_points is not None and len(self.discretized_points) != n:
            raise ConfigurationError("discretized_points must have one row per point")
        if not 0.0 <= self.keep_ratio <= 1.0:
            raise ConfigurationError(f"keep_ratio must lie in [0, 1], got {self.keep_ratio}")
        if self.config.largest_k >= labeled.size:
            raise ConfigurationError(
                f"k={self.config.largest_k} is too large for {labeled.size} labeled points"
            )
        if self.fold_assignment is not None:
            indexes = self.fold_assignment.indexes
            if indexes.size and (indexes.min() < 0 or indexes.max() >= n or np.any(self.labels[indexes] < 0)):
                raise ConfigurationError("Fold assignment refers to missing or unlabeled points")

    #
    # Shared structures
    #

    def _needs(self, capabilities):
        return bool(self._combined & capabilities) or self.reducer is not None

    def _numeric_points(self):
        try:
            return np.asarray(self.points, dtype=np.float64)
        except (TypeError, ValueError):
            return None

    def prepare_distances(self):
        """
        Compute the distance matrix of the whole point set, unless it was provided.
        """
        if self.distance_matrix is None:
            self.logger.info("distance matrix ...")
            with timing("distance_matrix", self.timings):
                self.distance_matrix = DistanceMatrix.compute(
                    self.points, self.metric, n_threads=self.config.num_threads
                )
            self.logger.info("distance matrix done ...")
        return self.distance_matrix

    def prepare_neighbor_sets(self):
        """
        Compute the neighbor sets of the whole point set at 2 * k_max + 10 neighbors
        (secondary_k + k_max + 10 with a secondary distance), bounded by the number of
        points; fold-local neighbor sets are taken from these.
        """
        k = self.config.nsf_size(self.n)
        self.logger.info(f"neighbor sets ... (k = {k}, approximate = {self.config.approximate})")
        with timing("neighbor_sets", self.timings):
            nsf = NeighborSetFinder(
                self.distance_matrix,
                labels=self.labels,
                points=self.points,
                metric=self.metric,
                n_threads=self.config.num_threads,
            )
            if self.config.approximate:
                nsf.calculate_approximate(k, self.config.alpha)
            else:
                nsf.calculate(k)
        self.nsf = nsf
        self.logger.info(f"neighbor sets done ... (occurrence skewness {nsf.skewness():.3f})")
        return nsf

    def prepare_folds(self):
        """
        Use the given folds, load them from the fold file, or generate (and store) new ones.
        """
        if self.fold_assignment is not None:
            return self.fold_assignment
        config = self.config
        if self.fold_file is not None and os.path.exists(self.fold_file):
            try:
                self.fold_assignment = load_folds(self.fold_file, self.dataset_name, config.num_times, config.num_folds)
                self.logger.info(f"Folds loaded from {self.fold_file}")
                return self.fold_assignment
            except ConfigurationError:
                self.logger.info(f"No stored folds for {self.dataset_name} in {self.fold_file}")
        generator = FoldGenerator(
            config.num_times, config.num_folds, max_retries=config.max_fold_retries,
            random_state=config.random_state,
        )
        self.fold_assignment = generator.generate(self.labels, self.dataset_name)
        if self.fold_file is not None:
            save_folds(self.fold_file, self.fold_assignment)
        return self.fold_assignment

    #
    # Fold preparation
    #

    def _discretize(self, train_indexes, test_indexes):
        if self.discretized_points is not None:
            discrete = np.asarray(self.discretized_points, dtype=np.int64)
            return discrete[train_indexes], discrete[test_indexes]
        numeric = self._numeric_points()
        if numeric is None:
            raise ConfigurationError("Discrete classifiers need numeric or pre-discretized points")
        discretizer = KBinsDiscretizer(
            n_bins=self.config.discretization_bins, encode="ordinal", strategy="uniform"
        )
        train = discretizer.fit_transform(numeric[train_indexes]).astype(np.int64)
        test = discretizer.transform(numeric[test_indexes]).astype(np.int64)
        return train, test

    def _prepare_fold(self, run, fold, train_indexes, test_indexes, seed):
        """
        Build the shared fold structures. Errors raised here are fatal for the run.
        """
        scoring_labels = self.labels if self.test_labels is None else self.test_labels
        data = FoldData(
            run=run,
            fold=fold,
            train_indexes=train_indexes,
            test_indexes=test_indexes,
            train_points=take(self.points, train_indexes),
            train_labels=self.labels[train_indexes],
            test_points=take(self.points, test_indexes),
            test_labels=scoring_labels[test_indexes],
        )
        if self._combined & Capability.DISCRETE:
            data.train_discrete, data.test_discrete = self._discretize(train_indexes, test_indexes)
        if not self._needs(DISTANCE_USERS | NEIGHBOR_USERS):
            return data
        k = min(self.config.largest_k, train_indexes.size - 1)
        data.train_distance_matrix = self.distance_matrix.submatrix(train_indexes)
        if self.config.secondary_distance is not None:
            self._apply_secondary(data, k)
        else:
            if self._combined & Capability.DISTANCE_QUERIES:
                data.test_distances = self.distance_matrix.cross(test_indexes, train_indexes)
            if self._needs(NEIGHBOR_USERS):
                data.train_nsf = self.nsf.restrict(train_indexes, k, distance_matrix=data.train_distance_matrix)
                data.test_neighbors = self.nsf.query_neighbors(test_indexes, train_indexes, k)[0]
        if self.reducer is not None:
            self._reduce(data, k, seed)
        return data

    def _apply_secondary(self, data, k):
        """
        Replace the primary fold distances by secondary ones, built on the training
        neighbor sets at secondary_k, and derive the fold neighbor sets from them.
        """
        config = self.config
        train_indexes = data.train_indexes
        secondary_k = min(config.secondary_k, train_indexes.size - 1)
        primary_nsf = self.nsf.restrict(train_indexes, secondary_k, distance_matrix=data.train_distance_matrix)
        primary_test = self.distance_matrix.cross(data.test_indexes, train_indexes)
        data.train_distance_matrix, data.test_distances = secondary_distances(
            config.secondary_distance, primary_nsf, primary_test, self.num_classes
        )
        if self._needs(NEIGHBOR_USERS):
            data.train_nsf = NeighborSetFinder(
                data.train_distance_matrix, labels=data.train_labels, points=data.train_points
            ).calculate(k)
            data.test_neighbors = nearest_columns(data.test_distances, k)[0]

    def _reduce(self, data, k, seed):
        """
        Replace the training data of a fold by the prototypes chosen by the reducer.
        """
        selector = self.reducer.copy()
        selector.hubness_mode = self.config.proto_hubness_mode
        if seed is not None:
            selector.random_state = seed
        selection = selector.reduce(data.train_labels, self.keep_ratio, nsf=data.train_nsf)
        selector.calculate_prototype_hubness(selection, data.train_nsf, k)
        prototypes = selection.prototypes
        proto_indexes = data.train_indexes[prototypes]
        proto_k = min(k, prototypes.size - 1)
        data.selection = selection
        data.train_points = take(data.train_points, prototypes)
        data.train_labels = data.train_labels[prototypes]
        if data.train_discrete is not None:
            data.train_discrete = data.train_discrete[prototypes]
        data.train_distance_matrix = data.train_distance_matrix.submatrix(prototypes)
        if data.test_distances is not None:
            data.test_distances = data.test_distances[:, prototypes]
        if self.config.secondary_distance is not None:
            data.train_nsf = data.train_nsf.restrict(prototypes, proto_k, distance_matrix=data.train_distance_matrix)
            data.test_neighbors = nearest_columns(data.test_distances, proto_k)[0]
        else:
            data.train_nsf = self.nsf.restrict(proto_indexes, proto_k, distance_matrix=data.train_distance_matrix)
            data.test_neighbors = self.nsf.query_neighbors(data.test_indexes, proto_indexes, proto_k)[0]

    #
    # Classifier tasks
    #

    def _train_and_test(self, index, data):
        """
        Train and test one classifier on one fold; runs on a worker thread and
        touches only its own classifier copy.
        """
        capabilities = self.capabilities[index]
        config = self.config
        elapsed = {}
        with timing("classifier", elapsed):
            classifier = self.classifiers[index].copy_configuration()
            discrete = Capability.DISCRETE in capabilities
            classifier.set_training_data(
                data.train_discrete if discrete else data.train_points, data.train_labels, self.num_classes
            )
            if Capability.DISTANCE_MATRIX in capabilities:
                classifier.set_distance_matrix(data.train_distance_matrix)
            if Capability.NEIGHBOR_SETS in capabilities:
                classifier.set_neighbor_set_finder(data.train_nsf)
            if Capability.AUTO_K in capabilities and config.k_mode == "interval":
                classifier.find_k(config.k_min, config.k_max)
            if (data.selection is not None and config.proto_hubness_mode == "unbiased"
                    and Capability.REDUCED_DATA_TRAINING in capabilities):
                classifier.train_on_reduced_data(data.selection)
            classifier.train()
            context = EvaluationContext(
                points=data.test_discrete if discrete else data.test_points,
                labels=data.test_labels,
                num_classes=self.num_classes,
                distances=data.test_distances,
                neighbors=data.test_neighbors,
            )
            estimator, fuzzy = evaluate_classifier(classifier, context, capabilities)
        return estimator, fuzzy, elapsed["classifier"]

    #
    # Main loop
    #

    def run(self):
        """
        Run the cross-validation.

        Returns
        -------
        CrossValidationResult

        Raises
        ------
        MetricComputationError, ConfigurationError, DegenerateDataError
            Distance, neighbor set and fold errors are fatal for the run.
        """
        if self.state is EngineState.RUNNING:
            raise ConfigurationError("Cross-validation is already running")
        self.state = EngineState.RUNNING
        config = self.config
        num_algs = len(self.classifiers)
        self.logger.info("run ...")
        self.logger.info(
            f"Dataset {self.dataset_name}: {self.n} points, {self.num_classes} classes, "
            f"{config.num_times}x{config.num_folds} folds, {num_algs} classifiers"
        )
        if config.secondary_distance is not None:
            self.logger.info(f"Secondary distance {config.secondary_distance} (k = {config.secondary_k})")
        try:
            with timing("total", self.timings):
                if self._needs(DISTANCE_USERS | NEIGHBOR_USERS):
                    self.prepare_distances()
                if self._needs(NEIGHBOR_USERS) or (
                        config.secondary_distance is not None and self._needs(DISTANCE_USERS)):
                    self.prepare_neighbor_sets()
                folds = self.prepare_folds()
                results = self._cross_validate(folds)
        except HubCVError as err:
            self.state = EngineState.INITIALIZED
            self.logger.error(f"Cross-validation of {self.dataset_name} aborted: {err}")
            raise
        except BaseException:
            self.state = EngineState.INITIALIZED
            raise
        self.state = EngineState.AGGREGATED
        self.logger.info("run done ...")
        return results

    def _run_classifiers(self, executor, data):
        """
        Train and test every classifier on one fold.

        A classifier's timeout counts from the moment its task starts running. A
        timed-out task keeps its worker thread, so the executor is abandoned and
        the tasks it has not started are resubmitted to a fresh one.

        Returns
        -------
        list, ThreadPoolExecutor
            One `(status, value)` pair per classifier in classifier order, where status is
            'done', 'failed' or 'timeout', and the executor to use for the next fold.
        """
        timeout = self.config.classifier_timeout
        num_algs = len(self.classifiers)
        started = [threading.Event() for _ in range(num_algs)]
        start_times = [None] * num_algs

        def task(index):
            start_times[index] = time.monotonic()
            started[index].set()
            return self._train_and_test(index, data)

        futures = [executor.submit(task, index) for index in range(num_algs)]
        outcomes = []
        for index in range(num_algs):
            future = futures[index]
            if timeout is not None:
                # Every earlier task is resolved, so this one is running or next in line
                started[index].wait()
                remaining = timeout - (time.monotonic() - start_times[index])
                done, _ = wait([future], timeout=max(remaining, 0.0))
                if not done:
                    outcomes.append(("timeout", TimeoutError(f"exceeded {timeout}s")))
                    executor.shutdown(wait=False, cancel_futures=True)
                    executor = ThreadPoolExecutor(max_workers=self.config.num_classifier_threads)
                    for later in range(index + 1, num_algs):
                        if futures[later].cancelled():
                            futures[later] = executor.submit(task, later)
                    continue
            try:
                outcomes.append(("done", future.result()))
            except Exception as err:
                outcomes.append(("failed", err))
        return outcomes, executor

    def _cross_validate(self, folds):
        config = self.config
        num_algs = len(self.classifiers)
        num_slots = folds.num_times * folds.num_folds
        estimators = [[None] * num_slots for _ in range(num_algs)]
        failures = [[] for _ in range(num_algs)]
        fuzzy_sums = np.zeros((num_algs, self.n, self.num_classes))
        tested = np.zeros((num_algs, self.n))
        correct = np.zeros((num_algs, self.n))
        exec_time = np.zeros(num_algs)
        seeds = np.random.default_rng(config.random_state).integers(0, 2 ** 31, size=num_slots) \
            if config.random_state is not None else [None] * num_slots
        #
        executor = ThreadPoolExecutor(max_workers=config.num_classifier_threads)
        try:
            progress = tqdm(folds, total=len(folds), desc="folds", disable=not self.verbose)
            for run, fold, train_indexes, test_indexes in progress:
                slot = run * folds.num_folds + fold
                data = self._prepare_fold(run, fold, train_indexes, test_indexes, seeds[slot])
                outcomes, executor = self._run_classifiers(executor, data)
                # Merge in classifier order once every task of the fold is resolved
                for index, (status, value) in enumerate(outcomes):
                    name = _name_of(self.classifiers[index])
                    if status == "timeout":
                        failure = ClassifierFailure(name, run, fold, value)
                        failures[index].append(failure)
                        self.logger.warning(f"{failure} (timed out after {config.classifier_timeout}s)")
                        continue
                    if status == "failed":
                        failure = ClassifierFailure(name, run, fold, value)
                        failures[index].append(failure)
                        self.logger.opt(exception=value).warning(str(failure))
                        continue
                    estimator, fuzzy, elapsed = value
                    estimators[index][slot] = estimator
                    fuzzy_sums[index, test_indexes] += fuzzy
                    tested[index, test_indexes] += 1.0
                    correct[index, test_indexes] += np.argmax(fuzzy, axis=1) == data.test_labels
                    exec_time[index] += elapsed
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        #
        results = []
        with np.errstate(invalid="ignore", divide="ignore"):
            for index, classifier in enumerate(self.classifiers):
                average = ClassificationEstimator.average(estimators[index])
                results.append(ClassifierResult(
                    name=_name_of(classifier),
                    capabilities=self.capabilities[index],
                    estimators=estimators[index],
                    failures=failures[index],
                    average_estimator=average,
                    fuzzy_predictions=np.where(
                        tested[index][:, np.newaxis] > 0,
                        fuzzy_sums[index] / tested[index][:, np.newaxis],
                        np.nan,
                    ),
                    per_point_accuracy=np.where(tested[index] > 0, correct[index] / tested[index], np.nan),
                    execution_time=float(exec_time[index]),
                ))
                if average is not None:
                    self.logger.info(
                        f"{results[-1].name}: accuracy {average.accuracy:.4f}, "
                        f"macro F1 {average.macro_f:.4f}, missing folds {len(failures[index])}"
                    )
                else:
                    self.logger.info(f"{results[-1].name}: no completed folds")
        return CrossValidationResult(
            dataset_name=self.dataset_name,
            classifiers=results,
            folds=folds,
            nsf_k=None if self.nsf is None else self.nsf.k,
            timings=dict(self.timings),
            keep_all_evaluations=config.keep_all_evaluations,
        )
