# folds.py

"""
Stratified fold assignments for repeated cross-validation, and their persistence.
"""

#
# Imports
#

import json
import os
import warnings

import numpy as np
from loguru import logger
from sklearn.model_selection import StratifiedKFold

from .config import MAX_FOLD_RETRIES
from .errors import ConfigurationError, DegenerateDataError


#
# Fold assignment
#
class FoldAssignment:
    """
    Train / test partitions of the labeled points for every (run, fold).

    Parameters
    ----------
    dataset_name: (str) Name the assignment is persisted under.
    num_times: (int) Number of repetitions.
    num_folds: (int) Number of folds per repetition.
    test_folds: (list of list of array-like) `test_folds[run][fold]` holds the test indexes.
    indexes: (array-like or `None`) All partitioned point indexes; the union of a run's test folds if `None`.

    Attributes
    ----------
    indexes: numpy.ndarray
        Sorted indexes of all partitioned (labeled) points.
    """

    def __init__(self, dataset_name, num_times, num_folds, test_folds, indexes=None):
        if len(test_folds) != num_times or any(len(run) != num_folds for run in test_folds):
            raise ConfigurationError(
                f"Fold structure does not match {num_times} runs of {num_folds} folds"
            )
        self.dataset_name = dataset_name
        self.num_times = num_times
        self.num_folds = num_folds
        self._test = [
            [np.sort(np.asarray(fold, dtype=np.int64)) for fold in run] for run in test_folds
        ]
        if indexes is None:
            indexes = np.concatenate(self._test[0]) if num_folds else np.empty(0, dtype=np.int64)
        self.indexes = np.unique(np.asarray(indexes, dtype=np.int64))
        for run in range(num_times):
            union = np.concatenate(self._test[run])
            if union.size != self.indexes.size or not np.array_equal(np.sort(union), self.indexes):
                raise ConfigurationError(f"Test folds of run {run} do not partition the indexes")

    def test(self, run, fold):
        """ Sorted test indexes of a fold """
        return self._test[run][fold]

    def train(self, run, fold):
        """ Sorted training indexes of a fold: every partitioned point outside its test set """
        return np.setdiff1d(self.indexes, self._test[run][fold], assume_unique=True)

    def __iter__(self):
        for run in range(self.num_times):
            for fold in range(self.num_folds):
                yield run, fold, self.train(run, fold), self.test(run, fold)

    def __len__(self):
        return self.num_times * self.num_folds

    def __eq__(self, other):
        if not isinstance(other, FoldAssignment):
            return NotImplemented
        return (
            self.num_times == other.num_times
            and self.num_folds == other.num_folds
            and np.array_equal(self.indexes, other.indexes)
            and all(
                np.array_equal(self.test(run, fold), other.test(run, fold))
                for run in range(self.num_times)
                for fold in range(self.num_folds)
            )
        )

    @property
    def key(self):
        return f"{self.num_times}x{self.num_folds}"

    def to_dict(self):
        return {
            "num_times": self.num_times,
            "num_folds": self.num_folds,
            "runs": [
                [
                    {"train": self.train(run, fold).tolist(), "test": self.test(run, fold).tolist()}
                    for fold in range(self.num_folds)
                ]
                for run in range(self.num_times)
            ],
        }

    @classmethod
    def from_dict(cls, dataset_name, payload):
        runs = payload["runs"]
        test_folds = [[fold["test"] for fold in run] for run in runs]
        indexes = np.union1d(runs[0][0]["train"], runs[0][0]["test"]) if runs and runs[0] else None
        assignment = cls(dataset_name, payload["num_times"], payload["num_folds"], test_folds, indexes)
        for run, folds in enumerate(runs):
            for fold, entry in enumerate(folds):
                if not np.array_equal(np.sort(entry["train"]), assignment.train(run, fold)):
                    raise ConfigurationError(
                        f"Stored training indexes of run {run}, fold {fold} are inconsistent"
                    )
        return assignment

    def __repr__(self):
        return f"FoldAssignment({self.dataset_name!r}, {self.key}, {self.indexes.size} points)"


#
# Fold generation
#
class FoldGenerator:
    """
    Stratified fold generation over repeated runs.

    Every run draws a fresh seed and splits the labeled points with scikit-learn's
    `StratifiedKFold`. A run whose folds leave some class out of a training or a
    test part is rejected and redrawn, up to `max_retries` times; this happens when
    a class has fewer members than there are folds.

    Parameters
    ----------
    num_times: (int) Number of repetitions.
    num_folds: (int) Number of folds per repetition, at least 2.
    max_retries: (int) Number of resampling attempts before giving up.
    random_state: (int, numpy.random.Generator or `None`) Seed of the shuffles.
    """

    def __init__(self, num_times, num_folds, max_retries=MAX_FOLD_RETRIES, random_state=None):
        if num_times < 1:
            raise ConfigurationError(f"num_times must be positive, got {num_times}")
        if num_folds < 2:
            raise ConfigurationError(f"num_folds must be at least 2, got {num_folds}")
        if max_retries < 1:
            raise ConfigurationError("max_retries must be positive")
        self.num_times = num_times
        self.num_folds = num_folds
        self.max_retries = max_retries
        self.rng = np.random.default_rng(random_state)

    def generate(self, labels, dataset_name="dataset"):
        """
        Generate the folds of every run for the labeled points.

        Parameters
        ----------
        labels: (array-like of int) Class labels; points with negative labels are left out.
        dataset_name: (str) Name stored with the assignment.

        Returns
        -------
        FoldAssignment

        Raises
        ------
        DegenerateDataError
            If no assignment covering every class is found within `max_retries`
            attempts for a run.
        """
        labels = np.asarray(labels, dtype=np.int64)
        labeled = np.flatnonzero(labels >= 0)
        if labeled.size < self.num_folds:
            raise ConfigurationError(
                f"{labeled.size} labeled points cannot be split into {self.num_folds} folds"
            )
        classes = np.unique(labels[labeled])
        #
        test_folds = []
        for run in range(self.num_times):
            for attempt in range(self.max_retries):
                folds = self._split(labels[labeled], labeled)
                if folds is not None and self._covers_classes(folds, labels, classes, labeled):
                    break
                logger.debug(f"Fold assignment of run {run} rejected on attempt {attempt}")
            else:
                raise DegenerateDataError(
                    f"No stratified assignment found for run {run} after {self.max_retries} attempts"
                )
            test_folds.append(folds)
        return FoldAssignment(dataset_name, self.num_times, self.num_folds, test_folds, labeled)

    def _split(self, y, labeled):
        splitter = StratifiedKFold(
            n_splits=self.num_folds, shuffle=True, random_state=int(self.rng.integers(2 ** 31))
        )
        with warnings.catch_warnings():
            # Classes smaller than num_folds are caught by the coverage check
            warnings.simplefilter("ignore", UserWarning)
            try:
                return [labeled[test] for _, test in splitter.split(np.zeros((y.size, 1)), y)]
            except ValueError:
                return None

    def _covers_classes(self, folds, labels, classes, labeled):
        for test in folds:
            train = np.setdiff1d(labeled, test, assume_unique=True)
            if not (np.array_equal(np.unique(labels[test]), classes)
                    and np.array_equal(np.unique(labels[train]), classes)):
                return False
        return True


#
# Persistence
#
def save_folds(path, assignment):
    """
    Store an assignment in a JSON fold file, keyed by dataset name and "<times>x<folds>".

    Entries for other datasets or other fold configurations already in the file are kept.
    """
    document = {"datasets": {}}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as stream:
            document = json.load(stream)
    document.setdefault("datasets", {}).setdefault(assignment.dataset_name, {})[assignment.key] = \
        assignment.to_dict()
    with open(path, "w", encoding="utf-8") as stream:
        json.dump(document, stream)


def load_folds(path, dataset_name, num_times, num_folds):
    """
    Load the assignment stored for a dataset and fold configuration.

    Raises
    ------
    ConfigurationError
        If the file holds no such assignment.
    """
    with open(path, "r", encoding="utf-8") as stream:
        document = json.load(stream)
    key = f"{num_times}x{num_folds}"
    try:
        payload = document["datasets"][dataset_name][key]
    except KeyError:
        raise ConfigurationError(f"No {key} folds stored for dataset {dataset_name!r} in {path}") from None
    return FoldAssignment.from_dict(dataset_name, payload)
