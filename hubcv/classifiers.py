# classifiers.py

"""
Classifiers evaluated by the cross-validation engine, and their capabilities.

The engine does not check classifier types. Every classifier carries a
`Capability` set, detected once when it is registered, which tells the engine
whether to hand it the training distance matrix, the training neighbor sets,
test-to-training distances and neighbors, discretized data, an automatic k
search, or the statistics of a reduced training set.
"""

#
# Imports
#

import copy
import enum
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np
from sklearn.base import clone

from .errors import ConfigurationError
from .estimator import ClassificationEstimator
from .knn_search import top_k
from .metrics import get_metric
from .neighbors import NeighborSetFinder


class Capability(enum.Flag):
    """
    What a classifier consumes beyond its training points and labels.
    """

    NONE = 0
    DISTANCE_MATRIX = enum.auto()
    """ Receives the training distance matrix through `set_distance_matrix` """
    NEIGHBOR_SETS = enum.auto()
    """ Receives the training neighbor sets through `set_neighbor_set_finder` """
    DISTANCE_QUERIES = enum.auto()
    """ Classifies test points from their distances to the training points """
    NEIGHBOR_QUERIES = enum.auto()
    """ Classifies test points from their nearest training neighbors """
    DISCRETE = enum.auto()
    """ Trains and classifies on discretized data """
    AUTO_K = enum.auto()
    """ Chooses its neighborhood size with `find_k` """
    REDUCED_DATA_TRAINING = enum.auto()
    """ Trains from the prototype hubness of a reduced training set """


def detect_capabilities(classifier):
    """
    The capability set of a classifier.

    The `capabilities` attribute is used when present; otherwise the capabilities
    are inferred from the optional methods the object provides.
    """
    declared = getattr(classifier, "capabilities", None)
    if isinstance(declared, Capability):
        return declared
    found = Capability.NONE
    if hasattr(classifier, "set_distance_matrix"):
        found |= Capability.DISTANCE_MATRIX | Capability.DISTANCE_QUERIES
    if hasattr(classifier, "set_neighbor_set_finder"):
        found |= Capability.NEIGHBOR_SETS | Capability.NEIGHBOR_QUERIES
    if getattr(classifier, "discrete", False):
        found |= Capability.DISCRETE
    if hasattr(classifier, "find_k"):
        found |= Capability.AUTO_K
    if hasattr(classifier, "train_on_reduced_data"):
        found |= Capability.REDUCED_DATA_TRAINING
    return found


#
# Base class
#
class Classifier:
    """
    Base class of classifiers.

    A classifier is configured at construction, copied once per fold with
    `copy_configuration`, given its training data, trained and then queried.
    """

    capabilities = Capability.NONE
    training_state = ("points", "labels", "num_classes")
    """ Attributes cleared when copying the configuration """

    def __init__(self, name=None):
        self.name = name or type(self).__name__
        self.points = None
        self.labels = None
        self.num_classes = None

    def copy_configuration(self):
        """ An untrained copy carrying the same parameters """
        clean = copy.copy(self)
        for attribute in self.training_state:
            setattr(clean, attribute, None)
        return copy.deepcopy(clean)

    def set_training_data(self, points, labels, num_classes):
        self.points = points
        self.labels = np.asarray(labels, dtype=np.int64)
        self.num_classes = num_classes

    def train(self):
        raise NotImplementedError

    def classify_probabilistically(self, point, distances=None, neighbors=None):
        """
        Class membership probabilities of one point.

        Parameters
        ----------
        point: The test point.
        distances: (numpy.ndarray or `None`) Distances from the point to every training point.
        neighbors: (numpy.ndarray or `None`) Training positions of its nearest neighbors, sorted.

        Returns
        -------
        numpy.ndarray of length `num_classes`.
        """
        raise NotImplementedError

    def classify(self, point, distances=None, neighbors=None):
        return int(np.argmax(self.classify_probabilistically(point, distances, neighbors)))

    def classify_batch(self, points, distances=None, neighbors=None):
        """
        Probabilities for a batch of test points, shape (len(points), num_classes).
        """
        if len(points) == 0:
            return np.zeros((0, self.num_classes))
        return np.vstack([
            self.classify_probabilistically(
                points[q],
                None if distances is None else distances[q],
                None if neighbors is None else neighbors[q],
            )
            for q in range(len(points))
        ])

    def _class_shares(self):
        counts = np.bincount(self.labels, minlength=self.num_classes).astype(np.float64)
        return counts / max(counts.sum(), 1.0)

    def __repr__(self):
        return self.name


#
# Neighbor-based classifiers
#
class KNN(Classifier):
    """
    Majority vote of the k nearest training neighbors.

    Parameters
    ----------
    k: (int) Neighborhood size, default 5.
    metric: (str, DistanceMetric, callable or `None`) Used only when the engine
        provides neither distances nor neighbors for a query.
    """

    capabilities = (Capability.DISTANCE_MATRIX | Capability.NEIGHBOR_SETS
                    | Capability.DISTANCE_QUERIES | Capability.NEIGHBOR_QUERIES | Capability.AUTO_K)
    training_state = Classifier.training_state + ("distance_matrix", "nsf")

    def __init__(self, k=5, metric=None, name=None):
        super().__init__(name or f"KNN(k={k})")
        if k < 1:
            raise ConfigurationError(f"k must be positive, got {k}")
        self.k = k
        self.metric = metric
        self.distance_matrix = None
        self.nsf = None

    def set_distance_matrix(self, distance_matrix):
        self.distance_matrix = distance_matrix

    def set_neighbor_set_finder(self, nsf):
        self.nsf = nsf

    def train(self):
        if self.k > len(self.labels):
            raise ConfigurationError(f"k={self.k} exceeds the {len(self.labels)} training points")

    def _training_neighbors(self, k_max):
        if self.nsf is None or self.nsf.k is None or self.nsf.k < k_max:
            nsf = NeighborSetFinder(self.distance_matrix, labels=self.labels, points=self.points, metric=self.metric)
            self.nsf = nsf.calculate(k_max)
        return self.nsf.kneighbors

    def find_k(self, k_min, k_max):
        """
        Set k to the value in [k_min, k_max] with the best leave-one-out accuracy
        on the training data; the smallest such k on ties.
        """
        k_max = min(k_max, len(self.labels) - 1)
        k_min = min(k_min, k_max)
        kneighbors = self._training_neighbors(k_max)
        neighbor_labels = self.labels[kneighbors]
        best_k, best_correct = k_min, -1
        for k in range(k_min, k_max + 1):
            votes = np.zeros((len(self.labels), self.num_classes))
            for column in range(k):
                votes[np.arange(len(self.labels)), neighbor_labels[:, column]] += 1.0
            correct = np.count_nonzero(np.argmax(votes, axis=1) == self.labels)
            if correct > best_correct:
                best_k, best_correct = k, correct
        self.k = best_k
        return best_k

    def _neighbors_of(self, point, distances, neighbors):
        if neighbors is not None and len(neighbors) >= self.k:
            return neighbors[:self.k]
        if distances is None:
            metric = get_metric(self.metric)
            distances = metric.pairwise(np.atleast_2d(point), self.points)[0]
        return top_k(np.asarray(distances, dtype=np.float64), np.arange(len(distances)), self.k)

    def _votes(self, chosen):
        return np.bincount(self.labels[chosen], minlength=self.num_classes).astype(np.float64)

    def classify_probabilistically(self, point, distances=None, neighbors=None):
        votes = self._votes(self._neighbors_of(point, distances, neighbors))
        return votes / votes.sum()


class HwKNN(KNN):
    """
    Hubness-weighted kNN: each neighbor votes with weight exp(-h_b), where h_b is
    its standardized bad occurrence frequency on the training data.
    """

    capabilities = (Capability.DISTANCE_MATRIX | Capability.NEIGHBOR_SETS | Capability.DISTANCE_QUERIES
                    | Capability.NEIGHBOR_QUERIES | Capability.REDUCED_DATA_TRAINING)
    training_state = KNN.training_state + ("weights",)

    def __init__(self, k=5, metric=None, name=None):
        super().__init__(k, metric, name or f"HwKNN(k={k})")
        self.weights = None

    def train(self):
        super().train()
        if self.weights is not None:
            return
        if self.nsf is None or self.nsf.k is None or self.nsf.k < self.k:
            self._training_neighbors(self.k)
        nsf = self.nsf.subset_for(self.k) if self.nsf.k > self.k else self.nsf
        if nsf.labels is None:
            nsf = nsf.recompute_for_labels(self.labels)
        self.weights = nsf.hwknn_weights()

    def train_on_reduced_data(self, selection):
        """
        Take the vote weights from the bad occurrences of the prototypes.
        """
        bad = np.asarray(selection.bad_frequencies, dtype=np.float64)
        std = bad.std()
        self.weights = np.ones(bad.size) if std == 0 else np.exp(-(bad - bad.mean()) / std)

    def _votes(self, chosen):
        return np.bincount(self.labels[chosen], weights=self.weights[chosen], minlength=self.num_classes)


#
# Baselines and non-metric classifiers
#
class ZeroRule(Classifier):
    """
    Predicts the training class distribution for every point.
    """

    def train(self):
        self.shares = self._class_shares()

    def classify_probabilistically(self, point, distances=None, neighbors=None):
        return self.shares.copy()


class DiscreteNaiveBayes(Classifier):
    """
    Naive Bayes over discretized (integer coded) features with Laplace smoothing.

    Parameters
    ----------
    laplace: (float) Additive smoothing of the value counts, default 1.
    """

    capabilities = Capability.DISCRETE

    def __init__(self, laplace=1.0, name=None):
        super().__init__(name)
        self.laplace = laplace

    def train(self):
        points = np.asarray(self.points, dtype=np.int64)
        self.num_values = points.max(axis=0) + 1
        class_counts = np.bincount(self.labels, minlength=self.num_classes).astype(np.float64)
        self.log_priors = np.log((class_counts + self.laplace)
                                 / (class_counts.sum() + self.laplace * self.num_classes))
        self.log_likelihoods = []
        for feature, size in enumerate(self.num_values):
            counts = np.zeros((self.num_classes, size))
            np.add.at(counts, (self.labels, points[:, feature]), 1.0)
            smoothed = counts + self.laplace
            self.log_likelihoods.append(np.log(smoothed / smoothed.sum(axis=1, keepdims=True)))
        self._log_unseen = np.log(self.laplace / (class_counts[:, np.newaxis]
                                                  + self.laplace * self.num_values[np.newaxis, :]))

    def classify_probabilistically(self, point, distances=None, neighbors=None):
        scores = self.log_priors.copy()
        for feature, value in enumerate(np.asarray(point, dtype=np.int64)):
            if 0 <= value < self.num_values[feature]:
                scores += self.log_likelihoods[feature][:, value]
            else:
                scores += self._log_unseen[:, feature]
        scores = np.exp(scores - scores.max())
        return scores / scores.sum()


class SklearnClassifier(Classifier):
    """
    Adapter for scikit-learn estimators providing `predict_proba`.

    Parameters
    ----------
    estimator: (sklearn.base.ClassifierMixin) An unfitted estimator; cloned for every fold.
    """

    def __init__(self, estimator, name=None):
        super().__init__(name or type(estimator).__name__)
        self.estimator = estimator
        self.model = None

    def copy_configuration(self):
        return SklearnClassifier(clone(self.estimator), self.name)

    def train(self):
        self.model = clone(self.estimator).fit(np.asarray(self.points), self.labels)

    def classify_batch(self, points, distances=None, neighbors=None):
        probabilities = np.zeros((len(points), self.num_classes))
        if len(points):
            probabilities[:, self.model.classes_] = self.model.predict_proba(np.asarray(points))
        return probabilities

    def classify_probabilistically(self, point, distances=None, neighbors=None):
        return self.classify_batch(np.atleast_2d(point))[0]


#
# Evaluation
#
@dataclass
class EvaluationContext:
    """
    What one classifier is evaluated on in one fold.

    Attributes
    ----------
    points: Test points, in the representation the classifier trains on.
    labels: Labels the predictions are scored against, either derived from the
        data or supplied externally.
    num_classes: Number of classes.
    distances: (len(points), n_train) test-to-training distances, or `None`.
    neighbors: (len(points), k) sorted training positions of the test neighbors, or `None`.
    """

    points: Any
    labels: np.ndarray
    num_classes: int
    distances: Optional[np.ndarray] = None
    neighbors: Optional[np.ndarray] = None


def evaluate_classifier(classifier, context, capabilities=None):
    """
    Classify the test points of a context and score the predictions.

    Distances and neighbors are passed on only to classifiers with the matching
    query capability.

    Returns
    -------
    ClassificationEstimator, numpy.ndarray
        The estimator and the (len(points), num_classes) fuzzy predictions.
    """
    if capabilities is None:
        capabilities = detect_capabilities(classifier)
    distances = context.distances if Capability.DISTANCE_QUERIES in capabilities else None
    neighbors = context.neighbors if Capability.NEIGHBOR_QUERIES in capabilities else None
    fuzzy = np.asarray(classifier.classify_batch(context.points, distances, neighbors), dtype=np.float64)
    predicted = np.argmax(fuzzy, axis=1) if len(fuzzy) else np.empty(0, dtype=np.int64)
    estimator = ClassificationEstimator.from_predictions(predicted, context.labels, context.num_classes)
    return estimator, fuzzy
