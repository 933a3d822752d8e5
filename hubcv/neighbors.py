# neighbors.py

"""
Neighbor sets and neighbor occurrence (hubness) statistics.

A `NeighborSetFinder` holds, for a fixed k, the k nearest neighbors of every
point sorted by increasing distance (ties broken by the lower index), and the
number of times each point occurs in the neighbor sets of other points. The
occurrences are split into good and bad ones depending on whether the
referencing point shares the class label of the referenced one.
"""

#
# Imports
#

import threading

import numpy as np
from loguru import logger

from .distance_matrix import DistanceMatrix
from .errors import ConfigurationError
from .hubness_utils import occurrence_skewness
from .knn_search import ExactNeighborSearch, LanczosBisectionSearch, top_k


def take(points, indexes):
    """ Rows of a point set; lists of arbitrary objects are supported """
    if points is None:
        return None
    if isinstance(points, np.ndarray):
        return points[indexes]
    return [points[i] for i in indexes]


#
# Neighbor set finder
#
class NeighborSetFinder:
    """
    k-nearest neighbor sets of a point set together with their occurrence statistics.

    The finder is immutable once `calculate` returns: derived views such as
    `subset_for`, `recompute_for_labels` and `restrict` are new objects, and the
    lazily computed caches are filled under a lock, so that one finder can be
    read by many classifier threads.

    Parameters
    ----------
    distance_matrix: (DistanceMatrix or `None`) Distances between the points;
        computed on first use from `points` and `metric` when omitted.
    labels: (array-like of int or `None`) Class label per point, negative for unlabeled points.
    points: (array-like or `None`) The point coordinates.
    metric: (str, DistanceMetric, callable or `None`) Metric used to compute missing distances.
    n_threads: (int) Worker threads for distance and neighbor computation.
    search: (NeighborSearch or `None`) Neighbor search strategy, exact by default.

    Attributes
    ----------
    k: int or `None`
        Neighborhood size of the current neighbor sets.
    kneighbors: numpy.ndarray
        (n, k) neighbor indexes, sorted by increasing distance.
    kdistances: numpy.ndarray
        (n, k) distances to the neighbors in `kneighbors`.
    occurrence_frequencies: numpy.ndarray
        Number of neighbor sets each point occurs in.
    """

    def __init__(
        self,
        distance_matrix=None,
        labels=None,
        points=None,
        metric=None,
        n_threads=1,
        search=None,
    ):
        if distance_matrix is None and points is None:
            raise ConfigurationError("A distance matrix or a point set is required")
        self._distance_matrix = distance_matrix
        self.points = points
        self.metric = metric
        self.n_threads = n_threads
        self.search = search
        self.n = distance_matrix.n if distance_matrix is not None else len(points)
        if points is not None and len(points) != self.n:
            raise ConfigurationError(
                f"{len(points)} points do not match a distance matrix over {self.n} points"
            )
        self.labels = self._check_labels(labels)
        #
        self.k = None
        self.kneighbors = None
        self.kdistances = None
        self.occurrence_frequencies = None
        self._good = None
        self._bad = None
        self._reverse = None
        self._lock = threading.Lock()

    @classmethod
    def from_points(cls, points, labels=None, metric=None, n_threads=1):
        """ A finder whose distance matrix is computed lazily from the points """
        return cls(None, labels=labels, points=points, metric=metric, n_threads=n_threads)

    def _check_labels(self, labels):
        if labels is None:
            return None
        labels = np.asarray(labels, dtype=np.int64)
        if labels.shape != (self.n,):
            raise ConfigurationError(
                f"Expected {self.n} labels, got an array of shape {labels.shape}"
            )
        return labels

    @property
    def distance_matrix(self):
        """ The distance matrix, computed on first access if needed """
        if self._distance_matrix is None:
            with self._lock:
                if self._distance_matrix is None:
                    self._distance_matrix = DistanceMatrix.compute(
                        self.points, self.metric, n_threads=self.n_threads
                    )
        return self._distance_matrix

    @property
    def num_classes(self):
        if self.labels is None or not np.any(self.labels >= 0):
            return 0
        return int(self.labels.max()) + 1

    def _view(self, labels=None):
        """ A new finder over the same points and distances """
        return NeighborSetFinder(
            self._distance_matrix,
            labels=labels,
            points=self.points,
            metric=self.metric,
            n_threads=self.n_threads,
            search=self.search,
        )

    def _require_neighbors(self):
        if self.kneighbors is None:
            raise ConfigurationError("Neighbor sets have not been calculated")

    #
    # Computing neighbor sets
    #

    def calculate(self, k):
        """
        Compute the k-nearest neighbor sets and occurrence frequencies.

        Parameters
        ----------
        k: (int) Neighborhood size, 1 <= k < n.

        Returns
        -------
        self
        """
        if not 1 <= k < self.n:
            raise ConfigurationError(f"k must lie in [1, {self.n - 1}] for {self.n} points, got {k}")
        search = self.search if self.search is not None else ExactNeighborSearch(self.n_threads)
        distance_matrix = self.distance_matrix if search.needs_distance_matrix else self._distance_matrix
        logger.debug(f"Neighbor sets for k={k} over {self.n} points with {type(search).__name__}")
        kneighbors, kdistances = search.search(
            k, distance_matrix=distance_matrix, points=self.points, metric=self.metric
        )
        self._set_neighbors(kneighbors, kdistances)
        return self

    def calculate_approximate(self, k, alpha, division_threshold=None):
        """
        Compute neighbor sets with the Lanczos bisection search of quality `alpha`.
        """
        self.search = LanczosBisectionSearch(
            alpha, division_threshold=division_threshold, n_threads=self.n_threads
        )
        return self.calculate(k)

    def _set_neighbors(self, kneighbors, kdistances):
        kneighbors = np.asarray(kneighbors, dtype=np.int64)
        kdistances = np.asarray(kdistances, dtype=np.float64)
        self.k = kneighbors.shape[1]
        self.kneighbors = kneighbors
        self.kdistances = kdistances
        self.occurrence_frequencies = np.bincount(kneighbors.ravel(), minlength=self.n)
        self._good = None
        self._bad = None
        self._reverse = None

    def subset_for(self, k_small):
        """
        Neighbor sets for a smaller neighborhood, by truncating the sorted lists.

        Parameters
        ----------
        k_small: (int) New neighborhood size, 1 <= k_small <= k.

        Returns
        -------
        NeighborSetFinder identical to a fresh `calculate(k_small)` on the same distances.
        """
        self._require_neighbors()
        if not 1 <= k_small <= self.k:
            raise ConfigurationError(
                f"Cannot derive neighbor sets for k={k_small} from k={self.k}"
            )
        view = self._view(self.labels)
        view._set_neighbors(
            self.kneighbors[:, :k_small].copy(), self.kdistances[:, :k_small].copy()
        )
        return view

    def recompute_for_labels(self, labels):
        """
        A view sharing the neighbor lists, with good and bad occurrences computed for new labels.
        """
        self._require_neighbors()
        view = self._view(labels)
        view.k = self.k
        view.kneighbors = self.kneighbors
        view.kdistances = self.kdistances
        view.occurrence_frequencies = self.occurrence_frequencies
        return view

    #
    # Fold-local views
    #

    def _positions_of(self, indexes):
        indexes = np.asarray(indexes, dtype=np.int64)
        if indexes.size and (np.any(np.diff(indexes) <= 0) or indexes[0] < 0 or indexes[-1] >= self.n):
            raise ConfigurationError("Index subsets must be strictly increasing and in range")
        positions = np.full(self.n, -1, dtype=np.int64)
        positions[indexes] = np.arange(indexes.size)
        return indexes, positions

    def _neighbors_among(self, point, positions, subset, k, exclude=-1):
        """
        The k nearest members of `subset` to a point, as subset positions.

        Uses the stored sorted list filtered to the subset, falling back to the
        distance matrix row when fewer than k members survive the filtering.
        """
        if self.kneighbors is not None:
            mapped = positions[self.kneighbors[point]]
            keep = mapped >= 0
            if np.count_nonzero(keep) >= k:
                chosen = np.flatnonzero(keep)[:k]
                return mapped[chosen], self.kdistances[point, chosen]
        row = self.distance_matrix.row(point)[subset]
        if exclude >= 0:
            row[exclude] = np.inf
        best = top_k(row, subset, k)
        return best, row[best]

    def restrict(self, indexes, k, distance_matrix=None):
        """
        Neighbor sets of the sub-dataset given by `indexes`, at neighborhood size k.

        The neighbor lists of the full set are reused after removing points outside
        the subset; points left with fewer than k neighbors get exact lists from the
        distance matrix. Neighbor positions refer to the subset.

        Parameters
        ----------
        indexes: (array-like of int) Strictly increasing point indexes.
        k: (int) Neighborhood size, 1 <= k < len(indexes).
        distance_matrix: (DistanceMatrix or `None`) The subset distance matrix, if already sliced.

        Returns
        -------
        NeighborSetFinder over len(indexes) points.
        """
        indexes, positions = self._positions_of(indexes)
        m = indexes.size
        if not 1 <= k < m:
            raise ConfigurationError(f"k must lie in [1, {m - 1}] for {m} points, got {k}")
        if distance_matrix is None:
            distance_matrix = self.distance_matrix.submatrix(indexes)
        kneighbors = np.empty((m, k), dtype=np.int64)
        kdistances = np.empty((m, k), dtype=np.float64)
        for p, point in enumerate(indexes):
            kneighbors[p], kdistances[p] = self._neighbors_among(point, positions, indexes, k, exclude=p)
        restricted = NeighborSetFinder(
            distance_matrix,
            labels=self.labels[indexes] if self.labels is not None else None,
            points=take(self.points, indexes),
            metric=self.metric,
            n_threads=self.n_threads,
        )
        restricted._set_neighbors(kneighbors, kdistances)
        return restricted

    def query_neighbors(self, queries, indexes, k):
        """
        Nearest neighbors of query points among the subset `indexes`.

        Parameters
        ----------
        queries: (array-like of int) Query point indexes, disjoint from `indexes`.
        indexes: (array-like of int) Strictly increasing indexes of the searched subset.
        k: (int) Number of neighbors, at most len(indexes).

        Returns
        -------
        numpy.ndarray, numpy.ndarray
            (len(queries), k) neighbor positions within the subset and their distances.
        """
        indexes, positions = self._positions_of(indexes)
        if not 1 <= k <= indexes.size:
            raise ConfigurationError(f"k must lie in [1, {indexes.size}], got {k}")
        queries = np.asarray(queries, dtype=np.int64)
        kneighbors = np.empty((queries.size, k), dtype=np.int64)
        kdistances = np.empty((queries.size, k), dtype=np.float64)
        for q, point in enumerate(queries):
            kneighbors[q], kdistances[q] = self._neighbors_among(
                point, positions, indexes, k, exclude=positions[point]
            )
        return kneighbors, kdistances

    #
    # Occurrence statistics
    #

    def _labels_required(self):
        if self.labels is None:
            raise ConfigurationError("Good and bad occurrences require class labels")

    def _split_occurrences(self):
        self._require_neighbors()
        self._labels_required()
        with self._lock:
            if self._good is None:
                targets = self.kneighbors.ravel()
                source_labels = np.repeat(self.labels, self.k)
                target_labels = self.labels[targets]
                labeled = (source_labels >= 0) & (target_labels >= 0)
                same = source_labels == target_labels
                self._bad = np.bincount(targets[labeled & ~same], minlength=self.n)
                self._good = np.bincount(targets[labeled & same], minlength=self.n)

    @property
    def good_frequencies(self):
        """ Occurrences in neighbor sets of points with the same label """
        if self._good is None:
            self._split_occurrences()
        return self._good

    @property
    def bad_frequencies(self):
        """ Occurrences in neighbor sets of points with a different label """
        if self._bad is None:
            self._split_occurrences()
        return self._bad

    def reverse_neighbors(self):
        """
        For every point, the sorted indexes of the points whose neighbor sets contain it.

        Returns
        -------
        list of numpy.ndarray
        """
        self._require_neighbors()
        with self._lock:
            if self._reverse is None:
                targets = self.kneighbors.ravel()
                sources = np.repeat(np.arange(self.n, dtype=np.int64), self.k)
                order = np.argsort(targets, kind="stable")
                bounds = np.cumsum(self.occurrence_frequencies)[:-1]
                self._reverse = np.split(sources[order], bounds)
        return self._reverse

    def occurrence_stats(self):
        """ Mean and standard deviation of the occurrence frequencies """
        self._require_neighbors()
        return float(self.occurrence_frequencies.mean()), float(self.occurrence_frequencies.std())

    def skewness(self):
        """ Skewness of the occurrence frequencies, the usual measure of hubness """
        self._require_neighbors()
        return occurrence_skewness(self.occurrence_frequencies)

    def bad_occurrence_stats(self):
        """ Mean and standard deviation of the bad occurrence frequencies """
        bad = self.bad_frequencies
        return float(bad.mean()), float(bad.std())

    def kdistance_stats(self):
        """ Mean and standard deviation of the distances to the k nearest neighbors """
        self._require_neighbors()
        return float(self.kdistances.mean()), float(self.kdistances.std())

    def hubs(self):
        """ Points occurring at least k + 2 standard deviations times """
        mean, std = self.occurrence_stats()
        return np.flatnonzero(self.occurrence_frequencies >= mean + 2.0 * std)

    def orphans(self):
        """ Points occurring at most max(0, k - 2 standard deviations) times """
        mean, std = self.occurrence_stats()
        return np.flatnonzero(self.occurrence_frequencies <= max(0.0, mean - 2.0 * std))

    def regular_points(self):
        """ Points that are neither hubs nor orphans """
        special = np.union1d(self.hubs(), self.orphans())
        return np.setdiff1d(np.arange(self.n), special)

    def hwknn_weights(self):
        """
        Hubness-weighted kNN vote weights, exp(-h_b) for the standardized bad occurrence h_b.
        """
        mean, std = self.bad_occurrence_stats()
        if std == 0:
            return np.ones(self.n)
        return np.exp(-(self.bad_frequencies - mean) / std)

    def error_inducing_hubness(self):
        """
        Per point, the number of its bad occurrences in neighbor sets whose majority
        vote misclassifies the referencing point.
        """
        self._require_neighbors()
        self._labels_required()
        num_classes = self.num_classes
        errors = np.zeros(self.n, dtype=np.int64)
        for i in range(self.n):
            if self.labels[i] < 0:
                continue
            neighbor_labels = self.labels[self.kneighbors[i]]
            votes = np.bincount(neighbor_labels[neighbor_labels >= 0], minlength=num_classes)
            if np.argmax(votes) != self.labels[i]:
                bad = self.kneighbors[i][(neighbor_labels >= 0) & (neighbor_labels != self.labels[i])]
                np.add.at(errors, bad, 1)
        return errors

    def k_entropies(self, num_classes=None, k=None):
        """
        Label entropy (base 2) of each point's k-neighborhood.
        """
        self._require_neighbors()
        self._labels_required()
        num_classes = num_classes or self.num_classes
        k = min(k or self.k, self.k)
        neighbor_labels = self.labels[self.kneighbors[:, :k]]
        entropies = np.zeros(self.n)
        for c in range(num_classes):
            share = np.count_nonzero(neighbor_labels == c, axis=1) / k
            nonzero = share > 0
            entropies[nonzero] -= share[nonzero] * np.log2(share[nonzero])
        return entropies

    def reverse_entropies(self, num_classes=None):
        """
        Label entropy (base 2) of each point's reverse neighbors; zero for points
        with at most one reverse neighbor.
        """
        self._labels_required()
        num_classes = num_classes or self.num_classes
        entropies = np.zeros(self.n)
        for i, sources in enumerate(self.reverse_neighbors()):
            if sources.size <= 1:
                continue
            source_labels = self.labels[sources]
            counts = np.bincount(source_labels[source_labels >= 0], minlength=num_classes)
            share = counts[counts > 0] / sources.size
            entropies[i] = -np.sum(share * np.log2(share))
        return entropies

    def __repr__(self):
        return f"NeighborSetFinder(n={self.n}, k={self.k})"
