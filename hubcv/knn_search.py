# knn_search.py

"""
Strategies for computing k-nearest neighbor sets.

`ExactNeighborSearch` scans rows of a distance matrix. `LanczosBisectionSearch`
implements the divide and conquer approximate kNN graph construction of
Chen, Fang and Saad (2009): the point set is recursively split in two
overlapping halves along its principal direction (a Lanczos / ARPACK singular
vector), exact neighbor sets are computed in small leaves, and the leaf results
are merged and refined once with neighbors of neighbors.

All strategies order neighbors by increasing distance and break exact ties by
the lower point index.
"""

#
# Imports
#

import math
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from loguru import logger
from scipy.linalg import svd
from scipy.sparse.linalg import ArpackNoConvergence, svds

from .errors import ConfigurationError
from .metrics import get_metric


#
# Helpers shared by the strategies
#
def top_k(distances, candidates, k):
    """
    Positions of the k closest candidates, ordered by (distance, candidate index).

    Parameters
    ----------
    distances: (numpy.ndarray) Distance to every candidate.
    candidates: (numpy.ndarray) Candidate point indexes used to break ties.
    k: (int) Number of positions to return, at most len(distances).

    Returns
    -------
    numpy.ndarray of int positions into `distances`.
    """
    if k < len(distances):
        kth = np.partition(distances, k - 1)[k - 1]
        selected = np.flatnonzero(distances <= kth)
    else:
        selected = np.arange(len(distances))
    order = np.lexsort((candidates[selected], distances[selected]))
    return selected[order[:k]]


def merge_candidates(indexes, distances, k):
    """
    Deduplicate candidate neighbors and keep the k best by (distance, index).
    """
    valid = indexes >= 0
    indexes, distances = indexes[valid], distances[valid]
    indexes, first = np.unique(indexes, return_index=True)
    distances = distances[first]
    order = np.lexsort((indexes, distances))[:k]
    return indexes[order], distances[order]


#
# Strategy classes
#
class NeighborSearch:
    """
    Base class of kNN search strategies.

    `search` returns two (n, k) arrays: neighbor indexes and neighbor distances.
    """

    needs_distance_matrix = True

    def search(self, k, distance_matrix=None, points=None, metric=None):
        raise NotImplementedError


class ExactNeighborSearch(NeighborSearch):
    """
    Exact kNN search over a distance matrix, parallel over ranges of points.

    Parameters
    ----------
    n_threads: (int) Number of worker threads.
    """

    def __init__(self, n_threads=1):
        if n_threads < 1:
            raise ConfigurationError("n_threads must be positive")
        self.n_threads = n_threads

    def search(self, k, distance_matrix=None, points=None, metric=None):
        if distance_matrix is None:
            raise ConfigurationError("Exact neighbor search requires a distance matrix")
        n = distance_matrix.n
        kneighbors = np.empty((n, k), dtype=np.int64)
        kdistances = np.empty((n, k), dtype=np.float64)
        candidates = np.arange(n, dtype=np.int64)

        def fill(first, last):
            for i in range(first, last):
                row = distance_matrix.row(i)
                row[i] = np.inf
                best = top_k(row, candidates, k)
                kneighbors[i] = best
                kdistances[i] = row[best]

        chunk = max(1, math.ceil(n / self.n_threads))
        bounds = [(first, min(first + chunk, n)) for first in range(0, n, chunk)]
        if len(bounds) <= 1:
            for first, last in bounds:
                fill(first, last)
        else:
            with ThreadPoolExecutor(max_workers=self.n_threads) as executor:
                for future in [executor.submit(fill, *bound) for bound in bounds]:
                    future.result()
        return kneighbors, kdistances


class LanczosBisectionSearch(NeighborSearch):
    """
    Approximate kNN graph construction by recursive spectral bisection with overlap.

    Parameters
    ----------
    alpha: (float) Overlap between the two halves of each split, in (0, 1].
        Each half holds ceil(m * (1 + alpha) / 2) of the m points being split;
        larger values are slower and more accurate, and alpha = 1 is exact search.
    division_threshold: (int or `None`) Sets at most this large are solved exactly;
        max(5 * k, 100) when `None`.
    refine: (bool) Run one neighbors-of-neighbors refinement pass, default `True`.
    n_threads: (int) Worker threads used when alpha = 1 delegates to exact search.
    """

    needs_distance_matrix = False

    def __init__(self, alpha=0.2, division_threshold=None, refine=True, n_threads=1):
        if not 0.0 < alpha <= 1.0:
            raise ConfigurationError(f"alpha must lie in (0, 1], got {alpha}")
        self.alpha = alpha
        self.division_threshold = division_threshold
        self.refine = refine
        self.n_threads = n_threads

    def search(self, k, distance_matrix=None, points=None, metric=None):
        if self.alpha >= 1.0:
            if distance_matrix is None:
                from .distance_matrix import DistanceMatrix
                distance_matrix = DistanceMatrix.compute(points, metric, n_threads=self.n_threads)
            return ExactNeighborSearch(self.n_threads).search(k, distance_matrix)
        if points is None:
            raise ConfigurationError("Approximate neighbor search requires the point coordinates")
        try:
            coordinates = np.asarray(points, dtype=np.float64)
        except (TypeError, ValueError):
            raise ConfigurationError("Approximate neighbor search requires numeric points") from None
        if coordinates.ndim != 2:
            raise ConfigurationError(f"Expected a 2D point array, got shape {coordinates.shape}")
        threshold = self.division_threshold or max(5 * k, 100)
        logger.debug(
            f"Lanczos bisection kNN: n={coordinates.shape[0]}, k={k}, alpha={self.alpha}, threshold={threshold}"
        )
        graph = _BisectionGraph(coordinates, k, self.alpha, distance_matrix, get_metric(metric))
        graph.divide(np.arange(coordinates.shape[0], dtype=np.int64), threshold)
        if self.refine:
            graph.refine()
        graph.complete()
        return graph.kneighbors, graph.kdistances


class _BisectionGraph:
    """
    The kNN graph under construction by one `LanczosBisectionSearch.search` call.
    """

    def __init__(self, coordinates, k, alpha, distance_matrix, metric):
        n = coordinates.shape[0]
        self.coordinates = coordinates
        self.k = k
        self.alpha = alpha
        self.distance_matrix = distance_matrix
        self.metric = metric
        self.kneighbors = np.full((n, k), -1, dtype=np.int64)
        self.kdistances = np.full((n, k), np.inf, dtype=np.float64)

    def distances(self, rows, cols):
        if self.distance_matrix is not None:
            return self.distance_matrix.cross(rows, cols)
        return self.metric.pairwise(self.coordinates[rows], self.coordinates[cols])

    def principal_projection(self, ids):
        centered = self.coordinates[ids] - self.coordinates[ids].mean(axis=0)
        if not np.any(centered):
            return None
        if min(centered.shape) < 2:
            direction = np.ones(centered.shape[1])
        else:
            v0 = np.ones(min(centered.shape)) / math.sqrt(min(centered.shape))
            try:
                _, _, vt = svds(centered, k=1, v0=v0)
            except ArpackNoConvergence:
                _, _, vt = svd(centered, full_matrices=False)
            direction = vt[0]
        return centered @ direction

    def divide(self, ids, threshold):
        m = ids.size
        half = math.ceil(m * (1.0 + self.alpha) / 2.0)
        if m <= threshold or half >= m:
            self.solve_leaf(ids)
            return
        projection = self.principal_projection(ids)
        if projection is None:
            ordered = ids
        else:
            ordered = ids[np.lexsort((ids, projection))]
        self.divide(np.sort(ordered[:half]), threshold)
        self.divide(np.sort(ordered[m - half:]), threshold)

    def solve_leaf(self, ids):
        local = self.distances(ids, ids)
        np.fill_diagonal(local, np.inf)
        width = min(self.k, ids.size - 1)
        if width < 1:
            return
        for r, point in enumerate(ids):
            best = top_k(local[r], ids, width)
            self.merge_into(point, ids[best], local[r, best])

    def merge_into(self, point, indexes, distances):
        merged_idx, merged_dist = merge_candidates(
            np.concatenate([self.kneighbors[point], indexes]),
            np.concatenate([self.kdistances[point], distances]),
            self.k,
        )
        self.kneighbors[point, :] = -1
        self.kdistances[point, :] = np.inf
        self.kneighbors[point, :merged_idx.size] = merged_idx
        self.kdistances[point, :merged_dist.size] = merged_dist

    def refine(self):
        """ One pass adding the neighbors of neighbors as candidates """
        current = self.kneighbors.copy()
        for point in range(current.shape[0]):
            neighbors = current[point][current[point] >= 0]
            candidates = np.unique(np.concatenate([neighbors, current[neighbors].ravel()]))
            candidates = candidates[(candidates >= 0) & (candidates != point)]
            known = np.isin(candidates, neighbors)
            fresh = candidates[~known]
            if fresh.size == 0:
                continue
            distances = self.distances(np.array([point]), fresh)[0]
            self.merge_into(point, fresh, distances)

    def complete(self):
        """ Exact lists for points the leaves left with fewer than k neighbors """
        n = self.kneighbors.shape[0]
        everyone = np.arange(n, dtype=np.int64)
        for point in np.flatnonzero(np.any(self.kneighbors < 0, axis=1)):
            distances = self.distances(np.array([point]), everyone)[0]
            distances[point] = np.inf
            best = top_k(distances, everyone, self.k)
            self.kneighbors[point] = best
            self.kdistances[point] = distances[best]
