# distance_matrix.py

"""
Upper-triangular pairwise distance matrices.

For n points only the n(n-1)/2 distances with i < j are stored, in one condensed
array laid out row by row (the layout of `scipy.spatial.distance.squareform`).
Row i of the upper triangle is a view `upper_row(i)` such that the distance
between i and j > i is `upper_row(i)[j - i - 1]`.
"""

#
# Imports
#

import math
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from loguru import logger
from scipy.spatial.distance import squareform

from .errors import ConfigurationError, MetricComputationError
from .metrics import get_metric

DEFAULT_TILE_ROWS = 64


def _condensed_index(n, i, j):
    """ Position of the pair (i, j), i < j, in the condensed array; vectorized """
    return n * i - (i * (i + 1)) // 2 + (j - i - 1)


def _balanced_row_ranges(n, n_parts):
    """
    Split rows 0..n-2 into contiguous ranges holding roughly equal numbers of pairs.
    """
    if n < 2:
        return []
    pairs = np.arange(n - 1, 0, -1, dtype=np.int64)
    cumulative = np.cumsum(pairs)
    total = cumulative[-1]
    bounds = [0]
    for part in range(1, n_parts):
        cut = int(np.searchsorted(cumulative, total * part / n_parts)) + 1
        if bounds[-1] < cut < n - 1:
            bounds.append(cut)
    bounds.append(n - 1)
    return list(zip(bounds[:-1], bounds[1:]))


class DistanceMatrix:
    """
    Symmetric, non-negative distances between n points, stored as the upper triangle.

    Parameters
    ----------
    condensed: (numpy.ndarray) Distances of all pairs i < j in row-major upper-triangular order.
    n: (int or `None`) Number of points; inferred from the length of `condensed` if omitted.

    Attributes
    ----------
    n: int
        Number of points.
    data: numpy.ndarray
        The condensed distances, read-only.
    """

    def __init__(self, condensed, n=None):
        data = np.ascontiguousarray(condensed, dtype=np.float64).ravel()
        if n is None:
            n = int(round((1 + math.sqrt(1 + 8 * data.size)) / 2)) if data.size else 1
        if n < 1 or data.size != n * (n - 1) // 2:
            raise ConfigurationError(
                f"Condensed array of length {data.size} does not match {n} points"
            )
        data.setflags(write=False)
        self.n = n
        self.data = data

    #
    # Construction
    #

    @classmethod
    def compute(cls, points, metric=None, n_threads=1, tile_rows=DEFAULT_TILE_ROWS):
        """
        Compute the distance matrix of a point set.

        Rows are split into ranges with balanced pair counts, one per worker
        thread; every worker writes a disjoint slice of the condensed array.

        Parameters
        ----------
        points: (array-like) Point set, shape (n, d) for numeric metrics.
        metric: (str, DistanceMetric, callable or `None`) Distance metric, Euclidean by default.
        n_threads: (int) Number of worker threads.
        tile_rows: (int) Number of rows handed to the metric in one call.

        Returns
        -------
        DistanceMatrix

        Raises
        ------
        MetricComputationError
            If the metric raises for a pair or returns a negative or non-finite value.
        """
        metric = get_metric(metric)
        n = len(points)
        if n < 1:
            raise ConfigurationError("Cannot compute a distance matrix of an empty point set")
        if n_threads < 1 or tile_rows < 1:
            raise ConfigurationError("n_threads and tile_rows must be positive")
        points = np.asarray(points) if not isinstance(points, np.ndarray) else points
        data = np.empty(n * (n - 1) // 2, dtype=np.float64)
        logger.debug(f"Distance matrix of {n} points with {metric!r}, {n_threads} threads")

        def fill_rows(row_range):
            first, last = row_range
            for start in range(first, last, tile_rows):
                end = min(start + tile_rows, last)
                try:
                    rows = metric.upper_rows(points, start, end)
                except MetricComputationError:
                    raise
                except Exception as err:
                    raise MetricComputationError(
                        start, None, f"{metric!r} raised {err!r} in rows {start}-{end}"
                    ) from err
                for offset, values in enumerate(rows):
                    i = start + offset
                    bad = np.flatnonzero(~np.isfinite(values) | (values < 0))
                    if bad.size:
                        j = i + 1 + int(bad[0])
                        raise MetricComputationError(i, j, f"{metric!r} returned {values[bad[0]]}")
                    position = _condensed_index(n, i, i + 1)
                    data[position:position + n - i - 1] = values

        ranges = _balanced_row_ranges(n, n_threads)
        if n_threads == 1 or len(ranges) <= 1:
            for row_range in ranges:
                fill_rows(row_range)
        else:
            with ThreadPoolExecutor(max_workers=n_threads) as executor:
                futures = [executor.submit(fill_rows, row_range) for row_range in ranges]
                for future in futures:
                    future.result()
        return cls(data, n)

    @classmethod
    def from_dense(cls, matrix):
        """
        Build from a dense symmetric matrix with zero diagonal.
        """
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise ConfigurationError(f"Expected a square matrix, got shape {matrix.shape}")
        if not np.allclose(matrix, matrix.T) or np.any(matrix < 0):
            raise ConfigurationError("Distance matrix must be symmetric and non-negative")
        return cls(squareform(matrix, checks=False), matrix.shape[0])

    #
    # Access
    #

    def __len__(self):
        return self.n

    def distance(self, i, j):
        """
        Distance between points i and j, in either order; zero on the diagonal.
        """
        if i == j:
            return 0.0
        if i > j:
            i, j = j, i
        if i < 0 or j >= self.n:
            raise IndexError(f"Pair ({i}, {j}) out of range for {self.n} points")
        return float(self.data[_condensed_index(self.n, i, j)])

    def upper_row(self, i):
        """
        Stored distances from i to points i + 1, ..., n - 1 (a read-only view).
        """
        start = _condensed_index(self.n, i, i + 1)
        return self.data[start:start + self.n - i - 1]

    def row(self, i):
        """
        Distances from point i to every point, with a zero at position i.
        """
        out = np.empty(self.n, dtype=np.float64)
        lower = np.arange(i, dtype=np.int64)
        out[:i] = self.data[_condensed_index(self.n, lower, i)]
        out[i] = 0.0
        out[i + 1:] = self.upper_row(i)
        return out

    def cross(self, rows, cols):
        """
        Dense block of distances between two index sets.

        Returns
        -------
        numpy.ndarray of shape (len(rows), len(cols))
        """
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        lo = np.minimum(rows[:, np.newaxis], cols[np.newaxis, :])
        hi = np.maximum(rows[:, np.newaxis], cols[np.newaxis, :])
        out = np.zeros(lo.shape, dtype=np.float64)
        pairs = lo != hi
        if pairs.any():
            out[pairs] = self.data[_condensed_index(self.n, lo[pairs], hi[pairs])]
        return out

    def submatrix(self, indexes):
        """
        Distance matrix restricted to the given points, in the given order.

        Parameters
        ----------
        indexes: (array-like of int) Distinct point indexes.

        Returns
        -------
        DistanceMatrix over len(indexes) points.
        """
        indexes = np.asarray(indexes, dtype=np.int64)
        if np.unique(indexes).size != indexes.size:
            raise ConfigurationError("Submatrix indexes must be distinct")
        if indexes.size and (indexes.min() < 0 or indexes.max() >= self.n):
            raise ConfigurationError("Submatrix indexes out of range")
        ia, ib = np.triu_indices(indexes.size, 1)
        gi, gj = indexes[ia], indexes[ib]
        lo, hi = np.minimum(gi, gj), np.maximum(gi, gj)
        return DistanceMatrix(self.data[_condensed_index(self.n, lo, hi)], indexes.size)

    def to_dense(self):
        """ Full symmetric (n, n) matrix """
        return squareform(self.data, checks=False)

    #
    # Statistics
    #

    def mean(self):
        """ Mean distance over all stored pairs """
        return float(self.data.mean()) if self.data.size else 0.0

    def variance(self):
        """ Variance of the distance over all stored pairs """
        return float(self.data.var()) if self.data.size else 0.0

    #
    # Persistence
    #

    def save(self, path):
        """
        Write the matrix as text: the number of points on the first line, then one
        comma-separated line per upper-triangular row (n - 1 lines).
        """
        with open(path, "w", encoding="utf-8") as stream:
            self.write(stream)

    def write(self, stream):
        stream.write(f"{self.n}\n")
        for i in range(self.n - 1):
            stream.write(",".join(repr(value) for value in self.upper_row(i).tolist()))
            stream.write("\n")

    @classmethod
    def load(cls, path):
        """
        Read a matrix written by `save`.
        """
        with open(path, "r", encoding="utf-8") as stream:
            return cls.read(stream)

    @classmethod
    def read(cls, stream):
        header = stream.readline().strip()
        try:
            n = int(header)
        except ValueError:
            raise ConfigurationError(f"Invalid distance matrix header: {header!r}") from None
        data = np.empty(n * (n - 1) // 2, dtype=np.float64)
        for i in range(n - 1):
            line = stream.readline().strip()
            values = np.array(line.split(","), dtype=np.float64) if line else np.empty(0)
            if values.size != n - i - 1:
                raise ConfigurationError(
                    f"Row {i} holds {values.size} distances, expected {n - i - 1}"
                )
            position = _condensed_index(n, i, i + 1)
            data[position:position + values.size] = values
        return cls(data, n)

    def __repr__(self):
        return f"DistanceMatrix(n={self.n})"
