# metrics.py

"""
Distance metrics used to build distance matrices and answer neighbor queries.

Numeric metrics evaluate blocks of pairs with JIT-compiled JAX kernels, tiling
the query and database points so that the memory held by one kernel call stays
bounded. Arbitrary Python callables are supported through `CallableMetric`.
"""

#
# Imports
#

from functools import partial

import jax
import jax.numpy as jnp
import numpy as np
from jax import device_get

from .errors import ConfigurationError, MetricComputationError

#
# Double precision support
#
jax.config.update("jax_enable_x64", True)

ELEMENT_BUDGET = 2 ** 22
""" Number of float64 entries one kernel call may materialize """
COLUMN_TILE = 512


#
# JIT-compiled kernels
#
@partial(jax.jit, static_argnums=(2,))
def _minkowski_block(rows, others, p):
    """
    Minkowski distances between a tile of rows and a tile of database points.

    Differences are taken coordinate-wise rather than through the norm expansion,
    so that equal pairs produce bit-identical distances.
    """
    diff = jnp.abs(rows[:, jnp.newaxis, :] - others[jnp.newaxis, :, :])
    if p == 1:
        return jnp.sum(diff, axis=2)
    if p == 2:
        return jnp.sqrt(jnp.sum(diff * diff, axis=2))
    if p == float("inf"):
        return jnp.max(diff, axis=2)
    return jnp.sum(diff ** p, axis=2) ** (1.0 / p)


@jax.jit
def _cosine_block(rows, others):
    """
    Cosine distances (one minus cosine similarity) between two tiles; a zero
    vector has similarity 0 to everything.
    """
    dots = jnp.dot(rows, others.T)
    norms = jnp.linalg.norm(rows, axis=1)[:, jnp.newaxis] * jnp.linalg.norm(others, axis=1)[jnp.newaxis, :]
    safe = jnp.where(norms > 0, norms, 1.0)
    similarity = jnp.where(norms > 0, dots / safe, 0.0)
    return jnp.clip(1.0 - similarity, 0.0, 2.0)


def _tiled(kernel, rows, others, *static):
    """
    Evaluate a block kernel over all (row, other) pairs tile by tile.

    Tiles are zero-padded to fixed shapes so that each kernel is compiled once
    per data dimension.

    Returns
    -------
    numpy.ndarray of shape (len(rows), len(others))
    """
    rows = np.ascontiguousarray(rows, dtype=np.float64)
    others = np.ascontiguousarray(others, dtype=np.float64)
    if rows.ndim != 2 or others.ndim != 2 or rows.shape[1] != others.shape[1]:
        raise ConfigurationError(
            f"Incompatible point arrays of shapes {rows.shape} and {others.shape}"
        )
    n_rows, dim = rows.shape
    n_others = others.shape[0]
    out = np.empty((n_rows, n_others), dtype=np.float64)
    if n_rows == 0 or n_others == 0:
        return out
    col_tile = min(n_others, COLUMN_TILE)
    row_tile = max(1, min(n_rows, ELEMENT_BUDGET // (col_tile * max(dim, 1))))
    #
    for r_start in range(0, n_rows, row_tile):
        r_end = min(r_start + row_tile, n_rows)
        row_block = rows[r_start:r_end]
        if r_end - r_start < row_tile:
            row_block = np.pad(row_block, ((0, row_tile - (r_end - r_start)), (0, 0)))
        for c_start in range(0, n_others, col_tile):
            c_end = min(c_start + col_tile, n_others)
            col_block = others[c_start:c_end]
            if c_end - c_start < col_tile:
                col_block = np.pad(col_block, ((0, col_tile - (c_end - c_start)), (0, 0)))
            block = device_get(kernel(row_block, col_block, *static))
            out[r_start:r_end, c_start:c_end] = block[:r_end - r_start, :c_end - c_start]
    return out


#
# Metric classes
#
class DistanceMetric:
    """
    Base class of distance metrics.

    Subclasses implement `dist` for a single pair and may override `pairwise`
    with a vectorized implementation.
    """

    name = "metric"

    def dist(self, x, y):
        raise NotImplementedError

    def pairwise(self, rows, others):
        """
        Distances between every row and every database point.

        Parameters
        ----------
        rows: (numpy.ndarray) Query points, shape (m, d).
        others: (numpy.ndarray) Database points, shape (n, d).

        Returns
        -------
        numpy.ndarray of shape (m, n)

        Raises
        ------
        MetricComputationError
            With the (row, other) positions of the failing pair within the two arrays.
        """
        out = np.empty((len(rows), len(others)), dtype=np.float64)
        for a, x in enumerate(rows):
            for b, y in enumerate(others):
                try:
                    out[a, b] = self.dist(x, y)
                except Exception as err:
                    raise MetricComputationError(a, b, f"{self.name} raised {err!r}") from err
        return out

    def upper_rows(self, points, start, end):
        """
        Distances from each point in [start, end) to all points with a larger index.

        Returns
        -------
        list of numpy.ndarray, entry r holding the distances from point start + r
        to points start + r + 1, ..., n - 1.

        Raises
        ------
        MetricComputationError
            With the indexes of the failing pair in `points`.
        """
        try:
            block = self.pairwise(points[start:end], points[start:])
        except MetricComputationError as err:
            raise MetricComputationError(
                start + err.i, start + err.j, f"{self.name} raised {err.__cause__!r}"
            ) from (err.__cause__ or err)
        return [block[r, r + 1:] for r in range(end - start)]

    def __repr__(self):
        return f"{type(self).__name__}()"


class MinkowskiMetric(DistanceMetric):
    """
    Minkowski (L_p) distance; p = 1 is Manhattan, p = 2 Euclidean, p = inf Chebyshev.
    """

    def __init__(self, p=2.0):
        if p < 1:
            raise ConfigurationError(f"Minkowski exponent must be at least 1, got {p}")
        self.p = float(p)
        self.name = {1.0: "manhattan", 2.0: "euclidean", float("inf"): "chebyshev"}.get(self.p, "minkowski")

    def dist(self, x, y):
        return float(self.pairwise(np.atleast_2d(x), np.atleast_2d(y))[0, 0])

    def pairwise(self, rows, others):
        return _tiled(_minkowski_block, rows, others, self.p)

    def __repr__(self):
        return f"MinkowskiMetric(p={self.p})"


class CosineMetric(DistanceMetric):
    """
    Cosine distance, one minus the cosine similarity.
    """

    name = "cosine"

    def dist(self, x, y):
        return float(self.pairwise(np.atleast_2d(x), np.atleast_2d(y))[0, 0])

    def pairwise(self, rows, others):
        return _tiled(_cosine_block, rows, others)


class CallableMetric(DistanceMetric):
    """
    Wraps a Python function `func(x, y) -> float` as a metric.

    Parameters
    ----------
    func: (callable) Distance function over two points.
    name: (str) Name used in log and error messages.
    """

    def __init__(self, func, name=None):
        self.func = func
        self.name = name or getattr(func, "__name__", "callable")

    def dist(self, x, y):
        return float(self.func(x, y))

    def upper_rows(self, points, start, end):
        n = len(points)
        result = []
        for i in range(start, end):
            row = np.empty(n - i - 1, dtype=np.float64)
            for j in range(i + 1, n):
                try:
                    row[j - i - 1] = self.dist(points[i], points[j])
                except Exception as err:
                    raise MetricComputationError(i, j, f"{self.name} raised {err!r}") from err
            result.append(row)
        return result

    def __repr__(self):
        return f"CallableMetric({self.name})"


EUCLIDEAN = MinkowskiMetric(2.0)
MANHATTAN = MinkowskiMetric(1.0)
CHEBYSHEV = MinkowskiMetric(float("inf"))
COSINE = CosineMetric()

_NAMED_METRICS = {
    "euclidean": EUCLIDEAN,
    "manhattan": MANHATTAN,
    "chebyshev": CHEBYSHEV,
    "cosine": COSINE,
}


def get_metric(metric):
    """
    Resolve a metric argument.

    Parameters
    ----------
    metric: (str, DistanceMetric, callable or `None`)
        A metric name ('euclidean', 'manhattan', 'chebyshev', 'cosine'), a metric
        instance, or a function of two points. `None` selects Euclidean distance.

    Returns
    -------
    DistanceMetric
    """
    if metric is None:
        return EUCLIDEAN
    if isinstance(metric, DistanceMetric):
        return metric
    if isinstance(metric, str):
        try:
            return _NAMED_METRICS[metric.lower()]
        except KeyError:
            raise ConfigurationError(f"Unsupported metric: {metric!r}") from None
    if callable(metric):
        return CallableMetric(metric)
    raise ConfigurationError(f"Unsupported metric: {metric!r}")
