# test_distance_matrix.py

"""
Tests for distance metrics and the upper-triangular distance matrix.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import io
import tempfile
import unittest

import numpy as np
from scipy.spatial.distance import pdist, squareform

from hubcv.distance_matrix import DistanceMatrix
from hubcv.errors import ConfigurationError, MetricComputationError
from hubcv.metrics import DistanceMetric, get_metric


class TestDistanceMatrix(unittest.TestCase):
    """Tests for computing, slicing and persisting distance matrices."""

    def setUp(self):
        """Set up a small random point set."""
        rng = np.random.default_rng(7)
        self.X = rng.normal(size=(23, 5))
        self.dm = DistanceMatrix.compute(self.X)

    def test_matches_scipy(self):
        """Euclidean distances agree with scipy's condensed layout."""
        np.testing.assert_allclose(self.dm.data, pdist(self.X), rtol=1e-12, atol=1e-12)
        self.assertEqual(len(self.dm), 23)

    def test_other_metrics(self):
        """Manhattan, Chebyshev and cosine distances agree with scipy."""
        for name, scipy_name in [("manhattan", "cityblock"), ("chebyshev", "chebyshev"), ("cosine", "cosine")]:
            dm = DistanceMatrix.compute(self.X, name)
            np.testing.assert_allclose(dm.data, pdist(self.X, scipy_name), rtol=1e-10, atol=1e-12)

    def test_symmetry_and_diagonal(self):
        """Lookups are symmetric and the diagonal is zero."""
        for i in range(self.dm.n):
            self.assertEqual(self.dm.distance(i, i), 0.0)
            for j in range(self.dm.n):
                self.assertEqual(self.dm.distance(i, j), self.dm.distance(j, i))
        with self.assertRaises(IndexError):
            self.dm.distance(0, 23)

    def test_rows_and_blocks(self):
        """Rows, cross blocks and submatrices agree with the dense matrix."""
        dense = squareform(pdist(self.X))
        for i in (0, 11, 22):
            np.testing.assert_allclose(self.dm.row(i), dense[i], atol=1e-12)
        rows, cols = np.array([3, 0, 17]), np.array([1, 3, 22, 5])
        np.testing.assert_allclose(self.dm.cross(rows, cols), dense[np.ix_(rows, cols)], atol=1e-12)
        indexes = np.array([2, 4, 9, 15, 20])
        sub = self.dm.submatrix(indexes)
        np.testing.assert_allclose(sub.to_dense(), dense[np.ix_(indexes, indexes)], atol=1e-12)
        with self.assertRaises(ConfigurationError):
            self.dm.submatrix([1, 1, 2])

    def test_threads_give_identical_results(self):
        """Splitting the rows over threads does not change the matrix."""
        threaded = DistanceMatrix.compute(self.X, n_threads=4, tile_rows=3)
        np.testing.assert_allclose(threaded.data, self.dm.data, rtol=1e-12, atol=1e-12)

    def test_data_is_read_only(self):
        """The condensed array cannot be modified in place."""
        with self.assertRaises(ValueError):
            self.dm.data[0] = 1.0

    def test_save_and_load(self):
        """A saved matrix loads back unchanged."""
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "matrix.txt")
            self.dm.save(path)
            loaded = DistanceMatrix.load(path)
        self.assertEqual(loaded.n, self.dm.n)
        np.testing.assert_array_equal(loaded.data, self.dm.data)

    def test_malformed_file(self):
        """Rows of the wrong length are rejected."""
        with self.assertRaises(ConfigurationError):
            DistanceMatrix.read(io.StringIO("3\n1.0,2.0\n1.0,5.0\n"))
        with self.assertRaises(ConfigurationError):
            DistanceMatrix.read(io.StringIO("three\n"))

    def test_from_dense(self):
        """Dense matrices must be symmetric."""
        dense = squareform(pdist(self.X[:4]))
        np.testing.assert_allclose(DistanceMatrix.from_dense(dense).data, pdist(self.X[:4]))
        dense[0, 1] += 1.0
        with self.assertRaises(ConfigurationError):
            DistanceMatrix.from_dense(dense)


class TestMetricFailures(unittest.TestCase):
    """Tests for metric errors surfacing as MetricComputationError."""

    def setUp(self):
        self.points = [np.array([float(v)]) for v in range(5)]

    def test_raising_metric_reports_pair(self):
        """A metric raising for one pair reports that pair."""
        def fragile(x, y):
            if {float(x[0]), float(y[0])} == {1.0, 3.0}:
                raise ValueError("undefined")
            return abs(float(x[0]) - float(y[0]))

        with self.assertRaises(MetricComputationError) as context:
            DistanceMatrix.compute(self.points, fragile)
        self.assertEqual((context.exception.i, context.exception.j), (1, 3))

    def test_metric_subclass_reports_global_pair(self):
        """Metric subclasses implementing only `dist` report indexes into the point set."""
        class FragileMetric(DistanceMetric):
            name = "fragile"

            def dist(self, x, y):
                if {float(x[0]), float(y[0])} == {6.0, 9.0}:
                    raise ValueError("undefined")
                return abs(float(x[0]) - float(y[0]))

        points = np.arange(12, dtype=np.float64).reshape(-1, 1)
        with self.assertRaises(MetricComputationError) as context:
            DistanceMatrix.compute(points, FragileMetric(), tile_rows=4)
        self.assertEqual((context.exception.i, context.exception.j), (6, 9))
        self.assertIsInstance(context.exception.__cause__, ValueError)

    def test_invalid_values(self):
        """Negative and non-finite distances are rejected."""
        with self.assertRaises(MetricComputationError):
            DistanceMatrix.compute(self.points, lambda x, y: -1.0)
        with self.assertRaises(MetricComputationError):
            DistanceMatrix.compute(self.points, lambda x, y: float("nan"))

    def test_unknown_metric(self):
        """Unknown metric names are configuration errors."""
        with self.assertRaises(ConfigurationError):
            get_metric("mahalanobis")
        with self.assertRaises(ConfigurationError):
            get_metric(42)


if __name__ == "__main__":
    unittest.main()
