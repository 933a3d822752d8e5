# test_secondary.py

"""
Tests for the secondary distances computed from training neighbor sets.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import unittest

import numpy as np
from scipy.stats import norm

from hubcv.distance_matrix import DistanceMatrix
from hubcv.errors import ConfigurationError
from hubcv.neighbors import NeighborSetFinder
from hubcv.secondary import nearest_columns, secondary_distances, simhub_weights


class TestSharedNeighborDistances(unittest.TestCase):
    """Tests for simcos and simhub on two well separated groups on a line."""

    def setUp(self):
        """Six training points in two groups, one test point inside the first group."""
        self.train = np.array([[0.0], [1.0], [2.0], [10.0], [11.0], [12.0]])
        self.labels = np.array([0, 0, 1, 1, 1, 0])
        self.nsf = NeighborSetFinder.from_points(self.train, labels=self.labels).calculate(2)
        self.test = np.abs(0.5 - self.train.ravel())[np.newaxis, :]

    def test_simcos(self):
        """Distances are k minus the number of shared neighbors."""
        train, test = secondary_distances("simcos", self.nsf, self.test)
        self.assertEqual(train.distance(0, 1), 1.0)
        self.assertEqual(train.distance(0, 2), 1.0)
        self.assertEqual(train.distance(0, 3), 2.0)
        self.assertEqual(train.distance(3, 4), 1.0)
        # the test point's neighbors are 0 and 1, the neighbors of point 2
        np.testing.assert_array_equal(test, [[1.0, 1.0, 0.0, 2.0, 2.0, 2.0]])

    def test_simhub_weights(self):
        """Weights combine occurrence informativeness and reverse neighbor purity."""
        weights = simhub_weights(self.nsf, 2)
        raw = (np.log2(6 / (self.nsf.occurrence_frequencies + 1.0))
               * (1.0 - self.nsf.reverse_entropies(2)))
        np.testing.assert_allclose(weights, raw / max(np.abs(raw).max(), 1.0))
        self.assertTrue(np.all(np.abs(weights) <= 1.0))

    def test_simhub(self):
        """Shared neighbors count with their simhub weight."""
        weights = simhub_weights(self.nsf, 2)
        sets = np.zeros((6, 6))
        for i, row in enumerate(self.nsf.kneighbors):
            sets[i, row] = 1.0
        expected = 2.0 - (sets * weights) @ sets.T
        np.fill_diagonal(expected, 0.0)
        train, test = secondary_distances("simhub", self.nsf, self.test, num_classes=2)
        np.testing.assert_allclose(train.to_dense(), expected, atol=1e-12)
        self.assertEqual(test.shape, (1, 6))
        self.assertTrue(np.all(test >= 0.0) and np.all(test <= 2.0))


class TestRescaledDistances(unittest.TestCase):
    """Tests for mutual proximity, local scaling and NICDM."""

    def setUp(self):
        """Random training and test points with their primary distances."""
        rng = np.random.default_rng(3)
        self.train = rng.normal(size=(30, 4))
        self.test_points = rng.normal(size=(5, 4))
        self.k = 4
        self.dm = DistanceMatrix.compute(self.train)
        self.nsf = NeighborSetFinder(self.dm, points=self.train).calculate(self.k)
        self.test = np.linalg.norm(self.test_points[:, np.newaxis, :] - self.train[np.newaxis, :, :], axis=2)
        self.dense = self.dm.to_dense()

    def _others(self, i):
        return np.delete(self.dense[i], i)

    def test_mutual_proximity(self):
        """1 - P(X > d) P(Y > d) under normal models of each point's distances."""
        train, test = secondary_distances("mp", self.nsf, self.test)
        i, j = 2, 17
        d = self.dense[i, j]
        first, second = self._others(i), self._others(j)
        expected = 1.0 - (norm.sf(d, first.mean(), first.std()) * norm.sf(d, second.mean(), second.std()))
        self.assertAlmostEqual(train.distance(i, j), expected, places=10)
        q, j = 1, 5
        d = self.test[q, j]
        neighbor = self._others(j)
        expected = 1.0 - (norm.sf(d, self.test[q].mean(), self.test[q].std())
                          * norm.sf(d, neighbor.mean(), neighbor.std()))
        self.assertAlmostEqual(test[q, j], expected, places=10)
        self.assertTrue(np.all((train.data >= 0.0) & (train.data <= 1.0)))

    def test_local_scaling(self):
        """1 - exp(-d^2 / (sigma_i sigma_j)) with sigma the k-th neighbor distance."""
        train, test = secondary_distances("ls", self.nsf, self.test)
        sigma = self.nsf.kdistances[:, self.k - 1]
        i, j = 0, 9
        d = self.dense[i, j]
        self.assertAlmostEqual(train.distance(i, j), 1.0 - np.exp(-d * d / (sigma[i] * sigma[j])), places=12)
        test_sigma = np.sort(self.test[3])[self.k - 1]
        d = self.test[3, j]
        self.assertAlmostEqual(test[3, j], 1.0 - np.exp(-d * d / (test_sigma * sigma[j])), places=12)

    def test_nicdm(self):
        """d / sqrt(mu_i mu_j) with mu the mean k-neighbor distance."""
        train, test = secondary_distances("nicdm", self.nsf, self.test)
        mean = self.nsf.kdistances.mean(axis=1)
        i, j = 4, 21
        self.assertAlmostEqual(train.distance(i, j), self.dense[i, j] / np.sqrt(mean[i] * mean[j]), places=12)
        test_mean = np.sort(self.test[0])[:self.k].mean()
        self.assertAlmostEqual(test[0, j], self.test[0, j] / np.sqrt(test_mean * mean[j]), places=12)

    def test_duplicate_points(self):
        """Zero neighbor distances do not produce NaN or infinite distances."""
        points = np.vstack([self.train[:10], self.train[:10]])
        nsf = NeighborSetFinder.from_points(points).calculate(1)
        test = np.linalg.norm(self.test_points[:, np.newaxis, :] - points[np.newaxis, :, :], axis=2)
        for name in ("mp", "ls", "nicdm"):
            train, secondary_test = secondary_distances(name, nsf, test)
            self.assertTrue(np.all(np.isfinite(train.data)))
            self.assertTrue(np.all(np.isfinite(secondary_test)))

    def test_mutual_proximity_reduces_hubness(self):
        """Neighbor occurrences are less skewed under mutual proximity in high dimensions."""
        points = np.random.default_rng(0).normal(size=(300, 100))
        primary = NeighborSetFinder.from_points(points).calculate(10)
        train, _ = secondary_distances("mp", primary, np.zeros((0, 300)))
        secondary = NeighborSetFinder(train).calculate(10)
        self.assertLess(secondary.skewness(), primary.skewness())


class TestSecondaryHelpers(unittest.TestCase):
    """Tests for argument checks and query neighbor ranking."""

    def test_nearest_columns(self):
        """Rows are ranked by distance, ties broken by position."""
        distances = np.array([[3.0, 1.0, 1.0, 0.5], [0.0, 2.0, 0.0, 1.0]])
        positions, nearest = nearest_columns(distances, 3)
        np.testing.assert_array_equal(positions, [[3, 1, 2], [0, 2, 3]])
        np.testing.assert_array_equal(nearest, [[0.5, 1.0, 1.0], [0.0, 0.0, 1.0]])

    def test_invalid_arguments(self):
        """Unknown names and missing neighbor sets are rejected."""
        points = np.arange(8, dtype=np.float64).reshape(-1, 1)
        nsf = NeighborSetFinder.from_points(points)
        with self.assertRaises(ConfigurationError):
            secondary_distances("simcos", nsf, np.zeros((1, 8)))
        nsf.calculate(2)
        with self.assertRaises(ConfigurationError):
            secondary_distances("snn", nsf, np.zeros((1, 8)))


if __name__ == "__main__":
    unittest.main()
