# test_instance_selection.py

"""
Tests for instance selection and prototype hubness estimation.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import unittest

import numpy as np
from sklearn.datasets import make_blobs

from hubcv.distance_matrix import DistanceMatrix
from hubcv.errors import ConfigurationError
from hubcv.instance_selection import HubnessAwareSelector, InstanceSelector, RandomSelector
from hubcv.neighbors import NeighborSetFinder


class TestSelectors(unittest.TestCase):
    """Tests for choosing prototypes."""

    def setUp(self):
        """Two overlapping blobs and their neighbor sets."""
        self.X, self.y = make_blobs(n_samples=40, n_features=4, centers=2, cluster_std=3.0, random_state=2)
        self.nsf = NeighborSetFinder(DistanceMatrix.compute(self.X), labels=self.y).calculate(5)

    def test_random_selection(self):
        """Random selection keeps the requested share, sorted, and is reproducible."""
        selection = RandomSelector(random_state=3).reduce(self.y, keep_ratio=0.25)
        prototypes = selection.prototypes
        self.assertGreaterEqual(prototypes.size, 10)
        self.assertTrue(np.all(np.diff(prototypes) > 0))
        np.testing.assert_array_equal(np.unique(self.y[prototypes]), [0, 1])
        again = RandomSelector(random_state=3).reduce(self.y, keep_ratio=0.25)
        np.testing.assert_array_equal(again.prototypes, prototypes)

    def test_every_class_is_kept(self):
        """A missing class is added back from its most preferred member."""
        labels = np.array([0] * 19 + [1])
        selection = RandomSelector(random_state=0).reduce(labels, keep_ratio=0.1)
        self.assertIn(19, selection.prototypes)

    def test_hubness_aware_selection(self):
        """Points with more bad than good occurrences are dropped in automatic mode."""
        selector = HubnessAwareSelector(k=5)
        scores = self.nsf.good_frequencies - self.nsf.bad_frequencies
        selection = selector.reduce(self.y, nsf=self.nsf)
        kept = np.flatnonzero(scores >= 0)
        self.assertTrue(np.all(np.isin(kept, selection.prototypes)))
        top = selector.reduce(self.y, keep_ratio=0.25, nsf=self.nsf).prototypes
        self.assertGreaterEqual(np.count_nonzero(scores[top] >= np.sort(scores)[::-1][9]), 10)
        with self.assertRaises(ConfigurationError):
            selector.reduce(self.y)

    def test_invalid_parameters(self):
        """Unknown modes and ratios outside [0, 1] are rejected."""
        with self.assertRaises(ConfigurationError):
            InstanceSelector(hubness_mode="sideways")
        with self.assertRaises(ConfigurationError):
            RandomSelector().reduce(self.y, keep_ratio=1.5)


class TestPrototypeHubness(unittest.TestCase):
    """Tests for the occurrence statistics of prototypes."""

    def setUp(self):
        self.X, self.y = make_blobs(n_samples=50, n_features=5, centers=3, random_state=9)
        self.nsf = NeighborSetFinder(DistanceMatrix.compute(self.X), labels=self.y).calculate(8)
        self.k = 4

    def test_unbiased_counts_every_training_point(self):
        """Every training point contributes k occurrences to the prototypes."""
        selector = RandomSelector(hubness_mode="unbiased", random_state=1)
        selection = selector.reduce(self.y, keep_ratio=0.4)
        selector.calculate_prototype_hubness(selection, self.nsf, self.k)
        self.assertEqual(selection.k, self.k)
        self.assertEqual(selection.occurrence_frequencies.size, selection.prototypes.size)
        self.assertEqual(selection.occurrence_frequencies.sum(), 50 * self.k)
        np.testing.assert_array_equal(
            selection.good_frequencies + selection.bad_frequencies, selection.occurrence_frequencies
        )

    def test_biased_counts_only_prototypes(self):
        """Biased estimates are the statistics of the reduced set on its own."""
        selector = RandomSelector(hubness_mode="biased", random_state=1)
        selection = selector.reduce(self.y, keep_ratio=0.4)
        selector.calculate_prototype_hubness(selection, self.nsf, self.k)
        reduced = self.nsf.restrict(selection.prototypes, self.k)
        self.assertEqual(selection.occurrence_frequencies.sum(), selection.prototypes.size * self.k)
        np.testing.assert_array_equal(selection.bad_frequencies, reduced.bad_frequencies)

    def test_k_capped_by_prototypes(self):
        """k is reduced when there are too few prototypes."""
        selector = RandomSelector(random_state=4)
        selection = selector.reduce(self.y, keep_ratio=0.06)
        selector.calculate_prototype_hubness(selection, self.nsf, 10)
        self.assertEqual(selection.k, selection.prototypes.size - 1)


if __name__ == "__main__":
    unittest.main()
