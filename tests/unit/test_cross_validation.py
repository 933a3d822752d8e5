# test_cross_validation.py

"""
Tests for the multi-classifier cross-validation engine.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import tempfile
import time
import unittest

import numpy as np
from sklearn.datasets import make_blobs
from sklearn.naive_bayes import GaussianNB

from hubcv.classifiers import KNN, DiscreteNaiveBayes, HwKNN, SklearnClassifier, ZeroRule
from hubcv.config import CrossValidationConfig
from hubcv.cross_validation import EngineState, MultiCrossValidation
from hubcv.errors import ConfigurationError, MetricComputationError
from hubcv.instance_selection import HubnessAwareSelector, RandomSelector
from hubcv.neighbors import NeighborSetFinder
from hubcv.secondary import secondary_distances


class FailsWithoutFirstPoint(ZeroRule):
    """Fails whenever the first point of the dataset is held out for testing."""

    def __init__(self, marker):
        super().__init__("flaky")
        self.marker = marker

    def train(self):
        if not np.array_equal(self.points[0], self.marker):
            raise RuntimeError("first point held out")
        super().train()


class Sleeper(ZeroRule):
    """Takes longer than the classifier timeout used in the tests."""

    def train(self):
        time.sleep(1.0)
        super().train()


class RecordingHwKNN(HwKNN):
    """Keeps the training data and vote weights of every trained copy."""

    trained = []

    def train(self):
        super().train()
        RecordingHwKNN.trained.append((np.asarray(self.points), self.labels.copy(), self.weights.copy()))


class RecordingKNN(KNN):
    """Keeps the training points and distance matrix of every trained copy."""

    trained = []

    def train(self):
        super().train()
        RecordingKNN.trained.append((np.asarray(self.points), self.distance_matrix))


class TestMultiCrossValidation(unittest.TestCase):
    """Tests for running and aggregating cross-validation."""

    def setUp(self):
        """Four well separated classes of 20 points."""
        self.X, self.y = make_blobs(n_samples=80, n_features=10, centers=4, random_state=1)
        self.config = CrossValidationConfig(num_times=2, num_folds=4, k=5, random_state=0)

    def _engine(self, classifiers, config=None, **kwargs):
        return MultiCrossValidation(
            self.X, self.y, classifiers, config=config or self.config, verbose=False, **kwargs
        )

    def test_full_run(self):
        """Every classifier is evaluated on every fold and aggregated."""
        classifiers = [KNN(k=5), HwKNN(k=5), ZeroRule(), DiscreteNaiveBayes(), SklearnClassifier(GaussianNB())]
        engine = self._engine(classifiers)
        result = engine.run()
        self.assertIs(engine.state, EngineState.AGGREGATED)
        self.assertEqual(result.nsf_k, 2 * 5 + 10)
        summary = result.summary()
        self.assertEqual(list(summary.index), [c.name for c in classifiers])
        self.assertTrue(np.all(summary["missing_folds"] == 0))
        for name in ["KNN(k=5)", "HwKNN(k=5)", "GaussianNB"]:
            self.assertGreater(result[name].average_estimator.accuracy, 0.9)
        self.assertLess(result["ZeroRule"].average_estimator.accuracy, 0.5)
        knn = result["KNN(k=5)"]
        self.assertEqual(len(knn.estimators), 8)
        self.assertEqual(knn.num_full_folds, 8)
        self.assertTrue(np.all(np.isfinite(knn.per_point_accuracy)))
        np.testing.assert_allclose(knn.fuzzy_predictions.sum(axis=1), 1.0)
        # every point is tested once per run
        total = sum(estimator.total for estimator in knn.estimators)
        self.assertEqual(total, 2 * 80)

    def test_classifier_failures_are_isolated(self):
        """A failing classifier loses only its own folds."""
        flaky = FailsWithoutFirstPoint(self.X[0])
        result = self._engine([KNN(k=5), flaky]).run()
        failures = result["flaky"].failures
        self.assertEqual(len(failures), 2)
        for failure in failures:
            self.assertIn(0, result.folds.test(failure.run, failure.fold))
            self.assertIsInstance(failure.cause, RuntimeError)
        self.assertEqual(result["flaky"].num_full_folds, 6)
        self.assertIsNotNone(result["flaky"].average_estimator)
        self.assertEqual(result["KNN(k=5)"].num_full_folds, 8)
        report = result.missing_report()
        self.assertEqual(len(report), 2)
        self.assertTrue(np.all(report["classifier"] == "flaky"))
        self.assertTrue(np.isnan(result["flaky"].per_point_accuracy[0]))

    def test_timeouts_are_failures(self):
        """Classifiers exceeding the timeout are recorded as missing."""
        config = CrossValidationConfig(
            num_times=1, num_folds=2, k=5, random_state=0, num_classifier_threads=4, classifier_timeout=0.25
        )
        result = self._engine([KNN(k=5), Sleeper()], config=config).run()
        self.assertEqual(len(result["Sleeper"].failures), 2)
        self.assertIsNone(result["Sleeper"].average_estimator)
        self.assertEqual(result["KNN(k=5)"].num_full_folds, 2)
        self.assertEqual(result.summary().loc["Sleeper", "missing_folds"], 2)

    def test_timeouts_stay_with_their_classifier(self):
        """With one worker thread, a slow classifier does not fail the ones queued after it."""
        config = CrossValidationConfig(
            num_times=1, num_folds=2, k=5, random_state=0, num_classifier_threads=1, classifier_timeout=0.3
        )
        result = self._engine([Sleeper(), ZeroRule(), KNN(k=5)], config=config).run()
        self.assertEqual(len(result["Sleeper"].failures), 2)
        self.assertEqual(len(result["ZeroRule"].failures), 0)
        self.assertEqual(result["ZeroRule"].num_full_folds, 2)
        self.assertEqual(result["KNN(k=5)"].num_full_folds, 2)

    def test_threads_do_not_change_results(self):
        """Results are identical for any number of worker threads."""
        classifiers = [KNN(k=5), HwKNN(k=5)]
        single = self._engine(classifiers).run()
        config = CrossValidationConfig(
            num_times=2, num_folds=4, k=5, random_state=0, num_threads=2, num_classifier_threads=3
        )
        threaded = self._engine(classifiers, config=config).run()
        for name in ["KNN(k=5)", "HwKNN(k=5)"]:
            np.testing.assert_allclose(
                single[name].average_estimator.confusion_matrix,
                threaded[name].average_estimator.confusion_matrix,
            )

    def test_approximate_full_quality_matches_exact(self):
        """Approximate neighbor sets at alpha = 1 give the exact results."""
        exact = self._engine([HwKNN(k=5)]).run()
        config = CrossValidationConfig(num_times=2, num_folds=4, k=5, random_state=0, approximate=True, alpha=1.0)
        approximate = self._engine([HwKNN(k=5)], config=config).run()
        np.testing.assert_allclose(
            exact["HwKNN(k=5)"].average_estimator.confusion_matrix,
            approximate["HwKNN(k=5)"].average_estimator.confusion_matrix,
        )

    def test_hwknn_weights_follow_the_engine_metric(self):
        """HwKNN with a larger k than the fold neighbor sets keeps the engine metric."""
        RecordingHwKNN.trained = []
        config = CrossValidationConfig(num_times=1, num_folds=4, k=3, random_state=0)
        self._engine([RecordingHwKNN(k=8)], config=config, metric="cosine").run()
        self.assertEqual(len(RecordingHwKNN.trained), 4)
        for points, labels, weights in RecordingHwKNN.trained:
            expected = NeighborSetFinder.from_points(points, labels=labels, metric="cosine").calculate(8)
            np.testing.assert_allclose(weights, expected.hwknn_weights())

    def test_secondary_distances_per_fold(self):
        """Classifiers see secondary distances built on the training part of their fold."""
        RecordingKNN.trained = []
        config = CrossValidationConfig(num_times=1, num_folds=4, k=3, random_state=0,
                                       secondary_distance="ls", secondary_k=6)
        result = self._engine([RecordingKNN(k=3), HwKNN(k=3)], config=config).run()
        self.assertEqual(result.nsf_k, 6 + 3 + 10)
        self.assertEqual(len(RecordingKNN.trained), 4)
        for _, _, train, test in result.folds:
            primary = NeighborSetFinder.from_points(self.X[train]).calculate(6)
            cross = np.linalg.norm(self.X[test][:, np.newaxis, :] - self.X[train][np.newaxis, :, :], axis=2)
            expected, _ = secondary_distances("ls", primary, cross)
            recorded = [dm for points, dm in RecordingKNN.trained if np.array_equal(points, self.X[train])]
            self.assertEqual(len(recorded), 1)
            np.testing.assert_allclose(recorded[0].data, expected.data, rtol=1e-9, atol=1e-12)
        self.assertGreater(result["HwKNN(k=3)"].average_estimator.accuracy, 0.9)

    def test_secondary_distances_with_instance_selection(self):
        """Every secondary distance works together with prototype selection."""
        for name in ("simcos", "simhub", "mp", "nicdm"):
            config = CrossValidationConfig(num_times=1, num_folds=4, k=5, random_state=0,
                                           secondary_distance=name, secondary_k=10)
            result = self._engine([KNN(k=5), HwKNN(k=5)], config=config,
                                  reducer=HubnessAwareSelector(k=5), keep_ratio=0.5).run()
            self.assertEqual(result["KNN(k=5)"].num_full_folds, 4)
            self.assertGreater(result["HwKNN(k=5)"].average_estimator.accuracy, 0.8)

    def test_interval_k(self):
        """Automatic k selection runs inside every fold."""
        config = CrossValidationConfig(num_times=1, num_folds=4, k=3, k_mode="interval", k_min=1, k_max=7,
                                       random_state=0)
        result = self._engine([KNN(k=3), HwKNN(k=3)], config=config).run()
        self.assertEqual(result.nsf_k, 2 * 7 + 10)
        self.assertEqual(result["KNN(k=3)"].num_full_folds, 4)
        self.assertEqual(result["HwKNN(k=3)"].num_full_folds, 4)

    def test_instance_selection(self):
        """Classifiers train on prototypes in both hubness estimation modes."""
        for mode in ("unbiased", "biased"):
            config = CrossValidationConfig(num_times=1, num_folds=4, k=5, random_state=0, proto_hubness_mode=mode)
            for reducer in (RandomSelector(), HubnessAwareSelector(k=5)):
                result = self._engine([KNN(k=5), HwKNN(k=5)], config=config, reducer=reducer, keep_ratio=0.5).run()
                self.assertEqual(result["HwKNN(k=5)"].num_full_folds, 4)
                self.assertGreater(result["KNN(k=5)"].average_estimator.accuracy, 0.8)

    def test_unlabeled_points_and_external_labels(self):
        """Unlabeled points are never tested; external labels are used for scoring."""
        labels = self.y.copy()
        labels[:4] = -1
        test_labels = (self.y + 1) % 4
        engine = MultiCrossValidation(
            self.X, labels, [KNN(k=5)], config=self.config, test_labels=test_labels, verbose=False
        )
        result = engine.run()
        knn = result["KNN(k=5)"]
        self.assertTrue(np.all(np.isnan(knn.per_point_accuracy[:4])))
        self.assertTrue(np.all(np.isfinite(knn.per_point_accuracy[4:])))
        self.assertLess(knn.average_estimator.accuracy, 0.2)

    def test_fold_file_reuse(self):
        """Stored folds are reused by later runs on the same dataset."""
        with tempfile.TemporaryDirectory() as directory:
            path = os.path.join(directory, "folds.json")
            first = self._engine([ZeroRule()], fold_file=path, dataset_name="blobs").run()
            config = CrossValidationConfig(num_times=2, num_folds=4, k=5, random_state=99)
            second = self._engine([ZeroRule()], config=config, fold_file=path, dataset_name="blobs").run()
        self.assertEqual(first.folds, second.folds)

    def test_save(self):
        """Results are written as CSV files, per fold when requested."""
        config = CrossValidationConfig(num_times=1, num_folds=4, k=5, random_state=0, keep_all_evaluations=True)
        result = self._engine([KNN(k=5), ZeroRule()], config=config).run()
        with tempfile.TemporaryDirectory() as directory:
            result.save(directory)
            files = set(os.listdir(directory))
        self.assertIn("summary.csv", files)
        self.assertIn("per_point_accuracy.csv", files)
        self.assertIn("KNN_k=5_average.csv", files)
        self.assertIn("ZeroRule_run0_fold3.csv", files)

    def test_configuration_errors(self):
        """Invalid inputs are rejected before any computation."""
        with self.assertRaises(ConfigurationError):
            self._engine([])
        with self.assertRaises(ConfigurationError):
            MultiCrossValidation(self.X, self.y[:-1], [KNN()], verbose=False)
        with self.assertRaises(ConfigurationError):
            self._engine([KNN()], config=CrossValidationConfig(k=80))
        with self.assertRaises(ConfigurationError):
            self._engine([KNN()], config=CrossValidationConfig(k_mode="interval"))
        with self.assertRaises(ConfigurationError):
            self._engine([KNN()], keep_ratio=2.0)
        with self.assertRaises(ConfigurationError):
            self._engine([KNN()], config=CrossValidationConfig(secondary_distance="snn"))
        with self.assertRaises(ConfigurationError):
            self._engine([KNN()], config=CrossValidationConfig(secondary_distance="mp", secondary_k=0))

    def test_metric_errors_are_fatal(self):
        """A failing metric aborts the run."""
        def fragile(x, y):
            if x[0] == 2.0 and y[0] == 5.0:
                raise ValueError("undefined")
            return abs(x[0] - y[0])

        points = np.arange(40, dtype=np.float64).reshape(-1, 1)
        labels = np.repeat([0, 1], 20)
        engine = MultiCrossValidation(points, labels, [KNN(k=3)], config=self.config,
                                      metric=fragile, verbose=False)
        with self.assertRaises(MetricComputationError):
            engine.run()
        self.assertIs(engine.state, EngineState.INITIALIZED)


if __name__ == "__main__":
    unittest.main()
