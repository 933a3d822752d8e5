# estimator.py

"""
Confusion-matrix based evaluation of classifiers.

Confusion matrices are indexed `[actual][predicted]` throughout the package:
cell (i, j) holds the (possibly fractional) number of test instances of class i
that were assigned to class j. Precision of class c is therefore its diagonal
cell over its column sum, and recall its diagonal cell over its row sum.
"""

#
# Imports
#

import numpy as np
import pandas as pd

from .errors import ConfigurationError

MAIN_METRICS = ("accuracy", "avg_precision", "avg_recall", "weighted_f", "macro_f", "mcc")


class ClassificationEstimator:
    """
    Classification quality measures derived from a confusion matrix.

    Classes whose precision (or recall) denominator is zero get a value of 0 and
    are left out of the corresponding macro average. A class contributes to the
    macro F-measure when it was either predicted or present.

    Parameters
    ----------
    confusion_matrix: (array-like) Square (C, C) non-negative matrix, `[actual][predicted]`.

    Attributes
    ----------
    accuracy: float
        Trace over total.
    precision: numpy.ndarray
        Per-class precision.
    recall: numpy.ndarray
        Per-class recall.
    f1: numpy.ndarray
        Per-class F1 score.
    avg_precision: float
        Macro-averaged precision over classes that were predicted.
    avg_recall: float
        Macro-averaged recall over classes that were present.
    macro_f: float
        Mean per-class F1 over classes that were predicted or present.
    weighted_f: float
        Per-class F1 weighted by the share of each class among the actual labels.
    mcc: float
        Matthews correlation coefficient (the multiclass generalization; the usual
        binary coefficient for two classes).
    """

    def __init__(self, confusion_matrix):
        matrix = np.array(confusion_matrix, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1] or matrix.shape[0] == 0:
            raise ConfigurationError(f"Expected a square confusion matrix, got shape {matrix.shape}")
        if np.any(matrix < 0) or not np.all(np.isfinite(matrix)):
            raise ConfigurationError("Confusion matrix entries must be finite and non-negative")
        self.confusion_matrix = matrix
        self.accuracy = None
        self.precision = None
        self.recall = None
        self.f1 = None
        self.avg_precision = None
        self.avg_recall = None
        self.macro_f = None
        self.weighted_f = None
        self.mcc = None

    @classmethod
    def from_predictions(cls, predicted, actual, num_classes, weights=None):
        """
        Estimator of hard predictions against actual labels; optional per-instance weights.
        """
        predicted = np.asarray(predicted, dtype=np.int64)
        actual = np.asarray(actual, dtype=np.int64)
        if predicted.shape != actual.shape:
            raise ConfigurationError("Predicted and actual labels differ in length")
        matrix = np.zeros((num_classes, num_classes), dtype=np.float64)
        np.add.at(matrix, (actual, predicted), 1.0 if weights is None else weights)
        return cls(matrix).calculate_estimates()

    @property
    def num_classes(self):
        return self.confusion_matrix.shape[0]

    @property
    def total(self):
        return float(self.confusion_matrix.sum())

    @property
    def error_rate(self):
        return 1.0 - self.accuracy

    def is_binary(self):
        return self.num_classes == 2

    def calculate_estimates(self):
        """
        Compute every measure from the confusion matrix.

        Returns
        -------
        self
        """
        matrix = self.confusion_matrix
        diagonal = np.diag(matrix)
        predicted_totals = matrix.sum(axis=0)
        actual_totals = matrix.sum(axis=1)
        total = matrix.sum()
        #
        predicted_any = predicted_totals > 0
        present = actual_totals > 0
        self.precision = np.divide(diagonal, predicted_totals, out=np.zeros_like(diagonal), where=predicted_any)
        self.recall = np.divide(diagonal, actual_totals, out=np.zeros_like(diagonal), where=present)
        denominator = self.precision + self.recall
        self.f1 = np.divide(
            2.0 * self.precision * self.recall, denominator,
            out=np.zeros_like(diagonal), where=denominator > 0,
        )
        self.accuracy = float(diagonal.sum() / total) if total > 0 else 0.0
        self.avg_precision = float(self.precision[predicted_any].mean()) if predicted_any.any() else 0.0
        self.avg_recall = float(self.recall[present].mean()) if present.any() else 0.0
        relevant = predicted_any | present
        self.macro_f = float(self.f1[relevant].mean()) if relevant.any() else 0.0
        self.weighted_f = float(np.dot(actual_totals / total, self.f1)) if total > 0 else 0.0
        #
        covariance = diagonal.sum() * total - np.dot(predicted_totals, actual_totals)
        spread = (total ** 2 - np.dot(predicted_totals, predicted_totals)) * \
            (total ** 2 - np.dot(actual_totals, actual_totals))
        self.mcc = float(covariance / np.sqrt(spread)) if spread > 0 else 0.0
        return self

    def _require_estimates(self):
        if self.accuracy is None:
            self.calculate_estimates()

    def f_measure(self, beta=1.0):
        """
        F-beta score of the macro-averaged precision and recall.
        """
        self._require_estimates()
        b2 = beta * beta
        denominator = b2 * self.avg_precision + self.avg_recall
        if denominator == 0:
            return 0.0
        return (1.0 + b2) * self.avg_precision * self.avg_recall / denominator

    def merge(self, other):
        """
        Estimator of the summed confusion matrices.
        """
        if other.num_classes != self.num_classes:
            raise ConfigurationError("Cannot merge estimators with different class counts")
        return ClassificationEstimator(self.confusion_matrix + other.confusion_matrix).calculate_estimates()

    #
    # Aggregation over repetitions
    #

    @staticmethod
    def average(estimators):
        """
        Average classifier performance: the estimator of the cell-wise mean confusion matrix.

        Parameters
        ----------
        estimators: (iterable of ClassificationEstimator or `None`) Missing entries are skipped.

        Returns
        -------
        ClassificationEstimator, or `None` when no estimator is available.
        """
        valid = [estimator for estimator in estimators if estimator is not None]
        if not valid:
            return None
        matrices = np.stack([estimator.confusion_matrix for estimator in valid])
        return ClassificationEstimator(matrices.mean(axis=0)).calculate_estimates()

    @staticmethod
    def spread(estimators):
        """
        Standard deviations (population) of the scalar measures across estimators.

        Returns
        -------
        pandas.Series indexed by the main measure names; `None` entries are skipped.
        """
        valid = [estimator for estimator in estimators if estimator is not None]
        for estimator in valid:
            estimator._require_estimates()
        values = {
            name: float(np.std([getattr(estimator, name) for estimator in valid])) if valid else np.nan
            for name in MAIN_METRICS
        }
        return pd.Series(values, name="std")

    #
    # Output
    #

    def to_series(self):
        """ The main measures as a pandas Series """
        self._require_estimates()
        return pd.Series({name: getattr(self, name) for name in MAIN_METRICS}, name="estimate")

    def summary_frame(self):
        """ Per-class precision, recall and F1 as a pandas DataFrame """
        self._require_estimates()
        return pd.DataFrame(
            {
                "precision": self.precision,
                "recall": self.recall,
                "f1": self.f1,
                "support": self.confusion_matrix.sum(axis=1),
            },
            index=pd.RangeIndex(self.num_classes, name="class"),
        )

    def save(self, path):
        """
        Write the main measures, the per-class measures and the confusion matrix as CSV blocks.
        """
        self._require_estimates()
        matrix = pd.DataFrame(
            self.confusion_matrix,
            index=pd.Index(range(self.num_classes), name="actual"),
            columns=[f"predicted_{c}" for c in range(self.num_classes)],
        )
        with open(path, "w", encoding="utf-8") as stream:
            self.to_series().to_frame().T.to_csv(stream, index=False)
            stream.write("\n")
            self.summary_frame().to_csv(stream)
            stream.write("\n")
            matrix.to_csv(stream)

    def __repr__(self):
        if self.accuracy is None:
            return f"ClassificationEstimator(num_classes={self.num_classes})"
        return f"ClassificationEstimator(num_classes={self.num_classes}, accuracy={self.accuracy:.4f})"
