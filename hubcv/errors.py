# errors.py

"""
Exception taxonomy for hubness-aware cross-validation.

Matrix, fold and configuration errors are fatal and propagate to the caller.
Classifier failures are recorded per (classifier, run, fold) and do not abort
a cross-validation run.
"""


class HubCVError(Exception):
    """Base class for all hubcv errors."""


class ConfigurationError(HubCVError, ValueError):
    """Invalid parameters or mismatched inputs, raised before any computation starts."""


class MetricComputationError(HubCVError):
    """
    A distance metric failed, or returned an invalid value, for a pair of points.

    Parameters
    ----------
    i: (int) First point index.
    j: (int) Second point index.
    message: (str) Description of the failure.
    """

    def __init__(self, i, j, message="metric computation failed"):
        super().__init__(f"{message} for pair ({i}, {j})")
        self.i = i
        self.j = j


class DegenerateDataError(HubCVError):
    """Stratified folds cannot cover every class in both train and test."""


class ClassifierFailure(HubCVError):
    """
    A classifier raised during training or testing on one fold.

    Instances are recorded in cross-validation results rather than raised.
    """

    def __init__(self, classifier_name, run, fold, cause):
        super().__init__(
            f"{classifier_name} failed on run {run}, fold {fold}: {cause!r}"
        )
        self.classifier_name = classifier_name
        self.run = run
        self.fold = fold
        self.cause = cause
