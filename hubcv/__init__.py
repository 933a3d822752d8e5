# hubcv

"""
Hubness-aware kNN classification and repeated cross-validation.
"""

__version__ = "0.1.0"

from .classifiers import (  # classifier interface and built-in classifiers
    KNN,
    Capability,
    Classifier,
    DiscreteNaiveBayes,
    HwKNN,
    SklearnClassifier,
    ZeroRule,
)
from .config import CrossValidationConfig
from .cross_validation import ClassifierResult, CrossValidationResult, MultiCrossValidation
from .distance_matrix import DistanceMatrix
from .errors import (
    ClassifierFailure,
    ConfigurationError,
    DegenerateDataError,
    HubCVError,
    MetricComputationError,
)
from .estimator import ClassificationEstimator
from .folds import FoldAssignment, FoldGenerator, load_folds, save_folds
from .instance_selection import HubnessAwareSelector, InstanceSelector, RandomSelector
from .metrics import get_metric
from .neighbors import NeighborSetFinder
from .secondary import secondary_distances

__all__ = [
    'Capability', 'Classifier', 'KNN', 'HwKNN', 'ZeroRule', 'DiscreteNaiveBayes', 'SklearnClassifier',
    'CrossValidationConfig', 'MultiCrossValidation', 'ClassifierResult', 'CrossValidationResult',
    'DistanceMatrix', 'NeighborSetFinder', 'get_metric', 'secondary_distances', 'ClassificationEstimator',
    'FoldAssignment', 'FoldGenerator', 'load_folds', 'save_folds',
    'InstanceSelector', 'RandomSelector', 'HubnessAwareSelector',
    'HubCVError', 'ConfigurationError', 'MetricComputationError', 'DegenerateDataError', 'ClassifierFailure',
]
