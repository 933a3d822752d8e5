# config.py

"""
Explicit configuration for cross-validation experiments.
"""

from dataclasses import dataclass
from typing import Optional

from .errors import ConfigurationError

#
# Defaults
#

MAX_FOLD_RETRIES = 100
""" Resampling bound for stratified fold generation """
DEFAULT_NUM_TIMES = 10
DEFAULT_NUM_FOLDS = 10
DEFAULT_K = 5
DEFAULT_ALPHA = 0.2
DEFAULT_DISCRETIZATION_BINS = 10
DEFAULT_SECONDARY_K = 50
NSF_EXTRA_NEIGHBORS = 10
""" Added to the neighborhood size of the full-set neighbor sets """

K_MODES = ("single", "interval")
PROTO_HUBNESS_MODES = ("unbiased", "biased")
SECONDARY_DISTANCES = ("simcos", "simhub", "mp", "ls", "nicdm")


@dataclass
class CrossValidationConfig:
    """
    Parameters of a repeated stratified cross-validation run.

    Parameters
    ----------
    num_times: (int) Number of independent repetitions, default 10.
    num_folds: (int) Number of folds per repetition, default 10.
    k: (int) Neighborhood size passed to neighbor-based classifiers, default 5.
    k_min: (int or `None`) Lower bound for automatic k selection.
    k_max: (int or `None`) Upper bound for automatic k selection.
    k_mode: (str) 'single' uses `k` for every classifier, 'interval' lets classifiers
        with automatic k selection search [k_min, k_max].
    approximate: (bool) Use approximate kNN search for the full-set neighbor sets, default `False`.
    alpha: (float) Quality of the approximate search in (0, 1]; 1 is exact.
    num_threads: (int) Worker threads for distance matrix and kNN computation.
    num_classifier_threads: (int) Worker threads for classifiers within one fold.
    classifier_timeout: (float or `None`) Wall clock limit in seconds per classifier and fold.
    max_fold_retries: (int) Resampling bound for fold generation.
    random_state: (int or `None`) Seed for fold generation and instance selection.
    proto_hubness_mode: (str) 'unbiased' or 'biased' prototype hubness estimation.
    discretization_bins: (int) Bins used when discretizing data for discrete classifiers.
    keep_all_evaluations: (bool) Persist per-fold estimators when saving results.
    secondary_distance: (str or `None`) Secondary distance computed per fold from the
        primary one: 'simcos', 'simhub', 'mp', 'ls' or 'nicdm'; `None` keeps the primary distance.
    secondary_k: (int) Neighborhood size the secondary distance is built on, default 50.
    """

    num_times: int = DEFAULT_NUM_TIMES
    num_folds: int = DEFAULT_NUM_FOLDS
    k: int = DEFAULT_K
    k_min: Optional[int] = None
    k_max: Optional[int] = None
    k_mode: str = "single"
    approximate: bool = False
    alpha: float = DEFAULT_ALPHA
    num_threads: int = 1
    num_classifier_threads: int = 1
    classifier_timeout: Optional[float] = None
    max_fold_retries: int = MAX_FOLD_RETRIES
    random_state: Optional[int] = None
    proto_hubness_mode: str = "unbiased"
    discretization_bins: int = DEFAULT_DISCRETIZATION_BINS
    keep_all_evaluations: bool = False
    secondary_distance: Optional[str] = None
    secondary_k: int = DEFAULT_SECONDARY_K

    @property
    def largest_k(self):
        """ Largest neighborhood size any classifier may request """
        if self.k_mode == "interval":
            return max(self.k, self.k_max)
        return self.k

    def nsf_size(self, n_points):
        """
        Neighborhood size of the full-set neighbor sets, bounded by the number of points.

        2 * largest_k + 10, or secondary_k + largest_k + 10 if that is larger and a
        secondary distance is used.
        """
        size = 2 * self.largest_k
        if self.secondary_distance is not None:
            size = max(size, self.secondary_k + self.largest_k)
        return min(size + NSF_EXTRA_NEIGHBORS, n_points - 1)

    def validate(self):
        """
        Check parameter ranges, raising ConfigurationError on the first violation.

        Returns
        -------
        self
        """
        if self.num_times < 1:
            raise ConfigurationError(f"num_times must be positive, got {self.num_times}")
        if self.num_folds < 2:
            raise ConfigurationError(f"num_folds must be at least 2, got {self.num_folds}")
        if self.k < 1:
            raise ConfigurationError(f"k must be positive, got {self.k}")
        if self.k_mode not in K_MODES:
            raise ConfigurationError(f"Unsupported k mode: {self.k_mode!r}")
        if self.k_mode == "interval":
            if self.k_min is None or self.k_max is None:
                raise ConfigurationError("k_min and k_max are required in interval mode")
            if not 1 <= self.k_min <= self.k_max:
                raise ConfigurationError(
                    f"Invalid k interval [{self.k_min}, {self.k_max}]"
                )
        if not 0.0 < self.alpha <= 1.0:
            raise ConfigurationError(f"alpha must lie in (0, 1], got {self.alpha}")
        if self.num_threads < 1 or self.num_classifier_threads < 1:
            raise ConfigurationError("Thread counts must be positive")
        if self.classifier_timeout is not None and self.classifier_timeout <= 0:
            raise ConfigurationError("classifier_timeout must be positive")
        if self.max_fold_retries < 1:
            raise ConfigurationError("max_fold_retries must be positive")
        if self.proto_hubness_mode not in PROTO_HUBNESS_MODES:
            raise ConfigurationError(
                f"Unsupported prototype hubness mode: {self.proto_hubness_mode!r}"
            )
        if self.discretization_bins < 2:
            raise ConfigurationError("discretization_bins must be at least 2")
        if self.secondary_distance is not None and self.secondary_distance not in SECONDARY_DISTANCES:
            raise ConfigurationError(f"Unsupported secondary distance: {self.secondary_distance!r}")
        if self.secondary_k < 1:
            raise ConfigurationError(f"secondary_k must be positive, got {self.secondary_k}")
        return self
