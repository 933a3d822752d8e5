# instance_selection.py

"""
Instance selection: reducing a training set to a set of prototypes.

Selectors return the retained prototypes as sorted positions within the training
set. The neighbor occurrence statistics of the prototypes are then estimated in
one of two modes:

- 'unbiased': every training point contributes its k nearest prototypes;
- 'biased': only the prototypes contribute, i.e. the statistics of the reduced
  set taken on its own.
"""

#
# Imports
#

import copy
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .errors import ConfigurationError

DEFAULT_KEEP_RATIO = 0.5
""" Share of the training set kept by random selection in automatic mode """


@dataclass
class SelectionResult:
    """
    Prototypes chosen from a training set and their occurrence statistics.

    Attributes
    ----------
    prototypes: Sorted prototype positions within the training set.
    hubness_mode: 'unbiased' or 'biased'.
    k: Neighborhood size of the occurrence statistics.
    occurrence_frequencies: Occurrences of each prototype, aligned with `prototypes`.
    good_frequencies: Occurrences with a matching label.
    bad_frequencies: Occurrences with a different label.
    """

    prototypes: np.ndarray
    hubness_mode: str = "unbiased"
    k: Optional[int] = None
    occurrence_frequencies: Optional[np.ndarray] = None
    good_frequencies: Optional[np.ndarray] = None
    bad_frequencies: Optional[np.ndarray] = None


class InstanceSelector:
    """
    Base class of instance selectors.

    Parameters
    ----------
    hubness_mode: (str) Prototype hubness estimation mode, 'unbiased' or 'biased'.
    random_state: (int or `None`) Seed for selectors that sample.
    """

    def __init__(self, hubness_mode="unbiased", random_state=None):
        if hubness_mode not in ("unbiased", "biased"):
            raise ConfigurationError(f"Unsupported prototype hubness mode: {hubness_mode!r}")
        self.hubness_mode = hubness_mode
        self.random_state = random_state

    def copy(self):
        return copy.deepcopy(self)

    def select(self, labels, keep, nsf=None):
        """
        Choose prototype positions.

        Parameters
        ----------
        labels: (numpy.ndarray) Training labels.
        keep: (int or `None`) Number of prototypes, or `None` for the selector's own choice.
        nsf: (NeighborSetFinder or `None`) Training neighbor sets.
        """
        raise NotImplementedError

    def reduce(self, labels, keep_ratio=0.0, nsf=None):
        """
        Reduce a training set.

        Parameters
        ----------
        labels: (array-like of int) Training labels.
        keep_ratio: (float) Share of the training set to keep in (0, 1]; 0 lets the selector decide.
        nsf: (NeighborSetFinder or `None`) Training neighbor sets, required by hubness-aware selectors.

        Returns
        -------
        SelectionResult with sorted prototype positions, covering every class.
        """
        labels = np.asarray(labels, dtype=np.int64)
        if not 0.0 <= keep_ratio <= 1.0:
            raise ConfigurationError(f"keep_ratio must lie in [0, 1], got {keep_ratio}")
        keep = max(1, math.ceil(keep_ratio * labels.size)) if keep_ratio > 0 else None
        prototypes = np.unique(np.asarray(self.select(labels, keep, nsf), dtype=np.int64))
        prototypes = _cover_classes(prototypes, labels, self._preference(labels, nsf))
        return SelectionResult(prototypes=prototypes, hubness_mode=self.hubness_mode)

    def _preference(self, labels, nsf):
        """ Positions ordered from most to least preferred, used to fill missing classes """
        return np.arange(labels.size)

    def calculate_prototype_hubness(self, selection, nsf, k):
        """
        Fill in the occurrence statistics of the prototypes.

        Parameters
        ----------
        selection: (SelectionResult) Result of `reduce`.
        nsf: (NeighborSetFinder) Labeled training neighbor sets.
        k: (int) Neighborhood size; capped by the number of prototypes.

        Returns
        -------
        The updated `selection`.
        """
        prototypes = selection.prototypes
        labels = nsf.labels
        if prototypes.size < 2:
            raise ConfigurationError("Prototype hubness needs at least two prototypes")
        k = min(k, prototypes.size - 1)
        reduced = nsf.restrict(prototypes, k)
        if selection.hubness_mode == "biased":
            occurrences, good, bad = reduced.occurrence_frequencies, reduced.good_frequencies, reduced.bad_frequencies
        else:
            others = np.setdiff1d(np.arange(nsf.n), prototypes, assume_unique=True)
            other_neighbors = np.empty((0, k), dtype=np.int64)
            if others.size:
                other_neighbors = nsf.query_neighbors(others, prototypes, k)[0]
            targets = np.concatenate([reduced.kneighbors.ravel(), other_neighbors.ravel()])
            source_labels = np.concatenate([np.repeat(labels[prototypes], k), np.repeat(labels[others], k)])
            target_labels = labels[prototypes][targets]
            same = source_labels == target_labels
            occurrences = np.bincount(targets, minlength=prototypes.size)
            good = np.bincount(targets[same], minlength=prototypes.size)
            bad = np.bincount(targets[~same], minlength=prototypes.size)
        selection.k = k
        selection.occurrence_frequencies = occurrences
        selection.good_frequencies = good
        selection.bad_frequencies = bad
        return selection


def _cover_classes(prototypes, labels, preference):
    """
    Add the most preferred member of every class missing from the prototypes.
    """
    missing = np.setdiff1d(np.unique(labels), labels[prototypes])
    if missing.size == 0:
        return prototypes
    additions = [preference[labels[preference] == c][0] for c in missing]
    return np.union1d(prototypes, additions)


class RandomSelector(InstanceSelector):
    """
    Keeps a uniformly random subset of the training set.
    """

    def select(self, labels, keep, nsf=None):
        rng = np.random.default_rng(self.random_state)
        keep = keep or max(1, math.ceil(DEFAULT_KEEP_RATIO * labels.size))
        return rng.choice(labels.size, size=min(keep, labels.size), replace=False)


class HubnessAwareSelector(InstanceSelector):
    """
    Keeps the points that help kNN classification the most, scored by the
    difference between their good and bad occurrence frequencies (the hit-miss
    balance of their reverse neighbors).

    With no target size the points whose bad occurrences exceed their good ones
    are dropped.

    Parameters
    ----------
    k: (int) Neighborhood size of the occurrence statistics, default 5.
    """

    def __init__(self, k=5, hubness_mode="unbiased", random_state=None):
        super().__init__(hubness_mode, random_state)
        self.k = k

    def _scores(self, labels, nsf):
        if nsf is None or nsf.kneighbors is None:
            raise ConfigurationError("Hubness-aware selection requires calculated neighbor sets")
        if nsf.k > self.k:
            nsf = nsf.subset_for(self.k)
        if nsf.labels is None or not np.array_equal(nsf.labels, labels):
            nsf = nsf.recompute_for_labels(labels)
        return nsf.good_frequencies - nsf.bad_frequencies

    def _preference(self, labels, nsf):
        scores = self._scores(labels, nsf)
        return np.lexsort((np.arange(labels.size), -scores))

    def select(self, labels, keep, nsf=None):
        scores = self._scores(labels, nsf)
        if keep is None:
            return np.flatnonzero(scores >= 0)
        return self._preference(labels, nsf)[:keep]
