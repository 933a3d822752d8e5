# hubness_utils.py


#
# Imports
#

import time
from contextlib import contextmanager

import numpy as np
import pandas as pd
import plotly.express as px
from scipy.stats import kurtosis, skew


#
# Auxiliary functions for timing, hubness diagnostics and plotting
#


#
# Timing a given block of code; accumulating the measurement in a given dictionary
#
@contextmanager
def timing(block_name, store):
    """
    Add the wall clock time spent in the block to `store[block_name]`.
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        store[block_name] = store.get(block_name, 0.0) + time.perf_counter() - start_time


#
# Shape of the neighbor occurrence distribution
#
def occurrence_skewness(occurrences):
    """
    Parameters
    ----------
    occurrences: (numpy.ndarray) Neighbor occurrence frequencies.

    Returns
    -------
    float: Standardized third moment of the occurrence distribution; 0 when it is constant.
    """
    occurrences = np.asarray(occurrences, dtype=np.float64)
    if occurrences.size == 0 or np.all(occurrences == occurrences[0]):
        return 0.0
    return float(skew(occurrences))


def occurrence_kurtosis(occurrences):
    """
    Parameters
    ----------
    occurrences: (numpy.ndarray) Neighbor occurrence frequencies.

    Returns
    -------
    float: Excess kurtosis of the occurrence distribution; 0 when it is constant.
    """
    occurrences = np.asarray(occurrences, dtype=np.float64)
    if occurrences.size == 0 or np.all(occurrences == occurrences[0]):
        return 0.0
    return float(kurtosis(occurrences))


#
# Summary statistics of a neighbor set finder
#
def hubness_statistics(nsf, num_classes=None):
    """
    Collect hubness diagnostics of a calculated neighbor set finder.

    Parameters
    ----------
    nsf: (NeighborSetFinder) A finder with calculated neighbor sets.
    num_classes: (int or `None`) Number of classes; inferred from the labels if `None`.

    Returns
    -------
    pandas.Series with the occurrence skewness and kurtosis, the hub, orphan and
    regular point percentages, the k-distance mean and deviation, and, for labeled
    data, the bad occurrence percentage, the mean neighborhood and reverse
    neighborhood entropies and the error-inducing occurrence percentage.
    """
    occurrences = nsf.occurrence_frequencies
    kdist_mean, kdist_std = nsf.kdistance_stats()
    stats = {
        "k": nsf.k,
        "n": nsf.n,
        "skewness": occurrence_skewness(occurrences),
        "kurtosis": occurrence_kurtosis(occurrences),
        "max_occurrence": int(occurrences.max()),
        "hub_percentage": 100.0 * nsf.hubs().size / nsf.n,
        "orphan_percentage": 100.0 * nsf.orphans().size / nsf.n,
        "regular_percentage": 100.0 * nsf.regular_points().size / nsf.n,
        "kdistance_mean": kdist_mean,
        "kdistance_std": kdist_std,
    }
    if nsf.labels is not None:
        total = max(int(occurrences.sum()), 1)
        stats["bad_occurrence_percentage"] = 100.0 * nsf.bad_frequencies.sum() / total
        stats["k_entropy_mean"] = float(nsf.k_entropies(num_classes).mean())
        stats["reverse_entropy_mean"] = float(nsf.reverse_entropies(num_classes).mean())
        stats["error_inducing_percentage"] = 100.0 * nsf.error_inducing_hubness().sum() / total
    return pd.Series(stats, name="hubness")


#
# Display the neighbor occurrence distribution
#
def display_occurrence_distribution(nsf, labels=None):
    """
    Parameters
    ----------
    nsf: (NeighborSetFinder) A finder with calculated neighbor sets.
    labels: (numpy.ndarray or `None`) Labels to color the histogram by; the finder's labels if `None`.

    Returns
    -------
    object:
        Histogram of the neighbor occurrence frequencies (using Plotly Express).
    """
    data_df = pd.DataFrame({"occurrences": nsf.occurrence_frequencies})
    labels = nsf.labels if labels is None else labels
    title = f"Neighbor occurrences for k = {nsf.k}"
    if labels is not None:
        data_df["label"] = np.asarray(labels).astype("str")
        return px.histogram(data_df, x="occurrences", color="label", title=title)
    return px.histogram(data_df, x="occurrences", title=title)
