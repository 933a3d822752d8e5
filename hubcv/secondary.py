# secondary.py

"""
Secondary distances: primary distances rescaled by the neighborhood structure
of the training set, which reduces hubness in high-dimensional data.

Every transform works on one fold: it takes the neighbor sets of the training
points (under the primary distances) and the primary distances from the test
points to the training points, and returns the secondary distance matrix of the
training points together with the secondary test-to-training distances.

Shared-neighbor distances:
    simcos  k minus the number of shared k-nearest neighbors.
    simhub  like simcos, with each shared neighbor weighted by its informativeness
            and the purity of its reverse neighbor set.

Rescaled distances:
    mp      mutual proximity, with normal distributions fitted to the distances
            from each point to all training points.
    ls      local scaling by the distance to the k-th nearest neighbor.
    nicdm   non-iterative contextual dissimilarity, scaling by the mean distance
            to the k nearest neighbors.
"""

#
# Imports
#

import numpy as np
from loguru import logger
from scipy.stats import norm

from .config import SECONDARY_DISTANCES
from .distance_matrix import DistanceMatrix
from .errors import ConfigurationError
from .knn_search import top_k

SIMHUB_THETA = 0.0
""" Added to the purity term of the simhub weights """
_TINY_SCALE = np.finfo(np.float64).tiny


#
# Helpers
#
def nearest_columns(distances, k):
    """
    The k nearest columns of every row of a query block.

    Parameters
    ----------
    distances: (numpy.ndarray) (m, n) distances from query points to n points.
    k: (int) Number of neighbors, at most n.

    Returns
    -------
    numpy.ndarray, numpy.ndarray
        (m, k) column positions ordered by (distance, position) and their distances.
    """
    distances = np.asarray(distances, dtype=np.float64)
    candidates = np.arange(distances.shape[1])
    positions = np.empty((distances.shape[0], k), dtype=np.int64)
    for q, row in enumerate(distances):
        positions[q] = top_k(row, candidates, k)
    return positions, np.take_along_axis(distances, positions, axis=1)


def _membership(kneighbors, n):
    """ (rows, n) indicator of the neighbor sets """
    sets = np.zeros((kneighbors.shape[0], n))
    np.put_along_axis(sets, kneighbors, 1.0, axis=1)
    return sets


def _to_matrix(dense):
    """ A DistanceMatrix from a dense transform result, taking its upper triangle """
    dense = np.maximum(dense, 0.0)
    np.fill_diagonal(dense, 0.0)
    return DistanceMatrix.from_dense(np.triu(dense, 1) + np.triu(dense, 1).T)


#
# Shared-neighbor distances
#
def simhub_weights(nsf, num_classes, theta=SIMHUB_THETA):
    """
    Weights of the training points as shared neighbors.

    A point is weighted by log2(n / (N_k + 1)) * (log2(C) - H_R + theta), with N_k
    its occurrence frequency and H_R the label entropy of its reverse neighbors,
    normalized by max(1, largest absolute weight).
    """
    informativeness = np.log2(nsf.n / (nsf.occurrence_frequencies + 1.0))
    purity = np.log2(max(num_classes, 1)) - nsf.reverse_entropies(num_classes) + theta
    weights = informativeness * purity
    return weights / max(float(np.abs(weights).max(initial=0.0)), 1.0)


def shared_neighbor_distances(nsf, test_distances, weights=None):
    """
    k minus the (weighted) number of shared k-nearest neighbors.

    A test point is compared through its k nearest training points.

    Parameters
    ----------
    nsf: (NeighborSetFinder) Neighbor sets of the training points.
    test_distances: (numpy.ndarray) (m, n) primary test-to-training distances.
    weights: (numpy.ndarray or `None`) Weight of every training point as a shared neighbor;
        plain counts if `None`.

    Returns
    -------
    DistanceMatrix, numpy.ndarray
    """
    k = nsf.k
    train_sets = _membership(nsf.kneighbors, nsf.n)
    test_sets = _membership(nearest_columns(test_distances, k)[0], nsf.n)
    if weights is not None:
        weighted = train_sets * weights[np.newaxis, :]
    else:
        weighted = train_sets
    train = k - weighted @ train_sets.T
    test = k - test_sets @ weighted.T
    return _to_matrix(train), np.maximum(test, 0.0)


def simcos(nsf, test_distances, num_classes=None):
    return shared_neighbor_distances(nsf, test_distances)


def simhub(nsf, test_distances, num_classes=None):
    if num_classes is None:
        num_classes = nsf.num_classes
    return shared_neighbor_distances(nsf, test_distances, simhub_weights(nsf, num_classes))


#
# Rescaled distances
#
def _survival(distances, mean, std):
    return norm.sf(distances, loc=mean, scale=np.where(std > 0, std, _TINY_SCALE))


def mutual_proximity(nsf, test_distances, num_classes=None):
    """
    1 - P(X > d) * P(Y > d) for normal distributions of the distances from each
    of the two points to all training points.
    """
    dense = nsf.distance_matrix.to_dense()
    n = nsf.n
    others = dense[~np.eye(n, dtype=bool)].reshape(n, n - 1)
    mean, std = others.mean(axis=1), others.std(axis=1)
    test_mean, test_std = test_distances.mean(axis=1), test_distances.std(axis=1)
    train = 1.0 - (_survival(dense, mean[:, np.newaxis], std[:, np.newaxis])
                   * _survival(dense, mean[np.newaxis, :], std[np.newaxis, :]))
    test = 1.0 - (_survival(test_distances, test_mean[:, np.newaxis], test_std[:, np.newaxis])
                  * _survival(test_distances, mean[np.newaxis, :], std[np.newaxis, :]))
    return _to_matrix(train), np.clip(test, 0.0, 1.0)


def _local_scale(distances, scale):
    # Zero scales send every positive distance to 1
    safe = np.where(scale > 0, scale, 1.0)
    return np.where(scale > 0, 1.0 - np.exp(-distances * distances / safe), (distances > 0).astype(np.float64))


def local_scaling(nsf, test_distances, num_classes=None):
    """
    1 - exp(-d^2 / (sigma_i * sigma_j)), sigma being the distance to the k-th nearest neighbor.
    """
    k = nsf.k
    sigma = nsf.kdistances[:, k - 1]
    test_sigma = nearest_columns(test_distances, k)[1][:, k - 1]
    train = _local_scale(nsf.distance_matrix.to_dense(), sigma[:, np.newaxis] * sigma[np.newaxis, :])
    test = _local_scale(test_distances, test_sigma[:, np.newaxis] * sigma[np.newaxis, :])
    return _to_matrix(train), test


def _contextual(distances, scale):
    # Zero scales keep the primary distance
    return np.where(scale > 0, distances / np.sqrt(np.where(scale > 0, scale, 1.0)), distances)


def nicdm(nsf, test_distances, num_classes=None):
    """
    d / sqrt(mu_i * mu_j), mu being the mean distance to the k nearest neighbors.
    """
    mean = nsf.kdistances.mean(axis=1)
    test_mean = nearest_columns(test_distances, nsf.k)[1].mean(axis=1)
    train = _contextual(nsf.distance_matrix.to_dense(), mean[:, np.newaxis] * mean[np.newaxis, :])
    test = _contextual(test_distances, test_mean[:, np.newaxis] * mean[np.newaxis, :])
    return _to_matrix(train), test


_TRANSFORMS = {
    "simcos": simcos,
    "simhub": simhub,
    "mp": mutual_proximity,
    "ls": local_scaling,
    "nicdm": nicdm,
}


def secondary_distances(name, nsf, test_distances, num_classes=None):
    """
    Apply a secondary distance to the training and test points of a fold.

    Parameters
    ----------
    name: (str) One of 'simcos', 'simhub', 'mp', 'ls', 'nicdm'.
    nsf: (NeighborSetFinder) Neighbor sets of the training points under the primary
        distances, at the secondary neighborhood size; labeled for 'simhub'.
    test_distances: (numpy.ndarray) (m, n) primary distances from the test points
        to the training points.
    num_classes: (int or `None`) Number of classes, used by 'simhub'.

    Returns
    -------
    DistanceMatrix, numpy.ndarray
        Secondary distances between the training points, and from the test points
        to the training points.
    """
    if name not in SECONDARY_DISTANCES:
        raise ConfigurationError(f"Unsupported secondary distance: {name!r}")
    if nsf.kneighbors is None:
        raise ConfigurationError("Secondary distances need the neighbor sets of the training points")
    test_distances = np.asarray(test_distances, dtype=np.float64).reshape(-1, nsf.n)
    logger.debug(f"secondary distances ... ({name}, k = {nsf.k}, {nsf.n} training points)")
    return _TRANSFORMS[name](nsf, test_distances, num_classes)
