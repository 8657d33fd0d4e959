"""Alpha and beta diversity indices on spectral-species abundances.

All alpha functions accept a single abundance vector or a stack of them
(last axis = species) and return a float or an array. An empty community
(zero individuals) gives NaN.
"""

import logging

import numpy as np
from scipy.optimize import brentq
from scipy.spatial.distance import pdist, squareform

from specdiv.contracts.failure import ConfigurationError

__all__ = [
    'abundance_vector',
    'abundance_matrix',
    'shannon',
    'simpson',
    'fisher_alpha',
    'bray_curtis',
    'bray_curtis_matrix',
    'pcoa',
    'ALPHA_FUNCTIONS',
]

logger = logging.getLogger(__name__)


def _scalar_or_array(values: np.ndarray):
    return float(values) if values.ndim == 0 else values


def abundance_vector(ids: np.ndarray, nb_species: int) -> np.ndarray:
    """Count of each species id 1..nb_species (id 0 = no-data is ignored).

    Raises
    ------
    ConfigurationError
        If an id exceeds ``nb_species``.
    """
    ids = np.asarray(ids).ravel()
    if ids.size and ids.max() > nb_species:
        raise ConfigurationError(f"Species id {ids.max()} exceeds codebook size {nb_species}")
    return np.bincount(ids, minlength=nb_species + 1)[1:]


def abundance_matrix(ids: np.ndarray, nb_species: int) -> np.ndarray:
    """Abundance vectors of many communities at once.

    Parameters
    ----------
    ids : np.ndarray
        (n_communities, n_pixels) species ids, 0 = no-data.
    nb_species : int
        Codebook size.

    Returns
    -------
    np.ndarray
        (n_communities, nb_species) counts
    """
    ids = np.asarray(ids, dtype=np.int64)
    n = ids.shape[0]
    if ids.size and ids.max() > nb_species:
        raise ConfigurationError(f"Species id {ids.max()} exceeds codebook size {nb_species}")
    offsets = (nb_species + 1) * np.arange(n)[:, None]
    counts = np.bincount((ids + offsets).ravel(), minlength=n * (nb_species + 1))
    return counts.reshape(n, nb_species + 1)[:, 1:]


def _proportions(abundance: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    a = np.asarray(abundance, dtype=np.float64)
    total = a.sum(axis=-1, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        p = a / total
    return p, total[..., 0]


def shannon(abundance: np.ndarray):
    """Shannon entropy H = -sum(p ln p)."""
    p, total = _proportions(abundance)
    with np.errstate(divide="ignore", invalid="ignore"):
        terms = np.where(p > 0, p * np.log(p), 0.0)
    h = np.where(total > 0, -terms.sum(axis=-1), np.nan) + 0.0
    return _scalar_or_array(h)


def simpson(abundance: np.ndarray):
    """Gini-Simpson index 1 - sum(p^2)."""
    p, total = _proportions(abundance)
    d = np.where(total > 0, 1.0 - np.nansum(p * p, axis=-1), np.nan)
    return _scalar_or_array(d)


def _solve_fisher(S: int, N: int) -> float:
    """Solve S = alpha * ln(1 + N / alpha) for alpha."""
    if S == 0 or S >= N:
        return np.nan

    def f(alpha):
        return alpha * np.log1p(N / alpha) - S

    low, high = 1e-9, max(1.0, float(S))
    while f(high) <= 0:
        high *= 2.0
    return float(brentq(f, low, high, xtol=1e-12, maxiter=500))


def fisher_alpha(abundance: np.ndarray):
    """Fisher's log-series alpha.

    S == N (every individual a distinct species) has no finite solution
    and gives NaN, as does an empty community.
    """
    a = np.asarray(abundance)
    S = np.count_nonzero(a, axis=-1)
    N = a.sum(axis=-1)
    if np.ndim(S) == 0:
        return _solve_fisher(int(S), int(N))

    # Many windows share the same (S, N): solve each pair once
    pairs, inverse = np.unique(np.stack([S, N], axis=-1).reshape(-1, 2), axis=0, return_inverse=True)
    solved = np.array([_solve_fisher(int(s), int(n)) for s, n in pairs])
    return solved[np.asarray(inverse).ravel()].reshape(S.shape)


ALPHA_FUNCTIONS = {
    "shannon": shannon,
    "simpson": simpson,
    "fisher": fisher_alpha,
}


def bray_curtis(x: np.ndarray, y: np.ndarray) -> float:
    """Bray-Curtis dissimilarity 1 - 2 sum(min) / (sum x + sum y); NaN for two empty communities."""
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    total = x.sum() + y.sum()
    if total == 0:
        return np.nan
    return float(1.0 - 2.0 * np.minimum(x, y).sum() / total)


def bray_curtis_matrix(abundances: np.ndarray) -> np.ndarray:
    """Symmetric (n, n) Bray-Curtis matrix with a zero diagonal."""
    abundances = np.asarray(abundances, dtype=np.float64)
    if abundances.shape[0] < 2:
        return np.zeros((abundances.shape[0], abundances.shape[0]))
    with np.errstate(divide="ignore", invalid="ignore"):
        return squareform(pdist(abundances, metric="braycurtis"))


def pcoa(distances: np.ndarray, nb_axes: int) -> tuple[np.ndarray, np.ndarray]:
    """Principal coordinates analysis (classical multidimensional scaling).

    Parameters
    ----------
    distances : np.ndarray
        (n, n) symmetric dissimilarity matrix.
    nb_axes : int
        Number of coordinates to return.

    Returns
    -------
    coordinates : np.ndarray
        (n, nb_axes); axes beyond the positive eigenvalues are zero.
    eigenvalues : np.ndarray
        (nb_axes,) eigenvalues of the retained axes.
    """
    d = np.asarray(distances, dtype=np.float64)
    n = d.shape[0]
    centering = np.eye(n) - np.full((n, n), 1.0 / n)
    b = -0.5 * centering @ (d ** 2) @ centering

    eigenvalues, vectors = np.linalg.eigh(b)
    order = np.argsort(eigenvalues)[::-1][:nb_axes]
    eigenvalues, vectors = eigenvalues[order], vectors[:, order]

    positive = eigenvalues > 1e-12
    coordinates = np.zeros((n, nb_axes))
    coordinates[:, :positive.sum()] = vectors[:, positive] * np.sqrt(eigenvalues[positive])

    # Deterministic orientation
    if n:
        pivots = coordinates[np.argmax(np.abs(coordinates), axis=0), np.arange(nb_axes)]
        coordinates = coordinates * np.where(pivots < 0, -1.0, 1.0)
    eigenvalues = np.pad(np.where(positive, eigenvalues, 0.0), (0, nb_axes - eigenvalues.size))
    return coordinates, eigenvalues
