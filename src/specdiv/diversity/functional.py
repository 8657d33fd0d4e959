"""Functional diversity (FRic / FEve / FDiv) in the reduced trait space.

Traits are the reduced components of each pixel; every pixel counts as one
individual of equal weight.

- FRic: convex hull volume of the community (range for a single trait),
  relative to the hull of the whole image.
- FEve: regularity of the minimum spanning tree edge lengths (Villéger et al. 2008).
- FDiv: divergence of the points from their centroid (Villéger et al. 2008).
"""

import logging
from typing import TYPE_CHECKING

import numpy as np
from scipy.sparse.csgraph import minimum_spanning_tree
from scipy.spatial import ConvexHull, QhullError
from scipy.spatial.distance import pdist, squareform

from specdiv.contracts.failure import NumericalError

if TYPE_CHECKING:
    from specdiv.raster.reader import ChunkedRasterReader

__all__ = [
    'FUNCTIONAL_INDICES',
    'hull_measure',
    'HullAccumulator',
    'trait_space_volume',
    'functional_indices',
]

logger = logging.getLogger(__name__)

FUNCTIONAL_INDICES = ("fric", "feve", "fdiv")

# Stand-in for zero distances: csgraph treats 0 as "no edge"
_TINY_DISTANCE = 1e-12


def hull_measure(points: np.ndarray) -> float:
    """Hull volume of (n, d) points, or their range when d == 1.

    Raises
    ------
    QhullError
        If the points are degenerate (coplanar, too few).
    """
    if points.shape[1] == 1:
        return float(np.ptp(points[:, 0]))
    return float(ConvexHull(points).volume)


class HullAccumulator:
    """Convex hull of a point cloud too large for memory, built chunk by chunk.

    Only hull vertices are kept between updates, so memory stays bounded
    by the hull size rather than the number of pixels.
    """

    def __init__(self, n_dims: int):
        self.n_dims = n_dims
        self.points = np.empty((0, n_dims))

    def update(self, points: np.ndarray) -> None:
        if points.shape[0] == 0:
            return
        candidates = np.vstack([self.points, np.asarray(points, dtype=np.float64)])
        if self.n_dims == 1:
            self.points = np.array([[candidates.min()], [candidates.max()]])
            return
        try:
            self.points = candidates[ConvexHull(candidates).vertices]
        except QhullError:
            # Flat so far: keep the distinct points until the cloud gains volume
            self.points = np.unique(candidates, axis=0)

    @property
    def volume(self) -> float:
        """Hull volume of everything seen so far.

        Raises
        ------
        NumericalError
            If the accumulated trait space has no volume.
        """
        try:
            volume = hull_measure(self.points) if self.points.shape[0] > self.n_dims else 0.0
        except QhullError as exc:
            raise NumericalError(f"Trait space is degenerate in {self.n_dims} dimensions: {exc}") from exc
        if volume <= 0:
            raise NumericalError(f"Trait space has zero volume in {self.n_dims} dimensions")
        return volume


def trait_space_volume(reader: "ChunkedRasterReader") -> float:
    """Hull volume of all unmasked pixels of a trait raster."""
    accumulator = HullAccumulator(len(reader.bands))
    for chunk in reader.iter_chunks():
        accumulator.update(chunk.data[chunk.mask].astype(np.float64))
    volume = accumulator.volume
    logger.info("Trait space: %d hull vertices, volume %.6g", accumulator.points.shape[0], volume)
    return volume


def _evenness(points: np.ndarray) -> float:
    n = points.shape[0]
    distances = squareform(pdist(points))
    distances[distances == 0] = _TINY_DISTANCE
    np.fill_diagonal(distances, 0.0)
    edges = minimum_spanning_tree(distances).tocoo().data

    # Equal weights 1/n: EW = d / (w_i + w_j)
    ew = edges / (2.0 / n)
    pew = ew / ew.sum()
    bound = 1.0 / (n - 1)
    return float((np.minimum(pew, bound).sum() - bound) / (1.0 - bound))


def _divergence(points: np.ndarray) -> float:
    to_centroid = np.linalg.norm(points - points.mean(axis=0), axis=1)
    mean_distance = to_centroid.mean()
    if mean_distance == 0:
        return np.nan
    return float(mean_distance / (np.abs(to_centroid - mean_distance).mean() + mean_distance))


def functional_indices(points: np.ndarray, global_volume: float) -> tuple[float, float, float]:
    """FRic, FEve and FDiv of one community.

    Parameters
    ----------
    points : np.ndarray
        (n, d) traits of the community's pixels.
    global_volume : float
        Hull volume (range when d == 1) of the whole image's trait space.

    Returns
    -------
    tuple of float
        (fric, feve, fdiv); all NaN when there are fewer than max(d + 1, 3)
        points or the hull is degenerate.
    """
    points = np.asarray(points, dtype=np.float64)
    n, d = points.shape
    if n < max(d + 1, 3):
        return np.nan, np.nan, np.nan
    try:
        volume = hull_measure(points)
    except QhullError:
        return np.nan, np.nan, np.nan

    fric = volume / global_volume
    return fric, _evenness(points), _divergence(points)
