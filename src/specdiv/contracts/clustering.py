"""Clustering stage contract.

Enforces the guarantee that the merged codebook holds exactly the requested
number of spectral species, and that the species map only uses its ids.
"""

import numpy as np
from specdiv.contracts.base import require


def assert_codebook(codebook, nb_clusters: int) -> None:
    """Enforce codebook contract.

    Parameters
    ----------
    codebook : Codebook
        Output of PartitionedKMeans.fit()
    nb_clusters : int
        Configured number of spectral species

    Raises
    ------
    ContractViolation
        If any invariant is violated
    """
    centroids = codebook.centroids
    require(
        centroids.shape[0] == nb_clusters,
        f"Codebook contract violated: {centroids.shape[0]} centroids, expected {nb_clusters}"
    )
    require(
        np.array_equal(codebook.ids, np.arange(1, nb_clusters + 1)),
        "Codebook contract violated: ids must be 1..nb_clusters in order"
    )
    require(
        np.all(np.isfinite(centroids)),
        "Codebook contract violated: centroids contain non-finite values"
    )


def assert_species_counts(counts: np.ndarray, nb_clusters: int) -> None:
    """Enforce species map contract from its id histogram.

    Parameters
    ----------
    counts : np.ndarray
        Pixel count per id, index 0 = no-data.
    nb_clusters : int
        Configured number of spectral species

    Raises
    ------
    ContractViolation
        If the map uses ids outside 0..nb_clusters or assigns no pixel at all.
    """
    require(
        counts.shape[0] == nb_clusters + 1,
        f"Species map contract violated: ids up to {counts.shape[0] - 1}, expected <= {nb_clusters}"
    )
    require(
        counts[1:].sum() > 0,
        "Species map contract violated: no pixel assigned to any spectral species"
    )
