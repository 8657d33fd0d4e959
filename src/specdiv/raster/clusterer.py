"""Partitioned k-means into a global codebook of spectral species.

Unmasked pixels of the reduced raster (selected components only) are split
into random disjoint partitions small enough to fit the RAM budget. Each
partition is clustered independently, then all partition centroids are
merged by a final weighted k-means into exactly ``nb_clusters`` centroids.
Every pixel is finally assigned to its nearest centroid.

Reproducibility: partition ids, per-partition fits and the merge are all
seeded from ``clustering.random_seed``; centroids are sorted
lexicographically before ids 1..k are attached.
"""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import pandas as pd
from scipy.spatial.distance import cdist
from sklearn.cluster import KMeans

from specdiv.contracts import assert_codebook, assert_species_counts
from specdiv.contracts.failure import ConfigurationError, NumericalError, RasterIOError
from specdiv.pipeline.workers import ChunkWorkerPool
from specdiv.raster.raster_utils import RasterWriter, output_profile

if TYPE_CHECKING:
    from specdiv.schemas import InternalConfig
    from specdiv.raster.reader import ChunkedRasterReader

__all__ = ['Codebook', 'PartitionedKMeans']

logger = logging.getLogger(__name__)

GIGABYTE = 1024 ** 3
MAX_PARTITIONS = np.iinfo(np.uint16).max + 1


@dataclass(frozen=True)
class Codebook:
    """Spectral species centroids.

    Attributes
    ----------
    centroids : np.ndarray
        (k, d) centroids, row i has species id i + 1.
    components : tuple of int
        1-based reduced components the centroids live in.
    """
    centroids: np.ndarray
    components: tuple[int, ...]

    @property
    def nb_clusters(self) -> int:
        return self.centroids.shape[0]

    @property
    def ids(self) -> np.ndarray:
        return np.arange(1, self.nb_clusters + 1)

    def assign(self, pixels: np.ndarray, block_size: int) -> np.ndarray:
        """Nearest-centroid ids (1..k) of (n, d) pixels; ties go to the lowest id."""
        out = np.empty(pixels.shape[0], dtype=np.uint16)
        for start in range(0, pixels.shape[0], block_size):
            stop = start + block_size
            distances = cdist(pixels[start:stop], self.centroids)
            out[start:stop] = np.argmin(distances, axis=1) + 1
        return out

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(self.centroids, columns=[f"component_{c}" for c in self.components])
        frame.insert(0, "species_id", self.ids)
        return frame

    def save(self, path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_frame().to_csv(path, sep="\t", index=False)
        return path

    @classmethod
    def load(cls, path) -> "Codebook":
        path = Path(path)
        try:
            frame = pd.read_csv(path, sep="\t")
        except (OSError, pd.errors.ParserError) as exc:
            raise RasterIOError(f"Cannot read codebook {path}: {exc}") from exc
        columns = [c for c in frame.columns if c.startswith("component_")]
        components = tuple(int(c.split("_", 1)[1]) for c in columns)
        frame = frame.sort_values("species_id")
        return cls(centroids=frame[columns].to_numpy(dtype=np.float64), components=components)


class PartitionedKMeans:
    """Fit a codebook with partitioned k-means and write the species map."""

    def __init__(self, config: "InternalConfig"):
        """Store config.

        Parameters
        ----------
        config : InternalConfig
            Fully validated runtime configuration. Reads the ``clustering``
            and ``resources`` sections.
        """
        self.config = config
        cfg = config.clustering
        self.nb_clusters = cfg.nb_clusters
        self.min_partitions = cfg.nb_partitions
        self.init = cfg.init
        self.max_iter = cfg.max_iter
        self.random_seed = cfg.random_seed
        self.merge_weighting = cfg.merge_weighting
        self.nb_workers = config.resources.nb_cpu
        self.budget_bytes = int(config.resources.max_ram_gb * GIGABYTE)

        logger.info("PartitionedKMeans initialized: k=%d, init=%s, max_iter=%d, seed=%d, merge=%s",
                    self.nb_clusters, self.init, self.max_iter, self.random_seed,
                    self.merge_weighting)

    def plan_partitions(self, n_valid: int, n_dims: int) -> int:
        """Number of partitions so that one partition fits the RAM budget."""
        per_partition = max(1, self.budget_bytes // (n_dims * 8))
        nb_partitions = max(1, math.ceil(n_valid / per_partition))
        if self.min_partitions is not None:
            nb_partitions = max(nb_partitions, self.min_partitions)
        if nb_partitions > MAX_PARTITIONS:
            raise ConfigurationError(
                f"{nb_partitions} partitions needed for {n_valid} pixels; raise resources.max_ram_gb"
            )
        return nb_partitions

    def _gather(self, reader: "ChunkedRasterReader", partition_ids: np.ndarray,
                group: range) -> dict[int, np.ndarray]:
        """One raster pass collecting the pixels of a group of partitions."""
        pieces: dict[int, list] = {p: [] for p in group}
        offset = 0
        for chunk in reader.iter_chunks():
            pixels = chunk.data[chunk.mask].astype(np.float64)
            ids = partition_ids[offset:offset + pixels.shape[0]]
            offset += pixels.shape[0]
            for p in group:
                pieces[p].append(pixels[ids == p])
        return {p: np.concatenate(parts) for p, parts in pieces.items()}

    def _fit_partition(self, task: tuple[int, np.ndarray]) -> tuple[int, np.ndarray, np.ndarray]:
        index, pixels = task
        kmeans = KMeans(
            n_clusters=self.nb_clusters,
            init=self.init,
            n_init=1,
            max_iter=self.max_iter,
            random_state=self.random_seed + index,
        ).fit(pixels)
        counts = np.bincount(kmeans.labels_, minlength=self.nb_clusters)
        logger.debug("Partition %d: %d pixels, inertia %.4g", index, pixels.shape[0], kmeans.inertia_)
        return index, kmeans.cluster_centers_, counts

    def merge(self, results: list[tuple[int, np.ndarray, np.ndarray]],
              components: tuple[int, ...]) -> Codebook:
        """Merge partition centroids into exactly ``nb_clusters`` centroids.

        Raises
        ------
        NumericalError
            If fewer than ``nb_clusters`` weighted partition centroids remain.
        """
        results = sorted(results, key=lambda r: r[0])
        centers = np.vstack([r[1] for r in results])
        if self.merge_weighting == "population":
            weights = np.concatenate([r[2] for r in results]).astype(np.float64)
        else:
            weights = np.ones(centers.shape[0])

        populated = weights > 0
        centers, weights = centers[populated], weights[populated]
        if centers.shape[0] < self.nb_clusters:
            raise NumericalError(
                f"Only {centers.shape[0]} populated partition centroids for {self.nb_clusters} clusters"
            )

        if len(results) == 1:
            merged = centers
        else:
            merged = KMeans(
                n_clusters=self.nb_clusters,
                init=self.init,
                n_init=1,
                max_iter=self.max_iter,
                random_state=self.random_seed,
            ).fit(centers, sample_weight=weights).cluster_centers_

        order = np.lexsort(merged.T[::-1])
        codebook = Codebook(centroids=merged[order], components=tuple(components))
        assert_codebook(codebook, self.nb_clusters)
        return codebook

    def fit(self, reader: "ChunkedRasterReader", components: tuple[int, ...]) -> Codebook:
        """Fit the codebook on the unmasked pixels of the reduced raster.

        Parameters
        ----------
        reader : ChunkedRasterReader
            Reduced raster restricted to the selected components, with the
            filtered mask.
        components : tuple of int
            1-based component numbers read by ``reader`` (recorded in the codebook).

        Raises
        ------
        ConfigurationError
            If no pixel is unmasked.
        NumericalError
            If a partition holds fewer pixels than ``nb_clusters``.
        """
        n_valid = reader.count_valid()
        if n_valid == 0:
            raise ConfigurationError("No unmasked pixel to cluster")
        n_dims = len(reader.bands)
        nb_partitions = self.plan_partitions(n_valid, n_dims)

        rng = np.random.default_rng(self.random_seed)
        partition_ids = rng.integers(0, nb_partitions, size=n_valid, dtype=np.uint16)
        sizes = np.bincount(partition_ids, minlength=nb_partitions)
        if sizes.min() < self.nb_clusters:
            raise NumericalError(
                f"Partition {int(np.argmin(sizes))} has {int(sizes.min())} pixels, fewer than "
                f"nb_clusters={self.nb_clusters} ({n_valid} pixels in {nb_partitions} partitions)"
            )
        logger.info("Clustering %d pixels (%d dims) in %d partition(s)", n_valid, n_dims, nb_partitions)

        pool = ChunkWorkerPool(self.nb_workers, name="KMeans")
        results = []
        for group_start in range(0, nb_partitions, self.nb_workers):
            group = range(group_start, min(nb_partitions, group_start + self.nb_workers))
            gathered = self._gather(reader, partition_ids, group)
            results += pool.run(list(gathered.items()), self._fit_partition)

        codebook = self.merge(results, components)
        logger.info("Codebook merged: %d spectral species", codebook.nb_clusters)
        return codebook

    def assign(self, reader: "ChunkedRasterReader", codebook: Codebook, output_path: Path) -> np.ndarray:
        """Write the uint16 species map (0 = no-data).

        Returns
        -------
        np.ndarray
            Pixel count per id, index 0 = no-data.
        """
        k = codebook.nb_clusters
        block_size = max(1, self.budget_bytes // (k * 8))
        profile = output_profile(reader.profile, count=1, dtype="uint16", nodata=0)
        counts = np.zeros(k + 1, dtype=np.int64)

        def work(chunk):
            species = np.zeros(chunk.mask.shape, dtype=np.uint16)
            if chunk.mask.any():
                species[chunk.mask] = codebook.assign(chunk.data[chunk.mask].astype(np.float64), block_size)
            return chunk.row_off, species

        def write(result):
            row_off, species = result
            writer.write(species, row_off=row_off)
            counts[:] += np.bincount(species.ravel(), minlength=k + 1)

        with RasterWriter(output_path, profile) as writer:
            ChunkWorkerPool(self.nb_workers, name="Assign").run(reader.iter_chunks(), work, write)

        assert_species_counts(counts, k)
        logger.info("Species map written: %s (%d assigned pixels)", output_path, int(counts[1:].sum()))
        return counts
