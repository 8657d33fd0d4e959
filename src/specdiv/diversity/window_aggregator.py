"""Window aggregation of the spectral species map into diversity maps.

The species map is tiled into non-overlapping ``window_size`` x
``window_size`` windows in row-major order. Trailing partial windows at the
right and bottom edges are discarded, so the output grid is
``floor(rows / window_size) x floor(cols / window_size)``.

Per window:
- alpha diversity (Shannon, Simpson, Fisher) of the species abundances
- Bray-Curtis dissimilarity to a reference window
- PCoA coordinates of the pairwise Bray-Curtis matrix (beta diversity)
- FRic / FEve / FDiv of the pixels' traits (functional diversity)
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TYPE_CHECKING

import numpy as np
import pandas as pd
import xarray as xr
from scipy.spatial.distance import cdist
from skimage.util import view_as_blocks

from specdiv.contracts import assert_diversity_output, assert_dissimilarity_matrix
from specdiv.contracts.failure import ConfigurationError
from specdiv.diversity.functional import FUNCTIONAL_INDICES, functional_indices, trait_space_volume
from specdiv.diversity.indices import ALPHA_FUNCTIONS, abundance_matrix, bray_curtis_matrix, pcoa
from specdiv.pipeline.workers import ChunkWorkerPool
from specdiv.raster.raster_utils import RasterWriter, output_profile, window_transform

if TYPE_CHECKING:
    from specdiv.schemas import InternalConfig
    from specdiv.raster.reader import ChunkedRasterReader

__all__ = ['DiversityResult', 'WindowAggregator', 'window_label']

logger = logging.getLogger(__name__)

GIGABYTE = 1024 ** 3
_MIN_DISSIMILARITY = 1e-12


def window_label(row: int, col: int) -> str:
    return f"r{row}_c{col}"


@dataclass(frozen=True)
class DiversityResult:
    """Diversity maps on the window grid.

    Attributes
    ----------
    dataset : xr.Dataset
        Variables on (y, x): requested alpha indices, ``bray_curtis_ref``,
        ``beta_pcoa`` (axis, y, x), ``fric`` / ``feve`` / ``fdiv``.
    dissimilarity : pd.DataFrame or None
        Pairwise Bray-Curtis matrix of the sampled windows, labelled ``r{row}_c{col}``.
    """
    dataset: xr.Dataset
    dissimilarity: Optional[pd.DataFrame]


class WindowAggregator:
    """Compute alpha / beta / functional diversity per window."""

    def __init__(self, config: "InternalConfig"):
        """Store config.

        Parameters
        ----------
        config : InternalConfig
            Fully validated runtime configuration. Reads the ``diversity``
            and ``resources`` sections.
        """
        self.config = config
        cfg = config.diversity
        self.window_size = cfg.window_size
        self.alpha_indices = list(cfg.alpha_indices)
        self.beta_enabled = cfg.beta_enabled
        self.beta_nb_samples = cfg.beta_nb_samples
        self.beta_nb_axes = cfg.beta_nb_axes
        self.beta_nb_neighbors = cfg.beta_nb_neighbors
        self.beta_reference_window = cfg.beta_reference_window
        self.functional_enabled = cfg.functional_enabled
        self.random_seed = cfg.random_seed
        self.nb_workers = config.resources.nb_cpu
        self.budget_bytes = int(config.resources.max_ram_gb * GIGABYTE)

        logger.info("WindowAggregator initialized: window=%d, alpha=%s, beta=%s, functional=%s",
                    self.window_size, self.alpha_indices, self.beta_enabled, self.functional_enabled)

    def grid_shape(self, height: int, width: int) -> tuple[int, int]:
        return height // self.window_size, width // self.window_size

    # ------------------------------------------------------------------
    # Per-chunk work
    # ------------------------------------------------------------------

    def _tiles(self, array: np.ndarray, n_win_cols: int) -> np.ndarray:
        """(rows, cols[, bands]) -> (n_windows, window_size**2[, bands]) in row-major order."""
        ws = self.window_size
        n_win_rows = array.shape[0] // ws
        array = array[:n_win_rows * ws, :n_win_cols * ws]
        if array.ndim == 2:
            blocks = view_as_blocks(array, (ws, ws))
            return blocks.reshape(n_win_rows * n_win_cols, ws * ws)
        blocks = view_as_blocks(array, (ws, ws, array.shape[2]))[:, :, 0]
        return blocks.reshape(n_win_rows * n_win_cols, ws * ws, array.shape[2])

    def _process_rows(self, task, species_reader, traits_reader, nb_species, global_volume):
        row_off, n_rows = task
        n_win_cols = species_reader.width // self.window_size

        chunk = species_reader.read_window(row_off, n_rows)
        ids = np.where(chunk.mask, chunk.data[:, :, 0], 0)
        abundances = abundance_matrix(self._tiles(ids, n_win_cols), nb_species)

        functional = None
        if traits_reader is not None:
            traits_chunk = traits_reader.read_window(row_off, n_rows)
            valid = self._tiles(chunk.mask & traits_chunk.mask, n_win_cols)
            traits = self._tiles(traits_chunk.data, n_win_cols)
            functional = np.full((abundances.shape[0], len(FUNCTIONAL_INDICES)), np.nan)
            for w in range(abundances.shape[0]):
                functional[w] = functional_indices(traits[w][valid[w]], global_volume)

        return row_off // self.window_size, abundances, functional

    # ------------------------------------------------------------------
    # Beta diversity
    # ------------------------------------------------------------------

    def _reference_index(self, abundances: np.ndarray, valid: np.ndarray, n_win_cols: int) -> int:
        if self.beta_reference_window is None:
            return int(valid[0])
        row, col = self.beta_reference_window
        index = row * n_win_cols + col
        if not (0 <= col < n_win_cols and 0 <= index < abundances.shape[0]):
            raise ConfigurationError(f"Reference window {(row, col)} is outside the window grid")
        if abundances[index].sum() == 0:
            raise ConfigurationError(f"Reference window {(row, col)} has no valid pixel")
        return index

    def _beta(self, abundances: np.ndarray, n_win_cols: int):
        n_windows = abundances.shape[0]
        bc_ref = np.full(n_windows, np.nan)
        coords = np.full((n_windows, self.beta_nb_axes), np.nan)
        valid = np.flatnonzero(abundances.sum(axis=1) > 0)
        if valid.size == 0:
            return bc_ref, coords, None, None, 0

        reference = self._reference_index(abundances, valid, n_win_cols)
        a = abundances.astype(np.float64)
        ref = a[reference]
        bc_ref[valid] = 1.0 - 2.0 * np.minimum(a[valid], ref).sum(axis=1) / (a[valid].sum(axis=1) + ref.sum())

        if valid.size <= self.beta_nb_samples:
            sampled = valid
        else:
            rng = np.random.default_rng(self.random_seed)
            sampled = np.sort(rng.choice(valid, size=self.beta_nb_samples, replace=False))

        matrix = bray_curtis_matrix(a[sampled])
        labels = [window_label(i // n_win_cols, i % n_win_cols) for i in sampled]
        dissimilarity = pd.DataFrame(matrix, index=labels, columns=labels)
        assert_dissimilarity_matrix(dissimilarity)

        sampled_coords, _ = pcoa(matrix, self.beta_nb_axes)
        coords[sampled] = sampled_coords

        # Map the remaining windows onto the PCoA space
        rest = np.setdiff1d(valid, sampled)
        k = min(self.beta_nb_neighbors, sampled.size)
        block = max(1, self.budget_bytes // (8 * sampled.size))
        for start in range(0, rest.size, block):
            targets = rest[start:start + block]
            d = cdist(a[targets], a[sampled], metric="braycurtis")
            nearest = np.argpartition(d, k - 1, axis=1)[:, :k]
            weights = 1.0 / np.maximum(np.take_along_axis(d, nearest, axis=1), _MIN_DISSIMILARITY)
            coords[targets] = (np.einsum("nk,nka->na", weights, sampled_coords[nearest])
                               / weights.sum(axis=1, keepdims=True))

        logger.info("Beta diversity: %d/%d valid windows sampled, %d mapped by %d nearest neighbours",
                    sampled.size, valid.size, rest.size, k)
        return bc_ref, coords, dissimilarity, reference, sampled.size

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    def aggregate(self, species_reader: "ChunkedRasterReader", nb_species: int,
                  traits_reader: Optional["ChunkedRasterReader"] = None) -> DiversityResult:
        """Aggregate the species map (and traits) into window diversity maps.

        Parameters
        ----------
        species_reader : ChunkedRasterReader
            Single-band species map (0 = no-data).
        nb_species : int
            Codebook size.
        traits_reader : ChunkedRasterReader, optional
            Reduced raster restricted to the trait components. Required for
            functional diversity; must share the species map's grid.

        Returns
        -------
        DiversityResult
        """
        n_win_rows, n_win_cols = self.grid_shape(species_reader.height, species_reader.width)
        if n_win_rows == 0 or n_win_cols == 0:
            raise ConfigurationError(
                f"Window size {self.window_size} exceeds the raster size {species_reader.shape}"
            )
        if traits_reader is not None and traits_reader.shape != species_reader.shape:
            raise ConfigurationError(
                f"Trait raster shape {traits_reader.shape} differs from species map {species_reader.shape}"
            )
        use_traits = self.functional_enabled and traits_reader is not None

        global_volume = trait_space_volume(traits_reader) if use_traits else None

        step = species_reader.rows_per_chunk
        if use_traits:
            step = min(step, traits_reader.rows_per_chunk)
        step = max(self.window_size, (step // self.window_size) * self.window_size)
        covered = n_win_rows * self.window_size
        tasks = [(row_off, min(step, covered - row_off)) for row_off in range(0, covered, step)]

        n_windows = n_win_rows * n_win_cols
        abundances = np.zeros((n_windows, nb_species), dtype=np.uint32)
        functional = np.full((n_windows, len(FUNCTIONAL_INDICES)), np.nan)

        def work(task):
            return self._process_rows(task, species_reader, traits_reader if use_traits else None,
                                      nb_species, global_volume)

        def write(result):
            win_row, chunk_abundances, chunk_functional = result
            start = win_row * n_win_cols
            abundances[start:start + chunk_abundances.shape[0]] = chunk_abundances
            if chunk_functional is not None:
                functional[start:start + chunk_functional.shape[0]] = chunk_functional

        ChunkWorkerPool(self.nb_workers, name="Windows").run(tasks, work, write)

        grid = (n_win_rows, n_win_cols)
        data_vars = {}
        for name in self.alpha_indices:
            values = np.asarray(ALPHA_FUNCTIONS[name](abundances), dtype=np.float64)
            data_vars[name] = (("y", "x"), values.reshape(grid))

        attrs = {
            "window_size": self.window_size,
            "nb_species": nb_species,
            "nb_valid_windows": int(np.count_nonzero(abundances.sum(axis=1))),
        }

        dissimilarity = None
        if self.beta_enabled:
            bc_ref, pcoa_coords, dissimilarity, reference, nb_sampled = self._beta(abundances, n_win_cols)
            data_vars["bray_curtis_ref"] = (("y", "x"), bc_ref.reshape(grid))
            data_vars["beta_pcoa"] = (("axis", "y", "x"), pcoa_coords.T.reshape((self.beta_nb_axes,) + grid))
            if reference is not None:
                attrs["reference_window"] = window_label(reference // n_win_cols, reference % n_win_cols)
            attrs["nb_sampled_windows"] = nb_sampled

        if use_traits:
            for i, name in enumerate(FUNCTIONAL_INDICES):
                data_vars[name] = (("y", "x"), functional[:, i].reshape(grid))
            attrs["trait_space_volume"] = global_volume

        coords = {"y": np.arange(n_win_rows), "x": np.arange(n_win_cols)}
        if self.beta_enabled:
            coords["axis"] = np.arange(1, self.beta_nb_axes + 1)
        dataset = xr.Dataset(data_vars, coords=coords, attrs=attrs)

        assert_diversity_output(dataset, self.alpha_indices, grid)
        logger.info("Diversity maps: %d x %d windows (%d valid)",
                    n_win_rows, n_win_cols, attrs["nb_valid_windows"])
        return DiversityResult(dataset=dataset, dissimilarity=dissimilarity)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def write(self, result: DiversityResult, output_dirs: dict, profile: dict) -> dict[str, Path]:
        """Write window-resolution GeoTIFFs and the pairwise matrix.

        Parameters
        ----------
        result : DiversityResult
            Output of aggregate().
        output_dirs : dict
            Run directories from setup_directories() (alpha, beta, functional).
        profile : dict
            Profile of the full-resolution species map.

        Returns
        -------
        dict
            Variable name -> written path.
        """
        ds = result.dataset
        n_win_rows, n_win_cols = ds.sizes["y"], ds.sizes["x"]
        transform = window_transform(profile["transform"], self.window_size)
        destinations = {name: Path(output_dirs["alpha"]) for name in self.alpha_indices}
        destinations.update({name: Path(output_dirs["beta"]) for name in ("bray_curtis_ref", "beta_pcoa")})
        destinations.update({name: Path(output_dirs["functional"]) for name in FUNCTIONAL_INDICES})

        written = {}
        for name in ds.data_vars:
            values = ds[name].values.astype(np.float32)
            if values.ndim == 2:
                values = values[np.newaxis]
            window_profile = output_profile(profile, count=values.shape[0], dtype="float32",
                                            nodata=float("nan"), transform=transform,
                                            height=n_win_rows, width=n_win_cols)
            path = destinations[name] / f"{name}.tif"
            with RasterWriter(path, window_profile) as writer:
                writer.write(np.moveaxis(values, 0, -1), row_off=0)
            written[name] = path

        if result.dissimilarity is not None:
            path = Path(output_dirs["beta"]) / "bray_curtis_pairwise.tsv"
            result.dissimilarity.to_csv(path, sep="\t")
            written["bray_curtis_pairwise"] = path

        logger.info("Diversity outputs written: %s", ", ".join(sorted(written)))
        return written
