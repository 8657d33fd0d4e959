"""Diversity of field plots, for validation against ground measurements.

Plots arrive as named pixel sets, either built by the caller or rasterized
from GeoJSON-like geometries with ``rasterize_plots``. The same alpha,
functional and Bray-Curtis computations as the window maps are applied to
each plot's pixels, without tiling.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional, TYPE_CHECKING, Union

import numpy as np
import pandas as pd
import rasterio
from rasterio.errors import RasterioIOError
from rasterio.features import geometry_mask
from rasterio.windows import Window

from specdiv.contracts import assert_dissimilarity_matrix
from specdiv.contracts.failure import ConfigurationError, RasterIOError
from specdiv.diversity.functional import FUNCTIONAL_INDICES, functional_indices, trait_space_volume
from specdiv.diversity.indices import ALPHA_FUNCTIONS, abundance_vector, bray_curtis_matrix

if TYPE_CHECKING:
    from specdiv.schemas import InternalConfig
    from specdiv.raster.reader import ChunkedRasterReader

__all__ = ['Plot', 'PlotDiversity', 'PlotExtractor', 'rasterize_plots']

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Plot:
    """Named set of raster pixels."""
    name: str
    rows: np.ndarray
    cols: np.ndarray

    def __len__(self) -> int:
        return int(self.rows.size)


@dataclass(frozen=True)
class PlotDiversity:
    """Per-plot tables, indexed by plot name."""
    alpha: pd.DataFrame
    functional: Optional[pd.DataFrame]
    bray_curtis: pd.DataFrame


def rasterize_plots(geometries: Union[Mapping[str, dict], Iterable[tuple[str, dict]]],
                    transform, shape: tuple[int, int]) -> list[Plot]:
    """Turn named GeoJSON-like geometries into pixel sets.

    A pixel belongs to a plot when its center falls inside the geometry.

    Parameters
    ----------
    geometries : mapping or iterable of (name, geometry)
        Geometries in the raster's CRS.
    transform : Affine
        Raster geotransform.
    shape : tuple
        Raster (height, width).

    Returns
    -------
    list of Plot
        In input order. Plots may be empty when a geometry misses the raster.
    """
    items = geometries.items() if isinstance(geometries, Mapping) else geometries
    plots = []
    for name, geometry in items:
        inside = geometry_mask([geometry], out_shape=shape, transform=transform, invert=True)
        rows, cols = np.nonzero(inside)
        plots.append(Plot(name=str(name), rows=rows, cols=cols))
        logger.debug("Plot %s: %d pixels", name, rows.size)
    return plots


def _read_pixels(path: Path, plot: Plot, bands: Optional[list[int]] = None) -> tuple[np.ndarray, Optional[float]]:
    """Values (n, bands) of a plot's pixels, reading only its bounding window."""
    try:
        with rasterio.open(path) as src:
            if plot.rows.size and (plot.rows.max() >= src.height or plot.cols.max() >= src.width
                                   or plot.rows.min() < 0 or plot.cols.min() < 0):
                raise ConfigurationError(f"Plot {plot.name} extends beyond {path}")
            bands = bands or list(range(1, src.count + 1))
            if plot.rows.size == 0:
                return np.empty((0, len(bands))), src.nodata
            row0, col0 = int(plot.rows.min()), int(plot.cols.min())
            window = Window(col0, row0, int(plot.cols.max()) - col0 + 1, int(plot.rows.max()) - row0 + 1)
            block = np.moveaxis(src.read(bands, window=window), 0, -1)
            return block[plot.rows - row0, plot.cols - col0], src.nodata
    except RasterioIOError as exc:
        raise RasterIOError(f"Cannot open raster {path}: {exc}") from exc


class PlotExtractor:
    """Alpha, functional and Bray-Curtis diversity of field plots."""

    def __init__(self, config: "InternalConfig"):
        """Store config.

        Parameters
        ----------
        config : InternalConfig
            Fully validated runtime configuration. Reads the ``diversity`` section.
        """
        self.config = config
        self.alpha_indices = list(config.diversity.alpha_indices)
        self.functional_enabled = config.diversity.functional_enabled

    def extract(self, plots: list[Plot], species_path: Path, nb_species: int,
                traits_path: Optional[Path] = None, trait_bands: Optional[list[int]] = None,
                global_volume: Optional[float] = None,
                traits_reader: Optional["ChunkedRasterReader"] = None) -> PlotDiversity:
        """Compute plot diversity tables.

        Parameters
        ----------
        plots : list of Plot
            Field plots on the species map grid.
        species_path : Path
            Species map (uint16, 0 = no-data).
        nb_species : int
            Codebook size.
        traits_path : Path, optional
            Reduced raster; enables functional diversity.
        trait_bands : list of int, optional
            1-based trait components (all bands by default).
        global_volume : float, optional
            Trait-space hull volume of the image. Computed from
            ``traits_reader`` when missing.
        traits_reader : ChunkedRasterReader, optional
            Chunked view of the trait raster used to compute ``global_volume``.

        Raises
        ------
        ConfigurationError
            If a plot has no valid pixel after masking, or names are duplicated.
        """
        names = [plot.name for plot in plots]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Duplicate plot names: {names}")

        use_traits = self.functional_enabled and traits_path is not None
        if use_traits and global_volume is None:
            if traits_reader is None:
                raise ConfigurationError("Functional plot diversity needs the image trait-space volume")
            global_volume = trait_space_volume(traits_reader)

        alpha_rows, functional_rows, abundances = [], [], []
        for plot in plots:
            species, _ = _read_pixels(Path(species_path), plot, bands=[1])
            species = species[:, 0].astype(np.int64)
            valid = species > 0

            traits = None
            if use_traits:
                traits, nodata = _read_pixels(Path(traits_path), plot, bands=trait_bands)
                traits = traits.astype(np.float64)
                valid &= np.all(np.isfinite(traits), axis=1)
                if nodata is not None and not np.isnan(nodata):
                    valid &= ~np.any(traits == nodata, axis=1)

            if not valid.any():
                raise ConfigurationError(f"Plot {plot.name} has no valid pixel after masking")

            abundance = abundance_vector(species[valid], nb_species)
            abundances.append(abundance)
            row = {"plot": plot.name, "nb_pixels": int(valid.sum()),
                   "nb_species": int(np.count_nonzero(abundance))}
            row.update({name: ALPHA_FUNCTIONS[name](abundance) for name in self.alpha_indices})
            alpha_rows.append(row)

            if use_traits:
                values = functional_indices(traits[valid], global_volume)
                functional_rows.append({"plot": plot.name, **dict(zip(FUNCTIONAL_INDICES, values))})

        matrix = bray_curtis_matrix(np.vstack(abundances)) if abundances else np.zeros((0, 0))
        bray_curtis = pd.DataFrame(matrix, index=names, columns=names)
        assert_dissimilarity_matrix(bray_curtis)

        alpha = pd.DataFrame(alpha_rows).set_index("plot") if alpha_rows else pd.DataFrame()
        functional = pd.DataFrame(functional_rows).set_index("plot") if use_traits and functional_rows else None

        logger.info("Plot diversity: %d plots", len(plots))
        return PlotDiversity(alpha=alpha, functional=functional, bray_curtis=bray_curtis)

    def write(self, result: PlotDiversity, output_dir: Path) -> dict[str, Path]:
        """Write alpha_diversity.tsv, functional_diversity.tsv and bray_curtis.tsv."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        written = {"alpha": output_dir / "alpha_diversity.tsv",
                   "bray_curtis": output_dir / "bray_curtis.tsv"}
        result.alpha.to_csv(written["alpha"], sep="\t")
        result.bray_curtis.to_csv(written["bray_curtis"], sep="\t")
        if result.functional is not None:
            written["functional"] = output_dir / "functional_diversity.tsv"
            result.functional.to_csv(written["functional"], sep="\t")
        logger.info("Plot tables written to %s", output_dir)
        return written
