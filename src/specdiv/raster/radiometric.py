"""Radiometric vegetation mask.

Pixels are tested chunk by chunk through the worker pool against NDVI, NIR
and Blue thresholds, on the bands closest to the configured target
wavelengths. The mask is written as a uint8 GeoTIFF (1 = retained) and
becomes the input mask of the reduction stage.
"""

import logging
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from specdiv.contracts.failure import ConfigurationError
from specdiv.pipeline.workers import ChunkWorkerPool
from specdiv.raster.raster_utils import RasterWriter, output_profile

if TYPE_CHECKING:
    from specdiv.schemas import InternalConfig
    from specdiv.raster.reader import ChunkedRasterReader

__all__ = ['RadiometricFilter']

logger = logging.getLogger(__name__)


class RadiometricFilter:
    """NDVI / NIR / Blue vegetation mask.

    A pixel is retained when every enabled test passes and the input mask
    retains it:

    - NDVI = (NIR - RED) / (NIR + RED) >= ndvi_threshold (NIR + RED == 0 fails)
    - NIR >= nir_threshold (shadows, dark water)
    - BLUE <= blue_threshold (clouds, bright soil, man-made surfaces)

    Bands are the ones whose center wavelength is closest to the configured
    NIR / RED / BLUE targets.
    """

    def __init__(self, config: "InternalConfig"):
        """Store config.

        Parameters
        ----------
        config : InternalConfig
            Fully validated runtime configuration. Reads the ``radiometric``
            and ``resources`` sections.
        """
        self.config = config
        cfg = config.radiometric
        self.ndvi_enabled = cfg.ndvi_enabled
        self.ndvi_threshold = cfg.ndvi_threshold
        self.nir_enabled = cfg.nir_enabled
        self.nir_threshold = cfg.nir_threshold
        self.blue_enabled = cfg.blue_enabled
        self.blue_threshold = cfg.blue_threshold
        self.targets = {
            "nir": cfg.nir_wavelength,
            "red": cfg.red_wavelength,
            "blue": cfg.blue_wavelength,
        }
        self.tolerance = cfg.wavelength_tolerance
        self.nb_workers = config.resources.nb_cpu

        logger.info("RadiometricFilter initialized: ndvi>=%s (%s), nir>=%s (%s), blue<=%s (%s)",
                    self.ndvi_threshold, self.ndvi_enabled, self.nir_threshold,
                    self.nir_enabled, self.blue_threshold, self.blue_enabled)

    def locate_band(self, wavelengths: np.ndarray, target: float) -> int:
        """0-based index of the band closest to ``target`` nm.

        Raises
        ------
        ConfigurationError
            If the closest band is farther than the configured tolerance.
        """
        wavelengths = np.asarray(wavelengths, dtype=np.float64)
        index = int(np.argmin(np.abs(wavelengths - target)))
        distance = abs(wavelengths[index] - target)
        if distance > self.tolerance:
            raise ConfigurationError(
                f"No band within {self.tolerance} nm of {target} nm "
                f"(closest is {wavelengths[index]:.1f} nm)"
            )
        return index

    def locate_bands(self, wavelengths: np.ndarray) -> dict[str, int]:
        """Band indices needed by the enabled tests."""
        needed = set()
        if self.ndvi_enabled:
            needed |= {"nir", "red"}
        if self.nir_enabled:
            needed.add("nir")
        if self.blue_enabled:
            needed.add("blue")
        bands = {name: self.locate_band(wavelengths, self.targets[name]) for name in sorted(needed)}
        logger.debug("Radiometric bands: %s", bands)
        return bands

    def compute_mask(self, data: np.ndarray, mask: np.ndarray, bands: dict[str, int]) -> np.ndarray:
        """Radiometric mask of one chunk.

        Parameters
        ----------
        data : np.ndarray
            (rows, cols, bands) reflectance
        mask : np.ndarray
            (rows, cols) bool input mask
        bands : dict
            Output of locate_bands()

        Returns
        -------
        np.ndarray
            (rows, cols) bool, True = retained
        """
        keep = mask.copy()

        if self.ndvi_enabled:
            nir = data[:, :, bands["nir"]].astype(np.float64)
            red = data[:, :, bands["red"]].astype(np.float64)
            denom = nir + red
            ndvi = np.divide(nir - red, denom, out=np.full(denom.shape, -np.inf), where=denom != 0)
            keep &= ndvi >= self.ndvi_threshold

        if self.nir_enabled:
            keep &= data[:, :, bands["nir"]] >= self.nir_threshold

        if self.blue_enabled:
            keep &= data[:, :, bands["blue"]] <= self.blue_threshold

        return keep

    def apply(self, reader: "ChunkedRasterReader", wavelengths: np.ndarray,
              output_path: Path) -> int:
        """Write the radiometric mask of the whole raster.

        Parameters
        ----------
        reader : ChunkedRasterReader
            Input raster (its own mask is ANDed in).
        wavelengths : np.ndarray
            Band center wavelengths in nm.
        output_path : Path
            Destination uint8 GeoTIFF (1 = retained).

        Returns
        -------
        int
            Number of retained pixels.

        Raises
        ------
        ConfigurationError
            If a target band is missing or no pixel survives. No mask file
            is left behind on failure.
        """
        bands = self.locate_bands(wavelengths)
        profile = output_profile(reader.profile, count=1, dtype="uint8", nodata=None)
        retained = 0

        def work(chunk):
            return chunk.row_off, self.compute_mask(chunk.data, chunk.mask, bands)

        def write(result):
            nonlocal retained
            row_off, keep = result
            writer.write(keep.astype(np.uint8), row_off=row_off)
            retained += int(np.count_nonzero(keep))

        total = reader.height * reader.width
        try:
            with RasterWriter(output_path, profile) as writer:
                ChunkWorkerPool(self.nb_workers, name="Radiometric").run(reader.iter_chunks(), work, write)
            if retained == 0:
                raise ConfigurationError(
                    f"Radiometric filter retained no pixel of {reader.raster_path} "
                    f"({total} pixels); check thresholds and mask"
                )
        except Exception:
            Path(output_path).unlink(missing_ok=True)
            raise

        logger.info("Radiometric mask: %d/%d pixels retained (%.1f%%) -> %s",
                    retained, total, 100.0 * retained / total, output_path)
        return retained
