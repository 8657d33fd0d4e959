"""Raster helpers shared by the pipeline stages.

- Spectral metadata: band center wavelengths from a companion file or band tags
- Band exclusion for absorption windows
- Continuum removal (upper convex hull normalization, via gfit)
- RasterWriter: coordinate-addressed GeoTIFF output

Author: specdiv developers
"""

import logging
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
import rasterio
from gfit.util import remove_hull
from rasterio.errors import RasterioIOError
from rasterio.transform import Affine
from rasterio.windows import Window

from specdiv.contracts.failure import RasterIOError

__all__ = [
    'read_wavelengths',
    'kept_band_indices',
    'continuum_removal',
    'output_profile',
    'window_transform',
    'RasterWriter',
]

logger = logging.getLogger(__name__)


def _to_nanometres(values: np.ndarray) -> np.ndarray:
    """Convert micrometre wavelengths to nm (anything below 100 is assumed to be um)."""
    if values.size and np.nanmax(values) < 100:
        logger.debug("Wavelengths look like micrometres, converting to nm")
        return values * 1000.0
    return values


def _wavelengths_from_file(path: Path) -> np.ndarray:
    if not path.exists():
        raise RasterIOError(f"Wavelength file not found: {path}")

    frame = pd.read_csv(path, sep=r"[\s,;]+", engine="python", comment="#")
    columns = {str(c).strip().lower(): c for c in frame.columns}
    if "wavelength" in columns:
        values = frame[columns["wavelength"]]
    else:
        # No header: one wavelength per line
        frame = pd.read_csv(path, sep=r"[\s,;]+", engine="python", comment="#", header=None)
        values = frame.iloc[:, 0]

    wavelengths = pd.to_numeric(values, errors="coerce").to_numpy(dtype=np.float64)
    if wavelengths.size == 0 or np.isnan(wavelengths).any():
        raise RasterIOError(f"Malformed wavelength file (non-numeric entries): {path}")
    return wavelengths


def _wavelengths_from_tags(src) -> Optional[np.ndarray]:
    values = []
    for band in range(1, src.count + 1):
        tags = {k.lower(): v for k, v in src.tags(band).items()}
        raw = tags.get("wavelength", src.descriptions[band - 1])
        try:
            values.append(float(raw))
        except (TypeError, ValueError):
            values.append(np.nan)

    values = np.asarray(values, dtype=np.float64)
    if np.isnan(values).all():
        return None
    if np.isnan(values).any():
        raise RasterIOError(
            f"Raster declares wavelengths for only {np.count_nonzero(~np.isnan(values))} "
            f"of {values.size} bands"
        )
    return values


def read_wavelengths(raster_path, wavelengths_path=None) -> Optional[np.ndarray]:
    """Read band center wavelengths in nm.

    Parameters
    ----------
    raster_path : str or Path
        Multi-band raster. Used when no companion file is given: each band's
        ``wavelength`` tag, or a numeric band description, is used.
    wavelengths_path : str or Path, optional
        Companion file with one wavelength per line, or a delimited table with
        a ``wavelength`` column.

    Returns
    -------
    np.ndarray or None
        One wavelength per band, or None when the raster declares none.

    Raises
    ------
    RasterIOError
        If the file is unreadable/malformed or its length differs from the band count.
    """
    try:
        with rasterio.open(raster_path) as src:
            band_count = src.count
            if wavelengths_path is None:
                wavelengths = _wavelengths_from_tags(src)
            else:
                wavelengths = _wavelengths_from_file(Path(wavelengths_path))
    except RasterioIOError as exc:
        raise RasterIOError(f"Cannot open raster {raster_path}: {exc}") from exc

    if wavelengths is None:
        return None
    if wavelengths.size != band_count:
        raise RasterIOError(
            f"Spectral metadata lists {wavelengths.size} wavelengths but "
            f"{raster_path} has {band_count} bands"
        )
    return _to_nanometres(wavelengths)


def kept_band_indices(wavelengths: np.ndarray,
                      excluded: list[tuple[float, float]]) -> np.ndarray:
    """0-based indices of bands whose wavelength lies outside every excluded window."""
    wavelengths = np.asarray(wavelengths, dtype=np.float64)
    keep = np.ones(wavelengths.shape, dtype=bool)
    for low, high in excluded:
        keep &= ~((wavelengths >= low) & (wavelengths <= high))
    return np.flatnonzero(keep)


def continuum_removal(spectra: np.ndarray) -> np.ndarray:
    """Divide each spectrum by its upper convex hull.

    Bands must be in increasing wavelength order; the hull is taken over
    band positions, as ``gfit.util.remove_hull`` does. Endpoints are always
    hull vertices, so they come out as exactly 1.

    Parameters
    ----------
    spectra : np.ndarray
        (n_pixels, n_bands) reflectance

    Returns
    -------
    np.ndarray
        (n_pixels, n_bands) continuum-removed reflectance (float64)
    """
    return np.asarray(remove_hull(np.ascontiguousarray(spectra, dtype=np.float64)), dtype=np.float64)


def window_transform(transform: Affine, window_size: int) -> Affine:
    """Geotransform of the window grid (one output pixel per window)."""
    return transform @ Affine.scale(window_size, window_size)


def output_profile(template: dict, count: int, dtype: str, nodata,
                   transform: Optional[Affine] = None,
                   height: Optional[int] = None, width: Optional[int] = None) -> dict:
    """GeoTIFF creation profile derived from an input raster's profile."""
    return {
        "driver": "GTiff",
        "height": template["height"] if height is None else height,
        "width": template["width"] if width is None else width,
        "count": count,
        "dtype": dtype,
        "crs": template.get("crs"),
        "transform": template["transform"] if transform is None else transform,
        "nodata": nodata,
        "compress": "lzw",
    }


class RasterWriter:
    """Coordinate-addressed GeoTIFF writer.

    Used by a single writer thread; chunks may arrive in any order since
    each write is addressed by its row offset.

    Examples
    --------
    >>> profile = output_profile(reader.profile, count=1, dtype="uint8", nodata=None)
    >>> with RasterWriter("mask.tif", profile) as writer:
    ...     writer.write(mask_chunk.astype("uint8"), row_off=0)
    """

    def __init__(self, path, profile: dict, band_names: Optional[list[str]] = None):
        self.path = Path(path)
        self.profile = profile
        self.band_names = band_names
        self._dst = None

    def __enter__(self):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._dst = rasterio.open(self.path, "w", **self.profile)
        except (RasterioIOError, OSError) as exc:
            raise RasterIOError(f"Cannot write output raster {self.path}: {exc}") from exc
        if self.band_names:
            for band, name in enumerate(self.band_names, start=1):
                self._dst.set_band_description(band, name)
        return self

    def write(self, array: np.ndarray, row_off: int, col_off: int = 0) -> None:
        """Write a (rows, cols) or (rows, cols, bands) block at the given offset."""
        if array.ndim == 2:
            array = array[:, :, np.newaxis]
        rows, cols, _ = array.shape
        window = Window(col_off, row_off, cols, rows)
        self._dst.write(np.moveaxis(array, -1, 0), window=window)

    def __exit__(self, exc_type, exc, tb):
        if self._dst is not None:
            self._dst.close()
            self._dst = None
        return False
