"""Chunked raster reading under a RAM budget.

Reads a multi-band raster as contiguous row bands so that a single chunk
never exceeds the per-worker memory budget. Every iteration reopens the
dataset, which makes the reader restartable and safe to iterate several
times (sampling pass, gathering pass, application pass).
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

import numpy as np
import rasterio
from rasterio.errors import RasterioIOError
from rasterio.windows import Window

from specdiv.contracts import assert_chunk_cover
from specdiv.contracts.failure import RasterIOError, ConfigurationError

__all__ = ['RasterChunk', 'ChunkedRasterReader']

logger = logging.getLogger(__name__)

GIGABYTE = 1024 ** 3


@dataclass(frozen=True)
class RasterChunk:
    """Contiguous row band of a raster.

    Attributes
    ----------
    chunk_id : int
        Position of the chunk in row order (0-based).
    row_off : int
        First raster row covered by the chunk.
    data : np.ndarray
        (rows, cols, bands) pixel values in the raster's native dtype.
    mask : np.ndarray
        (rows, cols) bool, True = retained pixel.
    """
    chunk_id: int
    row_off: int
    data: np.ndarray
    mask: np.ndarray

    @property
    def n_rows(self) -> int:
        return self.data.shape[0]

    @property
    def window(self) -> Window:
        return Window(0, self.row_off, self.data.shape[1], self.n_rows)


class ChunkedRasterReader:
    """Lazy, restartable row-band reader of a multi-band raster.

    Rows per chunk are derived from the RAM budget::

        rows = floor(max_ram_gb * 1024**3 / (itemsize * n_bands_read * n_cols))

    with a minimum of one row. ``row_multiple`` rounds that down to a
    multiple so fixed-size windows never straddle two chunks; a budget
    smaller than one multiple of rows raises.

    Parameters
    ----------
    raster_path : str or Path
        Raster readable by rasterio/GDAL.
    mask : None, str, Path or np.ndarray, optional
        None retains every pixel; a path names a single-band 0/1 raster;
        an array must be (height, width) bool. Pixels equal to the raster's
        no-data value in any band are always dropped.
    max_ram_gb : float
        Per-chunk budget in GB.
    expected_bands : int, optional
        Band count declared by spectral metadata; a mismatch raises.
    bands : list of int, optional
        1-based subset of bands to read (all bands by default).
    row_multiple : int
        Chunk heights are multiples of this value (except the last chunk).

    Raises
    ------
    RasterIOError
        If the raster or mask cannot be opened, or the band count differs
        from ``expected_bands``.
    ConfigurationError
        If the mask shape differs from the raster, ``bands`` is out of range,
        or ``max_ram_gb`` cannot hold ``row_multiple`` rows.

    Examples
    --------
    >>> reader = ChunkedRasterReader("flightline.tif", max_ram_gb=0.25)
    >>> for chunk in reader:
    ...     pixels = chunk.data[chunk.mask]
    """

    def __init__(self, raster_path: Union[str, Path],
                 mask: Optional[Union[str, Path, np.ndarray]] = None,
                 max_ram_gb: float = 0.5,
                 expected_bands: Optional[int] = None,
                 bands: Optional[list[int]] = None,
                 row_multiple: int = 1):
        self.raster_path = Path(raster_path)
        self.max_ram_gb = max_ram_gb

        with self._open(self.raster_path) as src:
            self.height = src.height
            self.width = src.width
            self.count = src.count
            self.dtype = np.dtype(src.dtypes[0])
            self.nodata = src.nodata
            self.transform = src.transform
            self.crs = src.crs
            self.profile = dict(src.profile)

        if expected_bands is not None and expected_bands != self.count:
            raise RasterIOError(
                f"{self.raster_path} has {self.count} bands but spectral metadata "
                f"declares {expected_bands}"
            )

        self.bands = list(bands) if bands else list(range(1, self.count + 1))
        if min(self.bands) < 1 or max(self.bands) > self.count:
            raise ConfigurationError(
                f"Requested bands {self.bands} outside 1..{self.count} of {self.raster_path}"
            )

        self._mask_array = None
        self._mask_path = None
        if isinstance(mask, np.ndarray):
            if mask.shape != self.shape:
                raise ConfigurationError(
                    f"Mask shape {mask.shape} does not match raster shape {self.shape}"
                )
            self._mask_array = mask.astype(bool)
        elif mask is not None:
            self._mask_path = Path(mask)
            with self._open(self._mask_path) as msrc:
                if (msrc.height, msrc.width) != self.shape:
                    raise ConfigurationError(
                        f"Mask {self._mask_path} shape {(msrc.height, msrc.width)} does not "
                        f"match raster shape {self.shape}"
                    )

        self.rows_per_chunk = self._rows_per_chunk(max(1, int(row_multiple)))
        logger.debug("ChunkedRasterReader: %s (%d x %d x %d), %d rows/chunk",
                     self.raster_path.name, self.height, self.width,
                     len(self.bands), self.rows_per_chunk)

    @staticmethod
    def _open(path: Path):
        try:
            return rasterio.open(path)
        except RasterioIOError as exc:
            raise RasterIOError(f"Cannot open raster {path}: {exc}") from exc

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height, self.width)

    @property
    def budget_bytes(self) -> int:
        return int(self.max_ram_gb * GIGABYTE)

    def _rows_per_chunk(self, row_multiple: int) -> int:
        row_bytes = self.dtype.itemsize * len(self.bands) * self.width
        rows = max(1, self.budget_bytes // row_bytes)
        if rows >= row_multiple:
            rows = (rows // row_multiple) * row_multiple
        elif rows < self.height:
            needed = min(row_multiple, self.height)
            raise ConfigurationError(
                f"{needed} rows of {self.raster_path} ({needed * row_bytes / GIGABYTE:.3g} GB) "
                f"are needed per chunk for {row_multiple}-pixel windows; "
                f"max_ram_gb={self.max_ram_gb} holds {rows}"
            )
        return int(min(rows, self.height))

    def windows(self) -> list[tuple[int, int]]:
        """(row_off, n_rows) of every chunk, in row order."""
        windows = [
            (row_off, min(self.rows_per_chunk, self.height - row_off))
            for row_off in range(0, self.height, self.rows_per_chunk)
        ]
        assert_chunk_cover(windows, self.height)
        return windows

    def _read(self, src, msrc, chunk_id: int, row_off: int, n_rows: int) -> RasterChunk:
        window = Window(0, row_off, self.width, n_rows)
        data = np.moveaxis(src.read(self.bands, window=window), 0, -1)

        if self._mask_array is not None:
            mask = self._mask_array[row_off:row_off + n_rows].copy()
        elif msrc is not None:
            mask = msrc.read(1, window=window) != 0
        else:
            mask = np.ones((n_rows, self.width), dtype=bool)

        if self.nodata is not None:
            if np.isnan(self.nodata):
                mask &= ~np.any(np.isnan(data), axis=2)
            else:
                mask &= ~np.any(data == self.nodata, axis=2)

        return RasterChunk(chunk_id=chunk_id, row_off=row_off, data=data, mask=mask)

    def iter_chunks(self) -> Iterator[RasterChunk]:
        """Yield every chunk once, top to bottom."""
        with self._open(self.raster_path) as src:
            msrc = self._open(self._mask_path) if self._mask_path is not None else None
            try:
                for chunk_id, (row_off, n_rows) in enumerate(self.windows()):
                    yield self._read(src, msrc, chunk_id, row_off, n_rows)
            finally:
                if msrc is not None:
                    msrc.close()

    def __iter__(self) -> Iterator[RasterChunk]:
        return self.iter_chunks()

    def __len__(self) -> int:
        return len(self.windows())

    def read_window(self, row_off: int, n_rows: int) -> RasterChunk:
        """Read an arbitrary row band (clipped to the raster)."""
        if row_off < 0 or row_off >= self.height:
            raise ConfigurationError(f"Row offset {row_off} outside raster of height {self.height}")
        n_rows = min(n_rows, self.height - row_off)
        with self._open(self.raster_path) as src:
            msrc = self._open(self._mask_path) if self._mask_path is not None else None
            try:
                return self._read(src, msrc, row_off // self.rows_per_chunk, row_off, n_rows)
            finally:
                if msrc is not None:
                    msrc.close()

    def count_valid(self) -> int:
        """Number of retained pixels over the whole raster."""
        return int(sum(np.count_nonzero(chunk.mask) for chunk in self.iter_chunks()))
