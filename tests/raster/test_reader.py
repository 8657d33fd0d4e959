"""Tests for ChunkedRasterReader."""

import numpy as np
import pytest
import rasterio

from specdiv.raster.reader import ChunkedRasterReader
from specdiv.contracts.failure import ConfigurationError, RasterIOError

pytestmark = pytest.mark.unit


def test_chunks_follow_ram_budget(scene_path):
    """40 cols x 12 bands x 4 bytes = 1920 bytes/row -> 11 rows under ~21 kB."""
    reader = ChunkedRasterReader(scene_path, max_ram_gb=2e-5)

    assert reader.rows_per_chunk == 11
    assert reader.windows() == [(0, 11), (11, 11), (22, 11), (33, 7)]
    assert len(reader) == 4


def test_chunks_reassemble_the_raster(scene_path):
    reader = ChunkedRasterReader(scene_path, max_ram_gb=2e-5)
    chunks = list(reader)

    with rasterio.open(scene_path) as src:
        full = np.moveaxis(src.read(), 0, -1)

    assert [c.chunk_id for c in chunks] == [0, 1, 2, 3]
    np.testing.assert_array_equal(np.concatenate([c.data for c in chunks]), full)
    assert all(c.mask.all() for c in chunks)


def test_reader_is_restartable(scene_path):
    reader = ChunkedRasterReader(scene_path, max_ram_gb=2e-5)
    first = [c.data.sum() for c in reader]
    second = [c.data.sum() for c in reader]
    assert first == second


def test_row_multiple_aligns_chunks(scene_path):
    reader = ChunkedRasterReader(scene_path, max_ram_gb=2e-5, row_multiple=10)
    assert reader.rows_per_chunk == 10


def test_row_multiple_over_budget_raises(raster_factory):
    # 100 x 100 x 4 float32: the budget holds 3 rows, windows need 10
    path = raster_factory("wide.tif", np.zeros((100, 100, 4)))
    with pytest.raises(ConfigurationError, match="10 rows of .* max_ram_gb=5e-06 holds 3"):
        ChunkedRasterReader(path, max_ram_gb=5e-6, row_multiple=10)


def test_row_multiple_taller_than_raster_reads_whole_raster(raster_factory):
    # The budget holds 7 rows: fewer than a window row, more than the raster
    path = raster_factory("short.tif", np.zeros((6, 100, 4)))
    reader = ChunkedRasterReader(path, max_ram_gb=1.1e-5, row_multiple=10)
    assert reader.rows_per_chunk == 6


def test_tiny_budget_reads_one_row(scene_path):
    reader = ChunkedRasterReader(scene_path, max_ram_gb=1e-9)
    assert reader.rows_per_chunk == 1
    assert len(reader) == 40


def test_band_subset(scene_path):
    reader = ChunkedRasterReader(scene_path, bands=[2, 5])
    chunk = next(iter(reader))
    assert chunk.data.shape == (40, 40, 2)


def test_band_subset_out_of_range(scene_path):
    with pytest.raises(ConfigurationError, match="outside 1..12"):
        ChunkedRasterReader(scene_path, bands=[0, 13])


def test_expected_band_mismatch(scene_path):
    with pytest.raises(RasterIOError, match="declares 10"):
        ChunkedRasterReader(scene_path, expected_bands=10)


def test_missing_raster(temp_dir):
    with pytest.raises(RasterIOError, match="Cannot open raster"):
        ChunkedRasterReader(temp_dir / "missing.tif")


def test_nodata_pixels_are_masked(raster_factory):
    data = np.ones((6, 6, 3), dtype=np.int16)
    data[2, 3, 1] = -9999
    path = raster_factory("nodata.tif", data, dtype="int16", nodata=-9999)

    reader = ChunkedRasterReader(path)

    assert reader.count_valid() == 35
    assert not next(iter(reader)).mask[2, 3]


def test_nan_nodata_pixels_are_masked(raster_factory):
    data = np.ones((4, 4, 2), dtype=np.float32)
    data[0, 0, :] = np.nan
    path = raster_factory("nan.tif", data, nodata=float("nan"))

    assert ChunkedRasterReader(path).count_valid() == 15


def test_mask_raster_is_applied(scene_path, raster_factory):
    mask = np.zeros((40, 40), dtype=np.uint8)
    mask[:, :10] = 1
    mask_path = raster_factory("mask.tif", mask, dtype="uint8")

    reader = ChunkedRasterReader(scene_path, mask=mask_path, max_ram_gb=2e-5)

    assert reader.count_valid() == 400


def test_mask_array_shape_mismatch(scene_path):
    with pytest.raises(ConfigurationError, match="does not match"):
        ChunkedRasterReader(scene_path, mask=np.ones((10, 10), dtype=bool))


def test_read_window_clips_to_raster(scene_path):
    reader = ChunkedRasterReader(scene_path)
    chunk = reader.read_window(35, 10)
    assert chunk.n_rows == 5
    assert chunk.row_off == 35


def test_read_window_outside_raster(scene_path):
    reader = ChunkedRasterReader(scene_path)
    with pytest.raises(ConfigurationError):
        reader.read_window(40, 1)
