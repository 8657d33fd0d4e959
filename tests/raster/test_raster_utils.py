"""Tests for raster helpers: wavelengths, band exclusion, continuum removal, writing."""

import numpy as np
import pytest
import rasterio
from rasterio.transform import Affine, from_origin

from specdiv.raster.raster_utils import (
    RasterWriter,
    continuum_removal,
    kept_band_indices,
    output_profile,
    read_wavelengths,
    window_transform,
)
from specdiv.contracts.failure import RasterIOError

pytestmark = pytest.mark.unit


class TestWavelengths:
    """Spectral metadata discovery."""

    def test_from_band_tags(self, scene_path):
        wavelengths = read_wavelengths(scene_path)
        assert wavelengths.tolist()[:3] == [450.0, 480.0, 550.0]
        assert wavelengths.size == 12

    def test_untagged_raster_returns_none(self, untagged_scene_path):
        assert read_wavelengths(untagged_scene_path) is None

    def test_from_table_with_header(self, scene_path, temp_dir):
        table = temp_dir / "wl.csv"
        table.write_text("band,wavelength\n" + "\n".join(f"{i},{400 + 10 * i}" for i in range(12)))

        wavelengths = read_wavelengths(scene_path, table)

        assert wavelengths[0] == 400.0
        assert wavelengths[-1] == 510.0

    def test_headerless_micrometres_converted(self, scene_path, temp_dir):
        listing = temp_dir / "wl.txt"
        listing.write_text("\n".join(f"{0.4 + 0.1 * i:.2f}" for i in range(12)))

        wavelengths = read_wavelengths(scene_path, listing)

        np.testing.assert_allclose(wavelengths[:2], [400.0, 500.0])

    def test_length_mismatch(self, scene_path, temp_dir):
        listing = temp_dir / "wl.txt"
        listing.write_text("450\n550\n650\n")
        with pytest.raises(RasterIOError, match="3 wavelengths"):
            read_wavelengths(scene_path, listing)

    def test_missing_file(self, scene_path, temp_dir):
        with pytest.raises(RasterIOError, match="not found"):
            read_wavelengths(scene_path, temp_dir / "nope.txt")

    def test_non_numeric_entries(self, scene_path, temp_dir):
        listing = temp_dir / "wl.txt"
        listing.write_text("\n".join(["450"] * 11 + ["abc"]))
        with pytest.raises(RasterIOError, match="Malformed"):
            read_wavelengths(scene_path, listing)


def test_kept_band_indices():
    wavelengths = np.array([380, 450, 1400, 1500, 1900, 2450])
    excluded = [(0, 400), (1340, 1450), (1780, 1960), (2400, 2600)]
    assert kept_band_indices(wavelengths, excluded).tolist() == [1, 3]


class TestContinuumRemoval:
    """Upper convex hull normalization."""

    def test_straight_line_is_flat(self):
        spectra = np.array([[1.0, 2.0, 3.0, 4.0]])
        np.testing.assert_allclose(continuum_removal(spectra), np.ones((1, 4)))

    def test_absorption_feature(self):
        spectra = np.array([[1.0, 0.5, 1.0]])
        np.testing.assert_allclose(continuum_removal(spectra), [[1.0, 0.5, 1.0]])

    def test_hull_above_every_band(self):
        rng = np.random.default_rng(3)
        spectra = rng.uniform(0.05, 0.6, size=(50, 30))

        removed = continuum_removal(spectra)

        assert removed.shape == spectra.shape
        assert removed.dtype == np.float64
        assert np.all(removed <= 1.0 + 1e-9)
        assert np.all(removed > 0)
        np.testing.assert_allclose(removed[:, [0, -1]], 1.0)

    def test_integer_reflectance_accepted(self):
        spectra = np.array([[200, 100, 300, 300]], dtype=np.uint16)
        np.testing.assert_allclose(continuum_removal(spectra), [[1.0, 0.4, 1.0, 1.0]])


def test_window_transform_scales_pixel_size():
    transform = from_origin(1000.0, 2000.0, 2.0, 2.0)
    scaled = window_transform(transform, 10)
    assert (scaled.a, scaled.e) == (20.0, -20.0)
    assert (scaled.c, scaled.f) == (1000.0, 2000.0)


def test_window_transform_keeps_rotation_terms():
    transform = Affine(2.0, 0.5, 1000.0, 0.25, -2.0, 2000.0)
    scaled = window_transform(transform, 4)
    assert tuple(scaled)[:6] == (8.0, 2.0, 1000.0, 1.0, -8.0, 2000.0)


def test_raster_writer_places_blocks(temp_dir):
    template = {"height": 6, "width": 4, "crs": None, "transform": from_origin(0, 6, 1, 1)}
    profile = output_profile(template, count=2, dtype="float32", nodata=float("nan"))
    path = temp_dir / "out" / "written.tif"

    with RasterWriter(path, profile, band_names=["PCA_1", "PCA_2"]) as writer:
        writer.write(np.full((3, 4, 2), 2.0), row_off=3)
        writer.write(np.full((3, 4, 2), 1.0), row_off=0)

    with rasterio.open(path) as src:
        data = src.read()
        assert src.descriptions == ("PCA_1", "PCA_2")
    assert data.shape == (2, 6, 4)
    assert np.all(data[:, :3] == 1.0)
    assert np.all(data[:, 3:] == 2.0)
