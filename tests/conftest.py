"""Root-level pytest fixtures for the specdiv test suite.

Provides shared configuration fixtures following Pydantic-based architecture,
and small synthetic GeoTIFF scenes written to temporary directories.
All tests must use these fixtures instead of creating raw dict configs.
"""

import logging

import pytest
from pathlib import Path
import tempfile
import shutil

import numpy as np
import rasterio
from rasterio.transform import from_origin

from specdiv.schemas import ParamConfig, UserConfig, resolve_config
from specdiv.setup_directories import setup_output_directories


# =============================================================================
# Synthetic scene
# =============================================================================

# Band centers (nm); none fall in the default absorption windows
WAVELENGTHS = [450, 480, 550, 600, 650, 700, 750, 835, 900, 1000, 1200, 1600]

# Two vegetation spectra (NDVI > 0.8, NIR >= 1500, Blue <= 500) and bare soil
SPECIES_A = [300, 250, 600, 450, 300, 200, 2500, 3200, 3300, 3100, 2500, 1800]
SPECIES_B = [350, 300, 900, 700, 450, 200, 2000, 2600, 2700, 2600, 2200, 1500]
SOIL = [1200, 1300, 1500, 1600, 1700, 1800, 1900, 2000, 2050, 2100, 2200, 2300]

SCENE_SIZE = 40
SOIL_SIZE = 5
SCENE_TRANSFORM = from_origin(500000.0, 4100000.0, 1.0, 1.0)


def write_raster(path, data, dtype="float32", nodata=None, wavelengths=None,
                 transform=SCENE_TRANSFORM, crs="EPSG:32631"):
    """Write a (rows, cols) or (rows, cols, bands) array as a GeoTIFF."""
    data = np.asarray(data)
    if data.ndim == 2:
        data = data[:, :, np.newaxis]
    rows, cols, bands = data.shape
    profile = {
        "driver": "GTiff",
        "height": rows,
        "width": cols,
        "count": bands,
        "dtype": dtype,
        "crs": crs,
        "transform": transform,
        "nodata": nodata,
    }
    with rasterio.open(path, "w", **profile) as dst:
        dst.write(np.moveaxis(data, -1, 0).astype(dtype))
        if wavelengths is not None:
            for band, wavelength in enumerate(wavelengths, start=1):
                dst.update_tags(band, wavelength=str(wavelength))
    return Path(path)


def make_scene(seed=0, size=SCENE_SIZE):
    """(size, size, 12) reflectance: species A left half, B right half, soil top-left corner."""
    rng = np.random.default_rng(seed)
    scene = np.empty((size, size, len(WAVELENGTHS)), dtype=np.float64)
    scene[:, :size // 2] = SPECIES_A
    scene[:, size // 2:] = SPECIES_B
    scene[:SOIL_SIZE, :SOIL_SIZE] = SOIL
    scene += rng.normal(0.0, 15.0, scene.shape)
    return scene


# =============================================================================
# Configuration Fixtures (Pydantic-based)
# =============================================================================

@pytest.fixture
def param_config():
    """Expert configuration with all defaults.

    Use this as the base for all test configs. Override specific values
    using make_config or by creating custom UserConfig instances.
    """
    return ParamConfig()


@pytest.fixture
def internal_config(param_config):
    """Fully validated runtime configuration (no overrides).

    Use this when tests don't care about specific config values and just
    need a valid InternalConfig to pass to constructors.

    Examples
    --------
    >>> def test_reducer_init(internal_config):
    ...     reducer = DimensionalityReducer(internal_config)
    ...     assert reducer.method == "PCA"
    """
    return resolve_config(param_config, None, None)


@pytest.fixture
def make_config(param_config):
    """Factory fixture for creating custom test configs.

    Use this when you need to override specific values for a test.
    Returns a callable that accepts UserConfig-compatible kwargs.

    Examples
    --------
    >>> def test_custom_window(make_config):
    ...     config = make_config(window_size=5)
    ...     agg = WindowAggregator(config)
    ...     assert agg.window_size == 5
    """
    def _make(**user_overrides):
        """Create InternalConfig with user overrides."""
        if user_overrides:
            user = UserConfig(**user_overrides)
            return resolve_config(param_config, user, None)
        else:
            return resolve_config(param_config, None, None)

    return _make


# =============================================================================
# Directory and Raster Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Temporary directory that is cleaned up after test."""
    d = tempfile.mkdtemp()
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def output_dirs(temp_dir):
    """Standard specdiv run directory structure under the temp dir."""
    return setup_output_directories(temp_dir / "output", "test_run")


@pytest.fixture
def scene_path(temp_dir):
    """40 x 40 x 12 float32 scene with wavelength band tags."""
    return write_raster(temp_dir / "scene.tif", make_scene(), wavelengths=WAVELENGTHS)


@pytest.fixture
def untagged_scene_path(temp_dir):
    """Same scene without any spectral metadata."""
    return write_raster(temp_dir / "scene_untagged.tif", make_scene())


@pytest.fixture
def scene_config(make_config, scene_path):
    """Small-budget config so that every stage reads several chunks."""
    return make_config(
        raster_path=str(scene_path),
        nb_cpu=2,
        max_ram_gb=2e-5,
        nbclusters=2,
        selected_components=[1, 2, 3],
        window_size=10,
        alpha_indices=["shannon", "simpson", "fisher"],
    )


@pytest.fixture
def raster_factory(temp_dir):
    """Callable writing an array to ``temp_dir / name`` as a GeoTIFF.

    Examples
    --------
    >>> def test_mask(raster_factory):
    ...     path = raster_factory("mask.tif", np.ones((10, 10)), dtype="uint8")
    """
    def _write(name, data, **kwargs):
        return write_raster(temp_dir / name, data, **kwargs)

    return _write


@pytest.fixture
def scene_plots():
    """Two 5 x 5 pixel plots in the scene CRS: one per species half."""
    def box(col, row, size=5):
        x0, y0 = 500000 + col, 4100000 - row
        return {
            "type": "Polygon",
            "coordinates": [[(x0, y0), (x0 + size, y0), (x0 + size, y0 - size),
                             (x0, y0 - size), (x0, y0)]],
        }

    return {"west": box(10, 25), "east": box(25, 25)}


@pytest.fixture(autouse=True)
def restore_root_logging():
    """The pipeline reconfigures the root logger; put the previous handlers back."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
