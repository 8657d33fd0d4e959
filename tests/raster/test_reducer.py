"""Tests for PCA / SPCA / MNF dimensionality reduction."""

import numpy as np
import pytest
import rasterio

from specdiv.raster.reducer import DimensionalityReducer, ReductionModel
from specdiv.raster.reader import ChunkedRasterReader
from specdiv.raster.raster_utils import read_wavelengths
from specdiv.contracts.failure import ConfigurationError, NumericalError

pytestmark = pytest.mark.unit


def _pixels(n=500, d=5, seed=0):
    """Independent bands with decreasing variance."""
    rng = np.random.default_rng(seed)
    return rng.normal(100.0, 1.0, size=(n, d)) * np.arange(d, 0, -1) * 10.0


def test_reducer_init(internal_config):
    reducer = DimensionalityReducer(internal_config)
    assert reducer.method == "PCA"
    assert reducer.outlier_filter is False


def test_pca_orthonormal_basis(internal_config):
    model = DimensionalityReducer(internal_config).fit_pixels(_pixels(), None)

    assert model.n_components == 5
    np.testing.assert_allclose(model.basis @ model.basis.T, np.eye(5), atol=1e-8)
    assert np.all(np.diff(model.eigenvalues) <= 0)
    # Leading component follows the highest-variance band, with a positive loading
    assert np.argmax(np.abs(model.basis[0])) == 0
    assert model.basis[0, 0] > 0


def test_pca_scores_are_centered(internal_config):
    pixels = _pixels()
    model = DimensionalityReducer(internal_config).fit_pixels(pixels, None)
    scores = model.transform(pixels)

    np.testing.assert_allclose(scores.mean(axis=0), 0.0, atol=1e-8)
    np.testing.assert_allclose(scores.var(axis=0, ddof=1), model.eigenvalues, rtol=1e-8)


def test_fit_is_deterministic(internal_config):
    pixels = _pixels()
    first = DimensionalityReducer(internal_config).fit_pixels(pixels, None)
    second = DimensionalityReducer(internal_config).fit_pixels(pixels, None)
    np.testing.assert_array_equal(first.basis, second.basis)


def test_constant_band_is_singular(internal_config):
    pixels = _pixels()
    pixels[:, 2] = 7.0
    with pytest.raises(NumericalError, match="singular"):
        DimensionalityReducer(internal_config).fit_pixels(pixels, None)


def test_collinear_bands_are_singular(internal_config):
    pixels = _pixels()
    pixels[:, 4] = 2.0 * pixels[:, 0]
    with pytest.raises(NumericalError, match="rank 4 of 5"):
        DimensionalityReducer(internal_config).fit_pixels(pixels, None)


def test_too_few_pixels(internal_config):
    with pytest.raises(NumericalError, match="cannot fit"):
        DimensionalityReducer(internal_config).fit_pixels(_pixels(n=5), None)


def test_standardized_pca(make_config):
    config = make_config(reduction={"standardize": True})
    model = DimensionalityReducer(config).fit_pixels(_pixels(), None)
    assert np.all(model.scale > 1.0)


def test_excluded_bands(internal_config):
    wavelengths = np.array([380.0, 500.0, 700.0, 900.0, 1400.0, 1600.0])
    pixels = _pixels(d=6)

    model = DimensionalityReducer(internal_config).fit_pixels(pixels, wavelengths)

    assert model.band_indices.tolist() == [1, 2, 3, 5]
    assert model.wavelengths.tolist() == [500.0, 700.0, 900.0, 1600.0]
    assert model.n_components == 4


def test_too_many_excluded_bands(internal_config):
    with pytest.raises(ConfigurationError, match="Only 1 bands left"):
        DimensionalityReducer(internal_config).select_bands(np.array([380.0, 500.0, 1400.0]), 3)


def test_continuum_removal_needs_wavelengths(make_config):
    reducer = DimensionalityReducer(make_config(continuum_removal=True))
    with pytest.raises(ConfigurationError, match="requires band wavelengths"):
        reducer.select_bands(None, 10)


def test_continuum_removal_drops_endpoint_features(make_config):
    rng = np.random.default_rng(1)
    wavelengths = np.linspace(500.0, 1000.0, 7)
    pixels = rng.uniform(0.1, 0.5, size=(400, 7))

    model = DimensionalityReducer(make_config(continuum_removal=True)).fit_pixels(pixels, wavelengths)

    assert model.continuum_removal is True
    assert model.feature_indices.tolist() == [1, 2, 3, 4, 5]
    assert model.n_components == 5
    assert model.transform(pixels).shape == (400, 5)


def test_continuum_removal_needs_sorted_wavelengths(make_config):
    reducer = DimensionalityReducer(make_config(continuum_removal=True))
    with pytest.raises(ConfigurationError, match="increasing wavelength"):
        reducer.select_bands(np.array([500.0, 400.0, 600.0, 700.0]), 4)


@pytest.mark.parametrize("method", ["PCA", "MNF"])
def test_continuum_removal_on_vegetation_scene(make_config, scene_path, method):
    """Vegetation spectra share hull vertices whose removed value is always 1."""
    mask = np.ones((40, 40), dtype=bool)
    mask[:5, :5] = False
    reader = ChunkedRasterReader(scene_path, mask=mask, max_ram_gb=2e-5)
    config = make_config(reduction={"method": method, "continuum_removal": True})

    fit = DimensionalityReducer(config).fit(reader, read_wavelengths(scene_path))
    model = fit.model

    # First band, NIR shoulder (835 nm) and last band
    assert not {0, 7, 11} & set(model.feature_indices.tolist())
    assert model.n_components == model.feature_indices.size >= 2
    assert np.all(np.diff(model.eigenvalues) <= 0)
    assert np.isfinite(fit.scores).all()
    assert np.isfinite(model.transform(fit.pixels)).all()


def test_spca_components_ordered_by_variance(make_config):
    config = make_config(reduction={"method": "spca", "spca_alpha": 0.1})
    model = DimensionalityReducer(config).fit_pixels(_pixels(n=300, d=4), None)

    assert model.method == "SPCA"
    assert model.basis.shape == (4, 4)
    assert np.all(np.diff(model.eigenvalues) <= 1e-9)


def test_mnf_orders_by_signal_to_noise(make_config):
    rng = np.random.default_rng(2)
    signal = rng.normal(0.0, 1.0, size=(600, 4)) * np.array([50.0, 20.0, 5.0, 1.0])
    pixels = signal + rng.normal(0.0, 1.0, size=signal.shape)
    neighbours = signal + rng.normal(0.0, 1.0, size=signal.shape)

    reducer = DimensionalityReducer(make_config(reduction_method="MNF"))
    model = reducer.fit_pixels(pixels, None, neighbours)

    assert model.method == "MNF"
    assert np.all(np.diff(model.eigenvalues) <= 0)
    assert model.eigenvalues[0] > 10 * model.eigenvalues[-1]


def test_mnf_without_neighbours(make_config):
    reducer = DimensionalityReducer(make_config(reduction_method="MNF"))
    with pytest.raises(ConfigurationError, match="neighbour"):
        reducer.fit_pixels(_pixels(), None)


def test_outlier_mask(internal_config):
    model = DimensionalityReducer(internal_config).fit_pixels(_pixels(), None)
    scores = np.zeros((3, model.n_components)) + model.score_mean
    scores[1, 0] += 5 * model.score_std[0]
    scores[2, 4] += 5 * model.score_std[4]

    # Only the first two components are tested
    assert model.outlier_mask(scores, 3.0, nb_components=2).tolist() == [True, False, True]
    assert model.outlier_mask(scores, 3.0).tolist() == [True, False, False]


def test_model_save_and_load(internal_config, temp_dir):
    wavelengths = np.array([500.0, 600.0, 700.0, 800.0, 900.0])
    model = DimensionalityReducer(internal_config).fit_pixels(_pixels(), wavelengths)

    path = model.save(temp_dir / "model.npz")
    loaded = ReductionModel.load(path)

    assert loaded.method == "PCA"
    assert loaded.continuum_removal is False
    assert loaded.excluded_wavelengths == model.excluded_wavelengths
    np.testing.assert_array_equal(loaded.basis, model.basis)
    np.testing.assert_array_equal(loaded.band_indices, model.band_indices)
    np.testing.assert_array_equal(loaded.feature_indices, model.feature_indices)


def test_fit_and_apply_on_raster(make_config, scene_path, temp_dir):
    config = make_config(nb_cpu=2, max_ram_gb=2e-5)
    mask = np.ones((40, 40), dtype=bool)
    mask[:5, :5] = False
    reader = ChunkedRasterReader(scene_path, mask=mask, max_ram_gb=2e-5)
    reducer = DimensionalityReducer(config)

    fit = reducer.fit(reader, None)
    retained = reducer.apply(reader, fit.model, temp_dir / "reduced.tif", temp_dir / "filtered.tif")

    assert fit.pixels.shape == (1575, 12)
    assert retained == 1575
    with rasterio.open(temp_dir / "reduced.tif") as src:
        reduced = src.read()
        assert src.count == 12
        assert src.descriptions[0] == "PCA_1"
    assert np.isnan(reduced[:, :5, :5]).all()
    assert np.isfinite(reduced[:, 5:, :]).all()
    # First component separates the two vegetation halves
    left, right = reduced[0, 5:, :20].mean(), reduced[0, 5:, 20:].mean()
    assert abs(left - right) > 100
    with rasterio.open(temp_dir / "filtered.tif") as src:
        np.testing.assert_array_equal(src.read(1).astype(bool), mask)
    # Every unmasked pixel was sampled, in row order: the written scores are the fit scores
    np.testing.assert_allclose(reduced[:, mask].T, fit.scores, rtol=1e-6, atol=1e-4)


def test_outlier_filter_drops_pixels(make_config, scene_path, temp_dir):
    config = make_config(outlier_filter=True, reduction={"outlier_sd": 3.0})
    reader = ChunkedRasterReader(scene_path)
    reducer = DimensionalityReducer(config)

    fit = reducer.fit(reader, None)
    retained = reducer.apply(reader, fit.model, temp_dir / "reduced.tif", temp_dir / "filtered.tif")

    # The 25 bare soil pixels sit far outside the vegetation score distribution
    assert 0 < retained <= 1600 - 25


def test_outlier_filter_removing_everything_leaves_no_outputs(make_config, scene_path, temp_dir):
    config = make_config(outlier_filter=True, reduction={"outlier_sd": 1e-6})
    reader = ChunkedRasterReader(scene_path, max_ram_gb=2e-5)
    reducer = DimensionalityReducer(config)
    fit = reducer.fit(reader, None)

    with pytest.raises(ConfigurationError, match="No pixel left"):
        reducer.apply(reader, fit.model, temp_dir / "reduced.tif", temp_dir / "filtered.tif")

    assert not (temp_dir / "reduced.tif").exists()
    assert not (temp_dir / "filtered.tif").exists()
