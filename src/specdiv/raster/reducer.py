"""Dimensionality reduction of hyperspectral pixels (PCA / SPCA / MNF).

The model is fit on a seeded random sample of unmasked pixels drawn from
the whole image in two passes (count, then gather), and applied chunk by
chunk through the worker pool. Application writes a float32 reduced raster
(NaN no-data) and the downstream mask, with outliers removed when enabled.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TYPE_CHECKING

import numpy as np
from sklearn.decomposition import SparsePCA
from spectral.algorithms import GaussianStats

from specdiv.contracts import assert_reduction_model
from specdiv.contracts.failure import ConfigurationError, NumericalError
from specdiv.pipeline.workers import ChunkWorkerPool
from specdiv.raster.raster_utils import (
    RasterWriter,
    continuum_removal,
    kept_band_indices,
    output_profile,
)

if TYPE_CHECKING:
    from specdiv.schemas import InternalConfig
    from specdiv.raster.reader import ChunkedRasterReader

__all__ = ['ReductionModel', 'ReductionFit', 'DimensionalityReducer']

logger = logging.getLogger(__name__)

# Peak-to-peak below which a continuum-removed band is treated as constant
CONSTANT_FEATURE_TOL = 1e-9


@dataclass(frozen=True)
class ReductionModel:
    """Fitted projection from raw spectra to reduced components.

    Attributes
    ----------
    method : str
        "PCA", "SPCA" or "MNF".
    basis : np.ndarray
        (n_components, n_features) projection, one row per component.
    mean, scale : np.ndarray
        (n_features,) centering and scaling applied before projection.
    band_indices : np.ndarray
        0-based raster bands kept after absorption-window exclusion.
    wavelengths : np.ndarray
        Wavelengths of the kept bands (nm), empty when unknown.
    excluded_wavelengths : tuple
        Excluded (low, high) windows in nm.
    continuum_removal : bool
        Whether spectra are continuum-removed before projection.
    feature_indices : np.ndarray
        Positions, among the kept bands, of the bands used as features.
        With continuum removal, bands whose removed value is constant over
        the fit sample (always the first and last) are left out.
    eigenvalues : np.ndarray
        Variance (PCA / SPCA) or signal-to-noise ratio (MNF) per component.
    score_mean, score_std : np.ndarray
        Component score statistics of the fit sample (outlier filtering).
    """
    method: str
    basis: np.ndarray
    mean: np.ndarray
    scale: np.ndarray
    band_indices: np.ndarray
    wavelengths: np.ndarray
    excluded_wavelengths: tuple
    continuum_removal: bool
    feature_indices: np.ndarray
    eigenvalues: np.ndarray
    score_mean: np.ndarray
    score_std: np.ndarray

    @property
    def n_components(self) -> int:
        return self.basis.shape[0]

    def features(self, spectra: np.ndarray) -> np.ndarray:
        """Raw (n, all bands) spectra -> (n, n_features) float64 features."""
        features = np.asarray(spectra, dtype=np.float64)[:, self.band_indices]
        if self.continuum_removal:
            features = continuum_removal(features)
        return features[:, self.feature_indices]

    def project(self, features: np.ndarray) -> np.ndarray:
        return ((features - self.mean) / self.scale) @ self.basis.T

    def transform(self, spectra: np.ndarray) -> np.ndarray:
        """Component scores (n, n_components) of raw spectra."""
        return self.project(self.features(spectra))

    def outlier_mask(self, scores: np.ndarray, outlier_sd: float,
                     nb_components: Optional[int] = None) -> np.ndarray:
        """True for pixels within ``outlier_sd`` standard deviations on every tested component."""
        k = self.n_components if nb_components is None else min(nb_components, self.n_components)
        std = self.score_std[:k]
        tested = std > 0
        deviation = np.abs(scores[:, :k][:, tested] - self.score_mean[:k][tested]) / std[tested]
        return np.all(deviation <= outlier_sd, axis=1)

    def save(self, path) -> Path:
        """Persist the model as a .npz archive."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez(
            path,
            method=np.array(self.method),
            basis=self.basis,
            mean=self.mean,
            scale=self.scale,
            band_indices=self.band_indices,
            wavelengths=self.wavelengths,
            excluded_wavelengths=np.asarray(self.excluded_wavelengths, dtype=np.float64).reshape(-1, 2),
            continuum_removal=np.array(self.continuum_removal),
            feature_indices=self.feature_indices,
            eigenvalues=self.eigenvalues,
            score_mean=self.score_mean,
            score_std=self.score_std,
        )
        logger.debug("Reduction model saved: %s", path)
        return path

    @classmethod
    def load(cls, path) -> "ReductionModel":
        with np.load(Path(path)) as archive:
            return cls(
                method=str(archive["method"]),
                basis=archive["basis"],
                mean=archive["mean"],
                scale=archive["scale"],
                band_indices=archive["band_indices"],
                wavelengths=archive["wavelengths"],
                excluded_wavelengths=tuple(map(tuple, archive["excluded_wavelengths"].tolist())),
                continuum_removal=bool(archive["continuum_removal"]),
                feature_indices=archive["feature_indices"],
                eigenvalues=archive["eigenvalues"],
                score_mean=archive["score_mean"],
                score_std=archive["score_std"],
            )


@dataclass(frozen=True)
class ReductionFit:
    """Fitted model plus the sample it was fit on."""
    model: ReductionModel
    pixels: np.ndarray
    scores: np.ndarray


def _fix_signs(basis: np.ndarray) -> np.ndarray:
    """Flip each component so that its largest-magnitude loading is positive."""
    pivots = basis[np.arange(basis.shape[0]), np.argmax(np.abs(basis), axis=1)]
    signs = np.where(pivots < 0, -1.0, 1.0)
    return basis * signs[:, None]


def _require_full_rank(cov: np.ndarray, what: str) -> None:
    rank = np.linalg.matrix_rank(cov)
    if rank < cov.shape[0]:
        raise NumericalError(
            f"{what} is singular (rank {rank} of {cov.shape[0]}); "
            f"constant or collinear bands cannot be reduced"
        )


class DimensionalityReducer:
    """Fit and apply a PCA / SPCA / MNF reduction under the RAM budget."""

    def __init__(self, config: "InternalConfig"):
        """Store config.

        Parameters
        ----------
        config : InternalConfig
            Fully validated runtime configuration. Reads the ``reduction``
            and ``resources`` sections.
        """
        self.config = config
        cfg = config.reduction
        self.method = cfg.method
        self.continuum_removal = cfg.continuum_removal
        self.excluded_wavelengths = tuple(tuple(r) for r in cfg.excluded_wavelengths)
        self.nb_samples_fit = cfg.nb_samples_fit
        self.standardize = cfg.standardize
        self.spca_alpha = cfg.spca_alpha
        self.outlier_filter = cfg.outlier_filter
        self.outlier_sd = cfg.outlier_sd
        self.outlier_nb_components = cfg.outlier_nb_components
        self.random_seed = cfg.random_seed
        self.nb_workers = config.resources.nb_cpu

        logger.info("DimensionalityReducer initialized: method=%s, continuum_removal=%s, "
                    "standardize=%s, outlier_filter=%s",
                    self.method, self.continuum_removal, self.standardize, self.outlier_filter)

    # ------------------------------------------------------------------
    # Band selection and sampling
    # ------------------------------------------------------------------

    def select_bands(self, wavelengths: Optional[np.ndarray], band_count: int) -> np.ndarray:
        """0-based bands kept after excluding absorption windows."""
        if wavelengths is None:
            if self.continuum_removal:
                raise ConfigurationError("Continuum removal requires band wavelengths")
            logger.warning("No wavelengths available: band exclusion skipped")
            return np.arange(band_count)

        if self.continuum_removal and np.any(np.diff(wavelengths) <= 0):
            raise ConfigurationError("Continuum removal needs bands in strictly increasing wavelength order")

        indices = kept_band_indices(wavelengths, list(self.excluded_wavelengths))
        minimum = 4 if self.continuum_removal else 2
        if indices.size < minimum:
            raise ConfigurationError(
                f"Only {indices.size} bands left after excluding {list(self.excluded_wavelengths)}; "
                f"need at least {minimum}"
            )
        logger.info("Band exclusion: %d/%d bands kept", indices.size, band_count)
        return indices

    def _eligible(self, mask: np.ndarray) -> np.ndarray:
        """Pixels that can be sampled (MNF also needs a valid right-hand neighbour)."""
        if self.method != "MNF":
            return mask
        eligible = np.zeros_like(mask)
        eligible[:, :-1] = mask[:, :-1] & mask[:, 1:]
        return eligible

    def sample_pixels(self, reader: "ChunkedRasterReader") -> tuple[np.ndarray, Optional[np.ndarray]]:
        """Seeded uniform sample of unmasked pixels over the whole image.

        Returns
        -------
        pixels : np.ndarray
            (n, bands) raw spectra
        neighbours : np.ndarray or None
            (n, bands) right-hand neighbour spectra (MNF only)

        Raises
        ------
        ConfigurationError
            If no pixel is eligible.
        """
        counts = [int(np.count_nonzero(self._eligible(chunk.mask))) for chunk in reader.iter_chunks()]
        n_total = sum(counts)
        if n_total == 0:
            raise ConfigurationError(f"No unmasked pixel to fit the {self.method} reduction")

        n_take = min(self.nb_samples_fit, n_total)
        rng = np.random.default_rng(self.random_seed)
        chosen = np.sort(rng.choice(n_total, size=n_take, replace=False))

        pixels, neighbours = [], []
        bounds = np.concatenate([[0], np.cumsum(counts)])
        for chunk, start, stop in zip(reader.iter_chunks(), bounds[:-1], bounds[1:]):
            local = chosen[(chosen >= start) & (chosen < stop)] - start
            if local.size == 0:
                continue
            rows, cols = np.nonzero(self._eligible(chunk.mask))
            rows, cols = rows[local], cols[local]
            pixels.append(chunk.data[rows, cols])
            if self.method == "MNF":
                neighbours.append(chunk.data[rows, cols + 1])

        logger.info("Sampled %d of %d unmasked pixels for fitting", n_take, n_total)
        pixels = np.concatenate(pixels)
        return pixels, (np.concatenate(neighbours) if self.method == "MNF" else None)

    # ------------------------------------------------------------------
    # Fitting
    # ------------------------------------------------------------------

    def fit(self, reader: "ChunkedRasterReader", wavelengths: Optional[np.ndarray]) -> ReductionFit:
        """Sample the image and fit the reduction."""
        pixels, neighbours = self.sample_pixels(reader)
        model = self.fit_pixels(pixels, wavelengths, neighbours)
        return ReductionFit(model=model, pixels=pixels, scores=model.transform(pixels))

    def fit_pixels(self, pixels: np.ndarray, wavelengths: Optional[np.ndarray],
                   neighbours: Optional[np.ndarray] = None) -> ReductionModel:
        """Fit the reduction on raw (n, bands) spectra.

        Raises
        ------
        NumericalError
            If there are fewer pixels than components, fewer than two bands
            vary after continuum removal, or the (noise) covariance is
            singular.
        """
        band_indices = self.select_bands(wavelengths, pixels.shape[1])
        kept_wavelengths = (np.asarray(wavelengths, dtype=np.float64)[band_indices]
                            if wavelengths is not None else np.empty(0))

        feature_indices = np.arange(band_indices.size)
        if self.continuum_removal:
            removed = continuum_removal(np.asarray(pixels, dtype=np.float64)[:, band_indices])
            feature_indices = np.flatnonzero(np.ptp(removed, axis=0) > CONSTANT_FEATURE_TOL)
            if feature_indices.size < 2:
                raise NumericalError(
                    f"Only {feature_indices.size} of {band_indices.size} bands vary after "
                    f"continuum removal; need at least 2"
                )
            logger.info("Continuum removal: %d/%d bands vary over the fit sample",
                        feature_indices.size, band_indices.size)

        draft = ReductionModel(
            method=self.method, basis=np.empty((0, 0)), mean=np.empty(0), scale=np.empty(0),
            band_indices=band_indices, wavelengths=kept_wavelengths,
            excluded_wavelengths=self.excluded_wavelengths,
            continuum_removal=self.continuum_removal, feature_indices=feature_indices,
            eigenvalues=np.empty(0), score_mean=np.empty(0), score_std=np.empty(0),
        )
        features = draft.features(pixels)
        n, d = features.shape
        if n <= d:
            raise NumericalError(f"{n} unmasked pixels cannot fit {d} {self.method} components")

        mean = features.mean(axis=0)
        scale = np.ones(d)
        if self.standardize:
            scale = features.std(axis=0, ddof=1)
            if np.any(scale == 0):
                raise NumericalError(f"{np.count_nonzero(scale == 0)} constant bands cannot be standardized")
        z = (features - mean) / scale
        cov = np.cov(z, rowvar=False)
        _require_full_rank(cov, "Covariance matrix")

        if self.method == "PCA":
            eigenvalues, vectors = np.linalg.eigh(cov)
            order = np.argsort(eigenvalues)[::-1]
            eigenvalues, basis = eigenvalues[order], vectors[:, order].T

        elif self.method == "SPCA":
            spca = SparsePCA(n_components=d, alpha=self.spca_alpha, random_state=self.random_seed)
            spca.fit(z)
            variances = (z @ spca.components_.T).var(axis=0, ddof=1)
            order = np.argsort(variances)[::-1]
            eigenvalues, basis = variances[order], spca.components_[order]

        else:  # MNF
            if neighbours is None:
                raise ConfigurationError("MNF fitting requires right-hand neighbour spectra")
            noise = (features - draft.features(neighbours)) / scale
            noise_cov = np.cov(noise, rowvar=False) / 2.0
            _require_full_rank(noise_cov, "Noise covariance matrix")
            noise_stats = GaussianStats(mean=np.zeros(d), cov=noise_cov, nsamples=n)
            whitening = noise_stats.sqrt_inv_cov
            eigenvalues, vectors = np.linalg.eigh(whitening @ cov @ whitening)
            order = np.argsort(eigenvalues)[::-1]
            eigenvalues, basis = eigenvalues[order], vectors[:, order].T @ whitening

        basis = _fix_signs(basis)
        scores = z @ basis.T
        model = ReductionModel(
            method=self.method,
            basis=basis,
            mean=mean,
            scale=scale,
            band_indices=band_indices,
            wavelengths=kept_wavelengths,
            excluded_wavelengths=self.excluded_wavelengths,
            continuum_removal=self.continuum_removal,
            feature_indices=feature_indices,
            eigenvalues=eigenvalues,
            score_mean=scores.mean(axis=0),
            score_std=scores.std(axis=0),
        )
        assert_reduction_model(model)
        logger.info("%s fitted on %d pixels: %d components, leading eigenvalues %s",
                    self.method, n, model.n_components, np.round(eigenvalues[:3], 4))
        return model

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def transform_chunk(self, model: ReductionModel, data: np.ndarray,
                        mask: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Reduce one chunk.

        Returns
        -------
        reduced : np.ndarray
            (rows, cols, n_components) float32, NaN where dropped
        keep : np.ndarray
            (rows, cols) bool mask after outlier filtering
        """
        rows, cols = mask.shape
        reduced = np.full((rows, cols, model.n_components), np.nan, dtype=np.float32)
        keep = mask.copy()
        if not keep.any():
            return reduced, keep

        scores = model.transform(data[keep])
        if self.outlier_filter:
            inliers = model.outlier_mask(scores, self.outlier_sd, self.outlier_nb_components)
            pix_rows, pix_cols = np.nonzero(keep)
            keep[pix_rows[~inliers], pix_cols[~inliers]] = False
            scores = scores[inliers]
        reduced[keep] = scores
        return reduced, keep

    def apply(self, reader: "ChunkedRasterReader", model: ReductionModel,
              output_path: Path, mask_path: Path) -> int:
        """Write the reduced raster and the filtered mask.

        Returns
        -------
        int
            Pixels retained in the filtered mask.

        Raises
        ------
        ConfigurationError
            If outlier filtering leaves no pixel. Neither output file is left
            behind on failure.
        """
        names = [f"{model.method}_{i}" for i in range(1, model.n_components + 1)]
        reduced_profile = output_profile(reader.profile, count=model.n_components,
                                         dtype="float32", nodata=float("nan"))
        mask_profile = output_profile(reader.profile, count=1, dtype="uint8", nodata=None)
        retained = 0

        def work(chunk):
            return (chunk.row_off,) + self.transform_chunk(model, chunk.data, chunk.mask)

        def write(result):
            nonlocal retained
            row_off, reduced, keep = result
            reduced_writer.write(reduced, row_off=row_off)
            mask_writer.write(keep.astype(np.uint8), row_off=row_off)
            retained += int(np.count_nonzero(keep))

        try:
            with RasterWriter(output_path, reduced_profile, band_names=names) as reduced_writer, \
                    RasterWriter(mask_path, mask_profile) as mask_writer:
                ChunkWorkerPool(self.nb_workers, name="Reducer").run(reader.iter_chunks(), work, write)
            if retained == 0:
                raise ConfigurationError("No pixel left after outlier filtering")
        except Exception:
            Path(output_path).unlink(missing_ok=True)
            Path(mask_path).unlink(missing_ok=True)
            raise

        logger.info("Reduced raster written: %s (%d components, %d pixels)",
                    output_path, model.n_components, retained)
        return retained
