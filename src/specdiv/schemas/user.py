"""UserConfig: Forgiving, minimal user-facing configuration.

This schema accepts user inputs in a variety of formats, with aliases for
the option names used in existing spectral-diversity workflows
(e.g., nbCPU → resources.nb_cpu, MaxRAM → resources.max_ram_gb,
nbclusters → clustering.nb_clusters).

UserConfig is intentionally minimal - users only specify what they want
to override from the expert defaults.
"""

from typing import Optional, Any
from pydantic import Field, field_validator
from specdiv.schemas.base import SpecDivBaseModel


class UserRadiometricConfig(SpecDivBaseModel):
    """User-facing radiometric filter config."""
    ndvi_enabled: Optional[bool] = None
    ndvi_threshold: Optional[float] = None
    nir_enabled: Optional[bool] = None
    nir_threshold: Optional[float] = None
    blue_enabled: Optional[bool] = None
    blue_threshold: Optional[float] = None
    nir_wavelength: Optional[float] = None
    red_wavelength: Optional[float] = None
    blue_wavelength: Optional[float] = None
    wavelength_tolerance: Optional[float] = None


class UserReductionConfig(SpecDivBaseModel):
    """User-facing reduction config."""
    method: Optional[str] = None
    continuum_removal: Optional[bool] = None
    excluded_wavelengths: Optional[list[tuple[float, float]]] = None
    nb_samples_fit: Optional[int] = None
    standardize: Optional[bool] = None
    spca_alpha: Optional[float] = None
    outlier_filter: Optional[bool] = None
    outlier_sd: Optional[float] = None
    outlier_nb_components: Optional[int] = None
    random_seed: Optional[int] = None

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v):
        """Normalize method names to uppercase."""
        if isinstance(v, str):
            return v.upper().strip()
        return v


class UserClusteringConfig(SpecDivBaseModel):
    """User-facing clustering config."""
    nb_clusters: Optional[int] = None
    nb_partitions: Optional[int] = None
    init: Optional[str] = None
    max_iter: Optional[int] = None
    random_seed: Optional[int] = None
    merge_weighting: Optional[str] = None


class UserDiversityConfig(SpecDivBaseModel):
    """User-facing diversity config."""
    window_size: Optional[int] = None
    alpha_indices: Optional[list[str]] = None
    beta_enabled: Optional[bool] = None
    beta_nb_samples: Optional[int] = None
    beta_nb_axes: Optional[int] = None
    beta_nb_neighbors: Optional[int] = None
    beta_reference_window: Optional[tuple[int, int]] = None
    functional_enabled: Optional[bool] = None
    functional_components: Optional[list[int]] = None
    random_seed: Optional[int] = None


class UserConfig(SpecDivBaseModel):
    """User-facing configuration schema.

    Minimal, forgiving, and uses common aliases. Users only specify
    what they want to override from ParamConfig defaults.

    This config is converted to internal overrides during resolution.

    Usage
    -----
        user_cfg = UserConfig(
            raster_path="data/flightline.tif",
            base_dir="/data/specdiv",
            window_size=10,
            nbclusters=50,
        )

        internal = resolve_config(param_cfg, user_cfg, cli_cfg)
    """

    # Inputs / outputs
    raster_path: Optional[str] = Field(None, alias="RASTER_PATH")
    wavelengths_path: Optional[str] = Field(None, alias="WAVELENGTHS_PATH")
    mask_path: Optional[str] = Field(None, alias="MASK_PATH")
    use_mask: Optional[bool] = Field(None, alias="USE_MASK")
    base_dir: Optional[str] = Field(None, alias="BASE_DIR")
    run_name: Optional[str] = Field(None, alias="RUN_NAME")

    # Resources
    nb_cpu: Optional[int] = Field(None, alias="nbCPU")
    max_ram_gb: Optional[float] = Field(None, alias="MaxRAM")

    # Radiometric filter (flat aliases)
    ndvi_threshold: Optional[float] = Field(None, alias="NDVI_THRESHOLD")
    nir_threshold: Optional[float] = Field(None, alias="NIR_THRESHOLD")
    blue_threshold: Optional[float] = Field(None, alias="BLUE_THRESHOLD")

    # Reduction (flat aliases)
    reduction_method: Optional[str] = Field(None, alias="REDUCTION_METHOD")
    continuum_removal: Optional[bool] = Field(None, alias="CONTINUUM_REMOVAL")
    outlier_filter: Optional[bool] = Field(None, alias="FILTER_OUTLIERS")
    excluded_wavelengths: Optional[list[tuple[float, float]]] = Field(None, alias="EXCLUDED_WAVELENGTHS")

    # Selection / clustering / diversity (flat aliases)
    selected_components: Optional[list[int]] = Field(None, alias="SELECTED_COMPONENTS")
    nb_clusters: Optional[int] = Field(None, alias="nbclusters")
    window_size: Optional[int] = Field(None, alias="WINDOW_SIZE")
    alpha_indices: Optional[list[str]] = Field(None, alias="ALPHA_INDICES")
    functional_components: Optional[list[int]] = Field(None, alias="FUNCTIONAL_COMPONENTS")

    # Nested overrides (advanced users)
    radiometric: Optional[UserRadiometricConfig] = None
    reduction: Optional[UserReductionConfig] = None
    clustering: Optional[UserClusteringConfig] = None
    diversity: Optional[UserDiversityConfig] = None

    model_config = SpecDivBaseModel.model_config.copy()
    # Allow forgiving input dictionaries (ignore unknown legacy keys)
    model_config.update({"populate_by_name": True, "extra": "ignore"})

    @field_validator("ndvi_threshold", "nir_threshold", "blue_threshold", "max_ram_gb", mode="before")
    @classmethod
    def coerce_numeric_fields(cls, v):
        """Accept int or float for numeric fields."""
        if v is not None:
            return float(v)
        return v

    @field_validator("reduction_method", mode="before")
    @classmethod
    def normalize_method_name(cls, v):
        """Normalize reduction method to uppercase."""
        if isinstance(v, str):
            return v.upper().strip()
        return v

    @staticmethod
    def _section(flat: dict, nested: Optional[SpecDivBaseModel]) -> dict:
        """Combine flat alias values with an explicit nested section."""
        section = {k: v for k, v in flat.items() if v is not None}
        if nested is not None:
            section.update(nested.model_dump(exclude_none=True))
        return section

    def to_internal_overrides(self) -> dict:
        """Convert flat UserConfig to nested InternalConfig structure.

        Returns
        -------
        dict
            Nested dictionary matching InternalConfig structure
        """
        sections: dict[str, Any] = {
            "input": self._section({
                "raster_path": self.raster_path,
                "wavelengths_path": self.wavelengths_path,
                "mask_path": self.mask_path,
                "use_mask": self.use_mask,
            }, None),
            "output": self._section({
                "base_dir": self.base_dir,
                "run_name": self.run_name,
            }, None),
            "resources": self._section({
                "nb_cpu": self.nb_cpu,
                "max_ram_gb": self.max_ram_gb,
            }, None),
            "radiometric": self._section({
                "ndvi_threshold": self.ndvi_threshold,
                "nir_threshold": self.nir_threshold,
                "blue_threshold": self.blue_threshold,
            }, self.radiometric),
            "reduction": self._section({
                "method": self.reduction_method,
                "continuum_removal": self.continuum_removal,
                "outlier_filter": self.outlier_filter,
                "excluded_wavelengths": self.excluded_wavelengths,
            }, self.reduction),
            "selection": self._section({
                "selected_components": self.selected_components,
            }, None),
            "clustering": self._section({
                "nb_clusters": self.nb_clusters,
            }, self.clustering),
            "diversity": self._section({
                "window_size": self.window_size,
                "alpha_indices": self.alpha_indices,
                "functional_components": self.functional_components,
            }, self.diversity),
        }
        return {name: values for name, values in sections.items() if values}
