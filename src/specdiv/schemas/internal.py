"""InternalConfig: Authoritative runtime configuration.

This is the ONLY config schema that runtime code sees. It is fully validated,
normalized, and contains NO optional fields that processing code depends on
without an explicit meaning for None.

All .get() calls, fallback defaults, and validation logic are FORBIDDEN in
runtime code - everything is explicit here.
"""

from typing import Literal, Optional
from pydantic import Field, ConfigDict, model_validator
from specdiv.schemas.base import SpecDivBaseModel


# =============================================================================
# Nested Configuration Models (Runtime)
# =============================================================================

class InternalInputConfig(SpecDivBaseModel):
    """Runtime input configuration.

    raster_path is validated as non-None by the orchestrator; component
    classes work on paths handed to them explicitly.
    """
    raster_path: Optional[str]
    wavelengths_path: Optional[str]
    mask_path: Optional[str]
    use_mask: bool


class InternalOutputConfig(SpecDivBaseModel):
    """Runtime output configuration."""
    base_dir: Optional[str]
    run_name: str


class InternalResourceConfig(SpecDivBaseModel):
    """Runtime resource budget."""
    nb_cpu: int = Field(ge=1)
    max_ram_gb: float = Field(gt=0)


class InternalRadiometricConfig(SpecDivBaseModel):
    """Runtime radiometric filter configuration."""
    ndvi_enabled: bool
    ndvi_threshold: float
    nir_enabled: bool
    nir_threshold: float
    blue_enabled: bool
    blue_threshold: float
    nir_wavelength: float
    red_wavelength: float
    blue_wavelength: float
    wavelength_tolerance: float


class InternalReductionConfig(SpecDivBaseModel):
    """Runtime dimensionality reduction configuration."""
    method: Literal["PCA", "SPCA", "MNF"]
    continuum_removal: bool
    excluded_wavelengths: list[tuple[float, float]]
    nb_samples_fit: int
    standardize: bool
    spca_alpha: float
    outlier_filter: bool
    outlier_sd: float
    outlier_nb_components: Optional[int]
    random_seed: int


class InternalSelectionConfig(SpecDivBaseModel):
    """Runtime component selection configuration."""
    selected_components: Optional[list[int]]
    nb_default_components: int
    reload_from_file: bool


class InternalClusteringConfig(SpecDivBaseModel):
    """Runtime clustering configuration."""
    nb_clusters: int = Field(ge=2)
    nb_partitions: Optional[int]
    init: Literal["k-means++", "random"]
    max_iter: int
    random_seed: int
    merge_weighting: Literal["population", "uniform"]


class InternalDiversityConfig(SpecDivBaseModel):
    """Runtime diversity configuration."""
    window_size: int = Field(ge=1)
    alpha_indices: list[Literal["shannon", "simpson", "fisher"]]
    beta_enabled: bool
    beta_nb_samples: int
    beta_nb_axes: int
    beta_nb_neighbors: int
    beta_reference_window: Optional[tuple[int, int]]
    functional_enabled: bool
    functional_components: Optional[list[int]]
    random_seed: int


class InternalLoggingConfig(SpecDivBaseModel):
    """Runtime logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


# =============================================================================
# Main InternalConfig
# =============================================================================

class InternalConfig(SpecDivBaseModel):
    """Authoritative runtime configuration.

    This is the ONLY configuration schema that processing code sees.
    It is fully validated and immutable.

    Usage
    -----
    Runtime modules receive InternalConfig and access fields directly:

        def __init__(self, config: InternalConfig):
            self.window_size = config.diversity.window_size  # NOT .get()
            self.max_ram_gb = config.resources.max_ram_gb

    Rules
    -----
    - NO .get() calls
    - NO fallback defaults
    - NO type checking
    - NO validation

    All of that happens during config resolution, not in runtime code.
    """

    input: InternalInputConfig
    output: InternalOutputConfig
    resources: InternalResourceConfig
    radiometric: InternalRadiometricConfig
    reduction: InternalReductionConfig
    selection: InternalSelectionConfig
    clustering: InternalClusteringConfig
    diversity: InternalDiversityConfig
    logging: InternalLoggingConfig
    run_id: Optional[str] = None

    model_config = ConfigDict(
        extra='forbid',
        validate_assignment=True,
        use_enum_values=True,
        str_strip_whitespace=True,
        frozen=True,  # Immutable after construction
    )

    @model_validator(mode="after")
    def check_parameter_combination(self):
        """Reject parameter combinations no stage can honour."""
        for name, indices in (
            ("selection.selected_components", self.selection.selected_components),
            ("diversity.functional_components", self.diversity.functional_components),
        ):
            if indices is None:
                continue
            if not indices:
                raise ValueError(f"{name} must not be empty")
            if min(indices) < 1:
                raise ValueError(f"{name} uses 1-based band indices, got {indices}")
            if len(set(indices)) != len(indices):
                raise ValueError(f"{name} contains duplicates: {indices}")

        for low, high in self.reduction.excluded_wavelengths:
            if low > high:
                raise ValueError(f"Excluded wavelength range ({low}, {high}) has low > high")

        if not self.diversity.alpha_indices:
            raise ValueError("diversity.alpha_indices must name at least one index")
        if self.diversity.beta_nb_axes >= self.diversity.beta_nb_samples:
            raise ValueError(
                f"diversity.beta_nb_axes ({self.diversity.beta_nb_axes}) must be smaller "
                f"than diversity.beta_nb_samples ({self.diversity.beta_nb_samples})"
            )
        if self.input.mask_path is not None and not self.input.use_mask:
            raise ValueError("input.mask_path is set but input.use_mask is False")
        return self
