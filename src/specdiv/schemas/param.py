"""ParamConfig: Expert defaults for the specdiv pipeline.

This module defines the complete default configuration. ALL pipeline
parameters must have defaults here. No runtime code should define fallback
values - this is the single source of truth for defaults.

Runtime code NEVER reads from ParamConfig directly - it only receives InternalConfig.
"""

from typing import Literal, Optional
from pydantic import Field, field_validator
from specdiv.schemas.base import SpecDivBaseModel


AlphaIndex = Literal["shannon", "simpson", "fisher"]

# Water vapour / atmospheric absorption windows (nm)
DEFAULT_EXCLUDED_WAVELENGTHS = [
    (0.0, 400.0),
    (1340.0, 1450.0),
    (1780.0, 1960.0),
    (2400.0, 2600.0),
]


# =============================================================================
# Nested Configuration Models
# =============================================================================

class InputConfig(SpecDivBaseModel):
    """Input raster, wavelength metadata and mask locations."""
    raster_path: Optional[str] = None
    wavelengths_path: Optional[str] = None
    mask_path: Optional[str] = None
    use_mask: bool = True


class OutputConfig(SpecDivBaseModel):
    """Output location for run artifacts."""
    base_dir: Optional[str] = None
    run_name: str = "specdiv_run"


class ResourceConfig(SpecDivBaseModel):
    """Worker count and per-worker memory budget."""
    nb_cpu: int = Field(1, ge=1, description="Number of worker threads")
    max_ram_gb: float = Field(0.5, gt=0, description="RAM budget per chunk/partition in GB")


class RadiometricConfig(SpecDivBaseModel):
    """NDVI / NIR / Blue pixel filtering."""
    ndvi_enabled: bool = True
    ndvi_threshold: float = 0.8
    nir_enabled: bool = True
    nir_threshold: float = Field(1500.0, description="Minimum NIR reflectance (raster units)")
    blue_enabled: bool = True
    blue_threshold: float = Field(500.0, description="Maximum Blue reflectance (raster units)")
    nir_wavelength: float = Field(835.0, gt=0)
    red_wavelength: float = Field(700.0, gt=0)
    blue_wavelength: float = Field(480.0, gt=0)
    wavelength_tolerance: float = Field(50.0, gt=0, description="Max distance (nm) to nearest band")


class ReductionConfig(SpecDivBaseModel):
    """Dimensionality reduction fitting and application."""
    method: Literal["PCA", "SPCA", "MNF"] = "PCA"
    continuum_removal: bool = False
    excluded_wavelengths: list[tuple[float, float]] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDED_WAVELENGTHS)
    )
    nb_samples_fit: int = Field(100000, ge=10)
    standardize: bool = False
    spca_alpha: float = Field(1.0, gt=0)
    outlier_filter: bool = False
    outlier_sd: float = Field(3.0, gt=0)
    outlier_nb_components: Optional[int] = Field(None, ge=1)
    random_seed: int = 0

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method_name(cls, v):
        """Normalize method names to uppercase."""
        if isinstance(v, str):
            return v.upper().strip()
        return v

    @field_validator("excluded_wavelengths")
    @classmethod
    def check_ranges_ordered(cls, v):
        """Each excluded window must be (low, high) with low <= high."""
        for low, high in v:
            if low > high:
                raise ValueError(f"Excluded wavelength range ({low}, {high}) has low > high")
        return v


class SelectionConfig(SpecDivBaseModel):
    """Component selection checkpoint between reduction and clustering."""
    selected_components: Optional[list[int]] = None  # 1-based reduced band indices
    nb_default_components: int = Field(5, ge=1)
    reload_from_file: bool = True


class ClusteringConfig(SpecDivBaseModel):
    """Partitioned k-means settings."""
    nb_clusters: int = Field(50, ge=2)
    nb_partitions: Optional[int] = Field(None, ge=1)
    init: Literal["k-means++", "random"] = "k-means++"
    max_iter: int = Field(100, ge=1)
    random_seed: int = 42
    merge_weighting: Literal["population", "uniform"] = "population"


class DiversityConfig(SpecDivBaseModel):
    """Window aggregation and diversity indices."""
    window_size: int = Field(10, ge=1)
    alpha_indices: list[AlphaIndex] = Field(default_factory=lambda: ["shannon"])
    beta_enabled: bool = True
    beta_nb_samples: int = Field(2000, ge=2)
    beta_nb_axes: int = Field(3, ge=1)
    beta_nb_neighbors: int = Field(5, ge=1)
    beta_reference_window: Optional[tuple[int, int]] = None
    functional_enabled: bool = True
    functional_components: Optional[list[int]] = None  # 1-based; None -> selected components
    random_seed: int = 0

    @field_validator("alpha_indices", mode="before")
    @classmethod
    def normalize_index_names(cls, v):
        """Accept 'Shannon', 'SIMPSON', etc."""
        if isinstance(v, (list, tuple)):
            return [s.lower().strip() if isinstance(s, str) else s for s in v]
        return v


class LoggingConfig(SpecDivBaseModel):
    """Logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


# =============================================================================
# Main ParamConfig
# =============================================================================

class ParamConfig(SpecDivBaseModel):
    """Complete expert configuration with all defaults.

    This is the single source of truth for all pipeline parameters.
    Every tunable parameter MUST have a default here.

    Usage
    -----
    This config is NOT used directly by runtime code. It serves as the
    base layer in config resolution:

        internal_cfg = resolve_config(param_cfg, user_cfg, cli_cfg)

    Runtime code only sees InternalConfig.
    """

    input: InputConfig = Field(default_factory=InputConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    resources: ResourceConfig = Field(default_factory=ResourceConfig)
    radiometric: RadiometricConfig = Field(default_factory=RadiometricConfig)
    reduction: ReductionConfig = Field(default_factory=ReductionConfig)
    selection: SelectionConfig = Field(default_factory=SelectionConfig)
    clustering: ClusteringConfig = Field(default_factory=ClusteringConfig)
    diversity: DiversityConfig = Field(default_factory=DiversityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
