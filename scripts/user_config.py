"""specdiv User Configuration.

This is the user-facing configuration file. Modify settings here to customize
the pipeline behavior. Advanced settings are in specdiv/schemas/param.py

Usage:
    python scripts/run_diversity_pipeline.py scripts/user_config.py
    python scripts/run_diversity_pipeline.py scripts/user_config.py --raster-path other.tif
    python scripts/run_diversity_pipeline.py scripts/user_config.py --plots plots.geojson
"""

CONFIG = {
    # ========================================================================
    # INPUT & OUTPUT
    # ========================================================================
    "RASTER_PATH": "data/flightline_reflectance.tif",  # Multi-band reflectance raster
    "WAVELENGTHS_PATH": None,  # Text/CSV file of band centers; None = read from raster tags
    "MASK_PATH": None,         # Optional input mask (non-zero = keep)
    "BASE_DIR": "specdiv_output",  # All outputs go here
    "RUN_NAME": "flightline",

    # ========================================================================
    # RESOURCES
    # ========================================================================
    "nbCPU": 4,               # Worker threads
    "MaxRAM": 0.5,            # GB per chunk / k-means partition

    # ========================================================================
    # RADIOMETRIC FILTER
    # ========================================================================
    "NDVI_THRESHOLD": 0.8,    # Keep pixels with NDVI above
    "NIR_THRESHOLD": 1500,    # Keep pixels with NIR above (raster units)
    "BLUE_THRESHOLD": 500,    # Keep pixels with Blue below (raster units)

    # ========================================================================
    # DIMENSIONALITY REDUCTION
    # ========================================================================
    "REDUCTION_METHOD": "PCA",    # "PCA", "SPCA" or "MNF"
    "CONTINUUM_REMOVAL": False,
    "FILTER_OUTLIERS": False,
    "EXCLUDED_WAVELENGTHS": [     # Absorption windows in nm
        (0, 400),
        (1340, 1450),
        (1780, 1960),
        (2400, 2600),
    ],

    # ========================================================================
    # SPECIES MAPPING
    # ========================================================================
    "SELECTED_COMPONENTS": None,  # 1-based components; None = first 5
    "nbclusters": 50,             # Spectral species

    # ========================================================================
    # DIVERSITY
    # ========================================================================
    "WINDOW_SIZE": 10,            # Window side in pixels
    "ALPHA_INDICES": ["shannon", "simpson"],
    "FUNCTIONAL_COMPONENTS": None,  # None = selected components
    # Note: beta-diversity sampling and PCoA settings are configured in
    # specdiv/schemas/param.py (diversity section)
}
