"""Formal pipeline invariants.

This file documents what each stage MUST produce and fixes the stage order
used by the orchestrator and the stage tracker.
"""

PIPELINE_STAGES = (
    "radiometric",
    "reduction",
    "selection",
    "species",
    "diversity",
    "validation",
)

PIPELINE_INVARIANTS = {
    "radiometric": [
        "Mask raster has the input raster's height, width and transform",
        "Mask values are 0/1; at least one retained pixel",
    ],

    "reduction": [
        "Basis is (components, kept bands); all entries finite",
        "Reduced raster has one float32 band per component, NaN where masked",
        "Filtered mask drops outliers only when outlier filtering is enabled",
    ],

    "selection": [
        "Selected components are unique, 1-based and within the reduced band count",
    ],

    "species": [
        "Codebook has exactly nb_clusters centroids with ids 1..nb_clusters",
        "Species map is uint16; 0 = no-data; ids never exceed nb_clusters",
    ],

    "diversity": [
        "Window grid is floor(rows / window_size) x floor(cols / window_size)",
        "Shannon >= 0, Simpson in [0, 1], Bray-Curtis in [0, 1] where defined",
    ],

    "validation": [
        "One row per plot; Bray-Curtis matrix symmetric with zero diagonal",
    ],
}

# Which stages are optional vs required
STAGE_REQUIREMENTS = {
    "radiometric": "REQUIRED",
    "reduction": "REQUIRED",
    "selection": "REQUIRED",
    "species": "REQUIRED",
    "diversity": "REQUIRED",
    "validation": "OPTIONAL",  # Only when field plots are supplied
}
