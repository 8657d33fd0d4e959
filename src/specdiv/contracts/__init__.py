"""Pipeline contracts: fail-fast enforcement of stage invariants.

This package enforces semantic guarantees between pipeline stages and
defines the pipeline's error taxonomy.

Key principle:
- Pydantic validates config correctness
- Contracts validate pipeline correctness
- Algorithms raise RasterIOError / ConfigurationError / NumericalError for bad data
"""

from specdiv.contracts.failure import (
    SpecDivError,
    RasterIOError,
    ConfigurationError,
    NumericalError,
    ContractViolation,
)
from specdiv.contracts.base import require
from specdiv.contracts.raster import assert_chunk_cover
from specdiv.contracts.reduction import assert_reduction_model
from specdiv.contracts.clustering import assert_codebook, assert_species_counts
from specdiv.contracts.diversity import assert_diversity_output, assert_dissimilarity_matrix

__all__ = [
    "SpecDivError",
    "RasterIOError",
    "ConfigurationError",
    "NumericalError",
    "ContractViolation",
    "require",
    "assert_chunk_cover",
    "assert_reduction_model",
    "assert_codebook",
    "assert_species_counts",
    "assert_diversity_output",
    "assert_dissimilarity_matrix",
]
