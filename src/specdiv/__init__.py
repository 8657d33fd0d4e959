"""`specdiv` - spectral diversity mapping from imaging spectroscopy.

Subpackages:
- raster: Chunked reading, radiometric filter, reduction, clustering
- diversity: Alpha / beta / functional indices, windows and field plots
- pipeline: Orchestrator, worker pool, stage tracking
- schemas: Configuration models
- contracts: Stage invariants and error taxonomy
"""

from specdiv.contracts.failure import (
    SpecDivError,
    RasterIOError,
    ConfigurationError,
    NumericalError,
    ContractViolation,
)

__version__ = "0.1.0"

__all__ = [
    "SpecDivError",
    "RasterIOError",
    "ConfigurationError",
    "NumericalError",
    "ContractViolation",
    "__version__",
]
