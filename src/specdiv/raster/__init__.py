"""Raster processing modules.

- reader: Chunked raster reading under a RAM budget
- raster_utils: Wavelengths, band exclusion, continuum removal, GeoTIFF writing
- radiometric: NDVI / NIR / Blue mask
- reducer: PCA / SPCA / MNF reduction
- selection: Component selection checkpoint
- clusterer: Partitioned k-means spectral species
"""

from specdiv.raster.reader import ChunkedRasterReader, RasterChunk
from specdiv.raster.raster_utils import RasterWriter, read_wavelengths
from specdiv.raster.radiometric import RadiometricFilter
from specdiv.raster.reducer import DimensionalityReducer, ReductionModel, ReductionFit
from specdiv.raster.selection import ComponentSelection
from specdiv.raster.clusterer import PartitionedKMeans, Codebook

__all__ = [
    "ChunkedRasterReader",
    "RasterChunk",
    "RasterWriter",
    "read_wavelengths",
    "RadiometricFilter",
    "DimensionalityReducer",
    "ReductionModel",
    "ReductionFit",
    "ComponentSelection",
    "PartitionedKMeans",
    "Codebook",
]
