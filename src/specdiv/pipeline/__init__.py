"""Pipeline modules.

- orchestrator: Stage-by-stage pipeline controller (import from
  ``specdiv.pipeline.orchestrator``; the raster stages depend on this package)
- workers: Producer / worker / writer thread pool
- stage_tracker: SQLite-based stage tracking
"""

from specdiv.pipeline.workers import ChunkWorkerPool
from specdiv.pipeline.stage_tracker import StageTracker

__all__ = [
    "ChunkWorkerPool",
    "StageTracker",
]
