"""Stage-by-stage pipeline orchestration.

Runs the spectral diversity stages in order, each one reading its inputs
from the artifacts of the previous stages on disk. Every stage is exposed
separately so that a failed run can be resumed by hand, and the stage
tracker makes a rerun skip completed stages.
"""

import logging
import time
import uuid
from pathlib import Path
from typing import Callable, Optional, Mapping, Union, TYPE_CHECKING

import numpy as np

from specdiv.contracts import ContractViolation
from specdiv.contracts.failure import ConfigurationError, SpecDivError
from specdiv.contracts.invariants import PIPELINE_STAGES
from specdiv.diversity.plot_extractor import Plot, PlotExtractor, rasterize_plots
from specdiv.diversity.window_aggregator import WindowAggregator
from specdiv.pipeline.stage_tracker import StageTracker
from specdiv.raster.clusterer import Codebook, PartitionedKMeans
from specdiv.raster.radiometric import RadiometricFilter
from specdiv.raster.raster_utils import read_wavelengths
from specdiv.raster.reader import ChunkedRasterReader
from specdiv.raster.reducer import DimensionalityReducer, ReductionModel
from specdiv.raster.selection import ComponentSelection
from specdiv.setup_directories import (
    get_artifact_path,
    get_log_path,
    get_runtime_config_path,
    get_tracker_path,
)

if TYPE_CHECKING:
    from specdiv.schemas import InternalConfig

__all__ = ['DiversityPipeline']

logger = logging.getLogger(__name__)

PlotInput = Union[list[Plot], Mapping[str, dict]]


class DiversityPipeline:
    """Runs the spectral diversity pipeline for one raster.

    **Stages:**

    1. **radiometric**: NDVI / NIR / Blue mask (mask/radiometric_mask.tif)
    2. **reduction**: PCA / SPCA / MNF fit and application
       (reduction/reduced.tif, reduction/reduction_model.npz,
       mask/filtered_mask.tif)
    3. **selection**: component selection checkpoint
       (reduction/selected_components.txt, editable before clustering)
    4. **species**: partitioned k-means codebook and species map
       (species/codebook.tsv, species/species_map.tif)
    5. **diversity**: window alpha / beta / functional maps (alpha/, beta/, functional/)
    6. **validation**: field plot tables (validation/), only when plots are given

    **Logging:**

    All output goes to both console and log file (logs/pipeline_{run_name}.log).
    Log level controlled via config.logging.level.

    Example usage::

        config = resolve_config(ParamConfig(), UserConfig(raster_path="scene.tif"))
        output_dirs = setup_output_directories(config.output.base_dir, config.output.run_name)

        pipeline = DiversityPipeline(config, output_dirs)
        artifacts = pipeline.run(plots={"plot_A": geojson_polygon})
    """

    def __init__(self, config: "InternalConfig", output_dirs: dict):
        """Initialize pipeline with validated configuration.

        Parameters
        ----------
        config : InternalConfig
            Fully validated runtime configuration. A run id is attached
            when the configuration does not carry one.
        output_dirs : dict
            Run directories from setup_output_directories().

        Raises
        ------
        ConfigurationError
            If no input raster is configured.
        """
        if config.input.raster_path is None:
            raise ConfigurationError("input.raster_path is required")
        if config.run_id is None:
            config = config.model_copy(update={"run_id": uuid.uuid4().hex[:12]})

        self.config = config
        self.output_dirs = output_dirs
        self.raster_path = Path(config.input.raster_path)
        self.max_ram_gb = config.resources.max_ram_gb
        self.tracker: Optional[StageTracker] = None
        self._wavelengths: Optional[np.ndarray] = None
        self._wavelengths_loaded = False

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _setup_logging(self):
        """Configure logging and stage tracking.

        Initializes root logger with file and console handlers and opens the
        run's StageTracker.
        """
        log_level = getattr(logging, self.config.logging.level, logging.INFO)
        log_path = get_log_path(self.output_dirs, self.config.output.run_name)

        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Clear existing handlers and add new ones
        root = logging.getLogger()
        root.setLevel(log_level)
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()

        fh = logging.FileHandler(log_path)
        fh.setLevel(log_level)
        fh.setFormatter(formatter)
        root.addHandler(fh)

        ch = logging.StreamHandler()
        ch.setLevel(log_level)
        ch.setFormatter(formatter)
        root.addHandler(ch)

        logger.info("Logging: level=%s, file=%s", self.config.logging.level, log_path)

        self._open_tracker()

    def _open_tracker(self) -> StageTracker:
        if self.tracker is None:
            self.tracker = StageTracker(get_tracker_path(self.output_dirs))
        return self.tracker

    def persist_runtime_config(self) -> Path:
        """Write the resolved configuration as JSON, keyed by run id."""
        path = get_runtime_config_path(self.output_dirs, self.config.run_id)
        path.write_text(self.config.model_dump_json(indent=2))
        logger.info("Runtime config: %s", path)
        return path

    def close(self):
        """Close the stage tracker. Safe to call multiple times."""
        if self.tracker is not None:
            self.tracker.close()
            self.tracker = None

    # ------------------------------------------------------------------
    # Shared inputs
    # ------------------------------------------------------------------

    def artifact(self, name: str) -> Path:
        return get_artifact_path(self.output_dirs, name)

    @property
    def wavelengths(self) -> Optional[np.ndarray]:
        if not self._wavelengths_loaded:
            self._wavelengths = read_wavelengths(self.raster_path, self.config.input.wavelengths_path)
            self._wavelengths_loaded = True
        return self._wavelengths

    def _input_reader(self, mask=None) -> ChunkedRasterReader:
        if mask is None and self.config.input.use_mask:
            mask = self.config.input.mask_path
        expected = None if self.wavelengths is None else len(self.wavelengths)
        return ChunkedRasterReader(self.raster_path, mask=mask, max_ram_gb=self.max_ram_gb,
                                   expected_bands=expected)

    def _selection(self) -> ComponentSelection:
        path = self.artifact("selection")
        if self.config.selection.reload_from_file and path.exists():
            return ComponentSelection.load(path)
        model = ReductionModel.load(self.artifact("reduction_model"))
        return self._configured_selection(model.n_components)

    def _configured_selection(self, nb_available: int) -> ComponentSelection:
        configured = self.config.selection.selected_components
        if configured is None:
            return ComponentSelection.default(self.config.selection.nb_default_components, nb_available)
        return ComponentSelection(tuple(configured))

    def _trait_selection(self, selection: ComponentSelection) -> ComponentSelection:
        configured = self.config.diversity.functional_components
        return selection if configured is None else ComponentSelection(tuple(configured))

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    def _run_stage(self, stage: str, func: Callable[[], Path], force: bool = False) -> Path:
        """Run one stage under the tracker: skip if done, record success or failure."""
        tracker = self._open_tracker()
        if not force and not tracker.should_run(stage):
            artifact = Path(tracker.get_stage_status(stage)["artifact_path"])
            logger.info("Skipping completed stage %s (%s)", stage, artifact)
            return artifact

        logger.info("-" * 60)
        logger.info("Stage: %s", stage)
        tracker.mark_started(stage, self.config.run_id)
        started = time.time()
        try:
            artifact = func()
        except ContractViolation as e:
            logger.critical("CRITICAL: Pipeline contract violated in %s: %s", stage, e)
            logger.critical("This indicates a bug in pipeline logic. Stopping pipeline.")
            tracker.mark_failed(stage, f"Contract violation: {e}")
            raise
        except (SpecDivError, OSError, ValueError, ArithmeticError) as e:
            logger.error("Stage %s failed: %s", stage, e)
            tracker.mark_failed(stage, str(e))
            raise
        tracker.mark_completed(stage, path=artifact)
        logger.info("Stage %s completed in %.1f s", stage, time.time() - started)
        return artifact

    def run_radiometric(self, force: bool = False) -> Path:
        """Stage 1: write the radiometric mask."""
        def stage():
            cfg = self.config.radiometric
            enabled = cfg.ndvi_enabled or cfg.nir_enabled or cfg.blue_enabled
            if enabled and self.wavelengths is None:
                raise ConfigurationError(
                    f"No wavelengths for {self.raster_path}; set input.wavelengths_path "
                    f"or disable the radiometric tests"
                )
            output = self.artifact("radiometric_mask")
            RadiometricFilter(self.config).apply(self._input_reader(), self.wavelengths, output)
            return output
        return self._run_stage("radiometric", stage, force)

    def run_reduction(self, force: bool = False) -> Path:
        """Stage 2: fit the reduction, write the reduced raster and filtered mask."""
        def stage():
            reader = self._input_reader(mask=self.artifact("radiometric_mask"))
            reducer = DimensionalityReducer(self.config)
            fit = reducer.fit(reader, self.wavelengths)
            fit.model.save(self.artifact("reduction_model"))
            output = self.artifact("reduced")
            reducer.apply(reader, fit.model, output, self.artifact("filtered_mask"))
            return output
        return self._run_stage("reduction", stage, force)

    def run_selection(self, force: bool = False) -> Path:
        """Stage 3: write the component selection checkpoint."""
        def stage():
            model = ReductionModel.load(self.artifact("reduction_model"))
            selection = self._configured_selection(model.n_components)
            selection.check_within(model.n_components)
            return selection.save(self.artifact("selection"))
        return self._run_stage("selection", stage, force)

    def run_species(self, force: bool = False) -> Path:
        """Stage 4: fit the codebook and write the species map."""
        def stage():
            selection = self._selection()
            model = ReductionModel.load(self.artifact("reduction_model"))
            selection.check_within(model.n_components)

            reader = ChunkedRasterReader(self.artifact("reduced"), mask=self.artifact("filtered_mask"),
                                         max_ram_gb=self.max_ram_gb, bands=selection.bands)
            clusterer = PartitionedKMeans(self.config)
            codebook = clusterer.fit(reader, selection.indices)
            codebook.save(self.artifact("codebook"))
            output = self.artifact("species_map")
            clusterer.assign(reader, codebook, output)
            return output
        return self._run_stage("species", stage, force)

    def _diversity_readers(self):
        window_size = self.config.diversity.window_size
        codebook = Codebook.load(self.artifact("codebook"))
        species_reader = ChunkedRasterReader(self.artifact("species_map"), max_ram_gb=self.max_ram_gb,
                                             row_multiple=window_size)
        traits_reader = None
        traits = None
        if self.config.diversity.functional_enabled:
            model = ReductionModel.load(self.artifact("reduction_model"))
            traits = self._trait_selection(self._selection())
            traits.check_within(model.n_components)
            traits_reader = ChunkedRasterReader(self.artifact("reduced"), max_ram_gb=self.max_ram_gb,
                                                bands=traits.bands, row_multiple=window_size)
        return codebook, species_reader, traits_reader, traits

    def run_diversity(self, force: bool = False) -> Path:
        """Stage 5: write window diversity maps."""
        def stage():
            codebook, species_reader, traits_reader, _ = self._diversity_readers()
            aggregator = WindowAggregator(self.config)
            result = aggregator.aggregate(species_reader, codebook.nb_clusters, traits_reader)
            aggregator.write(result, self.output_dirs, species_reader.profile)
            return Path(self.output_dirs["alpha"])
        return self._run_stage("diversity", stage, force)

    def run_validation(self, plots: PlotInput, force: bool = False) -> Path:
        """Stage 6: write field plot diversity tables.

        Parameters
        ----------
        plots : list of Plot, or mapping of name -> GeoJSON-like geometry
            Geometries must be in the raster's CRS.
        """
        def stage():
            codebook, species_reader, traits_reader, traits = self._diversity_readers()
            plot_list = plots
            if isinstance(plots, Mapping):
                plot_list = rasterize_plots(plots, species_reader.transform, species_reader.shape)
            extractor = PlotExtractor(self.config)
            result = extractor.extract(
                plot_list,
                self.artifact("species_map"),
                codebook.nb_clusters,
                traits_path=self.artifact("reduced") if traits_reader is not None else None,
                trait_bands=traits.bands if traits is not None else None,
                traits_reader=traits_reader,
            )
            extractor.write(result, self.output_dirs["validation"])
            return Path(self.output_dirs["validation"])
        return self._run_stage("validation", stage, force)

    def run(self, plots: Optional[PlotInput] = None) -> dict[str, Path]:
        """Run every stage in order; completed stages are skipped.

        Parameters
        ----------
        plots : list of Plot or mapping of name -> geometry, optional
            Field plots. The validation stage runs only when given.

        Returns
        -------
        dict
            Stage name -> main artifact path.

        Raises
        ------
        SpecDivError
            First stage failure; downstream stages are not run.
        """
        self._setup_logging()

        logger.info("=" * 60)
        logger.info("Starting Spectral Diversity Pipeline: %s (run %s)",
                    self.config.output.run_name, self.config.run_id)
        logger.info("=" * 60)
        self.persist_runtime_config()

        stages = {
            "radiometric": self.run_radiometric,
            "reduction": self.run_reduction,
            "selection": self.run_selection,
            "species": self.run_species,
            "diversity": self.run_diversity,
        }
        artifacts = {}
        try:
            for name in PIPELINE_STAGES:
                if name == "validation":
                    if plots is not None:
                        artifacts[name] = self.run_validation(plots)
                    continue
                artifacts[name] = stages[name]()
            logger.info("Stage summary: %s", self.tracker.get_statistics())
        finally:
            self.close()

        logger.info("Pipeline complete: %s", self.output_dirs["run"])
        return artifacts
