import numpy as np
import pandas as pd
import pytest
import rasterio

from specdiv.contracts.failure import ConfigurationError
from specdiv.pipeline import StageTracker
from specdiv.pipeline.orchestrator import DiversityPipeline
from specdiv.setup_directories import (
    get_log_path,
    get_runtime_config_path,
    get_tracker_path,
    setup_output_directories,
)

pytestmark = [pytest.mark.unit, pytest.mark.pipeline]


@pytest.fixture
def pipeline(scene_config, output_dirs):
    pipeline = DiversityPipeline(scene_config, output_dirs)
    yield pipeline
    pipeline.close()


def test_pipeline_requires_raster(internal_config, output_dirs):
    """Pipeline refuses a config without an input raster."""
    with pytest.raises(ConfigurationError, match="raster_path is required"):
        DiversityPipeline(internal_config, output_dirs)


def test_pipeline_attaches_run_id(pipeline, scene_config):
    assert scene_config.run_id is None
    assert pipeline.config.run_id is not None
    assert len(pipeline.config.run_id) == 12


def test_pipeline_keeps_given_run_id(scene_config, output_dirs):
    config = scene_config.model_copy(update={"run_id": "fixed"})
    assert DiversityPipeline(config, output_dirs).config.run_id == "fixed"


def test_pipeline_logging_and_tracker(pipeline, output_dirs, scene_config):
    """Pipeline sets up logging and the stage tracker."""
    pipeline._setup_logging()

    assert pipeline.tracker is not None
    assert get_tracker_path(output_dirs).exists()
    assert get_log_path(output_dirs, scene_config.output.run_name).exists()


def test_pipeline_close_is_idempotent(pipeline):
    pipeline._setup_logging()
    pipeline.close()
    pipeline.close()
    assert pipeline.tracker is None


def test_persist_runtime_config(pipeline, output_dirs):
    path = pipeline.persist_runtime_config()

    assert path == get_runtime_config_path(output_dirs, pipeline.config.run_id)
    assert '"window_size": 10' in path.read_text()


def test_wavelengths_from_band_tags(pipeline):
    assert pipeline.wavelengths is not None
    assert len(pipeline.wavelengths) == 12


def test_full_run(pipeline, output_dirs):
    artifacts = pipeline.run()

    assert list(artifacts) == ["radiometric", "reduction", "selection", "species", "diversity"]
    for path in artifacts.values():
        assert path.exists()

    with rasterio.open(artifacts["species"]) as src:
        species = src.read(1)
    assert species.shape == (40, 40)
    np.testing.assert_array_equal(species[:5, :5], 0)
    left = np.unique(species[5:, :20])
    right = np.unique(species[:, 20:])
    assert left.size == 1 and right.size == 1
    assert left[0] != right[0]
    assert {left[0], right[0]} == {1, 2}

    with rasterio.open(output_dirs["alpha"] / "shannon.tif") as src:
        shannon = src.read(1)
    assert shannon.shape == (4, 4)
    np.testing.assert_allclose(shannon, 0.0, atol=1e-12)

    for name in ("fric", "feve", "fdiv"):
        assert (output_dirs["functional"] / f"{name}.tif").exists()
    assert (output_dirs["beta"] / "bray_curtis_pairwise.tsv").exists()

    codebook = pd.read_csv(output_dirs["species"] / "codebook.tsv", sep="\t")
    assert len(codebook) == 2


def test_fresh_runs_are_byte_identical_across_worker_counts(make_config, scene_path, temp_dir):
    def run(nb_cpu, name):
        config = make_config(
            raster_path=str(scene_path),
            nb_cpu=nb_cpu,
            max_ram_gb=2e-5,
            nbclusters=2,
            clustering={"nb_partitions": 3},
            selected_components=[1, 2, 3],
            window_size=10,
        )
        dirs = setup_output_directories(temp_dir / name, "run")
        pipeline = DiversityPipeline(config, dirs)
        try:
            pipeline.run()
        finally:
            pipeline.close()
        return dirs

    serial, parallel = run(1, "serial"), run(4, "parallel")

    for key, name in [("species", "species_map.tif"), ("species", "codebook.tsv"),
                      ("alpha", "shannon.tif"), ("reduction", "reduced.tif")]:
        assert (serial[key] / name).read_bytes() == (parallel[key] / name).read_bytes(), name


def test_full_run_with_continuum_removal(make_config, scene_path, output_dirs):
    config = make_config(
        raster_path=str(scene_path),
        nb_cpu=2,
        max_ram_gb=2e-5,
        nbclusters=2,
        continuum_removal=True,
        selected_components=[1, 2, 3],
        window_size=10,
    )
    pipeline = DiversityPipeline(config, output_dirs)
    try:
        artifacts = pipeline.run()
    finally:
        pipeline.close()

    with rasterio.open(artifacts["species"]) as src:
        species = src.read(1)
    left, right = np.unique(species[5:, :20]), np.unique(species[:, 20:])
    assert left.size == 1 and right.size == 1
    assert {left[0], right[0]} == {1, 2}


def test_rerun_skips_completed_stages(scene_config, output_dirs):
    DiversityPipeline(scene_config, output_dirs).run()
    species_map = output_dirs["species"] / "species_map.tif"
    mtime = species_map.stat().st_mtime_ns

    DiversityPipeline(scene_config, output_dirs).run()

    assert species_map.stat().st_mtime_ns == mtime
    with StageTracker(get_tracker_path(output_dirs)) as tracker:
        stats = tracker.get_statistics()
    assert stats["completed"] == 5
    assert stats["failed"] == 0


def test_forced_stage_invalidates_downstream(pipeline):
    pipeline.run()
    pipeline.run_reduction(force=True)

    tracker = pipeline.tracker
    assert tracker.get_stage_status("reduction")["status"] == "completed"
    assert tracker.get_stage_status("species")["status"] == "pending"
    assert tracker.should_run("diversity")


def test_run_with_plots(pipeline, output_dirs, scene_plots):
    artifacts = pipeline.run(plots=scene_plots)

    assert artifacts["validation"] == output_dirs["validation"]
    alpha = pd.read_csv(output_dirs["validation"] / "alpha_diversity.tsv", sep="\t", index_col=0)
    assert list(alpha.index) == ["west", "east"]
    assert (alpha["nb_pixels"] == 25).all()
    np.testing.assert_allclose(alpha["shannon"], 0.0, atol=1e-12)

    bray_curtis = pd.read_csv(output_dirs["validation"] / "bray_curtis.tsv", sep="\t", index_col=0)
    assert bray_curtis.loc["west", "east"] == pytest.approx(1.0)
    assert (output_dirs["validation"] / "functional_diversity.tsv").exists()


def test_untagged_raster_fails_radiometric(make_config, untagged_scene_path, output_dirs):
    config = make_config(raster_path=str(untagged_scene_path), max_ram_gb=2e-5)

    with pytest.raises(ConfigurationError, match="No wavelengths"):
        DiversityPipeline(config, output_dirs).run()

    with StageTracker(get_tracker_path(output_dirs)) as tracker:
        status = tracker.get_stage_status("radiometric")
        assert status["status"] == "failed"
        assert "No wavelengths" in status["error_message"]
        assert tracker.get_stage_status("reduction")["status"] == "pending"


def test_untagged_raster_without_radiometric_tests(make_config, untagged_scene_path, output_dirs):
    config = make_config(
        raster_path=str(untagged_scene_path),
        radiometric={"ndvi_enabled": False, "nir_enabled": False, "blue_enabled": False},
    )
    pipeline = DiversityPipeline(config, output_dirs)
    try:
        mask_path = pipeline.run_radiometric()
    finally:
        pipeline.close()

    with rasterio.open(mask_path) as src:
        assert src.read(1).all()
