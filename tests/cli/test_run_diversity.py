import json

import pytest

from specdiv.cli import run_diversity_pipeline
from specdiv.cli.run_diversity import load_plot_geometries, load_user_config_dict
from specdiv.contracts.failure import ConfigurationError

pytestmark = [pytest.mark.unit, pytest.mark.pipeline]


@pytest.fixture
def user_config_file(temp_dir, scene_path):
    path = temp_dir / "user_config.py"
    path.write_text(
        "CONFIG = {\n"
        f"    'RASTER_PATH': {str(scene_path)!r},\n"
        f"    'BASE_DIR': {str(temp_dir / 'out')!r},\n"
        "    'RUN_NAME': 'cli_run',\n"
        "    'nbCPU': 2,\n"
        "    'MaxRAM': 2e-5,\n"
        "    'nbclusters': 2,\n"
        "    'SELECTED_COMPONENTS': [1, 2, 3],\n"
        "    'WINDOW_SIZE': 10,\n"
        "}\n"
    )
    return path


@pytest.fixture
def plots_file(temp_dir, scene_plots):
    features = [
        {"type": "Feature", "properties": {"name": name}, "geometry": geometry}
        for name, geometry in scene_plots.items()
    ]
    path = temp_dir / "plots.geojson"
    path.write_text(json.dumps({"type": "FeatureCollection", "features": features}))
    return path


def test_load_user_config_dict(user_config_file):
    config = load_user_config_dict(user_config_file)
    assert config["RUN_NAME"] == "cli_run"
    assert config["nbclusters"] == 2


def test_load_user_config_missing_file(temp_dir):
    with pytest.raises(FileNotFoundError):
        load_user_config_dict(temp_dir / "nope.py")


def test_load_user_config_without_config(temp_dir):
    path = temp_dir / "empty_config.py"
    path.write_text("SETTINGS = {}\n")
    with pytest.raises(ValueError, match="No CONFIG dict"):
        load_user_config_dict(path)


def test_load_plot_geometries(plots_file):
    geometries = load_plot_geometries(plots_file)
    assert list(geometries) == ["west", "east"]
    assert geometries["west"]["type"] == "Polygon"


def test_plot_names_fall_back_to_id_and_position(temp_dir, scene_plots):
    geometry = scene_plots["west"]
    path = temp_dir / "unnamed.geojson"
    path.write_text(json.dumps({"type": "FeatureCollection", "features": [
        {"type": "Feature", "id": "p7", "properties": {}, "geometry": geometry},
        {"type": "Feature", "properties": None, "geometry": geometry},
    ]}))

    assert list(load_plot_geometries(path)) == ["p7", "1"]


def test_plot_geometries_reject_duplicates(temp_dir, scene_plots):
    feature = {"type": "Feature", "properties": {"name": "a"}, "geometry": scene_plots["west"]}
    path = temp_dir / "dup.geojson"
    path.write_text(json.dumps({"type": "FeatureCollection", "features": [feature, feature]}))

    with pytest.raises(ConfigurationError, match="Duplicate plot name"):
        load_plot_geometries(path)


def test_plot_geometries_require_feature_collection(temp_dir, scene_plots):
    path = temp_dir / "single.geojson"
    path.write_text(json.dumps(scene_plots["west"]))

    with pytest.raises(ConfigurationError, match="FeatureCollection"):
        load_plot_geometries(path)


def test_run_diversity_pipeline(user_config_file, plots_file, temp_dir):
    artifacts = run_diversity_pipeline(str(user_config_file), plots_path=str(plots_file))

    run_dir = temp_dir / "out" / "cli_run"
    assert artifacts["species"] == run_dir / "species" / "species_map.tif"
    assert (run_dir / "validation" / "alpha_diversity.tsv").exists()
    assert (run_dir / "logs" / "pipeline_cli_run.log").exists()
    assert list(run_dir.glob("runtime_config_*.json"))


def test_cli_overrides_and_rerun(user_config_file, temp_dir):
    cli_args = {"run_name": "override", "nb_cpu": None}
    run_diversity_pipeline(str(user_config_file), cli_args=cli_args)
    run_dir = temp_dir / "out" / "override"
    marker = run_dir / "stale.txt"
    marker.write_text("old")

    run_diversity_pipeline(str(user_config_file), cli_args=cli_args, rerun=True)

    assert not marker.exists()
    assert (run_dir / "species" / "species_map.tif").exists()
