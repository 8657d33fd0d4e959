"""Command-line entry point for a spectral diversity run.

Argument parsing lives in ``scripts/run_diversity_pipeline.py``; everything
a run needs beyond that (config file loading, plot loading, directory
setup, rerun cleanup) is here so it can be called and tested directly.
"""

import json
import shutil
import logging
import importlib.util
from pathlib import Path
from typing import Optional, Dict, Any

from specdiv.contracts.failure import ConfigurationError
from specdiv.pipeline.orchestrator import DiversityPipeline
from specdiv.schemas import resolve_config, ParamConfig, UserConfig, CLIConfig, InternalConfig
from specdiv.setup_directories import setup_output_directories

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIRNAME = "specdiv_output"


def load_user_config_dict(config_path: str) -> dict:
    """Execute a Python config file and return its ``CONFIG`` dict.

    The dict is returned as written; aliases are resolved later by
    UserConfig.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ValueError
        If the file defines no dict whose name starts with ``CONFIG``.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    module_spec = importlib.util.spec_from_file_location("specdiv_user_config", path)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)

    candidates = [getattr(module, name) for name in sorted(vars(module)) if name.startswith("CONFIG")]
    for candidate in candidates:
        if isinstance(candidate, dict):
            return candidate
    raise ValueError(f"No CONFIG dict found in {path}")


def load_plot_geometries(plots_path: str, name_field: str = "name") -> dict:
    """Read named plot polygons from a GeoJSON FeatureCollection.

    Parameters
    ----------
    plots_path : str
        GeoJSON file, coordinates in the raster's CRS.
    name_field : str
        Property holding the plot name. Features without it are named by
        their ``id``, or failing that by their position in the file.

    Returns
    -------
    dict
        Plot name -> geometry, in file order.

    Raises
    ------
    ConfigurationError
        If the file is not a FeatureCollection or two plots share a name.
    """
    path = Path(plots_path)
    if not path.exists():
        raise FileNotFoundError(f"Plot file not found: {path}")

    collection = json.loads(path.read_text())
    if collection.get("type") != "FeatureCollection":
        raise ConfigurationError(f"{path} is not a GeoJSON FeatureCollection")

    geometries = {}
    for position, feature in enumerate(collection.get("features", [])):
        properties = feature.get("properties") or {}
        name = str(properties.get(name_field, feature.get("id", position)))
        if name in geometries:
            raise ConfigurationError(f"Duplicate plot name in {path}: {name}")
        geometries[name] = feature["geometry"]

    logger.info("Loaded %d plots from %s", len(geometries), path)
    return geometries


def _resolve(user_config_path: str, cli_args: Optional[Dict[str, Any]], verbose: bool) -> InternalConfig:
    user = UserConfig.model_validate(load_user_config_dict(user_config_path))

    overrides = {key: value for key, value in (cli_args or {}).items() if value is not None}
    if verbose:
        overrides.setdefault("log_level", "DEBUG")

    return resolve_config(ParamConfig(), user, CLIConfig.model_validate(overrides))


def _print_summary(config: InternalConfig, user_config_path: str, run_dir: Path, verbose: bool) -> None:
    rule = "=" * 60
    print(f"\n{rule}")
    print("Spectral Diversity Pipeline")
    print(rule)
    for label, value in (
        ("Config", user_config_path),
        ("Raster", config.input.raster_path),
        ("Reduction", config.reduction.method),
        ("Clusters", config.clustering.nb_clusters),
        ("Window", config.diversity.window_size),
        ("Output", run_dir),
    ):
        print(f"{label + ':':11s}{value}")
    print(rule)

    if verbose:
        print("\nResolved configuration:")
        print(json.dumps(config.model_dump(mode="json"), indent=2))
        print(rule)


def run_diversity_pipeline(
    user_config_path: str,
    cli_args: Optional[Dict[str, Any]] = None,
    plots_path: Optional[str] = None,
    rerun: bool = False,
    verbose: bool = False
) -> dict:
    """Resolve the configuration and run every pipeline stage.

    Stages already completed in the run directory are skipped unless
    ``rerun`` wipes the directory first.

    Parameters
    ----------
    user_config_path : str
        Python file defining a ``CONFIG`` dict.
    cli_args : dict, optional
        Command-line overrides (raster_path, base_dir, run_name, nb_cpu,
        max_ram_gb, log_level). None values are ignored.
    plots_path : str, optional
        GeoJSON FeatureCollection of field plots; adds the validation stage.
    rerun : bool
        Delete ``<base_dir>/<run_name>`` before running.
    verbose : bool
        DEBUG logging and a dump of the resolved configuration.

    Returns
    -------
    dict
        Stage name -> main artifact path.

    Raises
    ------
    FileNotFoundError
        If the config or plot file does not exist.
    ConfigurationError
        If the configuration is invalid.

    Examples
    --------
    >>> run_diversity_pipeline(
    ...     "scripts/user_config.py",
    ...     cli_args={"raster_path": "flightline.tif", "nb_cpu": 8},
    ...     plots_path="plots.geojson",
    ... )
    """
    config = _resolve(user_config_path, cli_args, verbose)
    plots = load_plot_geometries(plots_path) if plots_path else None

    base_dir = Path(config.output.base_dir) if config.output.base_dir else Path.cwd() / DEFAULT_OUTPUT_DIRNAME
    run_dir = base_dir.expanduser().resolve() / config.output.run_name
    if rerun and run_dir.exists():
        print(f"Removing previous run: {run_dir}")
        shutil.rmtree(run_dir)

    output_dirs = setup_output_directories(base_dir, config.output.run_name)
    _print_summary(config, user_config_path, output_dirs["run"], verbose)

    return DiversityPipeline(config, output_dirs).run(plots=plots)
