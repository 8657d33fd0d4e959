"""
Directory setup for a spectral diversity run.

One directory per run: <base_dir>/<run_name>/ with one subdirectory per
kind of output, so that reruns with the same run name reuse (and skip)
completed stages.

Author: specdiv developers
"""

from pathlib import Path
from datetime import datetime, timezone


RUN_SUBDIRECTORIES = (
    "mask",
    "reduction",
    "species",
    "alpha",
    "beta",
    "functional",
    "validation",
    "logs",
)

# Fixed artifact locations: name -> (subdirectory, filename)
ARTIFACTS = {
    "radiometric_mask": ("mask", "radiometric_mask.tif"),
    "filtered_mask": ("mask", "filtered_mask.tif"),
    "reduced": ("reduction", "reduced.tif"),
    "reduction_model": ("reduction", "reduction_model.npz"),
    "selection": ("reduction", "selected_components.txt"),
    "species_map": ("species", "species_map.tif"),
    "codebook": ("species", "codebook.tsv"),
}


def setup_output_directories(base_output_dir=None, run_name="specdiv_run"):
    """
    Set up the run directory structure.

    Parameters
    ----------
    base_output_dir : str or Path, optional
        Base output directory. If None, ./specdiv_output is used.
    run_name : str
        Name of the run directory under the base directory.

    Returns
    -------
    dict
        Paths: 'base', 'run', and one entry per subdirectory
        (mask, reduction, species, alpha, beta, functional, validation, logs)
    """
    if base_output_dir is None:
        base_output_dir = Path.cwd() / "specdiv_output"

    base_output_dir = Path(base_output_dir).expanduser().resolve()
    run_dir = base_output_dir / run_name

    directories = {"base": base_output_dir, "run": run_dir}
    directories.update({name: run_dir / name for name in RUN_SUBDIRECTORIES})

    for path in directories.values():
        path.mkdir(parents=True, exist_ok=True)

    print("\nOutput directories created:")
    for key, path in directories.items():
        print(f"  {key:12s}: {path}")

    return directories


def get_artifact_path(output_dirs, name):
    """
    Get the fixed path of a stage artifact.

    Parameters
    ----------
    output_dirs : dict
        Output directories from setup_output_directories()
    name : str
        Artifact name (see ARTIFACTS)

    Returns
    -------
    Path

    Example
    -------
    >>> get_artifact_path(dirs, 'species_map')
    Path('specdiv_output/specdiv_run/species/species_map.tif')
    """
    if name not in ARTIFACTS:
        raise KeyError(f"Unknown artifact: {name}. Must be one of {sorted(ARTIFACTS)}")
    subdir, filename = ARTIFACTS[name]
    return Path(output_dirs[subdir]) / filename


def get_tracker_path(output_dirs):
    """Path of the run's stage tracker database."""
    return Path(output_dirs["run"]) / "run_tracker.db"


def get_runtime_config_path(output_dirs, run_id):
    """Path of the resolved configuration persisted for a run id."""
    return Path(output_dirs["run"]) / f"runtime_config_{run_id}.json"


def get_log_path(output_dirs, run_name=None):
    """
    Get the log file path.

    Parameters
    ----------
    output_dirs : dict
        Output directories from setup_output_directories()
    run_name : str, optional
        Run name used in the file name

    Returns
    -------
    Path
        logs/pipeline_<run_name>.log, or a timestamped name without run name
    """
    log_dir = Path(output_dirs["logs"])
    log_dir.mkdir(parents=True, exist_ok=True)

    if run_name:
        filename = f"pipeline_{run_name}.log"
    else:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
        filename = f"pipeline_{timestamp}.log"

    return log_dir / filename
