#!/usr/bin/env python3
"""``specdiv`` Spectral Diversity Pipeline Runner.

Usage:
    python scripts/run_diversity_pipeline.py scripts/user_config.py
    python scripts/run_diversity_pipeline.py scripts/user_config.py --raster-path flightline.tif
    python scripts/run_diversity_pipeline.py scripts/user_config.py --plots plots.geojson --nb-cpu 8

Note: User config in scripts/user_config.py, expert defaults in specdiv.schemas.param
Requires the package to be installed (pip install -e .).
"""

import argparse

from specdiv.cli.run_diversity import run_diversity_pipeline


def main():
    parser = argparse.ArgumentParser(description="Run the spectral diversity pipeline")
    parser.add_argument("config", help="Path to user config file")
    parser.add_argument("--raster-path", help="Override input raster")
    parser.add_argument("--base-dir", help="Output directory")
    parser.add_argument("--run-name", help="Run directory name under the output directory")
    parser.add_argument("--nb-cpu", type=int, help="Number of worker threads")
    parser.add_argument("--max-ram-gb", type=float, help="RAM budget per chunk/partition in GB")
    parser.add_argument("--plots", help="GeoJSON FeatureCollection of field plots")
    parser.add_argument("--rerun", action="store_true", help="Delete the run directory before running")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    artifacts = run_diversity_pipeline(
        args.config,
        cli_args={
            "raster_path": args.raster_path,
            "base_dir": args.base_dir,
            "run_name": args.run_name,
            "nb_cpu": args.nb_cpu,
            "max_ram_gb": args.max_ram_gb,
        },
        plots_path=args.plots,
        rerun=args.rerun,
        verbose=args.verbose,
    )

    print("\nArtifacts:")
    for stage, path in artifacts.items():
        print(f"  {stage:12s}: {path}")


if __name__ == "__main__":
    main()
