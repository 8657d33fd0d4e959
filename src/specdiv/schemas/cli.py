"""CLIConfig: Command-line operational overrides.

Minimal configuration for operational parameters that commonly change
between runs: input raster, output location, workers, memory, verbosity.

This schema handles command-line arguments parsed by argparse.
"""

from typing import Literal, Optional
from pydantic import Field
from specdiv.schemas.base import SpecDivBaseModel


class CLIConfig(SpecDivBaseModel):
    """Command-line configuration overrides.

    Operational-only settings that override user and param configs.
    Highest priority in config resolution.

    Usage
    -----
        cli_cfg = CLIConfig(
            raster_path="/data/flightline.tif",
            base_dir="/scratch/specdiv_output",
            nb_cpu=8,
        )

        internal = resolve_config(param_cfg, user_cfg, cli_cfg)
    """

    raster_path: Optional[str] = None
    base_dir: Optional[str] = None
    run_name: Optional[str] = None
    nb_cpu: Optional[int] = Field(None, ge=1)
    max_ram_gb: Optional[float] = Field(None, gt=0)
    log_level: Optional[Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]] = None

    def to_internal_overrides(self) -> dict:
        """Convert CLI config to internal config structure.

        Returns
        -------
        dict
            Nested dictionary matching InternalConfig structure
        """
        overrides = {}

        if self.raster_path is not None:
            overrides["input"] = {"raster_path": str(self.raster_path)}

        output = {}
        if self.base_dir is not None:
            output["base_dir"] = str(self.base_dir)
        if self.run_name is not None:
            output["run_name"] = self.run_name
        if output:
            overrides["output"] = output

        resources = {}
        if self.nb_cpu is not None:
            resources["nb_cpu"] = self.nb_cpu
        if self.max_ram_gb is not None:
            resources["max_ram_gb"] = self.max_ram_gb
        if resources:
            overrides["resources"] = resources

        if self.log_level is not None:
            overrides["logging"] = {"level": self.log_level}

        return overrides
