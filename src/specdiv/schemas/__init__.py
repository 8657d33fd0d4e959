"""Configuration schemas for the spectral diversity pipeline.

Runtime code only ever sees an InternalConfig, built by resolve_config()
from three layers:

ParamConfig
    Every option with its default.
UserConfig
    Overrides from the user's config file, with legacy aliases.
CLIConfig
    Command-line overrides.
"""

from specdiv.schemas.resolve import resolve_config
from specdiv.schemas.internal import InternalConfig
from specdiv.schemas.param import ParamConfig
from specdiv.schemas.user import UserConfig
from specdiv.schemas.cli import CLIConfig

__all__ = [
    'resolve_config',
    'InternalConfig',
    'ParamConfig',
    'UserConfig',
    'CLIConfig',
]
