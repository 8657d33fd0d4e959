"""Layered configuration resolution.

``resolve_config()`` is the only way runtime code obtains a configuration.
The three layers are merged with the later ones winning:

    ParamConfig (expert defaults) < UserConfig (config file) < CLIConfig

and the result is validated once more as a frozen InternalConfig, which is
where cross-field checks (component indices, beta sampling, mask flags)
run.
"""

from typing import Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from specdiv.contracts.failure import ConfigurationError
from specdiv.schemas.cli import CLIConfig
from specdiv.schemas.internal import InternalConfig
from specdiv.schemas.param import ParamConfig
from specdiv.schemas.user import UserConfig

Model = TypeVar("Model", bound=BaseModel)


def deep_merge(base: dict, *overrides: dict) -> dict:
    """Merge override dicts into a copy of ``base``, recursing into nested dicts.

    Examples
    --------
    >>> deep_merge({"diversity": {"window_size": 10, "beta_enabled": True}},
    ...            {"diversity": {"window_size": 20}})
    {'diversity': {'window_size': 20, 'beta_enabled': True}}
    """
    merged = dict(base)
    for override in overrides:
        for key, value in override.items():
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                merged[key] = deep_merge(current, value)
            else:
                merged[key] = value
    return merged


def _as_model(model_cls: Type[Model], value) -> Model:
    """Validate a dict (or None) into ``model_cls``; pass instances through."""
    if isinstance(value, model_cls):
        return value
    return model_cls.model_validate(value or {})


def resolve_config(
    param_cfg: Union[dict, ParamConfig],
    user_cfg: Optional[Union[dict, UserConfig]] = None,
    cli_cfg: Optional[Union[dict, CLIConfig]] = None,
) -> InternalConfig:
    """Build the runtime configuration from the three layers.

    Parameters
    ----------
    param_cfg : dict or ParamConfig
        Complete expert defaults.
    user_cfg : dict or UserConfig, optional
        Overrides from the user's config file; aliases such as ``nbCPU``
        or ``WINDOW_SIZE`` are accepted.
    cli_cfg : dict or CLIConfig, optional
        Command-line overrides.

    Returns
    -------
    InternalConfig
        Frozen, fully validated configuration.

    Raises
    ------
    ConfigurationError
        If a layer fails validation or the merged parameters contradict
        each other.

    Examples
    --------
    >>> config = resolve_config(ParamConfig(), UserConfig(window_size=20, nbclusters=30))
    >>> config.diversity.window_size, config.clustering.nb_clusters
    (20, 30)
    """
    try:
        param = _as_model(ParamConfig, param_cfg)
        user = _as_model(UserConfig, user_cfg)
        cli = _as_model(CLIConfig, cli_cfg)

        merged = deep_merge(
            param.model_dump(),
            user.to_internal_overrides(),
            cli.to_internal_overrides(),
        )
        return InternalConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc
