"""Shared pydantic base for the specdiv configuration layers."""

from pydantic import BaseModel, ConfigDict


class SpecDivBaseModel(BaseModel):
    """Strict base for ParamConfig, UserConfig, CLIConfig and InternalConfig.

    Unknown keys are rejected (UserConfig relaxes this for legacy config
    files), assignments are re-validated and string values are stripped,
    so ``" PCA "`` and ``"PCA"`` name the same reduction method.
    """

    model_config = ConfigDict(
        extra='forbid',
        validate_assignment=True,
        use_enum_values=True,
        str_strip_whitespace=True,
    )
