"""Centralized failure taxonomy for the specdiv pipeline.

Every failure aborts the run: there is no partial-pipeline recovery, since
each stage's output is a hard precondition for the next. Errors carry the
offending path, parameter, or pixel/window count in their message.
"""


class SpecDivError(Exception):
    """Base class for all errors raised by specdiv stages."""


class RasterIOError(SpecDivError, OSError):
    """Raised for unreadable or malformed raster/vector input, or an unwritable output path."""


class ConfigurationError(SpecDivError, ValueError):
    """Raised for a missing band/wavelength, an empty mask, or inconsistent parameters."""


class NumericalError(SpecDivError, ArithmeticError):
    """Raised for a singular covariance, a degenerate partition, or too few points."""


class ContractViolation(RuntimeError):
    """Raised when a pipeline contract is violated.

    This indicates a bug in pipeline logic, not bad user input or recoverable
    science edge cases. It means a pipeline stage did not produce the invariants
    it promised.

    Key distinction:
    - ConfigurationError: User/config error
    - RasterIOError / NumericalError: bad data for this run
    - ContractViolation: Pipeline bug (programmer error)
    """
    pass
