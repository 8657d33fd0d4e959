"""Component selection checkpoint between reduction and clustering.

The selection is an in-memory, typed artifact. It is also written to a
plain text file (one 1-based component index per line) so that it can be
reviewed, and edited, between the reduction and clustering stages.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from specdiv.contracts.failure import ConfigurationError, RasterIOError

__all__ = ['ComponentSelection']

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComponentSelection:
    """Ordered, unique, 1-based reduced-band indices."""
    indices: tuple[int, ...]

    def __post_init__(self):
        indices = tuple(int(i) for i in self.indices)
        if not indices:
            raise ConfigurationError("Component selection is empty")
        if min(indices) < 1:
            raise ConfigurationError(f"Component indices are 1-based, got {list(indices)}")
        if len(set(indices)) != len(indices):
            raise ConfigurationError(f"Duplicate component indices: {list(indices)}")
        object.__setattr__(self, "indices", indices)

    def __len__(self) -> int:
        return len(self.indices)

    @property
    def zero_based(self) -> np.ndarray:
        return np.asarray(self.indices, dtype=np.intp) - 1

    @property
    def bands(self) -> list[int]:
        """1-based raster band numbers (rasterio convention)."""
        return list(self.indices)

    @classmethod
    def default(cls, nb_components: int, nb_available: int) -> "ComponentSelection":
        """First ``nb_components`` components (bounded by what is available)."""
        return cls(tuple(range(1, min(nb_components, nb_available) + 1)))

    def check_within(self, nb_available: int) -> None:
        """Raise if an index exceeds the number of reduced components."""
        if max(self.indices) > nb_available:
            raise ConfigurationError(
                f"Selected components {list(self.indices)} exceed the {nb_available} "
                f"available reduced components"
            )

    def save(self, path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = ["# Selected components (1-based), one per line. Edit before clustering."]
        lines += [str(i) for i in self.indices]
        path.write_text("\n".join(lines) + "\n")
        logger.info("Component selection saved: %s -> %s", list(self.indices), path)
        return path

    @classmethod
    def load(cls, path) -> "ComponentSelection":
        """Read a selection file; blank lines and ``#`` comments are ignored."""
        path = Path(path)
        try:
            text = path.read_text()
        except OSError as exc:
            raise RasterIOError(f"Cannot read component selection {path}: {exc}") from exc

        indices = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            try:
                indices.append(int(line))
            except ValueError as exc:
                raise ConfigurationError(f"{path}:{lineno}: not a component index: {line!r}") from exc
        return cls(tuple(indices))
