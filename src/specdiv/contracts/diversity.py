"""Diversity stage contract.

Enforces the guarantee that window aggregation produced every requested
index on the window grid, within the mathematical range of each index.
"""

import numpy as np
import pandas as pd
import xarray as xr
from specdiv.contracts.base import require


def _finite(values: np.ndarray) -> np.ndarray:
    return values[np.isfinite(values)]


def assert_diversity_output(ds: xr.Dataset, alpha_indices: list[str],
                            grid_shape: tuple[int, int]) -> None:
    """Enforce diversity stage contract.

    Parameters
    ----------
    ds : xr.Dataset
        Output of WindowAggregator.aggregate()
    alpha_indices : list of str
        Requested alpha indices
    grid_shape : tuple
        Expected (window rows, window cols)

    Raises
    ------
    ContractViolation
        If any invariant is violated
    """
    for name in alpha_indices:
        require(
            name in ds.data_vars,
            f"Diversity contract violated: missing '{name}' variable"
        )
        require(
            ds[name].shape == tuple(grid_shape),
            f"Diversity contract violated: '{name}' has shape {ds[name].shape}, expected {grid_shape}"
        )

    if "shannon" in ds.data_vars:
        require(
            np.all(_finite(ds["shannon"].values) >= 0),
            "Diversity contract violated: negative Shannon index"
        )
    if "simpson" in ds.data_vars:
        simpson = _finite(ds["simpson"].values)
        require(
            np.all((simpson >= 0) & (simpson <= 1)),
            "Diversity contract violated: Simpson index outside [0, 1]"
        )
    if "bray_curtis_ref" in ds.data_vars:
        bc = _finite(ds["bray_curtis_ref"].values)
        require(
            np.all((bc >= 0) & (bc <= 1 + 1e-9)),
            "Diversity contract violated: Bray-Curtis outside [0, 1]"
        )


def assert_dissimilarity_matrix(matrix: pd.DataFrame) -> None:
    """Enforce pairwise Bray-Curtis matrix contract (symmetric, zero diagonal, labelled)."""
    values = matrix.to_numpy()
    require(
        values.shape[0] == values.shape[1],
        f"Dissimilarity contract violated: matrix is {values.shape}, expected square"
    )
    require(
        list(matrix.index) == list(matrix.columns),
        "Dissimilarity contract violated: row and column labels differ"
    )
    require(
        np.allclose(values, values.T, equal_nan=True),
        "Dissimilarity contract violated: matrix is not symmetric"
    )
    require(
        np.allclose(np.diag(values), 0.0),
        "Dissimilarity contract violated: non-zero diagonal"
    )
