"""Reduction stage contract.

Enforces the guarantee that a fitted reduction model is well-formed before
it is applied to every chunk of the image.
"""

import numpy as np
from specdiv.contracts.base import require


def assert_reduction_model(model) -> None:
    """Enforce reduction stage contract.

    Called immediately after fitting. We do NOT validate the statistical
    quality of the projection, only its structure.

    Parameters
    ----------
    model : ReductionModel
        Model returned by DimensionalityReducer.fit()

    Raises
    ------
    ContractViolation
        If any invariant is violated
    """
    basis = model.basis
    n_kept = len(model.band_indices)

    require(
        basis.ndim == 2,
        f"Reduction contract violated: basis has {basis.ndim} dims, expected 2"
    )
    require(
        basis.shape[1] == model.mean.shape[0] == model.scale.shape[0],
        f"Reduction contract violated: basis width {basis.shape[1]} does not match "
        f"mean/scale length {model.mean.shape[0]}/{model.scale.shape[0]}"
    )
    require(
        np.all(np.isfinite(basis)),
        "Reduction contract violated: basis contains non-finite values"
    )
    require(
        np.all(model.scale > 0),
        "Reduction contract violated: scale factors must be positive"
    )
    require(
        basis.shape[1] == len(model.feature_indices),
        f"Reduction contract violated: basis width {basis.shape[1]} does not match "
        f"{len(model.feature_indices)} feature bands"
    )
    require(
        len(model.feature_indices) == 0 or (
            np.all(np.diff(model.feature_indices) > 0)
            and 0 <= model.feature_indices[0] and model.feature_indices[-1] < n_kept
        ),
        f"Reduction contract violated: feature bands {list(model.feature_indices)} "
        f"are not increasing positions among {n_kept} kept bands"
    )
