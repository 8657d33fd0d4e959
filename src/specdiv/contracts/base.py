"""The single enforcement primitive used by every stage contract."""

from specdiv.contracts.failure import ContractViolation


def require(condition: bool, message: str) -> None:
    """Raise ContractViolation unless ``condition`` holds.

    Stage contracts call this on the artifacts a stage hands downstream
    (codebook shape, species id range, chunk cover). A violation means the
    producing stage is wrong, so nothing catches it to carry on.

    Parameters
    ----------
    condition : bool
        Invariant that must hold.
    message : str
        What was expected and what was found.

    Raises
    ------
    ContractViolation
        If condition is False.

    Examples
    --------
    >>> require(codebook.centroids.shape[0] == k, f"Codebook has {codebook.nb_clusters} centroids, expected {k}")
    """
    if not condition:
        raise ContractViolation(message)
