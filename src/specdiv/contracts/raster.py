"""Raster stage contract.

Enforces the guarantee that a chunked read covers the raster extent
exactly once, in row order, with no overlap and no gaps.
"""

from specdiv.contracts.base import require


def assert_chunk_cover(windows: list[tuple[int, int]], height: int) -> None:
    """Enforce chunk tiling contract.

    Parameters
    ----------
    windows : list of (row_off, n_rows)
        Row windows produced by the reader, in iteration order.
    height : int
        Raster height in rows.

    Raises
    ------
    ContractViolation
        If the windows leave a gap, overlap, or overrun the raster.
    """
    expected_row = 0
    for row_off, n_rows in windows:
        require(
            n_rows >= 1,
            f"Raster contract violated: empty chunk at row {row_off}"
        )
        require(
            row_off == expected_row,
            f"Raster contract violated: chunk starts at row {row_off}, expected {expected_row}"
        )
        expected_row = row_off + n_rows
    require(
        expected_row == height,
        f"Raster contract violated: chunks cover {expected_row} rows, raster has {height}"
    )
