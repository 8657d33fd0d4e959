"""Tests for the component selection checkpoint."""

import numpy as np
import pytest

from specdiv.raster.selection import ComponentSelection
from specdiv.contracts.failure import ConfigurationError, RasterIOError

pytestmark = pytest.mark.unit


def test_indices_are_normalized():
    selection = ComponentSelection([3, 1, 2])
    assert selection.indices == (3, 1, 2)
    assert selection.bands == [3, 1, 2]
    assert selection.zero_based.tolist() == [2, 0, 1]
    assert len(selection) == 3


@pytest.mark.parametrize("indices, message", [
    ((), "empty"),
    ((0, 1), "1-based"),
    ((1, 1), "Duplicate"),
])
def test_invalid_selection(indices, message):
    with pytest.raises(ConfigurationError, match=message):
        ComponentSelection(indices)


def test_default_is_bounded_by_available():
    assert ComponentSelection.default(5, 12).indices == (1, 2, 3, 4, 5)
    assert ComponentSelection.default(5, 3).indices == (1, 2, 3)


def test_check_within():
    ComponentSelection((1, 4)).check_within(4)
    with pytest.raises(ConfigurationError, match="exceed the 3 available"):
        ComponentSelection((1, 4)).check_within(3)


def test_save_writes_one_index_per_line(temp_dir):
    path = ComponentSelection((2, 5)).save(temp_dir / "sel" / "selected_components.txt")
    lines = path.read_text().splitlines()
    assert lines[0].startswith("#")
    assert lines[1:] == ["2", "5"]


def test_load_hand_edited_file(temp_dir):
    path = temp_dir / "selected_components.txt"
    path.write_text("# reviewed\n1\n\n4  # red edge\n6\n")
    assert ComponentSelection.load(path).indices == (1, 4, 6)


def test_load_rejects_garbage(temp_dir):
    path = temp_dir / "selected_components.txt"
    path.write_text("1\ntwo\n")
    with pytest.raises(ConfigurationError, match=":2: not a component index"):
        ComponentSelection.load(path)


def test_load_missing_file(temp_dir):
    with pytest.raises(RasterIOError, match="Cannot read component selection"):
        ComponentSelection.load(temp_dir / "missing.txt")
