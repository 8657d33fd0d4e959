import pytest

from specdiv.pipeline import StageTracker


@pytest.fixture
def tracker(temp_dir):
    db_path = temp_dir / "run_tracker.db"
    tracker = StageTracker(db_path)
    yield tracker
    tracker.close()
