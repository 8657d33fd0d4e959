"""SQLite-based pipeline stage tracker.

Tracks a run through the pipeline stages (radiometric, reduction, selection,
species, diversity, validation). Enables idempotent reruns: completed stages
whose artifact is still on disk are skipped, failed stages are recorded
with their error message.
"""

import sqlite3
import logging
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Dict, List

from specdiv.contracts.invariants import PIPELINE_STAGES

logger = logging.getLogger(__name__)


class StageTracker:
    """Tracks stage status and artifacts of a pipeline run directory.

    **Database Schema:**

    SQLite table `stage_processing` (one row per stage):

    - stage: Stage name (primary key), one of PIPELINE_STAGES
    - status: pending, running, completed, failed
    - artifact_path: Main output of the stage
    - run_id: Run that last touched the stage
    - Timestamps: started_at, completed_at, updated_at (ISO format, UTC)
    - error_message: Error details if failed

    **Resumability:**

    A stage marked completed is skipped on the next run as long as its
    artifact still exists. Re-running a stage invalidates every downstream
    stage, since their inputs change.

    **Thread Safety:**

    All methods are thread-safe via internal locking.

    **Typical Usage:**

        tracker = StageTracker(run_dir / "run_tracker.db")

        if tracker.should_run("reduction"):
            tracker.mark_started("reduction", run_id)
            ...
            tracker.mark_completed("reduction", path=reduced_path)

        tracker.close()
    """

    def __init__(self, db_path: Path | str):
        """Initialize tracker.

        Parameters
        ----------
        db_path : Path or str
            Path to SQLite database file. Created if doesn't exist.
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = None
        self._lock = threading.Lock()

        self._init_database()
        logger.info("Stage tracker initialized: %s", self.db_path)

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self):
        """Create database schema if it doesn't exist."""
        conn = self._get_connection()

        with self._lock:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS stage_processing (
                    stage TEXT PRIMARY KEY,
                    status TEXT DEFAULT 'pending',
                    artifact_path TEXT,
                    run_id TEXT,

                    started_at TEXT,
                    completed_at TEXT,
                    error_message TEXT,

                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.executemany(
                "INSERT OR IGNORE INTO stage_processing (stage, status) VALUES (?, 'pending')",
                [(stage,) for stage in PIPELINE_STAGES],
            )
            conn.commit()

    @staticmethod
    def _check_stage(stage: str) -> None:
        if stage not in PIPELINE_STAGES:
            raise ValueError(f"Invalid stage: {stage}. Must be one of {list(PIPELINE_STAGES)}")

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def mark_started(self, stage: str, run_id: Optional[str] = None):
        """Mark a stage as running and invalidate every downstream stage."""
        self._check_stage(stage)
        conn = self._get_connection()
        downstream = PIPELINE_STAGES[PIPELINE_STAGES.index(stage) + 1:]

        with self._lock:
            now = self._now()
            conn.execute("""
                UPDATE stage_processing
                SET status = 'running', run_id = ?, started_at = ?, completed_at = NULL,
                    error_message = NULL, updated_at = ?
                WHERE stage = ?
            """, (run_id, now, now, stage))
            if downstream:
                placeholders = ','.join('?' * len(downstream))
                conn.execute(f"""
                    UPDATE stage_processing
                    SET status = 'pending', completed_at = NULL, updated_at = ?
                    WHERE stage IN ({placeholders}) AND status != 'pending'
                """, (now, *downstream))
            conn.commit()

        logger.debug("Stage started: %s", stage)

    def mark_completed(self, stage: str, path: Optional[Path] = None):
        """Mark a stage as completed, recording its main artifact."""
        self._check_stage(stage)
        conn = self._get_connection()

        with self._lock:
            now = self._now()
            conn.execute("""
                UPDATE stage_processing
                SET status = 'completed', artifact_path = ?, completed_at = ?,
                    error_message = NULL, updated_at = ?
                WHERE stage = ?
            """, (str(path) if path else None, now, now, stage))
            conn.commit()

        logger.debug("Stage completed: %s", stage)

    def mark_failed(self, stage: str, error: str):
        """Mark a stage as failed with its error message."""
        self._check_stage(stage)
        conn = self._get_connection()

        with self._lock:
            conn.execute("""
                UPDATE stage_processing
                SET status = 'failed', error_message = ?, updated_at = ?
                WHERE stage = ?
            """, (error, self._now(), stage))
            conn.commit()

        logger.debug("Stage failed: %s (%s)", stage, error)

    def get_stage_status(self, stage: str) -> Optional[Dict]:
        """Full record of a stage, or None if unknown."""
        self._check_stage(stage)
        conn = self._get_connection()

        with self._lock:
            row = conn.execute("SELECT * FROM stage_processing WHERE stage = ?", (stage,)).fetchone()
            return dict(row) if row else None

    def get_all_stages(self) -> List[Dict]:
        """Records of every stage, in pipeline order."""
        conn = self._get_connection()
        with self._lock:
            rows = {row["stage"]: dict(row) for row in conn.execute("SELECT * FROM stage_processing")}
        return [rows[stage] for stage in PIPELINE_STAGES if stage in rows]

    def should_run(self, stage: str) -> bool:
        """True unless the stage completed and its artifact still exists."""
        status = self.get_stage_status(stage)
        if not status or status["status"] != "completed":
            return True
        artifact = status["artifact_path"]
        if artifact and not Path(artifact).exists():
            logger.info("Artifact of stage %s is missing, rerunning: %s", stage, artifact)
            return True
        return False

    def get_statistics(self) -> Dict:
        """Count of stages per status."""
        conn = self._get_connection()
        with self._lock:
            row = conn.execute("""
                SELECT
                    COUNT(*) as total,
                    SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) as completed,
                    SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) as failed,
                    SUM(CASE WHEN status = 'running' THEN 1 ELSE 0 END) as running,
                    SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) as pending
                FROM stage_processing
            """).fetchone()
            return dict(row) if row else {}

    def reset_failed(self):
        """Reset failed (and interrupted) stages to pending for retry."""
        conn = self._get_connection()
        with self._lock:
            conn.execute("""
                UPDATE stage_processing
                SET status = 'pending', error_message = NULL, updated_at = ?
                WHERE status IN ('failed', 'running')
            """, (self._now(),))
            conn.commit()
        logger.info("Reset failed stages to pending")

    def close(self):
        """Close database connection. Safe to call multiple times."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
