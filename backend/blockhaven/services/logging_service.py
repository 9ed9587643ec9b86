"""Logging setup and operator-visible catalog sync run records."""

import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Base logs directory
LOGS_BASE_DIR = Path(__file__).parent.parent.parent / "logs"

RUN_LOG_COLUMNS = [
    'started_at', 'finished_at', 'catalog', 'fetched', 'duplicates',
    'skipped', 'inserted', 'updated', 'unchanged', 'batches', 'status', 'error'
]


def configure_logging(level: str = "INFO", fmt: Optional[str] = None) -> None:
    """Configure root logging once at startup."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt or '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )


@dataclass
class SyncRunLogEntry:
    """One finished catalog sync run."""
    started_at: datetime
    finished_at: datetime
    catalog: str
    fetched: int
    duplicates: int
    skipped: int
    inserted: int
    updated: int
    unchanged: int
    batches: int
    status: str
    error: Optional[str] = None


class SyncLoggingService:
    """Appends sync run outcomes to CSV and a plain activity log."""

    def __init__(self, log_dir: Optional[Path] = None):
        """Initialize the sync logging service.

        Args:
            log_dir: Directory for run logs, defaults to logs/sync
        """
        self.log_dir = Path(log_dir) if log_dir else LOGS_BASE_DIR / "sync"
        self._ensure_log_directory()

    def _ensure_log_directory(self) -> None:
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create sync log directory {self.log_dir}: {e}")

    def log_run(self, entry: SyncRunLogEntry) -> None:
        """Append a run record to <catalog>_runs.csv.

        Args:
            entry: Finished run to record
        """
        log_file = self.log_dir / f"{entry.catalog}_runs.csv"
        write_header = not log_file.exists()

        try:
            with open(log_file, 'a', newline='', encoding='utf-8') as f:
                writer = csv.writer(f)

                if write_header:
                    writer.writerow(RUN_LOG_COLUMNS)

                writer.writerow([
                    entry.started_at.isoformat(),
                    entry.finished_at.isoformat(),
                    entry.catalog,
                    entry.fetched,
                    entry.duplicates,
                    entry.skipped,
                    entry.inserted,
                    entry.updated,
                    entry.unchanged,
                    entry.batches,
                    entry.status,
                    entry.error or "",
                ])

            logger.debug(f"Logged {entry.catalog} sync run to {log_file.name}")

        except OSError as e:
            logger.error(f"Failed to log {entry.catalog} sync run: {e}")

    def log_activity(self, message: str, level: str = "INFO") -> None:
        """Log a line to activity.log.

        Args:
            message: Log message
            level: Log level (DEBUG, INFO, WARNING, ERROR)
        """
        activity_file = self.log_dir / "activity.log"

        try:
            with open(activity_file, 'a', encoding='utf-8') as f:
                timestamp = datetime.utcnow().isoformat()
                f.write(f"{timestamp} [{level}] {message}\n")

        except OSError as e:
            logger.error(f"Failed to log sync activity: {e}")
