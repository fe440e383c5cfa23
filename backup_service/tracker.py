"""
Module for writing backup run logs.
"""
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .models import BackupSummary, FileRef

logger = logging.getLogger(__name__)


class BackupTracker:
    """Records backup runs as JSON log files."""

    def __init__(self, log_dir: Optional[Path] = None):
        """Initialize the backup tracker.

        Args:
            log_dir: Directory to store run logs. If None, only logs messages.
        """
        self.log_dir = log_dir
        if log_dir:
            log_dir.mkdir(parents=True, exist_ok=True)
        self._log_paths = {}

    def _get_log_path(self, run_id: str) -> Optional[Path]:
        """Get the log file path for a run.

        The path is chosen on first use so start and summary records of one
        run end up in the same file.

        Args:
            run_id: Unique identifier for the run

        Returns:
            Path to the log file, or None if logging to memory
        """
        if not self.log_dir:
            return None

        if run_id not in self._log_paths:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self._log_paths[run_id] = self.log_dir / f"backup_{run_id}_{timestamp}.jsonl"
        return self._log_paths[run_id]

    def _append_record(self, run_id: str, record: dict) -> None:
        if log_path := self._get_log_path(run_id):
            with open(log_path, 'a') as f:
                f.write(json.dumps(record) + "\n")

    def log_backup_start(self, run_id: str, local_dir: Path, remote_dir: str,
                         pending: List[FileRef]) -> None:
        """Log the start of a run and its pending files.

        Args:
            run_id: Unique identifier for the run
            local_dir: Local backup folder
            remote_dir: Remote backup folder
            pending: Files about to be uploaded
        """
        self._append_record(run_id, {
            "event": "start",
            "timestamp": datetime.now().isoformat(),
            "run_id": run_id,
            "local_dir": str(local_dir),
            "remote_dir": remote_dir,
            "pending": [
                {"name": ref.name, "size_bytes": ref.size_bytes} for ref in pending
            ]
        })
        logger.debug(f"Starting backup run {run_id} with {len(pending)} pending files")

    def log_backup_summary(self, summary: BackupSummary) -> None:
        """Log the summary of a completed backup run.

        Args:
            summary: BackupSummary object
        """
        self._append_record(summary.run_id, {
            "event": "summary",
            "timestamp": datetime.now().isoformat(),
            "run_id": summary.run_id,
            "total_files": summary.total_files,
            "successful_uploads": summary.successful_uploads,
            "failed_uploads": summary.failed_uploads,
            "started_at": summary.started_at.isoformat(),
            "finished_at": summary.finished_at.isoformat() if summary.finished_at else None,
            "results": [
                {
                    "name": r.file_ref.name,
                    "remote_path": r.remote_path,
                    "remote_name": r.remote_name,
                    "success": r.success,
                    "error": r.error,
                    "status_code": r.status_code,
                    "response_body": r.response_body,
                    "size_bytes": r.file_ref.size_bytes,
                    "offset": r.offset
                }
                for r in summary.results
            ]
        })

        logger.info(
            f"Completed backup {summary.run_id}: "
            f"{summary.successful_uploads}/{summary.total_files} files uploaded successfully"
        )
