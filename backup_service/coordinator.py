"""
Module for coordinating a backup run: resolve, schedule, upload, summarize.
"""
import functools
import logging
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from .client import DropboxClient
from .config import BackupConfig
from .errors import APIError
from .models import BackupSummary, FileRef, UploadResult, remote_path_for
from .progress import ProgressObserver, format_bytes
from .resolver import BackupSetResolver
from .scanner import FileScanner
from .scheduler import BoundedScheduler
from .tracker import BackupTracker
from .uploader import ChunkedUploader

logger = logging.getLogger(__name__)

ObserverFactory = Callable[[FileRef], ProgressObserver]


class BackupCoordinator:
    """Backs up every local file that is missing from the remote folder."""

    def __init__(self, config: BackupConfig, client: DropboxClient,
                 observer_factory: Optional[ObserverFactory] = None,
                 tracker: Optional[BackupTracker] = None):
        """Initialize the backup coordinator.

        Args:
            config: Backup settings
            client: Remote API client
            observer_factory: Builds a fresh progress observer per file
            tracker: Run log writer, built from ``config.log_dir`` if omitted
        """
        self.config = config
        self.client = client
        self.observer_factory = observer_factory or (lambda file_ref: ProgressObserver())
        self.tracker = tracker or BackupTracker(log_dir=config.log_dir)
        self.resolver = BackupSetResolver(FileScanner(pattern=config.pattern), client)
        self.uploader = ChunkedUploader.from_config(client, config)
        self.scheduler = BoundedScheduler(max_concurrent=config.max_concurrent)

    async def pending(self) -> List[FileRef]:
        """Return the files that would be uploaded, without uploading them."""
        return await self.resolver.resolve(self.config.local_dir, self.config.remote_dir)

    async def _upload_one(self, position: int, total: int, file_ref: FileRef) -> UploadResult:
        """Upload one pending file, turning upload failures into a result."""
        logger.info(
            f"Uploading ({position}/{total}) {file_ref.name} "
            f"(size: {format_bytes(file_ref.size_bytes)})..."
        )
        observer = self.observer_factory(file_ref)
        try:
            return await self.uploader.upload_file(file_ref, self.config.remote_dir, observer)
        except APIError as e:
            logger.error(f"Error uploading {file_ref.name}: {e}")
            logger.error(f"Status: {e.status_code} Body: {e.body}")
            return UploadResult(
                file_ref=file_ref,
                remote_path=remote_path_for(self.config.remote_dir, file_ref.name),
                success=False,
                error=str(e),
                status_code=e.status_code,
                response_body=e.body
            )

    async def run(self) -> BackupSummary:
        """Run one backup pass.

        Returns:
            BackupSummary of the run

        Raises:
            LocalEnumerationError: If the local folder cannot be read
            RemoteListError: If the remote folder cannot be listed
            AuthError: If no valid token can be obtained for the listing
        """
        run_id = uuid.uuid4().hex[:12]
        started_at = datetime.now()

        logger.info("Figuring out pending files...")
        pending = await self.pending()
        logger.info(f"Found {len(pending)} pending files.")

        if not pending:
            logger.info("Nothing to back up.")
            return BackupSummary(
                run_id=run_id,
                total_files=0,
                successful_uploads=0,
                failed_uploads=0,
                results=[],
                started_at=started_at,
                finished_at=datetime.now()
            )

        self.tracker.log_backup_start(run_id, self.config.local_dir,
                                      self.config.remote_dir, pending)

        tasks = [
            functools.partial(self._upload_one, position, len(pending), file_ref)
            for position, file_ref in enumerate(pending, start=1)
        ]
        outcomes = await self.scheduler.run(tasks)

        results = []
        for outcome, file_ref in zip(outcomes, pending):
            if outcome.succeeded:
                results.append(outcome.result)
                continue
            # Errors outside the upload taxonomy, e.g. an unexpected bug.
            logger.error(f"Unexpected error uploading {file_ref.name}: {outcome.error!r}")
            results.append(UploadResult(
                file_ref=file_ref,
                remote_path=remote_path_for(self.config.remote_dir, file_ref.name),
                success=False,
                error=str(outcome.error)
            ))

        successful = sum(1 for r in results if r.success)
        summary = BackupSummary(
            run_id=run_id,
            total_files=len(pending),
            successful_uploads=successful,
            failed_uploads=len(results) - successful,
            results=results,
            started_at=started_at,
            finished_at=datetime.now()
        )
        self.tracker.log_backup_summary(summary)
        logger.info(f"Done. {summary.successful_uploads}/{summary.total_files} files uploaded.")
        return summary
