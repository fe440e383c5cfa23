"""
Module for uploading files through chunked upload sessions with retry logic.
"""
import asyncio
import logging
from typing import Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .client import DropboxClient
from .config import BackupConfig, DEFAULT_CHUNK_SIZE
from .errors import AppendError, SessionStartError, UploadError
from .models import (
    CommitInfo,
    FileRef,
    SessionState,
    UploadResult,
    UploadSession,
    remote_path_for,
)
from .progress import ProgressObserver

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def is_retryable_error(exception: BaseException) -> bool:
    """Check if an exception should trigger a retry.

    Only session start and append failures are retried, and only when they
    look transient: transport errors, throttling or server errors. Commits
    are never retried since a duplicate commit creates a renamed copy.

    Args:
        exception: The exception to check

    Returns:
        True if the error is retryable, False otherwise
    """
    if isinstance(exception, (SessionStartError, AppendError)):
        if exception.status_code is None:
            return True
        return exception.status_code in RETRYABLE_STATUS_CODES
    return False


class ChunkedUploader:
    """Uploads single files through start, append and finish calls."""

    def __init__(self, client: DropboxClient, chunk_size: int = DEFAULT_CHUNK_SIZE,
                 retry_attempts: int = 3, retry_min_wait: float = 1.0,
                 retry_max_wait: float = 10.0):
        """Initialize the uploader.

        Args:
            client: Remote API client
            chunk_size: Bytes read and appended per request
            retry_attempts: Attempts per start or append call
            retry_min_wait: Minimum backoff between attempts, in seconds
            retry_max_wait: Maximum backoff between attempts, in seconds
        """
        self.client = client
        self.chunk_size = chunk_size
        self.retry_attempts = retry_attempts
        self.retry_min_wait = retry_min_wait
        self.retry_max_wait = retry_max_wait

    @classmethod
    def from_config(cls, client: DropboxClient, config: BackupConfig) -> "ChunkedUploader":
        """Create an uploader with the chunk size and retry policy from ``config``."""
        return cls(
            client,
            chunk_size=config.chunk_size,
            retry_attempts=config.retry_attempts,
            retry_min_wait=config.retry_min_wait,
            retry_max_wait=config.retry_max_wait,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=1, min=self.retry_min_wait, max=self.retry_max_wait),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def _append_chunk(self, session: UploadSession, chunk: bytes) -> None:
        """Append one chunk at the session's current offset.

        If a previous attempt reached the remote side but its response was
        lost, the remote rejects the retry with an incorrect_offset error
        pointing just past this chunk. That counts as acknowledged.
        """
        try:
            await self.client.append(session.filename, session.session_id, session.offset, chunk)
        except AppendError as e:
            if e.correct_offset is not None and e.correct_offset == session.offset + len(chunk):
                logger.warning(
                    f"Chunk at offset {session.offset} of {session.filename} "
                    f"was already received, continuing"
                )
                return
            raise

    async def upload_file(self, file_ref: FileRef, remote_dir: str,
                          observer: Optional[ProgressObserver] = None) -> UploadResult:
        """Upload one file into ``remote_dir``.

        Chunks are read and appended strictly one after another: the next
        chunk is only read once the previous append was acknowledged.
        ``observer.on_complete`` is called exactly once, whatever happens.
        A cancelled upload skips the commit and leaves the remote session
        unfinished.

        Args:
            file_ref: Local file to upload
            remote_dir: Remote destination folder
            observer: Progress hooks, defaults to no-op

        Returns:
            UploadResult for the committed file

        Raises:
            UploadError: If the start, an append, the commit or reading the
                local file fails
        """
        observer = observer or ProgressObserver()
        session = UploadSession(filename=file_ref.name)
        commit = CommitInfo(path=remote_path_for(remote_dir, file_ref.name))

        try:
            session.session_id = await self._retrying()(self.client.start_session, file_ref.name)
            session.transition(SessionState.STARTED)
            logger.debug(f"Started session {session.session_id} for {file_ref.name}")

            try:
                f = await asyncio.to_thread(open, file_ref.absolute_path, "rb")
                try:
                    while True:
                        chunk = await asyncio.to_thread(f.read, self.chunk_size)
                        if not chunk:
                            break
                        session.transition(SessionState.APPENDING)
                        observer.on_pre_chunk(session.offset)
                        await self._retrying()(self._append_chunk, session, chunk)
                        observer.on_post_chunk(session.advance(len(chunk)))
                finally:
                    f.close()
            except OSError as e:
                raise UploadError(f"Reading {file_ref.absolute_path} failed", file_ref.name,
                                  body=str(e)) from e

            session.transition(SessionState.FINISHING)
            metadata = await self.client.finish(file_ref.name, session.session_id,
                                                session.offset, commit)
            session.transition(SessionState.COMPLETED)

        except asyncio.CancelledError:
            session.transition(SessionState.FAILED)
            logger.warning(
                f"Upload of {file_ref.name} cancelled at offset {session.offset}, "
                f"session abandoned"
            )
            raise
        except Exception:
            session.transition(SessionState.FAILED)
            raise
        finally:
            observer.on_complete()

        logger.info(f"Uploaded {file_ref.name} to {metadata.get('path_display', commit.path)}")
        return UploadResult(
            file_ref=file_ref,
            remote_path=commit.path,
            success=True,
            offset=session.offset,
            remote_name=metadata.get("name")
        )
