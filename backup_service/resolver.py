"""
Module for working out which local files still need a backup.
"""
import asyncio
import logging
from pathlib import Path
from typing import Iterable, List

from .client import DropboxClient
from .models import FileRef
from .scanner import FileScanner

logger = logging.getLogger(__name__)


def pending_files(local_files: Iterable[FileRef], remote_names: Iterable[str]) -> List[FileRef]:
    """Return the local files whose name is absent from ``remote_names``.

    Matching is by exact name only; size and content are not compared.
    """
    remote = set(remote_names)
    return [ref for ref in local_files if ref.name not in remote]


class BackupSetResolver:
    """Computes the pending set: local files minus remote files."""

    def __init__(self, scanner: FileScanner, client: DropboxClient):
        self.scanner = scanner
        self.client = client

    async def resolve(self, local_dir: Path, remote_dir: str) -> List[FileRef]:
        """Resolve the files that exist locally but not remotely.

        Args:
            local_dir: Local backup folder
            remote_dir: Remote backup folder

        Returns:
            Pending files, in local enumeration order

        Raises:
            LocalEnumerationError: If the local folder cannot be read
            RemoteListError: If the remote folder cannot be listed
        """
        local_files = await asyncio.to_thread(self.scanner.scan_folder, local_dir)
        remote_entries = await self.client.list_folder(remote_dir)

        pending = pending_files(local_files, (entry.name for entry in remote_entries))
        logger.debug(
            f"{len(local_files)} local files, {len(remote_entries)} remote entries, "
            f"{len(pending)} pending"
        )
        return pending
