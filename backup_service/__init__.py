from .client import DropboxClient
from .config import BackupConfig, load_config
from .coordinator import BackupCoordinator
from .models import BackupSummary, FileRef, UploadResult, UploadSession
from .progress import ProgressObserver
from .resolver import BackupSetResolver
from .scanner import FileScanner
from .scheduler import BoundedScheduler, run_bounded
from .uploader import ChunkedUploader

__version__ = "0.1.0"

__all__ = [
    "BackupConfig",
    "BackupCoordinator",
    "BackupSetResolver",
    "BackupSummary",
    "BoundedScheduler",
    "ChunkedUploader",
    "DropboxClient",
    "FileRef",
    "FileScanner",
    "ProgressObserver",
    "UploadResult",
    "UploadSession",
    "load_config",
    "run_bounded",
]
