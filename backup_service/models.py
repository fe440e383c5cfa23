"""
Module containing data models for the backup service.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Dict, Any


def remote_path_for(remote_dir: str, filename: str) -> str:
    """Join a remote directory and a file name into a remote path."""
    return f"{remote_dir.rstrip('/')}/{filename}"


@dataclass(frozen=True)
class FileRef:
    """A local file selected for backup."""
    name: str
    absolute_path: Path
    size_bytes: int


@dataclass(frozen=True)
class RemoteEntry:
    """A single entry of a remote folder listing."""
    name: str
    tag: str = "file"
    path_display: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteEntry":
        """Create from a list_folder entry dictionary."""
        return cls(
            name=data["name"],
            tag=data.get(".tag", "file"),
            path_display=data.get("path_display")
        )


class SessionState(Enum):
    """Lifecycle of an upload session."""
    CREATED = "created"
    STARTED = "started"
    APPENDING = "appending"
    FINISHING = "finishing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    SessionState.CREATED: {SessionState.STARTED},
    SessionState.STARTED: {SessionState.APPENDING, SessionState.FINISHING},
    SessionState.APPENDING: {SessionState.APPENDING, SessionState.FINISHING},
    SessionState.FINISHING: {SessionState.COMPLETED},
    SessionState.COMPLETED: set(),
    SessionState.FAILED: set(),
}


@dataclass
class UploadSession:
    """Client-side view of one remote upload session.

    ``offset`` counts the bytes the remote side has acknowledged. It is kept
    as a plain ``int`` so sizes beyond 2**53 stay exact.
    """
    filename: str
    session_id: Optional[str] = None
    offset: int = 0
    state: SessionState = SessionState.CREATED

    def __post_init__(self):
        _check_offset(self.offset)

    def transition(self, new_state: SessionState) -> None:
        """Move the session to ``new_state``.

        Any non-completed state may fail; every other move must follow the
        linear start, append, finish order.

        Raises:
            ValueError: If the transition is not allowed
        """
        if new_state is SessionState.FAILED and self.state is not SessionState.COMPLETED:
            self.state = new_state
            return
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(
                f"Invalid session transition {self.state.name} -> {new_state.name} "
                f"for {self.filename}"
            )
        self.state = new_state

    def advance(self, nbytes: int) -> int:
        """Record ``nbytes`` acknowledged bytes and return the new offset."""
        _check_offset(nbytes)
        self.offset += nbytes
        return self.offset


def _check_offset(value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"offset must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"offset must be non-negative, got {value}")


@dataclass(frozen=True)
class CommitInfo:
    """Commit parameters sent with upload_session/finish."""
    path: str
    mode: str = "add"
    autorename: bool = True
    mute: bool = False
    strict_conflict: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "mode": self.mode,
            "autorename": self.autorename,
            "mute": self.mute,
            "strict_conflict": self.strict_conflict,
        }


@dataclass(frozen=True)
class ProgressSample:
    """Offsets and timestamps around a single chunk append."""
    offset_before: int
    offset_after: int
    time_before: float
    time_after: float

    @property
    def bytes_per_second(self) -> Optional[float]:
        """Throughput of the chunk, or None when no time elapsed."""
        elapsed = self.time_after - self.time_before
        if elapsed <= 0:
            return None
        return (self.offset_after - self.offset_before) / elapsed


@dataclass
class UploadResult:
    """Represents the result of a single file upload."""
    file_ref: FileRef
    remote_path: str
    success: bool
    error: Optional[str] = None
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    offset: Optional[int] = None
    remote_name: Optional[str] = None


@dataclass
class BackupSummary:
    """Represents a summary of a backup run."""
    run_id: str
    total_files: int
    successful_uploads: int
    failed_uploads: int
    results: List[UploadResult]
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
