"""
Exceptions raised by the backup service.
"""
from typing import Optional


class BackupError(Exception):
    """Base exception for backup failures."""


class LocalEnumerationError(BackupError):
    """The local backup directory could not be read."""


class APIError(BackupError):
    """A remote API call failed.

    Args:
        message: Human readable description
        status_code: HTTP status, or None for transport failures
        body: Response body (or transport error text), kept verbatim
    """

    def __init__(self, message: str, status_code: Optional[int] = None,
                 body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        message = super().__str__()
        if self.status_code is not None:
            message = f"{message} (status {self.status_code})"
        if self.body:
            message = f"{message}: {self.body}"
        return message


class AuthError(APIError):
    """Obtaining or using the bearer token failed."""


class RemoteListError(APIError):
    """Listing the remote folder failed or returned malformed data."""


class UploadError(APIError):
    """An upload session call failed for one file."""

    def __init__(self, message: str, filename: str,
                 status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message, status_code=status_code, body=body)
        self.filename = filename


class SessionStartError(UploadError):
    """upload_session/start failed."""


class AppendError(UploadError):
    """upload_session/append_v2 failed.

    ``correct_offset`` is set when the remote side rejected the cursor with
    an incorrect_offset error and reported the offset it expected.
    """

    def __init__(self, message: str, filename: str, offset: int,
                 status_code: Optional[int] = None, body: Optional[str] = None,
                 correct_offset: Optional[int] = None):
        super().__init__(message, filename, status_code=status_code, body=body)
        self.offset = offset
        self.correct_offset = correct_offset


class CommitError(UploadError):
    """upload_session/finish failed."""
