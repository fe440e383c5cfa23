"""
Async HTTP client for the remote file store API.

This module provides:
- DropboxClient: folder listing and the three upload session calls
  (start, append_v2, finish) used by the chunked uploader
"""
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .auth import CredentialProvider, create_credential_provider
from .config import API_URL, CONTENT_URL, LIST_FOLDER_LIMIT, BackupConfig
from .errors import (
    AppendError,
    AuthError,
    CommitError,
    RemoteListError,
    SessionStartError,
)
from .models import CommitInfo, RemoteEntry

logger = logging.getLogger(__name__)


def _correct_offset(response: httpx.Response) -> Optional[int]:
    """Extract correct_offset from an incorrect_offset error body."""
    try:
        payload = response.json()
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if not isinstance(error, dict):
        return None
    if error.get(".tag") == "incorrect_offset":
        return error.get("correct_offset")
    lookup = error.get("lookup_failed")
    if isinstance(lookup, dict) and lookup.get(".tag") == "incorrect_offset":
        return lookup.get("correct_offset")
    return None


class DropboxClient:
    """Async client for listing folders and running upload sessions.

    Usage:
        async with DropboxClient.from_config(config) as client:
            entries = await client.list_folder("/Backups")
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        http_client: Optional[httpx.AsyncClient] = None,
        api_url: str = API_URL,
        content_url: str = CONTENT_URL,
        list_limit: int = LIST_FOLDER_LIMIT,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            credentials: Source of the bearer token
            http_client: Shared HTTP client, created when omitted
            api_url: Base URL for RPC style endpoints
            content_url: Base URL for content upload endpoints
            list_limit: Page size requested from list_folder
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self._credentials = credentials
        self._http = http_client or httpx.AsyncClient(timeout=timeout, transport=transport)
        self._api_url = api_url.rstrip("/")
        self._content_url = content_url.rstrip("/")
        self._list_limit = list_limit

    @classmethod
    def from_config(cls, config: BackupConfig,
                    transport: Optional[httpx.AsyncBaseTransport] = None) -> "DropboxClient":
        """Create a client and its credential provider from configuration."""
        http_client = httpx.AsyncClient(timeout=config.timeout, transport=transport)
        return cls(
            credentials=create_credential_provider(config, http_client),
            http_client=http_client,
            api_url=config.api_url,
            content_url=config.content_url,
            list_limit=config.list_limit,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._http.aclose()

    async def __aenter__(self) -> "DropboxClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def _send(self, url: str, token: str, headers: Dict[str, str],
                    json_body: Optional[Dict[str, Any]], content: Optional[bytes]) -> httpx.Response:
        headers = {**headers, "Authorization": f"Bearer {token}"}
        if json_body is not None:
            return await self._http.post(url, headers=headers, json=json_body)
        return await self._http.post(url, headers=headers, content=content)

    async def _post(self, url: str, json_body: Optional[Dict[str, Any]] = None,
                    api_arg: Optional[Dict[str, Any]] = None,
                    content: Optional[bytes] = None) -> httpx.Response:
        """POST to the API, refreshing the token once on 401.

        Raises:
            AuthError: If the token is rejected after a refresh
            httpx.HTTPError: On transport failures
        """
        headers: Dict[str, str] = {}
        if api_arg is not None:
            # json.dumps escapes non-ASCII, which HTTP headers require.
            headers["Dropbox-API-Arg"] = json.dumps(api_arg)
            headers["Content-Type"] = "application/octet-stream"
            content = content if content is not None else b""

        token = await self._credentials.get_token()
        response = await self._send(url, token, headers, json_body, content)
        if response.status_code == 401:
            logger.warning(f"Access token rejected by {url}, refreshing")
            token = await self._credentials.refresh(token)
            response = await self._send(url, token, headers, json_body, content)
            if response.status_code == 401:
                raise AuthError("Access token rejected after refresh",
                                status_code=401, body=response.text)
        return response

    async def _list_page(self, endpoint: str, body: Dict[str, Any], path: str) -> Dict[str, Any]:
        try:
            response = await self._post(f"{self._api_url}/{endpoint}", json_body=body)
        except httpx.HTTPError as e:
            raise RemoteListError(f"Listing {path!r} failed", body=str(e)) from e

        if response.status_code != 200:
            raise RemoteListError(f"Listing {path!r} failed",
                                  status_code=response.status_code, body=response.text)
        try:
            page = response.json()
        except ValueError as e:
            raise RemoteListError(f"Listing {path!r} returned invalid JSON",
                                  status_code=response.status_code, body=response.text) from e
        if not isinstance(page, dict) or not isinstance(page.get("entries"), list):
            raise RemoteListError(f"Listing {path!r} returned no entries",
                                  status_code=response.status_code, body=response.text)
        return page

    async def list_folder(self, path: str) -> List[RemoteEntry]:
        """List every entry of a remote folder.

        Follows list_folder/continue cursors until ``has_more`` is false.

        Args:
            path: Remote folder path ("" for the root)

        Returns:
            List of RemoteEntry objects

        Raises:
            RemoteListError: On transport failure, non-success status or
                malformed response
        """
        # The API names the root "" and rejects "/".
        path = path.rstrip("/")
        page = await self._list_page("files/list_folder",
                                     {"path": path, "limit": self._list_limit}, path)
        raw_entries = list(page["entries"])
        while page.get("has_more"):
            cursor = page.get("cursor")
            if not cursor:
                raise RemoteListError(f"Listing {path!r} has more entries but no cursor",
                                      body=json.dumps(page))
            logger.debug(f"Fetching next listing page for {path!r}")
            page = await self._list_page("files/list_folder/continue", {"cursor": cursor}, path)
            raw_entries.extend(page["entries"])

        try:
            entries = [RemoteEntry.from_dict(entry) for entry in raw_entries]
        except (KeyError, TypeError, AttributeError) as e:
            raise RemoteListError(f"Listing {path!r} contains a malformed entry",
                                  body=str(e)) from e

        logger.debug(f"Listed {len(entries)} entries in {path!r}")
        return entries

    async def start_session(self, filename: str) -> str:
        """Open an upload session and return its id.

        Raises:
            SessionStartError: On transport failure or non-success status
        """
        url = f"{self._content_url}/files/upload_session/start"
        try:
            response = await self._post(url, api_arg={"close": False})
        except httpx.HTTPError as e:
            raise SessionStartError("Starting upload session failed", filename, body=str(e)) from e

        if response.status_code != 200:
            raise SessionStartError("Starting upload session failed", filename,
                                    status_code=response.status_code, body=response.text)
        try:
            return response.json()["session_id"]
        except (ValueError, KeyError, TypeError) as e:
            raise SessionStartError("Upload session start returned no session_id", filename,
                                    status_code=response.status_code, body=response.text) from e

    async def append(self, filename: str, session_id: str, offset: int, chunk: bytes) -> None:
        """Append one chunk at ``offset`` to an open session.

        Raises:
            AppendError: On transport failure or non-success status
        """
        url = f"{self._content_url}/files/upload_session/append_v2"
        api_arg = {"cursor": {"session_id": session_id, "offset": offset}, "close": False}
        try:
            response = await self._post(url, api_arg=api_arg, content=chunk)
        except httpx.HTTPError as e:
            raise AppendError(f"Appending at offset {offset} failed", filename, offset,
                              body=str(e)) from e

        if response.status_code != 200:
            raise AppendError(f"Appending at offset {offset} failed", filename, offset,
                              status_code=response.status_code, body=response.text,
                              correct_offset=_correct_offset(response))

    async def finish(self, filename: str, session_id: str, offset: int,
                     commit: CommitInfo) -> Dict[str, Any]:
        """Commit a session into a file and return its metadata.

        Raises:
            CommitError: On transport failure or non-success status
        """
        url = f"{self._content_url}/files/upload_session/finish"
        api_arg = {
            "cursor": {"session_id": session_id, "offset": offset},
            "commit": commit.to_dict(),
        }
        try:
            response = await self._post(url, api_arg=api_arg)
        except httpx.HTTPError as e:
            raise CommitError(f"Committing {commit.path} failed", filename, body=str(e)) from e

        if response.status_code != 200:
            raise CommitError(f"Committing {commit.path} failed", filename,
                              status_code=response.status_code, body=response.text)
        try:
            return response.json()
        except ValueError:
            return {}
