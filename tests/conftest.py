"""
Test fixtures for the backup service.
"""
import asyncio
import base64
import json
from collections import defaultdict
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs

import httpx
import pytest

from backup_service.auth import StaticTokenProvider
from backup_service.client import DropboxClient
from backup_service.config import BackupConfig
from backup_service.progress import ProgressObserver

API_URL = "https://api.test/2"
CONTENT_URL = "https://content.test/2"
TOKEN_URL = "https://api.test/oauth2/token"


def _json_response(status_code: int, payload) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


def _error(status_code: int, tag: str, **extra) -> httpx.Response:
    return _json_response(status_code, {
        "error_summary": f"{tag}/..",
        "error": {".tag": tag, **extra}
    })


class FakeDropbox:
    """In-memory stand-in for the remote API, served through httpx.MockTransport."""

    def __init__(self, tokens=("test-token",), page_size: Optional[int] = None):
        self.valid_tokens = set(tokens)
        self.page_size = page_size
        self.folders = {""}
        self.files: Dict[str, bytes] = {}
        self.sessions: Dict[str, bytearray] = {}
        self.append_offsets: Dict[str, List[int]] = defaultdict(list)
        self.requests: List[Tuple[str, Optional[dict]]] = []
        self._session_counter = 0

        # Concurrency instrumentation
        self.in_flight_appends: Dict[str, int] = defaultdict(int)
        self.max_in_flight_appends = 0
        self.active_sessions = 0
        self.peak_active_sessions = 0
        self.append_delay = 0.0

        # Failure injection
        self.list_error: Optional[Exception] = None
        self.append_failures: List = []
        self.lost_append_responses = 0
        self.finish_failures: Dict[str, Tuple[int, str]] = {}
        self.token_exchanges = 0
        self.issued_token = "test-token"

        self.transport = httpx.MockTransport(self.handle)

    # Helpers

    def add_folder(self, path: str) -> None:
        self.folders.add(path)

    def add_remote_file(self, path: str, content: bytes = b"") -> None:
        self.folders.add(path.rsplit("/", 1)[0])
        self.files[path] = content

    def names_in(self, folder: str) -> List[str]:
        return sorted(p.rsplit("/", 1)[1] for p in self.files if p.rsplit("/", 1)[0] == folder)

    def calls_to(self, endpoint: str) -> List[Optional[dict]]:
        return [arg for path, arg in self.requests if path.endswith(endpoint)]

    # Request handling

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/oauth2/token"):
            return self._token(request)

        auth = request.headers.get("Authorization", "")
        if auth.removeprefix("Bearer ") not in self.valid_tokens:
            return httpx.Response(401, json={"error_summary": "expired_access_token/.."})

        api_arg = request.headers.get("Dropbox-API-Arg")
        arg = json.loads(api_arg) if api_arg else (json.loads(request.content) if request.content else None)
        self.requests.append((path, arg))

        if path.endswith("/files/list_folder"):
            return self._list_folder(request, arg)
        if path.endswith("/files/list_folder/continue"):
            return self._list_continue(arg)
        if path.endswith("/upload_session/start"):
            return self._start()
        if path.endswith("/upload_session/append_v2"):
            return await self._append(request, arg)
        if path.endswith("/upload_session/finish"):
            return self._finish(arg)
        return httpx.Response(404, text="unknown endpoint")

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_exchanges += 1
        expected = base64.b64encode(b"app-key:app-secret").decode()
        form = parse_qs(request.content.decode())
        if request.headers.get("Authorization") != f"Basic {expected}":
            return httpx.Response(400, json={"error": "invalid_client"})
        if form.get("grant_type") != ["refresh_token"] or form.get("refresh_token") != ["refresh-me"]:
            return httpx.Response(400, json={"error": "invalid_grant"})
        self.valid_tokens.add(self.issued_token)
        return _json_response(200, {
            "access_token": self.issued_token,
            "token_type": "bearer",
            "expires_in": 14400
        })

    def _page(self, folder: str, start: int, limit: int) -> httpx.Response:
        names = self.names_in(folder)
        size = min(limit, self.page_size or limit)
        chunk = names[start:start + size]
        has_more = start + size < len(names)
        return _json_response(200, {
            "entries": [
                {".tag": "file", "name": name, "path_display": f"{folder}/{name}"}
                for name in chunk
            ],
            "cursor": json.dumps([folder, start + size, limit]),
            "has_more": has_more
        })

    def _list_folder(self, request: httpx.Request, arg: dict) -> httpx.Response:
        if self.list_error is not None:
            raise self.list_error
        folder = arg["path"]
        if folder not in self.folders:
            return _error(409, "path", path={".tag": "not_found"})
        return self._page(folder, 0, arg["limit"])

    def _list_continue(self, arg: dict) -> httpx.Response:
        folder, start, limit = json.loads(arg["cursor"])
        return self._page(folder, start, limit)

    def _start(self) -> httpx.Response:
        self._session_counter += 1
        session_id = f"session-{self._session_counter}"
        self.sessions[session_id] = bytearray()
        self.active_sessions += 1
        self.peak_active_sessions = max(self.peak_active_sessions, self.active_sessions)
        return _json_response(200, {"session_id": session_id})

    async def _append(self, request: httpx.Request, arg: dict) -> httpx.Response:
        if self.append_failures:
            failure = self.append_failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return failure

        session_id = arg["cursor"]["session_id"]
        offset = arg["cursor"]["offset"]
        self.in_flight_appends[session_id] += 1
        self.max_in_flight_appends = max(self.max_in_flight_appends,
                                         self.in_flight_appends[session_id])
        try:
            await asyncio.sleep(self.append_delay)
            buffer = self.sessions.get(session_id)
            if buffer is None:
                return _error(409, "not_found")
            if offset != len(buffer):
                return _error(409, "incorrect_offset", correct_offset=len(buffer))
            buffer.extend(request.content)
            self.append_offsets[session_id].append(offset)
        finally:
            self.in_flight_appends[session_id] -= 1

        if self.lost_append_responses:
            self.lost_append_responses -= 1
            raise httpx.ReadTimeout("response lost", request=request)
        return httpx.Response(200, text="null")

    def _finish(self, arg: dict) -> httpx.Response:
        session_id = arg["cursor"]["session_id"]
        offset = arg["cursor"]["offset"]
        commit = arg["commit"]
        buffer = self.sessions.get(session_id)
        self.active_sessions -= 1
        if buffer is None:
            return _error(409, "lookup_failed")
        if offset != len(buffer):
            return _error(409, "lookup_failed", lookup_failed={
                ".tag": "incorrect_offset", "correct_offset": len(buffer)
            })

        target = commit["path"]
        name = target.rsplit("/", 1)[1]
        if name in self.finish_failures:
            status, body = self.finish_failures[name]
            return httpx.Response(status, text=body)

        if target in self.files and commit["autorename"]:
            stem, dot, ext = name.rpartition(".")
            counter = 1
            while target in self.files:
                renamed = f"{stem} ({counter}).{ext}" if dot else f"{name} ({counter})"
                target = f"{target.rsplit('/', 1)[0]}/{renamed}"
                counter += 1

        self.add_remote_file(target, bytes(buffer))
        del self.sessions[session_id]
        return _json_response(200, {
            ".tag": "file",
            "name": target.rsplit("/", 1)[1],
            "path_display": target,
            "size": len(buffer)
        })


@pytest.fixture
def fake_dropbox():
    """Fake remote API with an empty /Backups folder."""
    fake = FakeDropbox()
    fake.add_folder("/Backups")
    return fake


@pytest.fixture
def dropbox_client(fake_dropbox):
    """Client wired to the fake remote API."""
    return DropboxClient(
        StaticTokenProvider("test-token"),
        api_url=API_URL,
        content_url=CONTENT_URL,
        transport=fake_dropbox.transport
    )


@pytest.fixture
def local_dir(tmp_path):
    """Create a temporary local backup folder."""
    folder = tmp_path / "local"
    folder.mkdir()
    return folder


@pytest.fixture
def backup_config(local_dir, tmp_path):
    """Configuration with tiny chunks and no retry backoff."""
    return BackupConfig(
        local_dir=local_dir,
        remote_dir="/Backups",
        token="test-token",
        chunk_size=4,
        retry_min_wait=0,
        retry_max_wait=0,
        log_dir=tmp_path / "logs",
        api_url=API_URL,
        content_url=CONTENT_URL,
        token_url=TOKEN_URL
    )


class RecordingObserver(ProgressObserver):
    """Progress observer that records every hook call."""

    def __init__(self):
        self.events = []

    def on_pre_chunk(self, offset):
        self.events.append(("pre", offset))

    def on_post_chunk(self, offset):
        self.events.append(("post", offset))

    def on_complete(self):
        self.events.append(("complete", None))


@pytest.fixture
def recording_observer():
    return RecordingObserver()
