"""API client for Google Drive (v3 REST API)."""

from __future__ import annotations

import json
import random
import threading
import time
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import httpx

from .exceptions import (
    DriveAPIError,
    DriveAuthenticationError,
    DriveInvalidResponseError,
    DriveNetworkError,
    DriveNotFoundError,
    DrivePermissionError,
    DriveRateLimitError,
    DriveServerError,
    DriveTransientError,
    GriveConfigError,
)
from .models import FILE_FIELDS, FOLDER_MIME_TYPE, DriveEntry
from .utils import DEFAULT_CHUNK_SIZE, DEFAULT_MAX_RETRIES, format_timestamp

DEFAULT_API_URL = "https://www.googleapis.com/drive/v3"
DEFAULT_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"

# 403 reasons that Drive uses for throttling rather than real permission errors
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


class DriveClient:
    """Client for the Google Drive API.

    Implements the remote-drive operations used by the sync engine:
    tree listing, combined metadata+content upload, streaming download,
    folder creation, trash and move.
    """

    def __init__(
        self,
        access_token: str | None,
        api_url: str = DEFAULT_API_URL,
        upload_url: str = DEFAULT_UPLOAD_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        http_log: Path | None = None,
    ):
        """Initialize Drive API client.

        Args:
            access_token: OAuth2 access token
            api_url: Drive API base URL
            upload_url: Drive upload endpoint base URL
            max_retries: Maximum number of retry attempts (default: 3)
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport (used by tests)
            http_log: Optional file that receives one line per HTTP response
        """
        if not access_token:
            raise GriveConfigError(
                "Access token not configured. Please set GRIVE_ACCESS_TOKEN."
            )

        self.access_token = access_token
        self.api_url = api_url.rstrip("/")
        self.upload_url = upload_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.http_log = http_log
        self._transport = transport
        self._client: httpx.Client | None = None
        self._log_lock = threading.Lock()

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            event_hooks = {"response": [self._log_response]} if self.http_log else None
            self._client = httpx.Client(
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
                event_hooks=event_hooks,
            )
        return self._client

    def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    def __enter__(self) -> DriveClient:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _log_response(self, response: httpx.Response) -> None:
        request = response.request
        line = f"{time.strftime('%Y-%m-%d %H:%M:%S')} {request.method} {request.url} {response.status_code}\n"
        with self._log_lock:
            with open(self.http_log, "a", encoding="utf-8") as f:  # type: ignore[arg-type]
                f.write(line)

    # =========================
    # Error handling and retries
    # =========================

    def _should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if a request should be retried.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number (0-based)

        Returns:
            True if the request should be retried, False otherwise
        """
        if attempt >= self.max_retries:
            return False
        # Server overload, unavailability, throttling and network hiccups
        return isinstance(exception, DriveTransientError)

    def calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        base_delay = self.retry_delay * (2**attempt)
        # Add jitter: +/- 25% of base delay
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    def _error_for_response(self, response: httpx.Response) -> DriveAPIError:
        """Map an HTTP error response to a pygrive exception.

        Args:
            response: Response with a 4xx/5xx status

        Returns:
            Exception instance to raise
        """
        status_code = response.status_code
        message = ""
        reasons: set[str] = set()

        # Drive errors look like {"error": {"code", "message", "errors": [{"reason"}]}}
        try:
            if response.content:
                error_data = response.json().get("error", {})
                if isinstance(error_data, dict):
                    message = error_data.get("message", "")
                    reasons = {
                        item.get("reason", "")
                        for item in error_data.get("errors", [])
                        if isinstance(item, dict)
                    }
        except (ValueError, AttributeError):
            pass

        detail = f": {message}" if message else ""

        if status_code == 401:
            return DriveAuthenticationError(
                "Invalid or expired access token - please re-authorize pygrive",
                status_code,
            )
        elif status_code == 403 and reasons & _RATE_LIMIT_REASONS:
            return DriveRateLimitError(
                f"Rate limit exceeded - please try again later{detail}", status_code
            )
        elif status_code == 403:
            return DrivePermissionError(
                f"Access forbidden - check your permissions{detail}", status_code
            )
        elif status_code == 404:
            return DriveNotFoundError(f"Resource not found{detail}", status_code)
        elif status_code == 429:
            return DriveRateLimitError(
                f"Rate limit exceeded - please try again later{detail}", status_code
            )
        elif 500 <= status_code < 600:
            return DriveServerError(
                f"Server unavailable (status {status_code}){detail}", status_code
            )
        return DriveAPIError(
            f"API request failed with status {status_code}{detail}", status_code
        )

    def _retry_after(self, response: httpx.Response, attempt: int) -> float:
        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            return float(retry_after)
        return self.calculate_retry_delay(attempt)

    def _request(
        self, method: str, url: str, retry: bool = True, **kwargs: Any
    ) -> Any:
        """Make an API request with retry logic.

        Args:
            method: HTTP method
            url: Absolute URL
            retry: Whether transient failures are retried here; disabled for
                requests whose body is a one-shot stream
            **kwargs: Additional arguments passed to httpx

        Returns:
            Response JSON data

        Raises:
            DriveAPIError: If the request fails after all retries
        """
        client = self._get_client()
        attempts = self.max_retries + 1 if retry else 1

        for attempt in range(attempts):
            try:
                response = client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                error: DriveAPIError = DriveNetworkError(f"Network error: {e}")
                if retry and self._should_retry(error, attempt):
                    time.sleep(self.calculate_retry_delay(attempt))
                    continue
                raise error from e

            if response.status_code >= 400:
                error = self._error_for_response(response)
                if retry and self._should_retry(error, attempt):
                    time.sleep(self._retry_after(response, attempt))
                    continue
                raise error

            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise DriveInvalidResponseError(
                    "Invalid JSON response from server"
                ) from e

        raise DriveAPIError("Request failed after all retry attempts")

    # =========================
    # Listing Operations
    # =========================

    def get_entry(self, remote_id: str) -> DriveEntry:
        """Get a single file or folder by ID."""
        data = self._request(
            "GET", f"{self.api_url}/files/{remote_id}", params={"fields": FILE_FIELDS}
        )
        return DriveEntry.from_api_response(data)

    def list_children(self, folder_id: str, page_size: int = 1000) -> list[DriveEntry]:
        """List all direct children of a folder, trashed ones included.

        Args:
            folder_id: Folder ID ("root" for the drive root)
            page_size: Entries per page

        Returns:
            List of DriveEntry objects
        """
        entries: list[DriveEntry] = []
        params: dict[str, Any] = {
            "q": f"'{folder_id}' in parents",
            "fields": f"nextPageToken,files({FILE_FIELDS})",
            "pageSize": page_size,
            "spaces": "drive",
        }
        while True:
            result = self._request("GET", f"{self.api_url}/files", params=params)
            for item in result.get("files", []):
                entries.append(DriveEntry.from_api_response(item, parent_id=folder_id))
            token = result.get("nextPageToken")
            if not token:
                break
            params["pageToken"] = token
        return entries

    def _find_child_folder(self, folder_id: str, name: str) -> DriveEntry | None:
        matches = [
            e
            for e in self.list_children(folder_id)
            if e.name == name and e.is_folder and not e.trashed
        ]
        if not matches:
            return None
        return min(matches, key=lambda e: e.id)

    def list_tree(self, scope: str = "", root_id: str = "root") -> Iterator[DriveEntry]:
        """Recursively list the remote tree below ``scope``.

        The folders leading to the scope are yielded first, followed by every
        entry under it. Children of trashed folders are not visited.

        Args:
            scope: Slash-separated subdirectory ("" for the whole tree)
            root_id: Remote folder mapped to the sync root

        Yields:
            DriveEntry objects with ``path`` set relative to the sync root
        """
        folder_id = root_id
        path = ""
        for name in [p for p in scope.split("/") if p]:
            folder = self._find_child_folder(folder_id, name)
            if folder is None:
                # Scope does not exist remotely yet
                return
            path = f"{path}/{name}" if path else name
            yield folder.with_path(path)
            folder_id = folder.id

        yield from self._walk(folder_id, path, visited={folder_id})

    def _walk(
        self, folder_id: str, path_prefix: str, visited: set[str]
    ) -> Iterator[DriveEntry]:
        for entry in self.list_children(folder_id):
            entry_path = f"{path_prefix}/{entry.name}" if path_prefix else entry.name
            yield entry.with_path(entry_path)
            # Prevent infinite recursion on multi-parented folders
            if entry.is_folder and not entry.trashed and entry.id not in visited:
                visited.add(entry.id)
                yield from self._walk(entry.id, entry_path, visited)

    # =========================
    # Upload Operations
    # =========================

    @staticmethod
    def _multipart_body(
        boundary: str,
        metadata: dict[str, Any],
        content: Iterable[bytes],
        mime_type: str,
    ) -> Iterator[bytes]:
        yield (
            f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n"
        ).encode()
        yield json.dumps(metadata).encode("utf-8")
        yield f"\r\n--{boundary}\r\nContent-Type: {mime_type}\r\n\r\n".encode()
        for chunk in content:
            if chunk:
                yield chunk
        yield f"\r\n--{boundary}--\r\n".encode()

    def upload(
        self,
        name: str,
        content: Iterable[bytes],
        size: int | None = None,
        remote_id: str | None = None,
        parent_id: str | None = None,
        modified: float | None = None,
        mime_type: str = "application/octet-stream",
        new_revision: bool = False,
    ) -> DriveEntry:
        """Upload file content and metadata in a single request.

        Creates a new file when ``remote_id`` is None, otherwise updates the
        existing file's content in place.

        Args:
            name: File name
            content: Byte chunks of the file content (consumed once)
            size: Content length in bytes, if known
            remote_id: Existing file ID to update
            parent_id: Parent folder ID for new files
            modified: Modification time to record on the remote file
            mime_type: Content MIME type
            new_revision: Ask Drive to keep the new revision permanently

        Returns:
            The created or updated DriveEntry
        """
        metadata: dict[str, Any] = {"name": name}
        if modified is not None:
            metadata["modifiedTime"] = format_timestamp(modified)
        if remote_id is None and parent_id is not None:
            metadata["parents"] = [parent_id]

        boundary = f"pygrive-{uuid.uuid4().hex}"
        headers = {"Content-Type": f"multipart/related; boundary={boundary}"}
        if size is not None:
            overhead = sum(
                len(part)
                for part in self._multipart_body(boundary, metadata, (), mime_type)
            )
            headers["Content-Length"] = str(overhead + size)

        params: dict[str, Any] = {"uploadType": "multipart", "fields": FILE_FIELDS}
        if new_revision:
            params["keepRevisionForever"] = "true"

        body = self._multipart_body(boundary, metadata, content, mime_type)
        if remote_id is None:
            method, url = "POST", f"{self.upload_url}/files"
        else:
            method, url = "PATCH", f"{self.upload_url}/files/{remote_id}"

        # The body is a one-shot stream, so the caller owns retries
        data = self._request(
            method, url, retry=False, params=params, headers=headers, content=body
        )
        return DriveEntry.from_api_response(data)

    # =========================
    # Download Operations
    # =========================

    @contextmanager
    def download(
        self, remote_id: str, chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> Iterator[Iterator[bytes]]:
        """Stream the content of a remote file.

        Args:
            remote_id: File ID
            chunk_size: Size of chunks yielded by the iterator

        Yields:
            Iterator over content chunks

        Raises:
            DriveAPIError: If the download request fails
        """
        client = self._get_client()
        url = f"{self.api_url}/files/{remote_id}"
        try:
            with client.stream("GET", url, params={"alt": "media"}) as response:
                if response.status_code >= 400:
                    response.read()
                    raise self._error_for_response(response)
                yield response.iter_bytes(chunk_size=chunk_size)
        except httpx.RequestError as e:
            raise DriveNetworkError(f"Network error during download: {e}") from e

    # =========================
    # Folder and Entry Operations
    # =========================

    def create_folder(self, parent_id: str, name: str) -> DriveEntry:
        """Create a new folder.

        Args:
            parent_id: ID of the parent folder
            name: Name of the new folder

        Returns:
            DriveEntry for the created folder
        """
        data = self._request(
            "POST",
            f"{self.api_url}/files",
            params={"fields": FILE_FIELDS},
            json={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
        )
        return DriveEntry.from_api_response(data, parent_id=parent_id)

    def trash(self, remote_id: str) -> DriveEntry:
        """Move a file or folder to the Drive trash.

        Args:
            remote_id: ID of the entry to trash

        Returns:
            Updated DriveEntry
        """
        data = self._request(
            "PATCH",
            f"{self.api_url}/files/{remote_id}",
            params={"fields": FILE_FIELDS},
            json={"trashed": True},
        )
        return DriveEntry.from_api_response(data)

    def move(self, remote_id: str, new_parent_id: str, new_name: str) -> DriveEntry:
        """Move and/or rename an entry, keeping its ID and revision history.

        Args:
            remote_id: ID of the entry to move
            new_parent_id: ID of the destination folder
            new_name: New name of the entry

        Returns:
            Updated DriveEntry
        """
        data = self._request(
            "GET", f"{self.api_url}/files/{remote_id}", params={"fields": "parents"}
        )
        old_parents = [p for p in data.get("parents", []) if p != new_parent_id]

        params: dict[str, Any] = {"fields": FILE_FIELDS}
        if new_parent_id not in data.get("parents", []):
            params["addParents"] = new_parent_id
        if old_parents:
            params["removeParents"] = ",".join(old_parents)

        data = self._request(
            "PATCH",
            f"{self.api_url}/files/{remote_id}",
            params=params,
            json={"name": new_name},
        )
        return DriveEntry.from_api_response(data, parent_id=new_parent_id)
