"""API client for the Dropbox app folder."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx

from .config import config
from .exceptions import (
    AuthenticationError,
    CursorResetError,
    InvalidResponseError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    RemoteStoreError,
)
from .sync.remote import LongpollResult
from .utils import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY, backoff_delay

logger = logging.getLogger(__name__)

API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"
NOTIFY_URL = "https://notify.dropboxapi.com/2"

# Dropbox adds up to 90 seconds of jitter to a long-poll's timeout
LONGPOLL_TIMEOUT_MARGIN = 90.0


class DropboxClient:
    """Async client for the Dropbox files API, scoped to an app folder.

    Implements the :class:`~tasksync.sync.remote.RemoteStore` protocol.
    """

    def __init__(
        self,
        access_token: str | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Dropbox API client.

        Args:
            access_token: OAuth access token (uses config if not provided)
            max_retries: Maximum number of retry attempts (default: 3)
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport (used by tests)
        """
        self.access_token = access_token or config.access_token
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def is_signed_in(self) -> bool:
        return bool(self.access_token)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> DropboxClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # =========================
    # Request handling
    # =========================

    def _auth_headers(self) -> dict[str, str]:
        if not self.access_token:
            raise AuthenticationError("Not signed in to Dropbox")
        return {"Authorization": f"Bearer {self.access_token}"}

    def _handle_http_error(
        self, response: httpx.Response, attempt: int
    ) -> tuple[RemoteStoreError, bool]:
        """Map an error response to an exception.

        Args:
            response: The failed response
            attempt: Current attempt number (0-based)

        Returns:
            Tuple of (exception to raise, should_retry)
        """
        status_code = response.status_code

        if status_code == 401:
            return AuthenticationError(
                "Dropbox access token is invalid or expired", status_code
            ), False
        if status_code == 403:
            return PermissionDeniedError(
                "Access forbidden - check the app's permissions", status_code
            ), False
        if status_code == 409:
            return self._conflict_error(response), False
        if status_code == 429:
            retry_after = response.headers.get("Retry-After", "")
            error = RateLimitError(
                "Rate limit exceeded - please try again later",
                retry_after=float(retry_after) if retry_after.isdigit() else None,
            )
            return error, attempt < self.max_retries

        error_msg = f"Dropbox request failed with status {status_code}"
        detail = response.text.strip()
        if detail:
            error_msg = f"{error_msg}: {detail[:200]}"
        should_retry = 500 <= status_code < 600 and attempt < self.max_retries
        return RemoteStoreError(error_msg, status_code), should_retry

    def _conflict_error(self, response: httpx.Response) -> RemoteStoreError:
        """Map an endpoint-specific (HTTP 409) error."""
        summary = ""
        try:
            error_data = response.json()
            if isinstance(error_data, dict):
                summary = str(error_data.get("error_summary", ""))
        except ValueError:
            summary = response.text

        if "not_found" in summary:
            return NotFoundError(f"Path not found: {summary}", 409)
        if "reset" in summary:
            return CursorResetError(f"Cursor reset: {summary}", 409)
        return RemoteStoreError(f"Dropbox API error: {summary or 'conflict'}", 409)

    async def _request(
        self,
        url: str,
        *,
        authenticated: bool = True,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """POST to a Dropbox endpoint with retry logic.

        Args:
            url: Endpoint URL
            authenticated: Send the bearer token (long-poll must not)
            headers: Extra request headers
            **kwargs: Additional arguments passed to httpx

        Returns:
            The successful response

        Raises:
            RemoteStoreError: If the request fails after all retries
        """
        request_headers = self._auth_headers() if authenticated else {}
        if headers:
            request_headers.update(headers)
        client = self._get_client()
        last_exception: RemoteStoreError | None = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await client.post(url, headers=request_headers, **kwargs)
            except httpx.RequestError as e:
                error = NetworkError(f"Network error: {e}")
                last_exception = error
                if attempt < self.max_retries:
                    delay = backoff_delay(self.retry_delay, attempt)
                    logger.debug(f"Retrying {url} in {delay:.1f}s after {e}")
                    await asyncio.sleep(delay)
                    continue
                raise error from e

            if response.is_success:
                return response

            error, should_retry = self._handle_http_error(response, attempt)
            last_exception = error
            if not should_retry:
                raise error

            # Rate limits come with a server-provided delay
            if isinstance(error, RateLimitError) and error.retry_after is not None:
                delay = error.retry_after
            else:
                delay = backoff_delay(self.retry_delay, attempt)
            logger.debug(
                f"Retrying {url} in {delay:.1f}s after HTTP {response.status_code}"
            )
            await asyncio.sleep(delay)

        if last_exception:
            raise last_exception
        raise RemoteStoreError("Request failed after all retry attempts")

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponseError("Invalid JSON response from Dropbox") from e
        if not isinstance(data, dict):
            raise InvalidResponseError(f"Unexpected response from Dropbox: {data!r}")
        return data

    # =========================
    # File operations
    # =========================

    async def upload_file(self, path: str, content: str) -> None:
        """Upload ``content`` to ``path``, overwriting any existing file."""
        arg = {"path": path, "mode": "overwrite", "autorename": False, "mute": True}
        await self._request(
            f"{CONTENT_URL}/files/upload",
            headers={
                "Dropbox-API-Arg": json.dumps(arg),
                "Content-Type": "application/octet-stream",
            },
            content=content.encode("utf-8"),
        )
        logger.debug(f"Uploaded {path} ({len(content)} chars)")

    async def download_file(self, path: str) -> str | None:
        """Download a file as text.

        Returns:
            File content, or None if the file does not exist
        """
        try:
            response = await self._request(
                f"{CONTENT_URL}/files/download",
                headers={"Dropbox-API-Arg": json.dumps({"path": path})},
            )
        except NotFoundError:
            return None
        try:
            return response.content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidResponseError(f"{path} is not valid UTF-8") from e

    async def delete_file(self, path: str) -> None:
        """Delete a file. A missing file is not an error."""
        try:
            await self._request(f"{API_URL}/files/delete_v2", json={"path": path})
        except NotFoundError:
            logger.debug(f"{path} was already deleted")

    async def download_folder_archive(self, folder_path: str) -> bytes | None:
        """Download a folder as a zip archive.

        Returns:
            Zip bytes, or None if the folder does not exist
        """
        try:
            response = await self._request(
                f"{CONTENT_URL}/files/download_zip",
                headers={"Dropbox-API-Arg": json.dumps({"path": folder_path})},
            )
        except NotFoundError:
            return None
        return response.content

    # =========================
    # Change notification
    # =========================

    async def get_latest_cursor(self) -> str:
        """Get a cursor for the current state of the whole app folder."""
        response = await self._request(
            f"{API_URL}/files/list_folder/get_latest_cursor",
            json={"path": "", "recursive": True},
        )
        cursor = self._json(response).get("cursor")
        if not isinstance(cursor, str) or not cursor:
            raise InvalidResponseError("Dropbox returned no cursor")
        return cursor

    async def longpoll(self, cursor: str, timeout: int) -> LongpollResult:
        """Wait up to ``timeout`` seconds for changes after ``cursor``.

        Raises:
            CursorResetError: If the cursor is no longer valid
        """
        response = await self._request(
            f"{NOTIFY_URL}/files/list_folder/longpoll",
            authenticated=False,
            json={"cursor": cursor, "timeout": timeout},
            timeout=httpx.Timeout(timeout + LONGPOLL_TIMEOUT_MARGIN),
        )
        data = self._json(response)
        backoff = data.get("backoff")
        return LongpollResult(
            changes=bool(data.get("changes")),
            backoff=int(backoff) if isinstance(backoff, (int, float)) else None,
        )
