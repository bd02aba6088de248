"""WebDAV provider adapter."""

from __future__ import annotations

import logging
import mimetypes
import time
import xml.etree.ElementTree as ET
from collections.abc import Generator, Iterable, Iterator
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote, unquote, urlparse

import httpx

from ..exceptions import (
    AuthenticationError,
    NotFoundError,
    PermissionDeniedError,
    ProviderError,
    RateLimitError,
    TransientIOError,
)
from ..models import EntryKind, FileEntry, ProviderCapabilities, Quota
from ..utils import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_REQUEST_TIMEOUT,
    base_name,
    join_path,
    normalize_path,
    parse_http_date,
)
from .base import ProviderAdapter

logger = logging.getLogger(__name__)

DAV_NS = "{DAV:}"

PROPFIND_BODY = b"""<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:resourcetype/>
    <d:getcontentlength/>
    <d:getlastmodified/>
    <d:getcontenttype/>
    <d:getetag/>
  </d:prop>
</d:propfind>"""

QUOTA_BODY = b"""<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:quota-available-bytes/>
    <d:quota-used-bytes/>
  </d:prop>
</d:propfind>"""


def _parse_multistatus(content: bytes) -> list[dict[str, Any]]:
    """Parse a PROPFIND multistatus body into plain dictionaries.

    Returns:
        One dict per ``<d:response>`` with keys href, is_collection, size,
        modified, content_type, etag and any quota values present.
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise ProviderError(f"Invalid PROPFIND response: {e}", "webdav") from e

    results = []
    for response in root.iter(f"{DAV_NS}response"):
        href = response.findtext(f"{DAV_NS}href") or ""
        props: dict[str, Any] = {"href": href}
        for propstat in response.iter(f"{DAV_NS}propstat"):
            status = propstat.findtext(f"{DAV_NS}status") or ""
            if status and " 200 " not in f"{status} ":
                continue
            prop = propstat.find(f"{DAV_NS}prop")
            if prop is None:
                continue
            resourcetype = prop.find(f"{DAV_NS}resourcetype")
            if resourcetype is not None:
                props["is_collection"] = (
                    resourcetype.find(f"{DAV_NS}collection") is not None
                )
            for key, tag in (
                ("size", "getcontentlength"),
                ("modified", "getlastmodified"),
                ("content_type", "getcontenttype"),
                ("etag", "getetag"),
                ("quota_available", "quota-available-bytes"),
                ("quota_used", "quota-used-bytes"),
            ):
                value = prop.findtext(f"{DAV_NS}{tag}")
                if value is not None:
                    props[key] = value.strip()
        results.append(props)
    return results


class _DownloadStream:
    """Chunks of a streamed GET body.

    Closing releases the connection even when iteration never started,
    which closing an unstarted generator does not do.
    """

    def __init__(
        self, response: httpx.Response, chunks: Generator[bytes, None, None]
    ):
        self._response = response
        self._chunks = chunks

    def __iter__(self) -> Iterator[bytes]:
        return self

    def __next__(self) -> bytes:
        return next(self._chunks)

    def close(self) -> None:
        self._chunks.close()
        self._response.close()


class WebDAVProvider(ProviderAdapter):
    """Adapter for WebDAV servers using HTTP basic authentication.

    Config keys:
        url: Server endpoint including any base path
            (e.g. ``https://dav.example.com/remote.php/webdav``)
        username, password: Basic auth credentials
        verify_ssl: Verify TLS certificates (default True)
    """

    provider_type = "webdav"
    display_name = "WebDAV"
    capabilities = ProviderCapabilities(
        supports_concurrent_requests=True,
        supports_range_requests=True,
        supports_checksums=False,
        supports_timestamps=False,
    )
    required_config_keys = ("url", "username", "password")

    def __init__(
        self,
        config: dict[str, Any],
        transport: Optional[httpx.BaseTransport] = None,
        **kwargs: Any,
    ):
        """Initialize the WebDAV adapter.

        Args:
            config: Connection config (url, username, password, verify_ssl)
            transport: Optional httpx transport (used by tests)
            **kwargs: Passed to ProviderAdapter (session_ttl, timeout)
        """
        super().__init__(config, **kwargs)
        self.base_url = str(self.config["url"]).rstrip("/")
        self._base_path = urlparse(self.base_url).path.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        if self.timeout is None:
            self.timeout = float(self.config.get("timeout", DEFAULT_REQUEST_TIMEOUT))

    def _get_client(self) -> httpx.Client:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                auth=(self.config["username"], self.config["password"]),
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                verify=bool(self.config.get("verify_ssl", True)),
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    # =========================
    # HTTP helpers
    # =========================

    def _url(self, path: str) -> str:
        return self.base_url + quote(normalize_path(path))

    def _href_to_path(self, href: str) -> str:
        """Convert a server href to a path relative to the endpoint."""
        path = unquote(urlparse(href).path)
        if self._base_path and path.startswith(self._base_path):
            path = path[len(self._base_path) :]
        return normalize_path(path)

    def _raise_for_status(self, response: httpx.Response, path: str) -> None:
        """Map HTTP error statuses to the provider error taxonomy."""
        status_code = response.status_code
        if status_code < 400:
            return

        if status_code == 401:
            raise AuthenticationError(
                "Invalid WebDAV credentials", self.provider_type, status_code
            )
        elif status_code == 403:
            raise PermissionDeniedError(
                f"Access forbidden: {path}", self.provider_type, status_code
            )
        elif status_code == 404:
            raise NotFoundError(
                f"Not found: {path}", self.provider_type, path, status_code
            )
        elif status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "Rate limit exceeded - please try again later",
                self.provider_type,
                float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        elif status_code >= 500:
            raise TransientIOError(
                f"Server error {status_code} for {path}",
                self.provider_type,
                status_code,
            )
        raise ProviderError(
            f"WebDAV request failed with status {status_code} for {path}",
            self.provider_type,
            status_code,
        )

    def _request(
        self, method: str, path: str, stream: bool = False, **kwargs: Any
    ) -> httpx.Response:
        """Send a request, translating transport failures.

        Args:
            method: HTTP or WebDAV method
            path: Normalized provider path
            stream: If True, the body is not read (caller must close)
            **kwargs: Passed to httpx.Client.build_request

        Raises:
            TransientIOError: On network errors or timeouts
        """
        client = self._get_client()
        request = client.build_request(method, self._url(path), **kwargs)
        start = time.time()
        try:
            response = client.send(request, stream=stream)
        except httpx.TimeoutException as e:
            raise TransientIOError(
                f"Timeout during {method} {path}", self.provider_type
            ) from e
        except httpx.RequestError as e:
            raise TransientIOError(
                f"Network error during {method} {path}: {e}", self.provider_type
            ) from e
        logger.debug(
            f"{method} {path} -> {response.status_code} "
            f"({time.time() - start:.2f}s)"
        )
        return response

    def _propfind(self, path: str, depth: str, body: bytes = PROPFIND_BODY) -> list:
        response = self._request(
            "PROPFIND",
            path,
            headers={"Depth": depth, "Content-Type": "application/xml"},
            content=body,
        )
        self._raise_for_status(response, path)
        return _parse_multistatus(response.content)

    def _to_entry(self, props: dict[str, Any], path: str) -> FileEntry:
        is_folder = bool(props.get("is_collection"))
        size = props.get("size")
        etag = props.get("etag")
        content_type = props.get("content_type")
        if not is_folder and not content_type:
            content_type, _ = mimetypes.guess_type(base_name(path))
        return FileEntry(
            id=etag.strip('"') if etag else path,
            name=base_name(path),
            kind=EntryKind.FOLDER if is_folder else EntryKind.FILE,
            path=path,
            size=int(size) if size and size.isdigit() else 0,
            modified_at=parse_http_date(props.get("modified")),
            mime_type=None if is_folder else content_type,
        )

    # =========================
    # Backend hooks
    # =========================

    def _login(self) -> tuple[Optional[str], Optional[datetime]]:
        # Basic auth has no token; a successful PROPFIND proves the credentials
        self._propfind("/", "0")
        return None, None

    def _ping(self) -> None:
        response = self._request("OPTIONS", "/")
        self._raise_for_status(response, "/")

    def _list_files(self, path: str) -> list[FileEntry]:
        entries = []
        for props in self._propfind(path, "1"):
            href_path = self._href_to_path(props["href"])
            if href_path == path:
                continue
            # Rebuild the path from the listed directory and the entry name
            name = base_name(href_path)
            if not name:
                continue
            entries.append(self._to_entry(props, join_path(path, name)))
        return entries

    def _get_file_info(self, path: str) -> FileEntry:
        responses = self._propfind(path, "0")
        if not responses:
            raise NotFoundError(f"Not found: {path}", self.provider_type, path)
        return self._to_entry(responses[0], path)

    def _upload_file(
        self,
        path: str,
        name: str,
        content: Iterable[bytes],
        size: int,
        modified_at: Optional[datetime],
    ) -> FileEntry:
        target = join_path(path, name)
        response = self._request(
            "PUT",
            target,
            content=content,
            headers={
                "Content-Length": str(size),
                "Content-Type": mimetypes.guess_type(name)[0]
                or "application/octet-stream",
            },
        )
        if response.status_code == 409:
            raise NotFoundError(
                f"Parent directory missing: {path}", self.provider_type, path, 409
            )
        self._raise_for_status(response, target)
        return self._get_file_info(target)

    def _download_file(self, path: str, offset: int) -> Iterator[bytes]:
        headers = {"Range": f"bytes={offset}-"} if offset else {}
        response = self._request("GET", path, stream=True, headers=headers)
        try:
            self._raise_for_status(response, path)
        except ProviderError:
            response.close()
            raise
        # Server ignored the range request: drop the prefix ourselves
        skip = offset if offset and response.status_code != 206 else 0
        return _DownloadStream(response, self._iter_body(response, path, skip))

    def _iter_body(
        self, response: httpx.Response, path: str, skip: int
    ) -> Iterator[bytes]:
        try:
            for chunk in response.iter_bytes(chunk_size=DEFAULT_CHUNK_SIZE):
                if skip:
                    if len(chunk) <= skip:
                        skip -= len(chunk)
                        continue
                    chunk = chunk[skip:]
                    skip = 0
                if chunk:
                    yield chunk
        except httpx.RequestError as e:
            raise TransientIOError(
                f"Network error while downloading {path}: {e}", self.provider_type
            ) from e
        finally:
            response.close()

    def _delete_file(self, path: str) -> None:
        response = self._request("DELETE", path)
        self._raise_for_status(response, path)

    def _create_directory(self, path: str) -> None:
        response = self._request("MKCOL", path)
        if response.status_code == 405:
            # Method not allowed on an existing resource
            logger.debug(f"Directory already exists: {path}")
            return
        if response.status_code == 409:
            raise NotFoundError(
                f"Parent directory missing: {path}", self.provider_type, path, 409
            )
        self._raise_for_status(response, path)

    def _get_quota(self) -> Quota:
        responses = self._propfind("/", "0", body=QUOTA_BODY)
        if not responses:
            return Quota()
        props = responses[0]
        used = props.get("quota_used", "")
        available = props.get("quota_available", "")
        used_bytes = int(used) if used.isdigit() else 0
        available_bytes = int(available) if available.isdigit() else 0
        return Quota(total=used_bytes + available_bytes, used=used_bytes)
