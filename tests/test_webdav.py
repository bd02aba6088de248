"""Tests for the WebDAV provider adapter using httpx.MockTransport."""

from datetime import datetime, timezone

import httpx
import pytest

from pycloudsync.exceptions import (
    AuthenticationError,
    NotFoundError,
    PermissionDeniedError,
    ProviderError,
    RateLimitError,
    TransientIOError,
)
from pycloudsync.models import EntryKind
from pycloudsync.providers.webdav import WebDAVProvider

BASE = "https://dav.example.com/remote.php/webdav"

CONFIG = {"url": BASE, "username": "me", "password": "secret"}


def _response_xml(href, is_folder=False, size=None, modified=None, etag=None):
    props = [
        "<d:resourcetype><d:collection/></d:resourcetype>"
        if is_folder
        else "<d:resourcetype/>"
    ]
    if size is not None:
        props.append(f"<d:getcontentlength>{size}</d:getcontentlength>")
    if modified:
        props.append(f"<d:getlastmodified>{modified}</d:getlastmodified>")
    if etag:
        props.append(f"<d:getetag>{etag}</d:getetag>")
    return (
        f"<d:response><d:href>{href}</d:href><d:propstat><d:prop>"
        + "".join(props)
        + "</d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat></d:response>"
    )


def _multistatus(*responses):
    return (
        '<?xml version="1.0"?><d:multistatus xmlns:d="DAV:">'
        + "".join(responses)
        + "</d:multistatus>"
    ).encode()


LISTING = _multistatus(
    _response_xml("/remote.php/webdav/docs/", is_folder=True),
    _response_xml(
        "/remote.php/webdav/docs/report%201.pdf",
        size=1024,
        modified="Mon, 15 Jan 2024 12:00:00 GMT",
        etag='"abc123"',
    ),
    _response_xml("/remote.php/webdav/docs/sub/", is_folder=True),
)


def _make_provider(handler):
    return WebDAVProvider(CONFIG, transport=httpx.MockTransport(handler))


class TestListing:
    """Tests for PROPFIND based listing."""

    def test_list_files_parses_multistatus(self):
        requests = []

        def handler(request):
            requests.append(request)
            if request.headers.get("Depth") == "0":
                return httpx.Response(207, content=_multistatus())
            return httpx.Response(207, content=LISTING)

        provider = _make_provider(handler)
        entries = provider.list_files("/docs")

        assert [e.path for e in entries] == ["/docs/report 1.pdf", "/docs/sub"]
        report = entries[0]
        assert report.kind == EntryKind.FILE
        assert report.size == 1024
        assert report.id == "abc123"
        assert report.mime_type == "application/pdf"
        assert report.modified_at == datetime(2024, 1, 15, 12, tzinfo=timezone.utc)
        assert entries[1].is_folder

        listing = [r for r in requests if r.headers.get("Depth") == "1"][0]
        assert listing.method == "PROPFIND"
        assert str(listing.url) == f"{BASE}/docs"

    def test_get_file_info(self):
        def handler(request):
            return httpx.Response(
                207,
                content=_multistatus(
                    _response_xml("/remote.php/webdav/a.txt", size=3)
                ),
            )

        entry = _make_provider(handler).get_file_info("/a.txt")
        assert entry.name == "a.txt"
        assert entry.size == 3

    def test_invalid_xml_is_provider_error(self):
        def handler(request):
            return httpx.Response(207, content=b"<not-xml")

        with pytest.raises(ProviderError):
            _make_provider(handler).get_file_info("/a.txt")


class TestStatusMapping:
    """Tests for HTTP status to error taxonomy mapping."""

    @pytest.mark.parametrize(
        "status,error",
        [
            (403, PermissionDeniedError),
            (404, NotFoundError),
            (500, TransientIOError),
            (503, TransientIOError),
            (418, ProviderError),
        ],
    )
    def test_status_codes(self, status, error):
        def handler(request):
            if request.headers.get("Depth") == "0" and request.url.path.endswith(
                "webdav/"
            ):
                return httpx.Response(207, content=_multistatus())
            return httpx.Response(status)

        with pytest.raises(error):
            _make_provider(handler).list_files("/docs")

    def test_rate_limit_carries_retry_after(self):
        def handler(request):
            if request.method == "PROPFIND" and request.url.path.endswith("webdav/"):
                return httpx.Response(207, content=_multistatus())
            return httpx.Response(429, headers={"Retry-After": "7"})

        with pytest.raises(RateLimitError) as exc_info:
            _make_provider(handler).list_files("/docs")
        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.retryable

    def test_bad_credentials(self):
        def handler(request):
            return httpx.Response(401)

        provider = _make_provider(handler)
        assert provider.authenticate() is False
        with pytest.raises(AuthenticationError):
            provider.list_files("/docs")

    def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientIOError):
            _make_provider(handler).list_files("/docs")

    def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransientIOError, match="Timeout"):
            _make_provider(handler).list_files("/docs")


class TestTransfers:
    """Tests for upload, download and directory operations."""

    def test_upload_puts_content_and_stats_result(self):
        uploaded = {}

        def handler(request):
            if request.method == "PUT":
                uploaded["path"] = request.url.path
                uploaded["body"] = request.read()
                return httpx.Response(201)
            if request.method == "PROPFIND" and request.url.path.endswith("b.txt"):
                return httpx.Response(
                    207,
                    content=_multistatus(
                        _response_xml("/remote.php/webdav/dst/b.txt", size=6)
                    ),
                )
            return httpx.Response(207, content=_multistatus())

        entry = _make_provider(handler).upload_file(
            "/dst", "b.txt", iter([b"abc", b"def"]), 6
        )
        assert uploaded["path"] == "/remote.php/webdav/dst/b.txt"
        assert uploaded["body"] == b"abcdef"
        assert entry.path == "/dst/b.txt"
        assert entry.size == 6

    def test_upload_into_missing_parent(self):
        def handler(request):
            if request.method == "PUT":
                return httpx.Response(409)
            return httpx.Response(207, content=_multistatus())

        with pytest.raises(NotFoundError):
            _make_provider(handler).upload_file("/missing", "b.txt", [b"x"], 1)

    def test_download_streams_body(self):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, content=b"file content")
            return httpx.Response(207, content=_multistatus())

        data = b"".join(_make_provider(handler).download_file("/a.txt"))
        assert data == b"file content"

    def test_unread_download_releases_connection_on_close(self):
        bodies = []

        class Body(httpx.SyncByteStream):
            closed = False

            def __iter__(self):
                yield b"file content"

            def close(self):
                self.closed = True

        def handler(request):
            if request.method == "GET":
                bodies.append(Body())
                return httpx.Response(200, stream=bodies[-1])
            return httpx.Response(207, content=_multistatus())

        provider = _make_provider(handler)
        provider.download_file("/a.txt").close()
        assert bodies[0].closed

        stream = provider.download_file("/b.txt")
        assert b"".join(stream) == b"file content"
        assert bodies[1].closed
        stream.close()

    def test_download_with_range(self):
        seen = {}

        def handler(request):
            if request.method == "GET":
                seen["range"] = request.headers.get("Range")
                return httpx.Response(206, content=b"content")
            return httpx.Response(207, content=_multistatus())

        data = b"".join(_make_provider(handler).download_file("/a.txt", offset=5))
        assert seen["range"] == "bytes=5-"
        assert data == b"content"

    def test_download_range_ignored_by_server(self):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, content=b"file content")
            return httpx.Response(207, content=_multistatus())

        data = b"".join(_make_provider(handler).download_file("/a.txt", offset=5))
        assert data == b"content"

    def test_download_missing_file(self):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(404)
            return httpx.Response(207, content=_multistatus())

        with pytest.raises(NotFoundError):
            _make_provider(handler).download_file("/a.txt")

    def test_mkcol_existing_is_success(self):
        def handler(request):
            if request.method == "MKCOL":
                return httpx.Response(405)
            return httpx.Response(207, content=_multistatus())

        assert _make_provider(handler).create_directory("/docs")

    def test_mkcol_missing_parent(self):
        def handler(request):
            if request.method == "MKCOL":
                return httpx.Response(409)
            return httpx.Response(207, content=_multistatus())

        with pytest.raises(NotFoundError):
            _make_provider(handler).create_directory("/a/b")

    def test_delete(self):
        methods = []

        def handler(request):
            methods.append(request.method)
            if request.method == "DELETE":
                return httpx.Response(204)
            return httpx.Response(207, content=_multistatus())

        assert _make_provider(handler).delete_file("/a.txt")
        assert "DELETE" in methods

    def test_quota(self):
        def handler(request):
            body = request.read()
            if b"quota" in body:
                return httpx.Response(
                    207,
                    content=(
                        b'<?xml version="1.0"?><d:multistatus xmlns:d="DAV:">'
                        b"<d:response><d:href>/remote.php/webdav/</d:href>"
                        b"<d:propstat><d:prop>"
                        b"<d:quota-available-bytes>600</d:quota-available-bytes>"
                        b"<d:quota-used-bytes>400</d:quota-used-bytes>"
                        b"</d:prop><d:status>HTTP/1.1 200 OK</d:status>"
                        b"</d:propstat></d:response></d:multistatus>"
                    ),
                )
            return httpx.Response(207, content=_multistatus())

        quota = _make_provider(handler).get_quota()
        assert quota.total == 1000
        assert quota.used == 400
        assert quota.available == 600

    def test_ping_uses_options(self):
        methods = []

        def handler(request):
            methods.append(request.method)
            return httpx.Response(200)

        assert _make_provider(handler).test_connection()
        assert methods == ["OPTIONS"]
