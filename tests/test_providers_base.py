"""Tests for the provider adapter contract and session lifecycle."""

from datetime import timedelta

import pytest

from pycloudsync.exceptions import (
    AuthenticationError,
    ConfigError,
    NotFoundError,
    TransientIOError,
)
from pycloudsync.providers.webdav import WebDAVProvider
from pycloudsync.utils import utcnow

from .conftest import BASE_TIME, InMemoryProvider, PlainMemoryProvider


@pytest.fixture
def adapter():
    a = InMemoryProvider({})
    a.add_file("/docs/a.txt", b"hello")
    a.add_file("/docs/b.txt", b"world!")
    a.add_folder("/docs/sub")
    return a


class TestSessionLifecycle:
    """Tests for authenticate and the single re-auth on rejection."""

    def test_authenticate_sets_session(self, adapter):
        assert adapter.authenticate()
        assert adapter.session_token == "token-1"
        assert adapter.has_valid_session()

    def test_authenticate_rejection_returns_false(self, adapter):
        adapter.reject_login = True
        assert adapter.authenticate() is False
        assert not adapter.has_valid_session()

    def test_first_call_authenticates_lazily(self, adapter):
        adapter.list_files("/docs")
        assert adapter.login_count == 1
        adapter.list_files("/docs")
        assert adapter.login_count == 1

    def test_expired_session_is_refreshed(self, adapter):
        adapter.authenticate()
        adapter._session_expires_at = utcnow() - timedelta(seconds=1)
        adapter.list_files("/docs")
        assert adapter.login_count == 2

    def test_auth_rejection_retries_once(self, adapter):
        adapter.fail("list_files", "/docs", AuthenticationError("expired"))
        entries = adapter.list_files("/docs")
        assert [e.name for e in entries] == ["a.txt", "b.txt", "sub"]
        assert adapter.login_count == 2
        assert adapter.calls_of("list_files") == ["/docs", "/docs"]

    def test_second_rejection_surfaces(self, adapter):
        adapter.fail(
            "list_files",
            "/docs",
            AuthenticationError("expired"),
            AuthenticationError("still expired"),
        )
        with pytest.raises(AuthenticationError, match="still expired"):
            adapter.list_files("/docs")

    def test_failed_reauth_surfaces_original_error(self, adapter):
        adapter.authenticate()
        adapter.fail("list_files", "/docs", AuthenticationError("expired"))
        adapter.reject_login = True
        with pytest.raises(AuthenticationError, match="expired"):
            adapter.list_files("/docs")

    def test_no_session_at_all_raises(self, adapter):
        adapter.reject_login = True
        with pytest.raises(AuthenticationError, match="cannot authenticate"):
            adapter.list_files("/docs")

    def test_upload_after_reauth_requires_restart(self, adapter):
        """A consumed stream cannot be replayed after re-authenticating."""
        adapter.fail("upload_file", "/docs/c.txt", AuthenticationError("expired"))
        with pytest.raises(TransientIOError, match="restart"):
            adapter.upload_file("/docs", "c.txt", iter([b"abc"]), 3)
        assert adapter.has_valid_session()


class TestCapabilityContract:
    """Tests for the public capability methods."""

    def test_list_files_sorted_with_normalized_paths(self, adapter):
        entries = adapter.list_files("docs/")
        assert [e.path for e in entries] == ["/docs/a.txt", "/docs/b.txt", "/docs/sub"]

    def test_list_missing_directory_raises(self, adapter):
        with pytest.raises(NotFoundError):
            adapter.list_files("/missing")

    def test_exists(self, adapter):
        assert adapter.exists("/docs/a.txt")
        assert adapter.exists("/")
        assert not adapter.exists("/docs/zzz.txt")
        assert not adapter.exists("/missing/zzz.txt")

    def test_create_directory_is_idempotent(self, adapter):
        assert adapter.create_directory("/docs/new")
        assert adapter.create_directory("/docs/new")
        assert adapter.create_directory("/")

    def test_download_resumes_from_offset(self, adapter):
        assert b"".join(adapter.download_file("/docs/b.txt", offset=2)) == b"rld!"

    def test_offset_ignored_without_range_support(self):
        plain = PlainMemoryProvider({})
        plain.add_file("/a.txt", b"abcdef")
        assert b"".join(plain.download_file("/a.txt", offset=3)) == b"abcdef"

    def test_timestamp_dropped_without_capability(self):
        plain = PlainMemoryProvider({})
        plain.upload_file("/", "a.txt", [b"x"], 1, modified_at=utcnow())
        # The backend received no timestamp and used its own default
        assert plain.files["/a.txt"][1] == BASE_TIME + timedelta(days=1)

    def test_test_connection_does_not_touch_session(self, adapter):
        assert adapter.test_connection()
        assert adapter.login_count == 0
        adapter.unreachable = True
        assert not adapter.test_connection()

    def test_default_quota_is_zero(self, adapter):
        quota = adapter.get_quota()
        assert quota.total == 0 and quota.available == 0


class TestRequiredConfig:
    """Tests for required config keys."""

    def test_missing_keys_raise_config_error(self):
        with pytest.raises(ConfigError, match="password"):
            WebDAVProvider({"url": "https://dav.example.com", "username": "me"})
