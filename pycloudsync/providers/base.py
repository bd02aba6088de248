"""Capability contract every storage backend adapter implements."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Iterator
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, TypeVar

from ..exceptions import (
    AuthenticationError,
    ConfigError,
    NotFoundError,
    ProviderError,
    TransientIOError,
)
from ..models import FileEntry, ProviderCapabilities, Quota
from ..utils import (
    DEFAULT_SESSION_TTL,
    base_name,
    normalize_path,
    parent_path,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProviderAdapter(ABC):
    """Base class for provider adapters.

    Subclasses implement the underscore-prefixed hooks against one remote
    API. The public methods add path normalization and the session
    lifecycle: a cached session is refreshed when it has expired, and a
    call rejected with :class:`AuthenticationError` is retried exactly once
    after re-authenticating. Adapters never retry anything else; transient
    failures surface as :class:`TransientIOError` for the job engine.
    """

    provider_type: str = ""
    display_name: str = ""
    capabilities: ProviderCapabilities = ProviderCapabilities()
    required_config_keys: tuple[str, ...] = ()

    def __init__(
        self,
        config: dict[str, Any],
        session_ttl: float = DEFAULT_SESSION_TTL,
        timeout: Optional[float] = None,
    ):
        """Initialize the adapter.

        Args:
            config: Opaque provider config/credentials map
            session_ttl: Lifetime of a session when the backend reports none
            timeout: Per-call timeout in seconds (adapter default if None)

        Raises:
            ConfigError: If a required config key is missing
        """
        missing = [k for k in self.required_config_keys if not config.get(k)]
        if missing:
            raise ConfigError(
                f"{self.provider_type} connection is missing required "
                f"config key(s): {', '.join(missing)}"
            )
        self.config = dict(config)
        self.session_ttl = session_ttl
        self.timeout = timeout
        self._session_token: Optional[str] = None
        self._session_expires_at: Optional[datetime] = None
        self._auth_lock = threading.Lock()

    # =========================
    # Session lifecycle
    # =========================

    @property
    def session_token(self) -> Optional[str]:
        return self._session_token

    @property
    def session_expires_at(self) -> Optional[datetime]:
        return self._session_expires_at

    def has_valid_session(self) -> bool:
        """True if a session was established and has not expired."""
        if self._session_expires_at is None:
            return False
        return utcnow() < self._session_expires_at

    def invalidate_session(self) -> None:
        with self._auth_lock:
            self._session_token = None
            self._session_expires_at = None

    def authenticate(self) -> bool:
        """Establish or refresh the session.

        Idempotent. Credential rejection is reported as ``False``; network
        failures propagate as :class:`TransientIOError`.

        Returns:
            True if the session is valid afterwards
        """
        with self._auth_lock:
            try:
                token, expires_at = self._login()
            except AuthenticationError as e:
                logger.warning(f"{self.provider_type} authentication rejected: {e}")
                self._session_token = None
                self._session_expires_at = None
                return False

            self._session_token = token
            self._session_expires_at = expires_at or (
                utcnow() + timedelta(seconds=self.session_ttl)
            )
            logger.debug(
                f"{self.provider_type} session valid until "
                f"{self._session_expires_at.isoformat()}"
            )
            return True

    def _call(
        self,
        operation: str,
        fn: Callable[..., T],
        *args: Any,
        replayable: bool = True,
    ) -> T:
        """Run a capability call inside the session lifecycle.

        Calls that consume a single-pass stream are not replayable: after the
        re-authentication they fail with TransientIOError so the caller
        restarts them with a fresh stream.
        """
        if not self.has_valid_session() and not self.authenticate():
            raise AuthenticationError(
                f"{self.provider_type}: cannot authenticate for {operation}",
                self.provider_type,
            )
        try:
            return fn(*args)
        except AuthenticationError:
            logger.debug(
                f"{self.provider_type} rejected session during {operation}, "
                "re-authenticating once"
            )
            self.invalidate_session()
            if not self.authenticate():
                raise
            if not replayable:
                raise TransientIOError(
                    f"{self.provider_type}: session refreshed during {operation}, "
                    "restart required",
                    self.provider_type,
                ) from None
            return fn(*args)

    # =========================
    # Capability contract
    # =========================

    def test_connection(self) -> bool:
        """Lightweight liveness check that does not touch the session."""
        try:
            self._ping()
            return True
        except ProviderError as e:
            logger.info(f"{self.provider_type} connection test failed: {e}")
            return False

    def list_files(self, path: str) -> list[FileEntry]:
        """List one directory (non-recursive), sorted by name.

        Raises:
            NotFoundError: If the directory does not exist
            AuthenticationError: If the session cannot be recovered
        """
        path = normalize_path(path)
        entries = self._call("list_files", self._list_files, path)
        return sorted(entries, key=lambda e: e.name)

    def get_file_info(self, path: str) -> FileEntry:
        """Stat a single entry."""
        return self._call("get_file_info", self._get_file_info, normalize_path(path))

    def exists(self, path: str) -> bool:
        """Check if an entry exists by listing its parent directory."""
        path = normalize_path(path)
        if path == "/":
            return True
        try:
            siblings = self.list_files(parent_path(path))
        except NotFoundError:
            return False
        name = base_name(path)
        return any(e.name == name for e in siblings)

    def upload_file(
        self,
        path: str,
        name: str,
        content: Iterable[bytes],
        size: int,
        modified_at: Optional[datetime] = None,
    ) -> FileEntry:
        """Create or overwrite ``name`` inside directory ``path``.

        The adapter does not decide overwrite semantics; the caller checks
        existence first when overwriting is not allowed.

        Args:
            path: Destination directory
            name: File name
            content: Single-pass iterable of byte chunks
            size: Content length in bytes
            modified_at: Timestamp to preserve, if the backend supports it
        """
        return self._call(
            "upload_file",
            self._upload_file,
            normalize_path(path),
            name,
            content,
            size,
            modified_at if self.capabilities.supports_timestamps else None,
            replayable=False,
        )

    def download_file(self, path: str, offset: int = 0) -> Iterator[bytes]:
        """Open a single-pass byte stream of a file.

        A non-zero ``offset`` resumes from that byte when the backend
        supports range requests; otherwise the stream restarts at zero and
        callers must check :attr:`ProviderCapabilities.supports_range_requests`.
        """
        if offset and not self.capabilities.supports_range_requests:
            offset = 0
        return self._call(
            "download_file", self._download_file, normalize_path(path), offset
        )

    def delete_file(self, path: str) -> bool:
        self._call("delete_file", self._delete_file, normalize_path(path))
        return True

    def create_directory(self, path: str) -> bool:
        """Create a directory. An existing directory counts as success."""
        path = normalize_path(path)
        if path == "/":
            return True
        self._call("create_directory", self._create_directory, path)
        return True

    def get_quota(self) -> Quota:
        return self._call("get_quota", self._get_quota)

    def close(self) -> None:
        """Release network resources."""

    def __enter__(self) -> ProviderAdapter:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================
    # Backend hooks
    # =========================

    @abstractmethod
    def _login(self) -> tuple[Optional[str], Optional[datetime]]:
        """Authenticate; return (token, expiry). Raise AuthenticationError."""

    @abstractmethod
    def _ping(self) -> None:
        """Cheap metadata request; raise ProviderError if unreachable."""

    @abstractmethod
    def _list_files(self, path: str) -> list[FileEntry]: ...

    @abstractmethod
    def _get_file_info(self, path: str) -> FileEntry: ...

    @abstractmethod
    def _upload_file(
        self,
        path: str,
        name: str,
        content: Iterable[bytes],
        size: int,
        modified_at: Optional[datetime],
    ) -> FileEntry: ...

    @abstractmethod
    def _download_file(self, path: str, offset: int) -> Iterator[bytes]: ...

    @abstractmethod
    def _delete_file(self, path: str) -> None: ...

    @abstractmethod
    def _create_directory(self, path: str) -> None: ...

    def _get_quota(self) -> Quota:
        return Quota()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.provider_type}>"
