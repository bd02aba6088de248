"""Provider registry: adapter factory and live adapter instances."""

import logging
import threading
from typing import Any, Callable, Optional, Union

from .exceptions import (
    AuthenticationError,
    ConfigError,
    ProviderError,
    UnsupportedProviderType,
)
from .models import ConnectionStatus, ProviderConnection
from .providers.base import ProviderAdapter
from .providers.webdav import WebDAVProvider
from .utils import utcnow

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., ProviderAdapter]


class ProviderRegistry:
    """Maps provider types to factories and connection ids to adapters.

    The registry is the only structure shared between running jobs, so
    every access to its maps goes through one lock. It never limits how
    many requests a job sends through one adapter; callers serialize on
    their own when an adapter declares
    ``supports_concurrent_requests=False``.

    Examples:
        >>> registry = ProviderRegistry()
        >>> registry.is_supported("WebDAV")
        True
        >>> registry.register_provider("s3", S3Provider)
    """

    def __init__(
        self,
        register_defaults: bool = True,
        adapter_options: Optional[dict[str, Any]] = None,
    ):
        """Initialize the registry.

        Args:
            register_defaults: Register the built-in adapter types
            adapter_options: Extra keyword arguments passed to every factory
                (e.g. session_ttl, timeout)
        """
        self._lock = threading.RLock()
        self._factories: dict[str, ProviderFactory] = {}
        self._connections: dict[str, ProviderConnection] = {}
        self._adapters: dict[str, ProviderAdapter] = {}
        self.adapter_options = dict(adapter_options or {})
        if register_defaults:
            self.register_provider(WebDAVProvider.provider_type, WebDAVProvider)

    # =========================
    # Provider types
    # =========================

    def register_provider(self, provider_type: str, factory: ProviderFactory) -> None:
        """Register (or replace) the factory for a provider type."""
        with self._lock:
            self._factories[provider_type.lower()] = factory
        logger.debug(f"Registered provider type: {provider_type.lower()}")

    def unregister_provider(self, provider_type: str) -> bool:
        with self._lock:
            return self._factories.pop(provider_type.lower(), None) is not None

    def supported_providers(self) -> list[str]:
        with self._lock:
            return sorted(self._factories)

    def is_supported(self, provider_type: str) -> bool:
        with self._lock:
            return provider_type.lower() in self._factories

    def create_provider(
        self,
        connection: Union[ProviderConnection, dict[str, Any]],
        provider_type: Optional[str] = None,
    ) -> ProviderAdapter:
        """Build a new adapter without caching it.

        Args:
            connection: A ProviderConnection, or a raw config dict
            provider_type: Required when passing a raw config dict that has
                no ``provider_type`` key

        Raises:
            UnsupportedProviderType: If no factory is registered for the type
            ConfigError: If the adapter rejects the config
        """
        if isinstance(connection, ProviderConnection):
            provider_type = connection.provider_type
            adapter_config = connection.config
        else:
            adapter_config = dict(connection)
            provider_type = provider_type or adapter_config.pop("provider_type", "")

        key = (provider_type or "").lower()
        with self._lock:
            factory = self._factories.get(key)
            supported = list(self._factories)
        if factory is None:
            raise UnsupportedProviderType(provider_type or "", supported)
        return factory(adapter_config, **self.adapter_options)

    # =========================
    # Connections
    # =========================

    def add_connection(self, connection: ProviderConnection) -> None:
        """Make a connection known without contacting the provider.

        The adapter is created lazily by :meth:`get_provider` and
        authenticates on its first call.

        Raises:
            UnsupportedProviderType: If the connection's type is unknown
        """
        if not self.is_supported(connection.provider_type):
            raise UnsupportedProviderType(
                connection.provider_type, self.supported_providers()
            )
        with self._lock:
            previous = self._adapters.pop(connection.id, None)
            self._connections[connection.id] = connection
        if previous is not None:
            previous.close()

    def get_connection(self, connection_id: str) -> Optional[ProviderConnection]:
        with self._lock:
            return self._connections.get(connection_id)

    def connections(self) -> list[ProviderConnection]:
        with self._lock:
            return list(self._connections.values())

    def connect(self, connection: ProviderConnection) -> ProviderAdapter:
        """Register a connection, authenticate and cache its adapter.

        The connection's status, session fields and last-verified time are
        updated from the outcome.

        Raises:
            UnsupportedProviderType: If the provider type is unknown
            AuthenticationError: If the credentials are rejected
            ConfigError: If the connection is removed concurrently
        """
        self.add_connection(connection)
        adapter = self.get_provider(connection.id)
        if adapter is None:
            raise ConfigError(
                f"Connection {connection.id} was removed while connecting"
            )

        try:
            authenticated = adapter.authenticate()
        except ProviderError as e:
            self._mark(connection, ConnectionStatus.ERROR, str(e))
            raise

        if not authenticated:
            message = f"Authentication failed for connection {connection.id}"
            self._mark(connection, ConnectionStatus.ERROR, message)
            raise AuthenticationError(message, connection.provider_type)

        connection.session_token = adapter.session_token
        connection.session_expires_at = adapter.session_expires_at
        self._mark(connection, ConnectionStatus.CONNECTED)
        logger.info(f"Connected {connection.provider_type} connection {connection.id}")
        return adapter

    def get_provider(self, connection_id: str) -> Optional[ProviderAdapter]:
        """Return the live adapter for a connection, creating it on demand.

        At most one adapter instance exists per connection id.

        Returns:
            The adapter, or None if the connection is unknown
        """
        with self._lock:
            adapter = self._adapters.get(connection_id)
            if adapter is not None:
                return adapter
            connection = self._connections.get(connection_id)
            if connection is None:
                return None
            adapter = self.create_provider(connection)
            self._adapters[connection_id] = adapter
            return adapter

    def disconnect(self, connection_id: str) -> bool:
        """Close and forget a connection's adapter.

        Returns:
            True if the connection was known
        """
        with self._lock:
            adapter = self._adapters.pop(connection_id, None)
            connection = self._connections.pop(connection_id, None)
        if adapter is not None:
            adapter.close()
        if connection is not None:
            connection.session_token = None
            connection.session_expires_at = None
            connection.status = ConnectionStatus.DISCONNECTED
            logger.info(f"Disconnected connection {connection_id}")
        return connection is not None

    def test_connection(self, connection_id: str) -> bool:
        """Check a connection and record the result on it.

        Returns:
            True if reachable, False if unreachable or unknown
        """
        adapter = self.get_provider(connection_id)
        connection = self.get_connection(connection_id)
        if adapter is None or connection is None:
            return False

        if adapter.test_connection():
            self._mark(connection, ConnectionStatus.CONNECTED)
            return True
        self._mark(connection, ConnectionStatus.ERROR, "Connection test failed")
        return False

    def close(self) -> None:
        """Close all live adapters."""
        with self._lock:
            adapters = list(self._adapters.values())
            self._adapters.clear()
        for adapter in adapters:
            adapter.close()

    def _mark(
        self,
        connection: ProviderConnection,
        status: ConnectionStatus,
        error_message: Optional[str] = None,
    ) -> None:
        with self._lock:
            connection.status = status
            connection.error_message = error_message
            if status == ConnectionStatus.CONNECTED:
                connection.last_verified_at = utcnow()
