"""Exception hierarchy for pycloudsync."""

from typing import Optional


class CloudSyncError(Exception):
    """Base exception for all pycloudsync errors."""


class ConfigError(CloudSyncError):
    """Configuration is missing or malformed."""


class ValidationError(CloudSyncError):
    """A transfer or sync specification failed validation."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Validation failed")


class ProviderError(CloudSyncError):
    """Error raised by a provider adapter."""

    retryable = False

    def __init__(
        self,
        message: str,
        provider_type: str = "",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider_type = provider_type
        self.status_code = status_code


class AuthenticationError(ProviderError):
    """Credentials were rejected and a re-authentication did not help."""


class PermissionDeniedError(ProviderError):
    """The session is valid but access to the resource is forbidden."""


class NotFoundError(ProviderError):
    """The requested path does not exist on the provider."""

    def __init__(
        self,
        message: str,
        provider_type: str = "",
        path: str = "",
        status_code: Optional[int] = None,
    ):
        super().__init__(message, provider_type, status_code)
        self.path = path


class TransientIOError(ProviderError):
    """Network, timeout or server-side failure that may succeed on retry."""

    retryable = True


class RateLimitError(TransientIOError):
    """The provider asked us to slow down."""

    def __init__(
        self,
        message: str,
        provider_type: str = "",
        retry_after: Optional[float] = None,
        status_code: Optional[int] = 429,
    ):
        super().__init__(message, provider_type, status_code)
        self.retry_after = retry_after


class IntegrityMismatch(ProviderError):
    """Post-transfer verification found a different size or checksum."""

    def __init__(
        self,
        message: str,
        provider_type: str = "",
        expected_size: Optional[int] = None,
        actual_size: Optional[int] = None,
        expected_checksum: Optional[str] = None,
        actual_checksum: Optional[str] = None,
    ):
        super().__init__(message, provider_type)
        self.expected_size = expected_size
        self.actual_size = actual_size
        self.expected_checksum = expected_checksum
        self.actual_checksum = actual_checksum


class UnsupportedProviderType(CloudSyncError):
    """No adapter is registered for the requested provider type."""

    def __init__(self, provider_type: str, supported: Optional[list[str]] = None):
        self.provider_type = provider_type
        self.supported = sorted(supported or [])
        message = f"Unsupported provider type: {provider_type}"
        if self.supported:
            message += f". Supported providers: {', '.join(self.supported)}"
        super().__init__(message)


class ConflictUnresolved(CloudSyncError):
    """Sync items flagged for manual resolution."""

    def __init__(self, paths: list[str]):
        self.paths = list(paths)
        super().__init__(
            f"{len(self.paths)} conflict(s) require manual resolution: "
            + ", ".join(self.paths[:5])
            + ("..." if len(self.paths) > 5 else "")
        )


class JobNotFoundError(CloudSyncError):
    """No job with the given id is known."""


class NotRunningError(CloudSyncError):
    """The job is not in a state that allows the requested control action."""


class JobCancelled(CloudSyncError):
    """Raised inside workers when the job was cancelled between items."""
