"""PyCloudSync - transfer and sync files between remote storage providers."""

from .config import Config, EngineSettings
from .events import EventPublisher, Subscription
from .exceptions import (
    AuthenticationError,
    CloudSyncError,
    ConfigError,
    ConflictUnresolved,
    IntegrityMismatch,
    JobCancelled,
    JobNotFoundError,
    NotFoundError,
    NotRunningError,
    PermissionDeniedError,
    ProviderError,
    RateLimitError,
    TransientIOError,
    UnsupportedProviderType,
    ValidationError,
)
from .models import (
    ConflictPolicy,
    FileEntry,
    FilterSpec,
    JobKind,
    JobSnapshot,
    JobStatus,
    ProgressEvent,
    ProviderConnection,
    Schedule,
    SyncDirection,
    SyncJob,
    TransferJob,
    TransferOptions,
)
from .providers import ProviderAdapter, WebDAVProvider
from .registry import ProviderRegistry
from .service import CloudSyncService

__version__ = "0.1.0"

__all__ = [
    "CloudSyncService",
    "Config",
    "EngineSettings",
    "EventPublisher",
    "Subscription",
    "ProviderAdapter",
    "ProviderRegistry",
    "WebDAVProvider",
    "ConflictPolicy",
    "FileEntry",
    "FilterSpec",
    "JobKind",
    "JobSnapshot",
    "JobStatus",
    "ProgressEvent",
    "ProviderConnection",
    "Schedule",
    "SyncDirection",
    "SyncJob",
    "TransferJob",
    "TransferOptions",
    "AuthenticationError",
    "CloudSyncError",
    "ConfigError",
    "ConflictUnresolved",
    "IntegrityMismatch",
    "JobCancelled",
    "JobNotFoundError",
    "NotFoundError",
    "NotRunningError",
    "PermissionDeniedError",
    "ProviderError",
    "RateLimitError",
    "TransientIOError",
    "UnsupportedProviderType",
    "ValidationError",
]
