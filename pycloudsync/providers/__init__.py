"""Provider adapters for remote storage backends."""

from .base import ProviderAdapter
from .webdav import WebDAVProvider

__all__ = ["ProviderAdapter", "WebDAVProvider"]
