"""Error taxonomy and cancellation for dns-rr."""

from __future__ import annotations

import threading
from typing import Optional


class DNSRRError(Exception):
    """Base class for all dns-rr errors."""


class ConfigurationError(DNSRRError):
    """A required setting is missing or invalid."""


class CredentialResolutionError(DNSRRError):
    """Secret lookup or credential assembly failed."""


class ProviderCallError(DNSRRError):
    """A provider listing or mutation call failed for a zone."""

    def __init__(self, message: str, zone_id: str = ""):
        super().__init__(message)
        self.zone_id = zone_id


class CacheRefreshError(DNSRRError):
    """A zone listing failed during a background cache refresh."""

    def __init__(self, cache_key: str, cause: Exception):
        super().__init__(f"failed to refresh zone cache for {cache_key}: {cause}")
        self.cache_key = cache_key
        self.cause = cause


class OperationCancelled(DNSRRError):
    """The cancellation token fired before or during a provider call."""


class CancellationToken:
    """Cooperative cancellation shared by provider calls and the refresh loop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block up to `timeout` seconds; returns True once cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, operation: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelled(f"{operation} canceled")


def check_cancelled(token: Optional[CancellationToken], operation: str) -> None:
    if token is not None:
        token.raise_if_cancelled(operation)
