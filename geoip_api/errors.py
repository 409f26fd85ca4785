"""Exception hierarchy for lookups and database refreshes."""

from __future__ import annotations

from typing import Optional


class GeoIPError(RuntimeError):
    """Base exception for the GeoIP service."""


class ConfigError(GeoIPError):
    """Raised when required configuration is missing or unusable."""


class InvalidAddressError(GeoIPError, ValueError):
    """Raised when a query string is not an IPv4 or IPv6 literal."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Invalid IP address: {address!r}")
        self.address = address


class FetchError(GeoIPError):
    """Raised when the database artifact cannot be downloaded.

    ``status_code`` is set when the server answered with an error status and
    is ``None`` for connection-level failures.
    """

    def __init__(self, message: str, url: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code

    @property
    def is_status_error(self) -> bool:
        return self.status_code is not None


class UnsupportedFormatError(GeoIPError):
    """Raised when no extractor is wired for the artifact's container format."""


class CorruptArtifactError(GeoIPError):
    """Raised when the artifact does not contain a usable database file."""


class StoreOpenError(GeoIPError):
    """Raised when a database file cannot be opened as a lookup store."""


class RefreshCancelled(GeoIPError):
    """Raised inside the refresh pipeline once cancellation is observed."""
