"""Ownership and hot-swap of the active GeoIP database."""

from __future__ import annotations

import enum
import logging
import os
import shutil
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from ipaddress import ip_address
from pathlib import Path
from typing import Iterator, Mapping, Optional

import maxminddb

from .cancellation import CancellationToken
from .config import GeoIPSettings
from .errors import (
    ConfigError,
    CorruptArtifactError,
    FetchError,
    InvalidAddressError,
    RefreshCancelled,
    StoreOpenError,
    UnsupportedFormatError,
)
from .extractor import (
    ArtifactExtractor,
    ArtifactFormat,
    decompressed_name,
    default_extractors,
    detect_format,
)
from .fetcher import ArtifactFetcher
from .store import GeoIPResult, LookupStore

LOGGER = logging.getLogger(__name__)

DEFAULT_DATABASE_NAME = "GeoLite2-City.mmdb"


class RefreshStatus(str, enum.Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class RefreshErrorKind(str, enum.Enum):
    NETWORK = "network"
    UNSUPPORTED_FORMAT = "unsupported_format"
    CORRUPT_ARTIFACT = "corrupt_artifact"
    OPEN = "open"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RefreshOutcome:
    status: RefreshStatus
    message: str = ""
    error: Optional[RefreshErrorKind] = None
    path: Optional[Path] = None

    @classmethod
    def success(cls, path: Path) -> "RefreshOutcome":
        return cls(RefreshStatus.SUCCESS, f"Installed {path}", path=path)

    @classmethod
    def skipped(cls, message: str) -> "RefreshOutcome":
        return cls(RefreshStatus.SKIPPED, message)

    @classmethod
    def failed(cls, error: RefreshErrorKind, message: str) -> "RefreshOutcome":
        return cls(RefreshStatus.FAILED, message, error=error)

    @property
    def ok(self) -> bool:
        return self.status is not RefreshStatus.FAILED


class DatabaseManager:
    """Serve lookups from the current store and replace it on refresh.

    The current-store slot is the only shared mutable state. ``query`` holds
    the slot lock just long enough to take a reference to the store, and the
    install step holds it just long enough to swap the reference, so lookups
    never wait on a download. A superseded store is closed by whichever of
    the swap or the last in-flight lookup finishes later.
    """

    def __init__(
        self,
        settings: GeoIPSettings,
        fetcher: Optional[ArtifactFetcher] = None,
        extractors: Optional[Mapping[ArtifactFormat, ArtifactExtractor]] = None,
    ) -> None:
        if not (settings.geoip_database_path or "").strip():
            LOGGER.error("GeoIP database path is not configured")
            raise ConfigError("GeoIP database path must be configured")
        self.settings = settings
        self.database_path = Path(settings.geoip_database_path)
        self.fetcher = fetcher or ArtifactFetcher(
            timeout=settings.geoip_download_timeout,
            attempts=settings.geoip_download_attempts,
            user_agent=settings.geoip_user_agent,
        )
        self.extractors = dict(
            extractors
            if extractors is not None
            else default_extractors(settings.geoip_enable_tarball_extraction)
        )
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._current: Optional[LookupStore] = None

        self._ensure_data_directory()
        self._load_existing()

    @property
    def current_store(self) -> Optional[LookupStore]:
        with self._lock:
            return self._current

    @property
    def is_loaded(self) -> bool:
        return self.current_store is not None

    def _ensure_data_directory(self) -> None:
        directory = self.database_path.parent
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            LOGGER.info("Created GeoIP data directory", extra={"directory": str(directory)})

    def _load_existing(self) -> None:
        if not self.database_path.is_file():
            LOGGER.warning(
                "GeoIP database not found at %s; lookups will fail until a refresh succeeds",
                self.database_path,
            )
            return
        try:
            store = LookupStore.open(self.database_path)
        except StoreOpenError as exc:
            LOGGER.error("Failed to load GeoIP database: %s", exc)
            return
        self._install(store)
        LOGGER.info("GeoIP database loaded", extra={"path": str(self.database_path)})

    # Queries --------------------------------------------------------------

    @contextmanager
    def _lease(self) -> Iterator[Optional[LookupStore]]:
        with self._lock:
            store = self._current
            if store is not None:
                store.acquire()
        try:
            yield store
        finally:
            if store is not None:
                store.release()

    def query(self, address: str) -> Optional[GeoIPResult]:
        """Look up ``address``; ``None`` means no record is available."""

        try:
            parsed = ip_address(address.strip())
        except (AttributeError, ValueError) as exc:
            LOGGER.warning("Invalid IP address format: %r", address)
            raise InvalidAddressError(address) from exc
        if parsed.is_loopback:
            LOGGER.info("Loopback address %s is unlikely to be in the GeoIP database", parsed)

        with self._lease() as store:
            if store is None:
                LOGGER.warning("GeoIP database not loaded; cannot look up %s", parsed)
                return None
            try:
                result = store.lookup(parsed)
            except (ValueError, maxminddb.InvalidDatabaseError) as exc:
                LOGGER.error("GeoIP lookup failed for %s: %s", parsed, exc)
                return None
        if result is None:
            LOGGER.info("IP address %s not found in GeoIP database", parsed)
        return result

    # Refresh --------------------------------------------------------------

    def refresh(self, cancel: Optional[CancellationToken] = None) -> RefreshOutcome:
        """Download, validate and install a new database.

        Failures leave the current store in place and are reported through the
        returned outcome rather than raised.
        """

        url = self.settings.geoip_download_url
        if not self.settings.refresh_enabled:
            LOGGER.warning("GeoIP download URL is not configured; skipping update")
            return RefreshOutcome.skipped("Download URL not configured")
        if not self._refresh_lock.acquire(blocking=False):
            LOGGER.info("GeoIP refresh already in progress; skipping")
            return RefreshOutcome.skipped("Refresh already in progress")
        cancel = cancel or CancellationToken()
        try:
            outcome = self._refresh(url, cancel)
        finally:
            self._refresh_lock.release()
        if outcome.status is RefreshStatus.FAILED:
            LOGGER.error(
                "GeoIP refresh failed: %s",
                outcome.message,
                extra={"error_kind": outcome.error.value if outcome.error else None},
            )
        return outcome

    def _refresh(self, url: str, cancel: CancellationToken) -> RefreshOutcome:
        try:
            workdir = Path(tempfile.mkdtemp(prefix="geoip_refresh_", dir=self.settings.geoip_temp_dir))
        except OSError as exc:
            LOGGER.error(
                "Cannot create scratch directory for GeoIP refresh: %s",
                exc,
                extra={"temp_dir": self.settings.geoip_temp_dir},
            )
            return RefreshOutcome.failed(RefreshErrorKind.OPEN, f"Cannot create scratch directory: {exc}")
        try:
            return self._run_pipeline(url, workdir, cancel)
        except RefreshCancelled:
            LOGGER.info("GeoIP refresh cancelled")
            return RefreshOutcome.failed(RefreshErrorKind.CANCELLED, "Refresh cancelled")
        except FetchError as exc:
            if exc.is_status_error:
                LOGGER.error(
                    "HTTP error downloading GeoIP database; check the URL and license key",
                    extra={"status_code": exc.status_code, "url": exc.url},
                )
            return RefreshOutcome.failed(RefreshErrorKind.NETWORK, str(exc))
        except UnsupportedFormatError as exc:
            return RefreshOutcome.failed(RefreshErrorKind.UNSUPPORTED_FORMAT, str(exc))
        except CorruptArtifactError as exc:
            return RefreshOutcome.failed(RefreshErrorKind.CORRUPT_ARTIFACT, str(exc))
        except StoreOpenError as exc:
            return RefreshOutcome.failed(RefreshErrorKind.OPEN, str(exc))
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Unexpected error updating GeoIP database")
            return RefreshOutcome.failed(RefreshErrorKind.OPEN, f"Unexpected error: {exc}")
        finally:
            self._cleanup(workdir)

    def _run_pipeline(self, url: str, workdir: Path, cancel: CancellationToken) -> RefreshOutcome:
        artifact = self.fetcher.fetch(url, workdir / "artifact.download", cancel)

        artifact_format = detect_format(url)
        extractor = self.extractors.get(artifact_format)
        if extractor is None:
            raise UnsupportedFormatError(
                f"No extractor configured for {artifact_format.value} artifacts from {url}"
            )
        if artifact_format is ArtifactFormat.UNKNOWN:
            LOGGER.warning(
                "Download URL has no recognised suffix; assuming it is a raw .mmdb file",
                extra={"url": url},
            )
        target_name = decompressed_name(url, self.database_path.name or DEFAULT_DATABASE_NAME)
        candidate = extractor.extract(artifact, workdir, target_name, cancel)

        LookupStore.open(candidate).close()
        cancel.raise_if_cancelled()

        self._replace_database_file(candidate)
        store = LookupStore.open(self.database_path)
        self._install(store)
        LOGGER.info(
            "GeoIP database updated",
            extra={"path": str(self.database_path), "database_type": store.database_type},
        )
        return RefreshOutcome.success(self.database_path)

    def _replace_database_file(self, candidate: Path) -> None:
        target = self.database_path
        target.parent.mkdir(parents=True, exist_ok=True)
        staging = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            shutil.move(str(candidate), str(staging))
            os.replace(staging, target)
        finally:
            if staging.exists():
                staging.unlink()

    def _install(self, store: LookupStore) -> None:
        with self._lock:
            previous, self._current = self._current, store
        if previous is not None:
            previous.retire()

    def _cleanup(self, workdir: Path) -> None:
        try:
            shutil.rmtree(workdir)
        except FileNotFoundError:
            return
        except OSError as exc:
            LOGGER.warning("Could not remove temporary directory %s: %s", workdir, exc)

    def close(self) -> None:
        with self._lock:
            previous, self._current = self._current, None
        if previous is not None:
            previous.retire()
