"""Reference-counted wrapper around an open MaxMind database."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from ipaddress import IPv4Address, IPv6Address
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import maxminddb

from .errors import StoreOpenError

LOGGER = logging.getLogger(__name__)

Address = Union[str, IPv4Address, IPv6Address]


@dataclass(frozen=True)
class GeoIPResult:
    ip_address: str
    city: Optional[str] = None
    country: Optional[str] = None
    country_iso_code: Optional[str] = None
    continent: Optional[str] = None
    postal_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    time_zone: Optional[str] = None
    isp: Optional[str] = None
    organization: Optional[str] = None
    autonomous_system_number: Optional[int] = None
    autonomous_system_organization: Optional[str] = None
    domain: Optional[str] = None
    is_anonymous_proxy: Optional[bool] = None
    is_satellite_provider: Optional[bool] = None

    @classmethod
    def from_record(cls, ip_address: str, record: Mapping[str, Any]) -> "GeoIPResult":
        """Map a raw City/Enterprise record, keeping absent fields as ``None``."""

        location = _section(record, "location")
        traits = _section(record, "traits")
        return cls(
            ip_address=ip_address,
            city=_english_name(record, "city"),
            country=_english_name(record, "country"),
            country_iso_code=_section(record, "country").get("iso_code"),
            continent=_english_name(record, "continent"),
            postal_code=_section(record, "postal").get("code"),
            latitude=location.get("latitude"),
            longitude=location.get("longitude"),
            time_zone=location.get("time_zone"),
            isp=traits.get("isp"),
            organization=traits.get("organization"),
            autonomous_system_number=traits.get("autonomous_system_number"),
            autonomous_system_organization=traits.get("autonomous_system_organization"),
            domain=traits.get("domain"),
            is_anonymous_proxy=traits.get("is_anonymous_proxy"),
            is_satellite_provider=traits.get("is_satellite_provider"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _section(record: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = record.get(key)
    return value if isinstance(value, Mapping) else {}


def _english_name(record: Mapping[str, Any], key: str) -> Optional[str]:
    names = _section(record, key).get("names")
    if isinstance(names, Mapping):
        return names.get("en")
    return None


class LookupStore:
    """One opened database file.

    Lookups are read-only and may run concurrently. The store is closed once
    it has been retired and every lookup holding a reference has released it.
    """

    def __init__(self, path: Path, reader: Any) -> None:
        self.path = path
        self.opened_at = time.time()
        self._reader = reader
        self._lock = threading.Lock()
        self._refs = 0
        self._retired = False
        self._closed = False
        self.database_type = ""
        self.build_epoch = 0

    @classmethod
    def open(cls, path: Path, mode: int = maxminddb.MODE_AUTO) -> "LookupStore":
        """Open ``path`` and read its metadata, failing fast on a bad file."""

        try:
            reader = maxminddb.open_database(str(path), mode)
        except (OSError, ValueError, maxminddb.InvalidDatabaseError) as exc:
            raise StoreOpenError(f"Cannot open GeoIP database {path}: {exc}") from exc
        store = cls(Path(path), reader)
        try:
            metadata = reader.metadata()
            store.database_type = str(metadata.database_type)
            store.build_epoch = int(metadata.build_epoch)
        except (AttributeError, ValueError, TypeError) as exc:
            store.close()
            raise StoreOpenError(f"GeoIP database {path} has unreadable metadata: {exc}") from exc
        return store

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def retired(self) -> bool:
        return self._retired

    @property
    def in_flight(self) -> int:
        return self._refs

    def lookup(self, address: Address) -> Optional[GeoIPResult]:
        if self._closed:
            raise RuntimeError(f"Lookup on closed GeoIP store {self.path}")
        record = self._reader.get(address)
        if not isinstance(record, Mapping):
            return None
        return GeoIPResult.from_record(str(address), record)

    def acquire(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Cannot acquire closed GeoIP store {self.path}")
            self._refs += 1

    def release(self) -> None:
        with self._lock:
            self._refs -= 1
            should_close = self._retired and self._refs == 0
        if should_close:
            self.close()

    def retire(self) -> None:
        """Mark the store as superseded; close it once no lookup holds it."""

        with self._lock:
            self._retired = True
            should_close = self._refs == 0
        if should_close:
            self.close()
        else:
            LOGGER.debug(
                "Retired GeoIP store still in use; closing after last lookup",
                extra={"path": str(self.path), "in_flight": self.in_flight},
            )

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._reader.close()
        LOGGER.debug("Closed GeoIP store", extra={"path": str(self.path)})
