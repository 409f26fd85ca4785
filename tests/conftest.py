import ipaddress
import json
import struct
from pathlib import Path

import pytest

from geoip_api.config import GeoIPSettings


class DummyMetadata:
    def __init__(self, database_type: str, build_epoch: int) -> None:
        self.database_type = database_type
        self.build_epoch = build_epoch


class DummyReader:
    """Stand-in for ``maxminddb.Reader`` backed by a JSON file."""

    def __init__(self, path: str) -> None:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
        self.path = path
        self.records = payload["records"]
        self._metadata = DummyMetadata(payload.get("database_type", "GeoLite2-City"), payload.get("build_epoch", 1))
        self.closed = False
        self.lookups = 0
        self.reads_after_close = 0

    def metadata(self) -> DummyMetadata:
        return self._metadata

    def get(self, address):
        if self.closed:
            self.reads_after_close += 1
            raise ValueError("Attempt to read from a closed MaxMind DB.")
        self.lookups += 1
        return self.records.get(str(address))

    def close(self) -> None:
        if self.closed:
            raise AssertionError("reader closed twice")
        self.closed = True


class FakeMMDB:
    def __init__(self) -> None:
        self.readers: list[DummyReader] = []

    def open_database(self, path, mode=0):
        reader = DummyReader(path)
        self.readers.append(reader)
        return reader

    @property
    def open_readers(self) -> list[DummyReader]:
        return [reader for reader in self.readers if not reader.closed]

    @staticmethod
    def payload(records: dict, build_epoch: int = 1) -> bytes:
        return json.dumps(
            {"database_type": "GeoLite2-City", "build_epoch": build_epoch, "records": records}
        ).encode("utf-8")

    def write(self, path: Path, records: dict, build_epoch: int = 1) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.payload(records, build_epoch))
        return path


class Uint:
    """Unsigned integer with an explicit MaxMind DB type code and width."""

    def __init__(self, value: int, type_code: int, width: int) -> None:
        self.value = value
        self.type_code = type_code
        self.width = width


def _control(type_code: int, size: int) -> bytes:
    if size < 29:
        first, extra = size, b""
    elif size < 285:
        first, extra = 29, bytes([size - 29])
    elif size < 65821:
        first, extra = 30, (size - 285).to_bytes(2, "big")
    else:
        first, extra = 31, (size - 65821).to_bytes(3, "big")
    if type_code <= 7:
        return bytes([(type_code << 5) | first]) + extra
    return bytes([first, type_code - 7]) + extra


def encode_value(value) -> bytes:
    if isinstance(value, bool):
        return _control(14, int(value))
    if isinstance(value, Uint):
        return _control(value.type_code, value.width) + value.value.to_bytes(value.width, "big")
    if isinstance(value, int):
        return encode_value(Uint(value, 6, 4))
    if isinstance(value, float):
        return _control(3, 8) + struct.pack(">d", value)
    if isinstance(value, str):
        data = value.encode("utf-8")
        return _control(2, len(data)) + data
    if isinstance(value, dict):
        body = b"".join(encode_value(key) + encode_value(item) for key, item in value.items())
        return _control(7, len(value)) + body
    if isinstance(value, list):
        return _control(11, len(value)) + b"".join(encode_value(item) for item in value)
    raise TypeError(f"Cannot encode {type(value).__name__}")


def write_mmdb(
    path: Path,
    networks: dict,
    database_type: str = "GeoLite2-City",
    build_epoch: int = 1700000000,
) -> Path:
    """Write a small IPv4 MaxMind DB with 24-bit records.

    ``networks`` maps non-overlapping CIDR strings to record dicts.
    """

    nodes = [[None, None]]
    data = bytearray()
    for network, record in networks.items():
        net = ipaddress.IPv4Network(network)
        offset = len(data)
        data += encode_value(record)
        bits = int(net.network_address)
        node = 0
        for depth in range(net.prefixlen):
            bit = (bits >> (31 - depth)) & 1
            if depth == net.prefixlen - 1:
                nodes[node][bit] = ("data", offset)
                break
            child = nodes[node][bit]
            if not isinstance(child, int):
                nodes.append([None, None])
                child = len(nodes) - 1
                nodes[node][bit] = child
            node = child

    node_count = len(nodes)

    def _record(entry) -> int:
        if entry is None:
            return node_count
        if isinstance(entry, int):
            return entry
        return node_count + 16 + entry[1]

    tree = b"".join(
        _record(left).to_bytes(3, "big") + _record(right).to_bytes(3, "big") for left, right in nodes
    )
    metadata = {
        "binary_format_major_version": Uint(2, 5, 2),
        "binary_format_minor_version": Uint(0, 5, 2),
        "build_epoch": Uint(build_epoch, 9, 8),
        "database_type": database_type,
        "description": {"en": "Test database"},
        "ip_version": Uint(4, 5, 2),
        "languages": ["en"],
        "node_count": Uint(node_count, 6, 4),
        "record_size": Uint(24, 5, 2),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(tree + bytes(16) + bytes(data) + b"\xab\xcd\xefMaxMind.com" + encode_value(metadata))
    return path


@pytest.fixture
def fake_mmdb(monkeypatch):
    fake = FakeMMDB()
    monkeypatch.setattr("geoip_api.store.maxminddb.open_database", fake.open_database)
    return fake


@pytest.fixture
def settings_factory(tmp_path):
    def _factory(**overrides) -> GeoIPSettings:
        values = {
            "geoip_database_path": str(tmp_path / "data" / "GeoLite2-City.mmdb"),
            "geoip_temp_dir": None,
        }
        values.update(overrides)
        return GeoIPSettings(**values)

    return _factory


def city_record(city: str, country: str, iso_code: str, **traits) -> dict:
    return {
        "city": {"names": {"en": city}},
        "country": {"iso_code": iso_code, "names": {"en": country}},
        "continent": {"names": {"en": "North America"}},
        "postal": {"code": "94107"},
        "location": {"latitude": 37.7749, "longitude": -122.4194, "time_zone": "America/Los_Angeles"},
        "traits": traits,
    }


@pytest.fixture
def record_factory():
    return city_record


@pytest.fixture
def real_mmdb():
    return write_mmdb
