"""Container format detection and database extraction."""

from __future__ import annotations

import enum
import gzip
import logging
import shutil
import tarfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Dict, Optional, Protocol
from urllib.parse import parse_qs, unquote, urlsplit

from .cancellation import CancellationToken
from .errors import CorruptArtifactError

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
DATABASE_SUFFIX = ".mmdb"


class ArtifactFormat(str, enum.Enum):
    MMDB = "mmdb"
    GZIP = "gzip"
    TARBALL = "tarball"
    UNKNOWN = "unknown"


def detect_format(url: str) -> ArtifactFormat:
    """Infer the container format from the URL suffix.

    Both the URL path and a ``suffix`` query parameter are checked so that
    download endpoints such as ``...&suffix=tar.gz`` are recognised too.
    """

    parts = urlsplit(url)
    candidates = [parts.path.lower()]
    for suffix in parse_qs(parts.query).get("suffix", []):
        candidates.append("." + suffix.lower().lstrip("."))
    if any(c.endswith((".tar.gz", ".tgz")) for c in candidates):
        return ArtifactFormat.TARBALL
    if any(c.endswith(".gz") for c in candidates):
        return ArtifactFormat.GZIP
    if any(c.endswith(DATABASE_SUFFIX) for c in candidates):
        return ArtifactFormat.MMDB
    return ArtifactFormat.UNKNOWN


def decompressed_name(url: str, target_name: str) -> str:
    """Return the file name a ``.gz`` download decompresses to."""

    segment = unquote(PurePosixPath(urlsplit(url).path).name)
    if segment.lower().endswith(".gz"):
        segment = segment[:-3]
    if segment.lower().endswith(DATABASE_SUFFIX):
        return segment
    return target_name


class ArtifactExtractor(Protocol):
    def extract(
        self,
        artifact: Path,
        workdir: Path,
        target_name: str,
        cancel: CancellationToken,
    ) -> Path:
        ...


class PassthroughExtractor:
    """The artifact already is the database file."""

    def extract(
        self,
        artifact: Path,
        workdir: Path,
        target_name: str,
        cancel: CancellationToken,
    ) -> Path:
        cancel.raise_if_cancelled()
        return _require_payload(artifact)


class GzipExtractor:
    """Decompress a single-stream ``.gz`` artifact."""

    def extract(
        self,
        artifact: Path,
        workdir: Path,
        target_name: str,
        cancel: CancellationToken,
    ) -> Path:
        output = workdir / target_name
        try:
            with gzip.open(artifact, "rb") as source, open(output, "wb") as sink:
                while True:
                    cancel.raise_if_cancelled()
                    chunk = source.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    sink.write(chunk)
        except (gzip.BadGzipFile, EOFError, zlib.error) as exc:
            raise CorruptArtifactError(f"Cannot decompress {artifact.name}: {exc}") from exc
        LOGGER.info("Decompressed GeoIP database", extra={"path": str(output)})
        return _require_payload(output)


class TarballExtractor:
    """Pull the first ``.mmdb`` member out of a ``.tar.gz`` archive."""

    def extract(
        self,
        artifact: Path,
        workdir: Path,
        target_name: str,
        cancel: CancellationToken,
    ) -> Path:
        output = workdir / target_name
        try:
            with tarfile.open(artifact, "r:*") as archive:
                for member in archive:
                    cancel.raise_if_cancelled()
                    if not member.isfile() or not member.name.endswith(DATABASE_SUFFIX):
                        continue
                    source = archive.extractfile(member)
                    if source is None:
                        continue
                    with source, open(output, "wb") as sink:
                        shutil.copyfileobj(source, sink, CHUNK_SIZE)
                    LOGGER.info(
                        "Extracted GeoIP database from archive",
                        extra={"member": member.name, "path": str(output)},
                    )
                    return _require_payload(output)
        except (tarfile.TarError, EOFError, zlib.error) as exc:
            raise CorruptArtifactError(f"Cannot read archive {artifact.name}: {exc}") from exc
        raise CorruptArtifactError(f"No {DATABASE_SUFFIX} file found in {artifact.name}")


def default_extractors(enable_tarball: bool = False) -> Dict[ArtifactFormat, ArtifactExtractor]:
    """Build the format-to-extractor table.

    Tarball extraction is opt-in; without it ``.tar.gz`` sources are reported
    as unsupported.
    """

    passthrough = PassthroughExtractor()
    extractors: Dict[ArtifactFormat, ArtifactExtractor] = {
        ArtifactFormat.MMDB: passthrough,
        ArtifactFormat.UNKNOWN: passthrough,
        ArtifactFormat.GZIP: GzipExtractor(),
    }
    if enable_tarball:
        extractors[ArtifactFormat.TARBALL] = TarballExtractor()
    return extractors


def _require_payload(path: Optional[Path]) -> Path:
    if path is None or not path.is_file():
        raise CorruptArtifactError("Extracted database file is missing")
    if path.stat().st_size == 0:
        raise CorruptArtifactError(f"Extracted database file {path.name} is empty")
    return path
