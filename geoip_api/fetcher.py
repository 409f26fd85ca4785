"""HTTP download of the database artifact."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import requests
from requests import RequestException
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .cancellation import CancellationToken
from .errors import FetchError

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class ArtifactFetcher:
    """Stream a remote artifact to disk, retrying transient network failures."""

    def __init__(
        self,
        timeout: float = 60.0,
        attempts: int = 3,
        user_agent: str = "GeoIPApiUpdater/1.0",
        backoff: float = 1.0,
    ) -> None:
        self.timeout = timeout
        self.attempts = attempts
        self.user_agent = user_agent
        self.backoff = backoff

    def fetch(
        self,
        url: str,
        destination: Path,
        cancel: Optional[CancellationToken] = None,
    ) -> Path:
        cancel = cancel or CancellationToken()
        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff, min=0, max=30),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            sleep=cancel.sleep,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self._download(url, destination, cancel)
        except requests.HTTPError as exc:
            status = getattr(exc.response, "status_code", None)
            raise FetchError(f"Download failed with HTTP status {status}", url, status) from exc
        except RequestException as exc:
            raise FetchError(f"Download failed: {exc}", url) from exc
        return destination

    def _download(self, url: str, destination: Path, cancel: CancellationToken) -> None:
        cancel.raise_if_cancelled()
        LOGGER.info("Downloading GeoIP database", extra={"url": url})
        with requests.get(
            url,
            headers={"User-Agent": self.user_agent},
            stream=True,
            timeout=self.timeout,
        ) as response:
            response.raise_for_status()
            written = 0
            with open(destination, "wb") as handle:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    cancel.raise_if_cancelled()
                    if chunk:
                        handle.write(chunk)
                        written += len(chunk)
        LOGGER.info(
            "GeoIP database downloaded",
            extra={"path": str(destination), "bytes": written},
        )
