"""Download helpers with bounded retries and a bulk-transport fallback."""

from __future__ import annotations

import logging
import shutil
import threading
import time
from pathlib import Path
from typing import Callable, Protocol, Sequence
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

import httpx

from osm2pmtiles.errors import ConfigurationError, FetchError, PipelineCancelled
from osm2pmtiles.subprocess_utils import run_command

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
USER_AGENT = "osm2pmtiles"
BACKOFF_SECONDS = 2.0

Sleep = Callable[[float], None]


class SupportsFetch(Protocol):
    """Anything that can download a URL to a path (see :class:`Fetcher`)."""

    def fetch(self, url: str, destination: Path) -> bool:
        ...


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after the given (1-based) failed attempt."""
    return BACKOFF_SECONDS * attempt


def check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise PipelineCancelled("Run cancelled.")


def _partial_path(destination: Path) -> Path:
    return destination.with_name(f"{destination.name}.part")


def _copy_file_url(url: str, destination: Path) -> None:
    source = Path(url2pathname(unquote(urlparse(url).path)))
    partial = _partial_path(destination)
    shutil.copyfile(source, partial)
    partial.replace(destination)


def _stream_download(client: httpx.Client, url: str, destination: Path) -> None:
    """Stream a URL into ``<destination>.part`` and move it into place."""
    partial = _partial_path(destination)
    with client.stream("GET", url) as response:
        response.raise_for_status()
        with partial.open("wb") as handle:
            for chunk in response.iter_bytes(CHUNK_SIZE):
                handle.write(chunk)
    partial.replace(destination)


def bulk_transport_command(
    transport: Sequence[str], url: str, destination: Path
) -> list[str]:
    """Build the argv for a bulk-transfer tool (aria2c, curl, wget or generic)."""
    tool = Path(transport[0]).name.lower()
    if tool.endswith(".exe"):
        tool = tool[:-4]
    command = [str(item) for item in transport]
    if tool == "aria2c":
        return [
            *command,
            "--max-connection-per-server=4",
            "--allow-overwrite=true",
            "--dir",
            str(destination.parent),
            "--out",
            destination.name,
            url,
        ]
    if tool == "curl":
        return [*command, "--location", "--fail", "--output", str(destination), url]
    if tool == "wget":
        return [*command, "--output-document", str(destination), url]
    return [*command, url, str(destination)]


def _transport_available(transport: Sequence[str]) -> bool:
    executable = transport[0]
    return Path(executable).is_file() or shutil.which(executable) is not None


def _bulk_download(transport: Sequence[str], url: str, destination: Path) -> bool:
    command = bulk_transport_command(transport, url, destination)
    result = run_command(command)
    if result.returncode != 0:
        LOGGER.warning(
            "Bulk transport failed for %s (exit %s): %s",
            url,
            result.returncode,
            result.detail() or "no output",
        )
        return False
    return destination.is_file()


def fetch(
    url: str,
    destination: Path,
    max_attempts: int,
    *,
    client: httpx.Client | None = None,
    timeout: float = 60.0,
    bulk_transport: Sequence[str] | None = None,
    cancel: threading.Event | None = None,
    sleep: Sleep = time.sleep,
) -> bool:
    """Download ``url`` to ``destination``.

    Returns False without touching the network when the destination already
    exists, True after a successful download. Direct attempts are retried
    with a ``2 * attempt`` second backoff; when they are exhausted and a bulk
    transport is configured, it gets one final attempt. Raises ``FetchError``
    after that, or ``ConfigurationError`` at once for a URL that does not
    parse. Partial files are left for the caller to deal with.
    """
    if destination.exists():
        LOGGER.debug("Already present: %s", destination)
        return False
    destination.parent.mkdir(parents=True, exist_ok=True)
    attempts = max(1, int(max_attempts))

    if urlparse(url).scheme == "file":
        try:
            _copy_file_url(url, destination)
        except OSError as exc:
            raise FetchError(url, 1, str(exc)) from exc
        return True

    try:
        httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise ConfigurationError(f"Invalid download URL {url!r}: {exc}") from exc

    owns_client = client is None
    http = client or httpx.Client(
        follow_redirects=True,
        timeout=timeout,
        headers={"User-Agent": USER_AGENT},
    )
    last_error = ""
    try:
        for attempt in range(1, attempts + 1):
            check_cancelled(cancel)
            LOGGER.info("Downloading %s (attempt %s/%s)", url, attempt, attempts)
            try:
                _stream_download(http, url, destination)
                return True
            except (httpx.HTTPError, OSError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                LOGGER.warning("Download attempt %s for %s failed: %s", attempt, url, last_error)
            if attempt < attempts:
                delay = backoff_delay(attempt)
                LOGGER.debug("Retrying in %.0f seconds", delay)
                sleep(delay)
    finally:
        if owns_client:
            http.close()

    if bulk_transport and _transport_available(bulk_transport):
        check_cancelled(cancel)
        LOGGER.info("Falling back to %s for %s", bulk_transport[0], url)
        if _bulk_download(bulk_transport, url, destination):
            return True
        raise FetchError(url, attempts + 1, last_error)
    raise FetchError(url, attempts, last_error)


class Fetcher:
    """Fetch with a run's retry settings and a shared HTTP client."""

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        timeout: float = 60.0,
        bulk_transport: Sequence[str] | None = None,
        cancel: threading.Event | None = None,
        sleep: Sleep = time.sleep,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.bulk_transport = tuple(bulk_transport) if bulk_transport else None
        self.cancel = cancel
        self.sleep = sleep
        self.downloads: list[str] = []
        self._client = httpx.Client(
            follow_redirects=True,
            timeout=timeout,
            headers={"User-Agent": USER_AGENT},
            transport=transport,
        )

    def fetch(self, url: str, destination: Path) -> bool:
        downloaded = fetch(
            url,
            destination,
            self.max_attempts,
            client=self._client,
            timeout=self.timeout,
            bulk_transport=self.bulk_transport,
            cancel=self.cancel,
            sleep=self.sleep,
        )
        if downloaded:
            self.downloads.append(url)
        return downloaded

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "Fetcher":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()
