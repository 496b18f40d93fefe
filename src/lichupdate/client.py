from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import httpx

from ._version import __version__
from .config import DEFAULT_API_BASE_URL, DEFAULT_CACHE_TTL_S, DEFAULT_TIMEOUT_S

Report = Callable[[str], None]

_LOGGER = logging.getLogger(__name__)


class LichUpdateError(RuntimeError):
    pass


class NetworkFailure(LichUpdateError):
    pass


@dataclass(frozen=True)
class HTTPStatusError(NetworkFailure):
    status_code: int
    url: str

    def __str__(self) -> str:
        return f"HTTP {self.status_code} for {self.url}"


class UpdateInProgress(LichUpdateError):
    pass


@dataclass(frozen=True)
class CacheEntry:
    data: Any
    fetched_at: float


def _apply_auth(headers: dict[str, str], token: str | None) -> None:
    if token:
        headers["Authorization"] = f"Bearer {token}".strip()


class MetadataClient:
    """
    Blocking HTTP access to the release index. JSON lookups are cached per URL
    for ``cache_ttl_s``; failures are reported and never cached.
    """

    def __init__(
        self,
        *,
        report: Report,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        cache_ttl_s: float = DEFAULT_CACHE_TTL_S,
        token: str | None = None,
        api_base_url: str = DEFAULT_API_BASE_URL,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.report = report
        self.timeout_s = timeout_s
        self.cache_ttl_s = cache_ttl_s
        self.token = token
        self.api_base_url = api_base_url.rstrip("/")
        self._clock = clock
        self._cache: dict[str, CacheEntry] = {}
        self._cache_lock = threading.Lock()

        headers = {"User-Agent": f"lich-update/{__version__}"}
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True, headers=headers, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "MetadataClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _cached(self, url: str) -> CacheEntry | None:
        entry = self._cache.get(url)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self.cache_ttl_s:
            return None
        return entry

    def get(self, url: str, *, headers: dict[str, str] | None = None) -> httpx.Response:
        req_headers = dict(headers or {})
        if url.startswith(self.api_base_url):
            req_headers.setdefault("Accept", "application/vnd.github+json")
            _apply_auth(req_headers, self.token)
        _LOGGER.debug("GET %s", url)
        try:
            resp = self._http.get(url, headers=req_headers)
        except httpx.HTTPError as e:
            raise NetworkFailure(f"Request to {url} failed: {e}") from e
        if resp.status_code >= 400:
            raise HTTPStatusError(resp.status_code, url)
        return resp

    def fetch_json(self, url: str, *, missing_ok: bool = False) -> Any | None:
        """
        Cached GET of a JSON document. Failures are reported and give ``None``;
        with ``missing_ok`` a 404 gives ``None`` without a report.
        """
        with self._cache_lock:
            entry = self._cached(url)
            if entry is not None:
                _LOGGER.debug("Cache hit for %s", url)
                return entry.data

            try:
                data = self.get(url).json()
            except HTTPStatusError as e:
                if missing_ok and e.status_code == 404:
                    _LOGGER.debug("Nothing at %s", url)
                    return None
                self.report(f"network error while fetching {url}: {e}")
                return None
            except NetworkFailure as e:
                self.report(f"network error while fetching {url}: {e}")
                return None
            except ValueError as e:
                self.report(f"network error while fetching {url}: malformed JSON ({e})")
                return None

            self._cache[url] = CacheEntry(data=data, fetched_at=self._clock())
            return data

    def download(self, url: str, dest: Path) -> Path:
        """Stream ``url`` into ``dest``; a failed download leaves nothing at ``dest``."""

        dest.parent.mkdir(parents=True, exist_ok=True)
        _LOGGER.info("Downloading %s to %s", url, dest)
        try:
            with self._http.stream("GET", url) as resp:
                status = resp.status_code
                if status < 400:
                    with dest.open("wb") as out:
                        for chunk in resp.iter_bytes():
                            out.write(chunk)
        except httpx.HTTPError as e:
            dest.unlink(missing_ok=True)
            raise NetworkFailure(f"Download of {url} failed: {e}") from e
        except OSError:
            dest.unlink(missing_ok=True)
            raise
        # Raised outside the stream context: HTTPStatusError is frozen.
        if status >= 400:
            dest.unlink(missing_ok=True)
            raise HTTPStatusError(status, url)
        return dest
