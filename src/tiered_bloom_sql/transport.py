"""Byte transport for loading and persisting filters by URL.

The filter core never talks to the network itself. Whatever persists
filters (an HTTP key-value service in production, a dict in tests) is
injected as a Transport and its failures surface as TransportFailure,
untouched by any retry logic, so the host engine can decide what to do.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

import requests

from tiered_bloom.errors import TransportFailure

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Fetches and stores opaque byte values by URL."""

    def fetch(self, url: str) -> bytes:
        """Return the bytes stored at url."""
        ...

    def put(self, url: str, data: bytes) -> bool:
        """Store data at url; True on success."""
        ...


class HttpTransport:
    """Transport over plain HTTP: GET to fetch, PUT to persist.

    Matches a key-value persist service exposing ``/bloomfilter/<key>``
    that stores request bodies verbatim and returns them on GET.
    """

    def __init__(self, timeout: float = 10.0, session: requests.Session | None = None):
        self.timeout = timeout
        self._session = session or requests.Session()

    def fetch(self, url: str) -> bytes:
        try:
            response = self._session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise TransportFailure(f"GET {url} failed: {exc}", url, exc.response.status_code) from exc
        except requests.RequestException as exc:
            raise TransportFailure(f"GET {url} failed: {exc}", url) from exc
        logger.debug(f"Fetched {len(response.content)} bytes from {url}")
        return response.content

    def put(self, url: str, data: bytes) -> bool:
        try:
            response = self._session.put(url, data=data, timeout=self.timeout)
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise TransportFailure(f"PUT {url} failed: {exc}", url, exc.response.status_code) from exc
        except requests.RequestException as exc:
            raise TransportFailure(f"PUT {url} failed: {exc}", url) from exc
        logger.debug(f"Stored {len(data)} bytes at {url}")
        return True


class InMemoryTransport:
    """Dict-backed transport for tests and single-process embedding."""

    def __init__(self) -> None:
        self._store: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def fetch(self, url: str) -> bytes:
        with self._lock:
            try:
                return self._store[url]
            except KeyError:
                raise TransportFailure(f"No filter stored at {url}", url, 404) from None

    def put(self, url: str, data: bytes) -> bool:
        with self._lock:
            self._store[url] = bytes(data)
        return True

    def __contains__(self, url: str) -> bool:
        with self._lock:
            return url in self._store
