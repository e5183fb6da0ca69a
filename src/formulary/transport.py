# transport.py
from __future__ import annotations

import urllib.error
import urllib.request
from typing import BinaryIO, Dict, Protocol, runtime_checkable

DEFAULT_TIMEOUT = 60.0
USER_AGENT = "formulary/0.1"


class TransportError(OSError):
    """Raised when an archive cannot be retrieved (network, HTTP, missing file)."""
    pass


@runtime_checkable
class ArchiveTransport(Protocol):
    """Opaque byte source: given a URL, return a readable binary stream."""

    def open(self, url: str) -> BinaryIO:
        ...


class UrllibTransport:
    """Transport for http://, https:// and file:// URLs."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, headers: Dict[str, str] | None = None):
        self.timeout = timeout
        self.headers = {"User-Agent": USER_AGENT}
        self.headers.update(headers or {})

    def open(self, url: str) -> BinaryIO:
        req = urllib.request.Request(url, headers=self.headers, method="GET")
        try:
            return urllib.request.urlopen(req, timeout=self.timeout)
        except urllib.error.HTTPError as e:
            raise TransportError(f"HTTP {e.code} {e.reason} for {url}") from e
        except urllib.error.URLError as e:
            raise TransportError(f"Could not retrieve {url}: {e.reason}") from e
        except (TimeoutError, ConnectionError) as e:
            raise TransportError(f"Could not retrieve {url}: {e}") from e
