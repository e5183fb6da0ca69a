# fetcher.py
from __future__ import annotations

import hashlib
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import FetchFailed, IntegrityMismatch, MissingIntegrityDigest
from .model import Formula
from .retry import ExponentialBackoff, RetryExhausted, RetryPolicy, call_with_retry
from .transport import ArchiveTransport, TransportError, UrllibTransport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------
# Download cache layout:
#   root/
#     <formula>/
#       <sha256>--<archive name>        verified, read-only
#       <sha256>--<archive name>.part   in-flight download, never trusted
#
# An entry is only reused after re-hashing it, so a corrupted cache file
# is treated as a miss and replaced.
# ---------------------------------------------------------------------

CHUNK = 1024 * 1024


def default_retry_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        backoff=ExponentialBackoff(base=1.0, multiplier=2.0, max_delay=10.0),
        retry_on=(TransportError,),
    )


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(CHUNK)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


@dataclass(frozen=True)
class FetchResult:
    path: Path
    digest: str
    cache_hit: bool


class Fetcher:
    """Retrieves a formula's source archive and checks its sha256 before use."""

    def __init__(
        self,
        cache_root: str | Path,
        transport: Optional[ArchiveTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.root = Path(cache_root).expanduser().resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.transport = transport or UrllibTransport()
        self.retry_policy = retry_policy or default_retry_policy()

    def _formula_dir(self, name: str) -> Path:
        d = self.root / name
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, formula: Formula) -> Path:
        return self._formula_dir(formula.name) / f"{formula.digest}--{formula.source.filename}"

    def cached(self, formula: Formula) -> Optional[Path]:
        """Return the verified cache entry for `formula`, or None."""
        if not formula.digest:
            return None
        art = self.artifact_path(formula)
        if not art.exists():
            return None
        if sha256_file(art) != formula.digest:
            logger.warning("[%s] cached archive %s is corrupt, discarding", formula.name, art.name)
            _force_unlink(art)
            return None
        return art

    def fetch(self, formula: Formula) -> FetchResult:
        """
        Return a local, read-only, verified copy of the formula's source.

        Raises:
          MissingIntegrityDigest: the formula declares no sha256 (no I/O done)
          IntegrityMismatch: downloaded bytes hash differently (nothing kept)
          FetchFailed: transport kept failing after the retry budget
        """
        if not formula.digest:
            raise MissingIntegrityDigest(
                formula=formula.name,
                message=(
                    f"Formula '{formula.name}' has no sha256; refusing to use an "
                    f"unverified archive from {formula.source.url}"
                ),
            )

        hit = self.cached(formula)
        if hit is not None:
            logger.info("[%s] source: cache hit (%s)", formula.name, hit.name)
            return FetchResult(path=hit, digest=formula.digest, cache_hit=True)

        art = self.artifact_path(formula)
        tmp = art.with_name(art.name + ".part")

        try:
            actual = call_with_retry(
                lambda: self._download(formula.source.url, tmp),
                self.retry_policy,
                operation_name=f"fetch {formula.name}",
            )
        except RetryExhausted as e:
            _force_unlink(tmp)
            raise FetchFailed(
                formula=formula.name,
                message=f"Could not fetch {formula.source.url}: {e.last_error}",
                attempts=e.attempts,
            ) from e
        except BaseException:
            _force_unlink(tmp)
            raise

        if actual != formula.digest:
            _force_unlink(tmp)
            raise IntegrityMismatch(
                formula=formula.name,
                message=f"sha256 mismatch for {formula.source.url}",
                expected=formula.digest,
                actual=actual,
            )

        tmp.replace(art)
        os.chmod(art, stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
        logger.info("[%s] source: fetched and verified (%s...)", formula.name, actual[:12])
        return FetchResult(path=art, digest=actual, cache_hit=False)

    def _download(self, url: str, dest: Path) -> str:
        """Stream `url` into `dest`, hashing as we go."""
        h = hashlib.sha256()
        try:
            with self.transport.open(url) as stream, dest.open("wb") as out:
                while True:
                    chunk = stream.read(CHUNK)
                    if not chunk:
                        break
                    h.update(chunk)
                    out.write(chunk)
        except TransportError:
            _force_unlink(dest)
            raise
        except (ConnectionError, TimeoutError) as e:
            _force_unlink(dest)
            raise TransportError(f"Transfer of {url} interrupted: {e}") from e
        return h.hexdigest()


def _force_unlink(path: Path) -> None:
    if path.exists():
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
        path.unlink(missing_ok=True)
