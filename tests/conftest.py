"""
Pytest configuration and fixtures for formulary tests.

Formulas here are synthetic: their archives live in an in-memory transport
and their install/test steps are small `python -c` snippets, so nothing
touches the network or depends on tools being installed.
"""

import hashlib
import io
import sys
import tarfile

import pytest

from formulary.dsl import cmd, formula
from formulary.fetcher import Fetcher
from formulary.ledger import Ledger
from formulary.orchestrator import Orchestrator
from formulary.retry import NoBackoff, RetryPolicy
from formulary.transport import TransportError


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def py(code: str, name: str | None = None):
    """A step running `code` with the current interpreter."""
    return cmd(sys.executable, "-c", code, name=name)


def make_tarball(files: dict, top: str = "pkg-1.0") -> bytes:
    """tar.gz with every file under a single top-level directory."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for rel, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(name=f"{top}/{rel}")
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def install_tool(tool: str):
    """Install step: writes <prefix>/bin/<tool> and copies the source README."""
    return py(
        "import os, pathlib, shutil\n"
        "b = pathlib.Path(os.environ['PREFIX'], 'bin')\n"
        "b.mkdir(parents=True, exist_ok=True)\n"
        f"(b / {tool!r}).write_text('ok')\n"
        "if os.path.exists('README'):\n"
        "    shutil.copy('README', os.environ['PREFIX'])\n",
        name=f"install {tool}",
    )


def check_tool(tool: str):
    return py(
        "import os, sys\n"
        f"sys.exit(0 if os.path.exists(os.path.join(os.environ['PREFIX'], 'bin', {tool!r})) else 1)\n",
        name=f"check {tool}",
    )


def failing_step(message: str = "boom", code: int = 3):
    return py(f"import sys; print({message!r}); sys.exit({code})", name="fail")


class FakeTransport:
    """In-memory archive transport that records every URL it opens."""

    def __init__(self):
        self.blobs: dict[str, bytes] = {}
        self.failures: dict[str, int] = {}
        self.calls: list[str] = []

    def add(self, url: str, data: bytes) -> None:
        self.blobs[url] = data

    def fail(self, url: str, times: int) -> None:
        self.failures[url] = times

    def open(self, url: str):
        self.calls.append(url)
        if self.failures.get(url, 0) > 0:
            self.failures[url] -= 1
            raise TransportError(f"connection reset fetching {url}")
        if url not in self.blobs:
            raise TransportError(f"404 for {url}")
        return io.BytesIO(self.blobs[url])


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, backoff=NoBackoff(), retry_on=(TransportError,))


@pytest.fixture
def fetcher(tmp_path, transport, retry_policy):
    return Fetcher(tmp_path / "cache", transport=transport, retry_policy=retry_policy)


@pytest.fixture
def make_formula(transport):
    """
    Build a formula whose archive is registered with the fake transport.

    make_formula("b", deps=["a"], install=[...], test=[...])
    """

    def _make(name, *, deps=(), build_deps=(), install=None, test=None, files=None, digest=None, version="1.0"):
        data = make_tarball(files or {"README": f"{name} source\n"}, top=f"{name}-{version}")
        url = f"https://example.test/{name}-{version}.tar.gz"
        transport.add(url, data)
        return formula(
            name,
            url=url,
            sha256=sha256(data) if digest is None else digest,
            license="MIT",
            depends_on=list(deps),
            build_depends_on=list(build_deps),
            install=install if install is not None else [install_tool(name)],
            test=test if test is not None else [check_tool(name)],
        )

    return _make


@pytest.fixture
def make_engine(tmp_path, fetcher):
    def _make(formulas, *, ledger=None, **kwargs):
        return Orchestrator(
            formulas,
            fetcher=fetcher,
            prefix_root=tmp_path / "cellar",
            ledger=ledger or Ledger(tmp_path / "ledger.json"),
            **kwargs,
        )

    return _make
