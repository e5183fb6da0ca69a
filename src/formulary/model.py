# model.py
from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from .errors import InvalidFormula, InvalidTransition

_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")
_VERSION_START_RE = re.compile(r"^[vV]?\d")
_ARCHIVE_SUFFIXES = (".tar.gz", ".tar.bz2", ".tar.xz", ".tgz", ".tbz2", ".txz", ".tar", ".zip")


class DependencyKind(str, Enum):
    BUILD = "build"
    RUNTIME = "runtime"


@dataclass(frozen=True)
class Dependency:
    """Edge to another formula that must be installed first."""
    name: str
    kind: DependencyKind = DependencyKind.RUNTIME


@dataclass(frozen=True)
class Command:
    """
    A single structured step: executable + arguments + env overrides.

    Arguments may reference {prefix}, {bin}, {lib}, {include}, {share},
    {name}, {version} and {workdir}; the executor substitutes them.
    """
    argv: Tuple[str, ...]
    env: Tuple[Tuple[str, str], ...] = ()
    name: str | None = None
    cwd: str | None = None

    def __post_init__(self) -> None:
        if not self.argv:
            raise ValueError("Command needs at least an executable")
        object.__setattr__(self, "argv", tuple(str(a) for a in self.argv))
        if isinstance(self.env, Mapping):
            object.__setattr__(self, "env", tuple(sorted((str(k), str(v)) for k, v in self.env.items())))

    @property
    def display(self) -> str:
        return self.name or " ".join(self.argv)

    def env_dict(self) -> Dict[str, str]:
        return dict(self.env)


@dataclass(frozen=True)
class SourceRef:
    """Where the source archive lives and what it must hash to."""
    url: str
    sha256: str = ""

    @property
    def filename(self) -> str:
        path = urlparse(self.url).path
        return PurePosixPath(path).name or "source"


def version_from_url(url: str) -> Optional[str]:
    """
    Infer a version from an archive URL.

      https://github.com/joel-xiao/lazyssh/archive/v0.2.0.tar.gz -> 0.2.0
      https://example.org/foo-1.4.2.tar.xz -> 1.4.2
      https://example.org/foo-1.4.2-rc1.tar.gz -> 1.4.2-rc1
    """
    name = PurePosixPath(urlparse(url).path).name
    for suffix in _ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    else:
        return None
    # the version starts at the first "-" segment beginning with a digit;
    # a leading segment is the project name unless it is the only one
    parts = name.split("-")
    candidates = range(1, len(parts)) if len(parts) > 1 else range(1)
    for i in candidates:
        if _VERSION_START_RE.match(parts[i]):
            version = "-".join(parts[i:])
            return version[1:] if version[0] in "vV" else version
    return None


@dataclass(frozen=True)
class Formula:
    """
    Immutable description of one installable unit.

    `dependencies` keeps declaration order; the resolver relies on it to
    break ties deterministically.
    """
    name: str
    source: SourceRef
    license: str = ""
    desc: str = ""
    homepage: str = ""
    version: str | None = None
    dependencies: Tuple[Dependency, ...] = ()
    install: Tuple[Command, ...] = ()
    test: Tuple[Command, ...] = ()

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise InvalidFormula(formula=self.name or "<unnamed>", message="Formula name is empty")
        if "/" in self.name or self.name in (".", ".."):
            raise InvalidFormula(formula=self.name, message=f"Invalid formula name: {self.name!r}")
        if not self.source.url:
            raise InvalidFormula(formula=self.name, message="Formula has no source url")

        digest = (self.source.sha256 or "").strip()
        if digest and not _SHA256_RE.match(digest):
            raise InvalidFormula(
                formula=self.name,
                message=f"sha256 must be 64 hex characters, got {digest!r}",
            )
        object.__setattr__(self, "source", SourceRef(self.source.url, digest.lower()))

        seen = set()
        for dep in self.dependencies:
            if dep.name == self.name:
                raise InvalidFormula(formula=self.name, message="Formula depends on itself")
            if dep.name in seen:
                raise InvalidFormula(formula=self.name, message=f"Duplicate dependency '{dep.name}'")
            seen.add(dep.name)

        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        object.__setattr__(self, "install", tuple(self.install))
        object.__setattr__(self, "test", tuple(self.test))
        if self.version is None:
            object.__setattr__(self, "version", version_from_url(self.source.url))

    @property
    def digest(self) -> str:
        return self.source.sha256

    @property
    def dependency_names(self) -> Tuple[str, ...]:
        return tuple(d.name for d in self.dependencies)

    @property
    def build_dependencies(self) -> Tuple[str, ...]:
        return tuple(d.name for d in self.dependencies if d.kind is DependencyKind.BUILD)

    @property
    def runtime_dependencies(self) -> Tuple[str, ...]:
        return tuple(d.name for d in self.dependencies if d.kind is DependencyKind.RUNTIME)


# ----------------------------------------------------------------------
# Installation state machine
# ----------------------------------------------------------------------

class InstallState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    VERIFIED = "verified"
    BUILDING = "building"
    BUILT = "built"
    TESTED = "tested"
    INSTALLED = "installed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (InstallState.INSTALLED, InstallState.FAILED)


_TRANSITIONS: Dict[InstallState, Tuple[InstallState, ...]] = {
    InstallState.PENDING: (InstallState.FETCHING, InstallState.INSTALLED),
    InstallState.FETCHING: (InstallState.VERIFIED,),
    InstallState.VERIFIED: (InstallState.BUILDING,),
    InstallState.BUILDING: (InstallState.BUILT,),
    # dependencies skip the test phase
    InstallState.BUILT: (InstallState.TESTED, InstallState.INSTALLED),
    InstallState.TESTED: (InstallState.INSTALLED,),
    InstallState.INSTALLED: (),
    InstallState.FAILED: (),
}


def can_transition(src: InstallState, dst: InstallState) -> bool:
    if dst is InstallState.FAILED:
        return not src.terminal
    return dst in _TRANSITIONS[src]


@dataclass
class InstallRecord:
    """Per-formula progress through one run."""
    name: str
    digest: str = ""
    version: str | None = None
    state: InstallState = InstallState.PENDING
    prefix: str | None = None
    build_output: str = ""
    test_output: str = ""
    error_kind: str | None = None
    error_message: str | None = None
    error_category: str | None = None
    cached: bool = False
    history: list[InstallState] = field(default_factory=lambda: [InstallState.PENDING])
    updated_at: float = field(default_factory=time.time)

    def advance(self, state: InstallState) -> None:
        if not can_transition(self.state, state):
            raise InvalidTransition(
                formula=self.name,
                message=f"Illegal transition {self.state.value} -> {state.value}",
            )
        self.state = state
        self.history.append(state)
        self.updated_at = time.time()

    def fail(self, kind: str, message: str, category: str | None = None) -> None:
        self.advance(InstallState.FAILED)
        self.error_kind = kind
        self.error_message = message
        self.error_category = category
