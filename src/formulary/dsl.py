# src/formulary/dsl.py
from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import InvalidFormula
from .model import Command, Dependency, DependencyKind, Formula, SourceRef


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def cmd(
    *argv: str,
    env: Optional[Mapping[str, str]] = None,
    name: str | None = None,
    cwd: str | None = None,
) -> Command:
    """Create a structured command step: cmd("cargo", "install", "--root", "{prefix}")."""
    return Command(argv=tuple(argv), env=dict(env or {}), name=name, cwd=cwd)


def build_dep(name: str) -> Dependency:
    return Dependency(name=name, kind=DependencyKind.BUILD)


def runtime_dep(name: str) -> Dependency:
    return Dependency(name=name, kind=DependencyKind.RUNTIME)


DepSpec = Union[str, Dependency]


def _as_dependency(spec: DepSpec) -> Dependency:
    if isinstance(spec, Dependency):
        return spec
    return runtime_dep(spec)


# ---------------------------------------------------------------------
# Functional Formula helper
# ---------------------------------------------------------------------

def formula(
    name: str,
    *,
    url: str,
    sha256: str = "",
    license: str = "",
    desc: str = "",
    homepage: str = "",
    version: str | None = None,
    depends_on: Optional[Sequence[DepSpec]] = None,
    build_depends_on: Optional[Sequence[str]] = None,
    install: Optional[Iterable[Command]] = None,
    test: Optional[Iterable[Command]] = None,
) -> Formula:
    """
    Declare a formula.

    `depends_on` accepts plain names (runtime) or Dependency values;
    `build_depends_on` is sugar for build-only dependencies. Declaration
    order is preserved: depends_on entries first, then build_depends_on.
    """
    deps: List[Dependency] = [_as_dependency(d) for d in (depends_on or [])]
    deps.extend(build_dep(n) for n in (build_depends_on or []))

    return Formula(
        name=name,
        source=SourceRef(url=url, sha256=sha256),
        license=license,
        desc=desc,
        homepage=homepage,
        version=version,
        dependencies=tuple(deps),
        install=tuple(install or ()),
        test=tuple(test or ()),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class FormulaBuilder:
    def __init__(self, name: str):
        self.name = name
        self._url: str = ""
        self._sha256: str = ""
        self._license: str = ""
        self._desc: str = ""
        self._homepage: str = ""
        self._version: str | None = None
        self._deps: list[Dependency] = []
        self._install: list[Command] = []
        self._test: list[Command] = []

    def source(self, url: str, sha256: str = ""):
        self._url = url
        self._sha256 = sha256
        return self

    def describe(self, desc: str = "", *, homepage: str = "", license: str = ""):
        self._desc = desc
        self._homepage = homepage
        self._license = license
        return self

    def with_version(self, version: str):
        self._version = version
        return self

    def depends_on(self, *names: str, build: bool = False):
        make = build_dep if build else runtime_dep
        self._deps.extend(make(n) for n in names)
        return self

    def install_step(self, *argv: str, env: Optional[Dict[str, str]] = None, name: str | None = None):
        self._install.append(cmd(*argv, env=env, name=name))
        return self

    def test_step(self, *argv: str, env: Optional[Dict[str, str]] = None, name: str | None = None):
        self._test.append(cmd(*argv, env=env, name=name))
        return self

    def build(self) -> Formula:
        if not self._url:
            raise InvalidFormula(formula=self.name, message="Formula has no source url")
        return Formula(
            name=self.name,
            source=SourceRef(url=self._url, sha256=self._sha256),
            license=self._license,
            desc=self._desc,
            homepage=self._homepage,
            version=self._version,
            dependencies=tuple(self._deps),
            install=tuple(self._install),
            test=tuple(self._test),
        )


def build(name: str) -> FormulaBuilder:
    """Convenience: build('tool').source(url, sha).install_step(...).build()"""
    return FormulaBuilder(name)


# ---------------------------------------------------------------------
# Universe helper
# ---------------------------------------------------------------------

def universe(*formulas: Formula) -> Dict[str, Formula]:
    """
    Turn formulas into the name -> Formula mapping the engine consumes.
    Duplicate names are rejected.
    """
    out: Dict[str, Formula] = {}
    for f in formulas:
        if f.name in out:
            raise InvalidFormula(formula=f.name, message=f"Duplicate formula name: {f.name}")
        out[f.name] = f
    return out
