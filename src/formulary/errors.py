# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Captured output is clipped to its tail so reports stay readable.
OUTPUT_TAIL = 4000


def tail(text: str | None, limit: int = OUTPUT_TAIL) -> str:
    if not text:
        return ""
    return text[-limit:]


@dataclass(eq=False)
class FormularyError(Exception):
    """
    Structured engine error with enough context for:
      - clean CLI output
      - the per-formula report
      - debugging without full tracebacks
    """
    formula: str
    message: str
    output: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    kind = "FormularyError"
    category = "error"

    def __post_init__(self) -> None:
        self.output = tail(self.output)
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"formula={self.formula}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Resolution
# ----------------------------------------------------------------------

@dataclass(eq=False)
class UnknownDependency(FormularyError):
    kind = "UnknownDependency"
    category = "resolution"

    @classmethod
    def for_name(cls, requester: str, missing: str, known: List[str]) -> "UnknownDependency":
        if requester == missing:
            msg = f"No formula named '{missing}'"
        else:
            msg = f"Formula '{requester}' depends on unknown formula '{missing}'"
        return cls(
            formula=requester,
            message=msg,
            details={"missing": missing, "known": sorted(known)},
        )


@dataclass(eq=False)
class CyclicDependency(FormularyError):
    cycle: List[str] = field(default_factory=list)

    kind = "CyclicDependency"
    category = "resolution"

    @classmethod
    def for_cycle(cls, cycle: List[str]) -> "CyclicDependency":
        return cls(
            formula=cycle[0],
            message="Dependency cycle: " + " -> ".join(cycle),
            cycle=list(cycle),
            details={"cycle": " -> ".join(cycle)},
        )


# ----------------------------------------------------------------------
# Fetch / verify
# ----------------------------------------------------------------------

@dataclass(eq=False)
class MissingIntegrityDigest(FormularyError):
    kind = "MissingIntegrityDigest"
    category = "fetch"


@dataclass(eq=False)
class IntegrityMismatch(FormularyError):
    expected: str = ""
    actual: str = ""

    kind = "IntegrityMismatch"
    category = "fetch"

    def __post_init__(self) -> None:
        self.details.setdefault("expected", self.expected)
        self.details.setdefault("actual", self.actual)
        super().__post_init__()


@dataclass(eq=False)
class FetchFailed(FormularyError):
    attempts: int = 0

    kind = "FetchFailed"
    category = "fetch"

    def __post_init__(self) -> None:
        self.details.setdefault("attempts", self.attempts)
        super().__post_init__()


# ----------------------------------------------------------------------
# Build / test
# ----------------------------------------------------------------------

@dataclass(eq=False)
class BuildFailed(FormularyError):
    step: Optional[str] = None
    exit_code: Optional[int] = None

    kind = "BuildFailed"
    category = "build"

    def __post_init__(self) -> None:
        if self.step:
            self.details.setdefault("step", self.step)
        if self.exit_code is not None:
            self.details.setdefault("exit_code", self.exit_code)
        super().__post_init__()


@dataclass(eq=False)
class TestFailed(FormularyError):
    step: Optional[str] = None
    exit_code: Optional[int] = None

    kind = "TestFailed"
    category = "test"

    def __post_init__(self) -> None:
        if self.step:
            self.details.setdefault("step", self.step)
        if self.exit_code is not None:
            self.details.setdefault("exit_code", self.exit_code)
        super().__post_init__()

    # not a test case
    __test__ = False


# ----------------------------------------------------------------------
# Model / state
# ----------------------------------------------------------------------

@dataclass(eq=False)
class InvalidFormula(FormularyError):
    kind = "InvalidFormula"
    category = "resolution"


@dataclass(eq=False)
class InvalidTransition(FormularyError):
    kind = "InvalidTransition"
    category = "state"


@dataclass(eq=False)
class NotInstalled(FormularyError):
    kind = "NotInstalled"
    category = "state"


# ----------------------------------------------------------------------
# Exit codes (CLI)
# ----------------------------------------------------------------------

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130

EXIT_CODES: Dict[str, int] = {
    "resolution": 3,
    "fetch": 4,
    "build": 5,
    "test": 6,
    "state": 7,
}


def exit_code_for(category: str | None) -> int:
    if category is None:
        return EXIT_OK
    return EXIT_CODES.get(category, EXIT_ERROR)
