from .dsl import formula, cmd, build_dep, runtime_dep, universe, FormulaBuilder, build
from .model import Command, Dependency, DependencyKind, Formula, InstallState, SourceRef
from .orchestrator import Orchestrator, InstallReport, Outcome
from .loader import load_formulas

__all__ = [
    "formula", "cmd", "build_dep", "runtime_dep", "universe", "FormulaBuilder", "build",
    "Command", "Dependency", "DependencyKind", "Formula", "InstallState", "SourceRef",
    "Orchestrator", "InstallReport", "Outcome", "load_formulas",
]
