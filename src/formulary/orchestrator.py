# orchestrator.py
from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .builder import BuildExecutor
from .errors import (
    EXIT_CANCELLED,
    EXIT_OK,
    FormularyError,
    NotInstalled,
    UnknownDependency,
    exit_code_for,
    tail,
)
from .fetcher import Fetcher
from .ledger import InstallRun, Ledger
from .model import Formula, InstallState
from .resolver import build_graph, resolve
from .tester import TestRunner

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "InternalError"


@dataclass
class Outcome:
    """Terminal view of one formula after a run."""
    name: str
    state: InstallState
    prefix: Optional[str] = None
    cached: bool = False
    error_kind: Optional[str] = None
    category: Optional[str] = None
    message: Optional[str] = None
    output: str = ""
    blocked_by: Optional[str] = None
    cancelled: bool = False
    history: List[InstallState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state in (InstallState.INSTALLED, InstallState.TESTED)

    @property
    def status(self) -> str:
        if self.ok:
            return "installed (cached)" if self.cached else self.state.value
        if self.blocked_by:
            return f"skipped (needs {self.blocked_by})"
        if self.cancelled:
            return "cancelled"
        return f"failed ({self.error_kind})"


@dataclass
class InstallReport:
    target: str
    order: List[str]
    outcomes: Dict[str, Outcome] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and all(o.ok for o in self.outcomes.values())

    @property
    def failures(self) -> List[Outcome]:
        return [o for o in self.outcomes.values() if o.state is InstallState.FAILED]

    @property
    def failure_kind(self) -> Optional[str]:
        failures = self.failures
        return failures[0].error_kind if failures else None

    @property
    def exit_code(self) -> int:
        failures = self.failures
        if failures:
            return exit_code_for(failures[0].category or "error")
        if self.cancelled:
            return EXIT_CANCELLED
        return EXIT_OK


class Orchestrator:
    """
    Drives resolve -> fetch/verify -> build -> (target only) test -> record.

    A failure stops the failed formula's dependents; independent branches
    that already finished stay installed.
    """

    def __init__(
        self,
        formulas: Mapping[str, Formula],
        *,
        fetcher: Fetcher,
        prefix_root: str | Path,
        builder: Optional[BuildExecutor] = None,
        tester: Optional[TestRunner] = None,
        ledger: Optional[Ledger] = None,
        max_workers: int = 1,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.formulas = formulas
        self.fetcher = fetcher
        self.builder = builder or BuildExecutor()
        self.tester = tester or TestRunner()
        self.ledger = ledger or Ledger()
        self.prefix_root = Path(prefix_root).expanduser().resolve()
        self.max_workers = max(1, int(max_workers or 1))
        self.cancel_event = cancel_event or threading.Event()

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ----------------------------------------------------------------
    # helpers
    # ----------------------------------------------------------------

    def prefix_for(self, formula: Formula) -> Path:
        return self.prefix_root / formula.name / (formula.version or "HEAD")

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            if name not in self._locks:
                self._locks[name] = threading.Lock()
            return self._locks[name]

    def cancel(self) -> None:
        """Let the running step finish, then stop before the next formula."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    # ----------------------------------------------------------------
    # public API
    # ----------------------------------------------------------------

    def plan(self, name: str) -> List[str]:
        return resolve(name, self.formulas)

    def install(self, name: str, *, force: bool = False) -> InstallReport:
        # resolution errors surface here, before any I/O
        order = resolve(name, self.formulas)
        logger.info("install %s: order %s", name, order)

        run = InstallRun(self.ledger)
        for n in order:
            run.begin(self.formulas[n], self.prefix_for(self.formulas[n]))

        started: set[str] = set()
        if self.max_workers == 1:
            self._run_sequential(run, order, name, force, started)
        else:
            self._run_parallel(run, order, name, force, started)

        return self._report(run, name, order, started)

    def test(self, name: str) -> InstallReport:
        """Run only the test procedure of an installed formula. The ledger is not modified."""
        if name not in self.formulas:
            raise UnknownDependency.for_name(name, name, list(self.formulas))
        formula = self.formulas[name]

        entry = self.ledger.entry(name)
        if entry is None or entry.state is not InstallState.INSTALLED or not entry.prefix:
            raise NotInstalled(formula=name, message=f"Formula '{name}' is not installed")
        if not Path(entry.prefix).is_dir():
            raise NotInstalled(formula=name, message=f"Install prefix {entry.prefix} is missing")

        outcome = Outcome(name=name, state=InstallState.TESTED, prefix=entry.prefix)
        with self._lock_for(name):
            try:
                result = self.tester.run(formula, entry.prefix, self._dep_prefixes(name))
                outcome.output = tail(result.output)
            except FormularyError as e:
                outcome.state = InstallState.FAILED
                outcome.error_kind = e.kind
                outcome.category = e.category
                outcome.message = e.message
                outcome.output = e.output

        return InstallReport(target=name, order=[name], outcomes={name: outcome})

    # ----------------------------------------------------------------
    # scheduling
    # ----------------------------------------------------------------

    def _dep_prefixes(self, name: str, run: Optional[InstallRun] = None) -> List[Path]:
        """Install prefixes of every transitive dependency, nearest first."""
        seen: List[str] = []
        stack = list(reversed(self.formulas[name].dependency_names))
        while stack:
            dep = stack.pop()
            if dep in seen:
                continue
            seen.append(dep)
            stack.extend(reversed(self.formulas[dep].dependency_names))

        prefixes: List[Path] = []
        for dep in seen:
            rec = run.record(dep) if run is not None else None
            prefix = rec.prefix if rec is not None else None
            if prefix is None:
                entry = self.ledger.entry(dep)
                prefix = entry.prefix if entry is not None else None
            if prefix:
                prefixes.append(Path(prefix))
        return prefixes

    def _deps_installed(self, run: InstallRun, name: str) -> bool:
        for dep in self.formulas[name].dependency_names:
            rec = run.record(dep)
            if rec is None or rec.state is not InstallState.INSTALLED:
                return False
        return True

    def _run_sequential(
        self, run: InstallRun, order: List[str], target: str, force: bool, started: set[str]
    ) -> None:
        for n in order:
            if self.cancelled:
                logger.warning("cancelled before %s", n)
                break
            if not self._deps_installed(run, n):
                logger.info("[%s] skipped: a dependency did not install", n)
                continue
            started.add(n)
            self._process(run, n, is_target=(n == target), force=force)

    def _run_parallel(
        self, run: InstallRun, order: List[str], target: str, force: bool, started: set[str]
    ) -> None:
        dependents, indeg = build_graph(order, self.formulas)
        position = {n: i for i, n in enumerate(order)}
        ready: List[str] = [n for n in order if indeg[n] == 0]
        in_flight: Dict = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while ready or in_flight:
                # schedule everything currently ready
                while ready and not self.cancelled:
                    n = ready.pop(0)
                    started.add(n)
                    fut = pool.submit(self._process, run, n, is_target=(n == target), force=force)
                    in_flight[fut] = n

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    n = in_flight.pop(fut)
                    fut.result()

                    # unlock dependents only if installed
                    rec = run.record(n)
                    if rec is not None and rec.state is InstallState.INSTALLED:
                        for child in dependents[n]:
                            indeg[child] -= 1
                            if indeg[child] == 0:
                                ready.append(child)
                ready.sort(key=position.__getitem__)

    # ----------------------------------------------------------------
    # one formula
    # ----------------------------------------------------------------

    def _process(self, run: InstallRun, name: str, *, is_target: bool, force: bool) -> None:
        formula = self.formulas[name]
        prefix = self.prefix_for(formula)
        rec = run.record(name)

        with self._lock_for(name):
            # checked under the lock: a concurrent run may have just installed it
            if not force:
                entry = self.ledger.installed(formula)
                if entry is not None:
                    logger.info("[%s] already installed at %s, skipping", name, entry.prefix)
                    run.mark_cached(name, entry)
                    return

            try:
                run.transition(name, InstallState.FETCHING)
                fetched = self.fetcher.fetch(formula)
                run.transition(name, InstallState.VERIFIED)

                run.transition(name, InstallState.BUILDING)
                deps = self._dep_prefixes(name, run)
                built = self.builder.build(formula, fetched.path, prefix, deps)
                rec.build_output = tail(built.output)
                run.transition(name, InstallState.BUILT)

                if is_target:
                    tested = self.tester.run(formula, prefix, deps)
                    rec.test_output = tail(tested.output)
                    run.transition(name, InstallState.TESTED)

                run.transition(name, InstallState.INSTALLED)
                logger.info("[%s] installed at %s", name, prefix)

            except FormularyError as e:
                if e.category == "test":
                    rec.test_output = e.output
                else:
                    rec.build_output = e.output
                run.fail(name, e.kind, e.message, e.category)
                logger.error("[%s] %s: %s", name, e.kind, e.message)

            except Exception as e:
                logger.exception("[%s] unexpected error", name)
                run.fail(name, INTERNAL_ERROR, f"{type(e).__name__}: {e}", "error")

    # ----------------------------------------------------------------
    # report
    # ----------------------------------------------------------------

    def _report(self, run: InstallRun, target: str, order: List[str], started: set[str]) -> InstallReport:
        report = InstallReport(target=target, order=list(order))
        for n in order:
            rec = run.record(n)
            out = Outcome(
                name=n,
                state=rec.state,
                prefix=rec.prefix,
                cached=rec.cached,
                history=list(rec.history),
            )

            if rec.state is InstallState.FAILED:
                out.error_kind = rec.error_kind
                out.category = rec.error_category
                out.message = rec.error_message
                out.output = rec.test_output if out.category == "test" else rec.build_output

            elif n not in started:
                out.blocked_by = self._blocker(n, report)
                if out.blocked_by is None:
                    out.cancelled = True
                    report.cancelled = True

            report.outcomes[n] = out
        return report

    def _blocker(self, name: str, report: InstallReport) -> Optional[str]:
        """The failed formula that kept `name` from being attempted, if any."""
        for dep in self.formulas[name].dependency_names:
            prior = report.outcomes.get(dep)
            if prior is None:
                continue
            if prior.state is InstallState.FAILED:
                return dep
            if prior.blocked_by:
                return prior.blocked_by
        return None
