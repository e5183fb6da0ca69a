# tester.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from .builder import combined_output, render_steps, working_directory
from .errors import TestFailed
from .model import Formula
from .process import ProcessRunner, StepResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TestResult:
    output: str
    steps: List[StepResult]

    __test__ = False


class TestRunner:
    """Runs a formula's test procedure against its installed prefix."""

    __test__ = False

    def __init__(self, runner: Optional[ProcessRunner] = None, work_root: str | Path | None = None):
        self.runner = runner or ProcessRunner()
        self.work_root = Path(work_root).expanduser().resolve() if work_root else None

    def run(self, formula: Formula, prefix: str | Path, dep_prefixes: Sequence[Path] = ()) -> TestResult:
        prefix = Path(prefix).expanduser().resolve()
        if not formula.test:
            logger.warning("[%s] no test steps declared, nothing to verify", formula.name)
            return TestResult(output="", steps=[])

        with working_directory(f"{formula.name}-test", self.work_root) as scratch:
            steps = render_steps(
                formula, formula.test, workdir=scratch, prefix=prefix, dep_prefixes=dep_prefixes
            )
            results = self.runner.run(steps)

        output = combined_output(results)
        failed = next((r for r in results if not r.ok), None)
        if failed is not None:
            raise TestFailed(
                formula=formula.name,
                message=f"test step '{failed.name}' failed (exit={failed.exit_code})",
                output=output,
                step=failed.name,
                exit_code=failed.exit_code,
            )

        logger.info("[%s] test: %d step(s) passed", formula.name, len(results))
        return TestResult(output=output, steps=results)
