# process.py
from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

# Exit code reported when the executable cannot be started at all.
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class ProcessStep:
    """A fully-rendered step: placeholders already substituted."""
    name: str
    argv: Sequence[str]
    env: Mapping[str, str]
    cwd: Path


@dataclass(frozen=True)
class StepResult:
    name: str
    argv: Sequence[str]
    exit_code: int
    output: str
    duration: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ProcessRunner:
    """
    Runs ordered command steps and reports exit status + captured output.

    Steps are opaque: the runner only looks at exit codes. The first
    failing step stops the sequence; results so far are returned.
    """

    def __init__(self, timeout: Optional[float] = None, inherit_env: bool = True):
        self.timeout = timeout
        self.inherit_env = inherit_env

    def _env(self, overrides: Mapping[str, str]) -> Dict[str, str]:
        env = os.environ.copy() if self.inherit_env else {"PATH": os.environ.get("PATH", "")}
        env.update(overrides)
        return env

    def run_step(self, step: ProcessStep) -> StepResult:
        started = time.monotonic()
        logger.debug("run %s in %s", list(step.argv), step.cwd)
        try:
            proc = subprocess.run(
                list(step.argv),
                cwd=str(step.cwd),
                # own session: a Ctrl-C aimed at formulary must not reach the step
                start_new_session=True,
                env=self._env(step.env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
            code, output = proc.returncode, proc.stdout or ""
        except FileNotFoundError as e:
            code, output = EXIT_NOT_FOUND, f"{step.argv[0]}: command not found ({e})\n"
        except PermissionError as e:
            code, output = EXIT_NOT_FOUND - 1, f"{step.argv[0]}: permission denied ({e})\n"
        except subprocess.TimeoutExpired as e:
            out = e.output or ""
            if isinstance(out, bytes):
                out = out.decode("utf-8", "replace")
            code, output = -1, out + f"\ntimed out after {self.timeout}s\n"

        return StepResult(
            name=step.name,
            argv=tuple(step.argv),
            exit_code=code,
            output=output,
            duration=time.monotonic() - started,
        )

    def run(self, steps: Sequence[ProcessStep]) -> List[StepResult]:
        results: List[StepResult] = []
        for step in steps:
            res = self.run_step(step)
            results.append(res)
            if not res.ok:
                logger.debug("step %r failed (exit=%d), stopping", step.name, res.exit_code)
                break
        return results
