"""
Tests for running command steps.
"""
import os
import sys

import pytest

from formulary.process import EXIT_NOT_FOUND, ProcessRunner, ProcessStep


def step(tmp_path, *argv, name="step"):
    return ProcessStep(name=name, argv=list(argv), env={}, cwd=tmp_path)


@pytest.mark.skipif(not hasattr(os, "getsid"), reason="sessions are POSIX only")
def test_step_runs_in_its_own_session(tmp_path):
    result = ProcessRunner().run_step(step(tmp_path, sys.executable, "-c", "import os; print(os.getsid(0))"))
    assert result.ok
    assert int(result.output.strip()) != os.getsid(0)


def test_output_is_captured_with_stderr(tmp_path):
    code = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(4)"
    result = ProcessRunner().run_step(step(tmp_path, sys.executable, "-c", code))
    assert result.exit_code == 4
    assert "out" in result.output
    assert "err" in result.output


def test_missing_executable(tmp_path):
    result = ProcessRunner().run_step(step(tmp_path, "definitely-not-a-real-tool-xyz"))
    assert result.exit_code == EXIT_NOT_FOUND


def test_timeout(tmp_path):
    runner = ProcessRunner(timeout=0.5)
    result = runner.run_step(step(tmp_path, sys.executable, "-c", "import time; time.sleep(10)"))
    assert result.exit_code == -1
    assert "timed out" in result.output


def test_run_stops_at_first_failure(tmp_path):
    steps = [
        step(tmp_path, sys.executable, "-c", "pass", name="one"),
        step(tmp_path, sys.executable, "-c", "raise SystemExit(2)", name="two"),
        step(tmp_path, sys.executable, "-c", "pass", name="three"),
    ]
    results = ProcessRunner().run(steps)
    assert [r.name for r in results] == ["one", "two"]
    assert results[-1].exit_code == 2
