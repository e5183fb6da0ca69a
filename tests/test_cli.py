"""
Tests for the formulary command line.
"""
import json
import os
import signal
import subprocess
import sys
import time

import pytest
from click.testing import CliRunner

from conftest import make_tarball, sha256
from formulary.cli import cli

INSTALL = (
    "import os, pathlib\n"
    "b = pathlib.Path(os.environ['PREFIX'], 'bin')\n"
    "b.mkdir(parents=True, exist_ok=True)\n"
    "(b / 'hello').write_text('hi')\n"
)
CHECK = "import os, sys; sys.exit(0 if os.path.exists(os.path.join(os.environ['PREFIX'], 'bin', 'hello')) else 1)"

FORMULA_FILE = """
from formulary.dsl import cmd, formula

PY = {python!r}


def formulas():
    return [
        formula("libgreet", url={lib_url!r}, sha256={lib_digest!r},
                install=[cmd(PY, "-c", {lib_prepare!r}), cmd(PY, "-c", {install!r})]),
        formula("hello", url={url!r}, sha256={digest!r}, depends_on=["libgreet"],
                install=[cmd(PY, "-c", {install!r})],
                test=[cmd(PY, "-c", {check!r})]),
    ]
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in (
        "FORMULARY_HOME",
        "FORMULARY_CACHE",
        "FORMULARY_PREFIX_ROOT",
        "FORMULARY_FORMULAS",
        "FORMULARY_FETCH_ATTEMPTS",
        "FORMULARY_WORKERS",
        "FORMULARY_STEP_TIMEOUT",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def home(tmp_path):
    return tmp_path / "home"


def write_formulas(tmp_path, *, digest=None, lib_prepare="pass"):
    archives = {}
    for name in ("libgreet", "hello"):
        data = make_tarball({"README": f"{name}\n"}, top=f"{name}-1.0")
        path = tmp_path / f"{name}-1.0.tar.gz"
        path.write_bytes(data)
        archives[name] = (path.as_uri(), sha256(data))

    path = tmp_path / "demo_formulas.py"
    path.write_text(FORMULA_FILE.format(
        python=sys.executable,
        lib_url=archives["libgreet"][0],
        lib_digest=archives["libgreet"][1],
        url=archives["hello"][0],
        digest=archives["hello"][1] if digest is None else digest,
        install=INSTALL,
        lib_prepare=lib_prepare,
        check=CHECK,
    ))
    return path


def run(home, *args):
    return CliRunner().invoke(cli, ["--home", str(home), *args])


def test_plan(tmp_path, home):
    result = run(home, "plan", "hello", "--formulas", str(write_formulas(tmp_path)))
    assert result.exit_code == 0, result.output
    assert "1. libgreet" in result.output
    assert "2. hello" in result.output


def test_install_then_list(tmp_path, home):
    formulas = str(write_formulas(tmp_path))
    result = run(home, "install", "hello", "--formulas", formulas)
    assert result.exit_code == 0, result.output
    assert "hello: INSTALLED" in result.output

    ledger = json.loads((home / "ledger.json").read_text())
    assert ledger["entries"]["hello"]["state"] == "installed"
    assert (home / "cellar" / "hello" / "1.0" / "bin" / "hello").exists()

    listed = run(home, "list")
    assert listed.exit_code == 0
    assert "libgreet 1.0 [installed]" in listed.output


def test_reinstall_uses_ledger(tmp_path, home):
    formulas = str(write_formulas(tmp_path))
    run(home, "install", "hello", "--formulas", formulas)
    again = run(home, "install", "hello", "--formulas", formulas)
    assert again.exit_code == 0
    assert "INSTALLED (CACHED)" in again.output


def test_test_command(tmp_path, home):
    formulas = str(write_formulas(tmp_path))
    assert run(home, "test", "hello", "--formulas", formulas).exit_code == 7

    run(home, "install", "hello", "--formulas", formulas)
    result = run(home, "test", "hello", "--formulas", formulas)
    assert result.exit_code == 0, result.output


def test_missing_digest_exit_code(tmp_path, home):
    result = run(home, "install", "hello", "--formulas", str(write_formulas(tmp_path, digest="")))
    assert result.exit_code == 4
    assert "MISSINGINTEGRITYDIGEST" in result.output.upper()


def test_unknown_formula_exit_code(tmp_path, home):
    result = run(home, "install", "nope", "--formulas", str(write_formulas(tmp_path)))
    assert result.exit_code == 3
    assert "nope" in result.output


def test_missing_formula_file(tmp_path, home):
    result = run(home, "install", "hello", "--formulas", str(tmp_path / "absent.py"))
    assert result.exit_code == 1


def test_list_empty(home):
    result = run(home, "list")
    assert result.exit_code == 0
    assert "No formulas installed." in result.output


@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
def test_interrupt_lets_the_running_step_finish(tmp_path, home):
    started = tmp_path / "started"
    prepare = f"import pathlib, time; pathlib.Path({str(started)!r}).write_text('x'); time.sleep(2)"
    formulas = write_formulas(tmp_path, lib_prepare=prepare)

    proc = subprocess.Popen(
        [sys.executable, "-m", "formulary.cli", "--home", str(home), "install", "hello", "--formulas", str(formulas)],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        start_new_session=True,
    )
    try:
        deadline = time.monotonic() + 60
        while not started.exists():
            assert proc.poll() is None, proc.stdout.read()
            assert time.monotonic() < deadline, "build step never started"
            time.sleep(0.05)
        # what a terminal does on Ctrl-C: signal the whole foreground group
        os.killpg(proc.pid, signal.SIGINT)
        output, _ = proc.communicate(timeout=60)
    finally:
        if proc.poll() is None:
            proc.kill()

    assert proc.returncode == 130, output
    entries = json.loads((home / "ledger.json").read_text())["entries"]
    assert entries["libgreet"]["state"] == "installed"
    assert "hello" not in entries
