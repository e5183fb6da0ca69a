# cli.py
from __future__ import annotations

import logging
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator

import click

from formulary.builder import BuildExecutor
from formulary.errors import EXIT_CANCELLED, EXIT_ERROR, FormularyError, exit_code_for
from formulary.fetcher import Fetcher, default_retry_policy
from formulary.ledger import Ledger
from formulary.loader import load_formulas
from formulary.model import Formula
from formulary.orchestrator import Orchestrator
from formulary.process import ProcessRunner
from formulary.settings import DEFAULT_FORMULAS, Settings, load_settings
from formulary.tester import TestRunner
from formulary.ui.console import Console, get_console, set_console


def find_formula_files() -> list[Path]:
    """Formula files in the current directory: formulary_formulas.py, then *_formulas.py."""
    found = []
    current_dir = Path(".")

    default = current_dir / DEFAULT_FORMULAS
    if default.exists():
        found.append(default)

    for path in current_dir.glob("*_formulas.py"):
        if path != default:
            found.append(path)

    return sorted(found)


def discover_formulas(formulas_arg: str | None) -> Path:
    """
    Pick the formula file from the argument, or discover it.

    Raises:
        SystemExit: if no file (or more than one candidate) is found
    """
    console = get_console()

    if formulas_arg:
        path = Path(formulas_arg)
        if not path.exists() and path.suffix != ".py":
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Formula file not found",
                f"Could not find formula file: {formulas_arg}",
                suggestion="Specify a different path:\n  formulary install NAME --formulas my_formulas.py",
            )
            sys.exit(EXIT_ERROR)
        return path

    candidates = find_formula_files()
    if not candidates:
        console.print_error(
            "No formula file found",
            "Could not find any formula files.",
            details=["Looked for:", f"  {DEFAULT_FORMULAS}", "  *_formulas.py"],
            suggestion="Specify one explicitly:\n  formulary install NAME --formulas my_formulas.py",
        )
        sys.exit(EXIT_ERROR)

    if len(candidates) > 1:
        file_list = "\n".join(f"  {f}" for f in candidates)
        console.print_error(
            "Multiple formula files found",
            "Found multiple formula files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify one explicitly:\n  formulary install NAME --formulas {DEFAULT_FORMULAS}",
        )
        sys.exit(EXIT_ERROR)

    return candidates[0]


def build_orchestrator(
    settings: Settings,
    formulas: Dict[str, Formula],
    *,
    workers: int | None = None,
    keep_workdir: bool = False,
    cancel_event: threading.Event | None = None,
) -> Orchestrator:
    runner = ProcessRunner(timeout=settings.step_timeout)
    return Orchestrator(
        formulas,
        fetcher=Fetcher(settings.cache_dir, retry_policy=default_retry_policy(settings.fetch_attempts)),
        builder=BuildExecutor(runner, keep_workdir=keep_workdir),
        tester=TestRunner(runner),
        ledger=Ledger(settings.ledger_path),
        prefix_root=settings.prefix_root,
        max_workers=workers or settings.workers,
        cancel_event=cancel_event,
    )


@contextmanager
def cancel_on_signal(orchestrator: Orchestrator) -> Iterator[None]:
    """First SIGINT/SIGTERM finishes the running step and stops; a second one aborts."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    console = get_console()

    def handler(signum, frame):
        if orchestrator.cancelled:
            raise KeyboardInterrupt
        console.print_info(f"\nReceived signal {signum}, finishing the current step then stopping...")
        orchestrator.cancel()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


def _load(ctx, formulas_arg: str | None) -> Dict[str, Formula]:
    settings: Settings = ctx.obj["settings"]
    path = discover_formulas(formulas_arg or settings.formulas_file)
    return load_formulas(path)


def _fail(ctx, exc: BaseException) -> None:
    console = get_console()
    if isinstance(exc, FormularyError):
        console.print_error(exc.kind, exc.message, details=[f"{k}={v}" for k, v in exc.details.items()])
        sys.exit(exit_code_for(exc.category))
    console.print_exception(exc)
    sys.exit(EXIT_ERROR)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--home", default=None, envvar="FORMULARY_HOME", help="State directory (cache, cellar, ledger)")
@click.pass_context
def cli(ctx, debug, home):
    """formulary: fetch, verify, build and test formulas from source."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = load_settings(home)


@cli.command()
@click.argument("name")
@click.option("--formulas", default=None, help=f"Formula file (defaults to {DEFAULT_FORMULAS} if present)")
@click.option("--workers", default=None, type=int, help="Build independent formulas in parallel")
@click.option("--force", is_flag=True, default=False, help="Rebuild even if already installed")
@click.option("--keep-workdir", is_flag=True, default=False, help="Leave build directories behind for inspection")
@click.pass_context
def install(ctx, name, formulas, workers, force, keep_workdir):
    """Install a formula and its dependencies."""
    console = get_console()
    try:
        universe = _load(ctx, formulas)
        orchestrator = build_orchestrator(
            ctx.obj["settings"], universe, workers=workers, keep_workdir=keep_workdir
        )
        console.print_install_started(name, orchestrator.plan(name))

        with cancel_on_signal(orchestrator):
            report = orchestrator.install(name, force=force)

        console.print_report(report)
        sys.exit(report.exit_code)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_CANCELLED)
    except (FormularyError, FileNotFoundError, TypeError, ValueError) as e:
        _fail(ctx, e)


@cli.command()
@click.argument("name")
@click.option("--formulas", default=None, help=f"Formula file (defaults to {DEFAULT_FORMULAS} if present)")
@click.pass_context
def test(ctx, name, formulas):
    """Run an installed formula's test procedure only."""
    console = get_console()
    try:
        universe = _load(ctx, formulas)
        orchestrator = build_orchestrator(ctx.obj["settings"], universe)
        report = orchestrator.test(name)
        console.print_report(report)
        sys.exit(report.exit_code)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_CANCELLED)
    except (FormularyError, FileNotFoundError, TypeError, ValueError) as e:
        _fail(ctx, e)


@cli.command()
@click.argument("name")
@click.option("--formulas", default=None, help=f"Formula file (defaults to {DEFAULT_FORMULAS} if present)")
@click.pass_context
def plan(ctx, name, formulas):
    """Show the order in which NAME and its dependencies would be installed."""
    console = get_console()
    try:
        universe = _load(ctx, formulas)
        orchestrator = build_orchestrator(ctx.obj["settings"], universe)
        console.print_plan(name, orchestrator.plan(name))
    except (FormularyError, FileNotFoundError, TypeError, ValueError) as e:
        _fail(ctx, e)


@cli.command(name="list")
@click.pass_context
def list_installed(ctx):
    """List formulas recorded in the installation ledger."""
    settings: Settings = ctx.obj["settings"]
    try:
        get_console().print_ledger(Ledger(settings.ledger_path).entries())
    except ValueError as e:
        _fail(ctx, e)


if __name__ == "__main__":
    cli()
