# builder.py
from __future__ import annotations

import logging
import os
import re
import shutil
import tarfile
import tempfile
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Optional, Sequence

from .errors import BuildFailed
from .model import Command, Formula
from .process import ProcessRunner, ProcessStep, StepResult

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{(prefix|bin|lib|include|share|name|version|workdir)\}")


# ----------------------------------------------------------------------
# Step rendering (shared with the test runner)
# ----------------------------------------------------------------------

def placeholders(formula: Formula, prefix: Path, workdir: Path) -> Dict[str, str]:
    return {
        "prefix": str(prefix),
        "bin": str(prefix / "bin"),
        "lib": str(prefix / "lib"),
        "include": str(prefix / "include"),
        "share": str(prefix / "share"),
        "name": formula.name,
        "version": formula.version or "",
        "workdir": str(workdir),
    }


def substitute(text: str, values: Dict[str, str]) -> str:
    return _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], text)


def base_env(formula: Formula, prefix: Path, dep_prefixes: Sequence[Path] = ()) -> Dict[str, str]:
    env = {
        "PREFIX": str(prefix),
        "FORMULARY_PREFIX": str(prefix),
        "FORMULARY_NAME": formula.name,
        "FORMULARY_VERSION": formula.version or "",
    }
    if dep_prefixes:
        # dependencies' bin/ dirs come first on PATH
        paths = [str(Path(p) / "bin") for p in dep_prefixes]
        paths.append(os.environ.get("PATH", os.defpath))
        env["PATH"] = os.pathsep.join(paths)
    return env


def render_steps(
    formula: Formula,
    commands: Sequence[Command],
    *,
    workdir: Path,
    prefix: Path,
    dep_prefixes: Sequence[Path] = (),
) -> List[ProcessStep]:
    values = placeholders(formula, prefix, workdir)
    env = base_env(formula, prefix, dep_prefixes)
    out: List[ProcessStep] = []
    for c in commands:
        step_env = dict(env)
        step_env.update({k: substitute(v, values) for k, v in c.env})
        cwd = (workdir / substitute(c.cwd, values)).resolve() if c.cwd else workdir
        out.append(
            ProcessStep(
                name=c.display,
                argv=[substitute(a, values) for a in c.argv],
                env=step_env,
                cwd=cwd,
            )
        )
    return out


def combined_output(results: Sequence[StepResult]) -> str:
    parts = []
    for r in results:
        parts.append(f"==> {' '.join(r.argv)}\n{r.output}")
    return "".join(parts)


# ----------------------------------------------------------------------
# Scoped working directory + unpacking
# ----------------------------------------------------------------------

@contextmanager
def working_directory(name: str, root: Optional[Path] = None, keep: bool = False) -> Iterator[Path]:
    """Temporary build area, removed however the block exits unless `keep`."""
    if root is not None:
        root.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"formulary-{name}-", dir=str(root) if root else None))
    try:
        yield path
    finally:
        if keep:
            logger.info("[%s] keeping working directory %s", name, path)
        else:
            shutil.rmtree(path, ignore_errors=True)
            logger.debug("[%s] removed working directory %s", name, path)


def _is_safe_member(name: str) -> bool:
    p = PurePosixPath(name)
    return not p.is_absolute() and ".." not in p.parts


def unpack(archive: Path, dest: Path) -> Path:
    """
    Unpack `archive` into `dest` and return the source root.

    A single top-level directory (foo-1.0/...) becomes the source root.
    Files that are not archives are copied in as-is.
    """
    dest.mkdir(parents=True, exist_ok=True)
    name = archive.name
    if "--" in name:
        name = name.split("--", 1)[1]

    if tarfile.is_tarfile(archive):
        with tarfile.open(archive, mode="r:*") as tar:
            members = tar.getmembers()
            bad = [m.name for m in members if not _is_safe_member(m.name)]
            if bad:
                raise ValueError(f"Archive {name} has unsafe paths: {bad[:5]}")
            if hasattr(tarfile, "data_filter"):
                tar.extractall(path=dest, members=members, filter="data")
            else:
                tar.extractall(path=dest, members=members)
    elif zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as zf:
            bad = [n for n in zf.namelist() if not _is_safe_member(n)]
            if bad:
                raise ValueError(f"Archive {name} has unsafe paths: {bad[:5]}")
            zf.extractall(dest)
    else:
        shutil.copyfile(archive, dest / name)
        return dest

    entries = [p for p in dest.iterdir() if p.name not in ("__MACOSX",)]
    if len(entries) == 1 and entries[0].is_dir():
        return entries[0]
    return dest


# ----------------------------------------------------------------------
# Build executor
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class BuildResult:
    prefix: Path
    output: str
    steps: List[StepResult]


class BuildExecutor:
    """
    Runs a formula's install procedure against a verified archive.

    Only the prefix survives: the working directory is always removed and
    a failed build leaves no prefix behind.
    """

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        keep_workdir: bool = False,
        work_root: str | Path | None = None,
    ):
        self.runner = runner or ProcessRunner()
        self.keep_workdir = keep_workdir
        self.work_root = Path(work_root).expanduser().resolve() if work_root else None

    def build(
        self,
        formula: Formula,
        archive: Path,
        prefix: str | Path,
        dep_prefixes: Sequence[Path] = (),
    ) -> BuildResult:
        prefix = Path(prefix).expanduser().resolve()
        if prefix.exists():
            shutil.rmtree(prefix)
        prefix.mkdir(parents=True)

        try:
            with working_directory(formula.name, self.work_root, keep=self.keep_workdir) as work:
                try:
                    src = unpack(archive, work / "src")
                except (tarfile.TarError, zipfile.BadZipFile, ValueError, OSError) as e:
                    raise BuildFailed(
                        formula=formula.name,
                        message=f"Could not unpack {archive.name}: {e}",
                        step="unpack",
                    ) from e

                steps = render_steps(
                    formula, formula.install, workdir=src, prefix=prefix, dep_prefixes=dep_prefixes
                )
                if not steps:
                    logger.warning("[%s] no install steps declared", formula.name)

                results = self.runner.run(steps)
                output = combined_output(results)
                for step in results:
                    logger.info("[%s] build: %s (exit=%d)", formula.name, step.name, step.exit_code)

                failed = next((r for r in results if not r.ok), None)
                if failed is not None:
                    raise BuildFailed(
                        formula=formula.name,
                        message=f"step '{failed.name}' failed (exit={failed.exit_code})",
                        output=output,
                        step=failed.name,
                        exit_code=failed.exit_code,
                    )
        except BaseException:
            shutil.rmtree(prefix, ignore_errors=True)
            raise

        return BuildResult(prefix=prefix, output=output, steps=results)
