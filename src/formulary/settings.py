from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_HOME = "~/.formulary"
DEFAULT_FORMULAS = "formulary_formulas.py"


@dataclass(frozen=True)
class Settings:
    home: Path
    cache_dir: Path
    prefix_root: Path
    ledger_path: Path
    formulas_file: str | None
    fetch_attempts: int
    workers: int
    step_timeout: float | None


def load_settings(home: str | Path | None = None) -> Settings:
    env = os.environ
    root = Path(home or env.get("FORMULARY_HOME", DEFAULT_HOME)).expanduser()
    timeout = env.get("FORMULARY_STEP_TIMEOUT")
    return Settings(
        home=root,
        cache_dir=Path(env.get("FORMULARY_CACHE", root / "cache")).expanduser(),
        prefix_root=Path(env.get("FORMULARY_PREFIX_ROOT", root / "cellar")).expanduser(),
        ledger_path=root / "ledger.json",
        formulas_file=env.get("FORMULARY_FORMULAS"),
        fetch_attempts=int(env.get("FORMULARY_FETCH_ATTEMPTS", "3")),
        workers=int(env.get("FORMULARY_WORKERS", "1")),
        step_timeout=float(timeout) if timeout else None,
    )
