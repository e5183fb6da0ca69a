# loader.py
from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Dict

from .dsl import universe
from .model import Formula

logger = logging.getLogger(__name__)


def load_formulas(path: str | Path) -> Dict[str, Formula]:
    """
    Load a formula universe from a python file path.

    The file must define either:
      - formulas() -> List[Formula]
      - FORMULAS = [Formula, ...]

    Returns:
      Dict[name, Formula]
    """
    src = Path(path).expanduser().resolve()
    if not src.exists():
        raise FileNotFoundError(f"Formula file not found: {src}")
    if src.suffix != ".py":
        raise ValueError(f"Formula file must be a .py file, got: {src.name}")

    module_name = f"formulary_formulas_{src.stem}"
    globals_dict = runpy.run_path(str(src), run_name=module_name)

    found = None
    if "formulas" in globals_dict and callable(globals_dict["formulas"]):
        found = globals_dict["formulas"]()
    elif "FORMULAS" in globals_dict:
        found = globals_dict["FORMULAS"]

    if isinstance(found, dict):
        found = list(found.values())

    if not isinstance(found, list) or not all(isinstance(f, Formula) for f in found):
        raise TypeError(
            "Formula file must return/define a List[Formula]. "
            "Define formulas() -> List[Formula] or FORMULAS = [Formula, ...]."
        )

    logger.debug("loaded %d formula(s) from %s", len(found), src)
    return universe(*found)
