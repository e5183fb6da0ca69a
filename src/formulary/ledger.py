# ledger.py
from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from .model import Formula, InstallRecord, InstallState

logger = logging.getLogger(__name__)

LEDGER_VERSION = 1


# -------------------- Persisted schema --------------------

class LedgerEntry(BaseModel):
    name: str
    digest: str
    state: InstallState
    prefix: Optional[str] = None
    version: Optional[str] = None
    error_kind: Optional[str] = None
    updated_at: float = Field(default_factory=time.time)


class LedgerFile(BaseModel):
    version: int = LEDGER_VERSION
    entries: Dict[str, LedgerEntry] = Field(default_factory=dict)


# -------------------- Ledger --------------------

class Ledger:
    """
    Installation ledger.

    The persisted name -> {digest, state, prefix} map used to skip work on
    reruns. Without a path it lives in memory only; with one, every
    update is written to disk atomically.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path).expanduser().resolve() if path else None
        self._lock = threading.RLock()
        self._data = self._load()

    def _load(self) -> LedgerFile:
        if self.path is None or not self.path.exists():
            return LedgerFile()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            data = LedgerFile.model_validate(raw)
        except (json.JSONDecodeError, ValidationError) as e:
            raise ValueError(f"Ledger at {self.path} is corrupt: {e}") from e
        if data.version != LEDGER_VERSION:
            raise ValueError(f"Unsupported ledger version {data.version} in {self.path}")
        return data

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(self._data.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(self.path)

    def entry(self, name: str) -> Optional[LedgerEntry]:
        with self._lock:
            return self._data.entries.get(name)

    def entries(self) -> List[LedgerEntry]:
        with self._lock:
            return [self._data.entries[k] for k in sorted(self._data.entries)]

    def installed(self, formula: Formula) -> Optional[LedgerEntry]:
        """Entry proving `formula` is already installed at its current digest."""
        e = self.entry(formula.name)
        if e is None or e.state is not InstallState.INSTALLED:
            return None
        if not formula.digest or e.digest != formula.digest:
            return None
        if not e.prefix or not Path(e.prefix).is_dir():
            return None
        return e

    def persist(self, rec: InstallRecord) -> None:
        """Write a terminal record through to disk."""
        with self._lock:
            self._data.entries[rec.name] = LedgerEntry(
                name=rec.name,
                digest=rec.digest,
                state=rec.state,
                prefix=rec.prefix,
                version=rec.version,
                error_kind=rec.error_kind,
                updated_at=rec.updated_at,
            )
            self._save()


# -------------------- One install run --------------------

class InstallRun:
    """
    InstallRecords of a single install() call.

    Each run owns its records, so concurrent runs on one engine never
    step on each other's state. Terminal states are written through to
    the shared Ledger.
    """

    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        self._lock = threading.Lock()
        self._records: Dict[str, InstallRecord] = {}

    def begin(self, formula: Formula, prefix: str | Path | None = None) -> InstallRecord:
        with self._lock:
            rec = InstallRecord(
                name=formula.name,
                digest=formula.digest,
                version=formula.version,
                prefix=str(prefix) if prefix else None,
            )
            self._records[formula.name] = rec
            return rec

    def record(self, name: str) -> Optional[InstallRecord]:
        with self._lock:
            return self._records.get(name)

    def records(self) -> Dict[str, InstallRecord]:
        with self._lock:
            return dict(self._records)

    def transition(self, name: str, state: InstallState) -> InstallRecord:
        with self._lock:
            rec = self._records[name]
            rec.advance(state)
        logger.debug("[%s] state -> %s", name, state.value)
        if state is InstallState.INSTALLED:
            self.ledger.persist(rec)
        return rec

    def fail(self, name: str, kind: str, message: str, category: str | None = None) -> InstallRecord:
        """Mark `name` failed. A record that already reached a terminal state is left alone."""
        with self._lock:
            rec = self._records[name]
            if rec.state.terminal:
                logger.error("[%s] %s after reaching %s: %s", name, kind, rec.state.value, message)
                return rec
            rec.fail(kind, message, category)
        logger.debug("[%s] state -> failed (%s)", name, kind)
        self.ledger.persist(rec)
        return rec

    def mark_cached(self, name: str, entry: LedgerEntry) -> InstallRecord:
        with self._lock:
            rec = self._records[name]
            rec.cached = True
            rec.prefix = entry.prefix
            rec.advance(InstallState.INSTALLED)
            return rec
