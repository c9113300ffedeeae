"""history_store.py

Filesystem-backed, append-only history.

- ``HistoryLogger``: one flat operations ledger (operations.jsonl) that every
  CLI action appends to.
- ``SessionStore``: one ledger per logical session ({session_id}.jsonl)
  holding full audit records, used for replay and review.

Important:
- Lines are only ever appended. Nothing rewrites or deletes history.
- Ordering is the only guarantee; readers iterate front to back.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, Iterable, List, Optional

from .events import EventSink

logger = logging.getLogger(__name__)


def _append_jsonl(path: str, record: Dict[str, Any]) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    line = json.dumps(record, ensure_ascii=False)
    with open(path, "a", encoding="utf-8") as f:
        f.write(line + "\n")


def _iter_jsonl(path: str) -> Iterable[Dict[str, Any]]:
    if not os.path.exists(path):
        return
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("skipping unparseable ledger line in %s", path)
                continue
            if isinstance(obj, dict):
                yield obj


class HistoryLogger:
    def __init__(self, history_dir: str, file_name: str = "operations.jsonl") -> None:
        self.history_dir = os.path.abspath(history_dir)
        self.file_name = file_name

    @property
    def path(self) -> str:
        return os.path.join(self.history_dir, self.file_name)

    def log(self, event: Dict[str, Any]) -> None:
        record = dict(event)
        record["ts"] = int(time.time() * 1000)
        _append_jsonl(self.path, record)

    def __call__(self, event: Dict[str, Any]) -> None:
        self.log(event)

    def iter_events(self) -> Iterable[Dict[str, Any]]:
        return _iter_jsonl(self.path)


class SessionStore:
    """Per-session ledgers.

    Layout:
        {base_dir}/{session_id}.jsonl
    """

    def __init__(self, base_dir: str) -> None:
        self.base_dir = os.path.abspath(base_dir)

    def path_for(self, session_id: str) -> str:
        if not session_id or os.sep in session_id or session_id in (".", ".."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return os.path.join(self.base_dir, f"{session_id}.jsonl")

    def append(self, session_id: str, record: Dict[str, Any]) -> None:
        _append_jsonl(self.path_for(session_id), record)

    def iter_events(self, session_id: str) -> Iterable[Dict[str, Any]]:
        return _iter_jsonl(self.path_for(session_id))

    def list_sessions(self, *, limit: int = 50) -> List[Dict[str, Any]]:
        """Return sessions newest first: [{session_id, updated_at, path}]."""
        if not os.path.isdir(self.base_dir):
            return []
        rows: List[Dict[str, Any]] = []
        for fn in os.listdir(self.base_dir):
            if not fn.endswith(".jsonl"):
                continue
            p = os.path.join(self.base_dir, fn)
            try:
                mtime = os.stat(p).st_mtime
            except OSError:
                continue
            rows.append({"session_id": fn[: -len(".jsonl")], "updated_at": mtime, "path": p})
        rows.sort(key=lambda r: r["updated_at"], reverse=True)
        return rows[:limit]

    def last_session_id(self) -> Optional[str]:
        rows = self.list_sessions(limit=1)
        return rows[0]["session_id"] if rows else None


class HistoryEventSink(EventSink):
    """Audit records into the flat operations ledger."""

    def __init__(self, history: HistoryLogger) -> None:
        self.history = history

    def write(self, record: Dict[str, Any]) -> None:
        self.history.log(record)


class SessionEventSink(EventSink):
    def __init__(self, store: SessionStore, session_id: str) -> None:
        self.store = store
        self.session_id = session_id

    def write(self, record: Dict[str, Any]) -> None:
        self.store.append(self.session_id, record)
