"""validate_invariants.py

Validate ordering invariants of an agent_guard session ledger.

A ledger is a sequence of actions. Each action follows one of two shapes:

  exec:   exec/preview -> [approval/requested -> approval/granted|denied]
                       -> exec/started -> exec/finished
  patch:  patch/preview -> [approval/requested -> approval/granted|denied]
                        -> patch/applied | patch/rollback

An action may stop early (policy refusal, denial, nothing to apply); the next
preview then starts a new one. sandbox/set and approvals/set stand alone.

Usage:
  python tools/validate_invariants.py                 # most recent session
  python tools/validate_invariants.py --session <id>
  python tools/validate_invariants.py --file path/to/ledger.jsonl

Exit codes:
  0 = OK
  2 = invariant violations found
  1 = runtime error (validator itself)
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

_EXEC_NEXT = {
    "exec/preview": {"approval/requested", "exec/started"},
    "approval/requested": {"approval/granted", "approval/denied"},
    "approval/granted": {"exec/started"},
    "exec/started": {"exec/finished"},
}

_PATCH_NEXT = {
    "patch/preview": {"approval/requested", "patch/applied", "patch/rollback"},
    "approval/requested": {"approval/granted", "approval/denied"},
    "approval/granted": {"patch/applied", "patch/rollback"},
}

# last event of an action that closes it; nothing may follow inside it
_TERMINAL = {"exec/finished", "patch/applied", "patch/rollback", "approval/denied"}

_STANDALONE = {"sandbox/set", "approvals/set"}


def _read_events(path: Path) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for ln in path.read_text(encoding="utf-8").splitlines():
        ln = ln.strip()
        if not ln:
            continue
        try:
            out.append(json.loads(ln))
        except json.JSONDecodeError:
            out.append({"type": "_parse_error", "payload": {"line": ln}})
    return out


class Violations:
    def __init__(self) -> None:
        self.errors: List[str] = []

    def add(self, msg: str) -> None:
        self.errors.append(msg)

    def ok(self) -> bool:
        return not self.errors


def validate_events(events: List[Dict[str, Any]]) -> Tuple[bool, List[str]]:
    v = Violations()
    if not events:
        v.add("Ledger is empty")
        return False, v.errors

    table: Optional[Dict[str, set]] = None  # transitions of the open action
    last: Optional[str] = None
    session_ids = set()

    for i, ev in enumerate(events, start=1):
        et = ev.get("type")
        sid = ev.get("session_id")
        if isinstance(sid, str):
            session_ids.add(sid)

        if et == "_parse_error":
            v.add(f"Parse error line {i}")
            continue

        # an unanswered approval request may not be abandoned
        if last == "approval/requested" and et not in ("approval/granted", "approval/denied"):
            v.add(f"approval/requested not answered before {et} (line {i})")

        if et in ("exec/preview", "patch/preview"):
            table = _EXEC_NEXT if et == "exec/preview" else _PATCH_NEXT
            last = et
            continue

        if et in _STANDALONE:
            table, last = None, None
            continue

        if table is None or last is None:
            v.add(f"{et} outside of any action (line {i})")
            continue

        allowed = table.get(last, set())
        if et not in allowed:
            v.add(f"{et} may not follow {last} (line {i})")

        if et in _TERMINAL:
            table, last = None, None
        else:
            last = et

    if last == "exec/started":
        v.add("exec/started was never followed by exec/finished")
    if last == "approval/requested":
        v.add("ledger ends with an unanswered approval/requested")
    if len(session_ids) > 1:
        v.add(f"ledger mixes session ids: {sorted(session_ids)}")

    return v.ok(), v.errors


def _latest_ledger(sessions_dir: Path) -> Optional[Path]:
    files = sorted(sessions_dir.glob("*.jsonl"), key=lambda p: p.stat().st_mtime)
    return files[-1] if files else None


def main() -> int:
    ap = argparse.ArgumentParser(description="Validate session ledger ordering invariants.")
    ap.add_argument("--session", default=None, help="Session id to validate")
    ap.add_argument("--file", type=Path, default=None, help="Validate this JSONL file directly")
    ap.add_argument("--history-dir", default=".agent-guard/history", help="History directory (default: .agent-guard/history)")
    args = ap.parse_args()

    sessions_dir = Path(args.history_dir) / "sessions"
    if args.file:
        ledger = args.file
    elif args.session:
        ledger = sessions_dir / f"{args.session}.jsonl"
    else:
        latest = _latest_ledger(sessions_dir)
        if latest is None:
            print("No sessions found under:", sessions_dir)
            return 1
        ledger = latest

    if not ledger.exists():
        print("ledger not found:", ledger)
        return 1

    ok, errors = validate_events(_read_events(ledger))
    if ok:
        print("Invariant validation OK for:", ledger)
        return 0
    print("Invariant validation FAILED for:", ledger)
    for e in errors[:200]:
        print(" -", e)
    if len(errors) > 200:
        print(f"... and {len(errors)-200} more")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
