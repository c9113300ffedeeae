#!/usr/bin/env python3
"""
validate_history.py

Check agent_guard session ledgers (JSONL) against the audit event schema and
summarise what each session actually did: commands run, non-zero exits,
timeouts, spawn failures, approvals granted / denied, patches applied or
rolled back, and the files those patches touched.

Usage:
  python tools/validate_history.py .agent-guard/history/sessions/<id>.jsonl [more.jsonl ...]
  python tools/validate_history.py .agent-guard/history/sessions --report report.json

A directory argument means every *.jsonl directly inside it.

Exit codes:
  0 = every ledger valid
  1 = schema / parse errors, or a path that does not exist
"""
from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from jsonschema import Draft202012Validator

from agent_guard.backend.events import AUDIT_EVENT_SCHEMA

_validator = Draft202012Validator(AUDIT_EVENT_SCHEMA)


@dataclass
class LedgerIssue:
    line: int
    message: str


@dataclass
class ActionSummary:
    commands_run: int = 0
    non_zero_exits: int = 0
    timeouts: int = 0
    spawn_errors: int = 0
    approvals_granted: int = 0
    approvals_denied: Dict[str, int] = field(default_factory=dict)
    patches_applied: int = 0
    patches_rolled_back: int = 0
    files_touched: List[str] = field(default_factory=list)

    def add(self, record: Dict[str, Any]) -> None:
        t = record.get("type")
        p = record.get("payload") or {}
        if t == "exec/finished":
            if p.get("error"):
                self.spawn_errors += 1
                return
            self.commands_run += 1
            if p.get("timed_out"):
                self.timeouts += 1
            elif p.get("exit_code") not in (0, None):
                self.non_zero_exits += 1
        elif t == "approval/granted":
            self.approvals_granted += 1
        elif t == "approval/denied":
            kind = str(p.get("kind") or "unknown")
            self.approvals_denied[kind] = self.approvals_denied.get(kind, 0) + 1
        elif t == "patch/applied":
            self.patches_applied += 1
            for path in p.get("files") or []:
                if path not in self.files_touched:
                    self.files_touched.append(path)
        elif t == "patch/rollback":
            self.patches_rolled_back += 1


def summarize(records: Iterable[Dict[str, Any]]) -> ActionSummary:
    summary = ActionSummary()
    for rec in records:
        summary.add(rec)
    return summary


def check_ledger(path: Path) -> Dict[str, Any]:
    """Validate one ledger file and summarise the valid records in it."""
    issues: List[LedgerIssue] = []
    good: List[Dict[str, Any]] = []
    sessions: Counter[str] = Counter()

    with path.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                rec = json.loads(line)
            except json.JSONDecodeError as e:
                issues.append(LedgerIssue(lineno, f"not JSON: {e}"))
                continue
            errors = sorted(_validator.iter_errors(rec), key=lambda e: list(e.absolute_path))
            if errors:
                for err in errors:
                    where = ".".join(str(x) for x in err.absolute_path)
                    issues.append(LedgerIssue(lineno, f"{where}: {err.message}" if where else err.message))
                continue
            sessions[rec["session_id"]] += 1
            good.append(rec)

    return {
        "file": str(path),
        "records": len(good),
        "sessions": dict(sessions),
        "actions": asdict(summarize(good)),
        "valid": not issues,
        "issues": [asdict(i) for i in issues],
    }


def _ledger_paths(args: List[Path]) -> List[Path]:
    out: List[Path] = []
    for p in args:
        if p.is_dir():
            out.extend(sorted(p.glob("*.jsonl")))
        else:
            out.append(p)
    return out


def _print_report(report: Dict[str, Any], max_issues: int = 25) -> None:
    a = report["actions"]
    print(f"{report['file']}: {report['records']} records, sessions: {', '.join(sorted(report['sessions'])) or '-'}")
    print(
        f"  exec   : {a['commands_run']} run, {a['non_zero_exits']} non-zero, "
        f"{a['timeouts']} timed out, {a['spawn_errors']} failed to spawn"
    )
    denied = ", ".join(f"{k}={v}" for k, v in sorted(a["approvals_denied"].items())) or "none"
    print(f"  approve: {a['approvals_granted']} granted, denied: {denied}")
    print(f"  patch  : {a['patches_applied']} applied, {a['patches_rolled_back']} rolled back")
    if a["files_touched"]:
        print(f"  files  : {', '.join(a['files_touched'])}")
    for issue in report["issues"][:max_issues]:
        print(f"  ! line {issue['line']}: {issue['message']}")
    if len(report["issues"]) > max_issues:
        print(f"  ! ... ({len(report['issues']) - max_issues} more)")


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Validate and summarise agent_guard session ledgers.")
    ap.add_argument("paths", type=Path, nargs="+", help="Ledger .jsonl files or directories of them")
    ap.add_argument("--report", type=Path, default=None, help="Optional path to write the JSON report")
    args = ap.parse_args(argv)

    reports: List[Dict[str, Any]] = []
    ok = True
    for path in _ledger_paths(args.paths):
        if not path.is_file():
            print(f"ERROR: ledger not found: {path}", file=sys.stderr)
            ok = False
            continue
        report = check_ledger(path)
        _print_report(report)
        ok = ok and report["valid"]
        reports.append(report)

    if args.report is not None:
        args.report.parent.mkdir(parents=True, exist_ok=True)
        with args.report.open("w", encoding="utf-8") as f:
            json.dump({"valid": ok, "ledgers": reports}, f, indent=2)
        print(f"Wrote report: {args.report}")

    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
