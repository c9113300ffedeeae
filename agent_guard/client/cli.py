"""cli.py — command-line front-end for agent_guard

Commands:
  - sandbox get|set, approvals get|set: read / persist policy in config.json
  - run -- <command...>: one sandboxed shell command
  - patch apply: apply a unified diff from --file or stdin
  - history: list sessions or print one session ledger

Every run / patch apply records its audit events into a session ledger
(history_dir/sessions/<id>.jsonl) and the flat operations.jsonl. With --json,
the same records are also printed as JSON lines followed by one result line.
--json-file PATH appends them to PATH as well.

Exit codes: 0 ok, 1 failed / cancelled / denied, 2 bad arguments or config,
3 sandbox violation; `run` passes through the child's exit code (124 on timeout).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
import uuid
from typing import Any, Dict, List, Optional

from ..backend.approvals import APPROVAL_POLICIES, ApprovalPolicy
from ..backend.config import DEFAULT_CONFIG_DIR, ConfigError, GuardConfig, load_config, update_config
from ..backend.diff_apply import PatchError
from ..backend.events import AuditTrail, EventSink, FileEventSink, JsonlStdoutSink, MultiEventSink
from ..backend.history_store import HistoryEventSink, HistoryLogger, SessionEventSink, SessionStore
from ..backend.logging_utils import configure_logging
from ..backend.patch_apply import PatchContext, apply_patch
from ..backend.runner import SpawnError, run_safe
from ..backend.security import SANDBOX_MODES, SandboxMode, SandboxPolicy, SandboxViolation

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_SANDBOX = 3
EXIT_TIMEOUT = 124


def _print_json(obj: Dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(obj, ensure_ascii=False) + "\n")
    sys.stdout.flush()


class ConsoleSink(EventSink):
    """Human-readable progress lines for the events an operator cares about."""

    def write(self, record: Dict[str, Any]) -> None:
        t = record.get("type")
        p = record.get("payload") or {}
        if t == "patch/preview":
            pv = p.get("preview") or {}
            files = pv.get("files") or []
            print(f"Patch preview: {len(files)} files (+{pv.get('totalAdditions', 0)} / -{pv.get('totalDeletions', 0)})")
            for f in files:
                tag = " (new)" if f.get("isNew") else " (deleted)" if f.get("isDeleted") else ""
                print(f"  {f.get('path')}{tag}: +{f.get('additions')} / -{f.get('deletions')}")
        elif t == "patch/rollback":
            print(f"Patch rolled back: {p.get('error')}", file=sys.stderr)
        elif t == "exec/preview":
            print(f"$ {p.get('command')}  (cwd={p.get('cwd')})", file=sys.stderr)


def _audit_trail(cfg: GuardConfig, session_id: str, *, json_out: bool, json_file: Optional[str] = None) -> AuditTrail:
    store = SessionStore(os.path.join(cfg.history_dir, "sessions"))
    sinks: List[EventSink] = [
        SessionEventSink(store, session_id),
        HistoryEventSink(HistoryLogger(cfg.history_dir)),
    ]
    if json_file:
        sinks.append(FileEventSink(json_file))
    sinks.append(JsonlStdoutSink() if json_out else ConsoleSink())
    return AuditTrail(MultiEventSink(sinks), session_id)


def _load(args: argparse.Namespace, overrides: Optional[Dict[str, Any]] = None) -> GuardConfig:
    return load_config(args.config_dir, args.profile, overrides)


# -----------------------------
# sandbox / approvals
# -----------------------------


def cmd_sandbox(args: argparse.Namespace) -> int:
    cfg = _load(args)
    if args.action == "get":
        print(json.dumps(SandboxPolicy(cfg.sandbox).describe(), indent=2))
        return EXIT_OK

    try:
        mode = SandboxMode.parse(args.value)
    except ValueError:
        print(f"Invalid sandbox mode. Use one of: {', '.join(SANDBOX_MODES)}", file=sys.stderr)
        return EXIT_USAGE
    if cfg.sandbox.mode is mode:
        print(f"Sandbox mode already set to {mode.value}")
        return EXIT_OK

    update_config(args.config_dir, {"sandbox": {"mode": mode.value}})
    trail = AuditTrail(HistoryEventSink(HistoryLogger(cfg.history_dir)), args.session or "cli")
    trail.record("sandbox/set", {"from": cfg.sandbox.mode.value, "to": mode.value})
    print(f"Sandbox mode updated to {mode.value}")
    return EXIT_OK


def cmd_approvals(args: argparse.Namespace) -> int:
    cfg = _load(args)
    if args.action == "get":
        print(cfg.approvals.policy.value)
        return EXIT_OK

    try:
        policy = ApprovalPolicy.parse(args.value)
    except ValueError:
        print(f"Invalid approval policy. Use one of: {', '.join(APPROVAL_POLICIES)}", file=sys.stderr)
        return EXIT_USAGE
    if cfg.approvals.policy is policy:
        print(f"Approval policy already set to {policy.value}")
        return EXIT_OK

    update_config(args.config_dir, {"approvals": {"policy": policy.value}})
    trail = AuditTrail(HistoryEventSink(HistoryLogger(cfg.history_dir)), args.session or "cli")
    trail.record("approvals/set", {"from": cfg.approvals.policy.value, "to": policy.value})
    print(f"Approval policy updated to {policy.value}")
    return EXIT_OK


# -----------------------------
# run
# -----------------------------


def cmd_run(args: argparse.Namespace) -> int:
    argv = list(args.command)
    if argv and argv[0] == "--":
        argv = argv[1:]
    if not argv:
        print("No command provided", file=sys.stderr)
        return EXIT_USAGE
    command = " ".join(argv)

    overrides: Dict[str, Any] = {}
    if args.sandbox:
        overrides.setdefault("sandbox", {})["mode"] = args.sandbox
    if args.approval:
        overrides.setdefault("approvals", {})["policy"] = args.approval
    if args.timeout_ms is not None:
        overrides.setdefault("exec", {})["timeout_ms"] = args.timeout_ms
    cfg = _load(args, overrides)

    session_id = args.session or uuid.uuid4().hex
    trail = _audit_trail(cfg, session_id, json_out=args.json, json_file=args.json_file)
    try:
        result = run_safe(
            command,
            sandbox=SandboxPolicy(cfg.sandbox),
            approvals=cfg.approvals,
            cwd=args.cwd,
            timeout_ms=cfg.exec.timeout_ms,
            env_allow_list=cfg.exec.env_allow_list,
            auto_approve=args.yes,
            on_event=trail,
        )
    except SandboxViolation as e:
        _report_error(args, "exec/error", f"Sandbox violation: {e}")
        return EXIT_SANDBOX
    except SpawnError as e:
        _report_error(args, "exec/error", str(e))
        return EXIT_FAILED
    finally:
        trail.close()

    if args.json:
        _print_json({"type": "exec/result", "session_id": session_id, **result.to_dict()})
    else:
        if not result.ran:
            print("Command not approved", file=sys.stderr)
        sys.stdout.write(result.stdout)
        sys.stderr.write(result.stderr)
        if result.timed_out:
            print(f"Command timed out after {cfg.exec.timeout_ms}ms", file=sys.stderr)

    if not result.ran:
        return EXIT_FAILED
    if result.timed_out:
        return EXIT_TIMEOUT
    code = result.exit_code if result.exit_code is not None else EXIT_FAILED
    # negative = killed by signal
    return 128 - code if code < 0 else code


# -----------------------------
# patch
# -----------------------------


def _read_diff(path: Optional[str]) -> str:
    if path:
        with open(path, "r", encoding="utf-8", newline="") as f:
            return f.read()
    if sys.stdin.isatty():
        return ""
    return sys.stdin.read()


def cmd_patch_apply(args: argparse.Namespace) -> int:
    try:
        diff_text = _read_diff(args.file)
    except (OSError, UnicodeDecodeError) as e:
        _report_error(args, "patch/error", f"Cannot read diff: {e}")
        return EXIT_USAGE
    if not diff_text.strip():
        _report_error(args, "patch/error", "No diff content provided")
        return EXIT_USAGE

    cfg = _load(args)
    session_id = args.session or uuid.uuid4().hex
    trail = _audit_trail(cfg, session_id, json_out=args.json, json_file=args.json_file)
    ctx = PatchContext(
        sandbox=SandboxPolicy(cfg.sandbox),
        approvals=cfg.approvals,
        workspace_root=cfg.sandbox.workspace_root,
        auto_yes=args.yes,
        on_event=trail,
    )
    try:
        result = apply_patch(diff_text, ctx)
    except SandboxViolation as e:
        _report_error(args, "patch/error", f"Sandbox violation: {e}")
        return EXIT_SANDBOX
    except (PatchError, OSError) as e:
        _report_error(args, "patch/error", f"Failed to apply patch: {e}")
        return EXIT_FAILED
    finally:
        trail.close()

    if args.json:
        _print_json({"type": "patch/result", "session_id": session_id, **result.to_dict()})
    elif result.applied:
        print("Patch applied successfully")
    elif not result.preview.files:
        print("No file changes found in diff")
    else:
        print("Patch application cancelled")
    return EXIT_OK if result.applied else EXIT_FAILED


def _report_error(args: argparse.Namespace, kind: str, message: str) -> None:
    logger.info("%s: %s", kind, message)
    if getattr(args, "json", False):
        _print_json({"type": kind, "message": message})
    else:
        print(message, file=sys.stderr)


# -----------------------------
# history
# -----------------------------


def cmd_history(args: argparse.Namespace) -> int:
    cfg = _load(args)
    store = SessionStore(os.path.join(cfg.history_dir, "sessions"))

    session_id = args.session
    if args.last:
        session_id = store.last_session_id()
        if session_id is None:
            print("No sessions recorded yet")
            return EXIT_FAILED

    if args.list or not session_id:
        rows = store.list_sessions(limit=args.limit)
        if not rows:
            print("No sessions recorded yet")
            return EXIT_OK
        for r in rows:
            when = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(r["updated_at"]))
            print(f"{r['session_id']}  {when}")
        return EXIT_OK

    try:
        events = list(store.iter_events(session_id))
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return EXIT_USAGE
    if not events:
        print(f"No events for session {session_id}", file=sys.stderr)
        return EXIT_FAILED
    for ev in events:
        if args.json:
            _print_json(ev)
        else:
            print(f"{ev.get('timestamp')}  {ev.get('type')}  {json.dumps(ev.get('payload'), ensure_ascii=False)}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="agent-guard", description="Sandboxed command execution and patch application.")
    ap.add_argument("--config-dir", default=DEFAULT_CONFIG_DIR, help="Directory holding config.json and profiles/.")
    ap.add_argument("--profile", default=None, help="Profile name (profiles/<name>.json).")
    ap.add_argument("--log-level", default="WARNING", help="Logging level for stderr diagnostics.")
    sub = ap.add_subparsers(dest="cmd")

    sb = sub.add_parser("sandbox", help="Show or change the sandbox mode.")
    sb_sub = sb.add_subparsers(dest="action", required=True)
    sb_sub.add_parser("get")
    sb_set = sb_sub.add_parser("set")
    sb_set.add_argument("value", help=f"One of: {', '.join(SANDBOX_MODES)}")
    sb_set.add_argument("--session", default=None)

    apv = sub.add_parser("approvals", help="Show or change the approval policy.")
    apv_sub = apv.add_subparsers(dest="action", required=True)
    apv_sub.add_parser("get")
    apv_set = apv_sub.add_parser("set")
    apv_set.add_argument("value", help=f"One of: {', '.join(APPROVAL_POLICIES)}")
    apv_set.add_argument("--session", default=None)

    run = sub.add_parser("run", help="Run one shell command under the sandbox.")
    run.add_argument("--cwd", default=None, help="Working directory (default: workspace root).")
    run.add_argument("--timeout-ms", type=int, default=None)
    run.add_argument("--sandbox", choices=SANDBOX_MODES, default=None, help="Override the sandbox mode for this run.")
    run.add_argument("--approval", choices=APPROVAL_POLICIES, default=None, help="Override the approval policy for this run.")
    run.add_argument("--yes", action="store_true", help="Approve without prompting.")
    run.add_argument("--json", action="store_true", help="Emit JSON-lines events.")
    run.add_argument("--json-file", default=None, help="Also append audit events to this JSON-lines file.")
    run.add_argument("--session", default=None)
    run.add_argument("command", nargs=argparse.REMAINDER)

    patch = sub.add_parser("patch", help="Patch operations.")
    patch_sub = patch.add_subparsers(dest="action", required=True)
    pa = patch_sub.add_parser("apply", help="Apply a unified diff from --file or stdin.")
    pa.add_argument("--file", default=None)
    pa.add_argument("--yes", action="store_true", help="Approve without prompting.")
    pa.add_argument("--json", action="store_true", help="Emit JSON-lines events.")
    pa.add_argument("--json-file", default=None, help="Also append audit events to this JSON-lines file.")
    pa.add_argument("--session", default=None)

    hist = sub.add_parser("history", help="List sessions or print one session's events.")
    hist.add_argument("--session", default=None)
    hist.add_argument("--last", action="store_true")
    hist.add_argument("--list", action="store_true")
    hist.add_argument("--limit", type=int, default=20)
    hist.add_argument("--json", action="store_true")

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    try:
        configure_logging(args.log_level)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return EXIT_USAGE

    handlers = {
        "sandbox": cmd_sandbox,
        "approvals": cmd_approvals,
        "run": cmd_run,
        "patch": cmd_patch_apply,
        "history": cmd_history,
    }
    handler = handlers.get(args.cmd)
    if handler is None:
        ap.print_help()
        return EXIT_USAGE

    try:
        return handler(args)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main())
