"""Self-test for audit events, sinks and the append-only history store.

Run:
  python tools/test_events_history.py
"""

from __future__ import annotations

import io
import json
import os
import tempfile
import time
from pathlib import Path

from agent_guard.backend.events import (
    AuditTrail,
    FileEventSink,
    JsonlStdoutSink,
    MemoryEventSink,
    MultiEventSink,
    emit,
    validation_errors,
)
from agent_guard.backend.history_store import HistoryEventSink, HistoryLogger, SessionEventSink, SessionStore

from validate_history import check_ledger, summarize
from validate_invariants import validate_events


def test_emit_rejects_unknown_types() -> None:
    got = []
    emit(got.append, "exec/preview", {"command": "ls"})
    assert got == [{"type": "exec/preview", "command": "ls"}]
    emit(None, "exec/preview", {})

    def failing(event):
        raise OSError("history disk full")

    # a failing sink is logged, never raised into the caller
    emit(failing, "exec/finished", {"exit_code": 0})
    try:
        emit(got.append, "exec/whatever", {})
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")


def test_audit_trail_stamps_and_validates() -> None:
    mem = MemoryEventSink()
    trail = AuditTrail(mem, "s1")
    trail({"type": "exec/started", "command": "ls", "cwd": "/w"})
    rec = mem.records[0]
    assert set(rec) == {"timestamp", "type", "session_id", "payload"}
    assert rec["session_id"] == "s1"
    assert rec["payload"] == {"command": "ls", "cwd": "/w"}
    assert validation_errors(rec) == []

    assert validation_errors({"type": "nope"})
    try:
        trail({"type": "nope"})
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")
    assert mem.types == ["exec/started"]


def test_multi_sink_fans_out_in_order() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "deep", "events.jsonl")
        buf = io.StringIO()
        mem = MemoryEventSink()
        trail = AuditTrail(MultiEventSink([JsonlStdoutSink(buf), FileEventSink(path), mem]), "s2")
        trail.record("sandbox/set", {"to": "read-only"})
        trail.record("approvals/set", {"to": "never"})
        trail.close()

        lines = buf.getvalue().splitlines()
        assert [json.loads(x)["type"] for x in lines] == ["sandbox/set", "approvals/set"]
        with open(path, "r", encoding="utf-8") as f:
            assert [json.loads(x)["type"] for x in f] == ["sandbox/set", "approvals/set"]
        assert mem.types == ["sandbox/set", "approvals/set"]


def test_history_logger_appends_with_ts() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        hist = HistoryLogger(os.path.join(tmp, "history"))
        before = int(time.time() * 1000)
        hist.log({"type": "exec/preview", "command": "ls"})
        hist({"type": "exec/started"})
        rows = list(hist.iter_events())
        assert [r["type"] for r in rows] == ["exec/preview", "exec/started"]
        assert rows[0]["ts"] >= before
        assert os.path.basename(hist.path) == "operations.jsonl"

        # ledger lines are never rewritten
        with open(hist.path, "r", encoding="utf-8") as f:
            first = f.readline()
        HistoryEventSink(hist).write({"type": "patch/applied"})
        with open(hist.path, "r", encoding="utf-8") as f:
            assert f.readline() == first


def test_session_store() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        store = SessionStore(os.path.join(tmp, "sessions"))
        assert store.list_sessions() == []
        assert store.last_session_id() is None

        a = AuditTrail(SessionEventSink(store, "aaa"), "aaa")
        a.record("exec/preview", {"command": "ls"})
        a.record("exec/started", {})
        a.record("exec/finished", {"exit_code": 0})
        with open(store.path_for("aaa"), "a", encoding="utf-8") as f:
            f.write("\nnot json\n")

        time.sleep(0.02)
        store.append("bbb", {"type": "patch/preview", "payload": {}})
        os.utime(store.path_for("bbb"), None)

        assert [r["type"] for r in store.iter_events("aaa")] == ["exec/preview", "exec/started", "exec/finished"]
        assert store.last_session_id() == "bbb"
        assert [r["session_id"] for r in store.list_sessions()][0] == "bbb"

        ok, errors = validate_events(list(store.iter_events("aaa")))
        assert ok, errors

        for bad in ("", "..", "a/b"):
            try:
                store.path_for(bad)
            except ValueError:
                continue
            raise AssertionError(f"expected ValueError for {bad!r}")


def test_invariant_validator_flags_bad_order() -> None:
    def ev(t):
        return {"type": t, "session_id": "s", "payload": {}}

    ok, _ = validate_events([ev("patch/preview"), ev("approval/requested"), ev("approval/granted"), ev("patch/applied")])
    assert ok
    ok, _ = validate_events([ev("exec/preview"), ev("approval/requested"), ev("approval/denied"), ev("patch/preview")])
    assert ok

    ok, errors = validate_events([ev("exec/preview"), ev("approval/requested"), ev("approval/denied"), ev("exec/started")])
    assert not ok and any("exec/started" in e for e in errors)
    ok, errors = validate_events([ev("exec/started"), ev("exec/finished")])
    assert not ok
    ok, errors = validate_events([ev("exec/preview"), ev("exec/started")])
    assert not ok


def test_ledger_summary_counts_actions() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        store = SessionStore(os.path.join(tmp, "sessions"))
        trail = AuditTrail(SessionEventSink(store, "s9"), "s9")
        trail.record("exec/preview", {"command": "make"})
        trail.record("exec/started", {})
        trail.record("exec/finished", {"exit_code": 2, "timed_out": False, "error": None})
        trail.record("exec/preview", {"command": "sleep 9"})
        trail.record("exec/started", {})
        trail.record("exec/finished", {"exit_code": None, "timed_out": True, "error": None})
        trail.record("exec/preview", {"command": "rm -rf build"})
        trail.record("approval/requested", {"kind": "exec"})
        trail.record("approval/denied", {"kind": "exec"})
        trail.record("patch/preview", {})
        trail.record("patch/applied", {"files": ["a.txt", "b/c.txt"]})
        trail.record("patch/preview", {})
        trail.record("patch/rollback", {"error": "context mismatch"})
        with open(store.path_for("s9"), "a", encoding="utf-8") as f:
            f.write('{"type": "exec/preview"}\n')

        report = check_ledger(Path(store.path_for("s9")))
        assert not report["valid"]
        assert [i["line"] for i in report["issues"]] == [14] * len(report["issues"])
        assert report["records"] == 13
        assert report["sessions"] == {"s9": 13}
        actions = report["actions"]
        assert actions["commands_run"] == 2
        assert actions["non_zero_exits"] == 1
        assert actions["timeouts"] == 1
        assert actions["approvals_denied"] == {"exec": 1}
        assert actions["patches_applied"] == 1 and actions["patches_rolled_back"] == 1
        assert actions["files_touched"] == ["a.txt", "b/c.txt"]

        assert summarize([{"type": "exec/finished", "payload": {"error": "no shell"}}]).spawn_errors == 1


def main() -> None:
    test_emit_rejects_unknown_types()
    test_audit_trail_stamps_and_validates()
    test_multi_sink_fans_out_in_order()
    test_history_logger_appends_with_ts()
    test_session_store()
    test_invariant_validator_flags_bad_order()
    test_ledger_summary_counts_actions()
    print("OK: events / history")


if __name__ == "__main__":
    main()
