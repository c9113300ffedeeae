"""Self-test for layered configuration.

Run:
  python tools/test_config.py
"""

from __future__ import annotations

import json
import os
import tempfile

from agent_guard.backend.approvals import ApprovalPolicy
from agent_guard.backend.config import (
    ConfigError,
    deep_merge,
    load_config,
    load_config_document,
    update_config,
)
from agent_guard.backend.security import SandboxMode


def _write_json(path: str, obj) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f)


def test_defaults() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        cfg = load_config(os.path.join(tmp, "missing"), base_dir=tmp)
        assert cfg.sandbox.mode is SandboxMode.WORKSPACE_WRITE
        assert cfg.sandbox.workspace_root == os.path.normpath(tmp)
        assert cfg.approvals.policy is ApprovalPolicy.ON_REQUEST
        assert cfg.exec.timeout_ms == 120000
        assert cfg.exec.env_allow_list == ["PATH", "HOME"]
        assert cfg.history_dir == os.path.join(os.path.normpath(tmp), ".agent-guard", "history")


def test_deep_merge_replaces_lists() -> None:
    base = {"a": {"b": 1, "c": [1, 2]}, "d": 1}
    out = deep_merge(base, {"a": {"c": [3]}, "e": 2})
    assert out == {"a": {"b": 1, "c": [3]}, "d": 1, "e": 2}
    assert base == {"a": {"b": 1, "c": [1, 2]}, "d": 1}


def test_layering_order() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        cdir = os.path.join(tmp, "conf")
        _write_json(os.path.join(cdir, "config.json"), {"sandbox": {"mode": "read-only"}, "approvals": {"policy": "never"}})
        _write_json(os.path.join(cdir, "profiles", "ci.json"), {"approvals": {"policy": "untrusted"}, "exec": {"timeout_ms": 5}})

        doc = load_config_document(cdir)
        assert doc["sandbox"]["mode"] == "read-only"
        assert doc["approvals"]["policy"] == "never"

        cfg = load_config(cdir, "ci", {"exec": {"timeout_ms": 7}}, base_dir=tmp)
        assert cfg.sandbox.mode is SandboxMode.READ_ONLY
        assert cfg.approvals.policy is ApprovalPolicy.UNTRUSTED
        assert cfg.exec.timeout_ms == 7
        assert cfg.to_dict()["sandbox"]["allowed_domain_suffix"] == "api.deepseek.com"


def test_invalid_documents() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        cases = [
            {"sandbox": {"mode": "yolo"}},
            {"approvals": {"policy": "sometimes"}},
            {"exec": {"timeout_ms": -1}},
            {"unknown_key": True},
        ]
        for i, overlay in enumerate(cases):
            cdir = os.path.join(tmp, str(i))
            _write_json(os.path.join(cdir, "config.json"), overlay)
            try:
                load_config(cdir)
            except ConfigError:
                continue
            raise AssertionError(f"expected ConfigError for {overlay}")

        try:
            load_config(os.path.join(tmp, "0-none"), "missing-profile")
        except ConfigError as e:
            assert "Profile not found" in str(e)
        else:
            raise AssertionError("expected ConfigError")

        broken = os.path.join(tmp, "broken")
        os.makedirs(broken)
        with open(os.path.join(broken, "config.json"), "w", encoding="utf-8") as f:
            f.write("{nope")
        try:
            load_config(broken)
        except ConfigError as e:
            assert "Invalid JSON" in str(e)
        else:
            raise AssertionError("expected ConfigError")


def test_update_config_persists_and_validates() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        cdir = os.path.join(tmp, "conf")
        update_config(cdir, {"sandbox": {"mode": "danger-full-access"}})
        update_config(cdir, {"approvals": {"policy": "untrusted"}})
        with open(os.path.join(cdir, "config.json"), "r", encoding="utf-8") as f:
            saved = json.load(f)
        assert saved == {"sandbox": {"mode": "danger-full-access"}, "approvals": {"policy": "untrusted"}}

        try:
            update_config(cdir, {"sandbox": {"mode": "bogus"}})
        except ConfigError:
            pass
        else:
            raise AssertionError("expected ConfigError")
        with open(os.path.join(cdir, "config.json"), "r", encoding="utf-8") as f:
            assert json.load(f) == saved


def main() -> None:
    test_defaults()
    test_deep_merge_replaces_lists()
    test_layering_order()
    test_invalid_documents()
    test_update_config_persists_and_validates()
    print("OK: config")


if __name__ == "__main__":
    main()
