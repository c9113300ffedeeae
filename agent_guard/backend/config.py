"""config.py — layered configuration for the CLI

Resolution order (later wins; dicts deep-merge, lists are replaced):
  DEFAULT_CONFIG -> {config_dir}/config.json -> {config_dir}/profiles/{profile}.json
  -> command-line overrides

The merged document is validated with jsonschema before it becomes a
GuardConfig. Backend modules never read configuration themselves; they receive
SandboxConfig / Approvals values built from a GuardConfig.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator

from .approvals import APPROVAL_POLICIES, Approvals
from .security import DEFAULT_ALLOWED_DOMAIN, SANDBOX_MODES, SandboxConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"
DEFAULT_CONFIG_DIR = ".agent-guard"

DEFAULT_CONFIG: Dict[str, Any] = {
    "sandbox": {
        "mode": "workspace-write",
        "workspace_root": ".",
        "writable_roots": [],
        "allow_network_restricted": False,
        "allowed_domain_suffix": DEFAULT_ALLOWED_DOMAIN,
    },
    "approvals": {"policy": "on-request"},
    "exec": {"timeout_ms": 120000, "env_allow_list": ["PATH", "HOME"]},
    "history_dir": os.path.join(DEFAULT_CONFIG_DIR, "history"),
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "agent_guard configuration",
    "type": "object",
    "properties": {
        "sandbox": {
            "type": "object",
            "properties": {
                "mode": {"enum": SANDBOX_MODES},
                "workspace_root": {"type": "string", "minLength": 1},
                "writable_roots": {"type": "array", "items": {"type": "string", "minLength": 1}},
                "allow_network_restricted": {"type": "boolean"},
                "allowed_domain_suffix": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "approvals": {
            "type": "object",
            "properties": {"policy": {"enum": APPROVAL_POLICIES}},
            "additionalProperties": False,
        },
        "exec": {
            "type": "object",
            "properties": {
                "timeout_ms": {"type": ["integer", "null"], "minimum": 1},
                "env_allow_list": {"type": ["array", "null"], "items": {"type": "string"}},
            },
            "additionalProperties": False,
        },
        "history_dir": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}

_validator = Draft202012Validator(CONFIG_SCHEMA)


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class ExecConfig:
    timeout_ms: Optional[int] = 120000
    env_allow_list: Optional[List[str]] = None


@dataclass(frozen=True)
class GuardConfig:
    sandbox: SandboxConfig
    approvals: Approvals
    exec: ExecConfig = field(default_factory=ExecConfig)
    history_dir: str = DEFAULT_CONFIG["history_dir"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sandbox": {
                "mode": self.sandbox.mode.value,
                "workspace_root": self.sandbox.workspace_root,
                "writable_roots": sorted(self.sandbox.writable_roots),
                "allow_network_restricted": self.sandbox.allow_network_restricted,
                "allowed_domain_suffix": self.sandbox.allowed_domain_suffix,
            },
            "approvals": {"policy": self.approvals.policy.value},
            "exec": {
                "timeout_ms": self.exec.timeout_ms,
                "env_allow_list": list(self.exec.env_allow_list) if self.exec.env_allow_list is not None else None,
            },
            "history_dir": self.history_dir,
        }


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Return a new dict: ``overlay`` merged into ``base``. Lists are replaced."""
    out = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def validate_config(doc: Dict[str, Any]) -> None:
    errors = []
    for err in sorted(_validator.iter_errors(doc), key=lambda e: list(e.absolute_path)):
        where = ".".join(str(x) for x in err.absolute_path)
        errors.append(f"{where}: {err.message}" if where else err.message)
    if errors:
        raise ConfigError("Invalid configuration: " + "; ".join(errors))


def _read_json(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(obj, dict):
        raise ConfigError(f"Configuration file {path} must contain a JSON object")
    return obj


def load_config_document(
    config_dir: str = DEFAULT_CONFIG_DIR,
    profile: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    doc = copy.deepcopy(DEFAULT_CONFIG)

    main_path = os.path.join(config_dir, CONFIG_FILENAME)
    if os.path.isfile(main_path):
        doc = deep_merge(doc, _read_json(main_path))
        logger.debug("loaded %s", main_path)

    if profile:
        profile_path = os.path.join(config_dir, "profiles", f"{profile}.json")
        if not os.path.isfile(profile_path):
            raise ConfigError(f"Profile not found: {profile} ({profile_path})")
        doc = deep_merge(doc, _read_json(profile_path))
        logger.debug("loaded profile %s", profile_path)

    if overrides:
        doc = deep_merge(doc, overrides)

    validate_config(doc)
    return doc


def resolve_paths(doc: Dict[str, Any], base_dir: Optional[str] = None) -> Dict[str, Any]:
    """Make relative workspace/history/writable paths absolute against ``base_dir``."""
    base = os.path.abspath(base_dir or os.getcwd())
    out = copy.deepcopy(doc)

    def absolute(p: str) -> str:
        return os.path.normpath(os.path.join(base, os.path.expanduser(p)))

    sb = out.setdefault("sandbox", {})
    sb["workspace_root"] = absolute(sb.get("workspace_root", "."))
    sb["writable_roots"] = [absolute(p) for p in sb.get("writable_roots", [])]
    out["history_dir"] = absolute(out.get("history_dir", DEFAULT_CONFIG["history_dir"]))
    return out


def from_document(doc: Dict[str, Any]) -> GuardConfig:
    sb = doc["sandbox"]
    ex = doc.get("exec") or {}
    return GuardConfig(
        sandbox=SandboxConfig(
            mode=sb["mode"],
            workspace_root=sb["workspace_root"],
            writable_roots=frozenset(sb.get("writable_roots") or []),
            allow_network_restricted=bool(sb.get("allow_network_restricted", False)),
            allowed_domain_suffix=sb.get("allowed_domain_suffix") or DEFAULT_ALLOWED_DOMAIN,
        ),
        approvals=Approvals(doc["approvals"]["policy"]),
        exec=ExecConfig(timeout_ms=ex.get("timeout_ms"), env_allow_list=ex.get("env_allow_list")),
        history_dir=doc["history_dir"],
    )


def load_config(
    config_dir: str = DEFAULT_CONFIG_DIR,
    profile: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    *,
    base_dir: Optional[str] = None,
) -> GuardConfig:
    doc = load_config_document(config_dir, profile, overrides)
    return from_document(resolve_paths(doc, base_dir))


def update_config(config_dir: str, patch: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``patch`` into {config_dir}/config.json; validates before writing."""
    path = os.path.join(config_dir, CONFIG_FILENAME)
    current = _read_json(path) if os.path.isfile(path) else {}
    updated = deep_merge(current, patch)
    validate_config(deep_merge(DEFAULT_CONFIG, updated))

    os.makedirs(config_dir, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(updated, f, ensure_ascii=False, indent=2, sort_keys=True)
        f.write("\n")
    logger.info("updated %s", path)
    return updated
