"""security.py — sandbox policy for agent_guard

Answers containment questions for the two privileged actions (writes and
command execution) plus outbound network hosts:
- sandbox modes: read-only, workspace-write, danger-full-access
- path guards: boundary-aware prefix checks on real paths
- network policy: restricted mode with a single allowed domain suffix

This is an *application-level* policy layer. It is not an OS sandbox.
Treat "danger-full-access" as truly dangerous.
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

logger = logging.getLogger(__name__)


class SecurityError(Exception):
    """Base class for security enforcement errors."""


class SandboxViolation(SecurityError):
    def __init__(self, message: str, *, path: Optional[str] = None, mode: Optional["SandboxMode"] = None) -> None:
        super().__init__(message)
        self.path = path
        self.mode = mode


class SandboxMode(str, enum.Enum):
    READ_ONLY = "read-only"
    WORKSPACE_WRITE = "workspace-write"
    DANGER_FULL_ACCESS = "danger-full-access"

    @classmethod
    def parse(cls, value: str) -> "SandboxMode":
        try:
            return cls(value)
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise ValueError(f"Invalid sandbox mode {value!r}. Use one of: {choices}") from None


SANDBOX_MODES: List[str] = [m.value for m in SandboxMode]

DEFAULT_ALLOWED_DOMAIN = "api.deepseek.com"


def _real(path: str) -> str:
    return os.path.realpath(os.path.abspath(path))


def _is_within(child: str, parent: str) -> bool:
    """Return True if child is within parent directory (or equals parent). Both real paths."""
    if parent == os.path.dirname(parent):
        # filesystem root
        return child.startswith(parent)
    parent = parent.rstrip(os.sep)
    child = child.rstrip(os.sep)
    return child == parent or child.startswith(parent + os.sep)


@dataclass(frozen=True)
class SandboxConfig:
    mode: SandboxMode
    workspace_root: str
    writable_roots: FrozenSet[str] = field(default_factory=frozenset)
    allow_network_restricted: bool = False
    allowed_domain_suffix: str = DEFAULT_ALLOWED_DOMAIN

    def __post_init__(self) -> None:
        # accept plain strings from config/CLI layers
        object.__setattr__(self, "mode", SandboxMode.parse(self.mode))
        object.__setattr__(self, "writable_roots", frozenset(self.writable_roots))


class SandboxPolicy:
    """Pure decision functions over a SandboxConfig.

    Both the command runner and the patch applier consult this object before
    any side effect; nothing here touches the filesystem beyond path resolution.
    """

    def __init__(self, cfg: SandboxConfig) -> None:
        self.cfg = cfg
        self.workspace_root = _real(cfg.workspace_root)
        self.writable_roots = sorted(_real(r) for r in cfg.writable_roots)

    @property
    def mode(self) -> SandboxMode:
        return self.cfg.mode

    def describe(self) -> dict:
        return {
            "mode": self.mode.value,
            "workspace_root": self.workspace_root,
            "writable_roots": list(self.writable_roots),
            "allow_network_restricted": self.cfg.allow_network_restricted,
            "allowed_domain_suffix": self.cfg.allowed_domain_suffix,
        }

    # -----------------------------
    # Filesystem guards
    # -----------------------------

    def _is_contained(self, path: str) -> bool:
        resolved = _real(path)
        if _is_within(resolved, self.workspace_root):
            return True
        return any(_is_within(resolved, root) for root in self.writable_roots)

    def is_write_allowed(self, path: str) -> bool:
        if self.mode is SandboxMode.DANGER_FULL_ACCESS:
            return True
        if self.mode is SandboxMode.READ_ONLY:
            return False
        return self._is_contained(path)

    def assert_write_allowed(self, path: str) -> None:
        if not self.is_write_allowed(path):
            logger.info("write denied: %s (mode=%s)", path, self.mode.value)
            raise SandboxViolation(
                f"Writing to {path} is not permitted in sandbox mode {self.mode.value}",
                path=path,
                mode=self.mode,
            )

    # -----------------------------
    # Execution guards
    # -----------------------------

    def is_exec_cwd_allowed(self, cwd: str) -> bool:
        if self.mode is SandboxMode.DANGER_FULL_ACCESS:
            return True
        if self.mode is SandboxMode.READ_ONLY:
            return False
        return self._is_contained(cwd)

    def assert_exec_allowed(self, cwd: str, *, override: bool = False) -> None:
        """Validate an execution request.

        ``override`` records that an operator explicitly approved the command.
        It lifts the read-only block, never the path containment check.
        """
        if self.mode is SandboxMode.READ_ONLY:
            if not override:
                raise SandboxViolation(
                    "Execution is not allowed in read-only sandbox mode without explicit approval",
                    mode=self.mode,
                )
            if not self._is_contained(cwd):
                raise SandboxViolation(
                    f"Execution cwd {cwd} is not permitted in sandbox mode {self.mode.value}",
                    path=cwd,
                    mode=self.mode,
                )
            return
        if not self.is_exec_cwd_allowed(cwd):
            logger.info("exec denied: cwd=%s (mode=%s)", cwd, self.mode.value)
            raise SandboxViolation(
                f"Execution cwd {cwd} is not permitted in sandbox mode {self.mode.value}",
                path=cwd,
                mode=self.mode,
            )

    # -----------------------------
    # Network policy
    # -----------------------------

    def is_network_allowed(self, hostname: str) -> bool:
        if self.mode is SandboxMode.DANGER_FULL_ACCESS:
            return True
        if not self.cfg.allow_network_restricted:
            return False
        host = hostname.strip().rstrip(".").lower()
        suffix = self.cfg.allowed_domain_suffix.strip().rstrip(".").lower()
        if not host or not suffix:
            return False
        return host == suffix or host.endswith("." + suffix)

    def assert_network_allowed(self, hostname: str) -> None:
        if not self.is_network_allowed(hostname):
            raise SandboxViolation(
                f"Network access to {hostname} is not allowed in sandbox mode {self.mode.value}",
                path=hostname,
                mode=self.mode,
            )
