"""approvals.py — approval policy and the interactive approval prompt

The policy decides whether a privileged action needs a human "yes"; the
prompt is the only place in the backend that talks to the operator.
"""

from __future__ import annotations

import enum
import logging
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional, TextIO

logger = logging.getLogger(__name__)


class ApprovalPolicy(str, enum.Enum):
    UNTRUSTED = "untrusted"
    ON_FAILURE = "on-failure"
    ON_REQUEST = "on-request"
    NEVER = "never"

    @classmethod
    def parse(cls, value: str) -> "ApprovalPolicy":
        try:
            return cls(value)
        except ValueError:
            choices = ", ".join(p.value for p in cls)
            raise ValueError(f"Invalid approval policy {value!r}. Use one of: {choices}") from None


class ActionKind(str, enum.Enum):
    PATCH = "patch"
    EXEC = "exec"
    NET = "net"


APPROVAL_POLICIES: List[str] = [p.value for p in ApprovalPolicy]

# (message, auto_yes) -> approved
PromptFn = Callable[[str, bool], bool]


@dataclass(frozen=True)
class Approvals:
    policy: ApprovalPolicy = ApprovalPolicy.ON_REQUEST

    def __post_init__(self) -> None:
        object.__setattr__(self, "policy", ApprovalPolicy.parse(self.policy))

    def with_policy(self, policy: str) -> "Approvals":
        """Return a new Approvals value; the current one is never mutated."""
        return Approvals(policy=ApprovalPolicy.parse(policy))

    def needs_approval(self, kind: ActionKind) -> bool:
        # kind is not consulted yet; on-request / on-failure confirmation
        # belongs to workflow stages outside this package.
        if self.policy is ApprovalPolicy.NEVER:
            return False
        if self.policy is ApprovalPolicy.UNTRUSTED:
            return True
        return False


def _open_terminal() -> Optional[TextIO]:
    try:
        return open("/dev/tty", "r+", encoding="utf-8")
    except OSError:
        return None


def prompt_approval(
    message: str,
    auto_yes: bool = False,
    *,
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
) -> bool:
    """Ask a yes/no question on the controlling terminal.

    Only ``y`` / ``yes`` (case-insensitive) approve; empty input and EOF deny.
    Explicit streams bypass the terminal (tests, piped front-ends). When no
    controlling terminal exists the process stdin/stdout are used.
    """
    if auto_yes:
        return True

    tty: Optional[TextIO] = None
    if stdin is None or stdout is None:
        tty = _open_terminal()
    try:
        reader = stdin or tty or sys.stdin
        writer = stdout or tty or sys.stdout
        writer.write(f"{message} [y/N] ")
        writer.flush()
        answer = reader.readline()
    finally:
        if tty is not None:
            tty.close()

    approved = answer.strip().lower() in ("y", "yes")
    logger.debug("approval prompt answered: approved=%s", approved)
    return approved
