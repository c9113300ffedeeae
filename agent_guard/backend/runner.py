"""runner.py — run one shell command under sandbox + approval constraints

Event sequence for one call:
    exec/preview -> [approval/requested -> approval/granted|denied]
                 -> exec/started -> exec/finished

A denial returns ``ExecResult(ran=False)`` and nothing is spawned. A non-zero
exit is an ordinary result. Only policy failures (SandboxViolation) and spawn
failures (SpawnError) raise.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import IO, Any, Callable, Dict, List, Optional, Sequence

from .approvals import ActionKind, Approvals, PromptFn, prompt_approval
from .env_policy import build_env
from .events import EventCallback, emit
from .security import SandboxMode, SandboxPolicy

logger = logging.getLogger(__name__)

# seconds between SIGTERM and SIGKILL once the timeout fired
KILL_GRACE_S = 5.0


class SpawnError(RuntimeError):
    """The shell could not be started (missing shell, bad cwd, ...)."""


@dataclass(frozen=True)
class ExecResult:
    ran: bool
    exit_code: Optional[int]
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ran": self.ran,
            "exitCode": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "durationMs": self.duration_ms,
            "timedOut": self.timed_out,
        }


NOT_RUN = ExecResult(ran=False, exit_code=None, stdout="", stderr="", duration_ms=0, timed_out=False)


def _drain(stream: IO[str], sink: List[str]) -> None:
    for chunk in iter(lambda: stream.read(4096), ""):
        sink.append(chunk)
    stream.close()


def _signal_child(proc: "subprocess.Popen[str]", sig: int) -> None:
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        elif sig == getattr(signal, "SIGKILL", None):
            proc.kill()
        else:
            proc.terminate()
    except (ProcessLookupError, PermissionError):
        # already gone
        pass


def _command_text(command: Any) -> str:
    if isinstance(command, str):
        return command
    return " ".join(str(c) for c in command)


def run_safe(
    command: str,
    *,
    sandbox: SandboxPolicy,
    approvals: Approvals,
    cwd: Optional[str] = None,
    timeout_ms: Optional[int] = None,
    env_allow_list: Optional[Sequence[str]] = None,
    auto_approve: bool = False,
    on_event: Optional[EventCallback] = None,
    prompt: PromptFn = prompt_approval,
    spawn: Callable[..., "subprocess.Popen[str]"] = subprocess.Popen,
    source_env: Optional[Dict[str, str]] = None,
) -> ExecResult:
    command = _command_text(command)
    work_dir = os.path.abspath(cwd) if cwd else sandbox.workspace_root
    allow = list(env_allow_list) if env_allow_list is not None else None

    emit(
        on_event,
        "exec/preview",
        {"command": command, "cwd": work_dir, "timeout_ms": timeout_ms, "env_allow_list": allow},
    )

    approved = False
    if approvals.needs_approval(ActionKind.EXEC) or sandbox.mode is SandboxMode.READ_ONLY:
        message = f'Execute command: "{command}"? cwd={work_dir} timeout={timeout_ms}'
        emit(on_event, "approval/requested", {"kind": ActionKind.EXEC.value, "message": message})
        approved = prompt(message, auto_approve)
        if not approved:
            emit(on_event, "approval/denied", {"kind": ActionKind.EXEC.value})
            return NOT_RUN
        emit(on_event, "approval/granted", {"kind": ActionKind.EXEC.value})

    sandbox.assert_exec_allowed(work_dir, override=approved)

    env_source = dict(os.environ if source_env is None else source_env)
    env = build_env(allow, env_source) if allow is not None else env_source

    emit(on_event, "exec/started", {"command": command, "cwd": work_dir})
    started = time.monotonic()

    def elapsed_ms() -> int:
        return int((time.monotonic() - started) * 1000)

    try:
        proc = spawn(
            command,
            shell=True,
            cwd=work_dir,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=(os.name == "posix"),
        )
    except OSError as e:
        emit(
            on_event,
            "exec/finished",
            {"exit_code": None, "duration_ms": elapsed_ms(), "timed_out": False, "error": str(e)},
        )
        raise SpawnError(f"Failed to start command: {e}") from e

    out: List[str] = []
    err: List[str] = []
    readers = [
        threading.Thread(target=_drain, args=(proc.stdout, out), daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, err), daemon=True),
    ]
    for t in readers:
        t.start()

    timed_out = threading.Event()
    timers: List[threading.Timer] = []

    def on_timeout() -> None:
        if proc.poll() is not None:
            return
        timed_out.set()
        logger.info("command timed out after %sms, sending SIGTERM: %s", timeout_ms, command)
        _signal_child(proc, signal.SIGTERM)
        kill = threading.Timer(KILL_GRACE_S, _signal_child, args=(proc, getattr(signal, "SIGKILL", signal.SIGTERM)))
        kill.daemon = True
        timers.append(kill)
        kill.start()

    if timeout_ms is not None and timeout_ms > 0:
        timer = threading.Timer(timeout_ms / 1000.0, on_timeout)
        timer.daemon = True
        timers.append(timer)
        timer.start()

    try:
        exit_code = proc.wait()
        for t in readers:
            t.join()
    finally:
        for t in list(timers):
            t.cancel()

    result = ExecResult(
        ran=True,
        exit_code=exit_code,
        stdout="".join(out),
        stderr="".join(err),
        duration_ms=elapsed_ms(),
        timed_out=timed_out.is_set(),
    )
    emit(
        on_event,
        "exec/finished",
        {
            "exit_code": result.exit_code,
            "duration_ms": result.duration_ms,
            "timed_out": result.timed_out,
            "error": None,
        },
    )
    return result
