"""patch_apply.py — transactional application of a unified diff

Order of operations (each step only starts once the previous one succeeded):
  1) parse + preview         -> patch/preview
  2) sandbox check for every target file (nothing written yet)
  3) one approval prompt for the whole patch set, if the policy asks for it
  4) byte-exact backups of every existing target
  5) reconstruct + write files in diff order
  6) patch/applied   |   on failure: undo new files and their new parent
                         directories, restore backups,
                         patch/rollback, re-raise

Denial is a result (applied=False), not an exception.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .approvals import ActionKind, Approvals, PromptFn, prompt_approval
from .diff_apply import FileDiff, TextEncodingError, apply_file_diff, parse_unified_diff
from .events import EventCallback, emit
from .preview import PatchPreview, build_preview
from .security import SandboxPolicy

logger = logging.getLogger(__name__)

BACKUP_DIRNAME = os.path.join(".agent-guard", "backup")


@dataclass
class PatchContext:
    sandbox: SandboxPolicy
    approvals: Approvals
    workspace_root: str
    auto_yes: bool = False
    on_event: Optional[EventCallback] = None
    prompt: PromptFn = field(default=prompt_approval)


@dataclass
class ApplyResult:
    applied: bool
    preview: PatchPreview
    backup_dir: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"applied": self.applied, "preview": self.preview.to_dict(), "backupDir": self.backup_dir}


def _read_text(path: str) -> Optional[str]:
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8", newline="") as f:
            return f.read()
    except UnicodeDecodeError as e:
        raise TextEncodingError(f"Cannot read {path} as UTF-8 text: {e}", path=path) from e


def _missing_parents(path: str) -> List[str]:
    """Ancestors of ``path`` that do not exist yet, deepest first."""
    out: List[str] = []
    parent = os.path.dirname(path)
    while parent and not os.path.exists(parent):
        out.append(parent)
        parent = os.path.dirname(parent)
    return out


def _write_text(path: str, text: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    try:
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(text)
    except UnicodeEncodeError as e:
        raise TextEncodingError(f"Cannot write {path} as UTF-8 text: {e}", path=path) from e


def _backup_location(backup_dir: str, workspace_root: str, target: str) -> str:
    rel = os.path.relpath(target, workspace_root)
    if rel == os.pardir or rel.startswith(os.pardir + os.sep) or os.path.isabs(rel):
        # target lives outside the workspace (writable root or full access)
        drive, tail = os.path.splitdrive(target)
        rel = os.path.join("_external", drive.replace(":", ""), tail.lstrip(os.sep))
    return os.path.join(backup_dir, rel)


def _new_backup_dir(workspace_root: str) -> str:
    base = os.path.join(workspace_root, BACKUP_DIRNAME)
    stamp = int(time.time() * 1000)
    while True:
        candidate = os.path.join(base, str(stamp))
        try:
            os.makedirs(candidate)
            return candidate
        except FileExistsError:
            stamp += 1


def _rollback(created: List[str], backups: List[Tuple[str, str]], created_dirs: List[str]) -> None:
    for path in created:
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            logger.warning("rollback: could not remove %s: %s", path, e)
    # children before parents; a child path is always longer
    for d in sorted(created_dirs, key=len, reverse=True):
        try:
            os.rmdir(d)
        except OSError as e:
            logger.warning("rollback: could not remove directory %s: %s", d, e)
    for target, saved in backups:
        try:
            parent = os.path.dirname(target)
            if parent:
                os.makedirs(parent, exist_ok=True)
            shutil.copy2(saved, target)
        except OSError as e:
            logger.warning("rollback: could not restore %s: %s", target, e)


def apply_patch(diff_text: str, ctx: PatchContext) -> ApplyResult:
    """Apply ``diff_text`` to the workspace, all or nothing.

    Raises DiffParseError / ContentMismatch / TextEncodingError /
    SandboxViolation / OSError.
    """
    diffs: List[FileDiff] = parse_unified_diff(diff_text)
    preview = build_preview(diffs)
    emit(ctx.on_event, "patch/preview", {"preview": preview.to_dict()})

    if not diffs:
        return ApplyResult(applied=False, preview=preview)

    workspace_root = os.path.abspath(ctx.workspace_root)
    targets = [os.path.normpath(os.path.join(workspace_root, fd.path)) for fd in diffs]

    for target in targets:
        ctx.sandbox.assert_write_allowed(target)

    if ctx.approvals.needs_approval(ActionKind.PATCH):
        message = f"Apply patch for {preview.summary()}?"
        emit(ctx.on_event, "approval/requested", {"kind": ActionKind.PATCH.value, "message": message})
        if not ctx.prompt(message, ctx.auto_yes):
            emit(ctx.on_event, "approval/denied", {"kind": ActionKind.PATCH.value})
            return ApplyResult(applied=False, preview=preview)
        emit(ctx.on_event, "approval/granted", {"kind": ActionKind.PATCH.value})

    backup_dir = _new_backup_dir(workspace_root)
    backups: List[Tuple[str, str]] = []
    seen = set()
    for target in targets:
        if target in seen or not os.path.isfile(target):
            continue
        seen.add(target)
        saved = _backup_location(backup_dir, workspace_root, target)
        os.makedirs(os.path.dirname(saved), exist_ok=True)
        shutil.copy2(target, saved)
        backups.append((target, saved))
    logger.debug("backed up %d files into %s", len(backups), backup_dir)

    created: List[str] = []
    created_dirs: List[str] = []
    try:
        for fd, target in zip(diffs, targets):
            existed = os.path.exists(target)
            new_text = apply_file_diff(_read_text(target), fd)
            if new_text is None:
                if existed:
                    os.remove(target)
                continue
            if not existed:
                created_dirs.extend(_missing_parents(target))
                created.append(target)
            _write_text(target, new_text)
    except Exception as e:
        logger.info("patch failed, rolling back: %s", e)
        _rollback(created, backups, created_dirs)
        emit(ctx.on_event, "patch/rollback", {"error": str(e), "backup_dir": backup_dir})
        raise

    emit(ctx.on_event, "patch/applied", {"files": [fd.path for fd in diffs], "backup_dir": backup_dir})
    return ApplyResult(applied=True, preview=preview, backup_dir=backup_dir)
