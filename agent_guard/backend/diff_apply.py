"""diff_apply.py

Minimal unified diff parser + content reconstruction for text files.

Goal: replay hunks produced by a standard unified diff against the exact
content they were generated from. There is no fuzz factor and no offset
search: any context or removal line that does not match the current content
aborts the file.

This is *not* a full git-compatible patch engine. Binary patches, renames and
mode changes are ignored; git extended header lines are skipped.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

CONTEXT = "context"
ADD = "add"
REMOVE = "remove"

DEV_NULL = "/dev/null"


class PatchError(ValueError):
    """Base class for diff parsing / application failures."""


class DiffParseError(PatchError):
    pass


class ContentMismatch(PatchError):
    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(message)
        self.path = path


class ContextMismatch(ContentMismatch):
    pass


class RemovalMismatch(ContentMismatch):
    pass


class OverlappingHunks(ContentMismatch):
    pass


class TextEncodingError(PatchError):
    """A target file cannot be read or written as UTF-8 text."""

    def __init__(self, message: str, *, path: str) -> None:
        super().__init__(message)
        self.path = path


@dataclass(frozen=True)
class HunkLine:
    kind: str  # "context" | "add" | "remove"
    text: str


@dataclass
class Hunk:
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: List[HunkLine] = field(default_factory=list)


@dataclass
class FileDiff:
    path: str
    hunks: List[Hunk] = field(default_factory=list)
    is_new: bool = False
    is_deleted: bool = False


_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


def _strip_prefix_path(p: str) -> str:
    # "--- a/f.txt\t2024-01-01 10:00:00" -> "f.txt"
    p = p.split("\t", 1)[0].strip()
    if p.startswith("a/") or p.startswith("b/"):
        return p[2:]
    return p


def parse_hunk_header(line: str) -> Hunk:
    m = _HUNK_RE.match(line)
    if not m:
        raise DiffParseError(f"Invalid hunk header: {line}")
    return Hunk(
        old_start=int(m.group(1)),
        old_lines=int(m.group(2) or "1"),
        new_start=int(m.group(3)),
        new_lines=int(m.group(4) or "1"),
    )


def _finish(fd: FileDiff) -> FileDiff:
    # "@@ -0,0 +1,N @@" against a named source still means the file had no content.
    if not fd.is_deleted and fd.hunks and all(h.old_start == 0 and h.old_lines == 0 for h in fd.hunks):
        fd.is_new = True
    return fd


def parse_unified_diff(patch_text: str) -> List[FileDiff]:
    """Parse a unified diff that may contain zero or more file sections."""
    text = patch_text.replace("\r\n", "\n")
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    files: List[FileDiff] = []
    current: Optional[FileDiff] = None
    old_path: Optional[str] = None
    have_old = False
    # remaining (old, new) line counts of the open hunk
    remaining = [0, 0]

    def flush() -> None:
        nonlocal current
        if current is not None:
            files.append(_finish(current))
            current = None

    for ln in lines:
        in_body = current is not None and current.hunks and (remaining[0] > 0 or remaining[1] > 0)

        if ln.startswith("diff --git") and not in_body:
            flush()
            old_path, have_old = None, False
            continue

        if ln.startswith("--- ") and not in_body:
            raw = ln[4:].strip()
            old_path = None if _strip_prefix_path(raw) == DEV_NULL else _strip_prefix_path(raw)
            have_old = True
            continue

        if ln.startswith("+++ ") and not in_body:
            flush()
            raw = ln[4:].strip()
            new_path = None if _strip_prefix_path(raw) == DEV_NULL else _strip_prefix_path(raw)
            path = new_path or old_path
            if not path:
                raise DiffParseError("Unable to determine file path from diff headers")
            current = FileDiff(
                path=path,
                is_new=have_old and old_path is None and new_path is not None,
                is_deleted=new_path is None and old_path is not None,
            )
            old_path, have_old = None, False
            continue

        if ln.startswith("@@") and not in_body:
            if current is None:
                raise DiffParseError("Found hunk header before file header")
            hunk = parse_hunk_header(ln)
            if current.hunks and hunk.old_start < current.hunks[-1].old_start:
                raise DiffParseError(f"Hunks out of order in {current.path}")
            current.hunks.append(hunk)
            remaining = [hunk.old_lines, hunk.new_lines]
            continue

        if current is None:
            if ln[:1] in ("+", "-", " "):
                raise DiffParseError("Found hunk line before file header")
            continue

        if not current.hunks:
            # extended headers between "+++" and the first "@@"
            continue

        hunk = current.hunks[-1]
        if ln.startswith("\\"):
            # "\ No newline at end of file"
            continue
        if ln.startswith("+"):
            hunk.lines.append(HunkLine(ADD, ln[1:]))
            remaining[1] -= 1
        elif ln.startswith("-"):
            hunk.lines.append(HunkLine(REMOVE, ln[1:]))
            remaining[0] -= 1
        elif ln.startswith(" "):
            hunk.lines.append(HunkLine(CONTEXT, ln[1:]))
            remaining[0] -= 1
            remaining[1] -= 1
        elif ln.strip() == "":
            hunk.lines.append(HunkLine(CONTEXT, ""))
            remaining[0] -= 1
            remaining[1] -= 1

    flush()
    return files


def apply_file_diff(original: Optional[str], fd: FileDiff) -> Optional[str]:
    """Replay the hunks of ``fd`` over ``original`` (None = file missing).

    Returns the new content, or None when the diff deletes the file.
    """
    if fd.is_new and original:
        raise ContentMismatch(f"Refusing to create {fd.path}: file already has content", path=fd.path)

    old_lines = (original or "").split("\n")
    out: List[str] = []
    cursor = 0  # 0-based index into old_lines

    for h in fd.hunks:
        # an empty old range anchors *after* line old_start
        start = h.old_start if h.old_lines == 0 else max(h.old_start - 1, 0)
        if start < cursor:
            raise OverlappingHunks(f"Overlapping hunks while applying patch for {fd.path}", path=fd.path)
        if start > len(old_lines):
            raise ContextMismatch(f"Hunk starts beyond end of file while applying patch for {fd.path}", path=fd.path)

        out.extend(old_lines[cursor:start])
        cursor = start

        for hl in h.lines:
            if hl.kind == CONTEXT:
                if cursor >= len(old_lines) or old_lines[cursor] != hl.text:
                    raise ContextMismatch(f"Context mismatch while applying patch for {fd.path}", path=fd.path)
                out.append(hl.text)
                cursor += 1
            elif hl.kind == REMOVE:
                if cursor >= len(old_lines) or old_lines[cursor] != hl.text:
                    raise RemovalMismatch(f"Removal mismatch while applying patch for {fd.path}", path=fd.path)
                cursor += 1
            else:
                out.append(hl.text)

    out.extend(old_lines[cursor:])

    if fd.is_deleted:
        return None
    return "\n".join(out)
