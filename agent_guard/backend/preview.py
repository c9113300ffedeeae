from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .diff_apply import ADD, REMOVE, FileDiff


@dataclass(frozen=True)
class FilePreview:
    path: str
    additions: int
    deletions: int
    is_new: bool
    is_deleted: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "additions": self.additions,
            "deletions": self.deletions,
            "isNew": self.is_new,
            "isDeleted": self.is_deleted,
        }


@dataclass(frozen=True)
class PatchPreview:
    files: List[FilePreview] = field(default_factory=list)
    total_additions: int = 0
    total_deletions: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files": [f.to_dict() for f in self.files],
            "totalAdditions": self.total_additions,
            "totalDeletions": self.total_deletions,
        }

    def summary(self) -> str:
        return f"{len(self.files)} files (+{self.total_additions} / -{self.total_deletions})"


def build_preview(diffs: List[FileDiff]) -> PatchPreview:
    """Count added/removed lines per file. Hunk header counts are not checked."""
    files: List[FilePreview] = []
    total_add = 0
    total_del = 0
    for fd in diffs:
        adds = sum(1 for h in fd.hunks for ln in h.lines if ln.kind == ADD)
        dels = sum(1 for h in fd.hunks for ln in h.lines if ln.kind == REMOVE)
        files.append(FilePreview(fd.path, adds, dels, fd.is_new, fd.is_deleted))
        total_add += adds
        total_del += dels
    return PatchPreview(files=files, total_additions=total_add, total_deletions=total_del)
