"""Sync planning.

`plan_file` classifies one desired output against what is on disk and what
the lockfile says we last wrote there:

    target missing                       -> write
    target unreadable                    -> conflict (untracked)
    on-disk hash == new hash             -> skip
    on-disk hash == lockfile hash        -> write   (our own previous output)
    lockfile hash differs from on-disk   -> conflict (modified)
    no lockfile entry                    -> conflict (untracked)

Nothing in this module touches the filesystem except `inspect_target`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterable, Literal

from .fs import FileSystem, content_hash
from .lock import Lockfile, make_key
from .models import OutputFile, Scope


logger = logging.getLogger(__name__)

ActionKind = Literal["write", "skip", "conflict"]
ConflictReason = Literal["modified", "untracked"]


@dataclass(frozen=True)
class TargetFileState:
    """What is currently at a target path.

    `hash` is None when the file does not exist or could not be read.
    """

    exists: bool
    hash: str | None = None

    @classmethod
    def missing(cls) -> "TargetFileState":
        return cls(exists=False)

    @classmethod
    def present(cls, hash: str) -> "TargetFileState":
        return cls(exists=True, hash=hash)

    @classmethod
    def unreadable(cls) -> "TargetFileState":
        return cls(exists=True, hash=None)


@dataclass(frozen=True)
class FileAction:
    kind: ActionKind
    reason: ConflictReason | None = None

    @property
    def is_conflict(self) -> bool:
        return self.kind == "conflict"

    def __str__(self) -> str:
        return f"conflict ({self.reason})" if self.reason else self.kind


WRITE = FileAction("write")
SKIP = FileAction("skip")
CONFLICT_MODIFIED = FileAction("conflict", "modified")
CONFLICT_UNTRACKED = FileAction("conflict", "untracked")


def plan_file(new_hash: str, target: TargetFileState, lock: Lockfile, key: str) -> FileAction:
    if not target.exists:
        return WRITE
    if target.hash is None:
        return CONFLICT_UNTRACKED
    if target.hash == new_hash:
        return SKIP

    recorded = lock.get_hash(key)
    if recorded is None:
        return CONFLICT_UNTRACKED
    if recorded == target.hash:
        return WRITE
    return CONFLICT_MODIFIED


def plan_file_forced(new_hash: str, target: TargetFileState) -> FileAction:
    """Force mode: overwrite anything that differs, never rewrite identical content."""

    if target.exists and target.hash is not None and target.hash == new_hash:
        return SKIP
    return WRITE


def inspect_target(fs: FileSystem, path: Path) -> TargetFileState:
    if not fs.exists(path):
        return TargetFileState.missing()
    try:
        return TargetFileState.present(fs.hash(path))
    except OSError as e:
        logger.debug("cannot hash %s: %s", path, e)
        return TargetFileState.unreadable()


@dataclass(frozen=True)
class PlannedFile:
    """One desired output plus the decided action.

    `path` is the output path as compiled (project-relative, `~/...` or
    absolute); `key` is its lockfile key.
    """

    path: Path
    content: str
    action: FileAction
    key: str = ""
    target: str = ""

    @property
    def hash(self) -> str:
        return content_hash(self.content)

    def resolve_overwrite(self) -> "PlannedFile":
        return replace(self, action=WRITE)

    def resolve_skip(self) -> "PlannedFile":
        return replace(self, action=SKIP)


@dataclass(frozen=True)
class PlanCounts:
    write: int = 0
    skip: int = 0
    conflict: int = 0


@dataclass
class SyncPlan:
    files: list[PlannedFile] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.files)

    def __iter__(self):
        return iter(self.files)

    @property
    def has_conflicts(self) -> bool:
        return any(f.action.is_conflict for f in self.files)

    def conflicts(self) -> list[PlannedFile]:
        return [f for f in self.files if f.action.is_conflict]

    def to_write(self) -> list[PlannedFile]:
        return [f for f in self.files if f.action.kind == "write"]

    def to_skip(self) -> list[PlannedFile]:
        return [f for f in self.files if f.action.kind == "skip"]

    def counts(self) -> PlanCounts:
        c = {"write": 0, "skip": 0, "conflict": 0}
        for f in self.files:
            c[f.action.kind] += 1
        return PlanCounts(**c)


def build_plan(
    outputs: Iterable[OutputFile],
    *,
    fs: FileSystem,
    lock: Lockfile,
    scope: Scope,
    resolve_path: Callable[[Path], Path],
    force: bool = False,
) -> SyncPlan:
    """Inspect each output's target and classify it."""

    plan = SyncPlan()
    for out in outputs:
        key = make_key(scope, out.path)
        state = inspect_target(fs, resolve_path(out.path))
        new_hash = out.hash
        action = plan_file_forced(new_hash, state) if force else plan_file(new_hash, state, lock, key)
        logger.debug("plan %s: %s", key, action)
        plan.files.append(PlannedFile(path=out.path, content=out.content, action=action, key=key, target=out.target))
    return plan
