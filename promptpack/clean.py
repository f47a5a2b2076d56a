"""Remove files promptpack deployed, driven by the lockfile.

A tracked file is deleted only when it still exists, still carries the
promptpack signature and still has the hash the lockfile recorded. `force`
drops the signature and hash checks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .deploy import resolve_fs_path
from .fs import FileSystem, LocalFileSystem
from .lock import LockfileError, load_lock_or_new, parse_key, save_lock
from .models import Scope
from .orphans import has_signature, is_skill_supplemental, skill_root


logger = logging.getLogger(__name__)


class SkipReason(str, Enum):
    MISSING = "missing"
    MODIFIED = "modified"
    NO_SIGNATURE = "no signature"
    PERMISSION_DENIED = "permission denied"


@dataclass(frozen=True)
class CleanOptions:
    project_root: Path
    scope: Scope | None = None
    dry_run: bool = False
    force: bool = False
    # Restrict to these lockfile keys; None means every key in scope.
    selected_keys: frozenset[str] | None = None


@dataclass
class CleanResult:
    deleted: list[str] = field(default_factory=list)
    skipped: list[tuple[str, SkipReason]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def is_success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "deleted": list(self.deleted),
            "skipped": [{"path": p, "reason": r.value} for p, r in self.skipped],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "dry_run": self.dry_run,
        }


class Cleaner:
    def __init__(self, fs: FileSystem | None = None) -> None:
        self.fs = fs or LocalFileSystem()

    def _resolve(self, path: str, project_root: Path) -> Path:
        return resolve_fs_path(Path(path), project_root=project_root, fs=self.fs)

    def _signed(self, path: str, target: Path, project_root: Path) -> bool:
        if has_signature(self.fs.read(target)):
            return True
        if is_skill_supplemental(path):
            skill_md = self._resolve(f"{skill_root(path)}/SKILL.md", project_root)
            return self.fs.exists(skill_md) and has_signature(self.fs.read(skill_md))
        return False

    def _check(self, path: str, target: Path, recorded: str, options: CleanOptions) -> SkipReason | None:
        if not self.fs.exists(target):
            return SkipReason.MISSING
        if options.force:
            return None
        try:
            if not self._signed(path, target, options.project_root):
                return SkipReason.NO_SIGNATURE
            if self.fs.hash(target) != recorded:
                return SkipReason.MODIFIED
        except PermissionError:
            return SkipReason.PERMISSION_DENIED
        except UnicodeDecodeError:
            return SkipReason.NO_SIGNATURE
        return None

    def clean(self, lockfile_path: Path, options: CleanOptions) -> CleanResult:
        """Raises LockfileError if the lockfile cannot be loaded."""

        result = CleanResult(dry_run=options.dry_run)
        lock = load_lock_or_new(lockfile_path)

        # Decide everything before deleting anything: a skill supplemental is
        # vouched for by a SKILL.md that may itself be on the delete list.
        remove_keys: list[str] = []
        to_delete: list[tuple[str, str, Path]] = []
        for key, entry in lock.entries():
            parsed = parse_key(key)
            if parsed is None:
                continue
            scope, path = parsed
            if options.scope is not None and scope != options.scope:
                continue
            if options.selected_keys is not None and key not in options.selected_keys:
                continue

            target = self._resolve(path, options.project_root)
            reason = self._check(path, target, entry.hash, options)
            if reason is SkipReason.MISSING:
                result.skipped.append((path, reason))
                remove_keys.append(key)
                continue
            if reason is not None:
                result.skipped.append((path, reason))
                continue

            to_delete.append((key, path, target))

        for key, path, target in to_delete:
            if options.dry_run:
                result.deleted.append(path)
                continue
            try:
                self.fs.remove(target)
            except PermissionError:
                result.skipped.append((path, SkipReason.PERMISSION_DENIED))
                continue
            except OSError as e:
                result.errors.append(f"{path}: {e}")
                continue
            logger.info("removed %s", path)
            result.deleted.append(path)
            remove_keys.append(key)

        if options.dry_run or not remove_keys:
            return result

        for key in remove_keys:
            lock.remove(key)
        try:
            save_lock(lockfile_path, lock)
        except (OSError, LockfileError) as e:
            logger.warning("failed to save lockfile %s: %s", lockfile_path, e)
            result.warnings.append(f"Failed to save lockfile {lockfile_path}: {e}")
        return result
