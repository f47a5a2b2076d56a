"""Orphan detection.

An orphan is a lockfile entry (in the deploy scope) that the current set of
outputs no longer produces. Whether an orphan may be deleted is decided by
the generated-content signature only, never by where the file lives.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable

from .fs import FileSystem
from .lock import Lockfile, make_key, parse_key
from .models import Scope


logger = logging.getLogger(__name__)

SIGNATURE = "Generated by promptpack"


def has_signature(content: str) -> bool:
    return SIGNATURE in content


@dataclass(frozen=True)
class OrphanFile:
    key: str
    path: str
    exists: bool = False
    has_signature: bool = False

    def is_safe_to_delete(self) -> bool:
        return self.exists and self.has_signature


@dataclass
class OrphanDetectionResult:
    orphans: list[OrphanFile] = field(default_factory=list)
    retained: list[str] = field(default_factory=list)

    def safe_to_delete(self) -> list[OrphanFile]:
        return [o for o in self.orphans if o.is_safe_to_delete()]

    def unsafe(self) -> list[OrphanFile]:
        return [o for o in self.orphans if o.exists and not o.has_signature]


def detect_orphans(lock: Lockfile, output_paths: Iterable[str | Path], scope: Scope) -> OrphanDetectionResult:
    """Split scope entries into orphans and retained keys. Does no I/O."""

    current = {make_key(scope, p) for p in output_paths}
    result = OrphanDetectionResult()
    for key in lock.keys_for_scope(scope):
        if key in current:
            result.retained.append(key)
            continue
        parsed = parse_key(key)
        path = parsed[1] if parsed is not None else key
        result.orphans.append(OrphanFile(key=key, path=path))
    return result


def skill_root(path: str) -> PurePosixPath | None:
    """For a file inside `.../skills/<id>/`, the `.../skills/<id>` directory."""

    parts = PurePosixPath(path).parts
    for i in range(len(parts) - 2, -1, -1):
        if parts[i] == "skills" and i + 2 < len(parts):
            return PurePosixPath(*parts[: i + 2])
    return None


def is_skill_supplemental(path: str) -> bool:
    return skill_root(path) is not None and PurePosixPath(path).name != "SKILL.md"


def _read_signed(fs: FileSystem, path: Path) -> bool:
    try:
        return has_signature(fs.read(path))
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("cannot read %s for signature check: %s", path, e)
        return False


def check_orphan_status(orphan: OrphanFile, fs: FileSystem, resolve_path: Callable[[Path], Path]) -> OrphanFile:
    """Fill in `exists` and `has_signature` from the filesystem.

    Supplemental files of a skill carry no signature of their own; they are
    vouched for by the skill's SKILL.md when that file is signed.
    """

    target = resolve_path(Path(orphan.path))
    if not fs.exists(target):
        return replace(orphan, exists=False, has_signature=False)

    signed = _read_signed(fs, target)
    if not signed and is_skill_supplemental(orphan.path):
        root = skill_root(orphan.path)
        skill_md = resolve_path(Path(str(root)) / "SKILL.md")
        signed = fs.exists(skill_md) and _read_signed(fs, skill_md)
    return replace(orphan, exists=True, has_signature=signed)
