"""promptpack lockfile I/O.

The lockfile records, per deployed file, the hash of the content promptpack
last wrote there. Keys are namespaced by deploy scope so one lockfile can
track project-local and home-directory outputs without collisions:

    project:.claude/commands/review.md
    user:~/.claude/commands/review.md

Requirements:
- Stable JSON formatting (sorted keys, stable indentation)
- No timestamps
- A version mismatch is an error, never a silent migration
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping

from .models import SCOPES, Scope
from .paths import LEGACY_LOCKFILE_NAME, normalize_path, project_lockfile_path


logger = logging.getLogger(__name__)

LOCKFILE_VERSION = 1

_HASH_RE = re.compile(r"^sha256:[0-9a-f]{64}$")


class LockfileError(ValueError):
    """Raised when a lockfile cannot be parsed or does not match the expected schema."""


def make_key(scope: Scope, path: str | Path) -> str:
    """Compute a lockfile key like "project:.claude/commands/x.md"."""
    if scope not in SCOPES:
        raise ValueError(f"make_key: unknown scope: {scope!r}")
    return f"{scope}:{normalize_path(path)}"


def parse_key(key: str) -> tuple[Scope, str] | None:
    """Split a key into (scope, path); None if the scope tag is unknown."""
    tag, sep, path = key.partition(":")
    if not sep:
        return None
    for scope in SCOPES:
        if tag == scope:
            return scope, path
    return None


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def _expect_mapping(value: Any, *, ctx: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise LockfileError(f"Invalid lockfile: {ctx} must be an object")
    return value


def _expect_str(value: Any, *, ctx: str) -> str:
    if not isinstance(value, str):
        raise LockfileError(f"Invalid lockfile: {ctx} must be a string")
    return value


def _optional_str(value: Any, *, ctx: str) -> str | None:
    if value is None:
        return None
    return _expect_str(value, ctx=ctx)


def _unknown_keys_msg(*, ctx: str, unknown: list[str]) -> str:
    return f"Invalid lockfile: unknown {ctx} keys: {sorted(unknown)}"


@dataclass(frozen=True)
class Provenance:
    """Where a deployed file came from."""

    source_layer: str
    source_layer_path: str
    source_asset: str
    source_file: str
    overrides: str | None = None


@dataclass(frozen=True)
class LockEntry:
    hash: str
    provenance: Provenance | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"hash": self.hash}
        p = self.provenance
        if p is not None:
            out["source_layer"] = p.source_layer
            out["source_layer_path"] = p.source_layer_path
            out["source_asset"] = p.source_asset
            out["source_file"] = p.source_file
            if p.overrides is not None:
                out["overrides"] = p.overrides
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, key: str) -> "LockEntry":
        allowed = {"hash", "source_layer", "source_layer_path", "source_asset", "source_file", "overrides"}
        unknown = [k for k in data.keys() if k not in allowed]
        if unknown:
            raise LockfileError(_unknown_keys_msg(ctx=f"files[{key}]", unknown=unknown))

        if "hash" not in data:
            raise LockfileError(f"Invalid lockfile: files[{key}].hash is required")
        h = _expect_str(data.get("hash"), ctx=f"files[{key}].hash")
        if not _HASH_RE.match(h):
            raise LockfileError(f"Invalid lockfile: files[{key}].hash must look like sha256:<64 hex chars>")

        layer = _optional_str(data.get("source_layer"), ctx=f"files[{key}].source_layer")
        if layer is None:
            return cls(hash=h)

        return cls(
            hash=h,
            provenance=Provenance(
                source_layer=layer,
                source_layer_path=_optional_str(data.get("source_layer_path"), ctx="source_layer_path") or "",
                source_asset=_optional_str(data.get("source_asset"), ctx="source_asset") or "",
                source_file=_optional_str(data.get("source_file"), ctx="source_file") or "",
                overrides=_optional_str(data.get("overrides"), ctx="overrides"),
            ),
        )


@dataclass
class Lockfile:
    """Map of namespaced keys to the last-written content hash."""

    version: int = LOCKFILE_VERSION
    files: dict[str, LockEntry] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.files)

    def is_empty(self) -> bool:
        return not self.files

    def get(self, key: str) -> LockEntry | None:
        return self.files.get(key)

    def get_hash(self, key: str) -> str | None:
        entry = self.files.get(key)
        return entry.hash if entry is not None else None

    def set(self, key: str, hash: str) -> None:
        self.files[key] = LockEntry(hash=hash)

    def set_with_provenance(self, key: str, hash: str, provenance: Provenance) -> None:
        self.files[key] = LockEntry(hash=hash, provenance=provenance)

    def remove(self, key: str) -> LockEntry | None:
        return self.files.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self.files)

    def keys_for_scope(self, scope: Scope) -> list[str]:
        prefix = f"{scope}:"
        return [k for k in sorted(self.files) if k.startswith(prefix)]

    def entries(self) -> Iterator[tuple[str, LockEntry]]:
        for k in sorted(self.files):
            yield k, self.files[k]

    def to_dict(self) -> dict[str, Any]:
        return {
            "lockfileVersion": self.version,
            "files": {k: v.to_dict() for k, v in self.files.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Lockfile":
        if "lockfileVersion" not in data:
            raise LockfileError("Invalid lockfile: missing required keys: ['lockfileVersion']")

        allowed = {"lockfileVersion", "files"}
        unknown = [k for k in data.keys() if k not in allowed]
        if unknown:
            raise LockfileError(_unknown_keys_msg(ctx="top-level", unknown=unknown))

        ver = data.get("lockfileVersion")
        if not isinstance(ver, int) or isinstance(ver, bool):
            raise LockfileError("Invalid lockfile: lockfileVersion must be an integer")
        if ver != LOCKFILE_VERSION:
            raise LockfileError(f"Unsupported lockfile version: {ver} (expected {LOCKFILE_VERSION})")

        files_raw = _expect_mapping(data.get("files", {}), ctx="files")
        files: dict[str, LockEntry] = {}
        for k, v in files_raw.items():
            if parse_key(k) is None:
                raise LockfileError(f"Invalid lockfile: bad key {k!r} (expected '<project|user>:<path>')")
            files[k] = LockEntry.from_dict(_expect_mapping(v, ctx=f"files[{k}]"), key=k)

        return cls(version=ver, files=files)


def load_lock(path: str | Path) -> Lockfile:
    """Load and validate a lockfile.

    Raises LockfileError for read/parse/schema errors.
    """
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as e:
        raise LockfileError("Invalid lockfile: unable to read") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise LockfileError("Invalid lockfile: invalid JSON") from e

    return Lockfile.from_dict(_expect_mapping(data, ctx="top-level"))


def load_lock_or_new(path: str | Path) -> Lockfile:
    """Like load_lock, but a missing file is an empty lockfile."""
    if not Path(path).exists():
        return Lockfile()
    return load_lock(path)


def save_lock(path: str | Path, lock: Lockfile) -> None:
    """Write a lockfile with canonical JSON formatting."""
    p = Path(path)
    text = _canonical_json(lock.to_dict())

    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(p)


def resolve_lockfile_path(project_root: Path, project_layer: Path) -> tuple[Path, str | None]:
    """Project lockfile path, migrating a legacy `<layer>/.promptpack.lock` if present.

    Returns (path, warning). Migration problems are reported as a warning;
    the new path is always returned.
    """
    new = project_lockfile_path(project_root)
    legacy = project_layer / LEGACY_LOCKFILE_NAME
    if new.exists() or not legacy.exists():
        return new, None

    try:
        lock = load_lock(legacy)
        save_lock(new, lock)
        legacy.unlink()
    except (LockfileError, OSError) as e:
        logger.warning("lockfile migration from %s failed: %s", legacy, e)
        return new, f"Failed to migrate legacy lockfile {legacy}: {e}"

    logger.info("migrated lockfile %s -> %s", legacy, new)
    return new, f"Migrated legacy lockfile {legacy} to {new}"
