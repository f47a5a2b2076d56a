"""Asset loading for a single layer directory.

Layout of a layer root:

    policies/*.md        kind=policy
    actions/*.md         kind=action
    agents/*.md          kind=agent
    skills/<id>/SKILL.md kind=skill (+ supplemental files in the same dir)
    *.md elsewhere       kind from front-matter (default: action)

Every markdown asset starts with a YAML front-matter block. README.md files,
hidden entries and paths matched by `.promptpackignore` are skipped.
"""

from __future__ import annotations

import fnmatch
import logging
from pathlib import Path
from typing import Any, Iterable

import yaml

from .errors import (
    AssetParseError,
    DuplicateAssetInLayer,
    InvalidLayerPath,
    LayerPermissionDenied,
    PathNotFound,
)
from .models import ASSET_KINDS, SCOPES, Asset, AssetKind


logger = logging.getLogger(__name__)

IGNORE_FILE = ".promptpackignore"

_KIND_DIRS: dict[str, AssetKind] = {
    "policies": "policy",
    "actions": "action",
    "agents": "agent",
}


def split_frontmatter(text: str, *, path: Path) -> tuple[dict[str, Any], str]:
    """Split `---` delimited YAML front-matter from the markdown body."""

    lines = text.splitlines()
    if not lines or lines[0].strip() != "---":
        raise AssetParseError(path=path, message="missing front-matter (file must start with '---')")

    closing = None
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            closing = i
            break
    if closing is None:
        raise AssetParseError(path=path, message="unclosed front-matter (no closing '---')")

    raw = "\n".join(lines[1:closing])
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        msg = f"invalid YAML: {e}"
        if "mapping values are not allowed" in str(e):
            msg += ' (strings with colons need quotes: description: "My: Rule")'
        raise AssetParseError(path=path, message=msg) from e
    if not isinstance(data, dict):
        raise AssetParseError(path=path, message="front-matter must be a mapping")

    body = "\n".join(lines[closing + 1 :])
    return data, body


def _str_list(value: Any, *, path: Path, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise AssetParseError(path=path, message=f"{where}: expected list of strings")
    return tuple(value)


def _asset_from_frontmatter(
    fm: dict[str, Any],
    body: str,
    *,
    path: Path,
    rel: Path,
    asset_id: str,
    kind: AssetKind | None,
    supplementals: tuple[tuple[str, str], ...] = (),
) -> Asset:
    fm_kind = fm.get("kind", "action")
    if fm_kind not in ASSET_KINDS:
        raise AssetParseError(path=path, message=f"kind: expected one of {list(ASSET_KINDS)}, got {fm_kind!r}")
    scope = fm.get("scope", "project")
    if scope not in SCOPES:
        raise AssetParseError(path=path, message=f"scope: expected one of {list(SCOPES)}, got {scope!r}")
    description = fm.get("description", "")
    if not isinstance(description, str):
        raise AssetParseError(path=path, message="description: expected string")
    apply = fm.get("apply")
    if apply is not None and not isinstance(apply, str):
        raise AssetParseError(path=path, message="apply: expected string")

    return Asset(
        id=str(fm.get("id") or asset_id).strip(),
        kind=kind or fm_kind,
        scope=scope,
        source_path=rel,
        description=description.strip(),
        content=body,
        targets=_str_list(fm.get("targets"), path=path, where="targets"),
        apply=apply,
        allowed_tools=_str_list(fm.get("allowed-tools"), path=path, where="allowed-tools"),
        supplementals=supplementals,
    )


def parse_asset_file(path: Path, *, layer_root: Path) -> Asset:
    """Parse one markdown asset (not a skill) into an Asset."""

    try:
        text = path.read_text(encoding="utf-8")
    except PermissionError as e:
        raise LayerPermissionDenied(path=path) from e
    except UnicodeDecodeError as e:
        raise AssetParseError(path=path, message="not valid UTF-8") from e

    rel = path.relative_to(layer_root)
    fm, body = split_frontmatter(text, path=path)
    kind = _KIND_DIRS.get(rel.parts[0]) if len(rel.parts) > 1 else None
    return _asset_from_frontmatter(fm, body, path=path, rel=rel, asset_id=path.stem, kind=kind)


def parse_skill_dir(skill_dir: Path, *, layer_root: Path) -> Asset:
    skill_md = skill_dir / "SKILL.md"
    try:
        text = skill_md.read_text(encoding="utf-8")
    except PermissionError as e:
        raise LayerPermissionDenied(path=skill_md) from e

    fm, body = split_frontmatter(text, path=skill_md)

    supplementals: list[tuple[str, str]] = []
    for p in sorted(skill_dir.rglob("*")):
        if p == skill_md or not p.is_file() or any(part.startswith(".") for part in p.relative_to(skill_dir).parts):
            continue
        try:
            supplementals.append((p.relative_to(skill_dir).as_posix(), p.read_text(encoding="utf-8")))
        except UnicodeDecodeError:
            logger.debug("skipping binary skill file %s", p)

    return _asset_from_frontmatter(
        fm,
        body,
        path=skill_md,
        rel=skill_md.relative_to(layer_root),
        asset_id=skill_dir.name,
        kind="skill",
        supplementals=tuple(supplementals),
    )


def load_ignore_patterns(layer_root: Path) -> list[str]:
    p = layer_root / IGNORE_FILE
    if not p.is_file():
        return []
    patterns: list[str] = []
    for line in p.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            patterns.append(line.rstrip("/"))
    return patterns


def is_ignored(rel: Path, patterns: list[str]) -> bool:
    s = rel.as_posix()
    for pat in patterns:
        if fnmatch.fnmatch(s, pat) or fnmatch.fnmatch(rel.name, pat):
            return True
        if any(fnmatch.fnmatch(part, pat) for part in rel.parts[:-1]):
            return True
        if s.startswith(pat + "/"):
            return True
    return False


def is_asset_source(path: Path, layer_root: Path) -> bool:
    """True if `path` (under `layer_root`) can contribute to the asset set."""

    try:
        rel = path.relative_to(layer_root)
    except ValueError:
        return False
    if not rel.parts or any(part.startswith(".") for part in rel.parts):
        return False
    if rel.parts[0] == "skills":
        return True
    return rel.suffix == ".md" and rel.name != "README.md"


def load_all(layer_root: Path, *, layer_name: str = "project") -> list[Asset]:
    """Load every asset under a layer root, sorted by id.

    Raises PathNotFound, InvalidLayerPath, LayerPermissionDenied,
    DuplicateAssetInLayer or AssetParseError.
    """

    if not layer_root.exists():
        raise PathNotFound(path=layer_root)
    if not layer_root.is_dir():
        raise InvalidLayerPath(path=layer_root)

    patterns = load_ignore_patterns(layer_root)
    assets: list[Asset] = []

    try:
        md_files = sorted(layer_root.rglob("*.md"))
    except PermissionError as e:
        raise LayerPermissionDenied(path=layer_root) from e

    for p in md_files:
        rel = p.relative_to(layer_root)
        if rel.parts[0] == "skills" or not is_asset_source(p, layer_root) or is_ignored(rel, patterns):
            continue
        assets.append(parse_asset_file(p, layer_root=layer_root))

    skills_dir = layer_root / "skills"
    if skills_dir.is_dir():
        for d in sorted(skills_dir.iterdir()):
            if not d.is_dir() or d.name.startswith("."):
                continue
            if is_ignored(d.relative_to(layer_root), patterns):
                continue
            if not (d / "SKILL.md").is_file():
                logger.warning("skill directory %s has no SKILL.md; skipping", d)
                continue
            assets.append(parse_skill_dir(d, layer_root=layer_root))

    check_duplicates(assets, layer_root=layer_root, layer_name=layer_name)
    assets.sort(key=lambda a: (a.id, a.kind))
    return assets


def check_duplicates(assets: Iterable[Asset], *, layer_root: Path, layer_name: str) -> None:
    """Raise DuplicateAssetInLayer when two assets share a merge identity."""

    seen: dict[str, Asset] = {}
    for a in assets:
        prev = seen.get(a.merge_key)
        if prev is not None:
            raise DuplicateAssetInLayer(
                layer_name=layer_name,
                asset_id=a.id,
                file1=layer_root / prev.source_path,
                file2=layer_root / a.source_path,
            )
        seen[a.merge_key] = a
