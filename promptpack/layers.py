"""Layer resolution and merging.

Layers are asset-source directories stacked by priority, lowest first:

    user  ->  custom-0 .. custom-N  ->  project

Resolution turns configured paths into existing directories (following
symlinks); merging loads every layer and keeps, for each asset identity, the
asset from the highest-priority layer that defines it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Sequence

from . import assets as assets_mod
from .errors import CircularSymlink, LayerIoError, NoLayersFound, PathNotFound
from .models import Asset, Layer, LayerPath, LayerType
from .paths import PROJECT_LAYER_DIR, expand_home


logger = logging.getLogger(__name__)

AssetLoader = Callable[..., list[Asset]]


def resolve_layer_path(path: Path) -> Path:
    """Follow symlinks iteratively until an existing directory entry is reached.

    Raises CircularSymlink when a link target repeats, LayerIoError when a link
    cannot be read and PathNotFound when the chain ends on nothing.
    """

    original = path
    cur = Path(os.path.abspath(expand_home(path)))
    visited: set[Path] = set()

    while True:
        if cur in visited:
            raise CircularSymlink(path=original)
        visited.add(cur)

        if cur.is_symlink():
            try:
                target = Path(os.readlink(cur))
            except OSError as e:
                raise LayerIoError(path=cur, message=str(e)) from e
            if not target.is_absolute():
                target = cur.parent / target
            cur = Path(os.path.normpath(target))
            continue

        if not cur.exists():
            raise PathNotFound(path=original)
        return cur.resolve()


@dataclass(frozen=True)
class LayerResolution:
    layers: tuple[Layer, ...]
    warnings: tuple[str, ...] = ()


@dataclass
class LayerResolver:
    """Resolve the ordered layer stack for a project.

    Layers returned here carry no assets; see `load_layers`.
    """

    project_root: Path
    project_layer_path: Path | None = None
    user_layer_path: Path | None = None
    additional_layers: Sequence[Path] = ()
    remote_mode: bool = False
    disable_project_layer: bool = False

    def _project_layer(self) -> Path:
        if self.project_layer_path is not None:
            p = expand_home(self.project_layer_path)
            return p if p.is_absolute() else self.project_root / p
        return self.project_root / PROJECT_LAYER_DIR

    def resolve(self) -> LayerResolution:
        layers: list[Layer] = []
        warnings: list[str] = []

        if self.remote_mode:
            project = self._project_layer()
            try:
                resolved = resolve_layer_path(project)
            except PathNotFound as e:
                raise NoLayersFound() from e
            return LayerResolution(layers=(_stub("project", project, resolved, "project"),))

        if self.user_layer_path is not None:
            p = self.user_layer_path
            try:
                layers.append(_stub("user", p, resolve_layer_path(p), "user"))
            except PathNotFound:
                # The default user layer is optional; not having one is normal.
                logger.debug("user layer %s not found", p)

        for idx, p in enumerate(self.additional_layers):
            try:
                layers.append(_stub(f"custom-{idx}", p, resolve_layer_path(p), "custom"))
            except PathNotFound:
                msg = f"Additional layer not found: {p}"
                logger.warning(msg)
                warnings.append(msg)

        if not self.disable_project_layer:
            project = self._project_layer()
            try:
                layers.append(_stub("project", project, resolve_layer_path(project), "project"))
            except PathNotFound:
                msg = f"Project layer not found: {project}"
                logger.warning(msg)
                warnings.append(msg)

        if not layers:
            raise NoLayersFound()
        return LayerResolution(layers=tuple(layers), warnings=tuple(warnings))


def _stub(name: str, original: Path, resolved: Path, layer_type: LayerType) -> Layer:
    return Layer(name=name, path=LayerPath(original=Path(original), resolved=resolved), layer_type=layer_type)


def load_layers(layers: Iterable[Layer], *, loader: AssetLoader = assets_mod.load_all) -> list[Layer]:
    """Load assets into each resolved layer stub, preserving order."""

    out: list[Layer] = []
    for layer in layers:
        loaded = loader(layer.path.resolved, layer_name=layer.name)
        logger.debug("layer %s: %d assets from %s", layer.name, len(loaded), layer.path.resolved)
        out.append(layer.with_assets(loaded))
    return out


# -------------------------
# Merging


@dataclass(frozen=True)
class MergedAsset:
    asset: Asset
    source_layer: str
    source_layer_path: Path
    source_file: Path
    # Name of the layer this asset replaced, if any (one level only).
    overrides: str | None = None


@dataclass(frozen=True)
class OverrideInfo:
    asset_id: str
    from_layer: str
    by_layer: str
    from_kind: str = ""
    by_kind: str = ""

    def message(self) -> str:
        if self.from_kind and self.by_kind and self.from_kind != self.by_kind:
            return (
                f"Asset '{self.asset_id}' ({self.from_kind}) from {self.from_layer} "
                f"overridden by {self.by_kind} from {self.by_layer}"
            )
        return f"Asset '{self.asset_id}' from {self.from_layer} overridden by {self.by_layer}"


@dataclass
class MergeResult:
    assets: dict[str, MergedAsset] = field(default_factory=dict)
    overrides: list[OverrideInfo] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.assets)

    def get(self, asset_id: str, *, skill: bool = False) -> MergedAsset | None:
        key = f"skill:{asset_id.lower()}" if skill else asset_id.lower()
        return self.assets.get(key)

    def sorted(self) -> list[MergedAsset]:
        return sorted(self.assets.values(), key=lambda m: (m.asset.id, m.asset.kind))

    def asset_list(self) -> list[Asset]:
        return [m.asset for m in self.sorted()]


def merge_layers(layers: Sequence[Layer]) -> MergeResult:
    """Merge loaded layers (lowest priority first) into one asset set."""

    result = MergeResult()
    for layer in layers:
        for asset in layer.assets:
            key = asset.merge_key
            prev = result.assets.get(key)
            overrides = None
            if prev is not None:
                overrides = prev.source_layer
                info = OverrideInfo(
                    asset_id=asset.id,
                    from_layer=prev.source_layer,
                    by_layer=layer.name,
                    from_kind=prev.asset.kind,
                    by_kind=asset.kind,
                )
                logger.info(info.message())
                result.overrides.append(info)

            result.assets[key] = MergedAsset(
                asset=asset,
                source_layer=layer.name,
                source_layer_path=layer.path.resolved,
                source_file=layer.path.resolved / asset.source_path,
                overrides=overrides,
            )
    return result
