from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Literal

from .fs import content_hash


Scope = Literal["project", "user"]
AssetKind = Literal["policy", "action", "agent", "skill"]
LayerType = Literal["user", "custom", "project"]

SCOPES: tuple[Scope, ...] = ("project", "user")
ASSET_KINDS: tuple[AssetKind, ...] = ("policy", "action", "agent", "skill")

# Target platform ids understood by the built-in adapters.
TARGET_IDS = ("claude-code", "cursor", "codex", "agents")


# -------------------------
# Assets


@dataclass(frozen=True)
class Asset:
    """A single source item parsed from a layer.

    `source_path` is relative to the layer root. `targets` is empty when the
    asset does not restrict which platforms it is compiled for.
    """

    id: str
    kind: AssetKind
    scope: Scope
    source_path: Path
    description: str = ""
    content: str = ""
    targets: tuple[str, ...] = ()
    apply: str | None = None
    allowed_tools: tuple[str, ...] = ()
    # Skill supplementals: relative path -> text content.
    supplementals: tuple[tuple[str, str], ...] = ()

    @property
    def merge_key(self) -> str:
        """Identity used for layer merging (case-insensitive)."""
        if self.kind == "skill":
            return f"skill:{self.id.lower()}"
        return self.id.lower()

    def with_scope(self, scope: Scope) -> "Asset":
        return replace(self, scope=scope)

    def targets_include(self, target_id: str) -> bool:
        if not self.targets or "all" in self.targets:
            return True
        return target_id in self.targets


@dataclass(frozen=True)
class OutputFile:
    """A compiled output. `path` is project-relative, `~`-prefixed or absolute."""

    path: Path
    content: str
    target: str

    @property
    def hash(self) -> str:
        return content_hash(self.content)


# -------------------------
# Layers


@dataclass(frozen=True)
class LayerPath:
    original: Path
    resolved: Path


@dataclass(frozen=True)
class Layer:
    name: str
    path: LayerPath
    layer_type: LayerType
    assets: tuple[Asset, ...] = ()

    def with_assets(self, assets: list[Asset] | tuple[Asset, ...]) -> "Layer":
        return replace(self, assets=tuple(assets))


# -------------------------
# config.toml


@dataclass(frozen=True)
class SourcesConfig:
    user_layer_path: str = "~/.promptpack"
    use_user_layer: bool = True
    additional_layers: tuple[str, ...] = ()
    disable_project_layer: bool = False


@dataclass(frozen=True)
class TargetsConfig:
    enabled: tuple[str, ...] = ("all",)


@dataclass(frozen=True)
class DeployConfig:
    target: Literal["project", "home"] = "project"


@dataclass(frozen=True)
class SecurityConfig:
    mode: Literal["balanced", "strict", "yolo"] = "balanced"
    deny: tuple[str, ...] = ()


@dataclass(frozen=True)
class PromptpackConfig:
    sources: SourcesConfig = field(default_factory=SourcesConfig)
    targets: TargetsConfig = field(default_factory=TargetsConfig)
    deploy: DeployConfig = field(default_factory=DeployConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
