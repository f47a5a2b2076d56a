from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


class PromptpackError(Exception):
    """Base exception for all promptpack failures."""

    hint: str | None = None


class PromptpackConfigError(PromptpackError):
    """Base exception for config parsing/validation errors."""


@dataclass(frozen=True)
class ConfigParseError(PromptpackConfigError):
    """Raised when a TOML file cannot be parsed."""

    path: Path
    message: str
    lineno: int | None = None
    colno: int | None = None

    def __str__(self) -> str:
        loc = ""
        if self.lineno is not None and self.colno is not None:
            loc = f" (line {self.lineno}, column {self.colno})"
        return f"Invalid TOML in {self.path}: {self.message}{loc}"


@dataclass(frozen=True)
class ConfigValidationError(PromptpackConfigError):
    """Raised when a parsed TOML file does not match the expected schema."""

    path: Path
    message: str

    def __str__(self) -> str:
        return f"Invalid config in {self.path}: {self.message}"


@dataclass(frozen=True)
class AssetParseError(PromptpackError):
    path: Path
    message: str

    def __str__(self) -> str:
        return f"Invalid asset {self.path}: {self.message}"


class LayerError(PromptpackError):
    """Base exception for layer resolution and loading errors."""


class NoLayersFound(LayerError):
    hint = "Create a .promptpack/ directory in the project or configure a user layer (~/.promptpack)."

    def __str__(self) -> str:
        return "No layers found (no project layer and no other layers available)"


@dataclass(frozen=True)
class PathNotFound(LayerError):
    path: Path

    hint = "Check the configured layer path for typos, or create the directory."

    def __str__(self) -> str:
        return f"Layer path not found: {self.path}"


@dataclass(frozen=True)
class CircularSymlink(LayerError):
    path: Path

    hint = "Remove or fix the symlink loop so that the layer path resolves to a real directory."

    def __str__(self) -> str:
        return f"Circular symlink detected at {self.path}"


@dataclass(frozen=True)
class LayerIoError(LayerError):
    path: Path
    message: str

    def __str__(self) -> str:
        return f"Failed to read symlink target for {self.path}: {self.message}"


@dataclass(frozen=True)
class InvalidLayerPath(LayerError):
    path: Path

    hint = "A layer must be a directory containing prompt assets."

    def __str__(self) -> str:
        return f"Layer path is not a directory: {self.path}"


@dataclass(frozen=True)
class LayerPermissionDenied(LayerError):
    path: Path

    hint = "Check file permissions on the layer directory."

    def __str__(self) -> str:
        return f"Permission denied reading layer: {self.path}"


@dataclass(frozen=True)
class DuplicateAssetInLayer(LayerError):
    layer_name: str
    asset_id: str
    file1: Path
    file2: Path

    hint = "Rename one of the assets (ids are case-insensitive) or set a distinct `id:` in its front-matter."

    def __str__(self) -> str:
        return (
            f"Duplicate asset id {self.asset_id!r} in layer {self.layer_name!r}: "
            f"{self.file1} and {self.file2}"
        )


class ConflictAborted(PromptpackError):
    """Raised when the user aborts conflict resolution."""

    def __str__(self) -> str:
        return "Operation aborted by user"
