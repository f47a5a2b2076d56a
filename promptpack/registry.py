"""Registry of projects promptpack has deployed to.

Stored as TOML in `~/.promptpack/registry.toml`:

    version = 1

    [projects."/home/me/src/app"]
    lockfile = "/home/me/src/app/promptpack.lock"
    asset_count = 12
    last_deployed = "2026-01-01T12:00:00Z"

The registry is passed into the deploy orchestrator explicitly; nothing in
promptpack reads it as ambient state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from . import paths
from .errors import PromptpackError
from .toml_write import toml_basic_string, toml_table, toml_value


try:  # Python 3.11+
    import tomllib as _tomllib  # type: ignore
except ModuleNotFoundError:  # pragma: no cover (dev envs < 3.11)
    import tomli as _tomllib  # type: ignore


logger = logging.getLogger(__name__)

REGISTRY_VERSION = 1


class RegistryError(PromptpackError):
    """Raised when the registry file is unreadable or has an unexpected shape."""


@dataclass(frozen=True)
class ProjectEntry:
    root: Path
    lockfile: Path
    asset_count: int = 0
    last_deployed: str = ""


@dataclass
class ProjectRegistry:
    path: Path = field(default_factory=paths.registry_path)

    def load(self) -> dict[str, ProjectEntry]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise RegistryError(f"Invalid registry {self.path}: unable to read: {e}") from e

        try:
            data = _tomllib.loads(text)
        except _tomllib.TOMLDecodeError as e:
            raise RegistryError(f"Invalid registry {self.path}: {e}") from e

        ver = data.get("version")
        if ver != REGISTRY_VERSION:
            raise RegistryError(f"Unsupported registry version: {ver} (expected {REGISTRY_VERSION})")

        projects_raw = data.get("projects", {})
        if not isinstance(projects_raw, dict):
            raise RegistryError(f"Invalid registry {self.path}: projects must be a table")

        out: dict[str, ProjectEntry] = {}
        for root, raw in projects_raw.items():
            if not isinstance(raw, dict) or not isinstance(raw.get("lockfile"), str):
                raise RegistryError(f"Invalid registry {self.path}: projects.{root!r} needs a lockfile string")
            count = raw.get("asset_count", 0)
            if not isinstance(count, int) or isinstance(count, bool):
                raise RegistryError(f"Invalid registry {self.path}: projects.{root!r}.asset_count must be an integer")
            out[root] = ProjectEntry(
                root=Path(root),
                lockfile=Path(raw["lockfile"]),
                asset_count=count,
                last_deployed=str(raw.get("last_deployed", "")),
            )
        return out

    def save(self, projects: dict[str, ProjectEntry]) -> None:
        lines = [f"version = {toml_value(REGISTRY_VERSION)}"]
        for root in sorted(projects):
            e = projects[root]
            lines.append("")
            lines.extend(
                toml_table(
                    f"projects.{toml_basic_string(root)}",
                    {
                        "lockfile": str(e.lockfile),
                        "asset_count": e.asset_count,
                        "last_deployed": e.last_deployed,
                    },
                    key_order=["lockfile", "asset_count", "last_deployed"],
                )
            )

        text = "\n".join(lines) + "\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        tmp.replace(self.path)

    def register(self, root: Path, lockfile: Path, *, asset_count: int, now: datetime | None = None) -> ProjectEntry:
        projects = self.load()
        stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
        entry = ProjectEntry(root=root, lockfile=lockfile, asset_count=asset_count, last_deployed=stamp)
        projects[str(root)] = entry
        self.save(projects)
        logger.debug("registered project %s (%d assets)", root, asset_count)
        return entry

    def prune_missing(self) -> list[Path]:
        """Drop projects whose lockfile no longer exists; return their roots."""

        projects = self.load()
        gone = [e.root for e in projects.values() if not e.lockfile.exists()]
        for root in gone:
            projects.pop(str(root), None)
        if gone:
            self.save(projects)
        return gone
