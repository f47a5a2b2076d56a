from __future__ import annotations

import os
from pathlib import Path, PurePath


PROJECT_LAYER_DIR = ".promptpack"
LOCKFILE_NAME = "promptpack.lock"
LEGACY_LOCKFILE_NAME = ".promptpack.lock"


def home_dir() -> Path:
    """Home directory used for `~` expansion and user-scope state.

    `PROMPTPACK_HOME` overrides the real home so tests never touch it.
    """

    override = os.environ.get("PROMPTPACK_HOME")
    if override:
        return Path(override).expanduser().resolve()
    return Path.home().resolve()


def expand_home(path: str | PurePath) -> Path:
    s = str(path)
    if s == "~":
        return home_dir()
    if s.startswith("~/") or s.startswith("~\\"):
        return home_dir() / s[2:]
    return Path(s)


def normalize_path(path: str | PurePath) -> str:
    """Forward-slash form of a path, stable across platforms."""

    s = str(path).replace("\\", "/")
    while "//" in s:
        s = s.replace("//", "/")
    while s.startswith("./"):
        s = s[2:]
    return s


def user_state_dir() -> Path:
    return home_dir() / ".promptpack"


def default_user_layer_path() -> Path:
    return user_state_dir()


def user_config_path() -> Path:
    return home_dir() / ".config" / "promptpack" / "config.toml"


def project_lockfile_path(project_root: Path) -> Path:
    return project_root / LOCKFILE_NAME


def global_lockfile_path() -> Path:
    return user_state_dir() / LOCKFILE_NAME


def registry_path() -> Path:
    return user_state_dir() / "registry.toml"


def find_project_root(start: Path) -> Path | None:
    """Find the nearest parent containing a `.promptpack/` layer directory."""

    cur = start.resolve()
    for p in (cur, *cur.parents):
        if (p / PROJECT_LAYER_DIR).is_dir():
            return p
    return None
