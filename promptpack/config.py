from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path
from typing import Any

from . import paths
from .errors import ConfigParseError, ConfigValidationError
from .models import (
    TARGET_IDS,
    DeployConfig,
    PromptpackConfig,
    SecurityConfig,
    SourcesConfig,
    TargetsConfig,
)


try:  # Python 3.11+
    import tomllib as _tomllib  # type: ignore
except ModuleNotFoundError:  # pragma: no cover (dev envs < 3.11)
    import tomli as _tomllib  # type: ignore


CONFIG_FILE_NAME = "config.toml"

_SECURITY_MODES = {"balanced", "strict", "yolo"}
_DEPLOY_TARGETS = {"project", "home"}

_SCHEMA: dict[str, set[str]] = {
    "sources": {"user_layer_path", "use_user_layer", "additional_layers", "disable_project_layer"},
    "targets": {"enabled"},
    "deploy": {"target"},
    "security": {"mode", "deny"},
}


def _load_toml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigValidationError(path=path, message="file not found") from e
    except OSError as e:
        raise ConfigValidationError(path=path, message=f"unable to read file: {e}") from e

    try:
        data = _tomllib.loads(text)
    except _tomllib.TOMLDecodeError as e:
        # tomllib/tomli both carry msg/lineno/colno on newer releases.
        msg = getattr(e, "msg", str(e))
        lineno = getattr(e, "lineno", None)
        colno = getattr(e, "colno", None)
        raise ConfigParseError(path=path, message=str(msg), lineno=lineno, colno=colno) from e

    if not isinstance(data, dict):
        raise ConfigValidationError(path=path, message="top-level TOML must be a table")
    return data


def _unknown_keys_message(unknown: set[str]) -> str:
    keys = ", ".join(sorted(unknown))
    return f"unknown keys: {keys}"


def _require_table(path: Path, value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigValidationError(path=path, message=f"{where}: expected table")
    return value


def _require_str(path: Path, value: Any, where: str) -> str:
    if not isinstance(value, str):
        raise ConfigValidationError(path=path, message=f"{where}: expected string")
    return value


def _require_bool(path: Path, value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigValidationError(path=path, message=f"{where}: expected bool")
    return value


def _require_str_list(path: Path, value: Any, where: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigValidationError(path=path, message=f"{where}: expected list of strings")
    return value


def _require_choice(path: Path, value: Any, where: str, choices: set[str]) -> str:
    s = _require_str(path, value, where)
    if s not in choices:
        raise ConfigValidationError(path=path, message=f"{where}: expected one of {sorted(choices)}, got {s!r}")
    return s


def _validate(path: Path, data: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Check keys and value types of one config file; return its tables."""

    unknown_top = set(data.keys()) - set(_SCHEMA)
    if unknown_top:
        raise ConfigValidationError(path=path, message=_unknown_keys_message(unknown_top))

    tables: dict[str, dict[str, Any]] = {}
    for name, allowed in _SCHEMA.items():
        if name not in data:
            continue
        tbl = _require_table(path, data[name], name)
        unknown = set(tbl.keys()) - allowed
        if unknown:
            raise ConfigValidationError(path=path, message=f"{name}: {_unknown_keys_message(unknown)}")
        tables[name] = dict(tbl)

    src = tables.get("sources", {})
    if "user_layer_path" in src:
        _require_str(path, src["user_layer_path"], "sources.user_layer_path")
    for key in ("use_user_layer", "disable_project_layer"):
        if key in src:
            _require_bool(path, src[key], f"sources.{key}")
    if "additional_layers" in src:
        _require_str_list(path, src["additional_layers"], "sources.additional_layers")

    tgt = tables.get("targets", {})
    if "enabled" in tgt:
        for t in _require_str_list(path, tgt["enabled"], "targets.enabled"):
            if t != "all" and t not in TARGET_IDS:
                raise ConfigValidationError(
                    path=path,
                    message=f"targets.enabled: unknown target {t!r} (expected one of {list(TARGET_IDS)} or 'all')",
                )

    dep = tables.get("deploy", {})
    if "target" in dep:
        _require_choice(path, dep["target"], "deploy.target", _DEPLOY_TARGETS)

    sec = tables.get("security", {})
    if "mode" in sec:
        _require_choice(path, sec["mode"], "security.mode", _SECURITY_MODES)
    if "deny" in sec:
        _require_str_list(path, sec["deny"], "security.deny")

    return tables


def config_paths(project_layer: Path | None) -> list[Path]:
    """Config files in priority order (lowest first)."""

    out = [paths.user_config_path()]
    if project_layer is not None:
        out.append(project_layer / CONFIG_FILE_NAME)
    return out


def _build(merged: dict[str, dict[str, Any]]) -> PromptpackConfig:
    src = merged.get("sources", {})
    sources = SourcesConfig(
        user_layer_path=src.get("user_layer_path", SourcesConfig.user_layer_path),
        use_user_layer=src.get("use_user_layer", SourcesConfig.use_user_layer),
        additional_layers=tuple(src.get("additional_layers", ())),
        disable_project_layer=src.get("disable_project_layer", SourcesConfig.disable_project_layer),
    )
    targets = TargetsConfig(enabled=tuple(merged.get("targets", {}).get("enabled", ("all",))))
    deploy = DeployConfig(target=merged.get("deploy", {}).get("target", "project"))
    sec = merged.get("security", {})
    security = SecurityConfig(mode=sec.get("mode", "balanced"), deny=tuple(sec.get("deny", ())))
    return PromptpackConfig(sources=sources, targets=targets, deploy=deploy, security=security)


def _apply_env(cfg: PromptpackConfig) -> PromptpackConfig:
    raw = os.environ.get("PROMPTPACK_TARGETS")
    if raw:
        enabled = tuple(t.strip() for t in raw.split(",") if t.strip())
        for t in enabled:
            if t != "all" and t not in TARGET_IDS:
                raise ConfigValidationError(
                    path=Path("$PROMPTPACK_TARGETS"),
                    message=f"unknown target {t!r} (expected one of {list(TARGET_IDS)} or 'all')",
                )
        cfg = replace(cfg, targets=TargetsConfig(enabled=enabled))
    return cfg


def load_config(project_layer: Path | None = None) -> PromptpackConfig:
    """Load user then project config; later files override earlier ones per key."""

    merged: dict[str, dict[str, Any]] = {}
    for p in config_paths(project_layer):
        if not p.is_file():
            continue
        for name, tbl in _validate(p, _load_toml(p)).items():
            merged.setdefault(name, {}).update(tbl)
    return _apply_env(_build(merged))


def parse_config_text(text: str, *, path: Path = Path("config.toml")) -> PromptpackConfig:
    try:
        data = _tomllib.loads(text)
    except _tomllib.TOMLDecodeError as e:
        raise ConfigParseError(
            path=path,
            message=str(getattr(e, "msg", e)),
            lineno=getattr(e, "lineno", None),
            colno=getattr(e, "colno", None),
        ) from e
    return _build(_validate(path, data))
