"""Target adapters: turn assets into files for a specific tool.

Every adapter is string formatting only; none of them touch the filesystem.
Paths are project-relative for project-scope assets and `~/`-prefixed for
user-scope assets.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Iterable

import yaml

from .models import Asset, OutputFile, PromptpackConfig, TARGET_IDS
from .orphans import SIGNATURE


def footer(source: str | Path) -> str:
    src = Path(source).as_posix() if isinstance(source, Path) else source
    return f"<!-- {SIGNATURE}. Source: {src}. DO NOT EDIT. -->"


def _frontmatter(data: dict[str, Any]) -> str:
    body = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
    return "---\n" + body + "---\n"


def _with_footer(asset: Asset, head: str = "") -> str:
    text = asset.content.strip()
    if head:
        return f"{head}\n{text}\n\n{footer(asset.source_path)}\n"
    return f"{text}\n\n{footer(asset.source_path)}\n"


def _root(asset: Asset, project_dir: str) -> Path:
    return Path(f"~/{project_dir}") if asset.scope == "user" else Path(project_dir)


class TargetAdapter(ABC):
    target_id: str = ""

    @abstractmethod
    def compile(self, asset: Asset) -> list[OutputFile]: ...

    def post_compile(self, assets: list[Asset]) -> list[OutputFile]:
        """Aggregate outputs built from the whole asset set."""
        return []

    def security_baseline(self, config: PromptpackConfig) -> list[OutputFile]:
        return []

    def _out(self, path: Path, content: str) -> OutputFile:
        return OutputFile(path=path, content=content, target=self.target_id)


def _skill_outputs(adapter: TargetAdapter, asset: Asset, base: Path) -> list[OutputFile]:
    fm: dict[str, Any] = {"name": asset.id, "description": asset.description}
    if asset.allowed_tools:
        fm["allowed-tools"] = list(asset.allowed_tools)
    skill_dir = base / asset.id
    outputs = [adapter._out(skill_dir / "SKILL.md", _with_footer(asset, _frontmatter(fm)))]
    for rel, text in asset.supplementals:
        outputs.append(adapter._out(skill_dir / rel, text))
    return outputs


class ClaudeCodeAdapter(TargetAdapter):
    target_id = "claude-code"

    def compile(self, asset: Asset) -> list[OutputFile]:
        root = _root(asset, ".claude")
        if asset.kind == "skill":
            return _skill_outputs(self, asset, root / "skills")
        if asset.kind == "agent":
            fm: dict[str, Any] = {"name": asset.id, "description": asset.description}
            if asset.allowed_tools:
                fm["tools"] = ", ".join(asset.allowed_tools)
            return [self._out(root / "agents" / f"{asset.id}.md", _with_footer(asset, _frontmatter(fm)))]
        head = f"# {asset.description}\n" if asset.description else ""
        return [self._out(root / "commands" / f"{asset.id}.md", _with_footer(asset, head))]

    def security_baseline(self, config: PromptpackConfig) -> list[OutputFile]:
        sec = config.security
        if sec.mode == "yolo":
            deny: list[str] = []
        else:
            deny = ["Read(.env)", "Read(.env.*)", "Read(**/*.pem)", "Read(**/*.key)"]
            if sec.mode == "strict":
                deny += ["Bash(curl:*)", "Bash(wget:*)"]
            deny += [d for d in sec.deny if d not in deny]
        settings = {"permissions": {"deny": deny}}
        text = json.dumps(settings, indent=2, ensure_ascii=False) + "\n"
        return [self._out(Path(".claude/settings.json"), text)]


class CursorAdapter(TargetAdapter):
    target_id = "cursor"

    def compile(self, asset: Asset) -> list[OutputFile]:
        root = _root(asset, ".cursor")
        if asset.kind == "skill":
            # Cursor reads skills from the Claude skills directory.
            return []
        if asset.kind == "policy":
            fm: dict[str, Any] = {"description": asset.description}
            if asset.apply:
                fm["globs"] = asset.apply
            fm["alwaysApply"] = asset.apply is None
            return [self._out(root / "rules" / asset.id / "RULE.md", _with_footer(asset, _frontmatter(fm)))]
        return [self._out(root / "commands" / f"{asset.id}.md", _with_footer(asset))]


class CodexAdapter(TargetAdapter):
    target_id = "codex"

    def compile(self, asset: Asset) -> list[OutputFile]:
        root = _root(asset, ".codex")
        if asset.kind == "skill":
            return _skill_outputs(self, asset, root / "skills")
        fm = {"description": asset.description}
        return [self._out(root / "prompts" / f"{asset.id}.md", _with_footer(asset, _frontmatter(fm)))]


class AgentsMdAdapter(TargetAdapter):
    """Aggregate AGENTS.md listing project policies in id order."""

    target_id = "agents"

    def compile(self, asset: Asset) -> list[OutputFile]:
        return []

    def post_compile(self, assets: list[Asset]) -> list[OutputFile]:
        policies = sorted(
            (a for a in assets if a.kind == "policy" and a.scope == "project" and a.targets_include(self.target_id)),
            key=lambda a: a.id,
        )
        if not policies:
            return []

        lines = ["# Project Guidelines", ""]
        for a in policies:
            lines.append(f"## {a.description or a.id}")
            lines.append("")
            lines.append(a.content.strip())
            lines.append("")
        lines.append(footer("policies"))
        return [self._out(Path("AGENTS.md"), "\n".join(lines) + "\n")]


def all_adapters() -> list[TargetAdapter]:
    return [ClaudeCodeAdapter(), CursorAdapter(), CodexAdapter(), AgentsMdAdapter()]


def select_adapters(enabled: Iterable[str]) -> list[TargetAdapter]:
    wanted = set(enabled)
    unknown = wanted - set(TARGET_IDS) - {"all"}
    if unknown:
        raise ValueError(f"unknown targets: {sorted(unknown)} (expected one of {list(TARGET_IDS)} or 'all')")
    if "all" in wanted:
        return all_adapters()
    return [a for a in all_adapters() if a.target_id in wanted]


def compile_assets(
    assets: list[Asset],
    adapters: list[TargetAdapter],
    config: PromptpackConfig | None = None,
) -> tuple[list[OutputFile], dict[str, Asset]]:
    """Run every adapter over every asset.

    Returns outputs sorted by path plus, for outputs compiled from a single
    asset, that asset keyed by the output's posix path. Later outputs for the
    same path win.
    """

    by_path: dict[str, OutputFile] = {}
    origins: dict[str, Asset] = {}
    for adapter in adapters:
        for asset in assets:
            if not asset.targets_include(adapter.target_id):
                continue
            for out in adapter.compile(asset):
                by_path[out.path.as_posix()] = out
                origins[out.path.as_posix()] = asset
        aggregate = list(adapter.post_compile(assets))
        if config is not None:
            aggregate += adapter.security_baseline(config)
        for out in aggregate:
            by_path[out.path.as_posix()] = out
            origins.pop(out.path.as_posix(), None)
    return [by_path[k] for k in sorted(by_path)], origins
