from __future__ import annotations

from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolated_home(tmp_path: Path, monkeypatch) -> Path:
    """Keep user-scope state (user layer, global lockfile, registry) inside tmp_path."""

    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("PROMPTPACK_HOME", str(home))
    monkeypatch.delenv("PROMPTPACK_TARGETS", raising=False)
    return home


def write_asset(layer: Path, rel: str, *, description: str = "", body: str = "Body.", **fm: object) -> Path:
    """Write a markdown asset with YAML front-matter under a layer directory."""

    lines = ["---"]
    if description:
        lines.append(f"description: {description}")
    for k, v in fm.items():
        key = k.replace("_", "-")
        if isinstance(v, (list, tuple)):
            lines.append(f"{key}: [{', '.join(str(x) for x in v)}]")
        else:
            lines.append(f"{key}: {v}")
    lines.append("---")
    lines.append(body)
    p = layer / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return p
