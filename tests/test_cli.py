from __future__ import annotations

import json
from pathlib import Path

import pytest

from conftest import write_asset
from promptpack.cli import main
from promptpack.registry import ProjectRegistry


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "proj"
    write_asset(root / ".promptpack", "actions/review.md", description="Review", body="Review it.")
    return root


def _run(root: Path, *argv: str) -> int:
    return main(["--root", str(root), *argv])


def test_version(capsys):
    assert main(["version"]) == 0
    assert capsys.readouterr().out.startswith("promptpack ")


def test_deploy_prints_summary_and_registers(project: Path, capsys):
    assert _run(project, "deploy", "--target", "codex") == 0
    out = capsys.readouterr().out
    assert "wrote .codex/prompts/review.md" in out
    assert "1 written, 0 skipped, 0 deleted, 0 errors" in out
    assert str(project.resolve()) in ProjectRegistry().load()


def test_deploy_json(project: Path, capsys):
    assert _run(project, "deploy", "--target", "codex", "--json") == 0
    data = json.loads(capsys.readouterr().out)
    assert data["written"] == [".codex/prompts/review.md"]
    assert data["counts"]["written"] == 1
    assert data["dry_run"] is False


def test_dry_run_writes_nothing(project: Path, capsys):
    assert _run(project, "deploy", "--target", "codex", "--dry-run") == 0
    assert "would write .codex/prompts/review.md" in capsys.readouterr().out
    assert not (project / ".codex").exists()


def test_env_targets_apply_without_flag(project: Path, monkeypatch, capsys):
    monkeypatch.setenv("PROMPTPACK_TARGETS", "cursor")
    assert _run(project, "deploy") == 0
    assert (project / ".cursor" / "commands" / "review.md").exists()
    assert not (project / ".claude").exists()


def test_missing_layers_exit_code(tmp_path: Path, capsys):
    empty = tmp_path / "empty"
    empty.mkdir()
    assert _run(empty, "deploy") == 2
    assert "error: No layers found" in capsys.readouterr().out


def test_bad_config_exit_code(project: Path, capsys):
    (project / ".promptpack" / "config.toml").write_text("[security]\nmode = 'loose'\n", encoding="utf-8")
    assert _run(project, "deploy") == 2
    out = capsys.readouterr().out
    assert out.startswith("error: Invalid config in")
    assert "security.mode" in out


def test_local_edit_conflict_is_reported_as_skip(project: Path, capsys):
    assert _run(project, "deploy", "--target", "codex") == 0
    out_file = project / ".codex" / "prompts" / "review.md"
    out_file.write_text("mine\n", encoding="utf-8")
    capsys.readouterr()

    assert _run(project, "deploy", "--target", "codex") == 0
    assert "0 written, 1 skipped" in capsys.readouterr().out
    assert out_file.read_text(encoding="utf-8") == "mine\n"

    assert _run(project, "deploy", "--target", "codex", "--force") == 0
    assert "Review it." in out_file.read_text(encoding="utf-8")


def test_diff_shows_pending_change(project: Path, capsys):
    assert _run(project, "deploy", "--target", "codex") == 0
    write_asset(project / ".promptpack", "actions/review.md", description="Review", body="Review twice.")
    capsys.readouterr()

    assert _run(project, "diff", "--target", "codex") == 0
    out = capsys.readouterr().out
    assert "write: .codex/prompts/review.md" in out
    assert "+Review twice." in out


def test_diff_up_to_date(project: Path, capsys):
    assert _run(project, "deploy", "--target", "codex") == 0
    capsys.readouterr()
    assert _run(project, "diff", "--target", "codex") == 0
    assert "Everything up to date." in capsys.readouterr().out


def test_clean(project: Path, capsys):
    assert _run(project, "deploy", "--target", "codex") == 0
    capsys.readouterr()
    assert _run(project, "clean") == 0
    assert "deleted .codex/prompts/review.md" in capsys.readouterr().out
    assert not (project / ".codex" / "prompts" / "review.md").exists()


def test_layers_json(project: Path, _isolated_home: Path, capsys):
    write_asset(_isolated_home / ".promptpack", "actions/review.md", body="user copy")
    assert _run(project, "layers", "--json") == 0
    data = json.loads(capsys.readouterr().out)
    assert [row["name"] for row in data["layers"]] == ["user", "project"]
    assert data["merged_assets"] == 1
    assert data["warnings"] == ["Asset 'review' from user overridden by project"]


def test_projects_lists_and_prunes(project: Path, tmp_path: Path, capsys):
    gone = tmp_path / "gone"
    write_asset(gone / ".promptpack", "actions/x.md")
    assert _run(project, "deploy", "--target", "codex") == 0
    assert _run(gone, "deploy", "--target", "codex") == 0
    (gone / "promptpack.lock").unlink()
    capsys.readouterr()

    assert main(["projects", "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["count"] == 2
    exists = {row["path"]: row["lockfile_exists"] for row in data["projects"]}
    assert exists == {str(project.resolve()): True, str(gone.resolve()): False}
    assert data["pruned"] == []

    assert main(["projects", "--prune"]) == 0
    out = capsys.readouterr().out
    assert f"pruned {gone.resolve()}" in out
    assert f"{project.resolve()}  1 assets" in out
    assert list(ProjectRegistry().load()) == [str(project.resolve())]


def test_projects_empty_registry(capsys):
    assert main(["projects"]) == 0
    assert capsys.readouterr().out.startswith("No projects registered in ")
