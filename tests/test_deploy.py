from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

from conftest import write_asset
from promptpack.adapters import CodexAdapter
from promptpack.conflict import ConflictChoice, ConflictContext, ConflictResolver, ForceResolver
from promptpack.deploy import Deployer, DeployOptions
from promptpack.errors import NoLayersFound
from promptpack.events import CollectingSink
from promptpack.fs import LocalFileSystem, content_hash
from promptpack.lock import load_lock
from promptpack.registry import ProjectRegistry


class AbortResolver(ConflictResolver):
    def resolve(self, ctx: ConflictContext) -> ConflictChoice:
        return ConflictChoice.ABORT


class FailingWrites(LocalFileSystem):
    def __init__(self, fail_name: str) -> None:
        self.fail_name = fail_name

    def write(self, path: Path, content: str) -> None:
        if Path(path).name == self.fail_name:
            raise PermissionError(f"denied: {path}")
        super().write(path, content)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "proj"
    layer = root / ".promptpack"
    write_asset(layer, "actions/review.md", description="Review code", body="Review carefully.")
    write_asset(layer, "policies/style.md", description="Style", body="Be consistent.")
    return root


def _opts(root: Path, **kw) -> DeployOptions:
    kw.setdefault("targets", ("claude-code",))
    return DeployOptions(project_root=root, **kw)


def _deployer(tmp_path: Path, **kw) -> Deployer:
    kw.setdefault("registry", ProjectRegistry(tmp_path / "registry.toml"))
    return Deployer(**kw)


def _lock_keys(root: Path) -> list[str]:
    return load_lock(root / "promptpack.lock").keys()


class TestFreshDeploy:
    def test_writes_outputs_and_lockfile(self, tmp_path: Path, project: Path):
        result = _deployer(tmp_path).execute(_opts(project))

        assert result.is_success
        assert result.written == [
            ".claude/commands/review.md",
            ".claude/commands/style.md",
            ".claude/settings.json",
        ]
        assert result.asset_count == 2
        text = (project / ".claude" / "commands" / "review.md").read_text(encoding="utf-8")
        assert "Review carefully." in text
        assert "Generated by promptpack" in text

        lock = load_lock(project / "promptpack.lock")
        entry = lock.get("project:.claude/commands/review.md")
        assert entry is not None
        assert entry.hash == content_hash(text)
        assert entry.provenance is not None
        assert entry.provenance.source_layer == "project"
        assert entry.provenance.source_asset == "review"
        assert entry.provenance.source_file.endswith("actions/review.md")
        settings = lock.get("project:.claude/settings.json")
        assert settings is not None and settings.provenance is None

    def test_event_stream(self, tmp_path: Path, project: Path):
        sink = CollectingSink()
        _deployer(tmp_path).execute_with_events(_opts(project), sink)
        assert sink.names() == ["start", "file_written", "file_written", "file_written", "complete"]
        assert sink.events[0].to_dict() == {"event": "start", "total": 3}

    def test_registers_project(self, tmp_path: Path, project: Path):
        _deployer(tmp_path).execute(_opts(project))
        projects = ProjectRegistry(tmp_path / "registry.toml").load()
        assert projects[str(project)].asset_count == 2
        assert projects[str(project)].lockfile == project / "promptpack.lock"

    def test_no_layers_is_a_failure_not_an_exception(self, tmp_path: Path):
        empty = tmp_path / "empty"
        empty.mkdir()
        result = _deployer(tmp_path).execute(_opts(empty))
        assert isinstance(result.failure, NoLayersFound)
        assert not result.is_success
        assert not (empty / "promptpack.lock").exists()


class TestRedeploy:
    def test_second_deploy_is_idempotent(self, tmp_path: Path, project: Path):
        d = _deployer(tmp_path)
        d.execute(_opts(project))
        before = (project / "promptpack.lock").read_text(encoding="utf-8")

        sink = CollectingSink()
        result = d.execute(_opts(project), sink)

        assert result.written == []
        assert len(result.skipped) == 3
        reasons = {e.to_dict()["reason"] for e in sink.events if e.event_name == "file_skipped"}
        assert reasons == {"up to date"}
        assert (project / "promptpack.lock").read_text(encoding="utf-8") == before

    def test_source_change_rewrites_own_output(self, tmp_path: Path, project: Path):
        d = _deployer(tmp_path)
        d.execute(_opts(project))
        write_asset(project / ".promptpack", "actions/review.md", description="Review code", body="Updated.")

        result = d.execute(_opts(project))

        assert result.written == [".claude/commands/review.md"]
        assert "Updated." in (project / ".claude" / "commands" / "review.md").read_text(encoding="utf-8")

    def test_local_edit_is_kept_without_force(self, tmp_path: Path, project: Path):
        d = _deployer(tmp_path)
        d.execute(_opts(project))
        out = project / ".claude" / "commands" / "review.md"
        out.write_text("my edits\n", encoding="utf-8")

        sink = CollectingSink()
        result = d.execute(_opts(project), sink)

        assert ".claude/commands/review.md" in result.skipped
        assert out.read_text(encoding="utf-8") == "my edits\n"
        reasons = {e.path: e.reason for e in sink.events if e.event_name == "file_skipped"}  # type: ignore[attr-defined]
        assert reasons[".claude/commands/review.md"] == "conflict: modified, kept"
        assert result.warnings == ["1 conflicting file(s) left unchanged; use --force to overwrite"]

    def test_force_overwrites_local_edit(self, tmp_path: Path, project: Path):
        d = _deployer(tmp_path)
        d.execute(_opts(project))
        out = project / ".claude" / "commands" / "review.md"
        out.write_text("my edits\n", encoding="utf-8")

        result = d.execute(_opts(project, force=True))

        assert result.written == [".claude/commands/review.md"]
        assert "Review carefully." in out.read_text(encoding="utf-8")

    def test_untracked_existing_file_is_a_conflict(self, tmp_path: Path, project: Path):
        out = project / ".claude" / "commands" / "review.md"
        out.parent.mkdir(parents=True)
        out.write_text("hand written\n", encoding="utf-8")

        result = _deployer(tmp_path).execute(_opts(project))

        assert ".claude/commands/review.md" in result.skipped
        assert out.read_text(encoding="utf-8") == "hand written\n"


class TestDryRunAndAbort:
    def test_dry_run_touches_nothing(self, tmp_path: Path, project: Path):
        result = _deployer(tmp_path).execute(_opts(project, dry_run=True))

        assert result.dry_run
        assert len(result.written) == 3
        assert not (project / ".claude").exists()
        assert not (project / "promptpack.lock").exists()
        assert not (tmp_path / "registry.toml").exists()

    def test_abort_writes_nothing(self, tmp_path: Path, project: Path):
        out = project / ".claude" / "commands" / "style.md"
        out.parent.mkdir(parents=True)
        out.write_text("hand written\n", encoding="utf-8")

        result = _deployer(tmp_path).execute_with_resolver(_opts(project), AbortResolver())

        assert result.aborted
        assert result.errors == ["Operation aborted by user"]
        assert not (project / ".claude" / "commands" / "review.md").exists()
        assert not (project / "promptpack.lock").exists()


class TestOrphans:
    def test_removed_source_deletes_signed_output(self, tmp_path: Path, project: Path):
        d = _deployer(tmp_path)
        d.execute(_opts(project))
        (project / ".promptpack" / "actions" / "review.md").unlink()

        sink = CollectingSink()
        result = d.execute(_opts(project), sink)

        assert result.deleted == [".claude/commands/review.md"]
        assert not (project / ".claude" / "commands" / "review.md").exists()
        assert "project:.claude/commands/review.md" not in _lock_keys(project)
        assert "orphans_detected" in sink.names()
        assert "orphan_deleted" in sink.names()

    def test_unsigned_orphan_is_kept_with_warning(self, tmp_path: Path, project: Path):
        d = _deployer(tmp_path)
        d.execute(_opts(project))
        out = project / ".claude" / "commands" / "review.md"
        out.write_text("now mine\n", encoding="utf-8")
        (project / ".promptpack" / "actions" / "review.md").unlink()

        result = d.execute(_opts(project))

        assert result.deleted == []
        assert out.exists()
        assert any("without promptpack signature" in w for w in result.warnings)
        assert "project:.claude/commands/review.md" in _lock_keys(project)

    def test_already_deleted_orphan_drops_lock_entry(self, tmp_path: Path, project: Path):
        d = _deployer(tmp_path)
        d.execute(_opts(project))
        (project / ".claude" / "commands" / "review.md").unlink()
        (project / ".promptpack" / "actions" / "review.md").unlink()

        result = d.execute(_opts(project))

        assert result.deleted == []
        assert "project:.claude/commands/review.md" not in _lock_keys(project)

    def test_no_clean_keeps_orphans(self, tmp_path: Path, project: Path):
        d = _deployer(tmp_path)
        d.execute(_opts(project))
        (project / ".promptpack" / "actions" / "review.md").unlink()

        d.execute(_opts(project, clean_orphans=False))

        assert (project / ".claude" / "commands" / "review.md").exists()
        assert "project:.claude/commands/review.md" in _lock_keys(project)

    def test_removed_skill_deletes_supplementals_and_prunes_dirs(self, tmp_path: Path, project: Path):
        layer = project / ".promptpack"
        write_asset(layer, "skills/lint/SKILL.md", description="Lint")
        (layer / "skills" / "lint" / "refs").mkdir()
        (layer / "skills" / "lint" / "refs" / "rules.md").write_text("no tabs\n", encoding="utf-8")

        d = _deployer(tmp_path)
        d.execute(_opts(project))
        skill_out = project / ".claude" / "skills" / "lint"
        assert (skill_out / "refs" / "rules.md").read_text(encoding="utf-8") == "no tabs\n"

        shutil.rmtree(layer / "skills" / "lint")

        result = d.execute(_opts(project))

        assert sorted(result.deleted) == [".claude/skills/lint/SKILL.md", ".claude/skills/lint/refs/rules.md"]
        assert not skill_out.exists()
        assert (project / ".claude" / "skills").is_dir()


class TestScopesAndLayers:
    def test_user_scope_deploys_to_home_with_global_lockfile(self, tmp_path: Path, project: Path, _isolated_home: Path):
        result = _deployer(tmp_path).execute(_opts(project, scope="user"))

        home = _isolated_home.resolve()
        assert ".claude/settings.json" not in result.written
        assert "~/.claude/commands/review.md" in result.written
        assert (home / ".claude" / "commands" / "review.md").exists()
        lock = load_lock(home / ".promptpack" / "promptpack.lock")
        assert "user:~/.claude/commands/review.md" in lock.keys()
        assert not (project / "promptpack.lock").exists()
        assert not (tmp_path / "registry.toml").exists()

    def test_project_layer_overrides_user_layer(self, tmp_path: Path, project: Path, _isolated_home: Path):
        write_asset(_isolated_home / ".promptpack", "actions/review.md", description="Mine", body="User version.")
        write_asset(_isolated_home / ".promptpack", "actions/personal.md", body="Personal.")

        result = _deployer(tmp_path).execute(_opts(project))

        assert result.warnings == ["Asset 'review' from user overridden by project"]
        review = (project / ".claude" / "commands" / "review.md").read_text(encoding="utf-8")
        assert "Review carefully." in review
        assert (project / ".claude" / "commands" / "personal.md").exists()
        entry = load_lock(project / "promptpack.lock").get("project:.claude/commands/review.md")
        assert entry is not None and entry.provenance is not None
        assert entry.provenance.overrides == "user"

    def test_no_user_layer_option(self, tmp_path: Path, project: Path, _isolated_home: Path):
        write_asset(_isolated_home / ".promptpack", "actions/personal.md")
        result = _deployer(tmp_path).execute(_opts(project, use_user_layer=False))
        assert ".claude/commands/personal.md" not in result.written

    def test_legacy_lockfile_is_migrated(self, tmp_path: Path, project: Path):
        d = _deployer(tmp_path)
        d.execute(_opts(project))
        (project / "promptpack.lock").rename(project / ".promptpack" / ".promptpack.lock")

        result = d.execute(_opts(project))

        assert any("Migrated legacy lockfile" in w for w in result.warnings)
        assert result.written == []
        assert (project / "promptpack.lock").exists()


def test_write_failure_is_recorded_and_others_continue(tmp_path: Path, project: Path):
    d = _deployer(tmp_path, fs=FailingWrites("style.md"))
    sink = CollectingSink()

    result = d.execute(_opts(project), sink)

    assert result.written == [".claude/commands/review.md", ".claude/settings.json"]
    assert len(result.errors) == 1 and result.errors[0].startswith(".claude/commands/style.md:")
    assert "file_error" in sink.names()
    keys = _lock_keys(project)
    assert "project:.claude/commands/style.md" not in keys
    assert "project:.claude/commands/review.md" in keys
    # a failed deploy does not register the project
    assert not (tmp_path / "registry.toml").exists()


def test_corrupt_lockfile_fails_before_writing(tmp_path: Path, project: Path):
    (project / "promptpack.lock").write_text("{}", encoding="utf-8")
    result = _deployer(tmp_path).execute(_opts(project))
    assert result.failure is not None
    assert "missing required keys" in result.errors[0]
    assert not (project / ".claude").exists()


def test_diff_reports_changes_without_writing(tmp_path: Path, project: Path):
    d = _deployer(tmp_path)
    d.execute(_opts(project))
    write_asset(project / ".promptpack", "actions/review.md", description="Review code", body="Changed.")

    diff = d.diff(_opts(project))

    changed = diff.changed()
    assert [e.path for e in changed] == [".claude/commands/review.md"]
    assert changed[0].action == "write"
    assert "+Changed." in changed[0].diff
    assert "Changed." not in (project / ".claude" / "commands" / "review.md").read_text(encoding="utf-8")
    assert json.loads(json.dumps(diff.to_dict()))["files"][0]["path"] == ".claude/commands/review.md"


def test_injected_adapters_and_force_resolver(tmp_path: Path, project: Path):
    d = _deployer(tmp_path, adapters=[CodexAdapter()])
    result = d.execute_with_resolver(_opts(project), ForceResolver())
    assert result.written == [".codex/prompts/review.md", ".codex/prompts/style.md"]


def test_lockfile_records_conflict_skips_with_new_hash(tmp_path: Path, project: Path):
    out = project / ".claude" / "commands" / "review.md"
    out.parent.mkdir(parents=True)
    out.write_text("hand written\n", encoding="utf-8")

    _deployer(tmp_path).execute(_opts(project))

    entry = load_lock(project / "promptpack.lock").get("project:.claude/commands/review.md")
    assert entry is not None
    assert entry.hash != content_hash("hand written\n")
