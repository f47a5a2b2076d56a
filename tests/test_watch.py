from __future__ import annotations

import threading
from pathlib import Path

import pytest

import promptpack.assets as assets_mod
from conftest import write_asset
from promptpack.deploy import Deployer, DeployOptions
from promptpack.errors import DuplicateAssetInLayer
from promptpack.events import CollectingSink, FileChanged, SyncComplete, WatchError
from promptpack.watch import (
    ContentGate,
    IncrementalCache,
    Watcher,
    WatcherState,
    WatchOptions,
    is_relevant,
    parse_incremental,
)


def test_relevance_filter():
    assert is_relevant(Path("/p/.promptpack/actions/a.md"))
    assert is_relevant(Path("/p/.promptpack/config.toml"))
    assert is_relevant(Path("/p/.promptpack/.promptpackignore"))
    assert is_relevant(Path("/p/.promptpack/skills/x/script.py"))
    assert not is_relevant(Path("/p/promptpack.lock"))
    assert not is_relevant(Path("/p/.promptpack/.promptpack.lock"))
    assert not is_relevant(Path("/p/.promptpack/actions/a.md.tmp"))
    assert not is_relevant(Path("/p/.promptpack/actions/a.md~"))
    assert not is_relevant(Path("/p/.promptpack/notes.txt"))


class TestWatcherState:
    def test_debounce_waits_for_quiet_period(self):
        s = WatcherState(debounce=0.1)
        assert not s.should_sync(10.0)
        s.add(Path("a.md"), 10.0)
        assert not s.should_sync(10.05)
        s.add(Path("b.md"), 10.05)
        assert not s.should_sync(10.1)
        assert s.should_sync(10.16)
        assert s.take() == [Path("a.md"), Path("b.md")]
        assert not s.should_sync(20.0)

    def test_duplicates_collapse(self):
        s = WatcherState()
        s.add(Path("a.md"), 1.0)
        s.add(Path("a.md"), 1.01)
        assert s.take() == [Path("a.md")]


class TestContentGate:
    def test_only_content_changes_pass(self, tmp_path: Path):
        p = tmp_path / "a.md"
        p.write_text("one", encoding="utf-8")
        gate = ContentGate()
        gate.seed([p])

        assert not gate.observe(p)
        p.write_text("one", encoding="utf-8")
        assert not gate.observe(p)
        p.write_text("two", encoding="utf-8")
        assert gate.observe(p)
        assert not gate.observe(p)

    def test_deletion_always_counts(self, tmp_path: Path):
        p = tmp_path / "a.md"
        gate = ContentGate()
        assert gate.observe(p)

    def test_poll_finds_new_changed_and_deleted(self, tmp_path: Path):
        (tmp_path / "keep.md").write_text("k", encoding="utf-8")
        (tmp_path / "edit.md").write_text("1", encoding="utf-8")
        (tmp_path / "gone.md").write_text("g", encoding="utf-8")
        gate = ContentGate()
        assert len(gate.poll([tmp_path])) == 3

        (tmp_path / "edit.md").write_text("2", encoding="utf-8")
        (tmp_path / "gone.md").unlink()
        (tmp_path / "new.md").write_text("n", encoding="utf-8")
        (tmp_path / "ignored.txt").write_text("x", encoding="utf-8")

        assert sorted(p.name for p in gate.poll([tmp_path])) == ["edit.md", "gone.md", "new.md"]
        assert gate.poll([tmp_path]) == []


class TestIncrementalParse:
    def test_first_call_is_full_parse(self, tmp_path: Path):
        write_asset(tmp_path, "actions/a.md")
        write_asset(tmp_path, "actions/b.md")
        cache = IncrementalCache()
        assets = parse_incremental(tmp_path, [], cache)
        assert [a.id for a in assets] == ["a", "b"]
        assert not cache.is_empty()

    def test_reparses_only_changed_file(self, tmp_path: Path, monkeypatch):
        a = write_asset(tmp_path, "actions/a.md", description="old")
        write_asset(tmp_path, "actions/b.md")
        cache = IncrementalCache()
        parse_incremental(tmp_path, [], cache)

        write_asset(tmp_path, "actions/a.md", description="new")
        parsed: list[str] = []
        real = assets_mod.parse_asset_file

        def spy(path: Path, *, layer_root: Path):
            parsed.append(path.name)
            return real(path, layer_root=layer_root)

        monkeypatch.setattr(assets_mod, "parse_asset_file", spy)
        assets = parse_incremental(tmp_path, [a], cache)

        assert parsed == ["a.md"]
        assert {x.id: x.description for x in assets} == {"a": "new", "b": ""}

    def test_unchanged_hash_is_a_cache_hit(self, tmp_path: Path, monkeypatch):
        a = write_asset(tmp_path, "actions/a.md")
        cache = IncrementalCache()
        parse_incremental(tmp_path, [], cache)

        def boom(path: Path, *, layer_root: Path):
            raise AssertionError("should not reparse")

        monkeypatch.setattr(assets_mod, "parse_asset_file", boom)
        assert [x.id for x in parse_incremental(tmp_path, [a], cache)] == ["a"]

    def test_deleted_file_is_dropped(self, tmp_path: Path):
        a = write_asset(tmp_path, "actions/a.md")
        write_asset(tmp_path, "actions/b.md")
        cache = IncrementalCache()
        parse_incremental(tmp_path, [], cache)
        a.unlink()
        assert [x.id for x in parse_incremental(tmp_path, [a], cache)] == ["b"]

    def test_skill_supplemental_change_reparses_skill(self, tmp_path: Path):
        write_asset(tmp_path, "skills/lint/SKILL.md")
        ref = tmp_path / "skills" / "lint" / "ref.md"
        ref.write_text("v1", encoding="utf-8")
        cache = IncrementalCache()
        parse_incremental(tmp_path, [], cache)

        ref.write_text("v2", encoding="utf-8")
        [skill] = parse_incremental(tmp_path, [ref], cache)
        assert skill.supplementals == (("ref.md", "v2"),)

    def test_config_change_forces_full_parse(self, tmp_path: Path):
        write_asset(tmp_path, "actions/a.md")
        write_asset(tmp_path, "wip/b.md")
        cache = IncrementalCache()
        assert len(parse_incremental(tmp_path, [], cache)) == 2

        ignore = tmp_path / ".promptpackignore"
        ignore.write_text("wip\n", encoding="utf-8")
        assert [x.id for x in parse_incremental(tmp_path, [ignore], cache)] == ["a"]

    def test_case_variant_added_later_is_a_duplicate(self, tmp_path: Path):
        write_asset(tmp_path, "actions/review.md")
        cache = IncrementalCache()
        parse_incremental(tmp_path, [], cache)

        added = write_asset(tmp_path, "agents/Review.md")
        with pytest.raises(DuplicateAssetInLayer) as exc:
            parse_incremental(tmp_path, [added], cache, layer_name="project")
        assert exc.value.layer_name == "project"
        assert exc.value.asset_id.lower() == "review"


@pytest.fixture
def project(tmp_path: Path) -> Path:
    root = tmp_path / "proj"
    write_asset(root / ".promptpack", "actions/review.md", body="v1")
    return root


def _watcher(root: Path, sink: CollectingSink) -> Watcher:
    opts = WatchOptions(deploy=DeployOptions(project_root=root, targets=("codex",)))
    w = Watcher(opts, Deployer(), on_event=sink)
    w.setup()
    return w


class TestWatcher:
    def test_setup_watches_project_layer_only(self, project: Path, _isolated_home: Path):
        (_isolated_home / ".promptpack").mkdir()
        w = _watcher(project, CollectingSink())
        assert w.roots == [(project / ".promptpack").resolve()]

    def test_initial_sync_deploys(self, project: Path):
        sink = CollectingSink()
        w = _watcher(project, sink)
        result = w.sync([])
        assert result is not None
        assert result.written == [".codex/prompts/review.md"]
        assert sink.names() == ["sync_started", "start", "file_written", "complete", "sync_complete"]

    def test_change_is_noticed_debounced_and_synced(self, project: Path):
        sink = CollectingSink()
        w = _watcher(project, sink)
        w.sync([])

        src = project / ".promptpack" / "actions" / "review.md"
        write_asset(project / ".promptpack", "actions/review.md", body="v2")
        assert w.notice(src, 100.0)
        # same content again is gated out
        assert not w.notice(src, 100.01)
        # lockfile churn is never relevant
        assert not w.notice(project / "promptpack.lock", 100.02)

        w.step(100.05, last_poll=100.0)
        assert "file_changed" not in sink.names()
        w.step(100.2, last_poll=100.0)

        changed = [e for e in sink.events if isinstance(e, FileChanged)]
        assert [Path(e.path) for e in changed] == [src.resolve()]
        complete = [e for e in sink.events if isinstance(e, SyncComplete)]
        assert complete[-1].written == 1
        assert "v2" in (project / ".codex" / "prompts" / "review.md").read_text(encoding="utf-8")

    def test_poll_catches_missed_notifications(self, project: Path):
        sink = CollectingSink()
        w = _watcher(project, sink)
        w.sync([])
        write_asset(project / ".promptpack", "actions/extra.md", body="x")

        assert w.poll(50.0) == [(project / ".promptpack" / "actions" / "extra.md").resolve()]
        assert w.state.should_sync(50.2)

    def test_parse_error_is_reported_and_watch_continues(self, project: Path):
        sink = CollectingSink()
        w = _watcher(project, sink)
        w.sync([])
        bad = project / ".promptpack" / "actions" / "review.md"
        bad.write_text("no front matter\n", encoding="utf-8")

        assert w.sync([bad.resolve()]) is None
        errors = [e for e in sink.events if isinstance(e, WatchError)]
        assert errors and "front-matter" in errors[0].message

    def test_start_runs_until_stopped(self, project: Path):
        sink = CollectingSink()
        opts = WatchOptions(
            deploy=DeployOptions(project_root=project, targets=("codex",)),
            cooldown=0.0,
        )
        w = Watcher(opts, Deployer(), on_event=sink)
        stop = threading.Event()
        stop.set()

        w.start(stop)

        names = sink.names()
        assert names[0] in ("watch_started", "error")
        assert "sync_complete" in names
        assert names[-1] == "shutdown"
        assert (project / ".codex" / "prompts" / "review.md").exists()

    def test_deleted_source_emits_orphan_events(self, project: Path):
        write_asset(project / ".promptpack", "actions/style.md", body="s")
        sink = CollectingSink()
        w = _watcher(project, sink)
        w.sync([])

        src = project / ".promptpack" / "actions" / "style.md"
        src.unlink()
        result = w.sync([src.resolve()])

        assert result is not None
        assert result.deleted == [".codex/prompts/style.md"]
        names = sink.names()
        assert "orphans_detected" in names
        assert "orphan_deleted" in names
        assert names[-1] == "sync_complete"

    def test_duplicate_in_layer_is_reported_as_error(self, project: Path):
        sink = CollectingSink()
        w = _watcher(project, sink)
        w.sync([])

        added = write_asset(project / ".promptpack", "agents/Review.md")
        assert w.sync([added.resolve()]) is None
        errors = [e for e in sink.events if isinstance(e, WatchError)]
        assert errors and "Duplicate asset id" in errors[-1].message
