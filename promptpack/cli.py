from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from importlib import metadata
from pathlib import Path
from typing import Any

from .clean import Cleaner, CleanOptions
from .config import load_config
from .conflict import ConflictResolver, ForceResolver, InteractiveResolver, SafeResolver
from .deploy import Deployer, DeployOptions, DeployResult
from .errors import ConflictAborted, LayerError, PromptpackConfigError, PromptpackError
from .events import Event, JsonLinesSink
from .fs import FileSystem, LocalFileSystem, RemoteFileSystem
from .layers import load_layers, merge_layers
from .lock import LockfileError, resolve_lockfile_path
from .models import PromptpackConfig
from .paths import PROJECT_LAYER_DIR, find_project_root, global_lockfile_path
from .registry import ProjectRegistry, RegistryError
from .watch import WatchOptions, Watcher


logger = logging.getLogger(__name__)


def _version() -> str:
    try:
        return metadata.version("promptpack")
    except metadata.PackageNotFoundError:
        return "0+unknown"


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")


def _project_root(args: argparse.Namespace) -> Path:
    explicit: Path | None = getattr(args, "root", None)
    if explicit is not None:
        return Path(explicit).expanduser().resolve()
    detected = find_project_root(Path.cwd())
    return (detected or Path.cwd()).resolve()


def _add_layer_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("--home", action="store_true", help="Deploy to home-directory locations (user scope)")
    p.add_argument("--target", action="append", default=None, help="Target id (repeatable): claude-code, cursor, codex, agents, all")
    p.add_argument("--layer", type=Path, action="append", default=[], help="Additional layer directory (repeatable)")
    p.add_argument("--no-user-layer", action="store_true", help="Ignore the user layer (~/.promptpack)")
    p.add_argument("--force", action="store_true", help="Overwrite conflicting files")
    p.add_argument("--json", dest="json_output", action="store_true", help="Output as JSON")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="promptpack",
        description="Distribute prompt assets to AI coding tool directories",
    )
    p.add_argument("--root", type=Path, default=None, help="Explicit project root")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-v info, -vv debug)")

    sub = p.add_subparsers(dest="cmd")

    dep = sub.add_parser("deploy", help="Compile assets and sync them into target directories")
    _add_layer_flags(dep)
    dep.add_argument("-i", "--interactive", action="store_true", help="Ask what to do for each conflict")
    dep.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    dep.add_argument("--no-clean", action="store_true", help="Keep orphaned files")
    dep.add_argument("--remote", type=str, default=None, help="Deploy over ssh to HOST[:PATH]")

    diff = sub.add_parser("diff", help="Show what deploy would change")
    _add_layer_flags(diff)

    cl = sub.add_parser("clean", help="Remove files promptpack deployed")
    cl.add_argument("--home", action="store_true", help="Clean user-scope files (global lockfile)")
    cl.add_argument("--dry-run", action="store_true")
    cl.add_argument("--force", action="store_true", help="Delete even without signature or with local edits")
    cl.add_argument("--key", action="append", default=None, help="Only clean this lockfile key (repeatable)")
    cl.add_argument("--json", dest="json_output", action="store_true")

    w = sub.add_parser("watch", help="Redeploy whenever layer files change")
    _add_layer_flags(w)
    w.add_argument("--watch-all-layers", action="store_true", help="Watch user and custom layers too")

    lay = sub.add_parser("layers", help="Show the resolved layer stack")
    lay.add_argument("--no-user-layer", action="store_true")
    lay.add_argument("--layer", type=Path, action="append", default=[])
    lay.add_argument("--json", dest="json_output", action="store_true")

    proj = sub.add_parser("projects", help="List projects promptpack has deployed to")
    proj.add_argument("--prune", action="store_true", help="Forget projects whose lockfile no longer exists")
    proj.add_argument("--json", dest="json_output", action="store_true")

    sub.add_parser("version", help="Print version")
    return p


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        return _run(args)
    except ConflictAborted as e:
        print(f"error: {e}")
        return 3
    except (PromptpackConfigError, LayerError, LockfileError, RegistryError) as e:
        print(f"error: {e}")
        hint = getattr(e, "hint", None)
        if hint:
            print(f"hint: {hint}")
        return 2
    except PromptpackError as e:
        print(f"error: {e}")
        return 1
    except Exception as e:  # pragma: no cover
        logger.debug("unexpected error", exc_info=True)
        print(f"error: {e}")
        return 1


def _deploy_options(args: argparse.Namespace, cfg: PromptpackConfig, root: Path) -> DeployOptions:
    scope = "user" if getattr(args, "home", False) or cfg.deploy.target == "home" else "project"
    return DeployOptions(
        project_root=root,
        scope=scope,
        targets=tuple(args.target) if getattr(args, "target", None) else cfg.targets.enabled,
        force=bool(getattr(args, "force", False)),
        dry_run=bool(getattr(args, "dry_run", False)),
        clean_orphans=not getattr(args, "no_clean", False),
        remote=bool(getattr(args, "remote", None)),
        use_user_layer=cfg.sources.use_user_layer and not getattr(args, "no_user_layer", False),
        user_layer_path=Path(cfg.sources.user_layer_path),
        additional_layers=tuple(Path(p) for p in cfg.sources.additional_layers) + tuple(getattr(args, "layer", [])),
        disable_project_layer=cfg.sources.disable_project_layer,
    )


def _filesystem(args: argparse.Namespace) -> FileSystem:
    remote = getattr(args, "remote", None)
    if not remote:
        return LocalFileSystem()
    host, _, rpath = remote.partition(":")
    return RemoteFileSystem(host, cwd=rpath or None)


def _exit_code(result: DeployResult) -> int:
    if result.aborted:
        return 3
    if isinstance(result.failure, (PromptpackConfigError, LayerError, LockfileError)):
        return 2
    return 0 if result.is_success else 1


def _print_deploy(result: DeployResult) -> None:
    verb = "would write" if result.dry_run else "wrote"
    for p in result.written:
        print(f"{verb} {p}")
    for p in result.deleted:
        print(f"{'would delete' if result.dry_run else 'deleted'} {p}")
    for w in result.warnings:
        print(f"warning: {w}")
    for e in result.errors:
        print(f"error: {e}")
    print(
        f"{len(result.written)} written, {len(result.skipped)} skipped, "
        f"{len(result.deleted)} deleted, {len(result.errors)} errors"
    )


def _print_event(event: Event) -> None:
    d = event.to_dict()
    name = d.pop("event")
    if name == "watch_started":
        print(f"Watching {', '.join(d['watching'])}")
    elif name == "file_changed":
        print(f"changed: {d['path']}")
    elif name == "sync_complete":
        print(f"synced: {d['written']} written, {d['skipped']} skipped, {d['errors']} errors")
    elif name == "error":
        print(f"error: {d['message']}")
    elif name == "shutdown":
        print("Stopped.")


def _emit_json(data: dict[str, Any]) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False))


def _run_projects(args: argparse.Namespace) -> int:
    registry = ProjectRegistry()
    pruned = registry.prune_missing() if args.prune else []
    projects = sorted(registry.load().values(), key=lambda e: str(e.root))

    if args.json_output:
        _emit_json(
            {
                "count": len(projects),
                "projects": [
                    {
                        "path": str(e.root),
                        "lockfile": str(e.lockfile),
                        "asset_count": e.asset_count,
                        "last_deployed": e.last_deployed,
                        "lockfile_exists": e.lockfile.exists(),
                    }
                    for e in projects
                ],
                "pruned": [str(p) for p in pruned],
            }
        )
        return 0

    for p in pruned:
        print(f"pruned {p}")
    if not projects:
        print(f"No projects registered in {registry.path}")
        return 0
    for e in projects:
        missing = "" if e.lockfile.exists() else " (lockfile missing)"
        print(f"{e.root}  {e.asset_count} assets  {e.last_deployed}{missing}")
    return 0


def _run(args: argparse.Namespace) -> int:
    if args.cmd is None or args.cmd == "version":
        print(f"promptpack {_version()}")
        return 0
    if args.cmd == "projects":
        return _run_projects(args)

    root = _project_root(args)
    cfg = load_config(root / PROJECT_LAYER_DIR)

    if args.cmd == "deploy":
        options = _deploy_options(args, cfg, root)
        deployer = Deployer(fs=_filesystem(args), config=cfg, registry=ProjectRegistry())
        resolver: ConflictResolver
        if options.force:
            resolver = ForceResolver()
        elif args.interactive:
            resolver = InteractiveResolver()
        else:
            resolver = SafeResolver()
        result = deployer.execute_with_resolver(options, resolver)
        if args.json_output:
            _emit_json(result.to_dict())
        else:
            _print_deploy(result)
        return _exit_code(result)

    if args.cmd == "diff":
        options = _deploy_options(args, cfg, root)
        diff = Deployer(config=cfg).diff(options)
        if args.json_output:
            _emit_json(diff.to_dict())
            return 0
        for w in diff.warnings:
            print(f"warning: {w}")
        changed = diff.changed()
        for entry in changed:
            print(f"{entry.action}: {entry.path}")
            if entry.diff:
                print(entry.diff, end="" if entry.diff.endswith("\n") else "\n")
        for o in diff.orphans:
            state = "would delete" if o.is_safe_to_delete() else "orphan (kept)"
            print(f"{state}: {o.path}")
        if not changed and not diff.orphans:
            print("Everything up to date.")
        return 0

    if args.cmd == "clean":
        if args.home:
            lock_path, scope = global_lockfile_path(), "user"
        else:
            lock_path, warning = resolve_lockfile_path(root, root / PROJECT_LAYER_DIR)
            if warning:
                print(f"warning: {warning}")
            scope = "project"
        opts = CleanOptions(
            project_root=root,
            scope=scope,
            dry_run=args.dry_run,
            force=args.force,
            selected_keys=frozenset(args.key) if args.key else None,
        )
        res = Cleaner().clean(lock_path, opts)
        if args.json_output:
            _emit_json(res.to_dict())
        else:
            for p in res.deleted:
                print(f"{'would delete' if res.dry_run else 'deleted'} {p}")
            for p, reason in res.skipped:
                print(f"skipped {p} ({reason.value})")
            for w in res.warnings:
                print(f"warning: {w}")
            for e in res.errors:
                print(f"error: {e}")
        return 0 if res.is_success else 1

    if args.cmd == "watch":
        options = WatchOptions(deploy=_deploy_options(args, cfg, root), watch_all_layers=args.watch_all_layers)
        sink = JsonLinesSink("watch") if args.json_output else _print_event
        watcher = Watcher(options, Deployer(config=cfg, registry=ProjectRegistry()), on_event=sink)
        stop = threading.Event()
        signal.signal(signal.SIGINT, lambda *_: stop.set())
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        watcher.start(stop)
        return 0

    if args.cmd == "layers":
        options = _deploy_options(args, cfg, root)
        deployer = Deployer(config=cfg)
        resolution = deployer.resolver_for(options).resolve()
        layers = load_layers(resolution.layers)
        merged = merge_layers(layers)
        rows = [
            {
                "name": layer.name,
                "type": layer.layer_type,
                "original": str(layer.path.original),
                "resolved": str(layer.path.resolved),
                "assets": len(layer.assets),
            }
            for layer in layers
        ]
        warnings = list(resolution.warnings) + [o.message() for o in merged.overrides]
        if args.json_output:
            _emit_json({"layers": rows, "merged_assets": len(merged), "warnings": warnings})
            return 0
        for i, row in enumerate(reversed(rows), start=1):
            print(f"{i}. [{row['name']}] {row['original']} ({row['assets']} assets)")
            if row["original"] != row["resolved"]:
                print(f"   -> {row['resolved']}")
        print(f"{len(merged)} merged assets")
        for w in warnings:
            print(f"warning: {w}")
        return 0

    raise ValueError(f"unknown command: {args.cmd}")
