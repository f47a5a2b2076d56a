"""Deploy orchestration.

One deploy runs these steps in order:

    load layers -> merge -> scope policy -> compile -> load lockfile -> plan
    -> resolve conflicts -> detect orphans -> execute -> update lockfile

A failure before "execute" ends the run with an error in the result and no
files touched. Per-file write/delete failures are recorded and the run
continues with the remaining files.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Sequence

from . import assets as assets_mod
from .adapters import TargetAdapter, compile_assets, select_adapters
from .conflict import ConflictResolver, ForceResolver, SafeResolver, resolve_conflicts, unified_diff
from .errors import AssetParseError, ConflictAborted, LayerError
from .events import (
    DeployComplete,
    DeployStarted,
    EventSink,
    FileError,
    FileSkipped,
    FileWritten,
    OrphanDeleted,
    OrphansDetected,
    noop_sink,
)
from .fs import FileSystem, LocalFileSystem
from .layers import LayerResolver, MergeResult, load_layers, merge_layers
from .lock import LockfileError, Provenance, load_lock_or_new, resolve_lockfile_path, save_lock
from .models import Asset, Layer, OutputFile, PromptpackConfig, Scope
from .orphans import OrphanDetectionResult, OrphanFile, check_orphan_status, detect_orphans, skill_root
from .paths import PROJECT_LAYER_DIR, default_user_layer_path, global_lockfile_path
from .plan import PlannedFile, SyncPlan, build_plan
from .registry import ProjectRegistry, RegistryError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeployOptions:
    project_root: Path
    scope: Scope = "project"
    targets: tuple[str, ...] = ("all",)
    force: bool = False
    dry_run: bool = False
    clean_orphans: bool = True
    # Remote deploys pass output paths through untouched and use only the project layer.
    remote: bool = False
    project_layer_path: Path | None = None
    use_user_layer: bool = True
    user_layer_path: Path | None = None
    additional_layers: tuple[Path, ...] = ()
    disable_project_layer: bool = False

    @property
    def project_layer(self) -> Path:
        if self.project_layer_path is None:
            return self.project_root / PROJECT_LAYER_DIR
        p = self.project_layer_path
        return p if p.is_absolute() else self.project_root / p


@dataclass
class DeployResult:
    written: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    asset_count: int = 0
    dry_run: bool = False
    aborted: bool = False
    lockfile: Path | None = None
    # The exception that ended the run early, if any.
    failure: Exception | None = None

    @property
    def is_success(self) -> bool:
        return not self.errors and not self.aborted

    def fail(self, exc: Exception) -> "DeployResult":
        self.failure = exc
        self.errors.append(str(exc))
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "written": list(self.written),
            "skipped": list(self.skipped),
            "deleted": list(self.deleted),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "asset_count": self.asset_count,
            "dry_run": self.dry_run,
            "aborted": self.aborted,
            "counts": {
                "written": len(self.written),
                "skipped": len(self.skipped),
                "deleted": len(self.deleted),
                "errors": len(self.errors),
                "warnings": len(self.warnings),
            },
        }


@dataclass(frozen=True)
class DiffEntry:
    path: str
    action: str
    diff: str = ""


@dataclass
class DiffResult:
    entries: list[DiffEntry] = field(default_factory=list)
    orphans: list[OrphanFile] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def changed(self) -> list[DiffEntry]:
        return [e for e in self.entries if e.action != "skip"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "files": [{"path": e.path, "action": e.action, "diff": e.diff} for e in self.entries],
            "orphans": [
                {"path": o.path, "exists": o.exists, "has_signature": o.has_signature, "safe_to_delete": o.is_safe_to_delete()}
                for o in self.orphans
            ],
            "warnings": list(self.warnings),
        }


def resolve_fs_path(path: Path, *, project_root: Path, fs: FileSystem, remote: bool = False) -> Path:
    """Where an output path lives on the destination filesystem."""

    if remote:
        return path
    s = str(path)
    if s == "~" or s.startswith("~/"):
        return fs.expand_home(path)
    if path.is_absolute():
        return path
    return project_root / path


@dataclass
class _Prepared:
    outputs: list[OutputFile]
    provenance: dict[str, Provenance]
    asset_count: int


class Deployer:
    """Runs deploys against an injected filesystem, adapter set and registry."""

    def __init__(
        self,
        *,
        fs: FileSystem | None = None,
        adapters: Sequence[TargetAdapter] | None = None,
        config: PromptpackConfig | None = None,
        registry: ProjectRegistry | None = None,
        loader=assets_mod.load_all,
    ) -> None:
        self.fs = fs or LocalFileSystem()
        self.adapters = list(adapters) if adapters is not None else None
        self.config = config or PromptpackConfig()
        self.registry = registry
        self.loader = loader

    # -------------------------
    # entry points

    def execute(self, options: DeployOptions, sink: EventSink = noop_sink) -> DeployResult:
        resolver: ConflictResolver = ForceResolver() if options.force else SafeResolver()
        return self.execute_with_resolver(options, resolver, sink)

    def execute_with_events(self, options: DeployOptions, sink: EventSink) -> DeployResult:
        return self.execute(options, sink)

    def execute_with_resolver(
        self,
        options: DeployOptions,
        resolver: ConflictResolver,
        sink: EventSink = noop_sink,
    ) -> DeployResult:
        result = DeployResult(dry_run=options.dry_run)
        try:
            layers = self.load_layers(options, result.warnings)
        except (LayerError, AssetParseError) as e:
            return result.fail(e)
        return self.deploy_layers(layers, options, resolver, sink=sink, result=result)

    def load_layers(self, options: DeployOptions, warnings: list[str] | None = None) -> list[Layer]:
        resolution = self.resolver_for(options).resolve()
        if warnings is not None:
            warnings.extend(resolution.warnings)
        return load_layers(resolution.layers, loader=self.loader)

    def resolver_for(self, options: DeployOptions) -> LayerResolver:
        user = None
        if options.use_user_layer and not options.remote:
            user = options.user_layer_path or default_user_layer_path()
        return LayerResolver(
            project_root=options.project_root,
            project_layer_path=options.project_layer,
            user_layer_path=user,
            additional_layers=tuple(options.additional_layers),
            remote_mode=options.remote,
            disable_project_layer=options.disable_project_layer,
        )

    def deploy_layers(
        self,
        layers: Sequence[Layer],
        options: DeployOptions,
        resolver: ConflictResolver,
        *,
        sink: EventSink = noop_sink,
        result: DeployResult | None = None,
    ) -> DeployResult:
        """Deploy already-loaded layers; the watch loop enters here."""

        result = result or DeployResult(dry_run=options.dry_run)
        merged = merge_layers(layers)
        result.warnings.extend(o.message() for o in merged.overrides)

        prepared = self._prepare(merged, options)
        result.asset_count = prepared.asset_count

        lock_path = self._lockfile_path(options, result.warnings)
        result.lockfile = lock_path
        try:
            lock = load_lock_or_new(lock_path)
        except LockfileError as e:
            return result.fail(e)

        plan = build_plan(
            prepared.outputs,
            fs=self.fs,
            lock=lock,
            scope=options.scope,
            resolve_path=self._path_resolver(options),
            force=options.force,
        )
        conflict_keys = {f.key: f.action for f in plan.conflicts()}

        if plan.has_conflicts and not options.dry_run:
            try:
                plan, summary = resolve_conflicts(plan, resolver, read_existing=self._reader(options))
            except ConflictAborted as e:
                result.aborted = True
                return result.fail(e)
            logger.info("conflicts: %d overwritten, %d kept", summary.overwritten, summary.skipped)
            if summary.skipped:
                result.warnings.append(f"{summary.skipped} conflicting file(s) left unchanged; use --force to overwrite")

        orphans = detect_orphans(lock, [o.path for o in prepared.outputs], options.scope)
        if options.clean_orphans and orphans.orphans:
            resolve = self._path_resolver(options)
            orphans = OrphanDetectionResult(
                orphans=[check_orphan_status(o, self.fs, resolve) for o in orphans.orphans],
                retained=orphans.retained,
            )
            sink(OrphansDetected(total=len(orphans.orphans), safe_to_delete=len(orphans.safe_to_delete())))

        if options.dry_run:
            return self._report_dry_run(plan, orphans, options, result)

        removed_keys = self._execute(plan, orphans, options, result, sink, conflict_keys)
        self._update_lockfile(lock_path, plan, result, removed_keys, prepared.provenance)
        self._register(options, lock_path, result)
        sink(
            DeployComplete(
                written=len(result.written),
                skipped=len(result.skipped),
                deleted=len(result.deleted),
                errors=len(result.errors),
            )
        )
        logger.info(
            "deploy finished: %d written, %d skipped, %d deleted, %d errors",
            len(result.written),
            len(result.skipped),
            len(result.deleted),
            len(result.errors),
        )
        return result

    def diff(self, options: DeployOptions) -> DiffResult:
        """Plan without writing; unified diff per file that would change."""

        out = DiffResult()
        layers = self.load_layers(options, out.warnings)
        merged = merge_layers(layers)
        out.warnings.extend(o.message() for o in merged.overrides)
        prepared = self._prepare(merged, options)
        lock = load_lock_or_new(self._lockfile_path(options, out.warnings))

        resolve = self._path_resolver(options)
        plan = build_plan(
            prepared.outputs, fs=self.fs, lock=lock, scope=options.scope, resolve_path=resolve, force=options.force
        )
        read = self._reader(options)
        for f in plan:
            text = ""
            if f.action.kind != "skip":
                text = unified_diff(read(f) or "", f.content, f.path.as_posix())
            out.entries.append(DiffEntry(path=f.path.as_posix(), action=str(f.action), diff=text))

        detected = detect_orphans(lock, [o.path for o in prepared.outputs], options.scope)
        out.orphans = [check_orphan_status(o, self.fs, resolve) for o in detected.orphans]
        return out

    # -------------------------
    # steps

    def _prepare(self, merged: MergeResult, options: DeployOptions) -> _Prepared:
        items = merged.sorted()
        assets: list[Asset] = [m.asset for m in items]
        if options.scope == "user":
            assets = [a.with_scope("user") for a in assets]

        adapters = self.adapters if self.adapters is not None else select_adapters(options.targets)
        config = self.config if options.scope == "project" else None
        outputs, origins = compile_assets(assets, adapters, config)

        by_key = {m.asset.merge_key: m for m in items}
        provenance: dict[str, Provenance] = {}
        for path, asset in origins.items():
            m = by_key.get(asset.merge_key)
            if m is None:
                continue
            provenance[path] = Provenance(
                source_layer=m.source_layer,
                source_layer_path=str(m.source_layer_path),
                source_asset=m.asset.id,
                source_file=str(m.source_file),
                overrides=m.overrides,
            )
        return _Prepared(outputs=outputs, provenance=provenance, asset_count=len(assets))

    def _lockfile_path(self, options: DeployOptions, warnings: list[str]) -> Path:
        if options.scope == "user":
            return global_lockfile_path()
        path, warning = resolve_lockfile_path(options.project_root, options.project_layer)
        if warning:
            warnings.append(warning)
        return path

    def _path_resolver(self, options: DeployOptions):
        def resolve(path: Path) -> Path:
            return resolve_fs_path(path, project_root=options.project_root, fs=self.fs, remote=options.remote)

        return resolve

    def _reader(self, options: DeployOptions):
        resolve = self._path_resolver(options)

        def read(f: PlannedFile) -> str | None:
            try:
                return self.fs.read(resolve(f.path))
            except (OSError, UnicodeDecodeError):
                return None

        return read

    def _report_dry_run(
        self,
        plan: SyncPlan,
        orphans: OrphanDetectionResult,
        options: DeployOptions,
        result: DeployResult,
    ) -> DeployResult:
        for f in plan:
            if f.action.kind == "write":
                result.written.append(f.path.as_posix())
            else:
                result.skipped.append(f.path.as_posix())
        if options.clean_orphans:
            result.deleted.extend(o.path for o in orphans.safe_to_delete())
        for o in orphans.unsafe():
            result.warnings.append(f"Orphan without promptpack signature would be kept: {o.path}")
        return result

    def _execute(
        self,
        plan: SyncPlan,
        orphans: OrphanDetectionResult,
        options: DeployOptions,
        result: DeployResult,
        sink: EventSink,
        conflict_keys: dict[str, Any],
    ) -> set[str]:
        resolve = self._path_resolver(options)
        sink(DeployStarted(total=len(plan)))

        for idx, f in enumerate(plan):
            p = f.path.as_posix()
            if f.action.kind == "write":
                try:
                    self.fs.write(resolve(f.path), f.content)
                except OSError as e:
                    logger.warning("write failed for %s: %s", p, e)
                    result.errors.append(f"{p}: {e}")
                    sink(FileError(index=idx, path=p, error=str(e)))
                    continue
                result.written.append(p)
                sink(FileWritten(index=idx, path=p))
            else:
                if f.action.is_conflict:
                    reason = f"conflict: {f.action.reason}"
                elif f.key in conflict_keys:
                    reason = f"conflict: {conflict_keys[f.key].reason}, kept"
                else:
                    reason = "up to date"
                result.skipped.append(p)
                sink(FileSkipped(index=idx, path=p, reason=reason))

        removed: set[str] = set()
        if not options.clean_orphans:
            return removed

        deleted_paths: list[str] = []
        for o in orphans.orphans:
            if not o.exists:
                removed.add(o.key)
                continue
            if not o.has_signature:
                result.warnings.append(f"Kept orphan without promptpack signature: {o.path}")
                continue
            try:
                self.fs.remove(resolve(Path(o.path)))
            except OSError as e:
                logger.warning("failed to delete orphan %s: %s", o.path, e)
                result.warnings.append(f"Failed to delete orphan {o.path}: {e}")
                continue
            logger.info("deleted orphan %s", o.path)
            removed.add(o.key)
            deleted_paths.append(o.path)
            result.deleted.append(o.path)
            sink(OrphanDeleted(path=o.path))

        self._prune_skill_dirs(deleted_paths, resolve)
        return removed

    def _prune_skill_dirs(self, deleted: list[str], resolve) -> None:
        """Remove directories under a skill root left empty by orphan deletion."""

        dirs: set[PurePosixPath] = set()
        for path in deleted:
            root = skill_root(path)
            if root is None:
                continue
            cur = PurePosixPath(path).parent
            while True:
                dirs.add(cur)
                if cur == root:
                    break
                cur = cur.parent

        # Deepest first so a parent is only tried once its children are gone.
        for d in sorted(dirs, key=lambda p: (-len(p.parts), str(p))):
            try:
                self.fs.remove(resolve(Path(str(d))))
            except OSError:
                logger.debug("kept directory %s (not empty or already gone)", d)

    def _update_lockfile(
        self,
        lock_path: Path,
        plan: SyncPlan,
        result: DeployResult,
        removed_keys: set[str],
        provenance: dict[str, Provenance],
    ) -> None:
        try:
            lock = load_lock_or_new(lock_path)
        except LockfileError as e:
            result.warnings.append(f"Failed to load lockfile for update: {e}")
            return

        done = set(result.written) | set(result.skipped)
        for f in plan:
            p = f.path.as_posix()
            if p not in done:
                continue
            prov = provenance.get(p)
            if prov is not None:
                lock.set_with_provenance(f.key, f.hash, prov)
            else:
                lock.set(f.key, f.hash)
        for key in removed_keys:
            lock.remove(key)

        try:
            save_lock(lock_path, lock)
        except OSError as e:
            logger.warning("failed to save lockfile %s: %s", lock_path, e)
            result.warnings.append(f"Failed to save lockfile {lock_path}: {e}")

    def _register(self, options: DeployOptions, lock_path: Path, result: DeployResult) -> None:
        if self.registry is None or options.scope != "project" or options.remote or result.errors:
            return
        try:
            self.registry.register(options.project_root, lock_path, asset_count=result.asset_count)
        except (RegistryError, OSError) as e:
            logger.warning("registry update failed: %s", e)
            result.warnings.append(f"Failed to update project registry: {e}")

