"""Watch layers and redeploy on change.

Two change sources feed one debounced change set:

- watchdog notifications, delivered on the observer thread into a queue
- a periodic poll of the watched directories, run on the main loop

Both go through the same ContentGate, so a path only counts as changed when
its raw content hash moved (deletions always count). The main loop owns the
gate, the incremental caches and the lockfile; the observer thread only ever
touches the queue.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from . import assets as assets_mod
from .config import CONFIG_FILE_NAME
from .conflict import ConflictResolver, ForceResolver, SafeResolver
from .deploy import Deployer, DeployOptions, DeployResult
from .errors import PromptpackError
from .events import (
    EventSink,
    FileChanged,
    Shutdown,
    SyncComplete,
    SyncStarted,
    WatchError,
    WatchStarted,
    noop_sink,
)
from .fs import content_hash, file_hash
from .lock import LockfileError
from .models import Asset, Layer
from .paths import LEGACY_LOCKFILE_NAME, LOCKFILE_NAME


logger = logging.getLogger(__name__)

DEBOUNCE_S = 0.1
POLL_INTERVAL_S = 0.25
RECV_TIMEOUT_S = 0.05
COOLDOWN_S = 0.5

_FULL_RELOAD_NAMES = {CONFIG_FILE_NAME, assets_mod.IGNORE_FILE}


def is_relevant(path: Path) -> bool:
    """Markdown files, config.toml, anything under a `skills/` tree; never lockfiles."""

    name = path.name
    if name in (LOCKFILE_NAME, LEGACY_LOCKFILE_NAME) or name.endswith(".tmp") or name.endswith("~"):
        return False
    if name in _FULL_RELOAD_NAMES:
        return True
    if "skills" in path.parts:
        return True
    return path.suffix == ".md"


class WatcherState:
    """Debounce: pending paths fire once no new change arrived for `debounce` seconds."""

    def __init__(self, debounce: float = DEBOUNCE_S) -> None:
        self.debounce = debounce
        self.pending: set[Path] = set()
        self.last_change: float | None = None

    def add(self, path: Path, now: float) -> None:
        self.pending.add(path)
        self.last_change = now

    def should_sync(self, now: float) -> bool:
        return bool(self.pending) and self.last_change is not None and now - self.last_change >= self.debounce

    def take(self) -> list[Path]:
        out = sorted(self.pending)
        self.pending.clear()
        self.last_change = None
        return out


class ContentGate:
    """Last-seen raw content hash per path."""

    def __init__(self) -> None:
        self.hashes: dict[Path, str] = {}

    def seed(self, paths: Iterable[Path]) -> None:
        for p in paths:
            try:
                self.hashes[p] = file_hash(p)
            except OSError:
                continue

    def observe(self, path: Path) -> bool:
        """Record the path's current hash; True if it changed since last seen."""

        if not path.exists():
            self.hashes.pop(path, None)
            return True
        if path.is_dir():
            return False
        try:
            h = file_hash(path)
        except OSError as e:
            logger.debug("cannot hash %s: %s", path, e)
            return False
        if self.hashes.get(path) == h:
            return False
        self.hashes[path] = h
        return True

    def poll(self, roots: Iterable[Path]) -> list[Path]:
        """Walk roots and return every relevant path whose content changed or vanished."""

        roots = list(roots)
        changed: list[Path] = []
        seen: set[Path] = set()
        for root in roots:
            for p in scan_relevant(root):
                seen.add(p)
                if self.observe(p):
                    changed.append(p)
        for p in list(self.hashes):
            if p not in seen and not p.exists() and any(_is_under(p, r) for r in roots):
                self.hashes.pop(p, None)
                changed.append(p)
        return changed


def _is_under(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def scan_relevant(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    out: list[Path] = []
    for p in sorted(root.rglob("*")):
        rel = p.relative_to(root)
        if any(part.startswith(".") and part != assets_mod.IGNORE_FILE for part in rel.parts):
            continue
        if p.is_file() and is_relevant(p):
            out.append(p)
    return out


# -------------------------
# Incremental parsing


class IncrementalCache:
    """Canonical file path -> (raw content hash, parsed asset)."""

    def __init__(self) -> None:
        self.file_hashes: dict[Path, str] = {}
        self.assets: dict[Path, Asset] = {}

    def is_empty(self) -> bool:
        return not self.file_hashes

    def clear(self) -> None:
        self.file_hashes.clear()
        self.assets.clear()

    def needs_reparse(self, path: Path, current_hash: str) -> bool:
        return self.file_hashes.get(path) != current_hash

    def update_asset(self, path: Path, hash: str, asset: Asset) -> None:
        self.file_hashes[path] = hash
        self.assets[path] = asset

    def invalidate(self, path: Path) -> None:
        self.file_hashes.pop(path, None)
        self.assets.pop(path, None)

    def get_asset(self, path: Path) -> Asset | None:
        return self.assets.get(path)

    def get_all_assets(self) -> list[Asset]:
        return sorted(self.assets.values(), key=lambda a: (a.id, a.kind))


def _canonical(path: Path) -> Path:
    return path.resolve()


def _full_parse(layer_root: Path, cache: IncrementalCache, layer_name: str) -> list[Asset]:
    cache.clear()
    loaded = assets_mod.load_all(layer_root, layer_name=layer_name)
    for a in loaded:
        p = _canonical(layer_root / a.source_path)
        try:
            h = file_hash(p)
        except OSError:
            h = content_hash("")
        cache.update_asset(p, h, a)
    return loaded


def parse_incremental(
    layer_root: Path,
    changed: Iterable[Path],
    cache: IncrementalCache,
    *,
    layer_name: str = "project",
) -> list[Asset]:
    """Reparse only `changed` files; everything else comes from the cache.

    An empty cache or an empty change list means a full parse. A change to
    config.toml or the ignore file also forces one.
    """

    changed = list(changed)
    if not changed or cache.is_empty():
        return _full_parse(layer_root, cache, layer_name)

    root = _canonical(layer_root)
    patterns = assets_mod.load_ignore_patterns(root)
    for path in changed:
        path = _canonical(path)
        if not _is_under(path, root):
            continue
        rel = path.relative_to(root)
        if rel.name in _FULL_RELOAD_NAMES:
            return _full_parse(layer_root, cache, layer_name)

        if rel.parts[0] == "skills" and len(rel.parts) >= 3:
            skill_dir = root / "skills" / rel.parts[1]
            key = skill_dir / "SKILL.md"
            if key.is_file() and not assets_mod.is_ignored(skill_dir.relative_to(root), patterns):
                asset = assets_mod.parse_skill_dir(skill_dir, layer_root=root)
                cache.update_asset(key, file_hash(key), asset)
            else:
                cache.invalidate(key)
            continue

        if path.suffix != ".md" or path.name == "README.md":
            continue
        if path.exists() and assets_mod.is_asset_source(path, root) and not assets_mod.is_ignored(rel, patterns):
            h = file_hash(path)
            if cache.needs_reparse(path, h):
                cache.update_asset(path, h, assets_mod.parse_asset_file(path, layer_root=root))
            else:
                logger.debug("cache hit for %s", path)
        else:
            cache.invalidate(path)

    assets = cache.get_all_assets()
    assets_mod.check_duplicates(assets, layer_root=root, layer_name=layer_name)
    return assets


# -------------------------
# Watch loop


@dataclass(frozen=True)
class WatchOptions:
    deploy: DeployOptions
    watch_all_layers: bool = False
    debounce: float = DEBOUNCE_S
    poll_interval: float = POLL_INTERVAL_S
    cooldown: float = COOLDOWN_S


class _QueueHandler(FileSystemEventHandler):
    def __init__(self, q: "queue.Queue[Path]") -> None:
        super().__init__()
        self.q = q

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self.q.put(Path(str(event.src_path)))
        dest = getattr(event, "dest_path", None)
        if dest:
            self.q.put(Path(str(dest)))


@dataclass
class _LayerCache:
    layer: Layer
    cache: IncrementalCache = field(default_factory=IncrementalCache)


class Watcher:
    def __init__(
        self,
        options: WatchOptions,
        deployer: Deployer,
        *,
        resolver: ConflictResolver | None = None,
        on_event: EventSink = noop_sink,
    ) -> None:
        self.options = options
        self.deployer = deployer
        self.resolver = resolver or (ForceResolver() if options.deploy.force else SafeResolver())
        self.emit = on_event
        self.state = WatcherState(options.debounce)
        self.gate = ContentGate()
        self.queue: "queue.Queue[Path]" = queue.Queue()
        self.layers: list[_LayerCache] = []
        self.roots: list[Path] = []

    # -------------------------
    # pieces driven by the loop

    def setup(self) -> None:
        """Resolve layers, pick watch roots and seed the content gate."""

        resolution = self.deployer.resolver_for(self.options.deploy).resolve()
        for w in resolution.warnings:
            logger.warning(w)
        self.layers = [_LayerCache(layer=layer) for layer in resolution.layers]
        if self.options.watch_all_layers:
            self.roots = [lc.layer.path.resolved for lc in self.layers]
        else:
            self.roots = [lc.layer.path.resolved for lc in self.layers if lc.layer.layer_type == "project"]
            if not self.roots:
                self.roots = [lc.layer.path.resolved for lc in self.layers]
        for root in self.roots:
            self.gate.seed(scan_relevant(root))

    def notice(self, path: Path, now: float) -> bool:
        """Feed one raw notification through the relevance filter and the gate."""

        path = path.resolve()
        if not is_relevant(path) or not any(_is_under(path, r) for r in self.roots):
            return False
        if not self.gate.observe(path):
            return False
        logger.debug("change: %s", path)
        self.state.add(path, now)
        return True

    def poll(self, now: float) -> list[Path]:
        changed = self.gate.poll(self.roots)
        for p in changed:
            logger.debug("poll detected change: %s", p)
            self.state.add(p, now)
        return changed

    def sync(self, changed: list[Path]) -> DeployResult | None:
        """Reparse `changed` (everything when empty) and redeploy."""

        for p in changed:
            self.emit(FileChanged(path=str(p)))
        self.emit(SyncStarted())
        try:
            loaded: list[Layer] = []
            for lc in self.layers:
                root = lc.layer.path.resolved
                mine = [p for p in changed if _is_under(p, root)]
                if changed and not mine and not lc.cache.is_empty():
                    assets = lc.cache.get_all_assets()
                    assets_mod.check_duplicates(assets, layer_root=root, layer_name=lc.layer.name)
                else:
                    assets = parse_incremental(root, mine, lc.cache, layer_name=lc.layer.name)
                loaded.append(lc.layer.with_assets(assets))
            result = self.deployer.deploy_layers(loaded, self.options.deploy, self.resolver, sink=self.emit)
        except (PromptpackError, LockfileError, OSError) as e:
            logger.warning("sync failed: %s", e)
            self.emit(WatchError(message=str(e)))
            return None

        for err in result.errors:
            self.emit(WatchError(message=err))
        self.emit(SyncComplete(written=len(result.written), skipped=len(result.skipped), errors=len(result.errors)))
        logger.info("sync: %d written, %d skipped, %d errors", len(result.written), len(result.skipped), len(result.errors))
        return result

    def drain(self, until: float) -> None:
        """Discard notifications until `until` (monotonic), refreshing the gate."""

        while time.monotonic() < until:
            try:
                path = self.queue.get(timeout=RECV_TIMEOUT_S)
            except queue.Empty:
                continue
            if is_relevant(path):
                self.gate.observe(path)

    def step(self, now: float, last_poll: float) -> float:
        """One loop iteration after the queue receive; returns the new poll time."""

        if now - last_poll >= self.options.poll_interval:
            self.poll(now)
            last_poll = now
        if self.state.should_sync(now):
            self.sync(self.state.take())
        return last_poll

    # -------------------------
    # loop

    def start(self, stop: threading.Event) -> None:
        """Block until `stop` is set. An in-flight sync always completes."""

        self.setup()
        observer = Observer()
        handler = _QueueHandler(self.queue)
        observer_started = False
        try:
            for root in self.roots:
                observer.schedule(handler, str(root), recursive=True)
            observer.start()
            observer_started = True
        except OSError as e:
            logger.warning("filesystem notifications unavailable, polling only: %s", e)
            self.emit(WatchError(message=f"filesystem notifications unavailable: {e}"))

        try:
            source = str(self.options.deploy.project_layer)
            self.emit(WatchStarted(source=source, watching=tuple(str(r) for r in self.roots)))
            self.sync([])
            self.drain(time.monotonic() + self.options.cooldown)

            last_poll = time.monotonic()
            while not stop.is_set():
                try:
                    path = self.queue.get(timeout=RECV_TIMEOUT_S)
                except queue.Empty:
                    pass
                else:
                    self.notice(path, time.monotonic())
                last_poll = self.step(time.monotonic(), last_poll)
        finally:
            if observer_started:
                observer.stop()
                observer.join()
            self.emit(Shutdown())
