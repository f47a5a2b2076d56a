"""Filesystem access used by the deploy and clean operations.

Writes go through a sibling temp file followed by `replace()`, the same
atomic-ish pattern used for lockfiles. `replace()` can fail transiently on
platforms where another process holds the target open, so it is retried a
few times with a short backoff.
"""

from __future__ import annotations

import hashlib
import logging
import shlex
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path, PurePath

from .paths import expand_home as _expand_home


logger = logging.getLogger(__name__)

HASH_PREFIX = "sha256:"

_REPLACE_ATTEMPTS = 3
_REPLACE_BACKOFF_S = 0.05


def content_hash(text: str) -> str:
    return HASH_PREFIX + hashlib.sha256(text.encode("utf-8")).hexdigest()


def file_hash(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return HASH_PREFIX + h.hexdigest()


class FileSystem(ABC):
    """Operations the sync core needs from a destination filesystem."""

    @abstractmethod
    def read(self, path: Path) -> str: ...

    @abstractmethod
    def write(self, path: Path, content: str) -> None:
        """Write `content`, creating parent directories as needed."""

    @abstractmethod
    def exists(self, path: Path) -> bool: ...

    @abstractmethod
    def remove(self, path: Path) -> None:
        """Remove a file, or an empty directory."""

    @abstractmethod
    def hash(self, path: Path) -> str:
        """Content hash of an on-disk file (`sha256:<hex>`)."""

    def expand_home(self, path: PurePath) -> Path:
        return _expand_home(path)


class LocalFileSystem(FileSystem):
    def read(self, path: Path) -> str:
        return Path(path).read_text(encoding="utf-8")

    def write(self, path: Path, content: str) -> None:
        dst = Path(path)
        dst.parent.mkdir(parents=True, exist_ok=True)
        tmp = dst.with_name(dst.name + ".tmp")
        tmp.write_text(content, encoding="utf-8")
        for attempt in range(_REPLACE_ATTEMPTS):
            try:
                tmp.replace(dst)
                return
            except PermissionError:
                if attempt == _REPLACE_ATTEMPTS - 1:
                    tmp.unlink(missing_ok=True)
                    raise
                logger.debug("replace of %s failed (attempt %d), retrying", dst, attempt + 1)
                time.sleep(_REPLACE_BACKOFF_S * (2**attempt))

    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def remove(self, path: Path) -> None:
        p = Path(path)
        if p.is_dir() and not p.is_symlink():
            p.rmdir()
        else:
            p.unlink()

    def hash(self, path: Path) -> str:
        return file_hash(Path(path))


class RemoteError(OSError):
    """Raised when an ssh round-trip fails."""


class RemoteFileSystem(FileSystem):
    """Filesystem on a remote host, one blocking `ssh` call per operation.

    Paths are used verbatim on the remote side, relative to `cwd` when set;
    `~` is left for the remote shell to expand.
    """

    def __init__(self, host: str, *, cwd: str | None = None, ssh: str = "ssh") -> None:
        self.host = host
        self.cwd = cwd
        self.ssh = ssh

    def _quote(self, path: PurePath) -> str:
        s = str(path)
        if s == "~" or s.startswith("~/"):
            # Keep the tilde outside the quotes so the remote shell expands it.
            return "~" + (("/" + shlex.quote(s[2:])) if len(s) > 2 else "")
        return shlex.quote(s)

    def _run(self, script: str, *, stdin: str | None = None) -> subprocess.CompletedProcess[str]:
        if self.cwd:
            script = f"cd {self._quote(PurePath(self.cwd))} && {script}"
        return subprocess.run(
            [self.ssh, self.host, script],
            input=stdin,
            capture_output=True,
            text=True,
        )

    def _check(self, p: subprocess.CompletedProcess[str], what: str) -> str:
        if p.returncode != 0:
            raise RemoteError(f"{self.host}: {what} failed: {p.stderr.strip() or p.returncode}")
        return p.stdout

    def read(self, path: Path) -> str:
        return self._check(self._run(f"cat {self._quote(path)}"), f"read {path}")

    def write(self, path: Path, content: str) -> None:
        q = self._quote(path)
        parent = self._quote(PurePath(str(path)).parent)
        script = f"mkdir -p {parent} && cat > {q}.tmp && mv -f {q}.tmp {q}"
        self._check(self._run(script, stdin=content), f"write {path}")

    def exists(self, path: Path) -> bool:
        return self._run(f"test -e {self._quote(path)}").returncode == 0

    def remove(self, path: Path) -> None:
        q = self._quote(path)
        self._check(self._run(f"if [ -d {q} ]; then rmdir {q}; else rm {q}; fi"), f"remove {path}")

    def hash(self, path: Path) -> str:
        out = self._check(self._run(f"sha256sum {self._quote(path)}"), f"hash {path}")
        digest = out.split(maxsplit=1)[0] if out.strip() else ""
        if len(digest) != 64:
            raise RemoteError(f"{self.host}: unexpected sha256sum output for {path}")
        return HASH_PREFIX + digest

    def expand_home(self, path: PurePath) -> Path:
        return Path(str(path))
