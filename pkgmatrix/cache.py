# pkgmatrix/cache.py
"""
cache.py - Artifact model and content-addressed artifact cache

Features:
- Artifact (binary, package, dependency, tool): immutable record of a produced file
- Blob store under cache.dir/blobs/<sha256>, index in the cache_entries table
- Keys derived from Cargo.lock contents + scope (dependency registries) or tool + version + OS
- Directory trees (cargo registry/git) stored as tar.gz blobs and restored on demand
- Per-key write locks; blobs land via temp file + os.replace; last writer wins on the index
- Cold or partial cache is transparent: a missing blob is a miss
"""

from __future__ import annotations

import os
import enum
import shutil
import hashlib
import tarfile
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from pkgmatrix.config import get_config
from pkgmatrix.db import DB, get_default_db
from pkgmatrix.errors import CacheError
from pkgmatrix.logging import get_logger

logger = get_logger("cache")

# -----------------------------
# Artifact model
# -----------------------------
class ArtifactKind(str, enum.Enum):
    BINARY = "binary"
    PACKAGE = "package"
    DEPENDENCY = "dependency"
    TOOL = "tool"


@dataclass(frozen=True)
class Artifact:
    kind: ArtifactKind
    path: str
    produced_by: str
    sha256: str
    name: Optional[str] = None

    @property
    def filename(self) -> str:
        return os.path.basename(self.path)

    @classmethod
    def from_file(cls, path: Union[str, Path], kind: ArtifactKind, produced_by: str,
                  name: Optional[str] = None) -> "Artifact":
        p = os.path.abspath(os.fspath(path))
        return cls(kind=ArtifactKind(kind), path=p, produced_by=produced_by, sha256=sha256_file(p), name=name)

# -----------------------------
# Utilities
# -----------------------------
def sha256_file(path: Union[str, Path]) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _slug(s: str) -> str:
    return "".join(c if c.isalnum() or c in ".+_" else "-" for c in str(s)).strip("-")


def lock_key(lock_file: Union[str, Path], *scope: str) -> str:
    """Key for dependency caches: scope (image, target) + hash of the lock file."""
    h = hashlib.sha256()
    with open(lock_file, "rb") as f:
        h.update(f.read())
    for s in scope:
        h.update(b"\0" + str(s).encode("utf-8"))
    return "-".join(["deps"] + [_slug(s) for s in scope] + [h.hexdigest()[:24]])


def tool_key(tool: str, version: str, os_identity: str, *flags: str) -> str:
    """Key for installed tool binaries (e.g. cargo-deb 1.34.2 built on ubuntu:xenial)."""
    return "-".join(["tool", _slug(tool), _slug(version), _slug(os_identity)] + [_slug(f) for f in flags if f])


def _safe_members(tar: tarfile.TarFile, dest: str):
    dest = os.path.realpath(dest)
    for member in tar.getmembers():
        target = os.path.realpath(os.path.join(dest, member.name))
        if not (target == dest or target.startswith(dest + os.sep)):
            raise CacheError(f"refusing to extract {member.name} outside {dest}")
        if member.issym() or member.islnk():
            base = os.path.dirname(target) if member.issym() else dest
            link = os.path.realpath(os.path.join(base, member.linkname))
            if not link.startswith(dest + os.sep):
                raise CacheError(f"refusing link {member.name} -> {member.linkname}")
        yield member

# -----------------------------
# ArtifactCache
# -----------------------------
class ArtifactCache:
    def __init__(self, cache_dir: Optional[str] = None, db: Optional[DB] = None):
        cfg = get_config()
        self.cache_dir = os.path.abspath(os.path.expanduser(cache_dir or cfg.get("cache.dir") or "~/.pkgmatrix/cache"))
        self.blob_dir = os.path.join(self.cache_dir, "blobs")
        os.makedirs(self.blob_dir, exist_ok=True)
        self.db = db or get_default_db()
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self.metrics = {"hits": 0, "misses": 0, "stored": 0}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lk = self._locks.get(key)
            if lk is None:
                lk = self._locks[key] = threading.Lock()
            return lk

    def _blob_path(self, sha: str) -> str:
        return os.path.join(self.blob_dir, sha)

    # -----------------------------
    # Lookup
    # -----------------------------
    def get(self, key: str) -> Optional[Artifact]:
        row = self.db.fetchone("SELECT * FROM cache_entries WHERE key = ?", (key,))
        if row is None:
            self.metrics["misses"] += 1
            return None
        blob = self._blob_path(row["sha256"])
        if not os.path.isfile(blob):
            logger.warning("cache: blob for %s is missing, treating as miss", key)
            self.db.execute("DELETE FROM cache_entries WHERE key = ?", (key,), commit=True)
            self.metrics["misses"] += 1
            return None
        self.metrics["hits"] += 1
        return Artifact(kind=ArtifactKind(row["kind"]), path=blob, produced_by=row["produced_by"] or "",
                        sha256=row["sha256"], name=row["name"])

    def fetch(self, key: str, dest: Union[str, Path], mode: Optional[int] = None) -> Optional[Artifact]:
        """Copy a cached file to dest. Returns the artifact at dest, or None on miss."""
        art = self.get(key)
        if art is None:
            return None
        dest = os.fspath(dest)
        os.makedirs(os.path.dirname(os.path.abspath(dest)), exist_ok=True)
        shutil.copyfile(art.path, dest)
        if mode is not None:
            os.chmod(dest, mode)
        return Artifact(kind=art.kind, path=os.path.abspath(dest), produced_by=art.produced_by,
                        sha256=art.sha256, name=art.name)

    # -----------------------------
    # Store
    # -----------------------------
    def put(self, key: str, path: Union[str, Path], kind: ArtifactKind, produced_by: str = "",
            name: Optional[str] = None) -> Artifact:
        path = os.fspath(path)
        if not os.path.isfile(path):
            raise CacheError(f"cannot cache {path}: not a file")
        with self._lock_for(key):
            return self._put_locked(key, path, ArtifactKind(kind), produced_by, name)

    def _put_locked(self, key: str, path: str, kind: ArtifactKind, produced_by: str,
                    name: Optional[str]) -> Artifact:
        sha = sha256_file(path)
        blob = self._blob_path(sha)
        if not os.path.exists(blob):
            fd, tmp = tempfile.mkstemp(prefix=".incoming-", dir=self.blob_dir)
            os.close(fd)
            try:
                shutil.copyfile(path, tmp)
                os.replace(tmp, blob)
            except OSError as e:
                if os.path.exists(tmp):
                    os.remove(tmp)
                raise CacheError(f"cannot store {path} in cache: {e}") from e
        self.db.execute(
            "INSERT OR REPLACE INTO cache_entries (key, kind, sha256, name, produced_by, size, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (key, kind.value, sha, name or os.path.basename(path), produced_by, os.path.getsize(blob), int(time.time())),
            commit=True,
        )
        self.metrics["stored"] += 1
        logger.info("cache: stored %s (%s, %s)", key, kind.value, sha[:12])
        return Artifact(kind=kind, path=blob, produced_by=produced_by, sha256=sha, name=name or os.path.basename(path))

    # -----------------------------
    # Directory trees
    # -----------------------------
    def put_tree(self, key: str, src_dir: Union[str, Path], produced_by: str = "") -> Optional[Artifact]:
        """Archive src_dir (tar.gz) and store it. Missing directories are skipped."""
        src_dir = os.fspath(src_dir)
        if not os.path.isdir(src_dir):
            logger.debug("cache: nothing to store for %s (%s missing)", key, src_dir)
            return None
        fd, tmp = tempfile.mkstemp(prefix=".tree-", suffix=".tar.gz", dir=self.cache_dir)
        os.close(fd)
        try:
            with tarfile.open(tmp, "w:gz") as tar:
                tar.add(src_dir, arcname=".")
            return self.put(key, tmp, ArtifactKind.DEPENDENCY, produced_by=produced_by, name=os.path.basename(src_dir))
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)

    def restore_tree(self, key: str, dest_dir: Union[str, Path]) -> bool:
        """Extract a stored tree into dest_dir. Returns False on miss."""
        art = self.get(key)
        if art is None:
            return False
        dest_dir = os.fspath(dest_dir)
        os.makedirs(dest_dir, exist_ok=True)
        try:
            with tarfile.open(art.path, "r:gz") as tar:
                tar.extractall(dest_dir, members=list(_safe_members(tar, dest_dir)))
        except (tarfile.TarError, OSError) as e:
            raise CacheError(f"cannot restore {key}: {e}") from e
        logger.info("cache: restored %s into %s", key, dest_dir)
        return True

    # -----------------------------
    # Get or build
    # -----------------------------
    def get_or_create(self, key: str, builder: Callable[[], Union[str, Path]], kind: ArtifactKind,
                      produced_by: str = "") -> Artifact:
        """Return the cached artifact for key, running builder() (returns a file path) on a miss."""
        hit = self.get(key)
        if hit is not None:
            return hit
        with self._lock_for(key):
            hit = self.get(key)
            if hit is not None:
                return hit
            path = os.fspath(builder())
            return self._put_locked(key, path, ArtifactKind(kind), produced_by, None)

    # -----------------------------
    # Listing
    # -----------------------------
    def entries(self) -> List[Dict[str, Any]]:
        rows = self.db.fetchall("SELECT * FROM cache_entries ORDER BY created_at DESC, key")
        return [dict(r) for r in rows]

    def total_size(self) -> int:
        row = self.db.fetchone("SELECT SUM(size) AS s FROM cache_entries")
        return int(row["s"]) if row and row["s"] is not None else 0
