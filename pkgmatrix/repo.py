# pkgmatrix/repo.py
"""
repo.py
- Publishes verified packages into the hand-off tree output/packages/<os>_<release>_<arch>/
- Keeps output/packages/.index.json (cell -> file, sha256, version, timestamp)
- Describes the already-published repository (apt source line, yum .repo file, signing key)
  so upgrade tests can install the previous release
- Probes the published repository over HTTPS (requests) to tell whether a target has
  a previous publication at all
"""

from __future__ import annotations

import os
import json
import shutil
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from pkgmatrix.cache import Artifact, ArtifactKind, sha256_file
from pkgmatrix.config import get_config
from pkgmatrix.logging import get_logger
from pkgmatrix.targets import MatrixCell, OsFamily, OsTarget

logger = get_logger("repo")

_DEB_ARCH = {
    "x86_64": "amd64",
    "aarch64-unknown-linux-musl": "arm64",
    "aarch64-unknown-linux-gnu": "arm64",
    "armv7-unknown-linux-musleabihf": "armhf",
    "armv7-unknown-linux-gnueabihf": "armhf",
    "arm-unknown-linux-musleabihf": "armhf",
}


def deb_arch(arch: str) -> str:
    return _DEB_ARCH.get(arch, arch)


def _now_ts() -> int:
    return int(time.time())


def _safe_copy(src: Path, dst: Path):
    dst.parent.mkdir(parents=True, exist_ok=True)
    tmp = dst.with_suffix(dst.suffix + ".tmp")
    shutil.copy2(src, tmp)
    os.replace(tmp, dst)


class PublishedRepository:
    def __init__(self, cfg=None, http: Optional[requests.Session] = None):
        self.cfg = cfg or get_config()
        self.name = self.cfg.get("repo.name") or "pkgmatrix"
        base = self.cfg.get("repo.base_url")
        self.base_url = base.rstrip("/") if base else None
        self.component = self.cfg.get("repo.component", "main")
        self.timeout = float(self.cfg.get("repo.timeout", 10))
        self.output_dir = Path(self.cfg.get("output.dir"))
        self.http = http or requests.Session()
        self._index_lock = threading.Lock()

    # -------------------------
    # Published repository description
    # -------------------------
    @property
    def key_url(self) -> Optional[str]:
        if not self.base_url:
            return None
        return f"{self.base_url}/{self.cfg.get('repo.key_path', 'aptkey.asc').lstrip('/')}"

    def apt_source_line(self, target: OsTarget, arch: str = "x86_64") -> str:
        return f"deb [arch={deb_arch(arch)}] {self.base_url}/linux/{target.name}/ {target.release} {self.component}"

    def yum_repo_file(self, target: OsTarget) -> str:
        return (
            f"[{self.name}]\n"
            f"name={self.name}\n"
            f"baseurl={self.base_url}/linux/{target.name}/$releasever/{self.component}/$basearch\n"
            "enabled=1\n"
        )

    def index_url(self, target: OsTarget, arch: str = "x86_64") -> str:
        if target.family is OsFamily.DEB:
            return f"{self.base_url}/linux/{target.name}/dists/{target.release}/Release"
        return f"{self.base_url}/linux/{target.name}/{target.release}/{self.component}/{arch}/repodata/repomd.xml"

    def has_publication(self, target: OsTarget, arch: str = "x86_64") -> Optional[bool]:
        """True/False when the repository answers, None when it cannot be reached."""
        if not self.base_url:
            return None
        url = self.index_url(target, arch)
        try:
            resp = self.http.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("repo: cannot probe %s: %s", url, e)
            return None
        if resp.status_code == 200:
            return True
        if resp.status_code in (403, 404, 410):
            logger.info("repo: no previous publication for %s (%s)", target, resp.status_code)
            return False
        logger.warning("repo: unexpected status %s probing %s", resp.status_code, url)
        return None

    # -------------------------
    # Hand-off tree
    # -------------------------
    @property
    def packages_dir(self) -> Path:
        return self.output_dir / "packages"

    def _index_path(self) -> Path:
        return self.packages_dir / ".index.json"

    def load_index(self) -> Dict[str, Any]:
        path = self._index_path()
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError):
            logger.exception("repo: unreadable index %s", path)
            return {}

    def publish(self, cell: MatrixCell, package: Artifact, version: Optional[str] = None) -> Artifact:
        """Copy a verified package into output/packages/<cell>/ and record it in the index."""
        dest = self.packages_dir / cell.name / package.filename
        _safe_copy(Path(package.path), dest)
        sha = sha256_file(dest)
        if sha != package.sha256:
            raise OSError(f"checksum mismatch publishing {package.filename}")
        with self._index_lock:
            idx = self.load_index()
            idx[cell.name] = {"file": str(dest.relative_to(self.packages_dir)), "sha256": sha,
                              "version": version, "ts": _now_ts()}
            tmp = self._index_path().with_suffix(".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(idx, f, indent=2, ensure_ascii=False, sort_keys=True)
            os.replace(tmp, self._index_path())
        logger.info("repo: published %s -> %s", package.filename, dest.parent)
        return Artifact(kind=ArtifactKind.PACKAGE, path=str(dest), produced_by=f"publish:{cell.name}",
                        sha256=sha, name=cell.name)
