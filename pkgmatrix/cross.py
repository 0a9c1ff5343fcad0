# pkgmatrix/cross.py
"""
Cross compilation of non-native architectures on the build host.

Each target arch yields one binary artifact under output/binaries/<arch>/ that
the package generator consumes with --no-build. The cargo registry and git
checkouts are restored from / stored into the artifact cache keyed by
Cargo.lock and the target triple.
"""

from __future__ import annotations

import os
import shlex
import shutil
import threading
from typing import Optional

from pkgmatrix.cache import Artifact, ArtifactCache, ArtifactKind, lock_key
from pkgmatrix.config import get_config
from pkgmatrix.errors import BuildFailure, SandboxError
from pkgmatrix.logging import get_logger
from pkgmatrix.sandbox import SandboxManager, Session, tail

logger = get_logger("cross")


class BuildDispatcher:
    def __init__(self, cfg=None, cache: Optional[ArtifactCache] = None,
                 sandbox: Optional[SandboxManager] = None, runner=None):
        self.cfg = cfg or get_config()
        self.cache = cache or ArtifactCache()
        # cross runs its own containers; never nest it in a build container
        self.sandbox = sandbox or SandboxManager(self.cfg, runner=runner, allowed_backends=("host",))
        self.source_dir = self.cfg.get("source.dir") or os.getcwd()
        self.binary = self.cfg.get("product.binary") or self.cfg.get("product.name")
        self.native_arch = self.cfg.get("matrix.native_arch", "x86_64")
        self.output_dir = self.cfg.get("output.dir")
        self.tool = self.cfg.get("cross.tool", "cross")
        self.tool_version = self.cfg.get("cross.tool_version")
        self.cargo_home = (self.cfg.get("cross.cargo_home") or os.environ.get("CARGO_HOME")
                           or os.path.expanduser("~/.cargo"))
        self._tool_lock = threading.Lock()
        self._tool_ready = False

    # ----------------------------
    # Helpers
    # ----------------------------
    def _lock_file(self) -> Optional[str]:
        path = os.path.join(self.source_dir, self.cfg.get("source.lock", "Cargo.lock"))
        return path if os.path.isfile(path) else None

    def ensure_tool(self, session: Session) -> None:
        """Install the cross tool once per run if it is not on PATH."""
        with self._tool_lock:
            if self._tool_ready:
                return
            res = self.sandbox.exec_in_session(session, f"command -v {shlex.quote(self.tool)}")
            if not res["ok"]:
                cmd = ["cargo", "install", self.tool, "--locked"]
                if self.tool_version:
                    cmd += ["--version", str(self.tool_version)]
                logger.info("installing %s on the build host", self.tool)
                res = self.sandbox.exec_in_session(session, cmd)
                if not res["ok"]:
                    raise BuildFailure("*", f"cannot install {self.tool}: {tail(res['stderr'])}")
            self._tool_ready = True

    def binary_dir(self, arch: str) -> str:
        return os.path.join(self.output_dir, "binaries", arch)

    # ----------------------------
    # Public API
    # ----------------------------
    def cross_compile(self, arch: str) -> Artifact:
        """Build the product binary for arch; raises BuildFailure."""
        if arch == self.native_arch:
            raise BuildFailure(arch, "native binaries are built by the package generator")
        if not self.binary:
            raise BuildFailure(arch, "product.binary is not configured")

        lock = self._lock_file()
        key = lock_key(lock, "host", arch) if lock else None
        registry = os.path.join(self.cargo_home, "registry")
        git = os.path.join(self.cargo_home, "git")
        restored = False
        if key:
            restored = self.cache.restore_tree(f"{key}-registry", registry)
            self.cache.restore_tree(f"{key}-git", git)

        logger.info("cross compiling %s for %s", self.binary, arch)
        try:
            with self.sandbox.session("host", workdir=self.source_dir, name=f"cross-{arch}",
                                      env={"CARGO_HOME": self.cargo_home}) as session:
                self.ensure_tool(session)
                res = self.sandbox.exec_in_session(
                    session, [self.tool, "build", "--locked", "--release", "--target", arch])
        except SandboxError as e:
            raise BuildFailure(arch, str(e)) from e
        if not res["ok"]:
            raise BuildFailure(arch, tail(res["stderr"] or res["stdout"]))

        if key and not restored:
            self.cache.put_tree(f"{key}-registry", registry, produced_by=f"cross:{arch}")
            self.cache.put_tree(f"{key}-git", git, produced_by=f"cross:{arch}")

        built = os.path.join(self.source_dir, "target", arch, "release", self.binary)
        if not os.path.isfile(built):
            raise BuildFailure(arch, f"expected binary not found at {built}")
        dest_dir = self.binary_dir(arch)
        os.makedirs(dest_dir, exist_ok=True)
        dest = os.path.join(dest_dir, self.binary)
        shutil.copy2(built, dest)
        art = Artifact.from_file(dest, ArtifactKind.BINARY, produced_by=f"cross:{arch}", name=arch)
        logger.info("binary for %s ready: %s (%s)", arch, dest, art.sha256[:12])
        return art

    def discard(self, artifact: Artifact) -> None:
        """Remove a binary artifact from the hand-off directory once nothing needs it."""
        shutil.rmtree(os.path.dirname(artifact.path), ignore_errors=True)
        logger.debug("discarded binary %s", artifact.path)
