# pkgmatrix/instance.py
"""
Ephemeral test instances (LXD system containers driven through the lxc CLI).

Docker containers lack systemd, so install tests run in LXD "cloud" images
where cloud-init signals readiness by writing /var/lib/cloud/data/result.json.
Every instance handed out by ephemeral_instance() is deleted exactly once.
"""

from __future__ import annotations

import contextlib
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

from pkgmatrix.config import get_config
from pkgmatrix.errors import EnvironmentProvisioningFailure
from pkgmatrix.logging import get_logger
from pkgmatrix.sandbox import Runner, run_command, tail
from pkgmatrix.targets import OsTarget

logger = get_logger("instance")

DEFAULT_OPTIONS = {"security.nesting": "true"}


def resolve_image(target: OsTarget, overrides: Optional[Dict[str, str]] = None) -> str:
    """LXD image for a target; overrides replace end-of-life releases (centos:8 -> rockylinux 8)."""
    overrides = overrides or {}
    if target.image in overrides:
        return overrides[target.image]
    return f"images:{target.name}/{target.release}/cloud"


@dataclass
class Instance:
    name: str
    image: str
    destroyed: bool = False


class LxdBackend:
    """create / exec / push_file / destroy over the lxc command line client."""

    def __init__(self, cfg=None, runner: Optional[Runner] = None, lxc: str = "lxc"):
        self.cfg = cfg or get_config()
        self._runner = runner or run_command
        self.lxc = lxc
        self.exec_timeout = float(self.cfg.get("test.exec_timeout", 900))

    def _run(self, cmd, timeout: Optional[float] = None):
        return self._runner(cmd, cwd=None, env=None, timeout=timeout)

    def create(self, image: str, options: Optional[Dict[str, str]] = None, name: Optional[str] = None) -> Instance:
        name = name or f"pkgmatrix-{uuid.uuid4().hex[:10]}"
        cmd = [self.lxc, "launch", image, name]
        for k, v in (options if options is not None else DEFAULT_OPTIONS).items():
            cmd += ["-c", f"{k}={v}"]
        rc, out, err = self._run(cmd, timeout=600)
        if rc != 0:
            # a half-created instance may still exist
            self._run([self.lxc, "delete", "--force", name], timeout=120)
            raise EnvironmentProvisioningFailure(f"lxc launch {image} failed: {tail(err or out, 5)}")
        logger.info("launched %s from %s", name, image)
        return Instance(name=name, image=image)

    def exec(self, handle: Instance, command: str, timeout: Optional[float] = None) -> Dict[str, object]:
        rc, out, err = self._run([self.lxc, "exec", handle.name, "--", "/bin/sh", "-c", command],
                                 timeout=timeout or self.exec_timeout)
        return {"ok": rc == 0, "exit_code": rc, "stdout": out, "stderr": err}

    def push_file(self, handle: Instance, local: str, remote: str) -> Dict[str, object]:
        rc, out, err = self._run([self.lxc, "file", "push", local, f"{handle.name}{remote}"], timeout=600)
        return {"ok": rc == 0, "exit_code": rc, "stdout": out, "stderr": err}

    def destroy(self, handle: Instance) -> bool:
        rc, _, err = self._run([self.lxc, "delete", "--force", handle.name], timeout=300)
        handle.destroyed = True
        if rc != 0:
            logger.warning("cannot delete %s: %s", handle.name, err.strip())
            return False
        logger.info("deleted %s", handle.name)
        return True


def wait_ready(backend, handle: Instance, marker: str, timeout: float, interval: float,
               sleeper: Callable[[float], None] = time.sleep,
               clock: Callable[[], float] = time.monotonic) -> None:
    """Poll for the readiness marker file; raise EnvironmentProvisioningFailure on timeout."""
    deadline = clock() + timeout
    while True:
        res = backend.exec(handle, f"test -f {marker}")
        if res["ok"]:
            logger.debug("%s ready", handle.name)
            return
        if clock() >= deadline:
            raise EnvironmentProvisioningFailure(f"{handle.name} not ready after {timeout:.0f}s ({marker} missing)")
        sleeper(interval)


@contextlib.contextmanager
def ephemeral_instance(backend, image: str, options: Optional[Dict[str, str]] = None) -> Iterator[Instance]:
    handle = backend.create(image, options)
    try:
        yield handle
    finally:
        if not handle.destroyed:
            backend.destroy(handle)
