# pkgmatrix/sandbox.py
"""
sandbox.py - build sessions for pkgmatrix

Features:
- Two backends: host (commands run on the build host) and container (docker/podman)
- Session management: start_session, exec_in_session, stop_session, session() context manager
- Container sessions keep one long-running container per session with the workdir mounted at /work
- Backends can be restricted per manager (cross compilation is host-only)
- Pluggable command runner returning (rc, stdout, stderr) so tests never touch docker
"""

from __future__ import annotations

import os
import shlex
import shutil
import tempfile
import threading
import subprocess
import uuid
import contextlib
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from pkgmatrix.config import get_config
from pkgmatrix.errors import SandboxError
from pkgmatrix.logging import get_logger

logger = get_logger("sandbox")

Runner = Callable[..., Tuple[int, str, str]]

BACKENDS = ("host", "container")
MOUNT_POINT = "/work"

# ----------------------------
# Helper: run a command and capture its output
# ----------------------------
def run_command(cmd: Sequence[str], cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None,
                timeout: Optional[float] = None) -> Tuple[int, str, str]:
    """Run cmd, return (rc, stdout, stderr). Missing binaries give 127, timeouts 124."""
    try:
        proc = subprocess.run(list(cmd), cwd=cwd, env=env, timeout=timeout,
                              stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except FileNotFoundError as e:
        return 127, "", str(e)
    except subprocess.TimeoutExpired as e:
        out = e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
        return 124, out, f"timeout after {timeout}s"
    return proc.returncode, proc.stdout.decode(errors="replace"), proc.stderr.decode(errors="replace")


def tail(text: str, lines: int = 20) -> str:
    """Last lines of a command output, used for failure diagnostics."""
    return "\n".join((text or "").rstrip().splitlines()[-lines:])


def _as_script(cmd: Union[str, Sequence[str]]) -> str:
    if isinstance(cmd, str):
        return cmd
    return " ".join(shlex.quote(str(c)) for c in cmd)

# ----------------------------
# Session
# ----------------------------
@dataclass
class Session:
    id: str
    backend: str
    workdir: str
    image: Optional[str] = None
    container: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    owns_workdir: bool = False
    state: str = "running"

    @property
    def root(self) -> str:
        """Path of the workdir as seen by commands run in the session."""
        return MOUNT_POINT if self.backend == "container" else self.workdir

    def path_in(self, host_path: Union[str, os.PathLike]) -> str:
        """Translate a host path under the workdir into the session's view of it."""
        host_path = os.path.abspath(os.fspath(host_path))
        rel = os.path.relpath(host_path, self.workdir)
        if rel.startswith(".."):
            raise SandboxError(f"{host_path} is outside session workdir {self.workdir}")
        if self.backend != "container":
            return host_path
        return MOUNT_POINT if rel == "." else f"{MOUNT_POINT}/{rel}"

# ----------------------------
# SandboxManager
# ----------------------------
class SandboxManager:
    """
    Starts and tracks build sessions. A session is either the build host itself
    (a private workdir) or a detached container of a given image.
    """

    def __init__(self, cfg=None, runner: Optional[Runner] = None,
                 allowed_backends: Sequence[str] = BACKENDS):
        self._cfg = cfg or get_config()
        self.engine = self._cfg.get("build.engine", "docker")
        self.workdir_root = self._cfg.get("build.workdir_root") or os.path.join(tempfile.gettempdir(), "pkgmatrix-work")
        self.default_timeout = float(self._cfg.get("build.timeout", 3600))
        self.keep_workdirs = bool(self._cfg.get("build.keep_workdirs", False))
        self.allowed_backends = tuple(allowed_backends)
        self._runner = runner or run_command
        self._sessions_lock = threading.RLock()
        self._sessions: Dict[str, Session] = {}

    # ----------------------------
    # Internal
    # ----------------------------
    def _new_workdir(self, prefix: str) -> str:
        os.makedirs(self.workdir_root, exist_ok=True)
        return tempfile.mkdtemp(prefix=f"{prefix}-", dir=self.workdir_root)

    def _run(self, cmd: Sequence[str], cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None,
             timeout: Optional[float] = None) -> Tuple[int, str, str]:
        return self._runner(list(cmd), cwd=cwd, env=env, timeout=timeout)

    # ----------------------------
    # Session management
    # ----------------------------
    def start_session(self, backend: str = "host", image: Optional[str] = None, workdir: Optional[str] = None,
                      env: Optional[Dict[str, str]] = None, name: Optional[str] = None) -> Session:
        if backend not in BACKENDS:
            raise SandboxError(f"unknown sandbox backend {backend!r}")
        if backend not in self.allowed_backends:
            raise SandboxError(f"backend {backend!r} is not allowed here (allowed: {', '.join(self.allowed_backends)})")
        if backend == "container" and not image:
            raise SandboxError("container sessions need an image")

        sid = uuid.uuid4().hex[:12]
        owns = workdir is None
        if workdir is None:
            workdir = self._new_workdir(name or f"session-{sid}")
        workdir = os.path.abspath(workdir)
        sess = Session(id=sid, backend=backend, workdir=workdir, image=image, env=dict(env or {}),
                       owns_workdir=owns and not self.keep_workdirs)

        if backend == "container":
            cname = f"pkgmatrix-{(name or 'session').replace(':', '-').replace('_', '-')}-{sid}"
            cmd = [self.engine, "run", "-d", "--rm", "--name", cname,
                   "-v", f"{workdir}:{MOUNT_POINT}", "-w", MOUNT_POINT]
            for k, v in sess.env.items():
                cmd += ["-e", f"{k}={v}"]
            cmd += [image, "sleep", "infinity"]
            rc, out, err = self._run(cmd, timeout=600)
            if rc != 0:
                if sess.owns_workdir:
                    shutil.rmtree(workdir, ignore_errors=True)
                raise SandboxError(f"cannot start container {image}: {err.strip() or out.strip()}")
            sess.container = cname

        with self._sessions_lock:
            self._sessions[sid] = sess
        logger.info("started %s session %s workdir=%s%s", backend, sid, workdir,
                    f" image={image}" if image else "")
        return sess

    def exec_in_session(self, session: Session, cmd: Union[str, Sequence[str]],
                        env: Optional[Dict[str, str]] = None, timeout: Optional[float] = None,
                        cwd: Optional[str] = None) -> Dict[str, object]:
        """
        Run a shell command inside the session. cwd is relative to the workdir.
        Returns {"ok", "exit_code", "stdout", "stderr", "cmd"}.
        """
        if session.state != "running":
            raise SandboxError(f"session {session.id} is {session.state}")
        script = _as_script(cmd)
        timeout = timeout or self.default_timeout
        merged_env = dict(session.env)
        merged_env.update(env or {})

        if session.backend == "container":
            full = [self.engine, "exec"]
            for k, v in merged_env.items():
                full += ["-e", f"{k}={v}"]
            full += ["-w", f"{MOUNT_POINT}/{cwd}" if cwd else MOUNT_POINT, session.container, "/bin/sh", "-c", script]
            rc, out, err = self._run(full, timeout=timeout)
        else:
            host_env = dict(os.environ)
            host_env.update(merged_env)
            run_cwd = os.path.join(session.workdir, cwd) if cwd else session.workdir
            rc, out, err = self._run(["/bin/sh", "-c", script], cwd=run_cwd, env=host_env, timeout=timeout)

        logger.debug("session %s: rc=%s cmd=%s", session.id, rc, script)
        return {"ok": rc == 0, "exit_code": rc, "stdout": out, "stderr": err, "cmd": script}

    def stop_session(self, session: Session) -> bool:
        with self._sessions_lock:
            if self._sessions.pop(session.id, None) is None:
                logger.warning("stop_session: session not found %s", session.id)
                return False
        ok = True
        if session.backend == "container" and session.container:
            rc, _, err = self._run([self.engine, "rm", "-f", session.container], timeout=120)
            if rc != 0:
                ok = False
                logger.warning("stop_session: cannot remove container %s: %s", session.container, err.strip())
        if session.owns_workdir:
            shutil.rmtree(session.workdir, ignore_errors=True)
        session.state = "stopped"
        logger.info("stopped session %s", session.id)
        return ok

    @contextlib.contextmanager
    def session(self, backend: str = "host", image: Optional[str] = None, workdir: Optional[str] = None,
                env: Optional[Dict[str, str]] = None, name: Optional[str] = None) -> Iterator[Session]:
        sess = self.start_session(backend=backend, image=image, workdir=workdir, env=env, name=name)
        try:
            yield sess
        finally:
            self.stop_session(sess)

    def active_sessions(self) -> List[Session]:
        with self._sessions_lock:
            return list(self._sessions.values())
