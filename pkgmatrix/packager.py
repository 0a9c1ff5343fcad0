# pkgmatrix/packager.py
# -*- coding: utf-8 -*-
"""
packager.py - per-cell package generation

API:
  gen = PackageGenerator()
  artifact = gen.generate(cell, "0.11.0-rc.1", binary=None)

Behaviour:
  - One container session per cell, using the cell's build image (build.images may pin
    a cell to an older image); the workdir is a copy of the source tree without target/ and .git
  - Steps: EOL repo workaround -> OS build deps -> rustup -> restore cargo caches ->
    packager tool (cached per image/version) -> translate version -> variant ->
    cargo deb / cargo generate-rpm -> exactly one package file
  - Cross cells reuse the prebuilt binary (Debian family only, via --no-build)
  - Any failing step raises PackagingError with the tool's stderr
"""

from __future__ import annotations

import os
import glob
import shutil
import tempfile
import contextlib
from datetime import datetime
from email.utils import format_datetime
from typing import Callable, Dict, Iterator, List, Optional, Union

from pkgmatrix.cache import Artifact, ArtifactCache, ArtifactKind, lock_key, tool_key
from pkgmatrix.config import get_config
from pkgmatrix.errors import PackagingError, SandboxError
from pkgmatrix.logging import get_logger
from pkgmatrix.sandbox import MOUNT_POINT, SandboxManager, Session, tail
from pkgmatrix.targets import MatrixCell, OsFamily, OsTarget
from pkgmatrix.versioning import CanonicalVersion, PackageVersion, translate_from_config

logger = get_logger("packager")

VARIANT_MINIMAL = "minimal"
VARIANT_MINIMAL_CROSS = "minimal-cross"

RUSTUP_INSTALL = "curl --proto '=https' --tlsv1.2 -sSf https://sh.rustup.rs | sh -s -- --profile {profile} -y"
CENTOS_VAULT_WORKAROUND = (
    "sed -i -e 's|mirrorlist=|#mirrorlist=|g' "
    "-e 's|#baseurl=http://mirror.centos.org|baseurl=http://vault.centos.org|g' "
    "/etc/yum.repos.d/CentOS-Linux-*"
)

_SESSION_PATH = f"{MOUNT_POINT}/.cargo-home/bin:/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

# ----------------------------
# Variant selection
# ----------------------------
def select_variant(target: OsTarget, arch: str, cfg=None) -> Optional[str]:
    """
    Cross cells package the prebuilt binary ('minimal-cross'); native cells on old
    releases use 'minimal'; everything else the default variant (None).
    """
    cfg = cfg or get_config()
    if arch != cfg.get("matrix.native_arch", "x86_64"):
        return VARIANT_MINIMAL_CROSS
    if target.family is OsFamily.DEB and target.release in (cfg.get("matrix.minimal_releases") or []):
        return VARIANT_MINIMAL
    return None


def build_image_for(cell: MatrixCell, cfg=None) -> str:
    cfg = cfg or get_config()
    images = cfg.get("build.images") or {}
    return images.get(cell.target.image) or cell.target.image


def debian_changelog(package: str, pv: PackageVersion, canonical: CanonicalVersion, maintainer: str,
                     release_url: Optional[str], when: datetime, distribution: str = "unstable",
                     urgency: str = "medium") -> str:
    """Minimal debian/changelog entry; the date uses the RFC 5322 grammar dpkg expects."""
    if release_url:
        note = f"  * See: {release_url.format(version=canonical, name=package)}"
    else:
        note = f"  * Release {canonical}"
    return (
        f"{package} ({pv.upstream}) {distribution}; urgency={urgency}\n"
        f"\n{note}\n\n"
        f" -- {maintainer}  {format_datetime(when)}\n"
    )

# ----------------------------
# PackageGenerator
# ----------------------------
class PackageGenerator:
    def __init__(self, cfg=None, cache: Optional[ArtifactCache] = None, sandbox: Optional[SandboxManager] = None,
                 runner=None, clock: Optional[Callable[[], datetime]] = None):
        self.cfg = cfg or get_config()
        self.cache = cache or ArtifactCache()
        self.sandbox = sandbox or SandboxManager(self.cfg, runner=runner)
        self.source_dir = self.cfg.get("source.dir") or os.getcwd()
        self.product = self.cfg.get("product.name")
        self.binary = self.cfg.get("product.binary") or self.product
        self.output_dir = self.cfg.get("output.dir")
        self.keep_workdirs = bool(self.cfg.get("build.keep_workdirs", False))
        self.workdir_root = self.cfg.get("build.workdir_root") or tempfile.gettempdir()
        self._clock = clock or (lambda: datetime.now().astimezone())

    # ----------------------------
    # Workdir / session
    # ----------------------------
    def prepare_workdir(self, cell: MatrixCell) -> str:
        os.makedirs(self.workdir_root, exist_ok=True)
        wd = tempfile.mkdtemp(prefix=f"{cell.name}-", dir=self.workdir_root)
        shutil.copytree(self.source_dir, wd, dirs_exist_ok=True,
                        ignore=shutil.ignore_patterns("target", ".git"))
        return wd

    @contextlib.contextmanager
    def open_session(self, cell: MatrixCell) -> Iterator[Session]:
        """Container session of the cell's build image on a fresh copy of the source tree."""
        wd = self.prepare_workdir(cell)
        env = {
            "CARGO_HOME": f"{MOUNT_POINT}/.cargo-home",
            "RUSTUP_HOME": f"{MOUNT_POINT}/.rustup",
            "PATH": _SESSION_PATH,
            "DEBIAN_FRONTEND": "noninteractive",
        }
        try:
            try:
                sess = self.sandbox.start_session("container", image=build_image_for(cell, self.cfg),
                                                  workdir=wd, env=env, name=cell.name)
            except SandboxError as e:
                raise PackagingError(cell, str(e)) from e
            try:
                yield sess
            finally:
                self.sandbox.stop_session(sess)
        finally:
            if not self.keep_workdirs:
                shutil.rmtree(wd, ignore_errors=True)

    def _step(self, session: Session, cell: MatrixCell, what: str, cmd, timeout: Optional[float] = None) -> Dict:
        logger.debug("%s: %s", cell.name, what)
        res = self.sandbox.exec_in_session(session, cmd, timeout=timeout)
        if not res["ok"]:
            raise PackagingError(cell, f"{what} failed (exit {res['exit_code']}): {tail(res['stderr'] or res['stdout'])}")
        return res

    # ----------------------------
    # Steps
    # ----------------------------
    def _install_build_deps(self, session: Session, cell: MatrixCell) -> None:
        if cell.family is OsFamily.DEB:
            self._step(session, cell, "apt-get update", "apt-get update")
            deps = " ".join(self.cfg.get("deb.build_deps") or [])
            self._step(session, cell, "install build dependencies", f"apt-get install -y {deps}")
        else:
            if cell.target.image in (self.cfg.get("rpm.eol_vault_images") or []):
                self._step(session, cell, "EOL repository workaround", CENTOS_VAULT_WORKAROUND)
            self._step(session, cell, "install epel", "yum install epel-release -y")
            self._step(session, cell, "yum update", "yum update -y")
            self._step(session, cell, "install build dependencies", "yum install -y jq rpmlint")
            self._step(session, cell, "install development tools", 'yum groupinstall -y "Development Tools"')

    def _install_rust(self, session: Session, cell: MatrixCell) -> None:
        profile = self.cfg.get("build.rustup_profile", "minimal")
        self._step(session, cell, "install rust", RUSTUP_INSTALL.format(profile=profile))

    def _registry_key(self, cell: MatrixCell) -> Optional[str]:
        lock = os.path.join(self.source_dir, self.cfg.get("source.lock", "Cargo.lock"))
        if not os.path.isfile(lock):
            return None
        return lock_key(lock, cell.target.image, cell.arch)

    def _restore_caches(self, session: Session, cell: MatrixCell) -> bool:
        key = self._registry_key(cell)
        if key is None:
            return False
        cargo_home = os.path.join(session.workdir, ".cargo-home")
        hit = self.cache.restore_tree(f"{key}-registry", os.path.join(cargo_home, "registry"))
        self.cache.restore_tree(f"{key}-git", os.path.join(cargo_home, "git"))
        return hit

    def _store_caches(self, session: Session, cell: MatrixCell) -> None:
        key = self._registry_key(cell)
        if key is None:
            return
        cargo_home = os.path.join(session.workdir, ".cargo-home")
        self.cache.put_tree(f"{key}-registry", os.path.join(cargo_home, "registry"), produced_by=f"package:{cell.name}")
        self.cache.put_tree(f"{key}-git", os.path.join(cargo_home, "git"), produced_by=f"package:{cell.name}")

    def _ensure_packager_tool(self, session: Session, cell: MatrixCell) -> None:
        if cell.family is OsFamily.DEB:
            tool, version = "cargo-deb", str(self.cfg.get("deb.tool_version"))
            no_default = cell.target.release in (self.cfg.get("deb.no_default_features_releases") or [])
            flags = ["--no-default-features"] if no_default else []
            key = tool_key(tool, version, cell.target.image, "no-default-features" if no_default else "")
        else:
            tool, version = "cargo-generate-rpm", str(self.cfg.get("rpm.tool_version"))
            flags = []
            key = tool_key(tool, version, cell.target.image)

        dest = os.path.join(session.workdir, ".cargo-home", "bin", tool)
        if self.cache.fetch(key, dest, mode=0o755) is not None:
            logger.debug("%s: %s %s restored from cache", cell.name, tool, version)
            return
        self._step(session, cell, f"install {tool}",
                   ["cargo", "install", tool, "--version", version, "--locked"] + flags)
        if os.path.isfile(dest):
            self.cache.put(key, dest, ArtifactKind.TOOL, produced_by=f"package:{cell.name}", name=tool)
        else:
            logger.warning("%s: %s installed but not found at %s; not cached", cell.name, tool, dest)

    def _package_deb(self, session: Session, cell: MatrixCell, canonical: CanonicalVersion,
                     pv: PackageVersion, binary: Optional[Artifact]) -> List[str]:
        wd = session.workdir
        deb_dir = os.path.join(wd, "target", "debian")
        os.makedirs(deb_dir, exist_ok=True)
        changelog = debian_changelog(
            self.product, pv, canonical,
            maintainer=self.cfg.get("product.maintainer") or f"{self.product} maintainers <root@localhost>",
            release_url=self.cfg.get("product.release_url"),
            when=self._clock(),
            distribution=self.cfg.get("deb.distribution", "unstable"),
            urgency=self.cfg.get("deb.urgency", "medium"),
        )
        with open(os.path.join(deb_dir, "changelog"), "w", encoding="utf-8") as f:
            f.write(changelog)

        cmd = ["cargo", "deb", "--deb-version", pv.rendered]
        if cell.variant:
            cmd += ["--variant", cell.variant]
        cmd.append("-v")
        if cell.is_cross:
            rel_dir = os.path.join(wd, "target", cell.arch, "release")
            os.makedirs(rel_dir, exist_ok=True)
            dest = os.path.join(rel_dir, self.binary)
            shutil.copyfile(binary.path, dest)
            os.chmod(dest, 0o755)
            cmd += ["--no-build", "--no-strip", "--target", cell.arch, "--output", "target/debian"]
        cmd += ["--", "--locked"]
        self._step(session, cell, "cargo deb", cmd)
        return sorted(glob.glob(os.path.join(deb_dir, "*.deb")))

    def _substitute_placeholders(self, cell: MatrixCell, manifest: str, pv: PackageVersion) -> None:
        try:
            with open(manifest, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise PackagingError(cell, f"cannot read {manifest}: {e}") from e
        ver_ph = self.cfg.get("rpm.version_placeholder")
        if ver_ph and ver_ph not in text:
            raise PackagingError(cell, f"{os.path.basename(manifest)} has no {ver_ph} placeholder")
        text = text.replace(ver_ph, pv.upstream)
        rel_ph = self.cfg.get("rpm.release_placeholder")
        if rel_ph:
            if rel_ph not in text:
                raise PackagingError(cell, f"{os.path.basename(manifest)} has no {rel_ph} placeholder")
            text = text.replace(rel_ph, pv.release)
        with open(manifest, "w", encoding="utf-8") as f:
            f.write(text)

    def _service_unit(self, cell: MatrixCell) -> str:
        units = self.cfg.get("rpm.service_units") or {}
        template = units.get(cell.target.image) or units.get("default")
        if not template:
            raise PackagingError(cell, "no rpm.service_units entry for this image")
        return template.format(name=self.product)

    def _package_rpm(self, session: Session, cell: MatrixCell, pv: PackageVersion) -> List[str]:
        if cell.is_cross:
            raise PackagingError(cell, "RPM packaging has no prebuilt-binary path; cross cells are not supported")
        wd = session.workdir
        self._step(session, cell, "cargo build", ["cargo", "build", "--release", "--locked"])
        self._step(session, cell, "strip", ["strip", "-s", f"target/release/{self.binary}"])
        self._substitute_placeholders(cell, os.path.join(wd, self.cfg.get("source.manifest", "Cargo.toml")), pv)

        unit_src = os.path.join(wd, self._service_unit(cell))
        if not os.path.isfile(unit_src):
            raise PackagingError(cell, f"service unit {os.path.relpath(unit_src, wd)} not found")
        rpm_dir = os.path.join(wd, "target", "rpm")
        os.makedirs(rpm_dir, exist_ok=True)
        service = self.cfg.get("product.service") or self.product
        shutil.copyfile(unit_src, os.path.join(rpm_dir, f"{service}.service"))

        cmd = ["cargo", "generate-rpm"]
        if cell.target.image in (self.cfg.get("rpm.gzip_payload_images") or []):
            cmd += ["--payload-compress", "gzip"]
        self._step(session, cell, "cargo generate-rpm", cmd)
        return sorted(glob.glob(os.path.join(wd, "target", "generate-rpm", "*.rpm")))

    def _collect(self, cell: MatrixCell, files: List[str]) -> Artifact:
        if len(files) != 1:
            raise PackagingError(cell, f"expected exactly one package file, found {len(files)}: {files}")
        staging = os.path.join(self.output_dir, "staging", cell.name)
        shutil.rmtree(staging, ignore_errors=True)
        os.makedirs(staging, exist_ok=True)
        dest = os.path.join(staging, os.path.basename(files[0]))
        shutil.copy2(files[0], dest)
        return Artifact.from_file(dest, ArtifactKind.PACKAGE, produced_by=f"package:{cell.name}", name=cell.name)

    # ----------------------------
    # Public API
    # ----------------------------
    def generate(self, cell: MatrixCell, canonical: Union[str, CanonicalVersion],
                 binary: Optional[Artifact] = None, session: Optional[Session] = None) -> Artifact:
        """Produce exactly one package for cell; raises PackagingError."""
        cv = canonical if isinstance(canonical, CanonicalVersion) else CanonicalVersion.parse(canonical)
        if cell.is_cross and binary is None:
            raise PackagingError(cell, "cross cell has no binary artifact")
        if session is None:
            with self.open_session(cell) as sess:
                return self.generate(cell, cv, binary=binary, session=sess)

        pv = translate_from_config(cv, cell.target, self.cfg)
        logger.info("%s: packaging %s as %s (variant=%s)", cell.name, cv, pv.rendered, cell.variant or "default")
        try:
            self._install_build_deps(session, cell)
            self._install_rust(session, cell)
            restored = self._restore_caches(session, cell)
            self._ensure_packager_tool(session, cell)
            if cell.family is OsFamily.DEB:
                files = self._package_deb(session, cell, cv, pv, binary)
            else:
                files = self._package_rpm(session, cell, pv)
            artifact = self._collect(cell, files)
            if not restored:
                self._store_caches(session, cell)
        except SandboxError as e:
            raise PackagingError(cell, str(e)) from e
        logger.info("%s: package ready %s", cell.name, artifact.filename)
        return artifact
