"""Per-cell package generation inside (fake) build containers."""

from __future__ import annotations

import os
from datetime import datetime, timezone

import pytest

from pkgmatrix.cache import Artifact, ArtifactCache, ArtifactKind
from pkgmatrix.errors import PackagingError
from pkgmatrix.packager import (
    VARIANT_MINIMAL,
    VARIANT_MINIMAL_CROSS,
    PackageGenerator,
    debian_changelog,
    select_variant,
)
from pkgmatrix.sandbox import SandboxManager
from pkgmatrix.targets import MatrixCell, OsTarget
from pkgmatrix.versioning import CanonicalVersion, translate
from tests.fakes import FakeRunner

WHEN = datetime(2022, 3, 1, 12, 0, tzinfo=timezone.utc)


def _cell(image, arch="x86_64", cfg=None):
    target = OsTarget.parse(image)
    return MatrixCell(target=target, arch=arch).with_variant(select_variant(target, arch, cfg))


class Harness:
    def __init__(self, cfg, db, tmp_path):
        self.runner = FakeRunner()
        self.sandbox = SandboxManager(cfg, runner=self.runner)
        self.cache = ArtifactCache(cache_dir=str(tmp_path / "cache"), db=db)
        self.gen = PackageGenerator(cfg, cache=self.cache, sandbox=self.sandbox, clock=lambda: WHEN)
        self.seen = {}

    @property
    def workdir(self):
        return self.sandbox.active_sessions()[0].workdir

    def emit(self, rel_dir, filename):
        def action(cmd, cwd, env):
            d = os.path.join(self.workdir, rel_dir)
            os.makedirs(d, exist_ok=True)
            with open(os.path.join(d, filename), "wb") as f:
                f.write(b"package " + filename.encode())
            self.seen["stale"] = os.path.exists(os.path.join(self.workdir, "target", "stale"))
            for name in ("Cargo.toml", os.path.join("target", "debian", "changelog"),
                         os.path.join("target", "rpm", "routinator.service")):
                p = os.path.join(self.workdir, name)
                if os.path.exists(p):
                    with open(p, encoding="utf-8") as fh:
                        self.seen[name] = fh.read()
        return action


@pytest.fixture
def h(cfg, db, tmp_path):
    return Harness(cfg, db, tmp_path)


def test_select_variant(cfg):
    assert select_variant(OsTarget.parse("ubuntu:xenial"), "x86_64", cfg) == VARIANT_MINIMAL
    assert select_variant(OsTarget.parse("debian:stretch"), "x86_64", cfg) == VARIANT_MINIMAL
    assert select_variant(OsTarget.parse("ubuntu:focal"), "x86_64", cfg) is None
    assert select_variant(OsTarget.parse("centos:7"), "x86_64", cfg) is None
    assert select_variant(OsTarget.parse("debian:buster"), "aarch64-unknown-linux-musl", cfg) == VARIANT_MINIMAL_CROSS


def test_debian_changelog_format():
    pv = translate("0.11.0-rc.1", "ubuntu:focal")
    text = debian_changelog("routinator", pv, CanonicalVersion.parse("0.11.0-rc.1"),
                            "The NLnet Labs RPKI Team <rpki@nlnetlabs.nl>",
                            "https://github.com/NLnetLabs/routinator/releases/tag/v{version}", WHEN)
    lines = text.splitlines()
    assert lines[0] == "routinator (0.11.0~rc.1) unstable; urgency=medium"
    assert "releases/tag/v0.11.0-rc.1" in lines[2]
    assert lines[-1] == " -- The NLnet Labs RPKI Team <rpki@nlnetlabs.nl>  Tue, 01 Mar 2022 12:00:00 +0000"


def test_native_deb_package(h, cfg):
    cell = _cell("ubuntu:focal", cfg=cfg)
    h.runner.on("cargo deb", action=h.emit("target/debian", "routinator_0.11.0~rc.1-1focal_amd64.deb"))
    art = h.gen.generate(cell, "0.11.0-rc.1")

    assert art.kind is ArtifactKind.PACKAGE
    assert art.filename == "routinator_0.11.0~rc.1-1focal_amd64.deb"
    assert art.path.startswith(os.path.join(cfg.get("output.dir"), "staging", cell.name))
    assert h.runner.ran("docker run -d --rm")
    assert h.runner.ran("apt-get install -y curl build-essential jq lintian pkg-config")
    assert h.runner.ran("cargo deb --deb-version '0.11.0~rc.1-1focal' -v -- --locked")
    assert h.runner.ran("cargo install cargo-deb --version 1.34.2 --locked")
    assert "routinator (0.11.0~rc.1)" in h.seen[os.path.join("target", "debian", "changelog")]
    # the workdir copy skips target/ and is removed afterwards
    assert h.seen["stale"] is False
    assert h.sandbox.active_sessions() == []
    assert h.runner.ran("docker rm -f")


def test_old_release_uses_minimal_variant_and_no_default_features(h, cfg):
    cell = _cell("ubuntu:xenial", cfg=cfg)
    h.runner.on("cargo deb", action=h.emit("target/debian", "routinator.deb"))
    h.gen.generate(cell, "0.11.0")
    assert h.runner.ran("--variant minimal")
    assert h.runner.ran("cargo install cargo-deb --version 1.34.2 --locked --no-default-features")


def test_packager_tool_is_restored_from_cache(h, cfg):
    cell = _cell("ubuntu:focal", cfg=cfg)

    def install_tool(cmd, cwd, env):
        d = os.path.join(h.workdir, ".cargo-home", "bin")
        os.makedirs(d, exist_ok=True)
        with open(os.path.join(d, "cargo-deb"), "wb") as f:
            f.write(b"tool")

    h.runner.on("cargo install cargo-deb", action=install_tool)
    h.runner.on("cargo deb", action=h.emit("target/debian", "routinator.deb"))
    h.gen.generate(cell, "0.11.0")
    h.gen.generate(cell, "0.11.0")
    assert len(h.runner.ran("cargo install cargo-deb")) == 1


def test_cross_deb_packages_prebuilt_binary(h, cfg, tmp_path):
    arch = "armv7-unknown-linux-musleabihf"
    cell = _cell("debian:bullseye", arch, cfg)
    binary_path = tmp_path / "bin-arm" / "routinator"
    binary_path.parent.mkdir()
    binary_path.write_bytes(b"\x7fELF arm")
    binary = Artifact.from_file(binary_path, ArtifactKind.BINARY, produced_by=f"cross:{arch}")

    def check_binary(cmd, cwd, env):
        staged = os.path.join(h.workdir, "target", arch, "release", "routinator")
        h.seen["binary"] = open(staged, "rb").read()
        h.emit("target/debian", "routinator_armhf.deb")(cmd, cwd, env)

    h.runner.on("cargo deb", action=check_binary)
    h.gen.generate(cell, "0.11.0", binary=binary)
    assert h.seen["binary"] == b"\x7fELF arm"
    assert h.runner.ran(f"--variant minimal-cross -v --no-build --no-strip --target {arch} --output target/debian")


def test_cross_cell_without_binary_is_refused(h, cfg):
    cell = _cell("debian:buster", "aarch64-unknown-linux-musl", cfg)
    with pytest.raises(PackagingError):
        h.gen.generate(cell, "0.11.0")
    assert h.runner.calls == []


def test_rpm_package_substitutes_placeholders_and_unit(h, cfg):
    cell = _cell("centos:8", cfg=cfg)
    h.runner.on("cargo generate-rpm", action=h.emit("target/generate-rpm", "routinator-0.11.0~rc.1-1.el8.x86_64.rpm"))
    art = h.gen.generate(cell, "0.11.0-rc.1")
    assert art.filename.endswith(".rpm")
    manifest = h.seen["Cargo.toml"]
    assert 'version = "0.11.0~rc.1"' in manifest
    assert 'release = "1.el8"' in manifest
    assert "ExecStart=/usr/bin/routinator\n" in h.seen[os.path.join("target", "rpm", "routinator.service")]
    assert h.runner.ran("cargo build --release --locked")
    assert h.runner.ran("strip -s target/release/routinator")
    assert not h.runner.ran("--payload-compress")
    assert h.runner.ran("vault.centos.org")


def test_missing_release_placeholder_is_refused(h, cfg, source_tree):
    manifest = source_tree / "Cargo.toml"
    manifest.write_text(manifest.read_text().replace('release = "<RPM_PKG_REL_PLACEHOLDER>"\n', ""))
    cell = _cell("centos:8", cfg=cfg)
    h.runner.on("cargo generate-rpm", action=h.emit("target/generate-rpm", "routinator.rpm"))
    with pytest.raises(PackagingError) as exc:
        h.gen.generate(cell, "0.11.0")
    assert "<RPM_PKG_REL_PLACEHOLDER>" in str(exc.value)
    assert not h.runner.ran("cargo generate-rpm")


def test_centos7_uses_minimal_unit_and_gzip_payload(h, cfg):
    cell = _cell("centos:7", cfg=cfg)
    h.runner.on("cargo generate-rpm", action=h.emit("target/generate-rpm", "routinator.rpm"))
    h.gen.generate(cell, "0.11.0")
    assert "routinator server" in h.seen[os.path.join("target", "rpm", "routinator.service")]
    assert h.runner.ran("cargo generate-rpm --payload-compress gzip")
    assert not h.runner.ran("vault.centos.org")


def test_rpm_cross_cell_is_unsupported(h, cfg, tmp_path):
    cell = MatrixCell(target=OsTarget.parse("centos:8"), arch="aarch64-unknown-linux-gnu")
    p = tmp_path / "b"
    p.write_bytes(b"x")
    binary = Artifact.from_file(p, ArtifactKind.BINARY, produced_by="cross")
    with pytest.raises(PackagingError):
        h.gen.generate(cell, "0.11.0", binary=binary)


def test_exactly_one_package_file_is_required(h, cfg):
    cell = _cell("ubuntu:focal", cfg=cfg)
    with pytest.raises(PackagingError) as exc:
        h.gen.generate(cell, "0.11.0")
    assert "exactly one" in str(exc.value)


def test_failing_step_raises_with_stderr(h, cfg):
    cell = _cell("debian:buster", cfg=cfg)
    h.runner.on("cargo deb", rc=101, err="error: failed to compile")
    with pytest.raises(PackagingError) as exc:
        h.gen.generate(cell, "0.11.0")
    assert "failed to compile" in str(exc.value)
    assert h.sandbox.active_sessions() == []


def test_container_start_failure_is_a_packaging_error(h, cfg):
    h.runner.on("docker run", rc=125, err="Unable to find image")
    with pytest.raises(PackagingError):
        h.gen.generate(_cell("ubuntu:jammy", cfg=cfg), "0.11.0")


def test_build_image_override(make_cfg, db, tmp_path):
    cfg = make_cfg({"build": {"images": {"centos:8": "rockylinux:8"}}})
    h = Harness(cfg, db, tmp_path)
    h.runner.on("cargo generate-rpm", action=h.emit("target/generate-rpm", "r.rpm"))
    h.gen.generate(_cell("centos:8", cfg=cfg), "0.11.0")
    assert any(c.endswith("rockylinux:8 sleep infinity") for c in h.runner.ran("docker run"))
