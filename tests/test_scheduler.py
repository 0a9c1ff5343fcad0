"""Matrix enumeration and the per-cell pipeline with every stage faked."""

from __future__ import annotations

import contextlib
import os
import threading

import pytest
import requests

from pkgmatrix.cache import Artifact, ArtifactCache, ArtifactKind
from pkgmatrix.errors import BuildFailure, PackagingError, UnsupportedVersionFormat
from pkgmatrix.report import Stage, list_runs
from pkgmatrix.repo import PublishedRepository
from pkgmatrix.scheduler import MatrixScheduler
from pkgmatrix.testenv import Mode, Outcome, StepResult, TestScenario
from pkgmatrix.verifier import Finding, VerificationReport

CANONICAL = "0.11.0-rc.1"
ARMV7 = "armv7-unknown-linux-musleabihf"
AARCH64 = "aarch64-unknown-linux-musl"


class FakeDispatcher:
    def __init__(self, tmp_path, failing=()):
        self.dir = tmp_path / "binaries"
        self.dir.mkdir(parents=True, exist_ok=True)
        self.failing = set(failing)
        self.compiled = []
        self.discarded = []
        self._lock = threading.Lock()

    def cross_compile(self, arch):
        with self._lock:
            self.compiled.append(arch)
        if arch in self.failing:
            raise BuildFailure(arch, "linker error")
        p = self.dir / arch
        p.write_bytes(b"binary " + arch.encode())
        return Artifact.from_file(p, ArtifactKind.BINARY, produced_by=f"cross:{arch}", name=arch)

    def discard(self, artifact):
        with self._lock:
            self.discarded.append(artifact.name)


class FakeGenerator:
    def __init__(self, tmp_path, failing=()):
        self.dir = tmp_path / "packages"
        self.dir.mkdir(parents=True, exist_ok=True)
        self.failing = set(failing)
        self.calls = []
        self.sessions = []
        self.hook = None
        self._lock = threading.Lock()

    @contextlib.contextmanager
    def open_session(self, cell):
        with self._lock:
            self.sessions.append(cell.name)
        yield f"session-{cell.name}"

    def generate(self, cell, canonical, binary=None, session=None):
        with self._lock:
            self.calls.append((cell.name, binary.name if binary else None, session))
        if self.hook:
            self.hook(cell)
        if cell.name in self.failing:
            raise PackagingError(cell, "dpkg-deb exploded")
        ext = "deb" if cell.family.value == "deb" else "rpm"
        p = self.dir / f"{cell.name}.{ext}"
        p.write_bytes(b"package " + cell.name.encode())
        return Artifact.from_file(p, ArtifactKind.PACKAGE, produced_by=f"package:{cell.name}", name=cell.name)


class FakeVerifier:
    def __init__(self, fatal=()):
        self.fatal = set(fatal)
        self.sessions = []

    def verify(self, cell, package, session=None):
        self.sessions.append(session)
        findings = [Finding("warning", "no-manual-page", tag="no-manual-page")]
        if cell.name in self.fatal:
            findings.append(Finding("error", "binary-without-manpage", tag="binary-without-manpage", fatal=True))
        return VerificationReport(cell=cell, package=package, findings=findings)


class FakeOrchestrator:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.runs = []
        self._lock = threading.Lock()

    def run(self, cell, mode, package, canonical):
        with self._lock:
            self.runs.append((cell.name, Mode(mode), package.path))
        ok = (cell.name, Mode(mode)) not in self.failing
        return TestScenario(cell=cell, mode=Mode(mode), steps=[StepResult("version", ok)],
                            outcome=Outcome.PASS if ok else Outcome.FAIL)


class RoutedHttp:
    """Answers per URL substring; an exception value is raised."""

    def __init__(self, routes, default=200):
        self.routes = routes
        self.default = default

    def get(self, url, timeout=None):
        for sub, answer in self.routes.items():
            if sub in url:
                if isinstance(answer, Exception):
                    raise answer
                return type("Resp", (), {"status_code": answer})()
        return type("Resp", (), {"status_code": self.default})()


class Parts:
    def __init__(self, cfg, tmp_path, build_failing=(), package_failing=(), fatal=(), test_failing=(),
                 http=None):
        self.cfg = cfg
        self.dispatcher = FakeDispatcher(tmp_path, build_failing)
        self.generator = FakeGenerator(tmp_path, package_failing)
        self.verifier = FakeVerifier(fatal)
        self.orchestrator = FakeOrchestrator(test_failing)
        self.repository = PublishedRepository(cfg, http=http or RoutedHttp({}))

    def scheduler(self, **kwargs):
        return MatrixScheduler(self.cfg, cache=ArtifactCache(), dispatcher=self.dispatcher,
                               generator=self.generator, verifier=self.verifier,
                               repository=self.repository, orchestrator=self.orchestrator, **kwargs)


@pytest.fixture
def parts(cfg, tmp_path):
    return Parts(cfg, tmp_path)


def by_name(report):
    return {c.cell.name: c for c in report.cells}


# ----------------------------
# Enumeration
# ----------------------------
def test_default_cells_and_variants(parts):
    cells = {c.name: c for c in parts.scheduler().enumerate_cells()}
    assert len(cells) == 11
    assert cells["ubuntu_xenial_x86_64"].variant == "minimal"
    assert cells["debian_stretch_x86_64"].variant == "minimal"
    assert cells["ubuntu_focal_x86_64"].variant is None
    assert cells["centos_8_x86_64"].variant is None
    assert cells[f"debian_bullseye_{ARMV7}"].variant == "minimal-cross"
    assert cells[f"debian_buster_{AARCH64}"].is_cross


def test_excluded_cells(make_cfg, tmp_path):
    cfg = make_cfg({"matrix": {"exclude": [{"image": "centos:7"}, {"arch": AARCH64}]}})
    names = [c.name for c in Parts(cfg, tmp_path).scheduler().enumerate_cells()]
    assert len(names) == 9
    assert "centos_7_x86_64" not in names
    assert f"debian_buster_{AARCH64}" not in names
    assert "debian_buster_x86_64" in names


def test_duplicate_include_is_ignored(make_cfg, tmp_path):
    cfg = make_cfg({"matrix": {"include": [{"image": "ubuntu:focal"}, {"image": "debian:bullseye", "arch": ARMV7}]}})
    names = [c.name for c in Parts(cfg, tmp_path).scheduler().enumerate_cells()]
    assert names.count("ubuntu_focal_x86_64") == 1
    assert len(names) == 10


def test_only_filter(parts):
    sched = parts.scheduler(only=["centos:8", f"debian_bullseye_{ARMV7}"])
    assert sorted(c.name for c in sched.enumerate_cells()) == ["centos_8_x86_64", f"debian_bullseye_{ARMV7}"]


def test_default_scenarios(parts):
    sched = parts.scheduler()
    scenarios = sched.enumerate_scenarios(sched.enumerate_cells())
    assert sum(len(m) for m in scenarios.values()) == 16
    assert "debian_stretch_x86_64" not in scenarios
    assert f"debian_bullseye_{ARMV7}" not in scenarios
    assert scenarios["centos_7_x86_64"] == [Mode.FRESH_INSTALL, Mode.UPGRADE_FROM_PUBLISHED]


def test_scenario_exclude_and_no_test(make_cfg, tmp_path):
    cfg = make_cfg({"test": {"exclude": [{"image": "ubuntu:jammy", "mode": "upgrade-from-published"}]}})
    sched = Parts(cfg, tmp_path).scheduler()
    scenarios = sched.enumerate_scenarios(sched.enumerate_cells())
    assert scenarios["ubuntu_jammy_x86_64"] == [Mode.FRESH_INSTALL]
    assert scenarios["ubuntu_focal_x86_64"] == [Mode.FRESH_INSTALL, Mode.UPGRADE_FROM_PUBLISHED]

    quiet = Parts(cfg, tmp_path / "quiet").scheduler(run_tests=False)
    assert quiet.enumerate_scenarios(quiet.enumerate_cells()) == {}


def test_probe_drops_unpublished_upgrades(make_cfg, tmp_path):
    cfg = make_cfg({"test": {"probe_published": True}})
    http = RoutedHttp({"dists/jammy/": 404, "centos/7/": requests.ConnectionError("unreachable")})
    sched = Parts(cfg, tmp_path, http=http).scheduler()
    scenarios = sched.enumerate_scenarios(sched.enumerate_cells())
    assert scenarios["ubuntu_jammy_x86_64"] == [Mode.FRESH_INSTALL]
    # unknown publication keeps the scenario
    assert Mode.UPGRADE_FROM_PUBLISHED in scenarios["centos_7_x86_64"]
    assert Mode.UPGRADE_FROM_PUBLISHED in scenarios["ubuntu_focal_x86_64"]


# ----------------------------
# Runs
# ----------------------------
def test_full_run_passes(parts, cfg):
    sched = parts.scheduler()
    report = sched.run(CANONICAL)

    assert report.passed, report.summary()
    assert report.canonical == CANONICAL
    assert all(c.stage is Stage.DONE for c in report.cells)
    assert sorted(parts.dispatcher.compiled) == sorted([ARMV7, AARCH64])
    assert sorted(parts.dispatcher.discarded) == sorted([ARMV7, AARCH64])
    calls = {name: binary for name, binary, _ in parts.generator.calls}
    assert calls[f"debian_bullseye_{ARMV7}"] == ARMV7
    assert calls["ubuntu_focal_x86_64"] is None
    # verification runs in the packaging session
    assert all(s and s.startswith("session-") for s in parts.verifier.sessions)
    reports = by_name(report)
    focal = reports["ubuntu_focal_x86_64"]
    assert focal.version == "0.11.0~rc.1-1focal"
    assert focal.package == os.path.join(cfg.get("output.dir"), "packages", "ubuntu_focal_x86_64",
                                         "ubuntu_focal_x86_64.deb")
    assert focal.advisory == ["no-manual-page"]
    # scenarios install the published copy
    assert {p for _, _, p in parts.orchestrator.runs} <= {c.package for c in report.cells}
    assert report.summary()["scenarios_passed"] == 16


def test_fatal_verification_stops_before_publish(cfg, tmp_path):
    parts = Parts(cfg, tmp_path, fatal=["centos_7_x86_64"])
    report = parts.scheduler().run(CANONICAL)
    centos7 = by_name(report)["centos_7_x86_64"]
    assert centos7.stage is Stage.VERIFY
    assert centos7.fatal == ["binary-without-manpage"]
    assert "fatal" in centos7.error
    assert centos7.scenarios == []
    assert not os.path.exists(os.path.join(cfg.get("output.dir"), "packages", "centos_7_x86_64"))
    assert "centos_7_x86_64" not in {name for name, _, _ in parts.orchestrator.runs}
    assert by_name(report)["centos_8_x86_64"].passed
    assert not report.passed
    assert report.summary()["failed_by_stage"] == {"verify": 1}


def test_build_failure_stays_in_its_cells(cfg, tmp_path):
    parts = Parts(cfg, tmp_path, build_failing=[ARMV7])
    report = parts.scheduler().run(CANONICAL)
    reports = by_name(report)
    armv7 = reports[f"debian_bullseye_{ARMV7}"]
    assert armv7.stage is Stage.BUILD
    assert "linker error" in armv7.error
    assert reports[f"debian_buster_{AARCH64}"].passed
    assert parts.dispatcher.discarded == [AARCH64]
    assert report.summary()["failed"] == 1


def test_packaging_failure(cfg, tmp_path):
    parts = Parts(cfg, tmp_path, package_failing=["ubuntu_xenial_x86_64"])
    report = parts.scheduler().run(CANONICAL)
    xenial = by_name(report)["ubuntu_xenial_x86_64"]
    assert xenial.stage is Stage.PACKAGE
    assert "dpkg-deb exploded" in xenial.error
    assert xenial.verification is None


def test_failed_scenario_fails_the_cell(cfg, tmp_path):
    parts = Parts(cfg, tmp_path, test_failing=[("ubuntu_focal_x86_64", Mode.UPGRADE_FROM_PUBLISHED)])
    report = parts.scheduler().run(CANONICAL)
    focal = by_name(report)["ubuntu_focal_x86_64"]
    assert focal.stage is Stage.TEST
    assert focal.error == "scenario(s) failed: upgrade-from-published"
    assert [s.outcome for s in focal.scenarios] == [Outcome.PASS, Outcome.FAIL]
    assert report.summary()["scenarios_failed"] == 1


def test_cancel_before_run(parts):
    sched = parts.scheduler()
    sched.cancel()
    report = sched.run(CANONICAL)
    assert report.cancelled
    assert all(c.stage is Stage.CANCELLED for c in report.cells)
    assert parts.generator.calls == []
    assert parts.dispatcher.compiled == []
    assert parts.dispatcher.discarded == []


def test_cancel_mid_run_lets_in_flight_cell_finish(make_cfg, tmp_path):
    cfg = make_cfg({"matrix": {"parallelism": 1}})
    parts = Parts(cfg, tmp_path)
    sched = parts.scheduler(run_tests=False, only=["ubuntu:focal", "ubuntu:jammy", "centos:8"])
    parts.generator.hook = lambda cell: sched.cancel()
    report = sched.run(CANONICAL)

    assert report.cancelled
    assert len(parts.generator.calls) == 1
    first = parts.generator.calls[0][0]
    reports = by_name(report)
    assert reports[first].stage is Stage.DONE
    assert reports[first].passed
    later = [c for name, c in reports.items() if name != first]
    assert len(later) == 2
    assert all(c.stage is Stage.CANCELLED for c in later)
    assert not report.passed
    assert report.summary()["failed_by_stage"] == {"cancelled": 2}


def test_cancel_during_publish_skips_scenarios_and_fails_the_cell(make_cfg, tmp_path):
    cfg = make_cfg({"matrix": {"parallelism": 1}})
    parts = Parts(cfg, tmp_path)
    sched = parts.scheduler(only=["ubuntu:focal"])
    publish = parts.repository.publish

    def publish_then_cancel(cell, package, version=None):
        published = publish(cell, package, version=version)
        sched.cancel()
        return published

    parts.repository.publish = publish_then_cancel
    report = sched.run(CANONICAL)

    focal = by_name(report)["ubuntu_focal_x86_64"]
    assert [s.outcome for s in focal.scenarios] == [Outcome.SKIPPED, Outcome.SKIPPED]
    assert all(s.cancelled for s in focal.scenarios)
    assert parts.orchestrator.runs == []
    assert focal.stage is Stage.CANCELLED
    assert not focal.passed
    assert not report.passed


def test_unsupported_version_aborts_before_work(parts):
    with pytest.raises(UnsupportedVersionFormat):
        parts.scheduler().run("v0.11")
    assert parts.generator.calls == []
    assert parts.dispatcher.compiled == []


def test_run_is_persisted(cfg, tmp_path, db):
    parts = Parts(cfg, tmp_path)
    report = parts.scheduler(db=db, run_tests=False, only=["ubuntu:focal"]).run(CANONICAL)
    runs = list_runs(db)
    assert [r["run_id"] for r in runs] == [report.run_id]
    assert runs[0]["passed"] == 1
    assert parts.orchestrator.runs == []
