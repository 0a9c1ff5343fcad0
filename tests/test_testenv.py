"""Install and upgrade scenarios against the in-memory instance backend."""

from __future__ import annotations

import pytest

from pkgmatrix.cache import Artifact, ArtifactKind
from pkgmatrix.repo import PublishedRepository
from pkgmatrix.targets import MatrixCell, OsTarget
from pkgmatrix.testenv import (
    Mode,
    Outcome,
    ScenarioState,
    TestEnvironmentOrchestrator,
)
from tests.fakes import FakeClock, FakeInstanceBackend

CANONICAL = "0.11.0-rc.1"


class NoHttp:
    def get(self, url, timeout=None):
        raise AssertionError("no network in tests")


def cell(image="ubuntu:focal"):
    return MatrixCell(target=OsTarget.parse(image), arch="x86_64")


@pytest.fixture
def package(tmp_path):
    p = tmp_path / "routinator_0.11.0~rc.1-1focal_amd64.deb"
    p.write_bytes(b"deb")
    return Artifact.from_file(p, ArtifactKind.PACKAGE, produced_by="publish:ubuntu_focal_x86_64")


@pytest.fixture
def rpm_package(tmp_path):
    p = tmp_path / "routinator-0.11.0-0.1.rc1.el7.x86_64.rpm"
    p.write_bytes(b"rpm")
    return Artifact.from_file(p, ArtifactKind.PACKAGE, produced_by="publish:centos_7_x86_64")


def orchestrator(cfg, backend, clock=None):
    clock = clock or FakeClock()
    return TestEnvironmentOrchestrator(cfg, backend=backend,
                                       repository=PublishedRepository(cfg, http=NoHttp()),
                                       sleeper=clock.sleep, clock=clock)


def test_fresh_install_passes(cfg, package):
    backend = FakeInstanceBackend().on("routinator --version", stdout="Routinator 0.11.0-rc.1\n")
    clock = FakeClock()
    sc = orchestrator(cfg, backend, clock).run(cell(), Mode.FRESH_INSTALL, package, CANONICAL)

    assert sc.outcome is Outcome.PASS, sc.as_dict()
    assert sc.state is ScenarioState.PASSED
    assert sc.history[:4] == [ScenarioState.PROVISIONING, ScenarioState.WAITING_FOR_READY,
                              ScenarioState.PREPARING, ScenarioState.INSTALLING]
    assert ScenarioState.TEARDOWN in sc.history
    assert backend.pushed[0][2] == f"/tmp/{package.filename}"
    assert backend.ran(f"apt-get -y install /tmp/{package.filename}")
    assert backend.ran("sudo routinator-init --accept-arin-rpa")
    assert backend.ran("journalctl --unit=routinator --no-pager")
    assert backend.ran("ls -la /var/lib/routinator/tals/")
    assert backend.ran("ls -la /var/lib/routinator/rpki-cache/")
    assert clock.sleeps == [15.0]
    assert backend.destroyed == [backend.created[0].name]
    names = [s.name for s in sc.steps]
    assert names.index("service enable") < names.index("service start") < names.index("journal")


def test_wrong_version_output_fails(cfg, package):
    backend = FakeInstanceBackend().on("routinator --version", stdout="Routinator 0.10.2\n")
    sc = orchestrator(cfg, backend).run(cell(), "fresh-install", package, CANONICAL)
    assert sc.outcome is Outcome.FAIL
    assert [s.name for s in sc.failed_steps] == ["version"]


def test_version_must_match_a_whole_token(cfg, package):
    backend = FakeInstanceBackend().on("routinator --version", stdout="routinator 0.8.0-dev\n")
    sc = orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, "0.8.0")
    assert [s.name for s in sc.failed_steps] == ["version"]

    backend = FakeInstanceBackend().on("routinator --version", stdout="routinator 0.8.0\n")
    sc = orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, "0.8.0")
    assert sc.outcome is Outcome.PASS, sc.as_dict()


def test_failed_check_does_not_stop_later_checks(cfg, package):
    backend = (FakeInstanceBackend()
               .on("routinator --version", stdout=CANONICAL)
               .on("cat /etc/routinator/routinator.conf", ok=False, stdout="No such file"))
    sc = orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, CANONICAL)
    assert sc.outcome is Outcome.FAIL
    assert [s.name for s in sc.failed_steps] == ["config file"]
    assert "man page" in [s.name for s in sc.steps]
    assert len(backend.destroyed) == 1


def test_status_before_start_is_tolerated(cfg, package):
    backend = (FakeInstanceBackend()
               .on("routinator --version", stdout=CANONICAL)
               .on("systemctl status", ok=False, stdout="inactive (dead)"))
    sc = orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, CANONICAL)
    assert [s.name for s in sc.failed_steps] == ["service active"]


def test_empty_journal_fails(cfg, package):
    backend = (FakeInstanceBackend()
               .on("routinator --version", stdout=CANONICAL)
               .on("journalctl", stdout="   \n"))
    sc = orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, CANONICAL)
    assert [s.name for s in sc.failed_steps] == ["journal"]


def test_upgrade_from_published(cfg, package):
    backend = (FakeInstanceBackend()
               .on("routinator --version", stdout=CANONICAL)
               .on("dpkg-query", stdout=["0.10.2-1focal", "0.11.0~rc.1-1focal"]))
    sc = orchestrator(cfg, backend).run(cell(), Mode.UPGRADE_FROM_PUBLISHED, package, CANONICAL)

    assert sc.outcome is Outcome.PASS, sc.as_dict()
    assert sc.published_version == "0.10.2-1focal"
    assert sc.installed_version == "0.11.0~rc.1-1focal"
    assert [p[2] for p in backend.pushed] == [f"/tmp/{package.filename}", "/etc/apt/sources.list.d/nlnetlabs.list"]
    assert backend.ran("apt-key add /tmp/repo-key.asc")
    assert backend.ran("apt install -y routinator")
    phases = {s.phase for s in sc.steps}
    assert {"published", "upgrade"} <= phases
    ordering = [s for s in sc.steps if s.name == "version ordering"][0]
    assert ordering.ok
    assert ordering.output == "0.11.0~rc.1-1focal > 0.10.2-1focal"
    # reduced checklist after the upgrade
    upgrade_checks = [s.name for s in sc.steps if s.phase == "upgrade"]
    assert "service start" not in upgrade_checks
    assert "man page" in upgrade_checks


def test_upgrade_to_older_version_fails_ordering(cfg, package):
    backend = (FakeInstanceBackend()
               .on("routinator --version", stdout=CANONICAL)
               .on("dpkg-query", stdout=["0.11.0-1focal", "0.11.0~rc.1-1focal"]))
    sc = orchestrator(cfg, backend).run(cell(), Mode.UPGRADE_FROM_PUBLISHED, package, CANONICAL)
    assert sc.outcome is Outcome.FAIL
    assert [s.name for s in sc.failed_steps] == ["version ordering"]


def test_upgrade_rpm_uses_yum_repo(cfg, rpm_package):
    backend = (FakeInstanceBackend()
               .on("routinator --version", stdout=CANONICAL)
               .on("rpm -q", stdout=["0.10.2-1.el7", "0.11.0-0.1.rc1.el7"]))
    sc = orchestrator(cfg, backend).run(cell("centos:7"), Mode.UPGRADE_FROM_PUBLISHED, rpm_package, CANONICAL)
    assert sc.outcome is Outcome.PASS, sc.as_dict()
    assert "/etc/yum.repos.d/nlnetlabs.repo" in [p[2] for p in backend.pushed]
    assert backend.ran("rpm --import https://packages.example.net/aptkey.asc")
    assert backend.ran(f"yum install -y /tmp/{rpm_package.filename}")


def test_provisioning_is_retried(cfg, package):
    backend = FakeInstanceBackend(fail_create=2).on("routinator --version", stdout=CANONICAL)
    sc = orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, CANONICAL)
    assert sc.outcome is Outcome.PASS
    assert sc.attempts == 3
    assert len(backend.created) == 1


def test_provisioning_gives_up(cfg, package):
    backend = FakeInstanceBackend(fail_create=3)
    sc = orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, CANONICAL)
    assert sc.outcome is Outcome.FAIL
    assert sc.attempts == 3
    assert [s.name for s in sc.steps] == ["provision"]
    assert sc.error
    assert backend.destroyed == []


def test_unready_instances_are_all_deleted(make_cfg, package):
    cfg = make_cfg({"test": {"ready_timeout": 2, "ready_poll_interval": 1}})
    backend = FakeInstanceBackend().on("test -f", ok=False)
    sc = orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, CANONICAL)
    assert sc.outcome is Outcome.FAIL
    assert sc.attempts == 3
    assert len(backend.created) == 3
    assert sorted(backend.destroyed) == sorted(h.name for h in backend.created)


def test_preparation_failure(cfg, package):
    backend = FakeInstanceBackend().on("apt-get update", ok=False)
    sc = orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, CANONICAL)
    assert sc.outcome is Outcome.FAIL
    assert sc.error == "instance preparation failed"
    assert not backend.ran("apt-get -y install")
    assert len(backend.destroyed) == 1


def test_push_failure(cfg, package):
    backend = FakeInstanceBackend()
    backend.push_ok = False
    sc = orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, CANONICAL)
    assert sc.outcome is Outcome.FAIL
    assert sc.error == "cannot copy the package into the instance"
    assert len(backend.destroyed) == 1


class CrashingBackend(FakeInstanceBackend):
    """exec blows up once the service is started."""

    def exec(self, handle, command, timeout=None):
        if "systemctl start" in command:
            raise RuntimeError("lxc exec lost its connection")
        return super().exec(handle, command, timeout)


def test_instance_is_torn_down_once_when_validation_raises(cfg, package):
    backend = CrashingBackend().on("routinator --version", stdout=CANONICAL)
    with pytest.raises(RuntimeError):
        orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, CANONICAL)
    assert len(backend.created) == 1
    assert backend.destroyed == [backend.created[0].name]


def test_rpm_preparation(make_cfg, rpm_package):
    cfg = make_cfg({"rpm": {"eol_vault_images": ["centos:7", "centos:8"]}})
    backend = FakeInstanceBackend().on("routinator --version", stdout=CANONICAL)
    orch = orchestrator(cfg, backend)

    orch.run(cell("centos:7"), Mode.FRESH_INSTALL, rpm_package, CANONICAL)
    assert backend.ran("vault.centos.org")
    assert backend.ran("yum install -y man sudo")
    assert backend.created[0].image == "images:centos/7/cloud"

    backend.commands.clear()
    orch.run(cell("centos:8"), Mode.FRESH_INSTALL, rpm_package, CANONICAL)
    assert backend.created[1].image == "images:rockylinux/8/cloud"
    assert not backend.ran("vault.centos.org")


def test_scenario_as_dict(cfg, package):
    backend = FakeInstanceBackend().on("routinator --version", stdout=CANONICAL)
    d = orchestrator(cfg, backend).run(cell(), Mode.FRESH_INSTALL, package, CANONICAL).as_dict()
    assert d["cell"] == "ubuntu_focal_x86_64"
    assert d["mode"] == "fresh-install"
    assert d["outcome"] == "pass"
    assert d["attempts"] == 1
    assert all("output" in s for s in d["steps"])
