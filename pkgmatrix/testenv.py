# pkgmatrix/testenv.py
# -*- coding: utf-8 -*-
"""
testenv.py - install / upgrade scenarios in ephemeral LXD instances

Features:
 - Scenario state machine: provisioning -> waiting-for-ready -> preparing ->
   installing -> validating -> teardown -> passed | failed
 - Provisioning (launch + readiness wait) retried test.provision_retries times;
   every failed instance is deleted before the next attempt
 - fresh-install: install the new package file, run the full checklist
 - upgrade-from-published: configure the published repository, install the
   released package, run the full checklist, install the new file over it, check
   the installed version sorts above the released one, run the reduced checklist
 - Checks never stop later checks; every step is recorded with its output
 - Teardown runs exactly once per provisioned instance
"""

from __future__ import annotations

import contextlib
import enum
import os
import re
import shlex
import tempfile
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Union

from pkgmatrix.cache import Artifact
from pkgmatrix.config import get_config
from pkgmatrix.errors import EnvironmentProvisioningFailure, ValidationCheckFailure
from pkgmatrix.instance import DEFAULT_OPTIONS, Instance, LxdBackend, ephemeral_instance, resolve_image, wait_ready
from pkgmatrix.logging import get_logger
from pkgmatrix.packager import CENTOS_VAULT_WORKAROUND
from pkgmatrix.repo import PublishedRepository
from pkgmatrix.sandbox import tail
from pkgmatrix.targets import MatrixCell, OsFamily
from pkgmatrix.versioning import CanonicalVersion, compare_versions

logger = get_logger("testenv")

# error of scenarios skipped because the run was cancelled
CANCELLED = "cancelled"


class Mode(str, enum.Enum):
    FRESH_INSTALL = "fresh-install"
    UPGRADE_FROM_PUBLISHED = "upgrade-from-published"


class ScenarioState(str, enum.Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    WAITING_FOR_READY = "waiting-for-ready"
    PREPARING = "preparing"
    INSTALLING = "installing"
    VALIDATING = "validating"
    TEARDOWN = "teardown"
    PASSED = "passed"
    FAILED = "failed"


class Outcome(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    name: str
    ok: bool
    output: str = ""
    phase: str = ""

    def as_dict(self):
        return {"name": self.name, "ok": self.ok, "phase": self.phase, "output": self.output}


@dataclass
class TestScenario:
    cell: MatrixCell
    mode: Mode
    steps: List[StepResult] = field(default_factory=list)
    outcome: Outcome = Outcome.SKIPPED
    state: ScenarioState = ScenarioState.PENDING
    history: List[ScenarioState] = field(default_factory=list)
    attempts: int = 0
    error: Optional[str] = None
    published_version: Optional[str] = None
    installed_version: Optional[str] = None

    @property
    def failed_steps(self) -> List[StepResult]:
        return [s for s in self.steps if not s.ok]

    @property
    def cancelled(self) -> bool:
        return self.outcome is Outcome.SKIPPED and self.error == CANCELLED

    def as_dict(self):
        return {
            "cell": self.cell.name,
            "mode": self.mode.value,
            "outcome": self.outcome.value,
            "state": self.state.value,
            "attempts": self.attempts,
            "error": self.error,
            "published_version": self.published_version,
            "installed_version": self.installed_version,
            "steps": [s.as_dict() for s in self.steps],
        }


@dataclass(frozen=True)
class Check:
    name: str
    command: str
    tolerated: bool = False
    expect: Optional[str] = None     # version token the output must contain
    non_empty: bool = False


def _contains_token(output: str, token: str) -> bool:
    """True when token appears in output not glued to other version characters."""
    return re.search(r"(?<![\w.~+-])" + re.escape(token) + r"(?![\w.~+-])", output) is not None


class TestEnvironmentOrchestrator:
    def __init__(self, cfg=None, backend=None, repository: Optional[PublishedRepository] = None,
                 sleeper: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.monotonic,
                 runner=None):
        self.cfg = cfg or get_config()
        self.backend = backend or LxdBackend(self.cfg, runner=runner)
        self.repository = repository or PublishedRepository(self.cfg)
        self.sleep = sleeper
        self.clock = clock
        self.retries = int(self.cfg.get("test.provision_retries", 2))
        self.ready_marker = self.cfg.get("test.ready_marker", "/var/lib/cloud/data/result.json")
        self.ready_timeout = float(self.cfg.get("test.ready_timeout", 600))
        self.ready_interval = float(self.cfg.get("test.ready_poll_interval", 1))
        self.settle_delay = float(self.cfg.get("test.settle_delay", 15))
        self.overrides = self.cfg.get("test.image_overrides") or {}
        p = self.cfg.section("product")
        self.package_name = p.get("name")
        self.binary = p.get("binary") or self.package_name
        self.service = p.get("service") or self.package_name
        self.config_file = p.get("config_file")
        self.data_dir = p.get("data_dir")
        self.init_command = p.get("init_command")
        self.init_args = list(p.get("init_args") or [])
        self.data_subdirs = list(p.get("data_subdirs") or [])
        self.man_page = p.get("man_page") or self.package_name

    # ----------------------------
    # Checklists
    # ----------------------------
    def _subdir_checks(self) -> List[Check]:
        return [Check(f"subdir {d}", f"ls -la {shlex.quote(os.path.join(self.data_dir, d))}/")
                for d in self.data_subdirs]

    def full_checklist(self, expected_version: Optional[str]) -> List[Check]:
        init = " ".join([f"sudo {self.init_command}"] + [shlex.quote(a) for a in self.init_args])
        return [
            Check("version", f"{self.binary} --version", expect=expected_version),
            Check("config file", f"cat {shlex.quote(self.config_file)}"),
            Check("data dir", f"ls -la {shlex.quote(self.data_dir)}"),
            Check("service status before enable", f"systemctl status {self.service}", tolerated=True),
            Check("init", init),
            Check("data dir after init", f"ls -la {shlex.quote(self.data_dir)}"),
            Check("service enable", f"systemctl enable {self.service}"),
            Check("service status after enable", f"systemctl status {self.service}", tolerated=True),
            Check("service start", f"systemctl start {self.service}"),
            Check("settle", ""),
            Check("journal", f"journalctl --unit={self.service} --no-pager", non_empty=True),
            Check("service active", f"systemctl status {self.service}"),
            Check("man page", f"man -P cat {self.man_page}"),
        ] + self._subdir_checks()

    def reduced_checklist(self, expected_version: Optional[str]) -> List[Check]:
        return [
            Check("version", f"{self.binary} --version", expect=expected_version),
            Check("config file", f"cat {shlex.quote(self.config_file)}"),
            Check("data dir", f"ls -la {shlex.quote(self.data_dir)}"),
            Check("service status", f"systemctl status {self.service}", tolerated=True),
            Check("man page", f"man -P cat {self.man_page}"),
        ] + self._subdir_checks()

    # ----------------------------
    # State / step helpers
    # ----------------------------
    def _enter(self, scenario: TestScenario, state: ScenarioState) -> None:
        scenario.state = state
        scenario.history.append(state)
        logger.debug("%s/%s: %s", scenario.cell.name, scenario.mode.value, state.value)

    def _exec_step(self, scenario: TestScenario, handle: Instance, name: str, command: str,
                   phase: str) -> bool:
        res = self.backend.exec(handle, command)
        output = (res.get("stdout") or "") + (res.get("stderr") or "")
        scenario.steps.append(StepResult(name=name, ok=bool(res["ok"]), output=tail(output, 40), phase=phase))
        if not res["ok"]:
            logger.warning("%s/%s: step %r failed (exit %s)", scenario.cell.name, scenario.mode.value,
                           name, res.get("exit_code"))
        return bool(res["ok"])

    def _check(self, handle: Instance, check: Check) -> str:
        if check.name == "settle":
            self.sleep(self.settle_delay)
            return f"waited {self.settle_delay:g}s"
        res = self.backend.exec(handle, check.command)
        output = (res.get("stdout") or "") + (res.get("stderr") or "")
        if check.tolerated:
            return output
        if not res["ok"]:
            raise ValidationCheckFailure(check.name, f"exit {res.get('exit_code')}: {tail(output, 5)}")
        if check.expect and not _contains_token(output, check.expect):
            raise ValidationCheckFailure(check.name, f"expected {check.expect!r} in output")
        if check.non_empty and not output.strip():
            raise ValidationCheckFailure(check.name, "no output")
        return output

    def _validate(self, scenario: TestScenario, handle: Instance, checks: List[Check], phase: str) -> None:
        self._enter(scenario, ScenarioState.VALIDATING)
        for check in checks:
            try:
                output = self._check(handle, check)
                scenario.steps.append(StepResult(check.name, True, tail(output, 40), phase))
            except ValidationCheckFailure as e:
                scenario.steps.append(StepResult(check.name, False, str(e), phase))
                logger.warning("%s/%s: %s", scenario.cell.name, scenario.mode.value, e)

    # ----------------------------
    # Provisioning
    # ----------------------------
    def _provision(self, scenario: TestScenario) -> Tuple[Instance, contextlib.ExitStack]:
        """Return a ready instance and the stack that tears it down."""
        image = resolve_image(scenario.cell.target, self.overrides)
        last: Optional[EnvironmentProvisioningFailure] = None
        for attempt in range(1, self.retries + 2):
            scenario.attempts = attempt
            self._enter(scenario, ScenarioState.PROVISIONING)
            with contextlib.ExitStack() as stack:
                try:
                    handle = stack.enter_context(ephemeral_instance(self.backend, image, dict(DEFAULT_OPTIONS)))
                except EnvironmentProvisioningFailure as e:
                    last = e
                    logger.warning("%s: provisioning attempt %d/%d failed: %s", scenario.cell.name, attempt,
                                   self.retries + 1, e)
                    continue
                # runs before the instance is destroyed
                stack.callback(self._enter, scenario, ScenarioState.TEARDOWN)
                self._enter(scenario, ScenarioState.WAITING_FOR_READY)
                try:
                    wait_ready(self.backend, handle, self.ready_marker, self.ready_timeout, self.ready_interval,
                               sleeper=self.sleep, clock=self.clock)
                except EnvironmentProvisioningFailure as e:
                    last = e
                    logger.warning("%s: readiness attempt %d/%d failed: %s", scenario.cell.name, attempt,
                                   self.retries + 1, e)
                    continue
                return handle, stack.pop_all()
        raise EnvironmentProvisioningFailure(str(last), attempts=self.retries + 1)

    # ----------------------------
    # Scenario phases
    # ----------------------------
    def _prepare(self, scenario: TestScenario, handle: Instance) -> bool:
        self._enter(scenario, ScenarioState.PREPARING)
        target = scenario.cell.target
        if target.family is OsFamily.DEB:
            cmds = [
                ("apt-get update", "apt-get update"),
                ("install prerequisites", 'DEBIAN_FRONTEND=noninteractive apt-get install -y '
                 '-o Dpkg::Options::="--force-confnew" apt-transport-https ca-certificates man sudo wget'),
            ]
        else:
            cmds = []
            if target.image in (self.cfg.get("rpm.eol_vault_images") or []) and target.image not in self.overrides:
                cmds.append(("EOL repository workaround", CENTOS_VAULT_WORKAROUND))
            cmds += [("yum update", "yum update -y"), ("install prerequisites", "yum install -y man sudo")]
        return all(self._exec_step(scenario, handle, name, cmd, "prepare") for name, cmd in cmds)

    def _push_package(self, scenario: TestScenario, handle: Instance, package: Artifact) -> Optional[str]:
        remote = f"/tmp/{package.filename}"
        res = self.backend.push_file(handle, package.path, remote)
        scenario.steps.append(StepResult("push package", bool(res["ok"]), tail(res.get("stderr") or "", 5), "install"))
        return remote if res["ok"] else None

    def _push_text(self, handle: Instance, content: str, remote: str) -> dict:
        fd, tmp = tempfile.mkstemp(prefix="pkgmatrix-", suffix=os.path.basename(remote))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            return self.backend.push_file(handle, tmp, remote)
        finally:
            os.remove(tmp)

    def _install_published(self, scenario: TestScenario, handle: Instance) -> bool:
        target = scenario.cell.target
        repo = self.repository
        pkg = self.package_name
        if target.family is OsFamily.DEB:
            res = self._push_text(handle, repo.apt_source_line(target, scenario.cell.arch) + "\n",
                                  f"/etc/apt/sources.list.d/{repo.name}.list")
            scenario.steps.append(StepResult("add published repository", bool(res["ok"]), "", "published"))
            if not res["ok"]:
                return False
            cmds = [
                ("import signing key", f"wget -q -O /tmp/repo-key.asc {shlex.quote(repo.key_url)} && apt-key add /tmp/repo-key.asc"),
                ("apt update", "apt update"),
                ("install published package", f"DEBIAN_FRONTEND=noninteractive apt install -y {pkg}"),
            ]
        else:
            res = self._push_text(handle, repo.yum_repo_file(target), f"/etc/yum.repos.d/{repo.name}.repo")
            scenario.steps.append(StepResult("add published repository", bool(res["ok"]), "", "published"))
            if not res["ok"]:
                return False
            cmds = [
                ("import signing key", f"rpm --import {shlex.quote(repo.key_url)}"),
                ("install published package", f"yum install -y {pkg}"),
            ]
        return all(self._exec_step(scenario, handle, name, cmd, "published") for name, cmd in cmds)

    def _install_file(self, scenario: TestScenario, handle: Instance, remote: str, phase: str) -> bool:
        if scenario.cell.family is OsFamily.DEB:
            cmd = f"DEBIAN_FRONTEND=noninteractive apt-get -y install {remote}"
        else:
            cmd = f"yum install -y {remote}"
        return self._exec_step(scenario, handle, "install package", cmd, phase)

    def _installed_version(self, handle: Instance, family: OsFamily) -> Optional[str]:
        if family is OsFamily.DEB:
            cmd = f"dpkg-query -W -f='${{Version}}' {self.package_name}"
        else:
            cmd = f"rpm -q --qf '%{{VERSION}}-%{{RELEASE}}' {self.package_name}"
        res = self.backend.exec(handle, cmd)
        return (res.get("stdout") or "").strip() or None if res["ok"] else None

    def _check_ordering(self, scenario: TestScenario) -> None:
        fam = scenario.cell.family
        old, new = scenario.published_version, scenario.installed_version
        if not old or not new:
            scenario.steps.append(StepResult("version ordering", False, f"cannot compare {old!r} and {new!r}", "upgrade"))
            return
        ok = compare_versions(new, old, fam) > 0
        scenario.steps.append(StepResult("version ordering", ok, f"{new} {'>' if ok else '<='} {old}", "upgrade"))

    def _exercise(self, scenario: TestScenario, handle: Instance, package: Artifact, expected: str) -> None:
        cell = scenario.cell
        if not self._prepare(scenario, handle):
            scenario.error = "instance preparation failed"
            return
        self._enter(scenario, ScenarioState.INSTALLING)
        remote = self._push_package(scenario, handle, package)
        if remote is None:
            scenario.error = "cannot copy the package into the instance"
            return
        if scenario.mode is Mode.FRESH_INSTALL:
            if not self._install_file(scenario, handle, remote, "install"):
                scenario.error = "package installation failed"
                return
            self._validate(scenario, handle, self.full_checklist(expected), "validate")
            return
        if not self._install_published(scenario, handle):
            scenario.error = "installing the published package failed"
            return
        self._validate(scenario, handle, self.full_checklist(None), "published")
        scenario.published_version = self._installed_version(handle, cell.family)
        self._enter(scenario, ScenarioState.INSTALLING)
        if not self._install_file(scenario, handle, remote, "upgrade"):
            scenario.error = "upgrade installation failed"
            return
        scenario.installed_version = self._installed_version(handle, cell.family)
        self._check_ordering(scenario)
        self._validate(scenario, handle, self.reduced_checklist(expected), "upgrade")

    # ----------------------------
    # Public API
    # ----------------------------
    def run(self, cell: MatrixCell, mode: Union[str, Mode], package: Artifact,
            canonical: Union[str, CanonicalVersion]) -> TestScenario:
        """Run one scenario to completion; never raises for environment or check failures."""
        scenario = TestScenario(cell=cell, mode=Mode(mode))
        logger.info("%s/%s: starting", cell.name, scenario.mode.value)
        try:
            handle, instance = self._provision(scenario)
        except EnvironmentProvisioningFailure as e:
            scenario.error = str(e)
            scenario.steps.append(StepResult("provision", False, str(e), "provision"))
            return self._finish(scenario)
        with instance:
            self._exercise(scenario, handle, package, str(canonical))
        return self._finish(scenario)

    def _finish(self, scenario: TestScenario) -> TestScenario:
        ok = scenario.error is None and bool(scenario.steps) and not scenario.failed_steps
        scenario.outcome = Outcome.PASS if ok else Outcome.FAIL
        self._enter(scenario, ScenarioState.PASSED if ok else ScenarioState.FAILED)
        log = logger.info if ok else logger.error
        log("%s/%s: %s (%d step(s), %d failed)", scenario.cell.name, scenario.mode.value,
            scenario.outcome.value, len(scenario.steps), len(scenario.failed_steps))
        return scenario
