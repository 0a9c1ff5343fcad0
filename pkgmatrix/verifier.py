# pkgmatrix/verifier.py
# -*- coding: utf-8 -*-
"""
verifier.py - static checks of generated packages

Features:
 - Debian family: dpkg --info, then lintian -v (cross cells suppress the
   unstripped/static binary tags); every lintian finding is fatal
 - RPM family: rpmlint; every finding is advisory and the exit code is ignored
 - A failing tool run without any parsed finding still yields one finding
 - Runs inside the packaging session when given one, otherwise in a throwaway
   container of the cell's build image with the linter installed
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass, field
from typing import List, Optional

from pkgmatrix.cache import Artifact
from pkgmatrix.config import get_config
from pkgmatrix.errors import SandboxError, VerificationFailure
from pkgmatrix.logging import get_logger
from pkgmatrix.packager import build_image_for
from pkgmatrix.sandbox import SandboxManager, Session, tail
from pkgmatrix.targets import MatrixCell, OsFamily

LOG = get_logger("verifier")

# E: routinator: binary-without-manpage usr/bin/routinator
_LINTIAN_RE = re.compile(r"^([EWIPX]): ([^:]+): (\S+)(?:\s+(.*))?$")
# routinator.x86_64: W: no-documentation
_RPMLINT_RE = re.compile(r"^(\S+?): ([EWI]): (\S+)(?:\s+(.*))?$")

_SEVERITY = {"E": "error", "W": "warning", "I": "info", "P": "pedantic", "X": "experimental"}


@dataclass(frozen=True)
class Finding:
    severity: str
    message: str
    tag: Optional[str] = None
    fatal: bool = False

    def as_dict(self):
        return {"severity": self.severity, "message": self.message, "tag": self.tag, "fatal": self.fatal}


@dataclass
class VerificationReport:
    cell: MatrixCell
    package: Artifact
    findings: List[Finding] = field(default_factory=list)
    exit_code: int = 0
    output: str = ""

    @property
    def fatal(self) -> bool:
        return any(f.fatal for f in self.findings)

    @property
    def fatal_findings(self) -> List[Finding]:
        return [f for f in self.findings if f.fatal]

    @property
    def advisory_findings(self) -> List[Finding]:
        return [f for f in self.findings if not f.fatal]

    def raise_for_fatal(self) -> None:
        if self.fatal:
            raise VerificationFailure(self)

    def as_dict(self):
        return {
            "cell": self.cell.name,
            "package": self.package.filename,
            "exit_code": self.exit_code,
            "fatal": self.fatal,
            "findings": [f.as_dict() for f in self.findings],
        }


def parse_lintian(output: str, fatal: bool = True) -> List[Finding]:
    """lintian -v output; `fatal` follows the tool exit status."""
    findings = []
    for line in (output or "").splitlines():
        m = _LINTIAN_RE.match(line.strip())
        if not m:
            continue
        code, _pkg, tag, rest = m.groups()
        findings.append(Finding(severity=_SEVERITY[code], message=line.strip(), tag=tag, fatal=fatal))
    return findings


def parse_rpmlint(output: str) -> List[Finding]:
    findings = []
    for line in (output or "").splitlines():
        m = _RPMLINT_RE.match(line.strip())
        if not m:
            continue
        _pkg, code, tag, rest = m.groups()
        findings.append(Finding(severity=_SEVERITY[code], message=line.strip(), tag=tag, fatal=False))
    return findings


class PackageVerifier:
    def __init__(self, cfg=None, sandbox: Optional[SandboxManager] = None, runner=None):
        self.cfg = cfg or get_config()
        self.sandbox = sandbox or SandboxManager(self.cfg, runner=runner)

    # ----------------------------
    # Family specific
    # ----------------------------
    def _verify_deb(self, session: Session, cell: MatrixCell, package: Artifact, pkg_path: str) -> VerificationReport:
        report_findings: List[Finding] = []
        info = self.sandbox.exec_in_session(session, ["dpkg", "--info", pkg_path])
        if not info["ok"]:
            report_findings.append(Finding("error", f"dpkg --info failed: {tail(info['stderr'], 5)}",
                                           tag="dpkg-info", fatal=True))

        cmd = ["lintian", "-v"]
        if cell.is_cross:
            suppress = self.cfg.get("deb.lintian_cross_suppress") or []
            if suppress:
                cmd += ["--suppress-tags", ",".join(suppress)]
        cmd.append(pkg_path)
        res = self.sandbox.exec_in_session(session, cmd)
        output = (res["stdout"] or "") + (res["stderr"] or "")
        # only a nonzero lintian exit blocks publication
        parsed = parse_lintian(output, fatal=res["exit_code"] != 0)
        report_findings.extend(parsed)
        if not res["ok"] and not parsed:
            report_findings.append(Finding("error", f"lintian exited {res['exit_code']}: {tail(output, 5)}",
                                           tag="lintian-failed", fatal=True))
        return VerificationReport(cell=cell, package=package, findings=report_findings,
                                  exit_code=int(res["exit_code"] or 0), output=info["stdout"] + output)

    def _verify_rpm(self, session: Session, cell: MatrixCell, package: Artifact, pkg_path: str) -> VerificationReport:
        res = self.sandbox.exec_in_session(session, ["rpmlint", pkg_path])
        output = (res["stdout"] or "") + (res["stderr"] or "")
        findings = parse_rpmlint(output)
        if res["exit_code"] == 127:
            findings.append(Finding("warning", "rpmlint is not available", tag="rpmlint-missing", fatal=False))
        return VerificationReport(cell=cell, package=package, findings=findings,
                                  exit_code=int(res["exit_code"] or 0), output=output)

    def _linter_session(self, cell: MatrixCell) -> Session:
        sess = self.sandbox.start_session("container", image=build_image_for(cell, self.cfg),
                                          env={"DEBIAN_FRONTEND": "noninteractive"}, name=f"verify-{cell.name}")
        if cell.family is OsFamily.DEB:
            setup = "apt-get update && apt-get install -y lintian"
        else:
            setup = "yum install epel-release -y && yum install -y rpmlint"
        res = self.sandbox.exec_in_session(sess, setup)
        if not res["ok"]:
            self.sandbox.stop_session(sess)
            raise SandboxError(f"cannot install linter for {cell.name}: {tail(res['stderr'], 5)}")
        return sess

    # ----------------------------
    # Public API
    # ----------------------------
    def verify(self, cell: MatrixCell, package: Artifact, session: Optional[Session] = None) -> VerificationReport:
        """Lint package; the report says which findings block publication."""
        own = session is None
        if own:
            session = self._linter_session(cell)
        try:
            check_dir = os.path.join(session.workdir, "verify")
            os.makedirs(check_dir, exist_ok=True)
            local = os.path.join(check_dir, package.filename)
            shutil.copyfile(package.path, local)
            pkg_path = session.path_in(local)
            if cell.family is OsFamily.DEB:
                report = self._verify_deb(session, cell, package, pkg_path)
            else:
                report = self._verify_rpm(session, cell, package, pkg_path)
        finally:
            if own:
                self.sandbox.stop_session(session)
        if report.fatal:
            LOG.error("%s: %d fatal finding(s) in %s", cell.name, len(report.fatal_findings), package.filename)
        elif report.findings:
            LOG.warning("%s: %d advisory finding(s) in %s", cell.name, len(report.findings), package.filename)
        else:
            LOG.info("%s: %s is clean", cell.name, package.filename)
        return report
