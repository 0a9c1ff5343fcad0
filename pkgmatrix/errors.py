# pkgmatrix/errors.py
"""
Exception taxonomy for pkgmatrix.

Stage-local errors (BuildFailure, PackagingError, VerificationFailure,
EnvironmentProvisioningFailure, ValidationCheckFailure) are caught by the
scheduler and attached to the cell report. UnsupportedVersionFormat and
ConfigError abort the whole run.
"""

from __future__ import annotations

from typing import Any, Optional


class PkgMatrixError(Exception):
    """Base class of every pkgmatrix error."""


class ConfigError(PkgMatrixError):
    """Configuration could not be loaded or failed validation."""


class DBError(PkgMatrixError):
    """Generic error of the sqlite wrapper."""


class CacheError(PkgMatrixError):
    """Artifact cache could not store or restore an entry."""


class SandboxError(PkgMatrixError):
    """A build session could not be started or used."""


class UnsupportedVersionFormat(PkgMatrixError, ValueError):
    def __init__(self, version: str):
        super().__init__(f"unsupported version format: {version!r} (expected MAJOR.MINOR.PATCH[-label[.N]])")
        self.version = version


class BuildFailure(PkgMatrixError):
    def __init__(self, arch: str, diagnostic: str = ""):
        super().__init__(f"cross compilation for {arch} failed: {diagnostic}".rstrip(": "))
        self.arch = arch
        self.diagnostic = diagnostic


class PackagingError(PkgMatrixError):
    def __init__(self, cell: Any, diagnostic: str = ""):
        name = getattr(cell, "name", cell)
        super().__init__(f"packaging {name} failed: {diagnostic}".rstrip(": "))
        self.cell = cell
        self.diagnostic = diagnostic


class VerificationFailure(PkgMatrixError):
    """Raised when a verification report carries fatal findings."""

    def __init__(self, report: Any):
        fatal = [f.message for f in getattr(report, "findings", []) if f.fatal]
        cell = getattr(getattr(report, "cell", None), "name", "?")
        super().__init__(f"verification of {cell} has {len(fatal)} fatal finding(s)")
        self.report = report


class EnvironmentProvisioningFailure(PkgMatrixError):
    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class ValidationCheckFailure(PkgMatrixError):
    def __init__(self, step: str, detail: Optional[str] = None):
        super().__init__(f"validation step {step!r} failed" + (f": {detail}" if detail else ""))
        self.step = step
        self.detail = detail
