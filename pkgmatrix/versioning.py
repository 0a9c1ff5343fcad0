# pkgmatrix/versioning.py
# -*- coding: utf-8 -*-
"""
Version translation between the canonical release version and OS-native
package versions.

Features:
- Strict parser for MAJOR.MINOR.PATCH[-label[.N]]
- translate(): Debian ("0.8.0~rc.1-1focal") and RPM ("0.8.0~rc.1-1.el8") renderings
- Pre-release labels sort below the final release ('~'), the development
  label (anything starting with "dev" by default) sorts above it ('-' on Debian, '.' on RPM)
- Per-release distribution tag so two releases never share a rendered string
- compare_versions(): dpkg and rpmvercmp ordering
- read_manifest_version(): [package].version from Cargo.toml
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Union

import toml

from pkgmatrix.errors import ConfigError, UnsupportedVersionFormat
from pkgmatrix.targets import OsFamily, OsTarget

_CANONICAL_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)(?:-([0-9A-Za-z]+)(?:\.(\d+))?)?$")

DEFAULT_NEXT_LABEL = "dev"


@dataclass(frozen=True)
class CanonicalVersion:
    major: int
    minor: int
    patch: int
    label: Optional[str] = None
    number: Optional[int] = None
    text: str = ""

    @classmethod
    def parse(cls, text: str) -> "CanonicalVersion":
        m = _CANONICAL_RE.match(text.strip()) if isinstance(text, str) else None
        if not m:
            raise UnsupportedVersionFormat(text)
        major, minor, patch, label, number = m.groups()
        return cls(int(major), int(minor), int(patch), label,
                   int(number) if number is not None else None, text.strip())

    @property
    def base(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @property
    def prerelease(self) -> Optional[str]:
        if self.label is None:
            return None
        return self.label if self.number is None else f"{self.label}.{self.number}"

    def __str__(self) -> str:
        return self.text or (self.base + (f"-{self.prerelease}" if self.label else ""))


@dataclass(frozen=True)
class PackageVersion:
    family: OsFamily
    upstream: str
    revision: int
    distribution_tag: str

    @property
    def release(self) -> str:
        """Everything after the upstream part: '1focal' (DEB) or '1.el8' (RPM)."""
        if self.family is OsFamily.DEB:
            return f"{self.revision}{self.distribution_tag}"
        return f"{self.revision}.{self.distribution_tag}"

    @property
    def rendered(self) -> str:
        return f"{self.upstream}-{self.release}"

    def __str__(self) -> str:
        return self.rendered


# ----------------------------
# Translation
# ----------------------------
def distribution_tag(target: OsTarget, dist_tags: Optional[Dict[str, str]]) -> str:
    if target.family is OsFamily.DEB:
        # dpkg revisions must start with a digit; keep the codename separate from it
        return f"+{target.release}" if target.release[:1].isdigit() else target.release
    tags = dist_tags or {}
    tag = tags.get(target.image) or tags.get(target.release)
    if tag:
        return str(tag)
    return f"el{target.release}"


def translate(canonical: Union[str, CanonicalVersion], target: Union[str, OsTarget],
              revision: int = 1, next_label: str = DEFAULT_NEXT_LABEL,
              dist_tags: Optional[Dict[str, str]] = None) -> PackageVersion:
    """Render the canonical version for one OS target. Pure and deterministic."""
    cv = canonical if isinstance(canonical, CanonicalVersion) else CanonicalVersion.parse(canonical)
    tgt = target if isinstance(target, OsTarget) else OsTarget.parse(target)
    family = tgt.family
    upstream = cv.base
    if cv.label is not None:
        # any label starting with next_label ("dev", "devel") sorts above the release
        if cv.label.startswith(next_label):
            sep = "-" if family is OsFamily.DEB else "."
        else:
            sep = "~"
        upstream = f"{upstream}{sep}{cv.prerelease}"
    return PackageVersion(family=family, upstream=upstream, revision=int(revision),
                          distribution_tag=distribution_tag(tgt, dist_tags))


def translate_from_config(canonical: Union[str, CanonicalVersion], target: Union[str, OsTarget],
                          cfg) -> PackageVersion:
    return translate(
        canonical,
        target,
        revision=int(cfg.get("version.revision", 1)),
        next_label=cfg.get("version.next_label", DEFAULT_NEXT_LABEL),
        dist_tags=cfg.get("rpm.dist_tags") or {},
    )


# ----------------------------
# Native ordering
# ----------------------------
def _dpkg_order(c: str) -> int:
    if c.isdigit():
        return 0
    if c.isalpha():
        return ord(c)
    if c == "~":
        return -1
    return ord(c) + 256


def _verrevcmp(a: str, b: str) -> int:
    i = j = 0
    while i < len(a) or j < len(b):
        first_diff = 0
        while (i < len(a) and not a[i].isdigit()) or (j < len(b) and not b[j].isdigit()):
            ac = _dpkg_order(a[i]) if i < len(a) else 0
            bc = _dpkg_order(b[j]) if j < len(b) else 0
            if ac != bc:
                return ac - bc
            i += 1
            j += 1
        while i < len(a) and a[i] == "0":
            i += 1
        while j < len(b) and b[j] == "0":
            j += 1
        while i < len(a) and a[i].isdigit() and j < len(b) and b[j].isdigit():
            if not first_diff:
                first_diff = ord(a[i]) - ord(b[j])
            i += 1
            j += 1
        if i < len(a) and a[i].isdigit():
            return 1
        if j < len(b) and b[j].isdigit():
            return -1
        if first_diff:
            return first_diff
    return 0


def _rpmvercmp(a: str, b: str) -> int:
    if a == b:
        return 0
    i = j = 0
    while i < len(a) or j < len(b):
        while i < len(a) and not a[i].isalnum() and a[i] not in "~^":
            i += 1
        while j < len(b) and not b[j].isalnum() and b[j] not in "~^":
            j += 1

        if (i < len(a) and a[i] == "~") or (j < len(b) and b[j] == "~"):
            if i >= len(a) or a[i] != "~":
                return 1
            if j >= len(b) or b[j] != "~":
                return -1
            i += 1
            j += 1
            continue

        if (i < len(a) and a[i] == "^") or (j < len(b) and b[j] == "^"):
            if i >= len(a):
                return -1
            if j >= len(b):
                return 1
            if a[i] != "^":
                return 1
            if b[j] != "^":
                return -1
            i += 1
            j += 1
            continue

        if i >= len(a) or j >= len(b):
            break

        isnum = a[i].isdigit()
        si, sj = i, j
        if isnum:
            while i < len(a) and a[i].isdigit():
                i += 1
            while j < len(b) and b[j].isdigit():
                j += 1
        else:
            while i < len(a) and a[i].isalpha():
                i += 1
            while j < len(b) and b[j].isalpha():
                j += 1
        seg1, seg2 = a[si:i], b[sj:j]
        if not seg2:
            # numeric segments are newer than alpha ones
            return 1 if isnum else -1
        if isnum:
            seg1 = seg1.lstrip("0")
            seg2 = seg2.lstrip("0")
            if len(seg1) != len(seg2):
                return 1 if len(seg1) > len(seg2) else -1
        if seg1 != seg2:
            return 1 if seg1 > seg2 else -1

    if i >= len(a) and j >= len(b):
        return 0
    return -1 if i >= len(a) else 1


def _split_evr(version: str):
    epoch = 0
    rest = version
    if ":" in rest:
        head, rest = rest.split(":", 1)
        epoch = int(head) if head.isdigit() else 0
    if "-" in rest:
        upstream, release = rest.rsplit("-", 1)
    else:
        upstream, release = rest, ""
    return epoch, upstream, release


def _sign(n: int) -> int:
    return (n > 0) - (n < 0)


def compare_versions(a: Union[str, PackageVersion], b: Union[str, PackageVersion],
                     family: OsFamily) -> int:
    """Return -1, 0 or 1 comparing two full package versions by the family's native rules."""
    sa = a.rendered if isinstance(a, PackageVersion) else str(a)
    sb = b.rendered if isinstance(b, PackageVersion) else str(b)
    ea, ua, ra = _split_evr(sa)
    eb, ub, rb = _split_evr(sb)
    if ea != eb:
        return _sign(ea - eb)
    cmp = _verrevcmp if family is OsFamily.DEB else _rpmvercmp
    res = cmp(ua, ub)
    if res:
        return _sign(res)
    return _sign(cmp(ra, rb))


# ----------------------------
# Manifest
# ----------------------------
def read_manifest_version(path: Union[str, Path]) -> str:
    """Return [package].version of a Cargo manifest."""
    p = Path(path)
    if p.is_dir():
        p = p / "Cargo.toml"
    try:
        data = toml.load(str(p))
    except (OSError, toml.TomlDecodeError) as e:
        raise ConfigError(f"cannot read manifest {p}: {e}") from e
    version = (data.get("package") or {}).get("version")
    if not isinstance(version, str):
        raise ConfigError(f"manifest {p} has no [package].version")
    return version


def read_manifest_name(path: Union[str, Path]) -> Optional[str]:
    p = Path(path)
    if p.is_dir():
        p = p / "Cargo.toml"
    try:
        data = toml.load(str(p))
    except (OSError, toml.TomlDecodeError):
        return None
    return (data.get("package") or {}).get("name")
