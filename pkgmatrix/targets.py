# pkgmatrix/targets.py
"""
OS targets and matrix cells.

An image string "os:release" (e.g. "ubuntu:focal", "centos:8") names both the
package build container and the OS the package is made for. A MatrixCell is one
(target, arch, variant) combination whose name doubles as the artifact name.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Optional

from pkgmatrix.errors import ConfigError


class OsFamily(str, enum.Enum):
    DEB = "deb"
    RPM = "rpm"


_FAMILIES = {
    "debian": OsFamily.DEB,
    "ubuntu": OsFamily.DEB,
    "centos": OsFamily.RPM,
    "rockylinux": OsFamily.RPM,
    "almalinux": OsFamily.RPM,
    "fedora": OsFamily.RPM,
}


def family_of(os_name: str) -> OsFamily:
    try:
        return _FAMILIES[os_name.lower()]
    except KeyError:
        raise ConfigError(f"unknown OS {os_name!r}; known: {', '.join(sorted(_FAMILIES))}") from None


@dataclass(frozen=True, order=True)
class OsTarget:
    name: str
    release: str

    @classmethod
    def parse(cls, image: str) -> "OsTarget":
        if not isinstance(image, str) or image.count(":") != 1:
            raise ConfigError(f"image must look like 'os:release', got {image!r}")
        name, release = (p.strip() for p in image.split(":"))
        if not name or not release:
            raise ConfigError(f"image must look like 'os:release', got {image!r}")
        family_of(name)
        return cls(name=name.lower(), release=release)

    @property
    def family(self) -> OsFamily:
        return family_of(self.name)

    @property
    def image(self) -> str:
        return f"{self.name}:{self.release}"

    def __str__(self) -> str:
        return self.image


@dataclass(frozen=True)
class MatrixCell:
    target: OsTarget
    arch: str
    variant: Optional[str] = None
    native_arch: str = "x86_64"

    @property
    def name(self) -> str:
        return f"{self.target.name}_{self.target.release}_{self.arch}"

    @property
    def is_cross(self) -> bool:
        return self.arch != self.native_arch

    @property
    def family(self) -> OsFamily:
        return self.target.family

    def with_variant(self, variant: Optional[str]) -> "MatrixCell":
        return replace(self, variant=variant)

    def __str__(self) -> str:
        return self.name
