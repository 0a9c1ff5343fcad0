# pkgmatrix/config.py
# -*- coding: utf-8 -*-
"""
pkgmatrix central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize paths and coerce numeric fields
- Validate structure (warnings) and schema (pydantic); fatal=True raises ConfigError
- Typed access via Config dataclass (get_config(), get_section(), Config.get("a.b"))
- Thread-safe load/reload; set_config() to inject a prepared config (tests, CLI)
"""

from __future__ import annotations

import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pkgmatrix.errors import ConfigError
from pkgmatrix.targets import OsFamily, OsTarget
from pkgmatrix.versioning import distribution_tag

logger = logging.getLogger("pkgmatrix.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "file": None,
        "file_level": "DEBUG",
        "color": True,
        "max_size": "10M",
        "backups": 5,
        "module_levels": {},
        "jsonl": {"enabled": False, "path": "~/.pkgmatrix/transparency.jsonl"},
    },
    "db": {
        "path": "~/.pkgmatrix/db.sqlite3",
    },
    "cache": {
        "dir": "~/.pkgmatrix/cache",
    },
    "product": {
        "name": None,
        "binary": None,          # defaults to product.name
        "maintainer": None,
        "release_url": None,     # e.g. https://github.com/org/{name}/releases/tag/v{version}
        "service": None,         # defaults to product.name
        "config_file": None,     # defaults to /etc/{name}/{name}.conf
        "data_dir": None,        # defaults to /var/lib/{name}
        "init_command": None,    # defaults to {name}-init
        "init_args": [],
        "data_subdirs": [],
        "man_page": None,        # defaults to product.name
    },
    "source": {
        "dir": ".",
        "manifest": "Cargo.toml",
        "lock": "Cargo.lock",
    },
    "version": {
        "next_label": "dev",
        "revision": 1,
    },
    "build": {
        "engine": "docker",
        "images": {},            # cell image -> build image (pin to oldest release)
        "workdir_root": "~/.pkgmatrix/work",
        "keep_workdirs": False,
        "timeout": 3600,
        "rustup_profile": "minimal",
    },
    "cross": {
        "tool": "cross",
        "tool_version": None,
        "cargo_home": None,      # defaults to $CARGO_HOME or ~/.cargo
    },
    "matrix": {
        "native_arch": "x86_64",
        "targets": [
            "ubuntu:xenial",
            "ubuntu:bionic",
            "ubuntu:focal",
            "ubuntu:jammy",
            "debian:stretch",
            "debian:buster",
            "debian:bullseye",
            "centos:7",
            "centos:8",
        ],
        "archs": ["x86_64"],
        "include": [
            {"image": "debian:bullseye", "arch": "armv7-unknown-linux-musleabihf"},
            {"image": "debian:buster", "arch": "aarch64-unknown-linux-musl"},
        ],
        "exclude": [],
        "minimal_releases": ["xenial", "bionic", "stretch"],
        "parallelism": 4,
    },
    "deb": {
        "tool_version": "1.34.2",
        "no_default_features_releases": ["xenial"],
        "build_deps": ["curl", "build-essential", "jq", "lintian", "pkg-config"],
        "lintian_cross_suppress": ["unstripped-binary-or-object", "statically-linked-binary"],
        "distribution": "unstable",
        "urgency": "medium",
    },
    "rpm": {
        "tool_version": "0.6.0",
        "dist_tags": {},
        "version_placeholder": "<RPM_PKG_VER_PLACEHOLDER>",
        "release_placeholder": "<RPM_PKG_REL_PLACEHOLDER>",
        "service_units": {
            "centos:7": "pkg/common/{name}-minimal.{name}.service",
            "default": "pkg/common/{name}.{name}.service",
        },
        "gzip_payload_images": ["centos:7"],
        "eol_vault_images": ["centos:8"],
    },
    "repo": {
        "name": "pkgmatrix",
        "base_url": None,
        "key_path": "aptkey.asc",
        "component": "main",
        "timeout": 10,
    },
    "test": {
        "enabled": True,
        "targets": [
            "ubuntu:xenial",
            "ubuntu:bionic",
            "ubuntu:focal",
            "ubuntu:jammy",
            "debian:buster",
            "debian:bullseye",
            "centos:7",
            "centos:8",
        ],
        "archs": ["x86_64"],
        "modes": ["fresh-install", "upgrade-from-published"],
        "exclude": [],
        "probe_published": False,
        "image_overrides": {"centos:8": "images:rockylinux/8/cloud"},
        "ready_marker": "/var/lib/cloud/data/result.json",
        "ready_poll_interval": 1,
        "ready_timeout": 600,
        "provision_retries": 2,
        "settle_delay": 15,
        "exec_timeout": 900,
        "parallelism": 2,
    },
    "output": {
        "dir": "./pkgmatrix-out",
        "report": "report.json",
    },
}

# ----------------------------
# Schema (pydantic) used for strict validation of the merged config
# ----------------------------
class _Section(BaseModel):
    model_config = ConfigDict(extra="allow")


class _BuildModel(_Section):
    engine: str = "docker"
    timeout: int = Field(3600, ge=1)
    images: Dict[str, str] = {}


class _MatrixModel(_Section):
    native_arch: str
    targets: List[str]
    archs: List[str]
    include: List[Dict[str, str]] = []
    exclude: List[Dict[str, str]] = []
    parallelism: int = Field(4, ge=1)


class _VersionModel(_Section):
    next_label: str
    revision: int = Field(1, ge=0)


class _RpmModel(_Section):
    dist_tags: Dict[str, str] = {}


class _TestModel(_Section):
    modes: List[str]
    ready_poll_interval: float = Field(1, gt=0)
    ready_timeout: float = Field(600, gt=0)
    provision_retries: int = Field(2, ge=0)
    settle_delay: float = Field(15, ge=0)
    parallelism: int = Field(2, ge=1)


class ConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    logging: Dict[str, Any]
    db: Dict[str, Any]
    cache: Dict[str, Any]
    product: Dict[str, Any]
    source: Dict[str, Any]
    version: _VersionModel
    build: _BuildModel
    cross: Dict[str, Any]
    matrix: _MatrixModel
    deb: Dict[str, Any]
    rpm: _RpmModel
    repo: Dict[str, Any]
    test: _TestModel
    output: Dict[str, Any]

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def section(self, name: str) -> Dict[str, Any]:
        val = self.merged.get(name)
        return deepcopy(val) if isinstance(val, dict) else {}

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()
_WATCH_CALLBACKS: List[Callable[[Config], None]] = []

# ----------------------------
# Utilities
# ----------------------------
def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(str(val))))

def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in (b or {}).items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res

def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("PKGMATRIX_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "pkgmatrix.yaml",
        Path.cwd() / "pkgmatrix.yml",
        Path.cwd() / "pkgmatrix.json",
        Path.home() / ".config" / "pkgmatrix" / "config.yaml",
        Path("/etc") / "pkgmatrix" / "config.yaml",
    ])
    return candidates

def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError(f"config file not found: {explicit}")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None

def _load_file(path: Path) -> Dict[str, Any]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(txt)
        else:
            data = yaml.safe_load(txt)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot parse config {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must contain a mapping at top level")
    return data

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields and coerce basic types."""
    out = deepcopy(cfg)
    path_keys = [
        ("logging", "file"),
        ("logging", "jsonl", "path"),
        ("db", "path"),
        ("cache", "dir"),
        ("build", "workdir_root"),
        ("source", "dir"),
        ("cross", "cargo_home"),
        ("output", "dir"),
    ]
    for keys in path_keys:
        ref: Any = out
        for k in keys[:-1]:
            ref = ref.get(k, {}) if isinstance(ref, dict) else {}
        last = keys[-1]
        if isinstance(ref, dict) and isinstance(ref.get(last), str) and ref[last]:
            ref[last] = _expand_path(ref[last])

    for section, key, cast in (
        ("matrix", "parallelism", int),
        ("test", "parallelism", int),
        ("test", "provision_retries", int),
        ("test", "ready_timeout", float),
        ("test", "ready_poll_interval", float),
        ("test", "settle_delay", float),
        ("build", "timeout", int),
        ("version", "revision", int),
    ):
        sec = out.get(section)
        if isinstance(sec, dict) and key in sec:
            try:
                sec[key] = cast(sec[key])
            except (TypeError, ValueError):
                logger.debug("config: cannot coerce %s.%s=%r", section, key, sec[key])

    # product defaults derived from product.name
    product = out.get("product")
    if isinstance(product, dict) and product.get("name"):
        name = product["name"]
        product.setdefault("binary", None)
        product["binary"] = product.get("binary") or name
        product["service"] = product.get("service") or name
        product["config_file"] = product.get("config_file") or f"/etc/{name}/{name}.conf"
        product["data_dir"] = product.get("data_dir") or f"/var/lib/{name}"
        product["init_command"] = product.get("init_command") or f"{name}-init"
        product["man_page"] = product.get("man_page") or name
    return out

def _allowed_top_level_keys() -> List[str]:
    return list(DEFAULTS.keys())

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless load() is called with fatal=True."""
    warnings: List[str] = []
    for k in cfg.keys():
        if k not in _allowed_top_level_keys():
            warnings.append(f"Unknown top-level config key: {k}")
    if not (cfg.get("product") or {}).get("name"):
        warnings.append("product.name must be set")
    for image in (cfg.get("matrix") or {}).get("targets") or []:
        if not isinstance(image, str) or ":" not in image:
            warnings.append(f"matrix.targets entry must look like 'os:release': {image!r}")
    modes = (cfg.get("test") or {}).get("modes") or []
    for m in modes:
        if m not in ("fresh-install", "upgrade-from-published"):
            warnings.append(f"test.modes contains unknown mode: {m}")
    tags = (cfg.get("rpm") or {}).get("dist_tags") or {}
    if isinstance(tags, dict) and len(set(tags.values())) != len(tags):
        warnings.append("rpm.dist_tags must map every release to a distinct tag")
    seen_tags: Dict[str, str] = {}
    matrix = cfg.get("matrix") or {}
    images = list(matrix.get("targets") or []) + [e.get("image") for e in matrix.get("include") or []
                                                   if isinstance(e, dict)]
    for image in images:
        try:
            target = OsTarget.parse(image)
        except ConfigError:
            continue
        if target.family is not OsFamily.RPM:
            continue
        tag = distribution_tag(target, tags if isinstance(tags, dict) else {})
        other = seen_tags.setdefault(tag, target.image)
        if other != target.image:
            warnings.append(f"rpm dist tag {tag!r} is shared by {other} and {target.image}; set rpm.dist_tags")
    if (cfg.get("test") or {}).get("probe_published") and not (cfg.get("repo") or {}).get("base_url"):
        warnings.append("test.probe_published requires repo.base_url")
    return (len(warnings) == 0, warnings)

def _validate_schema(cfg: Dict[str, Any]) -> List[str]:
    try:
        ConfigModel(**cfg)
    except ValidationError as e:
        return [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
    return []

# ----------------------------
# Loading / reloading
# ----------------------------
def load(explicit_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
         fatal: bool = False, search: bool = True) -> Config:
    """
    Load and merge config. If fatal=True then validation failures raise ConfigError.
    overrides are merged last (used by the CLI and by tests); search=False skips the
    candidate file lookup so only DEFAULTS + overrides are used.
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path) if (search or explicit_path) else None
        raw: Dict[str, Any] = _load_file(cfg_path) if cfg_path else {}
        merged = _deep_merge(DEFAULTS, raw)
        if overrides:
            merged = _deep_merge(merged, overrides)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        issues.extend(_validate_schema(normalized))
        if issues:
            msg = f"config: validation issues: {issues}"
            if fatal:
                logger.error(msg)
                raise ConfigError(msg)
            logger.warning(msg)
        cfg_obj = Config(raw=raw, merged=normalized, path=cfg_path)
        _CONFIG = cfg_obj
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return cfg_obj

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG

def set_config(cfg: Optional[Config]) -> None:
    """Replace the process-wide config (None forces a lazy reload)."""
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = cfg
    if cfg is not None:
        _notify_watchers(cfg)

def reload(explicit_path: Optional[str] = None) -> Config:
    cfg = load(explicit_path)
    _notify_watchers(cfg)
    return cfg

def get_section(name: str) -> Dict[str, Any]:
    return get_config().section(name)

def validate_config(cfg: Optional[Config] = None) -> Tuple[bool, List[str]]:
    cfg = cfg or get_config()
    ok, issues = _validate_structure(cfg.merged)
    issues.extend(_validate_schema(cfg.merged))
    src = cfg.get("source.dir")
    if src and not Path(src, cfg.get("source.manifest", "Cargo.toml")).exists():
        issues.append(f"source manifest not found under {src}")
    return (len(issues) == 0, issues)

# ----------------------------
# Watcher API
# ----------------------------
def register_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb not in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.append(cb)

def unregister_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.remove(cb)

def _notify_watchers(cfg: Config) -> None:
    with _CONFIG_LOCK:
        cbs = list(_WATCH_CALLBACKS)
    for cb in cbs:
        try:
            cb(cfg)
        except Exception:
            logger.exception("config: watcher callback error")
