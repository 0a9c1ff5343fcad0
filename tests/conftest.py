from __future__ import annotations

import pytest

from pkgmatrix import config
from pkgmatrix.config import _deep_merge
from pkgmatrix.db import DB, MIGRATIONS, set_default_db

CARGO_TOML = """\
[package]
name = "routinator"
version = "0.11.0-rc.1"
edition = "2018"

[package.metadata.generate-rpm]
name = "routinator"
version = "<RPM_PKG_VER_PLACEHOLDER>"
release = "<RPM_PKG_REL_PLACEHOLDER>"
"""


@pytest.fixture
def source_tree(tmp_path):
    src = tmp_path / "src"
    (src / "pkg" / "common").mkdir(parents=True)
    (src / "Cargo.toml").write_text(CARGO_TOML)
    (src / "Cargo.lock").write_text('[[package]]\nname = "routinator"\nversion = "0.11.0-rc.1"\n')
    (src / "pkg" / "common" / "routinator.routinator.service").write_text("[Service]\nExecStart=/usr/bin/routinator\n")
    (src / "pkg" / "common" / "routinator-minimal.routinator.service").write_text("[Service]\nExecStart=/usr/bin/routinator server\n")
    (src / "target").mkdir()
    (src / "target" / "stale").write_text("should not be copied")
    return src


@pytest.fixture
def make_cfg(tmp_path, source_tree):
    """Build and install a config from DEFAULTS plus per-test overrides; no file lookup."""

    def _make(overrides=None):
        base = {
            "product": {
                "name": "routinator",
                "maintainer": "The NLnet Labs RPKI Team <rpki@nlnetlabs.nl>",
                "release_url": "https://github.com/NLnetLabs/routinator/releases/tag/v{version}",
                "init_args": ["--accept-arin-rpa"],
                "data_subdirs": ["tals", "rpki-cache"],
            },
            "logging": {"level": "CRITICAL", "color": False},
            "db": {"path": str(tmp_path / "db.sqlite3")},
            "cache": {"dir": str(tmp_path / "cache")},
            "build": {"workdir_root": str(tmp_path / "work")},
            "cross": {"cargo_home": str(tmp_path / "cargo-home")},
            "source": {"dir": str(source_tree)},
            "output": {"dir": str(tmp_path / "out")},
            "repo": {"name": "nlnetlabs", "base_url": "https://packages.example.net"},
        }
        cfg = config.load(overrides=_deep_merge(base, overrides or {}), search=False)
        config.set_config(cfg)
        return cfg

    yield _make
    config.set_config(None)
    set_default_db(None)


@pytest.fixture
def cfg(make_cfg):
    return make_cfg()


@pytest.fixture
def db(tmp_path):
    d = DB(str(tmp_path / "db.sqlite3"))
    d.apply_migrations(MIGRATIONS)
    set_default_db(d)
    yield d
    set_default_db(None)
    d.close()
