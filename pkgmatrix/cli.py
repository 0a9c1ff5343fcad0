#!/usr/bin/env python3
# pkgmatrix/cli.py
"""
pkgmatrix CLI

Subcommands:
- translate VERSION --target IMAGE   show the OS-native package versions
- matrix                             list the package cells and install scenarios
- run                                build, package, verify, publish and test the matrix
- cache                              list the artifact cache
- history [RUN_ID]                   list persisted runs or show one
- config [--validate]                dump or validate the merged configuration

The exit code of `run` is 0 only when every cell passed; the per-cell report is
always printed and written. Ctrl-C cancels the run (in-flight cells finish and
tear down); a second Ctrl-C aborts.
"""

from __future__ import annotations

import os
import sys
import signal
import argparse
from typing import Any, Dict, List, Optional

import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pkgmatrix import __version__
from pkgmatrix import config as config_mod
from pkgmatrix.cache import ArtifactCache
from pkgmatrix.db import get_default_db
from pkgmatrix.errors import PkgMatrixError
from pkgmatrix.logging import get_logger
from pkgmatrix.report import list_runs, run_details
from pkgmatrix.scheduler import MatrixScheduler
from pkgmatrix.targets import OsTarget
from pkgmatrix.versioning import read_manifest_name, read_manifest_version, translate_from_config

logger = get_logger("cli")
console = Console()
err_console = Console(stderr=True)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ERROR = 2

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")

def print_warn(msg: str):
    err_console.print(f"[bold yellow]![/] {msg}")

def print_err(msg: str):
    err_console.print(f"[bold red]✖[/] {msg}")

def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")

# -----------------------
# Commands
# -----------------------
def _human(n: int) -> str:
    size = float(n)
    for unit in ("B", "K", "M", "G"):
        if size < 1024 or unit == "G":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return str(n)


def _canonical_from_source(cfg) -> str:
    manifest = os.path.join(cfg.get("source.dir") or ".", cfg.get("source.manifest", "Cargo.toml"))
    return read_manifest_version(manifest)


def cmd_translate(cfg, args) -> int:
    targets = args.target or list(cfg.get("matrix.targets") or [])
    table = Table(title=f"package versions for {args.version}")
    table.add_column("target")
    table.add_column("family")
    table.add_column("version")
    for image in targets:
        target = OsTarget.parse(image)
        pv = translate_from_config(args.version, target, cfg)
        table.add_row(image, target.family.value, pv.rendered)
    console.print(table)
    return EXIT_OK


def cmd_matrix(cfg, args) -> int:
    sched = MatrixScheduler(cfg, run_tests=not args.no_test, only=args.only)
    cells = sched.enumerate_cells()
    scenarios = sched.enumerate_scenarios(cells)
    table = Table(title="packaging matrix")
    table.add_column("cell")
    table.add_column("image")
    table.add_column("arch")
    table.add_column("variant")
    table.add_column("scenarios")
    for c in cells:
        modes = ", ".join(m.value for m in scenarios.get(c.name, [])) or "-"
        table.add_row(c.name, c.target.image, c.arch, c.variant or "default", modes)
    console.print(table)
    print_info(f"{len(cells)} cell(s), {sum(len(m) for m in scenarios.values())} scenario(s)")
    return EXIT_OK


def cmd_run(cfg, args) -> int:
    canonical = args.version or _canonical_from_source(cfg)
    db = get_default_db()
    sched = MatrixScheduler(cfg, cache=ArtifactCache(db=db), db=db, run_tests=not args.no_test, only=args.only)

    def _on_sigint(signum, frame):
        if sched.cancelled:
            raise KeyboardInterrupt
        print_warn("cancelling: waiting for in-flight cells to finish (Ctrl-C again to abort)")
        sched.cancel()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        print_info(f"pkgmatrix run for {canonical}")
        report = sched.run(canonical)
    finally:
        signal.signal(signal.SIGINT, previous)

    report.render(console)
    path = args.report or os.path.join(cfg.get("output.dir"), cfg.get("output.report", "report.json"))
    report.write(path)
    if report.passed:
        print_ok(f"all cells passed (report: {path})")
        return EXIT_OK
    print_err(f"{report.summary()['failed']} cell(s) failed (report: {path})")
    return EXIT_FAILED


def cmd_cache(cfg, args) -> int:
    cache = ArtifactCache(db=get_default_db())
    entries = cache.entries()
    table = Table(title=f"artifact cache {cache.cache_dir}")
    table.add_column("key")
    table.add_column("kind")
    table.add_column("produced by")
    table.add_column("size", justify="right")
    table.add_column("sha256")
    for e in entries:
        table.add_row(e["key"], e["kind"], e.get("produced_by") or "-", _human(e.get("size") or 0),
                      (e.get("sha256") or "")[:12])
    console.print(table)
    print_info(f"{len(entries)} entr{'y' if len(entries) == 1 else 'ies'}, {_human(cache.total_size())}")
    return EXIT_OK


def cmd_history(cfg, args) -> int:
    db = get_default_db()
    if args.run_id:
        details = run_details(db, args.run_id)
        if not details:
            print_err(f"no run {args.run_id}")
            return EXIT_ERROR
        table = Table(title=f"run {args.run_id} ({details['canonical']})")
        table.add_column("cell")
        table.add_column("stage")
        table.add_column("ok")
        table.add_column("scenarios")
        table.add_column("error")
        for c in details["cells"]:
            scen = ", ".join(f"{s['mode']}:{s['outcome']}" for s in c["scenarios"]) or "-"
            table.add_row(c["cell"], c["stage"], "yes" if c["ok"] else "no", scen, escape(c.get("error") or ""))
        console.print(table)
        return EXIT_OK
    table = Table(title="runs")
    table.add_column("run")
    table.add_column("version")
    table.add_column("passed", justify="right")
    table.add_column("failed", justify="right")
    table.add_column("cancelled")
    for r in list_runs(db, limit=args.limit):
        table.add_row(r["run_id"], r["canonical"], str(r["passed"]), str(r["failed"]),
                      "yes" if r["cancelled"] else "")
    console.print(table)
    return EXIT_OK


def cmd_config(cfg, args) -> int:
    if args.validate:
        ok, issues = config_mod.validate_config(cfg)
        for issue in issues:
            print_warn(escape(issue))
        if ok:
            print_ok(f"configuration is valid ({cfg.path or 'defaults'})")
            return EXIT_OK
        print_err(f"{len(issues)} configuration issue(s)")
        return EXIT_FAILED
    console.print(yaml.safe_dump(cfg.as_dict(), sort_keys=False, default_flow_style=False), markup=False, highlight=False, soft_wrap=True)
    return EXIT_OK

# -----------------------
# Argparse wiring
# -----------------------
def make_parser():
    ap = argparse.ArgumentParser(prog="pkgmatrix", description="Release packaging and verification matrix")
    ap.add_argument("--config", "-c", help="configuration file (YAML or JSON)")
    ap.add_argument("--verbose", "-v", action="store_true", help="debug logging on the console")
    ap.add_argument("--version", action="version", version=f"pkgmatrix {__version__}")
    sub = ap.add_subparsers(dest="cmd")

    p_tr = sub.add_parser("translate", help="translate a canonical version")
    p_tr.add_argument("version")
    p_tr.add_argument("--target", "-t", action="append", help="os:release (repeatable, default: matrix.targets)")

    for name in ("matrix", "run"):
        p = sub.add_parser(name, help="list the matrix" if name == "matrix" else "run the matrix")
        p.add_argument("--source", help="source tree (default: source.dir)")
        p.add_argument("--only", action="append", help="cell name or os:release (repeatable)")
        p.add_argument("--no-test", action="store_true", help="skip install tests")
        if name == "run":
            p.add_argument("--version", dest="version", help="canonical version (default: from Cargo.toml)")
            p.add_argument("--report", help="JSON report path")

    sub.add_parser("cache", help="list the artifact cache")

    p_hist = sub.add_parser("history", help="list persisted runs")
    p_hist.add_argument("run_id", nargs="?")
    p_hist.add_argument("--limit", type=int, default=20)

    p_cfg = sub.add_parser("config", help="show or validate the configuration")
    p_cfg.add_argument("--validate", action="store_true")
    return ap


COMMANDS = {
    "translate": cmd_translate,
    "matrix": cmd_matrix,
    "run": cmd_run,
    "cache": cmd_cache,
    "history": cmd_history,
    "config": cmd_config,
}


def _overrides(args) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if args.verbose:
        out["logging"] = {"level": "DEBUG"}
    if getattr(args, "source", None):
        out["source"] = {"dir": args.source}
    return out


def _load_config(args):
    overrides = _overrides(args)
    cfg = config_mod.load(args.config, overrides=overrides)
    if not cfg.get("product.name"):
        # fall back to the crate name
        manifest = os.path.join(cfg.get("source.dir") or ".", cfg.get("source.manifest", "Cargo.toml"))
        name = read_manifest_name(manifest)
        if name:
            overrides.setdefault("product", {})["name"] = name
            cfg = config_mod.load(args.config, overrides=overrides)
    config_mod.set_config(cfg)
    return cfg


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return EXIT_ERROR
    try:
        cfg = _load_config(args)
        return COMMANDS[args.cmd](cfg, args)
    except PkgMatrixError as e:
        logger.debug("command %s failed", args.cmd, exc_info=True)
        print_err(f"{args.cmd} failed: {escape(str(e))}")
        return EXIT_ERROR
    except KeyboardInterrupt:
        print_err("aborted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
