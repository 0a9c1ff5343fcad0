# pkgmatrix/report.py
"""
Run and cell reports.

A CellReport records how far a matrix cell got (its stage), the first error that
stopped it, the verification findings split into fatal and advisory, the
published package and the install scenarios. A RunReport aggregates them, is
written as JSON to the output directory, rendered as a rich table on the
console, and persisted into the runs / cell_results / scenario_results tables.
"""

from __future__ import annotations

import os
import enum
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pkgmatrix.db import DB
from pkgmatrix.logging import get_logger
from pkgmatrix.targets import MatrixCell
from pkgmatrix.testenv import Outcome, TestScenario
from pkgmatrix.verifier import VerificationReport

logger = get_logger("report")


class Stage(str, enum.Enum):
    PENDING = "pending"
    BUILD = "build"
    PACKAGE = "package"
    VERIFY = "verify"
    PUBLISH = "publish"
    TEST = "test"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass
class CellReport:
    cell: MatrixCell
    stage: Stage = Stage.PENDING
    error: Optional[str] = None
    package: Optional[str] = None
    version: Optional[str] = None
    verification: Optional[VerificationReport] = None
    scenarios: List[TestScenario] = field(default_factory=list)

    @property
    def fatal(self) -> List[str]:
        return [f.message for f in self.verification.fatal_findings] if self.verification else []

    @property
    def advisory(self) -> List[str]:
        return [f.message for f in self.verification.advisory_findings] if self.verification else []

    @property
    def passed(self) -> bool:
        if self.stage is not Stage.DONE or self.error:
            return False
        return all(s.outcome is not Outcome.FAIL and not s.cancelled for s in self.scenarios)

    def fail(self, stage: Stage, error: str) -> None:
        self.stage = stage
        self.error = error

    def as_dict(self) -> Dict[str, Any]:
        return {
            "cell": self.cell.name,
            "image": self.cell.target.image,
            "arch": self.cell.arch,
            "variant": self.cell.variant,
            "stage": self.stage.value,
            "passed": self.passed,
            "error": self.error,
            "package": self.package,
            "version": self.version,
            "fatal": self.fatal,
            "advisory": self.advisory,
            "verification": self.verification.as_dict() if self.verification else None,
            "scenarios": [s.as_dict() for s in self.scenarios],
        }


@dataclass
class RunReport:
    canonical: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    cells: List[CellReport] = field(default_factory=list)
    cancelled: bool = False

    @property
    def passed(self) -> bool:
        return bool(self.cells) and not self.cancelled and all(c.passed for c in self.cells)

    def summary(self) -> Dict[str, Any]:
        scenarios = [s for c in self.cells for s in c.scenarios]
        by_stage: Dict[str, int] = {}
        for c in self.cells:
            if not c.passed:
                by_stage[c.stage.value] = by_stage.get(c.stage.value, 0) + 1
        return {
            "cells": len(self.cells),
            "passed": sum(1 for c in self.cells if c.passed),
            "failed": sum(1 for c in self.cells if not c.passed),
            "failed_by_stage": by_stage,
            "scenarios": len(scenarios),
            "scenarios_passed": sum(1 for s in scenarios if s.outcome is Outcome.PASS),
            "scenarios_failed": sum(1 for s in scenarios if s.outcome is Outcome.FAIL),
            "advisory_findings": sum(len(c.advisory) for c in self.cells),
            "cancelled": self.cancelled,
        }

    def as_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "canonical": self.canonical,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "cancelled": self.cancelled,
            "passed": self.passed,
            "summary": self.summary(),
            "cells": [c.as_dict() for c in self.cells],
        }

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), indent=2, ensure_ascii=False)

    def write(self, path: str) -> str:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(self.to_json())
        os.replace(tmp, path)
        logger.info("report written to %s", path)
        return path

    # ----------------------------
    # Console
    # ----------------------------
    def render(self, console: Optional[Console] = None) -> Table:
        table = Table(title=f"pkgmatrix {self.canonical} (run {self.run_id})")
        table.add_column("cell")
        table.add_column("variant")
        table.add_column("stage")
        table.add_column("package")
        table.add_column("findings")
        table.add_column("scenarios")
        table.add_column("result")
        for c in sorted(self.cells, key=lambda c: c.cell.name):
            findings = f"{len(c.fatal)} fatal / {len(c.advisory)} advisory" if c.verification else "-"
            scen = ", ".join(f"{s.mode.value}:{s.outcome.value}" for s in c.scenarios) or "-"
            result = "[green]pass[/green]" if c.passed else f"[red]fail[/red] {escape(c.error or '')}".rstrip()
            table.add_row(c.cell.name, c.cell.variant or "default", c.stage.value,
                          os.path.basename(c.package) if c.package else "-", findings, scen, result)
        if console is not None:
            console.print(table)
            s = self.summary()
            colour = "green" if self.passed else "red"
            console.print(f"[{colour}]{s['passed']}/{s['cells']} cell(s) passed[/{colour}], "
                          f"{s['scenarios_passed']}/{s['scenarios']} scenario(s) passed"
                          + (" [yellow](cancelled)[/yellow]" if self.cancelled else ""))
        return table

    # ----------------------------
    # Persistence
    # ----------------------------
    def persist(self, db: DB) -> None:
        s = self.summary()
        with db.transaction() as cur:
            cur.execute(
                "INSERT OR REPLACE INTO runs (run_id, canonical, started_at, finished_at, cancelled, passed, failed) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (self.run_id, self.canonical, self.started_at, self.finished_at, int(self.cancelled),
                 s["passed"], s["failed"]),
            )
            for c in self.cells:
                cur.execute(
                    "INSERT OR REPLACE INTO cell_results (run_id, cell, stage, ok, error, package, fatal, advisory) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (self.run_id, c.cell.name, c.stage.value, int(c.passed), c.error, c.package,
                     len(c.fatal), len(c.advisory)),
                )
                for sc in c.scenarios:
                    cur.execute(
                        "INSERT OR REPLACE INTO scenario_results (run_id, cell, mode, outcome, failed_steps) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (self.run_id, c.cell.name, sc.mode.value, sc.outcome.value,
                         json.dumps([st.name for st in sc.failed_steps])),
                    )
        logger.debug("run %s persisted", self.run_id)


def list_runs(db: DB, limit: int = 20) -> List[Dict[str, Any]]:
    rows = db.fetchall("SELECT * FROM runs ORDER BY started_at DESC LIMIT ?", (int(limit),))
    return [dict(r) for r in rows]


def run_details(db: DB, run_id: str) -> Dict[str, Any]:
    run = db.fetchone("SELECT * FROM runs WHERE run_id = ?", (run_id,))
    if run is None:
        return {}
    cells = [dict(r) for r in db.fetchall("SELECT * FROM cell_results WHERE run_id = ? ORDER BY cell", (run_id,))]
    scenarios = db.fetchall("SELECT * FROM scenario_results WHERE run_id = ? ORDER BY cell, mode", (run_id,))
    by_cell: Dict[str, List[Dict[str, Any]]] = {}
    for r in scenarios:
        d = dict(r)
        d["failed_steps"] = json.loads(d["failed_steps"] or "[]")
        by_cell.setdefault(d["cell"], []).append(d)
    for c in cells:
        c["scenarios"] = by_cell.get(c["cell"], [])
    out = dict(run)
    out["cells"] = cells
    return out
