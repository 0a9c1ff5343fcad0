# pkgmatrix/scheduler.py
# -*- coding: utf-8 -*-
"""
scheduler.py - drives the whole packaging matrix

Features:
 - Cell enumeration: matrix.targets x matrix.archs + matrix.include - matrix.exclude,
   each cell tagged with its packaging variant
 - Scenario enumeration: test.targets / test.archs x test.modes - test.exclude, minus
   upgrade scenarios whose target has no previous publication (test.probe_published)
 - The canonical version is translated for every target before any work starts
 - Cross builds on their own pool; every cross cell waits on its binary future
 - Cells on a bounded pool (matrix.parallelism), scenarios on another (test.parallelism)
 - Per cell: build -> package -> verify -> publish -> test; failures stay in the cell
 - Binary artifacts are discarded once every consuming cell finished packaging
 - cancel(): nothing new starts, in-flight work finishes and tears down
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Tuple, Union

from pkgmatrix.cache import Artifact, ArtifactCache
from pkgmatrix.config import get_config
from pkgmatrix.cross import BuildDispatcher
from pkgmatrix.db import DB
from pkgmatrix.errors import BuildFailure, PkgMatrixError, VerificationFailure
from pkgmatrix.logging import get_logger, transparency
from pkgmatrix.packager import PackageGenerator, select_variant
from pkgmatrix.repo import PublishedRepository
from pkgmatrix.report import CellReport, RunReport, Stage
from pkgmatrix.targets import MatrixCell, OsTarget
from pkgmatrix.testenv import CANCELLED, Mode, Outcome, TestEnvironmentOrchestrator, TestScenario
from pkgmatrix.verifier import PackageVerifier
from pkgmatrix.versioning import CanonicalVersion, PackageVersion, translate_from_config

logger = get_logger("scheduler")


def _rule_matches(rule: Dict[str, str], image: str, arch: str, mode: Optional[str] = None) -> bool:
    """An exclude rule matches when every key it names matches."""
    if "image" in rule and rule["image"] != image:
        return False
    if "arch" in rule and rule["arch"] != arch:
        return False
    if "mode" in rule and rule["mode"] != mode:
        return False
    return bool(rule)


class MatrixScheduler:
    def __init__(self, cfg=None, cache: Optional[ArtifactCache] = None,
                 dispatcher: Optional[BuildDispatcher] = None,
                 generator: Optional[PackageGenerator] = None,
                 verifier: Optional[PackageVerifier] = None,
                 repository: Optional[PublishedRepository] = None,
                 orchestrator: Optional[TestEnvironmentOrchestrator] = None,
                 db: Optional[DB] = None, run_tests: bool = True, only: Optional[Iterable[str]] = None):
        self.cfg = cfg or get_config()
        self.cache = cache or ArtifactCache()
        self.dispatcher = dispatcher or BuildDispatcher(self.cfg, cache=self.cache)
        self.generator = generator or PackageGenerator(self.cfg, cache=self.cache)
        self.verifier = verifier or PackageVerifier(self.cfg, sandbox=self.generator.sandbox)
        self.repository = repository or PublishedRepository(self.cfg)
        self._orchestrator = orchestrator
        self.db = db
        self.run_tests = run_tests and bool(self.cfg.get("test.enabled", True))
        self.only = set(only or [])
        self.native_arch = self.cfg.get("matrix.native_arch", "x86_64")
        self._cancel = threading.Event()
        self._refs_lock = threading.Lock()
        self._binary_refs: Dict[str, int] = {}

    @property
    def orchestrator(self) -> TestEnvironmentOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = TestEnvironmentOrchestrator(self.cfg, repository=self.repository)
        return self._orchestrator

    # ----------------------------
    # Enumeration
    # ----------------------------
    def enumerate_cells(self) -> List[MatrixCell]:
        excludes = self.cfg.get("matrix.exclude") or []
        pairs: List[Tuple[str, str]] = []
        for image in self.cfg.get("matrix.targets") or []:
            for arch in self.cfg.get("matrix.archs") or [self.native_arch]:
                pairs.append((image, arch))
        for inc in self.cfg.get("matrix.include") or []:
            pairs.append((inc["image"], inc.get("arch", self.native_arch)))

        cells: List[MatrixCell] = []
        seen = set()
        for image, arch in pairs:
            if (image, arch) in seen or any(_rule_matches(r, image, arch) for r in excludes):
                continue
            seen.add((image, arch))
            target = OsTarget.parse(image)
            cell = MatrixCell(target=target, arch=arch, native_arch=self.native_arch)
            cells.append(cell.with_variant(select_variant(target, arch, self.cfg)))
        if self.only:
            cells = [c for c in cells if c.name in self.only or c.target.image in self.only]
        return cells

    def enumerate_scenarios(self, cells: Iterable[MatrixCell]) -> Dict[str, List[Mode]]:
        """cell name -> modes to run; cells without scenarios are absent."""
        out: Dict[str, List[Mode]] = {}
        if not self.run_tests:
            return out
        targets = set(self.cfg.get("test.targets") or [])
        archs = set(self.cfg.get("test.archs") or [self.native_arch])
        modes = [Mode(m) for m in self.cfg.get("test.modes") or []]
        excludes = self.cfg.get("test.exclude") or []
        probe = bool(self.cfg.get("test.probe_published", False))
        published: Dict[Tuple[str, str], Optional[bool]] = {}
        for cell in cells:
            image = cell.target.image
            if image not in targets or cell.arch not in archs:
                continue
            for mode in modes:
                if any(_rule_matches(r, image, cell.arch, mode.value) for r in excludes):
                    continue
                if mode is Mode.UPGRADE_FROM_PUBLISHED and probe:
                    key = (image, cell.arch)
                    if key not in published:
                        published[key] = self.repository.has_publication(cell.target, cell.arch)
                    if published[key] is False:
                        logger.info("%s: no previous publication, skipping upgrade test", cell.name)
                        continue
                out.setdefault(cell.name, []).append(mode)
        return out

    def translate_all(self, canonical: CanonicalVersion, cells: Iterable[MatrixCell]) -> Dict[OsTarget, PackageVersion]:
        versions: Dict[OsTarget, PackageVersion] = {}
        for cell in cells:
            if cell.target not in versions:
                versions[cell.target] = translate_from_config(canonical, cell.target, self.cfg)
        return versions

    # ----------------------------
    # Cancellation
    # ----------------------------
    def cancel(self) -> None:
        if not self._cancel.is_set():
            logger.warning("cancellation requested: no new cells or scenarios will start")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ----------------------------
    # Binary reference counting
    # ----------------------------
    def _release_binary(self, arch: str, fut: Optional[Future]) -> None:
        with self._refs_lock:
            self._binary_refs[arch] -= 1
            last = self._binary_refs[arch] == 0
        if last and fut is not None:
            # runs at once when the build already finished
            fut.add_done_callback(self._discard_binary)

    def _discard_binary(self, fut: Future) -> None:
        if not fut.cancelled() and fut.exception() is None:
            self.dispatcher.discard(fut.result())

    def _build_binary(self, arch: str) -> Artifact:
        if self.cancelled:
            raise BuildFailure(arch, "cancelled")
        return self.dispatcher.cross_compile(arch)

    # ----------------------------
    # Per cell pipeline
    # ----------------------------
    def _run_scenario(self, cell: MatrixCell, mode: Mode, package: Artifact,
                      canonical: CanonicalVersion) -> TestScenario:
        if self.cancelled:
            return TestScenario(cell=cell, mode=mode, outcome=Outcome.SKIPPED, error=CANCELLED)
        return self.orchestrator.run(cell, mode, package, canonical)

    def _package_and_verify(self, rep: CellReport, canonical: CanonicalVersion,
                            binary: Optional[Artifact]) -> Optional[Artifact]:
        cell = rep.cell
        rep.stage = Stage.PACKAGE
        with self.generator.open_session(cell) as session:
            package = self.generator.generate(cell, canonical, binary=binary, session=session)
            rep.package = package.path
            rep.stage = Stage.VERIFY
            rep.verification = self.verifier.verify(cell, package, session=session)
        rep.verification.raise_for_fatal()
        return package

    def _run_cell(self, rep: CellReport, canonical: CanonicalVersion, pv: PackageVersion,
                  binary_future: Optional[Future], modes: List[Mode], test_pool: ThreadPoolExecutor) -> CellReport:
        cell = rep.cell
        released = False
        try:
            if self.cancelled:
                rep.fail(Stage.CANCELLED, "cancelled before start")
                return rep
            rep.version = pv.rendered
            binary = None
            if cell.is_cross:
                rep.stage = Stage.BUILD
                binary = binary_future.result()
            package = self._package_and_verify(rep, canonical, binary)
            if cell.is_cross:
                self._release_binary(cell.arch, binary_future)
                released = True

            rep.stage = Stage.PUBLISH
            published = self.repository.publish(cell, package, version=pv.rendered)
            rep.package = published.path
            transparency("scheduler", "published", cell=cell.name, package=published.filename,
                         sha256=published.sha256)

            if modes:
                rep.stage = Stage.TEST
                futures = [test_pool.submit(self._run_scenario, cell, m, published, canonical) for m in modes]
                rep.scenarios = [f.result() for f in futures]
                failed = [s for s in rep.scenarios if s.outcome is Outcome.FAIL]
                if failed:
                    rep.error = "scenario(s) failed: " + ", ".join(s.mode.value for s in failed)
                    return rep
                if any(s.cancelled for s in rep.scenarios):
                    rep.fail(Stage.CANCELLED, "cancelled during testing")
                    return rep
            rep.stage = Stage.DONE
        except VerificationFailure as e:
            rep.error = str(e)
        except PkgMatrixError as e:
            rep.error = str(e)
            logger.error("%s: %s failed: %s", cell.name, rep.stage.value, e)
        except OSError as e:
            rep.error = f"{type(e).__name__}: {e}"
            logger.error("%s: %s failed: %s", cell.name, rep.stage.value, e)
        finally:
            if cell.is_cross and not released:
                self._release_binary(cell.arch, binary_future)
        return rep

    # ----------------------------
    # Public API
    # ----------------------------
    def run(self, canonical: Union[str, CanonicalVersion]) -> RunReport:
        """Run the matrix for canonical; UnsupportedVersionFormat aborts before any work."""
        cv = canonical if isinstance(canonical, CanonicalVersion) else CanonicalVersion.parse(canonical)
        cells = self.enumerate_cells()
        versions = self.translate_all(cv, cells)
        scenarios = self.enumerate_scenarios(cells)
        report = RunReport(canonical=str(cv))
        reports = [CellReport(cell=c) for c in cells]
        report.cells = reports
        logger.info("run %s: %s across %d cell(s), %d scenario(s)", report.run_id, cv, len(cells),
                    sum(len(m) for m in scenarios.values()))
        transparency("scheduler", "run_started", run_id=report.run_id, canonical=str(cv), cells=len(cells))

        cross_archs = sorted({c.arch for c in cells if c.is_cross})
        self._binary_refs = {a: sum(1 for c in cells if c.is_cross and c.arch == a) for a in cross_archs}
        cell_workers = max(1, int(self.cfg.get("matrix.parallelism", 4)))
        test_workers = max(1, int(self.cfg.get("test.parallelism", 2)))

        with ThreadPoolExecutor(max_workers=max(1, len(cross_archs)), thread_name_prefix="cross") as cross_pool, \
                ThreadPoolExecutor(max_workers=test_workers, thread_name_prefix="test") as test_pool, \
                ThreadPoolExecutor(max_workers=cell_workers, thread_name_prefix="cell") as cell_pool:
            binaries = {a: cross_pool.submit(self._build_binary, a) for a in cross_archs}
            futures = {
                cell_pool.submit(self._run_cell, rep, cv, versions[rep.cell.target], binaries.get(rep.cell.arch),
                                 scenarios.get(rep.cell.name, []), test_pool): rep
                for rep in reports
            }
            for fut in as_completed(futures):
                rep = futures[fut]
                try:
                    fut.result()
                except Exception:
                    logger.exception("%s: unexpected error", rep.cell.name)
                    rep.error = rep.error or "unexpected error (see log)"
                if rep.passed:
                    logger.info("%s: passed", rep.cell.name)
                else:
                    logger.warning("%s: stopped at %s: %s", rep.cell.name, rep.stage.value, rep.error)

        report.finished_at = time.time()
        report.cancelled = self.cancelled
        transparency("scheduler", "run_finished", run_id=report.run_id, **report.summary())
        if self.db is not None:
            report.persist(self.db)
        return report
