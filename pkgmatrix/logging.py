# pkgmatrix/logging.py
# -*- coding: utf-8 -*-
"""
pkgmatrix logging

Features:
 - One "pkgmatrix" logger tree; modules get an adapter tagging records with pm_module
 - Handlers built from the `logging` config section and rebuilt whenever the
   process config is replaced (config watcher); WARNING+ to stderr until then
 - Console: coloured by level when stderr is a terminal
 - File: rotating, size given as 10M / 512K / 1G
 - Transparency log: JSON lines for pipeline events (run started, package
   published, ...) plus every record at or above jsonl.level
 - logging.module_levels raises or lowers the threshold of single modules
"""

from __future__ import annotations
import os
import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Dict, Any, Optional, List

from pkgmatrix.config import get_config, register_watch_callback

_logger = logging.getLogger("pkgmatrix.logging")

ROOT_LOGGER = "pkgmatrix"
CONSOLE_FORMAT = "[%(asctime)s] [%(levelname)s] [%(pm_module)s] %(message)s"
FILE_FORMAT = "%(asctime)s %(threadName)s %(levelname)s [%(pm_module)s] %(message)s"

_LEVEL_COLOURS = {
    "DEBUG": "\033[2m",
    "INFO": "\033[36m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[1;31m",
}


def _level(name: Any, default: int) -> int:
    value = logging.getLevelName(str(name).upper())
    return value if isinstance(value, int) else default


def parse_size(value: Any) -> Optional[int]:
    """'10M' -> 10485760; plain ints pass through; None or garbage -> None."""
    if value is None or isinstance(value, int):
        return value
    text = str(value).strip().upper().rstrip("B")
    units = {"K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}
    try:
        if text and text[-1] in units:
            return int(float(text[:-1]) * units[text[-1]])
        return int(float(text))
    except ValueError:
        _logger.debug("logging: cannot parse size %r", value)
        return None

# ----------------------
# Formatters / filters
# ----------------------
class _ConsoleFormatter(logging.Formatter):
    def __init__(self, colour: bool):
        super().__init__(CONSOLE_FORMAT, datefmt="%H:%M:%S")
        self.colour = colour

    def format(self, record):
        text = super().format(record)
        if not self.colour:
            return text
        return f"{_LEVEL_COLOURS.get(record.levelname, '')}{text}\033[0m"


class _JsonLineFormatter(logging.Formatter):
    def format(self, record):
        entry = {
            "timestamp": record.created,
            "level": record.levelname,
            "module": record.pm_module,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


class _ModuleFilter(logging.Filter):
    """Fills pm_module for plain 'pkgmatrix.x' loggers and applies module_levels."""

    def __init__(self, module_levels: Optional[Dict[str, str]] = None):
        super().__init__()
        self.thresholds = {m: _level(lvl, logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        if not hasattr(record, "pm_module"):
            record.pm_module = record.name.split(".", 1)[-1]
        threshold = self.thresholds.get(record.pm_module)
        return threshold is None or record.levelno >= threshold

# ----------------------
# Manager
# ----------------------
class PkgMatrixLogger:
    _instance = None
    _instance_lock = threading.Lock()

    @classmethod
    def instance(cls) -> "PkgMatrixLogger":
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def __init__(self):
        self._lock = threading.RLock()
        self._root = logging.getLogger(ROOT_LOGGER)
        self._root.setLevel(logging.DEBUG)
        self._root.propagate = False
        self._handlers: List[logging.Handler] = []
        self._events_path: Optional[Path] = None
        self._fsync = False
        self._install([self._console_handler({"level": "WARNING"}, _ModuleFilter())])
        register_watch_callback(self._on_config)

    def _on_config(self, cfg) -> None:
        self.configure(cfg.section("logging"))

    def _install(self, handlers: List[logging.Handler]) -> None:
        for h in self._handlers:
            self._root.removeHandler(h)
            h.close()
        self._handlers = handlers
        for h in handlers:
            self._root.addHandler(h)

    def _console_handler(self, cfg: Dict[str, Any], module_filter: logging.Filter) -> logging.Handler:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(_level(cfg.get("level", "INFO"), logging.INFO))
        handler.setFormatter(_ConsoleFormatter(bool(cfg.get("color", True)) and sys.stderr.isatty()))
        handler.addFilter(module_filter)
        return handler

    def _file_handler(self, cfg: Dict[str, Any], module_filter: logging.Filter) -> Optional[logging.Handler]:
        path = Path(cfg["file"]).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.handlers.RotatingFileHandler(
                str(path), maxBytes=parse_size(cfg.get("max_size", "10M")) or 10 * 1024 ** 2,
                backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
        except OSError:
            _logger.exception("logging: cannot open log file %s", path)
            return None
        handler.setLevel(_level(cfg.get("file_level", "DEBUG"), logging.DEBUG))
        handler.setFormatter(logging.Formatter(FILE_FORMAT))
        handler.addFilter(module_filter)
        return handler

    def _events_handler(self, jsonl: Dict[str, Any], module_filter: logging.Filter) -> Optional[logging.Handler]:
        path = Path(jsonl.get("path") or "~/.pkgmatrix/transparency.jsonl").expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(str(path), encoding="utf-8")
        except OSError:
            _logger.exception("logging: cannot open transparency log %s", path)
            return None
        handler.setLevel(_level(jsonl.get("level", "WARNING"), logging.WARNING))
        handler.setFormatter(_JsonLineFormatter())
        handler.addFilter(module_filter)
        self._events_path = path
        self._fsync = bool(jsonl.get("fsync", False))
        return handler

    def configure(self, cfg: Optional[Dict[str, Any]] = None) -> None:
        """Rebuild the handlers from a `logging` section (default: the process config)."""
        if cfg is None:
            cfg = get_config().section("logging")
        with self._lock:
            module_filter = _ModuleFilter(cfg.get("module_levels"))
            handlers = [self._console_handler(cfg, module_filter)]
            if cfg.get("file"):
                handlers.append(self._file_handler(cfg, module_filter))
            self._events_path = None
            jsonl = cfg.get("jsonl") or {}
            if jsonl.get("enabled"):
                handlers.append(self._events_handler(jsonl, module_filter))
            self._install([h for h in handlers if h is not None])

    def adapter(self, module: str) -> logging.LoggerAdapter:
        return logging.LoggerAdapter(self._root, {"pm_module": module})

    @property
    def events_path(self) -> Optional[Path]:
        return self._events_path

    def event(self, module: str, event: str, **fields: Any) -> None:
        path = self._events_path
        if path is None:
            return
        entry = {"timestamp": time.time(), "module": module, "event": event}
        entry.update(fields)
        data = (json.dumps(entry, ensure_ascii=False, default=str) + "\n").encode("utf-8")
        try:
            # single write() on an O_APPEND fd keeps concurrent lines whole
            fd = os.open(str(path), os.O_CREAT | os.O_WRONLY | os.O_APPEND, 0o644)
            try:
                os.write(fd, data)
                if self._fsync:
                    os.fsync(fd)
            finally:
                os.close(fd)
        except OSError:
            _logger.debug("logging: cannot append event to %s", path, exc_info=True)

# ----------------------
# Module API
# ----------------------
def get_logger(module: str) -> logging.LoggerAdapter:
    return PkgMatrixLogger.instance().adapter(module)


def configure(cfg: Optional[Dict[str, Any]] = None) -> None:
    PkgMatrixLogger.instance().configure(cfg)


def transparency(module: str, event: str, **fields: Any) -> None:
    """Record a pipeline event in the transparency log (no-op when jsonl is disabled)."""
    PkgMatrixLogger.instance().event(module, event, **fields)


def events_path() -> Optional[Path]:
    return PkgMatrixLogger.instance().events_path
