"""
Centralized logging configuration for onelaunch.

All loggers live under the "onelaunch" namespace, one per subsystem
(book, coordinator, pricing, settlement, storage.sqlite, ...). Output goes
to a colored console handler and, optionally, a size-rotated log file.

Subsystem levels can be tuned independently of the global level, e.g.
ONELAUNCH_LOG_LEVELS="settlement=DEBUG,storage=WARNING" keeps storage
quiet while tracing every settlement transition.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

import colorlog

ROOT = "onelaunch"
LOG_FILE = "onelaunch.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

Level = Union[int, str]


def _to_level(level: Level) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.strip().upper())
    if not isinstance(value, int):
        raise ValueError(f"unknown log level: {level!r}")
    return value


def parse_log_levels(spec: Optional[str]) -> Dict[str, int]:
    """
    Parse "name=LEVEL,name=LEVEL" into subsystem levels.

    Names are relative to the onelaunch namespace ("storage" covers
    storage.sqlite and storage.manager).

    Raises:
        ValueError: malformed entry or unknown level name
    """
    levels: Dict[str, int] = {}
    for entry in (spec or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, level = entry.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"expected name=LEVEL, got {entry!r}")
        levels[name.strip()] = _to_level(level)
    return levels


class LaunchLogger:
    """Centralized logger for onelaunch components"""

    _initialized = False
    _log_dir: Optional[Path] = None
    _subsystems: Dict[str, int] = {}

    @classmethod
    def setup(
        cls,
        level: Level = logging.INFO,
        log_dir: Optional[str] = None,
        log_to_file: bool = True,
        force: bool = False,
        subsystem_levels: Optional[Mapping[str, Level]] = None,
    ):
        """
        Setup logging configuration.

        Args:
            level: Global level for the onelaunch namespace
            log_dir: Directory for log files. If None, uses ./logs
            log_to_file: Whether to write logs to a rotating file
            force: Reconfigure even if already initialized
            subsystem_levels: Per-subsystem overrides, e.g. {"settlement": "DEBUG"}
        """
        if cls._initialized and not force:
            return

        level = _to_level(level)
        overrides = {name: _to_level(lvl) for name, lvl in (subsystem_levels or {}).items()}

        # Levels set by an earlier setup do not leak into this one
        for name in cls._subsystems:
            logging.getLogger(f"{ROOT}.{name}").setLevel(logging.NOTSET)
        for name, lvl in overrides.items():
            logging.getLogger(f"{ROOT}.{name}").setLevel(lvl)
        cls._subsystems = overrides

        # Handlers pass anything a subsystem logger lets through
        handler_level = min([level, *overrides.values()])

        root_logger = logging.getLogger(ROOT)
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.close()
        root_logger.handlers.clear()

        console_handler = colorlog.StreamHandler(sys.stdout)
        console_handler.setLevel(handler_level)
        console_handler.setFormatter(colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s [%(name)s] %(levelname)-8s%(reset)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        ))
        root_logger.addHandler(console_handler)

        cls._log_dir = None
        if log_to_file:
            cls._log_dir = Path(log_dir) if log_dir else Path("logs")
            cls._log_dir.mkdir(exist_ok=True, parents=True)
            file_handler = RotatingFileHandler(
                cls._log_dir / LOG_FILE, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS,
            )
            file_handler.setLevel(handler_level)
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s [%(name)s] %(levelname)-8s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            root_logger.addHandler(file_handler)

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """
        Get a logger for a specific subsystem.

        Implicit setup (no explicit setup() call yet) logs to the console only.
        """
        if not cls._initialized:
            cls.setup(log_to_file=False)

        return logging.getLogger(f"{ROOT}.{name}")


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a specific subsystem"""
    return LaunchLogger.get_logger(name)


def setup_logging(
    level: Level = logging.INFO,
    log_dir: Optional[str] = None,
    log_to_file: bool = True,
    subsystem_levels: Optional[Mapping[str, Level]] = None,
):
    """Setup logging configuration, replacing any implicit console-only setup"""
    LaunchLogger.setup(
        level=level,
        log_dir=log_dir,
        log_to_file=log_to_file,
        force=True,
        subsystem_levels=subsystem_levels,
    )
