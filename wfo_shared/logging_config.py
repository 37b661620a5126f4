"""
Centralized logging configuration for the WorkforceOne sync client.
Provides consistent logging across sync, patrol and client components.
"""

import logging
import sys
from datetime import datetime
from typing import Dict

from termcolor import colored

from wfo_shared.utils import get_data_path

LOGGER_PREFIX = "workforceone"

# component name -> configured logger
_component_loggers: Dict[str, logging.Logger] = {}


class WorkforceFormatter(logging.Formatter):
    """Tags each line with its component; colours by level on a terminal"""

    LEVEL_COLORS = {
        'DEBUG': 'cyan',
        'INFO': 'green',
        'WARNING': 'yellow',
        'ERROR': 'red',
        'CRITICAL': 'magenta'
    }

    def __init__(self, component: str, use_colors: bool = True):
        super().__init__(
            fmt='[%(asctime)s] [%(component)s] [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        self.component = component
        self.use_colors = use_colors and _stdout_is_tty()

    def format(self, record):
        record.component = self.component
        line = super().format(record)
        if not self.use_colors:
            return line
        return colored(line, self.LEVEL_COLORS.get(record.levelname, 'white'))


def _stdout_is_tty() -> bool:
    try:
        return bool(sys.stdout and sys.stdout.isatty())
    except (AttributeError, OSError, ValueError):
        return False


def _add_file_handler(logger: logging.Logger, component: str):
    """Per-run log file under <data dir>/logs"""
    stamp = datetime.now().strftime('%Y%m%d-%H%M%S')
    try:
        log_dir = get_data_path('logs')
        log_dir.mkdir(exist_ok=True)
        handler = logging.FileHandler(log_dir / f"{component.lower()}-{stamp}.log", encoding='utf-8')
    except OSError as e:
        logger.warning(f"File logging disabled for {component}: {e}")
        return
    handler.setFormatter(WorkforceFormatter(component, use_colors=False))
    logger.addHandler(handler)


def setup_logging(component: str, level: str = "INFO", log_to_file: bool = False) -> logging.Logger:
    """Configure the logger for a component.

    Args:
        component: Component tag shown in every line ('SYNC', 'PATROL', 'CLIENT')
        level: Log level name. Defaults to INFO
        log_to_file: Also write to a per-run file in the data directory

    Calling it again for a configured component returns the same logger
    without adding handlers.
    """
    key = component.upper()
    if key in _component_loggers:
        return _component_loggers[key]

    logger = logging.getLogger(f"{LOGGER_PREFIX}.{component.lower()}")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    console = logging.StreamHandler(sys.stdout or sys.stderr)
    console.setFormatter(WorkforceFormatter(key))
    logger.addHandler(console)

    if log_to_file:
        _add_file_handler(logger, key)

    _component_loggers[key] = logger
    return logger


def get_logger(component: str) -> logging.Logger:
    return _component_loggers.get(component.upper()) or setup_logging(component)


def get_client_logger() -> logging.Logger:
    """Logger for the local store and outbox"""
    return get_logger("CLIENT")


def get_sync_logger() -> logging.Logger:
    """Logger for the sync engine, handlers and remote API"""
    return get_logger("SYNC")


def get_patrol_logger() -> logging.Logger:
    return get_logger("PATROL")


def set_log_level(level: str):
    """Apply a level to every configured component logger and its handlers"""
    numeric = getattr(logging, level.upper(), logging.INFO)
    for logger in _component_loggers.values():
        logger.setLevel(numeric)
        for handler in logger.handlers:
            handler.setLevel(numeric)
