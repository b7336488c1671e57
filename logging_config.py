# logging_config.py
# ------------------------------------------------------------------------------------
#  Namespaced logging for the service. Every module asks for a logger through
#  get_logger() so that all output shares the "storyreel" root and one format.
# ------------------------------------------------------------------------------------

import logging
import sys
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
VERBOSE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(funcName)s | %(message)s"

ROOT_NAME = "storyreel"

_loggers: dict = {}
_initialized: bool = False


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    verbose: bool = False,
    console_output: bool = True
) -> None:
    """
    Set up logging for the whole application.

    Args:
        level: Minimum level name to capture (DEBUG, INFO, ...)
        log_file: Optional path to a log file
        verbose: If True, include line numbers and function names
        console_output: If True, log to stdout
    """
    global _initialized

    root_logger = logging.getLogger(ROOT_NAME)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    formatter = logging.Formatter(
        VERBOSE_FORMAT if verbose else DEFAULT_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    _initialized = True
    root_logger.debug(f"Logging initialized - Level: {level}, Verbose: {verbose}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module, namespaced under "storyreel".

    Args:
        name: Name of the module/component

    Returns:
        Configured logger instance
    """
    if not _initialized:
        setup_logging()

    full_name = name if name.startswith(ROOT_NAME) else f"{ROOT_NAME}.{name}"
    if full_name not in _loggers:
        _loggers[full_name] = logging.getLogger(full_name)
    return _loggers[full_name]
