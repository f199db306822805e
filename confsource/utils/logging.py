"""Logging configuration for applications and the command line.

Library modules only create loggers; handlers are installed here, on request.
"""

import logging
import logging.config
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional, Union

import yaml

LOG_LEVEL_ENV = "CONFSOURCE_LOG_LEVEL"
LOG_CONFIG_ENV = "CONFSOURCE_LOG_CFG"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_FILENAME = "confsource.log"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def resolve_level(level: Union[int, str, None], default: int = logging.INFO) -> int:
    """Turn a level name or number into a logging level.

    ``None`` falls back to ``CONFSOURCE_LOG_LEVEL`` and then to ``default``.
    Unknown names resolve to ``default``.
    """
    if level is None:
        level = os.getenv(LOG_LEVEL_ENV)
    if level is None or level == "":
        return default
    if isinstance(level, int):
        return level
    if level.isdigit():
        return int(level)
    value = logging.getLevelName(level.upper())
    return value if isinstance(value, int) else default


def setup_logging(
    level: Union[int, str, None] = None,
    config_path: Optional[str] = None,
    log_dir: Optional[Path] = None,
) -> None:
    """Setup logging configuration.

    Args:
        level: Log level name or number; defaults to ``CONFSOURCE_LOG_LEVEL``
        config_path: YAML ``dictConfig`` file; defaults to ``CONFSOURCE_LOG_CFG``
        log_dir: Also write a rotating log file into this directory
    """
    resolved = resolve_level(level)

    if config_path is None:
        config_path = os.getenv(LOG_CONFIG_ENV)

    if config_path:
        path = Path(config_path)
        if path.exists():
            try:
                with open(path, encoding="utf-8") as config_file:
                    config = yaml.safe_load(config_file)
                logging.config.dictConfig(config)
                logging.getLogger("confsource").setLevel(resolved)
                return
            except (OSError, ValueError, TypeError, yaml.YAMLError) as e:
                print(
                    f"Error loading logging configuration from {path}: {e}",
                    file=sys.stderr,
                )
        else:
            print(
                f"Logging config file {path} not found. Using default configuration.",
                file=sys.stderr,
            )

    _setup_default_logging(resolved, log_dir)


def _setup_default_logging(level: int, log_dir: Optional[Path]) -> None:
    formatter = logging.Formatter(DEFAULT_FORMAT, datefmt=DEFAULT_DATEFMT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        logs_dir = Path(log_dir)
        logs_dir.mkdir(exist_ok=True, parents=True)
        file_handler = logging.handlers.RotatingFileHandler(
            logs_dir / LOG_FILENAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return logging.getLogger(name)
