# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Logging setup for rpcreplay.

Library modules log through logging.getLogger("rpcreplay.<module>"); this
module attaches handlers to a logger so an application or the CLI can see
those records on the console and, optionally, in a rotating file.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Optional


class RPCReplayLogger:
    """
    Console and rotating-file logging for an rpcreplay logger tree.
    """

    def __init__(
        self,
        name: str = "rpcreplay",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        console_output: bool = True,
        file_output: bool = False,
    ):
        self.name = name
        self.logger = logging.getLogger(name)

        # Clear any existing handlers
        self.logger.handlers.clear()
        self.logger.setLevel(self._parse_level(level))

        console_formatter = logging.Formatter(
            fmt="[%(asctime)s] [%(name)s:%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        file_formatter = logging.Formatter(
            fmt="%(asctime)s | %(name)s | %(levelname)s | %(filename)s:%(lineno)d | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

        if console_output:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(console_formatter)
            console_handler.setLevel(self._parse_level(level))
            self.logger.addHandler(console_handler)

        if file_output:
            if log_dir is None:
                log_dir = Path.home() / ".rpcreplay" / "logs"

            log_dir.mkdir(parents=True, exist_ok=True)

            # Rotate after 10MB, keep 5 backup files
            file_handler = RotatingFileHandler(
                log_dir / f"{name}.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setFormatter(file_formatter)
            file_handler.setLevel(logging.DEBUG)
            self.logger.addHandler(file_handler)

    def _parse_level(self, level: str) -> int:
        """Convert string level to logging constant"""
        levels = {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL,
        }
        return levels.get(level.upper(), logging.INFO)

    def set_level(self, level: str):
        """Change log level dynamically"""
        self.logger.setLevel(self._parse_level(level))


_loggers: Dict[str, RPCReplayLogger] = {}


def get_logger(
    name: str = "rpcreplay",
    level: Optional[str] = None,
    log_dir: Optional[Path] = None,
) -> RPCReplayLogger:
    """
    Get or create a configured logger.

    Args:
        name: Logger name; "rpcreplay" covers every module of the package
        level: Log level, defaults to RPCREPLAY_LOG_LEVEL or INFO
        log_dir: Enables file output; defaults to RPCREPLAY_LOG_DIR

    Returns:
        RPCReplayLogger instance
    """
    if name not in _loggers:
        log_level = level or os.getenv("RPCREPLAY_LOG_LEVEL", "INFO")
        env_dir = os.getenv("RPCREPLAY_LOG_DIR")
        if log_dir is None and env_dir:
            log_dir = Path(env_dir).expanduser()

        _loggers[name] = RPCReplayLogger(
            name=name,
            level=log_level,
            log_dir=log_dir,
            file_output=log_dir is not None,
        )
    elif level:
        _loggers[name].set_level(level)

    return _loggers[name]
