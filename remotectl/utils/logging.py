# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Logging setup shared by the CLI, the daemon and the tunnel broker.

- Console output goes through a Rich console in CLI mode and plain stderr
  lines in daemon mode.
- Everything is also written to a rotating file under the data directory.

Usage:
    from remotectl.utils.logging import configure_logging, get_logger

    configure_logging(debug=True)
    logger = get_logger(__name__)
    logger.success("Tunnel broker listening")

Environment Variables:
    REMOTECTL_DEBUG=1          Verbose console output
    REMOTECTL_LOG_LEVEL=DEBUG  Log level (DEBUG, INFO, WARNING, ERROR)
    REMOTECTL_LOG_FILE=/path   Log file location
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console

from remotectl.paths import HostPaths

ROOT_LOGGER = "remotectl"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

_configured = False
_debug_mode = False
_daemon_mode = False
_log_file: Optional[Path] = None

console = Console()

SUCCESS_LEVEL = 25
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")


def _resolve_log_file() -> Path:
    global _log_file
    if _log_file is None:
        env_log_file = os.environ.get("REMOTECTL_LOG_FILE")
        _log_file = Path(env_log_file) if env_log_file else HostPaths.log_dir() / "remotectl.log"
    return _log_file


def is_debug_mode() -> bool:
    """True when debug output was requested by flag or REMOTECTL_DEBUG."""
    return _debug_mode or os.environ.get("REMOTECTL_DEBUG", "").lower() in ("1", "true", "yes")


def configure_logging(
    debug: bool = False,
    daemon: bool = False,
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
    force: bool = False,
) -> None:
    """Configure the ``remotectl`` logger tree once per process.

    Args:
        debug: Verbose console output
        daemon: Plain stderr output instead of Rich formatting
        log_level: Level name, overrides REMOTECTL_LOG_LEVEL
        log_file: Log file path, overrides REMOTECTL_LOG_FILE
        force: Reconfigure even if logging was already set up
    """
    global _configured, _debug_mode, _daemon_mode, _log_file

    if _configured and not force:
        return

    _debug_mode = debug or is_debug_mode()
    _daemon_mode = daemon
    if log_file:
        _log_file = log_file

    level_name = (
        log_level or os.environ.get("REMOTECTL_LOG_LEVEL", "DEBUG" if _debug_mode else "INFO")
    ).upper()
    level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.close()
    root_logger.handlers.clear()

    try:
        path = _resolve_log_file()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)
    except OSError:
        # Read-only home or data dir: keep console output only
        pass

    if _daemon_mode:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(level)
        stderr_handler.setFormatter(logging.Formatter("%(name)s: %(levelname)s: %(message)s"))
        root_logger.addHandler(stderr_handler)

    _configured = True
    root_logger.debug(
        f"Logging configured: level={level_name}, debug={_debug_mode}, daemon={_daemon_mode}"
    )


class RemotectlLogger:
    """Logger that mirrors records to the console.

    In daemon mode the stderr handler already prints every record, so the
    console mirror is only used for CLI output.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)
        self.console = console

    def _echo(self, markup: str) -> None:
        if not _daemon_mode:
            self.console.print(markup)

    def debug(self, message: str, console_output: bool = False) -> None:
        self.logger.debug(message)
        if console_output or is_debug_mode():
            self._echo(f"[dim][DEBUG] {message}[/dim]")

    def info(self, message: str, console_output: bool = True) -> None:
        self.logger.info(message)
        if console_output:
            self._echo(f"[blue]{message}[/blue]")

    def success(self, message: str, console_output: bool = True) -> None:
        self.logger.log(SUCCESS_LEVEL, message)
        if console_output:
            self._echo(f"[green]✓ {message}[/green]")

    def warning(self, message: str, console_output: bool = True) -> None:
        self.logger.warning(message)
        if console_output:
            self._echo(f"[yellow]⚠ {message}[/yellow]")

    def error(
        self,
        message: str,
        exc: Optional[BaseException] = None,
        console_output: bool = True,
    ) -> None:
        """Log an error, optionally with the exception that caused it."""
        if exc is not None:
            message = f"{message}: {exc}"
            self.logger.error(message, exc_info=exc if is_debug_mode() else None)
        else:
            self.logger.error(message)
        if console_output:
            self._echo(f"[red]✗ {message}[/red]")

    def exception(self, message: str, console_output: bool = True) -> None:
        """Log with traceback. Call from within an except block."""
        self.logger.exception(message)
        if console_output and not _daemon_mode:
            self.console.print(f"[red]✗ {message}[/red]")
            if is_debug_mode():
                self.console.print_exception()


def get_logger(name: str) -> RemotectlLogger:
    """Return a logger under the ``remotectl`` namespace."""
    if not _configured:
        configure_logging()
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return RemotectlLogger(name)


def get_daemon_logger(name: str) -> RemotectlLogger:
    """Return a logger for long-running background components."""
    configure_logging(daemon=True)
    return get_logger(name)
