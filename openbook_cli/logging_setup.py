from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import TextIO

from concurrent_log_handler import ConcurrentRotatingFileHandler

DEFAULT_LOG_LEVEL_NAME = "INFO"
ALLOWED_LOG_LEVELS = frozenset({"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"})
DEFAULT_LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
DEFAULT_LOG_FILE = "logs/debug.log"
DEFAULT_LOG_MAX_FILES_ROTATION = 4
DEFAULT_LOG_MAX_BYTES_ROTATION = 25 * 1024 * 1024
CONSOLE_LOG_FORMAT = "[%(levelname)s] %(message)s"

_cli_logging_initialized = False
_cli_file_log_handler: ConcurrentRotatingFileHandler | None = None
_cli_console_log_handler: logging.Handler | None = None


def normalize_log_level_name(log_level: str | None) -> str:
    normalized = str(log_level or "").strip().upper()
    if normalized not in ALLOWED_LOG_LEVELS:
        return DEFAULT_LOG_LEVEL_NAME
    return normalized


def coerce_log_level(log_level: str | None) -> int:
    return cast_log_level(normalize_log_level_name(log_level))


def cast_log_level(level_name: str) -> int:
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        return logging.INFO
    return level


def create_rotating_file_handler(*, service_name: str, home_dir: str | Path) -> ConcurrentRotatingFileHandler:
    log_path = (Path(home_dir).expanduser() / DEFAULT_LOG_FILE).resolve()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    name_width = max(8, 33 - len(service_name))
    formatter = logging.Formatter(
        fmt=(
            f"%(asctime)s.%(msecs)03d {service_name} %(name)-{name_width}s: "
            f"%(levelname)-8s %(message)s"
        ),
        datefmt=DEFAULT_LOG_DATE_FORMAT,
    )
    handler = ConcurrentRotatingFileHandler(
        os.fspath(log_path),
        "a",
        maxBytes=DEFAULT_LOG_MAX_BYTES_ROTATION,
        backupCount=DEFAULT_LOG_MAX_FILES_ROTATION,
        use_gzip=False,
    )
    handler.setFormatter(formatter)
    return handler


def create_console_handler(*, stream: TextIO | None = None) -> logging.StreamHandler:
    # stdout carries command output, so log lines go to stderr.
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=CONSOLE_LOG_FORMAT))
    return handler


def apply_level_to_root(*, effective_level: int, logger: logging.Logger, handler: logging.Handler | None) -> None:
    root_logger = logging.getLogger()
    if handler is not None:
        handler.setLevel(effective_level)
    for existing in root_logger.handlers:
        existing.setLevel(effective_level)
    root_logger.setLevel(effective_level)
    logger.setLevel(effective_level)


def initialize_cli_logging(
    *,
    service_name: str,
    home_dir: str | Path,
    log_level: str | None,
    logger: logging.Logger,
    console_stream: TextIO | None = None,
) -> None:
    """Attach the console and rotating file handlers to the root logger once per process.

    Later calls only re-apply the level, so a command that reloads its config
    can raise or lower verbosity without duplicating handlers.
    """
    global _cli_logging_initialized, _cli_file_log_handler, _cli_console_log_handler
    root_logger = logging.getLogger()
    effective_level = coerce_log_level(log_level)
    if not _cli_logging_initialized:
        console = create_console_handler(stream=console_stream)
        root_logger.addHandler(console)
        _cli_console_log_handler = console
        try:
            file_handler = create_rotating_file_handler(service_name=service_name, home_dir=home_dir)
        except OSError as exc:
            logger.warning("file_logging_disabled home_dir=%s error=%s", home_dir, exc)
        else:
            root_logger.addHandler(file_handler)
            _cli_file_log_handler = file_handler
        _cli_logging_initialized = True
    apply_level_to_root(
        effective_level=effective_level,
        logger=logger,
        handler=_cli_file_log_handler,
    )


def reset_cli_logging() -> None:
    global _cli_logging_initialized, _cli_file_log_handler, _cli_console_log_handler
    root_logger = logging.getLogger()
    for handler in (_cli_file_log_handler, _cli_console_log_handler):
        if handler is None:
            continue
        root_logger.removeHandler(handler)
        handler.close()
    _cli_file_log_handler = None
    _cli_console_log_handler = None
    _cli_logging_initialized = False
