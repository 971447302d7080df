"""structlog setup for wattop."""

import logging
import sys
from pathlib import Path
from typing import IO

import structlog

_log_stream: IO[str] | None = None


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> bool:
    """
    Route structlog output to stderr or, when the TUI owns the terminal, a file.

    If the log file cannot be opened a warning is printed once to stderr and
    log output is discarded, so startup continues.

    Args:
        level: Minimum level name (DEBUG, INFO, WARNING, ERROR).
        log_file: Append log lines to this file instead of stderr.

    Returns:
        False when the log file was unusable and output is discarded.
    """
    global _log_stream
    close_logging()

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    logger_factory = None
    usable = True
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            _log_stream = open(log_file, "a", encoding="utf-8")
        except OSError as e:
            _warn_log_file_unusable(log_file, e)
            logger_factory = structlog.ReturnLoggerFactory()
            usable = False
        else:
            logger_factory = structlog.PrintLoggerFactory(file=_log_stream)
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        logger_factory = structlog.PrintLoggerFactory(file=sys.stderr)
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=logger_factory,
        cache_logger_on_first_use=False,
    )
    return usable


def close_logging() -> None:
    """Close the log file opened by configure_logging, if any."""
    global _log_stream
    if _log_stream is None:
        return
    stream, _log_stream = _log_stream, None
    try:
        stream.close()
    except OSError:
        pass
    structlog.configure(logger_factory=structlog.ReturnLoggerFactory())


def _warn_log_file_unusable(log_file: Path, error: OSError) -> None:
    # Printed before the TUI takes over the terminal
    warner = structlog.wrap_logger(
        structlog.PrintLogger(sys.stderr),
        processors=[
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(colors=False),
        ],
    )
    warner.warning("log_file_unusable", path=str(log_file), error=str(error))
