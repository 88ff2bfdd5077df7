# === FILE: site_diff/logger.py ===
"""Logging setup for **SiteDiff**.

* One project logger, ``SiteDiff``, with child loggers per component
  (``SiteDiff.retry``, ``SiteDiff.pipeline`` ...) from :func:`get_logger`.
* Console output on stdout, optionally mirrored into a rotating log file.
* Every run additionally writes ``run.log`` into its own output directory,
  see :func:`run_log`.

Per-target failures are not printed on the console: they go to the run's
structured error log (see :mod:`site_diff.report.reporter`) and to DEBUG
records, which still reach ``run.log``.
"""
from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Final, Iterator, Union

_DEFAULT_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_LOGGER_NAME: Final[str] = "SiteDiff"
_MAX_BYTES: Final[int] = 5 * 1024 * 1024
_BACKUPS: Final[int] = 3

_LevelT = Union[int, str]


def _console(fmt: str, level: _LevelT) -> logging.StreamHandler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    return handler


def _rotating(file: Path | str, fmt: str) -> RotatingFileHandler:
    Path(file).parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(str(file), maxBytes=_MAX_BYTES, backupCount=_BACKUPS, encoding="utf-8")
    handler.setFormatter(logging.Formatter(fmt))
    return handler


def configure(
    *,
    level: _LevelT = "INFO",
    log_file: str | Path | None = None,
    log_format: str = _DEFAULT_FORMAT,
    replace_handlers: bool = True,
) -> logging.Logger:
    """(Re)configure the ``SiteDiff`` logger.

    Parameters
    ----------
    level
        Console level, numeric or textual (``"DEBUG"``). The logger itself
        always passes DEBUG through so that per-run log files stay complete.
    log_file
        Optional rotating log file shared by all runs.
    log_format
        Format string for :class:`logging.Formatter`.
    replace_handlers
        Close and drop the handlers installed by a previous call.
    """
    lg = logging.getLogger(_LOGGER_NAME)
    lg.setLevel(logging.DEBUG)

    if replace_handlers:
        for handler in list(lg.handlers):
            handler.close()
            lg.removeHandler(handler)

    lg.addHandler(_console(log_format, level))
    if log_file is not None:
        file_handler = _rotating(log_file, log_format)
        file_handler.setLevel(level)
        lg.addHandler(file_handler)

    lg.propagate = False
    return lg


def get_logger(suffix: str | None = None) -> logging.Logger:
    """Return the project logger or its child ``SiteDiff.<suffix>``."""
    return logging.getLogger(_LOGGER_NAME if not suffix else f"{_LOGGER_NAME}.{suffix}")


@contextmanager
def run_log(path: Path | str, log_format: str = _DEFAULT_FORMAT) -> Iterator[Path]:
    """Mirror every ``SiteDiff`` record (DEBUG included) into *path* while the block runs."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(target, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(log_format))
    lg = logging.getLogger(_LOGGER_NAME)
    lg.addHandler(handler)
    try:
        yield target
    finally:
        lg.removeHandler(handler)
        handler.close()


logger: logging.Logger = configure()

__all__ = ["logger", "configure", "get_logger", "run_log"]
