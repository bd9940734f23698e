"""
Logging setup — configured once by the CLI entrypoint.

Every module logs through ``logging.getLogger(__name__)``.  Records
emitted while an operation runs carry the package name, so the
interleaved output of a parallel batch update stays attributable:

    12:03:04 [rg] Release 14.1.0 of BurntSushi/ripgrep ships 12 assets
    12:03:04 [fd] fd: installed v9.0.0, latest v10.1.0

Console level precedence:
    --debug  >  --verbose  >  --quiet  >  BSPM_LOG_LEVEL  >  WARNING

Optional file output via BSPM_LOG_FILE / BSPM_LOG_FILE_LEVEL.
"""

from __future__ import annotations

import contextvars
import logging
import os
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager

_FMT_MINIMAL = "%(message)s"
_FMT_VERBOSE = "%(asctime)s [%(package)s] %(message)s"
_FMT_DEBUG = "%(asctime)s %(levelname)-5s [%(package)s] %(name)s:%(lineno)d  %(message)s"
_FMT_FILE = "%(asctime)s %(levelname)-5s [%(package)s] %(name)s:%(lineno)d  %(message)s"

_DATEFMT_CONSOLE = "%H:%M:%S"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"

_NO_PACKAGE = "-"

_current_package: contextvars.ContextVar[str] = contextvars.ContextVar(
    "blindspot_package", default=_NO_PACKAGE,
)


@contextmanager
def package_context(name: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``name``."""
    token = _current_package.set(name)
    try:
        yield
    finally:
        _current_package.reset(token)


class PackageFilter(logging.Filter):
    """Sets ``record.package`` for the format strings above."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.package = _current_package.get()
        return True


def resolve_level(
    *,
    debug: bool = False,
    verbose: bool = False,
    quiet: bool = False,
    env: Mapping[str, str] | None = None,
) -> str:
    """Console level name from CLI flags, then the environment."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    env = os.environ if env is None else env
    return env.get("BSPM_LOG_LEVEL") or "WARNING"


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Install console (stderr) and optional file handlers on the root logger.

    Calling it again replaces the handlers it installed before.

    Args:
        level: Console level name.
        log_file: Optional path of a log file.
        log_file_level: Level for the file; defaults to ``level``.
    """
    console_level = _parse_level(level)
    if console_level <= logging.DEBUG:
        fmt, datefmt = _FMT_DEBUG, _DATEFMT_CONSOLE
    elif console_level <= logging.INFO:
        fmt, datefmt = _FMT_VERBOSE, _DATEFMT_CONSOLE
    else:
        fmt, datefmt = _FMT_MINIMAL, None

    handlers = [_handler(logging.StreamHandler(sys.stderr), console_level, fmt, datefmt)]
    root_level = console_level

    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        handlers.append(
            _handler(logging.FileHandler(log_file, encoding="utf-8"), file_level, _FMT_FILE, _DATEFMT_FILE)
        )
        root_level = min(root_level, file_level)

    root = logging.getLogger()
    root.handlers.clear()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(root_level)

    logging.raiseExceptions = False


def _handler(
    handler: logging.Handler, level: int, fmt: str, datefmt: str | None,
) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    handler.addFilter(PackageFilter())
    return handler


def _parse_level(level: str | None) -> int:
    """Level name → numeric level; unknown names mean WARNING."""
    if not level:
        return logging.WARNING
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.WARNING
    return numeric
