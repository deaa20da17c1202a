"""
Logging setup for TouchCRM.

Every module logs through a child of the 'touchcrm' logger
(touchcrm.engine.scoring, touchcrm.engine.deck_builder, ...), so one
rotating file handler on the parent catches everything.

Environment
-----------
    LOG_LEVEL      DEBUG / INFO / WARNING / ERROR / CRITICAL (default INFO)
    LOG_DIR        directory for touchcrm.log (default <repo>/logs)
    SLOW_CALL_MS   calls traced by @log_call that take longer than this
                   are logged at WARNING instead of INFO (default 2000)

Traced call lines look like:

    2026-10-19 08:02:11 | DEBUG    | CALL deck_build | args=('me', max_cards=5)
    2026-10-19 08:02:11 | INFO     | OK   deck_build | 87ms
    2026-10-19 08:02:14 | WARNING  | SLOW score_rescore | 2412ms
    2026-10-19 08:02:11 | ERROR    | FAIL deck_build | OperationalError: connection refused | 3ms
"""

import functools
import logging
import logging.handlers
import os
import reprlib
import time
from pathlib import Path

LOGGER_NAME = "touchcrm"
LOG_FILENAME = "touchcrm.log"

_DEFAULT_LOG_DIR = Path(__file__).parent.parent / "logs"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3
_DEFAULT_SLOW_MS = 2000

# contact id lists and score maps get long; keep CALL lines readable
_arg_repr = reprlib.Repr()
_arg_repr.maxstring = 60
_arg_repr.maxother = 60
_arg_repr.maxlist = 5
_arg_repr.maxdict = 5


def log_dir() -> Path:
    raw = os.environ.get("LOG_DIR")
    return Path(raw) if raw else _DEFAULT_LOG_DIR


def _level_from_env() -> int:
    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), None)
    return level if isinstance(level, int) else logging.INFO


def _slow_threshold_ms() -> int:
    try:
        return int(os.environ.get("SLOW_CALL_MS", _DEFAULT_SLOW_MS))
    except ValueError:
        return _DEFAULT_SLOW_MS


def configure_logging() -> logging.Logger:
    """Attach the rotating file handler once; later calls return the same logger."""
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    directory = log_dir()
    directory.mkdir(parents=True, exist_ok=True)

    logger.setLevel(_level_from_env())
    handler = logging.handlers.RotatingFileHandler(
        directory / LOG_FILENAME,
        maxBytes=_MAX_BYTES,
        backupCount=_BACKUP_COUNT,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(handler)
    return logger


def _format_args(args, kwargs) -> str:
    parts = [_arg_repr.repr(a) for a in args]
    parts += [f"{k}={_arg_repr.repr(v)}" for k, v in kwargs.items()]
    return ", ".join(parts) or "-"


def log_call(func):
    """
    Trace a function: CALL at DEBUG, OK (or SLOW) with elapsed ms on return,
    FAIL at ERROR on exception. Exceptions are re-raised unchanged.
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(LOGGER_NAME)
        name = func.__name__
        logger.debug(f"CALL {name} | args=({_format_args(args, kwargs)})")
        start = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            ms = int((time.perf_counter() - start) * 1000)
            logger.error(f"FAIL {name} | {type(exc).__name__}: {exc} | {ms}ms")
            raise
        ms = int((time.perf_counter() - start) * 1000)
        if ms > _slow_threshold_ms():
            logger.warning(f"SLOW {name} | {ms}ms")
        else:
            logger.info(f"OK   {name} | {ms}ms")
        return result

    return wrapper
