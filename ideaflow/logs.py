"""
logs.py

Responsibility: single-line structured logging for every ideaflow command.

Output goes to stderr so stdout stays reserved for the command result:

    [INFO] Branch created branch=feat/ARCH-12-guard duration=4.21ms status=ok

Metadata is passed through `extra={"meta": {...}}` and rendered as sorted
`key=value` pairs.
"""

from __future__ import annotations

import logging
import os
import re
import sys
import time
from contextlib import contextmanager
from typing import Any, Iterator, Mapping

VALID_LEVELS = ("trace", "debug", "info", "warn", "error")

# "trace" has no stdlib counterpart; it maps below DEBUG.
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_HANDLER_NAME = "ideaflow-stderr"


def normalize_level(level: str | None) -> str | None:
    if not level:
        return None
    candidate = str(level).strip().lower()
    if candidate == "warning":
        return "warn"
    return candidate if candidate in VALID_LEVELS else None


def resolve_log_level(
    *,
    log_level: str | None = None,
    verbose: bool = False,
    quiet: bool = False,
    env: Mapping[str, str] | None = None,
) -> str:
    """
    Explicit --log-level wins, then --quiet/--verbose, then LOG_LEVEL, then info.
    """
    env = os.environ if env is None else env
    explicit = normalize_level(log_level)
    if explicit:
        return explicit
    if quiet:
        return "error"
    if verbose:
        return "debug"
    return normalize_level(env.get("LOG_LEVEL")) or "info"


def _normalize_whitespace(value: object) -> str:
    return re.sub(r"\s+", " ", str(value)).strip()


def _sanitize_key(key: object) -> str:
    key = re.sub(r"\s+", "_", str(key).strip())
    return re.sub(r"[^a-zA-Z0-9_\-.:]", "", key)


def format_meta_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, BaseException):
        value = _normalize_whitespace(value)
    text = str(value)
    if text == "":
        return '""'
    if re.search(r'\s|"', text):
        return '"' + text.replace('"', '\\"') + '"'
    return text


class KeyValueFormatter(logging.Formatter):
    """Formats records as `[LEVEL] message k=v ...` on one line."""

    def format(self, record: logging.LogRecord) -> str:
        level = "WARN" if record.levelno == logging.WARNING else record.levelname
        message = _normalize_whitespace(record.getMessage())
        meta: dict[str, str] = {}
        raw_meta = getattr(record, "meta", None) or {}
        for raw_key, raw_value in dict(raw_meta).items():
            key = _sanitize_key(raw_key)
            if key:
                meta[key] = format_meta_value(raw_value)
        if record.exc_info and record.exc_info[1] is not None:
            meta.setdefault("error", format_meta_value(record.exc_info[1]))
        pairs = " ".join(f"{k}={meta[k]}" for k in sorted(meta))
        return " ".join(part for part in (f"[{level}]", message, pairs) if part)


def configure_logging(level: str = "info", *, stream: Any = None) -> logging.Logger:
    """
    Install (or replace) the stderr handler on the `ideaflow` logger.
    """
    logger = logging.getLogger("ideaflow")
    for handler in list(logger.handlers):
        if handler.get_name() == _HANDLER_NAME:
            logger.removeHandler(handler)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(KeyValueFormatter())
    logger.addHandler(handler)
    logger.setLevel(_LEVELS[normalize_level(level) or "info"])
    logger.propagate = False
    return logger


def _format_duration(start: float) -> str:
    elapsed_ms = (time.perf_counter() - start) * 1000
    if elapsed_ms >= 100:
        return f"{round(elapsed_ms)}ms"
    if elapsed_ms >= 10:
        return f"{elapsed_ms:.1f}ms"
    return f"{elapsed_ms:.2f}ms"


@contextmanager
def step(logger: logging.Logger, action: str, **meta: Any) -> Iterator[dict[str, Any]]:
    """
    Time a unit of work. Callers may add result metadata to the yielded dict.
    """
    start = time.perf_counter()
    extra_meta: dict[str, Any] = {}
    name = _normalize_whitespace(action) or "step"
    try:
        yield extra_meta
    except Exception as e:
        logger.error(
            name,
            extra={"meta": {**meta, **extra_meta, "status": "error", "error": e, "duration": _format_duration(start)}},
        )
        raise
    logger.info(name, extra={"meta": {**meta, **extra_meta, "status": "ok", "duration": _format_duration(start)}})
