"""Logging for imsload runs.

Every record handled by the imsload root carries the bound run context
(run id, profile, environment) and, inside a scenario iteration, the scenario
and iteration number. JSON lines keep those as fields so an eight hour
endurance log can be filtered per run or per iteration after shipping; the
text format appends them as a short tag.
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar, Token
from typing import Any

import orjson

LOG_LEVEL_ENV = "IMSLOAD_LOG_LEVEL"
LOG_FORMAT_ENV = "IMSLOAD_LOG_FORMAT"  # "json" | "text" (default)

# Order of context fields in the text tag and JSON output
CONTEXT_FIELDS = ("run_id", "profile", "environment", "scenario", "iteration")
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s%(run_tag)s: %(message)s"

_log_context: ContextVar[dict[str, Any]] = ContextVar("imsload_log_context", default={})


def bind_log_context(**fields: Any) -> Token:
    """Add fields to the log context of the current task. Pass the token to reset_log_context."""
    return _log_context.set({**_log_context.get(), **fields})


def reset_log_context(token: Token) -> None:
    _log_context.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_log_context.get())


def get_logger(name: str) -> logging.Logger:
    """Return imsload.<name>. Configures the imsload root logger on first use."""
    logger = logging.getLogger("imsload" if name == "imsload" else f"imsload.{name}")
    if not logger.handlers and logger.level == logging.NOTSET:
        _configure_root()
    return logger


def _configure_root() -> None:
    root = logging.getLogger("imsload")
    if root.handlers:
        return
    level_name = (os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(RunContextFilter())
    if (os.environ.get(LOG_FORMAT_ENV) or "text").lower() == "json":
        handler.setFormatter(_JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)


class RunContextFilter(logging.Filter):
    """Copies the bound run context onto each record (record.run_context, record.run_tag)."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _log_context.get()
        record.run_context = {k: ctx[k] for k in CONTEXT_FIELDS if k in ctx}
        if ctx:
            tag = " ".join(f"{k}={ctx[k]}" for k in CONTEXT_FIELDS if k in ctx)
            record.run_tag = f" [{tag}]"
        else:
            record.run_tag = ""
        return True


class _JsonFormatter(logging.Formatter):
    """One JSON object per line with the run context as top-level fields."""

    def format(self, record: logging.LogRecord) -> str:
        obj: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt or "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
        }
        ctx = getattr(record, "run_context", None)
        if ctx is None:
            ctx = {k: v for k, v in _log_context.get().items() if k in CONTEXT_FIELDS}
        obj.update(ctx)
        obj["message"] = record.getMessage()
        error_context = getattr(record, "error_context", None)
        if error_context:
            obj["error_context"] = error_context
        if record.exc_info:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj, default=str).decode("utf-8")
