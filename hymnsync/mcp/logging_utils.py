"""Logging for the score pipeline.

Records carry the score being processed, the pipeline stage and the MCP
request id. In dev environments every module also gets its own log file.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import fields, is_dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional
from xml.etree.ElementTree import Element
import contextvars
import json
import logging
import os

import numpy as np

LOG_DIR_ENV = "HYMNSYNC_LOG_DIR"
UNSET = "-"

TEXT_LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s %(filename)s:%(lineno)d:%(funcName)s "
    "score_id=%(score_id)s stage=%(stage)s request_id=%(request_id)s %(message)s"
)

_CONTEXT_FIELDS = ("score_id", "stage", "request_id")
_context: Dict[str, contextvars.ContextVar] = {
    name: contextvars.ContextVar(f"hymnsync_{name}", default=UNSET) for name in _CONTEXT_FIELDS
}
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({})))


def summarize_payload(value: Any, *, max_list: int = 20, max_str: int = 200, depth: int = 3) -> Any:
    """Size-limited view of a pipeline payload for debug logs.

    Long note lists are cut to a sample, MEI elements are reduced to their tag
    and id, and result dataclasses are summarized field by field.
    """
    if depth <= 0:
        return f"<{type(value).__name__}>"
    nested = dict(max_list=max_list, max_str=max_str, depth=depth - 1)
    if isinstance(value, np.ndarray):
        return {"__ndarray__": list(value.shape), "dtype": str(value.dtype)}
    if isinstance(value, Element):
        return {"__element__": value.tag.rpartition("}")[2], "id": value.get("xml:id")}
    if is_dataclass(value) and not isinstance(value, type):
        return {"__type__": type(value).__name__, **{f.name: summarize_payload(getattr(value, f.name), **nested) for f in fields(value)}}
    if isinstance(value, dict):
        items = list(value.items())
        summary = {str(key): summarize_payload(item, **nested) for key, item in items[:max_list]}
        if len(items) > max_list:
            summary["__truncated__"] = True
            summary["__len__"] = len(items)
        return summary
    if isinstance(value, (list, tuple)):
        if len(value) > max_list:
            return {"__len__": len(value), "sample": [summarize_payload(item, **nested) for item in value[:5]]}
        return [summarize_payload(item, **nested) for item in value]
    if isinstance(value, str):
        return value if len(value) <= max_str else value[:max_str] + "...(truncated)"
    if isinstance(value, bytes):
        return {"__bytes__": len(value)}
    if isinstance(value, Path):
        return str(value)
    return value


def set_log_context(
    *,
    score_id: Optional[str] = None,
    stage: Optional[str] = None,
    request_id: Optional[Any] = None,
) -> None:
    """Attach score, stage or request identifiers to subsequent records."""
    for name, value in (("score_id", score_id), ("stage", stage), ("request_id", request_id)):
        if value is not None:
            _context[name].set(str(value))


def clear_log_context() -> None:
    for var in _context.values():
        var.set(UNSET)


@contextmanager
def log_stage(stage: str) -> Iterator[None]:
    """Tag records emitted inside the block with a pipeline stage name."""
    token = _context["stage"].set(stage)
    try:
        yield
    finally:
        _context["stage"].reset(token)


class LoggingContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _context.items():
            setattr(record, name, var.get())
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record, with the pipeline context and any extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "location": f"{record.filename}:{record.lineno}:{record.funcName}",
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            payload[name] = getattr(record, name, UNSET)
        payload.update({key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS and key not in payload})
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def _json_logs_requested() -> bool:
    return os.getenv("LOG_FORMAT", "").lower() == "json" or os.getenv("LOG_JSON", "").lower() in {"1", "true", "yes"}


def is_dev_env() -> bool:
    app_env = os.getenv("APP_ENV") or os.getenv("ENV") or "dev"
    return app_env.lower() in {"dev", "development", "local", "test"}


def build_formatter() -> logging.Formatter:
    if _json_logs_requested():
        return JsonFormatter()
    return logging.Formatter(TEXT_LOG_FORMAT)


def _with_context(handler: logging.Handler) -> logging.Handler:
    if not any(isinstance(existing, LoggingContextFilter) for existing in handler.filters):
        handler.addFilter(LoggingContextFilter())
    return handler


def ensure_timestamped_handlers(logger_names: Iterable[str] | None = None) -> None:
    """Give the handlers of ``logger_names`` (root by default) the active format and context."""
    formatter = build_formatter()
    for name in logger_names or ("",):
        for handler in logging.getLogger(name).handlers:
            handler.setFormatter(formatter)
            _with_context(handler)


def get_logger(module_name: str) -> logging.Logger:
    """Module logger; in dev it also writes to ``<HYMNSYNC_LOG_DIR>/<module>.log``."""
    logger = logging.getLogger(module_name)
    logger.propagate = True
    if getattr(logger, "_hymnsync_file_handler", False) or not is_dev_env():
        return logger
    log_dir = Path(os.getenv(LOG_DIR_ENV, "logs"))
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_dir / f"{module_name.replace('.', '_')}.log", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(build_formatter())
    logger.addHandler(_with_context(handler))
    setattr(logger, "_hymnsync_file_handler", True)
    return logger
