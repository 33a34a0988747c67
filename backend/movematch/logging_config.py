"""Central logging configuration for the MoveMatch backend.

Usage: from .logging_config import configure_logging; configure_logging()

Writes key=value lines to stdout (or JSON with LOG_JSON=true) and optionally
per-logger rotating files under LOG_DIR.
"""
from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from typing import Optional

_CONTEXT_KEYS = ("request_id", "client_ip", "path", "method", "reference", "match_id", "move_id")
_RESERVED_ATTRS = {
    "args", "msg", "message", "exc_info", "exc_text", "stack_info", "lineno", "pathname", "filename",
    "module", "created", "msecs", "relativeCreated", "funcName", "thread", "threadName", "processName",
    "process", "levelname", "levelno", "name", "asctime", "taskName",
}


def _utc_timestamp(record: logging.LogRecord) -> str:
    dt = datetime.fromtimestamp(record.created, timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}+00:00"


class KeyValueFormatter(logging.Formatter):
    """Minimal key=value structured formatter.

    Example output:
        2025-09-24T12:00:00.123+00:00 INFO movematch.services.matching.lifecycle matching.accept match_id=7 rid=...
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        record.asctime = _utc_timestamp(record)
        extras = []
        for key in _CONTEXT_KEYS:
            val = getattr(record, key, None)
            if val is not None:
                extras.append(f"{key}={val}")
        msg = super().format(record)
        extras_s = " " + " ".join(extras) if extras else ""
        return f"{record.asctime} {record.levelname} {record.name} {msg}{extras_s}"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        base = {
            "ts": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for k, v in record.__dict__.items():
            if k.startswith('_') or k in _RESERVED_ATTRS:
                continue
            if isinstance(v, (str, int, float, bool)) or v is None:
                base.setdefault(k, v)
        if record.exc_info:
            base["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
        return json.dumps(base, ensure_ascii=False)


class PiiMaskFilter(logging.Filter):
    """Mask client emails and phone numbers before they reach a handler."""

    _email_re = re.compile(r"([a-zA-Z0-9_.+-]{1,3})[a-zA-Z0-9_.+-]*@([a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+)")
    _phone_re = re.compile(r"(?<!\d)(\+?[0-9][0-9\-\s]{8,}[0-9])(?!\d)")

    def mask(self, s: str) -> str:
        s = self._email_re.sub(lambda m: f"{m.group(1)}***@{m.group(2)}", s)
        return self._phone_re.sub("***REDACTED_PHONE***", s)

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)
        return True


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in {"1", "true", "yes"}


def _parse_size(spec: str) -> int:
    size_str = spec.strip().lower()
    for suffix, multiplier in (("mb", 1024 * 1024), ("m", 1024 * 1024), ("kb", 1024), ("k", 1024)):
        if size_str.endswith(suffix):
            try:
                return int(size_str[: -len(suffix)]) * multiplier
            except ValueError:
                break
    try:
        return int(size_str)
    except ValueError:
        return 5 * 1024 * 1024


def _build_file_handler(base_dir: str, logger_name: str, rotate_when: str, rotate_param: str, backup: int) -> logging.Handler:
    """Create a rotating file handler writing to ``<base_dir>/<logger>/<date>.log``.

    rotate_when: 'size' (rotate_param like '10MB') or 'time' (rotate_param like 'midnight')
    """
    safe_name = logger_name.replace('.', '_') or 'root'
    log_dir = os.path.join(base_dir, safe_name)
    os.makedirs(log_dir, exist_ok=True)
    today = datetime.now(timezone.utc).strftime('%Y-%m-%d')
    log_path = os.path.join(log_dir, f"{today}.log")
    if rotate_when == 'size':
        return RotatingFileHandler(log_path, maxBytes=_parse_size(rotate_param), backupCount=backup, encoding='utf-8')
    return TimedRotatingFileHandler(log_path, when=rotate_param or 'midnight', backupCount=backup, encoding='utf-8', utc=True)


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root & engine loggers idempotently.

    - LEVEL from LOG_LEVEL env (default INFO)
    - LOG_JSON=true switches to one JSON object per line
    - LOG_TO_FILES=true adds rotating file handlers for the engine loggers
    """
    if getattr(configure_logging, "_configured", False):  # type: ignore[attr-defined]
        return

    log_level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    json_mode = _env_bool("LOG_JSON", False)
    to_files = _env_bool("LOG_TO_FILES", False)
    base_dir = os.getenv("LOG_DIR", "logs")
    rotate_when = os.getenv("LOG_ROTATE_MODE", "size").lower()
    rotate_param = os.getenv("LOG_ROTATE_PARAM", "10MB")
    backup_count = int(os.getenv("LOG_BACKUP_COUNT", "7"))

    root = logging.getLogger()
    root.setLevel(log_level)
    if not getattr(root, "_mm_custom", False):
        for h in list(root.handlers):
            root.removeHandler(h)

    formatter: logging.Formatter = JsonFormatter() if json_mode else KeyValueFormatter("%(message)s")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(PiiMaskFilter())
    root.addHandler(handler)
    root._mm_custom = True  # type: ignore[attr-defined]

    for noisy in ["uvicorn", "httpx", "httpcore", "asyncio", "pymongo"]:
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING").upper())

    if to_files:
        mode = 'size' if rotate_when == 'size' else 'time'
        for name in ["movematch.services.distance", "movematch.services.matching", "request"]:
            lg = logging.getLogger(name)
            if not any(isinstance(h, (RotatingFileHandler, TimedRotatingFileHandler)) for h in lg.handlers):
                fh = _build_file_handler(base_dir, name, mode, rotate_param, backup_count)
                fh.setFormatter(formatter)
                lg.addHandler(fh)

    configure_logging._configured = True  # type: ignore[attr-defined]


__all__ = ["configure_logging", "KeyValueFormatter", "JsonFormatter", "PiiMaskFilter"]
