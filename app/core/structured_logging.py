"""
Structured logging with structlog.

Both processes (API and generation worker) log JSON lines to stderr and to
a rotating file. Plain ``logging.getLogger(__name__)`` calls are routed
through the same structlog processors, so every entry carries the
request id (API) or the worker/job/batch ids (worker) that were active
when it was written. ``extra={...}`` fields are merged into the entry.
"""
from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
worker_id_var: ContextVar[Optional[str]] = ContextVar("worker_id", default=None)
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
batch_id_var: ContextVar[Optional[str]] = ContextVar("batch_id", default=None)
plan_var: ContextVar[Optional[str]] = ContextVar("plan", default=None)

_CONTEXT_VARS = (
    ("request_id", request_id_var),
    ("user_id", user_id_var),
    ("worker_id", worker_id_var),
    ("job_id", job_id_var),
    ("batch_id", batch_id_var),
    ("plan", plan_var),
)

APP_VERSION = "0.4.0"
SERVICE_NAME = "studio-billing"

_startup_time: float = time.time()


def get_uptime_s() -> float:
    return time.time() - _startup_time


@contextmanager
def job_context(job_id: str, batch_id: str, user_id: str, plan: str) -> Iterator[None]:
    """Tag every log entry written while a worker slot processes one job."""
    tokens = [
        (job_id_var, job_id_var.set(job_id)),
        (batch_id_var, batch_id_var.set(batch_id)),
        (user_id_var, user_id_var.set(user_id)),
        (plan_var, plan_var.set(plan)),
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def _inject_context(logger_name: str, method_name: str, event_dict: dict) -> dict:
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = APP_VERSION
    for key, var in _CONTEXT_VARS:
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def _lowercase_level(logger_name: str, method_name: str, event_dict: dict) -> dict:
    level = event_dict.get("level")
    if level:
        event_dict["level"] = level.lower()
    return event_dict


def setup_logging(
    log_dir: str = "logs",
    log_file: str = "studio-billing.jsonl",
    log_level: str = "INFO",
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Install JSON logging for the current process.

    Called once at import of the API app and once in the worker entry point.
    A read-only log directory degrades to stderr only.
    """
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _lowercase_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        _inject_context,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )

    handlers: list[logging.Handler] = []
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    handlers.append(stderr_handler)

    try:
        os.makedirs(log_dir, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError:
        rotating = None
    if rotating is not None:
        rotating.setFormatter(formatter)
        handlers.append(rotating)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.getLevelName(log_level.upper()))
    for handler in handlers:
        root.addHandler(handler)

    # Per-statement SQL and per-request HTTP client chatter
    for noisy in ("httpcore", "httpx", "asyncio", "sqlalchemy.engine", "alembic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
