from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from time import perf_counter
from types import TracebackType
from typing import Any, Dict, Iterator, Mapping, Optional

_ROOT_LOGGER_NAME = "deployctl"

_LOG_CONTEXT: ContextVar[Dict[str, Any]] = ContextVar("deployctl_log_context", default={})


def _timestamp(record: logging.LogRecord) -> str:
    created = datetime.fromtimestamp(record.created, tz=timezone.utc)
    return created.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


class _TextFormatter(logging.Formatter):
    """``<ts> LEVEL category [service] event: message | key=value ...``

    Operation steps render as ``operation > step`` (``> child`` when nested).
    """

    def format(self, record: logging.LogRecord) -> str:
        fields = dict(getattr(record, "fields", {}))
        service = fields.pop("service", None)
        operation = fields.pop("operation", None)
        step = fields.pop("step", None)
        child = fields.pop("child", None)

        head = [_timestamp(record), f"{record.levelname:<7}", str(getattr(record, "category", record.name))]
        if service:
            head.append(f"[{service}]")

        event = getattr(record, "event", "")
        if step:
            event = " > ".join(str(part) for part in (operation, step, child) if part)
        elif operation and event.startswith("operation."):
            event = f"{operation} {event.split('.', 1)[1]}"

        line = " ".join(head)
        message = record.getMessage()
        if event:
            line = f"{line} {event}: {message}" if message else f"{line} {event}"
        elif message:
            line = f"{line} {message}"
        if fields:
            line = f"{line} | " + " ".join(f"{key}={value}" for key, value in fields.items())
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class _JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _timestamp(record),
            "level": record.levelname.lower(),
            "category": getattr(record, "category", record.name),
            "event": getattr(record, "event", ""),
            "message": record.getMessage(),
        }
        payload.update(getattr(record, "fields", {}))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


_FORMATTERS = {"text": _TextFormatter, "json": _JsonFormatter}


class Operation:
    """Timed unit of work such as a deployment run or a rollback.

    Logs ``operation.start`` on entry and ``operation.complete`` (with step,
    warning and error counts) or ``operation.error`` on exit. An operation
    that logged error steps completes at WARNING level.
    """

    def __init__(self, logger: "BoundLogger", name: str, message: str, fields: Mapping[str, Any]) -> None:
        self.logger = logger
        self.name = name
        self.message = message
        self.fields = dict(fields)
        self.steps = 0
        self.warnings = 0
        self.errors = 0
        self._started = 0.0

    @property
    def elapsed_ms(self) -> float:
        return round((perf_counter() - self._started) * 1000, 1)

    async def __aenter__(self) -> "Operation":
        self._started = perf_counter()
        self.logger.info("operation.start", self.message, operation=self.name, **self.fields)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        summary = {
            "operation": self.name,
            "duration_ms": self.elapsed_ms,
            "steps": self.steps,
            "warnings": self.warnings,
            "errors": self.errors,
        }
        if exc_type is not None:
            self.logger.log(
                logging.ERROR,
                "operation.error",
                "Failed",
                exc_info=(exc_type, exc, tb),
                error_type=exc_type.__name__,
                **summary,
            )
            return
        severity = logging.WARNING if self.errors else logging.INFO
        self.logger.log(severity, "operation.complete", "Completed", **summary)

    def _step(self, severity: int, name: str, message: str, **fields: Any) -> None:
        self.steps += 1
        if severity == logging.WARNING:
            self.warnings += 1
        elif severity >= logging.ERROR:
            self.errors += 1
        self.logger.log(severity, "operation.step", message, operation=self.name, step=name, **fields)

    def step(self, name: str, message: str, **fields: Any) -> None:
        self._step(logging.INFO, name, message, **fields)

    def step_debug(self, name: str, message: str, **fields: Any) -> None:
        self._step(logging.DEBUG, name, message, **fields)

    def step_warning(self, name: str, message: str, **fields: Any) -> None:
        self._step(logging.WARNING, name, message, **fields)

    def step_error(self, name: str, message: str, **fields: Any) -> None:
        self._step(logging.ERROR, name, message, **fields)

    def child(self, parent_step: str, child_name: str, message: str, **fields: Any) -> None:
        self._step(logging.INFO, parent_step, message, child=child_name, **fields)


class BoundLogger:
    """Category logger that carries bound fields plus the task's log context."""

    def __init__(self, category: str, fields: Optional[Mapping[str, Any]] = None) -> None:
        self.category = category
        self._fields: Dict[str, Any] = dict(fields or {})

    def bind(self, **fields: Any) -> "BoundLogger":
        return BoundLogger(self.category, {**self._fields, **fields})

    @contextmanager
    def context(self, **fields: Any) -> Iterator[None]:
        token = _LOG_CONTEXT.set({**_LOG_CONTEXT.get(), **fields})
        try:
            yield
        finally:
            _LOG_CONTEXT.reset(token)

    def operation(self, name: str, message: str, **fields: Any) -> Operation:
        return Operation(self, name, message, fields)

    def debug(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.DEBUG, event, message, **fields)

    def info(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.INFO, event, message, **fields)

    def warning(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.WARNING, event, message, **fields)

    def error(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, event, message, **fields)

    def exception(self, event: str, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, event, message, exc_info=True, **fields)

    def log(self, severity: int, event: str, message: str, *, exc_info: Any = None, **fields: Any) -> None:
        target = logging.getLogger(_ROOT_LOGGER_NAME)
        if not target.isEnabledFor(severity):
            return
        target.log(
            severity,
            message,
            extra={
                "category": self.category,
                "event": event,
                "fields": {**_LOG_CONTEXT.get(), **self._fields, **fields},
            },
            exc_info=exc_info,
        )


def configure_logging(log_level: str, log_file: Optional[str], log_format: str = "text") -> None:
    formatter_cls = _FORMATTERS.get(log_format.lower())
    if formatter_cls is None:
        raise ValueError(f"unknown log format {log_format!r}")
    formatter = formatter_cls()

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logger = logging.getLogger(_ROOT_LOGGER_NAME)
    logger.setLevel(log_level.upper())
    logger.handlers.clear()
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.propagate = False

    # aiosqlite logs every cursor call at DEBUG; statements are traced by deployctl.db.
    for name in ("aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(category: str) -> BoundLogger:
    return BoundLogger(category)
