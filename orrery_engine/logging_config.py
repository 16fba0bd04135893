"""Structured logging configuration for orrery."""
import contextvars
import logging
from contextlib import contextmanager
from typing import Iterator

import structlog

from orrery_engine.config import EngineConfig

operation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "operation_id", default=""
)


def add_operation_id(logger, method_name, event_dict):
    """Structlog processor to add the running operation id."""
    oid = operation_id_var.get("")
    if oid:
        event_dict["operation_id"] = oid
    return event_dict


class OperationIdFilter(logging.Filter):
    """Expose the operation id to stdlib format strings as %(operation_id)s."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.operation_id = operation_id_var.get("") or "-"
        return True


@contextmanager
def bind_operation(operation_id: str) -> Iterator[None]:
    """Bind ``operation_id`` to every log line emitted inside the block."""
    token = operation_id_var.set(operation_id)
    try:
        yield
    finally:
        operation_id_var.reset(token)


def configure_logging(
    level: int | str | None = None,
    json_logs: bool | None = None,
    config: EngineConfig | None = None,
) -> None:
    """
    Configure stdlib logging and structlog with operation correlation.

    Arguments left as None come from ``config.log_level`` / ``config.log_json``
    (``EngineConfig.from_env()`` when no config is given).
    """
    if level is None or json_logs is None:
        config = config or EngineConfig.from_env()
        level = config.log_level if level is None else level
        json_logs = config.log_json if json_logs is None else json_logs
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    # Engine modules log through logging.getLogger("orrery.*"); make sure
    # they reach stderr even if basicConfig was already called elsewhere.
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s op=%(operation_id)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    for handler in logging.root.handlers:
        handler.addFilter(OperationIdFilter())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_operation_id,
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )


def get_logger(name: str):
    """Return a structlog logger for event-style records (operation lifecycle)."""
    return structlog.get_logger(name)
