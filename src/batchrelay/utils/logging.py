import logging
import typing as t
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from structlog.types import EventDict

_DROP_LOG_FIELDS = frozenset({"payload", "response_payload", "headers", "api_key"})


def _drop_sensitive_fields(
    logger: t.Any, method_name: str, event_dict: EventDict
) -> EventDict:
    for key in _DROP_LOG_FIELDS.intersection(event_dict):
        event_dict.pop(key)
    return event_dict


def setup_logging(level: str = "INFO", *, colors: bool = True) -> None:
    logging.basicConfig(format="%(message)s", level=logging.WARNING)
    logging.getLogger("batchrelay").setLevel(level.upper())
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            _drop_sensitive_fields,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**required_context) -> Iterator[None]:
    current = structlog.contextvars.get_contextvars()
    to_bind = {k: v for k, v in required_context.items() if k not in current}

    if to_bind:
        with structlog.contextvars.bound_contextvars(**to_bind):
            yield
    else:
        yield
