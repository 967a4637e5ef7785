"""structlog configuration, with every event mirrored to Logfire.

Logfire itself is configured in ``main`` from LOGFIRE_TOKEN; this module
only wires the processor chain.
"""

import logging
import sys

import logfire
import structlog
from structlog.processors import CallsiteParameter, CallsiteParameterAdder
from structlog.types import EventDict, Processor, WrappedLogger
from structlog.typing import FilteringBoundLogger

# Keys whose values are embedding vectors; never worth printing
VECTOR_KEYS = frozenset({"embedding", "query_embedding", "vector"})
# Raw provider buffers (tool-call arguments, model text) are cut to this length
MAX_RAW_CHARS = 500


def shape_domain_fields(
    _logger: WrappedLogger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Summarize vectors and clip raw buffers before rendering."""
    for key in VECTOR_KEYS & event_dict.keys():
        value = event_dict[key]
        if isinstance(value, list | tuple):
            event_dict[key] = f"<{len(value)} floats>"

    raw = event_dict.get("raw_arguments")
    if isinstance(raw, str) and len(raw) > MAX_RAW_CHARS:
        event_dict["raw_arguments"] = raw[:MAX_RAW_CHARS] + f"... ({len(raw)} chars)"

    if "error" in event_dict and isinstance(event_dict["error"], BaseException):
        event_dict["error_type"] = type(event_dict["error"]).__name__
    for key in ("owner_id", "turn_id"):
        if key in event_dict and event_dict[key] is not None:
            event_dict[key] = str(event_dict[key])

    return event_dict


def setup_logging(level: int = logging.INFO, colors: bool = True) -> None:
    processors: list[Processor] = [
        # owner_id / turn_id bound by log_context
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        CallsiteParameterAdder(
            parameters=[
                CallsiteParameter.MODULE,
                CallsiteParameter.FUNC_NAME,
                CallsiteParameter.LINENO,
            ]
        ),
        shape_domain_fields,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        logfire.StructlogProcessor(),
        structlog.dev.ConsoleRenderer(colors=colors),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    # Third-party libraries log through the standard library
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=colors),
        foreign_pre_chain=processors[:-2],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    for noisy in ("neo4j", "apscheduler", "httpx"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


def get_logger(name: str | None = None) -> FilteringBoundLogger:
    return structlog.get_logger(name)
