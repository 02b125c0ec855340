"""
Structured logging configuration using structlog.

Every log entry carries the same envelope:
{
    "ts": "2026-10-17T04:30:00.123456Z",
    "level": "info",
    "service": "shadowsync",
    "correlation_id": "uuid-v4",
    "tenant_id": "t1",
    "event": "event.appended",
    "module": "memory",
    "func_name": "append",
    "lineno": 42,
    ...additional context...
}
"""
import structlog
import logging
from typing import Any


def service_name_adder(service_name: str):
    """Build a processor stamping the service name on every entry."""

    def add_service_name(logger: Any, method_name: str, event_dict: dict) -> dict:
        event_dict["service"] = service_name
        return event_dict

    return add_service_name


def setup_logging(json_output: bool = True, service_name: str = "shadowsync", level: int = logging.INFO):
    """
    Configure structured logging.

    Args:
        json_output: If True, output JSON logs. If False, use console format.
        service_name: Name stamped on every entry.
        level: Minimum level that is emitted.
    """
    shared_processors = [
        # correlation_id from the middleware, tenant_id from the tenant dependency
        structlog.contextvars.merge_contextvars,
        service_name_adder(service_name),
        structlog.processors.TimeStamper(fmt="iso", key="ts"),
        structlog.processors.add_log_level,
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.MODULE,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=level)

    # uvicorn access logs duplicate the http_request entries
    logging.getLogger("uvicorn.access").handlers = []


def get_logger():
    """Get a configured structlog logger."""
    return structlog.get_logger()
