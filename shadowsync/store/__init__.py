"""
Event store backends

- InMemoryEventStore: process-local log with a periodic expiry sweep
- RedisEventStore: shared log with native key expiry
"""
from datetime import timedelta
import structlog

from .base import EventStore
from .memory import InMemoryEventStore
from .redis_store import RedisEventStore
from ..config import Settings

log = structlog.get_logger()


def redact_url(url) -> str:
    """Render a connection URL for logs, without its user info."""
    port = f":{url.port}" if url.port else ""
    return f"{url.scheme}://{url.host or ''}{port}{url.path or ''}"


def create_event_store(settings: Settings) -> EventStore:
    """
    Create the event store selected by STORE_BACKEND.

    Falls back to the in-memory store when redis is requested without a
    REDIS_URL.
    """
    retention = timedelta(seconds=settings.EVENT_RETENTION_SECONDS)

    if settings.STORE_BACKEND == "redis":
        if not settings.REDIS_URL:
            log.warning(
                "event_store.fallback",
                requested="redis",
                actual="memory",
                reason="REDIS_URL not configured"
            )
        else:
            log.info("event_store.selected", type="redis", url=redact_url(settings.REDIS_URL))
            return RedisEventStore(retention, redis_url=str(settings.REDIS_URL))

    log.info("event_store.selected", type="memory")
    return InMemoryEventStore(
        retention,
        cleanup_interval_seconds=settings.EVENT_SWEEP_INTERVAL_SECONDS or None,
    )


__all__ = [
    "EventStore",
    "InMemoryEventStore",
    "RedisEventStore",
    "create_event_store",
    "redact_url",
]
