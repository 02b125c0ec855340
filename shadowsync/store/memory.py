"""In-memory event store with periodic expiry sweep."""
import threading
from datetime import datetime, timedelta
from typing import Callable
import structlog
from .base import EventStore, plan_status_update, require_tenant, select_pending
from ..errors import DuplicateEventError, EventNotFoundError
from ..event_models import DeliveryStatus, Event, EventsFilter, utcnow

log = structlog.get_logger()


class InMemoryEventStore(EventStore):
    """
    Thread-safe in-memory event store.

    Events live in one insertion-ordered dict per tenant. Since ``event_ts``
    never decreases with insertion order, iteration order is also the
    (event_ts, insertion) order queries must return.
    """

    def __init__(
        self,
        retention: timedelta,
        cleanup_interval_seconds: int | None = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the store.

        Args:
            retention: How long events stay readable after append
            cleanup_interval_seconds: Interval of the expiry sweep; None disables it
            clock: Source of the current time
        """
        super().__init__(retention)
        self._events: dict[str, dict[str, Event]] = {}
        self._last_ts: dict[str, datetime] = {}
        self._lock = threading.RLock()
        self._clock = clock
        self._cleanup_interval = cleanup_interval_seconds
        self._cleanup_timer: threading.Timer | None = None
        self._shutdown = False

        if cleanup_interval_seconds:
            self._schedule_cleanup()

    async def append(self, tenant_id: str, event: Event) -> Event:
        require_tenant(tenant_id, event)
        with self._lock:
            tenant_events = self._events.setdefault(tenant_id, {})
            now = self._clock()
            existing = tenant_events.get(event.id)
            if existing is not None:
                if not existing.is_expired(now):
                    raise DuplicateEventError(tenant_id, event.id)
                # expired but not yet swept; re-insert at the tail
                del tenant_events[event.id]

            event_ts = max(now, self._last_ts.get(tenant_id, now))
            stored = event.model_copy(update={
                "tenant_id": tenant_id,
                "event_ts": event_ts,
                "expire_ts": event_ts + self.retention,
                "delivery_status": DeliveryStatus.NOT_DELIVERED,
                "retry_count": 0,
                "next_attempt_ts": None,
                "last_error": None,
            })
            tenant_events[stored.id] = stored
            self._last_ts[tenant_id] = event_ts

        log.info(
            "event.appended",
            tenant_id=tenant_id,
            id=stored.id,
            type=stored.type,
            device_id=stored.device_id,
            store="memory"
        )
        return stored

    async def get(self, tenant_id: str, event_id: str) -> Event:
        require_tenant(tenant_id)
        with self._lock:
            return self._get_live(tenant_id, event_id)

    async def query(
        self,
        tenant_id: str,
        filter: EventsFilter | None = None,
        skip: int = 0,
        limit: int = 20,
    ) -> list[Event]:
        require_tenant(tenant_id)
        filter = filter or EventsFilter()
        now = self._clock()
        with self._lock:
            matched = [
                e for e in self._events.get(tenant_id, {}).values()
                if not e.is_expired(now) and filter.matches(e)
            ]
        return matched[skip:skip + limit]

    async def pending(
        self,
        tenant_id: str,
        max_retries: int,
        limit: int = 100,
        now: datetime | None = None,
    ) -> list[Event]:
        require_tenant(tenant_id)
        current = self._clock()
        with self._lock:
            live = [e for e in self._events.get(tenant_id, {}).values() if not e.is_expired(current)]
        return select_pending(live, max_retries, limit, now)

    async def apply_status(
        self,
        tenant_id: str,
        event_id: str,
        status: DeliveryStatus,
        error: str | None = None,
        next_attempt_ts: datetime | None = None,
        expected_retry_count: int | None = None,
    ) -> tuple[Event, bool]:
        require_tenant(tenant_id)
        with self._lock:
            current = self._get_live(tenant_id, event_id)
            updated = plan_status_update(
                current, status, error, next_attempt_ts, expected_retry_count
            )
            if updated is None:
                log.debug(
                    "event.status_unchanged",
                    tenant_id=tenant_id,
                    id=event_id,
                    current=current.delivery_status.value,
                    requested=status.value
                )
                return current, False
            self._events[tenant_id][event_id] = updated

        log.info(
            "event.status_updated",
            tenant_id=tenant_id,
            id=event_id,
            status=updated.delivery_status.value,
            retry_count=updated.retry_count
        )
        return updated, True

    async def purge_expired(self) -> int:
        return self.cleanup_expired()

    async def health_check(self) -> bool:
        """In-memory store is always healthy."""
        return True

    def cleanup_expired(self) -> int:
        """
        Remove all expired events from the store

        Returns:
            Number of events removed
        """
        now = self._clock()
        removed = 0
        with self._lock:
            for tenant_events in self._events.values():
                expired_ids = [
                    event_id for event_id, e in tenant_events.items()
                    if e.is_expired(now)
                ]
                for event_id in expired_ids:
                    del tenant_events[event_id]
                removed += len(expired_ids)

        if removed:
            log.info("events.purged", count=removed, store="memory")
        return removed

    def shutdown(self) -> None:
        """Shutdown the store and cancel the cleanup timer"""
        self._shutdown = True
        if self._cleanup_timer:
            self._cleanup_timer.cancel()
        log.info("event_store.shutdown", store="memory")

    def _get_live(self, tenant_id: str, event_id: str) -> Event:
        event = self._events.get(tenant_id, {}).get(event_id)
        if event is None or event.is_expired(self._clock()):
            raise EventNotFoundError(f"event {event_id} not found")
        return event

    def _schedule_cleanup(self) -> None:
        if self._shutdown:
            return

        self._cleanup_timer = threading.Timer(
            self._cleanup_interval,
            self._run_cleanup
        )
        self._cleanup_timer.daemon = True
        self._cleanup_timer.start()

    def _run_cleanup(self) -> None:
        try:
            self.cleanup_expired()
        except Exception as e:
            log.error("events.purge_failed", error=str(e), store="memory")
        finally:
            if not self._shutdown:
                self._schedule_cleanup()
