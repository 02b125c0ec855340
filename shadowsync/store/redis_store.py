"""Redis event store backend.

Layout per tenant:

- ``{prefix}:event:{tenant}:{id}`` JSON document, expiring natively at ``expire_ts``
- ``{prefix}:events:{tenant}`` sorted set of event ids scored by insertion sequence
- ``{prefix}:seq:{tenant}`` insertion sequence counter

plus ``{prefix}:tenants``, the set of tenants the sweep walks. Documents
vanish on their own when they expire; ``purge_expired`` removes the ids
they leave behind in the ordering index.
"""
import asyncio
import threading
from datetime import datetime, timedelta
from typing import Callable, Iterator
import structlog
import orjson
from redis import Redis
from redis.exceptions import RedisError, WatchError
from .base import EventStore, plan_status_update, require_tenant, select_pending
from ..config import get_settings
from ..errors import DuplicateEventError, EventNotFoundError
from ..event_models import DeliveryStatus, Event, EventAdapter, EventsFilter, utcnow

log = structlog.get_logger()


class RedisEventStore(EventStore):
    """Redis implementation of the event store."""

    def __init__(
        self,
        retention: timedelta,
        redis_url: str | None = None,
        key_prefix: str = "shadowsync",
        clock: Callable[[], datetime] = utcnow,
        scan_batch: int = 200,
    ):
        """
        Initialize Redis event store.

        Args:
            retention: How long events stay readable after append
            redis_url: Redis connection URL (defaults to settings.REDIS_URL)
            key_prefix: Namespace for all keys written by the store
            clock: Source of the current time
            scan_batch: Number of index entries fetched per round trip
        """
        super().__init__(retention)
        self.redis_url = redis_url or str(get_settings().REDIS_URL)
        self._client: Redis | None = None
        self._prefix = key_prefix
        self._clock = clock
        self._scan_batch = scan_batch
        # event_ts is clamped per process to keep it non-decreasing
        self._last_ts: dict[str, datetime] = {}
        self._ts_lock = threading.Lock()
        self._sweep_task: asyncio.Task | None = None

    def _get_client(self) -> Redis:
        """Get or create Redis client."""
        if self._client is None:
            self._client = Redis.from_url(
                self.redis_url,
                decode_responses=False,
                socket_connect_timeout=5,
                socket_timeout=5
            )
        return self._client

    def _event_key(self, tenant_id: str, event_id: str) -> str:
        return f"{self._prefix}:event:{tenant_id}:{event_id}"

    def _index_key(self, tenant_id: str) -> str:
        return f"{self._prefix}:events:{tenant_id}"

    def _seq_key(self, tenant_id: str) -> str:
        return f"{self._prefix}:seq:{tenant_id}"

    @property
    def _tenants_key(self) -> str:
        return f"{self._prefix}:tenants"

    @staticmethod
    def _encode(event: Event) -> bytes:
        return orjson.dumps(event.model_dump(mode="json"))

    def _decode(self, tenant_id: str, raw: bytes | None) -> Event | None:
        if raw is None:
            return None
        event = EventAdapter.validate_json(raw)
        if event.tenant_id != tenant_id:
            log.error("event.tenant_mismatch", tenant_id=tenant_id, id=event.id)
            return None
        return event

    def _next_event_ts(self, tenant_id: str) -> datetime:
        now = self._clock()
        with self._ts_lock:
            event_ts = max(now, self._last_ts.get(tenant_id, now))
            self._last_ts[tenant_id] = event_ts
        return event_ts

    async def append(self, tenant_id: str, event: Event) -> Event:
        """
        Append an event.

        The document write (``SET NX``) and the index insert run in one
        MULTI/EXEC, so a duplicate id leaves both untouched. An id reused
        after its document expired still has its old index entry, which is
        moved to the new sequence so the event sorts after older ones.

        Raises:
            DuplicateEventError: If the event id already exists for the tenant
            RedisError: If unable to write to Redis
        """
        require_tenant(tenant_id, event)
        event_ts = self._next_event_ts(tenant_id)
        stored = event.model_copy(update={
            "tenant_id": tenant_id,
            "event_ts": event_ts,
            "expire_ts": event_ts + self.retention,
            "delivery_status": DeliveryStatus.NOT_DELIVERED,
            "retry_count": 0,
            "next_attempt_ts": None,
            "last_error": None,
        })

        try:
            client = self._get_client()
            seq = client.incr(self._seq_key(tenant_id))

            pipe = client.pipeline(transaction=True)
            pipe.set(
                self._event_key(tenant_id, stored.id),
                self._encode(stored),
                nx=True,
                pxat=int(stored.expire_ts.timestamp() * 1000),
            )
            pipe.zadd(self._index_key(tenant_id), {stored.id: seq}, nx=True)
            pipe.sadd(self._tenants_key, tenant_id)
            created, indexed, _ = pipe.execute()

            if created and not indexed:
                # id reused after its document expired; move it to the tail
                client.zadd(self._index_key(tenant_id), {stored.id: seq}, xx=True, gt=True)

        except RedisError as e:
            log.error("redis.append_failed", error=str(e), tenant_id=tenant_id, id=stored.id)
            raise

        if not created:
            raise DuplicateEventError(tenant_id, stored.id)

        log.info(
            "event.appended",
            tenant_id=tenant_id,
            id=stored.id,
            type=stored.type,
            device_id=stored.device_id,
            store="redis"
        )
        return stored

    async def get(self, tenant_id: str, event_id: str) -> Event:
        require_tenant(tenant_id)
        client = self._get_client()
        event = self._decode(tenant_id, client.get(self._event_key(tenant_id, event_id)))
        if event is None or event.is_expired(self._clock()):
            raise EventNotFoundError(f"event {event_id} not found")
        return event

    def _iter_live(self, client: Redis, tenant_id: str) -> Iterator[Event]:
        """Yield the tenant's unexpired events in index order."""
        now = self._clock()
        index_key = self._index_key(tenant_id)
        start = 0
        while True:
            ids = client.zrange(index_key, start, start + self._scan_batch - 1)
            if not ids:
                return
            keys = [self._event_key(tenant_id, i.decode()) for i in ids]
            for raw in client.mget(keys):
                event = self._decode(tenant_id, raw)
                if event is not None and not event.is_expired(now):
                    yield event
            start += len(ids)

    async def query(
        self,
        tenant_id: str,
        filter: EventsFilter | None = None,
        skip: int = 0,
        limit: int = 20,
    ) -> list[Event]:
        require_tenant(tenant_id)
        filter = filter or EventsFilter()
        results: list[Event] = []
        if limit <= 0:
            return results
        try:
            client = self._get_client()
            for event in self._iter_live(client, tenant_id):
                if not filter.matches(event):
                    continue
                if skip > 0:
                    skip -= 1
                    continue
                results.append(event)
                if len(results) >= limit:
                    break
        except RedisError as e:
            log.error("redis.query_failed", error=str(e), tenant_id=tenant_id)
            raise
        return results

    async def pending(
        self,
        tenant_id: str,
        max_retries: int,
        limit: int = 100,
        now: datetime | None = None,
    ) -> list[Event]:
        require_tenant(tenant_id)
        client = self._get_client()
        return select_pending(self._iter_live(client, tenant_id), max_retries, limit, now)

    async def apply_status(
        self,
        tenant_id: str,
        event_id: str,
        status: DeliveryStatus,
        error: str | None = None,
        next_attempt_ts: datetime | None = None,
        expected_retry_count: int | None = None,
    ) -> tuple[Event, bool]:
        """
        Transition an event's delivery status under WATCH/MULTI.

        A concurrent writer touching the same document aborts the
        transaction, which is then re-evaluated against the new state.
        """
        require_tenant(tenant_id)
        key = self._event_key(tenant_id, event_id)
        client = self._get_client()

        with client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    current = self._decode(tenant_id, pipe.get(key))
                    if current is None or current.is_expired(self._clock()):
                        raise EventNotFoundError(f"event {event_id} not found")

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

                    pipe.multi()
                    pipe.set(key, self._encode(updated), xx=True, keepttl=True)
                    pipe.execute()
                    break
                except WatchError:
                    log.debug("event.status_update_conflict", tenant_id=tenant_id, id=event_id)
                    continue

        log.info(
            "event.status_updated",
            tenant_id=tenant_id,
            id=event_id,
            status=updated.delivery_status.value,
            retry_count=updated.retry_count
        )
        return updated, True

    async def purge_expired(self) -> int:
        """
        Drop index entries whose documents expired.

        Documents carry their own TTL; anything still present past its
        ``expire_ts`` (clock skew between hosts) is deleted here as well.
        """
        client = self._get_client()
        now = self._clock()
        removed = 0
        for raw_tenant in client.smembers(self._tenants_key):
            tenant_id = raw_tenant.decode()
            index_key = self._index_key(tenant_id)
            stale: list[str] = []
            lingering: list[str] = []
            start = 0
            while True:
                ids = client.zrange(index_key, start, start + self._scan_batch - 1)
                if not ids:
                    break
                event_ids = [i.decode() for i in ids]
                raws = client.mget([self._event_key(tenant_id, i) for i in event_ids])
                for event_id, raw in zip(event_ids, raws):
                    event = self._decode(tenant_id, raw)
                    if event is None or event.is_expired(now):
                        stale.append(event_id)
                    if event is not None and event.is_expired(now):
                        lingering.append(event_id)
                start += len(ids)

            if lingering:
                client.delete(*[self._event_key(tenant_id, i) for i in lingering])
            if stale:
                client.zrem(index_key, *stale)
                removed += len(stale)

        if removed:
            log.info("events.purged", count=removed, store="redis")
        return removed

    def start_sweep(self, interval_seconds: float) -> asyncio.Task:
        """
        Run ``purge_expired`` every ``interval_seconds`` on the running loop.

        Must be called from within the event loop (application startup).
        """
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval_seconds))
            log.info("events.sweep_started", interval_seconds=interval_seconds, store="redis")
        return self._sweep_task

    async def stop_sweep(self) -> None:
        """Cancel the periodic sweep and wait for it to finish."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("events.sweep_stopped", store="redis")

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.purge_expired()
            except RedisError as e:
                log.error("events.purge_failed", error=str(e), store="redis")

    async def health_check(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            True if Redis is accessible, False otherwise
        """
        try:
            client = self._get_client()
            return client.ping()
        except Exception as e:
            log.warning("redis.health_check_failed", error=str(e))
            return False

    def close(self):
        """Close Redis connection."""
        if self._client:
            self._client.close()
            self._client = None
