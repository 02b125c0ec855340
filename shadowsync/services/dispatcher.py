"""Event dispatcher: at-least-once delivery of logged events to a sink."""
import time
from datetime import datetime, timedelta
from typing import Callable
from pydantic import BaseModel, Field, computed_field
import structlog
from .sinks import EventSink
from ..errors import EventNotFoundError, RetryExhaustedError
from ..event_models import DeliveryStatus, Event, utcnow
from ..metrics import Metrics
from ..store.base import EventStore, require_tenant

log = structlog.get_logger()


class DeliveryReport(BaseModel):
    """Outcome of one delivery pass, as lists of event ids."""
    tenant_id: str
    delivered: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list, description="Failed, will be retried")
    exhausted: list[str] = Field(default_factory=list, description="Failed for the last time")
    deferred: list[str] = Field(default_factory=list, description="Queued behind an event of the same device that failed in this pass")

    @computed_field
    @property
    def attempted(self) -> int:
        return len(self.delivered) + len(self.failed) + len(self.exhausted)


class EventDispatcher:
    """
    Delivers pending events oldest first and tracks their delivery state.

    State per event:
    - not-delivered --success--> delivered
    - not-delivered --failure--> failed
    - failed --retry, success--> delivered
    - failed --retry, failure--> failed (terminal once max_retries is reached)

    Retry state lives on the event record (``retry_count``,
    ``next_attempt_ts``), so a restarted dispatcher picks up where the last
    one stopped. A crash between a successful send and the status update
    redelivers the event on the next pass.
    """

    def __init__(
        self,
        store: EventStore,
        max_retries: int = 5,
        backoff_base: float = 30.0,
        backoff_max: float = 3600.0,
        batch_size: int = 100,
        metrics: Metrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            store: Event log to deliver from
            max_retries: Failed attempts after which an event is given up on
            backoff_base: Delay in seconds after the first failure; doubles per failure
            backoff_max: Upper bound for the delay in seconds
            batch_size: Maximum number of pending events examined per pass
            metrics: Optional Prometheus metrics
            clock: Source of the current time
        """
        self.store = store
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.batch_size = batch_size
        self.metrics = metrics
        self._clock = clock

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before the next attempt after ``retry_count`` failures."""
        delay = self.backoff_base * (2 ** max(retry_count - 1, 0))
        return timedelta(seconds=min(delay, self.backoff_max))

    async def deliver(self, tenant_id: str, sink: EventSink) -> DeliveryReport:
        """
        Run one delivery pass for a tenant.

        Events are attempted in log order. A device with an event still
        backing off is skipped by the store without using up the batch.
        Once an event of a device fails in this pass, later events of that
        device are held back so consumers see each device's events in order.
        """
        require_tenant(tenant_id)
        now = self._clock()
        report = DeliveryReport(tenant_id=tenant_id)
        blocked_devices: set[str] = set()

        for event in await self.store.pending(tenant_id, self.max_retries, self.batch_size, now=now):
            if event.device_id in blocked_devices:
                report.deferred.append(event.id)
                continue

            updated = await self._attempt(tenant_id, event, sink, report)
            if updated is not None and updated.delivery_status != DeliveryStatus.DELIVERED:
                blocked_devices.add(event.device_id)

        log.info(
            "delivery.pass_completed",
            tenant_id=tenant_id,
            sink=sink.name,
            attempted=report.attempted,
            delivered=len(report.delivered),
            failed=len(report.failed),
            exhausted=len(report.exhausted),
            deferred=len(report.deferred)
        )
        return report

    async def redeliver(
        self,
        tenant_id: str,
        event_id: str,
        sink: EventSink,
        force: bool = False,
    ) -> Event:
        """
        Attempt one event right away, ignoring its backoff.

        Args:
            force: Also retry an event whose retries are exhausted

        Returns:
            The event after the attempt; delivered events are returned as-is

        Raises:
            EventNotFoundError: If the event is absent or expired
            RetryExhaustedError: If retries are exhausted and ``force`` is False
        """
        require_tenant(tenant_id)
        event = await self.store.get(tenant_id, event_id)
        if event.delivery_status == DeliveryStatus.DELIVERED:
            return event
        if event.is_exhausted(self.max_retries) and not force:
            raise RetryExhaustedError(event.id, event.retry_count)

        log.info("delivery.redeliver", tenant_id=tenant_id, id=event_id, force=force)
        updated = await self._attempt(tenant_id, event, sink, DeliveryReport(tenant_id=tenant_id))
        if updated is None:
            raise EventNotFoundError(f"event {event_id} not found")
        return updated

    async def _attempt(
        self,
        tenant_id: str,
        event: Event,
        sink: EventSink,
        report: DeliveryReport,
    ) -> Event | None:
        start = time.time()
        try:
            await sink.send(tenant_id, event)
        except Exception as e:
            return await self._record_failure(tenant_id, event, str(e) or e.__class__.__name__, report, start)

        try:
            updated = await self.store.update_status(
                tenant_id, event.id, DeliveryStatus.DELIVERED
            )
        except EventNotFoundError:
            log.warning("delivery.event_expired", tenant_id=tenant_id, id=event.id)
            return None

        report.delivered.append(event.id)
        if self.metrics:
            self.metrics.record_delivery("delivered", time.time() - start)
        log.info(
            "delivery.delivered",
            tenant_id=tenant_id,
            id=event.id,
            type=event.type,
            retry_count=event.retry_count
        )
        return updated

    async def _record_failure(
        self,
        tenant_id: str,
        event: Event,
        error: str,
        report: DeliveryReport,
        start: float,
    ) -> Event | None:
        retry_count = event.retry_count + 1
        exhausted = retry_count >= self.max_retries
        next_attempt_ts = None if exhausted else self._clock() + self.backoff(retry_count)

        try:
            updated, applied = await self.store.apply_status(
                tenant_id,
                event.id,
                DeliveryStatus.FAILED,
                error=error,
                next_attempt_ts=next_attempt_ts,
                expected_retry_count=event.retry_count,
            )
        except EventNotFoundError:
            log.warning("delivery.event_expired", tenant_id=tenant_id, id=event.id)
            return None

        if updated.delivery_status == DeliveryStatus.DELIVERED:
            log.info("delivery.already_delivered", tenant_id=tenant_id, id=event.id)
            return updated
        if not applied:
            # another worker recorded this attempt first
            log.info(
                "delivery.failure_already_recorded",
                tenant_id=tenant_id,
                id=event.id,
                retry_count=updated.retry_count
            )
            return updated

        outcome = "exhausted" if exhausted else "failed"
        if self.metrics:
            self.metrics.record_delivery(outcome, time.time() - start)

        if exhausted:
            report.exhausted.append(event.id)
            log.error(
                "delivery.retry_exhausted",
                tenant_id=tenant_id,
                id=event.id,
                type=event.type,
                error=str(RetryExhaustedError(event.id, retry_count)),
                last_error=error
            )
        else:
            report.failed.append(event.id)
            log.warning(
                "delivery.failed",
                tenant_id=tenant_id,
                id=event.id,
                type=event.type,
                retry_count=retry_count,
                next_attempt_ts=next_attempt_ts.isoformat(),
                error=error
            )
        return updated
