"""Base interface for event store backends."""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Iterable
from ..errors import ValidationError
from ..event_models import DeliveryStatus, Event, EventsFilter


def require_tenant(tenant_id: str | None, event: Event | None = None) -> str:
    """
    Validate the tenant binding of a store call.

    A missing tenant, or an event already bound to another tenant, is
    rejected instead of falling back to a shared namespace.
    """
    if not tenant_id or not isinstance(tenant_id, str) or ":" in tenant_id:
        raise ValidationError("a non-empty tenant id without ':' is required")
    if event is not None and event.tenant_id is not None and event.tenant_id != tenant_id:
        raise ValidationError(
            f"event {event.id} is bound to another tenant"
        )
    return tenant_id


def plan_status_update(
    event: Event,
    status: DeliveryStatus,
    error: str | None,
    next_attempt_ts: datetime | None,
    expected_retry_count: int | None,
) -> Event | None:
    """
    Compute the record resulting from a delivery status transition.

    Returns None when the transition is a no-op: the event is already
    delivered, or ``expected_retry_count`` shows the attempt was recorded
    by another worker.

    Raises:
        ValidationError: If the transition moves an event back to
            not-delivered
    """
    if status == DeliveryStatus.NOT_DELIVERED:
        raise ValidationError("events cannot move back to not-delivered")
    if event.delivery_status == DeliveryStatus.DELIVERED:
        return None
    if expected_retry_count is not None and event.retry_count != expected_retry_count:
        return None

    if status == DeliveryStatus.DELIVERED:
        return event.model_copy(update={
            "delivery_status": DeliveryStatus.DELIVERED,
            "next_attempt_ts": None,
            "last_error": None,
        })
    return event.model_copy(update={
        "delivery_status": DeliveryStatus.FAILED,
        "retry_count": event.retry_count + 1,
        "next_attempt_ts": next_attempt_ts,
        "last_error": error,
    })


def select_pending(
    events: Iterable[Event],
    max_retries: int,
    limit: int,
    now: datetime | None = None,
) -> list[Event]:
    """
    Pick events owed a delivery attempt from a log in insertion order.

    With ``now`` given, an event still backing off is skipped together with
    every later event of its device, and skipped events do not count
    against ``limit``, so one stuck device cannot starve the others.
    """
    selected: list[Event] = []
    waiting_devices: set[str] = set()
    for event in events:
        if len(selected) >= limit:
            break
        if event.delivery_status == DeliveryStatus.DELIVERED or event.retry_count >= max_retries:
            continue
        if now is not None:
            if event.device_id in waiting_devices:
                continue
            if event.next_attempt_ts is not None and event.next_attempt_ts > now:
                waiting_devices.add(event.device_id)
                continue
        selected.append(event)
    return selected


class EventStore(ABC):
    """
    Append-only, tenant-scoped log of domain events.

    Every operation takes the tenant explicitly. Reads never return an
    event whose ``expire_ts`` has elapsed, whether or not it has been
    physically purged yet.
    """

    def __init__(self, retention: timedelta):
        self.retention = retention

    @abstractmethod
    async def append(self, tenant_id: str, event: Event) -> Event:
        """
        Append an event to the tenant's log.

        Stamps ``tenant_id``, ``event_ts``, ``expire_ts`` and resets the
        delivery fields.

        Returns:
            The stored event

        Raises:
            DuplicateEventError: If the event id already exists for the tenant
            ValidationError: If the tenant binding is missing or conflicting
        """
        pass

    @abstractmethod
    async def get(self, tenant_id: str, event_id: str) -> Event:
        """
        Fetch a single event.

        Raises:
            EventNotFoundError: If absent or expired
        """
        pass

    @abstractmethod
    async def query(
        self,
        tenant_id: str,
        filter: EventsFilter | None = None,
        skip: int = 0,
        limit: int = 20,
    ) -> list[Event]:
        """
        Query the tenant's log.

        Results are ordered by ``event_ts`` ascending, ties broken by
        insertion order. ``skip``/``limit`` are plain offsets over the
        filtered sequence, so a page boundary shifts when earlier events
        expire between two reads.
        """
        pass

    @abstractmethod
    async def pending(
        self,
        tenant_id: str,
        max_retries: int,
        limit: int = 100,
        now: datetime | None = None,
    ) -> list[Event]:
        """
        List events still owed a delivery attempt, oldest first.

        Includes not-delivered events and failed events with
        ``retry_count < max_retries``. Without ``now`` events still backing
        off are included; with ``now`` they are skipped along with later
        events of the same device (see ``select_pending``).
        """
        pass

    async def update_status(
        self,
        tenant_id: str,
        event_id: str,
        status: DeliveryStatus,
        error: str | None = None,
        next_attempt_ts: datetime | None = None,
        expected_retry_count: int | None = None,
    ) -> Event:
        """
        Conditionally transition an event's delivery status.

        Delivered events never change. Moving to failed increments
        ``retry_count``. When ``expected_retry_count`` is given and does not
        match the stored count, the call is a no-op.

        Returns:
            The event after the update (or unchanged, for a no-op)

        Raises:
            EventNotFoundError: If absent or expired
            ValidationError: On a transition back to not-delivered
        """
        event, _ = await self.apply_status(
            tenant_id, event_id, status, error, next_attempt_ts, expected_retry_count
        )
        return event

    @abstractmethod
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
        Like ``update_status``, also telling whether the transition was
        applied (False for a no-op).
        """
        pass

    @abstractmethod
    async def purge_expired(self) -> int:
        """
        Physically remove expired events.

        Returns:
            Number of events removed
        """
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check if the backend is healthy and accessible.

        Returns:
            True if backend is healthy, False otherwise
        """
        pass
