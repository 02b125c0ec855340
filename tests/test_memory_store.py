"""Tests for the in-memory event store."""
import asyncio
import pytest
from datetime import timedelta
from shadowsync.errors import DuplicateEventError, EventNotFoundError, ValidationError
from shadowsync.event_models import (
    DeliveryStatus,
    DeviceDecommissionedEvent,
    DeviceProvisionedEvent,
    DeviceStatusChangedEvent,
    EventsFilter,
    EventType,
)
from shadowsync.store.memory import InMemoryEventStore


def provisioned(device_id: str, **kwargs):
    return DeviceProvisionedEvent(data={"device_id": device_id}, **kwargs)


def status_changed(device_id: str, new_status: str, **kwargs):
    return DeviceStatusChangedEvent(data={"device_id": device_id, "new_status": new_status}, **kwargs)


def decommissioned(device_id: str, **kwargs):
    return DeviceDecommissionedEvent(data={"device_id": device_id}, **kwargs)


@pytest.fixture
def store(clock):
    return InMemoryEventStore(timedelta(hours=1), cleanup_interval_seconds=None, clock=clock)


@pytest.mark.asyncio
async def test_append_stamps_event(store, clock):
    """Test that append binds the tenant and sets timestamps and delivery state."""
    stored = await store.append("t1", provisioned("dev-1"))

    assert stored.id
    assert stored.tenant_id == "t1"
    assert stored.event_ts == clock.now
    assert stored.expire_ts == clock.now + timedelta(hours=1)
    assert stored.delivery_status == DeliveryStatus.NOT_DELIVERED
    assert stored.retry_count == 0


@pytest.mark.asyncio
async def test_append_resets_delivery_fields(store):
    event = provisioned("dev-1", delivery_status=DeliveryStatus.DELIVERED, retry_count=4)

    stored = await store.append("t1", event)

    assert stored.delivery_status == DeliveryStatus.NOT_DELIVERED
    assert stored.retry_count == 0


@pytest.mark.asyncio
async def test_query_returns_events_in_insertion_order(store):
    """Three events of different kinds come back in the order they were appended."""
    await store.append("t1", status_changed("foo", "bar"))
    await store.append("t1", decommissioned("bar"))
    await store.append("t1", provisioned("baz"))

    events = await store.query("t1", EventsFilter(), 0, 10)

    assert [e.type for e in events] == [
        EventType.DEVICE_STATUS_CHANGED,
        EventType.DEVICE_DECOMMISSIONED,
        EventType.DEVICE_PROVISIONED,
    ]
    assert events[0].data.model_dump() == {"device_id": "foo", "new_status": "bar", "fields": {}}
    assert events[1].data.model_dump() == {"device_id": "bar"}
    assert events[2].data.model_dump() == {"device_id": "baz"}


@pytest.mark.asyncio
async def test_skip_and_limit_select_second_oldest(store, clock):
    for device_id in ["foo", "bar", "baz", "foo-bar-baz"]:
        await store.append("t1", provisioned(device_id))
        clock.advance(seconds=1)

    events = await store.query("t1", skip=1, limit=1)

    assert len(events) == 1
    assert events[0].device_id == "bar"


@pytest.mark.asyncio
async def test_tenants_are_isolated(store):
    stored = await store.append("t1", provisioned("dev-1"))

    assert await store.query("t2") == []
    with pytest.raises(EventNotFoundError):
        await store.get("t2", stored.id)
    with pytest.raises(EventNotFoundError):
        await store.update_status("t2", stored.id, DeliveryStatus.DELIVERED)

    assert (await store.get("t1", stored.id)).delivery_status == DeliveryStatus.NOT_DELIVERED


@pytest.mark.asyncio
@pytest.mark.parametrize("tenant_id", ["", None, "a:b"])
async def test_append_without_valid_tenant_fails_closed(store, tenant_id):
    with pytest.raises(ValidationError):
        await store.append(tenant_id, provisioned("dev-1"))
    assert await store.query("t1") == []


@pytest.mark.asyncio
async def test_append_rejects_event_bound_to_other_tenant(store):
    with pytest.raises(ValidationError):
        await store.append("t1", provisioned("dev-1", tenant_id="t2"))


@pytest.mark.asyncio
async def test_duplicate_id_rejected_and_store_unchanged(store):
    await store.append("t1", provisioned("foo", id="evt-1"))

    with pytest.raises(DuplicateEventError) as exc_info:
        await store.append("t1", decommissioned("bar", id="evt-1"))

    assert exc_info.value.event_id == "evt-1"
    events = await store.query("t1")
    assert len(events) == 1
    assert events[0].type == EventType.DEVICE_PROVISIONED
    assert events[0].device_id == "foo"


@pytest.mark.asyncio
async def test_same_id_allowed_in_other_tenant(store):
    await store.append("t1", provisioned("foo", id="evt-1"))
    stored = await store.append("t2", provisioned("foo", id="evt-1"))

    assert stored.tenant_id == "t2"


@pytest.mark.asyncio
async def test_concurrent_duplicate_appends_record_once(store):
    results = await asyncio.gather(
        *[store.append("t1", provisioned("foo", id="evt-1")) for _ in range(5)],
        return_exceptions=True,
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, DuplicateEventError) for r in results if isinstance(r, Exception))
    assert len(await store.query("t1")) == 1


@pytest.mark.asyncio
async def test_event_ts_never_decreases(store, clock):
    """A clock stepping backwards does not reorder the log."""
    first = await store.append("t1", provisioned("dev-1"))
    clock.advance(seconds=-5)
    second = await store.append("t1", provisioned("dev-2"))
    clock.advance(seconds=10)
    third = await store.append("t1", provisioned("dev-3"))

    assert second.event_ts == first.event_ts
    assert third.event_ts > second.event_ts
    events = await store.query("t1")
    assert [e.id for e in events] == [first.id, second.id, third.id]


@pytest.mark.asyncio
@pytest.mark.parametrize("retention", [timedelta(0), timedelta(seconds=-30)])
async def test_expired_on_append_never_returned(clock, retention):
    store = InMemoryEventStore(retention, cleanup_interval_seconds=None, clock=clock)

    stored = await store.append("t1", provisioned("dev-1"))

    assert await store.query("t1") == []
    assert await store.pending("t1", max_retries=5) == []
    with pytest.raises(EventNotFoundError):
        await store.get("t1", stored.id)


@pytest.mark.asyncio
async def test_events_expire_after_retention(store, clock):
    await store.append("t1", provisioned("dev-1"))
    clock.advance(minutes=30)
    await store.append("t1", provisioned("dev-2"))

    clock.advance(minutes=31)
    events = await store.query("t1")
    assert [e.device_id for e in events] == ["dev-2"]

    assert await store.purge_expired() == 1
    assert store.cleanup_expired() == 0


@pytest.mark.asyncio
async def test_expired_id_can_be_reused(store, clock):
    await store.append("t1", provisioned("dev-1", id="evt-1"))
    clock.advance(hours=2)
    await store.append("t1", provisioned("dev-2"))

    stored = await store.append("t1", provisioned("dev-3", id="evt-1"))

    events = await store.query("t1")
    assert [e.device_id for e in events] == ["dev-2", "dev-3"]
    assert events[-1].id == stored.id


@pytest.mark.asyncio
async def test_offset_pages_shift_when_earlier_events_expire(store, clock):
    """Offset pagination is not cursor-stable: an expiry between reads shifts later pages."""
    await store.append("t1", provisioned("e1"))
    clock.advance(minutes=10)
    for device_id in ["e2", "e3", "e4"]:
        await store.append("t1", provisioned(device_id))

    first_page = await store.query("t1", skip=0, limit=2)
    assert [e.device_id for e in first_page] == ["e1", "e2"]

    clock.advance(minutes=55)  # e1 expires, e2..e4 are still live
    second_page = await store.query("t1", skip=2, limit=2)
    assert [e.device_id for e in second_page] == ["e4"]


@pytest.mark.asyncio
async def test_query_filters(store, clock):
    await store.append("t1", provisioned("dev-1"))
    clock.advance(seconds=10)
    changed = await store.append("t1", status_changed("dev-1", "online"))
    clock.advance(seconds=10)
    await store.append("t1", provisioned("dev-2"))
    await store.update_status("t1", changed.id, DeliveryStatus.DELIVERED)

    by_device = await store.query("t1", EventsFilter(device_id="dev-1"))
    assert len(by_device) == 2

    by_type = await store.query("t1", EventsFilter(type=EventType.DEVICE_PROVISIONED))
    assert [e.device_id for e in by_type] == ["dev-1", "dev-2"]

    by_status = await store.query("t1", EventsFilter(status=DeliveryStatus.DELIVERED))
    assert [e.id for e in by_status] == [changed.id]

    by_range = await store.query("t1", EventsFilter(since=changed.event_ts, until=clock.now))
    assert [e.id for e in by_range] == [changed.id]


@pytest.mark.asyncio
async def test_update_status_delivered_is_idempotent(store):
    stored = await store.append("t1", provisioned("dev-1"))

    first = await store.update_status("t1", stored.id, DeliveryStatus.DELIVERED)
    second = await store.update_status("t1", stored.id, DeliveryStatus.DELIVERED)

    assert first.delivery_status == DeliveryStatus.DELIVERED
    assert second == first


@pytest.mark.asyncio
async def test_update_status_failed_counts_attempts(store, clock):
    stored = await store.append("t1", provisioned("dev-1"))
    retry_at = clock.now + timedelta(seconds=30)

    failed = await store.update_status(
        "t1", stored.id, DeliveryStatus.FAILED, error="timeout", next_attempt_ts=retry_at
    )
    assert failed.delivery_status == DeliveryStatus.FAILED
    assert failed.retry_count == 1
    assert failed.next_attempt_ts == retry_at
    assert failed.last_error == "timeout"

    again = await store.update_status("t1", stored.id, DeliveryStatus.FAILED, error="timeout")
    assert again.retry_count == 2

    delivered = await store.update_status("t1", stored.id, DeliveryStatus.DELIVERED)
    assert delivered.delivery_status == DeliveryStatus.DELIVERED
    assert delivered.retry_count == 2
    assert delivered.next_attempt_ts is None


@pytest.mark.asyncio
async def test_delivered_never_regresses(store):
    stored = await store.append("t1", provisioned("dev-1"))
    await store.update_status("t1", stored.id, DeliveryStatus.DELIVERED)

    result = await store.update_status("t1", stored.id, DeliveryStatus.FAILED, error="late failure")

    assert result.delivery_status == DeliveryStatus.DELIVERED
    assert result.retry_count == 0
    assert (await store.get("t1", stored.id)).delivery_status == DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_cannot_move_back_to_not_delivered(store):
    stored = await store.append("t1", provisioned("dev-1"))
    await store.update_status("t1", stored.id, DeliveryStatus.FAILED)

    with pytest.raises(ValidationError):
        await store.update_status("t1", stored.id, DeliveryStatus.NOT_DELIVERED)


@pytest.mark.asyncio
async def test_stale_expected_retry_count_is_noop(store):
    """A second worker recording the same failed attempt does not count it twice."""
    stored = await store.append("t1", provisioned("dev-1"))

    await store.update_status("t1", stored.id, DeliveryStatus.FAILED, expected_retry_count=0)
    result = await store.update_status("t1", stored.id, DeliveryStatus.FAILED, expected_retry_count=0)

    assert result.retry_count == 1


@pytest.mark.asyncio
async def test_apply_status_reports_noop(store):
    stored = await store.append("t1", provisioned("dev-1"))

    first, applied = await store.apply_status("t1", stored.id, DeliveryStatus.FAILED, expected_retry_count=0)
    second, again = await store.apply_status("t1", stored.id, DeliveryStatus.FAILED, expected_retry_count=0)

    assert applied is True
    assert again is False
    assert first.retry_count == second.retry_count == 1


@pytest.mark.asyncio
async def test_update_unknown_event(store):
    with pytest.raises(EventNotFoundError):
        await store.update_status("t1", "missing", DeliveryStatus.DELIVERED)


@pytest.mark.asyncio
async def test_pending_excludes_delivered_and_exhausted(store):
    delivered = await store.append("t1", provisioned("dev-1"))
    exhausted = await store.append("t1", provisioned("dev-2"))
    retrying = await store.append("t1", provisioned("dev-3"))
    fresh = await store.append("t1", provisioned("dev-4"))

    await store.update_status("t1", delivered.id, DeliveryStatus.DELIVERED)
    for _ in range(2):
        await store.update_status("t1", exhausted.id, DeliveryStatus.FAILED)
    await store.update_status("t1", retrying.id, DeliveryStatus.FAILED)

    pending = await store.pending("t1", max_retries=2)

    assert [e.id for e in pending] == [retrying.id, fresh.id]
    assert [e.id for e in await store.pending("t1", max_retries=2, limit=1)] == [retrying.id]


@pytest.mark.asyncio
async def test_pending_skips_backing_off_device_without_using_limit(store, clock):
    """Events of a device still backing off do not take slots from other devices."""
    waiting = await store.append("t1", provisioned("dev-1"))
    queued = await store.append("t1", status_changed("dev-1", "ok"))
    other = await store.append("t1", provisioned("dev-2"))
    await store.update_status(
        "t1", waiting.id, DeliveryStatus.FAILED, next_attempt_ts=clock.now + timedelta(seconds=30)
    )

    due = await store.pending("t1", max_retries=5, limit=1, now=clock.now)
    assert [e.id for e in due] == [other.id]

    later = await store.pending("t1", max_retries=5, limit=2, now=clock.now + timedelta(seconds=30))
    assert [e.id for e in later] == [waiting.id, queued.id]

    assert [e.id for e in await store.pending("t1", max_retries=5, limit=1)] == [waiting.id]


@pytest.mark.asyncio
async def test_shutdown_cancels_cleanup_timer(clock):
    store = InMemoryEventStore(timedelta(hours=1), cleanup_interval_seconds=60, clock=clock)
    assert store._cleanup_timer is not None

    store.shutdown()

    assert store._cleanup_timer.finished.is_set()
    assert await store.health_check() is True
