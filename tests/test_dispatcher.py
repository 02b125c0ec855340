"""Tests for the event dispatcher."""
import asyncio
import pytest
from datetime import timedelta
from shadowsync.errors import EventNotFoundError, RetryExhaustedError, ValidationError
from shadowsync.event_models import DeliveryStatus, DeviceProvisionedEvent, DeviceStatusChangedEvent
from shadowsync.metrics import Metrics
from shadowsync.services.dispatcher import DeliveryReport, EventDispatcher
from shadowsync.services.sinks import CallbackSink
from shadowsync.store.memory import InMemoryEventStore


class RecordingConsumer:
    """Callback target that records deliveries and fails for selected events."""

    def __init__(self):
        self.received: list[str] = []
        self.failing: set[str] = set()

    async def __call__(self, tenant_id, event):
        await asyncio.sleep(0)
        if event.id in self.failing:
            raise RuntimeError("consumer unavailable")
        self.received.append(event.id)


@pytest.fixture
def store(clock):
    return InMemoryEventStore(timedelta(days=7), cleanup_interval_seconds=None, clock=clock)


@pytest.fixture
def metrics():
    return Metrics(service_name="test")


@pytest.fixture
def dispatcher(store, metrics, clock):
    return EventDispatcher(
        store,
        max_retries=3,
        backoff_base=30.0,
        backoff_max=100.0,
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def consumer():
    return RecordingConsumer()


@pytest.fixture
def sink(consumer):
    return CallbackSink(consumer)


async def append(store, device_id, tenant_id="t1"):
    return await store.append(tenant_id, DeviceProvisionedEvent(data={"device_id": device_id}))


def test_backoff_doubles_up_to_the_cap(dispatcher):
    assert dispatcher.backoff(1) == timedelta(seconds=30)
    assert dispatcher.backoff(2) == timedelta(seconds=60)
    assert dispatcher.backoff(3) == timedelta(seconds=100)
    assert dispatcher.backoff(10) == timedelta(seconds=100)


@pytest.mark.asyncio
async def test_deliver_marks_events_delivered(dispatcher, store, sink, consumer, metrics):
    first = await append(store, "dev-1")
    second = await append(store, "dev-2")

    report = await dispatcher.deliver("t1", sink)

    assert report.delivered == [first.id, second.id]
    assert report.attempted == 2
    assert consumer.received == [first.id, second.id]
    assert (await store.get("t1", first.id)).delivery_status == DeliveryStatus.DELIVERED
    assert metrics.registry.get_sample_value(
        "shadowsync_delivery_attempts_total", {"outcome": "delivered"}
    ) == 2

    again = await dispatcher.deliver("t1", sink)
    assert again.attempted == 0
    assert consumer.received == [first.id, second.id]


@pytest.mark.asyncio
async def test_failed_delivery_backs_off(dispatcher, store, sink, consumer, clock):
    """A failed event is not retried before its backoff elapses, and is retried after."""
    event = await append(store, "dev-1")
    consumer.failing.add(event.id)

    report = await dispatcher.deliver("t1", sink)

    assert report.failed == [event.id]
    failed = await store.get("t1", event.id)
    assert failed.delivery_status == DeliveryStatus.FAILED
    assert failed.retry_count == 1
    assert failed.next_attempt_ts == clock.now + timedelta(seconds=30)
    assert failed.last_error == "RuntimeError: consumer unavailable"

    consumer.failing.clear()
    clock.advance(seconds=10)
    early = await dispatcher.deliver("t1", sink)
    assert early.deferred == []
    assert early.attempted == 0
    assert consumer.received == []

    clock.advance(seconds=25)
    late = await dispatcher.deliver("t1", sink)
    assert late.delivered == [event.id]
    delivered = await store.get("t1", event.id)
    assert delivered.delivery_status == DeliveryStatus.DELIVERED
    assert delivered.retry_count == 1


@pytest.mark.asyncio
async def test_retries_are_exhausted(dispatcher, store, sink, consumer, clock, metrics):
    event = await append(store, "dev-1")
    consumer.failing.add(event.id)

    outcomes = []
    for _ in range(3):
        report = await dispatcher.deliver("t1", sink)
        outcomes.append((report.failed, report.exhausted))
        clock.advance(seconds=200)

    assert outcomes == [([event.id], []), ([event.id], []), ([], [event.id])]
    exhausted = await store.get("t1", event.id)
    assert exhausted.retry_count == 3
    assert exhausted.next_attempt_ts is None
    assert exhausted.is_exhausted(3)
    assert await store.pending("t1", max_retries=3) == []
    assert (await dispatcher.deliver("t1", sink)).attempted == 0
    assert metrics.registry.get_sample_value(
        "shadowsync_delivery_attempts_total", {"outcome": "exhausted"}
    ) == 1


@pytest.mark.asyncio
async def test_later_events_of_a_device_wait_for_earlier_ones(dispatcher, store, sink, consumer, clock):
    blocked = await append(store, "dev-1")
    queued = await append(store, "dev-1")
    other = await append(store, "dev-2")
    consumer.failing.add(blocked.id)

    report = await dispatcher.deliver("t1", sink)

    assert report.failed == [blocked.id]
    assert report.deferred == [queued.id]
    assert report.delivered == [other.id]
    assert consumer.received == [other.id]

    consumer.failing.clear()
    clock.advance(seconds=31)
    report = await dispatcher.deliver("t1", sink)
    assert report.delivered == [blocked.id, queued.id]


@pytest.mark.asyncio
async def test_concurrent_passes_count_one_failure(dispatcher, store, sink, consumer):
    event = await append(store, "dev-1")
    consumer.failing.add(event.id)

    await asyncio.gather(dispatcher.deliver("t1", sink), dispatcher.deliver("t1", sink))

    assert (await store.get("t1", event.id)).retry_count == 1


@pytest.mark.asyncio
async def test_redeliver_ignores_backoff(dispatcher, store, sink, consumer):
    event = await append(store, "dev-1")
    consumer.failing.add(event.id)
    await dispatcher.deliver("t1", sink)
    consumer.failing.clear()

    result = await dispatcher.redeliver("t1", event.id, sink)

    assert result.delivery_status == DeliveryStatus.DELIVERED
    assert consumer.received == [event.id]


@pytest.mark.asyncio
async def test_redeliver_of_exhausted_event_requires_force(dispatcher, store, sink, consumer, clock):
    event = await append(store, "dev-1")
    consumer.failing.add(event.id)
    for _ in range(3):
        await dispatcher.deliver("t1", sink)
        clock.advance(seconds=200)
    consumer.failing.clear()

    with pytest.raises(RetryExhaustedError):
        await dispatcher.redeliver("t1", event.id, sink)
    assert consumer.received == []

    result = await dispatcher.redeliver("t1", event.id, sink, force=True)
    assert result.delivery_status == DeliveryStatus.DELIVERED


@pytest.mark.asyncio
async def test_redeliver_of_delivered_event_is_noop(dispatcher, store, sink, consumer):
    event = await append(store, "dev-1")
    await dispatcher.deliver("t1", sink)

    result = await dispatcher.redeliver("t1", event.id, sink)

    assert result.delivery_status == DeliveryStatus.DELIVERED
    assert consumer.received == [event.id]


@pytest.mark.asyncio
async def test_redeliver_unknown_event(dispatcher, sink):
    with pytest.raises(EventNotFoundError):
        await dispatcher.redeliver("t1", "missing", sink)


@pytest.mark.asyncio
async def test_deliver_is_tenant_scoped(dispatcher, store, sink, consumer):
    await append(store, "dev-1", tenant_id="t2")
    mine = await store.append("t1", DeviceStatusChangedEvent(data={"device_id": "dev-1", "new_status": "ok"}))

    report = await dispatcher.deliver("t1", sink)

    assert consumer.received == [mine.id]
    assert report.tenant_id == "t1"
    with pytest.raises(ValidationError):
        await dispatcher.deliver("", sink)


def test_report_serializes_attempted():
    report = DeliveryReport(tenant_id="t1", delivered=["a"], failed=["b"], deferred=["c"])

    assert report.model_dump()["attempted"] == 2


@pytest.mark.asyncio
async def test_backing_off_device_does_not_starve_others(store, sink, consumer, clock):
    """A device whose backlog fills the batch must not keep other devices waiting."""
    dispatcher = EventDispatcher(
        store, max_retries=10, backoff_base=1.0, backoff_max=60.0, batch_size=2, clock=clock
    )
    first = await append(store, "dev-a")
    second = await append(store, "dev-a")
    other = await append(store, "dev-b")
    consumer.failing.update({first.id, second.id})

    for _ in range(5):
        await dispatcher.deliver("t1", sink)
        clock.advance(seconds=1)

    assert consumer.received == [other.id]
    assert (await store.get("t1", other.id)).delivery_status == DeliveryStatus.DELIVERED
    assert (await store.get("t1", second.id)).delivery_status == DeliveryStatus.NOT_DELIVERED


@pytest.mark.asyncio
async def test_failure_after_concurrent_delivery_is_not_counted(dispatcher, store, metrics):
    """The consumer fails, but another worker already delivered the event."""
    event = await append(store, "dev-1")

    async def delivered_elsewhere(tenant_id, evt):
        await store.update_status(tenant_id, evt.id, DeliveryStatus.DELIVERED)
        raise RuntimeError("connection reset")

    report = await dispatcher.deliver("t1", CallbackSink(delivered_elsewhere))

    assert report.failed == []
    assert report.exhausted == []
    assert (await store.get("t1", event.id)).delivery_status == DeliveryStatus.DELIVERED
    assert metrics.registry.get_sample_value(
        "shadowsync_delivery_attempts_total", {"outcome": "failed"}
    ) is None


@pytest.mark.asyncio
async def test_failure_recorded_by_another_worker_is_not_counted(dispatcher, store, metrics):
    event = await append(store, "dev-1")

    async def failed_elsewhere(tenant_id, evt):
        await store.update_status(
            tenant_id, evt.id, DeliveryStatus.FAILED, error="timeout", expected_retry_count=0
        )
        raise RuntimeError("consumer unavailable")

    report = await dispatcher.deliver("t1", CallbackSink(failed_elsewhere))

    assert report.failed == []
    stored = await store.get("t1", event.id)
    assert stored.retry_count == 1
    assert stored.last_error == "timeout"
    assert metrics.registry.get_sample_value(
        "shadowsync_delivery_attempts_total", {"outcome": "failed"}
    ) is None
