from fastapi import APIRouter, Depends, Query
from datetime import datetime
from .schemas import EventListResponse
from .tenant import get_tenant_id
from ..config import get_settings
from ..dependencies import get_dispatcher, get_event_store, get_sink
from ..errors import ValidationError
from ..event_models import DeliveryStatus, Event, EventsFilter, EventType
from ..services.dispatcher import DeliveryReport, EventDispatcher
from ..services.sinks import EventSink
from ..store.base import EventStore

router = APIRouter(prefix="/v1/events", tags=["events"])
settings = get_settings()


def require_sink(sink: EventSink | None = Depends(get_sink)) -> EventSink:
    if sink is None:
        raise ValidationError("no delivery sink configured (WEBHOOK_URL)")
    return sink


@router.get("", response_model=EventListResponse)
async def list_events(
    device_id: str | None = None,
    type: EventType | None = None,
    status: DeliveryStatus | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=settings.MAX_PAGE_SIZE),
    tenant_id: str = Depends(get_tenant_id),
    store: EventStore = Depends(get_event_store),
):
    filter = EventsFilter(device_id=device_id, type=type, status=status, since=since, until=until)
    events = await store.query(tenant_id, filter, skip=skip, limit=limit)
    return EventListResponse(skip=skip, limit=limit, count=len(events), events=events)


@router.post("/deliveries", response_model=DeliveryReport)
async def deliver_events(
    tenant_id: str = Depends(get_tenant_id),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
    sink: EventSink = Depends(require_sink),
):
    return await dispatcher.deliver(tenant_id, sink)


@router.get("/{event_id}", response_model=Event)
async def get_event(
    event_id: str,
    tenant_id: str = Depends(get_tenant_id),
    store: EventStore = Depends(get_event_store),
):
    return await store.get(tenant_id, event_id)


@router.post("/{event_id}/redeliver", response_model=Event)
async def redeliver_event(
    event_id: str,
    force: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    dispatcher: EventDispatcher = Depends(get_dispatcher),
    sink: EventSink = Depends(require_sink),
):
    return await dispatcher.redeliver(tenant_id, event_id, sink, force=force)
