"""Domain event models.

An event is one of a closed set of kinds. The ``type`` field is the
discriminator and fixes the shape of ``data``; parsing an unknown type or
a payload that does not fit its type fails validation.
"""
from pydantic import BaseModel, Field, TypeAdapter, field_validator
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class EventType(str, Enum):
    """Supported event kinds."""
    DEVICE_PROVISIONED = "device-provisioned"
    DEVICE_DECOMMISSIONED = "device-decommissioned"
    DEVICE_STATUS_CHANGED = "device-status-changed"


class DeliveryStatus(str, Enum):
    """Delivery state of an event."""
    NOT_DELIVERED = "not-delivered"
    DELIVERED = "delivered"
    FAILED = "failed"


class DeviceProvisionedData(BaseModel):
    device_id: str = Field(..., min_length=1)


class DeviceDecommissionedData(BaseModel):
    device_id: str = Field(..., min_length=1)


class DeviceStatusChangedData(BaseModel):
    device_id: str = Field(..., min_length=1)
    new_status: str
    fields: dict[str, Any] = Field(
        default_factory=dict,
        description="Changed tracked fields and their new values"
    )


class EventBase(BaseModel):
    """Fields shared by every event kind.

    ``tenant_id``, ``event_ts`` and ``expire_ts`` are left unset by callers
    and stamped by the event store on append.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str | None = None
    event_ts: datetime | None = None
    expire_ts: datetime | None = None
    delivery_status: DeliveryStatus = DeliveryStatus.NOT_DELIVERED
    retry_count: int = Field(default=0, ge=0, description="Failed delivery attempts")
    next_attempt_ts: datetime | None = Field(
        default=None,
        description="Earliest time a failed event may be attempted again"
    )
    last_error: str | None = None

    @field_validator("event_ts", "expire_ts", "next_attempt_ts")
    @classmethod
    def normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @property
    def device_id(self) -> str:
        return self.data.device_id

    def is_expired(self, now: datetime) -> bool:
        return self.expire_ts is not None and self.expire_ts <= now

    def is_exhausted(self, max_retries: int) -> bool:
        """Whether delivery was given up on after ``max_retries`` failures."""
        return (
            self.delivery_status == DeliveryStatus.FAILED
            and self.retry_count >= max_retries
        )


class DeviceProvisionedEvent(EventBase):
    type: Literal["device-provisioned"] = "device-provisioned"
    data: DeviceProvisionedData


class DeviceDecommissionedEvent(EventBase):
    type: Literal["device-decommissioned"] = "device-decommissioned"
    data: DeviceDecommissionedData


class DeviceStatusChangedEvent(EventBase):
    type: Literal["device-status-changed"] = "device-status-changed"
    data: DeviceStatusChangedData


Event = Annotated[
    Union[DeviceProvisionedEvent, DeviceDecommissionedEvent, DeviceStatusChangedEvent],
    Field(discriminator="type"),
]

EventAdapter: TypeAdapter[Event] = TypeAdapter(Event)


class EventsFilter(BaseModel):
    """Optional criteria for querying the event log. All given criteria must match."""
    device_id: str | None = None
    type: EventType | None = None
    status: DeliveryStatus | None = None
    since: datetime | None = Field(default=None, description="Inclusive lower bound on event_ts")
    until: datetime | None = Field(default=None, description="Exclusive upper bound on event_ts")

    @field_validator("since", "until")
    @classmethod
    def normalize_range(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    def matches(self, event: EventBase) -> bool:
        if self.device_id is not None and event.device_id != self.device_id:
            return False
        if self.type is not None and event.type != self.type.value:
            return False
        if self.status is not None and event.delivery_status != self.status:
            return False
        if self.since is not None and event.event_ts < self.since:
            return False
        if self.until is not None and event.event_ts >= self.until:
            return False
        return True
