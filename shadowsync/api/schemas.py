from pydantic import BaseModel, Field
from datetime import datetime, timedelta
from typing import Any, List
from ..event_models import Event, utcnow
from ..integrations.models import Provider
from ..shadow.models import DeviceShadow, LocalDevice


class EventListResponse(BaseModel):
    skip: int
    limit: int
    count: int
    events: List[Event]


class DeadlineMixin(BaseModel):
    timeout_seconds: float | None = Field(default=None, gt=0, description="Time budget for the whole operation")

    def deadline(self) -> datetime | None:
        if self.timeout_seconds is None:
            return None
        return utcnow() + timedelta(seconds=self.timeout_seconds)


class SyncDeviceRequest(DeadlineMixin):
    provider: Provider
    status: str = "accepted"
    attributes: dict[str, Any] = Field(default_factory=dict)
    occurrence_id: str | None = Field(default=None, description="Id of the triggering occurrence, used to deduplicate retries")

    def to_device(self, device_id: str) -> LocalDevice:
        return LocalDevice(id=device_id, status=self.status, attributes=self.attributes)


class DriftCheckRequest(DeadlineMixin):
    provider: Provider
    status: str = "accepted"
    attributes: dict[str, Any] = Field(default_factory=dict)
    reported: dict[str, Any] = Field(default_factory=dict, description="Last reported state known locally")
    shadow: DeviceShadow | None = Field(default=None, description="Observed shadow; fetched from the backend when omitted")
    occurrence_id: str | None = None

    def to_device(self, device_id: str) -> LocalDevice:
        return LocalDevice(
            id=device_id,
            status=self.status,
            attributes=self.attributes,
            reported=self.reported,
        )


class DriftCheckResponse(BaseModel):
    changed: bool
    event: Event | None = None
    shadow: DeviceShadow
