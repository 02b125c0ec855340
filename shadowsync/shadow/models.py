"""Device and shadow models exchanged with IoT hub backends."""
from pydantic import BaseModel, Field
from typing import Any


class Device(BaseModel):
    """A device as known to the backend."""
    id: str
    status: str = "enabled"
    created: bool = Field(
        default=False,
        description="True when the upsert that returned this device created it"
    )


class DeviceShadow(BaseModel):
    """Normalized shadow/twin snapshot."""
    device_id: str
    version: int | None = Field(default=None, description="Backend-assigned version used for conflict detection")
    desired: dict[str, Any] = Field(default_factory=dict)
    reported: dict[str, Any] = Field(default_factory=dict)


class DeviceShadowUpdate(BaseModel):
    """Patch for the desired section of a shadow.

    Keys mapped to None are removed. When ``version`` is set the backend
    rejects the update if the shadow has moved on.
    """
    desired: dict[str, Any] = Field(default_factory=dict)
    version: int | None = None


class LocalDevice(BaseModel):
    """The fleet platform's last-known view of a device."""
    id: str = Field(..., min_length=1)
    status: str = "accepted"
    attributes: dict[str, Any] = Field(default_factory=dict, description="Configuration owned locally")
    reported: dict[str, Any] = Field(default_factory=dict, description="Last reported state seen from the backend")
