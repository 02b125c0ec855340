"""In-memory IoT hub backend."""
import threading
from typing import Any
import structlog
from .client import ShadowClient
from .models import Device, DeviceShadow, DeviceShadowUpdate
from ..errors import DeviceNotFoundError, ShadowConflictError
from ..integrations.models import Credentials

log = structlog.get_logger()


class InMemoryShadowClient(ShadowClient):
    """
    Process-local stand-in for an IoT hub.

    Keeps one versioned shadow per device; every write bumps the version.
    Used for development and tests.
    """

    def __init__(self):
        self._shadows: dict[str, DeviceShadow] = {}
        self._lock = threading.RLock()

    async def upsert_device(
        self,
        credentials: Credentials,
        device_id: str,
        desired: dict[str, Any],
        policy: str | None = None,
    ) -> Device:
        with self._lock:
            shadow = self._shadows.get(device_id)
            created = shadow is None
            if created:
                shadow = DeviceShadow(device_id=device_id, version=1, desired=dict(desired))
            else:
                shadow = shadow.model_copy(update={
                    "version": shadow.version + 1,
                    "desired": {**shadow.desired, **desired},
                })
            self._shadows[device_id] = shadow

        log.debug("shadow.device_upserted", device_id=device_id, created=created, policy=policy)
        return Device(id=device_id, created=created)

    async def delete_device(self, credentials: Credentials, device_id: str) -> None:
        with self._lock:
            if self._shadows.pop(device_id, None) is None:
                raise DeviceNotFoundError(f"device {device_id} not found")
        log.debug("shadow.device_deleted", device_id=device_id)

    async def get_device_shadow(self, credentials: Credentials, device_id: str) -> DeviceShadow:
        with self._lock:
            shadow = self._shadows.get(device_id)
        if shadow is None:
            raise DeviceNotFoundError(f"device {device_id} not found")
        return shadow

    async def update_device_shadow(
        self,
        credentials: Credentials,
        device_id: str,
        update: DeviceShadowUpdate,
    ) -> DeviceShadow:
        with self._lock:
            shadow = self._shadows.get(device_id)
            if shadow is None:
                raise DeviceNotFoundError(f"device {device_id} not found")
            if update.version is not None and update.version != shadow.version:
                raise ShadowConflictError(
                    f"shadow of {device_id} is at version {shadow.version}, not {update.version}"
                )
            desired = dict(shadow.desired)
            for key, value in update.desired.items():
                if value is None:
                    desired.pop(key, None)
                else:
                    desired[key] = value
            shadow = shadow.model_copy(update={"version": shadow.version + 1, "desired": desired})
            self._shadows[device_id] = shadow
        return shadow

    def report(self, device_id: str, reported: dict[str, Any]) -> DeviceShadow:
        """Simulate the physical device publishing reported state."""
        with self._lock:
            shadow = self._shadows.get(device_id)
            if shadow is None:
                raise DeviceNotFoundError(f"device {device_id} not found")
            shadow = shadow.model_copy(update={
                "version": shadow.version + 1,
                "reported": {**shadow.reported, **reported},
            })
            self._shadows[device_id] = shadow
        return shadow
