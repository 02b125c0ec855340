"""Shadow client interface implemented per IoT hub provider."""
from abc import ABC, abstractmethod
from typing import Any
from .models import Device, DeviceShadow, DeviceShadowUpdate
from ..integrations.models import Credentials


class ShadowClient(ABC):
    """
    Device and shadow operations against one IoT hub provider.

    Implementations raise ``TransientBackendError`` for timeouts and
    throttling, ``DeviceNotFoundError`` for unknown devices and
    ``PermanentBackendError`` for anything that will not succeed on retry.
    """

    @abstractmethod
    async def upsert_device(
        self,
        credentials: Credentials,
        device_id: str,
        desired: dict[str, Any],
        policy: str | None = None,
    ) -> Device:
        """
        Create the device, or update it if it already exists.

        Args:
            credentials: Credentials of the hub
            device_id: Device identifier
            desired: Desired state written to the device's shadow
            policy: Provider-side device policy to attach

        Returns:
            The device, with ``created`` set when it did not exist before
        """
        pass

    @abstractmethod
    async def delete_device(self, credentials: Credentials, device_id: str) -> None:
        """Delete the device; raises DeviceNotFoundError if it does not exist."""
        pass

    @abstractmethod
    async def get_device_shadow(self, credentials: Credentials, device_id: str) -> DeviceShadow:
        pass

    @abstractmethod
    async def update_device_shadow(
        self,
        credentials: Credentials,
        device_id: str,
        update: DeviceShadowUpdate,
    ) -> DeviceShadow:
        pass
