"""Shadow reconciler: keeps backend shadows in step with local device state.

Each entry point makes at most one backend call and records the outcome
as exactly one event. Nothing is recorded when the backend call fails.
The reconciler keeps no state between calls and never retries; transient
errors are raised for the caller to back off and retry the whole unit.
"""
import asyncio
import uuid
from datetime import datetime
from typing import Awaitable, Callable, TypeVar
import structlog
from ..errors import (
    DeadlineExceededError,
    DeviceNotFoundError,
    DuplicateEventError,
    PermanentBackendError,
    ShadowSyncError,
    TransientBackendError,
    ValidationError,
)
from ..event_models import (
    DeviceDecommissionedData,
    DeviceDecommissionedEvent,
    DeviceProvisionedData,
    DeviceProvisionedEvent,
    DeviceStatusChangedData,
    DeviceStatusChangedEvent,
    Event,
    EventsFilter,
    EventType,
    as_utc,
    utcnow,
)
from ..integrations.models import Integration, Provider
from ..integrations.persistence import IntegrationStore
from ..metrics import Metrics
from ..shadow.client import ShadowClient
from ..shadow.models import DeviceShadow, DeviceShadowUpdate, LocalDevice
from ..store.base import EventStore, require_tenant

log = structlog.get_logger()

T = TypeVar("T")


def occurrence_event_id(tenant_id: str, occurrence_id: str) -> str:
    """Derive a stable event id from the occurrence that caused the event."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"shadowsync://{tenant_id}/{occurrence_id}"))


class ShadowReconciler:
    """Translates device changes and shadow snapshots into backend calls and events."""

    def __init__(
        self,
        store: EventStore,
        integrations: IntegrationStore,
        clients: dict[Provider, ShadowClient],
        call_timeout: float = 15.0,
        metrics: Metrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            store: Event log the outcomes are appended to
            integrations: Lookup of a tenant's integration per provider
            clients: Shadow client per provider
            call_timeout: Upper bound in seconds for a single backend call
            metrics: Optional Prometheus metrics
            clock: Source of the current time
        """
        self.store = store
        self.integrations = integrations
        self.clients = clients
        self.call_timeout = call_timeout
        self.metrics = metrics
        self._clock = clock

    async def sync_device_up(
        self,
        tenant_id: str,
        provider: Provider,
        device: LocalDevice,
        occurrence_id: str | None = None,
        deadline: datetime | None = None,
    ) -> Event:
        """
        Create or update the device on the backend and push its desired state.

        Returns:
            device-provisioned if the backend created the device or the log
            has not seen it since its last decommission (a retry of a call
            whose upsert committed after the deadline), device-status-changed
            otherwise

        Raises:
            TransientBackendError: Retry later; nothing was recorded
            PermanentBackendError: The backend refused; nothing was recorded
            IntegrationNotFoundError: The tenant has no integration for the provider
        """
        operation = "sync_device_up"
        require_tenant(tenant_id)
        integration, client = await self._resolve(tenant_id, provider)

        desired, not_pushed = integration.policy.split_attributes(device.attributes)
        if not_pushed:
            log.warning(
                "sync.attributes_not_pushed",
                tenant_id=tenant_id,
                device_id=device.id,
                fields=not_pushed,
                reason="not a desired field"
            )

        remote = await self._call(
            operation,
            deadline,
            lambda: client.upsert_device(
                integration.credentials,
                device.id,
                desired,
                integration.credentials.device_policy_name,
            ),
        )

        if remote.created or not await self._known_device(tenant_id, device.id):
            event = DeviceProvisionedEvent(data=DeviceProvisionedData(device_id=device.id))
        else:
            event = DeviceStatusChangedEvent(data=DeviceStatusChangedData(
                device_id=device.id,
                new_status=device.status,
                fields=desired,
            ))
        return await self._record(operation, tenant_id, event, occurrence_id, deadline)

    async def sync_device_down(
        self,
        tenant_id: str,
        provider: Provider,
        device_id: str,
        occurrence_id: str | None = None,
        deadline: datetime | None = None,
    ) -> Event:
        """
        Delete the device from the backend and record its decommissioning.

        A device the backend does not know is treated as already deleted.
        """
        operation = "sync_device_down"
        require_tenant(tenant_id)
        if not device_id:
            raise ValidationError("device id is required")
        integration, client = await self._resolve(tenant_id, provider)

        try:
            await self._call(
                operation,
                deadline,
                lambda: client.delete_device(integration.credentials, device_id),
            )
        except DeviceNotFoundError:
            log.info("sync.device_already_absent", tenant_id=tenant_id, device_id=device_id)

        event = DeviceDecommissionedEvent(data=DeviceDecommissionedData(device_id=device_id))
        return await self._record(operation, tenant_id, event, occurrence_id, deadline)

    async def reconcile_shadow_drift(
        self,
        tenant_id: str,
        provider: Provider,
        device: LocalDevice,
        observed: DeviceShadow,
        occurrence_id: str | None = None,
        deadline: datetime | None = None,
    ) -> Event | None:
        """
        Compare an observed shadow against the last-known local state.

        Reported fields belong to the backend: a difference in any tracked
        reported field yields one device-status-changed event. Desired fields
        belong to the platform: if the shadow's desired section diverges, the
        diverging keys are written back in a single version-guarded update.

        Without an explicit ``occurrence_id`` the event id is derived from
        the device and shadow version, so re-reading the same snapshot does
        not record the change twice.

        Returns:
            The status-changed event, or None when no tracked field differs
        """
        operation = "reconcile_shadow_drift"
        require_tenant(tenant_id)
        if observed.device_id != device.id:
            raise ValidationError(
                f"shadow of {observed.device_id} does not belong to device {device.id}"
            )
        integration, client = await self._resolve(tenant_id, provider)
        policy = integration.policy

        changed = {
            key: observed.reported[key]
            for key in policy.tracked_reported(device.reported, observed.reported)
            if key in observed.reported and observed.reported[key] != device.reported.get(key)
        }

        desired, _ = policy.split_attributes(device.attributes)
        patch = {
            key: value for key, value in desired.items()
            if observed.desired.get(key) != value
        }
        if patch:
            log.info(
                "sync.desired_drift",
                tenant_id=tenant_id,
                device_id=device.id,
                fields=sorted(patch),
                version=observed.version
            )
            await self._call(
                operation,
                deadline,
                lambda: client.update_device_shadow(
                    integration.credentials,
                    device.id,
                    DeviceShadowUpdate(desired=patch, version=observed.version),
                ),
            )

        if not changed:
            log.debug("sync.no_drift", tenant_id=tenant_id, device_id=device.id)
            self._record_metric(operation, "unchanged")
            return None

        new_status = observed.reported.get(policy.status_field, device.status)
        event = DeviceStatusChangedEvent(data=DeviceStatusChangedData(
            device_id=device.id,
            new_status=str(new_status),
            fields=changed,
        ))
        if occurrence_id is None and observed.version is not None:
            occurrence_id = f"drift/{device.id}/{observed.version}"
        return await self._record(operation, tenant_id, event, occurrence_id, deadline)

    async def fetch_shadow(
        self,
        tenant_id: str,
        provider: Provider,
        device_id: str,
        deadline: datetime | None = None,
    ) -> DeviceShadow:
        """Read the device's current shadow, for scheduled drift checks."""
        require_tenant(tenant_id)
        integration, client = await self._resolve(tenant_id, provider)
        return await self._call(
            "fetch_shadow",
            deadline,
            lambda: client.get_device_shadow(integration.credentials, device_id),
        )

    async def _resolve(self, tenant_id: str, provider: Provider) -> tuple[Integration, ShadowClient]:
        integration = await self.integrations.get(tenant_id, provider)
        client = self.clients.get(integration.provider)
        if client is None:
            raise PermanentBackendError(f"no shadow client for {integration.provider.value}")
        return integration, client

    def _timeout(self, deadline: datetime | None) -> float:
        if deadline is None:
            return self.call_timeout
        remaining = (as_utc(deadline) - self._clock()).total_seconds()
        if remaining <= 0:
            raise DeadlineExceededError("deadline passed before the backend call")
        return min(self.call_timeout, remaining)

    async def _call(
        self,
        operation: str,
        deadline: datetime | None,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Run one backend call bounded by the deadline and classify its failure."""
        timeout = self._timeout(deadline)
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except DeviceNotFoundError:
            raise
        except ShadowSyncError as e:
            self._record_metric(operation, "transient_error" if e.retryable else "permanent_error")
            log.warning("sync.backend_error", operation=operation, error=str(e), retryable=e.retryable)
            raise
        except (asyncio.TimeoutError, TimeoutError, ConnectionError) as e:
            self._record_metric(operation, "transient_error")
            log.warning("sync.backend_unavailable", operation=operation, error=repr(e))
            if deadline is not None and as_utc(deadline) <= self._clock():
                raise DeadlineExceededError("deadline passed during the backend call") from e
            raise TransientBackendError(f"{operation}: backend unavailable") from e
        except Exception as e:
            self._record_metric(operation, "permanent_error")
            log.error("sync.backend_failed", operation=operation, error=str(e), exc_info=True)
            raise PermanentBackendError(f"{operation}: {e}") from e

    async def _known_device(self, tenant_id: str, device_id: str, page_size: int = 100) -> bool:
        """Whether the log holds a live event of the device after its last decommission."""
        known = False
        skip = 0
        while True:
            page = await self.store.query(tenant_id, EventsFilter(device_id=device_id), skip, page_size)
            for event in page:
                known = event.type != EventType.DEVICE_DECOMMISSIONED.value
            if len(page) < page_size:
                return known
            skip += len(page)

    async def _record(
        self,
        operation: str,
        tenant_id: str,
        event: Event,
        occurrence_id: str | None,
        deadline: datetime | None,
    ) -> Event:
        """
        Append the outcome of a committed backend call.

        Past the deadline nothing is appended, so the caller can retry the
        whole unit; a deterministic id keeps that retry from recording twice.
        """
        if occurrence_id is not None:
            event = event.model_copy(update={"id": occurrence_event_id(tenant_id, occurrence_id)})
        if deadline is not None and as_utc(deadline) <= self._clock():
            self._record_metric(operation, "transient_error")
            raise DeadlineExceededError("deadline passed after the backend call; nothing was recorded")

        try:
            stored = await self.store.append(tenant_id, event)
        except DuplicateEventError:
            stored = await self.store.get(tenant_id, event.id)
            log.info(
                "sync.event_deduplicated",
                operation=operation,
                tenant_id=tenant_id,
                id=event.id,
                type=stored.type
            )
            self._record_metric(operation, "deduplicated")
            return stored

        log.info(
            "sync.recorded",
            operation=operation,
            tenant_id=tenant_id,
            device_id=stored.device_id,
            id=stored.id,
            type=stored.type
        )
        self._record_metric(operation, stored.type)
        if self.metrics:
            self.metrics.record_event_appended(stored.type)
        return stored

    def _record_metric(self, operation: str, outcome: str):
        if self.metrics:
            self.metrics.record_sync(operation, outcome)

