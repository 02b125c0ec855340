"""API routes driving shadow synchronization for a device."""
from fastapi import APIRouter, Depends
from datetime import timedelta
from .schemas import DriftCheckRequest, DriftCheckResponse, SyncDeviceRequest
from .tenant import get_tenant_id
from ..dependencies import get_reconciler
from ..event_models import Event, utcnow
from ..integrations.models import Provider
from ..services.reconciler import ShadowReconciler

router = APIRouter(prefix="/v1/devices", tags=["devices"])


@router.post("/{device_id}/sync", response_model=Event, status_code=201)
async def sync_device(
    device_id: str,
    req: SyncDeviceRequest,
    tenant_id: str = Depends(get_tenant_id),
    reconciler: ShadowReconciler = Depends(get_reconciler),
):
    """Provision or update the device on the provider and record what happened."""
    return await reconciler.sync_device_up(
        tenant_id,
        req.provider,
        req.to_device(device_id),
        occurrence_id=req.occurrence_id,
        deadline=req.deadline(),
    )


@router.delete("/{device_id}", response_model=Event)
async def decommission_device(
    device_id: str,
    provider: Provider,
    occurrence_id: str | None = None,
    timeout_seconds: float | None = None,
    tenant_id: str = Depends(get_tenant_id),
    reconciler: ShadowReconciler = Depends(get_reconciler),
):
    """Remove the device from the provider and record its decommissioning."""
    deadline = utcnow() + timedelta(seconds=timeout_seconds) if timeout_seconds else None
    return await reconciler.sync_device_down(
        tenant_id,
        provider,
        device_id,
        occurrence_id=occurrence_id,
        deadline=deadline,
    )


@router.post("/{device_id}/drift", response_model=DriftCheckResponse)
async def check_drift(
    device_id: str,
    req: DriftCheckRequest,
    tenant_id: str = Depends(get_tenant_id),
    reconciler: ShadowReconciler = Depends(get_reconciler),
):
    """Reconcile the device's shadow against its last-known local state."""
    deadline = req.deadline()
    shadow = req.shadow
    if shadow is None:
        shadow = await reconciler.fetch_shadow(tenant_id, req.provider, device_id, deadline=deadline)

    event = await reconciler.reconcile_shadow_drift(
        tenant_id,
        req.provider,
        req.to_device(device_id),
        shadow,
        occurrence_id=req.occurrence_id,
        deadline=deadline,
    )
    return DriftCheckResponse(changed=event is not None, event=event, shadow=shadow)
