"""API routes for integration management."""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from .tenant import get_tenant_id
from ..dependencies import get_integration_store
from ..integrations.models import Integration, Provider
from ..integrations.persistence import IntegrationStore

router = APIRouter(prefix="/v1/integrations", tags=["integrations"])


class IntegrationListResponse(BaseModel):
    """Response for listing integrations."""
    total: int
    integrations: list[Integration]


@router.post("", response_model=Integration, status_code=201)
async def create_integration(
    integration: Integration,
    tenant_id: str = Depends(get_tenant_id),
    store: IntegrationStore = Depends(get_integration_store),
):
    """Create an integration; one per provider and tenant."""
    return await store.save(tenant_id, integration)


@router.get("", response_model=IntegrationListResponse)
async def list_integrations(
    tenant_id: str = Depends(get_tenant_id),
    store: IntegrationStore = Depends(get_integration_store),
):
    integrations = await store.list_all(tenant_id)
    return IntegrationListResponse(total=len(integrations), integrations=integrations)


@router.get("/{provider}", response_model=Integration)
async def get_integration(
    provider: Provider,
    tenant_id: str = Depends(get_tenant_id),
    store: IntegrationStore = Depends(get_integration_store),
):
    return await store.get(tenant_id, provider)


@router.put("/{provider}", response_model=Integration)
async def replace_integration(
    provider: Provider,
    integration: Integration,
    tenant_id: str = Depends(get_tenant_id),
    store: IntegrationStore = Depends(get_integration_store),
):
    """Replace the credentials or policy of an existing integration."""
    if integration.provider != provider:
        raise HTTPException(400, detail="Provider in path must match provider in body")
    await store.get(tenant_id, provider)
    return await store.save(tenant_id, integration, replace=True)


@router.delete("/{provider}", status_code=204)
async def delete_integration(
    provider: Provider,
    tenant_id: str = Depends(get_tenant_id),
    store: IntegrationStore = Depends(get_integration_store),
):
    deleted = await store.delete(tenant_id, provider)
    if not deleted:
        raise HTTPException(404, detail=f"No {provider.value} integration")
    return None
