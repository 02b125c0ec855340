"""Integration persistence layer (in-memory).

Integrations are unique per (tenant, provider) and are looked up by that
pair on every sync.
"""
import threading
import structlog
from .models import Integration, Provider
from ..errors import IntegrationNotFoundError, ValidationError
from ..store.base import require_tenant

log = structlog.get_logger()


class IntegrationStore:
    """In-memory integration store keyed by tenant and provider."""

    def __init__(self):
        self._integrations: dict[tuple[str, Provider], Integration] = {}
        self._lock = threading.RLock()
        log.info("integrations.store.initialized", backend="memory")

    async def save(self, tenant_id: str, integration: Integration, replace: bool = False) -> Integration:
        """
        Save an integration for a tenant.

        Args:
            tenant_id: Owning tenant
            integration: Integration to save
            replace: Overwrite an existing integration for the same provider

        Returns:
            Saved integration, bound to the tenant

        Raises:
            ValidationError: If the tenant binding conflicts, or the provider
                is already integrated and ``replace`` is False
        """
        require_tenant(tenant_id)
        if integration.tenant_id is not None and integration.tenant_id != tenant_id:
            raise ValidationError("integration is bound to another tenant")

        key = (tenant_id, integration.provider)
        with self._lock:
            existing = self._integrations.get(key)
            if existing is not None and not replace:
                raise ValidationError(f"integration for {integration.provider.value} already exists")
            if existing is not None:
                integration = integration.model_copy(update={"id": existing.id})
            saved = integration.model_copy(update={"tenant_id": tenant_id})
            self._integrations[key] = saved

        log.info(
            "integration.saved",
            tenant_id=tenant_id,
            integration_id=saved.id,
            provider=saved.provider.value
        )
        return saved

    async def get(self, tenant_id: str, provider: Provider) -> Integration:
        """
        Get a tenant's integration for a provider.

        Raises:
            IntegrationNotFoundError: If the tenant has no such integration
        """
        require_tenant(tenant_id)
        integration = self._integrations.get((tenant_id, Provider(provider)))
        if integration is None:
            raise IntegrationNotFoundError(f"no {Provider(provider).value} integration")
        return integration

    async def list_all(self, tenant_id: str) -> list[Integration]:
        require_tenant(tenant_id)
        with self._lock:
            return [i for (t, _), i in self._integrations.items() if t == tenant_id]

    async def delete(self, tenant_id: str, provider: Provider) -> bool:
        """
        Delete a tenant's integration for a provider.

        Returns:
            True if deleted, False if not found
        """
        require_tenant(tenant_id)
        with self._lock:
            removed = self._integrations.pop((tenant_id, Provider(provider)), None)
        if removed is not None:
            log.info("integration.deleted", tenant_id=tenant_id, provider=removed.provider.value)
            return True
        return False
