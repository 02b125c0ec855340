"""Tenant identity of API requests."""
from fastapi import Header, HTTPException
import structlog
from ..store.base import require_tenant

log = structlog.get_logger()

TENANT_HEADER = "X-Tenant-ID"


async def get_tenant_id(x_tenant_id: str | None = Header(default=None, alias=TENANT_HEADER)) -> str:
    """
    Dependency resolving the tenant a request acts for.

    Requests without a tenant are refused; there is no shared default
    namespace to fall back to.

    Raises:
        HTTPException: 401 if the header is missing
        ValidationError: If the tenant id is malformed
    """
    if not x_tenant_id:
        log.warning("tenant.missing")
        raise HTTPException(
            status_code=401,
            detail=f"Missing tenant. Provide {TENANT_HEADER} header.",
        )

    tenant_id = require_tenant(x_tenant_id.strip())
    structlog.contextvars.bind_contextvars(tenant_id=tenant_id)
    return tenant_id
