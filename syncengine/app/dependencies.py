"""
Request identity dependencies.

Authentication happens upstream; the gateway forwards the tenant and user
it resolved as headers.
"""

from typing import Optional

from fastapi import Header, HTTPException, status


async def get_current_tenant(
    tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID")
) -> str:
    """Tenant the request acts on. Required on every tenant-scoped route."""
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Tenant-ID header"
        )
    return tenant_id


async def get_current_user_id(
    user_id: Optional[str] = Header(None, alias="X-User-ID")
) -> Optional[str]:
    return user_id
