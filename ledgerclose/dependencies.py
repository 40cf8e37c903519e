"""
LedgerClose - FastAPI Dependencies

Shared dependencies for tenant scoping and database sessions.

Every request is scoped to one tenant via the X-Tenant-ID header; the
acting user is taken from X-User-ID. Authentication itself sits in front
of this service.
"""

import uuid
from typing import Optional

from fastapi import Header, HTTPException, status

from ledgerclose.services.cache_service import CacheService, get_cache_service


async def get_tenant_id(
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID"),
) -> uuid.UUID:
    """
    Resolve the tenant for the request.

    Raises:
        HTTPException: 400 if the header is missing or not a UUID
    """
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    try:
        return uuid.UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID must be a UUID",
        )


async def get_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-ID"),
) -> str:
    return x_user_id or "system"


def get_cache() -> CacheService:
    return get_cache_service()
