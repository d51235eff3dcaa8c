from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from src.app.config import Settings, get_settings
from src.app.dependencies import get_tenant_directory
from src.services.tenants import TenantDirectory
from src.utils.logging import tenant_id_var

security = HTTPBearer(auto_error=False)


@dataclass
class TenantIdentity:
    tenant_id: str
    username: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_tenant(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
    directory: TenantDirectory = Depends(get_tenant_directory),
) -> TenantIdentity:
    if credentials is None:
        raise _unauthorized("Missing bearer token")
    try:
        claims = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError as exc:
        raise _unauthorized(f"Invalid token: {exc}")

    tenant_id = claims.get("tenant_id") or claims.get("sub")
    if not tenant_id:
        raise _unauthorized("Missing tenant claim in token")
    tenant_id = str(tenant_id)
    role = "admin" if claims.get("role") == "admin" else "user"

    account = await run_in_threadpool(directory.ensure, tenant_id, claims.get("username"), role)
    if not account.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is disabled")

    tenant_id_var.set(tenant_id)
    return TenantIdentity(
        tenant_id=tenant_id,
        username=account.username,
        role="admin" if role == "admin" or account.is_admin else "user",
    )


def require_admin(identity: TenantIdentity = Depends(get_current_tenant)) -> TenantIdentity:
    if not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return identity
