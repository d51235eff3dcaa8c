from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from starlette.concurrency import run_in_threadpool

from src.adapters.base import ChannelKind
from src.app.auth import TenantIdentity, require_admin
from src.app.dependencies import get_quota_ledger, get_session_orchestrator, get_tenant_directory
from src.orchestrator.sessions import SessionOrchestrator
from src.schemas.admin import (
    AdminStats,
    AdminUser,
    LimitsPayload,
    UserStatusPayload,
    WhatsAppAccessPayload,
)
from src.services.quota import QuotaLedger
from src.services.tenants import TenantDirectory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")


@router.get("/stats", response_model=AdminStats)
def admin_stats(
    _: TenantIdentity = Depends(require_admin),
    directory: TenantDirectory = Depends(get_tenant_directory),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> AdminStats:
    accounts = directory.list_accounts()
    return AdminStats(
        total_users=len(accounts),
        active_users=sum(1 for account in accounts if account.is_active),
        wa_enabled_users=sum(1 for account in accounts if account.wa_enabled),
        active_wa_connections=len(orchestrator.connected_tenants(ChannelKind.WHATSAPP)),
        active_telegram_connections=len(orchestrator.connected_tenants(ChannelKind.TELEGRAM)),
        admin_count=sum(1 for account in accounts if account.is_admin),
    )


@router.get("/users", response_model=List[AdminUser])
def admin_users(
    _: TenantIdentity = Depends(require_admin),
    directory: TenantDirectory = Depends(get_tenant_directory),
    quota: QuotaLedger = Depends(get_quota_ledger),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> List[AdminUser]:
    wa_connected = set(orchestrator.connected_tenants(ChannelKind.WHATSAPP))
    telegram_connected = set(orchestrator.connected_tenants(ChannelKind.TELEGRAM))
    users = []
    for account in directory.list_accounts():
        usage = quota.status(account.tenant_id)
        users.append(
            AdminUser(
                id=account.tenant_id,
                username=account.username,
                role=account.role,
                is_active=account.is_active,
                wa_enabled=account.wa_enabled,
                wa_connected=account.tenant_id in wa_connected,
                telegram_connected=account.tenant_id in telegram_connected,
                created_at=account.created_at.isoformat() if account.created_at else None,
                daily_limit=usage.daily_limit,
                monthly_limit=usage.monthly_limit,
                today_sent=usage.today_sent,
                month_sent=usage.month_sent,
            )
        )
    return users


@router.put("/users/{user_id}/status")
async def admin_set_status(
    user_id: str,
    payload: UserStatusPayload,
    admin: TenantIdentity = Depends(require_admin),
    directory: TenantDirectory = Depends(get_tenant_directory),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> dict:
    if user_id == admin.tenant_id and not payload.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot disable your own account")
    account = await run_in_threadpool(directory.set_active, user_id, payload.is_active)
    if not account.is_active:
        for channel in ChannelKind:
            await orchestrator.disconnect(user_id, channel, logout=False)
    return {"status": "updated", "id": user_id, "is_active": account.is_active}


@router.put("/users/{user_id}/whatsapp")
async def admin_set_whatsapp(
    user_id: str,
    payload: WhatsAppAccessPayload,
    _: TenantIdentity = Depends(require_admin),
    directory: TenantDirectory = Depends(get_tenant_directory),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> dict:
    account = await run_in_threadpool(directory.set_wa_enabled, user_id, payload.wa_enabled)
    if not account.wa_enabled:
        await orchestrator.disconnect(user_id, ChannelKind.WHATSAPP, logout=False)
    return {"status": "updated", "id": user_id, "wa_enabled": account.wa_enabled}


@router.put("/users/{user_id}/limits")
def admin_set_limits(
    user_id: str,
    payload: LimitsPayload,
    _: TenantIdentity = Depends(require_admin),
    directory: TenantDirectory = Depends(get_tenant_directory),
    quota: QuotaLedger = Depends(get_quota_ledger),
) -> dict:
    directory.get(user_id)
    usage = quota.set_limits(user_id, payload.daily_limit, payload.monthly_limit)
    return {"status": "updated", "id": user_id, "quota": usage.to_dict()}


@router.post("/users/{user_id}/disconnect-wa")
async def admin_disconnect_whatsapp(
    user_id: str,
    _: TenantIdentity = Depends(require_admin),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> dict:
    await orchestrator.disconnect(user_id, ChannelKind.WHATSAPP, logout=False)
    logger.info("WhatsApp session disconnected by admin", extra={"tenant_id": user_id})
    return {"status": "disconnected", "id": user_id}
