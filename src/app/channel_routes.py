from __future__ import annotations

import io
import logging

import qrcode
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool

from src.adapters.base import ChannelKind, SessionState
from src.app.auth import TenantIdentity, get_current_tenant
from src.app.dependencies import get_session_orchestrator, get_tenant_directory
from src.errors import AuthFailed, ChannelTransportError, ChannelUnavailable
from src.orchestrator.sessions import PairingStatus, SessionOrchestrator
from src.schemas.channels import TelegramStatus, TokenPayload, WhatsAppStatus
from src.services.tenants import TenantDirectory

logger = logging.getLogger(__name__)

router = APIRouter()


def render_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_Q,
        box_size=10,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


# WhatsApp


@router.get("/whatsapp/status", response_model=WhatsAppStatus)
async def whatsapp_status(
    identity: TenantIdentity = Depends(get_current_tenant),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> WhatsAppStatus:
    session = orchestrator.status(identity.tenant_id, ChannelKind.WHATSAPP)
    view = orchestrator.pairing_artifact(identity.tenant_id, ChannelKind.WHATSAPP)
    return WhatsAppStatus(
        connected=bool(session and session.connected),
        initialized=bool(session and session.state.is_live),
        state=session.state.value if session else SessionState.UNINITIALIZED.value,
        phone=session.identity if session else "",
        name=session.display_name if session else "",
        hasQR=view.status == PairingStatus.READY,
        session_id=session.session_id if session else None,
        last_error=session.last_error if session else None,
    )


@router.post("/whatsapp/connect")
async def whatsapp_connect(
    identity: TenantIdentity = Depends(get_current_tenant),
    directory: TenantDirectory = Depends(get_tenant_directory),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> dict:
    account = await run_in_threadpool(directory.get, identity.tenant_id)
    if not account.wa_enabled:
        raise ChannelUnavailable("WhatsApp access is disabled for this account")
    session = await orchestrator.connect(identity.tenant_id, ChannelKind.WHATSAPP)
    return {
        "status": "connected" if session.connected else "connecting",
        "connected": session.connected,
        "phone": session.identity,
        "name": session.display_name,
        "session_id": session.session_id,
    }


@router.get("/whatsapp/qr")
async def whatsapp_qr(
    identity: TenantIdentity = Depends(get_current_tenant),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> Response:
    view = orchestrator.pairing_artifact(identity.tenant_id, ChannelKind.WHATSAPP)
    if view.status == PairingStatus.ALREADY_CONNECTED:
        return PlainTextResponse("Already logged in", status_code=status.HTTP_200_OK)
    if view.status == PairingStatus.REGENERATING:
        return PlainTextResponse("QR code is being refreshed. Please wait...", status_code=status.HTTP_202_ACCEPTED)
    if view.status == PairingStatus.PENDING or view.artifact is None:
        return PlainTextResponse("QR code not yet available. Please wait...", status_code=status.HTTP_202_ACCEPTED)

    png = await run_in_threadpool(render_qr_png, view.artifact.payload)
    return Response(
        content=png,
        media_type="image/png",
        headers={"Cache-Control": "no-store", "X-QR-Sequence": str(view.artifact.sequence)},
    )


@router.post("/whatsapp/logout")
async def whatsapp_logout(
    identity: TenantIdentity = Depends(get_current_tenant),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> dict:
    await orchestrator.disconnect(identity.tenant_id, ChannelKind.WHATSAPP, logout=True)
    return {"status": "logged_out"}


# Telegram


@router.get("/telegram/status", response_model=TelegramStatus)
async def telegram_status(
    identity: TenantIdentity = Depends(get_current_tenant),
    directory: TenantDirectory = Depends(get_tenant_directory),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> TelegramStatus:
    token = await run_in_threadpool(directory.telegram_token, identity.tenant_id)
    session = orchestrator.status(identity.tenant_id, ChannelKind.TELEGRAM)
    return TelegramStatus(
        has_token=bool(token),
        connected=bool(session and session.connected),
        state=session.state.value if session else SessionState.UNINITIALIZED.value,
        bot_name=session.identity if session else "",
        session_id=session.session_id if session else None,
        last_error=session.last_error if session else None,
    )


@router.post("/telegram/validate")
async def telegram_validate(
    payload: TokenPayload,
    identity: TenantIdentity = Depends(get_current_tenant),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> JSONResponse:
    try:
        username = await orchestrator.validate(identity.tenant_id, ChannelKind.TELEGRAM, payload.token)
    except (AuthFailed, ChannelTransportError) as exc:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"valid": False, "error": exc.message},
        )
    return JSONResponse(content={"valid": True, "bot_name": f"@{username}"})


@router.post("/telegram/token")
async def telegram_save_token(
    payload: TokenPayload,
    identity: TenantIdentity = Depends(get_current_tenant),
    directory: TenantDirectory = Depends(get_tenant_directory),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> dict:
    token = payload.token.strip()
    if not token:
        await run_in_threadpool(directory.set_telegram_token, identity.tenant_id, "")
        return {"status": "cleared"}
    username = await orchestrator.validate(identity.tenant_id, ChannelKind.TELEGRAM, token)
    await run_in_threadpool(directory.set_telegram_token, identity.tenant_id, token)
    logger.info("Telegram token saved", extra={"tenant_id": identity.tenant_id, "bot_name": username})
    return {"status": "saved", "bot_name": f"@{username}"}


@router.post("/telegram/connect")
async def telegram_connect(
    identity: TenantIdentity = Depends(get_current_tenant),
    directory: TenantDirectory = Depends(get_tenant_directory),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> dict:
    token = await run_in_threadpool(directory.telegram_token, identity.tenant_id)
    if not token:
        raise ChannelUnavailable("No Telegram bot token saved. Save a token first.")
    session = await orchestrator.connect(identity.tenant_id, ChannelKind.TELEGRAM, credential=token)
    if session.state == SessionState.FAILED:
        raise AuthFailed(session.last_error or "Telegram rejected the bot token")
    return {
        "status": "connected" if session.connected else session.state.value,
        "bot_name": session.identity,
        "session_id": session.session_id,
    }


@router.post("/telegram/disconnect")
async def telegram_disconnect(
    identity: TenantIdentity = Depends(get_current_tenant),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
) -> dict:
    await orchestrator.disconnect(identity.tenant_id, ChannelKind.TELEGRAM, logout=False)
    return {"status": "disconnected"}
