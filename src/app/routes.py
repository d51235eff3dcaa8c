from __future__ import annotations

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, File, Form, UploadFile, status

from src.adapters.base import ChannelKind
from src.app.auth import TenantIdentity, get_current_tenant
from src.app.config import Settings, get_settings
from src.app.dependencies import (
    get_bot_config_store,
    get_dataset_store,
    get_import_pipeline,
    get_menu_registry,
    get_quota_ledger,
    get_session_orchestrator,
)
from src.ingestion.pipeline import DatasetImportPipeline
from src.orchestrator.sessions import SessionOrchestrator
from src.schemas.config import ConfigPayload
from src.schemas.menus import MenuPayload, MenuUpdatePayload
from src.schemas.tables import (
    ImportResponse,
    RowDeletePayload,
    RowUpdatePayload,
    TableData,
    TableSummary,
)
from src.services.bot_config import DEFAULTS, BotConfigStore
from src.services.datasets import DatasetStore
from src.services.menus import MenuRegistry
from src.services.quota import QuotaLedger

router = APIRouter()


@router.get("/health", status_code=status.HTTP_200_OK)
def health(settings: Settings = Depends(get_settings)) -> dict:
    return {"app": settings.app_name, "status": "ok"}


@router.get("/dashboard/stats")
def dashboard_stats(
    identity: TenantIdentity = Depends(get_current_tenant),
    menus: MenuRegistry = Depends(get_menu_registry),
    datasets: DatasetStore = Depends(get_dataset_store),
    bot_config: BotConfigStore = Depends(get_bot_config_store),
    quota: QuotaLedger = Depends(get_quota_ledger),
    orchestrator: SessionOrchestrator = Depends(get_session_orchestrator),
    settings: Settings = Depends(get_settings),
) -> dict:
    tenant_id = identity.tenant_id
    usage = quota.status(tenant_id)
    whatsapp = orchestrator.status(tenant_id, ChannelKind.WHATSAPP)
    telegram = orchestrator.status(tenant_id, ChannelKind.TELEGRAM)
    return {
        "menu_count": menus.count(tenant_id),
        "table_count": len(datasets.list_tables(tenant_id)),
        "config_count": bot_config.count(tenant_id),
        "wa_connected": bool(whatsapp and whatsapp.connected),
        "wa_phone": whatsapp.identity if whatsapp else "",
        "wa_name": whatsapp.display_name if whatsapp else "",
        "telegram_connected": bool(telegram and telegram.connected),
        "telegram_bot_name": telegram.identity if telegram else "",
        "messages_sent_today": usage.today_sent,
        "messages_received_today": usage.today_received,
        "quota": usage.to_dict(),
        "usage_history": quota.usage_history(tenant_id, settings.usage_history_days),
    }


# Bot configuration


@router.get("/config")
def list_config(
    identity: TenantIdentity = Depends(get_current_tenant),
    bot_config: BotConfigStore = Depends(get_bot_config_store),
) -> Dict[str, str]:
    return {**DEFAULTS, **bot_config.get_all(identity.tenant_id)}


@router.post("/config")
def save_config(
    payload: ConfigPayload,
    identity: TenantIdentity = Depends(get_current_tenant),
    bot_config: BotConfigStore = Depends(get_bot_config_store),
) -> dict:
    saved = bot_config.set(identity.tenant_id, payload.key, payload.value)
    return {"status": "saved", "key": saved["key"]}


# Menus


@router.get("/menus")
def list_menus(
    identity: TenantIdentity = Depends(get_current_tenant),
    menus: MenuRegistry = Depends(get_menu_registry),
) -> List[Dict[str, Any]]:
    return [menu.to_wire() for menu in menus.list_menus(identity.tenant_id)]


@router.get("/menus/{slug}")
def get_menu(
    slug: str,
    identity: TenantIdentity = Depends(get_current_tenant),
    menus: MenuRegistry = Depends(get_menu_registry),
) -> Dict[str, Any]:
    return menus.get_menu(identity.tenant_id, slug).to_wire()


@router.post("/menus", status_code=status.HTTP_201_CREATED)
def create_menu(
    payload: MenuPayload,
    identity: TenantIdentity = Depends(get_current_tenant),
    menus: MenuRegistry = Depends(get_menu_registry),
) -> Dict[str, Any]:
    menu = menus.create_menu(
        identity.tenant_id,
        payload.slug,
        payload.title,
        [item.model_dump() for item in payload.items],
    )
    return menu.to_wire()


@router.put("/menus/{slug}")
def update_menu(
    slug: str,
    payload: MenuUpdatePayload,
    identity: TenantIdentity = Depends(get_current_tenant),
    menus: MenuRegistry = Depends(get_menu_registry),
) -> Dict[str, Any]:
    menu = menus.update_menu(
        identity.tenant_id,
        slug,
        payload.title,
        [item.model_dump() for item in payload.items],
    )
    return menu.to_wire()


@router.delete("/menus/{slug}")
def delete_menu(
    slug: str,
    identity: TenantIdentity = Depends(get_current_tenant),
    menus: MenuRegistry = Depends(get_menu_registry),
) -> dict:
    menus.delete_menu(identity.tenant_id, slug)
    return {"status": "deleted", "slug": slug}


# Datasets


@router.get("/tables", response_model=List[TableSummary])
def list_tables(
    identity: TenantIdentity = Depends(get_current_tenant),
    datasets: DatasetStore = Depends(get_dataset_store),
) -> List[TableSummary]:
    return [TableSummary(**table.summary()) for table in datasets.list_tables(identity.tenant_id)]


@router.post("/tables/import", response_model=ImportResponse)
def import_table(
    file: UploadFile = File(...),
    display_name: str = Form(default=""),
    identity: TenantIdentity = Depends(get_current_tenant),
    pipeline: DatasetImportPipeline = Depends(get_import_pipeline),
) -> ImportResponse:
    result = pipeline.run(
        tenant_id=identity.tenant_id,
        display_name=display_name,
        filename=file.filename or "",
        content=file.file.read(),
    )
    return ImportResponse(
        table_name=result.table_name,
        display_name=result.display_name,
        columns=result.columns,
        rows_imported=result.rows_imported,
    )


@router.get("/tables/{name}/data", response_model=TableData)
def table_data(
    name: str,
    identity: TenantIdentity = Depends(get_current_tenant),
    datasets: DatasetStore = Depends(get_dataset_store),
) -> TableData:
    table = datasets.get_table(identity.tenant_id, name)
    return TableData(
        table_name=table.table_id,
        display_name=table.display_name,
        columns=list(table.columns),
        rows=datasets.list_rows(identity.tenant_id, name),
    )


@router.put("/tables/{name}/row")
def update_row(
    name: str,
    payload: RowUpdatePayload,
    identity: TenantIdentity = Depends(get_current_tenant),
    datasets: DatasetStore = Depends(get_dataset_store),
) -> Dict[str, Any]:
    row = datasets.update_row(identity.tenant_id, name, payload.row_id, payload.data)
    return {"status": "updated", "row": row}


@router.delete("/tables/{name}/row")
def delete_row(
    name: str,
    payload: RowDeletePayload,
    identity: TenantIdentity = Depends(get_current_tenant),
    datasets: DatasetStore = Depends(get_dataset_store),
) -> dict:
    datasets.delete_row(identity.tenant_id, name, payload.row_id)
    return {"status": "deleted", "row_id": payload.row_id}


@router.delete("/tables/{name}")
def delete_table(
    name: str,
    identity: TenantIdentity = Depends(get_current_tenant),
    datasets: DatasetStore = Depends(get_dataset_store),
) -> dict:
    datasets.delete_table(identity.tenant_id, name)
    return {"status": "deleted", "table_name": name}
