from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from src.adapters.base import ChannelAdapter, ChannelKind
from src.adapters.mongo_client import MongoClientFactory
from src.adapters.telegram_client import TelegramAdapter
from src.adapters.whatsapp_bridge import WhatsAppBridgeAdapter
from src.app.config import Settings, get_settings
from src.ingestion.pipeline import DatasetImportPipeline
from src.orchestrator.graph import ActionDispatcher
from src.orchestrator.sessions import AdapterFactory, SessionOrchestrator
from src.services.bot_config import BotConfigStore
from src.services.datasets import DatasetStore
from src.services.menus import MenuRegistry
from src.services.quota import QuotaLedger
from src.services.tenants import TenantDirectory


@lru_cache(maxsize=1)
def get_mongo_factory() -> MongoClientFactory:
    settings = get_settings()
    return MongoClientFactory(settings.mongo_uri, settings.mongo_database)


@lru_cache(maxsize=1)
def get_tenant_directory() -> TenantDirectory:
    settings = get_settings()
    return TenantDirectory(get_mongo_factory().get_collection(settings.tenants_collection, "tenant_id"))


@lru_cache(maxsize=1)
def get_menu_registry() -> MenuRegistry:
    settings = get_settings()
    return MenuRegistry(get_mongo_factory().get_collection(settings.menus_collection, "tenant_id", "slug"))


@lru_cache(maxsize=1)
def get_bot_config_store() -> BotConfigStore:
    settings = get_settings()
    return BotConfigStore(get_mongo_factory().get_collection(settings.config_collection, "tenant_id", "key"))


@lru_cache(maxsize=1)
def get_dataset_store() -> DatasetStore:
    settings = get_settings()
    factory = get_mongo_factory()
    return DatasetStore(
        tables=factory.get_collection(settings.datasets_collection, "table_id"),
        rows=factory.get_collection(settings.dataset_rows_collection, "table_id", "row_id"),
    )


@lru_cache(maxsize=1)
def get_quota_ledger() -> QuotaLedger:
    settings = get_settings()
    factory = get_mongo_factory()
    return QuotaLedger(
        counters=factory.get_collection(settings.usage_collection, "tenant_id"),
        history=factory.get_collection(settings.usage_history_collection, "tenant_id", "date"),
        tenants=factory.get_collection(settings.tenants_collection, "tenant_id"),
        default_daily_limit=settings.default_daily_limit,
        default_monthly_limit=settings.default_monthly_limit,
        timezone=settings.quota_timezone,
    )


def build_adapter_factory(settings: Settings) -> AdapterFactory:
    def factory(tenant_id: str, channel: ChannelKind) -> ChannelAdapter:
        if channel == ChannelKind.TELEGRAM:
            return TelegramAdapter(
                api_base=settings.telegram_api_base,
                poll_timeout=settings.telegram_poll_timeout,
            )
        return WhatsAppBridgeAdapter(bridge_url=settings.whatsapp_bridge_url, session_key=tenant_id)

    return factory


@lru_cache(maxsize=1)
def get_dispatcher() -> ActionDispatcher:
    settings = get_settings()
    return ActionDispatcher(
        menus=get_menu_registry(),
        datasets=get_dataset_store(),
        quota=get_quota_ledger(),
        bot_config=get_bot_config_store(),
        greeting_keywords=settings.greeting_keywords,
        view_table_row_cap=settings.view_table_row_cap,
        search_result_cap=settings.search_result_cap,
    )


@lru_cache(maxsize=1)
def get_session_orchestrator() -> SessionOrchestrator:
    settings = get_settings()
    return SessionOrchestrator(
        adapter_factory=build_adapter_factory(settings),
        dispatcher=get_dispatcher(),
        pairing_ttl_seconds=settings.pairing_ttl_seconds,
        handshake_timeout_seconds=settings.handshake_timeout_seconds,
        disconnect_timeout_seconds=settings.disconnect_timeout_seconds,
        max_retries=settings.session_max_retries,
        backoff_seconds=settings.session_backoff_seconds,
        backoff_max_seconds=settings.session_backoff_max_seconds,
        click_debounce_seconds=settings.click_debounce_seconds,
    )


def get_import_pipeline(
    settings: Settings = Depends(get_settings),
    datasets: DatasetStore = Depends(get_dataset_store),
) -> DatasetImportPipeline:
    return DatasetImportPipeline(datasets=datasets, max_bytes=int(settings.max_upload_mb * 1024 * 1024))
