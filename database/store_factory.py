"""
Store Factory — Create the right remote store backend from configuration.

Configuration in settings.yaml:
    store:
      #   "supabase" — Supabase project (production)
      #   "memory"   — In-memory dicts (development, testing)
      backend: "supabase"
      url: ${SUPABASE_URL}
      service_key: ${SUPABASE_SERVICE_ROLE_KEY}
      storage_bucket: "whatsapp-media"

Usage:
    from database.store_factory import create_store
    store = create_store(settings.store, timeout=settings.http_timeout)
"""
from __future__ import annotations

import structlog

from config.settings import ConfigError, StoreConfig
from database.store_base import RemoteStore

logger = structlog.get_logger()


def create_store(config: StoreConfig = None, timeout: float = 15.0) -> RemoteStore:
    """Factory: create the appropriate remote store backend."""
    config = config or StoreConfig()

    if config.backend == "supabase":
        if not config.url or not config.service_key:
            raise ConfigError("supabase store requires url and service_key")
        from database.store_supabase import SupabaseRemoteStore
        store = SupabaseRemoteStore(
            url=config.url,
            service_key=config.service_key,
            storage_bucket=config.storage_bucket,
            status_rpc=config.status_rpc,
            timeout=timeout,
        )
        logger.info("store_created", backend="supabase", url=config.url)
        return store

    if config.backend == "memory":
        from database.store_memory import InMemoryRemoteStore
        logger.info("store_created", backend="memory")
        return InMemoryRemoteStore()

    raise ConfigError(f"unknown store backend: {config.backend}")
