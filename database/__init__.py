"""
Database layer — remote store backends.

Backends:
  - Supabase (PostgREST tables, RPC and Storage over httpx)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.store, timeout=settings.http_timeout)
  items = await store.fetch_dispatchable(limit=5)
"""
from database.store_base import RemoteStore, StoreError, StoreUnavailableError
from database.store_memory import InMemoryRemoteStore
from database.store_supabase import SupabaseRemoteStore
from database.store_factory import create_store

__all__ = [
    # Store interface
    "RemoteStore", "StoreError", "StoreUnavailableError",
    # Store backends
    "InMemoryRemoteStore", "SupabaseRemoteStore",
    # Factory
    "create_store",
]
