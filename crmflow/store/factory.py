from __future__ import annotations

from sqlalchemy.orm import Session

from crmflow.core.config import Settings
from crmflow.store.client import EntityStore, PostgrestEntityStore
from crmflow.store.sql import SqlEntityStore


def create_entity_store(settings: Settings, session: Session | None = None) -> EntityStore:
    backend = settings.store_backend.lower()
    if backend == "postgrest":
        return PostgrestEntityStore.from_settings(settings)
    if backend == "sql":
        if session is None:
            raise ValueError("the sql store backend needs a database session")
        return SqlEntityStore(session)
    raise ValueError(f"unsupported store backend: {settings.store_backend}")
