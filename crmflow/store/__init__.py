from crmflow.store.client import EntityStore, InsertResult, PostgrestEntityStore, eq, first_or_none, follow_location
from crmflow.store.factory import create_entity_store
from crmflow.store.sql import SqlEntityStore

__all__ = [
    "EntityStore",
    "InsertResult",
    "PostgrestEntityStore",
    "SqlEntityStore",
    "create_entity_store",
    "eq",
    "first_or_none",
    "follow_location",
]
