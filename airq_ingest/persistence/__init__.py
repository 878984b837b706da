from .gateway import PersistenceGateway
from .memory import InMemoryPersistenceGateway
from .sql import SqlPersistenceGateway, ensure_schema

__all__ = [
    "PersistenceGateway",
    "InMemoryPersistenceGateway",
    "SqlPersistenceGateway",
    "ensure_schema",
]
