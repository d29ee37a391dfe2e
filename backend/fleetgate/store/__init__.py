from fleetgate.store.base import LocationStore, StoreTransaction
from fleetgate.store.memory import MemoryStore
from fleetgate.store.sql import SqlStore

__all__ = ["LocationStore", "StoreTransaction", "MemoryStore", "SqlStore"]
