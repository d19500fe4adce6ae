"""State storage: persisted namespaces and the in-memory cache in front of them."""

from .backend import JsonFileNamespace, StateNamespace, StateStorage
from .cache import CacheNotInitializedError, CacheService, PersistenceErrorEvent
from .state_keys import GLOBAL_STATE_KEYS, LOCAL_STATE_KEYS, SECRET_KEYS, read_state_from_storage

__all__ = [
    "JsonFileNamespace",
    "StateNamespace",
    "StateStorage",
    "CacheNotInitializedError",
    "CacheService",
    "PersistenceErrorEvent",
    "GLOBAL_STATE_KEYS",
    "LOCAL_STATE_KEYS",
    "SECRET_KEYS",
    "read_state_from_storage",
]
