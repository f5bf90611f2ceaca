"""
Key/Value Infrastructure Module
"""

from astropal.infrastructure.kv.store import (
    KeyValueStore,
    MemoryKeyValueStore,
    RedisKeyValueStore,
    create_key_value_store,
)

__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RedisKeyValueStore",
    "create_key_value_store",
]
