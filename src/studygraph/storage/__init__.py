"""Chunk, parent and key-value storage."""
from .locks import KeyedLock
from .backends import ChunkBackend, JsonChunkBackend, PgVectorChunkBackend
from .parent_store import ParentStore
from .kv import KeyValueStore
from .collections import CollectionStore

__all__ = [
    "KeyedLock",
    "ChunkBackend",
    "JsonChunkBackend",
    "PgVectorChunkBackend",
    "ParentStore",
    "KeyValueStore",
    "CollectionStore",
]
