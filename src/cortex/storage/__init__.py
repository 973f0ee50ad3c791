"""Persistence: TTL key-value backends, the event store and the rule store."""

from cortex.storage.events import EventStore
from cortex.storage.kv import KVStore, MemoryKV, RedisKV, create_kv
from cortex.storage.rules import RuleStore

__all__ = ["EventStore", "KVStore", "MemoryKV", "RedisKV", "RuleStore", "create_kv"]
