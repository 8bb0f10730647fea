"""Durable key/value storage consumed by the symbol cache and the task graph."""

from agent_substrate.store.file_store import FileSystemStore
from agent_substrate.store.interfaces import DurableStore
from agent_substrate.store.memory import InMemoryStore

__all__ = ["DurableStore", "FileSystemStore", "InMemoryStore"]
