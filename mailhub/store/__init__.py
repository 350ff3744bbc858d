"""Local store backends for accounts, threads and messages."""

from mailhub.store.base import MailStore, ReconcileStats, ThreadQuery
from mailhub.store.memory import MemoryMailStore

__all__ = ["MailStore", "MemoryMailStore", "ReconcileStats", "ThreadQuery", "create_store"]


def create_store(backend: str, db=None) -> MailStore:
    """Instantiate the configured store backend."""
    if backend == "memory":
        return MemoryMailStore()
    if backend == "mongo":
        from mailhub.store.mongo import MongoMailStore
        if db is None:
            raise ValueError("The mongo store needs a connected DatabaseManager")
        return MongoMailStore(db)
    raise ValueError(f"Unknown store backend: {backend}")
