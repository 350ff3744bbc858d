"""
Mail sync workers module.

Runs provider sync passes and reconciles them into the local store.
"""

from mailhub.workers.sync_worker import AccountSyncReport, SyncPhase, SyncWorker

__all__ = ["AccountSyncReport", "SyncPhase", "SyncWorker"]
