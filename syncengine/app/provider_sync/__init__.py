"""
Provider Synchronization Module

Connects tenants to banking providers over OAuth, keeps provider tokens valid,
and ingests accounts and transactions into the normalized ledger with
idempotent upserts, reconnection detection and auditable ingestion jobs.
"""

from .encryption import TokenEncryption
from .oauth import ConnectionService
from .orchestrator import SyncOptions, SyncOrchestrator, SyncResult, orchestrate_sync
from .scheduler import ScheduledSyncService, sync_due_connections
from .tasks import Deadline, SyncTask

__all__ = [
    'ConnectionService',
    'Deadline',
    'ScheduledSyncService',
    'SyncOptions',
    'SyncOrchestrator',
    'SyncResult',
    'SyncTask',
    'TokenEncryption',
    'orchestrate_sync',
    'sync_due_connections',
]
