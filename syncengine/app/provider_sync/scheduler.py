"""
Scheduled Sync

Finds connections that are due for a sync and runs them concurrently, each
in its own database session and under one shared time budget. Meant to be
invoked periodically (cron, worker beat).
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .connections import UNHEALTHY_AFTER_FAILURES
from .credentials import CredentialLifecycleManager
from .errors import new_error_tracking_id
from .orchestrator import SyncOptions, SyncOrchestrator
from .providers.registry import ProviderRegistry
from .tasks import Deadline
from syncengine.app.models import Connection, ConnectionStatus, IngestionJobStatus, utcnow
from syncengine.config import get_settings
from syncengine.database import SessionLocal

logger = logging.getLogger(__name__)

STATUS_SKIPPED = "skipped"


class ScheduledSyncResult(BaseModel):
    connection_id: int
    tenant_id: str
    status: str
    job_id: Optional[int] = None
    transactions_synced: int = 0
    error_tracking_id: Optional[str] = None


class ScheduledSyncReport(BaseModel):
    due: int = 0
    results: List[ScheduledSyncResult] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return len([r for r in self.results if r.status != STATUS_SKIPPED])


class _DueConnection(BaseModel):
    id: int
    tenant_id: str
    provider_id: str


class ScheduledSyncService:
    """
    Sync every connection whose last sync is older than the interval.

    Example:
        >>> report = await ScheduledSyncService().sync_due_connections()
        >>> print(f"Synced {report.processed} of {report.due} due connections")
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        providers_factory: Callable[[Session], ProviderRegistry] = ProviderRegistry,
        credentials_factory: Callable[[Session], CredentialLifecycleManager] = CredentialLifecycleManager
    ):
        self.session_factory = session_factory
        self.providers_factory = providers_factory
        self.credentials_factory = credentials_factory
        self.settings = get_settings()

    def due_connections(
        self,
        db: Session,
        now: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Connection]:
        """
        Active or errored connections whose last sync is older than the interval.

        Connections that failed too often in a row need the user to reconnect
        and are left out; so are pending and disconnected ones.
        """
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.settings.scheduled_sync_interval_minutes)

        return db.query(Connection).filter(
            Connection.status.in_([ConnectionStatus.ACTIVE, ConnectionStatus.ERROR]),
            Connection.deleted_at.is_(None),
            Connection.consecutive_failures < UNHEALTHY_AFTER_FAILURES,
            or_(Connection.last_sync_at.is_(None), Connection.last_sync_at <= cutoff)
        ).order_by(
            Connection.last_sync_at.is_(None).desc(),
            Connection.last_sync_at
        ).limit(limit or self.settings.scheduled_sync_batch_size).all()

    async def sync_due_connections(
        self,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        deadline: Optional[Deadline] = None
    ) -> ScheduledSyncReport:
        db = self.session_factory()
        try:
            due = [
                _DueConnection(id=c.id, tenant_id=c.tenant_id, provider_id=c.provider_id)
                for c in self.due_connections(db, now=now, limit=limit)
            ]
        finally:
            db.close()

        report = ScheduledSyncReport(due=len(due))
        if not due:
            logger.info("No connections due for sync")
            return report

        deadline = deadline or Deadline.from_settings()
        semaphore = asyncio.Semaphore(max(1, max_concurrency or self.settings.sync_max_concurrency))

        logger.info(f"Scheduled sync of {len(due)} connection(s)")

        async def run(connection: _DueConnection) -> ScheduledSyncResult:
            async with semaphore:
                return await self._sync_one(connection, deadline)

        report.results = list(await asyncio.gather(*(run(c) for c in due)))

        logger.info(f"Scheduled sync finished: {report.processed} of {report.due} connection(s) processed")
        return report

    async def _sync_one(self, connection: _DueConnection, deadline: Deadline) -> ScheduledSyncResult:
        if deadline.expired:
            logger.warning(f"Time budget used up; connection {connection.id} left for the next run")
            return ScheduledSyncResult(
                connection_id=connection.id,
                tenant_id=connection.tenant_id,
                status=STATUS_SKIPPED
            )

        db = self.session_factory()
        try:
            orchestrator = SyncOrchestrator(
                db,
                providers=self.providers_factory(db),
                credentials=self.credentials_factory(db)
            )
            task = orchestrator.create_task(SyncOptions(
                provider=connection.provider_id,
                connection_id=connection.id,
                tenant_id=connection.tenant_id,
                deadline=deadline,
                trigger="scheduled"
            ))
            result = await task.run()
        except Exception:
            tracking_id = new_error_tracking_id()
            logger.exception(f"[{tracking_id}] Scheduled sync of connection {connection.id} failed")
            return ScheduledSyncResult(
                connection_id=connection.id,
                tenant_id=connection.tenant_id,
                status=IngestionJobStatus.FAILED.value,
                error_tracking_id=tracking_id
            )
        finally:
            db.close()

        return ScheduledSyncResult(
            connection_id=connection.id,
            tenant_id=connection.tenant_id,
            status=result.status,
            job_id=result.job_id,
            transactions_synced=result.transactions_synced,
            error_tracking_id=result.error_tracking_id
        )


async def sync_due_connections(**kwargs) -> ScheduledSyncReport:
    """Run one scheduled pass with default collaborators."""
    return await ScheduledSyncService().sync_due_connections(**kwargs)
