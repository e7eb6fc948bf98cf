"""
Ingestion Job Ledger

One IngestionJob row per sync invocation. Jobs are created `running` before
any provider call and finalized exactly once.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .errors import JobAlreadyFinalizedError
from syncengine.app.models import IngestionJob, IngestionJobStatus, utcnow

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {
    IngestionJobStatus.COMPLETED,
    IngestionJobStatus.COMPLETED_WITH_ERRORS,
    IngestionJobStatus.FAILED,
}

# Columns that update() may touch while a job is running
UPDATABLE_FIELDS = {"records_fetched", "records_imported", "records_failed", "summary", "error_message"}


class IngestionJobLedger:

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        tenant_id: str,
        connection_id: int,
        job_type: str = "provider_sync",
        triggered_by: Optional[str] = None
    ) -> IngestionJob:
        job = IngestionJob(
            tenant_id=tenant_id,
            connection_id=connection_id,
            job_type=job_type,
            status=IngestionJobStatus.RUNNING,
            records_fetched=0,
            records_imported=0,
            records_failed=0,
            started_at=utcnow(),
            triggered_by=triggered_by
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)

        logger.info(f"Ingestion job {job.id} started for connection {connection_id}")
        return job

    def get(self, job_id: int, tenant_id: Optional[str] = None) -> Optional[IngestionJob]:
        query = self.db.query(IngestionJob).filter(IngestionJob.id == job_id)
        if tenant_id is not None:
            query = query.filter(IngestionJob.tenant_id == tenant_id)
        return query.first()

    def update(self, job_id: int, **fields) -> IngestionJob:
        """
        Update progress counters of a running job.

        Raises:
            JobAlreadyFinalizedError: If the job is no longer running
            ValueError: For unknown fields
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {', '.join(sorted(unknown))}")

        job = self._get_running(job_id)
        for key, value in fields.items():
            if key == "summary" and not isinstance(value, (str, type(None))):
                value = json.dumps(value, default=str)
            setattr(job, key, value)
        self.db.commit()
        return job

    def finalize(
        self,
        job_id: int,
        status: IngestionJobStatus,
        records_fetched: int = 0,
        records_imported: int = 0,
        records_failed: int = 0,
        summary: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        error_tracking_id: Optional[str] = None
    ) -> IngestionJob:
        """
        Write the terminal state of a job.

        Raises:
            JobAlreadyFinalizedError: If the job was finalized before
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal job status")

        job = self._get_running(job_id)

        completed_at = utcnow()
        job.status = status
        job.records_fetched = records_fetched
        job.records_imported = records_imported
        job.records_failed = records_failed
        job.summary = json.dumps(summary or {}, default=str)
        job.error_message = error_message
        job.error_tracking_id = error_tracking_id
        job.completed_at = completed_at
        job.duration_ms = int((completed_at - job.started_at.replace(tzinfo=None)).total_seconds() * 1000)
        self.db.commit()

        logger.info(f"Ingestion job {job.id} finalized as {status.value} "
                    f"(fetched={records_fetched}, imported={records_imported}, failed={records_failed})")
        return job

    def list_for_connection(
        self,
        connection_id: int,
        tenant_id: Optional[str] = None,
        limit: int = 20
    ) -> List[IngestionJob]:
        query = self.db.query(IngestionJob).filter(IngestionJob.connection_id == connection_id)
        if tenant_id is not None:
            query = query.filter(IngestionJob.tenant_id == tenant_id)
        return query.order_by(IngestionJob.started_at.desc(), IngestionJob.id.desc()).limit(limit).all()

    def _get_running(self, job_id: int) -> IngestionJob:
        job = self.get(job_id)
        if job is None:
            raise ValueError(f"Ingestion job {job_id} not found")
        if job.status != IngestionJobStatus.RUNNING:
            raise JobAlreadyFinalizedError(
                f"Ingestion job {job_id} is already {job.status.value}",
                context={"job_id": job_id}
            )
        return job
