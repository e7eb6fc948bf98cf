from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from syncengine.database import get_db
from syncengine.app import schemas
from syncengine.app.dependencies import get_current_tenant
from syncengine.app.provider_sync.ledger import IngestionJobLedger

router = APIRouter(prefix="/ingestion-jobs", tags=["ingestion-jobs"])


@router.get("/{job_id}", response_model=schemas.IngestionJob)
def get_ingestion_job(
    job_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_current_tenant)
):
    job = IngestionJobLedger(db).get(job_id, tenant_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Ingestion job not found"
        )
    return job
