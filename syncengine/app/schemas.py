from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import date, datetime
import json

from .models import ConnectionStatus, ConnectionHealth, IngestionJobStatus


# Connections
class ConnectionAuthorizeRequest(BaseModel):
    bank_id: Optional[str] = None  # ASPSP / institution hint, e.g. "NO_DNB"
    name: Optional[str] = None


class ConnectionAuthorizeResponse(BaseModel):
    connection_id: int
    authorization_url: str


class Connection(BaseModel):
    id: int
    tenant_id: str
    provider_id: str
    name: Optional[str] = None
    status: ConnectionStatus
    health_status: ConnectionHealth
    consecutive_failures: int
    last_error: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    last_successful_sync_at: Optional[datetime] = None
    reconnected_from: Optional[int] = None
    reconnection_confidence: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Sync
class SyncRequest(BaseModel):
    sync_accounts: bool = True
    sync_transactions: bool = True
    account_ids: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class SyncResponse(BaseModel):
    success: bool
    job_id: Optional[int] = None
    status: str
    accounts_synced: int
    transactions_synced: int
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    duration: float
    error_tracking_id: Optional[str] = None
    message: Optional[str] = None


# Ingestion jobs
class IngestionJob(BaseModel):
    id: int
    tenant_id: str
    connection_id: int
    job_type: str
    status: IngestionJobStatus
    records_fetched: int
    records_imported: int
    records_failed: int
    summary: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_tracking_id: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    triggered_by: Optional[str] = None

    @field_validator("summary", mode="before")
    @classmethod
    def parse_summary(cls, value):
        # Stored as JSON text
        if isinstance(value, str):
            return json.loads(value) if value else None
        return value

    class Config:
        from_attributes = True
