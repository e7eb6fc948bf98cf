"""
Connection Routes

Endpoints for:
- Listing and reading connections
- Starting the OAuth flow with a provider
- OAuth callback handling (runs the first sync)
- Manual sync
- Disconnecting
- Ingestion job history of a connection
"""

import logging
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, status, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from syncengine.config import get_settings
from syncengine.database import get_db
from syncengine.app import models, schemas
from syncengine.app.dependencies import get_current_tenant, get_current_user_id
from syncengine.app.provider_sync import ConnectionService
from syncengine.app.provider_sync.connections import ConnectionRegistry
from syncengine.app.provider_sync.errors import (
    InvalidOAuthStateError,
    ProviderNotFoundError,
    SyncEngineError,
    new_error_tracking_id,
    sanitize_error,
)
from syncengine.app.provider_sync.ledger import IngestionJobLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connections", tags=["connections"])


def _callback_uri(provider: str) -> str:
    return f"{get_settings().frontend_url}/api/connections/{provider}/callback"


def _get_connection(db: Session, connection_id: int, tenant_id: str) -> models.Connection:
    connection = ConnectionRegistry(db).get(connection_id, tenant_id)
    if not connection:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found"
        )
    return connection


@router.get("/", response_model=List[schemas.Connection])
def list_connections(
    include_deleted: bool = Query(False, description="Include disconnected connections"),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_current_tenant)
):
    """List the tenant's connections."""
    return ConnectionRegistry(db).list_for_tenant(tenant_id, include_deleted=include_deleted)


@router.get("/{connection_id}", response_model=schemas.Connection)
def get_connection(
    connection_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_current_tenant)
):
    return _get_connection(db, connection_id, tenant_id)


@router.post("/{provider}/authorize", response_model=schemas.ConnectionAuthorizeResponse)
async def authorize_connection(
    provider: str,
    request: Optional[schemas.ConnectionAuthorizeRequest] = None,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_current_tenant),
    user_id: Optional[str] = Depends(get_current_user_id)
):
    """
    Initiate OAuth flow for a new connection.

    Returns authorization URL that the user should be redirected to.

    Example:
        POST /api/connections/enable_banking/authorize
        {
            "bank_id": "NO_DNB"  // Optional
        }

        Response:
        {
            "connection_id": 7,
            "authorization_url": "https://api.enablebanking.com/auth?..."
        }
    """
    request = request or schemas.ConnectionAuthorizeRequest()

    try:
        result = await ConnectionService(db).start_connection(
            tenant_id=tenant_id,
            provider_id=provider,
            user_id=user_id,
            redirect_uri=_callback_uri(provider),
            bank_id=request.bank_id,
            name=request.name
        )
    except ProviderNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Provider not found or not active"
        )
    except SyncEngineError as e:
        tracking_id = new_error_tracking_id()
        logger.error(f"[{tracking_id}] Could not start authorization with {provider}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": e.user_message, "error_tracking_id": tracking_id}
        )

    return schemas.ConnectionAuthorizeResponse(
        connection_id=result.connection_id,
        authorization_url=result.authorization_url
    )


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    state: str = Query(..., description="One-time state token"),
    code: str = Query(..., description="Authorization code"),
    db: Session = Depends(get_db)
):
    """
    OAuth callback endpoint.

    The provider redirects the user here after authorization. Exchanges the
    code, runs the first sync and redirects to the connections page.
    """
    frontend_url = get_settings().frontend_url

    try:
        result = await ConnectionService(db).handle_callback(
            provider_id=provider,
            state=state,
            code=code,
            redirect_uri=_callback_uri(provider)
        )
    except InvalidOAuthStateError as e:
        query_params = urlencode({'error': e.error_code, 'message': e.user_message})
        return RedirectResponse(url=f"{frontend_url}/connections.html?{query_params}")
    except Exception as e:
        tracking_id = new_error_tracking_id()
        logger.error(f"[{tracking_id}] OAuth callback for {provider} failed: {e}",
                     exc_info=not isinstance(e, SyncEngineError))
        query_params = urlencode({
            'error': 'connection_failed',
            'message': sanitize_error(e),
            'error_tracking_id': tracking_id
        })
        return RedirectResponse(url=f"{frontend_url}/connections.html?{query_params}")

    params = {
        'connection_id': result.connection_id,
        'status': result.sync.status,
        'job_id': result.sync.job_id,
    }
    if result.sync.error_tracking_id:
        params['error_tracking_id'] = result.sync.error_tracking_id
    return RedirectResponse(url=f"{frontend_url}/connections.html?{urlencode(params)}")


@router.post("/{connection_id}/sync", response_model=schemas.SyncResponse)
async def manual_sync(
    connection_id: int,
    sync_params: Optional[schemas.SyncRequest] = None,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_current_tenant),
    user_id: Optional[str] = Depends(get_current_user_id)
):
    """
    Manually trigger a sync for a connection.

    Optional date range can be specified, otherwise syncs incrementally.

    Example:
        POST /api/connections/1/sync
        {
            "start_date": "2024-01-01",
            "end_date": "2024-01-31"
        }

        Response:
        {
            "success": true,
            "job_id": 42,
            "status": "completed",
            "accounts_synced": 2,
            "transactions_synced": 15,
            ...
        }
    """
    connection = _get_connection(db, connection_id, tenant_id)

    if connection.status == models.ConnectionStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Connection has not been authorized yet."
        )

    sync_params = sync_params or schemas.SyncRequest()
    result = await ConnectionService(db).sync_connection(
        connection,
        user_id=user_id,
        sync_accounts=sync_params.sync_accounts,
        sync_transactions=sync_params.sync_transactions,
        account_ids=sync_params.account_ids,
        start_date=sync_params.start_date,
        end_date=sync_params.end_date,
        trigger="manual"
    )

    message = None
    if result.errors:
        message = f"{len(result.errors)} errors occurred"

    return schemas.SyncResponse(**result.model_dump(), message=message)


@router.delete("/{connection_id}")
async def disconnect_connection(
    connection_id: int,
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_current_tenant),
    user_id: Optional[str] = Depends(get_current_user_id)
):
    """
    Disconnect a connection.

    Revokes OAuth tokens and marks the connection as disconnected.
    Imported transactions are kept.
    """
    connection = _get_connection(db, connection_id, tenant_id)

    await ConnectionService(db).disconnect(connection, user_id)

    return {"message": "Connection disconnected successfully"}


@router.get("/{connection_id}/jobs", response_model=List[schemas.IngestionJob])
def list_connection_jobs(
    connection_id: int,
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    tenant_id: str = Depends(get_current_tenant)
):
    """
    Get ingestion job history for a connection, newest first.

    Disconnected connections keep their history.
    """
    connection = ConnectionRegistry(db).get(connection_id, tenant_id, include_deleted=True)
    if not connection:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found"
        )

    return IngestionJobLedger(db).list_for_connection(connection.id, tenant_id, limit=limit)
