"""
Tenant/Connection Registry

Reads connection ownership and writes connection status, health counters and
the audit history. Also owns the one-time OAuth state.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from syncengine.app.models import (
    Connection,
    ConnectionEventType,
    ConnectionHealth,
    ConnectionHistory,
    ConnectionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

# Consecutive failed syncs before a connection is reported unhealthy
UNHEALTHY_AFTER_FAILURES = 3


class ConnectionRegistry:

    def __init__(self, db: Session):
        self.db = db

    def get(self, connection_id: int, tenant_id: Optional[str] = None, include_deleted: bool = False) -> Optional[Connection]:
        query = self.db.query(Connection).filter(Connection.id == connection_id)
        if tenant_id is not None:
            query = query.filter(Connection.tenant_id == tenant_id)
        if not include_deleted:
            query = query.filter(Connection.deleted_at.is_(None))
        return query.first()

    def list_for_tenant(self, tenant_id: str, include_deleted: bool = False) -> List[Connection]:
        query = self.db.query(Connection).filter(Connection.tenant_id == tenant_id)
        if not include_deleted:
            query = query.filter(Connection.deleted_at.is_(None))
        return query.order_by(Connection.id).all()

    def create_pending(
        self,
        tenant_id: str,
        provider_id: str,
        oauth_state: str,
        oauth_state_expires_at: datetime,
        created_by: Optional[str] = None,
        name: Optional[str] = None
    ) -> Connection:
        connection = Connection(
            tenant_id=tenant_id,
            provider_id=provider_id,
            name=name,
            status=ConnectionStatus.PENDING,
            health_status=ConnectionHealth.HEALTHY,
            consecutive_failures=0,
            oauth_state=oauth_state,
            oauth_state_expires_at=oauth_state_expires_at,
            created_by=created_by
        )
        self.db.add(connection)
        self.db.commit()
        self.db.refresh(connection)
        return connection

    def consume_oauth_state(self, provider_id: str, state: str) -> Optional[Connection]:
        """
        Atomically claim a pending OAuth state.

        A single conditional UPDATE clears the state, so two callbacks racing
        with the same state cannot both win. Returns None when the state is
        unknown, expired, already used or issued for another provider.
        """
        now = utcnow()
        connection_id = self.db.query(Connection.id).filter(
            Connection.oauth_state == state
        ).scalar()
        if connection_id is None:
            return None

        result = self.db.execute(
            update(Connection)
            .where(
                Connection.id == connection_id,
                Connection.oauth_state == state,
                Connection.provider_id == provider_id,
                Connection.oauth_state_expires_at > now,
                Connection.deleted_at.is_(None)
            )
            .values(oauth_state=None, oauth_state_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

        if result.rowcount != 1:
            return None

        connection = self.get(connection_id)
        self.db.refresh(connection)
        return connection

    def activate(
        self,
        connection: Connection,
        provider_user_id: Optional[str] = None,
        provider_user_name: Optional[str] = None
    ) -> Connection:
        connection.status = ConnectionStatus.ACTIVE
        connection.provider_user_id = provider_user_id
        connection.provider_user_name = provider_user_name
        connection.last_error = None
        self.db.commit()
        return connection

    def mark_error(self, connection: Connection, message: str) -> None:
        connection.status = ConnectionStatus.ERROR
        connection.last_error = message
        self.db.commit()

    def record_sync_success(self, connection: Connection, partial: bool = False) -> None:
        now = utcnow()
        connection.status = ConnectionStatus.ACTIVE
        connection.consecutive_failures = 0
        connection.health_status = ConnectionHealth.DEGRADED if partial else ConnectionHealth.HEALTHY
        connection.last_sync_at = now
        connection.last_successful_sync_at = now
        connection.last_error = None
        self.db.commit()

    def record_sync_failure(self, connection: Connection, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        connection.status = ConnectionStatus.ERROR
        connection.consecutive_failures = (connection.consecutive_failures or 0) + 1
        connection.health_status = (
            ConnectionHealth.UNHEALTHY
            if connection.consecutive_failures >= UNHEALTHY_AFTER_FAILURES
            else ConnectionHealth.DEGRADED
        )
        connection.last_sync_at = utcnow()
        connection.last_error = message
        self.db.commit()

        self.record_event(
            connection,
            ConnectionEventType.SYNC_FAILED,
            data={"message": message, "consecutive_failures": connection.consecutive_failures, **(details or {})}
        )

    def record_reconnection(self, connection: Connection, previous_connection_id: int, confidence: str) -> None:
        connection.reconnected_from = previous_connection_id
        connection.reconnection_confidence = confidence
        self.db.commit()

    def soft_delete(self, connection: Connection) -> None:
        connection.status = ConnectionStatus.DISCONNECTED
        connection.deleted_at = utcnow()
        connection.oauth_state = None
        connection.oauth_state_expires_at = None
        self.db.commit()

    def record_event(
        self,
        connection: Connection,
        event_type: ConnectionEventType,
        previous_connection_id: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None
    ) -> ConnectionHistory:
        event = ConnectionHistory(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            previous_connection_id=previous_connection_id,
            event_type=event_type,
            event_data=json.dumps(data or {}, default=str)
        )
        self.db.add(event)
        self.db.commit()

        logger.info(f"Connection {connection.id}: {event_type.value} event recorded")
        return event
