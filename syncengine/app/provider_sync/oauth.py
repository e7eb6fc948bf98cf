"""
OAuth Flow Service

Connect, callback and disconnect for provider connections. The callback is
the first sync trigger: once tokens are stored the sync runs inline.
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from .connections import ConnectionRegistry
from .credentials import CredentialLifecycleManager
from .errors import InvalidOAuthStateError, ProviderError, ProviderNotFoundError
from .orchestrator import SyncOptions, SyncOrchestrator, SyncResult
from .providers.base import ConnectionCredentials
from .providers.registry import ProviderRegistry
from .tasks import Deadline
from syncengine.app.models import Connection, ConnectionEventType, utcnow
from syncengine.config import get_settings

logger = logging.getLogger(__name__)


class AuthorizationStart(BaseModel):
    connection_id: int
    authorization_url: str
    state: str


class CallbackResult(BaseModel):
    connection_id: int
    tenant_id: str
    sync: SyncResult


class ConnectionService:
    """
    High-level connection lifecycle for one database session.

    Example:
        >>> service = ConnectionService(db)
        >>> start = await service.start_connection(
        ...     tenant_id="acme", provider_id="enable_banking",
        ...     user_id="u-1", redirect_uri="https://example.com/callback"
        ... )
        >>> # Redirect user to start.authorization_url
    """

    def __init__(
        self,
        db: Session,
        providers: Optional[ProviderRegistry] = None,
        credentials: Optional[CredentialLifecycleManager] = None
    ):
        self.db = db
        self.settings = get_settings()
        self.providers = providers or ProviderRegistry(db)
        self.credentials = credentials or CredentialLifecycleManager(db)
        self.connections = ConnectionRegistry(db)
        self.orchestrator = SyncOrchestrator(db, self.providers, self.credentials)

    async def start_connection(
        self,
        tenant_id: str,
        provider_id: str,
        user_id: Optional[str],
        redirect_uri: str,
        bank_id: Optional[str] = None,
        name: Optional[str] = None
    ) -> AuthorizationStart:
        """
        Create a PENDING connection and return the provider's authorization URL.

        Raises:
            ProviderNotFoundError: Unknown or inactive provider
        """
        provider = self.providers.get(provider_id)

        # Random state token (CSRF protection), valid once
        state = secrets.token_urlsafe(32)
        connection = self.connections.create_pending(
            tenant_id=tenant_id,
            provider_id=provider_id,
            oauth_state=state,
            oauth_state_expires_at=utcnow() + timedelta(minutes=self.settings.oauth_state_ttl_minutes),
            created_by=user_id,
            name=name or provider.display_name
        )

        authorization_url = await provider.get_authorization_url(
            state=state,
            redirect_uri=redirect_uri,
            bank_id=bank_id
        )

        logger.info(f"Connection {connection.id} pending authorization with {provider_id}")
        return AuthorizationStart(
            connection_id=connection.id,
            authorization_url=authorization_url,
            state=state
        )

    async def handle_callback(
        self,
        provider_id: str,
        state: str,
        code: str,
        redirect_uri: str,
        deadline: Optional[Deadline] = None
    ) -> CallbackResult:
        """
        Complete the OAuth flow and run the first sync.

        Raises:
            InvalidOAuthStateError: Unknown, expired or already used state
            ProviderError: Code exchange failed
        """
        connection = self.connections.consume_oauth_state(provider_id, state)
        if connection is None:
            logger.warning(f"Rejected OAuth callback for {provider_id}: invalid or reused state")
            raise InvalidOAuthStateError(
                "OAuth state is invalid, expired or already used",
                context={"provider_id": provider_id}
            )

        provider = self.providers.get(provider_id)
        try:
            tokens = await provider.exchange_code_for_token(code=code, redirect_uri=redirect_uri)
        except ProviderError as e:
            logger.error(f"Code exchange failed for connection {connection.id}: {e}")
            self.connections.mark_error(connection, e.user_message)
            raise

        provisional = ConnectionCredentials(
            connection_id=connection.id,
            tenant_id=connection.tenant_id,
            provider_id=provider_id,
            tokens=tokens
        )

        # Identity is best effort; the connection id stands in when unavailable
        provider_user_id, provider_user_name, user_metadata = str(connection.id), None, {}
        try:
            user_info = await provider.fetch_user_info(provisional)
            provider_user_id = user_info.user_id or provider_user_id
            provider_user_name = user_info.name
            user_metadata = user_info.metadata
        except Exception as e:
            logger.warning(f"Could not fetch user info for connection {connection.id}: {e}")

        credentials = await self.credentials.store_tokens(
            connection,
            provider_id,
            tokens,
            metadata=user_metadata,
            provider_user_id=provider_user_id
        )

        self.connections.activate(connection, provider_user_id, provider_user_name)
        self.connections.record_event(
            connection,
            ConnectionEventType.CONNECTED,
            data={"provider_id": provider_id, "provider_user_id": provider_user_id}
        )

        logger.info(f"Connection {connection.id} authorized with {provider_id}; starting initial sync")

        task = self.orchestrator.create_task(SyncOptions(
            provider=provider_id,
            connection_id=connection.id,
            tenant_id=connection.tenant_id,
            credentials=credentials,
            user_id=connection.created_by,
            deadline=deadline or Deadline.from_settings(),
            trigger="oauth_callback"
        ))
        sync_result = await task.run()

        return CallbackResult(
            connection_id=connection.id,
            tenant_id=connection.tenant_id,
            sync=sync_result
        )

    async def sync_connection(
        self,
        connection: Connection,
        user_id: Optional[str] = None,
        **options
    ) -> SyncResult:
        """Run a manual sync for an existing connection."""
        task = self.orchestrator.create_task(SyncOptions(
            provider=connection.provider_id,
            connection_id=connection.id,
            tenant_id=connection.tenant_id,
            user_id=user_id,
            **options
        ))
        return await task.run()

    async def disconnect(self, connection: Connection, user_id: Optional[str] = None) -> None:
        """
        Disconnect a connection.

        Tokens are revoked at the provider (best effort) and wiped locally;
        the connection is soft-deleted and its transactions are kept.
        """
        provider = None
        try:
            provider = self.providers.get(connection.provider_id)
        except ProviderNotFoundError as e:
            logger.warning(f"Disconnecting connection {connection.id} without revocation: {e}")

        revoked = await self.credentials.invalidate(connection, provider)

        self.connections.soft_delete(connection)
        self.connections.record_event(
            connection,
            ConnectionEventType.DISCONNECTED,
            data={"revoked": revoked, "disconnected_by": user_id}
        )

        logger.info(f"Connection {connection.id} disconnected (revoked={revoked})")
