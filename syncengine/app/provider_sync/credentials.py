"""
Credential Store and Lifecycle Manager

The store persists encrypted token bundles keyed by (connection_id, provider_id).
The lifecycle manager is the only component that mutates them: it stores the
initial exchange result, refreshes expired tokens before use and wipes them on
disconnect.
"""

import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .encryption import TokenEncryption
from .errors import CredentialExpiredError, CredentialNotFoundError
from .providers.base import BaseBankProvider, ConnectionCredentials, OAuthTokens
from syncengine.app.models import (
    Connection,
    CredentialStatus,
    ProviderCredential,
    utcnow,
)

logger = logging.getLogger(__name__)


class CredentialStore:
    """Encrypted persistence for provider tokens."""

    def __init__(self, db: Session, encryption: Optional[TokenEncryption] = None):
        self.db = db
        self.encryption = encryption or TokenEncryption()

    def get(self, connection_id: int, provider_id: str) -> Optional[ProviderCredential]:
        return self.db.query(ProviderCredential).filter(
            ProviderCredential.connection_id == connection_id,
            ProviderCredential.provider_id == provider_id
        ).first()

    def upsert(
        self,
        tenant_id: str,
        connection_id: int,
        provider_id: str,
        tokens: OAuthTokens,
        metadata: Optional[Dict[str, Any]] = None,
        provider_user_id: Optional[str] = None
    ) -> ProviderCredential:
        """
        Insert or update the single credential for (connection_id, provider_id).

        A missing refresh token in ``tokens`` keeps the stored one.
        """
        credential = self.get(connection_id, provider_id)
        if credential is None:
            credential = ProviderCredential(
                tenant_id=tenant_id,
                connection_id=connection_id,
                provider_id=provider_id
            )
            self.db.add(credential)

        credential.access_token = self.encryption.encrypt(tokens.access_token)
        if tokens.refresh_token:
            credential.refresh_token = self.encryption.encrypt(tokens.refresh_token)
        credential.token_type = tokens.token_type
        credential.expires_at = tokens.expires_at
        credential.scopes = json.dumps(tokens.scopes)
        if metadata is not None:
            credential.provider_metadata = json.dumps(metadata)
        if provider_user_id:
            credential.provider_user_id = provider_user_id
        credential.status = CredentialStatus.ACTIVE
        credential.error_message = None

        self.db.commit()
        self.db.refresh(credential)
        return credential

    def to_connection_credentials(self, credential: ProviderCredential) -> ConnectionCredentials:
        """Decrypt a stored credential into the adapter-facing shape."""
        try:
            metadata = json.loads(credential.provider_metadata) if credential.provider_metadata else {}
        except (json.JSONDecodeError, TypeError):
            metadata = {}
        try:
            scopes = json.loads(credential.scopes) if credential.scopes else []
        except (json.JSONDecodeError, TypeError):
            scopes = []

        return ConnectionCredentials(
            connection_id=credential.connection_id,
            tenant_id=credential.tenant_id,
            provider_id=credential.provider_id,
            tokens=OAuthTokens(
                access_token=self.encryption.decrypt(credential.access_token) or "",
                refresh_token=self.encryption.decrypt(credential.refresh_token),
                expires_at=credential.expires_at,
                token_type=credential.token_type or "Bearer",
                scopes=scopes
            ),
            metadata=metadata
        )


class CredentialLifecycleManager:
    """
    Hands out credentials that are valid at the time of use.

    Refresh is attempted at most once per call; failures propagate to the
    caller, which decides what happens to the connection.
    """

    def __init__(self, db: Session, store: Optional[CredentialStore] = None):
        self.db = db
        self.store = store or CredentialStore(db)

    async def get_valid_credential(
        self,
        connection: Connection,
        provider: BaseBankProvider
    ) -> ConnectionCredentials:
        """
        Resolve a non-expired credential for the connection.

        Raises:
            CredentialNotFoundError: nothing stored for (connection, provider)
            CredentialExpiredError: expired with no way to refresh
            ProviderError: the refresh call itself failed
        """
        context = {"connection_id": connection.id, "provider_id": provider.provider_id}

        credential = self.store.get(connection.id, provider.provider_id)
        if credential is None or credential.status == CredentialStatus.REVOKED or not credential.access_token:
            raise CredentialNotFoundError(
                f"No credentials stored for connection {connection.id}",
                context=context
            )

        if not provider.is_token_expired(credential.expires_at):
            self._touch(credential)
            return self.store.to_connection_credentials(credential)

        if not credential.refresh_token or not provider.supports_token_refresh:
            credential.status = CredentialStatus.EXPIRED
            credential.error_message = "Access token expired and cannot be refreshed"
            self.db.commit()
            logger.warning(f"Credential for connection {connection.id} expired without refresh option")
            raise CredentialExpiredError(
                f"Access token for connection {connection.id} expired; reconnect required",
                context=context
            )

        logger.info(f"Refreshing access token for connection {connection.id}")
        refresh_token = self.store.encryption.decrypt(credential.refresh_token)
        tokens = await provider.refresh_access_token(refresh_token)

        credential = self.store.upsert(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            provider_id=provider.provider_id,
            tokens=tokens
        )
        self._touch(credential)
        return self.store.to_connection_credentials(credential)

    async def store_tokens(
        self,
        connection: Connection,
        provider_id: str,
        tokens: OAuthTokens,
        metadata: Optional[Dict[str, Any]] = None,
        provider_user_id: Optional[str] = None
    ) -> ConnectionCredentials:
        """Persist the result of the initial code exchange."""
        credential = self.store.upsert(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            provider_id=provider_id,
            tokens=tokens,
            metadata=metadata or {},
            provider_user_id=provider_user_id
        )
        return self.store.to_connection_credentials(credential)

    async def invalidate(
        self,
        connection: Connection,
        provider: Optional[BaseBankProvider] = None
    ) -> bool:
        """
        Revoke tokens at the provider (best effort) and wipe them locally.

        Without a provider the tokens are only wiped.

        Returns:
            True if the provider confirmed revocation
        """
        credential = self.store.get(connection.id, connection.provider_id)
        if credential is None:
            return False

        revoked = False
        access_token = self.store.encryption.decrypt(credential.access_token) if credential.access_token else None
        if access_token and provider is not None:
            try:
                revoked = await provider.revoke_token(access_token)
            except Exception as e:
                logger.warning(f"Token revocation failed for connection {connection.id}: {e}")

        credential.access_token = None
        credential.refresh_token = None
        credential.expires_at = None
        credential.status = CredentialStatus.REVOKED
        self.db.commit()
        return revoked

    def _touch(self, credential: ProviderCredential) -> None:
        credential.last_used_at = utcnow()
        self.db.commit()
