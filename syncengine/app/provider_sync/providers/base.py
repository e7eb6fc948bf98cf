"""
Abstract base class for provider adapters

Defines the common interface that all banking providers (OAuth aggregators and
direct bank APIs) must implement, plus the typed envelopes their data travels in.
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
from datetime import date, datetime, timedelta
from decimal import Decimal
import json

from pydantic import BaseModel, Field

from syncengine.app.models import utcnow


# Tokens expiring within this window are treated as already expired
TOKEN_EXPIRY_SKEW = timedelta(minutes=5)


class OAuthTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: str = "Bearer"
    scopes: List[str] = Field(default_factory=list)


class ConnectionCredentials(BaseModel):
    connection_id: int
    tenant_id: str
    provider_id: str
    tokens: OAuthTokens
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ProviderUserInfo(BaseModel):
    user_id: str
    name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InstitutionInfo(BaseModel):
    institution_id: Optional[str] = None
    name: Optional[str] = None


class ProviderAccountData(BaseModel):
    """
    One account as reported by a provider.

    Known fields are typed; everything the provider sent is kept verbatim in
    ``raw`` so new provider fields survive without schema changes.
    """
    external_account_id: str
    account_name: str
    account_number: Optional[str] = None
    account_type: str = "checking"
    currency: str = "EUR"
    balance: Decimal = Decimal("0")
    iban: Optional[str] = None
    bic: Optional[str] = None
    status: str = "active"
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class ProviderTransactionData(BaseModel):
    """
    One transaction as reported by a provider.

    ``amount`` is passed through in whatever sign the provider uses; ``type``
    decides the stored sign. Fields a broken payload may lack are optional and
    validated by the normalization layer, so one bad record never fails the
    whole fetch.
    """
    external_transaction_id: Optional[str] = None
    transaction_date: Optional[date] = None
    amount: Optional[Decimal] = None
    currency: str = "EUR"
    type: str = "debit"
    description: str = ""
    category: Optional[str] = None
    reference: Optional[str] = None
    counterparty_name: Optional[str] = None
    counterparty_account: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class RawAccountsResponse(BaseModel):
    provider_id: str
    institution: Optional[InstitutionInfo] = None
    accounts: List[ProviderAccountData] = Field(default_factory=list)
    raw: Any = None
    fetched_at: datetime = Field(default_factory=utcnow)

    @property
    def account_count(self) -> int:
        return len(self.accounts)


class BaseBankProvider(ABC):
    """
    Abstract base class for bank integration providers.

    Concrete providers declare their optional capabilities as class attributes;
    the orchestrator checks these flags instead of probing for methods.
    """

    provider_id: str = ""
    display_name: str = ""

    # Capability flags
    supports_transaction_sync: bool = True
    supports_token_refresh: bool = True

    # Lookback for an account that has never been synced
    default_lookback_days: int = 90

    def __init__(self, provider_config):
        """
        Initialize provider with configuration from database.

        Args:
            provider_config: ProviderConfig model instance with configuration
        """
        self.config = provider_config

        # Parse JSON configuration data
        try:
            self.config_data = json.loads(provider_config.config_data) if provider_config.config_data else {}
        except (json.JSONDecodeError, TypeError):
            self.config_data = {}

    @abstractmethod
    async def get_authorization_url(
        self,
        state: str,
        redirect_uri: str,
        bank_id: Optional[str] = None
    ) -> str:
        """
        Generate OAuth authorization URL for user to authorize bank access.

        Args:
            state: One-time state token stored on the connection
            redirect_uri: Where to redirect after authorization
            bank_id: Optional specific bank/ASPSP identifier

        Returns:
            Full authorization URL to redirect user to
        """
        pass

    @abstractmethod
    async def exchange_code_for_token(
        self,
        code: str,
        redirect_uri: str
    ) -> OAuthTokens:
        """
        Exchange authorization code for access/refresh tokens.

        Args:
            code: Authorization code from OAuth callback
            redirect_uri: Must match the one used in authorization
        """
        pass

    @abstractmethod
    async def refresh_access_token(
        self,
        refresh_token: str
    ) -> OAuthTokens:
        """
        Refresh an expired access token using refresh token.

        Args:
            refresh_token: The refresh token

        Returns:
            New tokens; refresh_token may be None if the provider did not rotate it
        """
        pass

    @abstractmethod
    async def fetch_user_info(
        self,
        credentials: ConnectionCredentials
    ) -> ProviderUserInfo:
        """
        Fetch the provider-side identity of the connected user.

        Callers treat this as best effort.
        """
        pass

    @abstractmethod
    async def fetch_raw_accounts(
        self,
        credentials: ConnectionCredentials
    ) -> RawAccountsResponse:
        """
        Fetch all accounts the connection grants access to.

        Returns:
            Institution info, typed accounts and the untouched provider response
        """
        pass

    @abstractmethod
    async def fetch_transactions(
        self,
        credentials: ConnectionCredentials,
        external_account_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: Optional[int] = None
    ) -> List[ProviderTransactionData]:
        """
        Fetch transactions for an account within date range.

        Args:
            credentials: Valid connection credentials
            external_account_id: Account identifier from provider
            start_date: Start date (inclusive)
            end_date: End date (inclusive)
            limit: Maximum number of transactions to return
        """
        pass

    @abstractmethod
    async def revoke_token(
        self,
        access_token: str
    ) -> bool:
        """
        Revoke access token (disconnect bank).

        Returns:
            True if revocation successful or not needed
        """
        pass

    def is_token_expired(self, expires_at: Optional[datetime]) -> bool:
        """
        Check if token is expired or about to expire.

        Tokens without an expiry are treated as long-lived.
        """
        if expires_at is None:
            return False
        if expires_at.tzinfo is not None:
            expires_at = expires_at.replace(tzinfo=None) - (expires_at.utcoffset() or timedelta(0))
        return expires_at <= utcnow() + TOKEN_EXPIRY_SKEW

    def map_account_type(self, provider_account_type: Optional[str]) -> str:
        """Map a provider account type onto the canonical set."""
        normalized = (provider_account_type or "").lower().replace("_", "").replace("-", "").replace(" ", "")

        if "credit" in normalized:
            return "credit_card"
        if "saving" in normalized:
            return "savings"
        if "loan" in normalized or "mortgage" in normalized:
            return "loan"
        if "investment" in normalized or "brokerage" in normalized:
            return "investment"
        return "checking"

    def get_config_value(self, key: str, default: Any = None) -> Any:
        """
        Helper to get configuration value from config_data JSON.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self.config_data.get(key, default)
