"""
Pytest configuration and fixtures
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace
from typing import Dict, List, Optional, Union
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from syncengine.database import Base
from syncengine.app import models
from syncengine.app.provider_sync.credentials import CredentialStore
from syncengine.app.provider_sync.providers.base import (
    BaseBankProvider,
    InstitutionInfo,
    OAuthTokens,
    ProviderAccountData,
    ProviderTransactionData,
    ProviderUserInfo,
    RawAccountsResponse,
)

TENANT_ID = "tenant-a"
PROVIDER_ID = "stub"


class StubProvider(BaseBankProvider):
    """In-memory provider adapter that records every call it receives."""

    provider_id = PROVIDER_ID
    display_name = "Stub Bank"

    def __init__(self):
        super().__init__(SimpleNamespace(name=PROVIDER_ID, display_name="Stub Bank", config_data=None))
        self.calls: List[str] = []
        self.transaction_requests: List[Dict] = []

        self.accounts: Union[List[ProviderAccountData], Exception] = []
        self.transactions: Dict[str, Union[List[ProviderTransactionData], Exception]] = {}
        self.fetch_delay = 0.0

        self.tokens = OAuthTokens(
            access_token="access-initial",
            refresh_token="refresh-initial",
            expires_at=models.utcnow() + timedelta(hours=1)
        )
        self.refreshed_tokens = OAuthTokens(
            access_token="access-refreshed",
            refresh_token=None,
            expires_at=models.utcnow() + timedelta(hours=1)
        )
        self.user_info: Union[ProviderUserInfo, Exception] = ProviderUserInfo(user_id="psu-1", name="Test User")
        self.revoked: List[str] = []

    async def get_authorization_url(self, state, redirect_uri, bank_id=None):
        self.calls.append("get_authorization_url")
        return f"https://bank.example.com/authorize?state={state}&redirect_uri={redirect_uri}"

    async def exchange_code_for_token(self, code, redirect_uri):
        self.calls.append("exchange_code_for_token")
        return self.tokens

    async def refresh_access_token(self, refresh_token):
        self.calls.append("refresh_access_token")
        return self.refreshed_tokens

    async def fetch_user_info(self, credentials):
        self.calls.append("fetch_user_info")
        if isinstance(self.user_info, Exception):
            raise self.user_info
        return self.user_info

    async def fetch_raw_accounts(self, credentials):
        self.calls.append("fetch_raw_accounts")
        if isinstance(self.accounts, Exception):
            raise self.accounts
        return RawAccountsResponse(
            provider_id=self.provider_id,
            institution=InstitutionInfo(institution_id="stub-bank", name="Stub Bank"),
            accounts=self.accounts,
            raw={"accounts": [a.external_account_id for a in self.accounts]}
        )

    async def fetch_transactions(self, credentials, external_account_id, start_date=None, end_date=None, limit=None):
        self.calls.append("fetch_transactions")
        self.transaction_requests.append({
            "external_account_id": external_account_id,
            "start_date": start_date,
            "end_date": end_date,
            "access_token": credentials.tokens.access_token,
        })
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        result = self.transactions.get(external_account_id, [])
        if isinstance(result, Exception):
            raise result
        return result

    async def revoke_token(self, access_token):
        self.calls.append("revoke_token")
        self.revoked.append(access_token)
        return True

    @property
    def data_calls(self) -> List[str]:
        return [c for c in self.calls if c in ("fetch_raw_accounts", "fetch_transactions")]


def make_account(external_id: str, **overrides) -> ProviderAccountData:
    values = {
        "external_account_id": external_id,
        "account_name": f"Account {external_id}",
        "account_number": None,
        "currency": "NOK",
        "balance": Decimal("100.00"),
    }
    values.update(overrides)
    return ProviderAccountData(**values)


def make_transaction(
    external_id: Optional[str],
    tx_date: Optional[date] = date(2024, 6, 1),
    amount: Optional[str] = "10.00",
    tx_type: str = "debit",
    **overrides
) -> ProviderTransactionData:
    values = {
        "external_transaction_id": external_id,
        "transaction_date": tx_date,
        "amount": Decimal(amount) if amount is not None else None,
        "currency": "NOK",
        "type": tx_type,
        "description": f"Transaction {external_id}",
        "raw": {"id": external_id},
    }
    values.update(overrides)
    return ProviderTransactionData(**values)


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads (TestClient runs sync routes in a threadpool)"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create database session for tests"""
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def stub_provider():
    return StubProvider()


@pytest.fixture
def providers(stub_provider):
    """Provider registry stand-in that always resolves to the stub adapter"""
    registry = Mock()
    registry.get.return_value = stub_provider
    return registry


@pytest.fixture
def provider_config(db_session):
    config = models.ProviderConfig(
        name=PROVIDER_ID,
        display_name="Stub Bank",
        is_active=True,
        environment="SANDBOX",
        config_data='{"adapter": "stub"}',
        authorization_url="https://bank.example.com/authorize",
        token_url="https://bank.example.com/token",
        api_base_url="https://bank.example.com/api"
    )
    db_session.add(config)
    db_session.commit()
    return config


@pytest.fixture
def connection(db_session):
    connection = models.Connection(
        tenant_id=TENANT_ID,
        provider_id=PROVIDER_ID,
        name="Stub Bank",
        status=models.ConnectionStatus.ACTIVE,
        health_status=models.ConnectionHealth.HEALTHY,
        consecutive_failures=0,
        created_by="user-1"
    )
    db_session.add(connection)
    db_session.commit()
    db_session.refresh(connection)
    return connection


@pytest.fixture
def credential_store(db_session):
    return CredentialStore(db_session)


@pytest.fixture
def stored_credential(credential_store, connection):
    """Valid credential for the connection, expiring in one hour"""
    return credential_store.upsert(
        tenant_id=TENANT_ID,
        connection_id=connection.id,
        provider_id=PROVIDER_ID,
        tokens=OAuthTokens(
            access_token="access-stored",
            refresh_token="refresh-stored",
            expires_at=models.utcnow() + timedelta(hours=1)
        )
    )


@pytest.fixture
def account_data():
    """Factory for provider account payloads"""
    return make_account


@pytest.fixture
def transaction_data():
    """Factory for provider transaction payloads"""
    return make_transaction


@pytest.fixture
def historical(db_session):
    """
    Data left behind by an earlier, disconnected connection of the tenant:
    one account with three transactions, the newest dated 2024-06-01.
    """
    previous = models.Connection(
        tenant_id=TENANT_ID,
        provider_id=PROVIDER_ID,
        name="Old Stub Bank",
        status=models.ConnectionStatus.DISCONNECTED,
        health_status=models.ConnectionHealth.HEALTHY,
        consecutive_failures=0,
        deleted_at=models.utcnow() - timedelta(days=30)
    )
    db_session.add(previous)
    db_session.commit()

    account = models.Account(
        tenant_id=TENANT_ID,
        connection_id=previous.id,
        provider_id=PROVIDER_ID,
        external_account_id="acc-1",
        name="Brukskonto",
        currency="NOK",
        balance=Decimal("500.00"),
        account_number="1234.56.71234",
        iban="NO93 8601 1117 947"
    )
    db_session.add(account)
    db_session.commit()

    for i, tx_date in enumerate([date(2024, 5, 1), date(2024, 5, 15), date(2024, 6, 1)], start=1):
        db_session.add(models.Transaction(
            transaction_key=f"{PROVIDER_ID}_{previous.id}_old-{i}",
            tenant_id=TENANT_ID,
            account_id=account.id,
            connection_id=previous.id,
            provider_id=PROVIDER_ID,
            external_transaction_id=f"old-{i}",
            transaction_date=tx_date,
            amount=Decimal("-25.00"),
            currency="NOK",
            transaction_type=models.TransactionType.DEBIT,
            description=f"Old transaction {i}"
        ))
    db_session.commit()

    return SimpleNamespace(connection=previous, account=account, transaction_count=3, last_date=date(2024, 6, 1))
