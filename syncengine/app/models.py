from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, DECIMAL, Text, ForeignKey, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from datetime import datetime, UTC
import enum
from syncengine.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database hands back."""
    return datetime.now(UTC).replace(tzinfo=None)


class ConnectionStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    DISCONNECTED = "DISCONNECTED"


class ConnectionHealth(str, enum.Enum):
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"


class CredentialStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class AccountStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class TransactionType(str, enum.Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class IngestionJobStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class ConnectionEventType(str, enum.Enum):
    CONNECTED = "connected"
    RECONNECTION = "reconnection"
    DISCONNECTED = "disconnected"
    SYNC_FAILED = "sync_failed"


class ProviderConfig(Base):
    __tablename__ = "provider_configs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), unique=True, nullable=False)
    display_name = Column(String(100), nullable=False)
    is_active = Column(Boolean, default=True)
    environment = Column(String(20), nullable=False, default="SANDBOX")
    config_data = Column(Text, nullable=True)
    authorization_url = Column(String(500), nullable=True)
    token_url = Column(String(500), nullable=True)
    api_base_url = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Connection(Base):
    __tablename__ = "connections"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    provider_id = Column(String(50), nullable=False, index=True)
    name = Column(String(255), nullable=True)

    status = Column(SQLEnum(ConnectionStatus), nullable=False, default=ConnectionStatus.PENDING)

    # One-time OAuth state, cleared when the callback consumes it
    oauth_state = Column(String(128), nullable=True, unique=True)
    oauth_state_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Health
    health_status = Column(SQLEnum(ConnectionHealth), nullable=False, default=ConnectionHealth.HEALTHY)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_successful_sync_at = Column(DateTime(timezone=True), nullable=True)

    # Reconnection lineage
    reconnected_from = Column(Integer, ForeignKey("connections.id"), nullable=True)
    reconnection_confidence = Column(String(10), nullable=True)

    # Identity reported by the provider
    provider_user_id = Column(String(255), nullable=True)
    provider_user_name = Column(String(255), nullable=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    credentials = relationship("ProviderCredential", back_populates="connection")
    ingestion_jobs = relationship("IngestionJob", back_populates="connection")


class ProviderCredential(Base):
    __tablename__ = "provider_credentials"
    __table_args__ = (
        UniqueConstraint("connection_id", "provider_id", name="uq_credential_connection_provider"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=False)
    provider_id = Column(String(50), nullable=False)

    # OAuth tokens (encrypted)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_type = Column(String(20), default="Bearer")
    expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(Text, nullable=True)

    provider_user_id = Column(String(255), nullable=True)
    provider_metadata = Column(Text, nullable=True)

    status = Column(SQLEnum(CredentialStatus), nullable=False, default=CredentialStatus.ACTIVE)
    error_message = Column(Text, nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    connection = relationship("Connection", back_populates="credentials")


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=True)
    provider_id = Column(String(50), nullable=False)
    external_account_id = Column(String(255), nullable=False)

    name = Column(String(255), nullable=False)
    account_type = Column(String(50), nullable=False, default="checking")
    currency = Column(String(3), nullable=False, default="EUR")
    balance = Column(DECIMAL(15, 2), default=0)
    account_number = Column(String(64), nullable=True)
    iban = Column(String(50), nullable=True, index=True)
    institution_name = Column(String(255), nullable=True)

    status = Column(SQLEnum(AccountStatus), nullable=False, default=AccountStatus.ACTIVE)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    provider_accounts = relationship("ProviderAccount", back_populates="account")
    transactions = relationship("Transaction", back_populates="account")


class ProviderAccount(Base):
    __tablename__ = "provider_accounts"
    __table_args__ = (
        UniqueConstraint(
            "connection_id", "provider_id", "external_account_id",
            name="uq_provider_account_external"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=False)
    provider_id = Column(String(50), nullable=False)
    external_account_id = Column(String(255), nullable=False)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    account_name = Column(String(255), nullable=True)
    account_number = Column(String(64), nullable=True)
    account_type = Column(String(50), nullable=True)
    currency = Column(String(3), nullable=True)
    balance = Column(DECIMAL(15, 2), nullable=True)
    iban = Column(String(50), nullable=True)
    bic = Column(String(20), nullable=True)
    institution_id = Column(String(255), nullable=True)
    institution_name = Column(String(255), nullable=True)
    status = Column(SQLEnum(AccountStatus), nullable=False, default=AccountStatus.ACTIVE)
    sync_enabled = Column(Boolean, default=True)

    # Raw data
    raw_payload = Column(Text, nullable=True)

    # Per-account sync outcome
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_status = Column(String(20), nullable=True)
    last_sync_error = Column(Text, nullable=True)
    last_sync_duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="provider_accounts")


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    # {provider_id}_{connection_id}_{external_transaction_id}
    transaction_key = Column(String(512), unique=True, nullable=False)
    tenant_id = Column(String(64), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=True)
    provider_id = Column(String(50), nullable=False)
    external_transaction_id = Column(String(255), nullable=False)

    transaction_date = Column(Date, nullable=False)
    amount = Column(DECIMAL(15, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    transaction_type = Column(SQLEnum(TransactionType), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(100), default="Uncategorized")
    reference = Column(String(255), nullable=True)
    counterparty_name = Column(String(255), nullable=True)
    counterparty_account = Column(String(100), nullable=True)

    raw_payload = Column(Text, nullable=True)
    ingestion_job_id = Column(Integer, ForeignKey("ingestion_jobs.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="transactions")


class IngestionJob(Base):
    __tablename__ = "ingestion_jobs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=False)
    job_type = Column(String(50), nullable=False)

    status = Column(SQLEnum(IngestionJobStatus), nullable=False, default=IngestionJobStatus.RUNNING)

    # Results
    records_fetched = Column(Integer, default=0)
    records_imported = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    summary = Column(Text, nullable=True)

    # Error handling
    error_message = Column(Text, nullable=True)
    error_tracking_id = Column(String(32), nullable=True)

    # Timing
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)

    triggered_by = Column(String(64), nullable=True)

    connection = relationship("Connection", back_populates="ingestion_jobs")


class ConnectionHistory(Base):
    __tablename__ = "connection_history"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    connection_id = Column(Integer, ForeignKey("connections.id"), nullable=False)
    previous_connection_id = Column(Integer, ForeignKey("connections.id"), nullable=True)
    event_type = Column(SQLEnum(ConnectionEventType), nullable=False)
    event_data = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
