"""
Normalization & Upsert Layer

Maps provider records into the canonical schema with idempotent writes:
- Accounts are keyed by (connection_id, provider_id, external_account_id)
- Transactions are keyed by "{provider_id}_{connection_id}_{external_transaction_id}"
- Accounts missing from a fetch are marked CLOSED, never deleted

Every record is written and committed on its own, so a failing record rolls
back only itself and the rest of the batch continues.
"""

import json
import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import PersistenceError, ValidationError, sanitize_error
from .providers.base import ProviderAccountData, ProviderTransactionData
from syncengine.app.models import (
    Account,
    AccountStatus,
    ProviderAccount,
    Transaction,
    TransactionType,
    utcnow,
)

logger = logging.getLogger(__name__)


class BatchResult(BaseModel):
    """Outcome counts for one entity type within a sync."""
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return self.created + self.updated + self.failed + self.skipped

    @property
    def imported(self) -> int:
        return self.created + self.updated

    def merge(self, other: "BatchResult") -> None:
        self.created += other.created
        self.updated += other.updated
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors.extend(other.errors)

    def record_failure(self, entity: str, external_id: Optional[str], error: Exception) -> None:
        self.failed += 1
        self.errors.append({
            "entity": entity,
            "external_id": external_id,
            "error_type": error.__class__.__name__,
            "message": sanitize_error(error),
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
        }


def transaction_key(provider_id: str, connection_id: int, external_transaction_id: str) -> str:
    return f"{provider_id}_{connection_id}_{external_transaction_id}"


def signed_amount(amount: Decimal, transaction_type: TransactionType) -> Decimal:
    """
    The only place where transaction sign is decided.

    Credits are stored positive and debits negative, whatever sign the
    provider reported.
    """
    if transaction_type == TransactionType.CREDIT:
        return abs(amount)
    return -abs(amount)


def parse_transaction_type(value: Optional[str]) -> TransactionType:
    normalized = (value or "").strip().lower()
    if normalized in ("credit", "crdt", "cr", "in"):
        return TransactionType.CREDIT
    if normalized in ("debit", "dbit", "dr", "out"):
        return TransactionType.DEBIT
    raise ValidationError(f"Unknown transaction type '{value}'")


def validate_transaction(tx: ProviderTransactionData) -> Tuple[str, date, Decimal, TransactionType]:
    """
    Check the fields a transaction cannot be stored without.

    Raises:
        ValidationError: missing external id, date or amount, or unknown type
    """
    if not tx.external_transaction_id:
        raise ValidationError("Transaction has no external id")
    context = {"external_id": tx.external_transaction_id}
    if tx.transaction_date is None:
        raise ValidationError("Transaction has no date", context=context)
    if tx.amount is None:
        raise ValidationError("Transaction has no amount", context=context)
    try:
        tx_type = parse_transaction_type(tx.type)
    except ValidationError as e:
        e.context.update(context)
        raise
    return tx.external_transaction_id, tx.transaction_date, tx.amount, tx_type


def _account_status(value: Optional[str]) -> AccountStatus:
    return AccountStatus.CLOSED if (value or "").lower() == "closed" else AccountStatus.ACTIVE


class NormalizationService:

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def upsert_accounts(
        self,
        tenant_id: str,
        connection_id: int,
        provider_id: str,
        accounts: Iterable[ProviderAccountData]
    ) -> Tuple[BatchResult, List[ProviderAccount]]:
        """
        Upsert raw provider accounts and their normalized Accounts.

        Returns:
            Batch counts and the ProviderAccount rows that were written
        """
        result = BatchResult()
        written: List[ProviderAccount] = []

        for data in accounts:
            try:
                provider_account, created = self._upsert_account(tenant_id, connection_id, provider_id, data)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to store account {data.external_account_id}: {e}")
                result.record_failure(
                    "account",
                    data.external_account_id,
                    PersistenceError(f"Could not store account {data.external_account_id}", original_exception=e)
                )
                continue
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to normalize account {data.external_account_id}: {e}")
                result.record_failure("account", data.external_account_id, e)
                continue

            if created:
                result.created += 1
            else:
                result.updated += 1
            written.append(provider_account)

        return result, written

    def _upsert_account(
        self,
        tenant_id: str,
        connection_id: int,
        provider_id: str,
        data: ProviderAccountData
    ) -> Tuple[ProviderAccount, bool]:
        if not data.external_account_id:
            raise ValidationError("Account has no external id")

        provider_account = self.db.query(ProviderAccount).filter(
            ProviderAccount.connection_id == connection_id,
            ProviderAccount.provider_id == provider_id,
            ProviderAccount.external_account_id == data.external_account_id
        ).first()

        created = provider_account is None
        if created:
            provider_account = ProviderAccount(
                tenant_id=tenant_id,
                connection_id=connection_id,
                provider_id=provider_id,
                external_account_id=data.external_account_id
            )
            self.db.add(provider_account)

        status = _account_status(data.status)

        provider_account.account_name = data.account_name
        provider_account.account_number = data.account_number
        provider_account.account_type = data.account_type
        provider_account.currency = data.currency
        provider_account.balance = data.balance
        provider_account.iban = data.iban
        provider_account.bic = data.bic
        provider_account.institution_id = data.institution_id
        provider_account.institution_name = data.institution_name
        provider_account.status = status
        provider_account.raw_payload = json.dumps(data.raw, default=str)

        account = provider_account.account
        if account is None:
            account = Account(
                tenant_id=tenant_id,
                connection_id=connection_id,
                provider_id=provider_id,
                external_account_id=data.external_account_id,
                account_type=data.account_type,
                account_number=data.account_number,
                iban=data.iban,
                institution_name=data.institution_name
            )
            self.db.add(account)
            provider_account.account = account

        # Mutable fields only; identity stays as first seen
        account.name = data.account_name
        account.balance = data.balance
        account.currency = data.currency
        account.status = status
        account.closed_at = utcnow() if status == AccountStatus.CLOSED else None

        self.db.flush()
        return provider_account, created

    def close_missing_accounts(
        self,
        tenant_id: str,
        connection_id: int,
        provider_id: str,
        seen_external_ids: Iterable[str]
    ) -> int:
        """
        Mark previously synced accounts that the provider no longer reports as CLOSED.

        Returns:
            Number of accounts closed
        """
        seen = set(seen_external_ids)
        stale = self.db.query(ProviderAccount).filter(
            ProviderAccount.tenant_id == tenant_id,
            ProviderAccount.connection_id == connection_id,
            ProviderAccount.provider_id == provider_id,
            ProviderAccount.status == AccountStatus.ACTIVE
        ).all()

        closed = 0
        now = utcnow()
        for provider_account in stale:
            if provider_account.external_account_id in seen:
                continue
            provider_account.status = AccountStatus.CLOSED
            if provider_account.account is not None:
                provider_account.account.status = AccountStatus.CLOSED
                provider_account.account.closed_at = now
            closed += 1
            logger.info(f"Account {provider_account.external_account_id} no longer reported by "
                        f"{provider_id}; marked closed")

        if closed:
            self.db.commit()
        return closed

    def record_account_sync(
        self,
        provider_account: ProviderAccount,
        status: str,
        duration_ms: int,
        error: Optional[str] = None
    ) -> None:
        provider_account.last_synced_at = utcnow()
        provider_account.last_sync_status = status
        provider_account.last_sync_error = error
        provider_account.last_sync_duration_ms = duration_ms
        if provider_account.account is not None and status == "success":
            provider_account.account.last_synced_at = provider_account.last_synced_at
        self.db.commit()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def upsert_transactions(
        self,
        tenant_id: str,
        connection_id: int,
        provider_id: str,
        account: Account,
        transactions: Iterable[ProviderTransactionData],
        ingestion_job_id: Optional[int] = None,
        skip_on_or_before: Optional[date] = None
    ) -> BatchResult:
        """
        Upsert transactions for one account.

        Args:
            skip_on_or_before: Transactions dated on or before this day are
                already held under a previous connection and are skipped
        """
        result = BatchResult()

        for tx in transactions:
            try:
                external_id, tx_date, amount, tx_type = validate_transaction(tx)
            except ValidationError as e:
                logger.warning(f"Skipping malformed transaction for account {account.id}: {e.message}")
                result.record_failure("transaction", tx.external_transaction_id, e)
                continue

            if skip_on_or_before is not None and tx_date <= skip_on_or_before:
                result.skipped += 1
                continue

            try:
                created = self._upsert_transaction(
                    tenant_id, connection_id, provider_id, account, tx,
                    external_id, tx_date, amount, tx_type, ingestion_job_id
                )
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to store transaction {external_id}: {e}")
                result.record_failure(
                    "transaction",
                    external_id,
                    PersistenceError(f"Could not store transaction {external_id}", original_exception=e)
                )
                continue
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to normalize transaction {external_id}: {e}")
                result.record_failure("transaction", external_id, e)
                continue

            if created:
                result.created += 1
            else:
                result.updated += 1

        return result

    def _upsert_transaction(
        self,
        tenant_id: str,
        connection_id: int,
        provider_id: str,
        account: Account,
        tx: ProviderTransactionData,
        external_id: str,
        tx_date: date,
        amount: Decimal,
        tx_type: TransactionType,
        ingestion_job_id: Optional[int]
    ) -> bool:
        key = transaction_key(provider_id, connection_id, external_id)
        transaction = self.db.query(Transaction).filter(Transaction.transaction_key == key).first()

        created = transaction is None
        if created:
            transaction = Transaction(
                transaction_key=key,
                tenant_id=tenant_id,
                connection_id=connection_id,
                provider_id=provider_id,
                external_transaction_id=external_id
            )
            self.db.add(transaction)

        transaction.account_id = account.id
        transaction.transaction_date = tx_date
        transaction.amount = signed_amount(amount, tx_type)
        transaction.currency = tx.currency or account.currency
        transaction.transaction_type = tx_type
        transaction.description = tx.description
        if tx.category:
            transaction.category = tx.category
        transaction.reference = tx.reference
        transaction.counterparty_name = tx.counterparty_name
        transaction.counterparty_account = tx.counterparty_account
        transaction.raw_payload = json.dumps(tx.raw, default=str)
        transaction.ingestion_job_id = ingestion_job_id

        self.db.flush()
        return created
