"""
Sync Orchestrator

Top-level coordinator for one connection's sync:

    INITIATED -> CREDENTIAL_RESOLVED -> ACCOUNTS_SYNCED
              -> RECONCILIATION_CHECKED -> TRANSACTIONS_SYNCED -> FINALIZED

Record-level failures (one account, one transaction) are collected and the
sync continues; the job ends `completed_with_errors`. Stage-level failures
(credentials, the account fetch itself, anything unexpected) skip the
remaining stages and the job ends `failed`. Either way the job is finalized
exactly once and the caller gets a SyncResult.
"""

import asyncio
import enum
import logging
import time
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import Session

from .connections import ConnectionRegistry
from .credentials import CredentialLifecycleManager
from .errors import (
    ProviderError,
    SyncEngineError,
    new_error_tracking_id,
    sanitize_error,
)
from .ledger import IngestionJobLedger
from .normalization import BatchResult, NormalizationService
from .providers.base import BaseBankProvider, ConnectionCredentials
from .providers.registry import ProviderRegistry
from .reconciliation import ReconciliationMatcher, ReconnectionMatch
from .tasks import Deadline, SyncTask
from syncengine.app.models import (
    AccountStatus,
    Connection,
    IngestionJobStatus,
    ProviderAccount,
    Transaction,
)
from syncengine.config import get_settings

logger = logging.getLogger(__name__)


class SyncStage(str, enum.Enum):
    INITIATED = "INITIATED"
    CREDENTIAL_RESOLVED = "CREDENTIAL_RESOLVED"
    ACCOUNTS_SYNCED = "ACCOUNTS_SYNCED"
    RECONCILIATION_CHECKED = "RECONCILIATION_CHECKED"
    TRANSACTIONS_SYNCED = "TRANSACTIONS_SYNCED"
    FINALIZED = "FINALIZED"


class SyncOptions(BaseModel):
    provider: str
    connection_id: int
    tenant_id: str
    credentials: Optional[ConnectionCredentials] = None
    sync_accounts: bool = True
    sync_transactions: bool = True
    user_id: Optional[str] = None
    account_ids: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    deadline: Optional[Deadline] = None
    trigger: str = "manual"

    class Config:
        arbitrary_types_allowed = True


class SyncResult(BaseModel):
    success: bool
    job_id: Optional[int] = None
    status: str
    accounts_synced: int = 0
    transactions_synced: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    duration: float = 0.0
    error_tracking_id: Optional[str] = None


class _SyncRun:
    """Mutable state of one orchestration."""

    def __init__(self, options: SyncOptions, deadline: Deadline):
        self.options = options
        self.deadline = deadline
        # Last stage that completed
        self.stage = SyncStage.INITIATED
        self.started = time.monotonic()

        self.accounts = BatchResult()
        self.transactions = BatchResult()
        self.accounts_fetched = 0
        self.transactions_fetched = 0
        self.closed_accounts = 0
        self.account_errors: List[Dict[str, Any]] = []
        self.warnings: List[str] = []
        self.reconnection: Optional[ReconnectionMatch] = None
        self.fatal_error: Optional[Exception] = None

    @property
    def errors(self) -> List[Dict[str, Any]]:
        return self.accounts.errors + self.account_errors + self.transactions.errors

    @property
    def duration(self) -> float:
        return time.monotonic() - self.started

    def add_account_error(self, external_account_id: str, error_type: str, message: str) -> None:
        self.account_errors.append({
            "entity": "account_transactions",
            "external_id": external_account_id,
            "error_type": error_type,
            "message": message,
        })

    def summary(self) -> Dict[str, Any]:
        return {
            "trigger": self.options.trigger,
            "last_completed_stage": self.stage.value,
            "accounts": self.accounts.to_dict(),
            "transactions": self.transactions.to_dict(),
            "closed_accounts": self.closed_accounts,
            "reconnection": self.reconnection.to_dict() if self.reconnection else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "duration_ms": int(self.duration * 1000),
        }


class SyncOrchestrator:
    """
    Per-connection sync coordinator.

    Example:
        >>> orchestrator = SyncOrchestrator(db)
        >>> result = await orchestrator.orchestrate_sync(SyncOptions(
        ...     provider="enable_banking", connection_id=12, tenant_id="acme"
        ... ))
        >>> print(f"Imported {result.transactions_synced} transactions")
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
        self.ledger = IngestionJobLedger(db)
        self.normalization = NormalizationService(db)
        self.matcher = ReconciliationMatcher(db, self.connections)

    def create_task(self, options: SyncOptions) -> SyncTask:
        return SyncTask(
            lambda: self.orchestrate_sync(options),
            name=f"sync-connection-{options.connection_id}"
        )

    async def orchestrate_sync(self, options: SyncOptions) -> SyncResult:
        connection = self.connections.get(options.connection_id, options.tenant_id)
        if connection is None:
            tracking_id = new_error_tracking_id()
            logger.error(f"[{tracking_id}] Sync requested for unknown connection {options.connection_id}")
            return SyncResult(
                success=False,
                status=IngestionJobStatus.FAILED.value,
                errors=[{"entity": "connection", "external_id": None,
                         "error_type": "ConnectionNotFound", "message": "Connection not found"}],
                error_tracking_id=tracking_id
            )

        run = _SyncRun(options, options.deadline or Deadline.from_settings())

        # INITIATED: the job row exists before any provider call
        job = self.ledger.create(
            tenant_id=options.tenant_id,
            connection_id=connection.id,
            job_type="provider_sync",
            triggered_by=options.user_id
        )

        logger.info(f"Sync started: job={job.id}, connection={connection.id}, provider={options.provider}")

        try:
            await self._run_stages(connection, job.id, run)
        except asyncio.CancelledError as e:
            run.fatal_error = e
            self._finalize(connection, job.id, run)
            raise
        except Exception as e:
            run.fatal_error = e

        return self._finalize(connection, job.id, run)

    async def _run_stages(self, connection: Connection, job_id: int, run: _SyncRun) -> None:
        options = run.options
        provider = self.providers.get(options.provider)

        # CREDENTIAL_RESOLVED
        credentials = options.credentials
        if credentials is None:
            credentials = await run.deadline.run(
                self.credentials.get_valid_credential(connection, provider)
            )
        run.stage = SyncStage.CREDENTIAL_RESOLVED

        # ACCOUNTS_SYNCED
        provider_accounts = await self._sync_accounts(connection, provider, credentials, run)
        run.stage = SyncStage.ACCOUNTS_SYNCED
        self.ledger.update(
            job_id,
            records_fetched=run.accounts_fetched,
            records_imported=run.accounts.imported,
            records_failed=run.accounts.failed
        )

        # RECONCILIATION_CHECKED
        resume_date = self._check_reconnection(connection, provider_accounts, run)
        run.stage = SyncStage.RECONCILIATION_CHECKED

        # TRANSACTIONS_SYNCED
        if options.sync_transactions:
            if provider.supports_transaction_sync:
                await self._sync_transactions(
                    connection, provider, credentials, provider_accounts, resume_date, job_id, run
                )
            else:
                run.warnings.append(f"Provider {provider.provider_id} does not support transaction sync")
        run.stage = SyncStage.TRANSACTIONS_SYNCED

    async def _sync_accounts(
        self,
        connection: Connection,
        provider: BaseBankProvider,
        credentials: ConnectionCredentials,
        run: _SyncRun
    ) -> List[ProviderAccount]:
        if not run.options.sync_accounts:
            return self.db.query(ProviderAccount).filter(
                ProviderAccount.connection_id == connection.id,
                ProviderAccount.provider_id == provider.provider_id,
                ProviderAccount.sync_enabled.is_(True),
                ProviderAccount.status == AccountStatus.ACTIVE
            ).all()

        # A failed fetch is stage-level and propagates
        response = await run.deadline.run(provider.fetch_raw_accounts(credentials))
        run.accounts_fetched = response.account_count

        batch, provider_accounts = self.normalization.upsert_accounts(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            provider_id=provider.provider_id,
            accounts=response.accounts
        )
        run.accounts = batch

        run.closed_accounts = self.normalization.close_missing_accounts(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            provider_id=provider.provider_id,
            seen_external_ids=[a.external_account_id for a in response.accounts]
        )

        logger.info(f"Accounts for connection {connection.id}: created={batch.created}, "
                    f"updated={batch.updated}, failed={batch.failed}, closed={run.closed_accounts}")

        return [
            pa for pa in provider_accounts
            if pa.sync_enabled and pa.status == AccountStatus.ACTIVE
        ]

    def _check_reconnection(
        self,
        connection: Connection,
        provider_accounts: List[ProviderAccount],
        run: _SyncRun
    ) -> Optional[date]:
        # Only a connection's first successful sync can be a reconnection
        if connection.last_successful_sync_at is not None or connection.reconnected_from is not None:
            return None
        if not provider_accounts:
            return None

        match = self.matcher.find_match(connection, provider_accounts)
        if not match.matches:
            return None

        run.reconnection = match
        if not match.should_link:
            run.warnings.append(
                f"Some accounts overlap with an earlier connection ({len(match.matches)} of "
                f"{len(provider_accounts)}); treated as a new connection"
            )
            return None

        self.matcher.link(connection, match)
        for pa in provider_accounts:
            self.db.refresh(pa)
        return match.resume_date

    async def _sync_transactions(
        self,
        connection: Connection,
        provider: BaseBankProvider,
        credentials: ConnectionCredentials,
        provider_accounts: List[ProviderAccount],
        resume_date: Optional[date],
        job_id: int,
        run: _SyncRun
    ) -> None:
        options = run.options
        if options.account_ids is not None:
            wanted = set(options.account_ids)
            provider_accounts = [pa for pa in provider_accounts if pa.external_account_id in wanted]

        semaphore = asyncio.Semaphore(max(1, self.settings.sync_max_concurrency))

        async def sync_account(provider_account: ProviderAccount) -> None:
            async with semaphore:
                await self._sync_account_transactions(
                    connection, provider, credentials, provider_account, resume_date, job_id, run
                )

        outcomes = await asyncio.gather(
            *(sync_account(pa) for pa in provider_accounts),
            return_exceptions=True
        )
        for provider_account, outcome in zip(provider_accounts, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                external_id = provider_account.external_account_id
                logger.error(f"Transaction sync failed for account {external_id}: {outcome}")
                self.db.rollback()
                run.add_account_error(
                    external_id,
                    outcome.__class__.__name__,
                    sanitize_error(outcome)
                )

        logger.info(f"Transactions for connection {connection.id}: created={run.transactions.created}, "
                    f"updated={run.transactions.updated}, failed={run.transactions.failed}, "
                    f"skipped={run.transactions.skipped}")

    async def _sync_account_transactions(
        self,
        connection: Connection,
        provider: BaseBankProvider,
        credentials: ConnectionCredentials,
        provider_account: ProviderAccount,
        resume_date: Optional[date],
        job_id: int,
        run: _SyncRun
    ) -> None:
        external_id = provider_account.external_account_id
        account = provider_account.account
        started = time.monotonic()

        if account is None:
            return

        start_date, end_date, skip_on_or_before = self._transaction_range(provider, account.id, resume_date, run)

        try:
            transactions = await run.deadline.run(provider.fetch_transactions(
                credentials,
                external_id,
                start_date=start_date,
                end_date=end_date,
                limit=self.settings.default_transaction_limit
            ))
        except asyncio.TimeoutError:
            logger.warning(f"Deadline reached before transactions of account {external_id} were fetched")
            run.add_account_error(external_id, "DeadlineExceeded", "Sync deadline exceeded")
            self._record_account(provider_account, "failed", started, "Sync deadline exceeded")
            return
        except ProviderError as e:
            logger.error(f"Transaction fetch failed for account {external_id}: {e}")
            run.add_account_error(external_id, e.__class__.__name__, e.user_message)
            self._record_account(provider_account, "failed", started, e.user_message)
            return
        except Exception as e:
            logger.exception(f"Unexpected error fetching transactions for account {external_id}")
            run.add_account_error(external_id, e.__class__.__name__, sanitize_error(e))
            self._record_account(provider_account, "failed", started, sanitize_error(e))
            return

        run.transactions_fetched += len(transactions)

        batch = self.normalization.upsert_transactions(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            provider_id=provider.provider_id,
            account=account,
            transactions=transactions,
            ingestion_job_id=job_id,
            skip_on_or_before=skip_on_or_before
        )
        run.transactions.merge(batch)

        status = "partial" if batch.failed else "success"
        self._record_account(provider_account, status, started, None)

    def _transaction_range(
        self,
        provider: BaseBankProvider,
        account_id: int,
        resume_date: Optional[date],
        run: _SyncRun
    ) -> Tuple[date, date, Optional[date]]:
        """
        Pick the fetch window for one account.

        Priority: explicit caller range, smart resume date, incremental
        window with overlap, provider default lookback.

        Returns:
            (start_date, end_date, skip_on_or_before)
        """
        options = run.options
        end_date = options.end_date or date.today()

        if options.start_date:
            return options.start_date, end_date, None

        if resume_date:
            return resume_date, end_date, resume_date

        last_date = self.db.query(func.max(Transaction.transaction_date)).filter(
            Transaction.account_id == account_id
        ).scalar()
        if last_date:
            return last_date - timedelta(days=self.settings.incremental_overlap_days), end_date, None

        return end_date - timedelta(days=provider.default_lookback_days), end_date, None

    def _record_account(self, provider_account: ProviderAccount, status: str, started: float, error: Optional[str]) -> None:
        self.normalization.record_account_sync(
            provider_account,
            status=status,
            duration_ms=int((time.monotonic() - started) * 1000),
            error=error
        )

    def _finalize(self, connection: Connection, job_id: int, run: _SyncRun) -> SyncResult:
        errors = run.errors
        tracking_id = None

        if run.fatal_error is not None:
            status = IngestionJobStatus.FAILED
            tracking_id = new_error_tracking_id()
            user_message = sanitize_error(run.fatal_error)
            errors = errors + [{
                "entity": "sync",
                "external_id": None,
                "last_completed_stage": run.stage.value,
                "error_type": run.fatal_error.__class__.__name__,
                "message": user_message,
            }]
            logger.error(f"[{tracking_id}] Sync failed for connection {connection.id} "
                         f"after stage {run.stage.value}: {run.fatal_error}",
                         exc_info=not isinstance(run.fatal_error, (SyncEngineError, asyncio.CancelledError)))
        elif errors:
            status = IngestionJobStatus.COMPLETED_WITH_ERRORS
            tracking_id = new_error_tracking_id()
            user_message = f"{len(errors)} record(s) could not be synced"
            logger.warning(f"[{tracking_id}] Sync for connection {connection.id} completed with "
                           f"{len(errors)} error(s)")
        else:
            status = IngestionJobStatus.COMPLETED
            user_message = None

        summary = run.summary()
        summary["errors"] = errors
        run.stage = SyncStage.FINALIZED

        # A failed sync may leave a transaction open; the terminal writes must not inherit it
        self.db.rollback()

        self.ledger.finalize(
            job_id,
            status=status,
            records_fetched=run.accounts_fetched + run.transactions_fetched,
            records_imported=run.accounts.imported + run.transactions.imported,
            records_failed=run.accounts.failed + run.transactions.failed + len(run.account_errors),
            summary=summary,
            error_message=user_message,
            error_tracking_id=tracking_id
        )

        if status == IngestionJobStatus.FAILED:
            self.connections.record_sync_failure(
                connection,
                user_message,
                details={"job_id": job_id, "error_tracking_id": tracking_id}
            )
        else:
            self.connections.record_sync_success(
                connection,
                partial=status == IngestionJobStatus.COMPLETED_WITH_ERRORS
            )

        logger.info(f"Sync finished: job={job_id}, status={status.value}, "
                    f"accounts={run.accounts.imported}, transactions={run.transactions.imported}, "
                    f"duration={run.duration:.2f}s")

        return SyncResult(
            success=status != IngestionJobStatus.FAILED,
            job_id=job_id,
            status=status.value,
            accounts_synced=run.accounts.imported,
            transactions_synced=run.transactions.imported,
            errors=errors,
            warnings=run.warnings,
            duration=run.duration,
            error_tracking_id=tracking_id
        )


async def orchestrate_sync(db: Session, options: SyncOptions) -> SyncResult:
    """Run one sync with default collaborators."""
    return await SyncOrchestrator(db).orchestrate_sync(options)
