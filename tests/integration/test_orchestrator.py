"""
Integration tests for the sync orchestrator

Runs full syncs against an in-memory database with the stub provider adapter.
"""

import asyncio
import json
from datetime import date, timedelta
from unittest.mock import patch

import pytest

from syncengine.app.models import (
    Account,
    ConnectionEventType,
    ConnectionHealth,
    ConnectionHistory,
    ConnectionStatus,
    IngestionJob,
    IngestionJobStatus,
    ProviderAccount,
    Transaction,
    utcnow,
)
from syncengine.app.provider_sync.credentials import CredentialLifecycleManager
from syncengine.app.provider_sync.errors import (
    JobAlreadyFinalizedError,
    ProviderPermanentError,
    ProviderTransientError,
    SyncEngineError,
)
from syncengine.app.provider_sync.ledger import IngestionJobLedger
from syncengine.app.provider_sync.normalization import NormalizationService
from syncengine.app.provider_sync.orchestrator import SyncOptions, SyncOrchestrator, orchestrate_sync
from syncengine.app.provider_sync.providers.base import OAuthTokens
from syncengine.app.provider_sync.tasks import Deadline


@pytest.fixture
def orchestrator(db_session, providers, credential_store):
    return SyncOrchestrator(
        db_session,
        providers=providers,
        credentials=CredentialLifecycleManager(db_session, credential_store)
    )


@pytest.fixture
def options(connection):
    def _options(**overrides):
        values = {
            "provider": "stub",
            "connection_id": connection.id,
            "tenant_id": connection.tenant_id,
            "user_id": "user-1",
        }
        values.update(overrides)
        return SyncOptions(**values)
    return _options


@pytest.fixture
def bank(stub_provider, account_data, transaction_data):
    """Two accounts with a handful of transactions each"""
    today = date.today()
    stub_provider.accounts = [account_data("acc-1"), account_data("acc-2")]
    stub_provider.transactions = {
        "acc-1": [
            transaction_data("a1-1", tx_date=today - timedelta(days=3), amount="100.00", tx_type="credit"),
            transaction_data("a1-2", tx_date=today - timedelta(days=2), amount="25.00", tx_type="debit"),
        ],
        "acc-2": [
            transaction_data("a2-1", tx_date=today - timedelta(days=1), amount="-40.00", tx_type="debit"),
        ],
    }
    return stub_provider


def _job(db_session, job_id):
    db_session.expire_all()
    return db_session.get(IngestionJob, job_id)


class TestSuccessfulSync:

    @pytest.mark.asyncio
    async def test_first_sync_imports_everything(self, orchestrator, options, bank, stored_credential, connection, db_session):
        result = await orchestrator.orchestrate_sync(options())

        assert result.success
        assert result.status == "completed"
        assert result.accounts_synced == 2
        assert result.transactions_synced == 3
        assert result.errors == []
        assert result.error_tracking_id is None

        job = _job(db_session, result.job_id)
        assert job.status == IngestionJobStatus.COMPLETED
        assert job.records_fetched == 5
        assert job.records_imported == 5
        assert job.completed_at is not None
        summary = json.loads(job.summary)
        assert summary["last_completed_stage"] == "TRANSACTIONS_SYNCED"
        assert summary["transactions"]["created"] == 3

        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.health_status == ConnectionHealth.HEALTHY
        assert connection.last_successful_sync_at is not None

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, orchestrator, options, bank, stored_credential, db_session):
        await orchestrator.orchestrate_sync(options())
        second = await orchestrator.orchestrate_sync(options())

        assert second.status == "completed"
        assert db_session.query(Transaction).count() == 3
        assert db_session.query(Account).count() == 2
        assert db_session.query(ProviderAccount).count() == 2

        summary = json.loads(_job(db_session, second.job_id).summary)
        assert summary["transactions"]["created"] == 0
        assert summary["transactions"]["updated"] == 3

    @pytest.mark.asyncio
    async def test_amounts_are_signed_by_type(self, orchestrator, options, bank, stored_credential, db_session):
        await orchestrator.orchestrate_sync(options())

        amounts = {
            tx.external_transaction_id: tx.amount
            for tx in db_session.query(Transaction).all()
        }
        assert amounts["a1-1"] > 0
        assert amounts["a1-2"] < 0
        assert amounts["a2-1"] < 0

    @pytest.mark.asyncio
    async def test_first_sync_uses_provider_lookback(self, orchestrator, options, bank, stored_credential):
        await orchestrator.orchestrate_sync(options())

        request = bank.transaction_requests[0]
        assert request["end_date"] == date.today()
        assert request["start_date"] == date.today() - timedelta(days=bank.default_lookback_days)

    @pytest.mark.asyncio
    async def test_incremental_sync_overlaps_last_transaction(self, orchestrator, options, bank, stored_credential):
        await orchestrator.orchestrate_sync(options())
        bank.transaction_requests.clear()

        await orchestrator.orchestrate_sync(options())

        by_account = {r["external_account_id"]: r for r in bank.transaction_requests}
        last_acc_1 = date.today() - timedelta(days=2)
        assert by_account["acc-1"]["start_date"] == last_acc_1 - timedelta(days=orchestrator.settings.incremental_overlap_days)

    @pytest.mark.asyncio
    async def test_explicit_range_wins(self, orchestrator, options, bank, stored_credential):
        await orchestrator.orchestrate_sync(options(start_date=date(2024, 1, 1), end_date=date(2024, 1, 31)))

        for request in bank.transaction_requests:
            assert request["start_date"] == date(2024, 1, 1)
            assert request["end_date"] == date(2024, 1, 31)

    @pytest.mark.asyncio
    async def test_account_filter(self, orchestrator, options, bank, stored_credential):
        result = await orchestrator.orchestrate_sync(options(account_ids=["acc-2"]))

        assert [r["external_account_id"] for r in bank.transaction_requests] == ["acc-2"]
        assert result.transactions_synced == 1

    @pytest.mark.asyncio
    async def test_transactions_only_uses_stored_accounts(self, orchestrator, options, bank, stored_credential):
        await orchestrator.orchestrate_sync(options())
        bank.calls.clear()

        result = await orchestrator.orchestrate_sync(options(sync_accounts=False))

        assert result.status == "completed"
        assert "fetch_raw_accounts" not in bank.calls
        assert bank.calls.count("fetch_transactions") == 2

    @pytest.mark.asyncio
    async def test_accounts_only(self, orchestrator, options, bank, stored_credential):
        result = await orchestrator.orchestrate_sync(options(sync_transactions=False))

        assert result.accounts_synced == 2
        assert "fetch_transactions" not in bank.calls

    @pytest.mark.asyncio
    async def test_missing_capability_is_a_warning(self, orchestrator, options, bank, stored_credential):
        bank.supports_transaction_sync = False

        result = await orchestrator.orchestrate_sync(options())

        assert result.status == "completed"
        assert result.warnings == ["Provider stub does not support transaction sync"]
        assert "fetch_transactions" not in bank.calls

    @pytest.mark.asyncio
    async def test_accounts_gone_from_provider_are_closed(self, orchestrator, options, bank, stored_credential, account_data, db_session):
        await orchestrator.orchestrate_sync(options())
        bank.accounts = [account_data("acc-1")]

        result = await orchestrator.orchestrate_sync(options())

        gone = db_session.query(ProviderAccount).filter_by(external_account_id="acc-2").one()
        assert gone.status.value == "CLOSED"
        assert [r["external_account_id"] for r in bank.transaction_requests[-1:]] == ["acc-1"]
        assert json.loads(_job(db_session, result.job_id).summary)["closed_accounts"] == 1

    @pytest.mark.asyncio
    async def test_module_level_entry_point(self, options, providers, bank, stored_credential, db_session):
        with patch("syncengine.app.provider_sync.orchestrator.ProviderRegistry", return_value=providers):
            result = await orchestrate_sync(db_session, options())

        assert result.status == "completed"
        assert result.transactions_synced == 3

    @pytest.mark.asyncio
    async def test_job_is_finalized_exactly_once(self, orchestrator, options, bank, stored_credential, db_session):
        result = await orchestrator.orchestrate_sync(options())

        with pytest.raises(JobAlreadyFinalizedError):
            IngestionJobLedger(db_session).finalize(result.job_id, status=IngestionJobStatus.FAILED)


class TestPartialFailure:

    @pytest.mark.asyncio
    async def test_one_account_failing_keeps_the_rest(self, orchestrator, options, bank, stored_credential, connection, db_session):
        bank.transactions["acc-2"] = ProviderTransientError("acc-2 timed out")

        result = await orchestrator.orchestrate_sync(options())

        assert result.success
        assert result.status == "completed_with_errors"
        assert result.transactions_synced == 2
        assert result.error_tracking_id is not None
        assert result.errors[0]["external_id"] == "acc-2"
        assert result.errors[0]["error_type"] == "ProviderTransientError"
        assert result.errors[0]["message"] == ProviderTransientError.user_message
        assert "timed out" not in result.errors[0]["message"]

        job = _job(db_session, result.job_id)
        assert job.status == IngestionJobStatus.COMPLETED_WITH_ERRORS
        assert job.error_tracking_id == result.error_tracking_id

        failed_account = db_session.query(ProviderAccount).filter_by(external_account_id="acc-2").one()
        assert failed_account.last_sync_status == "failed"

        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.health_status == ConnectionHealth.DEGRADED
        assert connection.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_malformed_transaction_is_isolated(self, orchestrator, options, bank, stored_credential, transaction_data, db_session):
        bank.transactions["acc-2"] = [
            transaction_data("a2-1"),
            transaction_data("a2-2", amount=None),
        ]

        result = await orchestrator.orchestrate_sync(options())

        assert result.status == "completed_with_errors"
        assert result.transactions_synced == 3
        assert _job(db_session, result.job_id).records_failed == 1

    @pytest.mark.asyncio
    async def test_transaction_failing_during_upsert_is_isolated(self, orchestrator, options, stub_provider, stored_credential, account_data, transaction_data, db_session):
        stub_provider.accounts = [account_data("acc-1")]
        stub_provider.transactions = {"acc-1": [
            transaction_data(f"tx-{i}", tx_date=date.today() - timedelta(days=i)) for i in range(1, 6)
        ]}
        upsert_one = NormalizationService._upsert_transaction

        def failing_second(self, *args):
            if args[4].external_transaction_id == "tx-2":
                raise RuntimeError("unexpected payload shape from upstream")
            return upsert_one(self, *args)

        with patch.object(NormalizationService, "_upsert_transaction", failing_second):
            result = await orchestrator.orchestrate_sync(options())

        assert result.success
        assert result.status == "completed_with_errors"
        assert result.transactions_synced == 4
        assert [e["external_id"] for e in result.errors] == ["tx-2"]
        assert "upstream" not in result.errors[0]["message"]

        summary = json.loads(_job(db_session, result.job_id).summary)
        assert summary["transactions"]["created"] == 4
        assert summary["transactions"]["failed"] == 1
        assert db_session.query(Transaction).count() == 4

    @pytest.mark.asyncio
    async def test_unexpected_account_task_error_is_recorded(self, orchestrator, options, bank, stored_credential, db_session):
        sync_one = SyncOrchestrator._sync_account_transactions

        async def failing_acc2(self, connection, provider, credentials, provider_account, *args):
            if provider_account.external_account_id == "acc-2":
                raise RuntimeError("socket closed")
            return await sync_one(self, connection, provider, credentials, provider_account, *args)

        with patch.object(SyncOrchestrator, "_sync_account_transactions", failing_acc2):
            result = await orchestrator.orchestrate_sync(options())

        assert result.status == "completed_with_errors"
        assert result.transactions_synced == 2
        assert result.errors == [{
            "entity": "account_transactions",
            "external_id": "acc-2",
            "error_type": "RuntimeError",
            "message": SyncEngineError.user_message,
        }]

    @pytest.mark.asyncio
    async def test_deadline_during_transactions(self, orchestrator, options, bank, stored_credential, db_session):
        bank.fetch_delay = 0.5

        result = await orchestrator.orchestrate_sync(options(deadline=Deadline(0.2)))

        assert result.status == "completed_with_errors"
        assert result.accounts_synced == 2
        assert {e["error_type"] for e in result.errors} == {"DeadlineExceeded"}
        assert _job(db_session, result.job_id).status == IngestionJobStatus.COMPLETED_WITH_ERRORS


class TestFailedSync:

    @pytest.mark.asyncio
    async def test_expired_credential_fails_before_any_data_call(self, orchestrator, options, bank, credential_store, connection, db_session):

        credential_store.upsert(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            provider_id="stub",
            tokens=OAuthTokens(access_token="stale", expires_at=utcnow() - timedelta(hours=1))
        )

        result = await orchestrator.orchestrate_sync(options())

        assert not result.success
        assert result.status == "failed"
        assert result.error_tracking_id is not None
        assert bank.data_calls == []

        failure = result.errors[-1]
        assert failure["last_completed_stage"] == "INITIATED"
        assert failure["error_type"] == "CredentialExpiredError"

        job = _job(db_session, result.job_id)
        assert job.status == IngestionJobStatus.FAILED
        assert job.error_tracking_id == result.error_tracking_id

        assert connection.status == ConnectionStatus.ERROR
        assert connection.consecutive_failures == 1
        assert connection.health_status == ConnectionHealth.DEGRADED
        assert connection.last_error == failure["message"]

    @pytest.mark.asyncio
    async def test_account_fetch_failure_is_stage_level(self, orchestrator, options, bank, stored_credential, connection, db_session):
        bank.accounts = ProviderPermanentError("consent revoked, body: <html>secret</html>")

        result = await orchestrator.orchestrate_sync(options())

        assert result.status == "failed"
        assert result.errors[-1]["last_completed_stage"] == "CREDENTIAL_RESOLVED"
        assert "secret" not in result.errors[-1]["message"]
        assert "fetch_transactions" not in bank.calls

        event = db_session.query(ConnectionHistory).filter_by(connection_id=connection.id).one()
        assert event.event_type == ConnectionEventType.SYNC_FAILED

    @pytest.mark.asyncio
    async def test_failure_reports_last_completed_stage(self, orchestrator, options, bank, stored_credential, db_session):
        async def broken_transactions(*args, **kwargs):
            raise RuntimeError("boom")

        with patch.object(orchestrator, "_sync_transactions", broken_transactions):
            result = await orchestrator.orchestrate_sync(options())

        assert result.status == "failed"
        assert result.errors[-1]["last_completed_stage"] == "RECONCILIATION_CHECKED"

        summary = json.loads(_job(db_session, result.job_id).summary)
        assert summary["last_completed_stage"] == "RECONCILIATION_CHECKED"

    @pytest.mark.asyncio
    async def test_repeated_failures_mark_connection_unhealthy(self, orchestrator, options, bank, stored_credential, connection):
        bank.accounts = ProviderTransientError("bank down")

        for _ in range(3):
            await orchestrator.orchestrate_sync(options())

        assert connection.consecutive_failures == 3
        assert connection.health_status == ConnectionHealth.UNHEALTHY

    @pytest.mark.asyncio
    async def test_success_resets_failure_counter(self, orchestrator, options, bank, stored_credential, account_data, connection):
        bank.accounts = ProviderTransientError("bank down")
        await orchestrator.orchestrate_sync(options())
        assert connection.consecutive_failures == 1

        bank.accounts = [account_data("acc-1")]
        await orchestrator.orchestrate_sync(options())

        assert connection.consecutive_failures == 0
        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.health_status == ConnectionHealth.HEALTHY

    @pytest.mark.asyncio
    async def test_unknown_connection(self, orchestrator, options, db_session):
        result = await orchestrator.orchestrate_sync(options(connection_id=9999))

        assert not result.success
        assert result.job_id is None
        assert result.error_tracking_id is not None
        assert db_session.query(IngestionJob).count() == 0

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_sync(self, orchestrator, options, bank, stored_credential):
        result = await orchestrator.orchestrate_sync(options(tenant_id="tenant-b"))

        assert not result.success
        assert bank.calls == []

    @pytest.mark.asyncio
    async def test_cancellation_finalizes_the_job(self, orchestrator, options, bank, stored_credential, db_session):
        bank.fetch_delay = 5

        task = orchestrator.create_task(options()).detach()
        while "fetch_transactions" not in bank.calls:
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        job = db_session.query(IngestionJob).one()
        db_session.refresh(job)
        assert job.status == IngestionJobStatus.FAILED
        assert job.completed_at is not None


class TestReconnection:

    @pytest.mark.asyncio
    async def test_reconnect_resumes_after_history(self, orchestrator, options, stub_provider, stored_credential, historical, connection, account_data, transaction_data, db_session):
        stub_provider.accounts = [account_data("acc-1")]
        stub_provider.transactions = {"acc-1": [
            transaction_data("new-1", tx_date=date(2024, 5, 30)),
            transaction_data("new-2", tx_date=date(2024, 6, 1)),
            transaction_data("new-3", tx_date=date(2024, 6, 2)),
            transaction_data("new-4", tx_date=date(2024, 6, 3)),
        ]}

        result = await orchestrator.orchestrate_sync(options())

        assert result.status == "completed"
        assert result.transactions_synced == 2
        assert stub_provider.transaction_requests[0]["start_date"] == date(2024, 6, 1)

        db_session.expire_all()
        transactions = db_session.query(Transaction).filter(
            Transaction.account_id == historical.account.id
        ).all()
        assert len(transactions) == historical.transaction_count + 2
        assert all(tx.connection_id == connection.id for tx in transactions)
        assert not any(tx.transaction_date <= date(2024, 6, 1) for tx in transactions
                       if tx.external_transaction_id.startswith("new-"))

        assert connection.reconnected_from == historical.connection.id
        assert connection.reconnection_confidence == "high"

        summary = json.loads(_job(db_session, result.job_id).summary)
        assert summary["reconnection"]["recommendation"] == "link_and_resume"
        assert summary["transactions"]["skipped"] == 2

    @pytest.mark.asyncio
    async def test_sync_after_reconnect_does_not_duplicate_history(self, orchestrator, options, stub_provider, stored_credential, historical, connection, account_data, transaction_data, db_session):
        stub_provider.accounts = [account_data("acc-1")]
        stub_provider.transactions = {"acc-1": [
            transaction_data("old-3", tx_date=date(2024, 6, 1)),
            transaction_data("new-3", tx_date=date(2024, 6, 2)),
        ]}

        first = await orchestrator.orchestrate_sync(options())
        assert first.status == "completed"
        assert db_session.query(Transaction).count() == historical.transaction_count + 1

        second = await orchestrator.orchestrate_sync(options())

        assert second.status == "completed"
        assert stub_provider.transaction_requests[-1]["start_date"] == date(2024, 5, 30)
        db_session.expire_all()
        assert db_session.query(Transaction).count() == historical.transaction_count + 1
        assert db_session.query(Transaction).filter_by(external_transaction_id="old-3").count() == 1

        summary = json.loads(_job(db_session, second.job_id).summary)
        assert summary["transactions"]["created"] == 0
        assert summary["transactions"]["updated"] == 2

    @pytest.mark.asyncio
    async def test_partial_overlap_is_treated_as_new(self, orchestrator, options, stub_provider, stored_credential, historical, connection, account_data, db_session):
        stub_provider.accounts = [account_data("acc-1"), account_data("acc-new")]

        result = await orchestrator.orchestrate_sync(options())

        assert result.status == "completed"
        assert len(result.warnings) == 1
        db_session.expire_all()
        assert db_session.get(Account, historical.account.id).connection_id == historical.connection.id
        assert connection.reconnected_from is None
        assert db_session.query(Account).count() == 3

    @pytest.mark.asyncio
    async def test_reconnection_is_checked_on_first_sync_only(self, orchestrator, options, stub_provider, stored_credential, historical, connection, account_data, db_session):
        stub_provider.accounts = [account_data("acc-new")]
        await orchestrator.orchestrate_sync(options())

        stub_provider.accounts = [account_data("acc-new"), account_data("acc-1")]
        result = await orchestrator.orchestrate_sync(options())

        summary = json.loads(_job(db_session, result.job_id).summary)
        assert summary["reconnection"] is None
        assert connection.reconnected_from is None
