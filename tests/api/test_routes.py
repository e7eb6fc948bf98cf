"""
API endpoint tests
"""

from urllib.parse import parse_qs, urlparse
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from syncengine.database import get_db
from syncengine.main import app
from syncengine.app.models import Connection, ConnectionStatus, IngestionJobStatus
from syncengine.app.provider_sync.errors import ProviderNotFoundError
from syncengine.app.provider_sync.ledger import IngestionJobLedger

TENANT = {"X-Tenant-ID": "tenant-a", "X-User-ID": "user-1"}
OTHER_TENANT = {"X-Tenant-ID": "tenant-b"}


@pytest.fixture
def client(db_session, providers):
    """Create test client with database override and the stub provider registry"""

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    with patch("syncengine.app.provider_sync.oauth.ProviderRegistry", return_value=providers):
        yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def bank(stub_provider, account_data, transaction_data):
    stub_provider.accounts = [account_data("acc-1")]
    stub_provider.transactions = {"acc-1": [transaction_data("tx-1"), transaction_data("tx-2", amount=None)]}
    return stub_provider


def _redirect_params(response):
    location = response.headers["location"]
    assert location.startswith("http://localhost:8002/connections.html?")
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_tenant_header_is_required(client):
    response = client.post("/api/connections/stub/authorize")

    assert response.status_code == 401


def test_authorize_returns_provider_url(client, bank, db_session):
    response = client.post("/api/connections/stub/authorize", json={"bank_id": "NO_DNB"}, headers=TENANT)

    assert response.status_code == 200
    data = response.json()
    assert data["authorization_url"].startswith("https://bank.example.com/authorize?state=")

    connection = db_session.get(Connection, data["connection_id"])
    assert connection.status == ConnectionStatus.PENDING
    assert connection.tenant_id == "tenant-a"


def test_authorize_unknown_provider(client, providers):
    providers.get.side_effect = ProviderNotFoundError("Provider nope not found")

    response = client.post("/api/connections/nope/authorize", headers=TENANT)

    assert response.status_code == 404


def test_callback_redirects_with_sync_outcome(client, bank, db_session):
    authorize = client.post("/api/connections/stub/authorize", headers=TENANT).json()
    connection = db_session.get(Connection, authorize["connection_id"])
    state = connection.oauth_state

    response = client.get(
        "/api/connections/stub/callback",
        params={"state": state, "code": "code-1"},
        follow_redirects=False
    )

    assert response.status_code == 307
    params = _redirect_params(response)
    assert params["connection_id"] == str(connection.id)
    assert params["status"] == "completed_with_errors"
    assert "error_tracking_id" in params

    # Same state a second time
    replay = client.get(
        "/api/connections/stub/callback",
        params={"state": state, "code": "code-1"},
        follow_redirects=False
    )
    replay_params = _redirect_params(replay)
    assert replay_params["error"] == "invalid_state"
    assert "message" in replay_params


def test_callback_failure_hides_provider_detail(client, bank, db_session):
    async def failing_exchange(code, redirect_uri):
        raise RuntimeError("upstream said: <html>stack trace</html>")
    bank.exchange_code_for_token = failing_exchange

    authorize = client.post("/api/connections/stub/authorize", headers=TENANT).json()
    state = db_session.get(Connection, authorize["connection_id"]).oauth_state

    response = client.get(
        "/api/connections/stub/callback",
        params={"state": state, "code": "code-1"},
        follow_redirects=False
    )

    params = _redirect_params(response)
    assert params["error"] == "connection_failed"
    assert "stack trace" not in params["message"]
    assert params["error_tracking_id"]


def test_list_and_get_connections(client, connection):
    listed = client.get("/api/connections/", headers=TENANT)
    assert listed.status_code == 200
    assert [c["id"] for c in listed.json()] == [connection.id]

    single = client.get(f"/api/connections/{connection.id}", headers=TENANT)
    assert single.status_code == 200
    assert single.json()["status"] == "ACTIVE"
    assert single.json()["health_status"] == "HEALTHY"

    assert client.get("/api/connections/", headers=OTHER_TENANT).json() == []
    assert client.get(f"/api/connections/{connection.id}", headers=OTHER_TENANT).status_code == 404


def test_manual_sync(client, bank, connection, stored_credential):
    response = client.post(
        f"/api/connections/{connection.id}/sync",
        json={"start_date": "2024-01-01", "end_date": "2024-06-30"},
        headers=TENANT
    )

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["status"] == "completed_with_errors"
    assert data["accounts_synced"] == 1
    assert data["transactions_synced"] == 1
    assert data["message"] == "1 errors occurred"
    assert data["error_tracking_id"]


def test_manual_sync_unknown_connection(client):
    response = client.post("/api/connections/9999/sync", headers=TENANT)

    assert response.status_code == 404


def test_manual_sync_other_tenant(client, connection):
    response = client.post(f"/api/connections/{connection.id}/sync", headers=OTHER_TENANT)

    assert response.status_code == 404


def test_manual_sync_pending_connection(client, connection, db_session):
    connection.status = ConnectionStatus.PENDING
    db_session.commit()

    response = client.post(f"/api/connections/{connection.id}/sync", headers=TENANT)

    assert response.status_code == 400


def test_job_history_and_lookup(client, bank, connection, stored_credential):
    sync = client.post(f"/api/connections/{connection.id}/sync", headers=TENANT).json()

    jobs = client.get(f"/api/connections/{connection.id}/jobs", headers=TENANT)
    assert jobs.status_code == 200
    assert [j["id"] for j in jobs.json()] == [sync["job_id"]]

    job = client.get(f"/api/ingestion-jobs/{sync['job_id']}", headers=TENANT)
    assert job.status_code == 200
    body = job.json()
    assert body["status"] == "completed_with_errors"
    assert body["summary"]["transactions"]["failed"] == 1
    assert body["triggered_by"] == "user-1"

    assert client.get(f"/api/ingestion-jobs/{sync['job_id']}", headers=OTHER_TENANT).status_code == 404


def test_job_list_limit_is_validated(client, connection):
    response = client.get(f"/api/connections/{connection.id}/jobs?limit=0", headers=TENANT)

    assert response.status_code == 422


def test_disconnect_keeps_job_history(client, bank, connection, stored_credential, db_session):
    job = IngestionJobLedger(db_session).create(tenant_id="tenant-a", connection_id=connection.id)
    IngestionJobLedger(db_session).finalize(job.id, status=IngestionJobStatus.COMPLETED)

    response = client.delete(f"/api/connections/{connection.id}", headers=TENANT)

    assert response.status_code == 200
    assert response.json() == {"message": "Connection disconnected successfully"}
    assert bank.revoked == ["access-stored"]

    assert client.post(f"/api/connections/{connection.id}/sync", headers=TENANT).status_code == 404
    assert client.get(f"/api/connections/{connection.id}", headers=TENANT).status_code == 404

    history = client.get(f"/api/connections/{connection.id}/jobs", headers=TENANT)
    assert [j["id"] for j in history.json()] == [job.id]
